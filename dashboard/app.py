"""
Requirement Tracker Dashboard — FastAPI backend.

A JSON API over one MutationCoordinator per owner.  The caller's identity
comes from the ``X-Owner-Id`` header; every read and write is scoped to it.

State lives in the entity store (SQLite by default, output/tracker.db) and
PO documents in the blob store (output/storage).  Both are opened lazily on
the first request so importing this module has no side effects.

Endpoints
---------
  GET    /api/health                          → liveness probe
  GET    /api/stats                           → dashboard cards + urgent / recent lists
  GET    /api/analytics                       → consumption breakdowns (?timeRange= &area=)
  POST   /api/reload                          → rebuild this owner's snapshot from the store
  GET    /api/purchase-orders                 → list POs (?search=)
  POST   /api/purchase-orders                 → create a PO
  PATCH  /api/purchase-orders/{id}            → edit a PO
  DELETE /api/purchase-orders/{id}            → delete a PO (requirements are kept)
  PATCH  /api/purchase-orders/{id}/balance    → manual balance correction
  POST   /api/purchase-orders/{id}/document   → upload / replace the PO PDF
  GET    /api/purchase-orders/{id}/document   → download the PO PDF
  DELETE /api/purchase-orders/{id}/document   → remove the PO PDF
  GET    /api/requirements                    → list requirements (?search= &status=)
  POST   /api/requirements                    → raise a requirement
  PATCH  /api/requirements/{id}               → edit a requirement
  DELETE /api/requirements/{id}               → delete a requirement and its supply history
  GET    /api/requirements/{id}/supply        → supply history (?material=)
  POST   /api/requirements/{id}/supply        → record a supply
  GET    /api/supply-queue                    → open requirements, most pressing first
  GET    /api/supply-history                  → all supply events (?search=)
  PATCH  /api/supply-history                  → correct supply entries
  DELETE /api/supply-history/{id}             → delete one supply entry
  GET    /files/{path}                        → stored document by blob path
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic.alias_generators import to_camel

from config import Config
from dashboard.models import (
    BalanceUpdate,
    POCreate,
    POUpdate,
    RequirementCreate,
    RequirementUpdate,
    SupplyCreate,
    SupplyHistoryUpdate,
)
from dashboard.services import SessionRegistry
from tracker import analytics
from tracker.blob_store import BlobStore, LocalBlobStore
from tracker.coordinator import MutationCoordinator
from tracker.database import SqliteEntityStore
from tracker.errors import DuplicateSubmissionError, NotFoundError, StoreError, ValidationError
from tracker.scheduler import UrgencySweeper
from tracker.store import EntityStore

logger = logging.getLogger(__name__)

STORE_FAILURE_MESSAGE = (
    "The data store could not complete the request. "
    "Please retry, or contact support if the problem persists."
)


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _camel(obj: Any) -> Any:
    """Recursively convert dict keys to camelCase."""
    if isinstance(obj, dict):
        return {to_camel(k): _camel(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_camel(v) for v in obj]
    return obj


def _dump(entity) -> dict:
    return entity.model_dump(mode="json", by_alias=True)


def _po_json(po) -> dict:
    data = _dump(po)
    for item_json, item in zip(data["items"], po.items):
        item_json["usagePercent"] = analytics.po_item_usage(item)
    return data


def _content_disposition(filename: str) -> str:
    """
    Attachment header safe for any file name.  Headers go out as latin-1,
    so the real name travels RFC 5987 encoded next to an ASCII fallback.
    """
    fallback = "".join(
        c if " " <= c <= "~" and c not in '"\\' else "_" for c in filename
    )
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_registry(request: Request) -> SessionRegistry:
    """Session registry for this app, built on first use."""
    state = request.app.state
    if state.registry is None:
        config: Config = state.config
        config.ensure_output_dir()
        store = state.store or SqliteEntityStore(config.db_path)
        blob_store = state.blob_store or LocalBlobStore(
            config.storage_dir, config.storage_base_url, config.max_upload_bytes
        )
        state.registry = SessionRegistry(store, blob_store, config.urgency_threshold_days)
    return state.registry


async def get_session(
    request: Request,
    x_owner_id: Optional[str] = Header(default=None),
) -> MutationCoordinator:
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return await get_registry(request).get(x_owner_id.strip())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/api/health")
def health(request: Request):
    config: Config = request.app.state.config
    return {
        "status":      "ok",
        "dbPath":      str(config.db_path),
        "dbExists":    config.db_path.exists(),
        "storageDir":  str(config.storage_dir),
        "sessions":    len(request.app.state.registry.active()) if request.app.state.registry else 0,
    }


@router.get("/api/stats")
def stats(session: MutationCoordinator = Depends(get_session)):
    state = session.state
    urgent = [
        r for r in analytics.supply_queue(state.requirements) if r.priority == "Urgent"
    ]
    return {
        **_camel(analytics.dashboard_summary(state.requirements)),
        "purchaseOrders": len(state.purchase_orders),
        "supplyEvents":   len(state.supply_history),
        "urgentRequirements": [_dump(r) for r in urgent],
        "recentRequirements": [_dump(r) for r in analytics.recent_requirements(state.requirements)],
    }


@router.get("/api/analytics")
def get_analytics(
    time_range: Optional[str] = Query(default=None, alias="timeRange"),
    area: Optional[str] = Query(default=None),
    session: MutationCoordinator = Depends(get_session),
):
    report = analytics.analytics_report(
        session.state.requirements,
        session.state.purchase_orders,
        time_range=time_range,
        area=area,
    )
    return _camel(report)


@router.post("/api/reload")
async def reload(session: MutationCoordinator = Depends(get_session)):
    report = await session.reload()
    return _camel(vars(report))


# ── Purchase orders ──────────────────────────────────────────────────────────

@router.get("/api/purchase-orders")
def list_purchase_orders(
    search: Optional[str] = Query(default=None),
    session: MutationCoordinator = Depends(get_session),
):
    pos = analytics.filter_by_po_number(session.state.purchase_orders, search)
    return [_po_json(po) for po in pos]


@router.post("/api/purchase-orders", status_code=201)
async def create_purchase_order(body: POCreate, session: MutationCoordinator = Depends(get_session)):
    po = await session.create_po(
        po_number=body.po_number,
        po_date=body.po_date,
        items=body.items,
        area_of_application=body.area_of_application,
    )
    return _po_json(po)


@router.patch("/api/purchase-orders/{po_id}")
async def update_purchase_order(
    po_id: str, body: POUpdate, session: MutationCoordinator = Depends(get_session)
):
    po = await session.update_po(
        po_id,
        po_number=body.po_number,
        po_date=body.po_date,
        area_of_application=body.area_of_application,
        items=body.items,
    )
    return _po_json(po)


@router.delete("/api/purchase-orders/{po_id}")
async def delete_purchase_order(po_id: str, session: MutationCoordinator = Depends(get_session)):
    await session.delete_po(po_id)
    return {"id": po_id, "deleted": True}


@router.patch("/api/purchase-orders/{po_id}/balance")
async def update_po_balance(
    po_id: str, body: BalanceUpdate, session: MutationCoordinator = Depends(get_session)
):
    po = await session.adjust_po_balance(po_id, body.material_name, body.balance_qty)
    return _po_json(po)


@router.post("/api/purchase-orders/{po_id}/document")
async def upload_po_document(
    po_id: str,
    file: UploadFile = File(...),
    session: MutationCoordinator = Depends(get_session),
):
    contents = await file.read()
    po = await session.attach_document(
        po_id, contents, file.filename or "document.pdf", file.content_type
    )
    return _po_json(po)


@router.get("/api/purchase-orders/{po_id}/document")
async def download_po_document(po_id: str, session: MutationCoordinator = Depends(get_session)):
    download = await session.download_document(po_id)
    return Response(
        content=download.content,
        media_type=download.media_type,
        headers={"Content-Disposition": _content_disposition(download.filename)},
    )


@router.delete("/api/purchase-orders/{po_id}/document")
async def delete_po_document(po_id: str, session: MutationCoordinator = Depends(get_session)):
    po = await session.remove_document(po_id)
    return _po_json(po)


# ── Requirements ─────────────────────────────────────────────────────────────

@router.get("/api/requirements")
def list_requirements(
    search: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    session: MutationCoordinator = Depends(get_session),
):
    reqs = analytics.filter_by_po_number(session.state.requirements, search)
    if status:
        reqs = [r for r in reqs if r.status == status]
    return [_dump(r) for r in reqs]


@router.post("/api/requirements", status_code=201)
async def create_requirement(body: RequirementCreate, session: MutationCoordinator = Depends(get_session)):
    req = await session.create_requirement(
        po_number=body.po_number,
        selected_items=body.selected_items,
        delivery_date=body.delivery_date,
        priority=body.priority,
        notes=body.notes,
    )
    return _dump(req)


@router.patch("/api/requirements/{requirement_id}")
async def update_requirement(
    requirement_id: str, body: RequirementUpdate, session: MutationCoordinator = Depends(get_session)
):
    changes: dict = {}
    if "notes" in body.model_fields_set:
        changes["notes"] = body.notes
    req = await session.update_requirement(
        requirement_id,
        delivery_date=body.delivery_date,
        priority=body.priority,
        quantities=body.quantities,
        **changes,
    )
    return _dump(req)


@router.delete("/api/requirements/{requirement_id}")
async def delete_requirement(requirement_id: str, session: MutationCoordinator = Depends(get_session)):
    removed = await session.delete_requirement(requirement_id)
    return {"id": requirement_id, "deleted": True, "supplyEventsRemoved": removed}


@router.get("/api/requirements/{requirement_id}/supply")
def get_supply_history(
    requirement_id: str,
    material: Optional[str] = Query(default=None),
    session: MutationCoordinator = Depends(get_session),
):
    if session.state.get_requirement(requirement_id) is None:
        raise NotFoundError("requirement", requirement_id)
    events = session.state.ledger_for(requirement_id)
    if material:
        events = [e for e in events if e.material_name == material]
    return [_dump(e) for e in events]


@router.post("/api/requirements/{requirement_id}/supply", status_code=201)
async def record_supply(
    requirement_id: str, body: SupplyCreate, session: MutationCoordinator = Depends(get_session)
):
    result = await session.record_supply(
        requirement_id,
        body.material_name,
        body.quantity,
        notes=body.notes,
        supply_date=body.date,
    )
    return {
        "event":         _dump(result.event),
        "requirement":   _dump(result.requirement),
        "purchaseOrder": _po_json(result.purchase_order) if result.purchase_order else None,
    }


# ── Supply history ───────────────────────────────────────────────────────────

@router.get("/api/supply-queue")
def get_supply_queue(
    search: Optional[str] = Query(default=None),
    session: MutationCoordinator = Depends(get_session),
):
    reqs = analytics.filter_by_po_number(session.state.requirements, search)
    return [_dump(r) for r in analytics.supply_queue(reqs)]


@router.get("/api/supply-history")
def list_supply_history(
    search: Optional[str] = Query(default=None),
    session: MutationCoordinator = Depends(get_session),
):
    events = analytics.filter_by_po_number(session.state.supply_history, search)
    return [_dump(e) for e in events]


@router.patch("/api/supply-history")
async def edit_supply_history(body: SupplyHistoryUpdate, session: MutationCoordinator = Depends(get_session)):
    updated = await session.edit_supply_history(body.edits)
    return {"requirements": [_dump(r) for r in updated]}


@router.delete("/api/supply-history/{event_id}")
async def delete_supply_event(event_id: str, session: MutationCoordinator = Depends(get_session)):
    req = await session.delete_supply_event(event_id)
    return {"id": event_id, "deleted": True, "requirement": _dump(req) if req else None}


# ── Stored documents ─────────────────────────────────────────────────────────

@router.get("/files/{path:path}")
async def get_file(path: str, session: MutationCoordinator = Depends(get_session)):
    if not path.startswith(f"{session.owner_id}/"):
        raise HTTPException(status_code=404, detail=f"Document not found: {path}")
    if session.blob_store is None:
        raise HTTPException(status_code=404, detail=f"Document not found: {path}")
    download = await session.blob_store.download(path)
    return Response(content=download.content, media_type=download.media_type)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DuplicateSubmissionError)
    async def _duplicate(request: Request, exc: DuplicateSubmissionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def _store(request: Request, exc: StoreError):
        logger.error("Store failure on %s %s: %s (completed=%s)",
                     request.method, request.url.path, exc, list(exc.completed))
        return JSONResponse(
            status_code=503,
            content={"detail": STORE_FAILURE_MESSAGE, "completed": list(exc.completed)},
        )


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    sweeper: Optional[UrgencySweeper] = None
    task: Optional[asyncio.Task] = None
    if app.state.run_sweeper:
        sweeper = UrgencySweeper(
            lambda: app.state.registry.active() if app.state.registry else [],
            interval_seconds=app.state.config.urgency_sweep_interval_seconds,
        )
        task = asyncio.create_task(sweeper.run_forever())
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()
            await task
        if app.state.registry is not None:
            await app.state.registry.store.close()


def create_app(
    config: Optional[Config] = None,
    store: Optional[EntityStore] = None,
    blob_store: Optional[BlobStore] = None,
    run_sweeper: bool = True,
) -> FastAPI:
    app = FastAPI(
        title="Refractory Requirement Tracker",
        docs_url=None,
        redoc_url=None,
        lifespan=_lifespan,
    )
    app.state.config = config or Config()
    app.state.store = store
    app.state.blob_store = blob_store
    app.state.registry = None
    app.state.run_sweeper = run_sweeper
    app.include_router(router)
    _register_error_handlers(app)
    return app


app = create_app()
