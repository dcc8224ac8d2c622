"""
Mutation coordinator: the only writer of one owner's tracker state.

Every user intent (create a PO, raise a requirement, record a supply …) goes
through a coroutine here.  Each operation follows the same shape:

  1. Validate against the current snapshot (reconciler).  Nothing is
     written when validation fails.
  2. Persist to the entity store, one awaited call per record, in a fixed
     order: supply ledger → requirement → purchase order.
  3. Update the in-memory snapshot after each write the store acknowledged.

There are no multi-record transactions.  When a later write fails, the
earlier ones stay in place and the StoreError carries ``completed`` (the
tables already written).  The ledger is the source of truth, so the next
load() recomputes every requirement from it and repairs the caches.

Mutations on one coordinator are serialized by a lock.  A mutation whose
operation, target and payload all match one still in flight is rejected
with DuplicateSubmissionError instead of queueing behind it.
"""
import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from models.inputs import POItemInput, RequirementSelection, SupplyEdit
from models.purchase_order import Attachment, POItem, PurchaseOrder
from models.requirement import ALL_PRIORITIES, PRIORITY_MEDIUM, PRIORITY_URGENT, Requirement, RequirementItem
from models.supply import SupplyEvent
from .blob_store import BlobDownload, BlobStore
from .errors import (
    INVALID_INPUT,
    OUT_OF_RANGE,
    DuplicateSubmissionError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from .mapping import (
    TABLE_PURCHASE_ORDERS,
    TABLE_REQUIREMENTS,
    TABLE_SUPPLY_HISTORY,
    from_record,
    partial_record,
    table_for,
    to_record,
)
from .reconciler import (
    DEFAULT_URGENCY_THRESHOLD_DAYS,
    apply_urgency_promotion,
    compute_new_po_balance,
    derive_requirement_status,
    find_po_item,
    has_drifted,
    reconcile_requirement,
    validate_requirement_selection,
    validate_supply_amount,
)
from .state import TrackerState
from .store import EntityStore

logger = logging.getLogger(__name__)

# Attachment columns on the purchase_orders table
_ATTACHMENT_COLUMNS = ("pdf_file_url", "pdf_file_name", "pdf_file_path")

_UNSET = object()


def generate_id(prefix: str) -> str:
    """``<PREFIX>-<epoch millis>-<6 hex>``, e.g. ``SUPPLY-1718000000000-a3f09c``."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SupplyResult:
    """What record_supply wrote.  purchase_order is None when no PO balance moved."""
    event: SupplyEvent
    requirement: Requirement
    purchase_order: Optional[PurchaseOrder] = None


@dataclass
class LoadReport:
    purchase_orders: int = 0
    requirements: int = 0
    supply_events: int = 0
    skipped: int = 0
    repaired: list[str] = field(default_factory=list)
    repair_failures: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    dangling: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)


class MutationCoordinator:

    def __init__(
        self,
        store: EntityStore,
        state: TrackerState,
        blob_store: Optional[BlobStore] = None,
        urgency_threshold_days: int = DEFAULT_URGENCY_THRESHOLD_DAYS,
    ) -> None:
        self.store = store
        self.state = state
        self.blob_store = blob_store
        self.urgency_threshold_days = urgency_threshold_days
        self.last_load: Optional[LoadReport] = None
        self._lock = asyncio.Lock()
        self._in_flight: set[str] = set()

    @property
    def owner_id(self) -> str:
        return self.state.owner_id

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    @classmethod
    async def load(
        cls,
        store: EntityStore,
        owner_id: str,
        blob_store: Optional[BlobStore] = None,
        urgency_threshold_days: int = DEFAULT_URGENCY_THRESHOLD_DAYS,
        today: Optional[date] = None,
    ) -> "MutationCoordinator":
        """Build a coordinator for *owner_id* from whatever the store holds."""
        coordinator = cls(store, TrackerState(owner_id), blob_store, urgency_threshold_days)
        await coordinator.reload(today=today)
        return coordinator

    async def reload(self, today: Optional[date] = None) -> LoadReport:
        """
        Rebuild the snapshot from the store.

        Every requirement is recomputed from the ledger; any whose cached
        supplied totals or status drifted is written back (best effort).
        The urgency sweep then runs once.
        """
        async with self._mutation("reload"):
            report = LoadReport()
            pos = await self._load_table(TABLE_PURCHASE_ORDERS, report)
            reqs = await self._load_table(TABLE_REQUIREMENTS, report)
            events = await self._load_table(TABLE_SUPPLY_HISTORY, report)

            state = TrackerState(self.owner_id, pos, reqs, events)
            drifted: list[Requirement] = []
            for req in state.requirements:
                reconciled = reconcile_requirement(req, state.ledger_for(req.id))
                if has_drifted(req, reconciled):
                    logger.warning(
                        "Requirement %s drifted from its supply ledger "
                        "(status %s → %s, supplied %s → %s); repairing",
                        req.id, req.status, reconciled.status,
                        [i.quantity_supplied for i in req.selected_items],
                        [i.quantity_supplied for i in reconciled.selected_items],
                    )
                    drifted.append(reconciled)
            for reconciled in drifted:
                state.put_requirement(reconciled)
            self.state = state

            for reconciled in drifted:
                try:
                    await self._write(reconciled, ["selected_items", "status"])
                    report.repaired.append(reconciled.id)
                except StoreError as exc:
                    logger.warning("Could not persist repair of %s: %s", reconciled.id, exc)
                    report.repair_failures.append(reconciled.id)

            report.orphaned = [e.id for e in state.orphaned_events()]
            if report.orphaned:
                logger.warning(
                    "%d supply event(s) reference requirements that no longer exist: %s",
                    len(report.orphaned), ", ".join(report.orphaned),
                )
            for problem in state.check_references():
                logger.warning("Dangling reference: %s", problem)
                report.dangling.append(str(problem))

            report.purchase_orders = len(state.purchase_orders)
            report.requirements = len(state.requirements)
            report.supply_events = len(state.supply_history)
            report.promoted = await self._sweep(today)

        logger.info(
            "Loaded owner %s: %d POs, %d requirements, %d supply events "
            "(%d skipped, %d repaired, %d promoted)",
            self.owner_id, report.purchase_orders, report.requirements,
            report.supply_events, report.skipped, len(report.repaired), len(report.promoted),
        )
        self.last_load = report
        return report

    async def _load_table(self, table: str, report: LoadReport) -> list:
        entities = []
        for record in await self.store.query_by_owner(table, self.owner_id):
            try:
                entities.append(from_record(table, record))
            except (KeyError, ValueError, TypeError) as exc:
                report.skipped += 1
                logger.warning(
                    "Skipping malformed %s record %s: %s", table, record.get("id"), exc
                )
        return entities

    # ------------------------------------------------------------------
    # Purchase orders
    # ------------------------------------------------------------------

    async def create_po(
        self,
        po_number: str,
        po_date: date,
        items: Iterable[POItemInput],
        area_of_application: str = "",
        attachment: Optional[Attachment] = None,
    ) -> PurchaseOrder:
        """Create a PO.  Every item starts with its full quantity as balance."""
        po_number = (po_number or "").strip()
        items = list(items)
        _validate_po_header(po_number, items)

        po = PurchaseOrder(
            id=generate_id("PO"),
            owner=self.owner_id,
            po_number=po_number,
            po_date=po_date,
            area_of_application=area_of_application or "",
            items=[
                POItem(
                    material_name=i.material_name.strip(),
                    quantity=i.quantity,
                    balance_qty=i.quantity,
                    unit=i.unit,
                )
                for i in items
            ],
            attachment=attachment,
            created_at=_now(),
        )
        async with self._mutation(f"create_po:{po_number}"):
            await self.store.insert(TABLE_PURCHASE_ORDERS, to_record(po))
            self.state.put_po(po)
        logger.info("PO created: %s (%s, %d items)", po.po_number, po.id, len(po.items))
        return po

    async def update_po(
        self,
        po_id: str,
        po_number: Optional[str] = None,
        po_date: Optional[date] = None,
        area_of_application: Optional[str] = None,
        items: Optional[Iterable[POItemInput]] = None,
        attachment=_UNSET,
    ) -> PurchaseOrder:
        """
        Replace the given PO fields.

        Items are replaced wholesale.  An item keeps its current balance
        (capped at the new quantity) unless a balance is given explicitly.
        Renaming or removing items that requirements still point at is
        allowed; those requirements just stop affecting any balance.
        """
        async with self._mutation(f"update_po:{po_id}"):
            po = self._require_po(po_id)
            update: dict = {}
            columns: list[str] = []

            if po_number is not None:
                po_number = po_number.strip()
                if not po_number:
                    raise ValidationError(INVALID_INPUT, "PO number is required", field="po_number")
                update["po_number"] = po_number
                columns.append("po_number")
            if po_date is not None:
                update["po_date"] = po_date
                columns.append("po_date")
            if area_of_application is not None:
                update["area_of_application"] = area_of_application
                columns.append("area_of_application")
            if items is not None:
                update["items"] = _edited_items(po, list(items))
                columns.append("items")
            if attachment is not _UNSET:
                update["attachment"] = attachment
                columns.extend(_ATTACHMENT_COLUMNS)

            if not columns:
                return po
            updated = po.model_copy(update=update)
            await self._write(updated, columns)
            self.state.put_po(updated)

        if po_number is not None and po_number != po.po_number:
            stranded = [r.id for r in self.state.requirements if r.po_number == po.po_number]
            if stranded:
                logger.warning(
                    "PO %s renamed to %s; %d requirement(s) still reference the old number",
                    po.po_number, po_number, len(stranded),
                )
        logger.info("PO updated: %s  fields=%s", updated.po_number, columns)
        return updated

    async def adjust_po_balance(self, po_id: str, material_name: str, new_balance: int) -> PurchaseOrder:
        """Manual balance correction for one PO item."""
        async with self._mutation(f"adjust_po_balance:{po_id}:{material_name}"):
            po = self._require_po(po_id)
            item = po.get_item(material_name)
            if item is None:
                raise ValidationError(
                    INVALID_INPUT,
                    f"PO {po.po_number} has no item '{material_name}'",
                    field="material_name",
                    material_name=material_name,
                )
            if not 0 <= new_balance <= item.quantity:
                raise ValidationError(
                    OUT_OF_RANGE,
                    f"Balance must be between 0 and {item.quantity} (got {new_balance})",
                    field="balance_qty",
                    material_name=material_name,
                )
            updated = _with_item_balance(po, material_name, new_balance)
            await self._write(updated, ["items"])
            self.state.put_po(updated)

        logger.info(
            "PO %s balance adjusted: %s %d → %d",
            po.po_number, material_name, item.balance_qty, new_balance,
        )
        return updated

    async def delete_po(self, po_id: str) -> None:
        """
        Remove a PO.  Requirements raised against it are kept and keep its
        PO number; supplies against them no longer move any balance.
        """
        async with self._mutation(f"delete_po:{po_id}"):
            po = self._require_po(po_id)
            await self.store.delete(TABLE_PURCHASE_ORDERS, po.id)
            self.state.drop_po(po.id)

        logger.info("PO deleted: %s (%s)", po.po_number, po.id)
        dependants = [r.id for r in self.state.requirements if r.po_number == po.po_number]
        if dependants and self.state.find_po_by_number(po.po_number) is None:
            logger.warning(
                "%d requirement(s) now reference deleted PO %s", len(dependants), po.po_number
            )
        if po.attachment is not None:
            await self._discard_blob(po.attachment.path)

    # ------------------------------------------------------------------
    # PO documents
    # ------------------------------------------------------------------

    async def attach_document(
        self,
        po_id: str,
        content: bytes,
        filename: str,
        content_type: Optional[str] = None,
    ) -> PurchaseOrder:
        """Upload a PDF and attach it to the PO, replacing any previous one."""
        blobs = self._require_blob_store()
        async with self._mutation(f"attach_document:{po_id}"):
            po = self._require_po(po_id)
            stored = await blobs.upload(content, filename, self.owner_id, po.id, content_type)
            attachment = Attachment(url=stored.url, path=stored.path, name=filename)
            updated = po.model_copy(update={"attachment": attachment})
            try:
                await self._write(updated, _ATTACHMENT_COLUMNS)
            except StoreError:
                await self._discard_blob(stored.path)
                raise
            self.state.put_po(updated)

        logger.info("Document attached to PO %s: %s", po.po_number, stored.path)
        if po.attachment is not None and po.attachment.path != stored.path:
            await self._discard_blob(po.attachment.path)
        return updated

    async def remove_document(self, po_id: str) -> PurchaseOrder:
        async with self._mutation(f"remove_document:{po_id}"):
            po = self._require_po(po_id)
            if po.attachment is None:
                raise NotFoundError("document", po_id)
            updated = po.model_copy(update={"attachment": None})
            await self._write(updated, _ATTACHMENT_COLUMNS)
            self.state.put_po(updated)

        logger.info("Document removed from PO %s", po.po_number)
        await self._discard_blob(po.attachment.path)
        return updated

    async def download_document(self, po_id: str) -> BlobDownload:
        blobs = self._require_blob_store()
        po = self._require_po(po_id)
        if po.attachment is None:
            raise NotFoundError("document", po_id)
        return await blobs.download(po.attachment.path, po.attachment.name)

    # ------------------------------------------------------------------
    # Requirements
    # ------------------------------------------------------------------

    async def create_requirement(
        self,
        po_number: str,
        selected_items: Iterable[RequirementSelection],
        delivery_date: date,
        priority: str = PRIORITY_MEDIUM,
        notes: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Requirement:
        """
        Raise a requirement against a PO.

        Every selection is checked against the PO item's current balance
        before anything is written; the first failure is raised.  No balance
        is reserved here: balances only move when supply is recorded.
        """
        selections = list(selected_items)
        key = f"create_requirement:{po_number}:{delivery_date}:" + ",".join(
            f"{s.material_name}={s.quantity_required}" for s in selections
        )
        async with self._mutation(key):
            _validate_priority(priority)
            po = self.state.find_po_by_number(po_number)
            if po is None:
                raise NotFoundError("purchase order", po_number)
            if not selections:
                raise ValidationError(
                    INVALID_INPUT, "Select at least one material", field="selected_items"
                )

            seen: set[str] = set()
            items: list[RequirementItem] = []
            for sel in selections:
                if sel.material_name in seen:
                    raise ValidationError(
                        INVALID_INPUT,
                        f"Material '{sel.material_name}' selected more than once",
                        field="selected_items",
                        material_name=sel.material_name,
                    )
                seen.add(sel.material_name)
                po_item = po.get_item(sel.material_name)
                if po_item is None:
                    raise ValidationError(
                        INVALID_INPUT,
                        f"PO {po_number} has no item '{sel.material_name}'",
                        field="selected_items",
                        material_name=sel.material_name,
                    )
                validate_requirement_selection(po_item, sel.quantity_required)
                items.append(RequirementItem(
                    material_name=po_item.material_name,
                    quantity_required=sel.quantity_required,
                    quantity_supplied=0,
                    unit=po_item.unit,
                ))

            req = Requirement(
                id=generate_id("REQ"),
                owner=self.owner_id,
                po_number=po.po_number,
                area_of_application=po.area_of_application,
                delivery_date=delivery_date,
                priority=priority,
                status=derive_requirement_status(items),
                notes=notes,
                selected_items=items,
                created_at=_now(),
            )
            req = apply_urgency_promotion(req, self.urgency_threshold_days, today)
            await self.store.insert(TABLE_REQUIREMENTS, to_record(req))
            self.state.put_requirement(req)

        logger.info(
            "Requirement created: %s on PO %s (%d items, priority=%s)",
            req.id, req.po_number, len(req.selected_items), req.priority,
        )
        return req

    async def update_requirement(
        self,
        requirement_id: str,
        delivery_date: Optional[date] = None,
        priority: Optional[str] = None,
        notes=_UNSET,
        quantities: Optional[dict[str, int]] = None,
        today: Optional[date] = None,
    ) -> Requirement:
        """
        Edit a requirement's delivery date, priority, notes or required
        quantities.  Supplied totals and status are re-derived from the
        ledger afterwards, so lowering a quantity can complete it.  Raising
        one is checked against the PO item's balance like a new selection.
        """
        async with self._mutation(f"update_requirement:{requirement_id}"):
            req = self._require_requirement(requirement_id)
            update: dict = {}
            if priority is not None:
                _validate_priority(priority)
                update["priority"] = priority
            if delivery_date is not None:
                update["delivery_date"] = delivery_date
            if notes is not _UNSET:
                update["notes"] = notes
            if quantities:
                update["selected_items"] = _edited_requirement_items(req, quantities)
                self._check_increases(req, quantities)

            edited = req.model_copy(update=update)
            edited = reconcile_requirement(edited, self.state.ledger_for(req.id))
            edited = apply_urgency_promotion(edited, self.urgency_threshold_days, today)
            await self._write(
                edited, ["delivery_date", "priority", "notes", "selected_items", "status"]
            )
            self.state.put_requirement(edited)

        logger.info("Requirement updated: %s  status=%s priority=%s", edited.id, edited.status, edited.priority)
        return edited

    async def delete_requirement(self, requirement_id: str) -> int:
        """
        Delete a requirement and then every supply event recorded against it.

        Calling this again after a partial failure finishes the cascade,
        even when the requirement itself is already gone.  Returns the
        number of supply events removed.
        """
        async with self._mutation(f"delete_requirement:{requirement_id}"):
            req = self.state.get_requirement(requirement_id)
            events = self.state.ledger_for(requirement_id)
            if req is None and not events:
                raise NotFoundError("requirement", requirement_id)

            completed: list[str] = []
            if req is not None:
                await self.store.delete(TABLE_REQUIREMENTS, requirement_id)
                self.state.drop_requirement(requirement_id)
                completed.append(TABLE_REQUIREMENTS)

            removed = 0
            for event in events:
                try:
                    await self.store.delete(TABLE_SUPPLY_HISTORY, event.id)
                except StoreError as exc:
                    logger.error(
                        "Cascade delete of %s stopped at supply event %s "
                        "(%d of %d removed); retry to finish",
                        requirement_id, event.id, removed, len(events),
                    )
                    raise exc.after(completed) from exc
                self.state.drop_supply_event(event.id)
                removed += 1

        logger.info("Requirement deleted: %s (%d supply event(s) removed)", requirement_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Supply ledger
    # ------------------------------------------------------------------

    async def record_supply(
        self,
        requirement_id: str,
        material_name: str,
        quantity: int,
        notes: Optional[str] = None,
        supply_date: Optional[date] = None,
    ) -> SupplyResult:
        """
        Record a delivery against one requirement item.

        Writes, in order: the ledger entry, the requirement's supplied
        totals and status, then the balance of the matching PO item.  A
        missing PO or PO item is logged and skipped; the supply still
        counts towards the requirement.
        """
        async with self._mutation(f"record_supply:{requirement_id}:{material_name}:{quantity}"):
            req = self._require_requirement(requirement_id)
            item = req.get_item(material_name)
            if item is None:
                raise ValidationError(
                    INVALID_INPUT,
                    f"Requirement {requirement_id} has no item '{material_name}'",
                    field="material_name",
                    material_name=material_name,
                )
            validate_supply_amount(item, quantity)

            event = SupplyEvent(
                id=generate_id("SUPPLY"),
                owner=self.owner_id,
                requirement_id=req.id,
                po_number=req.po_number,
                material_name=material_name,
                quantity=quantity,
                date=supply_date or date.today(),
                notes=notes,
                created_at=_now(),
            )
            await self.store.insert(TABLE_SUPPLY_HISTORY, to_record(event))
            self.state.put_supply_event(event)

            updated = reconcile_requirement(req, self.state.ledger_for(req.id))
            from_ledger = updated.get_item(material_name).quantity_supplied
            incremental = item.quantity_supplied + quantity
            if from_ledger != incremental:
                logger.warning(
                    "Supplied total for %s/%s was out of step with the ledger "
                    "(cached+new=%d, ledger=%d); using the ledger",
                    req.id, material_name, incremental, from_ledger,
                )
            try:
                await self._write(updated, ["selected_items", "status"])
            except StoreError as exc:
                raise exc.after([TABLE_SUPPLY_HISTORY]) from exc
            self.state.put_requirement(updated)

            po = self._po_after_supply(updated.po_number, material_name, quantity)
            if po is not None:
                try:
                    await self._write(po, ["items"])
                except StoreError as exc:
                    raise exc.after([TABLE_SUPPLY_HISTORY, TABLE_REQUIREMENTS]) from exc
                self.state.put_po(po)

        logger.info(
            "Supply recorded: %s %s +%d → %d/%d (%s)",
            req.id, material_name, quantity, from_ledger, item.quantity_required, updated.status,
        )
        return SupplyResult(event=event, requirement=updated, purchase_order=po)

    def _po_after_supply(self, po_number: str, material_name: str, quantity: int) -> Optional[PurchaseOrder]:
        po = self.state.find_po_by_number(po_number)
        if po is None:
            logger.warning(
                "PO %s not found; balance for '%s' not updated", po_number, material_name
            )
            return None
        po_item = po.get_item(material_name)
        if po_item is None:
            logger.warning(
                "PO %s has no item '%s'; balance not updated", po_number, material_name
            )
            return None
        return _with_item_balance(po, material_name, compute_new_po_balance(po_item, quantity))

    async def edit_supply_history(self, edits: Iterable[SupplyEdit]) -> list[Requirement]:
        """
        Correct existing ledger entries, then recompute every requirement
        they belong to.  All edits are validated before the first write.
        PO balances are left as they are.
        """
        edits = list(edits)
        key = "edit_supply_history:" + ",".join(
            f"{e.id}={e.quantity}" for e in sorted(edits, key=lambda e: e.id)
        )
        async with self._mutation(key):
            changes: list[SupplyEvent] = []
            for edit in edits:
                event = self.state.get_supply_event(edit.id)
                if event is None:
                    raise NotFoundError("supply event", edit.id)
                if edit.quantity <= 0:
                    raise ValidationError(
                        OUT_OF_RANGE,
                        f"Supply quantity must be greater than zero (got {edit.quantity})",
                        field="quantity",
                        material_name=event.material_name,
                    )
                update: dict = {"quantity": edit.quantity}
                if edit.date is not None:
                    update["date"] = edit.date
                if edit.notes is not None:
                    update["notes"] = edit.notes
                changes.append(event.model_copy(update=update))

            completed: list[str] = []
            for changed in changes:
                try:
                    await self._write(changed, ["quantity", "date", "notes"])
                except StoreError as exc:
                    raise exc.after(completed) from exc
                self.state.put_supply_event(changed)
                completed = [TABLE_SUPPLY_HISTORY]

            touched = list(dict.fromkeys(c.requirement_id for c in changes))
            updated = await self._recompute(touched, completed)

        logger.info(
            "Supply history edited: %d entr%s, %d requirement(s) recomputed",
            len(changes), "y" if len(changes) == 1 else "ies", len(updated),
        )
        return updated

    async def delete_supply_event(self, event_id: str) -> Optional[Requirement]:
        """Remove one ledger entry and recompute its requirement."""
        async with self._mutation(f"delete_supply_event:{event_id}"):
            event = self.state.get_supply_event(event_id)
            if event is None:
                raise NotFoundError("supply event", event_id)
            await self.store.delete(TABLE_SUPPLY_HISTORY, event_id)
            self.state.drop_supply_event(event_id)
            updated = await self._recompute([event.requirement_id], [TABLE_SUPPLY_HISTORY])

        logger.info("Supply event deleted: %s (%s %d)", event_id, event.material_name, event.quantity)
        return updated[0] if updated else None

    async def _recompute(self, requirement_ids: list[str], completed: list[str]) -> list[Requirement]:
        updated = []
        for req_id in requirement_ids:
            req = self.state.get_requirement(req_id)
            if req is None:
                logger.warning("Supply events reference missing requirement %s", req_id)
                continue
            reconciled = reconcile_requirement(req, self.state.ledger_for(req_id))
            try:
                await self._write(reconciled, ["selected_items", "status"])
            except StoreError as exc:
                raise exc.after(completed) from exc
            self.state.put_requirement(reconciled)
            updated.append(reconciled)
            completed = [TABLE_SUPPLY_HISTORY, TABLE_REQUIREMENTS]
        return updated

    # ------------------------------------------------------------------
    # Urgency
    # ------------------------------------------------------------------

    async def run_urgency_sweep(self, today: Optional[date] = None) -> list[str]:
        """
        Promote every open requirement whose delivery date is close to
        Urgent.  Failed writes are logged and picked up by the next sweep.
        Returns the ids that were promoted.
        """
        async with self._mutation("urgency_sweep"):
            return await self._sweep(today)

    async def _sweep(self, today: Optional[date]) -> list[str]:
        promoted: list[str] = []
        for req in list(self.state.requirements):
            candidate = apply_urgency_promotion(req, self.urgency_threshold_days, today)
            if candidate is req:
                continue
            try:
                await self._write(candidate, ["priority"])
            except StoreError as exc:
                logger.warning("Could not promote %s to %s: %s", req.id, PRIORITY_URGENT, exc)
                continue
            self.state.put_requirement(candidate)
            promoted.append(req.id)
        if promoted:
            logger.info("Urgency sweep promoted %d requirement(s): %s", len(promoted), ", ".join(promoted))
        return promoted

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _mutation(self, key: str):
        if key in self._in_flight:
            raise DuplicateSubmissionError(key)
        self._in_flight.add(key)
        try:
            async with self._lock:
                yield
        finally:
            self._in_flight.discard(key)

    async def _write(self, entity, columns: Iterable[str]) -> None:
        """Persist *columns* of *entity*; a vanished record is a store failure."""
        table = table_for(entity)
        if not await self.store.update(table, entity.id, partial_record(entity, columns)):
            raise StoreError(
                f"{table}/{entity.id} no longer exists in the store",
                table=table,
                operation="update",
            )

    async def _discard_blob(self, path: str) -> None:
        if self.blob_store is None:
            return
        try:
            await self.blob_store.delete(path)
        except (StoreError, ValidationError) as exc:
            logger.warning("Could not delete document %s: %s", path, exc)

    def _require_po(self, po_id: str) -> PurchaseOrder:
        po = self.state.get_po(po_id)
        if po is None:
            raise NotFoundError("purchase order", po_id)
        return po

    def _require_requirement(self, requirement_id: str) -> Requirement:
        req = self.state.get_requirement(requirement_id)
        if req is None:
            raise NotFoundError("requirement", requirement_id)
        return req

    def _check_increases(self, req: Requirement, quantities: dict[str, int]) -> None:
        """
        A raised quantity must still fit the PO item's balance, counting
        only what is left to supply.  Skipped when the PO reference dangles.
        """
        po = self.state.find_po_by_number(req.po_number)
        for name, qty in quantities.items():
            item = req.get_item(name)
            if qty <= item.quantity_required:
                continue
            po_item = find_po_item(po, name)
            if po_item is None:
                logger.warning(
                    "Requirement %s: cannot check '%s' against missing PO %s",
                    req.id, name, req.po_number,
                )
                continue
            validate_requirement_selection(po_item, qty - item.quantity_supplied)

    def _require_blob_store(self) -> BlobStore:
        if self.blob_store is None:
            raise StoreError("Document storage is not configured", operation="upload")
        return self.blob_store


# ----------------------------------------------------------------------
# Input validation
# ----------------------------------------------------------------------

def _validate_priority(priority: str) -> None:
    if priority not in ALL_PRIORITIES:
        raise ValidationError(
            INVALID_INPUT,
            f"Priority must be one of {', '.join(ALL_PRIORITIES)} (got {priority!r})",
            field="priority",
        )


def _validate_po_header(po_number: str, items: list[POItemInput]) -> None:
    if not po_number:
        raise ValidationError(INVALID_INPUT, "PO number is required", field="po_number")
    if not items:
        raise ValidationError(INVALID_INPUT, "Add at least one material", field="items")
    seen: set[str] = set()
    for item in items:
        name = (item.material_name or "").strip()
        if not name:
            raise ValidationError(INVALID_INPUT, "Material name is required", field="items")
        if name in seen:
            raise ValidationError(
                INVALID_INPUT,
                f"Material '{name}' appears more than once",
                field="items",
                material_name=name,
            )
        seen.add(name)
        if item.quantity < 0:
            raise ValidationError(
                INVALID_INPUT,
                f"Quantity for '{name}' cannot be negative",
                field="quantity",
                material_name=name,
            )


def _edited_items(po: PurchaseOrder, items: list[POItemInput]) -> list[POItem]:
    _validate_po_header(po.po_number, items)
    edited = []
    for i in items:
        name = i.material_name.strip()
        if i.balance_qty is not None:
            balance = i.balance_qty
        else:
            existing = po.get_item(name)
            balance = min(existing.balance_qty, i.quantity) if existing else i.quantity
        if not 0 <= balance <= i.quantity:
            raise ValidationError(
                OUT_OF_RANGE,
                f"Balance for '{name}' must be between 0 and {i.quantity} (got {balance})",
                field="balance_qty",
                material_name=name,
            )
        edited.append(POItem(material_name=name, quantity=i.quantity, balance_qty=balance, unit=i.unit))
    return edited


def _edited_requirement_items(req: Requirement, quantities: dict[str, int]) -> list[RequirementItem]:
    for name, qty in quantities.items():
        if req.get_item(name) is None:
            raise ValidationError(
                INVALID_INPUT,
                f"Requirement {req.id} has no item '{name}'",
                field="selected_items",
                material_name=name,
            )
        if qty <= 0:
            raise ValidationError(
                OUT_OF_RANGE,
                f"Required quantity for '{name}' must be greater than zero (got {qty})",
                field="quantity_required",
                material_name=name,
            )
    return [
        i.model_copy(update={"quantity_required": quantities[i.material_name]})
        if i.material_name in quantities else i
        for i in req.selected_items
    ]


def _with_item_balance(po: PurchaseOrder, material_name: str, balance: int) -> PurchaseOrder:
    return po.model_copy(update={
        "items": [
            i.model_copy(update={"balance_qty": balance}) if i.material_name == material_name else i
            for i in po.items
        ]
    })
