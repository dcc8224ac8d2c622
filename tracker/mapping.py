"""
Mapping between entity models and entity-store records.

Store records use the column names of the hosted tables (``user_id``,
``req_id``, ``pdf_file_url`` …) with item arrays embedded as JSON objects
with snake_case keys.  ``from_record(table, to_record(model)) == model``
for every entity.
"""
import datetime as dt
from typing import Any, Iterable, Optional, Union

from models.purchase_order import Attachment, POItem, PurchaseOrder
from models.requirement import Requirement, RequirementItem
from models.supply import SupplyEvent

TABLE_PURCHASE_ORDERS = "purchase_orders"
TABLE_REQUIREMENTS    = "requirements"
TABLE_SUPPLY_HISTORY  = "supply_history"
ALL_TABLES = (TABLE_PURCHASE_ORDERS, TABLE_REQUIREMENTS, TABLE_SUPPLY_HISTORY)

Entity = Union[PurchaseOrder, Requirement, SupplyEvent]

_MODEL_TABLES: dict[type, str] = {
    PurchaseOrder: TABLE_PURCHASE_ORDERS,
    Requirement:   TABLE_REQUIREMENTS,
    SupplyEvent:   TABLE_SUPPLY_HISTORY,
}


def table_for(entity: Entity) -> str:
    return _MODEL_TABLES[type(entity)]


# ------------------------------------------------------------------
# Model -> record
# ------------------------------------------------------------------

def to_record(entity: Entity) -> dict[str, Any]:
    """Serialise an entity to a store record."""
    if isinstance(entity, PurchaseOrder):
        return _po_to_record(entity)
    if isinstance(entity, Requirement):
        return _requirement_to_record(entity)
    if isinstance(entity, SupplyEvent):
        return _supply_to_record(entity)
    raise TypeError(f"Not an entity: {type(entity).__name__}")


def partial_record(entity: Entity, columns: Iterable[str]) -> dict[str, Any]:
    """Return only the given store columns of *entity*'s record (an update patch)."""
    record = to_record(entity)
    wanted = set(columns)
    unknown = wanted - record.keys()
    if unknown:
        raise KeyError(f"Unknown columns for {table_for(entity)}: {sorted(unknown)}")
    return {k: v for k, v in record.items() if k in wanted}


def po_items_to_record(items: Iterable[POItem]) -> list[dict]:
    return [
        {
            "material_name": i.material_name,
            "quantity":      i.quantity,
            "balance_qty":   i.balance_qty,
            "unit":          i.unit,
        }
        for i in items
    ]


def requirement_items_to_record(items: Iterable[RequirementItem]) -> list[dict]:
    return [
        {
            "material_name":     i.material_name,
            "quantity_required": i.quantity_required,
            "quantity_supplied": i.quantity_supplied,
            "unit":              i.unit,
        }
        for i in items
    ]


def _po_to_record(po: PurchaseOrder) -> dict[str, Any]:
    att = po.attachment
    return {
        "id":                  po.id,
        "user_id":             po.owner,
        "po_number":           po.po_number,
        "po_date":             po.po_date.isoformat(),
        "area_of_application": po.area_of_application,
        "items":               po_items_to_record(po.items),
        "pdf_file_url":        att.url if att else None,
        "pdf_file_name":       att.name if att else None,
        "pdf_file_path":       att.path if att else None,
        "created_at":          po.created_at.isoformat(),
    }


def _requirement_to_record(req: Requirement) -> dict[str, Any]:
    return {
        "id":                  req.id,
        "user_id":             req.owner,
        "po_number":           req.po_number,
        "area_of_application": req.area_of_application,
        "delivery_date":       req.delivery_date.isoformat(),
        "priority":            req.priority,
        "status":              req.status,
        "notes":               req.notes,
        "selected_items":      requirement_items_to_record(req.selected_items),
        "created_at":          req.created_at.isoformat(),
    }


def _supply_to_record(event: SupplyEvent) -> dict[str, Any]:
    return {
        "id":            event.id,
        "user_id":       event.owner,
        "req_id":        event.requirement_id,
        "po_number":     event.po_number,
        "material_name": event.material_name,
        "quantity":      event.quantity,
        "date":          event.date.isoformat(),
        "notes":         event.notes,
        "created_at":    event.created_at.isoformat(),
    }


# ------------------------------------------------------------------
# Record -> model
# ------------------------------------------------------------------

def from_record(table: str, record: dict[str, Any]) -> Entity:
    """
    Build an entity from a store record.  Raises pydantic.ValidationError
    for records that do not fit the model.
    """
    if table == TABLE_PURCHASE_ORDERS:
        return _po_from_record(record)
    if table == TABLE_REQUIREMENTS:
        return _requirement_from_record(record)
    if table == TABLE_SUPPLY_HISTORY:
        return _supply_from_record(record)
    raise ValueError(f"Unknown table {table!r}")


def _po_from_record(r: dict[str, Any]) -> PurchaseOrder:
    attachment: Optional[Attachment] = None
    if r.get("pdf_file_url") or r.get("pdf_file_path"):
        attachment = Attachment(
            url=r.get("pdf_file_url") or "",
            path=r.get("pdf_file_path") or "",
            name=r.get("pdf_file_name") or "",
        )
    return PurchaseOrder(
        id=r["id"],
        owner=r["user_id"],
        po_number=r["po_number"],
        po_date=_parse_date(r["po_date"]),
        area_of_application=r.get("area_of_application") or "",
        items=[
            POItem(
                material_name=i["material_name"],
                quantity=i["quantity"],
                balance_qty=i.get("balance_qty", i["quantity"]),
                unit=i.get("unit") or "pcs",
            )
            for i in (r.get("items") or [])
        ],
        attachment=attachment,
        created_at=_parse_datetime(r["created_at"]),
    )


def _requirement_from_record(r: dict[str, Any]) -> Requirement:
    return Requirement(
        id=r["id"],
        owner=r["user_id"],
        po_number=r["po_number"],
        area_of_application=r.get("area_of_application") or "",
        delivery_date=_parse_date(r["delivery_date"]),
        priority=r["priority"],
        status=r["status"],
        notes=r.get("notes"),
        selected_items=[
            RequirementItem(
                material_name=i["material_name"],
                quantity_required=i["quantity_required"],
                quantity_supplied=i.get("quantity_supplied") or 0,
                unit=i.get("unit") or "pcs",
            )
            for i in (r.get("selected_items") or [])
        ],
        created_at=_parse_datetime(r["created_at"]),
    )


def _supply_from_record(r: dict[str, Any]) -> SupplyEvent:
    return SupplyEvent(
        id=r["id"],
        owner=r["user_id"],
        requirement_id=r["req_id"],
        po_number=r.get("po_number") or "",
        material_name=r["material_name"],
        quantity=r["quantity"],
        date=_parse_date(r["date"]),
        notes=r.get("notes"),
        created_at=_parse_datetime(r["created_at"]),
    )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _parse_date(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value).strip()
    # Older rows carry DD/MM/YYYY from the display format
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return dt.datetime.strptime(text[:10], fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised date: {value!r}")


def _parse_datetime(value: Any) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return value
    return dt.datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
