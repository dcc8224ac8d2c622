"""
Supply reconciliation engine.

Pure functions that derive cached state from a consistent snapshot:

  Status:     requirement status from supplied / required quantities
  Ledger:     per-item supplied totals recomputed from supply history
  Priority:   one-way promotion to Urgent as the delivery date approaches
  Balance:    PO balance after a supply, floored at zero
  Validation: supply amounts and requirement selections

Nothing here touches the entity store.  Validation failures raise
ValidationError; everything else returns new objects and leaves its
inputs untouched.
"""
import logging
from datetime import date
from typing import Iterable, Optional

from models.purchase_order import POItem, PurchaseOrder
from models.requirement import (
    PRIORITY_URGENT,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    Requirement,
    RequirementItem,
)
from models.supply import SupplyEvent
from .errors import (
    EXCEEDS_AVAILABLE,
    NO_STOCK,
    OUT_OF_RANGE,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_URGENCY_THRESHOLD_DAYS = 5


# ------------------------------------------------------------------
# Status
# ------------------------------------------------------------------

def derive_requirement_status(items: Iterable[RequirementItem]) -> str:
    """
    Completed when every item is satisfied, In Progress when something has
    been supplied, otherwise Pending.

    An item with quantity_required == 0 counts as satisfied.
    """
    items = list(items)
    if all(i.quantity_supplied >= i.quantity_required for i in items):
        return STATUS_COMPLETED
    if any(i.quantity_supplied > 0 for i in items):
        return STATUS_IN_PROGRESS
    return STATUS_PENDING


# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------

def ledger_total(
    ledger: Iterable[SupplyEvent],
    requirement_id: str,
    material_name: str,
) -> int:
    """Sum of ledger quantities for one requirement item."""
    return sum(
        e.quantity for e in ledger
        if e.requirement_id == requirement_id and e.material_name == material_name
    )


def recalculate_supplied_quantities(
    requirement: Requirement,
    ledger: Iterable[SupplyEvent],
) -> list[RequirementItem]:
    """
    Return the requirement's items with quantity_supplied rebuilt from the
    ledger.  This is the recovery path for any drift in the cached totals.
    """
    totals: dict[str, int] = {}
    for e in ledger:
        if e.requirement_id == requirement.id:
            totals[e.material_name] = totals.get(e.material_name, 0) + e.quantity

    return [
        item.model_copy(update={"quantity_supplied": totals.get(item.material_name, 0)})
        for item in requirement.selected_items
    ]


def reconcile_requirement(
    requirement: Requirement,
    ledger: Iterable[SupplyEvent],
) -> Requirement:
    """Recompute supplied quantities and status for one requirement."""
    items = recalculate_supplied_quantities(requirement, ledger)
    return requirement.model_copy(update={
        "selected_items": items,
        "status": derive_requirement_status(items),
    })


def has_drifted(cached: Requirement, reconciled: Requirement) -> bool:
    """True when the cached supplied totals or status differ from the ledger view."""
    if cached.status != reconciled.status:
        return True
    return [i.quantity_supplied for i in cached.selected_items] != [
        i.quantity_supplied for i in reconciled.selected_items
    ]


# ------------------------------------------------------------------
# Priority
# ------------------------------------------------------------------

def days_until_delivery(delivery_date: date, today: Optional[date] = None) -> int:
    today = today or date.today()
    return (delivery_date - today).days


def is_delivery_due_soon(
    delivery_date: date,
    threshold_days: int = DEFAULT_URGENCY_THRESHOLD_DAYS,
    today: Optional[date] = None,
) -> bool:
    """True when delivery is today or within *threshold_days*, but not already past."""
    days = days_until_delivery(delivery_date, today)
    return 0 <= days <= threshold_days


def apply_urgency_promotion(
    requirement: Requirement,
    threshold_days: int = DEFAULT_URGENCY_THRESHOLD_DAYS,
    today: Optional[date] = None,
) -> Requirement:
    """
    Promote an open requirement to Urgent when its delivery date is close.

    Never demotes and never touches a Completed requirement, so applying it
    repeatedly is the same as applying it once.  Returns the input object
    unchanged when there is nothing to do.
    """
    if requirement.status == STATUS_COMPLETED:
        return requirement
    if requirement.priority == PRIORITY_URGENT:
        return requirement
    if not is_delivery_due_soon(requirement.delivery_date, threshold_days, today):
        return requirement
    return requirement.model_copy(update={"priority": PRIORITY_URGENT})


# ------------------------------------------------------------------
# Balance
# ------------------------------------------------------------------

def compute_new_po_balance(item: POItem, supplied_qty: int) -> int:
    """
    Balance after supplying *supplied_qty*.  Oversupply is clamped at zero
    because balance and requirement allocation are tracked separately.
    """
    return max(0, item.balance_qty - supplied_qty)


def find_po_item(po: Optional[PurchaseOrder], material_name: str) -> Optional[POItem]:
    if po is None:
        return None
    return po.get_item(material_name)


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

def validate_supply_amount(item: RequirementItem, requested_qty: int) -> None:
    """Reject a supply that is not positive or exceeds what is still required."""
    remaining = item.quantity_required - item.quantity_supplied
    if requested_qty <= 0:
        raise ValidationError(
            OUT_OF_RANGE,
            f"Supply quantity must be greater than zero (got {requested_qty})",
            field="quantity",
            material_name=item.material_name,
        )
    if requested_qty > remaining:
        raise ValidationError(
            OUT_OF_RANGE,
            f"Supply quantity {requested_qty} exceeds remaining requirement "
            f"{max(remaining, 0)} for '{item.material_name}'",
            field="quantity",
            material_name=item.material_name,
        )


def validate_requirement_selection(po_item: POItem, requested_qty: int) -> None:
    """
    Reject a requirement quantity the PO item cannot cover.

    NoStock is reported separately from ExceedsAvailable so the form can
    tell an exhausted item from an over-large request.
    """
    if po_item.balance_qty == 0:
        raise ValidationError(
            NO_STOCK,
            f"No balance left on PO for '{po_item.material_name}'",
            field="quantity_required",
            material_name=po_item.material_name,
        )
    if requested_qty <= 0 or requested_qty > po_item.balance_qty:
        raise ValidationError(
            EXCEEDS_AVAILABLE,
            f"Requested {requested_qty} of '{po_item.material_name}' but only "
            f"{po_item.balance_qty} {po_item.unit} available",
            field="quantity_required",
            material_name=po_item.material_name,
        )
