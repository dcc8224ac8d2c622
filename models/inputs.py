"""
Input shapes accepted by the mutation coordinator.

These carry only what a user types into a form; derived fields
(balance_qty on create, quantity_supplied, status) are filled in by the
coordinator.
"""
import datetime as dt
from typing import Optional

from .purchase_order import CamelModel, Unit


class POItemInput(CamelModel):
    """A material line entered on the PO form."""
    material_name: str
    quantity: int
    unit: Unit = "pcs"
    balance_qty: Optional[int] = None   # only honoured on PO edit


class RequirementSelection(CamelModel):
    """A PO item picked for a requirement, with the quantity needed."""
    material_name: str
    quantity_required: int


class SupplyEdit(CamelModel):
    """A correction to one existing ledger entry."""
    id: str
    quantity: int
    date: Optional[dt.date] = None
    notes: Optional[str] = None
