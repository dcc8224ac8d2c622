from datetime import date, datetime
from typing import Literal, Optional, List

from pydantic import Field

from .purchase_order import CamelModel, Unit


Priority = Literal["Low", "Medium", "High", "Urgent"]
RequirementStatus = Literal["Pending", "In Progress", "Completed"]

PRIORITY_LOW    = "Low"
PRIORITY_MEDIUM = "Medium"
PRIORITY_HIGH   = "High"
PRIORITY_URGENT = "Urgent"
ALL_PRIORITIES  = (PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_HIGH, PRIORITY_URGENT)

STATUS_PENDING     = "Pending"
STATUS_IN_PROGRESS = "In Progress"
STATUS_COMPLETED   = "Completed"
ALL_STATUSES       = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED)


class RequirementItem(CamelModel):
    """A material selected from a PO, with its required and supplied quantities."""
    material_name: str
    quantity_required: int = Field(ge=0)
    quantity_supplied: int = Field(default=0, ge=0)   # cache, re-derivable from the ledger
    unit: Unit = "pcs"

    @property
    def remaining(self) -> int:
        return max(0, self.quantity_required - self.quantity_supplied)


class Requirement(CamelModel):
    """
    A material requirement raised against a PO.

    po_number is a reference by value: the PO may later be edited or
    deleted, leaving the reference dangling.  status is always derived from
    selected_items and never set directly by callers.
    """
    id: str
    owner: str
    po_number: str
    area_of_application: str = ""
    delivery_date: date
    priority: Priority = PRIORITY_MEDIUM
    status: RequirementStatus = STATUS_PENDING
    notes: Optional[str] = None
    selected_items: List[RequirementItem] = Field(default_factory=list)
    created_at: datetime

    def get_item(self, material_name: str) -> Optional[RequirementItem]:
        return next(
            (i for i in self.selected_items if i.material_name == material_name), None
        )

    @property
    def total_required(self) -> int:
        return sum(i.quantity_required for i in self.selected_items)

    @property
    def total_supplied(self) -> int:
        return sum(i.quantity_supplied for i in self.selected_items)
