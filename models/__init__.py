from .purchase_order import PurchaseOrder, POItem, Attachment, Unit
from .requirement import (
    Requirement, RequirementItem, Priority, RequirementStatus,
    PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_HIGH, PRIORITY_URGENT,
    STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED,
)
from .supply import SupplyEvent
from .inputs import POItemInput, RequirementSelection, SupplyEdit

__all__ = [
    "PurchaseOrder", "POItem", "Attachment", "Unit",
    "Requirement", "RequirementItem", "Priority", "RequirementStatus",
    "PRIORITY_LOW", "PRIORITY_MEDIUM", "PRIORITY_HIGH", "PRIORITY_URGENT",
    "STATUS_PENDING", "STATUS_IN_PROGRESS", "STATUS_COMPLETED",
    "SupplyEvent",
    "POItemInput", "RequirementSelection", "SupplyEdit",
]
