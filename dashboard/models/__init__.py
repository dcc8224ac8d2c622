"""
Pydantic models for dashboard API requests.

Request bodies use camelCase keys (same as responses); snake_case is
accepted too.
"""
import datetime as dt
from typing import Optional

from pydantic import Field

from models.inputs import POItemInput, RequirementSelection, SupplyEdit
from models.purchase_order import CamelModel


class POCreate(CamelModel):
    po_number: str
    po_date: dt.date
    area_of_application: str = ""
    items: list[POItemInput]


class POUpdate(CamelModel):
    po_number: Optional[str] = None
    po_date: Optional[dt.date] = None
    area_of_application: Optional[str] = None
    items: Optional[list[POItemInput]] = None


class BalanceUpdate(CamelModel):
    material_name: str
    balance_qty: int


class RequirementCreate(CamelModel):
    po_number: str
    delivery_date: dt.date
    priority: str = "Medium"
    notes: Optional[str] = None
    selected_items: list[RequirementSelection]


class RequirementUpdate(CamelModel):
    delivery_date: Optional[dt.date] = None
    priority: Optional[str] = None
    notes: Optional[str] = None
    quantities: Optional[dict[str, int]] = None   # material name → new required quantity


class SupplyCreate(CamelModel):
    material_name: str
    quantity: int
    notes: Optional[str] = None
    date: Optional[dt.date] = None


class SupplyHistoryUpdate(CamelModel):
    edits: list[SupplyEdit] = Field(default_factory=list)
