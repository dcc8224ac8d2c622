import datetime as dt
from typing import Optional

from pydantic import Field

from .purchase_order import CamelModel


class SupplyEvent(CamelModel):
    """
    One entry of the append-only supply ledger.

    quantity is the incremental amount delivered in this event.  The sum of
    quantities per (requirement_id, material_name) is the authoritative
    supplied total for that requirement item.
    """
    id: str
    owner: str
    requirement_id: str
    po_number: str = ""                     # denormalised copy
    material_name: str
    quantity: int = Field(gt=0)
    date: dt.date
    notes: Optional[str] = None
    created_at: dt.datetime
