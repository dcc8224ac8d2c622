from datetime import date, datetime
from typing import Literal, Optional, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Unit = Literal["pcs", "kgs", "set"]


class CamelModel(BaseModel):
    """Base for entities: snake_case attributes, camelCase JSON for the dashboard."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class POItem(CamelModel):
    """A single material line on a Purchase Order."""
    material_name: str
    quantity: int = Field(ge=0)             # total ordered
    balance_qty: int = Field(ge=0)          # remaining un-allocated stock
    unit: Unit = "pcs"


class Attachment(CamelModel):
    """Opaque reference to a document held by the blob store."""
    url: str
    path: str
    name: str


class PurchaseOrder(CamelModel):
    """
    A Purchase Order owned by one user.
    po_number is human-facing; requirements reference POs by this value.
    """
    id: str
    owner: str
    po_number: str
    po_date: date
    area_of_application: str = ""
    items: List[POItem] = Field(default_factory=list)
    attachment: Optional[Attachment] = None
    created_at: datetime

    def get_item(self, material_name: str) -> Optional[POItem]:
        """Return the item for *material_name*, or None."""
        return next((i for i in self.items if i.material_name == material_name), None)
