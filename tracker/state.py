"""
In-memory snapshot of one owner's data.

The coordinator is the only writer; everything else reads.  Lists keep
store order (oldest first).
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from models.purchase_order import PurchaseOrder
from models.requirement import Requirement
from models.supply import SupplyEvent
from .errors import ConsistencyError

logger = logging.getLogger(__name__)


@dataclass
class TrackerState:
    owner_id: str
    purchase_orders: list[PurchaseOrder] = field(default_factory=list)
    requirements: list[Requirement] = field(default_factory=list)
    supply_history: list[SupplyEvent] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_po(self, po_id: str) -> Optional[PurchaseOrder]:
        return next((p for p in self.purchase_orders if p.id == po_id), None)

    def find_po_by_number(self, po_number: str) -> Optional[PurchaseOrder]:
        """First PO carrying *po_number*.  PO numbers are not enforced unique."""
        return next((p for p in self.purchase_orders if p.po_number == po_number), None)

    def get_requirement(self, requirement_id: str) -> Optional[Requirement]:
        return next((r for r in self.requirements if r.id == requirement_id), None)

    def get_supply_event(self, event_id: str) -> Optional[SupplyEvent]:
        return next((e for e in self.supply_history if e.id == event_id), None)

    def ledger_for(self, requirement_id: str) -> list[SupplyEvent]:
        return [e for e in self.supply_history if e.requirement_id == requirement_id]

    def orphaned_events(self) -> list[SupplyEvent]:
        """Ledger entries whose requirement is no longer in the snapshot."""
        known = {r.id for r in self.requirements}
        return [e for e in self.supply_history if e.requirement_id not in known]

    def check_references(self) -> list[ConsistencyError]:
        """
        Report requirements pointing at a PO number that no longer exists, or
        at a material the PO no longer carries.  Nothing is repaired.
        """
        problems: list[ConsistencyError] = []
        for req in self.requirements:
            po = self.find_po_by_number(req.po_number)
            if po is None:
                problems.append(ConsistencyError(
                    f"Requirement {req.id} references missing PO {req.po_number}",
                    po_number=req.po_number,
                ))
                continue
            for item in req.selected_items:
                if po.get_item(item.material_name) is None:
                    problems.append(ConsistencyError(
                        f"Requirement {req.id}: PO {req.po_number} has no item "
                        f"'{item.material_name}'",
                        po_number=req.po_number,
                        material_name=item.material_name,
                    ))
        return problems

    # ------------------------------------------------------------------
    # Replacement (coordinator only)
    # ------------------------------------------------------------------

    def put_po(self, po: PurchaseOrder) -> None:
        self.purchase_orders = _replace_or_append(self.purchase_orders, po)

    def put_requirement(self, req: Requirement) -> None:
        self.requirements = _replace_or_append(self.requirements, req)

    def put_supply_event(self, event: SupplyEvent) -> None:
        self.supply_history = _replace_or_append(self.supply_history, event)

    def drop_po(self, po_id: str) -> None:
        self.purchase_orders = [p for p in self.purchase_orders if p.id != po_id]

    def drop_requirement(self, requirement_id: str) -> None:
        self.requirements = [r for r in self.requirements if r.id != requirement_id]

    def drop_supply_event(self, event_id: str) -> None:
        self.supply_history = [e for e in self.supply_history if e.id != event_id]


def _replace_or_append(items: list, entity) -> list:
    out = [entity if x.id == entity.id else x for x in items]
    if not any(x.id == entity.id for x in items):
        out.append(entity)
    return out
