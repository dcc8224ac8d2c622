"""
Unit tests for the reconciliation engine.
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from models.purchase_order import POItem
from models.requirement import Requirement, RequirementItem
from models.supply import SupplyEvent
from tracker.errors import EXCEEDS_AVAILABLE, NO_STOCK, OUT_OF_RANGE, ValidationError
from tracker.reconciler import (
    apply_urgency_promotion,
    compute_new_po_balance,
    derive_requirement_status,
    has_drifted,
    is_delivery_due_soon,
    ledger_total,
    recalculate_supplied_quantities,
    reconcile_requirement,
    validate_requirement_selection,
    validate_supply_amount,
)

TODAY = date(2024, 6, 10)
CREATED = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)


def _item(name="Brick A", required=40, supplied=0) -> RequirementItem:
    return RequirementItem(material_name=name, quantity_required=required, quantity_supplied=supplied)


def _requirement(items=None, priority="Medium", status="Pending", delivery=None) -> Requirement:
    return Requirement(
        id="REQ-1",
        owner="user-1",
        po_number="PO-100",
        delivery_date=delivery or TODAY + timedelta(days=30),
        priority=priority,
        status=status,
        selected_items=items if items is not None else [_item()],
        created_at=CREATED,
    )


def _event(qty, name="Brick A", req_id="REQ-1", event_id=None) -> SupplyEvent:
    return SupplyEvent(
        id=event_id or f"SUPPLY-{name}-{qty}",
        owner="user-1",
        requirement_id=req_id,
        po_number="PO-100",
        material_name=name,
        quantity=qty,
        date=TODAY,
        created_at=CREATED,
    )


@pytest.mark.unit
class TestDeriveRequirementStatus:
    """Status is a pure function of the items."""

    def test_nothing_supplied_is_pending(self):
        assert derive_requirement_status([_item(supplied=0)]) == "Pending"

    def test_partial_supply_is_in_progress(self):
        items = [_item("Brick A", 40, 40), _item("Mortar B", 10, 0)]
        assert derive_requirement_status(items) == "In Progress"

    def test_all_satisfied_is_completed(self):
        items = [_item("Brick A", 40, 40), _item("Mortar B", 10, 12)]
        assert derive_requirement_status(items) == "Completed"

    def test_zero_required_item_counts_as_satisfied(self):
        items = [_item("Brick A", 40, 40), _item("Mortar B", 0, 0)]
        assert derive_requirement_status(items) == "Completed"

    def test_empty_items_is_completed(self):
        assert derive_requirement_status([]) == "Completed"

    def test_same_input_same_output(self):
        items = [_item("Brick A", 40, 10)]
        assert derive_requirement_status(items) == derive_requirement_status(list(items))


@pytest.mark.unit
class TestLedgerRecalculation:
    """Supplied totals are rebuilt from the supply ledger."""

    def test_sums_per_material(self):
        req = _requirement([_item("Brick A", 40), _item("Mortar B", 10)])
        ledger = [_event(10, event_id="S1"), _event(15, event_id="S2"), _event(4, "Mortar B", event_id="S3")]

        items = recalculate_supplied_quantities(req, ledger)

        assert [i.quantity_supplied for i in items] == [25, 4]

    def test_ignores_other_requirements(self):
        req = _requirement()
        ledger = [_event(10, event_id="S1"), _event(30, req_id="REQ-2", event_id="S2")]

        items = recalculate_supplied_quantities(req, ledger)

        assert items[0].quantity_supplied == 10

    def test_item_without_entries_resets_to_zero(self):
        req = _requirement([_item(supplied=35)])
        assert recalculate_supplied_quantities(req, [])[0].quantity_supplied == 0

    def test_input_requirement_untouched(self):
        req = _requirement([_item(supplied=0)])
        recalculate_supplied_quantities(req, [_event(10)])
        assert req.selected_items[0].quantity_supplied == 0

    def test_ledger_total(self):
        ledger = [_event(10, event_id="S1"), _event(5, event_id="S2"), _event(7, "Mortar B", event_id="S3")]
        assert ledger_total(ledger, "REQ-1", "Brick A") == 15
        assert ledger_total(ledger, "REQ-1", "Mortar B") == 7
        assert ledger_total(ledger, "REQ-9", "Brick A") == 0

    def test_reconcile_sets_supplied_and_status(self):
        req = _requirement([_item(required=40, supplied=0)])

        reconciled = reconcile_requirement(req, [_event(40)])

        assert reconciled.selected_items[0].quantity_supplied == 40
        assert reconciled.status == "Completed"

    def test_has_drifted(self):
        cached = _requirement([_item(required=40, supplied=40)], status="Completed")
        reconciled = reconcile_requirement(cached, [_event(20)])

        assert has_drifted(cached, reconciled) is True
        assert has_drifted(reconciled, reconcile_requirement(reconciled, [_event(20)])) is False


@pytest.mark.unit
class TestUrgencyPromotion:
    """Promotion to Urgent near the delivery date."""

    def test_within_threshold_promoted(self):
        req = _requirement(delivery=TODAY + timedelta(days=3))
        assert apply_urgency_promotion(req, 5, TODAY).priority == "Urgent"

    def test_due_today_promoted(self):
        req = _requirement(delivery=TODAY)
        assert apply_urgency_promotion(req, 5, TODAY).priority == "Urgent"

    def test_threshold_boundary_inclusive(self):
        req = _requirement(delivery=TODAY + timedelta(days=5))
        assert apply_urgency_promotion(req, 5, TODAY).priority == "Urgent"
        later = _requirement(delivery=TODAY + timedelta(days=6))
        assert apply_urgency_promotion(later, 5, TODAY).priority == "Medium"

    def test_past_due_not_promoted(self):
        req = _requirement(delivery=TODAY - timedelta(days=1))
        assert apply_urgency_promotion(req, 5, TODAY).priority == "Medium"

    def test_completed_never_promoted(self):
        req = _requirement([_item(supplied=40)], status="Completed", delivery=TODAY + timedelta(days=1))
        assert apply_urgency_promotion(req, 5, TODAY) is req

    def test_never_demotes(self):
        req = _requirement(priority="Urgent", delivery=TODAY + timedelta(days=60))
        assert apply_urgency_promotion(req, 5, TODAY).priority == "Urgent"

    def test_idempotent(self):
        req = _requirement(priority="Low", delivery=TODAY + timedelta(days=2))
        once = apply_urgency_promotion(req, 5, TODAY)
        twice = apply_urgency_promotion(once, 5, TODAY)
        assert once == twice
        assert twice is once

    def test_unchanged_returns_same_object(self):
        req = _requirement(delivery=TODAY + timedelta(days=30))
        assert apply_urgency_promotion(req, 5, TODAY) is req

    def test_is_delivery_due_soon(self):
        assert is_delivery_due_soon(TODAY + timedelta(days=2), 5, TODAY) is True
        assert is_delivery_due_soon(TODAY + timedelta(days=9), 5, TODAY) is False
        assert is_delivery_due_soon(TODAY - timedelta(days=2), 5, TODAY) is False


@pytest.mark.unit
class TestPOBalance:

    @pytest.mark.parametrize("balance,supplied,expected", [
        (100, 40, 60),
        (40, 40, 0),
        (10, 25, 0),
        (0, 5, 0),
    ])
    def test_balance_floor(self, balance, supplied, expected):
        item = POItem(material_name="Brick A", quantity=100, balance_qty=balance)
        assert compute_new_po_balance(item, supplied) == expected


@pytest.mark.unit
class TestValidation:
    """Validation gates for supply amounts and requirement selections."""

    def test_supply_within_remaining_accepted(self):
        validate_supply_amount(_item(required=40, supplied=10), 30)

    @pytest.mark.parametrize("qty", [0, -5, 31])
    def test_supply_out_of_range(self, qty):
        with pytest.raises(ValidationError) as exc:
            validate_supply_amount(_item(required=40, supplied=10), qty)
        assert exc.value.code == OUT_OF_RANGE
        assert exc.value.material_name == "Brick A"

    def test_supply_against_completed_item_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_supply_amount(_item(required=40, supplied=40), 1)
        assert exc.value.code == OUT_OF_RANGE

    def test_selection_within_balance_accepted(self):
        validate_requirement_selection(POItem(material_name="Brick A", quantity=100, balance_qty=60), 60)

    def test_selection_exceeds_available(self):
        po_item = POItem(material_name="Brick A", quantity=100, balance_qty=100)
        with pytest.raises(ValidationError) as exc:
            validate_requirement_selection(po_item, 150)
        assert exc.value.code == EXCEEDS_AVAILABLE
        assert exc.value.to_dict()["materialName"] == "Brick A"

    def test_selection_zero_rejected(self):
        po_item = POItem(material_name="Brick A", quantity=100, balance_qty=100)
        with pytest.raises(ValidationError) as exc:
            validate_requirement_selection(po_item, 0)
        assert exc.value.code == EXCEEDS_AVAILABLE

    def test_no_stock_reported_before_exceeds(self):
        po_item = POItem(material_name="Brick A", quantity=100, balance_qty=0)
        with pytest.raises(ValidationError) as exc:
            validate_requirement_selection(po_item, 10)
        assert exc.value.code == NO_STOCK
