"""
Unit tests for the periodic urgency sweeper.
"""
import asyncio
from datetime import timedelta

import pytest

from models.inputs import RequirementSelection
from tracker.coordinator import MutationCoordinator
from tracker.mapping import TABLE_REQUIREMENTS
from tracker.scheduler import UrgencySweeper


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.unit
class TestUrgencySweeper:

    def test_due_until_first_run(self, coordinator):
        clock = FakeClock()
        sweeper = UrgencySweeper(lambda: [coordinator], interval_seconds=60, clock=clock)
        assert sweeper.is_due()

        sweeper.mark_run()
        assert not sweeper.is_due()

        clock.now += 60
        assert sweeper.is_due()

    def test_run_once_reports_promotions(self, req_40, coordinator, run, far_delivery):
        sweeper = UrgencySweeper(lambda: [coordinator], clock=FakeClock())

        promoted = run(sweeper.run_once(today=far_delivery - timedelta(days=1)))

        assert promoted == {"user-1": [req_40.id]}
        assert not sweeper.is_due()

    def test_run_if_due_skips_inside_interval(self, req_40, coordinator, run, far_delivery):
        sweeper = UrgencySweeper(lambda: [coordinator], interval_seconds=60, clock=FakeClock())
        sweeper.mark_run()

        assert run(sweeper.run_if_due(today=far_delivery)) is None
        assert coordinator.state.get_requirement(req_40.id).priority == "Medium"

    def test_store_failure_does_not_stop_sweeper(self, req_40, coordinator, store, run, far_delivery):
        store.fail("update", TABLE_REQUIREMENTS, times=None)
        sweeper = UrgencySweeper(lambda: [coordinator], clock=FakeClock())

        assert run(sweeper.run_once(today=far_delivery)) == {}

        store.heal()
        assert run(sweeper.run_once(today=far_delivery)) == {"user-1": [req_40.id]}

    def test_stop_ends_run_forever(self, coordinator, run):
        sweeper = UrgencySweeper(lambda: [coordinator], interval_seconds=3600)

        async def _run_then_stop():
            task = asyncio.ensure_future(sweeper.run_forever(poll_seconds=0.01))
            await asyncio.sleep(0.05)
            sweeper.stop()
            await asyncio.wait_for(task, timeout=1)

        run(_run_then_stop())
        assert not sweeper.is_due()


@pytest.mark.unit
class TestSweepWithSharedStore:
    """A second session writes to the same store between sweeps."""

    def test_reload_first_leaves_completed_alone(self, req_40, coordinator, store, run, far_delivery):
        other = run(MutationCoordinator.load(store, "user-1"))
        run(other.record_supply(req_40.id, "Brick A", 40))
        sweeper = UrgencySweeper(lambda: [coordinator], clock=FakeClock(), reload_first=True)

        promoted = run(sweeper.run_once(today=far_delivery - timedelta(days=2)))

        assert promoted == {}
        row = run(store.query_by_owner(TABLE_REQUIREMENTS, "user-1"))[0]
        assert (row["status"], row["priority"]) == ("Completed", "Medium")
        assert coordinator.state.get_requirement(req_40.id).status == "Completed"

    def test_reload_first_sweeps_requirements_created_elsewhere(self, po_100, coordinator, store, run, far_delivery):
        other = run(MutationCoordinator.load(store, "user-1"))
        req = run(other.create_requirement(
            "PO-100", [RequirementSelection(material_name="Mortar B", quantity_required=10)], far_delivery
        ))
        sweeper = UrgencySweeper(lambda: [coordinator], clock=FakeClock(), reload_first=True)

        promoted = run(sweeper.run_once(today=far_delivery - timedelta(days=1)))

        assert promoted == {"user-1": [req.id]}
        assert coordinator.state.get_requirement(req.id).priority == "Urgent"
