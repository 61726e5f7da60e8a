"""Tests for operation progress tracking."""

import pytest

from resticdroid.backup.progress import OperationContext, StageScheduler
from resticdroid.errors import OperationCancelled


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestStageScheduler:
    """Test stage aggregation."""

    def test_titles(self):
        """Test stage titles carry the stage position."""
        scheduler = StageScheduler(["Prepare", "Transfer", "Finalize"])

        assert scheduler.title("Prepare") == "[1/3] Prepare"
        assert scheduler.title("Finalize") == "[3/3] Finalize"

    def test_overall_monotonic_across_stages(self):
        """Test the overall fraction advances stage by stage."""
        scheduler = StageScheduler(["Transfer", "Processing Apps", "Cleanup"])

        values = [
            scheduler.overall(stage, fraction)
            for stage in ("Transfer", "Processing Apps", "Cleanup")
            for fraction in (0.0, 0.5, 1.0)
        ]

        assert values == sorted(values)
        assert values[0] == 0.0
        assert values[-1] == 1.0

    def test_fraction_is_clamped(self):
        """Test out-of-range fractions are clamped."""
        scheduler = StageScheduler(["Transfer", "Cleanup"])

        assert scheduler.overall("Transfer", 2.0) == 0.5
        assert scheduler.overall("Cleanup", -1.0) == 0.5

    def test_unknown_stage(self):
        """Test unknown stages are rejected."""
        scheduler = StageScheduler(["Transfer"])

        assert "Transfer" in scheduler
        with pytest.raises(ValueError):
            scheduler.overall("Cleanup", 0.0)

    def test_empty(self):
        """Test a scheduler needs stages."""
        with pytest.raises(ValueError):
            StageScheduler([])


class TestOperationContext:
    """Test operation context lifecycle."""

    def test_updates_are_published(self):
        """Test observers receive every new state."""
        context = OperationContext("backup")
        states = []
        context.subscribe(states.append)

        context.update(current_item="com.example.app")
        context.update(items_processed=1)

        assert [s.current_item for s in states] == ["com.example.app", "com.example.app"]
        assert states[-1].items_processed == 1
        assert states[0] is not states[1]

    def test_elapsed_time(self):
        """Test elapsed time comes from the clock."""
        clock = FakeClock()
        context = OperationContext("backup", clock=clock)

        clock.now = 112.5
        state = context.update(current_item="x")

        assert state.elapsed_time == 12.5

    def test_finish_once(self):
        """Test an operation finishes exactly once and rejects later updates."""
        context = OperationContext("restore")

        state = context.finish(summary="done")

        assert state.is_finished
        assert state.succeeded
        assert state.overall_percentage == 1.0
        with pytest.raises(RuntimeError):
            context.finish(summary="again")
        with pytest.raises(RuntimeError):
            context.update(current_item="late")

    def test_finish_with_error(self):
        """Test a failed finish keeps the last overall fraction."""
        context = OperationContext("backup")
        context.update(overall_percentage=0.4)

        state = context.finish(error="boom", summary="A fatal error occurred: boom")

        assert state.is_finished
        assert not state.succeeded
        assert state.overall_percentage == 0.4
        assert state.error == "boom"

    def test_observer_exceptions_are_contained(self):
        """Test a failing observer does not break the operation or other observers."""
        context = OperationContext("backup")
        received = []

        def broken(state):
            raise ValueError("observer failure")

        context.subscribe(broken)
        context.subscribe(received.append)

        context.update(current_item="a")

        assert len(received) == 1

    def test_unsubscribe(self):
        """Test unsubscribed observers stop receiving states."""
        context = OperationContext("backup")
        received = []
        unsubscribe = context.subscribe(received.append)

        context.update(current_item="a")
        unsubscribe()
        unsubscribe()
        context.update(current_item="b")

        assert len(received) == 1

    def test_cancel(self):
        """Test cancellation is visible through the event and check."""
        context = OperationContext("restore")
        context.check_cancelled()

        context.cancel()

        assert context.cancelled
        assert context.cancel_event.is_set()
        with pytest.raises(OperationCancelled):
            context.check_cancelled()

    def test_enter_and_complete_stage(self):
        """Test stage transitions set titles and fractions."""
        scheduler = StageScheduler(["Prepare", "Transfer"])
        context = OperationContext("backup")

        entered = context.enter_stage(scheduler, "Transfer", total_items=3)
        completed = context.complete_stage(scheduler, "Transfer")

        assert entered.stage_title == "[2/2] Transfer"
        assert entered.overall_percentage == 0.5
        assert entered.total_items == 3
        assert completed.stage_percentage == 1.0
        assert completed.overall_percentage == 1.0
