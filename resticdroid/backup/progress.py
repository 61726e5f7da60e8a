"""Progress state for a running operation and multi-stage aggregation."""

import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence

from ..errors import OperationCancelled
from ..restic.parser import ProgressUpdate
from ..util.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProgressState:
    """Immutable snapshot of an operation's progress."""

    stage_title: str = ""
    stage_percentage: float = 0.0
    overall_percentage: float = 0.0
    elapsed_time: float = 0.0
    current_item: str = ""
    items_processed: int = 0
    total_items: int = 0
    bytes_processed: int = 0
    total_bytes: int = 0
    is_finished: bool = False
    error: Optional[str] = None
    summary: Optional[str] = None
    snapshot_id: Optional[str] = None
    files_new: int = 0
    files_changed: int = 0
    data_added: int = 0
    total_duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.is_finished and self.error is None


Observer = Callable[[ProgressState], None]


class StageScheduler:
    """Maps per-stage fractions onto one overall fraction.

    ``overall = (index + fraction) / len(stages)``. No smoothing is applied:
    a lower fraction for the same stage yields a lower overall value.
    """

    def __init__(self, stages: Sequence[str]):
        if not stages:
            raise ValueError("At least one stage is required.")
        self.stages: List[str] = list(stages)

    def __len__(self) -> int:
        return len(self.stages)

    def __contains__(self, stage: str) -> bool:
        return stage in self.stages

    def index_of(self, stage: str) -> int:
        try:
            return self.stages.index(stage)
        except ValueError:
            raise ValueError(f"Unknown stage: {stage}") from None

    def title(self, stage: str) -> str:
        return f"[{self.index_of(stage) + 1}/{len(self.stages)}] {stage}"

    def overall(self, stage: str, fraction: float) -> float:
        fraction = min(max(fraction, 0.0), 1.0)
        return (self.index_of(stage) + fraction) / len(self.stages)


class OperationContext:
    """Owner of one in-flight operation's progress.

    Only the operation writes to it. Observers receive every new immutable
    ProgressState; an observer that raises is logged and skipped.
    """

    def __init__(self, name: str = "operation", clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._clock = clock
        self._started = clock()
        self._state = ProgressState()
        self._observers: List[Observer] = []
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def state(self) -> ProgressState:
        return self._state

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def cancel(self) -> None:
        logger.info(f"Cancelling {self.name}")
        self._cancel_event.set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled()

    def update(self, **fields) -> ProgressState:
        """Overwrite the given fields and publish the new state."""
        with self._lock:
            if self._state.is_finished:
                raise RuntimeError(f"{self.name} has already finished")
            self._state = replace(self._state, elapsed_time=self.elapsed, **fields)
            state = self._state
        self._publish(state)
        return state

    def enter_stage(self, scheduler: StageScheduler, stage: str, **fields) -> ProgressState:
        return self.update(
            stage_title=scheduler.title(stage),
            stage_percentage=0.0,
            overall_percentage=scheduler.overall(stage, 0.0),
            **fields,
        )

    def complete_stage(self, scheduler: StageScheduler, stage: str) -> ProgressState:
        """Advance through ``stage`` as an instantaneous 100% transition."""
        return self.update(
            stage_title=scheduler.title(stage),
            stage_percentage=1.0,
            overall_percentage=scheduler.overall(stage, 1.0),
        )

    def apply(self, update: ProgressUpdate, scheduler: StageScheduler, stage: str) -> ProgressState:
        """Fold one parsed tool update into the state; last write wins."""
        fields = dict(
            stage_title=scheduler.title(stage),
            stage_percentage=update.stage_percentage,
            overall_percentage=scheduler.overall(stage, update.stage_percentage),
            items_processed=update.files_processed,
            total_items=update.total_files,
            bytes_processed=update.bytes_processed,
            total_bytes=update.total_bytes,
        )
        if update.current_file:
            fields["current_item"] = update.current_file
        if update.is_finished:
            fields.update(
                snapshot_id=update.snapshot_id,
                files_new=update.files_new,
                files_changed=update.files_changed,
                data_added=update.data_added,
                total_duration=update.total_duration,
            )
        return self.update(**fields)

    def finish(self, error: Optional[str] = None, summary: Optional[str] = None, **fields) -> ProgressState:
        """Mark the operation finished. Allowed exactly once."""
        with self._lock:
            if self._state.is_finished:
                raise RuntimeError(f"{self.name} has already finished")
            if error is None:
                fields.setdefault("overall_percentage", 1.0)
            self._state = replace(
                self._state,
                elapsed_time=self.elapsed,
                is_finished=True,
                error=error,
                summary=summary,
                **fields,
            )
            state = self._state

        if error:
            logger.error(f"{self.name} failed: {error}")
        else:
            logger.info(f"{self.name} finished")
        self._publish(state)
        return state

    def _publish(self, state: ProgressState) -> None:
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception as e:
                logger.warning(f"Progress observer failed: {e}")
