"""
In-memory progress tracking for shot detection jobs.

One ProgressState per job id, written by the pipeline's worker thread and
read by the polling endpoint. Writes are validated so that a job's stage only
moves forward:

    extracting → analyzing → processing → completed
         └────────────┴────────────┴──────→ failed

completed and failed are terminal. A terminal job can be started again,
which replaces its state; a running job cannot.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from services.errors import ProgressTransitionError

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    EXTRACTING = "extracting"
    ANALYZING = "analyzing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


STAGE_ORDER = {
    Stage.EXTRACTING: 0,
    Stage.ANALYZING: 1,
    Stage.PROCESSING: 2,
    Stage.COMPLETED: 3,
}

TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.FAILED})


class ProgressState(BaseModel):
    """Last known state of a job, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    stage: Stage = Stage.EXTRACTING
    current_frame: int = 0
    total_frames: int = 0
    current_batch: int = 0
    total_batches: int = 0
    shots_detected: int = 0
    message: str = ""
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


def check_transition(previous: Optional[ProgressState], new: ProgressState) -> None:
    """
    Raise ProgressTransitionError if `new` may not follow `previous`.

    Rules:
    - nothing may follow a terminal state
    - failed may follow any non-terminal state
    - otherwise the stage stays the same or advances exactly one step
    - frame and batch counters never decrease before a terminal state
    """
    if previous is None:
        if new.stage not in (Stage.EXTRACTING, Stage.FAILED):
            raise ProgressTransitionError(f"A job must start in 'extracting', not '{new.stage.value}'")
        return

    if previous.is_terminal:
        raise ProgressTransitionError(f"Job already {previous.stage.value}")

    if new.stage == Stage.FAILED:
        return

    step = STAGE_ORDER[new.stage] - STAGE_ORDER[previous.stage]
    if step not in (0, 1):
        raise ProgressTransitionError(
            f"Illegal stage transition {previous.stage.value} → {new.stage.value}"
        )

    if new.stage != Stage.COMPLETED:
        if new.current_frame < previous.current_frame:
            raise ProgressTransitionError(
                f"current_frame went backwards ({previous.current_frame} → {new.current_frame})"
            )
        if new.current_batch < previous.current_batch:
            raise ProgressTransitionError(
                f"current_batch went backwards ({previous.current_batch} → {new.current_batch})"
            )


def progress_percent(state: Optional[ProgressState]) -> int:
    """
    UI-facing completion estimate.

    A flat 30 while extracting (ffmpeg reports no per-frame progress), then
    30 + 70 × the fraction of batches done while analyzing. Capped at 95 until the job
    completes.
    """
    if state is None or state.stage == Stage.FAILED:
        return 0
    if state.stage == Stage.COMPLETED:
        return 100

    if state.stage == Stage.EXTRACTING:
        value = 30
    elif state.stage == Stage.ANALYZING:
        fraction = state.current_batch / state.total_batches if state.total_batches > 0 else 0.0
        value = 30 + 70 * fraction
    else:
        value = 95

    return min(95, max(0, round(value)))


class ProgressStore:
    """Thread-safe map of job id → ProgressState."""

    def __init__(
        self,
        retention_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._states: Dict[str, Tuple[ProgressState, float]] = {}

    def start(self, job_id: str, message: str = "Waiting to start shot detection...") -> bool:
        """
        Create a fresh 'extracting' state for a job.

        Returns:
            False if the job is already running (the trigger is rejected)
        """
        self.prune()
        with self._lock:
            existing = self._states.get(job_id)
            if existing is not None and not existing[0].is_terminal:
                return False
            self._states[job_id] = (ProgressState(message=message), self._clock())
        logger.info(f"Job {job_id} registered")
        return True

    def publish(self, job_id: str, state: ProgressState) -> None:
        """Store a new state for a job after validating the transition."""
        with self._lock:
            existing = self._states.get(job_id)
            check_transition(existing[0] if existing else None, state)
            self._states[job_id] = (state.model_copy(), self._clock())

    def update(self, job_id: str, **changes) -> ProgressState:
        """Publish a copy of the current state with some fields changed."""
        with self._lock:
            existing = self._states.get(job_id)
            if existing is None:
                raise ProgressTransitionError(f"Job {job_id} was never started")
            state = existing[0].model_copy(update=changes)
            check_transition(existing[0], state)
            self._states[job_id] = (state, self._clock())
        return state.model_copy()

    def read(self, job_id: str) -> Optional[ProgressState]:
        """Current state, or None if the job has not been started."""
        with self._lock:
            existing = self._states.get(job_id)
        return existing[0].model_copy() if existing else None

    def is_active(self, job_id: str) -> bool:
        state = self.read(job_id)
        return state is not None and not state.is_terminal

    def prune(self) -> int:
        """Forget terminal jobs older than the retention period."""
        cutoff = self._clock() - self.retention_seconds
        with self._lock:
            expired = [
                job_id for job_id, (state, updated_at) in self._states.items()
                if state.is_terminal and updated_at < cutoff
            ]
            for job_id in expired:
                del self._states[job_id]
        if expired:
            logger.info(f"Pruned progress for {len(expired)} finished jobs")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
