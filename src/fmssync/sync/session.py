"""
In-memory sync session: the live state machine of one running sync.

    idle → connecting → fetching → detecting → preparing
         → [review_needed] → applying → completed | cancelled | failed

Any non-terminal step may also move to cancelled or failed. At most one
session exists per facility; it is created on trigger and dropped on any
terminal transition.

Session state is read by status queries and cancel requests that may come
from a different thread or task than the one driving the sync, so every
access goes through a lock. Published progress never decreases.
"""
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from fmssync.sync.errors import InvalidTransition


class SyncStep(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    FETCHING = "fetching"
    DETECTING = "detecting"
    PREPARING = "preparing"
    REVIEW_NEEDED = "review_needed"
    APPLYING = "applying"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STEPS = frozenset({SyncStep.COMPLETED, SyncStep.CANCELLED, SyncStep.FAILED})

# Progress published on entering each step
STEP_PROGRESS: Dict[SyncStep, int] = {
    SyncStep.IDLE: 0,
    SyncStep.CONNECTING: 10,
    SyncStep.FETCHING: 25,
    SyncStep.DETECTING: 50,
    SyncStep.PREPARING: 65,
    SyncStep.REVIEW_NEEDED: 75,
    SyncStep.APPLYING: 80,
    SyncStep.COMPLETED: 100,
}

_FORWARD: Dict[SyncStep, frozenset] = {
    SyncStep.IDLE: frozenset({SyncStep.CONNECTING}),
    SyncStep.CONNECTING: frozenset({SyncStep.FETCHING}),
    SyncStep.FETCHING: frozenset({SyncStep.DETECTING}),
    SyncStep.DETECTING: frozenset({SyncStep.PREPARING}),
    SyncStep.PREPARING: frozenset({SyncStep.REVIEW_NEEDED, SyncStep.APPLYING}),
    SyncStep.REVIEW_NEEDED: frozenset({SyncStep.APPLYING}),
    SyncStep.APPLYING: frozenset({SyncStep.COMPLETED}),
}


def can_transition(current: SyncStep, target: SyncStep) -> bool:
    if current in TERMINAL_STEPS:
        return False
    if target in (SyncStep.CANCELLED, SyncStep.FAILED):
        return True
    return target in _FORWARD.get(current, frozenset())


class SyncSession:
    """Thread-safe state of one facility's active sync."""

    def __init__(
        self,
        facility_id: str,
        sync_log_id: Optional[int] = None,
        step: SyncStep = SyncStep.IDLE,
    ):
        self.facility_id = facility_id
        self.sync_log_id = sync_log_id
        self.started_at = datetime.utcnow()
        self._lock = threading.Lock()
        self._step = step
        self._progress = STEP_PROGRESS.get(step, 0)
        self._message: Optional[str] = None
        self._cancel_requested = False

    @property
    def step(self) -> SyncStep:
        with self._lock:
            return self._step

    @property
    def progress(self) -> int:
        with self._lock:
            return self._progress

    @property
    def cancel_requested(self) -> bool:
        with self._lock:
            return self._cancel_requested

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS

    def advance(self, step: SyncStep, message: Optional[str] = None) -> None:
        """
        Move to the next step.

        Raises:
            InvalidTransition: if step is not reachable from the current step.
        """
        with self._lock:
            if not can_transition(self._step, step):
                raise InvalidTransition(f"{self._step.value} → {step.value} is not allowed")
            self._step = step
            self._message = message
            self._progress = max(self._progress, STEP_PROGRESS.get(step, self._progress))

    def set_progress(self, percentage: int, message: Optional[str] = None) -> int:
        """Raise progress within the current step. Lower values are ignored."""
        with self._lock:
            self._progress = max(self._progress, min(100, int(percentage)))
            if message is not None:
                self._message = message
            return self._progress

    def request_cancel(self) -> bool:
        """Flag the session for cancellation. False if it already finished."""
        with self._lock:
            if self._step in TERMINAL_STEPS:
                return False
            self._cancel_requested = True
            return True

    def cancel_review(self, message: Optional[str] = None) -> bool:
        """
        Move a session waiting for review straight to cancelled.

        Returns:
            False if the session is in any other step. A concurrent resume
            then either already left review_needed or fails its transition.
        """
        with self._lock:
            if self._step != SyncStep.REVIEW_NEEDED:
                return False
            self._cancel_requested = True
            self._step = SyncStep.CANCELLED
            self._message = message
            return True

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "facility_id": self.facility_id,
                "sync_log_id": self.sync_log_id,
                "step": self._step.value,
                "progress_percentage": self._progress,
                "message": self._message,
                "cancel_requested": self._cancel_requested,
                "started_at": self.started_at,
            }
