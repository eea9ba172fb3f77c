"""
SyncOrchestrator — drives one facility sync from trigger to terminal state.

Flow for a single sync:
  1. Claim the facility's SyncSession (AlreadyRunning if one exists)
  2. Create SyncLog (status="running")
  3. connecting → provider.connect()            (retried)
  4. fetching   → provider.fetch_snapshot()     (retried, hard timeout)
  5. detecting  → detect_changes(external, internal)
  6. preparing  → review gate partitions, SyncChange rows persisted
  7. review_needed (only if some change requires review): trigger_sync
     returns here; review_change() resumes once every change is decided
  8. applying   → approved changes applied one at a time
  9. completed  → SyncLog finished, config.last_sync_* updated

On a step error: SyncLog status="failed" with the error recorded on the
log. Changes persisted so far stay for review; changes already applied are
not rolled back.

Cancellation is cooperative. cancel_sync() only raises a flag; the driving
coroutine checks it between steps and between change applications. An
adapter call already in flight finishes, but its result is discarded.
"""
import asyncio
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fmssync.config import Settings, get_settings
from fmssync.models.sync import (
    ChangeDecision,
    ChangeOutcome,
    FacilitySyncConfig,
    SyncChange,
    SyncStatus,
    TriggerSource,
)
from fmssync.providers.base import ExternalSnapshot, FMSProvider
from fmssync.providers.registry import ProviderRegistry, default_registry
from fmssync.sync.applier import ChangeApplier
from fmssync.sync.detector import detect_changes, summarize_changes
from fmssync.sync.errors import (
    AlreadyRunning,
    FetchTimeout,
    InvalidTransition,
    MalformedResponse,
    ProviderError,
    RateLimited,
    SyncConfigNotFound,
    SyncDisabled,
)
from fmssync.sync.events import SyncEvent, SyncEventBus
from fmssync.sync.history import SyncHistoryStore
from fmssync.sync.records import load_internal_snapshot
from fmssync.sync.review import ReviewGate, ReviewPolicy
from fmssync.sync.session import STEP_PROGRESS, SyncSession, SyncStep

logger = logging.getLogger(__name__)

SUMMARY_COUNTS = (
    "tenants_added",
    "tenants_removed",
    "tenants_updated",
    "units_added",
    "units_removed",
    "units_updated",
)


@dataclass
class SyncResult:
    success: bool
    sync_log_id: Optional[int]
    status: str
    changes_detected: List[Dict[str, Any]] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    requires_review: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _SyncCancelled(Exception):
    """Internal signal: a cancellation checkpoint found the flag set."""


class SyncOrchestrator:
    """Owns per-facility exclusivity and the sync state machine."""

    def __init__(
        self,
        engine,
        registry: Optional[ProviderRegistry] = None,
        event_bus: Optional[SyncEventBus] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            registry: Provider adapters by type. Defaults to the built-in ones.
            event_bus: Where step and progress events are published.
            settings: Retry/timeout policy. Defaults to get_settings().
        """
        self.engine = engine
        self.registry = registry or default_registry()
        self.events = event_bus or SyncEventBus()
        self.settings = settings or get_settings()
        self.store = SyncHistoryStore(engine)
        self.applier = ChangeApplier(engine)
        self._sessions: Dict[str, SyncSession] = {}
        self._sessions_lock = threading.Lock()

    # ─── Public API ───────────────────────────────────────────────────────────

    async def trigger_sync(
        self,
        facility_id: str,
        triggered_by: str = TriggerSource.MANUAL.value,
        user_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Run a sync for one facility up to completion or review_needed.

        Returns:
            SyncResult. success is False when a step failed; the error is
            also stored on the SyncLog.

        Raises:
            SyncConfigNotFound: no FacilitySyncConfig for the facility.
            SyncDisabled: the config exists but is disabled.
            AlreadyRunning: the facility already has an active session.
        """
        config = self.store.get_config(facility_id)
        if config is None:
            raise SyncConfigNotFound(f"no sync config for facility {facility_id}")
        if not config.is_enabled:
            raise SyncDisabled(f"sync is disabled for facility {facility_id}")

        session = self._claim_session(facility_id)
        try:
            log = self.store.create_log(
                facility_id, config.id, getattr(triggered_by, "value", triggered_by), user_id
            )
        except Exception:
            self._release_session(session)
            raise
        session.sync_log_id = log.id
        logger.info(
            "Sync %s started for facility %s (%s, triggered by %s)",
            log.id, facility_id, config.provider_type, log.triggered_by,
        )
        return await self._run(session, config)

    def can_start_new_sync(self, facility_id: str) -> bool:
        with self._sessions_lock:
            return facility_id not in self._sessions

    def get_sync_status(self, facility_id: str) -> Optional[Dict[str, Any]]:
        """Live session state, or None when the facility is idle."""
        with self._sessions_lock:
            session = self._sessions.get(facility_id)
        return session.snapshot() if session is not None else None

    def cancel_sync(self, facility_id: str) -> bool:
        """
        Request cancellation of the facility's active sync.

        A sync waiting for review has nothing driving it, so it is finished
        as cancelled right away. Otherwise the driving coroutine stops at its
        next checkpoint.

        Returns:
            False if there was nothing to cancel.
        """
        with self._sessions_lock:
            session = self._sessions.get(facility_id)
        if session is None:
            return False
        if session.cancel_review("Sync cancelled"):
            self.store.finish_log(session.sync_log_id, SyncStatus.CANCELLED.value)
            logger.info("Sync %s cancelled while waiting for review", session.sync_log_id)
            self._publish(session)
            self._release_session(session)
            return True
        if not session.request_cancel():
            return False
        logger.info("Cancellation requested for sync %s (facility %s)", session.sync_log_id, facility_id)
        return True

    def get_sync_history(self, facility_id: str, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        logs, total = self.store.get_history(facility_id, limit=limit, offset=offset)
        return {"logs": [log.to_dict() for log in logs], "total": total}

    def get_pending_changes(self, sync_log_id: int) -> List[SyncChange]:
        """Changes of a sync still waiting for a review decision."""
        return self.store.list_undecided(sync_log_id)

    async def review_change(self, change_id: int, decision: ChangeDecision) -> SyncChange:
        """
        Record a review decision and resume the sync once none are left.

        Raises:
            ChangeNotFound, ChangeAlreadyReviewed, SyncNotAwaitingReview.
        """
        change = self.store.get_change(change_id)
        log = self.store.get_log(change.sync_log_id)
        config = self.store.get_config(log.facility_id) if log is not None else None
        gate = self._gate(config)

        gate.record_decision(change_id, ChangeDecision(decision))
        if gate.is_resolved(change.sync_log_id):
            logger.info("All changes of sync %s reviewed; resuming", change.sync_log_id)
            session = self._review_session(log.facility_id, log.id)
            await self._resume(session)
        return self.store.get_change(change_id)

    async def test_connection(self, config: FacilitySyncConfig) -> bool:
        """Check that the config's provider can reach its FMS."""
        provider = self.registry.create(config)
        try:
            return await provider.test_connection()
        finally:
            await provider.close()

    async def restore_sessions(self) -> int:
        """
        Startup recovery for logs left open by a previous process.

        running logs cannot be resumed and are marked failed. review_needed
        logs get their session back so the facility stays blocked until
        the review finishes; one whose review already finished is resumed.

        Returns:
            Number of sessions restored.
        """
        restored = 0
        for log in self.store.open_logs():
            with self._sessions_lock:
                live = self._sessions.get(log.facility_id)
            if live is not None and live.sync_log_id == log.id:
                continue

            if log.status == SyncStatus.RUNNING.value or live is not None:
                logger.warning("Sync %s for facility %s was interrupted", log.id, log.facility_id)
                self.store.update_summary(log.id, errors=["interrupted by restart"])
                self.store.finish_log(log.id, SyncStatus.FAILED.value, "Sync interrupted by restart")
                continue

            session = self._claim_session(log.facility_id, step=SyncStep.REVIEW_NEEDED)
            session.sync_log_id = log.id
            restored += 1
            logger.info("Restored review session for sync %s (facility %s)", log.id, log.facility_id)
            if not self.store.list_undecided(log.id):
                await self._resume(session)
        return restored

    # ─── State machine ────────────────────────────────────────────────────────

    async def _run(self, session: SyncSession, config: FacilitySyncConfig) -> SyncResult:
        provider: Optional[FMSProvider] = None
        try:
            self._advance(session, SyncStep.CONNECTING, f"Connecting to {config.provider_type}")
            provider = self.registry.create(config)
            await self._bounded(
                self._with_retries(provider.connect, "connect", session), "connect"
            )
            self._checkpoint(session)

            self._advance(session, SyncStep.FETCHING, "Fetching tenants and units")
            snapshot: ExternalSnapshot = await self._bounded(
                self._with_retries(
                    lambda: provider.fetch_snapshot(session.facility_id), "fetch", session
                ),
                "fetch",
            )
            self._checkpoint(session)
            self.store.update_summary(
                session.sync_log_id,
                tenants_fetched=len(snapshot.tenants),
                units_fetched=len(snapshot.units),
            )

            self._advance(session, SyncStep.DETECTING, "Detecting changes")
            internal = load_internal_snapshot(self.engine, session.facility_id)
            changes = detect_changes(snapshot, internal)
            summary = summarize_changes(changes)
            logger.info(
                "Sync %s: %d changes detected (%d tenants, %d units fetched)",
                session.sync_log_id, len(changes), len(snapshot.tenants), len(snapshot.units),
            )
            self._checkpoint(session)

            self._advance(session, SyncStep.PREPARING, "Preparing changes")
            gate = self._gate(config)
            _, review = gate.partition(changes)
            gate.persist(session.sync_log_id, changes)
            self.store.update_summary(session.sync_log_id, **asdict(summary))
            self._checkpoint(session)

            if review:
                self.store.set_status(session.sync_log_id, SyncStatus.REVIEW_NEEDED.value)
                self._advance(
                    session, SyncStep.REVIEW_NEEDED, f"{len(review)} changes awaiting review"
                )
                logger.info("Sync %s waiting for review of %d changes", session.sync_log_id, len(review))
                return self._result(session.sync_log_id, True, SyncStatus.REVIEW_NEEDED, requires_review=True)

            return await self._apply(session)

        except _SyncCancelled:
            return self._finish_cancelled(session)
        except Exception as exc:
            return self._fail(session, exc)
        finally:
            if provider is not None:
                await provider.close()

    async def _resume(self, session: SyncSession) -> Optional[SyncResult]:
        """Continue a review_needed sync into applying."""
        try:
            return await self._apply(session)
        except InvalidTransition:
            # Another caller already resumed or cancelled this sync
            logger.info("Sync %s is no longer waiting for review", session.sync_log_id)
            return None
        except _SyncCancelled:
            return self._finish_cancelled(session)
        except Exception as exc:
            return self._fail(session, exc)

    async def _apply(self, session: SyncSession) -> SyncResult:
        self._advance(session, SyncStep.APPLYING, "Applying changes")
        if self.store.get_log(session.sync_log_id).status != SyncStatus.RUNNING.value:
            self.store.set_status(session.sync_log_id, SyncStatus.RUNNING.value)

        pending = self.store.list_approved_unapplied(session.sync_log_id)
        total = len(pending)
        done = 0
        errors: List[str] = []
        warnings: List[str] = []
        base = STEP_PROGRESS[SyncStep.APPLYING]
        for outcome in self.applier.apply_all(pending, should_stop=lambda: session.cancel_requested):
            done += 1
            if outcome.outcome == ChangeOutcome.ERROR:
                errors.append(f"change {outcome.change_id}: {outcome.error}")
            warnings.extend(f"change {outcome.change_id}: {w}" for w in outcome.warnings)
            self._progress(session, base + (99 - base) * done // total, f"Applied {done}/{total} changes")
            # Let status queries and cancel requests in
            await asyncio.sleep(0)

        if errors or warnings:
            self.store.update_summary(session.sync_log_id, errors=errors, warnings=warnings)
        if done < total:
            raise _SyncCancelled()

        log = self.store.finish_log(session.sync_log_id, SyncStatus.COMPLETED.value)
        if log.status != SyncStatus.COMPLETED.value:
            # Finished by another caller while applying
            logger.warning("Sync %s was already %s; not marking it completed", log.id, log.status)
            self._terminate(session, SyncStep(log.status), f"Sync {log.status}")
            return self._result(log.id, False, SyncStatus(log.status))
        if log.config_id is not None:
            self.store.mark_config_synced(log.config_id, log.completed_at, SyncStatus.COMPLETED.value)
        logger.info(
            "Sync %s completed: %d applied, %d rejected, %d pending",
            log.id, log.changes_applied, log.changes_rejected, log.changes_pending,
        )
        self._terminate(session, SyncStep.COMPLETED, "Sync completed")
        return self._result(log.id, True, SyncStatus.COMPLETED)

    def _finish_cancelled(self, session: SyncSession) -> SyncResult:
        self.store.finish_log(session.sync_log_id, SyncStatus.CANCELLED.value)
        logger.info("Sync %s cancelled", session.sync_log_id)
        self._terminate(session, SyncStep.CANCELLED, "Sync cancelled")
        return self._result(session.sync_log_id, False, SyncStatus.CANCELLED)

    def _fail(self, session: SyncSession, exc: Exception) -> SyncResult:
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, MalformedResponse):
            logger.error(
                "Sync %s failed on malformed response: %s; raw payload: %r",
                session.sync_log_id, message, exc.raw_payload,
            )
        else:
            logger.error("Sync %s failed at %s: %s", session.sync_log_id, session.step.value, message)
        self.store.update_summary(session.sync_log_id, errors=[message])
        self.store.finish_log(session.sync_log_id, SyncStatus.FAILED.value, message)
        self._terminate(session, SyncStep.FAILED, message)
        return self._result(session.sync_log_id, False, SyncStatus.FAILED, error=message)

    # ─── Adapter calls ────────────────────────────────────────────────────────

    async def _with_retries(
        self,
        call: Callable[[], Awaitable[Any]],
        label: str,
        session: SyncSession,
    ) -> Any:
        """Retry retryable adapter errors with exponential backoff."""
        attempts = max(1, self.settings.sync_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except ProviderError as exc:
                if not exc.retryable or attempt >= attempts or session.cancel_requested:
                    raise
                delay = self.settings.sync_retry_backoff_seconds * (2 ** (attempt - 1))
                if isinstance(exc, RateLimited) and exc.retry_after:
                    delay = max(delay, exc.retry_after)
                logger.warning(
                    "Sync %s %s attempt %d/%d failed: %s; retrying in %.2fs",
                    session.sync_log_id, label, attempt, attempts, exc, delay,
                )
                await asyncio.sleep(delay)

    async def _bounded(self, awaitable: Awaitable[Any], label: str) -> Any:
        """Apply the hard step timeout, retries included."""
        timeout = self.settings.sync_fetch_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise FetchTimeout(f"{label} did not finish within {timeout:g}s")

    # ─── Session bookkeeping ──────────────────────────────────────────────────

    def _claim_session(self, facility_id: str, step: SyncStep = SyncStep.IDLE) -> SyncSession:
        with self._sessions_lock:
            if facility_id in self._sessions:
                raise AlreadyRunning(facility_id)
            session = SyncSession(facility_id, step=step)
            self._sessions[facility_id] = session
            return session

    def _release_session(self, session: SyncSession) -> None:
        with self._sessions_lock:
            if self._sessions.get(session.facility_id) is session:
                del self._sessions[session.facility_id]

    def _review_session(self, facility_id: str, sync_log_id: int) -> SyncSession:
        """The session of a review_needed log, recreated if this process lost it."""
        with self._sessions_lock:
            session = self._sessions.get(facility_id)
        if session is not None and session.sync_log_id == sync_log_id:
            return session
        session = self._claim_session(facility_id, step=SyncStep.REVIEW_NEEDED)
        session.sync_log_id = sync_log_id
        return session

    def _checkpoint(self, session: SyncSession) -> None:
        if session.cancel_requested:
            raise _SyncCancelled()

    def _advance(self, session: SyncSession, step: SyncStep, message: Optional[str] = None) -> None:
        session.advance(step, message)
        logger.info("Sync %s → %s", session.sync_log_id, step.value)
        self._publish(session)

    def _progress(self, session: SyncSession, percentage: int, message: Optional[str] = None) -> None:
        session.set_progress(percentage, message)
        self._publish(session)

    def _terminate(self, session: SyncSession, step: SyncStep, message: Optional[str] = None) -> None:
        try:
            self._advance(session, step, message)
        except InvalidTransition:
            logger.warning("Sync %s already finished as %s", session.sync_log_id, session.step.value)
        finally:
            self._release_session(session)

    def _publish(self, session: SyncSession) -> None:
        state = session.snapshot()
        self.events.publish(SyncEvent(
            facility_id=state["facility_id"],
            sync_log_id=state["sync_log_id"],
            step=state["step"],
            progress_percentage=state["progress_percentage"],
            message=state["message"],
            timestamp=datetime.utcnow(),
        ))

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _gate(self, config: Optional[FacilitySyncConfig]) -> ReviewGate:
        policy = ReviewPolicy.from_config(config) if config is not None else ReviewPolicy()
        return ReviewGate(policy, self.store)

    def _result(
        self,
        sync_log_id: int,
        success: bool,
        status: SyncStatus,
        requires_review: bool = False,
        error: Optional[str] = None,
    ) -> SyncResult:
        log = self.store.get_log(sync_log_id)
        stored = log.summary if log is not None else {}
        summary: Dict[str, Any] = {key: stored.get(key, 0) for key in SUMMARY_COUNTS}
        summary["errors"] = list(stored.get("errors", []))
        summary["warnings"] = list(stored.get("warnings", []))
        return SyncResult(
            success=success,
            sync_log_id=sync_log_id,
            status=status.value,
            changes_detected=[c.to_dict() for c in self.store.list_changes(sync_log_id)],
            summary=summary,
            requires_review=requires_review,
            error=error,
        )
