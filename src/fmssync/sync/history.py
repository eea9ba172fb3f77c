"""
SyncHistoryStore — persistence for sync configs, sync logs, and changes.

Every sync attempt gets one SyncLog row; every detected change one
SyncChange row owned by it. Counters on the log are always derived from
the change rows (recount), never incremented in place:

    detected = all changes
    applied  = outcome "applied"
    rejected = decision "rejected" or outcome "error"
    pending  = detected - applied - rejected

so applied + pending + rejected == detected holds at every read.
"""
import json
import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from fmssync.models.sync import (
    TERMINAL_STATUSES,
    ChangeDecision,
    ChangeOutcome,
    FacilitySyncConfig,
    SyncChange,
    SyncLog,
    SyncStatus,
)
from fmssync.sync.detector import DetectedChange
from fmssync.sync.errors import ChangeNotFound

logger = logging.getLogger(__name__)


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


class SyncHistoryStore:
    """Owns every read and write of FacilitySyncConfig, SyncLog and SyncChange."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine

    # ─── Configs ──────────────────────────────────────────────────────────────

    def get_config(self, facility_id: str) -> Optional[FacilitySyncConfig]:
        with Session(self.engine) as s:
            return s.exec(
                select(FacilitySyncConfig).where(FacilitySyncConfig.facility_id == facility_id)
            ).first()

    def list_enabled_configs(self) -> List[FacilitySyncConfig]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(FacilitySyncConfig).where(FacilitySyncConfig.is_enabled == True)  # noqa: E712
            ).all())

    def save_config(self, config: FacilitySyncConfig) -> FacilitySyncConfig:
        """Insert or update a config row."""
        config.updated_at = datetime.utcnow()
        with Session(self.engine) as s:
            merged = s.merge(config)
            s.commit()
            s.refresh(merged)
            return merged

    def delete_config(self, facility_id: str) -> bool:
        with Session(self.engine) as s:
            config = s.exec(
                select(FacilitySyncConfig).where(FacilitySyncConfig.facility_id == facility_id)
            ).first()
            if config is None:
                return False
            s.delete(config)
            s.commit()
            return True

    def mark_config_synced(self, config_id: int, at: datetime, status: str) -> None:
        """Write the only config fields the engine owns."""
        with Session(self.engine) as s:
            config = s.get(FacilitySyncConfig, config_id)
            if config is None:
                return
            config.last_sync_at = at
            config.last_sync_status = status
            s.add(config)
            s.commit()

    # ─── Sync logs ────────────────────────────────────────────────────────────

    def create_log(
        self,
        facility_id: str,
        config_id: Optional[int],
        triggered_by: str,
        triggered_by_user_id: Optional[str] = None,
    ) -> SyncLog:
        log = SyncLog(
            facility_id=facility_id,
            config_id=config_id,
            status=SyncStatus.RUNNING.value,
            started_at=datetime.utcnow(),
            triggered_by=triggered_by,
            triggered_by_user_id=triggered_by_user_id,
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def get_log(self, sync_log_id: int) -> Optional[SyncLog]:
        with Session(self.engine) as s:
            return s.get(SyncLog, sync_log_id)

    def set_status(self, sync_log_id: int, status: str) -> SyncLog:
        """Move a non-terminal log to another non-terminal status."""
        with Session(self.engine) as s:
            log = s.get(SyncLog, sync_log_id)
            if log.status in TERMINAL_STATUSES:
                raise ValueError(f"sync log {sync_log_id} is already {log.status}")
            log.status = status
            s.add(log)
            s.commit()
            s.refresh(log)
            return log

    def update_summary(self, sync_log_id: int, **fields: Any) -> None:
        """Merge keys into the log's summary document."""
        with Session(self.engine) as s:
            log = s.get(SyncLog, sync_log_id)
            summary = log.summary
            for key, value in fields.items():
                if isinstance(value, list) and isinstance(summary.get(key), list):
                    summary[key] = summary[key] + value
                else:
                    summary[key] = value
            log.summary_json = _dumps(summary)
            s.add(log)
            s.commit()

    def recount(self, sync_log_id: int) -> SyncLog:
        """Re-derive the four counters from the log's change rows."""
        with Session(self.engine) as s:
            log = s.get(SyncLog, sync_log_id)
            self._recount(s, log)
            s.add(log)
            s.commit()
            s.refresh(log)
            return log

    @staticmethod
    def _recount(s: Session, log: SyncLog) -> None:
        changes = s.exec(select(SyncChange).where(SyncChange.sync_log_id == log.id)).all()
        applied = sum(1 for c in changes if c.outcome == ChangeOutcome.APPLIED.value)
        rejected = sum(
            1 for c in changes
            if c.outcome != ChangeOutcome.APPLIED.value
            and (c.decision == ChangeDecision.REJECTED.value or c.outcome == ChangeOutcome.ERROR.value)
        )
        log.changes_detected = len(changes)
        log.changes_applied = applied
        log.changes_rejected = rejected
        log.changes_pending = len(changes) - applied - rejected

    def finish_log(
        self,
        sync_log_id: int,
        status: str,
        error_message: Optional[str] = None,
    ) -> SyncLog:
        """
        Move a log to a terminal status with final counters.

        Terminal logs are append-only: finishing one twice is a no-op that
        returns the stored row.
        """
        with Session(self.engine) as s:
            log = s.get(SyncLog, sync_log_id)
            if log.status in TERMINAL_STATUSES:
                logger.warning("Sync log %s already finished as %s", sync_log_id, log.status)
                return log
            self._recount(s, log)
            log.status = status
            log.completed_at = datetime.utcnow()
            if error_message:
                log.error_message = error_message
            s.add(log)
            s.commit()
            s.refresh(log)
            return log

    def get_history(
        self, facility_id: str, limit: int = 20, offset: int = 0
    ) -> Tuple[List[SyncLog], int]:
        """Most recent logs first, plus the facility's total log count."""
        with Session(self.engine) as s:
            total = s.exec(
                select(func.count()).select_from(SyncLog).where(SyncLog.facility_id == facility_id)
            ).one()
            logs = s.exec(
                select(SyncLog)
                .where(SyncLog.facility_id == facility_id)
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                .offset(offset)
                .limit(limit)
            ).all()
            return list(logs), int(total)

    def open_logs(self) -> List[SyncLog]:
        """Logs not yet in a terminal status, oldest first."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncLog)
                .where(SyncLog.status.in_([SyncStatus.RUNNING.value, SyncStatus.REVIEW_NEEDED.value]))
                .order_by(SyncLog.id)
            ).all())

    # ─── Changes ──────────────────────────────────────────────────────────────

    def add_changes(
        self,
        sync_log_id: int,
        detected: Sequence[DetectedChange],
        requires_review: Iterable[bool],
    ) -> List[SyncChange]:
        """
        Persist detected changes in order.

        Changes that skip review are stored already approved (is_reviewed
        True); the rest wait with is_reviewed False and no decision.
        """
        now = datetime.utcnow()
        rows: List[SyncChange] = []
        with Session(self.engine) as s:
            for change, needs_review in zip(detected, requires_review):
                row = SyncChange(
                    sync_log_id=sync_log_id,
                    change_type=change.change_type.value,
                    entity_type=change.entity_type.value,
                    external_id=change.external_id,
                    internal_id=change.internal_id,
                    before_data_json=_dumps(change.before_data),
                    after_data_json=_dumps(change.after_data),
                    impact_summary=change.impact_summary,
                    required_actions_json=json.dumps(change.required_actions),
                    requires_review=needs_review,
                    is_reviewed=not needs_review,
                    decision=None if needs_review else ChangeDecision.APPROVED.value,
                    reviewed_at=None if needs_review else now,
                    created_at=now,
                )
                s.add(row)
                rows.append(row)
            s.flush()
            log = s.get(SyncLog, sync_log_id)
            self._recount(s, log)
            s.add(log)
            s.commit()
            for row in rows:
                s.refresh(row)
        return rows

    def get_change(self, change_id: int) -> SyncChange:
        with Session(self.engine) as s:
            change = s.get(SyncChange, change_id)
        if change is None:
            raise ChangeNotFound(f"change {change_id} not found")
        return change

    def list_changes(self, sync_log_id: int) -> List[SyncChange]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncChange).where(SyncChange.sync_log_id == sync_log_id).order_by(SyncChange.id)
            ).all())

    def list_undecided(self, sync_log_id: int) -> List[SyncChange]:
        """Changes still waiting for a human decision."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncChange)
                .where(SyncChange.sync_log_id == sync_log_id, SyncChange.is_reviewed == False)  # noqa: E712
                .order_by(SyncChange.id)
            ).all())

    def list_approved_unapplied(self, sync_log_id: int) -> List[SyncChange]:
        """Approved changes with no outcome yet, in detection order."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncChange)
                .where(
                    SyncChange.sync_log_id == sync_log_id,
                    SyncChange.is_reviewed == True,  # noqa: E712
                    SyncChange.decision == ChangeDecision.APPROVED.value,
                    SyncChange.outcome == None,  # noqa: E711
                )
                .order_by(SyncChange.id)
            ).all())

    def record_decision(self, change_id: int, decision: ChangeDecision) -> SyncChange:
        """Store a review decision. A rejection is also the change's final outcome."""
        with Session(self.engine) as s:
            change = s.get(SyncChange, change_id)
            if change is None:
                raise ChangeNotFound(f"change {change_id} not found")
            change.is_reviewed = True
            change.decision = decision.value
            change.reviewed_at = datetime.utcnow()
            if decision == ChangeDecision.REJECTED:
                change.outcome = ChangeOutcome.REJECTED.value
            s.add(change)
            s.flush()
            log = s.get(SyncLog, change.sync_log_id)
            self._recount(s, log)
            s.add(log)
            s.commit()
            s.refresh(change)
            return change

    def record_outcome(
        self,
        change_id: int,
        outcome: ChangeOutcome,
        error_message: Optional[str] = None,
    ) -> None:
        with Session(self.engine) as s:
            change = s.get(SyncChange, change_id)
            change.outcome = outcome.value
            change.error_message = error_message
            if outcome == ChangeOutcome.APPLIED:
                change.applied_at = datetime.utcnow()
            s.add(change)
            s.commit()

