"""
ChangeApplier — applies approved changes to internal tenant/unit records.

Exactly one change per call, each in its own DB transaction. If a change
fails (its target was deleted by another actor mid-sync, a referenced unit
is unknown, ...) only that transaction rolls back; the failure is recorded
on the change row as outcome "error" and the caller moves on to the next
change. Nothing already applied is ever rolled back.

The apply outcome is committed in the same transaction as the record
writes, so an applied change is never left without its outcome.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from sqlmodel import Session, select

from fmssync.models.facility import Tenant, Unit
from fmssync.models.sync import ChangeDecision, ChangeOutcome, ChangeType, SyncChange, SyncLog
from fmssync.sync.errors import ApplyError
from fmssync.sync.records import find_tenant, find_unit

logger = logging.getLogger(__name__)

TENANT_FIELDS = ("first_name", "last_name", "email", "phone", "external_id")
UNIT_FIELDS = ("unit_number", "status", "unit_type", "size", "monthly_rate", "external_id")


@dataclass
class ApplyOutcome:
    change_id: int
    outcome: ChangeOutcome
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class ChangeApplier:
    """Writes one approved SyncChange into the internal records."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine
        self._handlers: Dict[str, Callable[[Session, SyncChange, str, List[str]], None]] = {
            ChangeType.TENANT_ADDED.value: self._apply_tenant_added,
            ChangeType.TENANT_UPDATED.value: self._apply_tenant_updated,
            ChangeType.TENANT_REMOVED.value: self._apply_tenant_removed,
            ChangeType.TENANT_UNIT_CHANGED.value: self._apply_tenant_unit_changed,
            ChangeType.UNIT_ADDED.value: self._apply_unit_added,
            ChangeType.UNIT_UPDATED.value: self._apply_unit_updated,
            ChangeType.UNIT_REMOVED.value: self._apply_unit_removed,
        }

    def apply(self, change: SyncChange) -> ApplyOutcome:
        """
        Apply a single approved change.

        Returns:
            ApplyOutcome with outcome "applied" or "error". A change that
            already has an outcome is not applied again.

        Raises:
            ApplyError: if the change was never approved. Nothing is written.
        """
        if not change.is_reviewed or change.decision != ChangeDecision.APPROVED.value:
            raise ApplyError(f"change {change.id} has not been approved")
        if change.outcome is not None:
            return ApplyOutcome(change.id, ChangeOutcome(change.outcome), change.error_message)

        warnings: List[str] = []
        try:
            with Session(self.engine) as s:
                log = s.get(SyncLog, change.sync_log_id)
                if log is None:
                    raise ApplyError(f"sync log {change.sync_log_id} not found")
                handler = self._handlers.get(change.change_type)
                if handler is None:
                    raise ApplyError(f"unsupported change type {change.change_type}")

                handler(s, change, log.facility_id, warnings)

                row = s.get(SyncChange, change.id)
                row.outcome = ChangeOutcome.APPLIED.value
                row.applied_at = datetime.utcnow()
                row.error_message = "; ".join(warnings) or None
                s.add(row)
                s.commit()
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error(
                "Failed to apply change %s (%s %s): %s",
                change.id, change.change_type, change.external_id, message,
            )
            self._record_error(change.id, message)
            return ApplyOutcome(change.id, ChangeOutcome.ERROR, message)

        for warning in warnings:
            logger.warning("Change %s: %s", change.id, warning)
        logger.info("Applied change %s (%s %s)", change.id, change.change_type, change.external_id)
        return ApplyOutcome(change.id, ChangeOutcome.APPLIED, warnings=warnings)

    def apply_all(
        self,
        changes: Iterable[SyncChange],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> Iterator[ApplyOutcome]:
        """
        Apply changes in order, yielding each outcome as it is recorded.

        should_stop is checked before every change; once it returns True the
        remaining changes are left untouched.
        """
        for change in changes:
            if should_stop is not None and should_stop():
                logger.info("Stopping apply before change %s", change.id)
                return
            yield self.apply(change)

    def _record_error(self, change_id: int, message: str) -> None:
        with Session(self.engine) as s:
            row = s.get(SyncChange, change_id)
            row.outcome = ChangeOutcome.ERROR.value
            row.error_message = message
            s.add(row)
            s.commit()

    # ─── Lookups ──────────────────────────────────────────────────────────────

    @staticmethod
    def _get_tenant(s: Session, change: SyncChange, facility_id: str) -> Tenant:
        if change.internal_id is not None:
            tenant = s.get(Tenant, change.internal_id)
        else:
            # Tenant created earlier in the same sync
            tenant = find_tenant(s, facility_id, change.external_id)
        if tenant is None or tenant.facility_id != facility_id or not tenant.is_active:
            raise ApplyError(
                f"tenant {change.internal_id or change.external_id} no longer exists in facility {facility_id}"
            )
        return tenant

    @staticmethod
    def _get_unit(s: Session, change: SyncChange, facility_id: str) -> Unit:
        unit = s.get(Unit, change.internal_id) if change.internal_id else None
        if unit is None or unit.facility_id != facility_id:
            raise ApplyError(f"unit {change.internal_id} no longer exists in facility {facility_id}")
        return unit

    # ─── Tenants ──────────────────────────────────────────────────────────────

    def _apply_tenant_added(self, s: Session, change: SyncChange, facility_id: str, warnings: List[str]) -> None:
        data = change.after_data or {}
        external_id = data.get("external_id")
        if external_id:
            existing = s.exec(
                select(Tenant).where(
                    Tenant.facility_id == facility_id,
                    Tenant.external_id == external_id,
                    Tenant.is_active == True,  # noqa: E712
                )
            ).first()
            if existing is not None:
                raise ApplyError(f"tenant {external_id} was created by another actor")

        tenant = Tenant(
            facility_id=facility_id,
            external_id=external_id,
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            email=data.get("email"),
            phone=data.get("phone"),
        )
        s.add(tenant)
        s.flush()

        for identity in data.get("unit_ids") or []:
            unit = find_unit(s, facility_id, identity)
            if unit is None:
                warnings.append(f"unit {identity} not found; assignment skipped")
                continue
            if unit.tenant_id is not None:
                warnings.append(f"unit {identity} is held by tenant {unit.tenant_id}; assignment skipped")
                continue
            unit.tenant_id = tenant.id
            unit.updated_at = datetime.utcnow()
            s.add(unit)

    def _apply_tenant_updated(self, s: Session, change: SyncChange, facility_id: str, warnings: List[str]) -> None:
        tenant = self._get_tenant(s, change, facility_id)
        for name, value in (change.after_data or {}).items():
            if name in TENANT_FIELDS:
                setattr(tenant, name, value)
        tenant.updated_at = datetime.utcnow()
        s.add(tenant)

    def _apply_tenant_unit_changed(self, s: Session, change: SyncChange, facility_id: str, warnings: List[str]) -> None:
        tenant = self._get_tenant(s, change, facility_id)
        data = change.after_data or {}

        for identity in data.get("assign") or []:
            unit = find_unit(s, facility_id, identity)
            if unit is None:
                raise ApplyError(f"unit {identity} not found in facility {facility_id}")
            unit.tenant_id = tenant.id
            unit.updated_at = datetime.utcnow()
            s.add(unit)

        for identity in data.get("unassign") or []:
            unit = find_unit(s, facility_id, identity)
            if unit is None or unit.tenant_id != tenant.id:
                # Already gone or reassigned by another change
                continue
            unit.tenant_id = None
            unit.updated_at = datetime.utcnow()
            s.add(unit)

    def _apply_tenant_removed(self, s: Session, change: SyncChange, facility_id: str, warnings: List[str]) -> None:
        tenant = self._get_tenant(s, change, facility_id)
        units = s.exec(
            select(Unit).where(Unit.facility_id == facility_id, Unit.tenant_id == tenant.id)
        ).all()
        for unit in units:
            unit.tenant_id = None
            unit.updated_at = datetime.utcnow()
            s.add(unit)
        tenant.is_active = False
        tenant.updated_at = datetime.utcnow()
        s.add(tenant)

    # ─── Units ────────────────────────────────────────────────────────────────

    def _apply_unit_added(self, s: Session, change: SyncChange, facility_id: str, warnings: List[str]) -> None:
        data = change.after_data or {}
        external_id = data.get("external_id")
        if external_id:
            existing = s.exec(
                select(Unit).where(Unit.facility_id == facility_id, Unit.external_id == external_id)
            ).first()
            if existing is not None:
                raise ApplyError(f"unit {external_id} was created by another actor")

        s.add(Unit(
            facility_id=facility_id,
            external_id=external_id,
            unit_number=data["unit_number"],
            unit_type=data.get("unit_type"),
            size=data.get("size"),
            status=data.get("status") or "available",
            monthly_rate=data.get("monthly_rate"),
        ))

    def _apply_unit_updated(self, s: Session, change: SyncChange, facility_id: str, warnings: List[str]) -> None:
        unit = self._get_unit(s, change, facility_id)
        for name, value in (change.after_data or {}).items():
            if name in UNIT_FIELDS:
                setattr(unit, name, value)
        unit.updated_at = datetime.utcnow()
        s.add(unit)

    def _apply_unit_removed(self, s: Session, change: SyncChange, facility_id: str, warnings: List[str]) -> None:
        unit = self._get_unit(s, change, facility_id)
        s.delete(unit)
