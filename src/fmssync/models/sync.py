"""Sync configuration, audit log, and detected-change models."""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel


class SyncStatus(str, Enum):
    RUNNING = "running"
    REVIEW_NEEDED = "review_needed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {SyncStatus.COMPLETED.value, SyncStatus.CANCELLED.value, SyncStatus.FAILED.value}
)


class TriggerSource(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    WEBHOOK = "webhook"


class ChangeType(str, Enum):
    TENANT_ADDED = "tenant_added"
    TENANT_REMOVED = "tenant_removed"
    TENANT_UPDATED = "tenant_updated"
    TENANT_UNIT_CHANGED = "tenant_unit_changed"
    UNIT_ADDED = "unit_added"
    UNIT_REMOVED = "unit_removed"
    UNIT_UPDATED = "unit_updated"


class EntityType(str, Enum):
    TENANT = "tenant"
    UNIT = "unit"


class ChangeAction(str, Enum):
    ADD_ACCESS = "add_access"
    REMOVE_ACCESS = "remove_access"
    CREATE_USER = "create_user"
    UPDATE_USER = "update_user"
    DEACTIVATE_USER = "deactivate_user"
    ASSIGN_UNIT = "assign_unit"
    UNASSIGN_UNIT = "unassign_unit"
    CREATE_UNIT = "create_unit"
    UPDATE_UNIT = "update_unit"
    DELETE_UNIT = "delete_unit"


class ChangeDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ChangeOutcome(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    ERROR = "error"


def _loads(raw: Optional[str]) -> Any:
    return json.loads(raw) if raw else None


class FacilitySyncConfig(SQLModel, table=True):
    """FMS connection settings for one facility. The engine only writes last_sync_*."""

    id: Optional[int] = Field(default=None, primary_key=True)
    facility_id: str = Field(unique=True, index=True)
    provider_type: str  # "simulated", "generic_rest"
    is_enabled: bool = True
    provider_config_json: str = "{}"
    auto_accept_changes: bool = False
    sync_interval_minutes: Optional[int] = None  # None = manual syncs only
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def provider_config(self) -> Dict[str, Any]:
        return _loads(self.provider_config_json) or {}


class SyncLog(SQLModel, table=True):
    """One row per sync attempt. Append-only once status is terminal."""

    id: Optional[int] = Field(default=None, primary_key=True)
    facility_id: str = Field(index=True)
    config_id: Optional[int] = Field(default=None, foreign_key="facilitysyncconfig.id")
    status: str = SyncStatus.RUNNING.value
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    triggered_by: str = TriggerSource.MANUAL.value
    triggered_by_user_id: Optional[str] = None

    changes_detected: int = 0
    changes_applied: int = 0
    changes_pending: int = 0
    changes_rejected: int = 0

    error_message: Optional[str] = None
    # {"tenants_fetched": int, "units_fetched": int, "errors": [...], "warnings": [...]}
    summary_json: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def summary(self) -> Dict[str, Any]:
        return _loads(self.summary_json) or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "facility_id": self.facility_id,
            "config_id": self.config_id,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "triggered_by": self.triggered_by,
            "triggered_by_user_id": self.triggered_by_user_id,
            "changes_detected": self.changes_detected,
            "changes_applied": self.changes_applied,
            "changes_pending": self.changes_pending,
            "changes_rejected": self.changes_rejected,
            "error_message": self.error_message,
            "summary": self.summary,
        }


class SyncChange(SQLModel, table=True):
    """
    One detected discrepancy for a single entity.

    Immutable after creation except for the review fields (is_reviewed,
    decision, reviewed_at) and the apply outcome (outcome, error_message,
    applied_at).
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    sync_log_id: int = Field(foreign_key="synclog.id", index=True)
    change_type: str
    entity_type: str
    external_id: str
    internal_id: Optional[int] = None
    before_data_json: Optional[str] = None
    after_data_json: Optional[str] = None
    impact_summary: str = ""
    required_actions_json: str = "[]"

    requires_review: bool = False
    is_reviewed: bool = False
    decision: Optional[str] = None  # "approved", "rejected"
    reviewed_at: Optional[datetime] = None

    outcome: Optional[str] = None  # "applied", "rejected", "error"
    error_message: Optional[str] = None
    applied_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def before_data(self) -> Optional[Dict[str, Any]]:
        return _loads(self.before_data_json)

    @property
    def after_data(self) -> Optional[Dict[str, Any]]:
        return _loads(self.after_data_json)

    @property
    def required_actions(self) -> List[str]:
        return _loads(self.required_actions_json) or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sync_log_id": self.sync_log_id,
            "change_type": self.change_type,
            "entity_type": self.entity_type,
            "external_id": self.external_id,
            "internal_id": self.internal_id,
            "before_data": self.before_data,
            "after_data": self.after_data,
            "impact_summary": self.impact_summary,
            "required_actions": self.required_actions,
            "requires_review": self.requires_review,
            "is_reviewed": self.is_reviewed,
            "decision": self.decision,
            "reviewed_at": self.reviewed_at,
            "outcome": self.outcome,
            "error_message": self.error_message,
            "applied_at": self.applied_at,
            "created_at": self.created_at,
        }
