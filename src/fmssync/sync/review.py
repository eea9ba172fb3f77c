"""
Review gate: decides which detected changes need a human before applying.

The default risk policy auto-applies additions and metadata updates and
holds back anything that takes access away or moves a tenant between
units:

    tenant_added, tenant_updated, unit_added, unit_updated → auto_apply
    tenant_removed, unit_removed, tenant_unit_changed      → requires_review

A facility can loosen or tighten this through its config:

    FacilitySyncConfig.auto_accept_changes = True   → everything auto-applies
    provider_config["review_policy"] = {"unit_updated": "requires_review", ...}
"""
import logging
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from fmssync.models.sync import ChangeDecision, ChangeType, FacilitySyncConfig, SyncChange, SyncStatus
from fmssync.sync.detector import DetectedChange
from fmssync.sync.errors import ChangeAlreadyReviewed, SyncNotAwaitingReview

logger = logging.getLogger(__name__)


class ReviewMode(str, Enum):
    AUTO_APPLY = "auto_apply"
    REQUIRES_REVIEW = "requires_review"


DEFAULT_REVIEW_MODES: Dict[ChangeType, ReviewMode] = {
    ChangeType.TENANT_ADDED: ReviewMode.AUTO_APPLY,
    ChangeType.TENANT_UPDATED: ReviewMode.AUTO_APPLY,
    ChangeType.UNIT_ADDED: ReviewMode.AUTO_APPLY,
    ChangeType.UNIT_UPDATED: ReviewMode.AUTO_APPLY,
    ChangeType.TENANT_REMOVED: ReviewMode.REQUIRES_REVIEW,
    ChangeType.UNIT_REMOVED: ReviewMode.REQUIRES_REVIEW,
    ChangeType.TENANT_UNIT_CHANGED: ReviewMode.REQUIRES_REVIEW,
}


class ReviewPolicy:
    """Maps change type → review mode. Unknown types always require review."""

    def __init__(self, modes: Optional[Mapping[ChangeType, ReviewMode]] = None):
        self.modes: Dict[ChangeType, ReviewMode] = dict(DEFAULT_REVIEW_MODES)
        if modes:
            self.modes.update(modes)

    @classmethod
    def from_config(cls, config: FacilitySyncConfig) -> "ReviewPolicy":
        """Build the policy for one facility from its sync config."""
        if config.auto_accept_changes:
            return cls({t: ReviewMode.AUTO_APPLY for t in ChangeType})

        overrides: Dict[ChangeType, ReviewMode] = {}
        for raw_type, raw_mode in (config.provider_config.get("review_policy") or {}).items():
            try:
                overrides[ChangeType(raw_type)] = ReviewMode(raw_mode)
            except ValueError:
                logger.warning(
                    "Ignoring review policy entry %r=%r for facility %s",
                    raw_type, raw_mode, config.facility_id,
                )
        return cls(overrides)

    def mode_for(self, change_type) -> ReviewMode:
        try:
            return self.modes.get(ChangeType(change_type), ReviewMode.REQUIRES_REVIEW)
        except ValueError:
            return ReviewMode.REQUIRES_REVIEW

    def requires_review(self, change_type) -> bool:
        return self.mode_for(change_type) == ReviewMode.REQUIRES_REVIEW


class ReviewGate:
    """
    Partitions detected changes and records human decisions.

    Args:
        policy: Risk policy for the facility being synced.
        store: SyncHistoryStore holding the changes.
    """

    def __init__(self, policy: ReviewPolicy, store):
        self.policy = policy
        self.store = store

    def partition(
        self, changes: Sequence[DetectedChange]
    ) -> Tuple[List[DetectedChange], List[DetectedChange]]:
        """Split changes into (auto_apply, requires_review), each in input order."""
        auto: List[DetectedChange] = []
        review: List[DetectedChange] = []
        for change in changes:
            (review if self.policy.requires_review(change.change_type) else auto).append(change)
        return auto, review

    def persist(self, sync_log_id: int, changes: Sequence[DetectedChange]) -> List[SyncChange]:
        """Store every change; review-required ones stay undecided."""
        flags = [self.policy.requires_review(c.change_type) for c in changes]
        return self.store.add_changes(sync_log_id, changes, flags)

    def record_decision(self, change_id: int, decision: ChangeDecision) -> SyncChange:
        """
        Record approve/reject for one pending change.

        Raises:
            ChangeNotFound: unknown change id.
            ChangeAlreadyReviewed: the change already has a decision.
            SyncNotAwaitingReview: the owning sync is not in review_needed.
        """
        change = self.store.get_change(change_id)
        if change.is_reviewed:
            raise ChangeAlreadyReviewed(f"change {change_id} was already {change.decision}")
        log = self.store.get_log(change.sync_log_id)
        if log is None or log.status != SyncStatus.REVIEW_NEEDED.value:
            status = log.status if log else "missing"
            raise SyncNotAwaitingReview(
                f"change {change_id} belongs to sync {change.sync_log_id} which is {status}"
            )
        logger.info("Change %s (%s) %s", change_id, change.change_type, decision.value)
        return self.store.record_decision(change_id, decision)

    def is_resolved(self, sync_log_id: int) -> bool:
        """True once no change of the log is waiting for a decision."""
        return not self.store.list_undecided(sync_log_id)
