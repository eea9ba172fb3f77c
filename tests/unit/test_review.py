"""Tests for the review policy and review gate."""
import json

import pytest

from fmssync.models.sync import (
    ChangeDecision,
    ChangeOutcome,
    ChangeType,
    EntityType,
    FacilitySyncConfig,
    SyncStatus,
)
from fmssync.sync.detector import DetectedChange
from fmssync.sync.errors import ChangeAlreadyReviewed, ChangeNotFound, SyncNotAwaitingReview
from fmssync.sync.review import ReviewGate, ReviewMode, ReviewPolicy


def _change(change_type: ChangeType, external_id: str = "X-1") -> DetectedChange:
    entity = EntityType.UNIT if change_type.value.startswith("unit") else EntityType.TENANT
    return DetectedChange(
        change_type=change_type,
        entity_type=entity,
        external_id=external_id,
        after_data={"external_id": external_id},
        impact_summary=f"{change_type.value} {external_id}",
        required_actions=[],
    )


class TestReviewPolicy:
    @pytest.mark.parametrize("change_type", [
        ChangeType.TENANT_ADDED,
        ChangeType.TENANT_UPDATED,
        ChangeType.UNIT_ADDED,
        ChangeType.UNIT_UPDATED,
    ])
    def test_additions_and_updates_auto_apply(self, change_type):
        assert ReviewPolicy().mode_for(change_type) == ReviewMode.AUTO_APPLY

    @pytest.mark.parametrize("change_type", [
        ChangeType.TENANT_REMOVED,
        ChangeType.UNIT_REMOVED,
        ChangeType.TENANT_UNIT_CHANGED,
    ])
    def test_removals_and_reassignment_require_review(self, change_type):
        assert ReviewPolicy().requires_review(change_type)

    def test_unknown_type_requires_review(self):
        assert ReviewPolicy().requires_review("tenant_merged")

    def test_auto_accept_config_applies_everything(self):
        config = FacilitySyncConfig(facility_id="f", provider_type="simulated", auto_accept_changes=True)
        policy = ReviewPolicy.from_config(config)
        assert not any(policy.requires_review(t) for t in ChangeType)

    def test_config_overrides(self):
        config = FacilitySyncConfig(
            facility_id="f",
            provider_type="simulated",
            provider_config_json=json.dumps({"review_policy": {
                "unit_updated": "requires_review",
                "unit_removed": "auto_apply",
                "bogus": "auto_apply",
            }}),
        )
        policy = ReviewPolicy.from_config(config)
        assert policy.requires_review(ChangeType.UNIT_UPDATED)
        assert not policy.requires_review(ChangeType.UNIT_REMOVED)
        assert policy.requires_review(ChangeType.TENANT_REMOVED)


class TestReviewGate:
    def test_partition_keeps_order(self, store):
        gate = ReviewGate(ReviewPolicy(), store)
        changes = [
            _change(ChangeType.UNIT_ADDED, "U-1"),
            _change(ChangeType.TENANT_REMOVED, "T-1"),
            _change(ChangeType.TENANT_ADDED, "T-2"),
            _change(ChangeType.UNIT_REMOVED, "U-2"),
        ]
        auto, review = gate.partition(changes)
        assert [c.external_id for c in auto] == ["U-1", "T-2"]
        assert [c.external_id for c in review] == ["T-1", "U-2"]

    def test_persist_marks_review_changes_undecided(self, store):
        gate = ReviewGate(ReviewPolicy(), store)
        log = store.create_log("f", None, "manual")
        rows = gate.persist(log.id, [_change(ChangeType.TENANT_ADDED), _change(ChangeType.TENANT_REMOVED)])

        assert rows[0].is_reviewed and rows[0].decision == ChangeDecision.APPROVED.value
        assert not rows[1].is_reviewed and rows[1].decision is None
        assert rows[1].requires_review
        assert not gate.is_resolved(log.id)

    def _awaiting(self, store):
        gate = ReviewGate(ReviewPolicy(), store)
        log = store.create_log("f", None, "manual")
        rows = gate.persist(log.id, [_change(ChangeType.TENANT_REMOVED, "T-1"), _change(ChangeType.UNIT_REMOVED, "U-1")])
        store.set_status(log.id, SyncStatus.REVIEW_NEEDED.value)
        return gate, log, rows

    def test_record_decision_and_resolution(self, store):
        gate, log, rows = self._awaiting(store)

        approved = gate.record_decision(rows[0].id, ChangeDecision.APPROVED)
        assert approved.is_reviewed and approved.reviewed_at is not None
        assert not gate.is_resolved(log.id)

        rejected = gate.record_decision(rows[1].id, ChangeDecision.REJECTED)
        assert rejected.outcome == ChangeOutcome.REJECTED.value
        assert gate.is_resolved(log.id)

    def test_deciding_twice_raises(self, store):
        gate, _, rows = self._awaiting(store)
        gate.record_decision(rows[0].id, ChangeDecision.APPROVED)
        with pytest.raises(ChangeAlreadyReviewed):
            gate.record_decision(rows[0].id, ChangeDecision.REJECTED)

    def test_unknown_change_raises(self, store):
        gate = ReviewGate(ReviewPolicy(), store)
        with pytest.raises(ChangeNotFound):
            gate.record_decision(9999, ChangeDecision.APPROVED)

    def test_change_of_finished_sync_raises(self, store):
        gate, log, rows = self._awaiting(store)
        store.finish_log(log.id, SyncStatus.CANCELLED.value)
        with pytest.raises(SyncNotAwaitingReview):
            gate.record_decision(rows[0].id, ChangeDecision.APPROVED)
