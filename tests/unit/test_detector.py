"""Tests for the change detector (pure diff of external vs internal records)."""
import pytest

from fmssync.models.sync import ChangeType
from fmssync.providers.base import ExternalSnapshot, ExternalTenant, ExternalUnit
from fmssync.sync.detector import (
    InternalSnapshot,
    InternalTenant,
    InternalUnit,
    detect_changes,
    required_actions_for,
    summarize_changes,
)


def _external() -> ExternalSnapshot:
    return ExternalSnapshot(
        tenants=[
            ExternalTenant("T-1", "John", "Smith", "john@example.com", "555-0101", ["U-A3"]),
            ExternalTenant("T-2", "Maria", "Garcia", "maria@example.com", "555-0102", ["U-A4"]),
        ],
        units=[
            ExternalUnit("U-A3", "A3", "standard", "5x10", "occupied", "T-1", 89.0),
            ExternalUnit("U-A4", "A4", "standard", "5x10", "occupied", "T-2", 89.0),
            ExternalUnit("U-B12", "B12", "climate", "10x15", "available", None, 189.0),
        ],
    )


def _internal() -> InternalSnapshot:
    return InternalSnapshot(
        tenants=[
            InternalTenant(1, "T-1", "John", "Smith", "john@example.com", "555-0101"),
            InternalTenant(2, "T-2", "Maria", "Garcia", "maria@example.com", "555-0102"),
        ],
        units=[
            InternalUnit(10, "A3", "U-A3", "standard", "5x10", "occupied", 89.0, tenant_id=1),
            InternalUnit(11, "A4", "U-A4", "standard", "5x10", "occupied", 89.0, tenant_id=2),
            InternalUnit(12, "B12", "U-B12", "climate", "10x15", "available", 189.0),
        ],
    )


def _types(changes):
    return [c.change_type for c in changes]


class TestIdempotence:
    def test_identical_sides_produce_no_changes(self):
        assert detect_changes(_external(), _internal()) == []

    def test_repeated_detection_is_stable(self):
        external = _external()
        external.tenants.append(ExternalTenant("T-3", "Jane", "Doe", "jane@example.com", None, ["U-B12"]))
        first = detect_changes(external, _internal())
        second = detect_changes(external, _internal())
        assert first == second

    def test_email_case_and_blank_phone_are_not_changes(self):
        internal = _internal()
        internal.tenants[0].email = "JOHN@example.com"
        internal.tenants[1].phone = "555-0102 "
        assert detect_changes(_external(), internal) == []

    def test_rate_float_noise_is_not_a_change(self):
        internal = _internal()
        internal.units[0].monthly_rate = 89.0000001
        assert detect_changes(_external(), internal) == []


class TestScenarioA:
    """New tenant Jane Doe in unit B12, absent internally."""

    def test_single_tenant_added(self):
        external = _external()
        external.tenants.append(ExternalTenant("T-3", "Jane", "Doe", "jane@example.com", None, ["U-B12"]))

        changes = detect_changes(external, _internal())

        assert _types(changes) == [ChangeType.TENANT_ADDED]
        change = changes[0]
        assert change.external_id == "T-3"
        assert change.after_data["unit_ids"] == ["U-B12"]
        assert "Jane Doe" in change.impact_summary
        assert "B12" in change.impact_summary
        assert change.required_actions == ["create_user", "assign_unit", "add_access"]

    def test_summary_counts_one_tenant_added(self):
        external = _external()
        external.tenants.append(ExternalTenant("T-3", "Jane", "Doe", "jane@example.com", None, ["U-B12"]))
        summary = summarize_changes(detect_changes(external, _internal()))
        assert summary.tenants_added == 1
        assert summary.tenants_removed == summary.units_added == summary.units_updated == 0


class TestScenarioB:
    """Tenant John Smith disappears from the FMS (and from unit A3)."""

    def test_single_tenant_removed(self):
        external = _external()
        external.tenants = [t for t in external.tenants if t.external_id != "T-1"]
        external.units[0].tenant_id = None

        changes = detect_changes(external, _internal())

        assert _types(changes) == [ChangeType.TENANT_REMOVED]
        change = changes[0]
        assert change.internal_id == 1
        assert change.after_data is None
        assert change.before_data["unit_ids"] == ["U-A3"]
        assert change.required_actions == ["remove_access", "deactivate_user"]

    def test_unlinked_internal_tenant_is_never_removed(self):
        internal = _internal()
        internal.tenants.append(InternalTenant(3, None, "Local", "Only", "local@example.com"))
        assert detect_changes(_external(), internal) == []


class TestClassification:
    def test_tenant_field_update(self):
        external = _external()
        external.tenants[1].phone = "555-9999"

        changes = detect_changes(external, _internal())

        assert _types(changes) == [ChangeType.TENANT_UPDATED]
        assert changes[0].before_data == {"phone": "555-0102"}
        assert changes[0].after_data == {"phone": "555-9999"}

    def test_unit_added_and_removed(self):
        external = _external()
        external.units = [u for u in external.units if u.external_id != "U-B12"]
        external.units.append(ExternalUnit("U-D2", "D2", "standard", "5x5", "available", None, 59.0))

        changes = detect_changes(external, _internal())

        assert _types(changes) == [ChangeType.UNIT_ADDED, ChangeType.UNIT_REMOVED]
        assert changes[0].after_data["unit_number"] == "D2"
        assert changes[1].internal_id == 12

    def test_unit_status_update(self):
        external = _external()
        external.units[2].status = "maintenance"
        changes = detect_changes(external, _internal())
        assert _types(changes) == [ChangeType.UNIT_UPDATED]
        assert changes[0].after_data == {"status": "maintenance"}

    def test_reassignment_is_one_tenant_unit_change(self):
        external = _external()
        external.tenants[1].unit_ids = ["U-A4", "U-B12"]
        external.units[2].tenant_id = "T-2"

        changes = detect_changes(external, _internal())

        assert _types(changes) == [ChangeType.TENANT_UNIT_CHANGED]
        assert changes[0].after_data["assign"] == ["U-B12"]
        assert changes[0].after_data["unassign"] == []
        assert changes[0].required_actions == ["assign_unit", "add_access"]

    def test_unit_named_only_on_unit_side_counts_as_assignment(self):
        external = _external()
        external.units[2].tenant_id = "T-2"
        changes = detect_changes(external, _internal())
        assert _types(changes) == [ChangeType.TENANT_UNIT_CHANGED]

    def test_removed_unit_is_not_also_unassigned(self):
        external = _external()
        external.units = [u for u in external.units if u.external_id != "U-A4"]
        external.tenants[1].unit_ids = []

        changes = detect_changes(external, _internal())

        assert _types(changes) == [ChangeType.UNIT_REMOVED]

    def test_order_units_then_tenants_then_removals(self):
        external = _external()
        external.tenants = [t for t in external.tenants if t.external_id != "T-1"]
        external.units[0].tenant_id = None
        external.units = [u for u in external.units if u.external_id != "U-B12"]
        external.units.append(ExternalUnit("U-E1", "E1", None, None, "occupied", "T-4", None))
        external.tenants.append(ExternalTenant("T-4", "New", "Person", "new@example.com", None, ["U-E1"]))

        changes = detect_changes(external, _internal())

        assert _types(changes) == [
            ChangeType.UNIT_ADDED,
            ChangeType.TENANT_ADDED,
            ChangeType.TENANT_REMOVED,
            ChangeType.UNIT_REMOVED,
        ]


class TestHeldUnits:
    """A new tenant named on a unit another tenant still holds."""

    def _external(self) -> ExternalSnapshot:
        external = _external()
        external.tenants = [t for t in external.tenants if t.external_id != "T-1"]
        external.tenants.append(ExternalTenant("T-3", "Jane", "Doe", "jane@example.com", None, ["U-A3", "U-B12"]))
        external.units[0].tenant_id = "T-3"
        external.units[2].tenant_id = "T-3"
        return external

    def test_held_unit_moves_through_assignment_change(self):
        changes = detect_changes(self._external(), _internal())

        assert _types(changes) == [
            ChangeType.TENANT_ADDED,
            ChangeType.TENANT_UNIT_CHANGED,
            ChangeType.TENANT_REMOVED,
        ]
        added, moved, _ = changes
        assert added.after_data["unit_ids"] == ["U-B12"]
        assert moved.external_id == "T-3"
        assert moved.internal_id is None
        assert moved.after_data["assign"] == ["U-A3"]
        assert moved.after_data["unassign"] == []
        assert moved.required_actions == ["assign_unit", "add_access"]

    def test_free_units_need_no_assignment_change(self):
        external = _external()
        external.tenants.append(ExternalTenant("T-3", "Jane", "Doe", "jane@example.com", None, ["U-B12"]))
        changes = detect_changes(external, _internal())
        assert _types(changes) == [ChangeType.TENANT_ADDED]


class TestNaturalKeyMatching:
    def test_unlinked_tenant_matched_by_email_gets_linked(self):
        internal = _internal()
        internal.tenants[1].external_id = None

        changes = detect_changes(_external(), internal)

        assert _types(changes) == [ChangeType.TENANT_UPDATED]
        assert changes[0].after_data == {"external_id": "T-2"}
        assert changes[0].internal_id == 2

    def test_unlinked_unit_matched_by_number(self):
        internal = _internal()
        internal.units[2].external_id = None

        changes = detect_changes(_external(), internal)

        assert _types(changes) == [ChangeType.UNIT_UPDATED]
        assert changes[0].after_data == {"external_id": "U-B12"}

    def test_natural_key_never_steals_a_record_linked_elsewhere(self):
        external = _external()
        external.tenants[1].external_id = "T-99"

        changes = detect_changes(external, _internal())

        assert ChangeType.TENANT_ADDED in _types(changes)
        assert ChangeType.TENANT_REMOVED in _types(changes)

    def test_duplicate_external_records_are_skipped(self):
        external = _external()
        external.units.append(ExternalUnit("U-B12", "B12", "climate", "10x15", "available", None, 189.0))
        assert detect_changes(external, _internal()) == []


class TestRequiredActions:
    @pytest.mark.parametrize("assign,unassign,expected", [
        (True, False, ["assign_unit", "add_access"]),
        (False, True, ["unassign_unit", "remove_access"]),
        (True, True, ["assign_unit", "add_access", "unassign_unit", "remove_access"]),
    ])
    def test_tenant_unit_changed_direction(self, assign, unassign, expected):
        assert required_actions_for(ChangeType.TENANT_UNIT_CHANGED, assign, unassign) == expected

    def test_tenant_added_without_units_only_creates_user(self):
        assert required_actions_for(ChangeType.TENANT_ADDED, assign=False) == ["create_user"]

    def test_unit_removed(self):
        assert required_actions_for(ChangeType.UNIT_REMOVED) == [
            "unassign_unit", "remove_access", "delete_unit",
        ]
