"""
Change detector: external FMS snapshot + internal records → ordered changes.

Pure functions only. No DB access and no provider calls; the orchestrator
loads both sides and persists what comes back.

Matching
--------
Both sides are keyed by FMS external id. When an external record carries no
id, or no internal record is linked to it yet, records fall back to a
natural key:

    tenant: lower-cased email, else lower-cased full name
    unit:   unit number (case-insensitive)

A natural-key match is only accepted when the internal record is unlinked
or already linked to the same external id.

Classification
--------------
    external only                        → *_added
    internal only (linked and active)    → *_removed
    both, tracked field differs          → *_updated
    both, tenant unit assignment differs → tenant_unit_changed

A unit's assigned tenant is tracked from the tenant side only, so one
reassignment yields exactly one reviewable change. Unlinked internal
records (created locally, never synced) are never removed. A new tenant
never takes a unit another tenant holds: that unit goes into a separate
tenant_unit_changed change, so the move is reviewed like any other.

Output order: unit additions and updates, then tenant additions, updates
and assignment changes, then tenant removals, then unit removals. Applying
in this order creates units before tenants are assigned to them and
unassigns tenants before their units disappear.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from fmssync.models.sync import ChangeAction, ChangeType, EntityType
from fmssync.providers.base import ExternalSnapshot, ExternalTenant, ExternalUnit

logger = logging.getLogger(__name__)

TENANT_TRACKED_FIELDS = ("first_name", "last_name", "email", "phone")
UNIT_TRACKED_FIELDS = ("unit_number", "status", "unit_type", "size", "monthly_rate")

# Base required actions per change type. tenant_unit_changed and
# tenant_added are refined by assignment direction in required_actions_for().
REQUIRED_ACTIONS: Dict[ChangeType, Tuple[ChangeAction, ...]] = {
    ChangeType.TENANT_ADDED: (ChangeAction.CREATE_USER, ChangeAction.ASSIGN_UNIT, ChangeAction.ADD_ACCESS),
    ChangeType.TENANT_REMOVED: (ChangeAction.REMOVE_ACCESS, ChangeAction.DEACTIVATE_USER),
    ChangeType.TENANT_UPDATED: (ChangeAction.UPDATE_USER,),
    ChangeType.TENANT_UNIT_CHANGED: (),
    ChangeType.UNIT_ADDED: (ChangeAction.CREATE_UNIT,),
    ChangeType.UNIT_UPDATED: (ChangeAction.UPDATE_UNIT,),
    ChangeType.UNIT_REMOVED: (ChangeAction.UNASSIGN_UNIT, ChangeAction.REMOVE_ACCESS, ChangeAction.DELETE_UNIT),
}


# ─── Data types ──────────────────────────────────────────────────────────────

@dataclass
class InternalTenant:
    id: int
    external_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass
class InternalUnit:
    id: int
    unit_number: str
    external_id: Optional[str] = None
    unit_type: Optional[str] = None
    size: Optional[str] = None
    status: str = "available"
    monthly_rate: Optional[float] = None
    tenant_id: Optional[int] = None  # internal tenant id


@dataclass
class InternalSnapshot:
    """Active internal records of one facility."""

    tenants: List[InternalTenant] = field(default_factory=list)
    units: List[InternalUnit] = field(default_factory=list)


@dataclass
class DetectedChange:
    """A change before persistence. SyncHistoryStore turns these into SyncChange rows."""

    change_type: ChangeType
    entity_type: EntityType
    external_id: str
    after_data: Optional[Dict[str, Any]]
    impact_summary: str
    required_actions: List[str]
    before_data: Optional[Dict[str, Any]] = None
    internal_id: Optional[int] = None


@dataclass
class SyncSummary:
    tenants_added: int = 0
    tenants_removed: int = 0
    tenants_updated: int = 0
    units_added: int = 0
    units_removed: int = 0
    units_updated: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _norm(value: Any) -> Any:
    """Normalize a field value for comparison: blank strings equal None, rates to cents."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, float):
        return round(value, 2)
    return value


def _field_equal(name: str, left: Any, right: Any) -> bool:
    left, right = _norm(left), _norm(right)
    if name == "email" and left is not None and right is not None:
        return left.lower() == right.lower()
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return round(float(left), 2) == round(float(right), 2)
    return left == right


def _tenant_natural_key(record) -> Optional[str]:
    email = _norm(record.email)
    if email:
        return f"email:{email.lower()}"
    name = _norm(record.full_name)
    return f"name:{name.lower()}" if name else None


def _unit_natural_key(record) -> Optional[str]:
    number = _norm(record.unit_number)
    return f"unit:{number.lower()}" if number else None


def _identity(record, natural_key: Callable[[Any], Optional[str]]) -> Optional[str]:
    """Stable identity of an external record: its external id, else its natural key."""
    return record.external_id or natural_key(record)


def _match_records(
    external: Sequence[Any],
    internal: Sequence[Any],
    natural_key: Callable[[Any], Optional[str]],
    kind: str,
) -> Tuple[List[Tuple[Any, Optional[Any]]], Set[int]]:
    """
    Pair each external record with its internal counterpart (or None).

    Returns the pairs in external order and the ids of matched internal
    records. External duplicates (same identity twice) are skipped.
    """
    by_external_id = {r.external_id: r for r in internal if r.external_id}
    by_natural: Dict[str, Any] = {}
    for r in internal:
        key = natural_key(r)
        if key and key not in by_natural:
            by_natural[key] = r

    pairs: List[Tuple[Any, Optional[Any]]] = []
    matched: Set[int] = set()
    seen: Set[str] = set()

    for ext in external:
        identity = _identity(ext, natural_key)
        if identity is None:
            logger.warning("Skipping external %s with no id and no natural key: %r", kind, ext)
            continue
        if identity in seen:
            logger.warning("Skipping duplicate external %s %s", kind, identity)
            continue
        seen.add(identity)

        match = by_external_id.get(ext.external_id) if ext.external_id else None
        if match is None:
            key = natural_key(ext)
            candidate = by_natural.get(key) if key else None
            if candidate is not None and candidate.external_id in (None, ext.external_id):
                match = candidate
        if match is not None and match.id in matched:
            match = None
        if match is not None:
            matched.add(match.id)
        pairs.append((ext, match))

    return pairs, matched


def _diff_fields(
    ext, internal_record, fields: Sequence[str]
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return (before, after) dicts holding only the tracked fields that changed."""
    before: Dict[str, Any] = {}
    after: Dict[str, Any] = {}
    for name in fields:
        old, new = getattr(internal_record, name), getattr(ext, name)
        if not _field_equal(name, old, new):
            before[name] = old
            after[name] = new
    if ext.external_id and internal_record.external_id != ext.external_id:
        before["external_id"] = internal_record.external_id
        after["external_id"] = ext.external_id
    return before, after


def required_actions_for(
    change_type: ChangeType, assign: bool = True, unassign: bool = False
) -> List[str]:
    """Look up the required actions for a change, refined by assignment direction."""
    if change_type == ChangeType.TENANT_UNIT_CHANGED:
        actions: List[ChangeAction] = []
        if assign:
            actions += [ChangeAction.ASSIGN_UNIT, ChangeAction.ADD_ACCESS]
        if unassign:
            actions += [ChangeAction.UNASSIGN_UNIT, ChangeAction.REMOVE_ACCESS]
        return [a.value for a in actions]
    actions = list(REQUIRED_ACTIONS[change_type])
    if change_type == ChangeType.TENANT_ADDED and not assign:
        actions = [ChangeAction.CREATE_USER]
    return [a.value for a in actions]


def _display_name(record) -> str:
    return record.full_name or record.email or record.external_id or "unknown tenant"


# ─── Detection ───────────────────────────────────────────────────────────────

def _detect_unit_changes(
    ext_units: Sequence[ExternalUnit], internal: InternalSnapshot
) -> Tuple[List[DetectedChange], List[DetectedChange], Dict[int, str]]:
    """
    Returns (additions/updates, removals, internal unit id → external identity).
    """
    pairs, matched = _match_records(ext_units, internal.units, _unit_natural_key, "unit")
    upserts: List[DetectedChange] = []
    identity_of_internal: Dict[int, str] = {}

    for ext, unit in pairs:
        identity = _identity(ext, _unit_natural_key)
        if unit is None:
            upserts.append(DetectedChange(
                change_type=ChangeType.UNIT_ADDED,
                entity_type=EntityType.UNIT,
                external_id=identity,
                after_data=ext.to_dict(),
                impact_summary=f"New unit: {ext.unit_number} - will be added to facility",
                required_actions=required_actions_for(ChangeType.UNIT_ADDED),
            ))
            continue

        identity_of_internal[unit.id] = identity
        before, after = _diff_fields(ext, unit, UNIT_TRACKED_FIELDS)
        if not after:
            continue
        changed = ", ".join(f"{k}: {before[k]} → {after[k]}" for k in after)
        upserts.append(DetectedChange(
            change_type=ChangeType.UNIT_UPDATED,
            entity_type=EntityType.UNIT,
            external_id=identity,
            internal_id=unit.id,
            before_data=before,
            after_data=after,
            impact_summary=f"Updated unit {ext.unit_number} ({changed})",
            required_actions=required_actions_for(ChangeType.UNIT_UPDATED),
        ))

    removals: List[DetectedChange] = []
    for unit in internal.units:
        if unit.id in matched:
            continue
        if unit.external_id:
            identity_of_internal[unit.id] = unit.external_id
            occupied = unit.tenant_id is not None
            removals.append(DetectedChange(
                change_type=ChangeType.UNIT_REMOVED,
                entity_type=EntityType.UNIT,
                external_id=unit.external_id,
                internal_id=unit.id,
                before_data={
                    "unit_number": unit.unit_number,
                    "unit_type": unit.unit_type,
                    "size": unit.size,
                    "status": unit.status,
                    "monthly_rate": unit.monthly_rate,
                    "tenant_id": unit.tenant_id,
                },
                after_data=None,
                impact_summary=(
                    f"Unit removed: {unit.unit_number} - will be deleted"
                    + (" and its tenant's access revoked" if occupied else "")
                ),
                required_actions=required_actions_for(ChangeType.UNIT_REMOVED),
            ))
        else:
            identity_of_internal[unit.id] = _unit_natural_key(unit)

    return upserts, removals, identity_of_internal


def _external_unit_sets(
    ext_tenants: Sequence[ExternalTenant], ext_units: Sequence[ExternalUnit]
) -> Dict[str, Set[str]]:
    """
    Each external tenant's unit identities: tenant.unit_ids ∪ units naming the tenant.
    """
    identities = {_identity(u, _unit_natural_key) for u in ext_units}
    by_number = {u.unit_number: _identity(u, _unit_natural_key) for u in ext_units}

    def resolve(ref: str) -> str:
        if ref in identities:
            return ref
        return by_number.get(ref, ref)

    sets: Dict[str, Set[str]] = {}
    for tenant in ext_tenants:
        identity = _identity(tenant, _tenant_natural_key)
        if identity is None:
            continue
        sets.setdefault(identity, set()).update(resolve(ref) for ref in tenant.unit_ids)
    for unit in ext_units:
        if unit.tenant_id and unit.tenant_id in sets:
            sets[unit.tenant_id].add(_identity(unit, _unit_natural_key))
    return sets


def _detect_tenant_changes(
    external: ExternalSnapshot,
    internal: InternalSnapshot,
    unit_identity: Dict[int, str],
    removed_units: Set[str],
) -> Tuple[List[DetectedChange], List[DetectedChange]]:
    """
    Returns (additions/updates/assignment changes, removals).

    Units in removed_units are left out of unassignments: their own
    unit_removed change revokes the access.
    """
    pairs, matched = _match_records(external.tenants, internal.tenants, _tenant_natural_key, "tenant")
    ext_sets = _external_unit_sets(external.tenants, external.units)

    unit_numbers: Dict[str, str] = {
        _identity(u, _unit_natural_key): u.unit_number for u in external.units
    }
    for u in internal.units:
        unit_numbers.setdefault(unit_identity.get(u.id, ""), u.unit_number)

    internal_sets: Dict[int, Set[str]] = {}
    held: Set[str] = set()
    for u in internal.units:
        if u.tenant_id is not None and u.id in unit_identity:
            internal_sets.setdefault(u.tenant_id, set()).add(unit_identity[u.id])
            held.add(unit_identity[u.id])

    def numbers(ids) -> List[str]:
        return [unit_numbers.get(i, i) for i in sorted(ids)]

    upserts: List[DetectedChange] = []
    for ext, tenant in pairs:
        identity = _identity(ext, _tenant_natural_key)
        target_units = ext_sets.get(identity, set())

        if tenant is None:
            # Units another tenant holds move only through a reviewed assignment change
            contested = target_units & held
            free_units = target_units - contested
            after = ext.to_dict()
            after["unit_ids"] = sorted(free_units)
            upserts.append(DetectedChange(
                change_type=ChangeType.TENANT_ADDED,
                entity_type=EntityType.TENANT,
                external_id=identity,
                after_data=after,
                impact_summary=(
                    f"New tenant: {_display_name(ext)}"
                    + (f" ({ext.email})" if ext.email else "")
                    + f" - will be added to {len(free_units)} unit(s)"
                    + (f": {', '.join(numbers(free_units))}" if free_units else "")
                ),
                required_actions=required_actions_for(
                    ChangeType.TENANT_ADDED, assign=bool(free_units)
                ),
            ))
            if contested:
                upserts.append(DetectedChange(
                    change_type=ChangeType.TENANT_UNIT_CHANGED,
                    entity_type=EntityType.TENANT,
                    external_id=identity,
                    before_data={"unit_ids": []},
                    after_data={
                        "unit_ids": sorted(target_units),
                        "assign": sorted(contested),
                        "unassign": [],
                    },
                    impact_summary=(
                        f"Unit assignment change for {_display_name(ext)}: assign to"
                        f" {', '.join(numbers(contested))}, currently held by another tenant"
                        " - gateway access will change"
                    ),
                    required_actions=required_actions_for(ChangeType.TENANT_UNIT_CHANGED),
                ))
            continue

        before, after = _diff_fields(ext, tenant, TENANT_TRACKED_FIELDS)
        if after:
            upserts.append(DetectedChange(
                change_type=ChangeType.TENANT_UPDATED,
                entity_type=EntityType.TENANT,
                external_id=identity,
                internal_id=tenant.id,
                before_data=before,
                after_data=after,
                impact_summary=(
                    f"Updated tenant info for {_display_name(ext)}: {', '.join(sorted(after))}"
                ),
                required_actions=required_actions_for(ChangeType.TENANT_UPDATED),
            ))

        current_units = internal_sets.get(tenant.id, set())
        to_assign = target_units - current_units
        to_unassign = current_units - target_units - removed_units
        if to_assign or to_unassign:
            parts = []
            if to_assign:
                parts.append(f"assign to {', '.join(numbers(to_assign))}")
            if to_unassign:
                parts.append(f"remove from {', '.join(numbers(to_unassign))}")
            upserts.append(DetectedChange(
                change_type=ChangeType.TENANT_UNIT_CHANGED,
                entity_type=EntityType.TENANT,
                external_id=identity,
                internal_id=tenant.id,
                before_data={"unit_ids": sorted(current_units)},
                after_data={
                    "unit_ids": sorted(target_units),
                    "assign": sorted(to_assign),
                    "unassign": sorted(to_unassign),
                },
                impact_summary=(
                    f"Unit assignment change for {_display_name(ext)}: {'; '.join(parts)}"
                    " - gateway access will change"
                ),
                required_actions=required_actions_for(
                    ChangeType.TENANT_UNIT_CHANGED,
                    assign=bool(to_assign),
                    unassign=bool(to_unassign),
                ),
            ))

    removals: List[DetectedChange] = []
    for tenant in internal.tenants:
        if tenant.id in matched or not tenant.external_id:
            continue
        held = internal_sets.get(tenant.id, set())
        removals.append(DetectedChange(
            change_type=ChangeType.TENANT_REMOVED,
            entity_type=EntityType.TENANT,
            external_id=tenant.external_id,
            internal_id=tenant.id,
            before_data={
                "first_name": tenant.first_name,
                "last_name": tenant.last_name,
                "email": tenant.email,
                "phone": tenant.phone,
                "unit_ids": sorted(held),
            },
            after_data=None,
            impact_summary=(
                f"Tenant removed: {_display_name(tenant)} - will be deactivated"
                f" and access revoked from {len(held)} unit(s)"
                + (f": {', '.join(numbers(held))}" if held else "")
            ),
            required_actions=required_actions_for(ChangeType.TENANT_REMOVED),
        ))

    return upserts, removals


def detect_changes(external: ExternalSnapshot, internal: InternalSnapshot) -> List[DetectedChange]:
    """
    Diff an external snapshot against internal records.

    Deterministic and side-effect free: the same inputs always produce the
    same ordered list, and identical sides produce an empty list.
    """
    unit_upserts, unit_removals, unit_identity = _detect_unit_changes(external.units, internal)
    removed_units = {c.external_id for c in unit_removals}
    tenant_upserts, tenant_removals = _detect_tenant_changes(
        external, internal, unit_identity, removed_units
    )
    return unit_upserts + tenant_upserts + tenant_removals + unit_removals


def summarize_changes(changes: Sequence[Any]) -> SyncSummary:
    """Count changes per kind. Accepts DetectedChange or SyncChange objects."""
    summary = SyncSummary()
    counters = {
        ChangeType.TENANT_ADDED.value: "tenants_added",
        ChangeType.TENANT_REMOVED.value: "tenants_removed",
        ChangeType.TENANT_UPDATED.value: "tenants_updated",
        ChangeType.TENANT_UNIT_CHANGED.value: "tenants_updated",
        ChangeType.UNIT_ADDED.value: "units_added",
        ChangeType.UNIT_REMOVED.value: "units_removed",
        ChangeType.UNIT_UPDATED.value: "units_updated",
    }
    for change in changes:
        change_type = getattr(change.change_type, "value", change.change_type)
        attr = counters.get(change_type)
        if attr:
            setattr(summary, attr, getattr(summary, attr) + 1)
    return summary
