"""Read access to the internal tenant/unit records a sync compares against."""
from typing import Optional

from sqlmodel import Session, select

from fmssync.models.facility import Tenant, Unit
from fmssync.sync.detector import InternalSnapshot, InternalTenant, InternalUnit


def load_internal_snapshot(engine, facility_id: str) -> InternalSnapshot:
    """Load active tenants and all units of a facility as detector records."""
    with Session(engine) as s:
        tenants = s.exec(
            select(Tenant).where(Tenant.facility_id == facility_id, Tenant.is_active == True)  # noqa: E712
            .order_by(Tenant.id)
        ).all()
        units = s.exec(
            select(Unit).where(Unit.facility_id == facility_id).order_by(Unit.id)
        ).all()

        active_ids = {t.id for t in tenants}
        return InternalSnapshot(
            tenants=[
                InternalTenant(
                    id=t.id,
                    external_id=t.external_id,
                    first_name=t.first_name,
                    last_name=t.last_name,
                    email=t.email,
                    phone=t.phone,
                )
                for t in tenants
            ],
            units=[
                InternalUnit(
                    id=u.id,
                    unit_number=u.unit_number,
                    external_id=u.external_id,
                    unit_type=u.unit_type,
                    size=u.size,
                    status=u.status,
                    monthly_rate=u.monthly_rate,
                    tenant_id=u.tenant_id if u.tenant_id in active_ids else None,
                )
                for u in units
            ],
        )


def find_unit(s: Session, facility_id: str, identity: str) -> Optional[Unit]:
    """
    Resolve a unit identity from a change payload: external id first, then
    the "unit:<number>" natural key the detector uses for unlinked units.
    """
    unit = s.exec(
        select(Unit).where(Unit.facility_id == facility_id, Unit.external_id == identity)
    ).first()
    if unit is not None:
        return unit
    if not identity.startswith("unit:"):
        return None
    number = identity[len("unit:"):]
    for candidate in s.exec(select(Unit).where(Unit.facility_id == facility_id)).all():
        if candidate.unit_number.strip().lower() == number.strip().lower():
            return candidate
    return None


def find_tenant(s: Session, facility_id: str, identity: str) -> Optional[Tenant]:
    """
    Resolve an active tenant from a change identity: external id, or the
    "email:" / "name:" natural key of a tenant the FMS gives no id.
    """
    active = s.exec(
        select(Tenant).where(Tenant.facility_id == facility_id, Tenant.is_active == True)  # noqa: E712
        .order_by(Tenant.id)
    ).all()
    for tenant in active:
        if tenant.external_id == identity:
            return tenant
    kind, _, value = identity.partition(":")
    for tenant in active:
        if kind == "email" and (tenant.email or "").strip().lower() == value:
            return tenant
        full_name = " ".join(p for p in (tenant.first_name, tenant.last_name) if p)
        if kind == "name" and full_name.strip().lower() == value:
            return tenant
    return None
