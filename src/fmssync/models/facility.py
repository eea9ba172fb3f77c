"""Internal tenant and unit records: only the fields an FMS sync touches."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class Tenant(SQLModel, table=True):
    """A tenant of one facility. external_id is None until linked to the FMS."""

    id: Optional[int] = Field(default=None, primary_key=True)
    facility_id: str = Field(index=True)
    external_id: Optional[str] = Field(default=None, index=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Unit(SQLModel, table=True):
    """A rentable storage unit. At most one assigned tenant."""

    id: Optional[int] = Field(default=None, primary_key=True)
    facility_id: str = Field(index=True)
    external_id: Optional[str] = Field(default=None, index=True)
    unit_number: str
    unit_type: Optional[str] = None
    size: Optional[str] = None
    status: str = "available"  # "available", "occupied", "maintenance", "reserved"
    monthly_rate: Optional[float] = None
    tenant_id: Optional[int] = Field(default=None, foreign_key="tenant.id", index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
