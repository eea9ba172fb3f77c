"""
Provider adapter capability interface.

Every FMS integration subclasses FMSProvider and implements fetch_tenants()
and fetch_units(). The orchestrator only ever talks to this interface, so a
new vendor is added by registering a new subclass, never by branching on
provider type.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from fmssync.sync.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class ExternalTenant:
    """A tenant as the FMS reports it."""

    external_id: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    unit_ids: List[str] = field(default_factory=list)  # external unit ids
    status: str = "active"

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExternalUnit:
    """A unit as the FMS reports it."""

    external_id: Optional[str]
    unit_number: str
    unit_type: Optional[str] = None
    size: Optional[str] = None
    status: str = "available"
    tenant_id: Optional[str] = None  # external tenant id
    monthly_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExternalSnapshot:
    """Authoritative tenant/unit state fetched from the FMS in one sync."""

    tenants: List[ExternalTenant] = field(default_factory=list)
    units: List[ExternalUnit] = field(default_factory=list)


@dataclass
class ProviderCapabilities:
    supports_tenant_sync: bool = True
    supports_unit_sync: bool = True
    supports_webhooks: bool = False
    # Tenants and units may be fetched in parallel
    concurrent_fetch: bool = True


class FMSProvider(ABC):
    """
    Base class for all FMS adapters.

    Args:
        facility_id: Internal facility the adapter is fetching for.
        config: Provider-specific settings (FacilitySyncConfig.provider_config).
    """

    provider_type: str = ""
    provider_name: str = "FMS provider"

    def __init__(self, facility_id: str, config: Optional[Dict[str, Any]] = None):
        self.facility_id = facility_id
        self.config = dict(config or {})

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    async def connect(self) -> None:
        """Open or validate the connection. No-op unless the vendor needs a handshake."""

    async def close(self) -> None:
        """Release any resources held by the adapter."""

    async def test_connection(self) -> bool:
        """Return True if the FMS is reachable with the configured credentials."""
        try:
            await self.connect()
            return True
        except ProviderError as exc:
            logger.warning("%s connection test failed: %s", self.provider_name, exc)
            return False

    @abstractmethod
    async def fetch_tenants(self) -> List[ExternalTenant]:
        """Fetch every tenant of the facility."""

    @abstractmethod
    async def fetch_units(self) -> List[ExternalUnit]:
        """Fetch every unit of the facility."""

    async def fetch_snapshot(self, facility_id: Optional[str] = None) -> ExternalSnapshot:
        """
        Fetch tenants and units together.

        Both requests run concurrently when the adapter advertises
        concurrent_fetch; the snapshot is returned only once both finish.

        Raises:
            ProviderError subclasses on any adapter failure.
        """
        if facility_id is not None and facility_id != self.facility_id:
            logger.warning(
                "%s built for facility %s asked to fetch facility %s",
                self.provider_name, self.facility_id, facility_id,
            )
        if self.capabilities().concurrent_fetch:
            tenants, units = await asyncio.gather(self.fetch_tenants(), self.fetch_units())
        else:
            tenants = await self.fetch_tenants()
            units = await self.fetch_units()
        return ExternalSnapshot(tenants=list(tenants), units=list(units))
