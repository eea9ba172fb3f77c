"""
Simulated FMS provider.

Reads tenants and units from a JSON fixture file instead of calling a
vendor API. The file is re-read on every fetch (no caching) so it can be
edited between syncs during demos and manual testing:

    {
        "metadata": {"facilityId": "fac-1", "description": "..."},
        "tenants": [{"id": "T-1", "firstName": "Jane", "unitIds": ["U-1"], ...}],
        "units":   [{"id": "U-1", "unitNumber": "B12", "status": "occupied", ...}]
    }

Config keys:
    data_file:       path to the JSON file (default: Settings.simulated_data_path)
    latency_seconds: artificial delay per fetch, for progress UI demos
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fmssync.config import get_settings
from fmssync.providers.base import ExternalTenant, ExternalUnit, FMSProvider
from fmssync.providers.normalizer import normalize_tenants, normalize_units
from fmssync.sync.errors import MalformedResponse, ProviderConnectionError

logger = logging.getLogger(__name__)


class SimulatedProvider(FMSProvider):
    """Deterministic fixture-backed provider, interchangeable with real vendors."""

    provider_type = "simulated"
    provider_name = "Simulated FMS"

    def __init__(self, facility_id: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(facility_id, config)
        self.data_file = Path(
            self.config.get("data_file") or get_settings().simulated_data_path
        )
        self.latency_seconds = float(self.config.get("latency_seconds", 0))

    async def _run(self, fn, *args):
        """Run a blocking file read in the thread pool."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _read_sync(self) -> Dict[str, Any]:
        if not self.data_file.exists():
            raise ProviderConnectionError(f"simulated data file not found: {self.data_file}")
        text = self.data_file.read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedResponse(f"simulated data file is not valid JSON: {exc}", raw_payload=text)
        if not isinstance(data, dict):
            raise MalformedResponse("simulated data file must hold an object", raw_payload=data)
        return data

    async def _read(self) -> Dict[str, Any]:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        data = await self._run(self._read_sync)

        data_facility = (data.get("metadata") or {}).get("facilityId")
        if data_facility and data_facility != self.facility_id:
            logger.warning(
                "Simulated data file is for facility %s, but syncing %s",
                data_facility, self.facility_id,
            )
        return data

    async def connect(self) -> None:
        await self._run(self._read_sync)
        logger.info("Simulated FMS reachable for facility %s (%s)", self.facility_id, self.data_file)

    async def fetch_tenants(self) -> List[ExternalTenant]:
        data = await self._read()
        return normalize_tenants(data)

    async def fetch_units(self) -> List[ExternalUnit]:
        data = await self._read()
        return normalize_units(data)
