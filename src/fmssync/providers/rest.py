"""
Generic REST FMS provider.

Talks to any FMS exposing a plain JSON API:

    GET {base_url}/health   → 2xx when credentials are valid
    GET {base_url}/tenants  → [...] or {"tenants": [...]}
    GET {base_url}/units    → [...] or {"units": [...]}

Config keys:
    base_url:  API root (required)
    auth:      {"type": "api_key" | "bearer_token" | "basic_auth", ...credentials}
    timeout:   per-request timeout in seconds (default: Settings.rest_request_timeout_seconds)

HTTP failures are mapped onto the adapter error taxonomy so the
orchestrator can decide what to retry.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from fmssync.config import get_settings
from fmssync.providers.base import ExternalTenant, ExternalUnit, FMSProvider
from fmssync.providers.normalizer import normalize_tenants, normalize_units
from fmssync.sync.errors import (
    MalformedResponse,
    ProviderAuthError,
    ProviderConnectionError,
    RateLimited,
)

logger = logging.getLogger(__name__)


def build_auth_headers(auth: Dict[str, Any]) -> Dict[str, str]:
    """Translate an auth config dict into request headers."""
    auth_type = auth.get("type")
    if auth_type == "api_key" and auth.get("api_key"):
        return {"X-API-Key": auth["api_key"]}
    if auth_type == "bearer_token" and auth.get("bearer_token"):
        return {"Authorization": f"Bearer {auth['bearer_token']}"}
    return {}


class GenericRestProvider(FMSProvider):
    """Reference vendor adapter over httpx."""

    provider_type = "generic_rest"
    provider_name = "Generic REST API"

    def __init__(
        self,
        facility_id: str,
        config: Optional[Dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            facility_id: Internal facility id.
            config: Provider config (see module docstring).
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
        """
        super().__init__(facility_id, config)
        self.base_url = (self.config.get("base_url") or "").rstrip("/")
        self.timeout = float(
            self.config.get("timeout") or get_settings().rest_request_timeout_seconds
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _build_client(self) -> httpx.AsyncClient:
        auth_cfg = self.config.get("auth") or {}
        basic = None
        if auth_cfg.get("type") == "basic_auth":
            basic = httpx.BasicAuth(auth_cfg.get("username", ""), auth_cfg.get("password", ""))
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", **build_auth_headers(auth_cfg)},
            auth=basic,
            timeout=self.timeout,
            transport=self._transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.base_url:
                raise ProviderConnectionError("generic_rest provider requires base_url")
            self._client = self._build_client()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str) -> Any:
        """GET a path and return decoded JSON, mapping failures to adapter errors."""
        try:
            response = await self.client.get(path)
        except httpx.TransportError as exc:
            raise ProviderConnectionError(f"GET {path} failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise ProviderAuthError(f"GET {path} rejected credentials (HTTP {status})")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_s = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_s = None
            raise RateLimited(f"GET {path} rate limited", retry_after=retry_after_s)
        if status >= 500:
            raise ProviderConnectionError(f"GET {path} failed with HTTP {status}")
        if status >= 400:
            raise MalformedResponse(f"GET {path} returned HTTP {status}", raw_payload=response.text)

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponse(f"GET {path} did not return JSON", raw_payload=response.text) from exc

    async def connect(self) -> None:
        await self._get("/health")

    async def fetch_tenants(self) -> List[ExternalTenant]:
        return normalize_tenants(await self._get("/tenants"))

    async def fetch_units(self) -> List[ExternalUnit]:
        return normalize_units(await self._get("/units"))
