"""Provider adapter registry keyed by provider type."""
import logging
from typing import Dict, List, Type

from fmssync.models.sync import FacilitySyncConfig
from fmssync.providers.base import FMSProvider
from fmssync.sync.errors import UnknownProviderError

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps FacilitySyncConfig.provider_type to an FMSProvider subclass."""

    def __init__(self):
        self._providers: Dict[str, Type[FMSProvider]] = {}

    def register(self, provider_type: str, provider_cls: Type[FMSProvider]) -> None:
        self._providers[provider_type] = provider_cls
        logger.info("Registered FMS provider: %s", provider_type)

    def types(self) -> List[str]:
        return sorted(self._providers)

    def create(self, config: FacilitySyncConfig) -> FMSProvider:
        """Instantiate the adapter for a facility config."""
        provider_cls = self._providers.get(config.provider_type)
        if provider_cls is None:
            raise UnknownProviderError(f"FMS provider not found: {config.provider_type}")
        return provider_cls(config.facility_id, config.provider_config)


def default_registry() -> ProviderRegistry:
    """Registry with every built-in adapter."""
    from fmssync.providers.rest import GenericRestProvider
    from fmssync.providers.simulated import SimulatedProvider

    registry = ProviderRegistry()
    registry.register(SimulatedProvider.provider_type, SimulatedProvider)
    registry.register(GenericRestProvider.provider_type, GenericRestProvider)
    return registry
