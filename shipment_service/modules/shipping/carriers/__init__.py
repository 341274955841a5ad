"""
Carrier Registry and Adapter Registry

- register_carrier binds a carrier code to its BaseCarrier implementation
- AdapterRegistry hands out one long-lived adapter per (region, mode),
  built from the region configs; this is the only place credentials are
  turned into adapters
"""
from typing import Dict, List, Optional, Tuple, Type
import logging

import httpx

from shipment_service.core.exceptions import UnsupportedRegionError
from shipment_service.modules.shipping.carriers.base import BaseCarrier
from shipment_service.modules.shipping.regions import RegionConfig, build_region_configs

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[str, Type[BaseCarrier]] = {}


def register_carrier(carrier_code):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierCode.SHIPROCKET)
        class ShiprocketCarrier(BaseCarrier):
            ...
    """
    code = getattr(carrier_code, "value", carrier_code)

    def decorator(cls: Type[BaseCarrier]):
        _CARRIER_REGISTRY[code] = cls
        logger.debug(f"Registered carrier: {code} -> {cls.__name__}")
        return cls
    return decorator


def get_registered_carriers() -> List[str]:
    """Get list of all registered carrier codes."""
    return list(_CARRIER_REGISTRY.keys())


class AdapterRegistry:
    """
    Selects the carrier adapter for a (region, mode) pair.

    Adapters are created lazily on first use and reused afterwards.
    """

    def __init__(
        self,
        region_configs: Dict[Tuple[str, str], RegionConfig],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            region_configs: (region, mode) -> RegionConfig
            transport: Optional httpx transport handed to every adapter
        """
        self._configs = dict(region_configs)
        self._transport = transport
        self._adapters: Dict[Tuple[str, str], BaseCarrier] = {}

    @classmethod
    def from_settings(cls, settings, modes=None, transport=None) -> "AdapterRegistry":
        configs = {}
        for mode in modes or (settings.shipping_mode,):
            for region, config in build_region_configs(settings, mode).items():
                configs[(region, mode)] = config
        return cls(configs, transport=transport)

    def get_adapter(self, region: str, mode: str) -> BaseCarrier:
        """
        Get the adapter serving `region` in `mode`.

        Raises:
            UnsupportedRegionError: nothing configured/registered for the pair
        """
        key = (region, mode)
        adapter = self._adapters.get(key)
        if adapter is not None:
            return adapter

        config = self._configs.get(key)
        if config is None:
            raise UnsupportedRegionError(region, mode)

        carrier_cls = _CARRIER_REGISTRY.get(config.carrier)
        if carrier_cls is None:
            logger.warning(f"No implementation registered for carrier: {config.carrier}")
            raise UnsupportedRegionError(
                region, mode, message=f"Carrier {config.carrier} for region {region} is not available",
            )

        adapter = carrier_cls(config, transport=self._transport)
        self._adapters[key] = adapter
        logger.info(f"Created {adapter.carrier_name} adapter for {region}/{mode}")
        return adapter

    def supports(self, region: str, mode: str) -> bool:
        return (region, mode) in self._configs

    def regions(self, mode: str) -> List[RegionConfig]:
        return [config for (_, config_mode), config in self._configs.items() if config_mode == mode]

    async def close(self) -> None:
        """Close every adapter's HTTP client."""
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from shipment_service.modules.shipping.carriers.shiprocket import ShiprocketCarrier  # noqa: E402, F401
from shipment_service.modules.shipping.carriers.gcc_logistics import GCCLogisticsCarrier  # noqa: E402, F401
