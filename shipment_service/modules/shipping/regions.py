"""
Region resolution and static shipping tables.

Countries and carriers resolve to a logical region; each region is served by
exactly one carrier per mode. Onboarding a region or carrier is a change to
the tables below, not to the resolver.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class CarrierCode(str, enum.Enum):
    SHIPROCKET = "shiprocket"
    GCC_LOGISTICS = "gcc_logistics"


class ShippingMethod(str, enum.Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"
    ECONOMY = "economy"
    PRIORITY = "priority"


@dataclass(frozen=True)
class MethodInfo:
    name: str
    description: str
    estimated_days: int


SHIPPING_METHODS: Dict[ShippingMethod, MethodInfo] = {
    ShippingMethod.STANDARD: MethodInfo("Standard", "Regular delivery", 5),
    ShippingMethod.EXPRESS: MethodInfo("Express", "Fast delivery", 2),
    ShippingMethod.OVERNIGHT: MethodInfo("Overnight", "Next day delivery", 1),
    ShippingMethod.ECONOMY: MethodInfo("Economy", "Budget delivery", 7),
    ShippingMethod.PRIORITY: MethodInfo("Priority", "Priority handling", 3),
}


def estimated_delivery_date(method: str, start: Optional[date] = None) -> date:
    """Delivery date implied by the method catalogue (unknown methods ship standard)."""
    try:
        info = SHIPPING_METHODS[ShippingMethod(method)]
    except ValueError:
        info = SHIPPING_METHODS[ShippingMethod.STANDARD]
    return (start or date.today()) + timedelta(days=info.estimated_days)


@dataclass(frozen=True)
class RegionInfo:
    code: str
    name: str
    currency: str
    carrier: str
    active: bool = True


# Region -> serving carrier
REGIONS: Dict[str, RegionInfo] = {
    "IN": RegionInfo("IN", "India", "INR", CarrierCode.SHIPROCKET.value),
    "QA": RegionInfo("QA", "Qatar", "QAR", CarrierCode.GCC_LOGISTICS.value),
    "AE": RegionInfo("AE", "United Arab Emirates", "AED", CarrierCode.GCC_LOGISTICS.value),
    "SA": RegionInfo("SA", "Saudi Arabia", "SAR", CarrierCode.GCC_LOGISTICS.value),
    "OM": RegionInfo("OM", "Oman", "OMR", CarrierCode.GCC_LOGISTICS.value),
}

# Destination country -> region
COUNTRY_REGIONS: Dict[str, str] = {
    "IN": "IN",
    "QA": "QA",
    "AE": "AE",
    "SA": "SA",
    "OM": "OM",
}

# Carrier identifier -> region whose configuration handles its webhooks
CARRIER_REGIONS: Dict[str, str] = {
    "shiprocket": "IN",
    "blue_dart": "IN",
    "gcc_logistics": "QA",
    "aramex": "AE",
    "dhl": "AE",
}


class RegionResolver:
    """
    Pure, total mapping of countries and carriers to regions.

    Anything unmapped resolves to the home region; checkout must never block
    on an unrecognised country.
    """

    def __init__(
        self,
        home_region: str = "IN",
        country_regions: Optional[Dict[str, str]] = None,
        carrier_regions: Optional[Dict[str, str]] = None,
    ):
        self.home_region = home_region
        self._country_regions = dict(country_regions if country_regions is not None else COUNTRY_REGIONS)
        self._carrier_regions = dict(carrier_regions if carrier_regions is not None else CARRIER_REGIONS)

    def resolve_from_destination(self, country_code: Optional[str]) -> str:
        key = (country_code or "").strip().upper()
        return self._country_regions.get(key, self.home_region)

    def resolve_from_carrier(self, carrier: Optional[str]) -> str:
        key = (carrier or "").strip().lower().replace("-", "_")
        return self._carrier_regions.get(key, self.home_region)

    def is_known_carrier(self, carrier: Optional[str]) -> bool:
        key = (carrier or "").strip().lower().replace("-", "_")
        return key in self._carrier_regions


# ============================================================================
# Region configuration
# ============================================================================

@dataclass(frozen=True)
class CarrierCredentials:
    api_key: str = ""
    api_secret: str = ""
    webhook_secret: str = ""

    def __repr__(self) -> str:
        # Never print secrets
        return f"CarrierCredentials(api_key={'***' if self.api_key else ''!r})"


@dataclass
class RegionConfig:
    """Everything an adapter needs for one (region, mode) pair."""
    region: str
    mode: str
    carrier: str
    credentials: CarrierCredentials
    timeout_ms: int = 30000
    base_url: str = ""
    currency: str = "USD"
    extras: Dict[str, Any] = field(default_factory=dict)


# Carrier -> settings key prefix and the names of its two credential fields
_CARRIER_SETTINGS = {
    CarrierCode.SHIPROCKET: ("SHIPROCKET", "EMAIL", "PASSWORD"),
    CarrierCode.GCC_LOGISTICS: ("GCC_LOGISTICS", "API_KEY", "API_SECRET"),
}

_CARRIER_EXTRAS = {
    CarrierCode.SHIPROCKET: {
        "pickup_location": "SHIPROCKET_PICKUP_LOCATION",
        "default_pickup_postcode": "SHIPROCKET_DEFAULT_PICKUP_POSTCODE",
        "default_delivery_postcode": "SHIPROCKET_DEFAULT_DELIVERY_POSTCODE",
    },
}


def _mode_setting(settings, mode: str, name: str):
    """Read `name`, preferring its SANDBOX_ variant outside live mode."""
    if mode == "sandbox":
        value = getattr(settings, f"SANDBOX_{name}", None)
        if value is not None:
            return value
    return getattr(settings, name, None)


def build_region_configs(settings, mode: str) -> Dict[str, RegionConfig]:
    """Materialise credentials for every active region in the given mode."""
    configs = {}
    for code, info in REGIONS.items():
        if not info.active:
            continue
        keys = _CARRIER_SETTINGS.get(info.carrier)
        if keys is None:
            logger.warning(f"Region {code} names carrier {info.carrier} with no settings mapping")
            continue
        prefix, key_field, secret_field = keys

        timeout_ms = getattr(settings, f"{prefix}_TIMEOUT_MS", None) or settings.SHIPPING_CARRIER_TIMEOUT_MS
        extras = {
            name: _mode_setting(settings, mode, setting)
            for name, setting in _CARRIER_EXTRAS.get(info.carrier, {}).items()
        }

        configs[code] = RegionConfig(
            region=code,
            mode=mode,
            carrier=info.carrier,
            credentials=CarrierCredentials(
                api_key=_mode_setting(settings, mode, f"{prefix}_{key_field}") or "",
                api_secret=_mode_setting(settings, mode, f"{prefix}_{secret_field}") or "",
                webhook_secret=_mode_setting(settings, mode, f"{prefix}_WEBHOOK_SECRET") or "",
            ),
            timeout_ms=timeout_ms,
            base_url=_mode_setting(settings, mode, f"{prefix}_API_URL") or "",
            currency=info.currency,
            extras=extras,
        )
    return configs
