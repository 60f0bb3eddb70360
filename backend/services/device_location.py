"""
Device geolocation access.

DeviceLocation is the contract the location resolver consumes; platform
builds provide their own subclass. HostDeviceLocation serves desktop and
kiosk hosts, which normally have no GPS: location services are off unless
configured, and the country code comes from configuration or the
process locale.
"""
import locale
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

ACCURACY_HIGH = 'high'
ACCURACY_BALANCED = 'balanced'


@dataclass(frozen=True)
class LocationPermission:
    """Outcome of a foreground location permission request"""
    status: str  # 'granted' | 'denied' | 'undetermined'
    granted: bool
    can_ask_again: bool = True

    def to_dict(self) -> Dict:
        return {'status': self.status, 'granted': self.granted, 'can_ask_again': self.can_ask_again}

    @classmethod
    def from_dict(cls, data) -> Optional['LocationPermission']:
        if not isinstance(data, dict) or 'status' not in data:
            return None
        status = str(data['status'])
        return cls(
            status=status,
            granted=bool(data.get('granted', status == 'granted')),
            can_ask_again=bool(data.get('can_ask_again', True)),
        )


class DeviceLocation(ABC):
    """Device geolocation and locale collaborator"""

    @abstractmethod
    async def get_provider_status(self) -> Dict[str, bool]:
        """Return {'enabled': bool} for the device's location services"""

    @abstractmethod
    async def request_foreground_permission(self) -> LocationPermission:
        """Ask the user for foreground location access"""

    @abstractmethod
    async def get_current_position(self, accuracy: str = ACCURACY_HIGH) -> Tuple[float, float]:
        """Return the current (latitude, longitude)"""

    @abstractmethod
    async def get_country_code(self) -> Optional[str]:
        """Return the device's ISO 3166-1 alpha-2 region code, if known"""


class HostDeviceLocation(DeviceLocation):
    """DeviceLocation for hosts without a positioning API"""

    def __init__(self, enabled: bool = False, fixed_position: Optional[Tuple[float, float]] = None,
                 country_code: Optional[str] = None):
        """
        Args:
            enabled: Whether location services are reported as enabled
            fixed_position: Position reported when enabled (e.g. a kiosk's site)
            country_code: Region override; the process locale is used otherwise
        """
        self.enabled = enabled
        self.fixed_position = fixed_position
        self.country_code = country_code

    async def get_provider_status(self) -> Dict[str, bool]:
        return {'enabled': self.enabled and self.fixed_position is not None}

    async def request_foreground_permission(self) -> LocationPermission:
        if self.enabled:
            return LocationPermission(status='granted', granted=True)
        return LocationPermission(status='denied', granted=False, can_ask_again=False)

    async def get_current_position(self, accuracy: str = ACCURACY_HIGH) -> Tuple[float, float]:
        if not self.enabled or self.fixed_position is None:
            raise RuntimeError("No position available on this host")
        return self.fixed_position

    async def get_country_code(self) -> Optional[str]:
        if self.country_code:
            return self.country_code.upper()

        language_code, _ = locale.getlocale()
        # e.g. 'en_AU' -> 'AU'
        if language_code and '_' in language_code:
            region = language_code.split('_', 1)[1][:2]
            if region.isalpha():
                return region.upper()

        logger.debug(f"No region in process locale: {language_code}")
        return None
