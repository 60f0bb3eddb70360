"""
Location Resolver - best-effort current position for the map screens.

Tiers are tried strictly in order, first success wins:
1. Device-precise: location services + foreground permission + high accuracy fix
2. IP-based: external IP geolocation service
3. Country-code: representative centre of the device's region
4. Static default: fixed fallback viewport (cannot fail)

Every bounded wait is an asyncio.wait_for race; a wait that elapses is
handled exactly like an error in that tier. A tier's late result is
dropped with the cancelled wait and never reaches the caller.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

import requests

from services.device_location import ACCURACY_HIGH, LocationPermission
from utils.geo import LocationFix, is_valid_coordinates
from utils.secure_logging import describe_fix

logger = logging.getLogger(__name__)

# ISO 3166-1 alpha-2 -> (latitude, longitude, span in degrees sized to the country)
COUNTRY_CENTERS: Dict[str, Tuple[float, float, float]] = {
    'AU': (-27.4705, 153.0260, 30.0),   # Brisbane area
    'NZ': (-41.2865, 174.7762, 12.0),
    'US': (39.8283, -98.5795, 40.0),
    'CA': (56.1304, -106.3468, 45.0),
    'GB': (54.0000, -2.0000, 10.0),
    'IE': (53.4129, -8.2439, 4.0),
    'IN': (20.5937, 78.9629, 25.0),
    'ID': (-2.5489, 118.0149, 30.0),
    'PH': (12.8797, 121.7740, 14.0),
    'JP': (36.2048, 138.2529, 15.0),
    'CN': (35.8617, 104.1954, 40.0),
    'SG': (1.3521, 103.8198, 0.5),
    'MY': (4.2105, 101.9758, 12.0),
    'PG': (-6.3150, 143.9555, 10.0),
    'FJ': (-17.7134, 178.0650, 4.0),
    'DE': (51.1657, 10.4515, 9.0),
    'FR': (46.2276, 2.2137, 10.0),
    'ZA': (-30.5595, 22.9375, 15.0),
    'BR': (-14.2350, -51.9253, 40.0),
    'MX': (23.6345, -102.5528, 20.0),
}

Notifier = Callable[[str, str], None]


def log_notice(title: str, message: str) -> None:
    """Default user-facing notice sink"""
    logger.warning(f"{title}: {message}")


class LocationResolver:
    """
    Tiered location fallback chain.

    Usage:
        resolver = LocationResolver(device, notify=show_alert)
        fix = await resolver.resolve()
        fix = await resolver.locate(session_store)   # cached-or-resolve
    """

    def __init__(self, device, notify: Notifier = log_notice,
                 ip_lookup_url: str = 'https://ipapi.co/json/',
                 permission_timeout: float = 15, position_timeout: float = 20,
                 ip_timeout: float = 1, country_timeout: float = 2,
                 precise_span: float = 0.01, ip_span: float = 0.1,
                 default_location: Optional[LocationFix] = None,
                 country_centers: Optional[Dict[str, Tuple[float, float, float]]] = None):
        """
        Args:
            device: DeviceLocation collaborator
            notify: Callable(title, message) used for user-facing notices
            ip_lookup_url: JSON IP geolocation endpoint
            permission_timeout: Bounded wait for the permission prompt (s)
            position_timeout: Bounded wait for a high-accuracy fix (s)
            ip_timeout: Bounded wait for the IP lookup (s)
            country_timeout: Bounded wait for the device country code (s)
            precise_span: Viewport span for device fixes (degrees)
            ip_span: Viewport span for IP fixes (degrees)
            default_location: Static fallback viewport
            country_centers: Override for COUNTRY_CENTERS
        """
        self.device = device
        self.notify = notify
        self.ip_lookup_url = ip_lookup_url
        self.permission_timeout = permission_timeout
        self.position_timeout = position_timeout
        self.ip_timeout = ip_timeout
        self.country_timeout = country_timeout
        self.precise_span = precise_span
        self.ip_span = ip_span
        self.default_location = default_location or LocationFix(
            -27.4698, 153.0251, 0.1, 0.1, source='default'
        )
        self.country_centers = country_centers if country_centers is not None else COUNTRY_CENTERS
        self.last_permission: Optional[LocationPermission] = None

    @classmethod
    def from_config(cls, cfg, device, notify: Notifier = log_notice) -> 'LocationResolver':
        """Build a resolver from a Config class"""
        return cls(
            device,
            notify=notify,
            ip_lookup_url=cfg.IP_GEOLOCATION_URL,
            permission_timeout=cfg.PERMISSION_TIMEOUT,
            position_timeout=cfg.POSITION_TIMEOUT,
            ip_timeout=cfg.IP_LOOKUP_TIMEOUT,
            country_timeout=cfg.COUNTRY_CODE_TIMEOUT,
            precise_span=cfg.PRECISE_SPAN,
            ip_span=cfg.IP_SPAN,
            default_location=LocationFix(
                cfg.DEFAULT_LATITUDE, cfg.DEFAULT_LONGITUDE,
                cfg.DEFAULT_SPAN, cfg.DEFAULT_SPAN, source='default'
            ),
        )

    async def resolve(self) -> LocationFix:
        """
        Produce exactly one LocationFix.

        Never raises and never returns None; the static default is the backstop.
        """
        tiers = (
            ('device', self._device_tier),
            ('ip', self._ip_tier),
            ('country', self._country_tier),
        )
        for name, tier in tiers:
            try:
                fix = await tier()
            except Exception as e:
                logger.warning(f"Location tier '{name}' failed unexpectedly: {e!r}")
                fix = None

            if fix is not None:
                logger.info(f"Location resolved by '{name}' tier: {describe_fix(fix)}")
                return fix

        logger.info("All location tiers failed; using default location")
        return self.default_location

    async def locate(self, session_store, refresh: bool = False) -> LocationFix:
        """
        Current viewport for a screen, reusing the session's cached fix.

        Args:
            session_store: SessionStore to read from and write the result to
            refresh: Ignore the cached fix and run the fallback chain

        Returns:
            The cached or newly resolved LocationFix
        """
        cached = session_store.session.current_location
        if cached is not None and not refresh:
            return cached

        fix = await self.resolve()
        fields = {'current_location': fix}
        if self.last_permission is not None:
            fields['location_permission'] = self.last_permission
        session_store.update(fields)
        return fix

    async def _bounded(self, awaitable: Awaitable, timeout: float, what: str):
        """Race an operation against a timer; None means it failed or timed out"""
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            logger.info(f"{what} timed out after {timeout}s")
        except Exception as e:
            logger.info(f"{what} failed: {e!r}")
        return None

    async def _device_tier(self) -> Optional[LocationFix]:
        status = await self._bounded(
            self.device.get_provider_status(), self.permission_timeout, 'Location provider status'
        )
        if not status or not status.get('enabled'):
            self.notify(
                'Location services disabled',
                'Turn on location services for a precise position. Using an approximate location instead.'
            )
            return None

        permission = await self._bounded(
            self.device.request_foreground_permission(), self.permission_timeout, 'Location permission request'
        )
        if permission is not None:
            self.last_permission = permission
        if permission is None or not permission.granted:
            logger.info("Location permission denied or unanswered")
            return None

        position = await self._bounded(
            self.device.get_current_position(ACCURACY_HIGH), self.position_timeout, 'Device position fix'
        )
        if position is None:
            return None

        latitude, longitude = position
        if not is_valid_coordinates(latitude, longitude):
            logger.warning("Device returned invalid coordinates")
            return None
        return LocationFix(latitude, longitude, self.precise_span, self.precise_span, source='device')

    async def _ip_tier(self) -> Optional[LocationFix]:
        self.notify('Approximate location', 'Precise location unavailable. Estimating your location from your network.')

        data = await self._bounded(
            asyncio.to_thread(self._fetch_ip_location), self.ip_timeout, 'IP geolocation lookup'
        )
        if not data:
            return None

        latitude = data.get('latitude', data.get('lat'))
        longitude = data.get('longitude', data.get('lon'))
        if not is_valid_coordinates(latitude, longitude):
            logger.warning("IP geolocation response had no usable coordinates")
            return None
        return LocationFix(float(latitude), float(longitude), self.ip_span, self.ip_span, source='ip')

    def _fetch_ip_location(self) -> Dict:
        response = requests.get(self.ip_lookup_url, timeout=self.ip_timeout)
        response.raise_for_status()
        return response.json()

    async def _country_tier(self) -> Optional[LocationFix]:
        self.notify('Approximate location', 'Network location unavailable. Using your region instead.')

        code = await self._bounded(
            self.device.get_country_code(), self.country_timeout, 'Device country code lookup'
        )
        if not code:
            return None

        center = self.country_centers.get(str(code).upper())
        if center is None:
            logger.info(f"No centre point for country code {code}")
            return None

        latitude, longitude, span = center
        return LocationFix(latitude, longitude, span, span, source='country')
