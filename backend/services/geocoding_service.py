"""
Geocoding Service - address search with OpenStreetMap Nominatim

Backs the hazard search screen: address suggestions while typing, and
address -> viewport lookup when a suggestion is picked. The picked
viewport becomes the session's search_location. The hazard detail view
reverse-geocodes a hazard's position to a street address.

Features:
- OpenStreetMap Nominatim API integration (free, no API key)
- Rate limiting (1 request/second as per Nominatim ToS)
- Graceful error handling: failures return empty results, never raise
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

import requests

from utils.geo import LocationFix, is_valid_coordinates

logger = logging.getLogger(__name__)


class GeocodingService:
    """
    Address search using OpenStreetMap Nominatim

    Usage:
        service = GeocodingService()
        suggestions = await service.search_addresses('14 Sutherland St Walgett')
        fix = await service.geocode_address(suggestions[0])
    """

    # Suggestions are only fetched for queries longer than this
    MIN_QUERY_LENGTH = 2

    SEARCH_SPAN = 0.1

    def __init__(self, base_url: str = "https://nominatim.openstreetmap.org",
                 user_agent: str = 'DisasterMap/1.0', timeout: float = 5):
        """
        Args:
            base_url: Nominatim server root
            user_agent: User-Agent header required by the Nominatim usage policy
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.user_agent = user_agent
        self.timeout = timeout
        self.last_request_time = 0.0
        self.rate_limit_delay = 1.0  # 1 second between requests (Nominatim ToS)
        self._rate_lock = asyncio.Lock()

    async def search_addresses(self, query: str, limit: int = 5) -> List[str]:
        """
        Address suggestions for a partial query

        Returns:
            Display names of matching places; empty for short queries or on error
        """
        query = (query or '').strip()
        if len(query) <= self.MIN_QUERY_LENGTH:
            return []

        results = await self._search(query, limit)
        return [r.get('display_name') for r in results if r.get('display_name')]

    async def geocode_address(self, address: str) -> Optional[LocationFix]:
        """
        Convert an address to a viewport centred on it

        Returns:
            LocationFix with the search span, or None if nothing matched
        """
        address = (address or '').strip()
        if not address:
            return None

        results = await self._search(address, 1)
        if not results:
            logger.info("Geocoding: no match for selected address")
            return None

        try:
            lat = float(results[0]['lat'])
            lon = float(results[0]['lon'])
        except (KeyError, TypeError, ValueError):
            logger.warning("Geocoding: result without usable coordinates")
            return None

        if not is_valid_coordinates(lat, lon):
            return None
        return LocationFix(lat, lon, self.SEARCH_SPAN, self.SEARCH_SPAN, source='search')

    async def search_location(self, session_store, address: str) -> Optional[LocationFix]:
        """
        Geocode an address and store it as the session's search_location

        Returns:
            The stored LocationFix, or None if the address could not be resolved
        """
        fix = await self.geocode_address(address)
        if fix is not None:
            session_store.update(search_location=fix)
        return fix

    async def reverse_geocode(self, latitude: float, longitude: float) -> Optional[Dict]:
        """
        Convert coordinates to a street address (hazard detail view)

        Returns:
            Dict with 'address', 'city', 'state', 'country', or None on error

        Example:
            result = await service.reverse_geocode(-27.4698, 153.0251)
            # {'address': 'Queen Street Mall, Brisbane City, ...', 'city': 'Brisbane', ...}
        """
        if not is_valid_coordinates(latitude, longitude):
            logger.warning("Reverse geocoding skipped: invalid coordinates")
            return None

        data = await self._request('reverse', {
            'lat': latitude,
            'lon': longitude,
            'format': 'json',
            'addressdetails': 1,
        })
        if not isinstance(data, dict) or not data.get('display_name'):
            return None

        address = data.get('address') or {}
        return {
            'address': data['display_name'],
            'city': (
                address.get('city') or
                address.get('town') or
                address.get('village') or
                address.get('suburb')
            ),
            'state': address.get('state'),
            'country': address.get('country'),
        }

    async def _search(self, query: str, limit: int) -> List[Dict]:
        data = await self._request('search', {
            'q': query,
            'format': 'json',
            'addressdetails': 0,
            'limit': limit,
        })
        return data if isinstance(data, list) else []

    async def _request(self, endpoint: str, params: Dict):
        """Rate-limited Nominatim GET; None on any failure"""
        async with self._rate_lock:
            wait = self.rate_limit_delay - (time.time() - self.last_request_time)
            if wait > 0:
                await asyncio.sleep(wait)
            try:
                return await asyncio.to_thread(self._get_sync, endpoint, params)
            except Exception as e:
                logger.error(f"Geocoding error ({endpoint}): {e}")
                return None
            finally:
                self.last_request_time = time.time()

    def _get_sync(self, endpoint: str, params: Dict):
        response = requests.get(
            f"{self.base_url}/{endpoint}",
            params=params,
            headers={'User-Agent': self.user_agent},
            timeout=self.timeout
        )

        if response.status_code != 200:
            logger.warning(f"Geocoding API error: {response.status_code}")
            return None

        return response.json()
