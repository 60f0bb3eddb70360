"""
HazardService - hazards near a viewport, hazard details and votes, and new reports.

Nearby lookup narrows the Firestore query to a latitude band around the
viewport centre, then filters by great-circle distance.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bleach import clean

from services.auth_service import AuthError
from utils.geo import LocationFix, haversine_distance, is_valid_coordinates, latitude_band
from utils.secure_logging import hash_user_id
from utils.validators import HazardValidator

logger = logging.getLogger(__name__)

HAZARD_COLLECTION = 'hazards'


class HazardValidationError(ValueError):
    """Hazard report rejected by validation"""


def sanitize_text(text: Optional[str]) -> str:
    """Strip all HTML from user-supplied text"""
    if not text:
        return ""
    return clean(text, tags=[], strip=True).strip()


class HazardService:
    """Hazard queries and reports backed by the DocumentStore"""

    def __init__(self, documents, default_radius_km: float = 100):
        """
        Args:
            documents: DocumentStore holding the hazard collection
            default_radius_km: Search radius used when none is given
        """
        self.documents = documents
        self.default_radius_km = default_radius_km

    async def nearby_hazards(self, center: LocationFix, radius_km: Optional[float] = None) -> List[Dict]:
        """
        Hazards within radius_km of the viewport centre, nearest first

        Args:
            center: Viewport to search around
            radius_km: Search radius (defaults to default_radius_km)

        Returns:
            Hazard dicts with an added 'distance_km'; empty list on query failure
        """
        radius_km = self.default_radius_km if radius_km is None else radius_km
        south, north = latitude_band(center.latitude, radius_km)

        try:
            docs = await self.documents.query(HAZARD_COLLECTION, [
                ('latitude', '>=', south),
                ('latitude', '<=', north),
            ])
        except Exception as e:
            logger.error(f"Error fetching hazards: {e}")
            return []

        hazards = []
        for doc in docs:
            lat, lon = doc.get('latitude'), doc.get('longitude')
            if not is_valid_coordinates(lat, lon):
                continue

            distance = haversine_distance(center.latitude, center.longitude, float(lat), float(lon))
            if distance > radius_km:
                continue

            hazards.append({
                **doc,
                'description': sanitize_text(doc.get('description')),
                'distance_km': round(distance, 2),
            })

        hazards.sort(key=lambda h: h['distance_km'])
        logger.info(f"Hazards: {len(hazards)} of {len(docs)} within {radius_km} km")
        return hazards

    async def get_hazard(self, hazard_id: str) -> Optional[Dict]:
        """
        One hazard for the detail view

        Returns:
            Hazard dict with its 'id' and a sanitized description, or None
            if it does not exist or could not be read
        """
        try:
            doc = await self.documents.get_doc(HAZARD_COLLECTION, hazard_id)
        except Exception as e:
            logger.error(f"Error fetching hazard {hazard_id}: {e}")
            return None

        if doc is None:
            logger.info(f"No hazard document {hazard_id}")
            return None

        return {
            **doc,
            'id': hazard_id,
            'description': sanitize_text(doc.get('description')),
            'upvotes': doc.get('upvotes', 0),
            'downvotes': doc.get('downvotes', 0),
        }

    async def vote(self, hazard_id: str, up: bool) -> bool:
        """
        Record a "still there?" vote on a hazard

        Args:
            hazard_id: Hazard document ID
            up: True for "yes, still there", False for "no"

        Returns:
            True if the vote was stored
        """
        field = 'upvotes' if up else 'downvotes'
        try:
            await self.documents.increment_field(HAZARD_COLLECTION, hazard_id, field)
        except Exception as e:
            logger.error(f"Error voting on hazard {hazard_id}: {e}")
            return False

        logger.info(f"Hazard {hazard_id}: {field} +1")
        return True

    async def report_hazard(self, session_store, hazard_type: str, description: str,
                            location: LocationFix) -> str:
        """
        Store a new hazard report for the signed-in user

        Returns:
            ID of the new hazard document

        Raises:
            AuthError: No valid session
            HazardValidationError: Report data is invalid
        """
        if not session_store.is_session_valid():
            raise AuthError('session-expired', 'Session expired. Please log in again.')

        description = sanitize_text(description)
        is_valid, error = HazardValidator.validate_report_data({
            'type': hazard_type,
            'description': description,
            'latitude': location.latitude,
            'longitude': location.longitude,
        })
        if not is_valid:
            raise HazardValidationError(error)

        user_id = session_store.session.user_id
        hazard = {
            'type': HazardValidator.canonical_type(hazard_type),
            'description': description,
            'latitude': location.latitude,
            'longitude': location.longitude,
            'reportedBy': user_id,
            'createdAt': datetime.now(timezone.utc).isoformat(),
        }
        hazard_id = await self.documents.add_doc(HAZARD_COLLECTION, hazard)
        logger.info(f"Hazard {hazard_id} reported by user {hash_user_id(user_id)}")
        return hazard_id
