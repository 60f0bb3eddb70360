"""
Composition root for the Disaster Map client core.

Screens receive the AppServices bundle (dependency injection); there is no
module-level session or client state.
"""
import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from config import config
from firebase_setup import initialize_firebase
from services.auth_service import FirebaseAuthService
from services.device_location import HostDeviceLocation
from services.document_store import DocumentStore
from services.geocoding_service import GeocodingService
from services.hazard_service import HazardService
from services.local_storage import LocalStorage
from services.location_resolver import LocationResolver, log_notice
from services.session_store import SessionStore

load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )


def get_config(env: str = None):
    """Config class for APP_ENV (development/production)"""
    return config.get(env or os.getenv('APP_ENV', 'default'), config['default'])


@dataclass
class AppServices:
    storage: LocalStorage
    auth: FirebaseAuthService
    documents: DocumentStore
    session_store: SessionStore
    location_resolver: LocationResolver
    geocoding: GeocodingService
    hazards: HazardService


def build_services(cfg=None, notify=log_notice, firestore_client=None, device=None) -> AppServices:
    """
    Wire the client core together.

    Args:
        cfg: Config class (defaults to get_config())
        notify: Callable(title, message) for user-facing location notices
        firestore_client: Firestore client; Firebase is initialized when omitted
        device: DeviceLocation; defaults to HostDeviceLocation from config
    """
    cfg = cfg or get_config()
    configure_logging(cfg.LOG_LEVEL)

    if firestore_client is None:
        firestore_client = initialize_firebase(cfg.FIREBASE_PROJECT_ID)

    storage = LocalStorage(cfg.LOCAL_STORAGE_PATH)
    documents = DocumentStore(firestore_client)
    auth = FirebaseAuthService(cfg.FIREBASE_WEB_API_KEY, storage, timeout=cfg.AUTH_REQUEST_TIMEOUT)
    session_store = SessionStore(storage, auth, documents, session_ttl=cfg.SESSION_TTL_SECONDS)

    if device is None:
        fixed_position = None
        if cfg.DEVICE_LATITUDE is not None and cfg.DEVICE_LONGITUDE is not None:
            fixed_position = (cfg.DEVICE_LATITUDE, cfg.DEVICE_LONGITUDE)
        device = HostDeviceLocation(
            enabled=cfg.DEVICE_LOCATION_ENABLED,
            fixed_position=fixed_position,
            country_code=cfg.DEVICE_COUNTRY_CODE,
        )

    return AppServices(
        storage=storage,
        auth=auth,
        documents=documents,
        session_store=session_store,
        location_resolver=LocationResolver.from_config(cfg, device, notify=notify),
        geocoding=GeocodingService(cfg.NOMINATIM_URL, cfg.GEOCODING_USER_AGENT),
        hazards=HazardService(documents, default_radius_km=cfg.HAZARD_RADIUS_KM),
    )


async def start_services(services: AppServices) -> None:
    """
    Startup sequence: subscribe the session store, then restore the
    provider's login (which fires the first auth notification).
    """
    await services.session_store.start()
    await services.auth.restore()
    await services.session_store.wait_ready()
    services.session_store.check_expiry()
    logger.info("Client core started")


async def stop_services(services: AppServices) -> None:
    await services.session_store.close()
