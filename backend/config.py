"""
Configuration file for the Disaster Map client core.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _float_env(name, default):
    return float(os.getenv(name, str(default)))


def _optional_float_env(name):
    value = os.getenv(name)
    return float(value) if value else None


class Config:
    """Base configuration"""
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    # Firebase
    FIREBASE_CREDENTIALS_PATH = os.getenv('FIREBASE_CREDENTIALS_PATH')
    FIREBASE_PROJECT_ID = os.getenv('FIREBASE_PROJECT_ID')
    FIREBASE_WEB_API_KEY = os.getenv('FIREBASE_WEB_API_KEY', '')
    AUTH_REQUEST_TIMEOUT = _float_env('AUTH_REQUEST_TIMEOUT', 10)

    # Durable local storage (JSON file)
    LOCAL_STORAGE_PATH = os.getenv(
        'LOCAL_STORAGE_PATH',
        os.path.join(os.path.expanduser('~'), '.disaster_map', 'storage.json')
    )

    # Session lifetime after a successful login/sign-up
    SESSION_TTL_SECONDS = int(os.getenv('SESSION_TTL_SECONDS', '3600'))

    # Location resolver tier timeouts (seconds)
    PERMISSION_TIMEOUT = _float_env('PERMISSION_TIMEOUT', 15)
    POSITION_TIMEOUT = _float_env('POSITION_TIMEOUT', 20)
    IP_LOOKUP_TIMEOUT = _float_env('IP_LOOKUP_TIMEOUT', 1)
    COUNTRY_CODE_TIMEOUT = _float_env('COUNTRY_CODE_TIMEOUT', 2)

    # Viewport spans in degrees
    PRECISE_SPAN = _float_env('PRECISE_SPAN', 0.01)
    IP_SPAN = _float_env('IP_SPAN', 0.1)
    DEFAULT_SPAN = _float_env('DEFAULT_SPAN', 0.1)

    # Static fallback viewport (Brisbane CBD)
    DEFAULT_LATITUDE = _float_env('DEFAULT_LATITUDE', -27.4698)
    DEFAULT_LONGITUDE = _float_env('DEFAULT_LONGITUDE', 153.0251)

    IP_GEOLOCATION_URL = os.getenv('IP_GEOLOCATION_URL', 'https://ipapi.co/json/')

    # Host device settings (desktop builds have no GPS by default)
    DEVICE_LOCATION_ENABLED = os.getenv('DEVICE_LOCATION_ENABLED', 'False').lower() == 'true'
    DEVICE_COUNTRY_CODE = os.getenv('DEVICE_COUNTRY_CODE')
    # Fixed site position reported by the device tier when enabled
    DEVICE_LATITUDE = _optional_float_env('DEVICE_LATITUDE')
    DEVICE_LONGITUDE = _optional_float_env('DEVICE_LONGITUDE')

    # Geocoding (OpenStreetMap Nominatim)
    NOMINATIM_URL = os.getenv('NOMINATIM_URL', 'https://nominatim.openstreetmap.org')
    GEOCODING_USER_AGENT = os.getenv('GEOCODING_USER_AGENT', 'DisasterMap/1.0')

    # Hazards within this radius of the viewport centre are shown
    HAZARD_RADIUS_KM = _float_env('HAZARD_RADIUS_KM', 100)


class DevelopmentConfig(Config):
    """Development configuration"""
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'DEBUG').upper()


class ProductionConfig(Config):
    """Production configuration"""
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'WARNING').upper()


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}
