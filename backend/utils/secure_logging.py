"""
PII-safe helpers for the client core's log lines.

Session snapshots, credentials and device positions all pass through
logging; nothing here is needed for behaviour, only for what may be
written to the log:

    logger.info(redact_pii(f"Sign-in requested for {email}"))
    # -> "Sign-in requested for [EMAIL_REDACTED]"

    logger.info(f"Session folded for user {hash_user_id(uid)}")
    logger.info(f"Resolved {describe_fix(fix)}")
"""

import hashlib
import re
from typing import Iterable, Optional

_EMAIL_RE = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
# 4+ decimals is street level; 1-3 decimals (city level) stays readable
_PRECISE_COORD_RE = re.compile(r'-?\d{1,3}\.\d{4,}')
_IPV4_RE = re.compile(r'\b(?:\d{1,3}\.){3}\d{1,3}\b')

# Order matters: coordinates before IPv4 so "153.025134" is never half-matched
_REDACTIONS = (
    (_EMAIL_RE, '[EMAIL_REDACTED]'),
    (_PRECISE_COORD_RE, '[COORD_REDACTED]'),
    (_IPV4_RE, '[IP_REDACTED]'),
)

# Substrings of dict keys whose values never reach the log
SENSITIVE_KEYS = (
    'email', 'password', 'token', 'api_key', 'secret',
    'latitude', 'longitude', 'user_id', 'ip_address',
)


def redact_pii(text: str) -> str:
    """
    Mask emails, precise coordinates and IPv4 addresses in a message.

    Examples:
        >>> redact_pii("Sign-in for jo@example.com from 203.0.113.7")
        'Sign-in for [EMAIL_REDACTED] from [IP_REDACTED]'

        >>> redact_pii("Device fix: -27.469812, 153.025134")
        'Device fix: [COORD_REDACTED], [COORD_REDACTED]'
    """
    if not text:
        return text

    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def hash_user_id(user_id: Optional[str], length: int = 16) -> str:
    """
    Truncated SHA-256 of a Firebase uid, so one user's log lines correlate.

    Signed-out sessions log as '[NO_USER_ID]'.
    """
    if not user_id:
        return '[NO_USER_ID]'

    digest = hashlib.sha256(user_id.encode('utf-8')).hexdigest()
    return digest[:length]


def redact_coordinates(lat: Optional[float], lon: Optional[float], precision: int = 2) -> tuple[str, str]:
    """
    Coordinates rounded for logging (2 decimals is roughly 1.1 km).

    Examples:
        >>> redact_coordinates(-27.4698, 153.0251)
        ('-27.47', '153.03')
    """
    if lat is None or lon is None:
        return '[REDACTED]', '[REDACTED]'

    return f"{lat:.{precision}f}", f"{lon:.{precision}f}"


def describe_fix(fix) -> str:
    """One-line log description of a LocationFix, e.g. "ip fix (-33.87, 151.21) span 0.1" """
    if fix is None:
        return 'no fix'

    lat, lon = redact_coordinates(fix.latitude, fix.longitude)
    return f"{fix.source} fix ({lat}, {lon}) span {fix.latitude_span:g}"


def _is_sensitive(key, redact_keys: Iterable[str]) -> bool:
    lowered = str(key).lower()
    return any(sensitive in lowered for sensitive in redact_keys)


def safe_log_dict(data: dict, redact_keys: Optional[Iterable[str]] = None) -> dict:
    """
    Copy of a (possibly nested) dict with sensitive values masked.

    Used for Session.to_dict() debug output: the uid and the coordinates
    inside location fixes are masked, spans and states are kept.

    Examples:
        >>> safe_log_dict({'user_id': 'abc', 'auth_state': 'authenticated'})
        {'user_id': '[REDACTED]', 'auth_state': 'authenticated'}
    """
    keys = tuple(redact_keys) if redact_keys is not None else SENSITIVE_KEYS

    safe = {}
    for key, value in data.items():
        if _is_sensitive(key, keys):
            value = '[REDACTED]'
        elif isinstance(value, dict):
            value = safe_log_dict(value, keys)
        safe[key] = value
    return safe
