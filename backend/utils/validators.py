"""
Validation utilities for credentials and hazard reports.

Shared by the auth service (login/sign-up input) and the hazard service:
- Login/sign-up email and password input
- Hazard types, descriptions and report locations
"""
import math
import re
from typing import Dict, Optional, Tuple


class CredentialValidator:
    """Validator for login and sign-up input."""

    # Matches the limit enforced by the login form
    MAX_EMAIL_LENGTH = 50

    EMAIL_PATTERN = r'^[^\s@]+@[^\s@]+\.[^\s@]+$'

    @staticmethod
    def validate_email(email: str) -> Tuple[bool, Optional[str]]:
        """
        Validate email format and length.

        Args:
            email: Email address to validate

        Returns:
            Tuple of (is_valid, error_message)

        Examples:
            >>> CredentialValidator.validate_email('user@example.com')
            (True, None)
            >>> CredentialValidator.validate_email('not-an-email')
            (False, 'Please enter a valid email address')
        """
        if not email:
            return False, 'Email address is required'

        if len(email) > CredentialValidator.MAX_EMAIL_LENGTH:
            return False, f'Email exceeded {CredentialValidator.MAX_EMAIL_LENGTH} characters'

        if not re.match(CredentialValidator.EMAIL_PATTERN, email):
            return False, 'Please enter a valid email address'

        return True, None

    @staticmethod
    def validate_password(password: str) -> Tuple[bool, Optional[str]]:
        """
        Validate password strength for new accounts.

        Args:
            password: Password to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not password or len(password) < 8:
            return False, "Password must be at least 8 characters"
        if not re.search(r'[A-Z]', password):
            return False, "Password must contain at least one uppercase letter"
        if not re.search(r'[a-z]', password):
            return False, "Password must contain at least one lowercase letter"
        if not re.search(r'[0-9]', password):
            return False, "Password must contain at least one digit"
        return True, None


class HazardValidator:
    """Validator for hazard types, descriptions and report data."""

    # Options offered by the report form
    VALID_TYPES = [
        'Flood',
        'Fallen Tree',
        'Fallen Powerline',
        'Fire',
    ]

    MAX_DESCRIPTION_WORDS = 256

    REPORT_FIELDS = ('type', 'description', 'latitude', 'longitude')

    @staticmethod
    def validate_hazard_type(hazard_type: str) -> bool:
        """
        Validate hazard type against the report form options (case-insensitive).

        Examples:
            >>> HazardValidator.validate_hazard_type('Flood')
            True
            >>> HazardValidator.validate_hazard_type('fallen tree')
            True
            >>> HazardValidator.validate_hazard_type('Tsunami')
            False
        """
        if not hazard_type:
            return False
        return hazard_type.strip().lower() in [t.lower() for t in HazardValidator.VALID_TYPES]

    @staticmethod
    def canonical_type(hazard_type: str) -> Optional[str]:
        """Return the form's spelling of a hazard type, or None if unknown."""
        if not hazard_type:
            return None
        for valid in HazardValidator.VALID_TYPES:
            if valid.lower() == hazard_type.strip().lower():
                return valid
        return None

    @staticmethod
    def count_words(text: str) -> int:
        """Count whitespace-separated words"""
        if not text or not text.strip():
            return 0
        return len(text.split())

    @staticmethod
    def validate_report_data(data: Dict) -> Tuple[bool, Optional[str]]:
        """
        Validate complete hazard report data.

        Checks:
        - Required fields (type, description, latitude, longitude)
        - Hazard type validity
        - Description word limit
        - Latitude/longitude ranges

        Args:
            data: Report fields keyed by name

        Returns:
            Tuple of (is_valid, error_message)

        Examples:
            >>> HazardValidator.validate_report_data({
            ...     'type': 'Flood', 'description': 'Road under water',
            ...     'latitude': -27.47, 'longitude': 153.02})
            (True, None)
        """
        missing = [name for name in HazardValidator.REPORT_FIELDS if name not in data]
        if missing:
            return False, f'Missing required fields: {", ".join(missing)}'

        if not HazardValidator.validate_hazard_type(data['type']):
            valid_types_str = ', '.join(HazardValidator.VALID_TYPES)
            return False, f'Invalid hazard type. Must be one of: {valid_types_str}'

        description = data['description'] or ''
        if not description.strip():
            return False, 'Description is required'
        if HazardValidator.count_words(description) > HazardValidator.MAX_DESCRIPTION_WORDS:
            return False, f'Maximum word count is {HazardValidator.MAX_DESCRIPTION_WORDS}'

        for field, limit in (('latitude', 90), ('longitude', 180)):
            error = HazardValidator._coordinate_error(field, data[field], limit)
            if error:
                return False, error

        return True, None

    @staticmethod
    def _coordinate_error(field: str, value, limit: float) -> Optional[str]:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return f'{field.capitalize()} must be a valid number'
        if math.isnan(number) or not -limit <= number <= limit:
            return f'{field.capitalize()} must be between -{limit} and {limit}'
        return None
