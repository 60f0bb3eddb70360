"""
Test suite for the Disaster Map client core.

This package contains:
- test_session_store.py: Session model, updates, login/sign-up/logout
- test_session_reconciliation.py: Startup snapshot vs. auth provider ordering
- test_location_resolver.py: Location fallback tiers and bounded waits
- test_hazard_service.py / test_geocoding_service.py: Map screen services
- fakes.py: In-memory storage, auth provider and document store

Run tests:
    pip install -e ".[test]"
    python -m pytest

Run specific test file:
    python -m pytest backend/tests/test_session_reconciliation.py
"""
