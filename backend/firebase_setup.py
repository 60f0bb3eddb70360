"""
Firebase Admin SDK bootstrap for the Disaster Map client core.

Credentials can be supplied two ways:
1. Base64-encoded JSON (FIREBASE_CREDENTIALS_BASE64) - for CI and kiosk builds
2. File path (FIREBASE_CREDENTIALS_PATH) - for local development

The Firestore client returned by initialize_firebase() backs the
DocumentStore (user profiles, hazard records).
"""

import os
import json
import base64
import logging
import firebase_admin
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)


def get_firebase_credentials():
    """
    Get Firebase credentials from environment.

    Returns:
        firebase_admin.credentials.Certificate: Firebase credentials object

    Raises:
        ValueError: If no valid credentials are found
    """
    base64_creds = os.getenv('FIREBASE_CREDENTIALS_BASE64')
    if base64_creds:
        try:
            json_str = base64.b64decode(base64_creds).decode('utf-8')
            return credentials.Certificate(json.loads(json_str))
        except Exception as e:
            raise ValueError(f"Failed to decode FIREBASE_CREDENTIALS_BASE64: {e}")

    cred_path = os.getenv('FIREBASE_CREDENTIALS_PATH')
    if cred_path and os.path.exists(cred_path):
        return credentials.Certificate(cred_path)

    raise ValueError(
        "No Firebase credentials found. Set either:\n"
        "  - FIREBASE_CREDENTIALS_BASE64 (base64-encoded service account JSON)\n"
        "  - FIREBASE_CREDENTIALS_PATH (path to service account JSON file)"
    )


def initialize_firebase(project_id=None):
    """
    Initialize the default Firebase app once and return a Firestore client.

    Args:
        project_id: Optional Firebase project ID override

    Returns:
        google.cloud.firestore.Client bound to the default app
    """
    if not firebase_admin._apps:
        options = {'projectId': project_id} if project_id else None
        firebase_admin.initialize_app(get_firebase_credentials(), options)
        logger.info("Firebase app initialized")
    return firestore.client()
