"""Firebase Admin SDK initialization and utilities."""

import json
import os

import firebase_admin
from firebase_admin import credentials
from structlog import get_logger

logger = get_logger(__name__)

_firebase_app: firebase_admin.App | None = None


def initialize_firebase(
    firebase_credentials_path: str | None = None, firebase_config_json: str | None = None
) -> bool:
    """
    Initialize Firebase Admin SDK for push delivery.

    Args:
        firebase_credentials_path: Optional path to service account JSON file.
        firebase_config_json: Optional raw JSON string of service account.

    Looks for Firebase credentials in order:
    1. FIREBASE_CONFIG_JSON (raw JSON)
    2. FIREBASE_CREDENTIALS_PATH (file)

    Without either, Firebase stays uninitialized and push notifications are
    reported as unconfigured.

    Returns:
        True if Firebase is initialized after the call
    """
    global _firebase_app

    if _firebase_app is not None:
        logger.info("Firebase already initialized")
        return True

    cred = None

    # 1. Raw JSON string (container / hosted deployments)
    if firebase_config_json:
        logger.info("Initializing Firebase with JSON string from environment")
        cred = credentials.Certificate(json.loads(firebase_config_json))

    # 2. File path (local dev)
    elif firebase_credentials_path and os.path.exists(firebase_credentials_path):
        logger.info("Initializing Firebase with JSON file", path=firebase_credentials_path)
        cred = credentials.Certificate(firebase_credentials_path)

    if cred is None:
        logger.warning("Firebase credentials not provided, push notifications disabled")
        return False

    try:
        _firebase_app = firebase_admin.initialize_app(cred)
    except ValueError as e:
        logger.error("Failed to initialize Firebase", error=str(e))
        raise
    return True


def is_firebase_initialized() -> bool:
    """Check whether push delivery is available."""
    return _firebase_app is not None
