"""Firebase Admin SDK initialization for the push channel."""

import json
import os

import firebase_admin
from firebase_admin import credentials
from structlog import get_logger

logger = get_logger(__name__)

_firebase_app: firebase_admin.App | None = None


def initialize_firebase(
    firebase_credentials_path: str | None = None, firebase_config_json: str | None = None
) -> firebase_admin.App:
    """
    Initialize Firebase Admin SDK.

    Credentials are looked up in order: raw JSON string, credentials file,
    then Application Default Credentials.

    Args:
        firebase_credentials_path: Optional path to service account JSON file.
        firebase_config_json: Optional raw JSON string of service account.

    Returns:
        Initialized Firebase app
    """
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    cred = None
    if firebase_config_json:
        cred = credentials.Certificate(json.loads(firebase_config_json))
    elif firebase_credentials_path and os.path.exists(firebase_credentials_path):
        cred = credentials.Certificate(firebase_credentials_path)

    try:
        _firebase_app = firebase_admin.initialize_app(cred) if cred else firebase_admin.initialize_app()
    except Exception as e:
        logger.error("firebase_initialization_failed", error=str(e))
        raise

    logger.info("firebase_initialized", explicit_credentials=cred is not None)
    return _firebase_app
