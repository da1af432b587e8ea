"""
firestore_client.py — Firestore / Firebase Admin initializer
- Provides: get_db(), init_firebase()
- Credential priority: FIREBASE_SERVICE_ACCOUNT_JSON (path) > FIREBASE_CONFIG_JSON (inline JSON) > ADC
- FIRESTORE_EMULATOR_HOST is honoured by the client library itself
"""
from __future__ import annotations

import os
import json
import logging
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore

__all__ = ["get_db", "init_firebase"]

logger = logging.getLogger("firestore-client")

_db: Optional[firestore.Client] = None


def _project_id() -> Optional[str]:
    return (
        os.environ.get("GOOGLE_CLOUD_PROJECT")
        or os.environ.get("GCP_PROJECT_ID")
        or os.environ.get("GCLOUD_PROJECT")
    )


def init_firebase() -> None:
    """Initialize the default firebase_admin app once. Also used by auth token checks."""
    if firebase_admin._apps:
        return

    proj = _project_id()
    options = {"projectId": proj} if proj else None
    sa_path = os.environ.get("FIREBASE_SERVICE_ACCOUNT_JSON")
    sa_json = os.environ.get("FIREBASE_CONFIG_JSON")

    if sa_path and os.path.isfile(sa_path):
        logger.info("Initializing Firebase with SA file: %s", sa_path)
        firebase_admin.initialize_app(credentials.Certificate(sa_path), options)
        return

    if sa_json:
        try:
            cred = credentials.Certificate(json.loads(sa_json))
        except ValueError:
            logger.exception("Invalid FIREBASE_CONFIG_JSON; falling back to ADC")
        else:
            logger.info("Initializing Firebase with SA JSON from env")
            firebase_admin.initialize_app(cred, options)
            return

    logger.info("Initializing Firebase with ADC (project=%s)", proj)
    firebase_admin.initialize_app(options=options)


def get_db():
    """Return a cached Firestore client. Initializes on first call."""
    global _db
    if _db is not None:
        return _db
    init_firebase()
    _db = firestore.client()
    logger.info("Firestore initialized (project=%s)", _project_id() or getattr(_db, "project", None))
    return _db


def _reset_db_for_tests() -> None:
    """Reset cached client (useful in unit tests)."""
    global _db
    _db = None
