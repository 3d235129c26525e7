"""
chatrelay: Firebase Admin SDK bridge.

Initializes the SDK once and hands out the clients the gateways wrap:
Firestore, Realtime Database, Cloud Messaging, Cloud Storage, Auth.
Every SDK call is blocking, so gateways push them onto the default
executor with ``run_blocking``.
"""

import asyncio
import functools
import logging
from typing import Any, Callable, Optional

import firebase_admin
from firebase_admin import auth, credentials, firestore, storage
from google.api_core import exceptions as gcloud_exceptions

logger = logging.getLogger(__name__)

_app: Optional[firebase_admin.App] = None


def init_firebase(
    cred_path: str = "",
    db_url: str = "",
    project_id: str = "",
    storage_bucket: str = "",
) -> bool:
    """
    Initialize Firebase Admin SDK.

    Args:
        cred_path: Path to the service account JSON key file. When blank,
            Application Default Credentials are used.
        db_url: Realtime Database URL (presence store).
        project_id: Explicit project id (optional with a key file).
        storage_bucket: Default Cloud Storage bucket.

    Returns True if init succeeded, False otherwise.
    """
    global _app

    if _app is not None:
        return True

    options: dict[str, str] = {}
    if db_url:
        options["databaseURL"] = db_url
    if project_id:
        options["projectId"] = project_id
    if storage_bucket:
        options["storageBucket"] = storage_bucket

    try:
        cred = credentials.Certificate(cred_path) if cred_path else credentials.ApplicationDefault()
        _app = firebase_admin.initialize_app(cred, options)
        logger.info("Firebase Admin SDK initialized (project=%s)", project_id or "default")
        return True
    except Exception as e:
        logger.error(f"Firebase init failed: {e}")
        return False


def is_initialized() -> bool:
    """Check if Firebase Admin SDK is initialized."""
    return _app is not None


def get_app() -> firebase_admin.App:
    if _app is None:
        raise RuntimeError("Firebase Admin SDK is not initialized")
    return _app


def firestore_client():
    return firestore.client(app=get_app())


async def run_blocking(fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking SDK call on the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


# ── Auth ────────────────────────────────────────────────


class IdentityGateway:
    """Firebase Auth: ID token verification and credential deletion."""

    def __init__(self, app: Optional[firebase_admin.App] = None):
        self._app = app

    async def verify_id_token(self, id_token: str) -> dict:
        return await run_blocking(auth.verify_id_token, id_token, app=self._app)

    async def delete_user(self, uid: str) -> bool:
        """Delete the credential record. Already gone counts as deleted."""
        try:
            await run_blocking(auth.delete_user, uid, app=self._app)
            return True
        except auth.UserNotFoundError:
            logger.info("Auth record %s already deleted", uid)
            return True


# ── Storage ─────────────────────────────────────────────


class StorageGateway:
    """Best-effort blob removal. Missing objects are never an error."""

    def __init__(self, bucket=None):
        self._bucket = bucket

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = storage.bucket(app=get_app())
        return self._bucket

    async def delete_prefix(self, prefix: str) -> int:
        def _delete() -> int:
            deleted = 0
            for blob in self.bucket.list_blobs(prefix=prefix):
                try:
                    blob.delete()
                    deleted += 1
                except gcloud_exceptions.NotFound:
                    pass
            return deleted

        return await run_blocking(_delete)

    async def delete_blob(self, path: str) -> bool:
        def _delete() -> bool:
            try:
                self.bucket.blob(path).delete()
                return True
            except gcloud_exceptions.NotFound:
                return False

        return await run_blocking(_delete)
