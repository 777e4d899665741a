"""Object storage for listing images, avatars and ID documents (Firebase Storage)."""

import logging
import uuid
from typing import List

from firebase_admin import storage

import config

logger = logging.getLogger("rent2reuse.storage")


def get_bucket():
    return storage.bucket(config.FIREBASE_STORAGE_BUCKET)


def item_prefix(item_id: str) -> str:
    return f"items/{item_id}/"


def user_prefix(user_id: str, kind: str) -> str:
    return f"users/{user_id}/{kind}/"


def upload_bytes(bucket, prefix: str, data: bytes, content_type: str = "image/jpeg") -> str:
    """Upload bytes under `prefix` and return the public download URL."""
    blob = bucket.blob(f"{prefix}{uuid.uuid4().hex}")
    blob.upload_from_string(data, content_type=content_type)
    blob.make_public()
    return blob.public_url


def delete_prefix(bucket, prefix: str) -> int:
    """Delete every object under `prefix`. Returns how many were removed."""
    blobs: List = list(bucket.list_blobs(prefix=prefix))
    for blob in blobs:
        blob.delete()
    logger.info("storage prefix deleted", extra={"prefix": prefix, "count": len(blobs)})
    return len(blobs)
