"""
Blob Storage
============

Object storage for uploaded documents. Two backends behind one interface:
- LocalStorage: files under STORAGE_PATH/<bucket>/ (development, tests)
- S3Storage: an S3-compatible bucket via boto3

Signed URLs for the local backend are short-lived JWTs served back by
`GET /api/files/{token}`; the S3 backend returns presigned GET URLs.
"""

import os
import uuid
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Set

import jwt

from .config import get_settings
from .errors import StorageError

logger = logging.getLogger(__name__)

SIGNED_URL_TOKEN_TYPE = "file"


@dataclass
class StorageMeta:
    """What was written"""
    key: str
    size_bytes: int
    sha256: str
    content_type: Optional[str] = None


def file_extension(filename: str) -> str:
    """Text after the last dot (the whole name when there is no dot)."""
    return filename.rsplit(".", 1)[-1]


def generate_key(scope: str, filename: str) -> str:
    """Collision-resistant key `<scope>/<uuid4>.<ext>` for an uploaded file."""
    return f"{scope}/{uuid.uuid4()}.{file_extension(filename)}"


def guest_key(session_id: str, filename: str) -> str:
    return generate_key(f"guests/{session_id}", filename)


def user_key(user_id: str, filename: str) -> str:
    return generate_key(user_id, filename)


class LocalStorage:
    """Filesystem bucket"""

    provider = "local"

    def __init__(self, base_path: str, bucket: str = "documents", public_base_url: str = ""):
        self.root = Path(base_path) / bucket
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}", path=key)
        return path

    def put(self, key: str, data: bytes, content_type: Optional[str] = None, upsert: bool = False) -> StorageMeta:
        path = self._path_for(key)
        if path.exists() and not upsert:
            raise StorageError(f"Object already exists: {key}", path=key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return StorageMeta(
            key=key,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            content_type=content_type,
        )

    def get(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path_for(key).exists()

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_keys(self, prefix: str = "") -> List[str]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        return sorted(p.relative_to(self.root).as_posix() for p in base.rglob("*") if p.is_file())

    def last_modified(self, key: str) -> Optional[datetime]:
        path = self._path_for(key)
        if not path.exists():
            return None
        return datetime.utcfromtimestamp(path.stat().st_mtime)

    def signed_url(self, key: str, expires_in: int) -> str:
        if not self.exists(key):
            raise StorageError(f"Object not found: {key}", path=key)
        settings = get_settings()
        payload = {
            "path": key,
            "bucket": self.bucket,
            "type": SIGNED_URL_TOKEN_TYPE,
            "exp": datetime.utcnow() + timedelta(seconds=expires_in),
        }
        token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
        return f"{self.public_base_url}/api/files/{token}"


class S3Storage:
    """S3-compatible bucket"""

    provider = "s3"

    def __init__(self, bucket: str, region: str, endpoint_url: Optional[str] = None, client=None):
        if client is None:
            import boto3
            client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)
        self.s3_client = client
        self.bucket = bucket

    def put(self, key: str, data: bytes, content_type: Optional[str] = None, upsert: bool = False) -> StorageMeta:
        from botocore.exceptions import ClientError

        if not upsert and self.exists(key):
            raise StorageError(f"Object already exists: {key}", path=key)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or "application/octet-stream",
                CacheControl=f"max-age={get_settings().upload_cache_control}",
            )
        except ClientError as e:
            raise StorageError(f"S3 upload failed: {e}", path=key) from e
        return StorageMeta(
            key=key,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            content_type=content_type,
        )

    def get(self, key: str) -> Optional[bytes]:
        from botocore.exceptions import ClientError

        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise StorageError(f"S3 download failed: {e}", path=key) from e
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self.s3_client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                return False
            raise StorageError(f"S3 head failed: {e}", path=key) from e

    def delete(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"S3 delete failed: {e}", path=key) from e
        return True

    def list_keys(self, prefix: str = "") -> List[str]:
        from botocore.exceptions import ClientError

        keys: List[str] = []
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except ClientError as e:
            raise StorageError(f"S3 list failed: {e}", path=prefix) from e
        return sorted(keys)

    def last_modified(self, key: str) -> Optional[datetime]:
        from botocore.exceptions import ClientError

        try:
            response = self.s3_client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                return None
            raise StorageError(f"S3 head failed: {e}", path=key) from e
        # boto3 returns an aware UTC datetime
        return response["LastModified"].replace(tzinfo=None)

    def signed_url(self, key: str, expires_in: int) -> str:
        from botocore.exceptions import ClientError

        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            raise StorageError(f"Failed to sign URL: {e}", path=key) from e


def find_orphan_keys(
    storage,
    referenced: Set[str],
    prefix: str = "guests/",
    min_age_seconds: int = 3600,
    now: Optional[datetime] = None,
) -> List[str]:
    """
    Blob keys under `prefix` that no record references and that are older
    than `min_age_seconds`. Younger blobs may belong to an upload whose row
    has not been written yet.
    """
    cutoff = (now or datetime.utcnow()) - timedelta(seconds=min_age_seconds)
    orphans = []
    for key in storage.list_keys(prefix):
        if key in referenced:
            continue
        modified = storage.last_modified(key)
        if modified is None or modified > cutoff:
            continue
        orphans.append(key)
    return orphans


def resolve_signed_token(token: str) -> Optional[str]:
    """Return the object key a local signed URL token grants, or None."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.warning(f"Invalid file token: {e}")
        return None
    if payload.get("type") != SIGNED_URL_TOKEN_TYPE:
        return None
    return payload.get("path")


_storage = None


def get_storage():
    """Storage backend for the current settings (singleton)."""
    global _storage
    if _storage is None:
        settings = get_settings()
        backend = (settings.storage_backend or "local").strip().lower()
        if backend == "s3":
            _storage = S3Storage(
                bucket=settings.documents_bucket,
                region=settings.aws_region,
                endpoint_url=settings.s3_endpoint,
            )
        else:
            _storage = LocalStorage(
                base_path=os.path.abspath(settings.storage_path),
                bucket=settings.documents_bucket,
                public_base_url=settings.public_base_url,
            )
        logger.info("Storage backend: %s (bucket=%s)", _storage.provider, settings.documents_bucket)
    return _storage


def reset_storage():
    """Drop the cached backend (primarily for tests)."""
    global _storage
    _storage = None
