"""
Tests for blob storage backends and key helpers
"""

import os
import time
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from botocore.exceptions import ClientError

from lawpilot_intake.config import get_settings
from lawpilot_intake.errors import StorageError
from lawpilot_intake.storage import (
    LocalStorage, S3Storage, file_extension, find_orphan_keys, get_storage, guest_key,
    reset_storage, resolve_signed_token, user_key,
)


class TestKeys:

    def test_guest_key_layout(self):
        key = guest_key("session-1", "passport.pdf")
        scope, session, name = key.split("/")
        assert (scope, session) == ("guests", "session-1")
        assert name.endswith(".pdf")
        assert len(name) == 36 + len(".pdf")

    def test_user_key_layout(self):
        key = user_key("user-1", "photo.png")
        assert key.startswith("user-1/")
        assert key.endswith(".png")

    def test_keys_are_unique(self):
        assert len({user_key("u", "a.pdf") for _ in range(50)}) == 50

    @pytest.mark.parametrize("name,ext", [
        ("a.pdf", "pdf"),
        ("archive.tar.gz", "gz"),
        ("noext", "noext"),
        ("trailing.", ""),
    ])
    def test_file_extension(self, name, ext):
        assert file_extension(name) == ext


class TestLocalStorage:

    def test_put_get_delete(self, storage):
        meta = storage.put("user-1/a.pdf", b"hello", "application/pdf")

        assert meta.size_bytes == 5
        assert len(meta.sha256) == 64
        assert storage.exists("user-1/a.pdf")
        assert storage.get("user-1/a.pdf") == b"hello"
        assert storage.delete("user-1/a.pdf") is True
        assert storage.delete("user-1/a.pdf") is False
        assert storage.get("user-1/a.pdf") is None

    def test_put_existing_requires_upsert(self, storage):
        storage.put("user-1/a.pdf", b"one")
        with pytest.raises(StorageError):
            storage.put("user-1/a.pdf", b"two")
        storage.put("user-1/a.pdf", b"two", upsert=True)
        assert storage.get("user-1/a.pdf") == b"two"

    def test_list_keys_by_prefix(self, storage):
        storage.put("guests/s1/a.pdf", b"a")
        storage.put("guests/s2/b.pdf", b"b")
        storage.put("user-1/c.pdf", b"c")

        assert storage.list_keys("guests") == ["guests/s1/a.pdf", "guests/s2/b.pdf"]
        assert storage.list_keys("nothing-here") == []
        assert len(storage.list_keys()) == 3

    def test_path_traversal_rejected(self, storage):
        with pytest.raises(StorageError):
            storage.put("../escape.txt", b"x")

    def test_signed_url_resolves_to_key(self, storage):
        storage.put("user-1/a.pdf", b"x")

        url = storage.signed_url("user-1/a.pdf", 60)
        token = url.rsplit("/", 1)[-1]

        assert url.startswith("http://test/api/files/")
        assert resolve_signed_token(token) == "user-1/a.pdf"

    def test_expired_or_foreign_tokens(self):
        settings = get_settings()
        expired = jwt.encode(
            {"path": "user-1/a.pdf", "type": "file", "exp": datetime.utcnow() - timedelta(seconds=5)},
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
        )
        access = jwt.encode({"sub": "user-1", "type": "access"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

        assert resolve_signed_token(expired) is None
        assert resolve_signed_token(access) is None
        assert resolve_signed_token("garbage") is None

    def test_last_modified(self, storage):
        storage.put("guests/s1/a.pdf", b"a")

        modified = storage.last_modified("guests/s1/a.pdf")

        assert abs((datetime.utcnow() - modified).total_seconds()) < 60
        assert storage.last_modified("guests/s1/missing.pdf") is None


class TestOrphanSweep:

    def _age(self, storage, key, seconds):
        path = storage.root / key
        stamp = time.time() - seconds
        os.utime(path, (stamp, stamp))

    def test_unreferenced_old_blobs_are_orphans(self, storage):
        storage.put("guests/s1/old.pdf", b"a")
        storage.put("guests/s1/kept.pdf", b"b")
        self._age(storage, "guests/s1/old.pdf", 7200)
        self._age(storage, "guests/s1/kept.pdf", 7200)

        orphans = find_orphan_keys(storage, {"guests/s1/kept.pdf"}, min_age_seconds=3600)

        assert orphans == ["guests/s1/old.pdf"]

    def test_recent_upload_without_row_is_skipped(self, storage):
        # Blob written, row insert still in flight
        storage.put("guests/s1/fresh.pdf", b"a")

        assert find_orphan_keys(storage, set(), min_age_seconds=3600) == []
        assert find_orphan_keys(storage, set(), min_age_seconds=0, now=datetime.utcnow() + timedelta(seconds=1)) == [
            "guests/s1/fresh.pdf"
        ]

    def test_only_scans_prefix(self, storage):
        storage.put("user-1/a.pdf", b"a")
        self._age(storage, "user-1/a.pdf", 7200)

        assert find_orphan_keys(storage, set(), prefix="guests/") == []


class FakeS3:
    """Minimal S3 client double"""

    def __init__(self):
        self.objects = {}
        self.modified = {}

    @staticmethod
    def _missing(op):
        return ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, op)

    def put_object(self, Bucket, Key, Body, ContentType, CacheControl):
        self.objects[Key] = Body
        self.modified[Key] = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise self._missing("HeadObject")
        return {"LastModified": self.modified[Key]}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise self._missing("GetObject")
        body = self.objects[Key]

        class _Body:
            def read(self):
                return body
        return {"Body": _Body()}

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    def generate_presigned_url(self, op, Params, ExpiresIn):
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


class TestS3Storage:

    def test_round_trip(self):
        s3 = S3Storage(bucket="documents", region="us-east-1", client=FakeS3())

        s3.put("user-1/a.pdf", b"data", "application/pdf")

        assert s3.exists("user-1/a.pdf")
        assert s3.get("user-1/a.pdf") == b"data"
        assert s3.get("user-1/missing.pdf") is None
        assert s3.signed_url("user-1/a.pdf", 3600) == "https://s3.test/documents/user-1/a.pdf?expires=3600"

    def test_put_existing_requires_upsert(self):
        s3 = S3Storage(bucket="documents", region="us-east-1", client=FakeS3())
        s3.put("user-1/a.pdf", b"one")
        with pytest.raises(StorageError):
            s3.put("user-1/a.pdf", b"two")

    def test_last_modified_is_naive_utc(self):
        s3 = S3Storage(bucket="documents", region="us-east-1", client=FakeS3())
        s3.put("guests/s1/a.pdf", b"data")

        assert s3.last_modified("guests/s1/a.pdf") == datetime(2026, 1, 1, 12, 0)
        assert s3.last_modified("guests/s1/missing.pdf") is None


class TestGetStorage:

    def test_local_backend_from_settings(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "local")
        monkeypatch.setenv("STORAGE_PATH", str(tmp_path))
        get_settings.cache_clear()
        reset_storage()
        try:
            backend = get_storage()
            assert isinstance(backend, LocalStorage)
            assert get_storage() is backend
            assert (tmp_path / "documents").is_dir()
        finally:
            reset_storage()
            get_settings.cache_clear()
