"""
Shared fixtures: a temporary SQLite record store, a local blob bucket, and an
in-memory persistence double with failure injection for orchestration tests.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from lawpilot_intake.db.session import SessionLocal, init_db, reset_engine
from lawpilot_intake.errors import StorageError
from lawpilot_intake.identity import GOOGLE_ISSUERS, AuthSession, OAuthTokenVerifier
from lawpilot_intake.persistence import PersistenceClient
from lawpilot_intake.storage import LocalStorage, StorageMeta


@pytest.fixture
def db_factory(tmp_path, monkeypatch):
    """Fresh SQLite database per test"""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'intake.db'}")
    reset_engine()
    init_db()
    yield SessionLocal
    reset_engine()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(base_path=str(tmp_path / "storage"), public_base_url="http://test")


@pytest.fixture
def client(db_factory, storage):
    return PersistenceClient(db_factory, storage)


class InMemoryPersistence:
    """
    Dict-backed stand-in for PersistenceClient.

    Every call yields to the event loop once before touching data, so
    concurrent callers interleave the way network calls would.
    `fail_on[(op, target)] = exc` makes the next matching call raise.
    """

    def __init__(self):
        self.tables: Dict[str, List[dict]] = {
            "guest_documents": [], "cases": [], "documents": [],
            "profiles": [], "document_requirements": [],
        }
        self.blobs: Dict[str, bytes] = {}
        self.fail_on: Dict[tuple, Exception] = {}
        self.calls: List[tuple] = []
        self._tick = 0

    async def _enter(self, op: str, target: str):
        await asyncio.sleep(0)
        self.calls.append((op, target))
        exc = self.fail_on.pop((op, target), None)
        if exc is not None:
            raise exc

    @staticmethod
    def _matches(row: dict, filters: dict) -> bool:
        for column, value in filters.items():
            if isinstance(value, (list, tuple, set)):
                if row.get(column) not in value:
                    return False
            elif row.get(column) != value:
                return False
        return True

    def _stamp(self) -> datetime:
        self._tick += 1
        return datetime(2026, 1, 1) + timedelta(seconds=self._tick)

    async def select(self, table: str, order_by: Optional[str] = None, **filters) -> List[dict]:
        await self._enter("select", table)
        rows = [dict(r) for r in self.tables[table] if self._matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by) or 0)
        return rows

    async def insert(self, table: str, rows) -> List[dict]:
        await self._enter("insert", table)
        payload = [rows] if isinstance(rows, dict) else list(rows)
        created = []
        for row in payload:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            row.setdefault("created_at", self._stamp())
            self.tables[table].append(row)
            created.append(dict(row))
        return created

    async def upsert(self, table: str, row: dict) -> dict:
        await self._enter("upsert", table)
        for existing in self.tables[table]:
            if existing["id"] == row["id"]:
                existing.update(row)
                return dict(existing)
        self.tables[table].append(dict(row))
        return dict(row)

    async def update(self, table: str, values: dict, **filters) -> int:
        await self._enter("update", table)
        count = 0
        for row in self.tables[table]:
            if self._matches(row, filters):
                row.update(values)
                count += 1
        return count

    async def delete(self, table: str, **filters) -> int:
        await self._enter("delete", table)
        keep = [r for r in self.tables[table] if not self._matches(r, filters)]
        removed = len(self.tables[table]) - len(keep)
        self.tables[table] = keep
        if table == "cases":
            case_ids = {r["id"] for r in self.tables["cases"]}
            self.tables["documents"] = [d for d in self.tables["documents"] if d["case_id"] in case_ids]
        return removed

    async def upload(self, path: str, data: bytes, content_type=None, upsert: bool = False):
        await self._enter("upload", path)
        if path in self.blobs and not upsert:
            raise StorageError(f"Object already exists: {path}", path=path)
        self.blobs[path] = data
        return StorageMeta(key=path, size_bytes=len(data), sha256="", content_type=content_type)

    async def download(self, path: str):
        await self._enter("download", path)
        return self.blobs.get(path)

    async def create_signed_url(self, path: str, expires_in: int) -> str:
        await self._enter("sign", path)
        return f"http://test/signed/{path}?ttl={expires_in}"

    async def remove(self, paths) -> int:
        removed = 0
        for path in paths:
            await self._enter("remove", path)
            if self.blobs.pop(path, None) is not None:
                removed += 1
        return removed

    def seed_guest(self, session_id: str, name: str, case_type: str, file_type: str = "application/pdf") -> dict:
        row = {
            "id": str(uuid.uuid4()),
            "session_id": session_id,
            "name": name,
            "file_path": f"guests/{session_id}/{uuid.uuid4()}.{name.rsplit('.', 1)[-1]}",
            "file_type": file_type,
            "case_type": case_type,
            "created_at": self._stamp(),
        }
        self.tables["guest_documents"].append(row)
        self.blobs[row["file_path"]] = b"blob"
        return row


@pytest.fixture
def fake_client():
    return InMemoryPersistence()


class StubIdentity:
    """Identity provider double that accepts exactly one token"""

    def __init__(self, token="good-token", user_id="user-1", email="ana@example.com"):
        self.token = token
        self.user_id = user_id
        self.email = email
        self.signed_out: List[str] = []

    def get_session(self, token):
        if token != self.token:
            return None
        return AuthSession(access_token=token, user_id=self.user_id, email=self.email, expires_at=datetime(2030, 1, 1))

    def sign_out(self, token):
        self.signed_out.append(token)
        return True


@pytest.fixture
def stub_identity():
    return StubIdentity()


# =============================================================================
# OAuth id_tokens
# =============================================================================

GOOGLE_CLIENT_ID = "intake-test.apps.googleusercontent.com"


@pytest.fixture(scope="session")
def google_signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def google_verifier(google_signing_key):
    """Google verifier that trusts the test signing key instead of the JWKS endpoint"""
    public_key = google_signing_key.public_key()
    return OAuthTokenVerifier("google", GOOGLE_CLIENT_ID, GOOGLE_ISSUERS, key_resolver=lambda token: public_key)


@pytest.fixture
def issue_id_token(google_signing_key):
    """Build an RS256 id_token as Google would; keyword claims override the defaults"""

    def _issue(email, signing_key=None, **claims):
        payload = {
            "iss": "https://accounts.google.com",
            "aud": GOOGLE_CLIENT_ID,
            "sub": f"google-{email}",
            "email": email,
            "email_verified": True,
            "exp": datetime.utcnow() + timedelta(minutes=5),
        }
        payload.update(claims)
        return jwt.encode(payload, signing_key or google_signing_key, algorithm="RS256")

    return _issue
