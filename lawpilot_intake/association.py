"""
Association Orchestrator
========================

Turns guest uploads into a case owned by the signed-in client.

associate_guest_documents(session_id, user_id):

    START -> DOCS_FETCHED -> CASE_CREATED -> DOCS_MIGRATED -> CLEANED_UP
    START -> NO_OP                      (session has no guest documents)

1. Fetch every guest document of the session. None: NO_OP, no case.
2. The first document's case type names the case. One case row, status
   "pending", owned by the user. A case already created from the same session
   for the same user is reused, so a retry after a partial failure does not
   create a second one.
3. One document row per guest document (name, file_path, file_type copied;
   the blob is not re-uploaded).
4. Delete the session's guest documents.

finalize_application(user_id, case_type, pending_files) is the variant for
files held in memory: upload each blob under the user, then one case and one
document per file.

Steps run strictly in order. A failure after the first write is raised as
PartialMigrationError; nothing already written is rolled back except the
orphan case (and, for finalize, the uploaded blobs) when compensation is on.
Runs for the same session are serialized by an in-process lock.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .config import get_settings
from .errors import IntakeError, PartialMigrationError
from .state import PendingFileSelection
from .storage import user_key

logger = logging.getLogger(__name__)


class AssociationStage(str, Enum):
    START = "start"
    DOCS_FETCHED = "docs_fetched"
    FILES_UPLOADED = "files_uploaded"
    CASE_CREATED = "case_created"
    DOCS_MIGRATED = "docs_migrated"
    CLEANED_UP = "cleaned_up"
    NO_OP = "no_op"


@dataclass
class AssociationResult:
    stage: AssociationStage
    case_id: Optional[str] = None
    document_count: int = 0
    reused_case: bool = False


class SessionLocks:
    """Advisory asyncio locks keyed by guest session id"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class AssociationOrchestrator:

    def __init__(
        self,
        client,
        locks: Optional[SessionLocks] = None,
        lock_enabled: bool = True,
        compensate: bool = True,
        category: str = "immigration",
    ):
        self.client = client
        self.locks = locks or SessionLocks()
        self.lock_enabled = lock_enabled
        self.compensate = compensate
        self.category = category

    @classmethod
    def from_settings(cls, client, locks: Optional[SessionLocks] = None) -> "AssociationOrchestrator":
        settings = get_settings()
        return cls(
            client,
            locks=locks,
            lock_enabled=settings.association_lock_enabled,
            compensate=settings.association_compensate,
            category=settings.default_case_category,
        )

    def _case_row(self, user_id: str, case_type: str, source_session_id: Optional[str]) -> dict:
        return {
            "client_id": user_id,
            "title": f"{case_type} Application",
            "category": self.category,
            "service_type": case_type,
            "status": "pending",
            "progress": 0,
            "source_session_id": source_session_id,
        }

    # -------------------------------------------------------------------------
    # Guest session -> case
    # -------------------------------------------------------------------------

    async def associate_guest_documents(self, session_id: str, user_id: str) -> AssociationResult:
        if not session_id or not user_id:
            raise ValueError("session_id and user_id are required")

        if not self.lock_enabled:
            return await self._associate(session_id, user_id)

        async with self.locks.hold(session_id):
            return await self._associate(session_id, user_id)

    async def _associate(self, session_id: str, user_id: str) -> AssociationResult:
        guest_docs = await self.client.select("guest_documents", order_by="created_at", session_id=session_id)
        if not guest_docs:
            logger.info(f"No guest documents for session {session_id[:8]}; nothing to associate")
            return AssociationResult(stage=AssociationStage.NO_OP)

        stage = AssociationStage.DOCS_FETCHED
        case_type = guest_docs[0]["case_type"]
        other_types = {d["case_type"] for d in guest_docs} - {case_type}
        if other_types:
            logger.warning(
                f"Session {session_id[:8]} mixes case types {sorted(other_types)}; "
                f"filing all documents under {case_type}"
            )

        case_id, reused = await self._find_or_create_case(session_id, user_id, case_type)
        stage = AssociationStage.CASE_CREATED
        logger.info(f"Case {case_id} {'reused' if reused else 'created'} for session {session_id[:8]}")

        try:
            attached = set()
            if reused:
                existing = await self.client.select("documents", case_id=case_id)
                attached = {d["file_path"] for d in existing}

            documents = [
                {
                    "case_id": case_id,
                    "name": gd["name"],
                    "file_path": gd["file_path"],
                    "file_type": gd["file_type"],
                    "status": "pending",
                }
                for gd in guest_docs
                if gd["file_path"] not in attached
            ]
            if documents:
                await self.client.insert("documents", documents)
        except IntakeError as e:
            compensated = False
            if self.compensate and not reused:
                compensated = await self._drop_case(case_id)
            logger.error(f"Document migration failed for case {case_id}: {e}")
            raise PartialMigrationError(stage, case_id, e, compensated=compensated) from e

        stage = AssociationStage.DOCS_MIGRATED

        try:
            await self.client.delete("guest_documents", session_id=session_id)
        except IntakeError as e:
            logger.error(f"Guest cleanup failed for session {session_id[:8]} (case {case_id}): {e}")
            raise PartialMigrationError(stage, case_id, e) from e

        logger.info(f"Associated {len(documents)} document(s) from session {session_id[:8]} into case {case_id}")
        return AssociationResult(
            stage=AssociationStage.CLEANED_UP,
            case_id=case_id,
            document_count=len(documents),
            reused_case=reused,
        )

    async def _find_or_create_case(self, session_id: str, user_id: str, case_type: str):
        existing = await self.client.select("cases", client_id=user_id, source_session_id=session_id)
        if existing:
            return existing[0]["id"], True

        created = await self.client.insert("cases", self._case_row(user_id, case_type, session_id))
        return created[0]["id"], False

    async def _drop_case(self, case_id: str) -> bool:
        try:
            await self.client.delete("cases", id=case_id)
            logger.info(f"Removed orphan case {case_id}")
            return True
        except IntakeError as e:
            logger.error(f"Could not remove orphan case {case_id}: {e}")
            return False

    # -------------------------------------------------------------------------
    # In-memory selections -> case
    # -------------------------------------------------------------------------

    async def finalize_application(
        self,
        user_id: str,
        case_type: str,
        pending_files: Sequence[PendingFileSelection],
    ) -> AssociationResult:
        if not user_id:
            raise ValueError("user_id is required")

        stage = AssociationStage.START
        uploaded: List[tuple] = []
        case_id: Optional[str] = None

        try:
            for pending in pending_files:
                path = user_key(user_id, pending.file.name)
                await self.client.upload(path, pending.file.data, pending.file.content_type)
                uploaded.append((pending, path))
            stage = AssociationStage.FILES_UPLOADED

            created = await self.client.insert("cases", self._case_row(user_id, case_type, None))
            case_id = created[0]["id"]
            stage = AssociationStage.CASE_CREATED

            documents = [
                {
                    "case_id": case_id,
                    "name": pending.file.name,
                    "file_path": path,
                    "file_type": pending.file.content_type,
                    "status": "pending",
                }
                for pending, path in uploaded
            ]
            if documents:
                await self.client.insert("documents", documents)
            stage = AssociationStage.DOCS_MIGRATED
        except IntakeError as e:
            logger.error(f"Finalize for user {user_id} failed after {stage.value}: {e}")
            if not uploaded and case_id is None:
                raise

            compensated = False
            if self.compensate:
                compensated = await self._undo_finalize(case_id, [path for _, path in uploaded])
            raise PartialMigrationError(stage, case_id, e, compensated=compensated) from e

        logger.info(f"Finalized {case_type} application for user {user_id} as case {case_id}")
        return AssociationResult(stage=stage, case_id=case_id, document_count=len(uploaded))

    async def _undo_finalize(self, case_id: Optional[str], paths: List[str]) -> bool:
        ok = True
        if case_id is not None:
            ok = await self._drop_case(case_id)
        try:
            await self.client.remove(paths)
        except IntakeError as e:
            logger.error(f"Could not remove {len(paths)} uploaded blob(s): {e}")
            ok = False
        return ok
