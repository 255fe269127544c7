"""
Client State Store
==================

Per-browser state the intake flows read and write:
- session_id: anonymous guest session (created lazily, once)
- pending_case: summary of an in-progress application
- pending_files: files chosen but not uploaded yet (volatile, never persisted)
- user / cases: the signed-in client and their cases

`ClientState` is a plain container passed to whoever needs it; the API layer
keeps one per browser in a `ClientStateRegistry`. Mutation is single-threaded
and last-write-wins per field.
"""

import time
import uuid
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class IncomingFile:
    """Raw file handle: name, MIME type and bytes"""
    name: str
    content_type: Optional[str]
    data: bytes


@dataclass
class PendingFileEntry:
    id: str
    name: str
    uploaded: bool


@dataclass
class PendingCaseDraft:
    """In-memory summary of a wizard run"""
    service_id: str
    case_type: str
    files: List[PendingFileEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingCaseDraft":
        return cls(
            service_id=data["service_id"],
            case_type=data["case_type"],
            files=[PendingFileEntry(**f) for f in data.get("files", [])],
        )


@dataclass
class PendingFileSelection:
    """File chosen for a requirement slot, not uploaded yet"""
    id: str
    file: IncomingFile
    case_type: str


@dataclass
class AuthenticatedUser:
    id: str
    email: str
    role: str = "client"
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    state: Optional[str] = None


@dataclass
class CaseSummary:
    id: str
    title: str
    type: str
    status: str
    progress: int
    client_id: str
    created_at: Optional[str] = None


class ClientState:
    """Injectable state container for one browser"""

    def __init__(self):
        self.user: Optional[AuthenticatedUser] = None
        self.cases: List[CaseSummary] = []
        self.pending_case: Optional[PendingCaseDraft] = None
        self.pending_files: List[PendingFileSelection] = []
        self.session_id: Optional[str] = None
        self.loading: bool = True

    # Setters -----------------------------------------------------------------

    def set_user(self, user: Optional[AuthenticatedUser]) -> None:
        self.user = user

    def set_cases(self, cases: List[CaseSummary]) -> None:
        self.cases = cases

    def set_pending_case(self, pending: Optional[PendingCaseDraft]) -> None:
        self.pending_case = pending

    def set_pending_files(self, files: List[PendingFileSelection]) -> None:
        self.pending_files = files

    def set_session_id(self, session_id: str) -> None:
        self.session_id = session_id

    def ensure_session_id(self) -> str:
        """Return the guest session id, creating it on first use."""
        if not self.session_id:
            self.session_id = str(uuid.uuid4())
            logger.info(f"Created guest session {self.session_id[:8]}")
        return self.session_id

    # Pending file selections -------------------------------------------------

    def select_file(self, doc_id: str, file: IncomingFile, case_type: str) -> None:
        """Put `file` in the slot `doc_id`, replacing any earlier choice."""
        self.pending_files = [p for p in self.pending_files if p.id != doc_id] + [
            PendingFileSelection(id=doc_id, file=file, case_type=case_type)
        ]

    def remove_file(self, doc_id: str) -> None:
        self.pending_files = [p for p in self.pending_files if p.id != doc_id]

    def clear_application(self) -> None:
        """Forget the draft and guest session after a successful submit/association."""
        self.pending_case = None
        self.pending_files = []
        self.session_id = None

    # Identity ----------------------------------------------------------------

    async def fetch_user(self, identity, client, token: Optional[str]) -> Optional[AuthenticatedUser]:
        """Load the signed-in user and their profile, or clear `user`."""
        self.loading = True
        try:
            session = identity.get_session(token) if token else None
            if session is None:
                self.user = None
                return None

            profiles = await client.select("profiles", id=session.user_id)
            profile = profiles[0] if profiles else {}
            self.user = AuthenticatedUser(
                id=session.user_id,
                email=session.email,
                role=profile.get("role") or "client",
                full_name=profile.get("full_name"),
                avatar_url=profile.get("avatar_url"),
                state=profile.get("state"),
            )
            return self.user
        finally:
            self.loading = False

    async def sign_out(self, identity, client, token: Optional[str]) -> None:
        """Mark the profile logged out, revoke the token and clear session-scoped fields."""
        session = identity.get_session(token) if token else None
        if session is not None:
            await client.update("profiles", {"state": "logged out"}, id=session.user_id)
            identity.sign_out(token)
        self.user = None
        self.pending_case = None
        self.pending_files = []
        self.session_id = None

    # Persistence -------------------------------------------------------------

    def persisted(self) -> Dict[str, Any]:
        """The subset that survives a reload (pending files never do)."""
        return {
            "user": asdict(self.user) if self.user else None,
            "session_id": self.session_id,
            "pending_case": asdict(self.pending_case) if self.pending_case else None,
        }

    @classmethod
    def restore(cls, data: Dict[str, Any]) -> "ClientState":
        state = cls()
        if data.get("user"):
            state.user = AuthenticatedUser(**data["user"])
        state.session_id = data.get("session_id")
        if data.get("pending_case"):
            state.pending_case = PendingCaseDraft.from_dict(data["pending_case"])
        return state


class ClientStateRegistry:
    """
    One ClientState per browser id, bounded in memory.

    Entries idle longer than `idle_seconds` are dropped, and once
    `max_entries` is reached the least recently used browser is evicted.
    """

    def __init__(self, max_entries: int = 10000, idle_seconds: float = 60 * 60 * 24, clock=time.monotonic):
        self.max_entries = max_entries
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._states: "OrderedDict[str, ClientState]" = OrderedDict()
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _touch(self, browser_id: str, state: ClientState) -> None:
        self._states[browser_id] = state
        self._states.move_to_end(browser_id)
        self._last_seen[browser_id] = self._clock()
        self._evict()

    def _evict(self) -> None:
        now = self._clock()
        # Oldest first: stop at the first entry that is still fresh
        while self._states:
            oldest = next(iter(self._states))
            if now - self._last_seen[oldest] <= self.idle_seconds and len(self._states) <= self.max_entries:
                break
            self._states.pop(oldest)
            self._last_seen.pop(oldest, None)
            logger.debug(f"Evicted browser state {oldest[:8]}")

    def get(self, browser_id: str) -> ClientState:
        with self._lock:
            state = self._states.get(browser_id) or ClientState()
            self._touch(browser_id, state)
            return state

    def reload(self, browser_id: str) -> ClientState:
        """Simulate a page reload: keep only the persisted subset."""
        with self._lock:
            current = self._states.get(browser_id) or ClientState()
            state = ClientState.restore(current.persisted())
            self._touch(browser_id, state)
            return state

    def discard(self, browser_id: str) -> None:
        with self._lock:
            self._states.pop(browser_id, None)
            self._last_seen.pop(browser_id, None)

    def __contains__(self, browser_id: str) -> bool:
        return browser_id in self._states

    def __len__(self) -> int:
        return len(self._states)


def create_registry() -> ClientStateRegistry:
    """Registry bounded by the configured limits."""
    settings = get_settings()
    return ClientStateRegistry(
        max_entries=settings.browser_state_max_entries,
        idle_seconds=settings.browser_state_idle_seconds,
    )
