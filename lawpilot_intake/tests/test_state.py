"""
Tests for the client state store and registry
"""

import pytest

from lawpilot_intake.config import get_settings
from lawpilot_intake.state import (
    AuthenticatedUser, ClientState, ClientStateRegistry, IncomingFile,
    PendingCaseDraft, PendingFileEntry, create_registry,
)


def _file(name="a.pdf"):
    return IncomingFile(name=name, content_type="application/pdf", data=b"x")


class TestSessionId:

    def test_created_once(self):
        state = ClientState()
        first = state.ensure_session_id()
        assert first
        assert state.ensure_session_id() == first

    def test_set_session_id_wins(self):
        state = ClientState()
        state.set_session_id("abc")
        assert state.ensure_session_id() == "abc"


class TestPendingFiles:

    def test_select_replaces_same_slot(self):
        state = ClientState()
        state.select_file("doc-1", _file("first.pdf"), "Green Card")
        state.select_file("doc-2", _file("other.pdf"), "Green Card")
        state.select_file("doc-1", _file("second.pdf"), "Green Card")

        names = {p.id: p.file.name for p in state.pending_files}
        assert names == {"doc-1": "second.pdf", "doc-2": "other.pdf"}

    def test_remove_file(self):
        state = ClientState()
        state.select_file("doc-1", _file(), "Green Card")
        state.remove_file("doc-1")
        state.remove_file("doc-missing")
        assert state.pending_files == []

    def test_clear_application(self):
        state = ClientState()
        state.ensure_session_id()
        state.select_file("doc-1", _file(), "Green Card")
        state.set_pending_case(PendingCaseDraft(service_id="h1b", case_type="H-1B Work Visa"))

        state.clear_application()

        assert state.session_id is None
        assert state.pending_case is None
        assert state.pending_files == []


class TestPersistence:

    def test_pending_files_do_not_survive_reload(self):
        registry = ClientStateRegistry()
        state = registry.get("browser-1")
        state.set_user(AuthenticatedUser(id="user-1", email="ana@example.com"))
        state.set_session_id("session-1")
        state.set_pending_case(PendingCaseDraft(
            service_id="h1b",
            case_type="H-1B Work Visa",
            files=[PendingFileEntry(id="doc-1", name="a.pdf", uploaded=True)],
        ))
        state.select_file("doc-1", _file(), "H-1B Work Visa")
        state.loading = False

        reloaded = registry.reload("browser-1")

        assert reloaded is registry.get("browser-1")
        assert reloaded.user.id == "user-1"
        assert reloaded.session_id == "session-1"
        assert reloaded.pending_case.case_type == "H-1B Work Visa"
        assert reloaded.pending_case.files[0].uploaded is True
        assert reloaded.pending_files == []
        assert reloaded.cases == []
        assert reloaded.loading is True

    def test_persisted_subset(self):
        state = ClientState()
        assert state.persisted() == {"user": None, "session_id": None, "pending_case": None}

    def test_registry_isolates_browsers(self):
        registry = ClientStateRegistry()
        registry.get("a").set_session_id("one")
        assert registry.get("b").session_id is None
        assert len(registry) == 2

        registry.discard("a")
        assert len(registry) == 1
        assert registry.get("a").session_id is None


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRegistryBounds:

    def test_least_recently_used_browser_is_evicted(self):
        registry = ClientStateRegistry(max_entries=2)
        registry.get("a").set_session_id("one")
        registry.get("b")
        registry.get("a")  # a is now the most recent

        registry.get("c")

        assert len(registry) == 2
        assert "b" not in registry
        assert registry.get("a").session_id == "one"

    def test_idle_browsers_are_dropped(self):
        clock = FakeClock()
        registry = ClientStateRegistry(idle_seconds=60, clock=clock)
        registry.get("a")
        clock.now = 30
        registry.get("b")

        clock.now = 75
        registry.get("c")

        assert "a" not in registry
        assert "b" in registry
        assert len(registry) == 2

    def test_many_browsers_stay_bounded(self):
        registry = ClientStateRegistry(max_entries=100)
        for i in range(1000):
            registry.get(f"browser-{i}")
        assert len(registry) == 100
        assert "browser-999" in registry
        assert "browser-0" not in registry

    def test_create_registry_reads_settings(self, monkeypatch):
        monkeypatch.setenv("BROWSER_STATE_MAX_ENTRIES", "5")
        monkeypatch.setenv("BROWSER_STATE_IDLE_SECONDS", "120")
        get_settings.cache_clear()
        try:
            registry = create_registry()
            assert registry.max_entries == 5
            assert registry.idle_seconds == 120
        finally:
            get_settings.cache_clear()


class TestIdentity:

    @pytest.mark.asyncio
    async def test_fetch_user_loads_profile(self, fake_client, stub_identity):
        fake_client.tables["profiles"].append({
            "id": "user-1", "role": "client", "full_name": "Ana Diaz",
            "avatar_url": None, "state": "logged in",
        })
        state = ClientState()

        user = await state.fetch_user(stub_identity, fake_client, "good-token")

        assert user is state.user
        assert user.full_name == "Ana Diaz"
        assert user.state == "logged in"
        assert state.loading is False

    @pytest.mark.asyncio
    async def test_fetch_user_without_session_clears(self, fake_client, stub_identity):
        state = ClientState()
        state.set_user(AuthenticatedUser(id="stale", email="x@example.com"))

        assert await state.fetch_user(stub_identity, fake_client, "bad-token") is None
        assert state.user is None
        assert state.loading is False

    @pytest.mark.asyncio
    async def test_sign_out(self, fake_client, stub_identity):
        fake_client.tables["profiles"].append({"id": "user-1", "state": "logged in"})
        identity = stub_identity
        state = ClientState()
        await state.fetch_user(identity, fake_client, "good-token")
        state.ensure_session_id()
        state.select_file("doc-1", _file(), "Green Card")

        await state.sign_out(identity, fake_client, "good-token")

        assert fake_client.tables["profiles"][0]["state"] == "logged out"
        assert identity.signed_out == ["good-token"]
        assert state.user is None
        assert state.session_id is None
        assert state.pending_files == []
