from datetime import datetime, timedelta, timezone

import httpx

from vale_cashback.client.exchange import Failure, Success
from vale_cashback.client.session import (
    USER_DATA_KEY, AuthContext, JsonFileSessionStore, MemorySessionStore, StoredUser,
)

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
ME = {"id": 7, "name": "Ana", "email": "ana@example.com", "type": "client"}


def stored(expires_at=T0 + timedelta(hours=1)):
    return StoredUser(**ME, expires_at=expires_at)


def auth_for(handler, store, now=T0):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api.test")
    return AuthContext(http, store, clock=lambda: now)


class TestStores:
    def test_memory_store(self):
        store = MemorySessionStore()
        assert store.get() is None
        store.set(stored())
        assert store.get().email == "ana@example.com"
        store.clear()
        assert store.get() is None

    def test_json_file_store_uses_app_key(self, tmp_path):
        path = tmp_path / "storage.json"
        path.write_text('{"theme": "dark"}')
        store = JsonFileSessionStore(path)

        store.set(stored())
        assert JsonFileSessionStore(path).get() == stored()
        assert USER_DATA_KEY in path.read_text()

        store.clear()
        assert store.get() is None
        assert "theme" in path.read_text()

    def test_corrupt_file_is_logged_not_raised(self, tmp_path, log_records):
        path = tmp_path / "storage.json"
        path.write_text("{not json")
        assert JsonFileSessionStore(path).get() is None
        assert any(r["message"] == "Could not read stored session" for r in log_records)


class TestAuthContext:
    async def test_fresh_stored_user_skips_network(self):
        calls = []
        auth = auth_for(lambda r: calls.append(r) or httpx.Response(500), MemorySessionStore(stored()))
        user = await auth.current_user()
        assert user.name == "Ana"
        assert calls == []

    async def test_expired_user_is_refreshed_from_server(self):
        store = MemorySessionStore(stored(expires_at=T0 - timedelta(minutes=1)))
        auth = auth_for(lambda r: httpx.Response(200, json=ME), store)
        user = await auth.current_user()
        assert user is not None
        assert user.expires_at > T0
        assert store.get() == user

    async def test_unauthorized_clears_session(self):
        store = MemorySessionStore(stored(expires_at=T0 - timedelta(minutes=1)))
        auth = auth_for(lambda r: httpx.Response(401, json={"detail": "Invalid token"}), store)
        assert await auth.current_user() is None
        assert store.get() is None

    async def test_login_and_logout(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            if request.url.path == "/api/auth/login":
                return httpx.Response(200, json=ME)
            return httpx.Response(204)

        store = MemorySessionStore()
        auth = auth_for(handler, store)
        result = await auth.login("ana@example.com", "secret")
        assert isinstance(result, Success)
        assert store.get().type == "client"

        await auth.logout()
        assert store.get() is None
        assert seen == ["/api/auth/login", "/api/auth/logout"]

    async def test_failed_login(self):
        store = MemorySessionStore()
        auth = auth_for(lambda r: httpx.Response(401, json={"detail": "Bad credentials"}), store)
        result = await auth.login("ana@example.com", "wrong")
        assert result == Failure("unauthorized", "Please sign in again")
        assert store.get() is None

    async def test_logout_clears_even_when_offline(self):
        def offline(request):
            raise httpx.ConnectError("offline", request=request)

        store = MemorySessionStore(stored())
        await auth_for(offline, store).logout()
        assert store.get() is None
