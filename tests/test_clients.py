import asyncio
from types import SimpleNamespace

import pytest
import requests

from docscribe.clients import redis_client
from docscribe.clients.auth_client import AuthError, SupabaseAuthClient
from docscribe.clients.db_client import Database
from docscribe.clients.storage_client import ObjectStorage, SupabaseStorageClient, original_path, page_path
from docscribe.config import config
from docscribe.errors import StorageError, StorageUnavailableError


class FakeHttp:
    def __init__(self, status_code=200, payload=None, error=None):
        self.status_code = status_code
        self.payload = payload or {}
        self.error = error
        self.requests = []

    def _respond(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error:
            raise self.error
        return SimpleNamespace(
            status_code=self.status_code,
            json=lambda: self.payload,
            text="denied" if self.status_code >= 400 else "",
            reason="",
            content=b"bytes",
        )

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def request(self, method, url, **kwargs):
        return self._respond(method, url, **kwargs)


USER_PAYLOAD = {"id": "u-1", "email": "jane@example.com", "user_metadata": {"full_name": "Jane Doe"}}


class TestAuthClient:
    def test_resolves_token_into_user(self):
        auth = SupabaseAuthClient(base_url="https://supabase.test", api_key="k", session=FakeHttp(payload=USER_PAYLOAD))
        user = auth.get_user("token")
        assert (user.id, user.email, user.name) == ("u-1", "jane@example.com", "Jane Doe")

    def test_rejected_token_raises(self):
        auth = SupabaseAuthClient(base_url="https://supabase.test", api_key="k", session=FakeHttp(status_code=401))
        with pytest.raises(AuthError):
            auth.get_user("bad")

    def test_sign_in_and_out_notify_listeners(self):
        auth = SupabaseAuthClient(base_url="https://supabase.test", api_key="k", session=FakeHttp(payload=USER_PAYLOAD))
        events = []
        unsubscribe = auth.on_auth_change(lambda event, user: events.append(event))

        auth.sign_in_with_token("token")
        assert auth.current_user().id == "u-1"
        auth.sign_out()
        unsubscribe()
        auth.sign_in_with_token("token")

        assert events == ["SIGNED_IN", "SIGNED_OUT"]

    def test_callback_resolves_pending_sign_in(self):
        auth = SupabaseAuthClient(base_url="https://supabase.test", api_key="k", session=FakeHttp(payload=USER_PAYLOAD))

        async def scenario():
            waiter = asyncio.ensure_future(auth.wait_for_callback(timeout=5))
            await asyncio.sleep(0)
            auth.handle_callback("token")
            return await waiter

        assert asyncio.run(scenario()).id == "u-1"

    def test_callback_timeout(self):
        auth = SupabaseAuthClient(base_url="https://supabase.test", api_key="k", session=FakeHttp(payload=USER_PAYLOAD))
        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(auth.wait_for_callback(timeout=0.01))

    def test_authorize_url(self):
        auth = SupabaseAuthClient(base_url="https://supabase.test", api_key="k", session=FakeHttp())
        url = auth.authorize_url("google", "https://app.test/callback")
        assert url.startswith("https://supabase.test/auth/v1/authorize?provider=google")


class TestStorageClient:
    def test_paths_are_document_id_based(self):
        assert original_path("u", "d", "pdf") == "u/d/original.pdf"
        assert original_path("u", "d", "image") == "u/d/original"
        assert page_path("u", "d", 4) == "u/d/pages/page-4.jpg"

    def test_upload_returns_public_url(self):
        http = FakeHttp()
        storage = SupabaseStorageClient(base_url="https://supabase.test", api_key="k", bucket="files", session=http)

        url = storage.upload("u/d/original.pdf", b"%PDF", "application/pdf")

        assert url == "https://supabase.test/storage/v1/object/public/files/u/d/original.pdf"
        method, request_url, kwargs = http.requests[0]
        assert method == "POST"
        assert kwargs["headers"]["x-upsert"] == "true"

    def test_connection_failure_is_unavailable(self):
        http = FakeHttp(error=requests.ConnectionError("refused"))
        storage = SupabaseStorageClient(base_url="https://supabase.test", api_key="k", session=http)
        with pytest.raises(StorageUnavailableError):
            storage.download("u/d/original.pdf")

    def test_error_status_is_storage_error(self):
        storage = SupabaseStorageClient(base_url="https://supabase.test", api_key="k", session=FakeHttp(status_code=403))
        with pytest.raises(StorageError) as excinfo:
            storage.upload("u/d/original.pdf", b"%PDF", "application/pdf")
        assert not isinstance(excinfo.value, StorageUnavailableError)


class FakeRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def delete(self, key):
        self.store.pop(key, None)


class TestSessionSnapshots:
    def test_round_trip_through_redis(self, monkeypatch):
        fake = FakeRedis()
        monkeypatch.setattr(config, "REDIS_ENABLED", True)
        monkeypatch.setattr(redis_client, "_redis_client", fake)

        assert redis_client.save_session_snapshot("s-1", {"steps": []}) is True
        assert "session:s-1" in fake.store
        assert redis_client.load_session_snapshot("s-1") == {"steps": []}
        redis_client.drop_session_snapshot("s-1")
        assert redis_client.load_session_snapshot("s-1") is None

    def test_disabled_cache_is_a_no_op(self, monkeypatch):
        monkeypatch.setattr(config, "REDIS_ENABLED", False)
        assert redis_client.save_session_snapshot("s-1", {"steps": []}) is False
        assert redis_client.load_session_snapshot("s-1") is None


@pytest.mark.parametrize("interface", [Database, ObjectStorage])
def test_interfaces_cannot_be_instantiated(interface):
    with pytest.raises(TypeError):
        interface()
