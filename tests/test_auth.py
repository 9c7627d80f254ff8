# ABOUTME: Tests for store sign-in and session persistence
# ABOUTME: Password login, cached session reuse, and anonymous access

import json

import httpx
import pytest

from ledgersync.auth import StoreSession, load_session
from ledgersync.config import Settings
from ledgersync.exceptions import AuthenticationError, CredentialsNotFoundError


def settings_for(tmp_path, **overrides) -> Settings:
    fields = {"api_url": "https://db.test", "api_key": "anon-key", "home": tmp_path}
    fields.update(overrides)
    return Settings(**fields)


class TestStoreSession:
    """Test the StoreSession class."""

    @pytest.mark.asyncio
    async def test_login_saves_session(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/auth/v1/token"
            assert request.url.params.get("grant_type") == "password"
            assert json.loads(request.content) == {"email": "rina@example.com", "password": "pw"}
            return httpx.Response(
                200, json={"access_token": "jwt-1", "user": {"id": "u1", "email": "rina@example.com"}}
            )

        settings = settings_for(tmp_path, email="rina@example.com", password="pw")
        session = StoreSession(settings, transport=httpx.MockTransport(handler))
        await session.ensure_authenticated()

        assert session.access_token == "jwt-1"
        assert session.user["id"] == "u1"
        assert load_session(settings.session_file)["access_token"] == "jwt-1"
        assert settings.session_file.stat().st_mode & 0o777 == 0o600

    @pytest.mark.asyncio
    async def test_reuses_valid_cached_session(self, tmp_path):
        settings = settings_for(tmp_path, email="rina@example.com", password="pw")
        settings.session_file.write_text(json.dumps({"access_token": "cached", "user": {}}))
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            assert request.headers["authorization"] == "Bearer cached"
            return httpx.Response(200, json={"id": "u1"})

        session = StoreSession(settings, transport=httpx.MockTransport(handler))
        await session.ensure_authenticated()

        assert paths == ["/auth/v1/user"]
        assert session.user == {"id": "u1"}

    @pytest.mark.asyncio
    async def test_rejected_login_raises(self, tmp_path):
        settings = settings_for(tmp_path, email="rina@example.com", password="wrong")
        transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        session = StoreSession(settings, transport=transport)

        with pytest.raises(AuthenticationError):
            await session.ensure_authenticated()

    @pytest.mark.asyncio
    async def test_anonymous_uses_api_key(self, tmp_path):
        session = StoreSession(settings_for(tmp_path))
        await session.ensure_authenticated()
        assert session.access_token == "anon-key"
        assert session.user == {}

    @pytest.mark.asyncio
    async def test_login_without_credentials(self, tmp_path):
        session = StoreSession(settings_for(tmp_path))
        with pytest.raises(CredentialsNotFoundError):
            await session.login()

    @pytest.mark.asyncio
    async def test_reset_forgets_session(self, tmp_path):
        settings = settings_for(tmp_path)
        settings.session_file.write_text(json.dumps({"access_token": "old"}))
        session = StoreSession(settings)

        await session.reset()
        assert not settings.session_file.exists()
        assert session.access_token == "anon-key"
