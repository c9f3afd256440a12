"""Tests for the identity provider client."""

import asyncio
import httpx
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from blogsync.auth import (
    INITIAL_SESSION,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    AuthClient,
    SessionStore,
)
from blogsync.config import AuthConfig, RemoteConfig
from blogsync.errors import AuthError
from blogsync.models import Session, User

USER_JSON = {
    "id": "user-a",
    "user_metadata": {"email": "a@example.com", "avatar_url": "https://img/a.png"},
}


def make_response(status_code=200, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    response.text = text
    return response


@pytest.fixture
def remote_config():
    return RemoteConfig(url="https://proj.example.co", anon_key="anon-key")


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "session.json")


@pytest.fixture
def client(remote_config, store):
    return AuthClient(remote_config, AuthConfig(redirect_to="http://localhost:8080/"), store=store)


@pytest.fixture
def events(client):
    """Record auth state changes."""
    seen = []
    client.on_auth_state_change(lambda event, session: seen.append((event, session)))
    return seen


def stored_session(expires_at: datetime | None = None) -> Session:
    return Session(
        access_token="old-token",
        refresh_token="refresh-1",
        expires_at=expires_at,
        user=User.from_dict(USER_JSON),
    )


class TestSignInUrl:
    def test_default_redirect(self, client):
        url = client.sign_in_url()

        assert url == (
            "https://proj.example.co/auth/v1/authorize?provider=google"
            "&redirect_to=http%3A%2F%2Flocalhost%3A8080%2F"
        )

    def test_without_redirect(self, remote_config):
        client = AuthClient(remote_config, AuthConfig(provider="github", persist_session=False))

        assert client.sign_in_url() == "https://proj.example.co/auth/v1/authorize?provider=github"


class TestRedirectSession:
    """Tests for adopting the tokens from the OAuth redirect."""

    @pytest.mark.asyncio
    async def test_session_from_redirect_fragment(self, client, store, events):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.get = AsyncMock(return_value=make_response(200, USER_JSON))
            mock_get.return_value = mock_http

            session = await client.session_from_redirect(
                "http://localhost:8080/#access_token=abc&refresh_token=ref"
                "&expires_in=3600&token_type=bearer"
            )

            assert session.access_token == "abc"
            assert session.refresh_token == "ref"
            assert session.user.email == "a@example.com"
            assert not session.is_expired()
            headers = mock_http.get.call_args[1]["headers"]
            assert headers["Authorization"] == "Bearer abc"

        assert events == [(SIGNED_IN, session)]
        assert client.session is session
        assert store.load() == session

    @pytest.mark.asyncio
    async def test_bare_fragment_with_expires_at(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.get = AsyncMock(return_value=make_response(200, USER_JSON))
            mock_get.return_value = mock_http

            session = await client.session_from_redirect(
                "#access_token=abc&expires_at=1900000000"
            )

        assert session.expires_at == datetime.fromtimestamp(1900000000, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_redirect_error(self, client, events):
        with pytest.raises(AuthError, match="access denied"):
            await client.session_from_redirect(
                "http://localhost:8080/?error=access_denied&error_description=access+denied"
            )
        assert events == []

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        with pytest.raises(AuthError):
            await client.session_from_redirect("#refresh_token=only")

    @pytest.mark.asyncio
    async def test_rejected_token(self, client, events):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.get = AsyncMock(
                return_value=make_response(401, {"msg": "invalid JWT"})
            )
            mock_get.return_value = mock_http

            with pytest.raises(AuthError, match="invalid JWT"):
                await client.session_from_redirect("#access_token=bad")

        assert client.session is None
        assert events == []


class TestSessionUpkeep:
    """Tests for restore, refresh and sign-out."""

    @pytest.mark.asyncio
    async def test_restore_persisted_session(self, client, store, events):
        saved = stored_session(datetime.now(timezone.utc) + timedelta(hours=1))
        store.save(saved)

        session = await client.get_session()

        assert session == saved
        assert events == [(INITIAL_SESSION, saved)]

        # Only restored once
        await client.get_session()
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_expired_session_refreshed(self, client, store, events):
        store.save(stored_session(datetime.now(timezone.utc) - timedelta(minutes=5)))

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(
                return_value=make_response(
                    200,
                    {
                        "access_token": "new-token",
                        "refresh_token": "refresh-2",
                        "expires_in": 3600,
                        "user": USER_JSON,
                    },
                )
            )
            mock_get.return_value = mock_http

            session = await client.get_session()

            assert mock_http.post.call_args[0][0] == "/token"
            assert mock_http.post.call_args[1]["params"] == {"grant_type": "refresh_token"}
            assert mock_http.post.call_args[1]["json"] == {"refresh_token": "refresh-1"}

        assert session.access_token == "new-token"
        assert [e for e, _ in events] == [INITIAL_SESSION, TOKEN_REFRESHED]
        assert store.load().access_token == "new-token"

    @pytest.mark.asyncio
    async def test_refresh_failure_signs_out_locally(self, client, store, events):
        store.save(stored_session(datetime.now(timezone.utc) - timedelta(minutes=5)))

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(side_effect=httpx.ConnectError("offline"))
            mock_get.return_value = mock_http

            session = await client.get_session()

        assert session is None
        assert client.session is None
        assert events[-1] == (SIGNED_OUT, None)
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_refresh_without_token(self, client):
        with pytest.raises(AuthError):
            await client.refresh_session()

    @pytest.mark.asyncio
    async def test_sign_out(self, client, store, events):
        store.save(stored_session())
        await client.get_session()

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=make_response(204))
            mock_get.return_value = mock_http

            await client.sign_out()

            assert mock_http.post.call_args[0][0] == "/logout"
            headers = mock_http.post.call_args[1]["headers"]
            assert headers["Authorization"] == "Bearer old-token"

        assert client.session is None
        assert events[-1] == (SIGNED_OUT, None)
        assert not store.path.exists()

    @pytest.mark.asyncio
    async def test_sign_out_when_remote_fails(self, client, store):
        store.save(stored_session())
        await client.get_session()

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(side_effect=httpx.ConnectError("offline"))
            mock_get.return_value = mock_http

            await client.sign_out()

        assert client.session is None


class TestAutoRefresh:
    """Tests for the background refresh task."""

    @staticmethod
    async def wait_for(condition, attempts: int = 100) -> None:
        for _ in range(attempts):
            if condition():
                return
            await asyncio.sleep(0.01)

    @pytest.mark.asyncio
    async def test_refreshes_ahead_of_expiry(self, client, store, events):
        store.save(stored_session(datetime.now(timezone.utc) + timedelta(seconds=30)))
        await client.get_session()

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(
                return_value=make_response(
                    200,
                    {"access_token": "new-token", "refresh_token": "refresh-2", "expires_in": 3600},
                )
            )
            mock_get.return_value = mock_http

            await client.start_auto_refresh()
            await self.wait_for(lambda: len(events) > 1)
            await client.stop_auto_refresh()

        assert [e for e, _ in events] == [INITIAL_SESSION, TOKEN_REFRESHED]
        assert mock_http.post.await_count == 1
        assert client.session.access_token == "new-token"
        assert client.session.user.id == "user-a"

    @pytest.mark.asyncio
    async def test_idle_without_expiry(self, client, store, events):
        store.save(stored_session(expires_at=None))
        await client.get_session()

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_get.return_value = mock_http

            await client.start_auto_refresh()
            await asyncio.sleep(0.05)
            await client.stop_auto_refresh()

            mock_http.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_refresh_retried(self, remote_config, store):
        client = AuthClient(
            remote_config, AuthConfig(refresh_retry_seconds=0.01), store=store
        )
        store.save(stored_session(datetime.now(timezone.utc) + timedelta(seconds=30)))
        await client.get_session()

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(side_effect=httpx.ConnectError("offline"))
            mock_get.return_value = mock_http

            await client.start_auto_refresh()
            await self.wait_for(lambda: mock_http.post.await_count >= 2)
            await client.stop_auto_refresh()

        assert mock_http.post.await_count >= 2
        assert client.session is not None

    @pytest.mark.asyncio
    async def test_failed_refresh_after_expiry_signs_out(self, remote_config, store):
        client = AuthClient(remote_config, AuthConfig(auto_refresh=False), store=store)
        seen = []
        client.on_auth_state_change(lambda event, session: seen.append(event))
        store.save(stored_session(datetime.now(timezone.utc) - timedelta(minutes=5)))
        await client.get_session()

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=make_response(400, {"msg": "Invalid Refresh Token"}))
            mock_get.return_value = mock_http

            await client.start_auto_refresh()
            await self.wait_for(lambda: SIGNED_OUT in seen)
            await client.stop_auto_refresh()

        assert seen == [INITIAL_SESSION, SIGNED_OUT]
        assert client.session is None
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_new_sign_in_rearms_timer(self, client, events):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.get = AsyncMock(return_value=make_response(200, USER_JSON))
            mock_http.post = AsyncMock(
                return_value=make_response(
                    200, {"access_token": "new-token", "refresh_token": "r2", "expires_in": 3600}
                )
            )
            mock_get.return_value = mock_http

            await client.start_auto_refresh()
            await asyncio.sleep(0)
            await client.session_from_redirect(
                "#access_token=abc&refresh_token=ref&expires_in=30"
            )
            await self.wait_for(lambda: len(events) > 1)
            await client.stop_auto_refresh()

        assert [e for e, _ in events] == [SIGNED_IN, TOKEN_REFRESHED]

    @pytest.mark.asyncio
    async def test_close_stops_refresh(self, client):
        await client.start_auto_refresh()
        await client.start_auto_refresh()

        await client.close()

        assert client._refresh_task is None


class TestSessionStore:
    def test_missing_file(self, store):
        assert store.load() is None

    def test_corrupt_file_ignored(self, store):
        store.path.write_text("{not json")

        assert store.load() is None

    def test_clear_missing_file(self, store):
        store.clear()
        assert not store.path.exists()

    def test_no_store_when_persistence_off(self, remote_config):
        client = AuthClient(remote_config, AuthConfig(persist_session=False))

        assert client._store is None
