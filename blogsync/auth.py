"""Identity provider client: OAuth redirect sign-in and session upkeep."""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from .config import AuthConfig, RemoteConfig
from .errors import AuthError
from .listeners import ListenerSet, Subscription
from .models import Session, User
from .remote.rest import error_message

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
INITIAL_SESSION = "INITIAL_SESSION"

AuthCallback = Callable[[str, Session | None], Awaitable[None] | None]


class SessionStore:
    """Persists the current session as JSON on disk."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def load(self) -> Session | None:
        if not self.path.exists():
            return None
        try:
            with open(self.path) as f:
                return Session.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return None

    def save(self, session: Session) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(session.to_dict(), f)
        self.path.chmod(0o600)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class AuthClient:
    """Client for the hosted identity endpoints under ``/auth/v1``.

    Holds at most one session. Listeners registered with
    ``on_auth_state_change`` are told about sign-in, sign-out and token
    refresh, in that order of occurrence.
    """

    def __init__(
        self,
        remote: RemoteConfig,
        config: AuthConfig,
        store: SessionStore | None = None,
    ):
        """Initialize the client.

        Args:
            remote: Hosted project URL and anon key.
            config: Provider, redirect and persistence settings.
            store: Where sessions are persisted; defaults to config.session_path
                when persistence is enabled.
        """
        self.remote = remote
        self.config = config
        if store is None and config.persist_session:
            store = SessionStore(config.session_path)
        self._store = store
        self._session: Session | None = None
        self._restored = False
        self._listeners = ListenerSet("auth")
        self._client: httpx.AsyncClient | None = None
        self._session_changed = asyncio.Event()
        self._refresh_task: asyncio.Task | None = None
        self._refreshing = False

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.remote.auth_url,
                timeout=self.remote.timeout_seconds,
                headers={"apikey": self.remote.anon_key},
            )
        return self._client

    async def close(self) -> None:
        """Stop auto-refresh and close the HTTP client."""
        await self.stop_auto_refresh()
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def session(self) -> Session | None:
        return self._session

    def on_auth_state_change(self, callback: AuthCallback) -> Subscription:
        """Register ``callback(event, session)`` for auth state changes."""
        return self._listeners.add(callback)

    async def _set_session(self, event: str, session: Session | None) -> None:
        self._session = session
        self._session_changed.set()
        if self._store:
            if session is None:
                self._store.clear()
            else:
                self._store.save(session)
        logger.info(f"Auth state: {event}", extra={"event": event})
        await self._listeners.notify(event, session)

    def sign_in_url(self, redirect_to: str | None = None) -> str:
        """URL that starts the provider's OAuth redirect flow."""
        params = {"provider": self.config.provider}
        redirect = redirect_to or self.config.redirect_to
        if redirect:
            params["redirect_to"] = redirect
        return f"{self.remote.auth_url}/authorize?{urlencode(params)}"

    async def fetch_user(self, access_token: str) -> User:
        """Look up the user that owns ``access_token``.

        Raises:
            AuthError: If the token is rejected or the request fails.
        """
        client = await self._get_client()
        try:
            response = await client.get(
                "/user", headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as e:
            raise AuthError(f"User lookup failed: {e}") from e
        if response.status_code != 200:
            raise AuthError(error_message(response))
        return User.from_dict(response.json())

    async def session_from_redirect(self, url_or_fragment: str) -> Session:
        """Build a session from the tokens the provider put in the redirect URL.

        Accepts a full URL, a ``#fragment`` or a bare query string.

        Raises:
            AuthError: If the redirect carries an error or no access token.
        """
        params = _redirect_params(url_or_fragment)
        if "error" in params:
            raise AuthError(params.get("error_description") or params["error"])
        return await self.set_session_tokens(
            access_token=params.get("access_token", ""),
            refresh_token=params.get("refresh_token"),
            expires_in=_as_int(params.get("expires_in")),
            expires_at=_as_int(params.get("expires_at")),
        )

    async def set_session_tokens(
        self,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
        expires_at: int | None = None,
    ) -> Session:
        """Adopt tokens handed over by the provider and announce SIGNED_IN."""
        if not access_token:
            raise AuthError("No access token in redirect")
        user = await self.fetch_user(access_token)
        session = Session(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_expiry(expires_in, expires_at),
            user=user,
        )
        await self._set_session(SIGNED_IN, session)
        return session

    async def get_session(self) -> Session | None:
        """Current session, restoring it from disk on first use.

        An expired session is refreshed when auto-refresh is enabled; if
        the refresh fails the session is dropped.
        """
        if not self._restored:
            self._restored = True
            if self._session is None and self._store:
                restored = self._store.load()
                if restored is not None:
                    self._session = restored
                    self._session_changed.set()
                    logger.info("Restored persisted session")
                    await self._listeners.notify(INITIAL_SESSION, restored)

        session = self._session
        if session is not None and session.is_expired() and self.config.auto_refresh:
            try:
                session = await self.refresh_session()
            except AuthError as e:
                logger.warning(f"Session refresh failed, signing out locally: {e}")
                await self._set_session(SIGNED_OUT, None)
                return None
        return session

    async def refresh_session(self) -> Session:
        """Trade the refresh token for a new access token.

        Raises:
            AuthError: If there is no refresh token or the exchange fails.
        """
        if self._session is None or not self._session.refresh_token:
            raise AuthError("No refresh token available")

        client = await self._get_client()
        try:
            response = await client.post(
                "/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": self._session.refresh_token},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Token refresh failed: {e}") from e
        if response.status_code != 200:
            raise AuthError(error_message(response))

        session = _session_from_token_response(response.json(), self._session.user)
        await self._set_session(TOKEN_REFRESHED, session)
        return session

    async def sign_out(self) -> None:
        """Revoke the session remotely (best effort) and forget it locally."""
        session = self._session
        if session is not None:
            client = await self._get_client()
            try:
                response = await client.post(
                    "/logout",
                    headers={"Authorization": f"Bearer {session.access_token}"},
                )
                if response.status_code >= 400:
                    logger.warning(f"Remote sign-out failed: {error_message(response)}")
            except httpx.HTTPError as e:
                logger.warning(f"Remote sign-out failed: {e}")
        await self._set_session(SIGNED_OUT, None)

    # ==================== Auto-refresh ====================

    async def start_auto_refresh(self) -> None:
        """Refresh the access token in the background ahead of its expiry."""
        if self._refreshing:
            return

        self._refreshing = True
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info(
            f"Token auto-refresh started (margin={self.config.refresh_margin_seconds}s)"
        )

    async def stop_auto_refresh(self) -> None:
        if not self._refreshing:
            return

        self._refreshing = False
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        logger.info("Token auto-refresh stopped")

    def _refresh_delay(self) -> float | None:
        """Seconds until the current session is due for refresh; None if it never is."""
        session = self._session
        if session is None or session.expires_at is None or not session.refresh_token:
            return None
        due = session.expires_at - timedelta(seconds=self.config.refresh_margin_seconds)
        return max((due - datetime.now(timezone.utc)).total_seconds(), 0.0)

    async def _wait_for_session_change(self, timeout: float | None) -> bool:
        try:
            await asyncio.wait_for(self._session_changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _refresh_loop(self) -> None:
        while self._refreshing:
            self._session_changed.clear()
            if await self._wait_for_session_change(self._refresh_delay()):
                continue

            try:
                await self.refresh_session()
                continue
            except AuthError as e:
                session = self._session
                if session is not None and session.is_expired(margin_seconds=0):
                    logger.warning(f"Token refresh failed after expiry, signing out locally: {e}")
                    await self._set_session(SIGNED_OUT, None)
                    continue
                logger.warning(f"Token refresh failed: {e}")
            except Exception as e:
                logger.error(f"Token refresh loop error: {e}")

            await self._wait_for_session_change(self.config.refresh_retry_seconds)


def _redirect_params(url_or_fragment: str) -> dict[str, str]:
    parsed = urlparse(url_or_fragment)
    if parsed.scheme:
        raw = parsed.fragment or parsed.query
    else:
        raw = url_or_fragment.lstrip("#?")
    return {key: values[0] for key, values in parse_qs(raw).items()}


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _expiry(expires_in: int | None, expires_at: int | None) -> datetime | None:
    if expires_at is not None:
        return datetime.fromtimestamp(expires_at, tz=timezone.utc)
    if expires_in is not None:
        return datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return None


def _session_from_token_response(data: dict[str, Any], fallback_user: User) -> Session:
    user = User.from_dict(data["user"]) if data.get("user") else fallback_user
    return Session(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=_expiry(_as_int(data.get("expires_in")), _as_int(data.get("expires_at"))),
        user=user,
    )
