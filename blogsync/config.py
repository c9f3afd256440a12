"""Configuration loading for blogsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class RemoteConfig:
    """Connection settings for the hosted data service."""

    url: str = "http://localhost:54321"
    anon_key: str = ""
    schema: str = "public"
    table: str = "articles"
    timeout_seconds: float = 30.0
    backend: str = "rest"  # "rest" or "memory"

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.url.rstrip('/')}/auth/v1"

    @property
    def realtime_url(self) -> str:
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"


@dataclass
class RealtimeConfig:
    """Settings for the change-notification channel."""

    channel: str = "articles-channel"
    heartbeat_interval_seconds: float = 30.0
    join_timeout_seconds: float = 10.0


@dataclass
class AuthConfig:
    """Identity provider settings."""

    provider: str = "google"
    redirect_to: str = ""
    session_path: str = "~/.blogsync/session.json"
    persist_session: bool = True
    auto_refresh: bool = True
    refresh_margin_seconds: float = 60.0
    refresh_retry_seconds: float = 10.0


@dataclass
class DashboardConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with BLOGSYNC_ prefix."""
    return os.environ.get(f"BLOGSYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.url = url
    if anon_key := _get_env("REMOTE_ANON_KEY"):
        config.remote.anon_key = anon_key
    if table := _get_env("REMOTE_TABLE"):
        config.remote.table = table
    if backend := _get_env("REMOTE_BACKEND"):
        config.remote.backend = backend

    # Realtime overrides
    if channel := _get_env("REALTIME_CHANNEL"):
        config.realtime.channel = channel

    # Auth overrides
    if provider := _get_env("AUTH_PROVIDER"):
        config.auth.provider = provider
    if redirect_to := _get_env("AUTH_REDIRECT_TO"):
        config.auth.redirect_to = redirect_to
    if session_path := _get_env("AUTH_SESSION_PATH"):
        config.auth.session_path = session_path
    if persist := _get_env("AUTH_PERSIST_SESSION"):
        config.auth.persist_session = _as_bool(persist)

    # Dashboard overrides
    if host := _get_env("DASHBOARD_HOST"):
        config.dashboard.host = host
    if port := _get_env("DASHBOARD_PORT"):
        config.dashboard.port = int(port)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.

    Raises:
        ValueError: If the remote backend is not one of "rest" or "memory".
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    url=remote_data.get("url", config.remote.url),
                    anon_key=remote_data.get("anon_key", config.remote.anon_key),
                    schema=remote_data.get("schema", config.remote.schema),
                    table=remote_data.get("table", config.remote.table),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    backend=remote_data.get("backend", config.remote.backend),
                )

            # Parse realtime config
            if "realtime" in data:
                rt_data = data["realtime"]
                config.realtime = RealtimeConfig(
                    channel=rt_data.get("channel", config.realtime.channel),
                    heartbeat_interval_seconds=rt_data.get(
                        "heartbeat_interval_seconds",
                        config.realtime.heartbeat_interval_seconds,
                    ),
                    join_timeout_seconds=rt_data.get(
                        "join_timeout_seconds", config.realtime.join_timeout_seconds
                    ),
                )

            # Parse auth config
            if "auth" in data:
                auth_data = data["auth"]
                config.auth = AuthConfig(
                    provider=auth_data.get("provider", config.auth.provider),
                    redirect_to=auth_data.get("redirect_to", config.auth.redirect_to),
                    session_path=auth_data.get(
                        "session_path", config.auth.session_path
                    ),
                    persist_session=auth_data.get(
                        "persist_session", config.auth.persist_session
                    ),
                    auto_refresh=auth_data.get(
                        "auto_refresh", config.auth.auto_refresh
                    ),
                )

            # Parse dashboard config
            if "dashboard" in data:
                dash_data = data["dashboard"]
                config.dashboard = DashboardConfig(
                    host=dash_data.get("host", config.dashboard.host),
                    port=dash_data.get("port", config.dashboard.port),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    if config.remote.backend not in ("rest", "memory"):
        raise ValueError(f"Unknown remote backend: {config.remote.backend}")

    return config
