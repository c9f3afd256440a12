"""Adapters for the hosted data service: CRUD, change feed, in-memory stand-in."""

from ..config import Config
from .base import ArticleService, ChangeFeed, ChangeSubscription, RemoteError
from .memory import InMemoryBackend
from .realtime import RealtimeChangeFeed
from .rest import RestArticleService


def create_backend(config: Config) -> tuple[ArticleService, ChangeFeed]:
    """Build the CRUD service and change feed selected by ``config.remote.backend``."""
    if config.remote.backend == "memory":
        backend = InMemoryBackend(config.remote.table)
        return backend, backend
    return (
        RestArticleService(config.remote),
        RealtimeChangeFeed(config.remote, config.realtime),
    )


__all__ = [
    "ArticleService",
    "ChangeFeed",
    "ChangeSubscription",
    "InMemoryBackend",
    "RealtimeChangeFeed",
    "RemoteError",
    "RestArticleService",
    "create_backend",
]
