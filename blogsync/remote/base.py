"""Interfaces to the hosted data service consumed by the sync core."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from ..errors import RemoteError
from ..models import Article, ChangeEvent

logger = logging.getLogger(__name__)

__all__ = ["ArticleService", "ChangeFeed", "ChangeSubscription", "RemoteError"]

_CLOSED = object()


class ArticleService(ABC):
    """Row-level CRUD over the articles table."""

    @abstractmethod
    def set_access_token(self, token: str | None) -> None:
        """Use ``token`` for subsequent requests, or fall back to the anon key."""
        pass

    @abstractmethod
    async def list_articles(self) -> list[Article]:
        """Fetch all articles, newest ``created_at`` first."""
        pass

    @abstractmethod
    async def insert_article(self, payload: dict[str, Any]) -> Article | None:
        """Create a row from ``payload`` (no ``id``) and return it."""
        pass

    @abstractmethod
    async def update_article(
        self, article_id: Any, user_id: str, changes: dict[str, Any]
    ) -> list[Article]:
        """Update the row matching both ``article_id`` and ``user_id``.

        Returns:
            The updated rows. An empty list is not an error.
        """
        pass

    @abstractmethod
    async def delete_article(self, article_id: Any) -> None:
        """Delete the row with ``article_id``."""
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass


class ChangeSubscription:
    """An open stream of change events for one table.

    Iterate with ``async for`` until ``close()`` is called, after which
    iteration ends. Producers feed events with ``put()``.
    """

    def __init__(
        self,
        on_close: Callable[[], Awaitable[None]] | None = None,
        on_token: Callable[[str], Awaitable[None]] | None = None,
    ):
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._on_close = on_close
        self._on_token = on_token
        self._closed = False
        self._close_called = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: ChangeEvent) -> None:
        """Deliver an event to the consumer. Dropped if already closed."""
        if self._closed:
            return
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Get the next event, or None if closed or the timeout elapsed."""
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> "ChangeSubscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def update_access_token(self, token: str) -> None:
        """Hand a refreshed access token to the producer, if it needs one."""
        if self._closed or self._on_token is None:
            return
        try:
            await self._on_token(token)
        except Exception as e:
            logger.warning(f"Could not update subscription token: {e}")

    def finish(self) -> None:
        """Producer side: end iteration without running the close hook."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def close(self) -> None:
        """Stop the stream and release its resources. Safe to call more than once."""
        if self._close_called:
            return
        self._close_called = True
        self.finish()
        if self._on_close:
            try:
                await self._on_close()
            except Exception as e:
                logger.warning(f"Error while closing change subscription: {e}")


class ChangeFeed(ABC):
    """Source of change notifications for a table."""

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        access_token: str | None = None,
        event: str = "*",
    ) -> ChangeSubscription:
        """Open a subscription for changes on ``table``.

        Args:
            table: Table to watch.
            access_token: User token so row-level security applies.
            event: Event filter; "*" for insert, update and delete.

        Raises:
            RemoteError: If the subscription cannot be established.
        """
        pass
