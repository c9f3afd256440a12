"""In-process backend that stores articles and echoes changes.

Implements both ArticleService and ChangeFeed so several sync cores can
share one table and observe each other's writes, the same way clients
of the hosted store do. Each core should get its own handle from
``connect()``: the handle carries the caller's access token, and the
caller's identity is the token's ``sub`` claim. Signatures are not
verified.
"""

import itertools
import logging
from typing import Any

import jwt

from ..errors import RemoteError
from ..models import Article, ChangeEvent, EventType
from .base import ArticleService, ChangeFeed, ChangeSubscription

logger = logging.getLogger(__name__)


class _Table:
    """Rows and subscribers shared by every handle on one backend."""

    def __init__(self, name: str):
        self.name = name
        self.rows: dict[int, Article] = {}
        self.ids = itertools.count(1)
        self.subscriptions: list[ChangeSubscription] = []
        self.fail_next: RemoteError | None = None

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self.subscriptions):
            subscription.put(event)


def token_subject(token: str | None) -> str | None:
    """User id carried in an access token, or None for the anon key and junk."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    return claims.get("sub")


class InMemoryBackend(ArticleService, ChangeFeed):
    """Articles table kept in a dict, with change fan-out to subscribers."""

    def __init__(self, table: str = "articles", _shared: _Table | None = None):
        self._table = _shared or _Table(table)
        self._access_token: str | None = None

    @property
    def table(self) -> str:
        return self._table.name

    def connect(self) -> "InMemoryBackend":
        """Open another client handle on the same table."""
        return InMemoryBackend(_shared=self._table)

    @property
    def fail_next(self) -> RemoteError | None:
        return self._table.fail_next

    @fail_next.setter
    def fail_next(self, error: RemoteError | None) -> None:
        self._table.fail_next = error

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    @property
    def caller(self) -> str | None:
        return token_subject(self._access_token)

    def _check_failure(self) -> None:
        """Raise the injected failure once, if one is set."""
        if self._table.fail_next is not None:
            error, self._table.fail_next = self._table.fail_next, None
            raise error

    @property
    def subscriber_count(self) -> int:
        return len(self._table.subscriptions)

    async def list_articles(self) -> list[Article]:
        self._check_failure()
        return sorted(
            self._table.rows.values(),
            key=lambda a: a.created_at.timestamp() if a.created_at else float("-inf"),
            reverse=True,
        )

    async def insert_article(self, payload: dict[str, Any]) -> Article | None:
        self._check_failure()
        if not payload.get("title"):
            raise RemoteError("null value in column \"title\"", 400)
        article = Article.from_dict({**payload, "id": next(self._table.ids)})
        self._table.rows[article.id] = article
        self._table.publish(ChangeEvent(EventType.INSERT, new=article))
        return article

    async def update_article(
        self, article_id: Any, user_id: str, changes: dict[str, Any]
    ) -> list[Article]:
        self._check_failure()
        current = self._table.rows.get(article_id)
        if current is None or current.user_id != user_id:
            return []
        updated = Article.from_dict({**current.to_dict(), **changes, "id": article_id})
        self._table.rows[article_id] = updated
        self._table.publish(
            ChangeEvent(EventType.UPDATE, new=updated, old={"id": article_id})
        )
        return [updated]

    async def delete_article(self, article_id: Any) -> None:
        """Delete the row if the caller owns it; otherwise no rows match."""
        self._check_failure()
        current = self._table.rows.get(article_id)
        if current is None:
            return
        caller = self.caller
        if caller is None or current.user_id != caller:
            logger.debug(f"Delete of article {article_id} by {caller} matched no rows")
            return
        del self._table.rows[article_id]
        self._table.publish(ChangeEvent(EventType.DELETE, old={"id": article_id}))

    async def subscribe(
        self,
        table: str,
        access_token: str | None = None,
        event: str = "*",
    ) -> ChangeSubscription:
        if table != self._table.name:
            raise RemoteError(f"Unknown table: {table}")

        subscriptions = self._table.subscriptions
        subscription: ChangeSubscription

        async def remove() -> None:
            if subscription in subscriptions:
                subscriptions.remove(subscription)

        subscription = ChangeSubscription(on_close=remove)
        subscriptions.append(subscription)
        logger.debug(f"In-memory subscriber added ({len(subscriptions)} total)")
        return subscription
