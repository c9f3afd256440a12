"""Client-side synchronization of the article list.

ArticleSync owns the in-memory list of articles, the current session, the
draft buffer and the editing target. The list is written in exactly two
places: the initial load, which replaces it wholesale, and apply_change,
which replays change notifications from the backend. Local submits and
deletes only send requests; their effect on the list arrives later as a
change notification like anyone else's.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable

from ..errors import RemoteError, SessionRequiredError
from ..listeners import ListenerSet, Subscription
from ..models import Article, ChangeEvent, Draft, EventType, Session
from ..remote.base import ArticleService, ChangeFeed, ChangeSubscription

logger = logging.getLogger(__name__)

ArticlesCallback = Callable[[list[Article]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArticleSync:
    """Keeps a local article list consistent with the remote table.

    All methods are meant to be called from one event loop. Network calls
    are the only suspension points and there is no locking.
    """

    def __init__(
        self,
        service: ArticleService,
        feed: ChangeFeed,
        table: str = "articles",
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the sync core.

        Args:
            service: CRUD interface to the articles table.
            feed: Source of change notifications.
            table: Table to subscribe to.
            clock: Returns the current time for created_at/updated_at stamps.
        """
        self._service = service
        self._feed = feed
        self._table = table
        self._clock = clock

        self._articles: list[Article] = []
        self._session: Session | None = None
        self._editing_id: Any = None
        self._draft = Draft()

        self._subscription: ChangeSubscription | None = None
        self._consumer: asyncio.Task | None = None
        self._generation = 0
        self._listeners = ListenerSet("articles")

    # ==================== State ====================

    @property
    def articles(self) -> list[Article]:
        """Articles in display order (a copy)."""
        return list(self._articles)

    def list_articles(self) -> list[Article]:
        return self.articles

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def draft(self) -> Draft:
        return replace(self._draft)

    @property
    def editing_id(self) -> Any:
        return self._editing_id

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def on_change(self, callback: ArticlesCallback) -> Subscription:
        """Register a synchronous callback run whenever the list changes.

        Returns:
            Handle whose ``unsubscribe()`` removes the callback.
        """
        return self._listeners.add(callback)

    def _notify(self) -> None:
        self._listeners.notify_nowait(self.articles)

    # ==================== Session lifetime ====================

    async def set_session(self, session: Session | None) -> None:
        """Switch to ``session`` (or to no session).

        A change of user tears down the current change subscription; if a
        user is now signed in, a new subscription is opened and the list is
        loaded. A refreshed token for the same user is handed to the service
        and the open subscription without resubscribing.
        """
        previous = self._session
        previous_user = previous.user.id if previous else None
        current_user = session.user.id if session else None

        self._session = session
        self._service.set_access_token(session.access_token if session else None)

        if previous_user == current_user:
            if session is not None and session.access_token != previous.access_token:
                await self._push_token(session.access_token)
            return

        # Calls still awaiting below for an older session see the bump and back off
        self._generation += 1
        generation = self._generation

        await self._close_subscription()
        if generation != self._generation:
            return

        if session is None:
            logger.info("Session ended, change subscription closed")
            return

        logger.info(f"Session started for user {current_user}", extra={"user_id": current_user})
        await self._open_subscription(session, generation)
        if generation != self._generation:
            return
        await self.load_articles()

    async def handle_auth_event(self, event: str, session: Session | None) -> None:
        """Auth state listener: follow sign-in, sign-out and token refresh."""
        logger.debug(f"Auth event {event}")
        await self.set_session(session)

    async def _open_subscription(self, session: Session, generation: int) -> None:
        try:
            subscription = await self._feed.subscribe(
                self._table, access_token=session.access_token
            )
        except RemoteError as e:
            logger.error(f"Could not subscribe to {self._table} changes: {e}")
            return

        if generation != self._generation:
            logger.debug("Session changed while subscribing, dropping subscription")
            await subscription.close()
            return

        self._subscription = subscription
        self._consumer = asyncio.create_task(self._consume(subscription))

    async def _consume(self, subscription: ChangeSubscription) -> None:
        async for event in subscription:
            self.apply_change(event)

    async def _push_token(self, token: str) -> None:
        subscription = self._subscription
        if subscription is None or subscription.closed:
            return
        await subscription.update_access_token(token)

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        consumer, self._consumer = self._consumer, None

        if subscription is not None:
            await subscription.close()
        if consumer is not None and not consumer.done():
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

    async def close(self) -> None:
        """Tear down the change subscription. In-flight requests are not cancelled."""
        self._generation += 1
        await self._close_subscription()

    # ==================== Reads ====================

    async def load_articles(self) -> bool:
        """Replace the list with the remote table, newest first.

        Failures are logged and leave the current list unchanged, and so
        does a result that arrives after the signed-in user changed.

        Returns:
            True if the list was replaced.
        """
        generation = self._generation
        try:
            articles = await self._service.list_articles()
        except RemoteError as e:
            logger.warning(f"Initial article load failed: {e}")
            return False

        if generation != self._generation:
            logger.debug("Session changed while loading, discarding result")
            return False

        self._articles = list(articles)
        logger.info(f"Loaded {len(self._articles)} articles")
        self._notify()
        return True

    def apply_change(self, event: ChangeEvent) -> None:
        """Apply one change notification to the list.

        Inserts are prepended without re-sorting. Updates replace the entry
        with the same id in place. Deletes remove the entry with the old
        row's id. Updates and deletes for unknown ids do nothing.
        """
        if event.event_type is EventType.INSERT:
            if event.new is None:
                logger.warning("Insert notification without a row")
                return
            self._articles.insert(0, event.new)

        elif event.event_type is EventType.UPDATE:
            if event.new is None:
                logger.warning("Update notification without a row")
                return
            for index, article in enumerate(self._articles):
                if article.id == event.new.id:
                    self._articles[index] = event.new
                    break
            else:
                logger.debug(f"Update for unknown article {event.new.id} dropped")
                return

        elif event.event_type is EventType.DELETE:
            old_id = event.old_id
            remaining = [a for a in self._articles if a.id != old_id]
            if len(remaining) == len(self._articles):
                return
            self._articles = remaining

        self._notify()

    # ==================== Writes ====================

    def _require_session(self) -> Session:
        if self._session is None:
            raise SessionRequiredError("Sign in to change articles")
        return self._session

    def set_draft(self, title: str | None = None, description: str | None = None) -> None:
        """Edit the draft buffer; fields left as None keep their value."""
        if title is not None:
            self._draft.title = title
        if description is not None:
            self._draft.description = description

    async def submit(self) -> bool:
        """Create an article from the draft, or update the editing target.

        Never touches the list. On success the draft is reset and the
        editing target cleared; on failure both are left as they were.

        Returns:
            False if the draft title is blank and nothing was sent,
            True once the request succeeded.

        Raises:
            SessionRequiredError: If no session is present.
            RemoteError: If the request failed.
        """
        if self._draft.is_blank:
            return False

        session = self._require_session()
        draft = replace(self._draft)
        now = self._clock().isoformat()

        try:
            if self._editing_id is not None:
                await self._service.update_article(
                    self._editing_id,
                    session.user.id,
                    {
                        "title": draft.title,
                        "description": draft.description,
                        "updated_at": now,
                    },
                )
                logger.info(
                    f"Updated article {self._editing_id}",
                    extra={"article_id": self._editing_id},
                )
                self._editing_id = None
            else:
                await self._service.insert_article(
                    {
                        "title": draft.title,
                        "description": draft.description,
                        "user_id": session.user.id,
                        "user_name": session.user.email,
                        "avatar": session.user.avatar_url,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                logger.info("Created article")
        except RemoteError as e:
            logger.error(f"Operation failed: {e}")
            raise

        self._draft = Draft()
        return True

    async def delete(self, article_id: Any) -> None:
        """Send a delete request for ``article_id``.

        Confirmation is the caller's job. Ownership is checked by the
        backend, not here, and the list is not touched.

        Raises:
            SessionRequiredError: If no session is present.
            RemoteError: If the request failed.
        """
        self._require_session()
        await self._service.delete_article(article_id)
        logger.info(f"Requested delete of article {article_id}", extra={"article_id": article_id})

    def begin_edit(self, article: Article | None = None) -> None:
        """Load ``article`` into the draft and make it the editing target.

        With no article, same as cancel_edit().
        """
        if article is None:
            self.cancel_edit()
            return
        self._editing_id = article.id
        self._draft = Draft(title=article.title, description=article.description)

    def cancel_edit(self) -> None:
        self._editing_id = None
        self._draft = Draft()
