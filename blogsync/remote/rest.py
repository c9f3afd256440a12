"""Article CRUD over the hosted store's REST (PostgREST) endpoint."""

import logging
from typing import Any

import httpx

from ..config import RemoteConfig
from ..errors import RemoteError
from ..models import Article
from .base import ArticleService

logger = logging.getLogger(__name__)


class RestArticleService(ArticleService):
    """ArticleService backed by ``/rest/v1/<table>``.

    Requests carry the project's anon key as ``apikey`` and, once a user
    is signed in, the user's access token as the bearer token so that
    row-level security is evaluated for that user.
    """

    def __init__(self, config: RemoteConfig):
        """Initialize the service.

        Args:
            config: Remote connection settings.
        """
        self.config = config
        self._access_token: str | None = None
        self._client: httpx.AsyncClient | None = None

    @property
    def table_path(self) -> str:
        return f"/{self.config.table}"

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    def _headers(self) -> dict[str, str]:
        bearer = self._access_token or self.config.anon_key
        headers = {
            "apikey": self.config.anon_key,
            "Authorization": f"Bearer {bearer}",
            "Content-Type": "application/json",
        }
        if self.config.schema != "public":
            headers["Accept-Profile"] = self.config.schema
            headers["Content-Profile"] = self.config.schema
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.rest_url,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        params: dict[str, str],
        json_data: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Send a request and return the decoded body.

        Raises:
            RemoteError: On transport failure or a non-2xx response.
        """
        client = await self._get_client()
        headers = self._headers()
        if prefer:
            headers["Prefer"] = prefer

        try:
            response = await client.request(
                method,
                self.table_path,
                params=params,
                json=json_data,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning(f"{method} {self.table_path} failed: {e}")
            raise RemoteError(str(e)) from e

        if response.status_code >= 400:
            raise RemoteError(error_message(response), response.status_code)

        if not response.content:
            return None
        return response.json()

    async def list_articles(self) -> list[Article]:
        rows = await self._request(
            "GET", {"select": "*", "order": "created_at.desc"}
        )
        articles = [Article.from_dict(row) for row in rows or []]
        logger.debug(f"Fetched {len(articles)} articles")
        return articles

    async def insert_article(self, payload: dict[str, Any]) -> Article | None:
        rows = await self._request(
            "POST", {}, json_data=payload, prefer="return=representation"
        )
        if not rows:
            return None
        return Article.from_dict(rows[0])

    async def update_article(
        self, article_id: Any, user_id: str, changes: dict[str, Any]
    ) -> list[Article]:
        rows = await self._request(
            "PATCH",
            {"id": f"eq.{article_id}", "user_id": f"eq.{user_id}"},
            json_data=changes,
            prefer="return=representation",
        )
        updated = [Article.from_dict(row) for row in rows or []]
        if not updated:
            logger.debug(f"Update of article {article_id} matched no rows")
        return updated

    async def delete_article(self, article_id: Any) -> None:
        await self._request("DELETE", {"id": f"eq.{article_id}"})


def error_message(response: httpx.Response) -> str:
    """Pull the server's message out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text}"
    if isinstance(body, dict):
        for key in ("message", "msg", "error_description", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}: {response.text}"
