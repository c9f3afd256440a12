"""FastAPI application exposing the article operations as JSON."""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from .. import __version__
from ..auth import AuthClient
from ..config import Config
from ..errors import AuthError, RemoteError, SessionRequiredError
from ..models import Article
from ..sync import ArticleSync

logger = logging.getLogger(__name__)


class DraftBody(BaseModel):
    title: str | None = None
    description: str | None = None


class CallbackBody(BaseModel):
    url: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    expires_at: int | None = None


def create_app(
    config: Config,
    sync: ArticleSync,
    auth: AuthClient | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Application configuration.
        sync: The article sync core the routes operate on.
        auth: Identity provider client; auth routes answer 503 without it.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        auth_subscription = None
        if auth:
            auth_subscription = auth.on_auth_state_change(sync.handle_auth_event)
            await sync.set_session(await auth.get_session())
            if config.auth.auto_refresh:
                await auth.start_auto_refresh()
        try:
            yield
        finally:
            if auth_subscription:
                auth_subscription.unsubscribe()
            await sync.close()
            if auth:
                await auth.close()

    app = FastAPI(
        title="Blogsync",
        description="Article list kept in sync with the hosted blog table",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.sync = sync
    app.state.auth = auth

    def require_auth() -> AuthClient:
        if auth is None:
            raise HTTPException(status_code=503, detail="No identity provider configured")
        return auth

    def require_session() -> None:
        if sync.session is None:
            raise HTTPException(status_code=401, detail="Sign in to continue")

    def find_article(raw_id: str) -> Article | None:
        return next((a for a in sync.articles if str(a.id) == raw_id), None)

    def resolve_id(raw_id: str) -> Any:
        """Path ids arrive as text; bigint keys are sent back as integers."""
        article = find_article(raw_id)
        if article is not None:
            return article.id
        return int(raw_id) if raw_id.isdigit() else raw_id

    def draft_state() -> dict[str, Any]:
        draft = sync.draft
        return {
            "title": draft.title,
            "description": draft.description,
            "editing_id": sync.editing_id,
        }

    # ==================== Auth Routes ====================

    @app.get("/api/session")
    async def api_session() -> dict[str, Any]:
        """Who is signed in, if anyone."""
        session = sync.session
        if session is None:
            return {"signed_in": False, "user": None}
        return {
            "signed_in": True,
            "user": {
                "id": session.user.id,
                "email": session.user.email,
                "avatar_url": session.user.avatar_url,
            },
        }

    @app.get("/auth/login")
    async def auth_login(redirect_to: str | None = None):
        """Send the browser to the provider's sign-in page."""
        return RedirectResponse(require_auth().sign_in_url(redirect_to))

    @app.post("/auth/callback")
    async def auth_callback(body: CallbackBody) -> dict[str, Any]:
        """Accept the tokens from the provider's redirect."""
        client = require_auth()
        try:
            if body.url:
                session = await client.session_from_redirect(body.url)
            else:
                session = await client.set_session_tokens(
                    access_token=body.access_token or "",
                    refresh_token=body.refresh_token,
                    expires_in=body.expires_in,
                    expires_at=body.expires_at,
                )
        except AuthError as e:
            raise HTTPException(status_code=401, detail=str(e))
        # No-op when the auth listener already applied this session
        await sync.set_session(session)
        return {"signed_in": True, "user_id": session.user.id}

    @app.post("/auth/logout")
    async def auth_logout() -> dict[str, Any]:
        await require_auth().sign_out()
        await sync.set_session(None)
        return {"signed_in": False}

    # ==================== Article Routes ====================

    @app.get("/api/articles")
    async def api_articles() -> dict[str, Any]:
        """Articles in display order."""
        require_session()
        articles = sync.list_articles()
        return {
            "count": len(articles),
            "articles": [a.to_dict() for a in articles],
        }

    @app.get("/api/draft")
    async def api_get_draft() -> dict[str, Any]:
        return draft_state()

    @app.put("/api/draft")
    async def api_put_draft(body: DraftBody) -> dict[str, Any]:
        sync.set_draft(title=body.title, description=body.description)
        return draft_state()

    @app.post("/api/articles/submit")
    async def api_submit():
        """Post the draft as a new article or as an update of the one being edited."""
        require_session()
        try:
            submitted = await sync.submit()
        except SessionRequiredError as e:
            raise HTTPException(status_code=401, detail=str(e))
        except RemoteError as e:
            return JSONResponse(
                status_code=502,
                content={"error": f"Error: {e.message}", **draft_state()},
            )
        return {"submitted": submitted, **draft_state()}

    @app.post("/api/articles/{article_id}/edit")
    async def api_begin_edit(article_id: str) -> dict[str, Any]:
        require_session()
        article = find_article(article_id)
        if article is None:
            raise HTTPException(status_code=404, detail="Article not found")
        sync.begin_edit(article)
        return draft_state()

    @app.post("/api/edit/cancel")
    async def api_cancel_edit() -> dict[str, Any]:
        sync.cancel_edit()
        return draft_state()

    @app.delete("/api/articles/{article_id}")
    async def api_delete(article_id: str, confirm: bool = False):
        """Delete an article once the caller has confirmed.

        A failed delete is logged only; the list will simply not change.
        """
        require_session()
        if not confirm:
            raise HTTPException(
                status_code=400,
                detail="Are you sure you want to delete this article? Repeat with confirm=true",
            )
        try:
            await sync.delete(resolve_id(article_id))
        except RemoteError as e:
            logger.warning(f"Delete of article {article_id} failed: {e}")
        return Response(status_code=202)

    return app
