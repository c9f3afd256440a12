"""HTTP surface for the article sync core.

Serves JSON endpoints for session, draft and article operations using
FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
