"""Exception types shared across blogsync."""


class BlogSyncError(Exception):
    """Base class for blogsync errors."""


class RemoteError(BlogSyncError):
    """A request to the remote data service failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(BlogSyncError):
    """The identity provider rejected or failed a request."""


class SessionRequiredError(BlogSyncError):
    """An operation needs a signed-in session and none is present."""
