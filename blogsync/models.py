"""Data model for articles, sessions and change notifications."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def _parse_ts(value: Any) -> datetime | None:
    """Parse an ISO timestamp from the backend, tolerating None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Article:
    """A user-authored post."""

    id: Any  # Server-assigned, immutable
    title: str
    description: str
    user_id: str | None = None
    user_name: str | None = None
    avatar: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "avatar": self.avatar,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Article":
        """Create from a backend row."""
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            user_id=data.get("user_id"),
            user_name=data.get("user_name"),
            avatar=data.get("avatar"),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


@dataclass
class Draft:
    """The shared title/description input buffer."""

    title: str = ""
    description: str = ""

    @property
    def is_blank(self) -> bool:
        """True when the title is empty after trimming whitespace."""
        return not self.title.strip()

    def to_dict(self) -> dict[str, str]:
        return {"title": self.title, "description": self.description}


@dataclass
class User:
    """Identity of the signed-in user as reported by the identity provider."""

    id: str
    user_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> str | None:
        return self.user_metadata.get("email")

    @property
    def avatar_url(self) -> str | None:
        return self.user_metadata.get("avatar_url")

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "user_metadata": dict(self.user_metadata)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(id=data["id"], user_metadata=dict(data.get("user_metadata") or {}))


@dataclass
class Session:
    """An authenticated session issued by the identity provider."""

    access_token: str
    user: User
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None, margin_seconds: int = 10) -> bool:
        """Check whether the access token is expired (or about to be).

        Args:
            now: Current time, defaults to UTC now.
            margin_seconds: Treat tokens expiring within this margin as expired.
        """
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at - timedelta(seconds=margin_seconds) <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "user": self.user.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_ts(data.get("expires_at")),
            user=User.from_dict(data["user"]),
        )


class EventType(Enum):
    """Kind of row change carried by a notification."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """A change notification for one row of the articles table.

    ``old`` is the raw previous row; for deletes the backend usually sends
    only the primary key.
    """

    event_type: EventType
    new: Article | None = None
    old: dict[str, Any] | None = None

    @property
    def old_id(self) -> Any:
        return self.old.get("id") if self.old else None

    @classmethod
    def from_payload(
        cls,
        event_type: str,
        record: dict[str, Any] | None,
        old_record: dict[str, Any] | None,
    ) -> "ChangeEvent":
        """Build an event from a backend change payload."""
        return cls(
            event_type=EventType(event_type.upper()),
            new=Article.from_dict(record) if record else None,
            old=dict(old_record) if old_record else None,
        )
