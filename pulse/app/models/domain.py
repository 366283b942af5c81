from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class SourceKind(StrEnum):
    FEED = "FEED"
    TIMELINE = "TIMELINE"


class Category(StrEnum):
    BREAKING = "breaking"
    FINANCIAL = "financial"
    SOCIAL = "social"
    NEWS = "news"
    OTHER = "other"


@dataclass(frozen=True)
class Source:
    source_id: str
    display_name: str
    kind: SourceKind
    locator: str

    @property
    def source_key(self) -> str:
        """Watermark and notification-id key; a feed and a handle never collide."""
        return f"{self.kind.value}:{self.locator}"


@dataclass(frozen=True)
class Article:
    """Normalized item produced by the feed parser or the timeline client.

    ``external_id`` falls back to a hash of the title and raw date when the
    feed carries neither a GUID nor a link.
    """

    external_id: str
    title: str
    body: str
    link: str | None
    published_at: datetime
    source_display_name: str
    is_breaking: bool = False
    date_estimated: bool = False


@dataclass(frozen=True)
class Watermark:
    source_key: str
    kind: SourceKind
    cursor: str


@dataclass(frozen=True)
class Notification:
    notification_id: str
    title: str
    message: str
    source_name: str
    timestamp: datetime
    is_read: bool = False
    is_saved: bool = False
    is_breaking: bool = False
    category: Category = Category.OTHER
    link: str | None = None


@dataclass(frozen=True)
class RetrySchedulerState:
    attempt_count: int = 0
    base_interval_minutes: int = 5

    def to_payload(self) -> dict[str, int]:
        return {
            "attempt_count": self.attempt_count,
            "base_interval_minutes": self.base_interval_minutes,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object], *, default_interval: int) -> RetrySchedulerState:
        attempt = payload.get("attempt_count")
        interval = payload.get("base_interval_minutes")
        return cls(
            attempt_count=attempt if isinstance(attempt, int) and attempt >= 0 else 0,
            base_interval_minutes=(
                interval if isinstance(interval, int) and interval >= 1 else default_interval
            ),
        )

