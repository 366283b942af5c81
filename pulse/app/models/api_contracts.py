from __future__ import annotations

from datetime import datetime
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pulse.app.models.domain import Notification, Source, SourceKind

SchedulerState = Literal["idle", "running", "stopped"]


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


class NotificationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    message: str
    source_name: str
    timestamp: datetime
    is_read: bool
    is_saved: bool
    is_breaking: bool
    category: str
    link: str | None = None

    @classmethod
    def from_domain(cls, notification: Notification) -> NotificationResponse:
        return cls(
            id=notification.notification_id,
            title=notification.title,
            message=notification.message,
            source_name=notification.source_name,
            timestamp=notification.timestamp,
            is_read=notification.is_read,
            is_saved=notification.is_saved,
            is_breaking=notification.is_breaking,
            category=notification.category.value,
            link=notification.link,
        )


class NotificationListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    count: int
    unread_count: int
    items: list[NotificationResponse]


class NotificationGroupResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str
    label: str
    items: list[NotificationResponse]


class NotificationMutationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    notification: NotificationResponse | None = None


class ClearNotificationsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    removed: int


class SourceCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    display_name: str = Field(min_length=1, max_length=200)
    kind: SourceKind
    locator: str = Field(min_length=1, max_length=2048)

    @field_validator("display_name", "locator", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        normalized = _normalize_optional_text(value)
        return normalized if normalized is not None else value

    @model_validator(mode="after")
    def _validate_locator(self) -> SourceCreateRequest:
        if self.kind == SourceKind.FEED:
            parsed = urlparse(self.locator)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError("feed locator must be an absolute http/https URL")
        elif not self.locator.lstrip("@"):
            raise ValueError("timeline locator must be a handle")
        return self


class SourceResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    display_name: str
    kind: SourceKind
    locator: str

    @classmethod
    def from_domain(cls, source: Source) -> SourceResponse:
        return cls(
            id=source.source_id,
            display_name=source.display_name,
            kind=source.kind,
            locator=source.locator,
        )


class SchedulerStartRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval_minutes: int | None = Field(default=None, ge=1, le=24 * 60)


class SchedulerStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    state: SchedulerState
    next_run_at: datetime | None
    attempt_count: int
    base_interval_minutes: int
    last_outcome: str | None
    last_run_at: datetime | None
    runner_active: bool


class PollPassResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    sources: int
    failed: int
    skipped: int
    malformed: int
    new_items: int
    inserted: int
    duration_ms: int
    succeeded: bool


class FanoutRunResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sources: int
    failed_sources: int
    new_articles: int
    user_records: int
    push_sends: int
    push_failures: int
