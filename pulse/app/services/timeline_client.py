from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from urllib.parse import quote, urlencode

from pulse.app.models.domain import Article
from pulse.app.services.http_client import FetchError, HttpGetter, decode_json_object

LOGGER = logging.getLogger("pulse.timeline")

DEFAULT_TIMELINE_API_BASE_URL = "https://api.twitter.com/2"
STATUS_URL_TEMPLATE = "https://twitter.com/{handle}/status/{post_id}"


class TimelineConfigurationError(RuntimeError):
    pass


@dataclass(frozen=True)
class TimelinePost:
    post_id: str
    text: str
    created_at: datetime | None


class TimelineClient:
    """Two-step timeline fetch: handle -> account id, then recent posts."""

    def __init__(
        self,
        *,
        http: HttpGetter,
        bearer_token: str | None,
        base_url: str = DEFAULT_TIMELINE_API_BASE_URL,
        page_size: int = 5,
    ) -> None:
        self._http = http
        self._bearer_token = bearer_token.strip() if bearer_token else None
        self._base_url = base_url.rstrip("/")
        self._page_size = min(100, max(5, page_size))
        self._account_ids: dict[str, str] = {}
        self._cache_lock = Lock()

    @property
    def configured(self) -> bool:
        return bool(self._bearer_token)

    def resolve_account_id(self, handle: str) -> str:
        normalized = normalize_handle(handle)
        with self._cache_lock:
            cached = self._account_ids.get(normalized.lower())
        if cached is not None:
            return cached

        payload = self._get_json(f"/users/by/username/{quote(normalized, safe='')}")
        data = payload.get("data")
        account_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(account_id, str) or not account_id.strip():
            raise FetchError(f"timeline account not found handle={normalized}", retryable=False)

        with self._cache_lock:
            self._account_ids[normalized.lower()] = account_id.strip()
        return account_id.strip()

    def fetch_recent(
        self,
        account_id: str,
        *,
        max_results: int | None = None,
        since_id: str | None = None,
    ) -> list[TimelinePost]:
        query: dict[str, str] = {
            "max_results": str(self._page_size if max_results is None else max_results),
            "tweet.fields": "created_at",
        }
        if since_id:
            query["since_id"] = since_id
        payload = self._get_json(f"/users/{quote(account_id, safe='')}/tweets?{urlencode(query)}")

        raw_posts = payload.get("data")
        if not isinstance(raw_posts, list):
            return []
        posts: list[TimelinePost] = []
        for raw_post in raw_posts:
            if not isinstance(raw_post, dict):
                continue
            post_id = raw_post.get("id")
            text = raw_post.get("text")
            if not isinstance(post_id, str) or not isinstance(text, str):
                continue
            created_at = raw_post.get("created_at")
            posts.append(
                TimelinePost(
                    post_id=post_id,
                    text=text,
                    created_at=_parse_created_at(created_at) if isinstance(created_at, str) else None,
                )
            )
        return posts

    def fetch_articles(
        self,
        handle: str,
        *,
        display_name: str,
        since_id: str | None = None,
    ) -> list[Article]:
        normalized = normalize_handle(handle)
        account_id = self.resolve_account_id(normalized)
        posts = self.fetch_recent(account_id, since_id=since_id)
        now = datetime.now(UTC)
        articles: list[Article] = []
        for post in posts:
            text = " ".join(post.text.split())
            if not text:
                continue
            articles.append(
                Article(
                    external_id=post.post_id,
                    title=text,
                    body=text,
                    link=STATUS_URL_TEMPLATE.format(handle=normalized, post_id=post.post_id),
                    published_at=post.created_at or now,
                    source_display_name=display_name,
                    date_estimated=post.created_at is None,
                )
            )
        return articles

    def _get_json(self, path: str) -> dict[str, object]:
        if not self._bearer_token:
            raise TimelineConfigurationError("timeline bearer token is not configured")
        body = self._http.get(
            f"{self._base_url}{path}",
            headers={
                "Authorization": f"Bearer {self._bearer_token}",
                "Accept": "application/json",
            },
        )
        return decode_json_object(body)


def normalize_handle(handle: str) -> str:
    normalized = handle.strip().lstrip("@")
    if not normalized:
        raise ValueError("timeline handle must not be empty")
    return normalized


def _parse_created_at(value: str) -> datetime | None:
    normalized = value.strip()
    if normalized.endswith(("Z", "z")):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        LOGGER.warning("unparseable timeline created_at value=%r; using current time", value)
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
