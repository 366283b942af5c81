from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from hashlib import sha256
from html import escape, unescape
from html.parser import HTMLParser
from urllib.parse import urlparse

from pulse.app.models.domain import Article

LOGGER = logging.getLogger("pulse.feed_parser")

DEFAULT_BREAKING_KEYWORDS: tuple[str, ...] = ("breaking", "urgent", "alert")
DEFAULT_BODY_MAX_CHARS = 200
DEFAULT_SOURCE_NAME = "RSS Feed"
GENERATED_ID_PREFIX = "generated:"

# Host fragment -> display name. Dotted fragments must match a domain suffix.
KNOWN_SOURCE_NAMES: tuple[tuple[str, str], ...] = (
    ("reuters", "Reuters"),
    ("bloomberg", "Bloomberg"),
    ("ft.com", "Financial Times"),
    ("economist", "The Economist"),
    ("bbci.co.uk", "BBC News"),
    ("bbc.co.uk", "BBC News"),
    ("nikkei.com", "Nikkei Asia"),
    ("caixinglobal", "Caixin Global"),
    ("scmp.com", "SCMP"),
    ("wsj.com", "WSJ"),
    ("marketwatch", "MarketWatch"),
    ("cnbc.com", "CNBC"),
    ("aljazeera", "Al Jazeera"),
    ("theguardian", "The Guardian"),
    ("nytimes", "The New York Times"),
)
_GENERIC_HOST_LABELS: frozenset[str] = frozenset({"www", "feeds", "feed", "rss", "m", "news"})

_ITEM_TAGS: frozenset[str] = frozenset({"item", "entry"})
_FIELD_ALIASES: dict[str, str] = {
    "title": "title",
    "description": "body",
    "summary": "body",
    "content": "body",
    "content:encoded": "body",
    "pubdate": "published",
    "published": "published",
    "updated": "published",
    "dc:date": "published",
    "link": "link",
    "guid": "guid",
    "id": "guid",
}
_TRUTHY_MARKERS: frozenset[str] = frozenset({"1", "true", "yes", "y", "on"})
_CDATA_PATTERN = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_TAG_PATTERN = re.compile(r"<[^>]*>")
_XML_ENCODING_PATTERN = re.compile(rb"""<\?xml[^>]*encoding=["']([A-Za-z0-9._-]+)["']""")


class FeedStructureError(Exception):
    pass


@dataclass(frozen=True)
class FeedParseResult:
    articles: list[Article]
    source_name: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _RawItem:
    fields: dict[str, list[str]] = field(default_factory=dict)
    href: str | None = None
    breaking_marker: bool = False

    def text(self, name: str) -> str | None:
        parts = self.fields.get(name)
        if not parts:
            return None
        joined = "".join(parts).strip()
        return joined or None


class _FeedEventParser(HTMLParser):
    """Single forward pass over feed markup.

    Tag names arrive lower-cased, so `pubDate` is matched as `pubdate`.
    Markup nested inside a recognized field is folded into that field's text.
    """

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.channel_title_parts: list[str] = []
        self.items: list[_RawItem] = []
        self._current: _RawItem | None = None
        self._field_tag: str | None = None
        self._marker_tag: str | None = None
        self._marker_parts: list[str] = []
        self._capture_channel_title = False
        self._channel_title_done = False
        self._image_depth = 0

    @property
    def channel_title(self) -> str | None:
        joined = " ".join("".join(self.channel_title_parts).split())
        return joined or None

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _ITEM_TAGS:
            if self._current is not None:
                raise FeedStructureError(f"nested <{tag}> inside an open item")
            self._current = _RawItem()
            self._field_tag = None
            return

        if self._current is None:
            if tag == "image":
                self._image_depth += 1
            elif tag == "title" and not self._channel_title_done and self._image_depth == 0:
                self._capture_channel_title = True
            return

        if self._field_tag is not None or self._marker_tag is not None:
            return
        if _is_breaking_marker(tag):
            self._marker_tag = tag
            self._marker_parts = []
            return
        alias = _FIELD_ALIASES.get(tag)
        if alias is None:
            return
        if alias == "link":
            href = _link_href(attrs)
            if href is not None:
                self._current.href = self._current.href or href
        self._field_tag = tag
        self._current.fields.setdefault(alias, [])

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if self._current is not None and tag == "link" and self._field_tag is None:
            href = _link_href(attrs)
            if href is not None and self._current.href is None:
                self._current.href = href
            return
        self.handle_starttag(tag, attrs)
        self.handle_endtag(tag)

    def handle_endtag(self, tag: str) -> None:
        if tag in _ITEM_TAGS:
            if self._current is None:
                return
            self.items.append(self._current)
            self._current = None
            self._field_tag = None
            self._marker_tag = None
            return

        if self._current is None:
            if tag == "image" and self._image_depth > 0:
                self._image_depth -= 1
            elif tag == "title" and self._capture_channel_title:
                self._capture_channel_title = False
                self._channel_title_done = True
            return

        if self._marker_tag is not None and tag == self._marker_tag:
            value = "".join(self._marker_parts).strip().lower()
            self._current.breaking_marker = value in _TRUTHY_MARKERS
            self._marker_tag = None
            return
        if self._field_tag is not None and tag == self._field_tag:
            self._field_tag = None

    def handle_data(self, data: str) -> None:
        if self._current is None:
            if self._capture_channel_title:
                self.channel_title_parts.append(data)
            return
        if self._marker_tag is not None:
            self._marker_parts.append(data)
            return
        if self._field_tag is None:
            return
        alias = _FIELD_ALIASES[self._field_tag]
        self._current.fields.setdefault(alias, []).append(data)

    def finish(self) -> None:
        self.close()
        if self._current is not None:
            raise FeedStructureError("feed ended inside an open item")


class FeedParser:
    def __init__(
        self,
        *,
        breaking_keywords: Iterable[str] = DEFAULT_BREAKING_KEYWORDS,
        body_max_chars: int = DEFAULT_BODY_MAX_CHARS,
    ) -> None:
        self._breaking_keywords = tuple(
            keyword.strip().lower() for keyword in breaking_keywords if keyword.strip()
        )
        self._body_max_chars = max(1, body_max_chars)

    def parse(
        self,
        raw: bytes | str,
        *,
        locator: str | None = None,
        fallback_source_name: str | None = None,
        now: datetime | None = None,
    ) -> FeedParseResult:
        """Turn feed markup into articles without ever raising.

        A structural problem discards the whole parse and is reported through
        ``FeedParseResult.error``.
        """
        reference_time = now if now is not None else datetime.now(UTC)
        default_name = (
            _normalize_text(fallback_source_name)
            or source_name_from_locator(locator)
            or DEFAULT_SOURCE_NAME
        )

        parser = _FeedEventParser()
        try:
            parser.feed(_prepare_markup(raw))
            parser.finish()
        except FeedStructureError as exc:
            LOGGER.warning("feed structure error locator=%s error=%s", locator, exc)
            return FeedParseResult(articles=[], source_name=default_name, error=str(exc))
        except Exception as exc:
            LOGGER.warning("feed parse aborted locator=%s", locator, exc_info=True)
            return FeedParseResult(
                articles=[],
                source_name=default_name,
                error=f"parse_error:{type(exc).__name__}",
            )

        source_name = parser.channel_title or default_name
        articles: list[Article] = []
        for item in parser.items:
            article = self._build_article(item, source_name=source_name, now=reference_time)
            if article is not None:
                articles.append(article)
        return FeedParseResult(articles=articles, source_name=source_name)

    def is_breaking_title(self, title: str) -> bool:
        lowered = title.lower()
        return any(keyword in lowered for keyword in self._breaking_keywords)

    def _build_article(self, item: _RawItem, *, source_name: str, now: datetime) -> Article | None:
        title = _clean_markup(item.text("title") or "")
        if not title:
            return None

        raw_published = item.text("published")
        published_at, estimated = parse_published_at(raw_published, now=now)
        link = _normalize_text(item.text("link")) or _normalize_text(item.href)
        guid = _normalize_text(item.text("guid"))
        external_id = guid or link or _generated_id(title, raw_published)
        body = _clean_markup(item.text("body") or "")[: self._body_max_chars].rstrip()

        return Article(
            external_id=external_id,
            title=title,
            body=body,
            link=link,
            published_at=published_at,
            source_display_name=source_name,
            is_breaking=item.breaking_marker or self.is_breaking_title(title),
            date_estimated=estimated,
        )


def parse_feed(
    raw: bytes | str,
    *,
    locator: str | None = None,
    fallback_source_name: str | None = None,
    now: datetime | None = None,
) -> FeedParseResult:
    return FeedParser().parse(
        raw,
        locator=locator,
        fallback_source_name=fallback_source_name,
        now=now,
    )


def parse_published_at(raw: str | None, *, now: datetime) -> tuple[datetime, bool]:
    """Resolve a feed date: RFC 822/1123 first, then ISO 8601, then ``now``.

    The boolean is True when the value fell back to ``now``.
    """
    value = _normalize_text(raw)
    if value is None:
        return now, True

    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        parsed = None
    if parsed is not None:
        return _as_utc(parsed), False

    iso_value = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        return _as_utc(datetime.fromisoformat(iso_value)), False
    except ValueError:
        LOGGER.warning("unparseable feed date value=%r; using current time", value)
        return now, True


def source_name_from_locator(locator: str | None) -> str | None:
    normalized = _normalize_text(locator)
    if normalized is None:
        return None
    host = urlparse(normalized if "://" in normalized else f"//{normalized}").hostname
    if not host:
        return None
    host = host.lower()
    labels = [label for label in host.split(".") if label]
    for fragment, display_name in KNOWN_SOURCE_NAMES:
        if "." in fragment:
            if host == fragment or host.endswith(f".{fragment}"):
                return display_name
        elif any(fragment in label for label in labels):
            return display_name
    for label in labels[:-1] or labels:
        if label not in _GENERIC_HOST_LABELS:
            return label.replace("-", " ").title()
    return labels[0].title() if labels else None


def _prepare_markup(raw: bytes | str) -> str:
    text = raw if isinstance(raw, str) else _decode(raw)
    text = text.lstrip("﻿")
    return _CDATA_PATTERN.sub(lambda match: escape(match.group(1), quote=False), text)


def _decode(raw: bytes) -> str:
    match = _XML_ENCODING_PATTERN.search(raw[:256])
    if match is not None:
        try:
            return raw.decode(match.group(1).decode("ascii"), errors="replace")
        except LookupError:
            LOGGER.debug("unknown feed encoding=%s; decoding as utf-8", match.group(1))
    return raw.decode("utf-8", errors="replace")


def _clean_markup(value: str) -> str:
    stripped = _TAG_PATTERN.sub(" ", value)
    return " ".join(unescape(stripped).split())


def _link_href(attrs: list[tuple[str, str | None]]) -> str | None:
    attrs_map = {name.lower(): (value or "").strip() for name, value in attrs}
    rel = attrs_map.get("rel", "alternate").lower()
    if rel not in {"alternate", ""}:
        return None
    return _normalize_text(attrs_map.get("href"))


def _is_breaking_marker(tag: str) -> bool:
    return tag == "breaking" or tag.endswith(":breaking")


def _generated_id(title: str, raw_published: str | None) -> str:
    digest = sha256(f"{title}\x1f{raw_published or ''}".encode()).hexdigest()
    return f"{GENERATED_ID_PREFIX}{digest[:24]}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _normalize_text(value: str | None) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None
