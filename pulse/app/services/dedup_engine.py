from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from threading import Lock

from pulse.app.models.domain import Article, Source, SourceKind, Watermark
from pulse.app.repositories.watermark_repository import WatermarkStore

LOGGER = logging.getLogger("pulse.dedup")

DEFAULT_FIRST_FETCH_LIMIT = 5


@dataclass(frozen=True)
class DedupResult:
    new_articles: list[Article]
    watermark: Watermark | None

    @property
    def advanced(self) -> bool:
        return bool(self.new_articles)


def article_cursor(kind: SourceKind, article: Article) -> str:
    if kind == SourceKind.FEED:
        return str(int(article.published_at.timestamp() * 1000))
    return article.external_id


def cursor_sort_key(kind: SourceKind, cursor: str) -> tuple[int, int, str]:
    """Order cursors of one source kind.

    FEED cursors are epoch milliseconds. TIMELINE ids compare numerically when
    they are digit strings; otherwise the longer id wins, then lexical order.
    """
    value = cursor.strip()
    if kind == SourceKind.FEED:
        try:
            return (0, int(value), "")
        except ValueError:
            return (-1, 0, value)
    if value.isdigit():
        return (0, int(value), "")
    return (1, len(value), value)


def filter_new(
    source_key: str,
    kind: SourceKind,
    articles: Sequence[Article],
    watermark: Watermark | None,
    *,
    first_fetch_limit: int = DEFAULT_FIRST_FETCH_LIMIT,
) -> DedupResult:
    """Split a fetched batch into items newer than ``watermark``.

    Returned items are oldest-first. The returned watermark is the one to
    persist: unchanged when nothing is new, never behind the stored cursor.
    """
    if not articles:
        return DedupResult(new_articles=[], watermark=watermark)

    keyed = sorted(
        ((cursor_sort_key(kind, article_cursor(kind, article)), index, article)
         for index, article in enumerate(articles)),
        key=lambda entry: (entry[0], entry[1]),
    )
    batch_max_cursor = article_cursor(kind, _cursor_candidates(kind, keyed)[-1][2])

    if watermark is None:
        limit = max(1, first_fetch_limit)
        new_articles = [article for _, _, article in keyed[-limit:]]
        LOGGER.info(
            "first fetch for source=%s items=%s treated_as_new=%s",
            source_key,
            len(articles),
            len(new_articles),
        )
        return DedupResult(
            new_articles=new_articles,
            watermark=Watermark(source_key=source_key, kind=kind, cursor=batch_max_cursor),
        )

    stored_key = cursor_sort_key(kind, watermark.cursor)
    new_articles = [article for key, _, article in keyed if key > stored_key]
    if not new_articles:
        return DedupResult(new_articles=[], watermark=watermark)

    next_cursor = batch_max_cursor
    if cursor_sort_key(kind, next_cursor) < stored_key:
        next_cursor = watermark.cursor
    return DedupResult(
        new_articles=new_articles,
        watermark=Watermark(source_key=source_key, kind=kind, cursor=next_cursor),
    )


def _cursor_candidates(
    kind: SourceKind,
    keyed: list[tuple[tuple[int, int, str], int, Article]],
) -> list[tuple[tuple[int, int, str], int, Article]]:
    # Feed cursors follow dated items only, unless nothing in the batch is dated.
    if kind != SourceKind.FEED:
        return keyed
    dated = [entry for entry in keyed if not entry[2].date_estimated]
    return dated or keyed


class DedupService:
    def __init__(
        self,
        store: WatermarkStore,
        *,
        first_fetch_limit: int = DEFAULT_FIRST_FETCH_LIMIT,
    ) -> None:
        self._store = store
        self._first_fetch_limit = max(1, first_fetch_limit)
        self._locks_guard = Lock()
        self._locks: dict[str, Lock] = {}

    def process(
        self,
        source: Source,
        articles: Sequence[Article],
        *,
        on_new: Callable[[list[Article]], object] | None = None,
    ) -> list[Article]:
        """Filter ``articles`` and advance the stored watermark.

        ``on_new`` receives the new items before the watermark is written; if
        it raises, the watermark stays where it was and the items come back on
        the next run.
        """
        with self._lock_for(source.source_key):
            stored = self._store.get(source.source_key)
            result = filter_new(
                source.source_key,
                source.kind,
                articles,
                stored,
                first_fetch_limit=self._first_fetch_limit,
            )
            if on_new is not None and result.new_articles:
                on_new(result.new_articles)
            if result.watermark is not None and result.watermark != stored:
                self._store.put(result.watermark)
                LOGGER.debug(
                    "watermark advanced source=%s cursor=%s new_items=%s",
                    source.source_key,
                    result.watermark.cursor,
                    len(result.new_articles),
                )
        return result.new_articles

    def _lock_for(self, source_key: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(source_key)
            if lock is None:
                lock = Lock()
                self._locks[source_key] = lock
            return lock
