from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import StrEnum
from threading import Lock

from pulse.app.models.domain import Article, Source, SourceKind
from pulse.app.repositories.watermark_repository import WatermarkStore
from pulse.app.services.feed_parser import FeedParser
from pulse.app.services.http_client import FetchError, HttpGetter
from pulse.app.services.timeline_client import TimelineClient, TimelineConfigurationError
from pulse.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("pulse.fetch")

FEED_ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"


class OutcomeStatus(StrEnum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class SourceOutcome:
    source: Source
    status: OutcomeStatus
    articles: list[Article] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class FetchPassResult:
    outcomes: list[SourceOutcome]

    @property
    def had_fetch_errors(self) -> bool:
        return any(outcome.status == OutcomeStatus.FAILED for outcome in self.outcomes)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def article_count(self) -> int:
        return sum(len(outcome.articles) for outcome in self.outcomes)


class FetchDispatcher:
    """Fetches every source once and records a per-source outcome.

    A failing source never aborts the pass. Only transport failures count as
    ``failed``; unparseable markup is ``malformed`` and a timeline source
    without credentials is ``skipped``.
    """

    def __init__(
        self,
        *,
        http: HttpGetter,
        feed_parser: FeedParser,
        timeline_client: TimelineClient,
        watermarks: WatermarkStore | None = None,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._http = http
        self._feed_parser = feed_parser
        self._timeline_client = timeline_client
        self._watermarks = watermarks
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._missing_token_logged = False
        self._missing_token_lock = Lock()

    def fetch_all(self, sources: Sequence[Source], *, max_workers: int = 1) -> FetchPassResult:
        if max_workers <= 1 or len(sources) <= 1:
            return FetchPassResult(outcomes=[self.fetch_source(source) for source in sources])

        outcomes: dict[int, SourceOutcome] = {}
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self.fetch_source, source): index
                for index, source in enumerate(sources)
            }
            for future in as_completed(futures):
                outcomes[futures[future]] = future.result()
        return FetchPassResult(outcomes=[outcomes[index] for index in range(len(sources))])

    def fetch_source(self, source: Source) -> SourceOutcome:
        started_at = time.perf_counter()
        try:
            if source.kind == SourceKind.FEED:
                outcome = self._fetch_feed(source)
            else:
                outcome = self._fetch_timeline(source)
        except TimelineConfigurationError:
            self._log_missing_token_once()
            outcome = SourceOutcome(
                source=source,
                status=OutcomeStatus.SKIPPED,
                error="timeline_not_configured",
            )
        except FetchError as exc:
            LOGGER.warning(
                "source fetch failed source=%s kind=%s retryable=%s error=%s",
                source.locator,
                source.kind.value,
                exc.retryable,
                exc,
            )
            outcome = SourceOutcome(source=source, status=OutcomeStatus.FAILED, error=str(exc))
        except Exception as exc:
            LOGGER.warning(
                "source fetch raised unexpectedly source=%s kind=%s",
                source.locator,
                source.kind.value,
                exc_info=True,
            )
            outcome = SourceOutcome(
                source=source,
                status=OutcomeStatus.FAILED,
                error=f"{type(exc).__name__}: {exc}",
            )

        duration_ms = int((time.perf_counter() - started_at) * 1000)
        if outcome.status in {OutcomeStatus.FAILED, OutcomeStatus.MALFORMED}:
            self._telemetry.emit(
                "poll.source.error",
                source_id=source.source_id,
                kind=source.kind.value,
                status=outcome.status.value,
                duration_ms=duration_ms,
            )
        return SourceOutcome(
            source=outcome.source,
            status=outcome.status,
            articles=outcome.articles,
            error=outcome.error,
            duration_ms=duration_ms,
        )

    def _fetch_feed(self, source: Source) -> SourceOutcome:
        raw = self._http.get(source.locator, headers={"Accept": FEED_ACCEPT_HEADER})
        result = self._feed_parser.parse(
            raw,
            locator=source.locator,
            fallback_source_name=source.display_name,
        )
        if not result.ok:
            return SourceOutcome(source=source, status=OutcomeStatus.MALFORMED, error=result.error)
        LOGGER.debug("feed fetched source=%s items=%s", source.locator, len(result.articles))
        return SourceOutcome(source=source, status=OutcomeStatus.OK, articles=result.articles)

    def _fetch_timeline(self, source: Source) -> SourceOutcome:
        since_id: str | None = None
        if self._watermarks is not None:
            watermark = self._watermarks.get(source.source_key)
            if watermark is not None and watermark.kind == SourceKind.TIMELINE:
                since_id = watermark.cursor
        articles = self._timeline_client.fetch_articles(
            source.locator,
            display_name=source.display_name,
            since_id=since_id,
        )
        LOGGER.debug("timeline fetched source=%s items=%s", source.locator, len(articles))
        return SourceOutcome(source=source, status=OutcomeStatus.OK, articles=articles)

    def _log_missing_token_once(self) -> None:
        with self._missing_token_lock:
            if self._missing_token_logged:
                return
            self._missing_token_logged = True
        LOGGER.warning("timeline sources skipped; PULSE_TIMELINE_BEARER_TOKEN is not set")
