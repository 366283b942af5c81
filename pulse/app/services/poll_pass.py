from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from pulse.app.models.domain import Article
from pulse.app.repositories.source_repository import SourceDirectory
from pulse.app.services.dedup_engine import DedupService
from pulse.app.services.fetch_dispatcher import FetchDispatcher, OutcomeStatus, SourceOutcome
from pulse.app.services.notification_sink import NotificationHistory
from pulse.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("pulse.poll")


@dataclass(frozen=True)
class PollPassReport:
    run_id: str
    sources: int
    failed: int
    skipped: int
    malformed: int
    new_items: int
    inserted: int
    duration_ms: int

    @property
    def succeeded(self) -> bool:
        return self.failed == 0

    def to_payload(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "sources": self.sources,
            "failed": self.failed,
            "skipped": self.skipped,
            "malformed": self.malformed,
            "new_items": self.new_items,
            "inserted": self.inserted,
            "duration_ms": self.duration_ms,
            "succeeded": self.succeeded,
        }


class PollPassService:
    """One device-variant pass: fetch every source, dedup, store, deliver."""

    def __init__(
        self,
        *,
        sources: SourceDirectory,
        dispatcher: FetchDispatcher,
        dedup: DedupService,
        history: NotificationHistory,
        telemetry: TelemetryClient | None = None,
        max_workers: int = 1,
    ) -> None:
        self._sources = sources
        self._dispatcher = dispatcher
        self._dedup = dedup
        self._history = history
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._max_workers = max(1, max_workers)

    def run_pass(self) -> PollPassReport:
        run_id = uuid4().hex
        tokens = bind_contextvars(poll_run_id=run_id)
        started_at = time.perf_counter()
        try:
            sources = self._sources.list_sources()
            with self._telemetry.span("poll.pass", run_id=run_id, sources=len(sources)) as finish:
                fetched = self._dispatcher.fetch_all(sources, max_workers=self._max_workers)
                failed, new_items, inserted = self._store_all(fetched.outcomes)
                report = PollPassReport(
                    run_id=run_id,
                    sources=len(sources),
                    failed=failed,
                    skipped=fetched.count(OutcomeStatus.SKIPPED),
                    malformed=fetched.count(OutcomeStatus.MALFORMED),
                    new_items=new_items,
                    inserted=inserted,
                    duration_ms=int((time.perf_counter() - started_at) * 1000),
                )
                finish.update(report.to_payload())
            LOGGER.info(
                "poll pass finished sources=%s failed=%s skipped=%s malformed=%s new=%s inserted=%s",
                report.sources,
                report.failed,
                report.skipped,
                report.malformed,
                report.new_items,
                report.inserted,
            )
            return report
        finally:
            reset_contextvars(**tokens)

    def _store_all(self, outcomes: list[SourceOutcome]) -> tuple[int, int, int]:
        failed = 0
        new_items = 0
        inserted = 0
        for outcome in outcomes:
            if outcome.status == OutcomeStatus.FAILED:
                failed += 1
                continue
            if outcome.status != OutcomeStatus.OK:
                continue
            try:
                new_count, inserted_count = self._store_outcome(outcome)
            except Exception:
                # Watermark was not advanced; the items return next pass.
                failed += 1
                LOGGER.warning(
                    "storing new items failed source=%s",
                    outcome.source.locator,
                    exc_info=True,
                )
                continue
            new_items += new_count
            inserted += inserted_count
        return failed, new_items, inserted

    def _store_outcome(self, outcome: SourceOutcome) -> tuple[int, int]:
        inserted_total = 0

        def emit(new_articles: list[Article]) -> None:
            nonlocal inserted_total
            inserted_total = len(self._history.emit(outcome.source, new_articles))

        new_articles = self._dedup.process(outcome.source, outcome.articles, on_new=emit)
        return len(new_articles), inserted_total
