from __future__ import annotations

from collections.abc import Mapping, Sequence

from pulse.app.models.domain import Article, Notification, Source, SourceKind
from pulse.app.repositories.database import Database
from pulse.app.repositories.notification_repository import NotificationRepository
from pulse.app.repositories.source_repository import SourceRepository
from pulse.app.repositories.watermark_repository import WatermarkRepository
from pulse.app.services.dedup_engine import DedupService
from pulse.app.services.feed_parser import FeedParser
from pulse.app.services.fetch_dispatcher import FetchDispatcher
from pulse.app.services.http_client import FetchError
from pulse.app.services.notification_sink import NotificationHistory
from pulse.app.services.poll_pass import PollPassService
from pulse.app.services.timeline_client import TimelineClient


def _feed(count: int) -> bytes:
    items = "".join(
        f"<item><title>Story {index}</title><link>https://r/{index}</link>"
        f"<pubDate>Mon, 06 Jan 2025 10:{index:02d}:00 GMT</pubDate></item>"
        for index in range(count)
    )
    return f"<rss><channel><title>Reuters</title>{items}</channel></rss>".encode()


class _FakeHttp:
    def __init__(self, bodies: Mapping[str, bytes]) -> None:
        self.bodies = dict(bodies)

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> bytes:
        _ = headers
        if url in self.bodies:
            return self.bodies[url]
        raise FetchError(f"HTTP 503 from {url}", status_code=503)


class _FailingHistory(NotificationHistory):
    def emit(self, source: Source, articles: Sequence[Article]) -> list[Notification]:
        _ = (source, articles)
        raise RuntimeError("disk full")


def _service(
    database: Database,
    http: _FakeHttp,
    *,
    history: NotificationHistory | None = None,
) -> PollPassService:
    return PollPassService(
        sources=SourceRepository(database),
        dispatcher=FetchDispatcher(
            http=http,
            feed_parser=FeedParser(),
            timeline_client=TimelineClient(http=http, bearer_token=None, base_url="https://api.test/2"),
        ),
        dedup=DedupService(WatermarkRepository(database)),
        history=history or NotificationHistory(NotificationRepository(database)),
    )


def test_first_pass_emits_five_then_only_new_items(database: Database) -> None:
    SourceRepository(database).add_source(
        display_name="Reuters", kind=SourceKind.FEED, locator="https://r.test/rss"
    )
    http = _FakeHttp({"https://r.test/rss": _feed(8)})
    service = _service(database, http)

    first = service.run_pass()
    second = service.run_pass()
    http.bodies["https://r.test/rss"] = _feed(10)
    third = service.run_pass()

    assert (first.new_items, first.inserted) == (5, 5)
    assert second.new_items == 0
    assert third.new_items == 2
    titles = [item.title for item in NotificationHistory(NotificationRepository(database)).list_notifications()]
    assert titles[:3] == ["Story 9", "Story 8", "Story 7"]
    assert len(titles) == 7


def test_failed_source_marks_pass_failed_but_others_deliver(database: Database) -> None:
    sources = SourceRepository(database)
    sources.add_source(display_name="Down", kind=SourceKind.FEED, locator="https://down.test/rss")
    sources.add_source(display_name="Reuters", kind=SourceKind.FEED, locator="https://r.test/rss")
    sources.add_source(display_name="Elon", kind=SourceKind.TIMELINE, locator="elonmusk")

    report = _service(database, _FakeHttp({"https://r.test/rss": _feed(2)})).run_pass()

    assert report.sources == 3
    assert report.failed == 1
    assert report.skipped == 1
    assert report.new_items == 2
    assert report.succeeded is False


def test_storage_failure_keeps_watermark_and_fails_pass(database: Database) -> None:
    source = SourceRepository(database).add_source(
        display_name="Reuters", kind=SourceKind.FEED, locator="https://r.test/rss"
    )
    http = _FakeHttp({"https://r.test/rss": _feed(2)})
    failing = _FailingHistory(NotificationRepository(database))

    report = _service(database, http, history=failing).run_pass()

    assert report.failed == 1
    assert WatermarkRepository(database).get(source.source_key) is None
    retry = _service(database, http).run_pass()
    assert retry.new_items == 2


def test_report_payload_includes_success_flag(database: Database) -> None:
    report = _service(database, _FakeHttp({})).run_pass()

    payload = report.to_payload()
    assert payload["sources"] == 0
    assert payload["succeeded"] is True
