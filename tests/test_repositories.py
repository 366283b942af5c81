from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from pulse.app.models.domain import RetrySchedulerState, SourceKind, Watermark
from pulse.app.repositories.database import Database
from pulse.app.repositories.fanout_repository import FanoutRepository, StoredArticle
from pulse.app.repositories.poll_job_repository import (
    JOB_STATUS_RUNNING,
    JOB_STATUS_SCHEDULED,
    PollJobRepository,
)
from pulse.app.repositories.source_repository import DuplicateSourceError, SourceRepository
from pulse.app.repositories.watermark_repository import WatermarkRepository

T0 = datetime(2025, 1, 6, 12, 0, tzinfo=UTC)


def test_source_repository_add_list_and_reject_duplicates(database: Database) -> None:
    sources = SourceRepository(database)

    feed = sources.add_source(display_name=" Reuters ", kind=SourceKind.FEED, locator="https://r/rss")
    timeline = sources.add_source(display_name="Elon", kind=SourceKind.TIMELINE, locator="@elonmusk")

    assert feed.display_name == "Reuters"
    assert timeline.locator == "elonmusk"
    assert [source.source_id for source in sources.list_sources()] == [feed.source_id, timeline.source_id]
    assert sources.list_sources(kind=SourceKind.TIMELINE) == [timeline]

    with pytest.raises(DuplicateSourceError):
        sources.add_source(display_name="Other name", kind=SourceKind.FEED, locator="https://r/rss")
    with pytest.raises(ValueError):
        sources.add_source(display_name=" ", kind=SourceKind.FEED, locator="https://x/rss")


def test_removing_a_source_forgets_its_watermark(database: Database) -> None:
    sources = SourceRepository(database)
    watermarks = WatermarkRepository(database)
    feed = sources.add_source(display_name="Reuters", kind=SourceKind.FEED, locator="https://r/rss")
    watermarks.put(Watermark(source_key=feed.source_key, kind=SourceKind.FEED, cursor="1000"))

    removed = sources.remove_source(feed.source_id)

    assert removed == feed
    assert watermarks.get(feed.source_key) is None
    assert sources.remove_source(feed.source_id) is None


def test_feed_and_timeline_with_same_locator_keep_separate_watermarks(database: Database) -> None:
    sources = SourceRepository(database)
    watermarks = WatermarkRepository(database)
    feed = sources.add_source(display_name="Feed", kind=SourceKind.FEED, locator="newsdesk")
    timeline = sources.add_source(display_name="Desk", kind=SourceKind.TIMELINE, locator="newsdesk")
    watermarks.put(Watermark(source_key=feed.source_key, kind=SourceKind.FEED, cursor="1000"))
    watermarks.put(Watermark(source_key=timeline.source_key, kind=SourceKind.TIMELINE, cursor="55"))

    assert feed.source_key != timeline.source_key
    sources.remove_source(feed.source_id)

    assert watermarks.get(feed.source_key) is None
    assert watermarks.get(timeline.source_key) == Watermark(
        source_key=timeline.source_key, kind=SourceKind.TIMELINE, cursor="55"
    )


def test_watermark_repository_upserts(database: Database) -> None:
    watermarks = WatermarkRepository(database)

    watermarks.put(Watermark(source_key="elonmusk", kind=SourceKind.TIMELINE, cursor="10"))
    watermarks.put(Watermark(source_key="elonmusk", kind=SourceKind.TIMELINE, cursor="12"))

    assert watermarks.get("elonmusk") == Watermark(
        source_key="elonmusk", kind=SourceKind.TIMELINE, cursor="12"
    )
    watermarks.delete("elonmusk")
    assert watermarks.get("elonmusk") is None


def test_poll_job_repository_claim_and_rearm(database: Database) -> None:
    jobs = PollJobRepository(database)
    unit_id = jobs.replace_pending(
        job_name="pulse.poll",
        run_at=T0,
        state=RetrySchedulerState(attempt_count=1, base_interval_minutes=5),
    )

    assert jobs.claim_due(job_name="pulse.poll", now_utc=T0 - timedelta(seconds=1)) is None
    claimed = jobs.claim_due(job_name="pulse.poll", now_utc=T0)
    assert claimed is not None
    assert claimed.unit_id == unit_id
    assert claimed.status == JOB_STATUS_RUNNING
    assert claimed.state.attempt_count == 1
    assert jobs.claim_due(job_name="pulse.poll", now_utc=T0) is None

    successor = jobs.rearm(
        job_name="pulse.poll",
        expected_unit_id=unit_id,
        run_at=T0 + timedelta(minutes=2),
        state=RetrySchedulerState(attempt_count=2, base_interval_minutes=5),
        outcome="failed",
    )

    record = jobs.get_job("pulse.poll")
    assert successor is not None
    assert record is not None
    assert record.unit_id == successor
    assert record.status == JOB_STATUS_SCHEDULED
    assert record.run_at == T0 + timedelta(minutes=2)
    assert record.last_outcome == "failed"
    assert record.last_run_at is not None


def test_poll_job_repository_rearm_of_replaced_unit_is_dropped(database: Database) -> None:
    jobs = PollJobRepository(database)
    stale_unit = jobs.replace_pending(
        job_name="pulse.poll",
        run_at=T0,
        state=RetrySchedulerState(attempt_count=0, base_interval_minutes=5),
    )
    jobs.replace_pending(
        job_name="pulse.poll",
        run_at=T0,
        state=RetrySchedulerState(attempt_count=0, base_interval_minutes=20),
    )

    dropped = jobs.rearm(
        job_name="pulse.poll",
        expected_unit_id=stale_unit,
        run_at=T0,
        state=RetrySchedulerState(attempt_count=0, base_interval_minutes=5),
        outcome="succeeded",
    )

    record = jobs.get_job("pulse.poll")
    assert dropped is None
    assert record is not None
    assert record.state.base_interval_minutes == 20


def test_fanout_repository_subscriptions_tokens_and_articles(database: Database) -> None:
    repository = FanoutRepository(database)
    repository.add_subscription(user_id="u2", source_url="https://r/rss")
    repository.add_subscription(user_id="u1", source_url="https://r/rss")
    repository.add_subscription(user_id="u1", source_url="https://r/rss")
    repository.add_subscription(user_id="u1", source_url="elonmusk", kind=SourceKind.TIMELINE)
    repository.add_push_token(user_id="u1", token="device-b")
    repository.add_push_token(user_id="u1", token="device-a")

    assert repository.list_subscribed_feed_urls() == ["https://r/rss"]
    assert repository.list_subscriber_ids("https://r/rss") == ["u1", "u2"]
    assert repository.list_push_tokens("u1") == ["device-a", "device-b"]
    assert repository.list_push_tokens("u2") == []

    article = StoredArticle(
        article_id="abc",
        feed_url="https://r/rss",
        title="Headline",
        url="https://r/1",
        source_name="Reuters",
        content_snippet="Body",
        publish_timestamp=T0,
        is_breaking=False,
    )
    assert repository.article_exists("abc") is False
    assert repository.save_article(article) is True
    assert repository.save_article(article) is False
    assert repository.article_exists("abc") is True

    repository.append_user_notification(
        user_id="u1",
        article_id="abc",
        title="Headline",
        message="Body",
        source_name="Reuters",
    )
    records = repository.list_user_notifications("u1")
    assert [(record.article_id, record.is_read) for record in records] == [("abc", False)]
