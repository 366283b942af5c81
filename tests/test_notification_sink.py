from __future__ import annotations

from datetime import UTC, datetime, timedelta

from pulse.app.models.domain import Article, Category, Notification, Source, SourceKind
from pulse.app.repositories.database import Database
from pulse.app.repositories.notification_repository import NotificationRepository
from pulse.app.services.notification_sink import (
    NotificationBroadcaster,
    NotificationHistory,
    build_notification,
    notification_id_for,
)

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=UTC)
SOURCE = Source(source_id="src_1", display_name="Reuters", kind=SourceKind.FEED, locator="https://r/rss")


class _RecordingDelivery:
    def __init__(self) -> None:
        self.delivered: list[str] = []

    def deliver(self, notification: Notification) -> None:
        self.delivered.append(notification.notification_id)


def _article(external_id: str, *, minutes_ago: int = 0, is_breaking: bool = False) -> Article:
    return Article(
        external_id=external_id,
        title=f"Headline {external_id}",
        body=f"Body {external_id}",
        link=f"https://r/{external_id}",
        published_at=NOW - timedelta(minutes=minutes_ago),
        source_display_name="Reuters",
        is_breaking=is_breaking,
    )


def _history(database: Database, **kwargs: object) -> NotificationHistory:
    return NotificationHistory(
        NotificationRepository(database),
        clock=lambda: NOW,
        **kwargs,  # type: ignore[arg-type]
    )


def test_build_notification_derives_stable_id_and_category() -> None:
    notification = build_notification(SOURCE, _article("a1", is_breaking=True))

    assert notification.notification_id == notification_id_for("FEED:https://r/rss", "a1")
    assert notification.category == Category.BREAKING
    assert notification.message == "Body a1"
    assert notification.link == "https://r/a1"


def test_emit_is_idempotent_per_item(database: Database) -> None:
    history = _history(database)
    articles = [_article("a1"), _article("a2")]

    first = history.emit(SOURCE, articles)
    second = history.emit(SOURCE, articles)

    assert len(first) == 2
    assert second == []
    assert len(history.list_notifications()) == 2


def test_oldest_first_emission_leaves_newest_at_head(database: Database) -> None:
    history = _history(database)

    history.emit(SOURCE, [_article("old", minutes_ago=10), _article("new", minutes_ago=1)])

    assert [item.title for item in history.list_notifications()] == ["Headline new", "Headline old"]


def test_history_is_capped_and_evicts_oldest(database: Database) -> None:
    history = _history(database, cap=3)

    history.emit(SOURCE, [_article(f"a{index}") for index in range(5)])

    titles = [item.title for item in history.list_notifications()]
    assert titles == ["Headline a4", "Headline a3", "Headline a2"]


def test_only_recent_notifications_are_delivered(database: Database) -> None:
    delivery = _RecordingDelivery()
    history = _history(database, delivery=delivery, recent_window_seconds=3600)

    history.emit(SOURCE, [_article("stale", minutes_ago=120), _article("fresh", minutes_ago=5)])

    assert delivery.delivered == [notification_id_for(SOURCE.source_key, "fresh")]
    assert len(history.list_notifications()) == 2


def test_broadcaster_publishes_snapshots_and_survives_bad_listener(database: Database) -> None:
    broadcaster = NotificationBroadcaster()
    snapshots: list[list[Notification]] = []

    def broken_listener(_snapshot: list[Notification]) -> None:
        raise RuntimeError("listener bug")

    broadcaster.subscribe(broken_listener)
    unsubscribe = broadcaster.subscribe(snapshots.append)
    history = _history(database, broadcaster=broadcaster)

    history.emit(SOURCE, [_article("a1")])
    history.clear_all()
    unsubscribe()
    history.emit(SOURCE, [_article("a2")])

    assert [len(snapshot) for snapshot in snapshots] == [1, 0]
    assert broadcaster.subscriber_count == 1


def test_mutations(database: Database) -> None:
    history = _history(database)
    inserted = history.emit(SOURCE, [_article("a1"), _article("a2")])
    first_id = inserted[0].notification_id

    assert history.mark_read(first_id) is True
    assert history.toggle_saved(first_id) is True
    updated = history.get(first_id)
    assert updated is not None
    assert updated.is_read is True
    assert updated.is_saved is True

    assert history.toggle_saved(first_id) is True
    toggled_back = history.get(first_id)
    assert toggled_back is not None
    assert toggled_back.is_saved is False

    assert history.delete(first_id) is True
    assert history.delete(first_id) is False
    assert history.mark_read("missing") is False
    assert history.clear_all() == 1
    assert history.list_notifications() == []
