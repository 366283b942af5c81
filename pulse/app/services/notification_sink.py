from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from hashlib import sha256
from threading import Lock
from typing import Protocol

from pulse.app.models.domain import Article, Notification, Source
from pulse.app.repositories.notification_repository import NotificationRepository
from pulse.app.services.categorizer import NotificationGroup, classify, group_by_category

LOGGER = logging.getLogger("pulse.notifications")

DEFAULT_HISTORY_CAP = 50
DEFAULT_RECENT_WINDOW_SECONDS = 3600

NotificationListener = Callable[[list[Notification]], None]


class NotificationDelivery(Protocol):
    def deliver(self, notification: Notification) -> None:
        ...


class LogNotificationDelivery:
    """Stands in for the platform notifier: records what would be shown."""

    def deliver(self, notification: Notification) -> None:
        LOGGER.info(
            "deliver notification id=%s source=%s category=%s breaking=%s",
            notification.notification_id,
            notification.source_name,
            notification.category.value,
            notification.is_breaking,
        )


class NotificationBroadcaster:
    def __init__(self) -> None:
        self._lock = Lock()
        self._listeners: list[NotificationListener] = []

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def publish(self, snapshot: list[Notification]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(list(snapshot))
            except Exception:
                LOGGER.warning("notification listener failed", exc_info=True)


def notification_id_for(source_key: str, external_id: str) -> str:
    return sha256(f"{source_key}{external_id}".encode()).hexdigest()


def build_notification(source: Source, article: Article) -> Notification:
    return Notification(
        notification_id=notification_id_for(source.source_key, article.external_id),
        title=article.title,
        message=article.body or article.title,
        source_name=article.source_display_name,
        timestamp=article.published_at,
        is_breaking=article.is_breaking,
        category=classify(article.source_display_name, article.is_breaking),
        link=article.link,
    )


class NotificationHistory:
    """Bounded newest-first notification history plus delivery hand-off.

    The lock only covers the store; delivery and broadcast run after it is
    released.
    """

    def __init__(
        self,
        repository: NotificationRepository,
        *,
        cap: int = DEFAULT_HISTORY_CAP,
        delivery: NotificationDelivery | None = None,
        broadcaster: NotificationBroadcaster | None = None,
        recent_window_seconds: int = DEFAULT_RECENT_WINDOW_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._cap = max(1, cap)
        self._delivery = delivery
        self._broadcaster = broadcaster if broadcaster is not None else NotificationBroadcaster()
        self._recent_window = timedelta(seconds=max(0, recent_window_seconds))
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = Lock()

    @property
    def broadcaster(self) -> NotificationBroadcaster:
        return self._broadcaster

    def emit(self, source: Source, articles: Sequence[Article]) -> list[Notification]:
        """Store ``articles`` (oldest-first) and deliver the recent ones.

        Returns the notifications that were actually inserted; ids already in
        the history are ignored.
        """
        if not articles:
            return []
        return self.add([build_notification(source, article) for article in articles])

    def add(self, notifications: Sequence[Notification]) -> list[Notification]:
        if not notifications:
            return []
        with self._lock:
            inserted = self._repository.insert_many(notifications, cap=self._cap)
            snapshot = self._repository.list_notifications() if inserted else []

        if not inserted:
            return []
        self._deliver_recent(inserted)
        self._broadcaster.publish(snapshot)
        return inserted

    def list_notifications(self, *, limit: int | None = None) -> list[Notification]:
        with self._lock:
            return self._repository.list_notifications(limit=limit)

    def get(self, notification_id: str) -> Notification | None:
        with self._lock:
            return self._repository.get_notification(notification_id)

    def grouped(self) -> list[NotificationGroup]:
        return group_by_category(self.list_notifications())

    def mark_read(self, notification_id: str) -> bool:
        return self._mutate(lambda: self._repository.mark_read(notification_id))

    def toggle_saved(self, notification_id: str) -> bool:
        return self._mutate(lambda: self._repository.toggle_saved(notification_id))

    def delete(self, notification_id: str) -> bool:
        return self._mutate(lambda: self._repository.delete(notification_id))

    def clear_all(self) -> int:
        with self._lock:
            removed = self._repository.clear_all()
        self._broadcaster.publish([])
        return removed

    def _mutate(self, operation: Callable[[], bool]) -> bool:
        with self._lock:
            changed = operation()
            snapshot = self._repository.list_notifications() if changed else []
        if changed:
            self._broadcaster.publish(snapshot)
        return changed

    def _deliver_recent(self, notifications: Sequence[Notification]) -> None:
        if self._delivery is None:
            return
        cutoff = self._clock() - self._recent_window
        for notification in notifications:
            if notification.timestamp < cutoff:
                LOGGER.debug(
                    "skip delivery of stale notification id=%s timestamp=%s",
                    notification.notification_id,
                    notification.timestamp.isoformat(),
                )
                continue
            try:
                self._delivery.deliver(notification)
            except Exception:
                LOGGER.warning(
                    "notification delivery failed id=%s",
                    notification.notification_id,
                    exc_info=True,
                )
