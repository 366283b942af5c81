from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from pulse.app.models.domain import SourceKind
from pulse.app.repositories.common import utc_now_iso
from pulse.app.repositories.database import Database


@dataclass(frozen=True)
class StoredArticle:
    article_id: str
    feed_url: str
    title: str
    url: str
    source_name: str
    content_snippet: str
    publish_timestamp: datetime
    is_breaking: bool


@dataclass(frozen=True)
class UserNotificationRecord:
    record_id: str
    user_id: str
    article_id: str
    title: str
    message: str
    source_name: str
    timestamp: str
    is_read: bool


class FanoutRepository:
    """Shared store for the server variant.

    The article table is only used as a content-addressed existence check plus
    append; subscriptions and push tokens are owned by the account collaborator
    and are read-only here apart from the seeding helpers.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def article_exists(self, article_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM fanout_articles WHERE id = ? LIMIT 1",
                (article_id,),
            ).fetchone()
        return row is not None

    def save_article(self, article: StoredArticle) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO fanout_articles
                (id, feed_url, title, url, source_name, content_snippet,
                 publish_timestamp, fetched_timestamp, is_breaking)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    article.article_id,
                    article.feed_url,
                    article.title,
                    article.url,
                    article.source_name,
                    article.content_snippet,
                    article.publish_timestamp.isoformat(),
                    utc_now_iso(),
                    int(article.is_breaking),
                ),
            )
        return cursor.rowcount > 0

    def list_subscribed_feed_urls(self) -> list[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT source_url
                FROM fanout_subscriptions
                WHERE kind = ?
                ORDER BY source_url ASC
                """,
                (SourceKind.FEED.value,),
            ).fetchall()
        return [str(row["source_url"]) for row in rows]

    def list_subscriber_ids(self, source_url: str) -> list[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT user_id
                FROM fanout_subscriptions
                WHERE source_url = ?
                ORDER BY user_id ASC
                """,
                (source_url,),
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def list_push_tokens(self, user_id: str) -> list[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT token FROM fanout_push_tokens WHERE user_id = ? ORDER BY token ASC",
                (user_id,),
            ).fetchall()
        return [str(row["token"]) for row in rows]

    def append_user_notification(
        self,
        *,
        user_id: str,
        article_id: str,
        title: str,
        message: str,
        source_name: str,
    ) -> str:
        record_id = f"unot_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO fanout_user_notifications
                (id, user_id, article_id, title, message, source_name, timestamp, is_read)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (record_id, user_id, article_id, title, message, source_name, utc_now_iso()),
            )
        return record_id

    def list_user_notifications(self, user_id: str) -> list[UserNotificationRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, article_id, title, message, source_name, timestamp, is_read
                FROM fanout_user_notifications
                WHERE user_id = ?
                ORDER BY timestamp DESC, id ASC
                """,
                (user_id,),
            ).fetchall()
        return [
            UserNotificationRecord(
                record_id=str(row["id"]),
                user_id=str(row["user_id"]),
                article_id=str(row["article_id"]),
                title=str(row["title"]),
                message=str(row["message"]),
                source_name=str(row["source_name"]),
                timestamp=str(row["timestamp"]),
                is_read=bool(row["is_read"]),
            )
            for row in rows
        ]

    def add_subscription(
        self,
        *,
        user_id: str,
        source_url: str,
        kind: SourceKind = SourceKind.FEED,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO fanout_subscriptions (user_id, source_url, kind, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, source_url, kind.value, utc_now_iso()),
            )

    def add_push_token(self, *, user_id: str, token: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO fanout_push_tokens (user_id, token, created_at)
                VALUES (?, ?, ?)
                """,
                (user_id, token, utc_now_iso()),
            )
