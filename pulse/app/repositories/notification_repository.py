from __future__ import annotations

import sqlite3
from collections.abc import Sequence

from pulse.app.models.domain import Category, Notification
from pulse.app.repositories.common import parse_iso_datetime, utc_now_iso
from pulse.app.repositories.database import Database


class NotificationRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def insert_many(self, notifications: Sequence[Notification], *, cap: int) -> list[Notification]:
        """Insert in the given order and trim the table to ``cap`` rows.

        Later elements end up nearer the head of the newest-first listing.
        Ids that already exist are skipped.
        """
        inserted: list[Notification] = []
        with self._db.connection() as conn:
            for notification in notifications:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO notifications
                    (id, title, message, source_name, link, timestamp,
                     is_read, is_saved, is_breaking, category, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        notification.notification_id,
                        notification.title,
                        notification.message,
                        notification.source_name,
                        notification.link,
                        notification.timestamp.isoformat(),
                        int(notification.is_read),
                        int(notification.is_saved),
                        int(notification.is_breaking),
                        notification.category.value,
                        utc_now_iso(),
                    ),
                )
                if cursor.rowcount > 0:
                    inserted.append(notification)

            conn.execute(
                """
                DELETE FROM notifications
                WHERE seq NOT IN (
                    SELECT seq FROM notifications ORDER BY seq DESC LIMIT ?
                )
                """,
                (max(0, cap),),
            )
        return inserted

    def list_notifications(self, *, limit: int | None = None) -> list[Notification]:
        query = """
            SELECT id, title, message, source_name, link, timestamp,
                   is_read, is_saved, is_breaking, category
            FROM notifications
            ORDER BY seq DESC
        """
        params: tuple[int, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (max(0, limit),)
        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_notification(row) for row in rows]

    def get_notification(self, notification_id: str) -> Notification | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, title, message, source_name, link, timestamp,
                       is_read, is_saved, is_breaking, category
                FROM notifications
                WHERE id = ?
                """,
                (notification_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_notification(row)

    def mark_read(self, notification_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ?",
                (notification_id,),
            )
        return cursor.rowcount > 0

    def toggle_saved(self, notification_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET is_saved = 1 - is_saved WHERE id = ?",
                (notification_id,),
            )
        return cursor.rowcount > 0

    def delete(self, notification_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
        return cursor.rowcount > 0

    def clear_all(self) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM notifications")
        return max(0, cursor.rowcount)


def _row_to_notification(row: sqlite3.Row) -> Notification:
    raw_category = str(row["category"])
    try:
        category = Category(raw_category)
    except ValueError:
        category = Category.OTHER
    link = row["link"]
    return Notification(
        notification_id=str(row["id"]),
        title=str(row["title"]),
        message=str(row["message"]),
        source_name=str(row["source_name"]),
        timestamp=parse_iso_datetime(str(row["timestamp"])),
        is_read=bool(row["is_read"]),
        is_saved=bool(row["is_saved"]),
        is_breaking=bool(row["is_breaking"]),
        category=category,
        link=str(link) if isinstance(link, str) and link else None,
    )
