from __future__ import annotations

from threading import Lock
from typing import Protocol

from pulse.app.models.domain import SourceKind, Watermark
from pulse.app.repositories.common import utc_now_iso
from pulse.app.repositories.database import Database


class WatermarkStore(Protocol):
    def get(self, source_key: str) -> Watermark | None:
        ...

    def put(self, watermark: Watermark) -> None:
        ...

    def delete(self, source_key: str) -> None:
        ...


class WatermarkRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, source_key: str) -> Watermark | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT source_key, kind, cursor_value
                FROM watermarks
                WHERE source_key = ?
                """,
                (source_key,),
            ).fetchone()

        if row is None:
            return None
        return Watermark(
            source_key=str(row["source_key"]),
            kind=SourceKind(str(row["kind"])),
            cursor=str(row["cursor_value"]),
        )

    def put(self, watermark: Watermark) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO watermarks (source_key, kind, cursor_value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(source_key) DO UPDATE SET
                    kind = excluded.kind,
                    cursor_value = excluded.cursor_value,
                    updated_at = excluded.updated_at
                """,
                (
                    watermark.source_key,
                    watermark.kind.value,
                    watermark.cursor,
                    utc_now_iso(),
                ),
            )

    def delete(self, source_key: str) -> None:
        with self._db.connection() as conn:
            conn.execute("DELETE FROM watermarks WHERE source_key = ?", (source_key,))


class InMemoryWatermarkStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._rows: dict[str, Watermark] = {}

    def get(self, source_key: str) -> Watermark | None:
        with self._lock:
            return self._rows.get(source_key)

    def put(self, watermark: Watermark) -> None:
        with self._lock:
            self._rows[watermark.source_key] = watermark

    def delete(self, source_key: str) -> None:
        with self._lock:
            self._rows.pop(source_key, None)
