from __future__ import annotations

import sqlite3
from typing import Protocol
from uuid import uuid4

from pulse.app.models.domain import Source, SourceKind
from pulse.app.repositories.common import utc_now_iso
from pulse.app.repositories.database import Database


class SourceDirectory(Protocol):
    def list_sources(self, *, kind: SourceKind | None = None) -> list[Source]:
        ...


class DuplicateSourceError(Exception):
    pass


class SourceRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add_source(self, *, display_name: str, kind: SourceKind, locator: str) -> Source:
        normalized_name = display_name.strip()
        normalized_locator = locator.strip()
        if not normalized_name:
            raise ValueError("display_name must not be empty")
        if not normalized_locator:
            raise ValueError("locator must not be empty")
        if kind is SourceKind.TIMELINE:
            normalized_locator = normalized_locator.lstrip("@")

        source = Source(
            source_id=f"src_{uuid4().hex}",
            display_name=normalized_name,
            kind=kind,
            locator=normalized_locator,
        )
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO sources (id, display_name, kind, locator, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        source.source_id,
                        source.display_name,
                        source.kind.value,
                        source.locator,
                        utc_now_iso(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateSourceError(
                f"source already subscribed kind={kind.value} locator={normalized_locator}"
            ) from exc
        return source

    def get_source(self, source_id: str) -> Source | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, display_name, kind, locator
                FROM sources
                WHERE id = ?
                """,
                (source_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_source(row)

    def list_sources(self, *, kind: SourceKind | None = None) -> list[Source]:
        query = "SELECT id, display_name, kind, locator FROM sources"
        params: tuple[str, ...] = ()
        if kind is not None:
            query += " WHERE kind = ?"
            params = (kind.value,)
        query += " ORDER BY created_at ASC, id ASC"
        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_source(row) for row in rows]

    def remove_source(self, source_id: str) -> Source | None:
        source = self.get_source(source_id)
        if source is None:
            return None
        with self._db.connection() as conn:
            conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
            # (kind, locator) is unique, so the watermark has no other owner.
            conn.execute("DELETE FROM watermarks WHERE source_key = ?", (source.source_key,))
        return source


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        source_id=str(row["id"]),
        display_name=str(row["display_name"]),
        kind=SourceKind(str(row["kind"])),
        locator=str(row["locator"]),
    )
