from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    kind TEXT NOT NULL,
    locator TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (kind, locator)
);

CREATE TABLE IF NOT EXISTS watermarks (
    source_key TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    cursor_value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    source_name TEXT NOT NULL,
    link TEXT NULL,
    timestamp TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_saved INTEGER NOT NULL DEFAULT 0,
    is_breaking INTEGER NOT NULL DEFAULT 0,
    category TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS poll_jobs (
    job_name TEXT PRIMARY KEY,
    unit_id TEXT NOT NULL,
    run_at TEXT NOT NULL,
    state_json TEXT NOT NULL,
    status TEXT NOT NULL,
    last_outcome TEXT NULL,
    last_run_at TEXT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fanout_articles (
    id TEXT PRIMARY KEY,
    feed_url TEXT NOT NULL,
    title TEXT NOT NULL,
    url TEXT NOT NULL,
    source_name TEXT NOT NULL,
    content_snippet TEXT NOT NULL,
    publish_timestamp TEXT NOT NULL,
    fetched_timestamp TEXT NOT NULL,
    is_breaking INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS fanout_subscriptions (
    user_id TEXT NOT NULL,
    source_url TEXT NOT NULL,
    kind TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (user_id, source_url)
);

CREATE INDEX IF NOT EXISTS idx_fanout_subscriptions_source_url
ON fanout_subscriptions(source_url);

CREATE TABLE IF NOT EXISTS fanout_push_tokens (
    user_id TEXT NOT NULL,
    token TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (user_id, token)
);

CREATE TABLE IF NOT EXISTS fanout_user_notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    article_id TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    source_name TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY(article_id) REFERENCES fanout_articles(id)
);

CREATE INDEX IF NOT EXISTS idx_fanout_user_notifications_user
ON fanout_user_notifications(user_id, timestamp DESC);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)
