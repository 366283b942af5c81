from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from pulse.app.dependencies import reset_cached_dependencies
from pulse.app.main import create_app
from pulse.app.repositories.database import Database


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.delenv("PULSE_TIMELINE_BEARER_TOKEN", raising=False)
    monkeypatch.delenv("PULSE_PUSH_GATEWAY_URL", raising=False)
    monkeypatch.setenv("PULSE_TELEMETRY_SINK", "none")


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def runtime_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("PULSE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("PULSE_SCHEDULER_ENABLED", "0")
    monkeypatch.setenv("PULSE_LOG_LEVEL", "WARNING")
    reset_cached_dependencies()
    yield data_dir
    reset_cached_dependencies()


@pytest.fixture
def client(runtime_env: Path) -> Iterator[TestClient]:
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

