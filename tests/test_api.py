from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi.testclient import TestClient

from pulse.app.dependencies import get_notification_history
from pulse.app.models.domain import Category, Notification


def _seed_notifications() -> list[Notification]:
    now = datetime.now(UTC)
    notifications = [
        Notification(
            notification_id="n_news",
            title="Markets calm",
            message="Quiet day",
            source_name="Reuters",
            timestamp=now - timedelta(minutes=2),
            category=Category.NEWS,
            link="https://r/1",
        ),
        Notification(
            notification_id="n_breaking",
            title="BREAKING: rates cut",
            message="Central bank moves",
            source_name="Reuters",
            timestamp=now - timedelta(minutes=1),
            is_breaking=True,
            category=Category.BREAKING,
        ),
    ]
    return get_notification_history().add(notifications)


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_sources_crud(client: TestClient) -> None:
    created = client.post(
        "/sources",
        json={"display_name": "Reuters", "kind": "FEED", "locator": "https://r.test/rss"},
    )
    assert created.status_code == 201
    source_id = created.json()["id"]

    duplicate = client.post(
        "/sources",
        json={"display_name": "Reuters again", "kind": "FEED", "locator": "https://r.test/rss"},
    )
    assert duplicate.status_code == 409

    timeline = client.post(
        "/sources",
        json={"display_name": "Elon", "kind": "TIMELINE", "locator": "@elonmusk"},
    )
    assert timeline.status_code == 201
    assert timeline.json()["locator"] == "elonmusk"

    listed = client.get("/sources")
    assert [item["id"] for item in listed.json()] == [source_id, timeline.json()["id"]]

    removed = client.delete(f"/sources/{source_id}")
    assert removed.status_code == 200
    assert client.delete(f"/sources/{source_id}").status_code == 404


def test_feed_source_requires_http_url(client: TestClient) -> None:
    response = client.post(
        "/sources",
        json={"display_name": "Bad", "kind": "FEED", "locator": "ftp://r.test/rss"},
    )

    assert response.status_code == 422


def test_notifications_list_and_mutations(client: TestClient) -> None:
    _seed_notifications()

    listing = client.get("/notifications").json()
    assert listing["count"] == 2
    assert listing["unread_count"] == 2
    assert [item["id"] for item in listing["items"]] == ["n_breaking", "n_news"]

    read = client.post("/notifications/n_news/read")
    assert read.status_code == 200
    assert read.json()["notification"]["is_read"] is True

    saved = client.post("/notifications/n_breaking/save")
    assert saved.json()["notification"]["is_saved"] is True

    groups = client.get("/notifications/categories").json()
    assert [group["key"] for group in groups] == ["breaking", "news", "saved"]

    assert client.post("/notifications/missing/read").status_code == 404
    assert client.delete("/notifications/n_news").json() == {"ok": True, "notification": None}
    assert client.delete("/notifications").json() == {"removed": 1}
    assert client.get("/notifications").json()["count"] == 0


def test_notifications_limit(client: TestClient) -> None:
    _seed_notifications()

    listing = client.get("/notifications", params={"limit": 1}).json()

    assert [item["id"] for item in listing["items"]] == ["n_breaking"]
    assert client.get("/notifications", params={"limit": 0}).status_code == 422


def test_scheduler_start_status_stop(client: TestClient) -> None:
    assert client.get("/scheduler/status").json()["state"] == "stopped"

    started = client.post("/scheduler/start", json={"interval_minutes": 15})
    assert started.status_code == 200
    body = started.json()
    assert body["state"] == "idle"
    assert body["base_interval_minutes"] == 15
    assert body["runner_active"] is False

    assert client.post("/scheduler/start", json={"interval_minutes": 0}).status_code == 422

    stopped = client.post("/scheduler/stop")
    assert stopped.json()["state"] == "stopped"


def test_scheduler_start_without_body_uses_default_interval(client: TestClient) -> None:
    response = client.post("/scheduler/start")

    assert response.status_code == 200
    assert response.json()["base_interval_minutes"] == 5


def test_scheduler_trigger_with_no_sources(client: TestClient) -> None:
    response = client.post("/scheduler/trigger")

    assert response.status_code == 200
    body = response.json()
    assert body["sources"] == 0
    assert body["succeeded"] is True
    assert client.get("/scheduler/status").json()["state"] == "stopped"


def test_fanout_run_with_no_subscriptions(client: TestClient) -> None:
    response = client.post("/fanout/run")

    assert response.status_code == 200
    assert response.json()["sources"] == 0
