from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from pulsewatch.api.pulse_routes import get_notifier, get_worker_invoker
from pulsewatch.connectors.worker.base import WorkerInvoker
from pulsewatch.database import _mask_url, db_url, get_session
from pulsewatch.main import app
from pulsewatch.models.event_models import EventType
from pulsewatch.orchestrator.notifications import emit, hub
from pulsewatch.orchestrator.pulse_store import playlist_slots
from pulsewatch.orchestrator.reaper import reap_stalled_pulses


class RecordingInvoker(WorkerInvoker):
    def __init__(self):
        self.payloads: List[Dict[str, Any]] = []
        self.closed = False

    async def invoke(self, payload: Dict[str, Any], invoke_url: Optional[str] = None) -> None:
        self.payloads.append(payload)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def invoker() -> RecordingInvoker:
    return RecordingInvoker()


@pytest.fixture
def client(engine, invoker, notifier):
    def override_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_worker_invoker] = lambda: invoker
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client, playlist_id: int, url: str = "example.com/pricing", user: str = "user-1"):
    return client.post(
        "/pulses",
        json={"url": url, "playlist_id": playlist_id},
        headers={"X-User-Id": user},
    )


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_debug_db_reports_the_live_backend(client, monkeypatch, engine):
    monkeypatch.setattr("pulsewatch.database.engine", engine)

    body = client.get("/debug/db").json()

    assert body["connected"] is True
    assert body["error"] is None
    assert body["backend"] == ("postgresql" if db_url.startswith("postgresql") else "sqlite")
    assert body["url"] == _mask_url(db_url)


def test_mask_url_hides_the_password():
    assert _mask_url("postgresql://u:pw@h:5432/db") == "postgresql://u:****@h:5432/db"
    assert _mask_url("sqlite:///./pulsewatch.db") == "sqlite:///./pulsewatch.db"


# ── Pulses ──


def test_create_pulse_accepts_and_dispatches_in_background(client, catalog, invoker, events):
    playlist = catalog.make_playlist(3)

    resp = _create(client, playlist.id, url="https://WWW.example.com/pricing")

    assert resp.status_code == 202
    body = resp.json()
    assert body["pulse_status"] == "pending"
    assert body["expected_slots"] == 3
    assert len(invoker.payloads) == 3
    assert {p["pulse_slug"] for p in invoker.payloads} == {body["slug"]}
    assert {p["account_id"] for p in invoker.payloads} == {"acct-1"}
    assert invoker.closed
    assert events[0].type == EventType.PULSE_CREATED


def test_create_pulse_error_mapping(client, catalog, invoker):
    playlist = catalog.make_playlist(1)

    assert _create(client, playlist.id, user="stranger").status_code == 403
    assert _create(client, playlist.id, url="unknown.example.org").status_code == 404
    assert _create(client, 9999).status_code == 404
    assert _create(client, playlist.id, url="ftp://example.com").status_code == 422
    assert client.post("/pulses", json={"url": "example.com", "playlist_id": 1}).status_code == 422
    assert invoker.payloads == []


def test_heartbeat_flow_to_completion(client, session, catalog):
    playlist = catalog.make_playlist(2)
    slot_1, slot_2 = [s.id for s in playlist_slots(session, playlist.id)]
    slug = _create(client, playlist.id).json()["slug"]

    first = client.post(f"/pulses/{slug}/heartbeats", json={"slot_id": slot_1, "lcp": 2000})
    assert first.status_code == 200
    assert first.json() == {"result": "accepted", "pulse_status": "in_progress"}

    again = client.post(f"/pulses/{slug}/heartbeats", json={"slot_id": slot_1, "lcp": 2000})
    assert again.status_code == 200
    assert again.json()["result"] == "duplicate"

    last = client.post(
        f"/pulses/{slug}/heartbeats", json={"slot_id": slot_2, "lcp": 2300, "cls": 0.04}
    )
    assert last.json()["pulse_status"] == "completed"

    view = client.get(f"/pulses/{slug}").json()
    assert view["pulse"]["status"] == "completed"
    assert view["url"] == "https://www.example.com/pricing"
    assert view["target"]["name"] == "Example Shop"
    assert sorted(hb["slot_id"] for hb in view["heartbeats"]) == [slot_1, slot_2]
    assert view["statistic"]["classification"] == "neutral"

    baseline = client.get(
        f"/targets/{catalog.target.id}/urls/{catalog.url.id}/baseline"
    ).json()
    assert baseline["status"] == "success"
    assert baseline["reference"] == {"lcp": 2300, "cls": 0.04}

    stats = client.get(f"/targets/{catalog.target.id}/urls/{catalog.url.id}/statistics").json()
    assert stats["count"] == 1


def test_heartbeat_rejections(client, session, catalog, notifier):
    playlist = catalog.make_playlist(2)
    other = catalog.make_playlist(1)
    slot = playlist_slots(session, playlist.id)[0].id
    foreign = playlist_slots(session, other.id)[0].id
    slug = _create(client, playlist.id).json()["slug"]

    assert client.post("/pulses/nope/heartbeats", json={"slot_id": slot}).status_code == 404
    assert client.post(f"/pulses/{slug}/heartbeats", json={"slot_id": foreign}).status_code == 422
    assert client.post(f"/pulses/{slug}/heartbeats", json={"lcp": 1}).status_code == 422

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    reap_stalled_pulses(session, now=later, timeout_seconds=900, notifier=notifier)

    late = client.post(f"/pulses/{slug}/heartbeats", json={"slot_id": slot, "lcp": 2000})
    assert late.status_code == 409

    view = client.get(f"/pulses/{slug}").json()
    assert view["pulse"]["status"] == "timed_out"
    assert view["heartbeats"] == []
    assert [h["slot_id"] for h in view["late_heartbeats"]] == [slot]
    assert view["statistic"] is None


def test_list_and_get_pulses(client, catalog):
    playlist = catalog.make_playlist(1)
    slugs = [_create(client, playlist.id).json()["slug"] for _ in range(3)]

    listing = client.get("/pulses", params={"start_row": 0, "end_row": 2}).json()
    assert listing["count"] == 3
    assert len(listing["rows"]) == 2

    filtered = client.get("/pulses", params={"url_id": catalog.url.id + 100}).json()
    assert filtered["count"] == 0

    assert client.get("/pulses", params={"sort": "nonsense"}).status_code == 400
    assert client.get(f"/pulses/{slugs[0]}").status_code == 200
    assert client.get("/pulses/unknown").status_code == 404


# ── Catalog ──


def test_target_and_url_lifecycle(client):
    created = client.post("/targets", json={"name": "Docs Site", "stage": 1, "provider": 1})
    assert created.status_code == 201
    target_id = created.json()["target"]["id"]
    assert created.json()["target"]["slug"] == "docs-site"

    url = client.post(f"/targets/{target_id}/urls", json={"url": "docs.example.com/start/"})
    assert url.status_code == 201
    assert url.json()["url"]["href"] == "https://docs.example.com/start/"
    assert client.post(f"/targets/{target_id}/urls", json={"url": "ftp://x"}).status_code == 422

    urls = client.get("/urls", params={"target_id": target_id}).json()
    assert [u["href"] for u in urls["urls"]] == ["https://docs.example.com/start/"]

    no_data = client.get(f"/targets/{target_id}/urls/{url.json()['url']['id']}/baseline")
    assert no_data.json()["status"] == "no_data"

    assert client.delete(f"/targets/{target_id}").status_code == 204
    assert client.delete(f"/targets/{target_id}").status_code == 404
    assert target_id not in [t["id"] for t in client.get("/targets").json()["targets"]]
    assert client.get("/urls", params={"target_id": target_id}).json()["count"] == 0
    assert client.post(f"/targets/{target_id}/urls", json={"url": "a.example.com"}).status_code == 404


def test_duplicate_target_names_get_suffixed_slugs(client):
    first = client.post("/targets", json={"name": "Docs Site", "stage": 1, "provider": 1})
    second = client.post("/targets", json={"name": "Docs Site", "stage": 1, "provider": 1})

    assert second.status_code == 201
    assert first.json()["target"]["slug"] == "docs-site"
    assert second.json()["target"]["slug"] == "docs-site-2"

    taken = client.post(
        "/targets", json={"name": "Other", "stage": 1, "provider": 1, "slug": "docs-site"}
    )
    assert taken.status_code == 409


# ── Projects ──


def test_project_and_schedule_routes(client, catalog):
    playlist = catalog.make_playlist(1)
    created = client.post("/projects", json={"name": "Checkout"})
    assert created.status_code == 201
    project_id = created.json()["project"]["id"]

    schedule = client.post(
        f"/projects/{project_id}/schedules",
        json={
            "url_id": catalog.url.id,
            "playlist_id": playlist.id,
            "user_id": "user-1",
            "interval_seconds": 3600,
        },
    )
    assert schedule.status_code == 201
    schedule_id = schedule.json()["schedule"]["id"]
    assert schedule.json()["schedule"]["target_id"] == catalog.target.id

    bad = {"url_id": catalog.url.id, "playlist_id": playlist.id, "user_id": "user-1"}
    assert client.post(
        f"/projects/{project_id}/schedules", json={**bad, "interval_seconds": 0}
    ).status_code == 422
    assert client.post(
        f"/projects/{project_id}/schedules", json={**bad, "url_id": 9999, "interval_seconds": 60}
    ).status_code == 404
    assert client.post(
        "/projects/9999/schedules", json={**bad, "interval_seconds": 60}
    ).status_code == 404

    patched = client.patch(f"/schedules/{schedule_id}", json={"active": False})
    assert patched.json()["schedule"]["active"] is False
    assert client.patch("/schedules/9999", json={"active": True}).status_code == 404

    detail = client.get(f"/projects/{project_id}").json()["project"]
    assert [s["id"] for s in detail["schedules"]] == [schedule_id]

    renamed = client.patch(f"/projects/{project_id}", json={"description": "nightly"})
    assert renamed.json()["project"]["description"] == "nightly"
    assert renamed.json()["project"]["name"] == "Checkout"

    listing = client.get("/projects").json()
    assert listing["count"] == 1

    assert client.delete(f"/schedules/{schedule_id}").status_code == 204
    assert client.delete(f"/projects/{project_id}").status_code == 204
    assert client.get(f"/projects/{project_id}").status_code == 404
    assert client.get("/projects").json()["count"] == 0


# ── Real-time ──


def test_websocket_streams_published_events(client):
    with client.websocket_connect("/ws/pulses") as ws:
        emit(hub, EventType.PULSE_COMPLETED, "abc", "completed")
        message = ws.receive_json()

    assert message["type"] == "pulse_completed"
    assert message["slug"] == "abc"
    assert message["status"] == "completed"
