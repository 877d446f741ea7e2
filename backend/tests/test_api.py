from __future__ import annotations

import hashlib
from io import BytesIO

from fastapi.testclient import TestClient
from openpyxl import load_workbook

from billtrack import services
from billtrack.config import settings

from helpers import at, make_task


def _task(client: TestClient, headers, title="Write report", **extra) -> dict:
    payload = {"title": title, "hourly_rate": "50.00"}
    payload.update(extra)
    response = client.post("/tasks", json=payload, headers=headers)
    assert response.status_code == 201
    return response.json()


def test_requests_without_identity_are_rejected(client: TestClient):
    assert client.get("/healthz").status_code == 200
    assert client.get("/tasks").status_code == 401
    assert client.post("/timer/start", json={"task_id": 1}).status_code == 401


def test_task_crud(client: TestClient, headers):
    created = _task(client, headers, priority="high", project_id="apollo")
    assert created["status"] == "not_started"
    assert created["hourly_rate"] == "50.00"
    assert created["actual_hours"] == "0.00"

    updated = client.patch(f"/tasks/{created['id']}", json={"title": "Final report"}, headers=headers)
    assert updated.json()["title"] == "Final report"
    assert updated.json()["priority"] == "high"

    listed = client.get("/tasks", params={"status": "not_started"}, headers=headers)
    assert [task["id"] for task in listed.json()] == [created["id"]]
    assert client.get("/tasks", params={"status": "bogus"}, headers=headers).status_code == 400

    foreign = {**headers, settings.user_header: "bob"}
    assert client.patch(f"/tasks/{created['id']}", json={"title": "Mine"}, headers=foreign).status_code == 403

    assert client.delete(f"/tasks/{created['id']}", headers=headers).status_code == 204
    assert client.get(f"/tasks/{created['id']}", headers=headers).status_code == 404


def test_task_list_spans_the_organization(client: TestClient, headers):
    mine = _task(client, headers, title="Mine")
    colleague = {**headers, settings.user_header: "bob"}
    theirs = _task(client, colleague, title="Theirs")

    listed = client.get("/tasks", headers=headers).json()
    assert {task["id"] for task in listed} == {mine["id"], theirs["id"]}
    assert client.get(f"/tasks/{theirs['id']}", headers=headers).status_code == 200

    narrowed = client.get("/tasks", params={"user_id": "bob"}, headers=headers).json()
    assert [task["id"] for task in narrowed] == [theirs["id"]]

    elsewhere = {**headers, settings.org_header: "initech"}
    assert client.get("/tasks", headers=elsewhere).json() == []


def test_timer_lifecycle_over_http(client: TestClient, headers):
    task = _task(client, headers)
    started = client.post("/timer/start", json={"task_id": task["id"], "note": "Kickoff"}, headers=headers)
    assert started.status_code == 200
    body = started.json()
    assert body["task"]["status"] == "in_progress"
    assert body["event"]["kind"] == "start"
    assert body["event"]["timestamp"].endswith("+00:00")

    current = client.get("/timer/current", headers=headers)
    assert current.json()["running"] is True
    assert current.json()["task"]["id"] == task["id"]

    assert client.post("/timer/break/start", json={"task_id": task["id"]}, headers=headers).status_code == 200
    assert client.post("/timer/break/end", json={"task_id": task["id"]}, headers=headers).status_code == 200

    paused = client.post("/timer/pause", json={"task_id": task["id"], "reason": "Call"}, headers=headers)
    assert paused.json()["task"]["status"] == "paused"
    assert paused.json()["settlement"]["macro_task_id"] == task["id"]

    resumed = client.post("/timer/resume", json={"task_id": task["id"]}, headers=headers)
    assert resumed.json()["task"]["status"] == "in_progress"

    stopped = client.post("/timer/stop", json={"task_id": task["id"]}, headers=headers)
    assert stopped.json()["task"]["status"] == "completed"
    assert stopped.json()["task"]["billing_locked"] is True
    assert client.get("/timer/current", headers=headers).json()["running"] is False


def test_conflicting_timer_is_reported(client: TestClient, headers):
    first = _task(client, headers, title="Draft")
    second = _task(client, headers, title="Review")
    client.post("/timer/start", json={"task_id": first["id"]}, headers=headers)
    response = client.post("/timer/start", json={"task_id": second["id"]}, headers=headers)
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "conflicting_timer"
    assert detail["open_task_id"] == first["id"]


def test_invalid_transition_lists_allowed_events(client: TestClient, headers):
    task = _task(client, headers)
    response = client.post("/timer/pause", json={"task_id": task["id"]}, headers=headers)
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "invalid_transition"
    assert detail["current_state"] == "not_started"
    assert detail["allowed_events"] == ["cancel", "start"]


def test_switch_over_http(client: TestClient, headers):
    first = _task(client, headers, title="Draft")
    second = _task(client, headers, title="Review")
    client.post("/timer/start", json={"task_id": first["id"]}, headers=headers)
    response = client.post(
        "/timer/switch", json={"from_task_id": first["id"], "to_task_id": second["id"]}, headers=headers
    )
    assert response.status_code == 200
    body = response.json()
    assert body["event"]["kind"] == "switch_task"
    assert body["event"]["previous_task_id"] == first["id"]
    assert body["previous_task"]["status"] == "paused"
    assert body["task"]["status"] == "in_progress"

    same = client.post("/timer/switch", json={"from_task_id": second["id"], "to_task_id": second["id"]}, headers=headers)
    assert same.status_code == 422


def test_cancel_and_delete_while_running(client: TestClient, headers):
    task = _task(client, headers)
    client.post("/timer/start", json={"task_id": task["id"]}, headers=headers)
    assert client.delete(f"/tasks/{task['id']}", headers=headers).status_code == 409

    cancelled = client.post(f"/tasks/{task['id']}/cancel", json={"reason": "Dropped"}, headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["task"]["status"] == "cancelled"
    assert cancelled.json()["settlement"] is not None
    assert client.delete(f"/tasks/{task['id']}", headers=headers).status_code == 204


def test_micro_task_endpoints(client: TestClient, headers):
    task = _task(client, headers)
    first = client.post(f"/tasks/{task['id']}/micro-tasks", json={"title": "Outline"}, headers=headers).json()
    second = client.post(f"/tasks/{task['id']}/micro-tasks", json={"title": "Draft"}, headers=headers).json()
    assert (first["order_index"], second["order_index"]) == (0, 1)

    nxt = client.get(f"/tasks/{task['id']}/next-step", headers=headers).json()
    assert nxt["micro_task"]["id"] == first["id"]

    client.post("/timer/start", json={"task_id": task["id"]}, headers=headers)
    skipped = client.post(f"/micro-tasks/{second['id']}/start", headers=headers)
    assert skipped.status_code == 409
    assert skipped.json()["detail"]["error"] == "not_next_step"

    reordered = client.put(
        f"/tasks/{task['id']}/micro-tasks/order", json={"order": [second["id"], first["id"]]}, headers=headers
    )
    assert [micro["id"] for micro in reordered.json()["micro_tasks"]] == [second["id"], first["id"]]

    started = client.post(f"/micro-tasks/{second['id']}/start", headers=headers)
    assert started.status_code == 200
    assert started.json()["micro_task"]["status"] == "in_progress"
    completed = client.post(f"/micro-tasks/{second['id']}/complete", headers=headers)
    assert completed.json()["micro_task"]["status"] == "completed"

    assert client.delete(f"/micro-tasks/{first['id']}", headers=headers).status_code == 204
    assert client.get(f"/tasks/{task['id']}/next-step", headers=headers).json()["micro_task"] is None


def test_event_pages(client: TestClient, headers):
    task = _task(client, headers)
    for path in ("/timer/start", "/timer/pause", "/timer/resume"):
        client.post(path, json={"task_id": task["id"]}, headers=headers)

    first = client.get("/events", params={"limit": 2}, headers=headers).json()
    assert [event["sequence"] for event in first["events"]] == [1, 2]
    rest = client.get("/events", params={"limit": 2, "cursor": first["next_cursor"]}, headers=headers).json()
    assert [event["kind"] for event in rest["events"]] == ["resume"]
    assert client.get("/events", params={"cursor": "bm90LWEtY3Vyc29y"}, headers=headers).status_code == 400


def test_settings_roundtrip(client: TestClient, headers):
    current = client.get("/settings", headers=headers).json()
    assert current["idle_threshold_seconds"] == 300

    updated = client.put(
        "/settings", json={"idle_threshold_seconds": 120, "currency": "eur"}, headers=headers
    ).json()
    assert updated["idle_threshold_seconds"] == 120
    assert updated["currency"] == "EUR"

    rejected = client.put(
        "/settings", json={"idle_threshold_seconds": 900, "offline_threshold_seconds": 600}, headers=headers
    )
    assert rejected.status_code == 400


def test_xlsx_export_matches_checksum(client: TestClient, headers, session, state, identity):
    task = make_task(session, identity)
    services.start_timer(session, state, identity, task.id, at=at(0))
    services.pause_timer(session, state, identity, task.id, at=at(90))

    created = client.post(
        "/exports", json={"format": "xlsx", "range_start": "2024-03-04", "range_end": "2024-03-04"}, headers=headers
    )
    assert created.status_code == 201
    export = created.json()

    download = client.get(f"/exports/{export['id']}", headers=headers)
    assert download.status_code == 200
    assert hashlib.sha256(download.content).hexdigest() == export["checksum"]

    sheet = load_workbook(BytesIO(download.content)).active
    rows = list(sheet.iter_rows(values_only=True))
    assert rows[0][0] == "Task"
    assert rows[1][0] == "Write report"
    assert rows[1][3] == "1.50"
    assert rows[1][-1] == "75.00"
    assert rows[-1] == ("Total earnings", "75.00 USD") + (None,) * (len(rows[0]) - 2)


def test_pdf_export_and_foreign_access(client: TestClient, headers):
    created = client.post(
        "/exports", json={"format": "pdf", "range_start": "2024-03-01", "range_end": "2024-03-31"}, headers=headers
    )
    assert created.status_code == 201
    export_id = created.json()["id"]

    download = client.get(f"/exports/{export_id}", headers=headers)
    assert download.content.startswith(b"%PDF")

    foreign = {**headers, settings.user_header: "bob"}
    assert client.get(f"/exports/{export_id}", headers=foreign).status_code == 404

    invalid = client.post(
        "/exports", json={"format": "csv", "range_start": "2024-03-01", "range_end": "2024-03-31"}, headers=headers
    )
    assert invalid.status_code == 422
