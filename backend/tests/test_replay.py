from __future__ import annotations

import datetime as dt
from decimal import Decimal

from billtrack import retainers, services
from billtrack.models import MicroTask, TimerHead

from helpers import at, make_task


def test_replay_restores_corrupted_aggregates(session, state, identity) -> None:
    task = make_task(session, identity)
    other = make_task(session, identity, title="Review", hourly_rate=Decimal("80.00"))
    step = services.add_micro_task(session, identity, task.id, "Outline")
    services.start_timer(session, state, identity, task.id, at=at(0))
    services.start_micro_task(session, state, identity, step.id, at=at(0))
    services.start_break(session, state, identity, task.id, at=at(30))
    services.end_break(session, state, identity, task.id, at=at(45))
    services.complete_micro_task(session, state, identity, step.id, at=at(60))
    services.switch_timer(session, state, identity, task.id, other.id, at=at(90))
    services.pause_timer(session, state, identity, other.id, at=at(120))

    session.refresh(task)
    session.refresh(other)
    expected = {
        task.id: (task.actual_minutes, task.billable_minutes, Decimal(task.earnings)),
        other.id: (other.actual_minutes, other.billable_minutes, Decimal(other.earnings)),
    }
    assert expected[task.id] == (75, 75, Decimal("62.50"))
    assert expected[other.id] == (30, 30, Decimal("40.00"))

    task.actual_minutes = 999
    task.earnings = Decimal("1.00")
    session.get(MicroTask, step.id).actual_minutes = 0
    session.commit()

    report = services.replay(session, identity)
    assert report["events_replayed"] == 7
    assert report["drifted_task_ids"] == [task.id]
    assert report["open_task_id"] is None

    for current in (task, other):
        session.refresh(current)
        assert (current.actual_minutes, current.billable_minutes, Decimal(current.earnings)) == expected[current.id]
    assert session.get(MicroTask, step.id).actual_minutes == 45


def test_replay_keeps_retainer_share_from_ledger(session, state, identity) -> None:
    retainers.create_block(session, "acme", "globex", 60, Decimal("40.00"), dt.date(2024, 3, 1))
    task = make_task(session, identity, client_id="globex")
    services.start_timer(session, state, identity, task.id, at=at(0))
    services.pause_timer(session, state, identity, task.id, at=at(90))

    task.retainer_minutes = 0
    session.commit()
    report = services.replay(session, identity)
    session.refresh(task)
    assert task.retainer_minutes == 60
    assert report["drifted_task_ids"] == [task.id]


def test_replay_rebuilds_the_timer_head(session, state, identity) -> None:
    task = make_task(session, identity)
    services.start_timer(session, state, identity, task.id, at=at(0))
    head = session.get(TimerHead, identity.user_id)
    head.open_task_id = None
    head.open_event_id = None
    session.commit()

    report = services.replay(session, identity)
    assert report["open_task_id"] == task.id
    assert report["drifted_task_ids"] == []
    current = services.current_timer(session, identity, now=at(15))
    assert current["task_id"] == task.id
    assert current["elapsed_minutes"] == 15


def test_replay_endpoint(client, headers) -> None:
    created = client.post("/tasks", json={"title": "Write report", "hourly_rate": "50.00"}, headers=headers)
    assert created.status_code == 201
    response = client.post("/tasks/replay", headers=headers)
    assert response.status_code == 200
    assert response.json() == {
        "events_replayed": 0,
        "tasks_recomputed": 1,
        "drifted_task_ids": [],
        "open_task_id": None,
    }
