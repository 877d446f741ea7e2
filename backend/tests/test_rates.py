from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest
from fastapi import HTTPException

from billtrack import rates
from billtrack.errors import NO_RATE_CONFIGURED, RateRecordConflict

from helpers import T0, at

JAN_1 = dt.date(2024, 1, 1)


def _seed(session) -> None:
    rates.assign_rate(session, "acme", "admin", rates.USER_DEFAULT, Decimal("40.00"), JAN_1, user_id="alice")
    rates.assign_rate(session, "acme", "admin", rates.CLIENT_DEFAULT, Decimal("60.00"), JAN_1, client_id="globex")
    rates.assign_rate(session, "acme", "admin", rates.PROJECT_OVERRIDE, Decimal("90.00"), JAN_1, project_id="apollo")
    rates.assign_rate(
        session, "acme", "admin", rates.PROJECT_OVERRIDE, Decimal("100.00"), JAN_1, user_id="alice", project_id="apollo"
    )


@pytest.mark.parametrize(
    "user_id,project_id,client_id,expected,source",
    [
        ("alice", "apollo", "globex", Decimal("100.00"), rates.PROJECT_OVERRIDE),
        ("bob", "apollo", "globex", Decimal("90.00"), rates.PROJECT_OVERRIDE),
        ("alice", None, "globex", Decimal("60.00"), rates.CLIENT_DEFAULT),
        ("alice", "hermes", None, Decimal("40.00"), rates.USER_DEFAULT),
    ],
)
def test_precedence_tiers(session, user_id, project_id, client_id, expected, source) -> None:
    _seed(session)
    resolution = rates.resolve(session, "acme", user_id, project_id, client_id, T0)
    assert resolution.hourly_rate == expected
    assert resolution.source == source
    assert resolution.notices == ()


def test_task_override_beats_every_record(session) -> None:
    _seed(session)
    resolution = rates.resolve(session, "acme", "alice", "apollo", "globex", T0, Decimal("70.00"))
    assert resolution.hourly_rate == Decimal("70.00")
    assert resolution.source == rates.TASK_OVERRIDE


def test_missing_rate_resolves_to_zero_with_notice(session) -> None:
    _seed(session)
    resolution = rates.resolve(session, "acme", "carol", None, None, T0)
    assert resolution.hourly_rate == Decimal("0.00")
    assert resolution.source == rates.NO_RATE
    assert [notice.code for notice in resolution.notices] == [NO_RATE_CONFIGURED]


def test_records_of_other_orgs_are_ignored(session) -> None:
    rates.assign_rate(session, "initech", "admin", rates.USER_DEFAULT, Decimal("99.00"), JAN_1, user_id="alice")
    assert rates.resolve(session, "acme", "alice", None, None, T0).source == rates.NO_RATE


def test_new_rate_closes_the_previous_record(session) -> None:
    first = rates.assign_rate(session, "acme", "admin", rates.USER_DEFAULT, Decimal("40.00"), JAN_1, user_id="alice")
    rates.assign_rate(session, "acme", "admin", rates.USER_DEFAULT, Decimal("45.00"), dt.date(2024, 3, 1), user_id="alice")
    session.refresh(first)
    assert first.end_date == dt.date(2024, 2, 29)

    before = dt.datetime(2024, 2, 15, 12, 0, tzinfo=dt.timezone.utc)
    assert rates.resolve(session, "acme", "alice", None, None, before).hourly_rate == Decimal("40.00")
    assert rates.resolve(session, "acme", "alice", None, None, at(0)).hourly_rate == Decimal("45.00")
    active = rates.list_rates(session, "acme", rate_type=rates.USER_DEFAULT, active_only=True)
    assert [record.hourly_rate for record in active] == [Decimal("45.00")]


def test_backdated_rate_conflicts_with_active_record(session) -> None:
    rates.assign_rate(session, "acme", "admin", rates.USER_DEFAULT, Decimal("40.00"), dt.date(2024, 3, 1), user_id="alice")
    with pytest.raises(RateRecordConflict):
        rates.assign_rate(session, "acme", "admin", rates.USER_DEFAULT, Decimal("50.00"), dt.date(2024, 3, 1), user_id="alice")
    with pytest.raises(RateRecordConflict):
        rates.assign_rate(session, "acme", "admin", rates.USER_DEFAULT, Decimal("50.00"), JAN_1, user_id="alice")


def test_rate_subject_must_match_type(session) -> None:
    with pytest.raises(HTTPException) as excinfo:
        rates.assign_rate(session, "acme", "admin", rates.CLIENT_DEFAULT, Decimal("60.00"), JAN_1, user_id="alice")
    assert excinfo.value.status_code == 400


def test_rate_endpoints_roundtrip(client, headers) -> None:
    created = client.post(
        "/rates",
        json={"rate_type": "user_default", "user_id": "alice", "hourly_rate": "55.00", "effective_date": "2024-01-01"},
        headers=headers,
    )
    assert created.status_code == 201
    assert created.json()["hourly_rate"] == "55.00"

    resolved = client.get("/rates/resolve", params={"at": "2024-03-04T09:00:00+00:00"}, headers=headers)
    assert resolved.status_code == 200
    assert resolved.json()["source"] == "user_default"
    assert resolved.json()["record_id"] == created.json()["id"]

    conflict = client.post(
        "/rates",
        json={"rate_type": "user_default", "user_id": "alice", "hourly_rate": "60.00", "effective_date": "2023-12-01"},
        headers=headers,
    )
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["error"] == "rate_record_conflict"
