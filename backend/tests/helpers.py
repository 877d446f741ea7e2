from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, List

from sqlalchemy.orm import Session

from billtrack import services
from billtrack.middleware import Identity
from billtrack.models import MacroTask, TimeLogEvent

T0 = dt.datetime(2024, 3, 4, 9, 0, tzinfo=dt.timezone.utc)


def at(minutes: float = 0, seconds: float = 0) -> dt.datetime:
    return T0 + dt.timedelta(minutes=minutes, seconds=seconds)


def make_task(session: Session, identity: Identity, title: str = "Write report", **kwargs: Any) -> MacroTask:
    kwargs.setdefault("hourly_rate", Decimal("50.00"))
    return services.create_task(session, identity, title, **kwargs)


def user_events(session: Session, user_id: str) -> List[TimeLogEvent]:
    return (
        session.query(TimeLogEvent)
        .filter(TimeLogEvent.user_id == user_id)
        .order_by(TimeLogEvent.sequence.asc())
        .all()
    )
