"""Error taxonomy of the billing engine.

Hard failures derive from :class:`BillingError` and carry the HTTP status used by
the API layer. Soft conditions never interrupt a request; they are collected as
:class:`Notice` objects and returned next to the result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional


class BillingError(Exception):
    status_code = 409
    code = "billing_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        detail.update(self.context)
        return detail


class InvalidTransition(BillingError):
    code = "invalid_transition"

    def __init__(self, current_state: str, requested_event: str, allowed: Iterable[str], subject: str = "task") -> None:
        allowed_events = sorted(allowed)
        super().__init__(
            f"Cannot apply '{requested_event}' to {subject} in state '{current_state}'",
            current_state=current_state,
            requested_event=requested_event,
            allowed_events=allowed_events,
        )
        self.current_state = current_state
        self.requested_event = requested_event
        self.allowed_events = allowed_events


class ConflictingTimer(BillingError):
    code = "conflicting_timer"

    def __init__(self, open_task_id: Optional[int], requested_task_id: Optional[int]) -> None:
        super().__init__(
            "Another timer interval is already open; switch or pause it first",
            open_task_id=open_task_id,
            requested_task_id=requested_task_id,
        )
        self.open_task_id = open_task_id


class ClockSkewExceeded(BillingError):
    code = "clock_skew_exceeded"


class RateRecordConflict(BillingError):
    code = "rate_record_conflict"


class ConcurrentUpdate(BillingError):
    code = "concurrent_update"


# Notice codes
NO_RATE_CONFIGURED = "no_rate_configured"
RETAINER_EXHAUSTED = "retainer_exhausted"
CLOCK_SKEW_CLAMPED = "clock_skew_clamped"


@dataclass(frozen=True)
class Notice:
    code: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


def notice_dicts(notices: Iterable[Notice]) -> List[Dict[str, Any]]:
    return [notice.as_dict() for notice in notices]
