from __future__ import annotations

from threading import RLock
from typing import Any, Dict

from sqlalchemy.orm import Session

from .config import Settings
from .models import AppSetting

TUNABLE_KEYS = (
    "idle_threshold_seconds",
    "offline_threshold_seconds",
    "clock_skew_tolerance_ms",
    "currency",
)


class RuntimeState:
    """Mutable runtime configuration that can be adjusted at runtime."""

    def __init__(self, base_settings: Settings):
        self._lock = RLock()
        self.idle_threshold_seconds: int = max(1, int(base_settings.idle_threshold_seconds))
        self.offline_threshold_seconds: int = max(
            self.idle_threshold_seconds, int(base_settings.offline_threshold_seconds)
        )
        self.clock_skew_tolerance_ms: int = max(0, int(base_settings.clock_skew_tolerance_ms))
        self.currency: str = base_settings.currency
        self.append_retries: int = base_settings.append_retries

    @property
    def thresholds(self) -> tuple[int, int]:
        with self._lock:
            return self.idle_threshold_seconds, self.offline_threshold_seconds

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "idle_threshold_seconds": self.idle_threshold_seconds,
                "offline_threshold_seconds": self.offline_threshold_seconds,
                "clock_skew_tolerance_ms": self.clock_skew_tolerance_ms,
                "currency": self.currency,
            }

    def apply(self, updates: Dict[str, Any]) -> None:
        with self._lock:
            if updates.get("idle_threshold_seconds") is not None:
                self.idle_threshold_seconds = max(1, int(updates["idle_threshold_seconds"]))
            if updates.get("offline_threshold_seconds") is not None:
                self.offline_threshold_seconds = int(updates["offline_threshold_seconds"])
            # Offline can never come before idle.
            self.offline_threshold_seconds = max(self.offline_threshold_seconds, self.idle_threshold_seconds)
            if updates.get("clock_skew_tolerance_ms") is not None:
                self.clock_skew_tolerance_ms = max(0, int(updates["clock_skew_tolerance_ms"]))
            if updates.get("currency"):
                self.currency = str(updates["currency"]).strip().upper()

    def load_from_db(self, session: Session) -> None:
        records = session.query(AppSetting).filter(AppSetting.key.in_(TUNABLE_KEYS)).all()
        if not records:
            return
        decoded: Dict[str, Any] = {}
        for record in records:
            if record.key == "currency":
                decoded["currency"] = record.value
            elif record.value:
                decoded[record.key] = int(record.value)
        if decoded:
            self.apply(decoded)

    def persist(self, session: Session, updates: Dict[str, Any]) -> None:
        for key, value in updates.items():
            if key not in TUNABLE_KEYS or value is None:
                continue
            value = str(value)
            record = session.query(AppSetting).filter(AppSetting.key == key).one_or_none()
            if record:
                record.value = value
            else:
                session.add(AppSetting(key=key, value=value))
        session.commit()
