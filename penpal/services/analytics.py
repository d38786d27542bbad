"""Analytics capability used by the quota ledger and feature services."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Mapping, Protocol

from logger import info_domain
from penpal.models import utcnow

QUOTA_CONSUMED = "quota_consumed"
QUOTA_BLOCKED = "quota_blocked"
QUOTA_LOCAL_FALLBACK = "quota_local_fallback"
SWIPE = "swipe"

_RESERVED_KEYS = {"module", "message", "stage"}


class Analytics(Protocol):
    def log(self, event: str, attrs: Mapping[str, Any]) -> None:
        ...


class LogAnalytics:
    """Writes events as domain milestones through the logging layer."""

    def __init__(self, module: str = "penpal.analytics") -> None:
        self._module = module

    def log(self, event: str, attrs: Mapping[str, Any]) -> None:
        context = {key: value for key, value in attrs.items() if key not in _RESERVED_KEYS}
        user_id = context.pop("user_id", None)
        info_domain(
            self._module,
            event,
            stage=event.upper(),
            user_id=str(user_id) if user_id is not None else None,
            **context,
        )


@dataclass(slots=True)
class RecordedEvent:
    event: str
    attrs: dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)


class BufferedAnalytics:
    """Keeps the most recent events in memory, optionally forwarding them."""

    def __init__(self, *, forward: Analytics | None = None, maxlen: int = 1000) -> None:
        self._forward = forward
        self._buffer: Deque[RecordedEvent] = deque(maxlen=maxlen)

    def log(self, event: str, attrs: Mapping[str, Any]) -> None:
        self._buffer.append(RecordedEvent(event=event, attrs=dict(attrs)))
        if self._forward is not None:
            self._forward.log(event, attrs)

    @property
    def events(self) -> list[RecordedEvent]:
        return list(self._buffer)

    def names(self) -> list[str]:
        return [item.event for item in self._buffer]


__all__ = [
    "Analytics",
    "BufferedAnalytics",
    "LogAnalytics",
    "RecordedEvent",
    "QUOTA_BLOCKED",
    "QUOTA_CONSUMED",
    "QUOTA_LOCAL_FALLBACK",
    "SWIPE",
]
