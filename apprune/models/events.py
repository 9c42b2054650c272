from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from apprune.models.enums import EventCategory, EventLevel


@dataclass(slots=True, frozen=True)
class ActivityEvent:
    level: EventLevel
    category: EventCategory
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventSink = Callable[[ActivityEvent], None]


def emit(
    sink: EventSink | None,
    level: EventLevel,
    category: EventCategory,
    message: str,
    /,
    **details: Any,
) -> None:
    if sink is None:
        return
    sink(ActivityEvent(level=level, category=category, message=message, details=details))
