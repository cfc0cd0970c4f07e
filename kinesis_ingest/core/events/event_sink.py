"""
Event sink interface.

Sinks consume connector events (block tracking, planning, checkpointing,
fetch retries, recovery progress).
"""
from __future__ import annotations

from typing import Any, Protocol


class EventSink(Protocol):
    def on_event(self, event: Any) -> None:
        """Consume a connector event."""
