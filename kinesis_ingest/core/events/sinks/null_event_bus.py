"""
Event bus that drops every event.

Used where a component requires a bus but nothing observes it: tests and
the read-only checkpoint summary of the CLI.
"""
from __future__ import annotations

from typing import Any

from kinesis_ingest.core.events.event_bus import EventBus
from kinesis_ingest.core.events.event_sink import EventSink


class NullEventBus(EventBus):
    """EventBus without sinks; emit() returns immediately without locking."""

    def __init__(self) -> None:
        super().__init__(sinks=())

    def register(self, sink: EventSink) -> None:
        return

    def emit(self, event: Any) -> None:
        return
