"""
Logging event sink.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any


class LoggingEventSink:
    """Logs connector events using the standard logging module."""

    def __init__(self, logger: logging.Logger, level: int = logging.INFO) -> None:
        self._logger = logger
        self._level = level

    def on_event(self, event: Any) -> None:
        fields = dataclasses.asdict(event) if dataclasses.is_dataclass(event) else {}
        self._logger.log(
            self._level,
            type(event).__name__,
            extra={"event": event, "event_fields": fields},
        )
