from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from kinesis_ingest.checkpoint.checkpoint_store import FileCheckpointStore
from kinesis_ingest.config.connector_config import ConnectorConfig
from kinesis_ingest.core.domain.errors import ConnectorError
from kinesis_ingest.core.events.event_bus import EventBus
from kinesis_ingest.core.events.sinks.file_recorder import FileRecorderSink
from kinesis_ingest.core.events.sinks.null_event_bus import NullEventBus
from kinesis_ingest.core.events.sinks.sink_logging import LoggingEventSink
from kinesis_ingest.runtime.prometheus_metrics import ConnectorMetrics
from kinesis_ingest.runtime.summary import print_checkpoint_summary, summarize_checkpoint
from kinesis_ingest.streaming.input_source import KinesisInputSource

LOGGER = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return json.loads(path.read_text(encoding="utf-8"))


def _build_event_bus(*, events_path: Path | None, metrics: ConnectorMetrics | None) -> EventBus:
    sinks: list[Any] = [LoggingEventSink(logging.getLogger("bus"), level=logging.DEBUG)]
    if events_path is not None:
        sinks.append(FileRecorderSink(events_path))
    if metrics is not None:
        sinks.append(metrics)
    return EventBus(sinks)


def _replay(cfg: ConnectorConfig, *, events_path: Path | None) -> int:
    """Recompute every persisted batch from the source and print counts."""
    metrics = ConnectorMetrics(stream_name=cfg.stream_name)
    event_bus = _build_event_bus(events_path=events_path, metrics=metrics)
    input_source: KinesisInputSource[bytes] = KinesisInputSource(cfg, event_bus=event_bus)

    LOGGER.info(
        "Replay starting",
        extra={"stream_name": cfg.stream_name, "checkpoint_dir": cfg.checkpoint_dir},
    )
    try:
        recovered = input_source.recover()
    except ConnectorError as exc:
        print(f"Replay failed: {exc}", file=sys.stderr)
        return 1
    finally:
        metrics.push_all(job=f"kinesis-ingest-replay-{cfg.app_name}")
        event_bus.close()

    print()
    print("Replay:")
    for batch in recovered:
        print(
            f"  - {batch.plan.time}: "
            f"{batch.plan.num_partitions} partitions | "
            f"{batch.num_records} records"
        )
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="kinesis-ingest",
        description="Inspect persisted batch plans and replay them from the stream",
    )

    parser.add_argument(
        "--checkpoint-dir",
        type=Path,
        help="Checkpoint directory to summarize (defaults to the config's).",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a connector JSON config.",
    )

    parser.add_argument(
        "--replay",
        action="store_true",
        help="Recompute every persisted batch from the source (requires --config).",
    )

    parser.add_argument(
        "--events-file",
        type=Path,
        default=None,
        help="Append connector events as JSON lines to this file.",
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    cfg: ConnectorConfig | None = None
    if args.config is not None:
        cfg = ConnectorConfig.from_json_obj(_load_json(args.config))

    checkpoint_dir: Path | None = args.checkpoint_dir
    if checkpoint_dir is None and cfg is not None and cfg.checkpoint_dir is not None:
        checkpoint_dir = Path(cfg.checkpoint_dir)

    if checkpoint_dir is None:
        print("Error: --checkpoint-dir or a config with checkpoint_dir is required.", file=sys.stderr)
        return 2

    if args.replay and cfg is None:
        print("Error: --replay requires --config.", file=sys.stderr)
        return 2

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    store = FileCheckpointStore(checkpoint_dir, event_bus=NullEventBus())
    try:
        plans = store.load_all()
    except ConnectorError as exc:
        print(f"Checkpoint unreadable: {exc}", file=sys.stderr)
        return 1

    print_checkpoint_summary(summarize_checkpoint(plans))

    if not args.replay or cfg is None:
        return 0

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    return _replay(
        cfg.model_copy(update={"checkpoint_dir": str(checkpoint_dir)}),
        events_path=args.events_file,
    )


if __name__ == "__main__":
    sys.exit(main())
