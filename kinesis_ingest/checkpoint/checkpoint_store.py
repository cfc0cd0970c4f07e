"""
Durable, append-only store of batch plans.

Layout: one JSON record per batch time under the checkpoint directory::

    <checkpoint_dir>/batch-<time, zero padded>.json

Together the records form a time-ordered append log. A record is written to
a temporary file in the same directory, fsynced, atomically renamed into
place, and the directory is fsynced, so a crash mid-write leaves either no
record or a complete one. Readers skip temporary files.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from kinesis_ingest.core.domain.errors import CheckpointConflict, CheckpointCorrupt
from kinesis_ingest.core.domain.types import BatchPlan
from kinesis_ingest.core.events.events import CheckpointPersistedEvent

if TYPE_CHECKING:
    from kinesis_ingest.core.events.event_bus import EventBus

LOGGER = logging.getLogger(__name__)

_RECORD_PATTERN = re.compile(r"^batch-(\d{20})\.json$")
_TMP_PREFIX = ".tmp-"


class FileCheckpointStore:
    """Checkpoint store backed by a local (or mounted) directory.

    Writes are serialized against reads with a lock, and each record is
    written exactly once per batch time.
    """

    def __init__(self, directory: str | Path, *, event_bus: EventBus) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._event_bus = event_bus
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def persist(self, plan: BatchPlan) -> Path:
        """Durably write ``plan``; return the record path.

        Persisting an identical plan again is a no-op. A different plan for
        an already persisted time raises CheckpointConflict.
        """
        path = self._path_for(plan.time)

        with self._lock:
            if path.exists():
                existing = self._read(path)
                if existing != plan:
                    raise CheckpointConflict(
                        f"Batch {plan.time} already checkpointed with a different plan"
                    )
                return path

            payload = plan.to_checkpoint_json().encode("utf-8")
            self._atomic_write(path, payload)

        LOGGER.info(
            "Checkpoint persisted",
            extra={"time": plan.time, "partitions": plan.num_partitions, "path": str(path)},
        )
        self._event_bus.emit(CheckpointPersistedEvent(time=plan.time, path=str(path)))
        return path

    def _atomic_write(self, path: Path, payload: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=self._dir)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        self._fsync_dir()

    def _fsync_dir(self) -> None:
        if os.name != "posix":
            return
        dir_fd = os.open(self._dir, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def is_present(self, time: int) -> bool:
        """Return True if a plan for ``time`` has been persisted."""
        return self._path_for(time).exists()

    def times(self) -> list[int]:
        """Return the persisted batch times in ascending order."""
        found: list[int] = []
        for entry in self._dir.iterdir():
            match = _RECORD_PATTERN.match(entry.name)
            if match:
                found.append(int(match.group(1)))
        return sorted(found)

    def load(self, time: int) -> BatchPlan:
        path = self._path_for(time)
        with self._lock:
            if not path.exists():
                raise KeyError(f"No checkpoint for batch {time}")
            return self._read(path)

    def load_all(self) -> list[BatchPlan]:
        """Reconstruct every persisted plan, ordered by time.

        Any unreadable record aborts the load with CheckpointCorrupt.
        """
        with self._lock:
            plans = [self._read(self._path_for(time)) for time in self.times()]

        LOGGER.info("Checkpoints loaded", extra={"count": len(plans), "directory": str(self._dir)})
        return plans

    def _read(self, path: Path) -> BatchPlan:
        try:
            obj = json.loads(path.read_bytes())
            plan = BatchPlan.from_checkpoint_obj(obj)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            raise CheckpointCorrupt(f"Unreadable checkpoint record {path}: {exc}") from exc

        expected = _RECORD_PATTERN.match(path.name)
        if expected is not None and int(expected.group(1)) != plan.time:
            raise CheckpointCorrupt(
                f"Checkpoint record {path} holds batch {plan.time}, not {int(expected.group(1))}"
            )
        return plan

    def _path_for(self, time: int) -> Path:
        if time < 0:
            raise ValueError("time must be >= 0")
        return self._dir / f"batch-{time:020d}.json"
