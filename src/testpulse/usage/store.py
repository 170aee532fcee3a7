# src/testpulse/usage/store.py
"""Per-worker snapshot files.

Each worker process writes one JSON file; the launcher reads them all
after the workers exit and removes the directory before the next run.
"""

import json
import os
import shutil
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_FILE_PREFIX = "worker-data-"


class WorkerDataStore:
    """Directory of ``worker-data-<id>.json`` files."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def path_for(self, worker_id: str) -> Path:
        return self.directory / f"{_FILE_PREFIX}{worker_id}.json"

    def save(self, data: dict[str, Any], worker_id: str | None = None) -> Path:
        """Write one worker's record, replacing any earlier one for the same id.

        The file is written next to its final name and renamed into place,
        so a concurrent ``load_all`` never sees a partial file.
        """
        worker_id = str(os.getpid()) if worker_id is None else worker_id
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(worker_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(data), encoding="utf-8")
        tmp_path.replace(path)
        logger.debug("Saved worker data", path=str(path))
        return path

    def load_all(self) -> list[dict[str, Any]]:
        """Read every worker record; unreadable files are logged and skipped."""
        if not self.directory.is_dir():
            return []
        records: list[dict[str, Any]] = []
        for path in sorted(self.directory.glob(f"{_FILE_PREFIX}*.json")):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Unreadable worker data file", path=str(path), error=str(e))
                continue
            if not isinstance(record, dict):
                logger.warning("Worker data file is not an object", path=str(path))
                continue
            records.append(record)
        return records

    def remove(self) -> None:
        """Delete the directory and everything in it; missing is fine."""
        shutil.rmtree(self.directory, ignore_errors=True)
