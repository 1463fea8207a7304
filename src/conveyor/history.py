"""Run history.

Append-only JSONL archive of finished RunState snapshots, one line per run,
keyed by run id.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from conveyor.schemas import RunState

logger = logging.getLogger(__name__)

HISTORY_FILE = "runs.jsonl"


class RunHistory:
    """Archive of finished runs under history_dir/runs.jsonl."""

    def __init__(self, history_dir: str):
        self.history_dir = Path(history_dir).expanduser()
        self.path = self.history_dir / HISTORY_FILE

    def append(self, state: RunState) -> None:
        """Archive a finished run.

        Args:
            state: RunState with finished_at set.
        """
        if state.finished_at is None:
            raise ValueError(f"Run {state.run_id} has not finished")
        self.history_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(state.to_dict(), default=str) + "\n")

    def _records(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path) as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    # Corrupted line - skip it, keep the rest readable
                    logger.warning(f"Skipping unreadable history line {lineno} in {self.path}")
        return records

    def list(self, limit: Optional[int] = None, pipeline_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Archived runs, newest first."""
        records = self._records()
        if pipeline_id:
            records = [r for r in records if r.get("pipeline_id") == pipeline_id]
        records.reverse()
        return records[:limit] if limit else records

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Look up one run by id (or unique id prefix)."""
        matches = [r for r in self._records() if str(r.get("run_id", "")).startswith(run_id)]
        exact = [r for r in matches if r.get("run_id") == run_id]
        if exact:
            return exact[-1]
        if len(matches) == 1:
            return matches[0]
        return None
