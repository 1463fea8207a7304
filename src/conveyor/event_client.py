# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""JSONL event log for pipeline state transitions."""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional


class EventClient:
    """Append-only JSONL event logger keyed by run id."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log_event(
        self,
        event_type: str,
        run_id: str,
        status: str,
        stage_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Append one event to the JSONL file."""
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "run_id": run_id,
            "status": status,
        }
        if stage_id:
            event["stage_id"] = stage_id
        if payload:
            event["payload"] = payload
        if error_message:
            event["error_message"] = error_message

        line = json.dumps(event, default=str) + "\n"
        with self._lock:
            with open(self.log_path, "a") as f:
                f.write(line)

    def read_events(self, run_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Yield logged events, optionally only those for one run."""
        if not self.log_path.exists():
            return
        with open(self.log_path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                event = json.loads(line)
                if run_id is None or event.get("run_id") == run_id:
                    yield event
