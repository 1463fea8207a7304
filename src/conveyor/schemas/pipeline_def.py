# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Stage and run schemas for Conveyor.

Pipeline YAML → compile → StageSpec tuple → build_graph → Graph
Graph → execute → RunState → RunSummary → notify
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class StageStatus(str, Enum):
    """Terminal status of a single stage."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    TIMED_OUT = "TimedOut"


class RunStatus(str, Enum):
    """Overall status of a run, derived from its stage results."""

    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class GateDecision(str, Enum):
    """Whether dependents of a finished stage may run."""

    PROCEED = "Proceed"
    BLOCK = "Block"


@dataclass(frozen=True)
class StageSpec:
    """A compiled stage ready for scheduling.

    All @ctx.*, @vars.*, @env.*, @self.* refs are resolved.
    Only @run.* refs may remain for dispatch-time resolution.
    """
    stage_id: str
    op: str  # e.g., "image.build"
    needs: Tuple[str, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    timeout_s: float = 900
    retries: int = 0
    gate: str = "blocking"


@dataclass(frozen=True)
class StageResult:
    """Recorded outcome of a single stage. Never mutated once recorded."""
    stage_id: str
    status: StageStatus
    payload: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    blocked_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "status": self.status.value,
            "payload": self.payload,
            "error": self.error,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "blocked_by": self.blocked_by,
        }


@dataclass
class RunState:
    """Mutable record of one pipeline run.

    Owned by a single Executor run. Results grow monotonically:
    recording a second result for the same stage is an error.
    """
    run_id: str
    pipeline_id: str
    started_at: datetime
    commit_sha: Optional[str] = None
    actor: Optional[str] = None
    stage_order: Tuple[str, ...] = ()
    results: Dict[str, StageResult] = field(default_factory=dict)
    decisions: Dict[str, GateDecision] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    notification: Optional["NotifyResult"] = None

    def record(self, result: StageResult) -> None:
        """Record a stage result; each stage id is recorded at most once."""
        if result.stage_id in self.results:
            raise RuntimeError(f"Result already recorded for stage: {result.stage_id}")
        self.results[result.stage_id] = result

    @property
    def status(self) -> RunStatus:
        """Derived overall status.

        Any stage that did not succeed fails the run, including one whose
        advisory gate let its dependents proceed.
        """
        if self.finished_at is None:
            return RunStatus.RUNNING
        if any(r.status != StageStatus.SUCCEEDED for r in self.results.values()):
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def ordered_results(self) -> List[StageResult]:
        """Results in pipeline order, followed by any not in stage_order."""
        ordered = [self.results[s] for s in self.stage_order if s in self.results]
        extra = [r for s, r in self.results.items() if s not in self.stage_order]
        return ordered + extra

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_id": self.pipeline_id,
            "status": self.status.value,
            "commit_sha": self.commit_sha,
            "actor": self.actor,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stages": [r.to_dict() for r in self.ordered_results()],
            "decisions": {k: v.value for k, v in self.decisions.items()},
            "warnings": list(self.warnings),
            "notification": (
                {"delivered": self.notification.delivered, "channel": self.notification.channel,
                 "error": self.notification.error}
                if self.notification else None
            ),
        }


@dataclass(frozen=True)
class RunSummary:
    """Snapshot of a finished run handed to notification channels."""
    run_id: str
    pipeline_id: str
    status: RunStatus
    commit_sha: Optional[str]
    actor: Optional[str]
    stages: Tuple[Dict[str, Any], ...]
    warnings: Tuple[str, ...]
    duration_s: float

    @property
    def subject(self) -> str:
        sha = (self.commit_sha or "")[:7]
        suffix = f" @ {sha}" if sha else ""
        return f"[{self.status.value}] {self.pipeline_id}{suffix}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_id": self.pipeline_id,
            "status": self.status.value,
            "commit_sha": self.commit_sha,
            "actor": self.actor,
            "stages": list(self.stages),
            "warnings": list(self.warnings),
            "duration_s": self.duration_s,
        }


@dataclass(frozen=True)
class NotifyResult:
    """Outcome of delivering a run summary."""
    delivered: bool
    channel: str
    error: Optional[str] = None
