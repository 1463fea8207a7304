# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Conveyor pipeline schemas."""

from conveyor.schemas.pipeline_def import (
    GateDecision,
    NotifyResult,
    RunState,
    RunStatus,
    RunSummary,
    StageResult,
    StageSpec,
    StageStatus,
)

__all__ = [
    "GateDecision",
    "NotifyResult",
    "RunState",
    "RunStatus",
    "RunSummary",
    "StageResult",
    "StageSpec",
    "StageStatus",
]
