# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Gate policies: decide from a stage result whether dependents may run.

Policies are stateless and selected per stage by name (`gate:` in the
pipeline YAML). The executor never special-cases stage names.
"""

import logging
from typing import Dict

from conveyor.errors import ValidationError
from conveyor.schemas import GateDecision, StageResult, StageSpec, StageStatus

logger = logging.getLogger(__name__)


class GatePolicy:
    """Base gate policy."""

    name = "base"

    def decide(self, stage: StageSpec, result: StageResult) -> GateDecision:
        raise NotImplementedError


class BlockingGate(GatePolicy):
    """Block iff the stage failed or timed out."""

    name = "blocking"
    blocking_statuses = frozenset({StageStatus.FAILED, StageStatus.TIMED_OUT})

    def decide(self, stage: StageSpec, result: StageResult) -> GateDecision:
        if result.status in self.blocking_statuses:
            return GateDecision.BLOCK
        return GateDecision.PROCEED


class AdvisoryGate(GatePolicy):
    """Non-blocking scan: failures are reported but dependents still run."""

    name = "advisory"

    def decide(self, stage: StageSpec, result: StageResult) -> GateDecision:
        if result.status != StageStatus.SUCCEEDED:
            logger.warning(
                f"Advisory gate on '{stage.stage_id}' proceeding despite {result.status.value}"
            )
        return GateDecision.PROCEED


_REGISTRY: Dict[str, GatePolicy] = {
    BlockingGate.name: BlockingGate(),
    AdvisoryGate.name: AdvisoryGate(),
}


def register_gate(policy: GatePolicy) -> None:
    """Register a gate policy under its name, replacing any existing one."""
    _REGISTRY[policy.name] = policy


def get_gate(name: str) -> GatePolicy:
    """Look up a gate policy by name."""
    try:
        return _REGISTRY[name]
    except KeyError:
        raise ValidationError(
            f"Unknown gate policy: {name} (available: {', '.join(sorted(_REGISTRY))})"
        ) from None


def gate_names():
    return sorted(_REGISTRY)
