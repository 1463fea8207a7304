# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy for Conveyor.

- ValidationError: malformed pipeline definition or graph; the run never starts
- StageError: a stage's collaborator call failed; contained in RunState
- DeliveryError: notification failed; logged, never escalated
"""

from typing import Any, Dict, Optional


class ConveyorError(Exception):
    """Base class for Conveyor errors."""
    pass


class ValidationError(ConveyorError):
    """Raised when a pipeline definition or graph is malformed."""
    pass


class StageError(ConveyorError):
    """Raised by action handlers when a collaborator call fails.

    Args:
        message: Human-readable failure description
        retryable: If False, the stage is finalized as failed without retrying
        payload: Diagnostic output to record on the stage result
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.payload = payload or {}


class DeliveryError(ConveyorError):
    """Raised by notification channels when a summary cannot be delivered."""
    pass
