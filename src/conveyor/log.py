# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Logging setup for the Conveyor CLI."""

import logging
import sys


class ContextFormatter(logging.Formatter):
    """Formatter that tolerates records without run_id / stage fields."""

    def format(self, record):
        if not hasattr(record, "run_id"):
            record.run_id = "-"
        if not hasattr(record, "stage"):
            record.stage = "-"
        return super().format(record)


def configure_logging(level: str = "INFO") -> None:
    """Send conveyor logs to stderr with run/stage context."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ContextFormatter(
        "%(asctime)s %(levelname)s %(name)s [run_id=%(run_id)s stage=%(stage)s] - %(message)s"
    ))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )
