# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Conveyor - gated CI/CD pipeline executor."""

__version__ = "0.1.0"
