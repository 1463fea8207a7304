# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Final run report rendering."""

import json
from typing import Any, Dict, List


def render_report(run: Dict[str, Any], format_type: str = "table") -> str:
    """
    Render a run dict (RunState.to_dict() or a history record).

    Every stage is listed with its terminal status; skipped stages name the
    blocking ancestor.
    """
    if format_type == "json":
        return json.dumps(run, indent=2, default=str)
    if format_type != "table":
        raise ValueError(f"Unknown format: {format_type}")

    lines = [
        f"Pipeline: {run['pipeline_id']}",
        f"Run ID:   {run['run_id']}",
        f"Commit:   {run.get('commit_sha') or '-'}",
        f"Actor:    {run.get('actor') or '-'}",
        f"Status:   {run['status']}",
        "",
    ]
    lines.extend(_render_table(run.get("stages", [])))

    warnings = run.get("warnings") or []
    if warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {w}" for w in warnings)
    return "\n".join(lines)


def _render_table(stages: List[Dict[str, Any]]) -> List[str]:
    """Render stage rows as a simple table."""
    if not stages:
        return ["(no stages)"]
    rows = []
    for stage in stages:
        detail = stage.get("error") or ""
        if stage.get("blocked_by"):
            detail = f"blocked by {stage['blocked_by']}"
        rows.append({
            "stage": stage["stage_id"],
            "status": stage["status"],
            "attempts": str(stage.get("attempts", 0)),
            "detail": detail,
        })
    keys = list(rows[0].keys())
    widths = {k: max(len(k), max(len(r[k]) for r in rows)) for k in keys}
    header = " | ".join(k.ljust(widths[k]) for k in keys)
    out = [header, "-" * len(header)]
    for row in rows:
        out.append(" | ".join(row[k].ljust(widths[k]) for k in keys).rstrip())
    return out
