"""Container / filesystem vulnerability scan via Trivy.

Implementation rules enforced here:
- Never print
- Never read global config or environment
- Always return simple dicts
- Side effects: trivy subprocess only

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import json
import subprocess
from typing import Any, Dict, Iterable, List

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["container.image", "filesystem.source"],
    "writes": [],
    "external": ["trivy"],
}

SCAN_KINDS = ("image", "fs", "config")
DEFAULT_SEVERITIES = ("HIGH", "CRITICAL")


def _normalize_severities(severity: Any) -> List[str]:
    """Accept "HIGH,CRITICAL" or ["HIGH", "CRITICAL"]."""
    if isinstance(severity, str):
        items: Iterable[str] = severity.split(",")
    else:
        items = severity
    return [s.strip().upper() for s in items if s and s.strip()]


def parse_report(report: Dict[str, Any], severities: Iterable[str]) -> List[Dict[str, Any]]:
    """Extract findings at the given severities from a Trivy JSON report."""
    wanted = set(_normalize_severities(list(severities)))
    findings: List[Dict[str, Any]] = []
    for target in report.get("Results") or []:
        for vuln in target.get("Vulnerabilities") or []:
            severity = (vuln.get("Severity") or "UNKNOWN").upper()
            if wanted and severity not in wanted:
                continue
            findings.append({
                "id": vuln.get("VulnerabilityID"),
                "package": vuln.get("PkgName"),
                "installed_version": vuln.get("InstalledVersion"),
                "fixed_version": vuln.get("FixedVersion"),
                "severity": severity,
                "title": vuln.get("Title"),
                "target": target.get("Target"),
            })
    return findings


def run(
    target: str,
    kind: str = "image",
    severity: Any = DEFAULT_SEVERITIES,
    ignore_unfixed: bool = False,
    trivy_command: str = "trivy",
    timeout_s: float = 600,
) -> Dict[str, Any]:
    """Scan an image (or source tree) and report findings.

    External: trivy

    Args:
        target: Image reference (kind=image) or path (kind=fs/config)
        kind: Trivy scan subcommand
        severity: Severities that count as findings
        ignore_unfixed: Skip vulnerabilities with no released fix
        trivy_command: Trivy executable
        timeout_s: Subprocess timeout

    Returns:
        {passed: bool, target: str, findings: list, error: str|None}
    """
    result: Dict[str, Any] = {
        "passed": False,
        "target": target,
        "findings": [],
        "error": None,
    }

    if kind not in SCAN_KINDS:
        result["error"] = f"Unknown scan kind: {kind} (expected one of {', '.join(SCAN_KINDS)})"
        return result

    severities = _normalize_severities(severity)
    args = [trivy_command, kind, "--format", "json", "--quiet"]
    if severities:
        args += ["--severity", ",".join(severities)]
    if ignore_unfixed:
        args.append("--ignore-unfixed")
    args.append(target)

    try:
        completed = subprocess.run(args, capture_output=True, text=True, timeout=timeout_s)
    except FileNotFoundError:
        result["error"] = f"Scanner not found: {trivy_command}"
        return result
    except subprocess.TimeoutExpired:
        result["error"] = f"Scanner timed out after {timeout_s}s"
        return result

    if completed.returncode != 0:
        result["error"] = f"trivy exited with code {completed.returncode}: {completed.stderr.strip()}"
        return result

    try:
        report = json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as e:
        result["error"] = f"Unreadable trivy report: {e}"
        return result

    findings = parse_report(report, severities)
    result["findings"] = findings
    result["passed"] = not findings
    return result
