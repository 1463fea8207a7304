"""Code-quality scan via SonarQube.

Implementation rules enforced here:
- Never print
- Never read global config or environment (except Path.expanduser)
- Always return simple dicts
- Side effects: sonar-scanner subprocess, SonarQube web API calls only

Transport: sonar-scanner CLI + SonarQube web API (requests)
Auth: token passed as `token` parameter

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["filesystem.source"],
    "writes": [],
    "external": ["sonar-scanner", "sonarqube.qualitygates"],
}

QUALITY_GATE_API = "/api/qualitygates/project_status"


def _scanner_args(
    scanner_command: str,
    source_ref: str,
    server_url: str,
    project_key: str,
    token: Optional[str],
) -> List[str]:
    args = [
        scanner_command,
        f"-Dsonar.projectKey={project_key}",
        f"-Dsonar.sources={source_ref}",
        f"-Dsonar.host.url={server_url}",
    ]
    if token:
        args.append(f"-Dsonar.token={token}")
    return args


def get_quality_gate(
    server_url: str,
    project_key: str,
    token: Optional[str] = None,
    timeout_s: float = 30,
) -> Dict[str, Any]:
    """Query the quality gate status for a project.

    External: GET /api/qualitygates/project_status

    Returns:
        {status: "OK"|"WARN"|"ERROR"|"NONE", conditions: list}

    Raises:
        requests.RequestException: On transport or HTTP errors
    """
    response = requests.get(
        server_url.rstrip("/") + QUALITY_GATE_API,
        params={"projectKey": project_key},
        auth=(token, "") if token else None,
        timeout=timeout_s,
    )
    response.raise_for_status()
    project_status = response.json().get("projectStatus", {})
    return {
        "status": project_status.get("status", "NONE"),
        "conditions": project_status.get("conditions", []),
    }


def run(
    source_ref: str,
    server_url: str,
    project_key: str,
    token: Optional[str] = None,
    scanner_command: str = "sonar-scanner",
    allow_warn: bool = True,
    timeout_s: float = 600,
) -> Dict[str, Any]:
    """Run a code-quality scan and evaluate the project's quality gate.

    Reads: source tree at source_ref
    External: sonar-scanner, SonarQube quality gate API

    Args:
        source_ref: Path to the checked-out source tree
        server_url: SonarQube base URL
        project_key: SonarQube project key
        token: SonarQube user token
        scanner_command: Scanner executable
        allow_warn: Treat a WARN gate status as passed
        timeout_s: Scanner subprocess timeout

    Returns:
        {passed: bool, report_url: str, status: str, conditions: list, error: str|None}
    """
    report_url = f"{server_url.rstrip('/')}/dashboard?id={project_key}"
    result: Dict[str, Any] = {
        "passed": False,
        "report_url": report_url,
        "status": None,
        "conditions": [],
        "error": None,
    }

    source = Path(source_ref).expanduser()
    if not source.exists():
        result["error"] = f"Source not found: {source}"
        return result

    try:
        completed = subprocess.run(
            _scanner_args(scanner_command, str(source), server_url, project_key, token),
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except FileNotFoundError:
        result["error"] = f"Scanner not found: {scanner_command}"
        return result
    except subprocess.TimeoutExpired:
        result["error"] = f"Scanner timed out after {timeout_s}s"
        return result

    if completed.returncode != 0:
        tail = (completed.stderr or completed.stdout or "").strip().splitlines()[-5:]
        result["error"] = f"Scanner exited with code {completed.returncode}: " + " | ".join(tail)
        return result

    try:
        gate = get_quality_gate(server_url, project_key, token=token)
    except requests.RequestException as e:
        result["error"] = f"Quality gate lookup failed: {e}"
        return result

    passed_statuses = {"OK", "WARN"} if allow_warn else {"OK"}
    result["status"] = gate["status"]
    result["conditions"] = gate["conditions"]
    result["passed"] = gate["status"] in passed_statuses
    return result
