"""Run-summary delivery to an HTTP webhook.

Implementation rules enforced here:
- Never print
- Never read global config or environment
- Always return simple dicts
- Side effects: one HTTP POST only

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

from typing import Any, Dict, Optional

import requests

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": [],
    "writes": [],
    "external": ["http.post"],
}


def post(
    url: str,
    summary: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    timeout_s: float = 10,
) -> Dict[str, Any]:
    """POST a run summary as JSON.

    Returns:
        {sent: bool, status_code: int|None, error: str|None}
    """
    try:
        response = requests.post(url, json=summary, headers=headers or {}, timeout=timeout_s)
    except requests.RequestException as e:
        return {"sent": False, "status_code": None, "error": str(e)}

    if response.status_code >= 400:
        return {
            "sent": False,
            "status_code": response.status_code,
            "error": f"Webhook returned HTTP {response.status_code}: {response.text[:200]}",
        }
    return {"sent": True, "status_code": response.status_code, "error": None}
