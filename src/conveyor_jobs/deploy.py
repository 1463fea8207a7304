"""Deploy an image to a remote host.

Implementation rules enforced here:
- Never print
- Never read global config or environment
- Always return simple dicts
- Side effects: the configured deploy command only

The transport is whatever `command` says (ssh by default). Provisioning the
host and its credentials is outside this module.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import subprocess
from typing import Any, Dict, Optional

from conveyor.runner import CommandRunner

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": [],
    "writes": ["remote.host"],
    "external": ["ssh", "docker"],
}

DEFAULT_DEPLOY_COMMAND = (
    "ssh -o BatchMode=yes {host} "
    "'docker pull {image} && "
    "(docker rm -f {container} || true) && "
    "docker run -d --restart unless-stopped --name {container} -p {ports} {image}'"
)


def deploy(
    image_ref: str,
    host_ref: str,
    container: str = "app",
    ports: str = "80:80",
    command: Optional[str] = None,
    timeout_s: float = 600,
) -> Dict[str, Any]:
    """Roll a host over to image_ref.

    External: ssh (or the given command)

    Args:
        image_ref: Image to run
        host_ref: Target host, e.g. "deploy@10.0.0.12"
        container: Container name to replace
        ports: docker -p mapping
        command: Command template; {host}, {image}, {container}, {ports} are substituted
        timeout_s: Command timeout

    Returns:
        {ok: bool, image_ref: str, host_ref: str, error: str|None}
    """
    result: Dict[str, Any] = {
        "ok": False,
        "image_ref": image_ref,
        "host_ref": host_ref,
        "error": None,
    }
    if not image_ref or not host_ref:
        result["error"] = "deploy requires image_ref and host_ref"
        return result

    runner = CommandRunner()
    variables = {"host": host_ref, "image": image_ref, "container": container, "ports": ports}
    try:
        runner.run(command or DEFAULT_DEPLOY_COMMAND, variables, timeout=timeout_s)
    except subprocess.CalledProcessError as e:
        result["error"] = f"Deploy command exited with code {e.returncode}: {(e.stderr or '').strip()}"
        return result
    except subprocess.TimeoutExpired:
        result["error"] = f"Deploy command timed out after {timeout_s}s"
        return result

    result["ok"] = True
    return result
