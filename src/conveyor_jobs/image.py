"""Container image build and push via the docker CLI.

Implementation rules enforced here:
- Never print
- Never read global config or environment
- Always return simple dicts
- Side effects: docker subprocess only

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["filesystem.source"],
    "writes": ["docker.images", "registry"],
    "external": ["docker"],
}


def image_refs_for(repository: str, tags: Sequence[str]) -> List[str]:
    """Expand a repository and tags into full image references."""
    return [f"{repository}:{tag}" for tag in tags]


def _tail(completed: subprocess.CompletedProcess) -> str:
    text = (completed.stderr or completed.stdout or "").strip()
    return " | ".join(text.splitlines()[-5:])


def build(
    source_ref: str,
    repository: str,
    tags: Sequence[str],
    dockerfile: Optional[str] = None,
    build_args: Optional[Dict[str, Any]] = None,
    docker_command: str = "docker",
    timeout_s: float = 1800,
) -> Dict[str, Any]:
    """Build an image from a source tree.

    Reads: build context at source_ref
    External: docker build

    Args:
        source_ref: Build context directory
        repository: Image repository, e.g. "registry.example.com/shop/web"
        tags: Tags to apply; the first one names image_ref
        dockerfile: Optional Dockerfile path
        build_args: Optional --build-arg values

    Returns:
        {ok: bool, image_ref: str|None, image_refs: list, tags: list, error: str|None}
    """
    tags = [str(t) for t in tags if t]
    refs = image_refs_for(repository, tags)
    result: Dict[str, Any] = {
        "ok": False,
        "image_ref": refs[0] if refs else None,
        "image_refs": refs,
        "tags": tags,
        "error": None,
    }

    if not refs:
        result["error"] = "image.build requires at least one tag"
        return result

    context = Path(source_ref).expanduser()
    if not context.is_dir():
        result["error"] = f"Build context not found: {context}"
        return result

    args = [docker_command, "build"]
    for ref in refs:
        args += ["-t", ref]
    if dockerfile:
        args += ["-f", str(Path(dockerfile).expanduser())]
    for key, value in (build_args or {}).items():
        args += ["--build-arg", f"{key}={value}"]
    args.append(str(context))

    try:
        completed = subprocess.run(args, capture_output=True, text=True, timeout=timeout_s)
    except FileNotFoundError:
        result["error"] = f"docker not found: {docker_command}"
        return result
    except subprocess.TimeoutExpired:
        result["error"] = f"docker build timed out after {timeout_s}s"
        return result

    if completed.returncode != 0:
        result["error"] = f"docker build failed ({completed.returncode}): {_tail(completed)}"
        return result

    result["ok"] = True
    return result


def push(
    image_refs: Union[str, Sequence[str]],
    registry: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    docker_command: str = "docker",
    timeout_s: float = 900,
) -> Dict[str, Any]:
    """Push one or more image references, logging in first if credentials are given.

    External: docker login, docker push

    Returns:
        {ok: bool, pushed: list, error: str|None}
    """
    refs = [image_refs] if isinstance(image_refs, str) else list(image_refs)
    result: Dict[str, Any] = {"ok": False, "pushed": [], "error": None}

    if not refs:
        result["error"] = "image.push requires at least one image reference"
        return result

    try:
        if username and password:
            login = [docker_command, "login", "--username", username, "--password-stdin"]
            if registry:
                login.append(registry)
            completed = subprocess.run(
                login, input=password, capture_output=True, text=True, timeout=timeout_s
            )
            if completed.returncode != 0:
                result["error"] = f"docker login failed: {_tail(completed)}"
                return result

        for ref in refs:
            completed = subprocess.run(
                [docker_command, "push", ref], capture_output=True, text=True, timeout=timeout_s
            )
            if completed.returncode != 0:
                result["error"] = f"docker push {ref} failed: {_tail(completed)}"
                return result
            result["pushed"].append(ref)
    except FileNotFoundError:
        result["error"] = f"docker not found: {docker_command}"
        return result
    except subprocess.TimeoutExpired:
        result["error"] = f"docker push timed out after {timeout_s}s"
        return result

    result["ok"] = True
    return result
