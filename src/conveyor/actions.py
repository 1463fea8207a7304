# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Actions - map a stage's `op` to the collaborator adapter that performs it.

A handler takes (params, ctx) and returns an output dict that later stages
can reference via @run.<stage_id>.<key>. Handlers raise StageError on
failure; retryable=False marks a verdict (e.g. a failed scan) rather than a
transient error. Handlers may be plain functions (run in a worker thread)
or coroutine functions (awaited on the event loop).
"""

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from conveyor.errors import StageError, ValidationError
from conveyor.runner import CommandRunner
from conveyor_jobs import deploy, image, quality, vulnscan


@dataclass(frozen=True)
class ActionContext:
    """Run-scoped values visible to a handler for one attempt."""
    run_id: str
    stage_id: str
    attempt: int
    timeout_s: float
    commit_sha: Optional[str] = None
    actor: Optional[str] = None


Handler = Callable[[Dict[str, Any], ActionContext], Any]


def _call(adapter: Callable[..., Dict[str, Any]], params: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    """Call an adapter, turning bad parameters into a non-retryable StageError."""
    kwargs = {**params, **extra}
    try:
        inspect.signature(adapter).bind(**kwargs)
    except TypeError as e:
        raise StageError(f"Invalid parameters for {adapter.__module__}.{adapter.__name__}: {e}", retryable=False)
    return adapter(**kwargs)


def _require(params: Dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if params.get(k) in (None, "")]
    if missing:
        raise StageError(f"Missing required params: {', '.join(missing)}", retryable=False)


def _check(result: Dict[str, Any], ok_key: str) -> Dict[str, Any]:
    """Raise for adapter errors; return the result otherwise."""
    if result.get("error"):
        raise StageError(result["error"], retryable=True, payload=result)
    if not result.get(ok_key):
        raise StageError(f"Collaborator reported {ok_key}=False", retryable=True, payload=result)
    return result


# =============================================================================
# Handlers
# =============================================================================

def quality_scan(params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    """quality.scan: run(sourceRef) -> {passed, report_url}."""
    _require(params, "source_ref", "server_url", "project_key")
    params = {"timeout_s": ctx.timeout_s, **params}
    result = _call(quality.run, params)
    if result.get("error"):
        raise StageError(result["error"], retryable=True, payload=result)
    if not result["passed"]:
        raise StageError(
            f"Quality gate {result.get('status')}: {result['report_url']}",
            retryable=False,
            payload=result,
        )
    return result


def image_scan(params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    """image.scan: run(imageRef) -> {passed, findings}."""
    params = dict(params)
    if "image_ref" in params and "target" not in params:
        params["target"] = params.pop("image_ref")
    _require(params, "target")
    params = {"timeout_s": ctx.timeout_s, **params}
    result = _call(vulnscan.run, params)
    if result.get("error"):
        raise StageError(result["error"], retryable=True, payload=result)
    if not result["passed"]:
        ids = ", ".join(f["id"] or "?" for f in result["findings"][:5])
        raise StageError(
            f"{len(result['findings'])} vulnerabilities found in {result['target']}: {ids}",
            retryable=False,
            payload=result,
        )
    return result


def image_build(params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    """image.build: build(sourceRef, tags) -> imageRef.

    Tags default to `latest` plus the run's commit SHA.
    """
    _require(params, "source_ref", "repository")
    params = dict(params)
    if not params.get("tags"):
        params["tags"] = ["latest"] + ([ctx.commit_sha] if ctx.commit_sha else [])
    params = {"timeout_s": ctx.timeout_s, **params}
    return _check(_call(image.build, params), "ok")


def image_push(params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    """image.push: push(imageRef, registryCreds)."""
    params = dict(params)
    if "image_ref" in params and "image_refs" not in params:
        params["image_refs"] = params.pop("image_ref")
    _require(params, "image_refs")
    params = {"timeout_s": ctx.timeout_s, **params}
    return _check(_call(image.push, params), "ok")


def deploy_run(params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    """deploy.run: deploy(imageRef, hostRef)."""
    _require(params, "image_ref", "host_ref")
    params = {"timeout_s": ctx.timeout_s, **params}
    return _check(_call(deploy.deploy, params), "ok")


async def shell_run(params: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    """shell.run: arbitrary command; killed when the stage is cancelled."""
    _require(params, "command")
    variables = {
        "run_id": ctx.run_id,
        "stage_id": ctx.stage_id,
        "commit_sha": ctx.commit_sha or "",
        **(params.get("variables") or {}),
    }
    result = await CommandRunner().run_async(params["command"], variables)
    output = {
        "returncode": result.returncode,
        "stdout": result.stdout[-4000:],
        "stderr": result.stderr[-4000:],
    }
    if not result.ok:
        raise StageError(f"Command exited with code {result.returncode}", payload=output)
    return output


# =============================================================================
# Registry
# =============================================================================

class ActionRegistry:
    """Name → handler lookup used by the executor."""

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    @classmethod
    def default(cls) -> "ActionRegistry":
        return cls({
            "quality.scan": quality_scan,
            "image.scan": image_scan,
            "image.build": image_build,
            "image.push": image_push,
            "deploy.run": deploy_run,
            "shell.run": shell_run,
        })

    def register(self, op: str, handler: Handler) -> None:
        self._handlers[op] = handler

    def get(self, op: str) -> Handler:
        try:
            return self._handlers[op]
        except KeyError:
            raise ValidationError(f"Unknown op: {op}") from None

    def __contains__(self, op: str) -> bool:
        return op in self._handlers

    def ops(self):
        return sorted(self._handlers)
