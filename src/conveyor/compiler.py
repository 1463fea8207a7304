# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Compiler - Transform pipeline YAML + context into a PipelineInstance.

Resolves compile-time references:
- @ctx.* from run context (commit_sha, actor, source_ref, dry_run)
- @vars.* from `defaults:` merged with --var overrides
- @env.* from the process environment (missing is an error)
- @self.* from the entire pipeline YAML dict

Preserves @run.* for dispatch-time resolution by the executor.

Supports dynamic keys: @self.hosts.@vars.target
- First resolves @vars.target → "staging"
- Then resolves @self.hosts.staging
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from conveyor.actions import ActionRegistry
from conveyor.config import RUN_SETTINGS
from conveyor.errors import ValidationError
from conveyor.gates import get_gate
from conveyor.graph import Graph, build_graph
from conveyor.schemas import StageSpec


STAGE_KEYS = {"id", "op", "needs", "params", "timeout_s", "retries", "gate"}


class CompileError(ValidationError):
    """Raised when compilation fails."""
    pass


@dataclass
class PipelineInstance:
    """A compiled pipeline ready for graph building and execution."""
    pipeline_id: str
    version: str
    compiled_at: datetime
    stages: Tuple[StageSpec, ...]
    settings: Dict[str, Any] = field(default_factory=dict)

    def graph(self) -> Graph:
        return build_graph(self.stages)


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def load_pipeline_yaml(path: str) -> Dict[str, Any]:
    """Load a pipeline definition YAML file."""
    yaml_path = Path(path).expanduser()
    if not yaml_path.exists():
        raise CompileError(f"Pipeline definition not found: {yaml_path}")
    try:
        data = yaml.safe_load(yaml_path.read_text())
    except yaml.YAMLError as e:
        raise CompileError(f"Invalid YAML in {yaml_path}: {e}")
    if not isinstance(data, dict):
        raise CompileError(f"Pipeline definition must be a mapping: {yaml_path}")
    return data


def compile_pipeline(
    pipeline_def: Dict[str, Any],
    ctx: Optional[Dict[str, Any]] = None,
    variables: Optional[Dict[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    registry: Optional[ActionRegistry] = None,
    stage_defaults: Optional[Dict[str, Any]] = None,
) -> PipelineInstance:
    """
    Compile pipeline YAML → PipelineInstance.

    Args:
        pipeline_def: The entire YAML dict (available via @self.*)
        ctx: Context dict (available via @ctx.*)
        variables: --var overrides merged over `defaults:` (available via @vars.*)
        env: Environment mapping (available via @env.*), defaults to os.environ
        registry: If given, every stage op must be registered in it
        stage_defaults: Fallback timeout_s / retries for stages that omit them

    Returns:
        PipelineInstance ready for build_graph()

    Raises:
        CompileError: Malformed definition or unresolvable reference
    """
    ctx = ctx or {}
    env = os.environ if env is None else env
    stage_defaults = stage_defaults or {}

    if not pipeline_def.get("pipeline_id"):
        raise CompileError("Pipeline definition requires 'pipeline_id'")

    defaults = pipeline_def.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise CompileError("'defaults' must be a mapping")
    merged_vars = {**defaults, **(variables or {})}

    settings = pipeline_def.get("settings") or {}
    if not isinstance(settings, dict):
        raise CompileError("'settings' must be a mapping")
    unknown_settings = sorted(set(settings) - set(RUN_SETTINGS))
    if unknown_settings:
        raise CompileError(f"Unknown settings: {', '.join(unknown_settings)}")
    stage_defaults = {**stage_defaults, **settings}

    stages_data = pipeline_def.get("stages")
    if not isinstance(stages_data, list) or not stages_data:
        raise CompileError("Pipeline definition requires a non-empty 'stages' list")

    compiled_stages: List[StageSpec] = []
    for index, stage_data in enumerate(stages_data):
        compiled_stages.append(_compile_stage(
            index, stage_data, ctx, merged_vars, env, pipeline_def, registry, stage_defaults,
        ))

    return PipelineInstance(
        pipeline_id=str(pipeline_def["pipeline_id"]),
        version=str(pipeline_def.get("version", "1.0")),
        compiled_at=_utcnow(),
        stages=tuple(compiled_stages),
        settings=dict(settings),
    )


def _compile_stage(
    index: int,
    stage_data: Any,
    ctx: Dict[str, Any],
    variables: Dict[str, Any],
    env: Mapping[str, str],
    self_data: Dict[str, Any],
    registry: Optional[ActionRegistry],
    stage_defaults: Dict[str, Any],
) -> StageSpec:
    if not isinstance(stage_data, dict):
        raise CompileError(f"Stage #{index + 1} must be a mapping")

    stage_id = stage_data.get("id")
    if not stage_id or not isinstance(stage_id, str):
        raise CompileError(f"Stage #{index + 1} requires a string 'id'")

    unknown = sorted(set(stage_data) - STAGE_KEYS)
    if unknown:
        raise CompileError(f"Stage '{stage_id}': unknown keys {', '.join(unknown)}")

    op = stage_data.get("op")
    if not op or not isinstance(op, str):
        raise CompileError(f"Stage '{stage_id}' requires an 'op'")
    if registry is not None and op not in registry:
        raise CompileError(f"Stage '{stage_id}': unknown op '{op}'")

    needs = stage_data.get("needs") or []
    if isinstance(needs, str):
        needs = [needs]
    if not isinstance(needs, list) or not all(isinstance(n, str) for n in needs):
        raise CompileError(f"Stage '{stage_id}': 'needs' must be a list of stage ids")

    gate = stage_data.get("gate", "blocking")
    try:
        get_gate(gate)
    except ValidationError as e:
        raise CompileError(f"Stage '{stage_id}': {e}")

    timeout_s = stage_data.get("timeout_s", stage_defaults.get("stage_timeout_s", 900))
    if not isinstance(timeout_s, (int, float)) or isinstance(timeout_s, bool) or timeout_s <= 0:
        raise CompileError(f"Stage '{stage_id}': timeout_s must be a positive number")

    retries = stage_data.get("retries", stage_defaults.get("retries", 0))
    if not isinstance(retries, int) or isinstance(retries, bool) or retries < 0:
        raise CompileError(f"Stage '{stage_id}': retries must be a non-negative integer")

    params = stage_data.get("params") or {}
    if not isinstance(params, dict):
        raise CompileError(f"Stage '{stage_id}': 'params' must be a mapping")

    try:
        resolved_params = _resolve_value(params, ctx, variables, env, self_data)
    except CompileError as e:
        raise CompileError(f"Stage '{stage_id}': {e}")

    return StageSpec(
        stage_id=stage_id,
        op=op,
        needs=tuple(needs),
        params=resolved_params,
        timeout_s=timeout_s,
        retries=retries,
        gate=gate,
    )


def _resolve_value(
    value: Any,
    ctx: Dict[str, Any],
    variables: Dict[str, Any],
    env: Mapping[str, str],
    self_data: Dict[str, Any],
) -> Any:
    """
    Recursively resolve references in a value.

    Resolves @ctx.*, @vars.*, @env.*, @self.* references.
    Preserves @run.* for dispatch-time resolution.
    """
    if isinstance(value, str):
        if value.startswith("@run."):
            return value
        if value.startswith("@"):
            return _resolve_reference(value, ctx, variables, env, self_data)
        return value
    elif isinstance(value, dict):
        return {k: _resolve_value(v, ctx, variables, env, self_data) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_value(v, ctx, variables, env, self_data) for v in value]
    else:
        return value


def _resolve_reference(
    ref: str,
    ctx: Dict[str, Any],
    variables: Dict[str, Any],
    env: Mapping[str, str],
    self_data: Dict[str, Any],
) -> Any:
    """
    Resolve a reference string with dynamic key support.

    Examples:
        @ctx.commit_sha → ctx["commit_sha"]
        @vars.image → variables["image"]
        @env.REGISTRY_PASSWORD → env["REGISTRY_PASSWORD"]
        @self.hosts.@vars.target → first resolve @vars.target, then navigate
    """
    expanded_ref = _expand_dynamic_keys(ref, ctx, variables)
    return _navigate_reference(expanded_ref, ctx, variables, env, self_data)


def _expand_dynamic_keys(ref: str, ctx: Dict[str, Any], variables: Dict[str, Any]) -> str:
    """
    Expand dynamic keys in a reference path.

    "@self.hosts.@vars.target" → "@self.hosts.staging"
    """
    pattern = re.compile(r'\.@(ctx|vars)\.([a-zA-Z_][a-zA-Z0-9_]*)')

    def replace_dynamic_key(match):
        namespace = match.group(1)
        key = match.group(2)
        value = ctx.get(key) if namespace == "ctx" else variables.get(key)

        if value is None:
            raise CompileError(f"Dynamic key not found: @{namespace}.{key}")
        if not isinstance(value, (str, int)):
            raise CompileError(f"Dynamic key must be string or int: @{namespace}.{key}")
        return f".{value}"

    return pattern.sub(replace_dynamic_key, ref)


def _navigate_reference(
    ref: str,
    ctx: Dict[str, Any],
    variables: Dict[str, Any],
    env: Mapping[str, str],
    self_data: Dict[str, Any],
) -> Any:
    """
    Navigate a reference path to get the value.

    @ctx and @vars: missing keys resolve to None (optional)
    @env and @self: missing keys are an error
    """
    parts = ref.split(".")
    namespace_part = parts[0]
    path_parts = parts[1:]

    if namespace_part == "@env":
        if len(path_parts) != 1:
            raise CompileError(f"Invalid env reference: {ref}")
        if path_parts[0] not in env:
            raise CompileError(f"Environment variable not set: {path_parts[0]}")
        return env[path_parts[0]]

    if namespace_part == "@ctx":
        source: Any = ctx
    elif namespace_part == "@vars":
        source = variables
    elif namespace_part == "@self":
        source = self_data
    else:
        raise CompileError(f"Unknown namespace: {namespace_part}")

    value = source
    for part in path_parts:
        if isinstance(value, dict):
            if part not in value:
                if namespace_part in ("@ctx", "@vars"):
                    return None
                raise CompileError(f"Path not found: {ref} (missing '{part}')")
            value = value[part]
        elif isinstance(value, list):
            try:
                value = value[int(part)]
            except (ValueError, IndexError):
                raise CompileError(f"Invalid list index in {ref}: {part}")
        else:
            raise CompileError(f"Cannot navigate into {type(value).__name__} at '{part}' in {ref}")

    return value
