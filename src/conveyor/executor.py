# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Executor - drive a pipeline Graph to completion.

Dispatches ready stages up to a concurrency limit, applies each stage's gate
policy as it finishes, retries failed attempts with exponential backoff and
enforces stage and run deadlines. The run loop is the only writer of the
RunState; stage tasks hand their results back through asyncio.wait.

Resolves @run.* references at dispatch time from earlier stage outputs.
Invokes the Notifier exactly once when the run reaches a terminal state.
"""

import asyncio
import functools
import inspect
import logging
import re
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from conveyor.actions import ActionContext, ActionRegistry, Handler
from conveyor.errors import StageError, ValidationError
from conveyor.event_client import EventClient
from conveyor.graph import Graph
from conveyor.notifier import Notifier
from conveyor.schemas import GateDecision, RunState, StageResult, StageSpec, StageStatus

logger = logging.getLogger(__name__)

WARNING_EVENTS = frozenset({
    "stage.attempt_failed",
    "stage.failed",
    "stage.timed_out",
    "gate.blocked",
    "notify.failed",
})


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# @run.* Resolution
# =============================================================================

# Pattern for @run.* references: @run.stage_id.path.to.value
# Supports array indexing: @run.build.image_refs[1]
RUN_REF_PATTERN = re.compile(r"@run\.([a-zA-Z_][a-zA-Z0-9_.\-\[\]]*)")


def resolve_run_refs(value: Any, stage_outputs: Dict[str, Any]) -> Any:
    """
    Resolve @run.* references using earlier stage outputs.

    @run.stage_id.path → stage_outputs["stage_id"]["path"]
    @run.stage_id.items[0].field → stage_outputs["stage_id"]["items"][0]["field"]

    Raises:
        ValueError: Unknown stage or missing path
    """
    if isinstance(value, str):
        if value.startswith("@run."):
            match = RUN_REF_PATTERN.match(value)
            if match:
                path = match.group(1)
                parts = path.split(".")
                stage_id = parts[0]

                if stage_id not in stage_outputs:
                    raise ValueError(f"@run reference to stage without output: {stage_id}")

                result = stage_outputs[stage_id]
                for part in parts[1:]:
                    array_match = re.match(r"(\w+)\[(\d+)\]$", part)
                    if array_match:
                        key, idx = array_match.groups()
                        if isinstance(result, dict) and key in result:
                            result = result[key]
                        else:
                            raise ValueError(f"@run path not found: {value} (missing '{key}')")
                        if isinstance(result, list) and int(idx) < len(result):
                            result = result[int(idx)]
                        else:
                            raise ValueError(f"@run index out of bounds: {value}")
                    elif isinstance(result, dict) and part in result:
                        result = result[part]
                    else:
                        raise ValueError(f"@run path not found: {value} (missing '{part}')")
                return result
        return value
    elif isinstance(value, dict):
        return {k: resolve_run_refs(v, stage_outputs) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_run_refs(v, stage_outputs) for v in value]
    else:
        return value


# =============================================================================
# Run bookkeeping
# =============================================================================

class _Run:
    """Per-run scheduling state. Created by Executor.run, never shared."""

    def __init__(self, graph: Graph, state: RunState, ctx: Dict[str, Any]):
        self.graph = graph
        self.state = state
        self.ctx = ctx
        self.dry_run = bool(ctx.get("dry_run"))
        self.outputs: Dict[str, Any] = {}
        self.proceeded: Set[str] = set()
        self.started: Set[str] = set()
        self.started_at: Dict[str, datetime] = {}
        self.in_flight: Dict[asyncio.Task, str] = {}
        self.pool: Optional[ThreadPoolExecutor] = None

    def frontier(self):
        """Ready stages in topological order."""
        ready = self.graph.ready_stages(self.proceeded, self.started | set(self.state.results))
        return [stage_id for stage_id in self.graph.stage_ids if stage_id in ready]


class Executor:
    """Run a Graph under a concurrency budget."""

    def __init__(
        self,
        registry: Optional[ActionRegistry] = None,
        notifier: Optional[Notifier] = None,
        events: Optional[EventClient] = None,
        concurrency: int = 4,
        run_timeout_s: float = 3600,
        cancel_grace_s: float = 10.0,
        backoff_base_s: float = 2.0,
        backoff_max_s: float = 60.0,
        fail_fast: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize executor.

        Args:
            registry: Op → handler lookup (defaults to the built-in actions)
            notifier: Receives the final RunState once per run
            events: JSONL event sink for state transitions
            concurrency: Maximum simultaneously running stages (K)
            run_timeout_s: Global run deadline
            cancel_grace_s: How long cancelled stages get to wind down
            backoff_base_s: First retry delay; doubles per attempt
            backoff_max_s: Retry delay cap
            fail_fast: A gate block cancels in-flight stages and stops dispatch.
                When False a block only skips the blocked stage's dependents.
            sleep: Backoff sleep, replaceable in tests
        """
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1")
        self.registry = registry or ActionRegistry.default()
        self.notifier = notifier
        self.events = events
        self.concurrency = concurrency
        self.run_timeout_s = run_timeout_s
        self.cancel_grace_s = cancel_grace_s
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.fail_fast = fail_fast
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **kwargs: Any) -> "Executor":
        """Build an executor from conveyor.config.run_settings() output."""
        return cls(
            concurrency=settings["concurrency"],
            run_timeout_s=settings["run_timeout_s"],
            cancel_grace_s=settings["cancel_grace_s"],
            backoff_base_s=settings["backoff_base_s"],
            backoff_max_s=settings["backoff_max_s"],
            fail_fast=settings["fail_fast"],
            **kwargs,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.backoff_base_s * (2 ** (attempt - 1)), self.backoff_max_s)

    # -------------------------------------------------------------------------
    # Run loop
    # -------------------------------------------------------------------------

    def execute(self, graph: Graph, pipeline_id: str, ctx: Optional[Dict[str, Any]] = None) -> RunState:
        """
        Blocking wrapper around run().

        Unlike asyncio.run(), closing the loop does not wait for stages that
        were force-marked after ignoring cancellation, so run_timeout_s bounds
        the call.
        """
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            return loop.run_until_complete(self.run(graph, pipeline_id, ctx))
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                asyncio.set_event_loop(None)
                loop.close()

    async def run(self, graph: Graph, pipeline_id: str, ctx: Optional[Dict[str, Any]] = None) -> RunState:
        """
        Execute every stage of graph and return the final RunState.

        Stage failures are recorded, never raised.
        """
        ctx = ctx or {}
        state = RunState(
            run_id=ctx.get("run_id") or str(uuid.uuid4()),
            pipeline_id=pipeline_id,
            started_at=_utcnow(),
            commit_sha=ctx.get("commit_sha"),
            actor=ctx.get("actor"),
            stage_order=graph.stage_ids,
        )
        run = _Run(graph, state, ctx)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.run_timeout_s

        self._emit(run, "run.started", "running", payload={
            "pipeline_id": pipeline_id,
            "stages": len(graph),
            "commit_sha": state.commit_sha,
            "actor": state.actor,
            "dry_run": run.dry_run,
        })

        # Sync handlers get their own pool so abandoned workers are never joined
        run.pool = ThreadPoolExecutor(thread_name_prefix=f"conveyor-{state.run_id[:8]}")
        try:
            await self._drive(run, deadline)
        finally:
            run.pool.shutdown(wait=False)

        state.finished_at = _utcnow()
        self._emit(run, "run.finished", state.status.value.lower(), payload={
            "status": state.status.value,
            "duration_s": (state.finished_at - state.started_at).total_seconds(),
        })

        if self.notifier is not None:
            state.notification = await asyncio.to_thread(self.notifier.notify, state)
            if not state.notification.delivered:
                self._emit(run, "notify.failed", "warning", error=state.notification.error)

        return state

    async def _drive(self, run: _Run, deadline: float) -> None:
        loop = asyncio.get_running_loop()
        graph = run.graph
        order = {stage_id: i for i, stage_id in enumerate(graph.stage_ids)}
        while True:
            for stage_id in run.frontier():
                if len(run.in_flight) >= self.concurrency:
                    break
                self._dispatch(run, graph[stage_id])

            if not run.in_flight:
                return

            remaining = deadline - loop.time()
            done: Set[asyncio.Task] = set()
            if remaining > 0:
                done, _ = await asyncio.wait(
                    run.in_flight, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
            if not done:
                await self._expire(run)
                return

            # Every completion in the batch gets its gate decision before any
            # cancellation, in pipeline order for deterministic records
            blocker: Optional[str] = None
            for task in sorted(done, key=lambda t: order[run.in_flight[t]]):
                stage_id = run.in_flight.pop(task)
                result, output = task.result()
                decision = self._complete(run, graph[stage_id], result, output)
                if decision == GateDecision.BLOCK and blocker is None:
                    blocker = stage_id

            if blocker is not None and self.fail_fast:
                await self._cancel_in_flight(run, StageStatus.SKIPPED, blocked_by=blocker)
                self._skip_unstarted(run, blocked_by=blocker, reason=f"Run stopped: '{blocker}' blocked")
                return

    def _dispatch(self, run: _Run, spec: StageSpec) -> None:
        run.started.add(spec.stage_id)
        run.started_at[spec.stage_id] = _utcnow()
        self._emit(run, "stage.started", "running", stage_id=spec.stage_id, payload={"op": spec.op})
        task = asyncio.create_task(self._run_stage(run, spec), name=f"stage:{spec.stage_id}")
        run.in_flight[task] = spec.stage_id

    def _complete(
        self,
        run: _Run,
        spec: StageSpec,
        result: StageResult,
        output: Optional[Dict[str, Any]],
    ) -> GateDecision:
        """Record a finished stage, apply its gate, skip dependents on Block."""
        run.state.record(result)
        if output is not None:
            run.outputs[spec.stage_id] = output
        self._emit_result(run, result)

        decision = run.graph.gate(spec.stage_id).decide(spec, result)
        run.state.decisions[spec.stage_id] = decision
        if decision == GateDecision.PROCEED:
            run.proceeded.add(spec.stage_id)
            if result.status != StageStatus.SUCCEEDED:
                run.state.warnings.append(
                    f"Stage '{spec.stage_id}' {result.status.value} behind {spec.gate} gate: {result.error}"
                )
            return decision

        self._emit(run, "gate.blocked", "blocked", stage_id=spec.stage_id, payload={"gate": spec.gate})
        blocked = run.graph.dependents(spec.stage_id)
        for stage_id in run.graph.stage_ids:
            if stage_id in blocked and stage_id not in run.state.results:
                self._record_skip(run, stage_id, blocked_by=spec.stage_id,
                                  reason=f"Blocked by '{spec.stage_id}' ({result.status.value})")
        return decision

    def _record_skip(self, run: _Run, stage_id: str, blocked_by: Optional[str], reason: str) -> None:
        result = StageResult(
            stage_id=stage_id,
            status=StageStatus.SKIPPED,
            error=reason,
            finished_at=_utcnow(),
            blocked_by=blocked_by,
        )
        run.state.record(result)
        self._emit_result(run, result)

    def _skip_unstarted(self, run: _Run, blocked_by: Optional[str], reason: str) -> None:
        for stage_id in run.graph.stage_ids:
            if stage_id not in run.state.results and stage_id not in run.started:
                self._record_skip(run, stage_id, blocked_by=blocked_by, reason=reason)

    async def _expire(self, run: _Run) -> None:
        """Global deadline reached: cancel in-flight stages, skip the rest."""
        logger.error(
            f"Run timed out after {self.run_timeout_s}s with {len(run.in_flight)} stage(s) in flight",
            extra={"run_id": run.state.run_id},
        )
        await self._cancel_in_flight(run, StageStatus.TIMED_OUT, blocked_by=None)
        self._skip_unstarted(run, blocked_by=None, reason=f"Run timed out after {self.run_timeout_s}s")

    async def _cancel_in_flight(self, run: _Run, status: StageStatus, blocked_by: Optional[str]) -> None:
        """
        Cancel every in-flight stage and record it with `status`.

        Stages get cancel_grace_s to acknowledge. A stage that finished on its
        own before the cancel landed keeps its real result and gate decision.
        A stage still running after the grace period is force-marked TimedOut
        and left behind.
        """
        tasks = list(run.in_flight)
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=self.cancel_grace_s)

        for task in sorted(tasks, key=lambda t: run.graph.stage_ids.index(run.in_flight[t])):
            stage_id = run.in_flight.pop(task)
            if task.done() and not task.cancelled() and task.exception() is None:
                result, output = task.result()
                self._complete(run, run.graph[stage_id], result, output)
                continue

            if status == StageStatus.TIMED_OUT:
                reason = f"Cancelled: run timed out after {self.run_timeout_s}s"
            else:
                reason = f"Cancelled: '{blocked_by}' blocked"
            stage_status = status
            if task in pending:
                logger.warning(
                    f"Stage '{stage_id}' ignored cancellation for {self.cancel_grace_s}s; "
                    f"marking {StageStatus.TIMED_OUT.value} without waiting further",
                    extra={"run_id": run.state.run_id, "stage": stage_id},
                )
                stage_status = StageStatus.TIMED_OUT
                reason = f"{reason}; ignored cancellation for {self.cancel_grace_s}s"
            result = StageResult(
                stage_id=stage_id,
                status=stage_status,
                error=reason,
                attempts=0,
                started_at=run.started_at.get(stage_id),
                finished_at=_utcnow(),
                blocked_by=blocked_by,
            )
            run.state.record(result)
            self._emit_result(run, result)

    # -------------------------------------------------------------------------
    # Stage execution
    # -------------------------------------------------------------------------

    async def _run_stage(self, run: _Run, spec: StageSpec) -> Tuple[StageResult, Optional[Dict[str, Any]]]:
        """
        Run one stage with retries. Never raises except CancelledError.

        Returns:
            (StageResult, output dict or None)
        """
        started_at = run.started_at.get(spec.stage_id) or _utcnow()

        def finish(status: StageStatus, attempts: int, payload=None, error=None) -> StageResult:
            return StageResult(
                stage_id=spec.stage_id,
                status=status,
                payload=payload or {},
                error=error,
                attempts=attempts,
                started_at=started_at,
                finished_at=_utcnow(),
            )

        if run.dry_run:
            output = {"dry_run": True, "op": spec.op}
            return finish(StageStatus.SUCCEEDED, 0, payload=output), output

        try:
            handler = self.registry.get(spec.op)
            params = resolve_run_refs(spec.params, run.outputs)
        except (ValidationError, ValueError) as e:
            return finish(StageStatus.FAILED, 0, error=str(e)), None

        max_attempts = spec.retries + 1
        error: Optional[str] = None
        payload: Dict[str, Any] = {}
        attempt = 0
        while attempt < max_attempts:
            attempt += 1
            action_ctx = ActionContext(
                run_id=run.state.run_id,
                stage_id=spec.stage_id,
                attempt=attempt,
                timeout_s=spec.timeout_s,
                commit_sha=run.state.commit_sha,
                actor=run.state.actor,
            )
            try:
                output = await asyncio.wait_for(
                    self._invoke(run, handler, params, action_ctx), spec.timeout_s
                )
            except asyncio.TimeoutError:
                return finish(
                    StageStatus.TIMED_OUT, attempt, error=f"Stage timed out after {spec.timeout_s}s"
                ), None
            except StageError as e:
                error, payload = str(e), e.payload
                if not e.retryable:
                    break
            except Exception as e:
                error, payload = f"{type(e).__name__}: {e}", {}
            else:
                return finish(StageStatus.SUCCEEDED, attempt, payload=output), output

            if attempt < max_attempts:
                delay = self.backoff_delay(attempt)
                self._emit(run, "stage.attempt_failed", "retrying", stage_id=spec.stage_id,
                           payload={"attempt": attempt, "retry_in_s": delay}, error=error)
                await self._sleep(delay)
            else:
                self._emit(run, "stage.attempt_failed", "exhausted", stage_id=spec.stage_id,
                           payload={"attempt": attempt}, error=error)

        return finish(StageStatus.FAILED, attempt, payload=payload, error=error), None

    async def _invoke(
        self, run: _Run, handler: Handler, params: Dict[str, Any], ctx: ActionContext
    ) -> Dict[str, Any]:
        """One collaborator call. Sync handlers run on the run's worker pool."""
        if inspect.iscoroutinefunction(handler):
            output = await handler(params, ctx)
        else:
            loop = asyncio.get_running_loop()
            output = await loop.run_in_executor(run.pool, functools.partial(handler, params, ctx))
        return output if output is not None else {}

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def _emit_result(self, run: _Run, result: StageResult) -> None:
        event_type = {
            StageStatus.SUCCEEDED: "stage.succeeded",
            StageStatus.FAILED: "stage.failed",
            StageStatus.SKIPPED: "stage.skipped",
            StageStatus.TIMED_OUT: "stage.timed_out",
        }[result.status]
        payload: Dict[str, Any] = {"attempts": result.attempts}
        if result.blocked_by:
            payload["blocked_by"] = result.blocked_by
        self._emit(run, event_type, result.status.value.lower(), stage_id=result.stage_id,
                   payload=payload, error=result.error)

    def _emit(
        self,
        run: _Run,
        event_type: str,
        status: str,
        stage_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log a state transition and append it to the event log."""
        level = logging.WARNING if event_type in WARNING_EVENTS else logging.INFO
        message = f"{event_type} ({status})"
        if error:
            message = f"{message}: {error}"
        logger.log(level, message, extra={"run_id": run.state.run_id, "stage": stage_id or "-"})

        if self.events is not None:
            self.events.log_event(
                event_type,
                run_id=run.state.run_id,
                status=status,
                stage_id=stage_id,
                payload=payload,
                error_message=error,
            )
