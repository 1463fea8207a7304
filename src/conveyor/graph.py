# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Pipeline graph - validated DAG of stages.

build_graph() rejects duplicate ids, dangling `needs` references, unknown gate
policies and cycles before any stage runs. The executor queries
ready_stages() to compute its frontier, gate() for the policy applied to each
result, and dependents() to find what a blocked stage takes down with it.
"""

from collections import deque
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from conveyor.errors import ValidationError
from conveyor.gates import GatePolicy, get_gate
from conveyor.schemas import StageSpec


class Graph:
    """Immutable, validated stage graph. Build with build_graph()."""

    def __init__(
        self,
        stages: Dict[str, StageSpec],
        order: Tuple[str, ...],
        gates: Dict[str, GatePolicy],
    ):
        self._stages = stages
        self._order = order
        self._gates = gates
        self._children: Dict[str, List[str]] = {stage_id: [] for stage_id in stages}
        for stage in stages.values():
            for dep in stage.needs:
                self._children[dep].append(stage.stage_id)

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, stage_id: str) -> bool:
        return stage_id in self._stages

    def __getitem__(self, stage_id: str) -> StageSpec:
        return self._stages[stage_id]

    @property
    def stage_ids(self) -> Tuple[str, ...]:
        """Stage ids in topological order."""
        return self._order

    def topological_order(self) -> List[StageSpec]:
        return [self._stages[stage_id] for stage_id in self._order]

    def gate(self, stage_id: str) -> GatePolicy:
        """Gate policy resolved for stage_id when the graph was built."""
        return self._gates[stage_id]

    def ready_stages(self, completed: Iterable[str], started: Iterable[str] = ()) -> Set[str]:
        """
        Stages whose every dependency is in `completed`.

        Excludes stages that are themselves completed or already started.
        """
        done = set(completed)
        exclude = done | set(started)
        return {
            stage_id
            for stage_id, stage in self._stages.items()
            if stage_id not in exclude and all(dep in done for dep in stage.needs)
        }

    def dependents(self, stage_id: str) -> Set[str]:
        """All stages that transitively depend on stage_id."""
        seen: Set[str] = set()
        queue = deque(self._children[stage_id])
        while queue:
            child = queue.popleft()
            if child in seen:
                continue
            seen.add(child)
            queue.extend(self._children[child])
        return seen


def build_graph(specs: Sequence[StageSpec]) -> Graph:
    """
    Validate stage specs and build a Graph.

    Raises:
        ValidationError: duplicate ids, unknown or self dependencies, unknown
            gate policies, cycles
    """
    stages: Dict[str, StageSpec] = {}
    for spec in specs:
        if spec.stage_id in stages:
            raise ValidationError(f"Duplicate stage id: {spec.stage_id}")
        stages[spec.stage_id] = spec

    for spec in stages.values():
        for dep in spec.needs:
            if dep == spec.stage_id:
                raise ValidationError(f"Stage '{spec.stage_id}' depends on itself")
            if dep not in stages:
                raise ValidationError(
                    f"Stage '{spec.stage_id}' depends on unknown stage '{dep}'"
                )

    gates: Dict[str, GatePolicy] = {}
    for spec in stages.values():
        try:
            gates[spec.stage_id] = get_gate(spec.gate)
        except ValidationError as e:
            raise ValidationError(f"Stage '{spec.stage_id}': {e}") from None

    return Graph(stages, _topological_sort(stages), gates)


def _topological_sort(stages: Dict[str, StageSpec]) -> Tuple[str, ...]:
    """Kahn's algorithm. Ties are broken by declaration order."""
    position = {stage_id: i for i, stage_id in enumerate(stages)}
    indegree = {stage_id: len(set(spec.needs)) for stage_id, spec in stages.items()}
    children: Dict[str, List[str]] = {stage_id: [] for stage_id in stages}
    for spec in stages.values():
        for dep in set(spec.needs):
            children[dep].append(spec.stage_id)

    ready = sorted((s for s, n in indegree.items() if n == 0), key=position.__getitem__)
    order: List[str] = []
    while ready:
        current = ready.pop(0)
        order.append(current)
        for child in children[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
        ready.sort(key=position.__getitem__)

    if len(order) != len(stages):
        residual = sorted((s for s in stages if s not in order), key=position.__getitem__)
        raise ValidationError(f"Cycle detected among stages: {', '.join(residual)}")

    return tuple(order)
