"""Staged execution plans.

The planner runs Kahn's algorithm over the trigger-reachable part of a validated
graph. Each round takes *every* node whose in-degree has dropped to zero as one
stage, so independent nodes end up grouped for concurrent execution instead of
being flattened into an arbitrary order.

Planning is pure: the same graph always yields the same stages, in the same
order (ascending node id within a stage).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from chaincron_composer.composer.graph.flow import Bindings
from chaincron_composer.composer.graph.model import WorkflowGraph

logger = logging.getLogger(__name__)


class PlanErrorKind(str, Enum):
    EXCLUDED_ORPHAN = "excluded_orphan"
    INTERNAL_CYCLE = "internal_cycle"


@dataclass(frozen=True, slots=True)
class PlanError:
    kind: PlanErrorKind
    node_ids: tuple[str, ...]
    message: str

    @property
    def fatal(self) -> bool:
        return self.kind is PlanErrorKind.INTERNAL_CYCLE


class PlanInvariantError(RuntimeError):
    """The planner was handed a graph the validator should have rejected.

    This is a defect in the validate -> plan pipeline, not a user error.
    """

    def __init__(self, error: PlanError) -> None:
        super().__init__(error.message)
        self.error = error


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    """Ordered stages; nodes within a stage do not depend on each other."""

    workflow_id: str
    stages: tuple[tuple[str, ...], ...]
    bindings: Bindings | None = field(default=None, compare=False)

    @property
    def node_ids(self) -> tuple[str, ...]:
        """Flattened stage order, as shown to users."""

        return tuple(node_id for stage in self.stages for node_id in stage)

    def stage_of(self, node_id: str) -> int:
        for idx, stage in enumerate(self.stages):
            if node_id in stage:
                return idx
        raise KeyError(f"Node not in plan: {node_id}")


def plan(
    graph: WorkflowGraph, bindings: Bindings | None = None
) -> tuple[ExecutionPlan, list[PlanError]]:
    """Order the trigger-reachable nodes of `graph` into stages.

    Must only be called on a graph without fatal validation errors.

    Raises:
        PlanInvariantError: If nodes remain that can never reach in-degree zero.
    """

    reachable = graph.reachable_from_triggers()
    notes = [
        PlanError(
            kind=PlanErrorKind.EXCLUDED_ORPHAN,
            node_ids=(node_id,),
            message=f"Node {node_id} is unreachable from any trigger and was left out of the plan",
        )
        for node_id in graph.node_ids()
        if node_id not in reachable
    ]

    in_degree = {
        node_id: sum(1 for p in graph.predecessors(node_id) if p in reachable)
        for node_id in reachable
    }

    stages: list[tuple[str, ...]] = []
    ready = sorted(node_id for node_id, degree in in_degree.items() if degree == 0)
    remaining = len(in_degree)

    while ready:
        stage = tuple(ready)
        stages.append(stage)
        remaining -= len(stage)

        next_ready: list[str] = []
        for node_id in stage:
            for successor in graph.successors(node_id):
                if successor not in in_degree:
                    continue
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    next_ready.append(successor)
        ready = sorted(next_ready)

    if remaining:
        stuck = tuple(sorted(n for n, d in in_degree.items() if d > 0))
        error = PlanError(
            kind=PlanErrorKind.INTERNAL_CYCLE,
            node_ids=stuck,
            message=f"Planner found a cycle the validator missed: {', '.join(stuck)}",
        )
        logger.critical(
            "Execution planner invariant violated",
            extra={"workflow_id": graph.workflow_id, "node_ids": list(stuck)},
        )
        raise PlanInvariantError(error)

    execution_plan = ExecutionPlan(
        workflow_id=graph.workflow_id, stages=tuple(stages), bindings=bindings
    )
    logger.debug(
        "Execution plan computed",
        extra={
            "workflow_id": graph.workflow_id,
            "stage_count": len(stages),
            "excluded": len(notes),
        },
    )
    return execution_plan, notes
