"""Structural validation of a workflow graph.

Checks run as ordered classes. Problems are accumulated within a class, and the
first class that produces a fatal error ends validation:

1. dangling references (connections to unknown nodes)
2. cycles
3. arity rules per node kind
4. reachability from a trigger (warnings only)

Results are returned as data. Nothing in here raises for a malformed graph.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from chaincron_composer.composer.graph.model import WorkflowGraph
from chaincron_composer.composer.graph.parameters import NodeKind

logger = logging.getLogger(__name__)


class GraphErrorKind(str, Enum):
    DANGLING_REFERENCE = "dangling_reference"
    CYCLE = "cycle"
    MISSING_TRIGGER = "missing_trigger"
    ARITY_VIOLATION = "arity_violation"
    ORPHAN_NODE = "orphan_node"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True, slots=True)
class GraphError:
    kind: GraphErrorKind
    node_ids: tuple[str, ...]
    message: str
    severity: Severity = Severity.ERROR
    connection_ids: tuple[str, ...] = ()

    @property
    def fatal(self) -> bool:
        return self.severity is Severity.ERROR


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Ordered validation findings. Valid when none of them is fatal."""

    issues: tuple[GraphError, ...] = ()
    orphans: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_valid(self) -> bool:
        return not any(issue.fatal for issue in self.issues)

    @property
    def errors(self) -> list[GraphError]:
        return [issue for issue in self.issues if issue.fatal]

    @property
    def warnings(self) -> list[GraphError]:
        return [issue for issue in self.issues if not issue.fatal]


def validate(graph: WorkflowGraph) -> ValidationResult:
    """Validate the structure of `graph`."""

    dangling = _check_dangling(graph)
    if dangling:
        return _finish(graph, dangling)

    cycles = [
        GraphError(
            kind=GraphErrorKind.CYCLE,
            node_ids=cycle,
            message="Cycle detected: " + " -> ".join((*cycle, cycle[0])),
        )
        for cycle in find_cycles(graph)
    ]
    if cycles:
        return _finish(graph, cycles)

    reachable = graph.reachable_from_triggers()
    arity = _check_arity(graph, reachable)
    if arity:
        return _finish(graph, arity)

    orphans = [node_id for node_id in graph.node_ids() if node_id not in reachable]
    warnings = [
        GraphError(
            kind=GraphErrorKind.ORPHAN_NODE,
            node_ids=(node_id,),
            message=f"Node {node_id} is not reachable from any trigger and will not run",
            severity=Severity.WARNING,
        )
        for node_id in orphans
    ]
    return _finish(graph, warnings, orphans=frozenset(orphans))


def find_cycles(graph: WorkflowGraph) -> list[tuple[str, ...]]:
    """Find cycles with an iterative white/gray/black depth-first search.

    Every back-edge to a gray node yields the cycle it closes, rotated to start at
    its lowest node id. Roots and successors are visited in ascending id order so
    the result is deterministic.
    """

    white, gray, black = 0, 1, 2
    color = {node_id: white for node_id in graph.node_ids()}
    found: list[tuple[str, ...]] = []
    seen: set[tuple[str, ...]] = set()

    for root in graph.node_ids():
        if color[root] != white:
            continue
        color[root] = gray
        path = [root]
        stack: list[Iterator[str]] = [iter(graph.successors(root))]

        while stack:
            child = next(stack[-1], None)
            if child is None:
                color[path.pop()] = black
                stack.pop()
                continue

            state = color.get(child)
            if state == white:
                color[child] = gray
                path.append(child)
                stack.append(iter(graph.successors(child)))
            elif state == gray:
                cycle = _rotate_to_lowest(path[path.index(child) :])
                if cycle not in seen:
                    seen.add(cycle)
                    found.append(cycle)

    return found


def _rotate_to_lowest(cycle: list[str]) -> tuple[str, ...]:
    start = cycle.index(min(cycle))
    return tuple(cycle[start:] + cycle[:start])


def _check_dangling(graph: WorkflowGraph) -> list[GraphError]:
    errors: list[GraphError] = []
    for connection in graph.dangling_connections():
        missing = tuple(
            node_id
            for node_id in (connection.source, connection.target)
            if node_id not in graph.nodes
        )
        errors.append(
            GraphError(
                kind=GraphErrorKind.DANGLING_REFERENCE,
                node_ids=missing,
                connection_ids=(connection.id,),
                message=(
                    f"Connection {connection.id} references unknown node(s): "
                    + ", ".join(missing)
                ),
            )
        )
    return errors


def _check_arity(graph: WorkflowGraph, reachable: set[str]) -> list[GraphError]:
    errors: list[GraphError] = []
    if not graph.triggers():
        errors.append(
            GraphError(
                kind=GraphErrorKind.MISSING_TRIGGER,
                node_ids=(),
                message="Workflow needs at least one trigger",
            )
        )

    for node_id in graph.node_ids():
        if node_id not in reachable:
            # Unreachable nodes are reported as orphans, not held to arity rules.
            continue
        node = graph.get_node(node_id)
        ins, outs = graph.in_degree(node_id), graph.out_degree(node_id)
        problems: list[str] = []

        if node.kind is NodeKind.TRIGGER:
            if ins:
                problems.append("a trigger cannot have incoming connections")
            if not outs:
                problems.append("a trigger needs at least one outgoing connection")
        elif node.kind is NodeKind.OUTPUT:
            if not ins:
                problems.append("an output needs at least one incoming connection")
            if outs:
                problems.append("an output cannot have outgoing connections")
        else:
            if not ins:
                problems.append(f"a {node.kind.value} needs at least one incoming connection")
            if not outs and not node.terminal:
                problems.append(
                    f"a {node.kind.value} needs at least one outgoing connection "
                    "unless marked terminal"
                )

        errors.extend(
            GraphError(
                kind=GraphErrorKind.ARITY_VIOLATION,
                node_ids=(node_id,),
                message=f"Node {node_id}: {problem}",
            )
            for problem in problems
        )
    return errors


def _finish(
    graph: WorkflowGraph,
    issues: list[GraphError],
    *,
    orphans: frozenset[str] = frozenset(),
) -> ValidationResult:
    result = ValidationResult(issues=tuple(issues), orphans=orphans)
    if not result.is_valid:
        logger.info(
            "Workflow graph failed validation",
            extra={
                "workflow_id": graph.workflow_id,
                "error_kind": result.errors[0].kind.value,
                "error_count": len(result.errors),
            },
        )
    return result
