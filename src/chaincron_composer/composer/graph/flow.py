"""Typed variable flow between nodes.

A node can read the declared outputs of its ancestors, plus the workflow-level
variables. Every such variable is *visible*; some are additionally *shadowed*
for bare-name lookups:

- a producer is shadowed for a name when another producer of the same name sits
  between it and the reading node (closer producers win along a path)
- producers on independent branches do not shadow each other; both stay
  resolvable through the qualified `{{producer.name}}` form
- workflow variables are shadowed by any node that produces the same name

Shadowing never removes an entry from the visible set, so adding an edge can only
grow a node's visible variables.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from chaincron_composer.composer.graph.model import WorkflowGraph
from chaincron_composer.composer.graph.parameters import (
    VariableRef,
    VarType,
    find_references,
    infer_type,
    parameter_spec,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VisibleVariable:
    name: str
    type: VarType
    producer_id: str | None  # None for workflow-level variables
    shadowed: bool = False

    @property
    def key(self) -> str:
        """Input key under which the value is handed to the reading node."""

        if self.producer_id is None:
            return self.name
        return f"{self.producer_id}.{self.name}"


class FlowErrorKind(str, Enum):
    UNKNOWN_VARIABLE = "unknown_variable"
    TYPE_MISMATCH = "type_mismatch"
    AMBIGUOUS_VARIABLE = "ambiguous_variable"


@dataclass(frozen=True, slots=True)
class FlowError:
    kind: FlowErrorKind
    node_id: str
    parameter: str
    variable: str
    message: str

    @property
    def node_ids(self) -> tuple[str, ...]:
        return (self.node_id,)


@dataclass(frozen=True, slots=True)
class Bindings:
    """Visible variables per node id, in a stable order (producer id, then name)."""

    visible: Mapping[str, tuple[VisibleVariable, ...]]

    def for_node(self, node_id: str) -> tuple[VisibleVariable, ...]:
        return self.visible.get(node_id, ())

    def resolve(self, node_id: str, ref: VariableRef) -> list[VisibleVariable]:
        """Candidates a reference resolves to for `node_id`; exactly one when resolvable."""

        visible = self.for_node(node_id)
        if ref.producer_id is not None:
            return [v for v in visible if v.producer_id == ref.producer_id and v.name == ref.name]
        return [v for v in visible if v.name == ref.name and not v.shadowed]


def resolve_bindings(graph: WorkflowGraph) -> tuple[Bindings, list[FlowError]]:
    """Compute visible variables for every node and check parameter references.

    Only producers reachable from a trigger are ever visible, and only reachable
    nodes are checked for reference errors. Orphans never run; their visible sets
    hold workflow variables alone.
    """

    reachable = graph.reachable_from_triggers()
    ancestors = {node_id: graph.ancestors(node_id) for node_id in graph.node_ids()}

    visible: dict[str, tuple[VisibleVariable, ...]] = {}
    errors: list[FlowError] = []

    for node_id in graph.node_ids():
        producers = {a for a in ancestors[node_id] if a in reachable}
        visible[node_id] = _visible_for(graph, producers, ancestors)
        if node_id in reachable:
            errors.extend(_check_references(graph, node_id, visible[node_id]))

    if errors:
        logger.info(
            "Workflow variable flow has errors",
            extra={"workflow_id": graph.workflow_id, "error_count": len(errors)},
        )
    return Bindings(visible=MappingProxyType(visible)), errors


def _visible_for(
    graph: WorkflowGraph,
    producers: set[str],
    ancestors: dict[str, set[str]],
) -> tuple[VisibleVariable, ...]:
    by_name: dict[str, list[str]] = {}
    for producer_id in producers:
        for variable in graph.get_node(producer_id).declared_outputs:
            by_name.setdefault(variable.name, []).append(producer_id)

    out: list[VisibleVariable] = []
    for producer_id in sorted(producers):
        for variable in graph.get_node(producer_id).declared_outputs:
            rivals = by_name[variable.name]
            shadowed = any(
                other != producer_id and producer_id in ancestors[other] for other in rivals
            )
            out.append(
                VisibleVariable(
                    name=variable.name,
                    type=variable.type,
                    producer_id=producer_id,
                    shadowed=shadowed,
                )
            )

    for name in sorted(graph.variables):
        out.append(
            VisibleVariable(
                name=name,
                type=infer_type(graph.variables[name]),
                producer_id=None,
                shadowed=name in by_name,
            )
        )
    return tuple(out)


def _check_references(
    graph: WorkflowGraph,
    node_id: str,
    visible: tuple[VisibleVariable, ...],
) -> list[FlowError]:
    node = graph.get_node(node_id)
    bindings = Bindings(visible={node_id: visible})
    errors: list[FlowError] = []

    for parameter in sorted(node.parameters):
        for ref in find_references(node.parameters[parameter]):
            candidates = bindings.resolve(node_id, ref)

            if not candidates:
                errors.append(
                    FlowError(
                        kind=FlowErrorKind.UNKNOWN_VARIABLE,
                        node_id=node_id,
                        parameter=parameter,
                        variable=str(ref),
                        message=_unknown_message(graph, node_id, ref),
                    )
                )
                continue

            if len(candidates) > 1:
                producers = ", ".join(c.producer_id or "workflow" for c in candidates)
                errors.append(
                    FlowError(
                        kind=FlowErrorKind.AMBIGUOUS_VARIABLE,
                        node_id=node_id,
                        parameter=parameter,
                        variable=str(ref),
                        message=(
                            f"{{{{{ref}}}}} is produced by independent steps ({producers}); "
                            f"qualify it as {{{{producer.{ref.name}}}}}"
                        ),
                    )
                )
                continue

            declared = parameter_spec(node.kind, parameter)
            bound = candidates[0]
            if ref.whole_value and declared is not None and bound.type is not declared.type:
                errors.append(
                    FlowError(
                        kind=FlowErrorKind.TYPE_MISMATCH,
                        node_id=node_id,
                        parameter=parameter,
                        variable=str(ref),
                        message=(
                            f"Parameter {parameter!r} expects {declared.type.value} but "
                            f"{bound.key} is {bound.type.value}"
                        ),
                    )
                )
    return errors


def _unknown_message(graph: WorkflowGraph, node_id: str, ref: VariableRef) -> str:
    producers = [
        n.id
        for n in graph.nodes.values()
        if n.id != node_id
        and n.output(ref.name) is not None
        and (ref.producer_id is None or n.id == ref.producer_id)
    ]
    if producers:
        return (
            f"Variable {ref} is produced by {', '.join(sorted(producers))}, "
            f"which does not run before {node_id}"
        )
    return f"Variable {ref} is not produced by any step"
