"""In-memory workflow graph.

The graph is the single source of truth for nodes, connections and workflow
variables. Connections are stored once, as a canonical list; forward and reverse
adjacency are derived, read-only indices.

The graph deliberately accepts transiently invalid shapes (dangling connections,
cycles, unconnected nodes) because it is built up one edit at a time. The
validator is what reports those.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chaincron_composer.composer.graph.parameters import NodeKind, VarType, check_parameters

logger = logging.getLogger(__name__)


class OnError(str, Enum):
    ABORT = "abort"
    SKIP_DOWNSTREAM = "skip-downstream"
    CONTINUE = "continue"


class Position(BaseModel):
    """Canvas position. Layout only; never affects planning."""

    model_config = ConfigDict(frozen=True)

    x: float = 0.0
    y: float = 0.0


class Variable(BaseModel):
    """A named, typed output a node produces once executed."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=r"^[A-Za-z_]\w*$")
    type: VarType


class Node(BaseModel):
    """One workflow step.

    Parameters are validated against the schema of the node's kind when the node
    is constructed, so a `Node` that exists is well-formed on its own. Whether its
    variable references resolve depends on the graph and is checked by the flow
    resolver.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    kind: NodeKind
    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    declared_outputs: tuple[Variable, ...] = ()
    position: Position = Field(default_factory=Position)

    on_error: OnError = OnError.ABORT
    timeout_ms: int | None = Field(default=None, gt=0)
    terminal: bool = False

    @field_validator("id")
    @classmethod
    def _id_has_no_dot(cls, value: str) -> str:
        # `producer.name` references split on the first dot.
        if "." in value or value != value.strip():
            raise ValueError(f"Invalid node id: {value!r}")
        return value

    @model_validator(mode="after")
    def _check_kind_schema(self) -> Node:
        problems = check_parameters(self.kind, self.parameters)
        names = [v.name for v in self.declared_outputs]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            problems.append(f"duplicate declared outputs: {', '.join(duplicates)}")
        if self.terminal and self.kind not in (NodeKind.ACTION, NodeKind.CONDITION):
            problems.append("only action and condition nodes can be marked terminal")
        if problems:
            raise ValueError(f"Node {self.id!r}: " + "; ".join(problems))
        return self

    def output(self, name: str) -> Variable | None:
        for variable in self.declared_outputs:
            if variable.name == name:
                return variable
        return None


class Connection(BaseModel):
    """A directed edge `from -> to`."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    source: str = Field(alias="from")
    target: str = Field(alias="to")
    condition: str | None = None


class WorkflowGraph:
    """Nodes, connections and variables of one workflow.

    Mutations are expected from a single writer (the editing session). Read-only
    views returned from this class are safe to hand to observers.
    """

    def __init__(
        self,
        *,
        workflow_id: str,
        name: str = "",
        description: str = "",
        nodes: Iterable[Node] = (),
        connections: Iterable[Connection] = (),
        variables: Mapping[str, object] | None = None,
    ) -> None:
        self.workflow_id = workflow_id
        self.name = name
        self.description = description
        self._nodes: dict[str, Node] = {}
        self._connections: list[Connection] = []
        self._variables: dict[str, object] = dict(variables or {})
        self._forward: dict[str, tuple[str, ...]] | None = None
        self._reverse: dict[str, tuple[str, ...]] | None = None

        for node in nodes:
            self.add_node(node)
        for connection in connections:
            self.add_connection(connection)

    # -- reads -----------------------------------------------------------------

    @property
    def nodes(self) -> Mapping[str, Node]:
        return MappingProxyType(self._nodes)

    @property
    def connections(self) -> tuple[Connection, ...]:
        return tuple(self._connections)

    @property
    def variables(self) -> Mapping[str, object]:
        return MappingProxyType(self._variables)

    def node_ids(self) -> list[str]:
        """All node ids in ascending order."""

        return sorted(self._nodes)

    def get_node(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Unknown node: {node_id}") from None

    def triggers(self) -> list[str]:
        return sorted(n.id for n in self._nodes.values() if n.kind is NodeKind.TRIGGER)

    def successors(self, node_id: str) -> tuple[str, ...]:
        """Distinct targets of edges leaving `node_id`, ascending."""

        return self._forward_index().get(node_id, ())

    def predecessors(self, node_id: str) -> tuple[str, ...]:
        """Distinct sources of edges entering `node_id`, ascending."""

        return self._reverse_index().get(node_id, ())

    def in_degree(self, node_id: str) -> int:
        return len(self.predecessors(node_id))

    def out_degree(self, node_id: str) -> int:
        return len(self.successors(node_id))

    def dangling_connections(self) -> list[Connection]:
        return [
            c for c in self._connections if c.source not in self._nodes or c.target not in self._nodes
        ]

    def reachable_from_triggers(self) -> set[str]:
        """Node ids reachable from any trigger, triggers included."""

        seen: set[str] = set()
        queue = deque(self.triggers())
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(
                s for s in self.successors(current) if s not in seen and s in self._nodes
            )
        return seen

    def ancestors(self, node_id: str) -> set[str]:
        """Transitive predecessors of `node_id` (excluding itself unless on a cycle)."""

        return self._walk(node_id, self.predecessors)

    def descendants(self, node_id: str) -> set[str]:
        """Transitive successors of `node_id` (excluding itself unless on a cycle)."""

        return self._walk(node_id, self.successors)

    def fingerprint(self) -> str:
        """Stable content hash of everything that affects planning.

        Layout (`position`) and display text are left out so that dragging a node
        around does not invalidate a cached plan.
        """

        payload = {
            "nodes": [
                self._nodes[node_id].model_dump(
                    mode="json", exclude={"position", "name", "description"}
                )
                for node_id in self.node_ids()
            ],
            "connections": sorted(
                (c.id, c.source, c.target) for c in self._connections
            ),
            "variables": self._variables,
        }
        blob = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    # -- writes ----------------------------------------------------------------

    def add_node(self, node: Node) -> None:
        if node.id in self._nodes:
            raise ValueError(f"Duplicate node id: {node.id}")
        self._nodes[node.id] = node
        logger.debug("Node added", extra={"workflow_id": self.workflow_id, "node_id": node.id})

    def replace_node(self, node: Node) -> Node:
        """Swap in a new definition for an existing node id; returns the previous one."""

        previous = self.get_node(node.id)
        self._nodes[node.id] = node
        return previous

    def remove_node(self, node_id: str) -> Node:
        """Remove a node together with every connection touching it."""

        node = self._nodes.pop(node_id, None)
        if node is None:
            raise KeyError(f"Unknown node: {node_id}")
        self._connections = [
            c for c in self._connections if c.source != node_id and c.target != node_id
        ]
        self._invalidate()
        logger.debug("Node removed", extra={"workflow_id": self.workflow_id, "node_id": node_id})
        return node

    def add_connection(self, connection: Connection) -> None:
        if any(c.id == connection.id for c in self._connections):
            raise ValueError(f"Duplicate connection id: {connection.id}")
        self._connections.append(connection)
        self._invalidate()

    def connect(
        self,
        source: str,
        target: str,
        *,
        connection_id: str | None = None,
        condition: str | None = None,
    ) -> Connection:
        """Add an edge, generating an id of the form `source->target` when none is given."""

        connection = Connection(
            id=connection_id or f"{source}->{target}",
            source=source,
            target=target,
            condition=condition,
        )
        self.add_connection(connection)
        return connection

    def remove_connection(self, connection_id: str) -> Connection:
        for idx, connection in enumerate(self._connections):
            if connection.id == connection_id:
                del self._connections[idx]
                self._invalidate()
                return connection
        raise KeyError(f"Unknown connection: {connection_id}")

    def set_variable(self, name: str, value: object) -> None:
        self._variables[name] = value

    def remove_variable(self, name: str) -> None:
        self._variables.pop(name, None)

    def copy(self) -> WorkflowGraph:
        return WorkflowGraph(
            workflow_id=self.workflow_id,
            name=self.name,
            description=self.description,
            nodes=self._nodes.values(),
            connections=self._connections,
            variables=self._variables,
        )

    # -- internals -------------------------------------------------------------

    def _invalidate(self) -> None:
        self._forward = None
        self._reverse = None

    def _forward_index(self) -> dict[str, tuple[str, ...]]:
        if self._forward is None:
            self._forward = _index(self._connections, reverse=False)
        return self._forward

    def _reverse_index(self) -> dict[str, tuple[str, ...]]:
        if self._reverse is None:
            self._reverse = _index(self._connections, reverse=True)
        return self._reverse

    @staticmethod
    def _walk(start: str, step: Callable[[str], tuple[str, ...]]) -> set[str]:
        seen: set[str] = set()
        stack = list(step(start))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(step(current))
        return seen


def _index(connections: Iterable[Connection], *, reverse: bool) -> dict[str, tuple[str, ...]]:
    grouped: dict[str, set[str]] = {}
    for c in connections:
        key, value = (c.target, c.source) if reverse else (c.source, c.target)
        grouped.setdefault(key, set()).add(value)
    return {key: tuple(sorted(values)) for key, values in grouped.items()}
