"""Persisted workflow document.

The document is the JSON unit exchanged with storage and with sharing features.
Keys are camelCase on the wire. Node `connections` and `status` are derived
views written for readers of the document; on load the top-level `connections`
list is the only source of edges.

Older documents may carry edges only as per-node adjacency lists. Those are
upgraded to canonical connections with ids of the form `from->to`.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chaincron_composer.composer.execution.results import RunResult
from chaincron_composer.composer.graph.model import (
    Connection,
    Node,
    OnError,
    Position,
    Variable,
    WorkflowGraph,
)
from chaincron_composer.composer.graph.parameters import NodeKind
from chaincron_composer.composer.planning.estimates import Estimator
from chaincron_composer.composer.planning.session import PlanSnapshot, replan

logger = logging.getLogger(__name__)

IDLE = "idle"


class ConnectionDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    source: str = Field(alias="from")
    target: str = Field(alias="to")
    condition: str | None = None


class NodeDocument(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: NodeKind
    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    position: Position = Field(default_factory=Position)
    connections: list[str] = Field(default_factory=list)
    status: str = IDLE

    outputs: list[Variable] = Field(default_factory=list)
    on_error: OnError = OnError.ABORT
    timeout_ms: int | None = None
    terminal: bool = False


class WorkflowDocument(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    nodes: list[NodeDocument] = Field(default_factory=list)
    connections: list[ConnectionDocument] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)

    # Derived on save; never trusted from the client.
    execution_plan: list[str] = Field(default_factory=list)
    estimated_gas: str = "0"
    success_rate: float = Field(default=0.0, ge=0, le=100)

    created_at: str | None = None
    updated_at: str | None = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def to_document(
    graph: WorkflowGraph,
    snapshot: PlanSnapshot | None = None,
    run: RunResult | None = None,
    *,
    created_at: str | None = None,
    updated_at: str | None = None,
) -> WorkflowDocument:
    """Serialize a graph plus its derived plan data.

    `snapshot` supplies `executionPlan`, `estimatedGas` and `successRate`; without
    a plannable snapshot those are left empty. `run` supplies per-node status.
    """

    statuses = run.statuses() if run is not None else {}
    nodes = [
        NodeDocument(
            id=node.id,
            type=node.kind,
            name=node.name,
            description=node.description,
            parameters=dict(node.parameters),
            position=node.position,
            connections=list(graph.successors(node.id)),
            status=statuses[node.id].value if node.id in statuses else IDLE,
            outputs=list(node.declared_outputs),
            on_error=node.on_error,
            timeout_ms=node.timeout_ms,
            terminal=node.terminal,
        )
        for node in graph.nodes.values()
    ]
    connections = [
        ConnectionDocument(id=c.id, source=c.source, target=c.target, condition=c.condition)
        for c in graph.connections
    ]

    doc = WorkflowDocument(
        id=graph.workflow_id,
        name=graph.name,
        description=graph.description,
        nodes=nodes,
        connections=connections,
        variables=dict(graph.variables),
        created_at=created_at,
        updated_at=updated_at,
    )
    if snapshot is not None and snapshot.plan is not None and snapshot.estimate is not None:
        doc.execution_plan = list(snapshot.plan.node_ids)
        doc.estimated_gas = snapshot.estimate.formatted_gas()
        doc.success_rate = snapshot.estimate.success_percent
    return doc


def from_document(doc: WorkflowDocument) -> WorkflowGraph:
    """Rebuild the graph a document describes.

    Raises:
        pydantic.ValidationError: If a node's parameters do not fit its kind.
        ValueError: If node or connection ids repeat.
    """

    nodes = [
        Node(
            id=item.id,
            kind=item.type,
            name=item.name,
            description=item.description,
            parameters=item.parameters,
            declared_outputs=tuple(item.outputs),
            position=item.position,
            on_error=item.on_error,
            timeout_ms=item.timeout_ms,
            terminal=item.terminal,
        )
        for item in doc.nodes
    ]

    adjacency = [(item.id, child) for item in doc.nodes for child in item.connections]
    if doc.connections:
        connections = [
            Connection(
                id=c.id or f"{c.source}->{c.target}",
                source=c.source,
                target=c.target,
                condition=c.condition,
            )
            for c in doc.connections
        ]
        canonical = {(c.source, c.target) for c in connections}
        drift = sorted(set(adjacency) - canonical)
        if drift:
            logger.warning(
                "Node adjacency disagrees with connections; using connections",
                extra={"workflow_id": doc.id, "ignored_edges": [f"{a}->{b}" for a, b in drift]},
            )
    else:
        connections = _upgrade_adjacency(adjacency)
        if connections:
            logger.info(
                "Upgraded legacy node adjacency to connections",
                extra={"workflow_id": doc.id, "connection_count": len(connections)},
            )

    return WorkflowGraph(
        workflow_id=doc.id,
        name=doc.name,
        description=doc.description,
        nodes=nodes,
        connections=connections,
        variables=doc.variables,
    )


def refresh_document(
    doc: WorkflowDocument, estimator: Estimator, run: RunResult | None = None
) -> tuple[WorkflowDocument, PlanSnapshot]:
    """Re-plan a document and rewrite its derived fields."""

    graph = from_document(doc)
    snapshot = replan(graph, estimator)
    refreshed = to_document(
        graph, snapshot, run, created_at=doc.created_at, updated_at=doc.updated_at
    )
    return refreshed, snapshot


def _upgrade_adjacency(pairs: list[tuple[str, str]]) -> list[Connection]:
    seen: set[tuple[str, str]] = set()
    out: list[Connection] = []
    for source, target in pairs:
        if (source, target) in seen:
            continue
        seen.add((source, target))
        out.append(Connection(id=f"{source}->{target}", source=source, target=target))
    return out
