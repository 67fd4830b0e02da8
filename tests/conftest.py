"""Test configuration and fixtures."""

from pathlib import Path

import pytest

from chaincron_composer.composer.config import ComposerSettings
from chaincron_composer.composer.graph.model import Node, Variable, WorkflowGraph
from chaincron_composer.composer.graph.parameters import NodeKind, VarType


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / "agent_state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def composer_settings(temp_state_dir: Path) -> ComposerSettings:
    """Provide composer settings that do not depend on the environment."""
    return ComposerSettings(
        LOG_LEVEL="DEBUG",
        CHAINCRON_WORKFLOWS_PATH=temp_state_dir / "workflows.json",
        CHAINCRON_DEFAULT_CHAIN="flow",
        CHAINCRON_CANCEL_GRACE_MS=50,
    )


@pytest.fixture
def linear_graph() -> WorkflowGraph:
    """trigger1 -> action1 -> output1, with static estimate hints."""
    return WorkflowGraph(
        workflow_id="wf-linear",
        name="Auto compound",
        nodes=[
            Node(
                id="trigger1",
                kind=NodeKind.TRIGGER,
                parameters={"interval": "24h", "successRate": 1.0},
                declared_outputs=(Variable(name="price", type=VarType.NUMERIC),),
            ),
            Node(
                id="action1",
                kind=NodeKind.ACTION,
                parameters={
                    "protocol": "IncrementFi",
                    "amount": "{{price}}",
                    "chain": "flow",
                    "gasEstimate": "0.002",
                    "successRate": 0.985,
                },
                declared_outputs=(Variable(name="profit", type=VarType.NUMERIC),),
            ),
            Node(
                id="output1",
                kind=NodeKind.OUTPUT,
                parameters={"channel": "telegram", "message": "Earned {{profit}}"},
            ),
        ],
    )


def _with_edges(graph: WorkflowGraph, *edges: tuple[str, str]) -> WorkflowGraph:
    for source, target in edges:
        graph.connect(source, target)
    return graph


@pytest.fixture
def linear_workflow(linear_graph: WorkflowGraph) -> WorkflowGraph:
    return _with_edges(linear_graph, ("trigger1", "action1"), ("action1", "output1"))


@pytest.fixture
def fan_out_workflow() -> WorkflowGraph:
    """trigger1 -> {action1, action2} -> output1.

    Nodes are declared in reverse order so staging cannot lean on insertion order.
    """
    graph = WorkflowGraph(
        workflow_id="wf-fan-out",
        nodes=[
            Node(id="output1", kind=NodeKind.OUTPUT, parameters={"message": "done"}),
            Node(
                id="action2",
                kind=NodeKind.ACTION,
                parameters={"protocol": "swap"},
                declared_outputs=(Variable(name="received", type=VarType.NUMERIC),),
            ),
            Node(
                id="action1",
                kind=NodeKind.ACTION,
                parameters={"protocol": "stake"},
                declared_outputs=(Variable(name="staked", type=VarType.NUMERIC),),
            ),
            Node(id="trigger1", kind=NodeKind.TRIGGER, parameters={"interval": "1h"}),
        ],
    )
    return _with_edges(
        graph,
        ("trigger1", "action2"),
        ("trigger1", "action1"),
        ("action2", "output1"),
        ("action1", "output1"),
    )
