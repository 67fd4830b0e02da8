"""Unit tests for the editing session and re-plan pipeline."""

from __future__ import annotations

import asyncio

import pytest

from chaincron_composer.composer.config import ComposerSettings
from chaincron_composer.composer.execution.results import RunStatus
from chaincron_composer.composer.graph.flow import FlowErrorKind
from chaincron_composer.composer.graph.model import Node, Variable, WorkflowGraph
from chaincron_composer.composer.graph.parameters import NodeKind, VarType
from chaincron_composer.composer.graph.validator import GraphErrorKind
from chaincron_composer.composer.planning.session import (
    NoValidPlanError,
    PlanSnapshot,
    WorkflowSession,
)


def test_empty_session_has_no_plan(composer_settings: ComposerSettings) -> None:
    session = WorkflowSession(WorkflowGraph(workflow_id="wf"), settings=composer_settings)

    assert not session.latest.plannable
    assert session.last_valid is None
    with pytest.raises(NoValidPlanError):
        asyncio.run(session.run())


def test_building_a_workflow_edit_by_edit(composer_settings: ComposerSettings) -> None:
    session = WorkflowSession(WorkflowGraph(workflow_id="wf"), settings=composer_settings)
    session.add_node(
        Node(
            id="trigger1",
            kind=NodeKind.TRIGGER,
            declared_outputs=(Variable(name="price", type=VarType.NUMERIC),),
        )
    )
    session.add_node(
        Node(id="output1", kind=NodeKind.OUTPUT, parameters={"message": "Price {{price}}"})
    )
    _, snapshot = session.connect("trigger1", "output1")

    assert snapshot.plannable
    assert snapshot.plan is not None
    assert snapshot.plan.stages == (("trigger1",), ("output1",))
    assert snapshot.estimate is not None
    assert snapshot.estimate.formatted_gas() == "0 FLOW"
    assert session.last_valid is snapshot


def test_fatal_edit_keeps_previous_plan(
    linear_workflow: WorkflowGraph, composer_settings: ComposerSettings
) -> None:
    session = WorkflowSession(linear_workflow, settings=composer_settings)
    valid = session.latest
    assert valid.plannable

    _, broken = session.connect("output1", "action1")

    assert not broken.plannable
    assert [e.kind for e in broken.validation.errors] == [GraphErrorKind.CYCLE]
    assert session.latest is broken
    assert session.last_valid is valid

    run = asyncio.run(session.run())
    assert run.overall_status is RunStatus.SUCCEEDED
    assert [r.node_id for r in run.results] == ["trigger1", "action1", "output1"]


def test_flow_errors_block_planning(
    linear_workflow: WorkflowGraph, composer_settings: ComposerSettings
) -> None:
    session = WorkflowSession(linear_workflow, settings=composer_settings)
    snapshot = session.update_node(
        Node(id="output1", kind=NodeKind.OUTPUT, parameters={"message": "{{missing}}"})
    )

    assert not snapshot.plannable
    assert [e.kind for e in snapshot.flow_errors] == [FlowErrorKind.UNKNOWN_VARIABLE]
    assert session.last_valid is not None and session.last_valid.plannable


def test_moves_do_not_replan(
    linear_workflow: WorkflowGraph, composer_settings: ComposerSettings
) -> None:
    session = WorkflowSession(linear_workflow, settings=composer_settings)
    seen: list[PlanSnapshot] = []
    session.subscribe(seen.append)
    before = session.latest

    session.move_node("action1", 120.0, 80.0)

    assert session.latest is before
    assert seen == []
    assert session.graph.get_node("action1").position.x == 120.0


def test_unchanged_content_hits_the_cache(
    linear_workflow: WorkflowGraph, composer_settings: ComposerSettings
) -> None:
    linear_workflow.set_variable("budget", 10)
    session = WorkflowSession(linear_workflow, settings=composer_settings)
    seen: list[PlanSnapshot] = []
    session.subscribe(seen.append)
    before = session.latest

    assert session.set_variable("budget", 10) is before
    assert seen == []

    after = session.set_variable("budget", 20)
    assert after is not before
    assert seen == [after]


def test_rename_refreshes_the_cached_graph_copy(
    linear_workflow: WorkflowGraph, composer_settings: ComposerSettings
) -> None:
    session = WorkflowSession(linear_workflow, settings=composer_settings)
    before = session.latest
    node = session.graph.get_node("action1")

    after = session.update_node(node.model_copy(update={"name": "Stake rewards"}))

    assert after.fingerprint == before.fingerprint
    assert after.plan == before.plan
    assert after.graph is not None
    assert after.graph.get_node("action1").name == "Stake rewards"
    assert session.last_valid is after


def test_graph_reads_are_copies(
    linear_workflow: WorkflowGraph, composer_settings: ComposerSettings
) -> None:
    session = WorkflowSession(linear_workflow, settings=composer_settings)
    session.graph.remove_node("output1")
    assert "output1" in session.graph.nodes

    session.remove_node("output1")
    assert "output1" not in session.graph.nodes
