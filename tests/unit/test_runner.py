"""Unit tests for stage-by-stage plan execution."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from decimal import Decimal

import pytest

from chaincron_composer.composer.execution.executor import StepExecutor, StepOutput
from chaincron_composer.composer.execution.results import RunMode, RunStatus, StepStatus
from chaincron_composer.composer.execution.runner import Simulator
from chaincron_composer.composer.graph.model import Node, OnError, Variable, WorkflowGraph
from chaincron_composer.composer.graph.parameters import NodeKind, VarType
from chaincron_composer.composer.planning.estimates import GasEstimate
from chaincron_composer.composer.planning.planner import plan


class ScriptedExecutor(StepExecutor):
    """Executor whose behaviour per node id is set up by the test."""

    def __init__(
        self,
        *,
        outputs: Mapping[str, Mapping[str, object]] | None = None,
        fail: set[str] | None = None,
        hang: set[str] | None = None,
        stubborn: set[str] | None = None,
    ) -> None:
        super().__init__()
        self.outputs = outputs or {}
        self.fail = fail or set()
        self.hang = hang or set()
        self.stubborn = stubborn or set()
        self.calls: dict[str, Node] = {}
        self.inputs: dict[str, Mapping[str, object]] = {}

    async def execute(self, node: Node, inputs: Mapping[str, object]) -> StepOutput:
        self.calls[node.id] = node
        self.inputs[node.id] = inputs
        if node.id in self.fail:
            raise RuntimeError(f"{node.id} reverted")
        if node.id in self.hang:
            await asyncio.sleep(10)
        if node.id in self.stubborn:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 0.3
            while loop.time() < deadline:
                try:
                    await asyncio.sleep(0.02)
                except asyncio.CancelledError:
                    continue
        return StepOutput(outputs=dict(self.outputs.get(node.id, {})), gas_used=Decimal("0.001"))


def _set(graph: WorkflowGraph, node_id: str, **update: object) -> None:
    graph.replace_node(graph.get_node(node_id).model_copy(update=update))


def _run(graph: WorkflowGraph, executor: StepExecutor | None = None, **kwargs: object):
    """Dry-run without an executor, otherwise run live against the scripted one."""
    simulator = Simulator(graph, cancel_grace_ms=50, **kwargs)
    execution_plan, _ = plan(graph)
    mode = RunMode.DRY_RUN if executor is None else RunMode.LIVE

    async def scenario():
        run = await simulator.run(execution_plan, mode=mode, executor=executor)
        return run, simulator.background_steps

    return asyncio.run(scenario())


def test_dry_run_succeeds_with_mock_outputs(linear_workflow: WorkflowGraph) -> None:
    run, _ = _run(linear_workflow)

    assert run.mode is RunMode.DRY_RUN
    assert run.overall_status is RunStatus.SUCCEEDED
    assert [r.node_id for r in run.results] == ["trigger1", "action1", "output1"]
    assert run.result_for("trigger1").outputs == {"price": 0}
    assert run.result_for("action1").gas_used == Decimal("0.002")


def test_live_run_requires_an_executor(linear_workflow: WorkflowGraph) -> None:
    simulator = Simulator(linear_workflow)
    execution_plan, _ = plan(linear_workflow)
    with pytest.raises(ValueError):
        asyncio.run(simulator.run(execution_plan, mode=RunMode.LIVE))


def test_outputs_flow_into_later_stages(linear_workflow: WorkflowGraph) -> None:
    executor = ScriptedExecutor(
        outputs={"trigger1": {"price": 1.5}, "action1": {"profit": 0.25}}
    )
    run, _ = _run(linear_workflow, executor)

    assert run.overall_status is RunStatus.SUCCEEDED
    # Whole-value references keep the producer's value and type.
    assert executor.calls["action1"].parameters["amount"] == 1.5
    assert executor.calls["output1"].parameters["message"] == "Earned 0.25"

    seen = executor.inputs["output1"]
    assert seen["action1.profit"] == 0.25
    assert seen["profit"] == 0.25
    assert seen["trigger1.price"] == 1.5
    with pytest.raises(TypeError):
        seen["profit"] = 1  # type: ignore[index]


def test_undeclared_outputs_are_not_published(linear_workflow: WorkflowGraph) -> None:
    executor = ScriptedExecutor(outputs={"trigger1": {"price": 2, "secret": "x"}})
    _run(linear_workflow, executor)
    assert "secret" not in executor.inputs["action1"]
    assert "trigger1.secret" not in executor.inputs["output1"]


def test_abort_cancels_siblings_and_skips_the_rest(fan_out_workflow: WorkflowGraph) -> None:
    executor = ScriptedExecutor(fail={"action1"}, hang={"action2"})
    run, background = _run(fan_out_workflow, executor)

    assert run.statuses() == {
        "trigger1": StepStatus.SUCCEEDED,
        "action1": StepStatus.FAILED,
        "action2": StepStatus.SKIPPED,
        "output1": StepStatus.SKIPPED,
    }
    assert run.overall_status is RunStatus.FAILED
    assert run.result_for("action1").error == "RuntimeError: action1 reverted"
    assert "output1" not in executor.calls
    assert background == 0


def test_sibling_ignoring_cancellation_runs_in_background(
    fan_out_workflow: WorkflowGraph,
) -> None:
    executor = ScriptedExecutor(fail={"action1"}, stubborn={"action2"})
    run, background = _run(fan_out_workflow, executor)

    assert run.result_for("action2").status is StepStatus.RUNNING_IN_BACKGROUND
    assert run.result_for("action2").status.skipped
    assert run.result_for("output1").status is StepStatus.SKIPPED
    assert background == 1


def test_skip_downstream_only_blocks_descendants() -> None:
    graph = WorkflowGraph(
        workflow_id="wf",
        nodes=[
            Node(id="trigger1", kind=NodeKind.TRIGGER),
            Node(id="action1", kind=NodeKind.ACTION, on_error=OnError.SKIP_DOWNSTREAM),
            Node(id="action2", kind=NodeKind.ACTION),
            Node(id="output1", kind=NodeKind.OUTPUT),
            Node(id="output2", kind=NodeKind.OUTPUT),
        ],
    )
    for source, target in [
        ("trigger1", "action1"),
        ("trigger1", "action2"),
        ("action1", "output1"),
        ("action2", "output2"),
    ]:
        graph.connect(source, target)

    run, _ = _run(graph, ScriptedExecutor(fail={"action1"}))

    assert run.statuses() == {
        "trigger1": StepStatus.SUCCEEDED,
        "action1": StepStatus.FAILED,
        "action2": StepStatus.SUCCEEDED,
        "output1": StepStatus.SKIPPED,
        "output2": StepStatus.SUCCEEDED,
    }
    assert run.result_for("output1").error == "Upstream step action1 failed"


def test_continue_policy_keeps_going(fan_out_workflow: WorkflowGraph) -> None:
    _set(fan_out_workflow, "action1", on_error=OnError.CONTINUE)
    run, _ = _run(fan_out_workflow, ScriptedExecutor(fail={"action1"}))

    assert run.result_for("action2").status is StepStatus.SUCCEEDED
    assert run.result_for("output1").status is StepStatus.SUCCEEDED
    assert run.overall_status is RunStatus.FAILED


def test_timeout_counts_as_failure(linear_workflow: WorkflowGraph) -> None:
    _set(linear_workflow, "action1", timeout_ms=30)
    run, _ = _run(linear_workflow, ScriptedExecutor(hang={"action1"}))

    result = run.result_for("action1")
    assert result.status is StepStatus.FAILED
    assert result.error == "Timed out after 30 ms"
    assert run.result_for("output1").status is StepStatus.SKIPPED


def test_default_timeout_applies_when_node_has_none(linear_workflow: WorkflowGraph) -> None:
    run, _ = _run(linear_workflow, ScriptedExecutor(hang={"trigger1"}), default_timeout_ms=30)
    assert run.result_for("trigger1").error == "Timed out after 30 ms"


def test_simulator_runs_against_a_snapshot(linear_workflow: WorkflowGraph) -> None:
    simulator = Simulator(linear_workflow)
    execution_plan, _ = plan(linear_workflow)
    linear_workflow.remove_node("output1")

    run = simulator.run_sync(execution_plan)
    assert run.overall_status is RunStatus.SUCCEEDED
    assert run.result_for("output1").status is StepStatus.SUCCEEDED


def test_step_result_json_uses_wire_names(linear_workflow: WorkflowGraph) -> None:
    run, _ = _run(linear_workflow)
    payload = run.result_for("action1").to_json()
    assert payload["nodeId"] == "action1"
    assert payload["status"] == "succeeded"
    assert payload["gasUsed"] == "0.002"
    assert "error" not in payload


class _NoneExecutor(ScriptedExecutor):
    async def execute(self, node: Node, inputs: Mapping[str, object]) -> StepOutput:
        if node.id == "action1":
            return None  # type: ignore[return-value]
        return await super().execute(node, inputs)


def test_malformed_executor_output_fails_the_step(linear_workflow: WorkflowGraph) -> None:
    run, _ = _run(linear_workflow, _NoneExecutor())

    result = run.result_for("action1")
    assert result.status is StepStatus.FAILED
    assert result.error == "Executor returned NoneType, expected StepOutput"
    assert run.result_for("output1").status is StepStatus.SKIPPED
    assert run.overall_status is RunStatus.FAILED


class _PricedExecutor(ScriptedExecutor):
    def estimate_cost(self, node: Node) -> GasEstimate:
        return GasEstimate(chain="polygon", amount=Decimal("0.5"))


def test_dry_run_never_calls_the_supplied_executor(linear_workflow: WorkflowGraph) -> None:
    executor = _PricedExecutor()
    simulator = Simulator(linear_workflow)
    execution_plan, _ = plan(linear_workflow)

    run = simulator.run_sync(execution_plan, mode=RunMode.DRY_RUN, executor=executor)

    assert executor.calls == {}
    assert run.overall_status is RunStatus.SUCCEEDED
    # Estimates still come from the supplied executor.
    assert run.result_for("action1").gas_used == Decimal("0.5")
    assert run.result_for("trigger1").outputs == {"price": 0}


@pytest.fixture
def gated_workflow() -> WorkflowGraph:
    """trigger1 -> condition1 (price >= 100) -> output1."""
    graph = WorkflowGraph(
        workflow_id="wf-gated",
        nodes=[
            Node(
                id="trigger1",
                kind=NodeKind.TRIGGER,
                declared_outputs=(Variable(name="price", type=VarType.NUMERIC),),
            ),
            Node(
                id="condition1",
                kind=NodeKind.CONDITION,
                parameters={"value": "{{price}}", "operator": ">=", "threshold": 100},
            ),
            Node(id="output1", kind=NodeKind.OUTPUT, parameters={"message": "Price is {{price}}"}),
        ],
    )
    graph.connect("trigger1", "condition1")
    graph.connect("condition1", "output1")
    return graph


def test_condition_met_lets_downstream_run(gated_workflow: WorkflowGraph) -> None:
    executor = ScriptedExecutor(outputs={"trigger1": {"price": 150}})
    run, _ = _run(gated_workflow, executor)

    assert run.result_for("condition1").condition_met is True
    assert run.result_for("output1").status is StepStatus.SUCCEEDED
    assert executor.calls["output1"].parameters["message"] == "Price is 150"


def test_false_condition_skips_downstream_without_failing(
    gated_workflow: WorkflowGraph,
) -> None:
    executor = ScriptedExecutor(outputs={"trigger1": {"price": 42}})
    run, _ = _run(gated_workflow, executor)

    condition = run.result_for("condition1")
    assert condition.status is StepStatus.SUCCEEDED
    assert condition.condition_met is False
    assert condition.to_json()["conditionMet"] is False
    assert run.result_for("output1").status is StepStatus.SKIPPED
    assert run.result_for("output1").error == "Condition condition1 not met"
    assert "output1" not in executor.calls
    assert run.overall_status is RunStatus.SUCCEEDED


def test_non_numeric_condition_operand_fails(gated_workflow: WorkflowGraph) -> None:
    run, _ = _run(gated_workflow, ScriptedExecutor(outputs={"trigger1": {"price": "n/a"}}))

    result = run.result_for("condition1")
    assert result.status is StepStatus.FAILED
    assert result.error == "Condition value must be numeric, got 'n/a'"
    assert run.result_for("output1").status is StepStatus.SKIPPED
