"""Unit tests for variable flow resolution."""

from __future__ import annotations

from chaincron_composer.composer.graph.flow import FlowErrorKind, resolve_bindings
from chaincron_composer.composer.graph.model import Node, Variable, WorkflowGraph
from chaincron_composer.composer.graph.parameters import NodeKind, VariableRef, VarType


def _with_params(graph: WorkflowGraph, node_id: str, **params: object) -> None:
    node = graph.get_node(node_id)
    data = node.model_dump()
    data["parameters"] = {**node.parameters, **params}
    graph.replace_node(Node.model_validate(data))


def _keys(graph: WorkflowGraph) -> dict[str, set[str]]:
    bindings, _ = resolve_bindings(graph)
    return {node_id: {v.key for v in bindings.for_node(node_id)} for node_id in graph.node_ids()}


def test_visible_variables_come_from_ancestors(linear_workflow: WorkflowGraph) -> None:
    bindings, errors = resolve_bindings(linear_workflow)

    assert errors == []
    assert bindings.for_node("trigger1") == ()
    assert [v.key for v in bindings.for_node("output1")] == ["action1.profit", "trigger1.price"]
    assert [v.key for v in bindings.for_node("action1")] == ["trigger1.price"]


def test_type_mismatch_on_whole_value_reference(linear_workflow: WorkflowGraph) -> None:
    _with_params(linear_workflow, "action1", recipient="{{price}}")
    _, errors = resolve_bindings(linear_workflow)

    assert [(e.kind, e.node_id, e.parameter) for e in errors] == [
        (FlowErrorKind.TYPE_MISMATCH, "action1", "recipient")
    ]
    assert "expects address" in errors[0].message


def test_embedded_reference_is_only_checked_for_existence(linear_workflow: WorkflowGraph) -> None:
    _with_params(linear_workflow, "output1", message="Price {{price}}, profit {{profit}}")
    _, errors = resolve_bindings(linear_workflow)
    assert errors == []


def test_unknown_variable_from_a_sibling(fan_out_workflow: WorkflowGraph) -> None:
    _with_params(fan_out_workflow, "action2", amount="{{staked}}")
    _, errors = resolve_bindings(fan_out_workflow)

    assert len(errors) == 1
    assert errors[0].kind is FlowErrorKind.UNKNOWN_VARIABLE
    assert errors[0].node_ids == ("action2",)
    assert "produced by action1, which does not run before action2" in errors[0].message


def test_all_flow_errors_are_reported_at_once(fan_out_workflow: WorkflowGraph) -> None:
    _with_params(fan_out_workflow, "action2", amount="{{staked}}")
    _with_params(fan_out_workflow, "output1", channel="{{nowhere}}")
    _, errors = resolve_bindings(fan_out_workflow)
    assert sorted(e.node_id for e in errors) == ["action2", "output1"]


def test_closest_producer_shadows_for_bare_names() -> None:
    graph = WorkflowGraph(
        workflow_id="wf",
        nodes=[
            Node(
                id="trigger1",
                kind=NodeKind.TRIGGER,
                declared_outputs=(Variable(name="price", type=VarType.NUMERIC),),
            ),
            Node(
                id="action1",
                kind=NodeKind.ACTION,
                declared_outputs=(Variable(name="price", type=VarType.NUMERIC),),
            ),
            Node(id="output1", kind=NodeKind.OUTPUT, parameters={"note": "{{price}}"}),
        ],
    )
    graph.connect("trigger1", "action1")
    graph.connect("action1", "output1")
    bindings, errors = resolve_bindings(graph)

    assert errors == []
    (bare,) = bindings.resolve("output1", VariableRef(name="price"))
    assert bare.producer_id == "action1"
    (qualified,) = bindings.resolve("output1", VariableRef(name="price", producer_id="trigger1"))
    assert qualified.shadowed is True


def test_independent_producers_are_ambiguous(fan_out_workflow: WorkflowGraph) -> None:
    for node_id in ("action1", "action2"):
        node = fan_out_workflow.get_node(node_id)
        fan_out_workflow.replace_node(
            node.model_copy(
                update={"declared_outputs": (Variable(name="amount", type=VarType.NUMERIC),)}
            )
        )
    _with_params(fan_out_workflow, "output1", note="{{amount}}")
    _, errors = resolve_bindings(fan_out_workflow)

    assert [e.kind for e in errors] == [FlowErrorKind.AMBIGUOUS_VARIABLE]

    _with_params(fan_out_workflow, "output1", note="{{action2.amount}}")
    assert resolve_bindings(fan_out_workflow)[1] == []


def test_workflow_variables_are_visible_everywhere(linear_workflow: WorkflowGraph) -> None:
    linear_workflow.set_variable("budget", 250)
    linear_workflow.set_variable("profit", 1)
    bindings, _ = resolve_bindings(linear_workflow)

    trigger_vars = {v.key: v for v in bindings.for_node("trigger1")}
    assert trigger_vars["budget"].type is VarType.NUMERIC
    assert trigger_vars["profit"].shadowed is False

    output_vars = {v.key: v for v in bindings.for_node("output1")}
    # action1 produces `profit`, so the workflow-level value is shadowed downstream.
    assert output_vars["profit"].shadowed is True
    assert output_vars["action1.profit"].shadowed is False


def test_adding_an_edge_never_hides_a_variable() -> None:
    graph = WorkflowGraph(
        workflow_id="wf",
        nodes=[
            Node(
                id="trigger1",
                kind=NodeKind.TRIGGER,
                declared_outputs=(Variable(name="price", type=VarType.NUMERIC),),
            ),
            Node(
                id="action1",
                kind=NodeKind.ACTION,
                declared_outputs=(Variable(name="price", type=VarType.NUMERIC),),
            ),
            Node(
                id="action2",
                kind=NodeKind.ACTION,
                declared_outputs=(Variable(name="tx", type=VarType.STRING),),
            ),
            Node(id="output1", kind=NodeKind.OUTPUT),
            Node(
                id="stray",
                kind=NodeKind.ACTION,
                declared_outputs=(Variable(name="seed", type=VarType.STRING),),
            ),
        ],
        variables={"price": 1},
    )
    graph.connect("trigger1", "action1")
    # Unreachable producer upstream of action2; never visible, before or after.
    graph.connect("stray", "action2")
    graph.connect("trigger1", "output1")

    for source, target in [("action1", "output1"), ("trigger1", "action2"), ("action2", "output1")]:
        before = _keys(graph)
        graph.connect(source, target)
        after = _keys(graph)
        for node_id, keys in before.items():
            assert keys <= after[node_id], (source, target, node_id)
