"""Editing session and the re-plan pipeline.

Every structural edit re-runs validate -> resolve bindings -> plan -> aggregate.
When an edit leaves the graph with fatal errors, the previous valid plan is kept
so the editor can keep showing (and simulating) it.

The session is the single writer of its graph. Readers get immutable
`PlanSnapshot`s and graph copies, so a UI re-render and a background re-plan can
look at the same session concurrently.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from chaincron_composer.composer.config import ComposerSettings
from chaincron_composer.composer.execution.executor import DryRunExecutor, StepExecutor
from chaincron_composer.composer.execution.results import RunMode, RunResult
from chaincron_composer.composer.execution.runner import Simulator
from chaincron_composer.composer.graph.flow import Bindings, FlowError, resolve_bindings
from chaincron_composer.composer.graph.model import Connection, Node, Position, WorkflowGraph
from chaincron_composer.composer.graph.validator import ValidationResult, validate
from chaincron_composer.composer.planning.estimates import (
    Estimator,
    PlanEstimate,
    aggregate,
    collect_estimates,
)
from chaincron_composer.composer.planning.planner import ExecutionPlan, PlanError, plan

logger = logging.getLogger(__name__)


class NoValidPlanError(RuntimeError):
    """Raised when a run is requested before the workflow has ever planned cleanly."""


@dataclass(frozen=True, slots=True)
class PlanSnapshot:
    """Result of one pass of the re-plan pipeline."""

    fingerprint: str
    validation: ValidationResult
    flow_errors: tuple[FlowError, ...] = ()
    bindings: Bindings | None = None
    plan: ExecutionPlan | None = None
    plan_errors: tuple[PlanError, ...] = ()
    estimate: PlanEstimate | None = None
    # Copy of the graph the plan was computed from; runs execute against it.
    graph: WorkflowGraph | None = field(default=None, compare=False, repr=False)

    @property
    def plannable(self) -> bool:
        return self.plan is not None


def replan(graph: WorkflowGraph, estimator: Estimator) -> PlanSnapshot:
    """Run the full pipeline once over `graph`."""

    fingerprint = graph.fingerprint()
    validation = validate(graph)
    if not validation.is_valid:
        return PlanSnapshot(fingerprint=fingerprint, validation=validation)

    bindings, flow_errors = resolve_bindings(graph)
    if flow_errors:
        return PlanSnapshot(
            fingerprint=fingerprint,
            validation=validation,
            flow_errors=tuple(flow_errors),
            bindings=bindings,
        )

    execution_plan, notes = plan(graph, bindings)
    estimate = aggregate(execution_plan, collect_estimates(execution_plan, graph, estimator))
    return PlanSnapshot(
        fingerprint=fingerprint,
        validation=validation,
        bindings=bindings,
        plan=execution_plan,
        plan_errors=tuple(notes),
        estimate=estimate,
        graph=graph.copy(),
    )


Listener = Callable[[PlanSnapshot], None]


class WorkflowSession:
    """Own one workflow graph and keep its plan current."""

    def __init__(
        self,
        graph: WorkflowGraph,
        *,
        estimator: Estimator | None = None,
        settings: ComposerSettings | None = None,
    ) -> None:
        self.settings = settings or ComposerSettings()
        self._lock = threading.RLock()
        self._graph = graph.copy()
        self._estimator: Estimator = estimator or DryRunExecutor(
            default_chain=self.settings.default_chain
        )
        self._listeners: list[Listener] = []
        self._last_valid: PlanSnapshot | None = None
        self._latest = self._compute()

    # -- reads -----------------------------------------------------------------

    @property
    def graph(self) -> WorkflowGraph:
        """A copy of the current graph; edit through the session instead."""

        with self._lock:
            return self._graph.copy()

    @property
    def latest(self) -> PlanSnapshot:
        return self._latest

    @property
    def last_valid(self) -> PlanSnapshot | None:
        return self._last_valid

    def subscribe(self, listener: Listener) -> None:
        """Call `listener` with every new snapshot produced by a re-plan."""

        with self._lock:
            self._listeners.append(listener)

    # -- edits -----------------------------------------------------------------

    def add_node(self, node: Node) -> PlanSnapshot:
        with self._lock:
            self._graph.add_node(node)
            return self._replan()

    def update_node(self, node: Node) -> PlanSnapshot:
        with self._lock:
            self._graph.replace_node(node)
            return self._replan()

    def move_node(self, node_id: str, x: float, y: float) -> None:
        """Layout-only edit; never triggers a re-plan."""

        with self._lock:
            node = self._graph.get_node(node_id)
            self._graph.replace_node(node.model_copy(update={"position": Position(x=x, y=y)}))

    def remove_node(self, node_id: str) -> PlanSnapshot:
        with self._lock:
            self._graph.remove_node(node_id)
            return self._replan()

    def connect(
        self,
        source: str,
        target: str,
        *,
        connection_id: str | None = None,
        condition: str | None = None,
    ) -> tuple[Connection, PlanSnapshot]:
        with self._lock:
            connection = self._graph.connect(
                source, target, connection_id=connection_id, condition=condition
            )
            return connection, self._replan()

    def disconnect(self, connection_id: str) -> PlanSnapshot:
        with self._lock:
            self._graph.remove_connection(connection_id)
            return self._replan()

    def set_variable(self, name: str, value: object) -> PlanSnapshot:
        with self._lock:
            self._graph.set_variable(name, value)
            return self._replan()

    def remove_variable(self, name: str) -> PlanSnapshot:
        with self._lock:
            self._graph.remove_variable(name)
            return self._replan()

    # -- runs ------------------------------------------------------------------

    async def run(
        self, mode: RunMode = RunMode.DRY_RUN, executor: StepExecutor | None = None
    ) -> RunResult:
        """Run the latest valid plan.

        Raises:
            NoValidPlanError: If the workflow has never planned without fatal errors.
        """
        snapshot = self._last_valid
        if snapshot is None or snapshot.plan is None or snapshot.graph is None:
            raise NoValidPlanError(f"Workflow {self._graph.workflow_id} has no valid plan")
        simulator = Simulator(
            snapshot.graph,
            cancel_grace_ms=self.settings.cancel_grace_ms,
            default_timeout_ms=self.settings.default_timeout_ms,
        )
        return await simulator.run(snapshot.plan, mode=mode, executor=executor)

    # -- internals -------------------------------------------------------------

    def _replan(self) -> PlanSnapshot:
        if self._graph.fingerprint() == self._latest.fingerprint:
            self._refresh_display_text()
            return self._latest
        self._latest = self._compute()
        for listener in list(self._listeners):
            listener(self._latest)
        return self._latest

    def _refresh_display_text(self) -> None:
        # Display-only edits keep the plan; only the graph copy is refreshed.
        cached = self._latest.graph
        if cached is None or _display_text(cached) == _display_text(self._graph):
            return
        refreshed = replace(self._latest, graph=self._graph.copy())
        if self._last_valid is self._latest:
            self._last_valid = refreshed
        self._latest = refreshed

    def _compute(self) -> PlanSnapshot:
        snapshot = replan(self._graph, self._estimator)
        if snapshot.plannable:
            self._last_valid = snapshot
        else:
            logger.info(
                "Re-plan blocked; keeping previous plan",
                extra={
                    "workflow_id": self._graph.workflow_id,
                    "graph_errors": len(snapshot.validation.errors),
                    "flow_errors": len(snapshot.flow_errors),
                    "has_previous_plan": self._last_valid is not None,
                },
            )
        return snapshot


def _display_text(graph: WorkflowGraph) -> tuple[object, ...]:
    return (
        graph.name,
        graph.description,
        tuple((node.id, node.name, node.description) for node in graph.nodes.values()),
        tuple((c.id, c.condition) for c in graph.connections),
    )
