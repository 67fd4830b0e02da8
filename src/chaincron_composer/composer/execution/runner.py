"""Stage-by-stage plan execution.

Nodes of one stage run as concurrent asyncio tasks; the runner waits for the
whole stage (a barrier) and merges the produced outputs into the binding table
before the next stage starts, so no node ever observes a half-finished producer.

Failure handling follows the failing node's `on_error` policy:

- `abort`: in-flight siblings are cancelled (best effort) and every node not yet
  started is skipped
- `skip-downstream`: the node's descendants are skipped, other branches proceed
- `continue`: the failure is recorded and nothing else changes

A condition node that compares `value` against `threshold` and finds it false
succeeds, but its descendants are skipped. Dry runs never call a live adapter:
the stub executor runs every step, and a supplied executor only provides the
estimates.

A node that ignores cancellation for longer than the grace period is reported as
running in the background; whatever it returns later is discarded. Timeouts are
failures like any other. Step failures never escape `run`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from types import MappingProxyType

from chaincron_composer.composer.execution.executor import DryRunExecutor, StepExecutor, StepOutput
from chaincron_composer.composer.execution.results import (
    RunMode,
    RunResult,
    StepResult,
    StepStatus,
)
from chaincron_composer.composer.graph.flow import Bindings, resolve_bindings
from chaincron_composer.composer.graph.model import Node, OnError, WorkflowGraph
from chaincron_composer.composer.graph.parameters import NodeKind, condition_holds, render_references
from chaincron_composer.composer.planning.planner import ExecutionPlan

logger = logging.getLogger(__name__)

_ValueKey = tuple[str | None, str]


class Simulator:
    """Run an execution plan against a snapshot of the graph it was planned from."""

    def __init__(
        self,
        graph: WorkflowGraph,
        *,
        cancel_grace_ms: int = 250,
        default_timeout_ms: int | None = None,
    ) -> None:
        self._graph = graph.copy()
        self._grace_s = cancel_grace_ms / 1000
        self._default_timeout_ms = default_timeout_ms
        self._background: set[asyncio.Future[StepOutput]] = set()

    @property
    def background_steps(self) -> int:
        """Detached executor calls that have not resolved yet."""

        return sum(1 for call in self._background if not call.done())

    async def run(
        self,
        execution_plan: ExecutionPlan,
        mode: RunMode = RunMode.DRY_RUN,
        executor: StepExecutor | None = None,
    ) -> RunResult:
        """Execute `execution_plan` stage by stage.

        Args:
            execution_plan: Plan computed from the graph this simulator was built with.
            mode: Dry run or live run.
            executor: Step executor. Live runs require one. Dry runs always execute
                through `DryRunExecutor`, which takes its estimates from this executor
                when one is given.

        Returns:
            Per-node results in plan order.

        Raises:
            ValueError: If a live run is requested without an executor.
        """
        if executor is None:
            if mode is RunMode.LIVE:
                raise ValueError("A live run needs a step executor")
            executor = DryRunExecutor()
        elif mode is RunMode.DRY_RUN and not isinstance(executor, DryRunExecutor):
            executor = DryRunExecutor(default_chain=executor.default_chain, estimates=executor)

        bindings = execution_plan.bindings or resolve_bindings(self._graph)[0]
        values: dict[_ValueKey, object] = {
            (None, name): value for name, value in self._graph.variables.items()
        }
        results: dict[str, StepResult] = {}
        blocked: dict[str, str] = {}
        aborted_by: str | None = None

        logger.info(
            "Workflow run started",
            extra={
                "workflow_id": execution_plan.workflow_id,
                "mode": mode.value,
                "stage_count": len(execution_plan.stages),
            },
        )

        for index, stage in enumerate(execution_plan.stages):
            runnable: list[Node] = []
            for node_id in stage:
                if aborted_by is not None:
                    results[node_id] = _skipped(node_id, f"Run aborted after {aborted_by} failed")
                elif node_id in blocked:
                    results[node_id] = _skipped(node_id, blocked[node_id])
                else:
                    runnable.append(self._graph.get_node(node_id))
            if not runnable:
                continue

            stage_results = await self._run_stage(index, runnable, bindings, values, executor)

            for node in runnable:
                result = stage_results[node.id]
                results[node.id] = result
                if result.status is StepStatus.SUCCEEDED:
                    for variable in node.declared_outputs:
                        if variable.name in result.outputs:
                            values[(node.id, variable.name)] = result.outputs[variable.name]
                    if result.condition_met is False:
                        logger.info(
                            "Condition not met; skipping downstream steps",
                            extra={"node_id": node.id},
                        )
                        for descendant in self._graph.descendants(node.id):
                            blocked.setdefault(descendant, f"Condition {node.id} not met")
                elif result.status is StepStatus.FAILED:
                    if node.on_error is OnError.ABORT:
                        aborted_by = aborted_by or node.id
                    elif node.on_error is OnError.SKIP_DOWNSTREAM:
                        for descendant in self._graph.descendants(node.id):
                            blocked.setdefault(descendant, f"Upstream step {node.id} failed")

        run = RunResult(
            workflow_id=execution_plan.workflow_id,
            mode=mode,
            results=tuple(results[node_id] for node_id in execution_plan.node_ids),
        )
        logger.info(
            "Workflow run finished",
            extra={
                "workflow_id": execution_plan.workflow_id,
                "mode": mode.value,
                "status": run.overall_status.value,
            },
        )
        return run

    def run_sync(
        self,
        execution_plan: ExecutionPlan,
        mode: RunMode = RunMode.DRY_RUN,
        executor: StepExecutor | None = None,
    ) -> RunResult:
        """Blocking wrapper around `run` for callers without an event loop."""

        return asyncio.run(self.run(execution_plan, mode=mode, executor=executor))

    async def _run_stage(
        self,
        index: int,
        nodes: list[Node],
        bindings: Bindings,
        values: Mapping[_ValueKey, object],
        executor: StepExecutor,
    ) -> dict[str, StepResult]:
        abort = asyncio.Event()
        by_id = {node.id: node for node in nodes}
        pending = {
            asyncio.ensure_future(
                self._run_node(node, _inputs_for(node.id, bindings, values), executor, abort)
            )
            for node in nodes
        }
        logger.debug(
            "Stage dispatched",
            extra={"stage": index, "node_ids": [node.id for node in nodes]},
        )

        out: dict[str, StepResult] = {}
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                result = task.result()
                out[result.node_id] = result
                failed = result.status is StepStatus.FAILED
                if failed and by_id[result.node_id].on_error is OnError.ABORT and not abort.is_set():
                    logger.info(
                        "Step failed; cancelling in-flight siblings",
                        extra={"stage": index, "node_id": result.node_id, "in_flight": len(pending)},
                    )
                    abort.set()
        return out

    async def _run_node(
        self,
        node: Node,
        inputs: Mapping[str, object],
        executor: StepExecutor,
        abort: asyncio.Event,
    ) -> StepResult:
        started = time.monotonic()
        timeout_ms = node.timeout_ms or self._default_timeout_ms
        resolved = node.model_copy(
            update={
                "parameters": {
                    key: render_references(value, dict(inputs)) if isinstance(value, str) else value
                    for key, value in node.parameters.items()
                }
            }
        )

        async def _execute() -> StepOutput:
            return await executor.execute(resolved, inputs)

        call = asyncio.ensure_future(_execute())
        aborted = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait(
                {call, aborted},
                timeout=timeout_ms / 1000 if timeout_ms else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            aborted.cancel()

        if call.done():
            return _finished(resolved, call, started)

        cancelled_by_sibling = abort.is_set()
        call.cancel()
        await asyncio.wait({call}, timeout=self._grace_s)
        wound_down = call.done()
        if wound_down:
            _consume(call)
        else:
            self._detach(node.id, call)

        elapsed = _elapsed_ms(started)
        if cancelled_by_sibling:
            return StepResult(
                node_id=node.id,
                status=StepStatus.SKIPPED if wound_down else StepStatus.RUNNING_IN_BACKGROUND,
                error="Cancelled after a sibling step failed",
                duration_ms=elapsed,
            )

        logger.warning(
            "Step timed out", extra={"node_id": node.id, "timeout_ms": timeout_ms}
        )
        return StepResult(
            node_id=node.id,
            status=StepStatus.FAILED,
            error=f"Timed out after {timeout_ms} ms",
            duration_ms=elapsed,
        )

    def _detach(self, node_id: str, call: asyncio.Future[StepOutput]) -> None:
        self._background.add(call)

        def _late(done: asyncio.Future[StepOutput]) -> None:
            self._background.discard(done)
            _consume(done)
            logger.info("Discarded late result of a detached step", extra={"node_id": node_id})

        call.add_done_callback(_late)


def _inputs_for(
    node_id: str, bindings: Bindings, values: Mapping[_ValueKey, object]
) -> Mapping[str, object]:
    """Read-only snapshot of the values visible to `node_id`.

    Node outputs are always available as `producer.name`; a bare `name` is added
    when exactly one unshadowed producer of it has a value.
    """

    snapshot: dict[str, object] = {}
    bare: dict[str, list[object]] = {}
    for variable in bindings.for_node(node_id):
        key = (variable.producer_id, variable.name)
        if key not in values:
            continue
        if variable.producer_id is not None:
            snapshot[variable.key] = values[key]
        if not variable.shadowed:
            bare.setdefault(variable.name, []).append(values[key])

    for name, candidates in bare.items():
        if len(candidates) == 1:
            snapshot[name] = candidates[0]
    return MappingProxyType(snapshot)


def _finished(node: Node, call: asyncio.Future[StepOutput], started: float) -> StepResult:
    """Turn a completed executor call into a step result.

    `node` carries the rendered parameters the executor saw.
    """
    elapsed = _elapsed_ms(started)
    if call.cancelled():
        return _failed(node.id, "Step was cancelled", elapsed)

    exc = call.exception()
    if exc is not None:
        return _failed(node.id, f"{type(exc).__name__}: {exc}", elapsed)

    output = call.result()
    if isinstance(output, Mapping):
        output = StepOutput(outputs=output)
    if not isinstance(output, StepOutput):
        return _failed(
            node.id, f"Executor returned {type(output).__name__}, expected StepOutput", elapsed
        )
    if not isinstance(output.outputs, Mapping):
        return _failed(node.id, "Executor returned outputs that are not a mapping", elapsed)

    condition_met: bool | None = None
    if node.kind is NodeKind.CONDITION:
        try:
            condition_met = condition_holds(node.parameters)
        except ValueError as err:
            return _failed(node.id, str(err), elapsed)

    return StepResult(
        node_id=node.id,
        status=StepStatus.SUCCEEDED,
        outputs=MappingProxyType(dict(output.outputs)),
        gas_used=output.gas_used,
        duration_ms=elapsed,
        condition_met=condition_met,
    )


def _failed(node_id: str, error: str, elapsed: int) -> StepResult:
    logger.warning("Step failed", extra={"node_id": node_id, "error": error})
    return StepResult(node_id=node_id, status=StepStatus.FAILED, error=error, duration_ms=elapsed)


def _consume(call: asyncio.Future[StepOutput]) -> None:
    # Retrieve the outcome so asyncio does not warn about an unobserved exception.
    if not call.cancelled():
        call.exception()


def _skipped(node_id: str, reason: str) -> StepResult:
    return StepResult(node_id=node_id, status=StepStatus.SKIPPED, error=reason)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
