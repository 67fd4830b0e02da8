"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chaincron_composer.composer.execution.results import RunResult
from chaincron_composer.composer.planning.session import PlanSnapshot


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiProblem(_ApiModel):
    """One validation, flow or planning finding."""

    source: str  # graph | flow | plan
    kind: str
    severity: str
    message: str
    node_ids: list[str] = Field(default_factory=list)
    connection_ids: list[str] = Field(default_factory=list)
    parameter: str | None = None


class PlanResponse(_ApiModel):
    workflow_id: str
    valid: bool
    stages: list[list[str]] = Field(default_factory=list)
    execution_plan: list[str] = Field(default_factory=list)
    estimated_gas: str = "0"
    gas_by_chain: dict[str, str] = Field(default_factory=dict)
    success_rate: float = 0.0
    estimated_duration_ms: int = 0
    errors: list[ApiProblem] = Field(default_factory=list)
    warnings: list[ApiProblem] = Field(default_factory=list)


class SimulationResponse(_ApiModel):
    workflow_id: str
    mode: str
    overall_status: str
    results: list[dict[str, Any]]


def to_plan_response(snapshot: PlanSnapshot, workflow_id: str) -> PlanResponse:
    errors = [
        ApiProblem(
            source="graph",
            kind=issue.kind.value,
            severity=issue.severity.value,
            message=issue.message,
            node_ids=list(issue.node_ids),
            connection_ids=list(issue.connection_ids),
        )
        for issue in snapshot.validation.errors
    ]
    errors.extend(
        ApiProblem(
            source="flow",
            kind=error.kind.value,
            severity="error",
            message=error.message,
            node_ids=list(error.node_ids),
            parameter=error.parameter,
        )
        for error in snapshot.flow_errors
    )
    warnings = [
        ApiProblem(
            source="graph",
            kind=issue.kind.value,
            severity=issue.severity.value,
            message=issue.message,
            node_ids=list(issue.node_ids),
        )
        for issue in snapshot.validation.warnings
    ]
    warnings.extend(
        ApiProblem(
            source="plan",
            kind=note.kind.value,
            severity="warning",
            message=note.message,
            node_ids=list(note.node_ids),
        )
        for note in snapshot.plan_errors
    )

    response = PlanResponse(
        workflow_id=workflow_id, valid=snapshot.plannable, errors=errors, warnings=warnings
    )
    if snapshot.plan is not None and snapshot.estimate is not None:
        response.stages = [list(stage) for stage in snapshot.plan.stages]
        response.execution_plan = list(snapshot.plan.node_ids)
        response.estimated_gas = snapshot.estimate.formatted_gas()
        response.gas_by_chain = {
            chain: str(amount) for chain, amount in snapshot.estimate.total_gas_by_chain.items()
        }
        response.success_rate = snapshot.estimate.success_percent
        response.estimated_duration_ms = snapshot.estimate.estimated_duration_ms
    return response


def to_simulation_response(run: RunResult) -> SimulationResponse:
    return SimulationResponse(
        workflow_id=run.workflow_id,
        mode=run.mode.value,
        overall_status=run.overall_status.value,
        results=[result.to_json() for result in run.results],
    )
