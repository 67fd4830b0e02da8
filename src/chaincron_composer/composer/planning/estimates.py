"""Cost, duration and success-rate aggregation over an execution plan.

Per-node numbers come from a pluggable estimator (normally the step executor),
so a real deployment can back them with historical telemetry without touching
the planner.

Combined success rate is the product of the per-node success probabilities.
That treats step failures as independent, which understates correlated failure
modes such as a shared bridge outage. It is kept as a documented simplification.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Protocol

from chaincron_composer.composer.graph.model import Node, WorkflowGraph
from chaincron_composer.composer.planning.chains import gas_token_for
from chaincron_composer.composer.planning.planner import ExecutionPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GasEstimate:
    chain: str
    amount: Decimal


@dataclass(frozen=True, slots=True)
class NodeEstimate:
    gas: GasEstimate
    success_rate: float
    duration_ms: int = 0

    def __post_init__(self) -> None:
        if not 0.0 <= self.success_rate <= 1.0:
            raise ValueError(f"success_rate must be within [0, 1], got {self.success_rate}")
        if self.duration_ms < 0:
            raise ValueError(f"duration_ms must not be negative, got {self.duration_ms}")


@dataclass(frozen=True, slots=True)
class PlanEstimate:
    total_gas_by_chain: Mapping[str, Decimal]
    combined_success_rate: float
    estimated_duration_ms: int
    stage_durations_ms: tuple[int, ...] = ()

    @property
    def success_percent(self) -> float:
        """Combined success rate on the 0-100 scale used by workflow documents."""

        return round(self.combined_success_rate * 100, 2)

    def formatted_gas(self) -> str:
        return format_gas(self.total_gas_by_chain)


class Estimator(Protocol):
    def estimate_cost(self, node: Node) -> GasEstimate: ...

    def estimate_success_rate(self, node: Node) -> float: ...

    def estimate_duration_ms(self, node: Node) -> int: ...


def collect_estimates(
    execution_plan: ExecutionPlan, graph: WorkflowGraph, estimator: Estimator
) -> dict[str, NodeEstimate]:
    """Ask `estimator` for the numbers of every node in the plan."""

    estimates: dict[str, NodeEstimate] = {}
    for node_id in execution_plan.node_ids:
        node = graph.get_node(node_id)
        estimates[node_id] = NodeEstimate(
            gas=estimator.estimate_cost(node),
            success_rate=estimator.estimate_success_rate(node),
            duration_ms=estimator.estimate_duration_ms(node),
        )
    return estimates


def aggregate(
    execution_plan: ExecutionPlan, node_estimates: Mapping[str, NodeEstimate]
) -> PlanEstimate:
    """Combine per-node estimates over the stages of a plan.

    - gas is summed per chain
    - a stage lasts as long as its slowest node; stages run back to back
    - success probabilities multiply

    Nodes without an estimate count as free, instant and certain to succeed.
    """

    gas: dict[str, Decimal] = {}
    success = 1.0
    stage_durations: list[int] = []

    for stage in execution_plan.stages:
        slowest = 0
        for node_id in stage:
            estimate = node_estimates.get(node_id)
            if estimate is None:
                logger.debug(
                    "No estimate for planned node", extra={"node_id": node_id}
                )
                continue
            chain = estimate.gas.chain
            gas[chain] = gas.get(chain, Decimal(0)) + estimate.gas.amount
            success *= estimate.success_rate
            slowest = max(slowest, estimate.duration_ms)
        stage_durations.append(slowest)

    return PlanEstimate(
        total_gas_by_chain=MappingProxyType(dict(sorted(gas.items()))),
        combined_success_rate=success,
        estimated_duration_ms=sum(stage_durations),
        stage_durations_ms=tuple(stage_durations),
    )


def format_gas(total_gas_by_chain: Mapping[str, Decimal]) -> str:
    """Render per-chain gas like `"0.002 FLOW"` or `"0.003 ETH + 0.001 MATIC"`."""

    items = sorted(total_gas_by_chain.items())
    charged = [(chain, amount) for chain, amount in items if amount] or items[:1]
    if not charged:
        return "0"
    return " + ".join(
        f"{format(amount.normalize(), 'f')} {gas_token_for(chain)}" for chain, amount in charged
    )
