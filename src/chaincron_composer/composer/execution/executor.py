"""Step executor interface.

Chain-specific adapters implement `StepExecutor` to run a single node. The runner
never talks to a chain itself; it only awaits `execute` and records the outcome.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from chaincron_composer.composer.graph.model import Node
from chaincron_composer.composer.graph.parameters import VarType, find_references
from chaincron_composer.composer.planning.estimates import GasEstimate

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepOutput:
    """What a successful `execute` call hands back."""

    outputs: Mapping[str, object] = field(default_factory=dict)
    gas_used: Decimal | None = None


class StepExecutor(ABC):
    """Abstract base class for step executors.

    `execute` is the only required method. The estimate methods default to the
    static hints a node may carry in its parameters (`chain`, `gasEstimate`,
    `successRate`, `durationMs`); adapters with real telemetry override them.
    """

    def __init__(self, *, default_chain: str = "flow") -> None:
        self.default_chain = default_chain

    @abstractmethod
    async def execute(self, node: Node, inputs: Mapping[str, object]) -> StepOutput:
        """Run one node.

        Args:
            node: The node to run.
            inputs: Read-only snapshot of the variables visible to the node, keyed
                by bare name where unambiguous and by `producer.name` always.

        Returns:
            The node's outputs.

        Raises:
            Exception: Any failure. The runner records it on the step result.
        """

    def estimate_cost(self, node: Node) -> GasEstimate:
        """Estimate gas for one run of `node`.

        Args:
            node: The node to estimate.

        Returns:
            Chain and amount of gas.
        """
        chain = node.parameters.get("chain")
        if not isinstance(chain, str) or not chain.strip() or find_references(chain):
            chain = self.default_chain
        amount = _hint_decimal(node, "gasEstimate") or Decimal(0)
        return GasEstimate(chain=chain.strip().lower(), amount=amount)

    def estimate_success_rate(self, node: Node) -> float:
        """Estimate the probability that `node` succeeds.

        Hints above 1 are read as percentages (`94` means 0.94).
        """
        value = _hint_decimal(node, "successRate")
        if value is None:
            return 1.0
        rate = float(value / 100 if value > 1 else value)
        return min(max(rate, 0.0), 1.0)

    def estimate_duration_ms(self, node: Node) -> int:
        """Estimate how long one run of `node` takes."""
        value = _hint_decimal(node, "durationMs")
        if value is None or value < 0:
            return 0
        return int(value)


class DryRunExecutor(StepExecutor):
    """Stub executor for dry runs.

    Produces deterministic mock outputs for every declared output and reports the
    estimated gas as gas used. Nothing leaves the process. When `estimates` is
    given, cost, success and duration figures come from that executor instead of
    the node hints; its `execute` is never called.
    """

    def __init__(
        self, *, default_chain: str = "flow", estimates: StepExecutor | None = None
    ) -> None:
        super().__init__(default_chain=default_chain)
        self.estimates = estimates

    async def execute(self, node: Node, inputs: Mapping[str, object]) -> StepOutput:
        outputs = {v.name: mock_value(node.id, v.name, v.type) for v in node.declared_outputs}
        logger.debug(
            "Dry-run step executed",
            extra={"node_id": node.id, "input_count": len(inputs), "outputs": sorted(outputs)},
        )
        return StepOutput(outputs=outputs, gas_used=self.estimate_cost(node).amount)

    def estimate_cost(self, node: Node) -> GasEstimate:
        if self.estimates is not None:
            return self.estimates.estimate_cost(node)
        return super().estimate_cost(node)

    def estimate_success_rate(self, node: Node) -> float:
        if self.estimates is not None:
            return self.estimates.estimate_success_rate(node)
        return super().estimate_success_rate(node)

    def estimate_duration_ms(self, node: Node) -> int:
        if self.estimates is not None:
            return self.estimates.estimate_duration_ms(node)
        return super().estimate_duration_ms(node)


def mock_value(node_id: str, name: str, var_type: VarType) -> object:
    """Deterministic placeholder value of the given type."""

    if var_type is VarType.NUMERIC:
        return 0
    if var_type is VarType.DURATION:
        return "0ms"
    if var_type is VarType.ADDRESS:
        digest = hashlib.sha256(f"{node_id}.{name}".encode()).hexdigest()
        return "0x" + digest[:40]
    return f"dry-run:{node_id}.{name}"


def _hint_decimal(node: Node, key: str) -> Decimal | None:
    value = node.parameters.get(key)
    if value is None or isinstance(value, bool) or find_references(value):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.warning(
            "Ignoring non-numeric estimate hint",
            extra={"node_id": node.id, "parameter": key},
        )
        return None
