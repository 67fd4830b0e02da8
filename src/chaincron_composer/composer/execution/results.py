from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType


class RunMode(str, Enum):
    DRY_RUN = "dry-run"
    LIVE = "live"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    # Cancelled but never wound down; its eventual result is discarded.
    RUNNING_IN_BACKGROUND = "skipped-but-running-in-background"

    @property
    def skipped(self) -> bool:
        return self in (StepStatus.SKIPPED, StepStatus.RUNNING_IN_BACKGROUND)


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one node in one run. Immutable once recorded."""

    node_id: str
    status: StepStatus
    outputs: Mapping[str, object] = field(default_factory=lambda: MappingProxyType({}))
    error: str | None = None
    gas_used: Decimal | None = None
    duration_ms: int = 0
    # Set for condition nodes that compared a value; False skips their descendants.
    condition_met: bool | None = None

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "nodeId": self.node_id,
            "status": self.status.value,
            "outputs": dict(self.outputs),
            "durationMs": self.duration_ms,
        }
        if self.error is not None:
            out["error"] = self.error
        if self.gas_used is not None:
            out["gasUsed"] = str(self.gas_used)
        if self.condition_met is not None:
            out["conditionMet"] = self.condition_met
        return out


@dataclass(frozen=True, slots=True)
class RunResult:
    workflow_id: str
    mode: RunMode
    results: tuple[StepResult, ...]

    @property
    def overall_status(self) -> RunStatus:
        """Succeeded only if every step that was not skipped succeeded."""

        for result in self.results:
            if not result.status.skipped and result.status is not StepStatus.SUCCEEDED:
                return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    def result_for(self, node_id: str) -> StepResult:
        for result in self.results:
            if result.node_id == node_id:
                return result
        raise KeyError(f"No result for node: {node_id}")

    def statuses(self) -> dict[str, StepStatus]:
        return {result.node_id: result.status for result in self.results}
