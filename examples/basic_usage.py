#!/usr/bin/env python3
"""Compose, plan and dry-run a small workflow.

This demonstrates using the composer components directly:

* load settings from `.env`
* build a price-alert workflow through an editing session
* print the staged plan and its cost/risk estimate
* dry-run it and persist the document to `agent_state/workflows.json`
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Sequence

from chaincron_composer.composer.config import ComposerSettings
from chaincron_composer.composer.graph.model import Node, Variable, WorkflowGraph
from chaincron_composer.composer.graph.parameters import NodeKind, VarType
from chaincron_composer.composer.logging import configure_logging
from chaincron_composer.composer.planning.session import WorkflowSession
from chaincron_composer.composer.storage.document import to_document
from chaincron_composer.composer.storage.store import WorkflowStore


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan and dry-run a price alert workflow.")
    parser.add_argument("--token", default="FLOW", help="Token to watch")
    parser.add_argument("--target", type=float, default=1.25, help="Alert price")
    parser.add_argument("--save", action="store_true", help="Persist the workflow document")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = ComposerSettings()
    configure_logging(settings.log_level, static_fields={"service": "chaincron-composer"})

    session = WorkflowSession(
        WorkflowGraph(workflow_id="price-alert", name=f"{args.token} price alert"),
        settings=settings,
    )
    session.add_node(
        Node(
            id="trigger1",
            kind=NodeKind.TRIGGER,
            name="Price check",
            parameters={"token": args.token, "targetPrice": args.target, "interval": "5m"},
            declared_outputs=(Variable(name="price", type=VarType.NUMERIC),),
        )
    )
    session.add_node(
        Node(
            id="condition1",
            kind=NodeKind.CONDITION,
            name="Above target",
            parameters={"operator": ">=", "value": "{{price}}", "threshold": args.target},
        )
    )
    session.add_node(
        Node(
            id="output1",
            kind=NodeKind.OUTPUT,
            name="Notify",
            parameters={
                "channel": "telegram",
                "message": f"{args.token} is at {{{{trigger1.price}}}}",
                "gasEstimate": "0.0005",
                "successRate": 0.99,
            },
        )
    )
    session.connect("trigger1", "condition1")
    _, snapshot = session.connect("condition1", "output1")

    if snapshot.plan is None or snapshot.estimate is None:
        for issue in snapshot.validation.errors:
            print(f"error: {issue.message}")
        for error in snapshot.flow_errors:
            print(f"error: {error.message}")
        return 1

    for idx, stage in enumerate(snapshot.plan.stages):
        print(f"stage {idx}: {', '.join(stage)}")
    print(f"estimated gas: {snapshot.estimate.formatted_gas()}")
    print(f"success rate: {snapshot.estimate.success_percent}%")

    run = asyncio.run(session.run())
    for result in run.results:
        print(f"{result.node_id}: {result.status.value}")

    if args.save:
        store = WorkflowStore(settings.workflows_path)
        store.save(to_document(session.graph, snapshot, run))
        print(f"saved to {settings.workflows_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
