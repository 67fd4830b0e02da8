"""FastAPI app factory.

Endpoints are thin wrappers over the composer: documents are re-planned on every
save so the derived fields (`executionPlan`, `estimatedGas`, `successRate`) always
reflect the stored graph.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from chaincron_composer.composer.config import ComposerSettings
from chaincron_composer.composer.execution.executor import DryRunExecutor
from chaincron_composer.composer.execution.results import RunMode
from chaincron_composer.composer.execution.runner import Simulator
from chaincron_composer.composer.planning.session import PlanSnapshot
from chaincron_composer.composer.storage.document import (
    WorkflowDocument,
    refresh_document,
)
from chaincron_composer.composer.storage.store import WorkflowNotFound, WorkflowStore
from chaincron_composer.server.config import ServerSettings
from chaincron_composer.server.models import (
    PlanResponse,
    SimulationResponse,
    to_plan_response,
    to_simulation_response,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: ServerSettings | None = None,
    composer_settings: ComposerSettings | None = None,
) -> FastAPI:
    settings = settings or ServerSettings()
    composer_settings = composer_settings or ComposerSettings()

    app = FastAPI(
        title="ChainCron Composer",
        version="0.1.0",
        description="Plan, store and dry-run ChainCron workflows.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.settings = settings
    app.state.composer_settings = composer_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = WorkflowStore(composer_settings.workflows_path)
    estimator = DryRunExecutor(default_chain=composer_settings.default_chain)

    def _refresh(doc: WorkflowDocument) -> tuple[WorkflowDocument, PlanSnapshot]:
        try:
            return refresh_document(doc, estimator)
        except ValueError as exc:
            # Invalid node parameters or repeated ids; the body parsed but the graph did not.
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    def _load(workflow_id: str) -> WorkflowDocument:
        try:
            return store.load(workflow_id)
        except WorkflowNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/workflows", response_model=list[WorkflowDocument])
    def list_workflows() -> list[WorkflowDocument]:
        return store.list()

    @app.get("/api/workflows/{workflow_id}", response_model=WorkflowDocument)
    def get_workflow(workflow_id: str) -> WorkflowDocument:
        return _load(workflow_id)

    @app.post("/api/workflows", response_model=WorkflowDocument, status_code=201)
    def save_workflow(doc: WorkflowDocument) -> WorkflowDocument:
        refreshed, _ = _refresh(doc)
        return store.save(refreshed)

    @app.put("/api/workflows/{workflow_id}", response_model=WorkflowDocument)
    def update_workflow(workflow_id: str, doc: WorkflowDocument) -> WorkflowDocument:
        if doc.id != workflow_id:
            raise HTTPException(status_code=400, detail="Workflow id in path and body differ")
        _load(workflow_id)
        refreshed, _ = _refresh(doc)
        return store.save(refreshed)

    @app.delete("/api/workflows/{workflow_id}")
    def delete_workflow(workflow_id: str) -> dict[str, str]:
        try:
            store.delete(workflow_id)
        except WorkflowNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"status": "deleted", "id": workflow_id}

    @app.post("/api/workflows/plan", response_model=PlanResponse)
    def plan_workflow(doc: WorkflowDocument) -> PlanResponse:
        _, snapshot = _refresh(doc)
        return to_plan_response(snapshot, doc.id)

    @app.post("/api/workflows/{workflow_id}/simulate", response_model=SimulationResponse)
    async def simulate_workflow(workflow_id: str) -> SimulationResponse:
        doc = _load(workflow_id)
        _, snapshot = _refresh(doc)
        if snapshot.plan is None or snapshot.graph is None:
            raise HTTPException(
                status_code=409, detail="Workflow has validation errors; fix them before simulating"
            )

        simulator = Simulator(
            snapshot.graph,
            cancel_grace_ms=composer_settings.cancel_grace_ms,
            default_timeout_ms=composer_settings.default_timeout_ms,
        )
        run = await simulator.run(snapshot.plan, mode=RunMode.DRY_RUN, executor=estimator)

        # Persist per-node status from this run alongside the document.
        with_status, _ = refresh_document(doc, estimator, run)
        store.save(with_status)
        logger.info(
            "Dry run recorded",
            extra={"workflow_id": workflow_id, "status": run.overall_status.value},
        )
        return to_simulation_response(run)

    return app
