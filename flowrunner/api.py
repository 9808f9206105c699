from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import AppConfig, app_config
from .engine import WorkflowEngine
from .errors import ExecutionNotFound, InvalidWorkflow, WorkflowNotFound
from .logs import configure_logging
from .models import (
    Execution,
    ExecutionStatusView,
    LogLevel,
    LogStats,
    StartRunResponse,
    ValidationResult,
    Workflow,
)
from .nodes import default_registry
from .nodes.base import NodeRegistry
from .processor import QueueProcessor
from .service import ExecutionService
from .store import SQLiteStore

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    store: SQLiteStore | None = None,
    registry: NodeRegistry | None = None,
) -> FastAPI:
    config = config or app_config
    registry = registry or default_registry(config)
    store = store or SQLiteStore(config.database_path())
    queue_settings = config.queue_settings()

    engine = WorkflowEngine(registry, node_timeout=float(queue_settings["node_timeout"]) or None)
    processor = QueueProcessor(
        store,
        engine,
        poll_interval=float(queue_settings["poll_interval"]),
        error_backoff=float(queue_settings["error_backoff"]),
        execution_timeout=float(queue_settings["execution_timeout"]) or None,
        stale_after=float(queue_settings["stale_after"]) or None,
        shutdown_grace=float(queue_settings["shutdown_grace"]),
    )
    service = ExecutionService(store, registry)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logging_settings = config.logging_settings()
        configure_logging(logging_settings["level"], logging_settings["format"])
        if queue_settings["autostart"]:
            processor.start()
        try:
            yield
        finally:
            await processor.stop()

    app = FastAPI(title="flowrunner", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost):\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.registry = registry
    app.state.processor = processor
    app.state.service = service

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "status": "ok",
            "queue": "running" if processor.running else "stopped",
            "processed": processor.processed,
        }

    @app.get("/node-types")
    def list_node_types() -> list[str]:
        return registry.list_types()

    @app.get("/node-catalog")
    def node_catalog() -> list[dict[str, object]]:
        return registry.list_specs()

    @app.get("/config")
    def get_config() -> dict[str, dict[str, object]]:
        return {
            "queue": queue_settings,
            "integrations": config.integration_settings(),
            "ai_defaults": config.ai_defaults(),
        }

    @app.get("/templates")
    def templates() -> list[dict[str, object]]:
        return config.workflow_templates()

    @app.post("/workflows", response_model=Workflow)
    def create_workflow(workflow: Workflow) -> Workflow:
        existing = store.get_workflow(workflow.id)
        if existing:
            raise HTTPException(status_code=409, detail="Workflow id already exists")
        return store.create_workflow(workflow)

    @app.post("/workflows/new", response_model=Workflow)
    def create_workflow_with_generated_id(workflow: Workflow) -> Workflow:
        created = workflow.model_copy(update={"id": str(uuid.uuid4())})
        return store.create_workflow(created)

    @app.post("/workflows/validate")
    def validate_workflow(workflow: Workflow) -> dict[str, object]:
        return service.validate(workflow).to_dict()

    @app.get("/workflows", response_model=list[Workflow])
    def list_workflows() -> list[Workflow]:
        return store.list_workflows()

    @app.get("/workflows/{workflow_id}", response_model=Workflow)
    def get_workflow(workflow_id: str) -> Workflow:
        workflow = store.get_workflow(workflow_id)
        if workflow is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return workflow

    @app.put("/workflows/{workflow_id}", response_model=Workflow)
    def update_workflow(workflow_id: str, workflow: Workflow) -> Workflow:
        if workflow.id != workflow_id:
            raise HTTPException(status_code=400, detail="Workflow id mismatch")
        updated = store.update_workflow(workflow_id, workflow)
        if updated is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return updated

    @app.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_workflow(workflow_id: str) -> None:
        if not store.delete_workflow(workflow_id):
            raise HTTPException(status_code=404, detail="Workflow not found")

    @app.post(
        "/workflows/{workflow_id}/execute",
        response_model=StartRunResponse,
        status_code=status.HTTP_202_ACCEPTED,
    )
    def execute_workflow(workflow_id: str) -> StartRunResponse:
        try:
            execution = service.start_run(workflow_id)
        except WorkflowNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidWorkflow as exc:
            raise HTTPException(status_code=422, detail=exc.to_dict()) from exc
        return StartRunResponse(executionId=execution.id)

    @app.get("/workflows/{workflow_id}/executions", response_model=list[Execution])
    def list_executions(workflow_id: str, limit: int = 50) -> list[Execution]:
        return store.list_executions(workflow_id, limit)

    @app.get("/workflows/{workflow_id}/executions/latest", response_model=Execution | None)
    def latest_execution(workflow_id: str) -> Execution | None:
        return service.get_latest(workflow_id)

    @app.get("/executions/{execution_id}/status", response_model=ExecutionStatusView)
    def execution_status(execution_id: str) -> ExecutionStatusView:
        try:
            return service.get_status(execution_id)
        except ExecutionNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/logs")
    def list_logs(
        level: LogLevel | None = None,
        context: str | None = None,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        node_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ) -> dict[str, object]:
        logs = store.get_logs(
            level=level,
            context=context,
            workflow_id=workflow_id,
            execution_id=execution_id,
            node_id=node_id,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
        return {"logs": [entry.model_dump(mode="json") for entry in logs], "count": len(logs)}

    @app.get("/logs/stats", response_model=LogStats)
    def log_stats() -> LogStats:
        return store.log_stats()

    @app.post("/logs/clear")
    def clear_logs() -> dict[str, object]:
        deleted = store.clear_logs()
        logger.info(f"Cleared {deleted} log entries")
        return {"message": "All logs cleared successfully", "deleted": deleted}

    @app.post("/nodes/{subtype}/validate", response_model=ValidationResult)
    def validate_node(subtype: str, config_payload: dict[str, Any] = Body(...)) -> ValidationResult:
        if not registry.has(subtype):
            raise HTTPException(status_code=404, detail=f"Unknown integration: {subtype}")
        return service.validate_node(subtype, config_payload)

    return app
