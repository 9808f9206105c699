from __future__ import annotations

import logging
from typing import Any

from .errors import ExecutionNotFound, WorkflowNotFound
from .graph import ValidationReport, validate_workflow
from .models import Execution, ExecutionStatusView, LogEntry, LogLevel, ValidationResult, Workflow
from .nodes.base import NodeRegistry
from .store import SQLiteStore

logger = logging.getLogger(__name__)


class ExecutionService:
    """Start runs and read their progress; never executes anything itself."""

    def __init__(self, store: SQLiteStore, registry: NodeRegistry) -> None:
        self.store = store
        self.registry = registry

    def validate(self, workflow: Workflow) -> ValidationReport:
        return validate_workflow(workflow, self.registry)

    def validate_node(self, subtype: str, config: dict[str, Any]) -> ValidationResult:
        return self.registry.validate_config(subtype, config)

    def start_run(self, workflow_id: str) -> Execution:
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        report = self.validate(workflow)
        for warning in report.warnings:
            logger.info(f"Workflow {workflow_id}: {warning}")
        report.raise_for_errors()
        execution = self.store.create_execution(workflow_id)
        logger.info(f"Queued execution {execution.id} for workflow {workflow_id}")
        self.store.add_log(
            LogEntry(
                level=LogLevel.INFO,
                context="workflow",
                message="Execution queued",
                workflow_id=workflow_id,
                execution_id=execution.id,
                metadata={"warnings": len(report.warnings)},
            )
        )
        return execution

    def get_status(self, execution_id: str) -> ExecutionStatusView:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return ExecutionStatusView(
            id=execution.id,
            workflow_id=execution.workflow_id,
            status=execution.status,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
            error=execution.error,
            steps=self.store.list_steps(execution_id),
        )

    def get_latest(self, workflow_id: str) -> Execution | None:
        return self.store.latest_execution(workflow_id)
