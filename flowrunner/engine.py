from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator

from .errors import ExpressionUnresolved, NodeExecutionFailure, UnknownIntegration
from .expression import resolve_config
from .graph import incoming_edges, topological_order
from .models import (
    Edge,
    ExecutionResult,
    ExecutionStatus,
    ExecutionStep,
    Node,
    StepStatus,
    Workflow,
    WorkflowContext,
    utc_now,
)
from .nodes.base import NodeRegistry

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
PRUNED = "pruned"
BLOCKED = "blocked"
RUN = "run"


class WorkflowRun:
    """One walk over a workflow graph.

    Iterate it to drive execution; every node that runs yields a ``pending``
    step when it starts and a ``completed``/``failed`` step when it ends.
    ``status`` is final once iteration is over.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        workflow: Workflow,
        context: WorkflowContext,
        deadline: float | None = None,
    ) -> None:
        self.engine = engine
        self.workflow = workflow
        self.context = context
        self.deadline = deadline
        self.steps: list[ExecutionStep] = []
        self.pruned: list[str] = []
        self.blocked: list[str] = []
        self.failures: list[NodeExecutionFailure] = []
        self.error: str | None = None
        self.finished = False
        self._states: dict[str, str] = {}

    @property
    def status(self) -> ExecutionStatus:
        if not self.finished:
            return ExecutionStatus.RUNNING
        if self.error or any(step.status == StepStatus.FAILED for step in self.steps):
            return ExecutionStatus.FAILED
        return ExecutionStatus.COMPLETED

    @property
    def failure_message(self) -> str | None:
        if self.error:
            return self.error
        if self.failures:
            return str(self.failures[0])
        return None

    def __aiter__(self) -> AsyncIterator[ExecutionStep]:
        return self._walk()

    async def _walk(self) -> AsyncIterator[ExecutionStep]:
        execution_id = self.context.execution_id
        order = self.engine.execution_order(self.workflow)
        incoming = incoming_edges(self.workflow.edges)
        logger.info(
            f"Execution {execution_id}: order {[node.id for node in order]} for workflow {self.workflow.id}"
        )

        for node in order:
            if self.deadline is not None and time.monotonic() >= self.deadline:
                self.error = "Execution exceeded its time limit"
                logger.warning(f"Execution {execution_id}: time limit reached before node {node.id}")
                break

            decision = self._decide(incoming.get(node.id, []))
            if decision == PRUNED:
                self._states[node.id] = PRUNED
                self.pruned.append(node.id)
                logger.info(f"Execution {execution_id}: node {node.id} skipped, its branch was not taken")
                continue
            if decision == BLOCKED:
                self._states[node.id] = BLOCKED
                self.blocked.append(node.id)
                logger.info(f"Execution {execution_id}: node {node.id} blocked by an upstream failure")
                continue

            started_at = utc_now()
            yield ExecutionStep(
                execution_id=execution_id,
                node_id=node.id,
                status=StepStatus.PENDING,
                started_at=started_at,
            )

            result = await self.engine.run_node(node, self.context)
            self.engine.record_output(node, result, self.context)
            self._states[node.id] = COMPLETED if result.success else FAILED
            if not result.success:
                self.failures.append(NodeExecutionFailure(node.id, result.error or "no error message"))

            step = ExecutionStep(
                execution_id=execution_id,
                node_id=node.id,
                status=StepStatus.COMPLETED if result.success else StepStatus.FAILED,
                started_at=started_at,
                completed_at=utc_now(),
                result=result,
                error=result.error,
            )
            self.steps.append(step)
            yield step

        self.finished = True
        logger.info(
            f"Execution {execution_id} finished as {self.status.value}: "
            f"{len(self.steps)} step(s), {len(self.pruned)} pruned, {len(self.blocked)} blocked"
        )

    def _decide(self, edges: list[Edge]) -> str:
        if not edges:
            return RUN
        if any(self._states.get(edge.source) in (FAILED, BLOCKED) for edge in edges):
            return BLOCKED
        # Predecessors pruned by an untaken branch do not hold the node back.
        if any(self._states.get(edge.source) == COMPLETED and self._taken(edge) for edge in edges):
            return RUN
        return PRUNED

    def _taken(self, edge: Edge) -> bool:
        if edge.branch is None:
            return True
        result = self.context.node_outputs.get(edge.source)
        path = result.data.get("path") if result is not None and result.data else None
        return str(path).lower() == edge.branch


class WorkflowEngine:
    def __init__(self, registry: NodeRegistry, node_timeout: float | None = None) -> None:
        self.registry = registry
        self.node_timeout = node_timeout

    def execution_order(self, workflow: Workflow) -> list[Node]:
        return topological_order(workflow.nodes, workflow.edges)

    def run(
        self,
        workflow: Workflow,
        context: WorkflowContext,
        deadline: float | None = None,
    ) -> WorkflowRun:
        return WorkflowRun(self, workflow, context, deadline)

    async def execute(
        self,
        workflow: Workflow,
        context: WorkflowContext,
        deadline: float | None = None,
    ) -> WorkflowRun:
        run = self.run(workflow, context, deadline)
        async for _step in run:
            pass
        return run

    async def run_node(self, node: Node, context: WorkflowContext) -> ExecutionResult:
        execution_id = context.execution_id
        try:
            spec = self.registry.get(node.subtype)
        except UnknownIntegration as exc:
            logger.error(f"Execution {execution_id}: node {node.id} has no executor ({exc})")
            return ExecutionResult.failure(str(exc), node_type=node.kind.value, subtype=node.subtype)

        unresolved: list[ExpressionUnresolved] = []
        config = {
            key: resolve_config(value, context, key in spec.quoted_fields, unresolved)
            for key, value in node.config.items()
        }
        logger.info(f"Execution {execution_id}: running node {node.id} ({node.subtype})")

        started = time.perf_counter()
        try:
            if self.node_timeout:
                result = await asyncio.wait_for(
                    self.registry.invoke(node.subtype, config, context.view()),
                    timeout=self.node_timeout,
                )
            else:
                result = await self.registry.invoke(node.subtype, config, context.view())
        except asyncio.TimeoutError:
            result = ExecutionResult.failure(
                f"Node timed out after {self.node_timeout:g}s",
                node_type=spec.kind.value,
                subtype=node.subtype,
            )
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        metadata = {"nodeType": spec.kind.value, "subtype": node.subtype, **result.metadata}
        metadata["executionTime"] = elapsed_ms
        if unresolved:
            metadata["unresolvedExpressions"] = [item.expression for item in unresolved]
        result = result.model_copy(update={"metadata": metadata})

        if result.success:
            logger.info(f"Execution {execution_id}: node {node.id} completed in {elapsed_ms}ms")
        else:
            logger.warning(f"Execution {execution_id}: node {node.id} failed: {result.error}")
        return result

    def record_output(self, node: Node, result: ExecutionResult, context: WorkflowContext) -> None:
        context.node_outputs[node.id] = result
        if result.metadata.get("subtype") == "set_variable" and result.success and result.data:
            name = result.data.get("variableName")
            if isinstance(name, str) and name:
                context.variables[name] = result.data.get("value")
