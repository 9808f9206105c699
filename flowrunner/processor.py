"""Background loop that picks up pending executions and runs them.

One ``QueueProcessor`` is owned per server process. Each tick claims at most
one pending execution, walks its workflow with the engine and persists every
step as soon as it is produced, so pollers see progress while it runs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from datetime import timedelta
from typing import Any

from .engine import WorkflowEngine
from .errors import ClaimConflict, ExecutionNotFound
from .models import Execution, ExecutionStatus, ExecutionStep, LogEntry, LogLevel, StepStatus, WorkflowContext
from .store import SQLiteStore

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "Execution interrupted by shutdown"


class QueueProcessor:
    def __init__(
        self,
        store: SQLiteStore,
        engine: WorkflowEngine,
        poll_interval: float = 5.0,
        error_backoff: float = 10.0,
        execution_timeout: float | None = None,
        stale_after: float | None = None,
        shutdown_grace: float = 10.0,
    ) -> None:
        self.store = store
        self.engine = engine
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.execution_timeout = execution_timeout
        self.stale_after = stale_after
        self.shutdown_grace = shutdown_grace
        self.processed = 0
        self.current_execution: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the tick loop on the running event loop; no-op when already started."""
        if self.running:
            logger.warning("Queue processor start requested but already running")
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="flowrunner-queue")
        logger.info(f"Queue processor started (poll every {self.poll_interval:g}s)")
        return True

    async def stop(self) -> None:
        if self._task is None or self._stop_event is None:
            return
        self._stop_event.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.shutdown_grace)
        except asyncio.TimeoutError:
            logger.warning(
                f"Queue processor did not finish within {self.shutdown_grace:g}s, "
                f"abandoning execution {self.current_execution}"
            )
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._task = None
        logger.info(f"Queue processor stopped after {self.processed} execution(s)")

    async def _loop(self) -> None:
        if self.stale_after:
            try:
                await self.recover_stale()
            except Exception:
                logger.error("Could not recover stale executions", exc_info=True)

        while self._stop_event is not None and not self._stop_event.is_set():
            delay = self.poll_interval
            try:
                await self.tick()
            except Exception:
                logger.error(
                    f"Queue processing error after {self.processed} execution(s)",
                    exc_info=True,
                )
                delay = self.error_backoff
            await self._sleep(delay)

    async def _sleep(self, delay: float) -> None:
        if self._stop_event is None:
            return
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

    async def recover_stale(self) -> list[str]:
        if not self.stale_after:
            return []
        stale = await asyncio.to_thread(self.store.fail_stale_executions, timedelta(seconds=self.stale_after))
        for execution_id in stale:
            logger.warning(f"Marked stale execution {execution_id} as failed")
        return stale

    async def claim(self, execution_id: str) -> Execution | None:
        try:
            return await asyncio.to_thread(self.store.claim_execution, execution_id)
        except (ClaimConflict, ExecutionNotFound) as exc:
            logger.info(f"Skipping execution {execution_id}: {exc}")
            return None

    async def tick(self) -> str | None:
        """Claim and run at most one pending execution; returns its id."""
        pending = await asyncio.to_thread(self.store.next_pending)
        if pending is None:
            return None
        execution = await self.claim(pending.id)
        if execution is None:
            return None
        await self.process(execution)
        return execution.id

    async def process(self, execution: Execution) -> None:
        self.processed += 1
        self.current_execution = execution.id
        logger.info(f"Processing execution {execution.id} (#{self.processed}) for workflow {execution.workflow_id}")
        try:
            await self._run(execution)
        finally:
            self.current_execution = None

    async def journal(
        self,
        execution: Execution,
        level: LogLevel,
        message: str,
        node_id: str | None = None,
        **metadata: Any,
    ) -> None:
        """Persist one execution event; a failed write is logged and the run goes on."""
        entry = LogEntry(
            level=level,
            context="execution",
            message=message,
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            node_id=node_id,
            metadata=metadata,
        )
        try:
            await asyncio.to_thread(self.store.add_log, entry)
        except Exception:
            logger.warning(f"Could not persist log entry for execution {execution.id}", exc_info=True)

    async def _record(self, execution: Execution, step: ExecutionStep) -> None:
        if step.status == StepStatus.PENDING:
            return
        subtype = step.result.metadata.get("subtype") if step.result else None
        if step.status == StepStatus.COMPLETED:
            elapsed = step.result.metadata.get("executionTime") if step.result else None
            await self.journal(
                execution, LogLevel.INFO, "Node completed", step.node_id, subtype=subtype, executionTime=elapsed
            )
        else:
            await self.journal(execution, LogLevel.ERROR, f"Node failed: {step.error}", step.node_id, subtype=subtype)

    async def _run(self, execution: Execution) -> None:
        workflow = await asyncio.to_thread(self.store.get_workflow, execution.workflow_id)
        if workflow is None:
            logger.error(f"Execution {execution.id}: workflow {execution.workflow_id} no longer exists")
            await asyncio.to_thread(
                self.store.finish_execution,
                execution.id,
                ExecutionStatus.FAILED,
                f"Workflow not found: {execution.workflow_id}",
            )
            await self.journal(execution, LogLevel.ERROR, f"Workflow not found: {execution.workflow_id}")
            return

        await self.journal(execution, LogLevel.INFO, "Execution started", nodes=len(workflow.nodes))
        context = WorkflowContext(execution_id=execution.id)
        deadline = time.monotonic() + self.execution_timeout if self.execution_timeout else None
        run = self.engine.run(workflow, context, deadline)
        write: asyncio.Future[bool] | None = None
        try:
            async for step in run:
                # Shielded so a cancel cannot leave the write racing the abandon below.
                write = asyncio.ensure_future(asyncio.to_thread(self.store.record_step, step))
                await asyncio.shield(write)
                await self._record(execution, step)
        except asyncio.CancelledError:
            await self._abandon(execution, write)
            raise
        except Exception as exc:
            logger.error(f"Execution {execution.id} aborted: {exc}", exc_info=True)
            await asyncio.to_thread(self.store.abandon_execution, execution.id, f"Execution aborted: {exc}")
            await self.journal(execution, LogLevel.ERROR, f"Execution aborted: {exc}")
            return

        await asyncio.to_thread(
            self.store.finish_execution,
            execution.id,
            run.status,
            run.failure_message,
            dict(context.variables),
        )
        if run.status == ExecutionStatus.COMPLETED:
            await self.journal(execution, LogLevel.INFO, "Execution completed", steps=len(run.steps))
        else:
            await self.journal(execution, LogLevel.ERROR, f"Execution failed: {run.failure_message}")
        logger.info(f"Execution {execution.id} {run.status.value}")

    async def _abandon(self, execution: Execution, write: asyncio.Future[bool] | None) -> None:
        """Fail a cancelled execution once its last step write has landed."""
        if write is not None and not write.done():
            try:
                await write
            except Exception:
                logger.error(f"Execution {execution.id}: last step write failed during shutdown", exc_info=True)
        await asyncio.to_thread(self.store.abandon_execution, execution.id, SHUTDOWN_REASON)
        await self.journal(execution, LogLevel.ERROR, SHUTDOWN_REASON)
        logger.warning(f"Execution {execution.id} abandoned: {SHUTDOWN_REASON}")
