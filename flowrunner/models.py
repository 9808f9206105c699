from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    LOGIC = "logic"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Node(BaseModel):
    id: str
    kind: NodeKind
    subtype: str
    config: dict[str, Any] = Field(default_factory=dict)
    label: str | None = None


class Edge(BaseModel):
    id: str
    source: str
    target: str
    branch: Literal["true", "false"] | None = None


class Workflow(BaseModel):
    id: str
    name: str
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, *, node_type: str, subtype: str) -> ExecutionResult:
        return cls(
            success=False,
            error=error,
            metadata={"nodeType": node_type, "subtype": subtype},
        )


class ValidationResult(BaseModel):
    valid: bool
    errors: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_errors(cls, errors: dict[str, str]) -> ValidationResult:
        return cls(valid=not errors, errors=errors)


class Execution(BaseModel):
    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


class ExecutionStep(BaseModel):
    execution_id: str
    node_id: str
    status: StepStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: ExecutionResult | None = None
    error: str | None = None


class ExecutionStatusView(BaseModel):
    id: str
    workflow_id: str
    status: ExecutionStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    steps: list[ExecutionStep] = Field(default_factory=list)


class StartRunResponse(BaseModel):
    executionId: str
    status: str = "queued"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class LogEntry(BaseModel):
    """One persisted workflow, execution or node event."""

    id: int | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel
    context: Literal["workflow", "execution", "integration", "api", "system"] = "system"
    message: str
    workflow_id: str | None = None
    execution_id: str | None = None
    node_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class LogStats(BaseModel):
    total: int = 0
    byLevel: dict[str, int] = Field(default_factory=dict)
    byContext: dict[str, int] = Field(default_factory=dict)
    last24Hours: int = 0


@dataclass(slots=True)
class WorkflowContext:
    """Variables and node outputs of one in-flight execution.

    Only the engine mutates it; executors get a ``ContextView``.
    """

    execution_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    node_outputs: dict[str, ExecutionResult] = field(default_factory=dict)

    def view(self) -> ContextView:
        return ContextView(
            execution_id=self.execution_id,
            variables=MappingProxyType(self.variables),
            node_outputs=MappingProxyType(self.node_outputs),
        )


@dataclass(frozen=True, slots=True)
class ContextView:
    execution_id: str
    variables: Mapping[str, Any]
    node_outputs: Mapping[str, ExecutionResult]
