from __future__ import annotations


class FlowError(Exception):
    kind = "FlowError"

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "message": str(self)}


class GraphError(FlowError):
    """Structural problem found while validating a workflow graph."""

    kind = "GraphError"

    def __init__(self, message: str, *, node_id: str | None = None, edge_id: str | None = None) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.edge_id = edge_id

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        if self.node_id is not None:
            payload["node_id"] = self.node_id
        if self.edge_id is not None:
            payload["edge_id"] = self.edge_id
        return payload


class GraphCycle(GraphError):
    kind = "GraphCycle"

    def __init__(self, node_ids: list[str]) -> None:
        super().__init__(f"Workflow graph has a cycle through: {', '.join(node_ids)}")
        self.node_ids = node_ids


class GraphReferenceError(GraphError):
    kind = "GraphReferenceError"


class DuplicateNode(GraphError):
    kind = "DuplicateNode"


class UnknownIntegration(GraphError):
    kind = "UnknownIntegration"

    def __init__(self, subtype: str, *, node_id: str | None = None) -> None:
        super().__init__(f"Unknown integration: {subtype}", node_id=node_id)
        self.subtype = subtype


class BranchConflict(GraphError):
    kind = "BranchConflict"


class InvalidNodeConfig(GraphError):
    kind = "InvalidNodeConfig"

    def __init__(self, node_id: str, errors: dict[str, str]) -> None:
        detail = "; ".join(f"{key}: {message}" for key, message in errors.items())
        super().__init__(f"Invalid config for node {node_id}: {detail}", node_id=node_id)
        self.errors = errors

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["errors"] = dict(self.errors)
        return payload


class InvalidWorkflow(FlowError):
    kind = "InvalidWorkflow"

    def __init__(self, errors: list[GraphError]) -> None:
        super().__init__(f"Workflow failed validation with {len(errors)} error(s)")
        self.errors = errors

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["errors"] = [error.to_dict() for error in self.errors]
        return payload


class ExpressionUnresolved(FlowError):
    """A placeholder that could not be resolved. Collected, never raised."""

    kind = "ExpressionUnresolved"

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"{expression}: {reason}")
        self.expression = expression
        self.reason = reason


class ConditionError(FlowError):
    kind = "ConditionError"


class NodeExecutionFailure(FlowError):
    kind = "NodeExecutionFailure"

    def __init__(self, node_id: str, message: str) -> None:
        super().__init__(f"Node {node_id} failed: {message}")
        self.node_id = node_id
        self.message = message


class ClaimConflict(FlowError):
    kind = "ClaimConflict"

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution {execution_id} was already claimed")
        self.execution_id = execution_id


class WorkflowNotFound(FlowError):
    kind = "WorkflowNotFound"

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class ExecutionNotFound(FlowError):
    kind = "ExecutionNotFound"

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id
