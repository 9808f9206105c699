from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from ..errors import UnknownIntegration
from ..models import ContextView, ExecutionResult, NodeKind, ValidationResult

logger = logging.getLogger(__name__)

NodeHandler = Callable[
    [dict[str, Any], ContextView],
    Union[ExecutionResult, Awaitable[ExecutionResult]],
]
NodeValidator = Callable[[dict[str, Any]], ValidationResult]


@dataclass(slots=True)
class NodeSpec:
    """Executor contract for one node subtype.

    ``handler`` may be sync or async and must report expected failures as
    ``ExecutionResult(success=False)``; anything it raises is turned into a
    failed result by ``NodeRegistry.invoke``.
    """

    subtype: str
    kind: NodeKind
    description: str
    handler: NodeHandler
    validator: NodeValidator | None = None
    required: list[str] = field(default_factory=list)
    quoted_fields: tuple[str, ...] = ()
    branches: bool = False


class NodeRegistry:
    def __init__(self) -> None:
        self._nodes: dict[str, NodeSpec] = {}

    def register(self, spec: NodeSpec) -> None:
        self._nodes[spec.subtype] = spec

    def unregister(self, subtype: str) -> bool:
        return self._nodes.pop(subtype, None) is not None

    def has(self, subtype: str) -> bool:
        return subtype in self._nodes

    def get(self, subtype: str) -> NodeSpec:
        if subtype not in self._nodes:
            raise UnknownIntegration(subtype)
        return self._nodes[subtype]

    def by_kind(self, kind: NodeKind) -> list[NodeSpec]:
        return [self._nodes[key] for key in sorted(self._nodes) if self._nodes[key].kind == kind]

    def list_types(self) -> list[str]:
        return sorted(self._nodes)

    def list_specs(self) -> list[dict[str, object]]:
        return [
            {
                "subtype": spec.subtype,
                "kind": spec.kind.value,
                "description": spec.description,
                "required": list(spec.required),
                "branches": spec.branches,
            }
            for spec in (self._nodes[key] for key in sorted(self._nodes))
        ]

    def validate_config(self, subtype: str, config: dict[str, Any]) -> ValidationResult:
        spec = self._nodes.get(subtype)
        if spec is None:
            return ValidationResult.from_errors({"integration": "Integration not found"})
        if spec.validator is not None:
            return spec.validator(config)
        errors = {
            key: f"{key} is required"
            for key in spec.required
            if config.get(key) in (None, "")
        }
        return ValidationResult.from_errors(errors)

    async def invoke(self, subtype: str, config: dict[str, Any], context: ContextView) -> ExecutionResult:
        spec = self.get(subtype)
        try:
            outcome = spec.handler(config, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            logger.warning(f"Integration {subtype} raised {type(exc).__name__}: {exc}", exc_info=True)
            return ExecutionResult.failure(
                str(exc) or type(exc).__name__,
                node_type=spec.kind.value,
                subtype=subtype,
            )
        if not isinstance(outcome, ExecutionResult):
            return ExecutionResult.failure(
                f"Integration {subtype} returned {type(outcome).__name__} instead of a result",
                node_type=spec.kind.value,
                subtype=subtype,
            )
        return outcome
