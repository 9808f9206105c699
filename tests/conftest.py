"""Shared fixtures for the flowrunner test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from flowrunner.config import AppConfig
from flowrunner.engine import WorkflowEngine
from flowrunner.models import ContextView, Edge, ExecutionResult, Node, NodeKind, Workflow
from flowrunner.nodes import default_registry
from flowrunner.nodes.base import NodeRegistry, NodeSpec
from flowrunner.store import SQLiteStore


def node(node_id: str, subtype: str, kind: NodeKind = NodeKind.ACTION, **config: Any) -> Node:
    return Node(id=node_id, kind=kind, subtype=subtype, config=config)


def edge(source: str, target: str, branch: str | None = None) -> Edge:
    suffix = f"-{branch}" if branch else ""
    return Edge(id=f"{source}->{target}{suffix}", source=source, target=target, branch=branch)


def workflow(nodes: list[Node], edges: list[Edge], workflow_id: str = "wf-1") -> Workflow:
    return Workflow(id=workflow_id, name="Test workflow", nodes=nodes, edges=edges)


def _failing(_config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        error="service unavailable",
        metadata={"nodeType": "action", "subtype": "always_fail"},
    )


def _raising(_config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    raise RuntimeError("executor blew up")


def _echo(config: dict[str, Any], _context: ContextView) -> ExecutionResult:
    return ExecutionResult(
        success=True,
        data={"config": dict(config)},
        metadata={"nodeType": "action", "subtype": "echo"},
    )


@pytest.fixture
def registry() -> NodeRegistry:
    """Built-in integrations plus a few deterministic test executors."""
    reg = default_registry()
    reg.register(NodeSpec("always_fail", NodeKind.ACTION, "Always fails.", _failing))
    reg.register(NodeSpec("explode", NodeKind.ACTION, "Always raises.", _raising))
    reg.register(NodeSpec("echo", NodeKind.ACTION, "Echoes its resolved config.", _echo))
    return reg


@pytest.fixture
def engine(registry: NodeRegistry) -> WorkflowEngine:
    return WorkflowEngine(registry)


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "test.db")


@pytest.fixture
def test_config(tmp_path: Path) -> AppConfig:
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "\n".join(
            [
                "[database]",
                f"path = {tmp_path / 'api.db'}",
                "",
                "[queue]",
                "poll_interval_seconds = 0.05",
                "error_backoff_seconds = 0.05",
                "execution_timeout_seconds = 30",
                "node_timeout_seconds = 5",
                "stale_after_seconds = 600",
                "shutdown_grace_seconds = 2",
                "autostart = false",
                "",
                "[logging]",
                "level = DEBUG",
                "",
                "[integrations]",
                "max_delay_seconds = 0.05",
                "allow_http_domains = api.example.com",
            ]
        ),
        encoding="utf-8",
    )
    return AppConfig(config_path)


@pytest.fixture
def branching_workflow() -> Workflow:
    """manual A -> set_variable B (x=5) -> branch C -true-> D, -false-> E."""
    return workflow(
        [
            node("A", "manual_trigger", NodeKind.TRIGGER),
            node("B", "set_variable", variableName="x", value="5"),
            node("C", "branch_condition", NodeKind.LOGIC, condition="{{$vars.x}}===5"),
            node("D", "template", template="took the true path"),
            node("E", "template", template="took the false path"),
        ],
        [
            edge("A", "B"),
            edge("B", "C"),
            edge("C", "D", "true"),
            edge("C", "E", "false"),
        ],
    )
