from __future__ import annotations

import pytest

from conftest import edge, node, workflow
from flowrunner.errors import GraphCycle, GraphReferenceError, InvalidWorkflow
from flowrunner.graph import reachable_from, topological_order, validate_workflow
from flowrunner.models import NodeKind


def kinds(report):
    return [error.kind for error in report.errors]


def test_topological_order_follows_edges():
    nodes = [node("C", "echo"), node("A", "manual_trigger", NodeKind.TRIGGER), node("B", "echo")]
    order = topological_order(nodes, [edge("A", "B"), edge("B", "C")])
    assert [n.id for n in order] == ["A", "B", "C"]


def test_topological_ties_go_to_declaration_order():
    nodes = [
        node("T", "manual_trigger", NodeKind.TRIGGER),
        node("Z", "echo"),
        node("Y", "echo"),
        node("X", "echo"),
    ]
    order = topological_order(nodes, [edge("T", "X"), edge("T", "Y"), edge("T", "Z")])
    assert [n.id for n in order] == ["T", "Z", "Y", "X"]


def test_topological_order_rejects_cycles():
    nodes = [node("A", "echo"), node("B", "echo"), node("C", "echo")]
    with pytest.raises(GraphCycle) as excinfo:
        topological_order(nodes, [edge("A", "B"), edge("B", "C"), edge("C", "B")])
    assert excinfo.value.node_ids == ["B", "C"]


def test_topological_order_rejects_dangling_edges():
    with pytest.raises(GraphReferenceError):
        topological_order([node("A", "echo")], [edge("A", "ghost")])


def test_reachable_from():
    edges = [edge("A", "B"), edge("B", "C"), edge("D", "C")]
    assert reachable_from(["A"], edges) == {"A", "B", "C"}


def test_valid_branching_workflow(registry, branching_workflow):
    report = validate_workflow(branching_workflow, registry)
    assert report.valid
    assert report.warnings == []
    report.raise_for_errors()


def test_reports_cycle(registry):
    wf = workflow(
        [node("A", "manual_trigger", NodeKind.TRIGGER), node("B", "echo"), node("C", "echo")],
        [edge("A", "B"), edge("B", "C"), edge("C", "B")],
    )
    report = validate_workflow(wf, registry)
    assert kinds(report) == ["GraphCycle"]
    with pytest.raises(InvalidWorkflow) as excinfo:
        report.raise_for_errors()
    assert excinfo.value.to_dict()["errors"][0]["kind"] == "GraphCycle"


def test_reports_dangling_edge_and_duplicate_node(registry):
    wf = workflow(
        [node("A", "manual_trigger", NodeKind.TRIGGER), node("A", "echo")],
        [edge("A", "missing")],
    )
    report = validate_workflow(wf, registry)
    assert kinds(report) == ["DuplicateNode", "GraphReferenceError"]
    assert report.errors[1].edge_id == "A->missing"


def test_reports_unknown_integration(registry):
    wf = workflow(
        [node("A", "manual_trigger", NodeKind.TRIGGER), node("B", "send_fax")],
        [edge("A", "B")],
    )
    report = validate_workflow(wf, registry)
    assert kinds(report) == ["UnknownIntegration"]
    assert report.errors[0].node_id == "B"


def test_reports_branch_tag_on_non_branching_node(registry):
    wf = workflow(
        [node("A", "manual_trigger", NodeKind.TRIGGER), node("B", "echo")],
        [edge("A", "B", "true")],
    )
    assert kinds(validate_workflow(wf, registry)) == ["BranchConflict"]


def test_reports_two_edges_with_same_branch_tag(registry):
    wf = workflow(
        [
            node("A", "manual_trigger", NodeKind.TRIGGER),
            node("C", "branch_condition", NodeKind.LOGIC, condition="1 === 1"),
            node("D", "echo"),
            node("E", "echo"),
        ],
        [edge("A", "C"), edge("C", "D", "true"), edge("C", "E", "true")],
    )
    assert kinds(validate_workflow(wf, registry)) == ["BranchConflict"]


def test_reports_invalid_config(registry):
    wf = workflow(
        [
            node("A", "manual_trigger", NodeKind.TRIGGER),
            node("B", "set_variable", variableName="1bad", value="x"),
        ],
        [edge("A", "B")],
    )
    report = validate_workflow(wf, registry)
    assert kinds(report) == ["InvalidNodeConfig"]
    assert report.errors[0].errors == {"variableName": "Invalid variable name format"}


def test_templated_config_values_are_checked_at_run_time(registry):
    wf = workflow(
        [
            node("A", "manual_trigger", NodeKind.TRIGGER),
            node("B", "delay", amount="{{$vars.wait}}", unit="seconds"),
        ],
        [edge("A", "B")],
    )
    assert validate_workflow(wf, registry).valid


def test_warns_about_unreachable_nodes_and_kind_mismatch(registry):
    wf = workflow(
        [
            node("A", "manual_trigger", NodeKind.TRIGGER),
            node("B", "echo"),
            node("C", "template", NodeKind.LOGIC, template="orphan"),
        ],
        [edge("A", "B")],
    )
    report = validate_workflow(wf, registry)
    assert report.valid
    assert "Node C is not reachable from any trigger" in report.warnings
    assert any("declared as logic" in warning for warning in report.warnings)


def test_warns_when_no_trigger(registry):
    report = validate_workflow(workflow([node("B", "echo")], []), registry)
    assert report.valid
    assert report.warnings == ["Workflow has no trigger node"]


def test_report_to_dict(registry):
    wf = workflow([node("A", "manual_trigger", NodeKind.TRIGGER), node("B", "send_fax")], [edge("A", "B")])
    payload = validate_workflow(wf, registry).to_dict()
    assert payload["valid"] is False
    assert payload["errors"] == [
        {"kind": "UnknownIntegration", "message": "Unknown integration: send_fax", "node_id": "B"}
    ]
