import pytest

from stagewright.errors import CyclicDependency, InvalidDependency, ValidationError
from stagewright.graph import (
    ConditionKind,
    build_plan,
    resolve_condition,
    validate,
    validate_workflow,
)


def test_independent_stages_share_first_layer(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1")), wf.stage("b", wf.task("t2")), wf.stage("c", wf.task("t3"))],
        [("a", "c"), ("b", "c")],
    )
    graph = validate(workflow.execution_flow)
    assert graph.layers == [["a", "b"], ["c"]]
    assert [e.from_stage for e in graph.predecessors("c")] == ["a", "b"]


def test_layers_keep_declaration_order(wf):
    workflow = wf.workflow(
        [wf.stage("z", wf.task("t1")), wf.stage("y", wf.task("t2")), wf.stage("x", wf.task("t3"))],
        [("x", "z")],
    )
    graph = validate(workflow.execution_flow)
    assert graph.layers == [["y", "x"], ["z"]]


def test_unknown_stage_is_rejected(wf):
    workflow = wf.workflow([wf.stage("a", wf.task("t1"))], [("a", "missing")])
    with pytest.raises(InvalidDependency) as exc:
        validate(workflow.execution_flow)
    assert "missing" in exc.value.message


def test_self_loop_is_a_cycle(wf):
    workflow = wf.workflow([wf.stage("a", wf.task("t1"))], [("a", "a")])
    with pytest.raises(CyclicDependency) as exc:
        validate(workflow.execution_flow)
    assert exc.value.cycle == ["a", "a"]


def test_cycle_path_is_reported(wf):
    workflow = wf.workflow(
        [
            wf.stage("a", wf.task("t1")),
            wf.stage("b", wf.task("t2")),
            wf.stage("c", wf.task("t3")),
            wf.stage("d", wf.task("t4")),
        ],
        [("a", "b"), ("b", "c"), ("c", "d"), ("d", "b")],
    )
    with pytest.raises(CyclicDependency) as exc:
        validate(workflow.execution_flow)
    assert exc.value.cycle == ["b", "c", "d", "b"]
    assert exc.value.kind.value == "CYCLIC_DEPENDENCY"


def test_unsupported_condition_is_rejected(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1")), wf.stage("b", wf.task("t2"))],
        [("a", "b", "when-the-moon-is-full")],
    )
    with pytest.raises(InvalidDependency):
        validate(workflow.execution_flow)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, ConditionKind.SUCCESS),
        ("", ConditionKind.SUCCESS),
        ("on-success", ConditionKind.SUCCESS),
        ("On-Failure", ConditionKind.FAILURE),
        ("completion", ConditionKind.ALWAYS),
        (" always ", ConditionKind.ALWAYS),
    ],
)
def test_resolve_condition_defaults(raw, expected):
    assert resolve_condition(raw) == expected


def test_custom_condition_vocabulary(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1")), wf.stage("b", wf.task("t2"))],
        [("a", "b", "if-broken")],
    )
    graph = validate(workflow.execution_flow, {"if-broken": "failure"})
    assert graph.edges[0].condition == ConditionKind.FAILURE
    with pytest.raises(InvalidDependency):
        validate(workflow.execution_flow, {"success": "success"})


def test_structural_issues_are_collected(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1"), wf.task("t1")), wf.stage("a", wf.task("t2"))]
    )
    workflow.main_agent_id = "nobody"
    with pytest.raises(ValidationError) as exc:
        validate_workflow(workflow)
    issues = exc.value.issues
    assert any("Main agent" in issue for issue in issues)
    assert any("Duplicate task id 't1'" in issue for issue in issues)
    assert any("Duplicate stage id 'a'" in issue for issue in issues)


def test_task_agent_must_belong_to_workflow(wf):
    workflow = wf.workflow([wf.stage("a", wf.task("t1", agent="worker"))])
    workflow.execution_flow.stages[0].tasks.append(wf.task("t2", agent="stranger"))
    with pytest.raises(ValidationError) as exc:
        validate_workflow(workflow)
    assert "stranger" in exc.value.message


def test_sequential_dependency_must_precede_task(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1", dependencies=["t2"]), wf.task("t2"))]
    )
    with pytest.raises(InvalidDependency):
        validate_workflow(workflow)


def test_task_dependency_must_stay_in_stage(wf):
    workflow = wf.workflow(
        [
            wf.stage("a", wf.task("t1")),
            wf.stage("b", wf.task("t2", dependencies=["t1"]), type="parallel"),
        ]
    )
    with pytest.raises(InvalidDependency):
        validate_workflow(workflow)


def test_validate_workflow_returns_graph(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1"), wf.task("t2", dependencies=["t1"]))]
    )
    graph = validate_workflow(workflow)
    assert graph.layers == [["a"]]


def test_build_plan_critical_path(wf):
    workflow = wf.workflow(
        [
            wf.stage("a", wf.task("t1"), timeout_ms=100),
            wf.stage("b", wf.task("t2"), timeout_ms=300),
            wf.stage("c", wf.task("t3"), wf.task("t4"), timeout_ms=200),
            wf.stage("d", wf.task("t5"), timeout_ms=50),
        ],
        [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
    )
    plan = build_plan(workflow, validate_workflow(workflow))
    assert [layer.stages for layer in plan.layers] == [["a"], ["b", "c"], ["d"]]
    assert plan.layers[1].can_run_in_parallel
    assert not plan.layers[0].can_run_in_parallel
    assert plan.critical_path == ["a", "b", "d"]
    assert plan.estimated_duration_ms == 450
    assert plan.total_stages == 4
    assert plan.total_tasks == 5
    assert plan.warnings == [
        "Level 1 accounts for most of the estimated duration; consider splitting its stages"
    ]


def test_balanced_connected_plan_has_no_warnings(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1")), wf.stage("b", wf.task("t2"))],
        [("a", "b")],
    )
    assert build_plan(workflow, validate_workflow(workflow)).warnings == []


def test_plan_warns_about_long_serial_chains(wf):
    ids = [f"s{i}" for i in range(6)]
    workflow = wf.workflow(
        [wf.stage(sid, wf.task(f"t{i}")) for i, sid in enumerate(ids)],
        list(zip(ids, ids[1:])),
    )
    warnings = build_plan(workflow, validate_workflow(workflow)).warnings
    assert warnings == ["Plan has 6 serial levels; consider running more stages in parallel"]


def test_plan_warns_about_wide_levels_and_isolated_stages(wf):
    stages = [wf.stage(f"w{i}", wf.task(f"t{i}")) for i in range(6)]
    stages.append(wf.stage("merge", wf.task("t-merge")))
    workflow = wf.workflow(stages, [(f"w{i}", "merge") for i in range(5)])
    warnings = build_plan(workflow, validate_workflow(workflow)).warnings
    assert "Level 0 runs 6 stages in parallel, which may contend for task slots" in warnings
    assert "Stages without dependencies: w5" in warnings


def test_condition_mapped_to_unknown_kind_is_invalid_dependency(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1")), wf.stage("b", wf.task("t2"))],
        [("a", "b", "done")],
    )
    with pytest.raises(InvalidDependency) as exc:
        validate(workflow.execution_flow, {"done": "finished"})
    assert exc.value.details == {"condition": "done", "kind": "finished"}
