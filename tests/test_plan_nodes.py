"""Tests for the planner, the step executor and human review"""
import asyncio
import json

import pytest
from conftest import PLAN_SQL, FakeLlm, happy_scripts, plan_answer, sales_plan

from data_agent.schemas.graph import StreamEventType
from data_agent.schemas.plan import Plan
from data_agent.workflow import prompts
from data_agent.workflow.constants import NodeName
from data_agent.workflow.context import NodeContext
from data_agent.workflow.nodes.plan import (
    human_feedback_node, parse_plan, plan_executor_node, planner_node, validate_plan,
)
from data_agent.workflow.state import (
    HUMAN_FEEDBACK_DATA, HUMAN_REVIEW_ENABLED, INPUT_KEY, IS_ONLY_NL2SQL, PLANNER_NODE_OUTPUT,
    PLAN_CURRENT_STEP, PLAN_FEEDBACK_HISTORY, PLAN_NEXT_NODE, PLAN_REPAIR_COUNT,
    PLAN_VALIDATION_ERROR, PLAN_VALIDATION_STATUS, RESET, RESULT, SCOPE_ID,
    STEP_EXECUTION_RESULTS, THINKING_HISTORY, WORKFLOW_ERROR, SharedState,
)


def run_node(handler, node, state, services):
    async def _run():
        events = []
        delta = await handler(state, NodeContext(node, "session-1", services, events.append))
        return delta, events
    return asyncio.run(_run())


def make_state(**values):
    base = {INPUT_KEY: "上月华东区销售额", SCOPE_ID: "1"}
    base.update(values)
    return SharedState(base)


def two_sql_plan():
    return json.loads(plan_answer(
        ("SQL_EXECUTE_NODE", {"description": "华东区销售额", "sql_query": PLAN_SQL}),
        ("SQL_EXECUTE_NODE", {"description": "华南区销售额", "sql_query": "SELECT 2 FROM orders WHERE 1 = 1"}),
    ))


# =============================================================================
# PLAN PARSING & VALIDATION
# =============================================================================

def test_parse_plan_accepts_fenced_json():
    plan, error = parse_plan(f"Here is the plan:\n```json\n{sales_plan()}\n```")
    assert error == ""
    assert [step.tool for step in plan.execution_plan] == ["SQL_EXECUTE_NODE", "REPORT_GENERATOR_NODE"]


def test_parse_plan_rejects_prose():
    plan, error = parse_plan("I would first look at the orders table.")
    assert plan is None
    assert error


@pytest.mark.parametrize("steps,reason", [
    ([], "no steps"),
    ([("SQL_EXECUTE_NODE", {"sql_query": "SELECT 1"}), ("SQL_EXECUTE_NODE", {"sql_query": "SELECT 2"})], None),
    ([("SQL_EXECUTE_NODE", {"description": "missing sql"})], "sql_query"),
    ([("SEND_EMAIL_NODE", {})], "unknown tool"),
    ([("PYTHON_GENERATE_NODE", {})], "instruction"),
    ([("REPORT_GENERATOR_NODE", {}), ("SQL_EXECUTE_NODE", {"sql_query": "SELECT 1"})], "last step"),
])
def test_validate_plan(steps, reason):
    plan = Plan.model_validate(json.loads(plan_answer(*steps)))
    error = validate_plan(plan, 1)
    if reason is None:
        assert error is None
    else:
        assert reason in error


def test_validate_plan_rejects_gaps_and_out_of_range_cursor():
    raw = two_sql_plan()
    raw["execution_plan"][1]["step"] = 3
    assert "numbered" in validate_plan(Plan.model_validate(raw), 1)
    assert "outside" in validate_plan(Plan.model_validate(two_sql_plan()), 3)


# =============================================================================
# PLANNER
# =============================================================================

def test_planner_reasks_once_on_unusable_answer(make_services):
    llm = FakeLlm(happy_scripts(**{prompts.PLANNER_ROLE: ["not a plan", sales_plan()]}))
    delta, events = run_node(planner_node, NodeName.PLANNER, make_state(), make_services(llm))

    calls = llm.calls_for(prompts.PLANNER_ROLE)
    assert len(calls) == 2
    assert "could not be used as a plan" in calls[1].user
    assert delta[PLAN_CURRENT_STEP] == 1
    assert delta[PLANNER_NODE_OUTPUT]["execution_plan"][0]["tool_parameters"]["sql_query"] == PLAN_SQL
    assert delta[THINKING_HISTORY][0]["thought_number"] == 1
    assert any(event.type is StreamEventType.JSON for event in events)


def test_planner_fails_after_second_unusable_answer(make_services):
    llm = FakeLlm(happy_scripts(**{prompts.PLANNER_ROLE: "still not a plan"}))
    delta, _ = run_node(planner_node, NodeName.PLANNER, make_state(), make_services(llm))
    assert delta[WORKFLOW_ERROR]
    assert len(llm.calls_for(prompts.PLANNER_ROLE)) == 2


def test_replan_records_revision_and_feedback(make_services):
    llm = FakeLlm(happy_scripts())
    state = make_state(**{
        PLAN_FEEDBACK_HISTORY: ["请按省份拆分"],
        THINKING_HISTORY: [{"thought_number": 1, "thought": "first", "is_revision": False}],
    })
    delta, _ = run_node(planner_node, NodeName.PLANNER, state, make_services(llm))

    assert "请按省份拆分" in llm.calls_for(prompts.PLANNER_ROLE)[0].user
    thought = delta[THINKING_HISTORY][0]
    assert thought["thought_number"] == 2
    assert thought["is_revision"] is True
    assert thought["revises_thought"] == 1
    assert thought["reason"] == "请按省份拆分"
    assert delta[HUMAN_FEEDBACK_DATA] is RESET


def test_nl2sql_planner_builds_single_sql_step(make_services):
    llm = FakeLlm(happy_scripts(**{prompts.SQL_GENERATION_ROLE: f"```sql\n{PLAN_SQL}\n```"}))
    delta, _ = run_node(
        planner_node, NodeName.PLANNER, make_state(**{IS_ONLY_NL2SQL: True}), make_services(llm)
    )
    steps = delta[PLANNER_NODE_OUTPUT]["execution_plan"]
    assert len(steps) == 1
    assert steps[0]["tool_parameters"]["sql_query"] == f"{PLAN_SQL};"
    assert llm.calls_for(prompts.PLANNER_ROLE) == []


# =============================================================================
# PLAN EXECUTOR
# =============================================================================

def test_executor_dispatches_current_step(make_services):
    state = make_state(**{PLANNER_NODE_OUTPUT: two_sql_plan(), PLAN_CURRENT_STEP: 2,
                          STEP_EXECUTION_RESULTS: {"step_1": "{}"}})
    delta, _ = run_node(plan_executor_node, NodeName.PLAN_EXECUTOR, state, make_services(FakeLlm({})))
    assert delta[PLAN_VALIDATION_STATUS] is True
    assert delta[PLAN_NEXT_NODE] == NodeName.SQL_EXECUTE.value
    assert PLAN_CURRENT_STEP not in delta


def test_executor_goes_to_report_after_last_step(make_services):
    state = make_state(**{PLANNER_NODE_OUTPUT: two_sql_plan(), PLAN_CURRENT_STEP: 2,
                          STEP_EXECUTION_RESULTS: {"step_1": "{}", "step_2": "{}"}})
    delta, _ = run_node(plan_executor_node, NodeName.PLAN_EXECUTOR, state, make_services(FakeLlm({})))
    assert delta[PLAN_NEXT_NODE] == NodeName.REPORT_GENERATOR.value


def test_executor_returns_sql_in_nl2sql_mode(make_services):
    plan = json.loads(plan_answer(("SQL_EXECUTE_NODE", {"sql_query": f"{PLAN_SQL};"})))
    state = make_state(**{PLANNER_NODE_OUTPUT: plan, IS_ONLY_NL2SQL: True,
                          STEP_EXECUTION_RESULTS: {"step_1": "{}"}})
    delta, _ = run_node(plan_executor_node, NodeName.PLAN_EXECUTOR, state, make_services(FakeLlm({})))
    assert delta[PLAN_NEXT_NODE] == NodeName.END.value
    assert delta[RESULT] == f"{PLAN_SQL};"


def test_executor_waits_for_review(make_services):
    state = make_state(**{PLANNER_NODE_OUTPUT: two_sql_plan(), HUMAN_REVIEW_ENABLED: True})
    delta, _ = run_node(plan_executor_node, NodeName.PLAN_EXECUTOR, state, make_services(FakeLlm({})))
    assert delta[PLAN_NEXT_NODE] == NodeName.HUMAN_FEEDBACK.value

    state.set(HUMAN_FEEDBACK_DATA, {"approved": True})
    delta, _ = run_node(plan_executor_node, NodeName.PLAN_EXECUTOR, state, make_services(FakeLlm({})))
    assert delta[PLAN_NEXT_NODE] == NodeName.SQL_EXECUTE.value


def test_executor_counts_repairs_and_gives_up(make_services, test_settings):
    invalid = json.loads(plan_answer(("SQL_EXECUTE_NODE", {"description": "no sql"})))
    state = make_state(**{PLANNER_NODE_OUTPUT: invalid, PLAN_REPAIR_COUNT: 1})
    delta, _ = run_node(plan_executor_node, NodeName.PLAN_EXECUTOR, state, make_services(FakeLlm({})))
    assert delta[PLAN_VALIDATION_STATUS] is False
    assert "sql_query" in delta[PLAN_VALIDATION_ERROR]
    assert delta[PLAN_REPAIR_COUNT] == 2
    assert WORKFLOW_ERROR not in delta

    state.set(PLAN_REPAIR_COUNT, test_settings.plan_max_repair_count)
    delta, _ = run_node(plan_executor_node, NodeName.PLAN_EXECUTOR, state, make_services(FakeLlm({})))
    assert delta[WORKFLOW_ERROR]


# =============================================================================
# HUMAN FEEDBACK
# =============================================================================

def test_rejection_appends_feedback_and_rewinds(make_services):
    state = make_state(**{
        PLAN_CURRENT_STEP: 2,
        HUMAN_FEEDBACK_DATA: {"approved": False, "feedback_text": "请按省份拆分"},
    })
    delta, _ = run_node(human_feedback_node, NodeName.HUMAN_FEEDBACK, state, make_services(FakeLlm({})))
    assert delta[PLAN_FEEDBACK_HISTORY] == ["请按省份拆分"]
    assert delta[PLAN_CURRENT_STEP] == 1


def test_approval_keeps_plan(make_services):
    state = make_state(**{HUMAN_FEEDBACK_DATA: {"approved": True, "feedback_text": ""}})
    delta, _ = run_node(human_feedback_node, NodeName.HUMAN_FEEDBACK, state, make_services(FakeLlm({})))
    assert delta == {HUMAN_FEEDBACK_DATA: {"approved": True, "feedback_text": ""}}
