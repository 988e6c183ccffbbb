"""Tests for SQL generation, execution and the semantic consistency gate"""
import asyncio
import json

from conftest import PLAN_SQL, FakeLlm, FakeSqlExecutor, plan_answer

from data_agent.schemas.graph import StreamEventType
from data_agent.services.sql_executor import ResultSet
from data_agent.workflow import prompts
from data_agent.workflow.constants import NodeName
from data_agent.workflow.context import NodeContext
from data_agent.workflow.errors import SqlExecutionError
from data_agent.workflow.nodes.sql import (
    SQL_FAILED_MESSAGE, semantic_consistency_node, sql_execute_node, sql_generate_node,
)
from data_agent.workflow.state import (
    INPUT_KEY, PLANNER_NODE_OUTPUT, PLAN_CURRENT_STEP, RESET, SCOPE_ID,
    SEMANTIC_CONSISTENCY_NODE_OUTPUT, SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT,
    SQL_EXECUTE_NODE_EXCEPTION_OUTPUT, SQL_GENERATE_COUNT, SQL_GENERATE_OUTPUT,
    SQL_GENERATE_SCHEMA_MISSING_ADVICE, SQL_RESULT_LIST_MEMORY, STEP_EXECUTION_RESULTS,
    WORKFLOW_ERROR, SharedState,
)

COUNT_SQL = "SELECT COUNT(*) FROM orders WHERE region = '华东'"
SUM_SQL = "SELECT SUM(amount) AS total FROM orders WHERE region = '华东'"
AGGREGATION_FEEDBACK = "不通过：聚合口径错误，应统计 SUM(amount) 而不是订单数"


def run_node(handler, node, state, services):
    async def _run():
        events = []
        delta = await handler(state, NodeContext(node, "session-1", services, events.append))
        return delta, events
    return asyncio.run(_run())


def sql_state(sql=COUNT_SQL, **values):
    plan = json.loads(plan_answer(("SQL_EXECUTE_NODE", {"description": "上月华东区销售额", "sql_query": sql})))
    base = {INPUT_KEY: "上月华东区销售额", SCOPE_ID: "1", PLANNER_NODE_OUTPUT: plan}
    base.update(values)
    return SharedState(base)


# =============================================================================
# SQL EXECUTE
# =============================================================================

def test_execute_stores_records_and_emits_table(make_services):
    executor = FakeSqlExecutor([ResultSet(columns=["region", "total"], rows=[["华东", 12345.6]])])
    delta, events = run_node(sql_execute_node, NodeName.SQL_EXECUTE, sql_state(),
                             make_services(FakeLlm({}), sql_executor=executor))
    assert executor.executed == [COUNT_SQL]
    assert delta[SQL_RESULT_LIST_MEMORY] == [{"region": "华东", "total": 12345.6}]
    assert delta[SQL_EXECUTE_NODE_EXCEPTION_OUTPUT] == ""
    table = [e for e in events if e.type is StreamEventType.JSON]
    assert json.loads(table[0].payload)["columns"] == ["region", "total"]


def test_execute_reports_truncated_result(make_services):
    executor = FakeSqlExecutor([ResultSet(columns=["total"], rows=[[1], [2]], truncated=True)])
    delta, events = run_node(sql_execute_node, NodeName.SQL_EXECUTE, sql_state(),
                             make_services(FakeLlm({}), sql_executor=executor))
    assert delta[SQL_RESULT_LIST_MEMORY] == [{"total": 1}, {"total": 2}]
    assert any("Only the first 2 rows" in e.payload for e in events)


def test_execute_failure_is_recorded_for_repair(make_services):
    executor = FakeSqlExecutor([SqlExecutionError("Unknown column 'amt' in 'field list'")])
    delta, _ = run_node(sql_execute_node, NodeName.SQL_EXECUTE, sql_state(),
                        make_services(FakeLlm({}), sql_executor=executor))
    assert "Unknown column" in delta[SQL_EXECUTE_NODE_EXCEPTION_OUTPUT]
    assert WORKFLOW_ERROR not in delta


def test_execute_without_datasource_fails(make_services):
    delta, _ = run_node(sql_execute_node, NodeName.SQL_EXECUTE, sql_state(),
                        make_services(FakeLlm({}), datasource=None))
    assert delta[WORKFLOW_ERROR]


# =============================================================================
# SEMANTIC CONSISTENCY
# =============================================================================

def test_semantic_fail_keeps_cursor(make_services):
    llm = FakeLlm({prompts.SEMANTIC_CONSISTENCY_ROLE: AGGREGATION_FEEDBACK})
    delta, _ = run_node(semantic_consistency_node, NodeName.SEMANTIC_CONSISTENCY, sql_state(),
                        make_services(llm))
    assert delta == {
        SEMANTIC_CONSISTENCY_NODE_OUTPUT: False,
        SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT: AGGREGATION_FEEDBACK,
    }


def test_semantic_pass_commits_step_result(make_services):
    llm = FakeLlm({prompts.SEMANTIC_CONSISTENCY_ROLE: "通过"})
    state = sql_state(SUM_SQL, **{SQL_RESULT_LIST_MEMORY: [{"total": 12345.6}], SQL_GENERATE_COUNT: 2})
    delta, _ = run_node(semantic_consistency_node, NodeName.SEMANTIC_CONSISTENCY, state, make_services(llm))
    assert delta[SEMANTIC_CONSISTENCY_NODE_OUTPUT] is True
    assert json.loads(delta[STEP_EXECUTION_RESULTS]["step_1"]) == {"sql": SUM_SQL, "data": [{"total": 12345.6}]}
    # Single-step plan: the cursor stays on the last step
    assert delta[PLAN_CURRENT_STEP] == 1
    assert delta[SQL_GENERATE_COUNT] == 0


# =============================================================================
# SQL GENERATE (repair)
# =============================================================================

def test_repair_uses_semantic_recommendation(make_services):
    llm = FakeLlm({prompts.SQL_REPAIR_ROLE: f"```sql\n{SUM_SQL}\n```"})
    state = sql_state(**{
        SEMANTIC_CONSISTENCY_NODE_OUTPUT: False,
        SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT: AGGREGATION_FEEDBACK,
    })
    delta, _ = run_node(sql_generate_node, NodeName.SQL_GENERATE, state, make_services(llm))

    repair_calls = llm.calls_for(prompts.SQL_REPAIR_ROLE)
    assert len(repair_calls) == 1
    assert f"Reason for revision:\n{AGGREGATION_FEEDBACK}" in repair_calls[0].user
    assert COUNT_SQL in repair_calls[0].user
    assert delta[SQL_GENERATE_OUTPUT] == f"{SUM_SQL};"
    assert delta[PLANNER_NODE_OUTPUT]["execution_plan"][0]["tool_parameters"]["sql_query"] == f"{SUM_SQL};"
    assert delta[SEMANTIC_CONSISTENCY_NODE_OUTPUT] is RESET
    assert delta[SQL_GENERATE_COUNT] == 1


def test_repair_uses_execution_error(make_services):
    llm = FakeLlm({prompts.SQL_REPAIR_ROLE: SUM_SQL})
    state = sql_state(**{SQL_EXECUTE_NODE_EXCEPTION_OUTPUT: "Unknown column 'amt'"})
    delta, _ = run_node(sql_generate_node, NodeName.SQL_GENERATE, state, make_services(llm))
    assert "SQL execution error: Unknown column 'amt'" in llm.calls_for(prompts.SQL_REPAIR_ROLE)[0].user
    assert delta[SQL_EXECUTE_NODE_EXCEPTION_OUTPUT] == ""


def test_repair_loop_is_bounded(make_services, test_settings):
    # Every candidate scores below the threshold (no WHERE)
    llm = FakeLlm({prompts.SQL_REPAIR_ROLE: "SELECT amount FROM orders"})
    state = sql_state(**{SQL_EXECUTE_NODE_EXCEPTION_OUTPUT: "timeout"})
    delta, _ = run_node(sql_generate_node, NodeName.SQL_GENERATE, state, make_services(llm))
    assert len(llm.calls_for(prompts.SQL_REPAIR_ROLE)) == test_settings.sql_max_optimization_rounds
    assert delta[SQL_GENERATE_OUTPUT] == "SELECT amount FROM orders;"


def test_generate_count_cap(make_services, test_settings):
    llm = FakeLlm({prompts.SQL_REPAIR_ROLE: SUM_SQL})
    state = sql_state(**{SQL_GENERATE_COUNT: test_settings.sql_generate_max_count})
    delta, _ = run_node(sql_generate_node, NodeName.SQL_GENERATE, state, make_services(llm))
    assert delta[WORKFLOW_ERROR] == SQL_FAILED_MESSAGE
    assert delta[SQL_GENERATE_OUTPUT] is None
    assert llm.calls == []


def test_schema_missing_advice_is_followed_once(make_services):
    llm = FakeLlm({prompts.SQL_REPAIR_ROLE: f"{prompts.SCHEMA_MISSING_MARKER} 缺少销售大区字段"})
    state = sql_state(**{SQL_EXECUTE_NODE_EXCEPTION_OUTPUT: "Unknown column 'region'"})
    delta, _ = run_node(sql_generate_node, NodeName.SQL_GENERATE, state, make_services(llm))
    assert delta[SQL_GENERATE_OUTPUT] is None
    assert "缺少销售大区字段" in delta[SQL_GENERATE_SCHEMA_MISSING_ADVICE]
    assert WORKFLOW_ERROR not in delta

    state.apply(delta)
    state.set(SQL_EXECUTE_NODE_EXCEPTION_OUTPUT, "Unknown column 'region'")
    delta, _ = run_node(sql_generate_node, NodeName.SQL_GENERATE, state, make_services(llm))
    assert delta[WORKFLOW_ERROR] == SQL_FAILED_MESSAGE


def test_plan_sql_is_untouched_by_execution(make_services):
    state = sql_state(PLAN_SQL)
    run_node(sql_execute_node, NodeName.SQL_EXECUTE, state, make_services(FakeLlm({})))
    assert state.get(PLANNER_NODE_OUTPUT)["execution_plan"][0]["tool_parameters"]["sql_query"] == PLAN_SQL
