"""
SQL nodes: synthesis/repair, execution and the semantic consistency gate.
"""

import json
from dataclasses import dataclass
from typing import Dict, List, Optional

from ...schemas.graph import StreamEventType
from ..context import NodeContext
from ..errors import CollaboratorError
from .. import prompts
from ..sql_repair import finalize_sql, optimize_sql
from ..state import (
    EVIDENCES, PLANNER_NODE_OUTPUT, PLAN_CURRENT_STEP, RESET, SCOPE_ID,
    SEMANTIC_CONSISTENCY_NODE_OUTPUT, SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT,
    SQL_EXECUTE_NODE_EXCEPTION_OUTPUT, SQL_GENERATE_COUNT, SQL_GENERATE_OUTPUT,
    SQL_GENERATE_SCHEMA_MISSING_ADVICE, SQL_RESULT_LIST_MEMORY, STEP_EXECUTION_RESULTS,
    WORKFLOW_ERROR, SharedState,
)
from .common import advanced_cursor, canonical_query, current_step, load_schema, step_result_key
from .schema import NO_ACTIVE_DATASOURCE_MESSAGE

SQL_FAILED_MESSAGE = "A valid SQL query could not be generated for this step."
MAX_DISPLAYED_ROWS = 50


@dataclass
class SynthesisResult:
    sql: Optional[str]
    schema_missing_advice: str = ""


async def synthesize_sql(ctx: NodeContext, state: SharedState, existing_sql: Optional[str],
                         reason: str, description: str) -> SynthesisResult:
    """
    Run the bounded generate/score/regenerate loop and the final validation.

    A first generation is requested when there is no ``existing_sql``;
    otherwise every round asks for a repair of the best SQL so far.
    """
    settings = ctx.settings
    question = canonical_query(state)
    evidences = state.get_or_default(EVIDENCES)
    schema = load_schema(state)
    datasource = await ctx.services.datasources.get_active_datasource(state.get(SCOPE_ID))
    dialect = datasource.dialect if datasource else settings.datasource_dialect
    advice: List[str] = []

    async def generate(seed: Optional[str], round_no: int) -> Optional[str]:
        if seed is None:
            system, user = prompts.build_sql_generation_prompt(
                question, description, evidences, schema, dialect
            )
        else:
            system, user = prompts.build_sql_repair_prompt(
                seed, reason, round_no, question, description, evidences, schema, dialect
            )
        try:
            answer = await ctx.services.llm.call(user, system)
        except CollaboratorError as e:
            ctx.logger.warning(f"⚠️ SQL generation round {round_no} failed: {e}")
            return None
        if answer.strip().startswith(prompts.SCHEMA_MISSING_MARKER):
            advice.append(answer.strip()[len(prompts.SCHEMA_MISSING_MARKER):].strip())
            return None
        return answer

    outcome = await optimize_sql(
        generate,
        existing_sql,
        settings.sql_max_optimization_rounds,
        settings.sql_quality_threshold,
        ctx.logger,
    )
    if outcome.sql is None:
        return SynthesisResult(sql=None, schema_missing_advice="; ".join(a for a in advice if a))
    sql = finalize_sql(outcome.sql, dialect, settings.sql_security_warn_threshold, ctx.logger)
    ctx.logger.info(f"SQL accepted after {outcome.llm_calls} LLM calls (score {outcome.score.total:.2f})")
    return SynthesisResult(sql=sql)


async def sql_generate_node(state: SharedState, ctx: NodeContext) -> Dict:
    """
    Repair the current step's SQL after an execution error or a failed
    semantic check, then write it back into the plan.
    """
    ctx.logger.info("▶️ NODE START")
    count = state.get_or_default(SQL_GENERATE_COUNT)
    if count >= ctx.settings.sql_generate_max_count:
        ctx.emit(SQL_FAILED_MESSAGE)
        return {SQL_GENERATE_OUTPUT: None, WORKFLOW_ERROR: SQL_FAILED_MESSAGE}

    plan, cursor, step = current_step(state)
    if step is None:
        message = "There is no plan step to generate SQL for."
        ctx.emit(message)
        return {SQL_GENERATE_OUTPUT: None, WORKFLOW_ERROR: message}

    delta: Dict = {SQL_GENERATE_COUNT: count + 1}
    exception = state.get_or_default(SQL_EXECUTE_NODE_EXCEPTION_OUTPUT)
    if exception:
        reason = f"SQL execution error: {exception}"
        ctx.emit("SQL execution failed, regenerating the SQL...\n")
        delta[SQL_EXECUTE_NODE_EXCEPTION_OUTPUT] = ""
    elif state.get(SEMANTIC_CONSISTENCY_NODE_OUTPUT) is False:
        reason = state.get_or_default(SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT)
        ctx.emit("Semantic consistency check failed, regenerating the SQL...\n")
        delta[SEMANTIC_CONSISTENCY_NODE_OUTPUT] = RESET
        delta[SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT] = ""
    else:
        reason = ""

    result = await synthesize_sql(
        ctx, state,
        existing_sql=(step.parameters.sql_query or "").strip() or None,
        reason=reason,
        description=step.parameters.description or step.parameters.instruction or "",
    )

    if result.sql is None:
        if result.schema_missing_advice and not state.get_or_default(SQL_GENERATE_SCHEMA_MISSING_ADVICE):
            ctx.emit(f"The schema lacks information for this query, searching again: "
                     f"{result.schema_missing_advice}\n")
            delta.update({
                SQL_GENERATE_OUTPUT: None,
                SQL_GENERATE_SCHEMA_MISSING_ADVICE: result.schema_missing_advice,
            })
            return delta
        ctx.emit(SQL_FAILED_MESSAGE)
        delta.update({SQL_GENERATE_OUTPUT: None, WORKFLOW_ERROR: SQL_FAILED_MESSAGE})
        return delta

    plan.execution_plan[cursor - 1].parameters.sql_query = result.sql
    ctx.emit(f"Regenerated SQL:\n{result.sql}\n")
    delta.update({SQL_GENERATE_OUTPUT: result.sql, PLANNER_NODE_OUTPUT: plan.to_wire()})
    return delta


async def sql_execute_node(state: SharedState, ctx: NodeContext) -> Dict:
    ctx.logger.info("▶️ NODE START")
    _, cursor, step = current_step(state)
    sql = (step.parameters.sql_query or "").strip() if step else ""
    if not sql:
        return {SQL_EXECUTE_NODE_EXCEPTION_OUTPUT: "No SQL to execute for the current step."}

    datasource = await ctx.services.datasources.get_active_datasource(state.get(SCOPE_ID))
    if datasource is None:
        ctx.emit(NO_ACTIVE_DATASOURCE_MESSAGE)
        return {WORKFLOW_ERROR: NO_ACTIVE_DATASOURCE_MESSAGE}

    ctx.emit(f"Executing SQL of step {cursor}:\n{sql}\n")
    try:
        result = await ctx.services.sql_executor.execute(datasource, sql)
    except CollaboratorError as e:
        ctx.logger.warning(f"⚠️ SQL execution failed: {e}")
        ctx.emit(f"SQL execution failed: {e}\n")
        return {SQL_EXECUTE_NODE_EXCEPTION_OUTPUT: str(e)}

    ctx.emit(
        json.dumps({"columns": result.columns, "rows": result.rows[:MAX_DISPLAYED_ROWS]},
                   ensure_ascii=False, default=str),
        StreamEventType.JSON,
    )
    ctx.logger.info(f"Step {cursor}: {len(result.rows)} rows")
    if result.truncated:
        ctx.emit(f"Only the first {len(result.rows)} rows of the result are used.\n")
    return {
        SQL_EXECUTE_NODE_EXCEPTION_OUTPUT: "",
        SQL_RESULT_LIST_MEMORY: result.to_records(),
    }


async def semantic_consistency_node(state: SharedState, ctx: NodeContext) -> Dict:
    """
    Binary gate: an answer starting with the fail marker keeps the cursor
    and stores the answer as the recommendation for the next repair round.
    """
    ctx.logger.info("▶️ NODE START")
    plan, cursor, step = current_step(state)
    sql = step.parameters.sql_query or ""
    description = step.parameters.description or canonical_query(state)

    system, user = prompts.build_semantic_consistency_prompt(
        sql, description, state.get_or_default(EVIDENCES), load_schema(state)
    )
    ctx.emit("Checking that the SQL matches the task...\n")
    try:
        answer = (await ctx.services.llm.call(user, system)).strip()
    except CollaboratorError as e:
        ctx.logger.error(f"❌ Semantic consistency check failed to run: {e}")
        message = "The SQL could not be verified, please try again later."
        ctx.emit(message)
        return {WORKFLOW_ERROR: message}

    if answer.startswith(prompts.CONSISTENCY_FAIL_MARKER):
        ctx.logger.info(f"Semantic check rejected step {cursor}: {answer}")
        ctx.emit(f"Semantic check failed: {answer}\n")
        return {
            SEMANTIC_CONSISTENCY_NODE_OUTPUT: False,
            SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT: answer,
        }

    ctx.emit("Semantic check passed.\n")
    step_result = json.dumps(
        {"sql": sql, "data": state.get_or_default(SQL_RESULT_LIST_MEMORY)},
        ensure_ascii=False, default=str,
    )
    return {
        SEMANTIC_CONSISTENCY_NODE_OUTPUT: True,
        SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT: "",
        STEP_EXECUTION_RESULTS: {step_result_key(cursor): step_result},
        PLAN_CURRENT_STEP: advanced_cursor(plan, cursor),
        SQL_GENERATE_COUNT: 0,
    }
