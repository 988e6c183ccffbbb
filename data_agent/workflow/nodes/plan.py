"""
Planning nodes: planner, step executor and human review.
"""

import json
from typing import Dict, Optional, Tuple

from pydantic import ValidationError

from ...schemas.graph import StreamEventType
from ...schemas.plan import ExecutionStep, Plan, ToolName, ToolParameters
from ..constants import NodeName
from ..context import NodeContext
from ..errors import CollaboratorError
from ..json_utils import parse_json_response
from .. import prompts
from ..state import (
    EVIDENCES, HUMAN_FEEDBACK_DATA, HUMAN_REVIEW_ENABLED, IS_ONLY_NL2SQL, PLANNER_NODE_OUTPUT,
    PLAN_CURRENT_STEP, PLAN_FEEDBACK_HISTORY, PLAN_NEXT_NODE, PLAN_REPAIR_COUNT,
    PLAN_VALIDATION_ERROR, PLAN_VALIDATION_STATUS, PYTHON_TRIES_COUNT, RESET, RESULT,
    SEMANTIC_CONSISTENCY_NODE_OUTPUT, SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT,
    SQL_EXECUTE_NODE_EXCEPTION_OUTPUT, STEP_EXECUTION_RESULTS, THINKING_HISTORY,
    WORKFLOW_ERROR, SharedState,
)
from ..thinking import format_thinking_history, new_thought
from .common import canonical_query, current_step, load_schema, step_result_key
from .sql import synthesize_sql

PLAN_FAILED_MESSAGE = "An analysis plan could not be produced for this question."


def parse_plan(text: str) -> Tuple[Optional[Plan], str]:
    """Plan from an LLM answer, or ``(None, reason)``."""
    data = parse_json_response(text)
    if not isinstance(data, dict):
        return None, "the answer is not a JSON object"
    try:
        return Plan.model_validate(data), ""
    except ValidationError as e:
        return None, f"invalid plan structure: {e.errors()[0].get('msg', str(e))}"


def validate_plan(plan: Optional[Plan], cursor: int) -> Optional[str]:
    """Reason why the plan cannot be executed at ``cursor``, or None."""
    if plan is None or not plan.execution_plan:
        return "The plan has no steps."
    steps = plan.execution_plan
    if [step.step_number for step in steps] != list(range(1, len(steps) + 1)):
        return "Steps must be numbered 1..n in ascending order."
    if not 1 <= cursor <= len(steps):
        return f"Current step {cursor} is outside the plan."

    known_tools = {tool.value for tool in ToolName}
    for step in steps:
        if step.tool not in known_tools:
            return f"Step {step.step_number}: unknown tool '{step.tool}'."
        params = step.parameters
        if step.tool == ToolName.SQL.value and not (params.sql_query or "").strip():
            return f"Step {step.step_number}: a SQL step needs a non-empty sql_query."
        if step.tool == ToolName.PYTHON.value and not (params.instruction or "").strip():
            return f"Step {step.step_number}: a Python step needs an instruction."
        if step.tool == ToolName.REPORT.value and step.step_number != len(steps):
            return f"Step {step.step_number}: the report step must be the last step."
    return None


async def _nl2sql_plan(state: SharedState, ctx: NodeContext, question: str) -> Optional[Plan]:
    """Single SQL step answering the question directly, or None when no SQL could be produced."""
    result = await synthesize_sql(ctx, state, existing_sql=None, reason="", description=question)
    if result.sql is None:
        return None
    step = ExecutionStep(
        step_number=1,
        tool=ToolName.SQL.value,
        parameters=ToolParameters(description=question, sql_query=result.sql),
    )
    return Plan(thought_process="Answer the question with a single SQL query.", execution_plan=[step])


async def planner_node(state: SharedState, ctx: NodeContext) -> Dict:
    ctx.logger.info("▶️ NODE START")
    question = canonical_query(state)
    schema = load_schema(state)
    evidences = state.get_or_default(EVIDENCES)
    feedback = state.get_or_default(PLAN_FEEDBACK_HISTORY)
    validation_error = state.get_or_default(PLAN_VALIDATION_ERROR)
    history = state.get_or_default(THINKING_HISTORY)

    ctx.emit("Planning the analysis...\n")
    if state.get_or_default(IS_ONLY_NL2SQL):
        plan = await _nl2sql_plan(state, ctx, question)
        if plan is None:
            ctx.logger.error("❌ No SQL could be produced for the question")
            ctx.emit(PLAN_FAILED_MESSAGE)
            return {WORKFLOW_ERROR: PLAN_FAILED_MESSAGE}
    else:
        system, user = prompts.build_planner_prompt(
            question, evidences, schema,
            thinking=format_thinking_history(history),
            feedback=feedback,
            validation_error=validation_error,
        )
        try:
            answer = await ctx.services.llm.call(user, system)
            plan, error = parse_plan(answer)
            if plan is None:
                ctx.logger.warning(f"⚠️ Unusable plan ({error}), asking again")
                system, user = prompts.build_planner_reask_prompt(question, schema, answer, error)
                plan, error = parse_plan(await ctx.services.llm.call(user, system))
        except CollaboratorError as e:
            ctx.logger.error(f"❌ Planner LLM call failed: {e}")
            ctx.emit(PLAN_FAILED_MESSAGE)
            return {WORKFLOW_ERROR: PLAN_FAILED_MESSAGE}
        if plan is None:
            ctx.logger.error(f"❌ Plan still unusable after re-ask: {error}")
            ctx.emit(PLAN_FAILED_MESSAGE)
            return {WORKFLOW_ERROR: PLAN_FAILED_MESSAGE}

    reason = validation_error or (feedback[-1] if feedback else None)
    thought = new_thought(history, plan.thought_process, reason if history else None)
    ctx.emit(f"{plan.thought_process}\n")
    ctx.emit(json.dumps(plan.to_wire(), ensure_ascii=False), StreamEventType.JSON)
    ctx.logger.info(f"Plan with {len(plan.execution_plan)} steps")

    return {
        PLANNER_NODE_OUTPUT: plan.to_wire(),
        PLAN_CURRENT_STEP: 1,
        PLAN_VALIDATION_STATUS: False,
        PLAN_VALIDATION_ERROR: "",
        THINKING_HISTORY: [thought],
        HUMAN_FEEDBACK_DATA: RESET,
        STEP_EXECUTION_RESULTS: RESET,
        SQL_EXECUTE_NODE_EXCEPTION_OUTPUT: "",
        SEMANTIC_CONSISTENCY_NODE_OUTPUT: RESET,
        SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT: "",
        PYTHON_TRIES_COUNT: 0,
    }


async def plan_executor_node(state: SharedState, ctx: NodeContext) -> Dict:
    """
    Validate the plan and pick the node executing the current step.

    The chosen node is written to ``PLAN_NEXT_NODE``; routing itself is left
    to the dispatcher.
    """
    ctx.logger.info("▶️ NODE START")
    plan, cursor, step = current_step(state)

    error = validate_plan(plan, cursor)
    if error:
        repair_count = state.get_or_default(PLAN_REPAIR_COUNT) + 1
        ctx.logger.warning(f"⚠️ Plan validation failed ({repair_count}): {error}")
        delta = {
            PLAN_VALIDATION_STATUS: False,
            PLAN_VALIDATION_ERROR: error,
            PLAN_REPAIR_COUNT: repair_count,
        }
        if repair_count > ctx.settings.plan_max_repair_count:
            message = f"The plan could not be repaired: {error}"
            ctx.emit(message)
            delta[WORKFLOW_ERROR] = message
        else:
            ctx.emit(f"Plan validation failed: {error} Re-planning...\n")
        return delta

    nl2sql_only = state.get_or_default(IS_ONLY_NL2SQL)
    finished = cursor == len(plan.execution_plan) and step_result_key(cursor) in state.get_or_default(
        STEP_EXECUTION_RESULTS
    )
    delta = {PLAN_VALIDATION_STATUS: True, PLAN_VALIDATION_ERROR: ""}

    if finished:
        if nl2sql_only:
            delta[RESULT] = step.parameters.sql_query
            next_node = NodeName.END
        else:
            next_node = NodeName.REPORT_GENERATOR
    elif state.get_or_default(HUMAN_REVIEW_ENABLED) and not state.get_or_default(HUMAN_FEEDBACK_DATA).get("approved"):
        ctx.emit("The plan is waiting for human review.\n")
        next_node = NodeName.HUMAN_FEEDBACK
    elif step.tool == ToolName.REPORT.value:
        next_node = NodeName.END if nl2sql_only else NodeName.REPORT_GENERATOR
    else:
        next_node = NodeName(step.tool)
        ctx.emit(f"Executing step {cursor}: {step.parameters.description or step.parameters.instruction or step.tool}\n")
        if next_node is NodeName.PYTHON_GENERATE:
            delta[PYTHON_TRIES_COUNT] = 0

    delta[PLAN_NEXT_NODE] = next_node.value
    return delta


async def human_feedback_node(state: SharedState, ctx: NodeContext) -> Dict:
    """Apply the reviewer's decision delivered with the resume call."""
    ctx.logger.info("▶️ NODE START")
    data = state.get_or_default(HUMAN_FEEDBACK_DATA)
    feedback_text = (data.get("feedback_text") or "").strip()

    if data.get("approved"):
        ctx.emit("Plan approved, continuing.\n")
        return {HUMAN_FEEDBACK_DATA: {"approved": True, "feedback_text": feedback_text}}

    ctx.emit("Plan rejected, re-planning with the reviewer's feedback.\n")
    return {
        HUMAN_FEEDBACK_DATA: {"approved": False, "feedback_text": feedback_text},
        PLAN_FEEDBACK_HISTORY: [feedback_text or "The reviewer rejected the plan without comments."],
        PLAN_CURRENT_STEP: 1,
    }
