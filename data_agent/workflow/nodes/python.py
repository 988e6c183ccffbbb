"""
Python extension loop: generate a script, run it, analyse its output.
"""

import json
from typing import Dict

from ...schemas.graph import StreamEventType
from ..context import NodeContext
from ..errors import CollaboratorError
from ..json_utils import strip_code_fence
from .. import prompts
from ..state import (
    PLAN_CURRENT_STEP, PYTHON_ANALYSIS_NODE_OUTPUT, PYTHON_EXECUTE_NODE_OUTPUT,
    PYTHON_GENERATE_NODE_OUTPUT, PYTHON_IS_SUCCESS, PYTHON_TRIES_COUNT,
    SQL_RESULT_LIST_MEMORY, STEP_EXECUTION_RESULTS, WORKFLOW_ERROR, SharedState,
)
from .common import advanced_cursor, current_step, step_result_key


async def python_generate_node(state: SharedState, ctx: NodeContext) -> Dict:
    ctx.logger.info("▶️ NODE START")
    _, cursor, step = current_step(state)
    tries = state.get_or_default(PYTHON_TRIES_COUNT)
    previous_error = ""
    if tries > 0 and not state.get_or_default(PYTHON_IS_SUCCESS):
        previous_error = state.get_or_default(PYTHON_EXECUTE_NODE_OUTPUT)

    system, user = prompts.build_python_generation_prompt(
        step.parameters.instruction or "",
        step.parameters.input_data_description or "",
        state.get_or_default(SQL_RESULT_LIST_MEMORY),
        previous_error,
    )
    ctx.emit(f"Writing the analysis script for step {cursor}...\n")
    try:
        answer = await ctx.stream_llm(user, system)
    except CollaboratorError as e:
        ctx.logger.warning(f"⚠️ Script generation failed: {e}")
        answer = ""
    return {
        PYTHON_GENERATE_NODE_OUTPUT: strip_code_fence(answer),
        PYTHON_TRIES_COUNT: tries + 1,
    }


async def python_execute_node(state: SharedState, ctx: NodeContext) -> Dict:
    ctx.logger.info("▶️ NODE START")
    code = state.get_or_default(PYTHON_GENERATE_NODE_OUTPUT)
    tries = state.get_or_default(PYTHON_TRIES_COUNT)

    if not code.strip():
        output = "No script was generated."
        success = False
    else:
        payload = json.dumps(state.get_or_default(SQL_RESULT_LIST_MEMORY), ensure_ascii=False, default=str)
        ctx.emit("Running the analysis script...\n")
        try:
            result = await ctx.services.code_runner.run(code, payload)
        except CollaboratorError as e:
            output, success = str(e), False
        else:
            for image in result.artifacts:
                ctx.emit(image, StreamEventType.IMAGE)
            success = result.success
            output = result.stdout if success else (result.error or result.stderr)

    if success:
        ctx.emit(f"{output}\n")
        return {PYTHON_IS_SUCCESS: True, PYTHON_EXECUTE_NODE_OUTPUT: output}

    ctx.logger.warning(f"⚠️ Script failed (attempt {tries}): {output}")
    delta = {PYTHON_IS_SUCCESS: False, PYTHON_EXECUTE_NODE_OUTPUT: output}
    if tries >= ctx.settings.python_max_tries:
        message = "The analysis script kept failing, the analysis was stopped."
        ctx.emit(message)
        delta[WORKFLOW_ERROR] = message
    else:
        ctx.emit(f"Script failed: {output}\nRetrying...\n")
    return delta


async def python_analyze_node(state: SharedState, ctx: NodeContext) -> Dict:
    ctx.logger.info("▶️ NODE START")
    plan, cursor, step = current_step(state)
    output = state.get_or_default(PYTHON_EXECUTE_NODE_OUTPUT)

    system, user = prompts.build_python_analysis_prompt(step.parameters.instruction or "", output)
    try:
        analysis = await ctx.stream_llm(user, system)
    except CollaboratorError as e:
        ctx.logger.warning(f"⚠️ Output analysis failed, keeping the raw output: {e}")
        analysis = output

    return {
        PYTHON_ANALYSIS_NODE_OUTPUT: analysis,
        STEP_EXECUTION_RESULTS: {step_result_key(cursor): analysis},
        PLAN_CURRENT_STEP: advanced_cursor(plan, cursor),
        PYTHON_TRIES_COUNT: 0,
    }
