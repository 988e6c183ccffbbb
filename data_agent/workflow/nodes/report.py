"""
Report generation.

Step results larger than ``REPORT_MAX_RESULT_CHARS`` are kept in the
session's result cache and only an excerpt goes into the prompt; the whole
results section is capped at ``REPORT_MAX_TOTAL_CHARS``.
"""

import hashlib
from typing import Dict, List, Tuple

from ...schemas.graph import StreamEventType
from ...schemas.plan import Plan
from ..context import NodeContext
from ..errors import CollaboratorError
from .. import prompts
from ..state import (
    PLANNER_NODE_OUTPUT, PLAN_CURRENT_STEP, REPORT_RESULT_CACHE, RESET, RESULT,
    STEP_EXECUTION_RESULTS, WORKFLOW_ERROR, SharedState,
)
from .common import canonical_query, load_plan


def cache_key(session_id: str, step_key: str, content: str) -> str:
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:12]
    return f"{session_id or 'session'}:{step_key}:{digest}"


def compact_results(results: Dict[str, str], session_id: str, max_result_chars: int,
                    max_total_chars: int) -> Tuple[str, Dict[str, str]]:
    """Render step results for the prompt; returns the text and the new cache entries."""
    cache: Dict[str, str] = {}
    sections: List[str] = []
    total = 0
    for step_key in sorted(results, key=lambda k: int(k.rsplit("_", 1)[-1])):
        content = results[step_key]
        if len(content) > max_result_chars:
            key = cache_key(session_id, step_key, content)
            cache[key] = content
            content = (
                f"{content[:max_result_chars]}\n"
                f"... (truncated, {len(results[step_key])} characters in total, cached as {key})"
            )
        section = f"### {step_key}\n{content}"
        if total + len(section) > max_total_chars:
            sections.append(f"### {step_key}\n(omitted, the results exceed the report size limit)")
            continue
        sections.append(section)
        total += len(section)
    return "\n\n".join(sections), cache


def describe_steps(plan: Plan) -> str:
    lines = []
    for step in plan.execution_plan:
        params = step.parameters
        detail = params.description or params.instruction or params.summary_and_recommendations or ""
        lines.append(f"{step.step_number}. [{step.tool}] {detail}")
    return "\n".join(lines)


async def report_generator_node(state: SharedState, ctx: NodeContext) -> Dict:
    ctx.logger.info("▶️ NODE START")
    plan = load_plan(state) or Plan()
    results_text, cache = compact_results(
        state.get_or_default(STEP_EXECUTION_RESULTS),
        ctx.session_id,
        ctx.settings.report_max_result_chars,
        ctx.settings.report_max_total_chars,
    )
    summary = ""
    if plan.execution_plan:
        summary = plan.execution_plan[-1].parameters.summary_and_recommendations or ""

    system, user = prompts.build_report_prompt(
        canonical_query(state), plan.thought_process, describe_steps(plan), results_text, summary
    )
    ctx.emit("Writing the report...\n")
    try:
        report = await ctx.stream_llm(user, system, StreamEventType.MARKDOWN)
    except CollaboratorError as e:
        ctx.logger.error(f"❌ Report generation failed: {e}")
        message = "The report could not be generated, please try again later."
        ctx.emit(message)
        return {WORKFLOW_ERROR: message, REPORT_RESULT_CACHE: cache}

    ctx.logger.info(f"Report generated ({len(report)} characters, {len(cache)} cached results)")
    return {
        RESULT: report,
        REPORT_RESULT_CACHE: cache,
        STEP_EXECUTION_RESULTS: RESET,
        PLAN_CURRENT_STEP: RESET,
        PLANNER_NODE_OUTPUT: RESET,
    }
