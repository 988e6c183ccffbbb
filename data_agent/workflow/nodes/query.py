"""
Query understanding nodes: rewrite, expansion, keyword and evidence extraction.
"""

from typing import Dict, List, Tuple

from ...core.executor import gather_bounded
from ...schemas.documents import VectorType
from ..context import NodeContext
from ..errors import CollaboratorError
from ..json_utils import parse_json_response
from .. import prompts
from ..state import (
    EVIDENCES, INPUT_KEY, KEYWORD_EXTRACT_NODE_OUTPUT, QUERY_REWRITE_NODE_OUTPUT,
    SCOPE_ID, SQL_GENERATE_SCHEMA_MISSING_ADVICE, WORKFLOW_ERROR, SharedState,
)

REWRITE_FAILED_MESSAGE = "The question could not be analysed, please try again later."


def parse_rewrite_output(text: str) -> Tuple[str, bool]:
    """
    Split a rewrite answer into ``(question, is_data_analysis)``.

    Answers without a request-type line are taken as analysis requests.
    """
    lines = [line.strip() for line in (text or "").strip().splitlines() if line.strip()]
    type_lines = [line for line in lines if line.startswith(prompts.REQUEST_TYPE_PREFIX)]
    content_lines = [
        line[len(prompts.REQUEST_CONTENT_PREFIX):].strip()
        for line in lines if line.startswith(prompts.REQUEST_CONTENT_PREFIX)
    ]
    if content_lines:
        question = "\n".join(content_lines)
    else:
        question = "\n".join(line for line in lines if line not in type_lines)

    if type_lines:
        is_analysis = any(prompts.ANALYSIS_REQUEST_MARKER in line for line in type_lines)
    else:
        is_analysis = bool(question)
    return question, is_analysis and bool(question)


async def query_rewrite_node(state: SharedState, ctx: NodeContext) -> Dict:
    ctx.logger.info("▶️ NODE START")
    question = state.get(INPUT_KEY)
    ctx.emit("Understanding the question...\n")

    system, user = prompts.build_query_rewrite_prompt(question)
    try:
        answer = await ctx.stream_llm(user, system)
    except CollaboratorError as e:
        ctx.logger.error(f"❌ Rewrite failed: {e}")
        ctx.emit(REWRITE_FAILED_MESSAGE)
        return {QUERY_REWRITE_NODE_OUTPUT: "", WORKFLOW_ERROR: REWRITE_FAILED_MESSAGE}

    rewritten, is_analysis = parse_rewrite_output(answer)
    if not is_analysis:
        ctx.logger.info("Request is not a data analysis request")
        ctx.emit("\nThis request is not a data analysis question, nothing to query.")
        return {QUERY_REWRITE_NODE_OUTPUT: ""}

    ctx.logger.info(f"Rewritten question: {rewritten}")
    return {QUERY_REWRITE_NODE_OUTPUT: rewritten}


def merge_unique(groups: List[List[str]]) -> List[str]:
    """Concatenate groups keeping the first occurrence of every item."""
    merged: Dict[str, None] = {}
    for group in groups:
        for item in group:
            item = str(item).strip()
            if item:
                merged.setdefault(item, None)
    return list(merged)


async def _expand_question(ctx: NodeContext, question: str) -> List[str]:
    count = ctx.settings.query_expansion_variants
    if count <= 0:
        return [question]
    system, user = prompts.build_query_expansion_prompt(question, count)
    try:
        variants = parse_json_response(await ctx.services.llm.call(user, system))
    except CollaboratorError as e:
        ctx.logger.warning(f"⚠️ Query expansion failed, using the original question only: {e}")
        return [question]
    if not isinstance(variants, list):
        return [question]
    return merge_unique([[question], [v for v in variants if isinstance(v, str)][:count]])


async def _recall_evidence(ctx: NodeContext, scope_id: str, question: str) -> List[str]:
    evidences: List[str] = []
    for vector_type in (VectorType.BUSINESS_TERM, VectorType.AGENT_KNOWLEDGE):
        try:
            documents = await ctx.services.vector_store.search(
                scope_id, question, vector_type, ctx.settings.evidence_top_k
            )
        except CollaboratorError as e:
            ctx.logger.warning(f"⚠️ Evidence recall ({vector_type.value}) failed: {e}")
            continue
        evidences.extend(doc.text for doc in documents if doc.text)
    return evidences


async def _extract_for_variant(ctx: NodeContext, scope_id: str, question: str,
                               advice: str) -> Tuple[List[str], List[str]]:
    evidences = await _recall_evidence(ctx, scope_id, question)
    system, user = prompts.build_keyword_extraction_prompt(question, evidences, advice)
    try:
        keywords = parse_json_response(await ctx.services.llm.call(user, system))
    except CollaboratorError as e:
        ctx.logger.warning(f"⚠️ Keyword extraction failed for '{question}': {e}")
        keywords = None
    if not isinstance(keywords, list):
        keywords = []
    return [str(k) for k in keywords], evidences


async def keyword_extract_node(state: SharedState, ctx: NodeContext) -> Dict:
    """
    Expand the question into variants and extract keywords and evidence for
    every variant in parallel. The original question's keywords come first.
    """
    ctx.logger.info("▶️ NODE START")
    question = state.get_or_default(QUERY_REWRITE_NODE_OUTPUT) or state.get(INPUT_KEY)
    scope_id = state.get(SCOPE_ID)
    advice = state.get_or_default(SQL_GENERATE_SCHEMA_MISSING_ADVICE)

    ctx.emit("Extracting keywords and business knowledge...\n")
    variants = await _expand_question(ctx, question)
    results = await gather_bounded(
        [_extract_for_variant(ctx, scope_id, variant, advice) for variant in variants]
    )

    keywords = merge_unique([result[0] for result in results])
    evidences = merge_unique([result[1] for result in results])
    ctx.emit(f"Keywords: {', '.join(keywords) or prompts.NO_EVIDENCE}\n")
    ctx.emit(f"Evidence: {prompts.format_evidences(evidences)}\n")
    ctx.logger.info(f"{len(variants)} variants, {len(keywords)} keywords, {len(evidences)} evidences")
    return {KEYWORD_EXTRACT_NODE_OUTPUT: keywords, EVIDENCES: evidences}
