"""
Conditional edges of the workflow graph.

Each dispatcher is a pure function of the shared state returning the next
node. Nodes never decide routing themselves; they only record outcomes
(failure keys, counters, ``PLAN_NEXT_NODE``) that dispatchers read.
"""

from ..core.config import Settings, settings as default_settings
from .constants import NodeName
from .errors import ErrorKind
from .state import (
    HUMAN_FEEDBACK_DATA, PLAN_NEXT_NODE, PLAN_REPAIR_COUNT, PLAN_VALIDATION_STATUS,
    PYTHON_IS_SUCCESS, PYTHON_TRIES_COUNT, QUERY_REWRITE_NODE_OUTPUT,
    SEMANTIC_CONSISTENCY_NODE_OUTPUT, SQL_EXECUTE_NODE_EXCEPTION_OUTPUT, SQL_GENERATE_OUTPUT,
    SQL_GENERATE_SCHEMA_MISSING_ADVICE, TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT,
    TABLE_RELATION_ERROR_KIND, TABLE_RELATION_EXCEPTION_OUTPUT, TABLE_RELATION_RETRY_COUNT,
    WORKFLOW_ERROR, SharedState,
)


def _failed(state: SharedState) -> bool:
    return bool(state.get_or_default(WORKFLOW_ERROR))


def dispatch_query_rewrite(state: SharedState) -> NodeName:
    if _failed(state) or not state.get_or_default(QUERY_REWRITE_NODE_OUTPUT):
        return NodeName.END
    return NodeName.KEYWORD_EXTRACT


def dispatch_schema_recall(state: SharedState) -> NodeName:
    if _failed(state) or not state.get_or_default(TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT):
        return NodeName.END
    return NodeName.TABLE_RELATION


def dispatch_table_relation(state: SharedState, settings: Settings = default_settings) -> NodeName:
    if not state.get_or_default(TABLE_RELATION_EXCEPTION_OUTPUT):
        return NodeName.PLANNER
    retryable = state.get_or_default(TABLE_RELATION_ERROR_KIND) == ErrorKind.RETRYABLE.value
    if retryable and not _failed(state) and \
            state.get_or_default(TABLE_RELATION_RETRY_COUNT) < settings.table_relation_max_retries:
        return NodeName.TABLE_RELATION
    return NodeName.END


def dispatch_planner(state: SharedState) -> NodeName:
    return NodeName.END if _failed(state) else NodeName.PLAN_EXECUTOR


def dispatch_plan_executor(state: SharedState, settings: Settings = default_settings) -> NodeName:
    if _failed(state):
        return NodeName.END
    if not state.get_or_default(PLAN_VALIDATION_STATUS):
        if state.get_or_default(PLAN_REPAIR_COUNT) > settings.plan_max_repair_count:
            return NodeName.END
        return NodeName.PLANNER
    next_node = state.get_or_default(PLAN_NEXT_NODE)
    return NodeName(next_node) if next_node else NodeName.END


def dispatch_human_feedback(state: SharedState) -> NodeName:
    if state.get_or_default(HUMAN_FEEDBACK_DATA).get("approved"):
        return NodeName.PLAN_EXECUTOR
    return NodeName.PLANNER


def dispatch_sql_execute(state: SharedState) -> NodeName:
    if _failed(state):
        return NodeName.END
    if state.get_or_default(SQL_EXECUTE_NODE_EXCEPTION_OUTPUT):
        return NodeName.SQL_GENERATE
    return NodeName.SEMANTIC_CONSISTENCY


def dispatch_sql_generate(state: SharedState) -> NodeName:
    if _failed(state):
        return NodeName.END
    if state.get(SQL_GENERATE_OUTPUT) is None:
        if state.get_or_default(SQL_GENERATE_SCHEMA_MISSING_ADVICE):
            return NodeName.KEYWORD_EXTRACT
        return NodeName.END
    return NodeName.SQL_EXECUTE


def dispatch_semantic_consistency(state: SharedState) -> NodeName:
    if _failed(state):
        return NodeName.END
    if state.get(SEMANTIC_CONSISTENCY_NODE_OUTPUT) is True:
        return NodeName.PLAN_EXECUTOR
    return NodeName.SQL_GENERATE


def dispatch_python_execute(state: SharedState, settings: Settings = default_settings) -> NodeName:
    if state.get_or_default(PYTHON_IS_SUCCESS):
        return NodeName.PYTHON_ANALYZE
    if not _failed(state) and state.get_or_default(PYTHON_TRIES_COUNT) < settings.python_max_tries:
        return NodeName.PYTHON_GENERATE
    return NodeName.END
