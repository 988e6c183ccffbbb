"""State accessors shared by several nodes."""

from typing import List, Optional, Tuple

from pydantic import ValidationError

from ...schemas.documents import RetrievedDocument
from ...schemas.plan import ExecutionStep, Plan
from ...schemas.schema import SchemaDTO
from ..state import (
    PLANNER_NODE_OUTPUT, PLAN_CURRENT_STEP, QUERY_REWRITE_NODE_OUTPUT,
    INPUT_KEY, TABLE_RELATION_OUTPUT, SharedState,
)


def canonical_query(state: SharedState) -> str:
    """Rewritten question, falling back to the raw input."""
    return state.get_or_default(QUERY_REWRITE_NODE_OUTPUT) or state.get(INPUT_KEY)


def load_plan(state: SharedState) -> Optional[Plan]:
    raw = state.get(PLANNER_NODE_OUTPUT)
    if not raw:
        return None
    try:
        return Plan.model_validate(raw)
    except ValidationError:
        return None


def load_schema(state: SharedState) -> SchemaDTO:
    raw = state.get(TABLE_RELATION_OUTPUT)
    return SchemaDTO.model_validate(raw) if raw else SchemaDTO()


def load_documents(state: SharedState, key: str) -> List[RetrievedDocument]:
    return [RetrievedDocument.model_validate(doc) for doc in state.get_or_default(key)]


def dump_documents(documents: List[RetrievedDocument]) -> List[dict]:
    return [doc.model_dump() for doc in documents]


def current_step(state: SharedState) -> Tuple[Optional[Plan], int, Optional[ExecutionStep]]:
    plan = load_plan(state)
    cursor = state.get_or_default(PLAN_CURRENT_STEP)
    step = plan.step_at(cursor) if plan else None
    return plan, cursor, step


def step_result_key(cursor: int) -> str:
    return f"step_{cursor}"


def advanced_cursor(plan: Plan, cursor: int) -> int:
    """Next cursor value; it never passes the last step."""
    return min(cursor + 1, len(plan.execution_plan))
