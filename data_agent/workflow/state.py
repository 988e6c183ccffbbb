"""
Shared state of a workflow instance.

Every node reads its inputs from, and returns its outputs to, one state.
Keys are declared once in ``STATE_SCHEMA`` with a merge policy:

- ``REPLACE``: the new value overwrites the old one (current SQL, plan, counters)
- ``APPEND``: the new value accumulates onto the old one (string concatenation,
  list extension, dict update), used for histories and per-step outputs

The declarations become the reducers of ``WorkflowState``, the TypedDict the
langgraph ``StateGraph`` is built on, so a node delta is merged the same way
whether it is committed by the graph or applied to a ``SharedState``.
``SharedState`` is the read/write view nodes and dispatchers work with.

Writing an undeclared key, or reading an absent required key, raises
``StateKeyError``. A ``None`` value means absent. Values are kept JSON-native
so the graph checkpointer can persist them as-is.
"""

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from typing_extensions import Annotated, TypedDict

from .errors import StateKeyError


class MergePolicy(str, Enum):
    REPLACE = "replace"
    APPEND = "append"


@dataclass(frozen=True)
class KeySpec:
    name: str
    policy: MergePolicy = MergePolicy.REPLACE
    default: Callable[[], Any] = lambda: None
    required: bool = False


# Writing RESET restores a key to its declared default
RESET = None
_MISSING = object()


# Request
INPUT_KEY = "INPUT_KEY"
SCOPE_ID = "SCOPE_ID"
SESSION_ID = "SESSION_ID"
HUMAN_REVIEW_ENABLED = "HUMAN_REVIEW_ENABLED"
IS_ONLY_NL2SQL = "IS_ONLY_NL2SQL"

# Query understanding
QUERY_REWRITE_NODE_OUTPUT = "QUERY_REWRITE_NODE_OUTPUT"
KEYWORD_EXTRACT_NODE_OUTPUT = "KEYWORD_EXTRACT_NODE_OUTPUT"
EVIDENCES = "EVIDENCES"

# Schema
TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT = "TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT"
COLUMN_DOCUMENTS_BY_KEYWORDS_OUTPUT = "COLUMN_DOCUMENTS_BY_KEYWORDS_OUTPUT"
TABLE_RELATION_OUTPUT = "TABLE_RELATION_OUTPUT"
TABLE_RELATION_EXCEPTION_OUTPUT = "TABLE_RELATION_EXCEPTION_OUTPUT"
TABLE_RELATION_ERROR_KIND = "TABLE_RELATION_ERROR_KIND"
TABLE_RELATION_RETRY_COUNT = "TABLE_RELATION_RETRY_COUNT"

# Planning
PLANNER_NODE_OUTPUT = "PLANNER_NODE_OUTPUT"
PLAN_CURRENT_STEP = "PLAN_CURRENT_STEP"
PLAN_NEXT_NODE = "PLAN_NEXT_NODE"
PLAN_VALIDATION_STATUS = "PLAN_VALIDATION_STATUS"
PLAN_VALIDATION_ERROR = "PLAN_VALIDATION_ERROR"
PLAN_REPAIR_COUNT = "PLAN_REPAIR_COUNT"
PLAN_FEEDBACK_HISTORY = "PLAN_FEEDBACK_HISTORY"
THINKING_HISTORY = "THINKING_HISTORY"
HUMAN_FEEDBACK_DATA = "HUMAN_FEEDBACK_DATA"

# SQL
SQL_GENERATE_OUTPUT = "SQL_GENERATE_OUTPUT"
SQL_GENERATE_COUNT = "SQL_GENERATE_COUNT"
SQL_GENERATE_SCHEMA_MISSING_ADVICE = "SQL_GENERATE_SCHEMA_MISSING_ADVICE"
SQL_EXECUTE_NODE_EXCEPTION_OUTPUT = "SQL_EXECUTE_NODE_EXCEPTION_OUTPUT"
SQL_RESULT_LIST_MEMORY = "SQL_RESULT_LIST_MEMORY"
SEMANTIC_CONSISTENCY_NODE_OUTPUT = "SEMANTIC_CONSISTENCY_NODE_OUTPUT"
SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT = "SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT"
STEP_EXECUTION_RESULTS = "STEP_EXECUTION_RESULTS"

# Python extension
PYTHON_GENERATE_NODE_OUTPUT = "PYTHON_GENERATE_NODE_OUTPUT"
PYTHON_EXECUTE_NODE_OUTPUT = "PYTHON_EXECUTE_NODE_OUTPUT"
PYTHON_IS_SUCCESS = "PYTHON_IS_SUCCESS"
PYTHON_TRIES_COUNT = "PYTHON_TRIES_COUNT"
PYTHON_ANALYSIS_NODE_OUTPUT = "PYTHON_ANALYSIS_NODE_OUTPUT"

# Result
REPORT_RESULT_CACHE = "REPORT_RESULT_CACHE"
RESULT = "RESULT"
WORKFLOW_ERROR = "WORKFLOW_ERROR"


def _declare(*specs: KeySpec) -> Dict[str, KeySpec]:
    schema: Dict[str, KeySpec] = {}
    for spec in specs:
        if spec.name in schema:
            raise StateKeyError(f"State key declared twice: {spec.name}")
        schema[spec.name] = spec
    return schema


STATE_SCHEMA: Dict[str, KeySpec] = _declare(
    KeySpec(INPUT_KEY, required=True),
    KeySpec(SCOPE_ID, required=True),
    KeySpec(SESSION_ID, default=str),
    KeySpec(HUMAN_REVIEW_ENABLED, default=lambda: False),
    KeySpec(IS_ONLY_NL2SQL, default=lambda: False),

    KeySpec(QUERY_REWRITE_NODE_OUTPUT, default=str),
    KeySpec(KEYWORD_EXTRACT_NODE_OUTPUT, default=list),
    KeySpec(EVIDENCES, default=list),

    KeySpec(TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT, default=list),
    KeySpec(COLUMN_DOCUMENTS_BY_KEYWORDS_OUTPUT, default=list),
    KeySpec(TABLE_RELATION_OUTPUT),
    KeySpec(TABLE_RELATION_EXCEPTION_OUTPUT, default=str),
    KeySpec(TABLE_RELATION_ERROR_KIND, default=str),
    KeySpec(TABLE_RELATION_RETRY_COUNT, default=int),

    KeySpec(PLANNER_NODE_OUTPUT),
    KeySpec(PLAN_CURRENT_STEP, default=lambda: 1),
    KeySpec(PLAN_NEXT_NODE, default=str),
    KeySpec(PLAN_VALIDATION_STATUS, default=lambda: False),
    KeySpec(PLAN_VALIDATION_ERROR, default=str),
    KeySpec(PLAN_REPAIR_COUNT, default=int),
    KeySpec(PLAN_FEEDBACK_HISTORY, MergePolicy.APPEND, default=list),
    KeySpec(THINKING_HISTORY, MergePolicy.APPEND, default=list),
    KeySpec(HUMAN_FEEDBACK_DATA, default=dict),

    KeySpec(SQL_GENERATE_OUTPUT),
    KeySpec(SQL_GENERATE_COUNT, default=int),
    KeySpec(SQL_GENERATE_SCHEMA_MISSING_ADVICE, default=str),
    KeySpec(SQL_EXECUTE_NODE_EXCEPTION_OUTPUT, default=str),
    KeySpec(SQL_RESULT_LIST_MEMORY, default=list),
    KeySpec(SEMANTIC_CONSISTENCY_NODE_OUTPUT),
    KeySpec(SEMANTIC_CONSISTENCY_NODE_RECOMMEND_OUTPUT, default=str),
    KeySpec(STEP_EXECUTION_RESULTS, MergePolicy.APPEND, default=dict),

    KeySpec(PYTHON_GENERATE_NODE_OUTPUT, default=str),
    KeySpec(PYTHON_EXECUTE_NODE_OUTPUT, default=str),
    KeySpec(PYTHON_IS_SUCCESS, default=lambda: False),
    KeySpec(PYTHON_TRIES_COUNT, default=int),
    KeySpec(PYTHON_ANALYSIS_NODE_OUTPUT, default=str),

    KeySpec(REPORT_RESULT_CACHE, MergePolicy.APPEND, default=dict),
    KeySpec(RESULT, default=str),
    KeySpec(WORKFLOW_ERROR, default=str),
)


def _accumulate(key: str, old: Any, new: Any) -> Any:
    if old is None:
        return copy.deepcopy(new)
    if isinstance(old, str) and isinstance(new, str):
        return old + new
    if isinstance(old, list):
        return old + (list(new) if isinstance(new, (list, tuple)) else [new])
    if isinstance(old, dict) and isinstance(new, Mapping):
        merged = dict(old)
        merged.update(copy.deepcopy(dict(new)))
        return merged
    raise StateKeyError(
        f"Cannot append {type(new).__name__} to {type(old).__name__} for key {key}"
    )


def merge_value(spec: KeySpec, old: Any, new: Any) -> Any:
    """Result of writing ``new`` over ``old`` under the key's merge policy."""
    if new is None:
        return None
    if spec.policy is MergePolicy.APPEND:
        return _accumulate(spec.name, old, new)
    return copy.deepcopy(new)


def _reducer(spec: KeySpec) -> Callable[[Any, Any], Any]:
    def merge(old: Any, new: Any) -> Any:
        return merge_value(spec, old, new)
    return merge


# Graph state schema: one reducer-annotated field per declared key
WorkflowState = TypedDict(
    "WorkflowState",
    {name: Annotated[Any, _reducer(spec)] for name, spec in STATE_SCHEMA.items()},
    total=False,
)


def check_delta(delta: Mapping[str, Any], schema: Optional[Dict[str, KeySpec]] = None) -> None:
    """Reject a node delta that writes an undeclared key."""
    undeclared = sorted(set(delta) - set(schema if schema is not None else STATE_SCHEMA))
    if undeclared:
        raise StateKeyError(f"Undeclared state key: {', '.join(undeclared)}")


class SharedState:
    """
    Key/value view over the values of one workflow instance.

    Example:
        ```python
        state = SharedState({INPUT_KEY: "上月华东区销售额", SCOPE_ID: "1"})
        state.set(PLAN_CURRENT_STEP, 2)
        state.get_or_default(EVIDENCES)   # [] (declared default)
        ```
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None,
                 schema: Optional[Dict[str, KeySpec]] = None):
        self._schema = schema if schema is not None else STATE_SCHEMA
        self._values: Dict[str, Any] = {}
        for key, value in (values or {}).items():
            self._spec(key)
            if value is not None:
                self._values[key] = copy.deepcopy(value)

    def _spec(self, key: str) -> KeySpec:
        try:
            return self._schema[key]
        except KeyError:
            raise StateKeyError(f"Undeclared state key: {key}") from None

    def has(self, key: str) -> bool:
        self._spec(key)
        return self._values.get(key) is not None

    def get(self, key: str) -> Any:
        """Value of ``key``, or None when absent. Absent required keys are fatal."""
        spec = self._spec(key)
        value = self._values.get(key)
        if value is None and spec.required:
            raise StateKeyError(f"Required state key is missing: {key}")
        return copy.deepcopy(value)

    def get_or_default(self, key: str, default: Any = _MISSING) -> Any:
        """Value of ``key``, falling back to ``default`` or the declared default."""
        spec = self._spec(key)
        value = self._values.get(key)
        if value is not None:
            return copy.deepcopy(value)
        return spec.default() if default is _MISSING else default

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` according to the key's merge policy."""
        merged = merge_value(self._spec(key), self._values.get(key), value)
        if merged is None:
            self._values.pop(key, None)
        else:
            self._values[key] = merged

    def apply(self, delta: Mapping[str, Any]) -> None:
        """Commit a node's state delta. Keys are validated before anything is written."""
        check_delta(delta, self._schema)
        for key, value in delta.items():
            self.set(key, value)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "SharedState":
        return cls(values)

    def __eq__(self, other):
        if not isinstance(other, SharedState):
            return NotImplemented
        return self._values == other._values

    def __repr__(self):
        return f"SharedState(keys={sorted(self._values)})"
