"""
Workflow graph and its runs.

The workflow is a langgraph ``StateGraph`` over ``WorkflowState``: one node
per ``NodeName``, fixed edges, and conditional edges whose routing functions
are the pure dispatchers of ``dispatchers.py``. The graph is compiled with a
checkpointer and ``interrupt_before=[HUMAN_FEEDBACK]``, so a session that
reaches human review stops there with its state checkpointed on its thread.

``GraphRun`` streams one advance of a session (``custom`` events emitted by
the nodes, ``updates`` for the nodes that completed) until End or the
interrupt.

Graph topology::

    QUERY_REWRITE -> KEYWORD_EXTRACT | END
    KEYWORD_EXTRACT -> SCHEMA_RECALL -> TABLE_RELATION | END
    TABLE_RELATION -> PLANNER | TABLE_RELATION | END
    PLANNER -> PLAN_EXECUTOR | END
    PLAN_EXECUTOR -> SQL_EXECUTE | PYTHON_GENERATE | REPORT_GENERATOR
                   | HUMAN_FEEDBACK | PLANNER | END
    SQL_EXECUTE -> SQL_GENERATE | SEMANTIC_CONSISTENCY | END
    SQL_GENERATE -> SQL_EXECUTE | KEYWORD_EXTRACT | END
    SEMANTIC_CONSISTENCY -> PLAN_EXECUTOR | SQL_GENERATE | END
    PYTHON_GENERATE -> PYTHON_EXECUTE -> PYTHON_ANALYZE | PYTHON_GENERATE | END
    PYTHON_ANALYZE -> PLAN_EXECUTOR
    HUMAN_FEEDBACK -> PLAN_EXECUTOR | PLANNER       (interrupt before)
    REPORT_GENERATOR -> END
"""

import functools
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.errors import GraphRecursionError
from langgraph.graph import START, StateGraph
from langgraph.types import StreamWriter

from ..core.logging import get_logger, log_state_transition
from ..schemas.graph import StreamEvent
from . import dispatchers
from .checkpoint import Checkpoint, thread_config
from .constants import START_NODE, NodeName
from .context import NodeContext, WorkflowServices
from .nodes.plan import human_feedback_node, plan_executor_node, planner_node
from .nodes.python import python_analyze_node, python_execute_node, python_generate_node
from .nodes.query import keyword_extract_node, query_rewrite_node
from .nodes.report import report_generator_node
from .nodes.schema import schema_recall_node, table_relation_node
from .nodes.sql import semantic_consistency_node, sql_execute_node, sql_generate_node
from .state import (
    HUMAN_FEEDBACK_DATA, SCOPE_ID, SESSION_ID, WORKFLOW_ERROR, SharedState, WorkflowState,
    check_delta,
)

logger = get_logger("workflow.graph")

NodeHandler = Callable[[SharedState, NodeContext], Awaitable[Dict]]
Dispatcher = Callable[[SharedState], NodeName]

INTERNAL_ERROR_MESSAGE = "An internal error interrupted the analysis, please try again."
MAX_ITERATIONS_MESSAGE = "The analysis did not converge and was stopped."

INTERRUPT_BEFORE = (NodeName.HUMAN_FEEDBACK,)


def as_graph_node(name: NodeName, handler: NodeHandler, services: WorkflowServices):
    """Adapt a ``(SharedState, NodeContext) -> delta`` handler to a langgraph node."""
    async def run_node(state: Dict[str, Any], writer: StreamWriter) -> Dict[str, Any]:
        view = SharedState(state)
        ctx = NodeContext(name, view.get_or_default(SESSION_ID) or None, services, writer)
        delta = await handler(view, ctx) or {}
        check_delta(delta)
        log_state_transition(ctx.logger, name.value, delta)
        return delta
    return run_node


def as_route(dispatcher: Dispatcher):
    def route(state: Dict[str, Any]) -> str:
        return dispatcher(SharedState(state)).value
    return route


class GraphRun:
    """
    One advance of a session, from its input (or its checkpoint) until End
    or an interrupt.

    Example:
        ```python
        run = graph.start({INPUT_KEY: "上月华东区销售额", SCOPE_ID: "1"}, "s-1")
        async for event in run.events():
            print(event.payload, end="")
        if run.interrupted_at:
            ...  # suspended, continue with graph.resume("s-1", {...})
        ```
    """

    def __init__(self, graph: "WorkflowGraph", graph_input: Optional[Dict[str, Any]], session_id: str):
        self.graph = graph
        self.graph_input = graph_input
        self.session_id = session_id
        self.interrupted_at: Optional[NodeName] = None
        self.visited: List[NodeName] = []
        self.values: Dict[str, Any] = {}

    @property
    def state(self) -> SharedState:
        return SharedState(self.values)

    async def events(self) -> AsyncIterator[StreamEvent]:
        config = self.graph.config(self.session_id)
        failure = None
        try:
            async for mode, chunk in self.graph.compiled.astream(
                self.graph_input, config, stream_mode=["custom", "updates"]
            ):
                if mode == "custom":
                    yield chunk
                    continue
                for node in chunk:
                    if not node.startswith("__"):
                        self.visited.append(NodeName(node))
        except GraphRecursionError:
            logger.error(f"Session {self.session_id} exceeded {self.graph.max_iterations} iterations")
            failure = MAX_ITERATIONS_MESSAGE
        except Exception:
            logger.exception(f"A node raised in session {self.session_id}")
            failure = INTERNAL_ERROR_MESSAGE

        snapshot = await self.graph.compiled.aget_state(config)
        self.values = dict(snapshot.values)
        if failure:
            self.values[WORKFLOW_ERROR] = failure
        elif snapshot.next:
            self.interrupted_at = NodeName(snapshot.next[0])
            logger.info(f"Session {self.session_id} interrupted before {self.interrupted_at.value}")


class WorkflowGraph:
    """The compiled workflow and the session operations built on its checkpointer."""

    def __init__(self, compiled, checkpointer: BaseCheckpointSaver, max_iterations: int):
        self.compiled = compiled
        self.checkpointer = checkpointer
        self.max_iterations = max_iterations

    def config(self, session_id: str) -> Dict[str, Any]:
        config = thread_config(session_id)
        config["recursion_limit"] = self.max_iterations
        return config

    def start(self, values: Mapping[str, Any], session_id: str) -> GraphRun:
        return GraphRun(self, dict(values), session_id)

    async def resume(self, session_id: str, feedback: Dict[str, Any]) -> GraphRun:
        """
        Record the reviewer's decision and continue the suspended session.

        The decision is written as an update of the node that routed to the
        review, so the graph re-enters the interrupt node exactly once.
        """
        await self.compiled.aupdate_state(
            self.config(session_id),
            {HUMAN_FEEDBACK_DATA: feedback},
            as_node=NodeName.PLAN_EXECUTOR.value,
        )
        return GraphRun(self, None, session_id)

    async def checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        """The checkpoint of a session suspended before an interrupt node, if any."""
        snapshot = await self.compiled.aget_state(self.config(session_id))
        if not snapshot.next or snapshot.next[0] not in {node.value for node in INTERRUPT_BEFORE}:
            return None
        values = {key: value for key, value in snapshot.values.items() if value is not None}
        return Checkpoint(
            session_id=session_id,
            scope_id=values.get(SCOPE_ID) or "",
            current_node=NodeName(snapshot.next[0]),
            state=values,
        )

    async def discard(self, session_id: str) -> bool:
        """Delete every checkpoint of the session; returns whether there was one."""
        existing = await self.checkpointer.aget_tuple(thread_config(session_id))
        if existing is None:
            return False
        await self.checkpointer.adelete_thread(session_id)
        return True


def build_workflow_graph(services: WorkflowServices, checkpointer: BaseCheckpointSaver) -> WorkflowGraph:
    """Assemble and compile the analysis workflow."""
    settings = services.settings
    handlers: Dict[NodeName, NodeHandler] = {
        NodeName.QUERY_REWRITE: query_rewrite_node,
        NodeName.KEYWORD_EXTRACT: keyword_extract_node,
        NodeName.SCHEMA_RECALL: schema_recall_node,
        NodeName.TABLE_RELATION: table_relation_node,
        NodeName.PLANNER: planner_node,
        NodeName.PLAN_EXECUTOR: plan_executor_node,
        NodeName.HUMAN_FEEDBACK: human_feedback_node,
        NodeName.SQL_GENERATE: sql_generate_node,
        NodeName.SQL_EXECUTE: sql_execute_node,
        NodeName.SEMANTIC_CONSISTENCY: semantic_consistency_node,
        NodeName.PYTHON_GENERATE: python_generate_node,
        NodeName.PYTHON_EXECUTE: python_execute_node,
        NodeName.PYTHON_ANALYZE: python_analyze_node,
        NodeName.REPORT_GENERATOR: report_generator_node,
    }
    conditional_edges: Dict[NodeName, Dispatcher] = {
        NodeName.QUERY_REWRITE: dispatchers.dispatch_query_rewrite,
        NodeName.SCHEMA_RECALL: dispatchers.dispatch_schema_recall,
        NodeName.TABLE_RELATION: functools.partial(dispatchers.dispatch_table_relation, settings=settings),
        NodeName.PLANNER: dispatchers.dispatch_planner,
        NodeName.PLAN_EXECUTOR: functools.partial(dispatchers.dispatch_plan_executor, settings=settings),
        NodeName.HUMAN_FEEDBACK: dispatchers.dispatch_human_feedback,
        NodeName.SQL_EXECUTE: dispatchers.dispatch_sql_execute,
        NodeName.SQL_GENERATE: dispatchers.dispatch_sql_generate,
        NodeName.SEMANTIC_CONSISTENCY: dispatchers.dispatch_semantic_consistency,
        NodeName.PYTHON_EXECUTE: functools.partial(dispatchers.dispatch_python_execute, settings=settings),
    }

    workflow = StateGraph(WorkflowState)
    for name, handler in handlers.items():
        workflow.add_node(name.value, as_graph_node(name, handler, services))

    workflow.add_edge(START, START_NODE.value)
    workflow.add_edge(NodeName.KEYWORD_EXTRACT.value, NodeName.SCHEMA_RECALL.value)
    workflow.add_edge(NodeName.PYTHON_GENERATE.value, NodeName.PYTHON_EXECUTE.value)
    workflow.add_edge(NodeName.PYTHON_ANALYZE.value, NodeName.PLAN_EXECUTOR.value)
    workflow.add_edge(NodeName.REPORT_GENERATOR.value, NodeName.END.value)
    for name, dispatcher in conditional_edges.items():
        workflow.add_conditional_edges(name.value, as_route(dispatcher))

    compiled = workflow.compile(
        checkpointer=checkpointer,
        interrupt_before=[node.value for node in INTERRUPT_BEFORE],
    )
    return WorkflowGraph(compiled, checkpointer, settings.graph_max_iterations)
