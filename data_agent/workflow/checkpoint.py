"""
Checkpoints of suspended workflow instances.

The graph is compiled with a langgraph checkpointer and every session runs
on its own thread (``thread_id`` = session id). A session is suspended when
its latest checkpoint is waiting before an interrupt node; that checkpoint
is what ``/resume`` continues from. Threads are deleted when a session
completes, fails or is stopped.

Production uses ``AsyncSqliteSaver`` on ``CHECKPOINT_DB_PATH`` so suspended
sessions survive a restart; tests use the in-memory ``MemorySaver``.
"""

from typing import Any, AsyncContextManager, Dict

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver
from pydantic import BaseModel

from .constants import NodeName


class Checkpoint(BaseModel):
    session_id: str
    scope_id: str
    current_node: NodeName
    state: Dict[str, Any]


def thread_config(session_id: str) -> Dict[str, Any]:
    return {"configurable": {"thread_id": session_id}}


def open_checkpointer(path: str) -> AsyncContextManager[BaseCheckpointSaver]:
    """
    Open the durable checkpointer; use as ``async with``.

    Example:
        ```python
        async with open_checkpointer(settings.checkpoint_db_path) as checkpointer:
            graph = build_workflow_graph(services, checkpointer)
        ```
    """
    return AsyncSqliteSaver.from_conn_string(path)
