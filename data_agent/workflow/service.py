"""
Graph service: the transport-independent entry points of the engine.

``start`` and ``resume`` return an async iterator of ``StreamEvent``. The
workflow itself advances in a background task registered per session, so
``stop`` can cancel it from another request. Every stream ends with exactly
one terminal event (``complete`` or ``error``).

When the run suspends before the human-review node, its checkpoint stays on
the session thread and the service emits the plan as a ``json`` event
carrying an ``interrupt`` marker, followed by ``complete``. Any other ending
deletes the thread.
"""

import asyncio
import json
import uuid
from typing import AsyncIterator, Dict, Optional

from ..core.logging import get_logger
from ..schemas.graph import GraphResumeRequest, GraphStartRequest, StreamEvent, StreamEventType
from .checkpoint import Checkpoint
from .errors import SessionBusyError, SessionNotFoundError
from .graph import INTERNAL_ERROR_MESSAGE, GraphRun, WorkflowGraph
from .state import (
    HUMAN_REVIEW_ENABLED, INPUT_KEY, IS_ONLY_NL2SQL, PLANNER_NODE_OUTPUT, RESULT, SCOPE_ID,
    SESSION_ID, WORKFLOW_ERROR,
)

logger = get_logger("workflow.service")

STOPPED_MESSAGE = "stopped"


class GraphService:
    """
    Runs workflow instances, one per session.

    Example:
        ```python
        service = GraphService(build_workflow_graph(services, MemorySaver()))
        async for event in await service.start(GraphStartRequest(query="上月华东区销售额", scope_id="1")):
            print(event.type, event.payload)
        ```
    """

    def __init__(self, graph: WorkflowGraph):
        self.graph = graph
        self._running: Dict[str, asyncio.Task] = {}

    def is_running(self, session_id: str) -> bool:
        task = self._running.get(session_id)
        return task is not None and not task.done()

    async def start(self, request: GraphStartRequest) -> AsyncIterator[StreamEvent]:
        session_id = request.session_id or uuid.uuid4().hex
        if self.is_running(session_id):
            raise SessionBusyError(f"Session {session_id} is already running")

        # A new question on a suspended session replaces it
        await self.graph.discard(session_id)
        run = self.graph.start({
            INPUT_KEY: request.query,
            SCOPE_ID: request.scope_id,
            SESSION_ID: session_id,
            HUMAN_REVIEW_ENABLED: request.human_review_enabled,
            IS_ONLY_NL2SQL: request.nl2sql_only,
        }, session_id)
        logger.info(f"Starting session {session_id} in scope {request.scope_id}")
        return self._drive(session_id, run)

    async def resume(self, request: GraphResumeRequest) -> AsyncIterator[StreamEvent]:
        """
        Continue a suspended session with the reviewer's decision.

        Raises:
            SessionBusyError: the session is still advancing
            SessionNotFoundError: there is no checkpoint for the session
        """
        session_id = request.session_id
        if self.is_running(session_id):
            raise SessionBusyError(f"Session {session_id} is already running")
        checkpoint = await self.graph.checkpoint(session_id)
        if checkpoint is None:
            raise SessionNotFoundError(f"No suspended session {session_id}")

        logger.info(f"Resuming session {session_id} at {checkpoint.current_node.value} "
                    f"(approved={request.approved})")
        run = await self.graph.resume(session_id, {
            "approved": request.approved,
            "feedback_text": request.feedback_text or "",
        })
        return self._drive(session_id, run)

    async def stop(self, session_id: str) -> bool:
        """Cancel a running session or drop a suspended one; returns whether anything was stopped."""
        task = self._running.get(session_id)
        stopped = False
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            stopped = True
        if await self.graph.discard(session_id):
            stopped = True
        logger.info(f"Stop requested for session {session_id}: stopped={stopped}")
        return stopped

    async def get_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        return await self.graph.checkpoint(session_id)

    def _drive(self, session_id: str, run: GraphRun) -> AsyncIterator[StreamEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.ensure_future(self._advance(session_id, run, queue))
        self._running[session_id] = task

        def _unregister(done: asyncio.Task) -> None:
            if self._running.get(session_id) is done:
                del self._running[session_id]

        task.add_done_callback(_unregister)
        return self._consume(queue, task)

    @staticmethod
    async def _consume(queue: asyncio.Queue, task: asyncio.Task) -> AsyncIterator[StreamEvent]:
        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal():
                    return
        finally:
            # Subscriber went away before the end of the run
            if not task.done():
                task.cancel()

    async def _advance(self, session_id: str, run: GraphRun, queue: asyncio.Queue) -> None:
        def terminal(event_type: StreamEventType, payload: str = "") -> None:
            queue.put_nowait(StreamEvent(type=event_type, payload=payload, session_id=session_id))

        try:
            async for event in run.events():
                queue.put_nowait(event)

            if run.interrupted_at is not None:
                interrupt = {
                    "interrupt": True,
                    "node": run.interrupted_at.value,
                    "plan": run.state.get(PLANNER_NODE_OUTPUT),
                }
                queue.put_nowait(StreamEvent(
                    type=StreamEventType.JSON,
                    payload=json.dumps(interrupt, ensure_ascii=False),
                    session_id=session_id,
                ))
                terminal(StreamEventType.COMPLETE)
                return

            await self.graph.discard(session_id)
            error = run.state.get_or_default(WORKFLOW_ERROR)
            if error:
                logger.warning(f"Session {session_id} ended with an error: {error}")
                terminal(StreamEventType.ERROR, error)
            else:
                logger.info(f"Session {session_id} completed after {len(run.visited)} node runs")
                terminal(StreamEventType.COMPLETE, run.state.get_or_default(RESULT))
        except asyncio.CancelledError:
            logger.info(f"Session {session_id} stopped")
            try:
                await self.graph.discard(session_id)
            finally:
                terminal(StreamEventType.ERROR, STOPPED_MESSAGE)
            raise
        except Exception:
            logger.exception(f"Session {session_id} failed")
            terminal(StreamEventType.ERROR, INTERNAL_ERROR_MESSAGE)
