"""Router for the analysis workflow (Graph API)"""
import json
import threading
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from langgraph.checkpoint.base import BaseCheckpointSaver

from ..core.config import settings
from ..core.logging import get_logger
from ..schemas.graph import (
    CheckpointResponse, GraphResumeRequest, GraphStartRequest, GraphStopRequest,
    GraphStopResponse, StreamEvent,
)
from ..services.code_runner import SubprocessCodeRunner
from ..services.datasource_service import SettingsDatasourceResolver
from ..services.llm_service import LlmService, build_chat_model
from ..services.schema_service import SchemaService
from ..services.sql_executor import SqlAlchemySqlExecutor
from ..services.vector_store import HttpVectorStoreService
from ..workflow.context import WorkflowServices
from ..workflow.errors import LlmError, SessionBusyError, SessionNotFoundError
from ..workflow.graph import build_workflow_graph
from ..workflow.service import GraphService

logger = get_logger("api.graph")

router = APIRouter(prefix="/api/v1/graph", tags=["Graph"])

_graph_service: Optional[GraphService] = None
_graph_service_lock = threading.Lock()


def build_graph_service(checkpointer: BaseCheckpointSaver) -> GraphService:
    """Wire the production collaborators from settings."""
    vector_store = HttpVectorStoreService(settings.retrieval_api_url, settings.retrieval_timeout_seconds)
    services = WorkflowServices(
        llm=LlmService(build_chat_model(settings), settings.llm_timeout_seconds),
        vector_store=vector_store,
        schema_service=SchemaService(vector_store, settings),
        datasources=SettingsDatasourceResolver(settings.datasource_url, settings.datasource_dialect),
        sql_executor=SqlAlchemySqlExecutor(),
        code_runner=SubprocessCodeRunner(timeout=settings.python_timeout_seconds),
        settings=settings,
    )
    return GraphService(build_workflow_graph(services, checkpointer))


def get_graph_service(request: Request) -> GraphService:
    """
    FastAPI dependency returning the process-wide graph service, built on
    the checkpointer opened by the application lifespan.
    """
    global _graph_service
    with _graph_service_lock:
        if _graph_service is None:
            try:
                _graph_service = build_graph_service(request.app.state.checkpointer)
            except LlmError as e:
                logger.error(f"Graph service unavailable: {e}")
                raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        return _graph_service


async def _sse(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield f"data: {json.dumps(event.model_dump(mode='json'), ensure_ascii=False)}\n\n"


def _streaming_response(events: AsyncIterator[StreamEvent]) -> StreamingResponse:
    return StreamingResponse(
        _sse(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/stream")
async def stream_graph(
    request: GraphStartRequest,
    service: GraphService = Depends(get_graph_service)
):
    """
    Run a question through the workflow and stream its events (SSE).

    The stream always ends with one `complete` or `error` event. With
    `human_review_enabled` it may end early with an interrupt event carrying
    the plan; continue with `/resume`.
    """
    try:
        events = await service.start(request)
    except SessionBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _streaming_response(events)


@router.post("/resume")
async def resume_graph(
    request: GraphResumeRequest,
    service: GraphService = Depends(get_graph_service)
):
    """Continue a session suspended for human review."""
    try:
        events = await service.resume(request)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SessionBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _streaming_response(events)


@router.post("/stop", response_model=GraphStopResponse)
async def stop_graph(
    request: GraphStopRequest,
    service: GraphService = Depends(get_graph_service)
):
    stopped = await service.stop(request.session_id)
    return GraphStopResponse(session_id=request.session_id, stopped=stopped)


@router.get("/sessions/{session_id}/checkpoint", response_model=CheckpointResponse)
async def get_session_checkpoint(
    session_id: str,
    service: GraphService = Depends(get_graph_service)
):
    checkpoint = await service.get_checkpoint(session_id)
    if checkpoint is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No suspended session {session_id}"
        )
    return CheckpointResponse(
        session_id=checkpoint.session_id,
        scope_id=checkpoint.scope_id,
        current_node=checkpoint.current_node.value,
        state=checkpoint.state,
    )
