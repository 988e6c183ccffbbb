"""
Execution context handed to every node.

A node invocation has two output channels:

- the stream writer, an ordered channel of display events (``emit``) that
  reaches subscribers while the node is still running (langgraph ``custom``
  stream mode);
- the return value of the node coroutine, the state delta the graph commits
  through the state reducers once the node has finished.

A status event therefore never implies that the matching state write has
landed.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from ..core.config import Settings
from ..core.logging import NodeLoggerAdapter, node_logger
from ..schemas.graph import StreamEvent, StreamEventType
from ..services.code_runner import CodeRunner
from ..services.datasource_service import DatasourceResolver
from ..services.llm_service import LlmService
from ..services.schema_service import SchemaService
from ..services.sql_executor import SqlExecutor
from ..services.vector_store import VectorStoreService
from .constants import NodeName


@dataclass
class WorkflowServices:
    """Collaborators shared by all nodes of all sessions."""
    llm: LlmService
    vector_store: VectorStoreService
    schema_service: SchemaService
    datasources: DatasourceResolver
    sql_executor: SqlExecutor
    code_runner: CodeRunner
    settings: Settings


class NodeContext:

    def __init__(self, node: NodeName, session_id: Optional[str],
                 services: WorkflowServices, writer: Callable[[StreamEvent], None]):
        self.node = node
        self.session_id = session_id
        self.services = services
        self._writer = writer
        self.logger: NodeLoggerAdapter = node_logger(node.value, session_id)

    @property
    def settings(self) -> Settings:
        return self.services.settings

    def emit(self, text: str, event_type: StreamEventType = StreamEventType.STATUS) -> None:
        """Send a display event; events keep their emission order."""
        self._writer(StreamEvent(
            type=event_type,
            payload=text,
            node=self.node.value,
            session_id=self.session_id,
        ))

    async def emit_stream(self, chunks: AsyncIterator[str],
                          event_type: StreamEventType = StreamEventType.STATUS) -> str:
        """Forward every chunk as an event and return the concatenated text."""
        collected = []
        async for chunk in chunks:
            collected.append(chunk)
            self.emit(chunk, event_type)
        return "".join(collected)

    async def stream_llm(self, user: str, system: Optional[str] = None,
                         event_type: StreamEventType = StreamEventType.STATUS) -> str:
        """Stream an LLM completion to subscribers and return the full text."""
        return await self.emit_stream(self.services.llm.stream(user, system), event_type)
