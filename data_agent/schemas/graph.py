"""
Pydantic schemas for the Graph API.

Endpoints:
1. Start (POST /stream)   - run a question through the workflow
2. Resume (POST /resume)  - continue a session suspended for human review
3. Stop (POST /stop)      - cancel a running or suspended session
4. Checkpoint inspection (GET /sessions/{session_id}/checkpoint)

Start and Resume answer with a stream of ``StreamEvent`` objects that is
always terminated by exactly one ``complete`` or ``error`` event.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from enum import Enum


class StreamEventType(str, Enum):
    """Kinds of events delivered to stream subscribers."""
    STATUS = "status"
    JSON = "json"
    IMAGE = "image"
    MARKDOWN = "markdown"
    ERROR = "error"
    COMPLETE = "complete"


class StreamEvent(BaseModel):
    """One event of a workflow stream."""
    type: StreamEventType
    payload: str = ""
    node: Optional[str] = Field(
        default=None,
        description="Node that produced the event; empty for driver-level events"
    )
    session_id: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.COMPLETE, StreamEventType.ERROR)


class GraphStartRequest(BaseModel):
    query: str = Field(..., min_length=1, description="Natural-language question")
    scope_id: str = Field(..., min_length=1, description="Agent/tenant scope")
    human_review_enabled: bool = Field(
        default=False,
        description="Suspend for human approval before executing the plan"
    )
    session_id: Optional[str] = Field(
        default=None,
        description="Session id; generated when omitted"
    )
    nl2sql_only: bool = Field(
        default=False,
        description="Skip planning and reporting, return the validated SQL only"
    )


class GraphResumeRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    approved: bool = Field(..., description="Whether the reviewer approved the plan")
    feedback_text: Optional[str] = Field(
        default=None,
        description="Reviewer comments, used as repair context when rejected"
    )


class GraphStopRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class GraphStopResponse(BaseModel):
    session_id: str
    stopped: bool


class CheckpointResponse(BaseModel):
    session_id: str
    scope_id: str
    current_node: str
    state: Dict[str, Any]
