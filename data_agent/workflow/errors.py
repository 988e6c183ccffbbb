"""
Exception hierarchy of the workflow engine.

Collaborator failures are raised as ``CollaboratorError`` subclasses by the
service adapters. Nodes catch them and record a typed failure key in the
shared state, so dispatchers can decide between retry and termination.
Only configuration errors (``StateKeyError``) and session lookup errors are
meant to reach the caller.
"""

import asyncio
from enum import Enum

import httpx


class WorkflowError(Exception):
    """Base class for every error raised by the engine."""


class StateKeyError(WorkflowError):
    """Write to an undeclared key, or read of an absent required key."""


class CollaboratorError(WorkflowError):
    """A collaborator (LLM, retrieval, database, code runner) failed."""


class LlmError(CollaboratorError):
    pass


class RetrievalError(CollaboratorError):
    pass


class SqlExecutionError(CollaboratorError):
    pass


class CodeExecutionError(CollaboratorError):
    pass


class SessionNotFoundError(WorkflowError):
    pass


class SessionBusyError(WorkflowError):
    """The session is currently advancing and cannot be resumed."""


class ErrorKind(str, Enum):
    RETRYABLE = "RETRYABLE"
    NON_RETRYABLE = "NON_RETRYABLE"


_TRANSIENT_MARKERS = ("timeout", "timed out", "connection", "network")
_TRANSIENT_TYPES = (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)


def classify_error(exc: BaseException) -> ErrorKind:
    """Timeouts and connection problems are retryable, everything else is not."""
    current = exc
    while current is not None:
        if isinstance(current, _TRANSIENT_TYPES):
            return ErrorKind.RETRYABLE
        message = str(current).lower()
        if any(marker in message for marker in _TRANSIENT_MARKERS):
            return ErrorKind.RETRYABLE
        current = current.__cause__
    return ErrorKind.NON_RETRYABLE
