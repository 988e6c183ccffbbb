"""
Logging configuration and utilities.

All loggers write to stdout for container-friendly logging. Two formats are
supported, selected by ``LOG_FORMAT``:

- ``text``: ``2026-01-01 10:00:00,000 [INFO] [workflow.graph] message``
- ``json``: one JSON object per line (python-json-logger), suitable for
  log aggregation. Extra fields passed through ``NodeLoggerAdapter`` (node
  name, session id, LLM latency, ...) become top-level JSON keys.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from pythonjsonlogger import jsonlogger

from .config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that always emits ``timestamp`` and an upper-case ``level``."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        if log_record.get("level"):
            log_record["level"] = log_record["level"].upper()
        else:
            log_record["level"] = record.levelname


def _build_handler(log_format: str) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] %(message)s"))
    return handler


# Configure base logging for the entire application
logging.basicConfig(
    level=settings.log_level.upper(),
    handlers=[_build_handler(settings.log_format.lower())],
)


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger instance for a module or component.

    Args:
        name: Logger name, typically __name__ or module name.
              Examples: "main", "workflow.graph", "services.llm"

    Returns:
        logging.Logger: Configured logger instance

    Example:
        ```python
        from .core.logging import get_logger

        logger = get_logger(__name__)
        logger.info("Application started")
        ```
    """
    logger = logging.getLogger(name)
    logger.setLevel(settings.log_level.upper())
    return logger


class NodeLoggerAdapter(logging.LoggerAdapter):
    """
    Adapter that merges extra fields passed to the log call with those
    defined in the adapter (node name, session id).
    The standard LoggerAdapter overwrites 'extra', losing data.
    """

    def process(self, msg, kwargs):
        extra_payload = kwargs.get("extra", {})
        merged_extra = dict(self.extra)
        merged_extra.update(extra_payload)

        kwargs["extra"] = merged_extra
        return msg, kwargs


def node_logger(node: str, session_id: Optional[str] = None) -> NodeLoggerAdapter:
    """Logger bound to a workflow node of one session."""
    return NodeLoggerAdapter(get_logger(f"workflow.{node}"), {"node": node, "session_id": session_id})


def log_llm_interaction(logger, step_name: str, prompt: str, output: Any, latency: float = 0.0):
    """Log LLM input/output in a structured way without cluttering the console."""
    logger.debug(
        f"LLM Interaction: {step_name}",
        extra={
            "event_type": "llm_call",
            "step": step_name,
            "prompt": prompt,
            "output": output if isinstance(output, str) else str(output),
            "latency_seconds": round(latency, 3),
        },
    )


def log_state_transition(logger, step_name: str, state_diff: Dict[str, Any]):
    """Logs which keys a node changed."""
    changed: Iterable[str] = sorted(state_diff.keys())
    logger.info(
        f"State Updated: {step_name} keys={list(changed)}",
        extra={
            "event_type": "state_transition",
            "state_updates": list(changed),
        },
    )
