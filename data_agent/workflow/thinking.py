"""
Sequential thinking history of a session.

The planner records its thought process as numbered thoughts; a re-plan is
recorded as a revision of the previous thought. The history lives in the
session's shared state (``THINKING_HISTORY``), never in a process-wide
object, so concurrent sessions cannot read each other's thoughts.
"""

from typing import Any, Dict, List, Optional


def new_thought(history: List[Dict[str, Any]], thought: str,
                reason: Optional[str] = None) -> Dict[str, Any]:
    """Entry to append for ``thought``; it revises the last thought when there is one."""
    number = len(history) + 1
    entry: Dict[str, Any] = {
        "thought_number": number,
        "thought": thought,
        "is_revision": bool(history),
    }
    if history:
        entry["revises_thought"] = history[-1]["thought_number"]
    if reason:
        entry["reason"] = reason
    return entry


def format_thinking_history(history: List[Dict[str, Any]]) -> str:
    lines = []
    for entry in history:
        line = f"Thought {entry['thought_number']}"
        if entry.get("is_revision"):
            line += f" (revises {entry.get('revises_thought')})"
        line += f": {entry['thought']}"
        if entry.get("reason"):
            line += f" [revised because: {entry['reason']}]"
        lines.append(line)
    return "\n".join(lines)
