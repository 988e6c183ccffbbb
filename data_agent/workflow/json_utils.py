"""Helpers for reading structured answers out of LLM text."""

import json
import re
from typing import Any, Optional

_FENCE = re.compile(r"```[a-zA-Z]*\s*\n?(.*?)```", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Content of the first fenced block, or the text itself when there is none."""
    match = _FENCE.search(text or "")
    return (match.group(1) if match else (text or "")).strip()


def parse_json_response(text: str) -> Optional[Any]:
    """
    Decode JSON from an LLM answer.

    Tries the fenced block first, then the outermost ``{...}`` or ``[...]``
    span. Returns None when nothing decodes.
    """
    candidate = strip_code_fence(text)
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    for opening, closing in (("{", "}"), ("[", "]")):
        start, end = candidate.find(opening), candidate.rfind(closing)
        if start != -1 and end > start:
            try:
                return json.loads(candidate[start:end + 1])
            except ValueError:
                continue
    return None
