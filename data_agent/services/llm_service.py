"""
LLM collaborator.

Wraps a langchain chat model behind the two operations the workflow needs:
a single completion (``call``) and an incremental stream of text fragments
(``stream``). Any provider error is re-raised as ``LlmError``; cancellation
is left untouched so a stopped session also stops its in-flight request.
"""

import asyncio
import time
from typing import AsyncIterator, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from ..core.config import Settings, settings as default_settings
from ..core.logging import get_logger, log_llm_interaction
from ..workflow.errors import LlmError

logger = get_logger("services.llm")


def build_chat_model(settings: Optional[Settings] = None) -> BaseChatModel:
    """
    Build the default chat model from settings.

    Raises:
        LlmError: If OPENAI_API_KEY is not configured
    """
    settings = settings or default_settings
    if not settings.openai_api_key:
        raise LlmError("OPENAI_API_KEY is not configured")
    return ChatOpenAI(
        model=settings.openai_model,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.llm_timeout_seconds,
        temperature=0,
    )


def _content_text(content) -> str:
    if isinstance(content, str):
        return content
    # Multi-part content: keep the text parts only
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class LlmService:
    """
    Thin async facade over a langchain ``BaseChatModel``.

    Example:
        ```python
        llm = LlmService(build_chat_model())
        text = await llm.call("Rewrite: 上月华东区销售额", system="You are ...")
        async for chunk in llm.stream("..."):
            print(chunk, end="")
        ```
    """

    def __init__(self, chat_model: BaseChatModel, timeout: Optional[float] = None):
        self._model = chat_model
        self._timeout = timeout if timeout is not None else default_settings.llm_timeout_seconds

    @staticmethod
    def _messages(user: str, system: Optional[str]) -> List[BaseMessage]:
        messages: List[BaseMessage] = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=user))
        return messages

    async def call(self, user: str, system: Optional[str] = None) -> str:
        start_time = time.time()
        try:
            message = await asyncio.wait_for(
                self._model.ainvoke(self._messages(user, system)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise LlmError(f"LLM call timed out after {self._timeout}s") from e
        except Exception as e:
            raise LlmError(f"LLM call failed: {e}") from e

        text = _content_text(message.content)
        log_llm_interaction(logger, "call", user, text, time.time() - start_time)
        return text

    async def stream(self, user: str, system: Optional[str] = None) -> AsyncIterator[str]:
        start_time = time.time()
        collected = []
        try:
            async for chunk in self._model.astream(self._messages(user, system)):
                text = _content_text(chunk.content)
                if text:
                    collected.append(text)
                    yield text
        except Exception as e:
            raise LlmError(f"LLM stream failed: {e}") from e
        log_llm_interaction(logger, "stream", user, "".join(collected), time.time() - start_time)
