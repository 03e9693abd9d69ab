"""
Answer synthesis via an OpenAI-compatible chat completion gateway.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .config import (
    CHAT_API_KEY,
    CHAT_BASE_URL,
    CHAT_MAX_RETRIES,
    CHAT_MAX_TOKENS,
    CHAT_MODEL_NAME,
    CHAT_TEMPERATURE,
)
from .errors import SynthesisError
from .models import ChatMessage, Citation, ScoredChunk
from .observability import get_logger

logger = get_logger(__name__)

TITLE_MAX_TOKENS = 20

SYSTEM_PROMPT = """You are a Navy Diving Manual assistant. Answer ONLY from the manual content provided below.

RULES:
1. Use only information found in the manual context.
2. Cite every factual claim in exactly this format: (Volume X, Chapter Y, Page Z)
3. When the source contains a WARNING, CAUTION or NOTE, state it prominently at the start of the relevant part of your answer.
4. If the context does not fully answer the question, say so explicitly. If some relevant material is present, answer with what it supports instead of refusing.
5. Never add information from outside the manual.

Manual Context:
{context}"""

TITLE_PROMPT = """Based on this conversation, create a short 3-5 word title:
User: {message}
Assistant: {answer}

Title (no quotes, no punctuation):"""


@dataclass(frozen=True)
class SynthesizedAnswer:
    text: str
    citations: list[Citation]


def project_citations(ranked: Sequence[ScoredChunk]) -> list[Citation]:
    return [Citation.from_chunk(item.chunk) for item in ranked]


def _history_to_messages(history: Sequence[ChatMessage]) -> list[BaseMessage]:
    out: list[BaseMessage] = []
    for message in history:
        if message.role == "assistant":
            out.append(AIMessage(content=message.content))
        else:
            out.append(HumanMessage(content=message.content))
    return out


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text") or ""))
            else:
                parts.append(str(part))
        content = "".join(parts)
    return str(content or "").strip()


def _classify(exc: Exception) -> SynthesisError:
    if isinstance(exc, SynthesisError):
        return exc
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None
    return SynthesisError.from_status(status, str(exc))


class AnswerSynthesizer:
    def __init__(
        self,
        llm: Any = None,
        *,
        model: str = CHAT_MODEL_NAME,
        temperature: float = CHAT_TEMPERATURE,
        max_tokens: int = CHAT_MAX_TOKENS,
        base_url: str | None = CHAT_BASE_URL,
        api_key: str | None = CHAT_API_KEY,
        max_retries: int = CHAT_MAX_RETRIES,
        title_llm: Any = None,
    ):
        self.model = model
        self.temperature = float(temperature)
        self.max_tokens = int(max_tokens)
        self.base_url = base_url
        self.api_key = api_key
        self.max_retries = int(max_retries)
        self._llm = llm
        # An injected model doubles as the title model unless one is given.
        self._title_llm = title_llm if title_llm is not None else llm

    def _build_llm(self, max_tokens: int):
        from langchain_openai import ChatOpenAI

        kwargs: dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": max_tokens,
            "api_key": self.api_key,
            "max_retries": self.max_retries,
        }
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return ChatOpenAI(**kwargs)

    @property
    def llm(self):
        if self._llm is None:
            self._llm = self._build_llm(self.max_tokens)
            logger.info("chat_model_initialized", model=self.model)
        return self._llm

    @property
    def title_llm(self):
        if self._title_llm is None:
            self._title_llm = self._build_llm(TITLE_MAX_TOKENS)
        return self._title_llm

    def build_messages(self, context: str, history: Sequence[ChatMessage], message: str) -> list[BaseMessage]:
        return [
            SystemMessage(content=SYSTEM_PROMPT.format(context=context)),
            *_history_to_messages(history),
            HumanMessage(content=message),
        ]

    def _fail(self, exc: Exception) -> SynthesisError:
        error = _classify(exc)
        logger.error(
            "chat_completion_failed",
            kind=error.kind,
            status=error.status_code,
            error=str(exc),
        )
        return error

    def answer(
        self,
        context: str,
        history: Sequence[ChatMessage],
        message: str,
        ranked: Sequence[ScoredChunk] = (),
    ) -> SynthesizedAnswer:
        messages = self.build_messages(context, history, message)
        try:
            response = self.llm.invoke(messages)
        except Exception as exc:
            raise self._fail(exc) from exc
        return SynthesizedAnswer(text=_response_text(response), citations=project_citations(ranked))

    async def aanswer(
        self,
        context: str,
        history: Sequence[ChatMessage],
        message: str,
        ranked: Sequence[ScoredChunk] = (),
    ) -> SynthesizedAnswer:
        messages = self.build_messages(context, history, message)
        try:
            response = await self.llm.ainvoke(messages)
        except Exception as exc:
            raise self._fail(exc) from exc
        return SynthesizedAnswer(text=_response_text(response), citations=project_citations(ranked))

    def generate_title(self, message: str, answer: str) -> str | None:
        """Short conversation title. Failures are logged and yield None."""
        prompt = TITLE_PROMPT.format(message=message, answer=answer)
        try:
            response = self.title_llm.invoke([HumanMessage(content=prompt)])
        except Exception as exc:
            logger.warning("title_generation_failed", error=str(exc))
            return None
        title = _response_text(response).strip().strip('"').strip("'").strip()
        return title or None

    async def agenerate_title(self, message: str, answer: str) -> str | None:
        prompt = TITLE_PROMPT.format(message=message, answer=answer)
        try:
            response = await self.title_llm.ainvoke([HumanMessage(content=prompt)])
        except Exception as exc:
            logger.warning("title_generation_failed", error=str(exc))
            return None
        title = _response_text(response).strip().strip('"').strip("'").strip()
        return title or None
