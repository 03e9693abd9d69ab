"""Chat turn orchestration: conversation state, retrieval, synthesis, persistence."""
from __future__ import annotations

import asyncio
import functools
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any

from .config import CONTEXT_MAX_CHARS, CONTEXT_WINDOW_CHARS, CONVERSATION_HISTORY_LIMIT
from .context_builder import build_context
from .errors import ConversationNotFoundError
from .memory_manager import ConversationStore, provisional_title
from .models import ChatMessage, Citation, ScoredChunk
from .observability import get_logger
from .tokenization import extract_phrases

logger = get_logger(__name__)

SEARCH_TYPE_CHAT = "hybrid"


@dataclass
class ChatResult:
    response: str
    session_id: str
    citations: list[Citation] = field(default_factory=list)
    ranked: list[ScoredChunk] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "sessionId": self.session_id,
            "citations": [c.to_dict() for c in self.citations],
        }


class QueryProcessor:
    """
    Runs one chat turn end to end. History handed to retrieval and to the chat
    model is read before the new user message is stored, so it never contains
    the message being answered.
    """

    def __init__(
        self,
        retriever: Any,
        synthesizer: Any,
        conversations: ConversationStore,
        *,
        history_limit: int = CONVERSATION_HISTORY_LIMIT,
        window_chars: int = CONTEXT_WINDOW_CHARS,
        context_max_chars: int = CONTEXT_MAX_CHARS,
    ):
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.conversations = conversations
        self.history_limit = int(history_limit)
        self.window_chars = int(window_chars)
        self.context_max_chars = int(context_max_chars)

    def _open_conversation(self, user_id: str, message: str, session_id: str | None) -> str:
        if session_id:
            conversation = self.conversations.get_conversation(session_id)
            if conversation is None or str(conversation["user_id"]) != str(user_id):
                raise ConversationNotFoundError(session_id)
            return str(conversation["id"])
        return self.conversations.create_conversation(user_id, provisional_title(message))

    def _begin(self, user_id: str, message: str, session_id: str | None) -> tuple[str, list[ChatMessage]]:
        text = str(message or "").strip()
        if not text:
            raise ValueError("message must not be empty")
        conversation_id = self._open_conversation(user_id, text, session_id)
        history = self.conversations.recent_messages(conversation_id, self.history_limit)
        self.conversations.append_message(conversation_id, "user", text)
        return conversation_id, history

    def _context(self, message: str, ranked: list[ScoredChunk]) -> str:
        return build_context(
            ranked,
            extract_phrases(message),
            window=self.window_chars,
            max_chars=self.context_max_chars,
        )

    def _finish(self, conversation_id: str, user_id: str, message: str, ranked, answer) -> bool:
        """Stores the answer and logs the search. Returns True when a title should be generated."""
        self.conversations.append_message(conversation_id, "assistant", answer.text, answer.citations)
        self.conversations.log_search(
            user_id=user_id,
            query=message,
            search_type=SEARCH_TYPE_CHAT,
            results_count=len(ranked),
        )
        logger.info(
            "chat_turn_completed",
            conversation_id=conversation_id,
            chunks=len(ranked),
            citations=len(answer.citations),
        )
        return self.conversations.count_messages(conversation_id) == 2

    def _store_title(self, conversation_id: str, title: str | None):
        if title:
            self.conversations.set_title(conversation_id, title)
            logger.info("conversation_titled", conversation_id=conversation_id, title=title)

    def process(self, message: str, *, user_id: str, session_id: str | None = None) -> ChatResult:
        message = str(message or "").strip()
        conversation_id, history = self._begin(user_id, message, session_id)
        ranked = self.retriever.retrieve(message, history)
        answer = self.synthesizer.answer(self._context(message, ranked), history, message, ranked)
        if self._finish(conversation_id, user_id, message, ranked, answer):
            self._store_title(conversation_id, self.synthesizer.generate_title(message, answer.text))
        return ChatResult(
            response=answer.text,
            session_id=conversation_id,
            citations=list(answer.citations),
            ranked=list(ranked),
        )

    async def aprocess(
        self,
        message: str,
        *,
        user_id: str,
        session_id: str | None = None,
        executor: Executor | None = None,
    ) -> ChatResult:
        """Async turn. Blocking store and search calls run on `executor` (the loop default when None)."""
        loop = asyncio.get_running_loop()

        def run(fn, *args, **kwargs):
            return loop.run_in_executor(executor, functools.partial(fn, *args, **kwargs))

        message = str(message or "").strip()
        conversation_id, history = await run(self._begin, user_id, message, session_id)
        ranked = await self.retriever.aretrieve(message, history, executor=executor)
        answer = await self.synthesizer.aanswer(self._context(message, ranked), history, message, ranked)
        needs_title = await run(self._finish, conversation_id, user_id, message, ranked, answer)
        if needs_title:
            title = await self.synthesizer.agenerate_title(message, answer.text)
            await run(self._store_title, conversation_id, title)
        return ChatResult(
            response=answer.text,
            session_id=conversation_id,
            citations=list(answer.citations),
            ranked=list(ranked),
        )
