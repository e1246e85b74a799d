"""Direct chat mode — one streamed tool-calling session, no plan.

The user talks to a single agent that holds the whole tool catalog.  The
session reuses :class:`StepExecutor`'s round loop with its own, larger step
cap and can be aborted from another thread.  Finished conversations are
saved per project through the :class:`ConversationStore`.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from datetime import UTC, datetime

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

from atelier.agents.executor import StepExecutor, history_to_messages
from atelier.agents.models import get_llm, load_system_prompt
from atelier.core.config import get_settings
from atelier.core.events import EventChannel
from atelier.core.history import (
    ChatMessage,
    Conversation,
    ConversationStore,
    check_conversation_id,
    conversation_store,
)
from atelier.core.logging import get_logger
from atelier.core.session import EditSession
from atelier.tools.registry import ToolDispatcher

logger = get_logger("agents.chat")

DEFAULT_TITLE = "New Conversation"
FALLBACK_TITLE = "Conversation"

TITLE_PROMPT = (
    "Generate a very short, concise title (max 5 words) for a conversation that "
    "starts with this user message. Respond ONLY with the title, no quotes.\n\n"
    "Message: {message}"
)


class ChatOutcome(BaseModel):
    success: bool
    conversation_id: str | None = None
    reply: str = ""
    aborted: bool = False
    capped: bool = False
    error: str | None = None


def generate_title(messages: list[ChatMessage], llm: BaseChatModel | None = None) -> str:
    """Ask the model for a short title based on the latest user message."""
    user_messages = [m for m in messages if m.role == "user"]
    if not user_messages:
        return DEFAULT_TITLE
    prompt = TITLE_PROMPT.format(message=user_messages[-1].content[:500])
    try:
        response = (llm or get_llm("chat")).invoke([HumanMessage(content=prompt)])
    except Exception as exc:
        logger.warning("Title generation failed: %s", exc)
        return FALLBACK_TITLE
    content = response.content if isinstance(response.content, str) else ""
    title = content.strip().strip("\"'").strip()
    return title or FALLBACK_TITLE


class ChatAgent:
    """Single-agent chat over one editing session."""

    def __init__(
        self,
        session: EditSession,
        channel: EventChannel,
        llm: BaseChatModel | None = None,
        title_llm: BaseChatModel | None = None,
        store: ConversationStore | None = None,
        max_steps: int | None = None,
    ):
        self.session = session
        self.channel = channel
        self.store = store or conversation_store
        self.max_steps = max_steps or get_settings().chat_max_steps
        self.executor = StepExecutor(
            ToolDispatcher(session, channel),
            channel,
            llm=llm,
            max_rounds=self.max_steps,
            role="chat",
        )
        self._title_llm = title_llm
        self._stop = threading.Event()

    def abort(self) -> None:
        """Ask the running chat to stop at the next chunk, round or tool call."""
        self._stop.set()
        logger.info("Chat abort requested | project: %s", self.session.project_root)

    @property
    def aborted(self) -> bool:
        return self._stop.is_set()

    def _prompt(self, messages: list[ChatMessage]) -> list[BaseMessage]:
        system = load_system_prompt("chat", project_path=str(self.session.project_root))
        history = [m.model_dump() for m in messages if m.role != "system"]
        return [SystemMessage(content=system), *history_to_messages(history)]

    def stream_chat(self, messages: list[ChatMessage], conversation_id: str | None = None) -> ChatOutcome:
        """Run one chat turn. Always closes the stream with ``done``."""
        conversation_id = conversation_id or uuid.uuid4().hex
        logger.info(
            "Starting chat | conversation: %s | messages: %d | project: %s",
            conversation_id[:8], len(messages), self.session.project_root,
        )

        try:
            check_conversation_id(conversation_id)
            if not self.session.ledger.are_changes_visible:
                self.channel.text("ℹ️ Showing pending changes again before editing.\n")
                self.session.ledger.toggle(True)
            result = self.executor.run_messages(
                self._prompt(messages), f"Chat {conversation_id[:8]}", stop=self._stop
            )
        except Exception as exc:
            logger.exception("Chat failed")
            self.channel.text(f"\n❌ **Chat error:** {exc}\n")
            return ChatOutcome(success=False, conversation_id=conversation_id, error=str(exc))
        finally:
            self.channel.done()

        if result.aborted:
            logger.info("Chat aborted | conversation: %s", conversation_id[:8])
            return ChatOutcome(success=True, conversation_id=conversation_id, reply=result.reply, aborted=True)

        self._save(conversation_id, messages, result.reply)
        return ChatOutcome(
            success=True,
            conversation_id=conversation_id,
            reply=result.reply,
            capped=result.capped,
        )

    def _save(self, conversation_id: str, messages: list[ChatMessage], reply: str) -> None:
        project = self.session.project_root
        try:
            existing = self.store.get(project, conversation_id)
            title = existing.title if existing else generate_title(messages, self._title_llm)
            conversation = Conversation(
                id=conversation_id,
                title=title,
                messages=[
                    *(m for m in messages if m.role != "system"),
                    ChatMessage(role="assistant", content=reply, created_at=datetime.now(UTC)),
                ],
            )
            self.store.save(project, conversation)
        except (OSError, ValueError) as exc:
            logger.error("Failed to save conversation %s: %s", conversation_id, exc)


async def run_chat(
    agent: ChatAgent,
    messages: list[ChatMessage],
    conversation_id: str | None = None,
) -> ChatOutcome:
    """Async entry point: runs the chat turn in a worker thread."""
    return await asyncio.to_thread(agent.stream_chat, messages, conversation_id)
