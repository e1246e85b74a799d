"""Step executor — a bounded tool-calling session for one plan step.

The model is streamed round by round.  Text deltas are forwarded to the
event channel as they arrive; tool calls requested in a round are run one
at a time, in order, through the :class:`ToolDispatcher`.  The session ends
when the model answers without tool calls or when the round cap is reached.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from atelier.agents.models import AgentRole, get_llm, load_system_prompt
from atelier.core.config import get_settings
from atelier.core.events import EventChannel
from atelier.core.logging import get_logger
from atelier.core.state import PlanStep
from atelier.tools.registry import ToolDispatcher

logger = get_logger("agents.executor")

TOOL_RESULT_MAX_CHARS = 8_000


@dataclass
class SessionResult:
    """What one tool-calling session produced."""
    replies: list[str] = field(default_factory=list)
    transcript: list[str] = field(default_factory=list)
    rounds: int = 0
    capped: bool = False
    aborted: bool = False

    @property
    def reply(self) -> str:
        """Assistant text only, without tool lines."""
        return "".join(self.replies)


def history_to_messages(history: list[dict]) -> list[BaseMessage]:
    """Convert ``{role, content}`` history entries into chat messages."""
    messages: list[BaseMessage] = []
    for entry in history:
        role = entry.get("role", "user")
        content = str(entry.get("content", ""))
        if role == "assistant":
            messages.append(AIMessage(content=content))
        elif role == "system":
            messages.append(HumanMessage(content=f"[context] {content}"))
        else:
            messages.append(HumanMessage(content=content))
    return messages


def _chunk_text(chunk: AIMessageChunk) -> str:
    if isinstance(chunk.content, str):
        return chunk.content
    text = ""
    for part in chunk.content:
        if isinstance(part, dict) and part.get("type") == "text":
            text += part.get("text", "")
        elif isinstance(part, str):
            text += part
    return text


class StepExecutor:
    """Runs one plan step against the executor model and the tool set.

    The same round loop backs the direct chat mode through
    :meth:`run_messages`, which takes a prepared message list and an optional
    stop flag checked between chunks, rounds and tool calls.
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        channel: EventChannel,
        llm: BaseChatModel | None = None,
        max_rounds: int | None = None,
        role: AgentRole = "executor",
    ):
        self.dispatcher = dispatcher
        self.channel = channel
        self._llm = llm
        self.max_rounds = max_rounds or get_settings().max_tool_rounds
        self.role = role

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = get_llm(self.role)
        return self._llm

    def _stream_round(
        self,
        bound,
        messages: list[BaseMessage],
        stop: threading.Event | None = None,
    ) -> AIMessage:
        """Stream one model round, forwarding text deltas, and return the full message.

        Falls back to ``.invoke()`` when the model cannot stream.  When *stop*
        is set mid-stream the partial text is kept and tool calls are dropped.
        """
        accumulated: AIMessageChunk | None = None
        emitted = False
        try:
            for chunk in bound.stream(messages):
                if stop is not None and stop.is_set():
                    text = _chunk_text(accumulated) if accumulated is not None else ""
                    return AIMessage(content=text)
                if not isinstance(chunk, AIMessageChunk):
                    continue
                accumulated = chunk if accumulated is None else accumulated + chunk
                text = _chunk_text(chunk)
                if text:
                    self.channel.text(text)
                    emitted = True
        except NotImplementedError:
            if emitted:
                raise
            logger.debug("streaming_fallback | %s model does not support .stream()", self.role)
            response = bound.invoke(messages)
            text = response.content if isinstance(response.content, str) else ""
            if text:
                self.channel.text(text)
            return response

        if accumulated is None:
            return AIMessage(content="")
        return AIMessage(
            content=accumulated.content,
            tool_calls=list(accumulated.tool_calls or []),
            id=getattr(accumulated, "id", None),
        )

    def run_messages(
        self,
        messages: list[BaseMessage],
        label: str,
        stop: threading.Event | None = None,
    ) -> SessionResult:
        """Drive the tool-calling loop over *messages* (extended in place)."""
        bound = self.llm.bind_tools(self.dispatcher.tools)
        result = SessionResult()

        for round_num in range(self.max_rounds):
            if stop is not None and stop.is_set():
                result.aborted = True
                break
            response = self._stream_round(bound, messages, stop)
            messages.append(response)
            result.rounds = round_num + 1

            text = response.content if isinstance(response.content, str) else _chunk_text(response)
            if text:
                result.replies.append(text)
                result.transcript.append(text)

            if stop is not None and stop.is_set():
                result.aborted = True
                break
            if not response.tool_calls:
                logger.info("%s finished after %d round(s)", label, round_num + 1)
                return result

            for tc in response.tool_calls:
                if stop is not None and stop.is_set():
                    result.aborted = True
                    break
                tool_result = self.dispatcher.dispatch(tc["name"], tc.get("args") or {}, call_id=tc.get("id"))
                status = "ok" if tool_result.get("success") else f"error: {tool_result.get('error', '')}"
                result.transcript.append(
                    f"[tool] {tc['name']}({json.dumps(tc.get('args') or {}, default=str)[:200]}) -> {status}"
                )
                payload = json.dumps(tool_result, default=str)
                if len(payload) > TOOL_RESULT_MAX_CHARS:
                    payload = payload[:TOOL_RESULT_MAX_CHARS] + "... [truncated]"
                messages.append(ToolMessage(content=payload, tool_call_id=tc.get("id") or tc["name"]))
            if result.aborted:
                break
        else:
            notice = f"Stopped after reaching the maximum of {self.max_rounds} tool rounds."
            logger.warning("%s: %s", label, notice)
            self.channel.text(f"\n⚠️ {notice}\n")
            result.transcript.append(notice)
            result.capped = True
            return result

        logger.info("%s aborted after %d round(s)", label, result.rounds)
        return result

    def run_step(self, step: PlanStep, history: list[dict]) -> str:
        """Execute *step* and return the text transcript of the session."""
        system = load_system_prompt(
            "executor",
            step_description=step.description,
            project_path=str(self.dispatcher.session.project_root),
        )
        messages: list[BaseMessage] = [SystemMessage(content=system)]
        messages.extend(history_to_messages(history))
        messages.append(HumanMessage(content=f"Execute this step now: {step.description}"))

        return "\n".join(self.run_messages(messages, f"Step {step.id}").transcript)
