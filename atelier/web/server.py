"""FastAPI web server — change review, plan runs, direct chat and a live event stream.

Runs and chat turns execute in a worker thread.  Their events are consumed
from the :class:`EventChannel` by a second thread, kept in a bounded history
and broadcast to every connected WebSocket client in emission order.  One
project never has more than one run or chat turn in flight.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from atelier import __version__
from atelier.agents.chat import ChatAgent, run_chat
from atelier.core.config import get_settings
from atelier.core.events import EventChannel
from atelier.core.history import ChatMessage, check_conversation_id, conversation_store
from atelier.core.logging import get_logger
from atelier.core.orchestrator import run_request
from atelier.core.session import EditSession, registry

logger = get_logger("web.server")

# ── In-memory state ───────────────────────────────────────────────────────
_ws_clients: set[WebSocket] = set()
_ws_outbox: asyncio.Queue | None = None
_ws_pump_task: asyncio.Task | None = None
_event_history: deque[dict] = deque(maxlen=get_settings().event_history_size)
_running: set[str] = set()
_active_chats: dict[str, ChatAgent] = {}


# ── Models ────────────────────────────────────────────────────────────────

class ProjectRequest(BaseModel):
    project: str = ""


class ToggleRequest(ProjectRequest):
    visible: bool


class RunRequest(ProjectRequest):
    request: str


class ChatRequest(ProjectRequest):
    messages: list[ChatMessage]
    conversation_id: str | None = None


# ── Helpers ───────────────────────────────────────────────────────────────

def _project_path(project: str) -> str:
    path = project or get_settings().target_project_path
    if not path:
        raise ValueError("No project given and TARGET_PROJECT_PATH is not set")
    return path


def _session_for(project: str) -> EditSession:
    return registry.get_or_create(_project_path(project))


def _changes_payload(session: EditSession) -> dict:
    return {
        "project": str(session.project_root),
        "visible": session.ledger.are_changes_visible,
        "changes": [
            {**c.model_dump(mode="json"), "relative_path": _relative_or_absolute(session, c.file_path)}
            for c in session.ledger.list()
        ],
    }


def _relative_or_absolute(session: EditSession, file_path: str) -> str:
    try:
        return session.relative(session.resolve(file_path))
    except ValueError:
        return file_path


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


# ── WebSocket broadcast ───────────────────────────────────────────────────

async def _fanout_ws_message(message: str, label: str) -> None:
    """Send a pre-serialised message to all connected WebSocket clients."""
    if not _ws_clients:
        return

    disconnected: set[WebSocket] = set()
    for ws in tuple(_ws_clients):
        try:
            logger.debug("WS send | %s", label)
            await ws.send_text(message)
        except Exception as exc:
            logger.warning("WS send failed | %s | %s", label, exc)
            disconnected.add(ws)
    if disconnected:
        _ws_clients.difference_update(disconnected)


async def _enqueue_ws_message(message: str, label: str) -> None:
    """Queue a message for ordered WebSocket delivery (fallback to direct send)."""
    if not _ws_clients:
        return
    if _ws_outbox is None:
        await _fanout_ws_message(message, label)
        return
    await _ws_outbox.put((label, message))


async def _broadcast_pump() -> None:
    """Serialize WebSocket sends so message ordering is preserved."""
    while True:
        label, message = await _ws_outbox.get()
        try:
            await _fanout_ws_message(message, label)
        finally:
            _ws_outbox.task_done()


async def _broadcast_raw(event_type: str, data: Any) -> None:
    message = json.dumps({"type": event_type, "data": data, "ts": datetime.now(UTC).isoformat()})
    await _enqueue_ws_message(message, f"raw:{event_type}")


def _consume_channel(channel: EventChannel, project: str, loop: asyncio.AbstractEventLoop) -> list[dict]:
    """Drain *channel* until ``done``, recording and forwarding every event.

    Runs in a worker thread so the producer's bounded queue keeps moving.
    """
    events: list[dict] = []
    for event in channel:
        payload = event.to_dict()
        events.append(payload)
        _event_history.append({**payload, "project": project, "ts": event.timestamp})
        message = json.dumps({"type": "event", "project": project, "data": payload}, default=str)
        asyncio.run_coroutine_threadsafe(
            _enqueue_ws_message(message, f"event:{payload['type']}"), loop
        )
    return events


# ── Lifespan ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _ws_outbox, _ws_pump_task
    _ws_outbox = asyncio.Queue()
    _ws_pump_task = asyncio.create_task(_broadcast_pump())
    logger.info("Web server started")
    yield
    _ws_pump_task.cancel()
    with suppress(asyncio.CancelledError):
        await _ws_pump_task
    _ws_pump_task = None
    _ws_outbox = None
    logger.info("Lifespan cleanup complete")


app = FastAPI(title="Atelier", version=__version__, lifespan=lifespan)


# ── Change review ─────────────────────────────────────────────────────────

@app.get("/api/changes")
async def get_changes(project: str = ""):
    try:
        session = _session_for(project)
    except (ValueError, FileNotFoundError) as exc:
        return _error(str(exc))
    return _changes_payload(session)


@app.post("/api/changes/toggle")
async def toggle_changes(req: ToggleRequest):
    try:
        session = _session_for(req.project)
    except (ValueError, FileNotFoundError) as exc:
        return _error(str(exc))
    if str(session.project_root) in _running:
        return _error("A run is in progress for this project", status_code=409)
    result = session.ledger.toggle(req.visible)
    return {**result, **_changes_payload(session)}


@app.post("/api/changes/validate")
async def validate_changes(req: ProjectRequest):
    return await _finish_review(req.project, "validate")


@app.post("/api/changes/reject")
async def reject_changes(req: ProjectRequest):
    return await _finish_review(req.project, "reject")


@app.post("/api/changes/clear")
async def clear_changes(req: ProjectRequest):
    return await _finish_review(req.project, "clear")


async def _finish_review(project: str, action: str):
    """Apply validate / reject / clear and close the project's session."""
    try:
        session = _session_for(project)
    except (ValueError, FileNotFoundError) as exc:
        return _error(str(exc))
    key = str(session.project_root)
    if key in _running:
        return _error("A run is in progress for this project", status_code=409)

    count = len(session.ledger)
    getattr(session.ledger, action)()
    registry.close(key)
    logger.info("Changes %s | project: %s | records: %d", action, key, count)
    await _broadcast_raw("changes", {"project": key, "action": action, "count": count})
    return {"success": True, "action": action, "count": count}


# ── Runs ──────────────────────────────────────────────────────────────────

async def _drive(channel: EventChannel, key: str, work) -> tuple[Any, list[dict]]:
    """Await *work* while a worker thread drains *channel*.

    If *work* fails before its producer closes the stream, the channel is
    closed here so the consumer thread always finishes.
    """
    loop = asyncio.get_running_loop()
    consumer = asyncio.create_task(asyncio.to_thread(_consume_channel, channel, key, loop))
    try:
        result = await work
    except Exception:
        logger.exception("Run failed before closing its stream | project: %s", key)
        if not channel.closed:
            channel.done()
        await consumer
        raise
    return result, await consumer


@app.post("/api/run")
async def run(req: RunRequest):
    if not req.request.strip():
        return _error("Request must not be empty")
    try:
        session = _session_for(req.project)
    except (ValueError, FileNotFoundError) as exc:
        return _error(str(exc))

    key = str(session.project_root)
    if key in _running:
        return _error("A run is already in progress for this project", status_code=409)

    _running.add(key)
    try:
        channel = EventChannel()
        await _broadcast_raw("status", {"project": key, "phase": "planning", "request": req.request})
        final, events = await _drive(channel, key, run_request(req.request, session, channel))
    finally:
        _running.discard(key)

    await _broadcast_raw("status", {"project": key, "phase": final.phase.value})
    return {
        "phase": final.phase.value,
        "stop_reason": final.stop_reason,
        "error": final.error_message,
        "progress": final.get_progress_summary(),
        "retry_suggestions": final.retry_suggestions,
        "events": events,
        **_changes_payload(session),
    }


# ── Chat ──────────────────────────────────────────────────────────────────

@app.post("/api/chat")
async def chat(req: ChatRequest):
    if not req.messages or req.messages[-1].role != "user":
        return _error("The last message must come from the user")
    if req.conversation_id:
        try:
            check_conversation_id(req.conversation_id)
        except ValueError as exc:
            return _error(str(exc))
    try:
        session = _session_for(req.project)
    except (ValueError, FileNotFoundError) as exc:
        return _error(str(exc))

    key = str(session.project_root)
    if key in _running:
        return _error("A run is already in progress for this project", status_code=409)

    _running.add(key)
    try:
        channel = EventChannel()
        agent = ChatAgent(session, channel, store=conversation_store)
        _active_chats[key] = agent
        await _broadcast_raw("status", {"project": key, "phase": "chatting"})
        outcome, events = await _drive(channel, key, run_chat(agent, req.messages, req.conversation_id))
    finally:
        _active_chats.pop(key, None)
        _running.discard(key)

    await _broadcast_raw("status", {"project": key, "phase": "idle", "aborted": outcome.aborted})
    if outcome.success and not outcome.aborted:
        await _broadcast_raw("history", {"project": key, "conversation_id": outcome.conversation_id})
    return {**outcome.model_dump(), "events": events, **_changes_payload(session)}


@app.post("/api/chat/abort")
async def abort_chat(req: ProjectRequest):
    try:
        key = str(_session_for(req.project).project_root)
    except (ValueError, FileNotFoundError) as exc:
        return _error(str(exc))
    agent = _active_chats.get(key)
    if agent is None:
        return {"success": False, "error": "No chat in progress for this project"}
    agent.abort()
    return {"success": True}


# ── Conversation history ──────────────────────────────────────────────────

@app.get("/api/conversations")
async def list_conversations(project: str = ""):
    try:
        key = _project_path(project)
    except ValueError as exc:
        return _error(str(exc))
    conversations = conversation_store.list(key)
    return {
        "project": key,
        "conversations": [c.model_dump(mode="json") for c in conversations],
    }


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, project: str = ""):
    try:
        conversation = conversation_store.get(_project_path(project), conversation_id)
    except ValueError as exc:
        return _error(str(exc))
    if conversation is None:
        return _error("Conversation not found", status_code=404)
    return conversation.model_dump(mode="json")


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, project: str = ""):
    try:
        key = _project_path(project)
        deleted = conversation_store.delete(key, conversation_id)
    except ValueError as exc:
        return _error(str(exc))
    if not deleted:
        return _error("Conversation not found", status_code=404)
    await _broadcast_raw("history", {"project": key, "deleted": conversation_id})
    return {"success": True}


# ── Events ────────────────────────────────────────────────────────────────

@app.get("/api/events")
async def get_events(limit: int = 200):
    """Return recent run events."""
    items = list(_event_history)
    return {"events": items[-limit:] if limit > 0 else []}


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    _ws_clients.add(ws)
    logger.info("WebSocket client connected (%d total)", len(_ws_clients))

    try:
        for evt in list(_event_history)[-50:]:
            await ws.send_text(json.dumps({"type": "event", "data": evt}, default=str))
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        _ws_clients.discard(ws)
        logger.info("WebSocket client disconnected (%d remaining)", len(_ws_clients))
