"""Tests for the FastAPI web server endpoints."""

import asyncio
import contextlib
import json
from unittest.mock import patch

import pytest

from atelier.core.ledger import ChangeType
from atelier.core.session import registry
from atelier.core.state import OrchestratorState, RunPhase


@pytest.fixture
def project(tmp_path):
    (tmp_path / "a.txt").write_text("orig")
    yield tmp_path
    registry.close(tmp_path)


async def _fake_run_request(user_request, session, channel, **_):
    """Stands in for the orchestrator: edits one file and narrates it."""
    channel.text("working")
    target = session.project_root / "a.txt"
    backup = str(target) + ".backup"
    target.with_name("a.txt.backup").write_text(target.read_text())
    target.write_text("new")
    session.ledger.record(ChangeType.MODIFY, target, backup)
    channel.text("🎉 **All tasks completed.**")
    channel.done()
    return OrchestratorState(user_request=user_request, phase=RunPhase.COMPLETED)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    with patch("atelier.web.server.run_request", new=_fake_run_request):
        from fastapi.testclient import TestClient

        from atelier.web.server import app
        with TestClient(app) as c:
            yield c


class TestChangesEndpoints:
    def test_empty_ledger(self, client, project):
        resp = client.get("/api/changes", params={"project": str(project)})
        assert resp.status_code == 200
        data = resp.json()
        assert data["visible"] is True
        assert data["changes"] == []

    def test_unknown_project(self, client, tmp_path):
        resp = client.get("/api/changes", params={"project": str(tmp_path / "missing")})
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_toggle_validate_flow(self, client, project):
        client.post("/api/run", json={"project": str(project), "request": "edit a"})

        resp = client.post("/api/changes/toggle", json={"project": str(project), "visible": False})
        assert resp.json()["visible"] is False
        assert (project / "a.txt").read_text() == "orig"

        resp = client.post("/api/changes/validate", json={"project": str(project)})
        assert resp.json() == {"success": True, "action": "validate", "count": 1}
        assert (project / "a.txt").read_text() == "new"
        assert not (project / "a.txt.backup").exists()

    def test_reject_restores(self, client, project):
        client.post("/api/run", json={"project": str(project), "request": "edit a"})
        resp = client.post("/api/changes/reject", json={"project": str(project)})
        assert resp.json()["count"] == 1
        assert (project / "a.txt").read_text() == "orig"

    def test_clear_keeps_disk(self, client, project):
        client.post("/api/run", json={"project": str(project), "request": "edit a"})
        client.post("/api/changes/clear", json={"project": str(project)})
        assert (project / "a.txt").read_text() == "new"
        data = client.get("/api/changes", params={"project": str(project)}).json()
        assert data["changes"] == []


class TestRunEndpoint:
    def test_run_returns_events_and_changes(self, client, project):
        resp = client.post("/api/run", json={"project": str(project), "request": "edit a"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["phase"] == "completed"
        assert [e["type"] for e in data["events"]] == ["text", "text", "done"]
        assert data["changes"][0]["type"] == "modify"
        assert data["changes"][0]["relative_path"] == "a.txt"

    def test_empty_request_rejected(self, client, project):
        resp = client.post("/api/run", json={"project": str(project), "request": "  "})
        assert resp.status_code == 400


class TestEventsEndpoint:
    def test_events_returns_list(self, client):
        resp = client.get("/api/events")
        assert resp.status_code == 200
        assert isinstance(resp.json()["events"], list)

    def test_events_recorded_from_runs(self, client, project):
        client.post("/api/run", json={"project": str(project), "request": "edit a"})
        events = client.get("/api/events", params={"limit": 2}).json()["events"]
        assert len(events) == 2
        assert events[-1]["type"] == "done"
        assert events[-1]["project"] == str(project.resolve())


class TestWebSocketBroadcastPump:
    @pytest.mark.asyncio
    async def test_broadcast_pump_preserves_enqueue_order(self):
        import atelier.web.server as srv

        class FakeWS:
            def __init__(self):
                self.sent: list[str] = []
                self._busy = False

            async def send_text(self, message: str):
                if self._busy:
                    raise RuntimeError("concurrent send detected")
                self._busy = True
                try:
                    await asyncio.sleep(0)
                    self.sent.append(message)
                finally:
                    self._busy = False

        fake_ws = FakeWS()
        orig_clients = srv._ws_clients
        orig_outbox = srv._ws_outbox

        srv._ws_clients = {fake_ws}
        srv._ws_outbox = asyncio.Queue()
        pump_task = asyncio.create_task(srv._broadcast_pump())
        try:
            await srv._enqueue_ws_message(json.dumps({"type": "event", "data": {"n": 1}}), "one")
            await srv._enqueue_ws_message(json.dumps({"type": "event", "data": {"n": 2}}), "two")
            await srv._broadcast_raw("status", {"phase": "completed"})

            await asyncio.wait_for(srv._ws_outbox.join(), timeout=1.0)

            assert [json.loads(m)["type"] for m in fake_ws.sent] == ["event", "event", "status"]
            assert json.loads(fake_ws.sent[0])["data"]["n"] == 1
            assert json.loads(fake_ws.sent[1])["data"]["n"] == 2
        finally:
            pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump_task
            srv._ws_clients = orig_clients
            srv._ws_outbox = orig_outbox


async def _exploding_run_request(user_request, session, channel, **_):
    """Fails before the orchestrator could ever close the stream."""
    raise RuntimeError("could not build orchestrator")


class TestRunFailure:
    def test_failed_run_releases_project(self, project):
        from fastapi.testclient import TestClient

        from atelier.web.server import app
        with patch("atelier.web.server.run_request", new=_exploding_run_request):
            with TestClient(app, raise_server_exceptions=False) as c:
                resp = c.post("/api/run", json={"project": str(project), "request": "edit a"})
                assert resp.status_code == 500

                again = c.post("/api/run", json={"project": str(project), "request": "edit a"})
                assert again.status_code == 500

                events = c.get("/api/events").json()["events"]
        mine = [e["type"] for e in events if e["project"] == str(project.resolve())]
        assert mine[-2:] == ["done", "done"]

    @pytest.mark.asyncio
    async def test_run_request_closes_channel_when_setup_fails(self, project):
        from atelier.core.events import EventChannel
        from atelier.core.orchestrator import run_request
        from atelier.core.session import EditSession

        channel = EventChannel(maxsize=0)
        with pytest.raises(TypeError):
            await run_request("x", EditSession(project), channel, unexpected=True)
        assert channel.closed is True


# ── Chat ──────────────────────────────────────────────────────────────────

async def _fake_run_chat(agent, messages, conversation_id=None):
    """Stands in for the chat model: answers once and saves the conversation."""
    from atelier.agents.chat import ChatOutcome
    from atelier.core.history import ChatMessage, Conversation

    agent.channel.text("hello back")
    agent.channel.done()
    cid = conversation_id or "conv-1"
    agent.store.save(
        agent.session.project_root,
        Conversation(
            id=cid,
            title="Greeting",
            messages=[*messages, ChatMessage(role="assistant", content="hello back")],
        ),
    )
    return ChatOutcome(success=True, conversation_id=cid, reply="hello back")


@pytest.fixture
def chat_client(tmp_path_factory):
    from atelier.core.history import ConversationStore

    store = ConversationStore(tmp_path_factory.mktemp("history"))
    with patch("atelier.web.server.run_chat", new=_fake_run_chat), \
            patch("atelier.web.server.conversation_store", new=store):
        from fastapi.testclient import TestClient

        from atelier.web.server import app
        with TestClient(app) as c:
            yield c


class TestChatEndpoints:
    def test_chat_streams_and_saves(self, chat_client, project):
        resp = chat_client.post("/api/chat", json={
            "project": str(project),
            "messages": [{"role": "user", "content": "hi"}],
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["reply"] == "hello back"
        assert data["conversation_id"] == "conv-1"
        assert [e["type"] for e in data["events"]] == ["text", "done"]
        assert data["changes"] == []

        listed = chat_client.get("/api/conversations", params={"project": str(project)}).json()
        assert [c["title"] for c in listed["conversations"]] == ["Greeting"]

        one = chat_client.get("/api/conversations/conv-1", params={"project": str(project)}).json()
        assert [m["role"] for m in one["messages"]] == ["user", "assistant"]

    def test_last_message_must_be_from_user(self, chat_client, project):
        resp = chat_client.post("/api/chat", json={
            "project": str(project),
            "messages": [{"role": "assistant", "content": "hello"}],
        })
        assert resp.status_code == 400

    def test_path_like_conversation_id_rejected(self, chat_client, project):
        resp = chat_client.post("/api/chat", json={
            "project": str(project),
            "messages": [{"role": "user", "content": "hi"}],
            "conversation_id": "../../etc",
        })
        assert resp.status_code == 400

    def test_delete_conversation(self, chat_client, project):
        chat_client.post("/api/chat", json={
            "project": str(project),
            "messages": [{"role": "user", "content": "hi"}],
        })
        resp = chat_client.delete("/api/conversations/conv-1", params={"project": str(project)})
        assert resp.json() == {"success": True}
        missing = chat_client.delete("/api/conversations/conv-1", params={"project": str(project)})
        assert missing.status_code == 404

    def test_abort_without_chat(self, chat_client, project):
        resp = chat_client.post("/api/chat/abort", json={"project": str(project)})
        assert resp.json()["success"] is False
