"""Tests for the plan → execute → verify LangGraph orchestrator."""

from unittest.mock import MagicMock

import pytest

from atelier.core.events import EventChannel, EventKind
from atelier.core.orchestrator import (
    HISTORY_RESULT_MAX_CHARS,
    Orchestrator,
    _route_after_execute,
    _route_after_plan,
    _route_after_verify,
    run_request,
)
from atelier.core.session import EditSession
from atelier.core.state import (
    NextAction,
    OrchestratorState,
    Plan,
    PlanStep,
    RunPhase,
    Verification,
)


def _plan(*descriptions: str) -> Plan:
    return Plan(
        goal="test goal",
        steps=[PlanStep(id=f"step-{i + 1}", description=d) for i, d in enumerate(descriptions)],
    )


def _collaborators(plan, verdicts=None, transcript="did it"):
    coordinator = MagicMock()
    coordinator.create_plan.return_value = plan
    executor = MagicMock()
    executor.run_step.return_value = transcript
    verifier = MagicMock()
    verifier.verify.side_effect = verdicts or [Verification(success=True, feedback="ok")] * len(plan.steps)
    return coordinator, executor, verifier


def _texts(channel: EventChannel) -> list[str]:
    return [e["content"] for e in channel.history(limit=10_000) if e["type"] == "text"]


@pytest.fixture
def session(tmp_path):
    return EditSession(tmp_path)


@pytest.fixture
def channel():
    return EventChannel(maxsize=0)


class TestRouting:
    def test_route_after_plan(self):
        assert _route_after_plan(OrchestratorState(phase=RunPhase.EXECUTING)) == "execute"
        assert _route_after_plan(OrchestratorState(phase=RunPhase.FAILED)) == "finish"
        assert _route_after_plan(OrchestratorState(phase=RunPhase.COMPLETED)) == "finish"

    def test_route_after_execute(self):
        assert _route_after_execute(OrchestratorState(phase=RunPhase.VERIFYING)) == "verify"
        assert _route_after_execute(OrchestratorState(phase=RunPhase.FAILED)) == "finish"

    def test_route_after_verify(self):
        assert _route_after_verify(OrchestratorState(phase=RunPhase.EXECUTING)) == "execute"
        assert _route_after_verify(OrchestratorState(phase=RunPhase.ABORTED)) == "finish"
        assert _route_after_verify(OrchestratorState(phase=RunPhase.COMPLETED)) == "finish"


class TestRun:
    def test_all_steps_verified(self, session, channel):
        coordinator, executor, verifier = _collaborators(_plan("one", "two"))
        orch = Orchestrator(session, channel, coordinator, executor, verifier)

        final = orch.run("do two things")

        assert final.phase == RunPhase.COMPLETED
        assert executor.run_step.call_count == 2
        assert [c.args[0].id for c in executor.run_step.call_args_list] == ["step-1", "step-2"]
        assert [o.step_id for o in final.outcomes] == ["step-1", "step-2"]

        events = channel.drain()
        assert events[-1].kind == EventKind.DONE
        assert sum(1 for e in events if e.kind == EventKind.DONE) == 1
        assert "All tasks completed" in events[-2].content

    def test_abort_after_first_step_stops_the_plan(self, session, channel):
        coordinator, executor, verifier = _collaborators(
            _plan("one", "two"),
            verdicts=[Verification(success=False, feedback="broken build", next_action=NextAction.ABORT)],
        )
        orch = Orchestrator(session, channel, coordinator, executor, verifier)

        final = orch.run("do two things")

        assert final.phase == RunPhase.ABORTED
        assert final.stop_reason == "verifier_abort"
        assert executor.run_step.call_count == 1
        assert verifier.verify.call_count == 1

        events = channel.drain()
        assert events[-1].kind == EventKind.DONE
        notice = events[-2].content
        assert "Aborting Plan" in notice
        assert "broken build" in notice
        texts = " ".join(e.content for e in events if e.kind == EventKind.TEXT)
        assert "All tasks completed" not in texts
        assert "Step 2/2" not in texts

    def test_retry_is_surfaced_but_not_looped(self, session, channel):
        coordinator, executor, verifier = _collaborators(
            _plan("one", "two"),
            verdicts=[
                Verification(success=False, feedback="tests fail", next_action=NextAction.RETRY),
                Verification(success=True),
            ],
        )
        final = Orchestrator(session, channel, coordinator, executor, verifier).run("req")

        assert final.phase == RunPhase.COMPLETED
        assert final.retry_suggestions == ["step-1"]
        assert executor.run_step.call_count == 2
        assert "Action Required" in " ".join(_texts(channel))

    def test_failed_verification_with_proceed_advances(self, session, channel):
        coordinator, executor, verifier = _collaborators(
            _plan("one", "two"),
            verdicts=[
                Verification(success=False, feedback="minor", next_action=NextAction.PROCEED),
                Verification(success=True),
            ],
        )
        final = Orchestrator(session, channel, coordinator, executor, verifier).run("req")
        assert final.phase == RunPhase.COMPLETED
        assert final.retry_suggestions == []

    def test_planning_failure_is_terminal(self, session, channel):
        coordinator, executor, verifier = _collaborators(_plan("one"))
        coordinator.create_plan.side_effect = ValueError("Missing OPENAI_API_KEY")

        final = Orchestrator(session, channel, coordinator, executor, verifier).run("req")

        assert final.phase == RunPhase.FAILED
        assert final.stop_reason == "planning_failed"
        executor.run_step.assert_not_called()
        events = channel.drain()
        assert "Missing OPENAI_API_KEY" in events[-2].content
        assert events[-1].kind == EventKind.DONE

    def test_empty_plan_completes(self, session, channel):
        coordinator, executor, verifier = _collaborators(_plan())
        final = Orchestrator(session, channel, coordinator, executor, verifier).run("req")
        assert final.phase == RunPhase.COMPLETED
        executor.run_step.assert_not_called()

    def test_execution_failure_halts_plan(self, session, channel):
        coordinator, executor, verifier = _collaborators(_plan("one", "two"))
        executor.run_step.side_effect = RuntimeError("model crashed")

        final = Orchestrator(session, channel, coordinator, executor, verifier).run("req")

        assert final.phase == RunPhase.FAILED
        assert final.stop_reason == "execution_failed"
        assert executor.run_step.call_count == 1
        verifier.verify.assert_not_called()

    def test_verifier_error_fail_open(self, session, channel):
        coordinator, executor, verifier = _collaborators(
            _plan("one", "two"), verdicts=[RuntimeError("verifier down"), Verification(success=True)]
        )
        orch = Orchestrator(session, channel, coordinator, executor, verifier, verification_policy="fail_open")

        final = orch.run("req")

        assert final.phase == RunPhase.COMPLETED
        assert executor.run_step.call_count == 2
        assert final.outcomes[0].verification_error == "verifier down"
        assert any("Verification skipped" in t for t in _texts(channel))

    def test_verifier_error_fail_closed(self, session, channel):
        coordinator, executor, verifier = _collaborators(
            _plan("one", "two"), verdicts=[RuntimeError("verifier down")]
        )
        orch = Orchestrator(session, channel, coordinator, executor, verifier, verification_policy="fail_closed")

        final = orch.run("req")

        assert final.phase == RunPhase.ABORTED
        assert final.stop_reason == "verification_error"
        assert executor.run_step.call_count == 1

    def test_history_carries_completed_steps(self, session, channel):
        coordinator, executor, verifier = _collaborators(_plan("one", "two"), transcript="wrote file")
        Orchestrator(session, channel, coordinator, executor, verifier).run("build it")

        assert session.history[0] == {"role": "user", "content": "build it"}
        second_call_history = executor.run_step.call_args_list[1].args[1]
        assert any("Completed step: one" in h["content"] for h in second_call_history)

    def test_long_step_results_are_clipped_in_history(self, session, channel):
        transcript = "head-" + "x" * (HISTORY_RESULT_MAX_CHARS * 2) + "-tail"
        coordinator, executor, verifier = _collaborators(_plan("one"), transcript=transcript)
        Orchestrator(session, channel, coordinator, executor, verifier).run("build it")

        entry = session.history[-1]["content"]
        assert entry.startswith("Completed step: one. Result: ...\n")
        assert entry.endswith("-tail")
        assert "head-" not in entry
        assert len(entry) < HISTORY_RESULT_MAX_CHARS + 100

    def test_hidden_changes_are_shown_before_running(self, session, channel):
        (session.project_root / "a.txt").write_text("new")
        backup = session.project_root / "a.txt.backup"
        backup.write_text("orig")
        session.ledger.record("modify", session.project_root / "a.txt", backup)
        session.ledger.toggle(False)

        coordinator, executor, verifier = _collaborators(_plan())
        Orchestrator(session, channel, coordinator, executor, verifier).run("req")

        assert session.ledger.are_changes_visible is True
        assert (session.project_root / "a.txt").read_text() == "new"


class TestRunRequest:
    @pytest.mark.asyncio
    async def test_async_entry_point(self, session, channel):
        coordinator, executor, verifier = _collaborators(_plan("one"))
        final = await run_request(
            "req", session, channel, coordinator=coordinator, executor=executor, verifier=verifier
        )
        assert final.phase == RunPhase.COMPLETED
        assert channel.closed is True
