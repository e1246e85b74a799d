"""Tests for the plan coordinator and the step verifier call sites."""

from unittest.mock import MagicMock

from langchain_core.messages import SystemMessage

from atelier.agents.coordinator import PlanCoordinator
from atelier.agents.verifier import MAX_LOG_CHARS, StepVerifier
from atelier.core.state import NextAction, Plan, PlanStep, Verification


def _structured_llm(result) -> tuple[MagicMock, MagicMock]:
    llm = MagicMock()
    structured = MagicMock()
    structured.invoke.return_value = result
    llm.with_structured_output.return_value = structured
    return llm, structured


class TestPlanCoordinator:
    def test_returns_plan_and_uses_schema(self):
        plan = Plan(goal="Add docs", steps=[PlanStep(id="1", description="Write README")])
        llm, structured = _structured_llm(plan)

        result = PlanCoordinator(llm=llm).create_plan("Add docs", "/work/proj")

        assert result == plan
        llm.with_structured_output.assert_called_once_with(Plan)
        system = structured.invoke.call_args.args[0][0]
        assert isinstance(system, SystemMessage)
        assert "/work/proj" in system.content
        assert "Add docs" in system.content

    def test_dict_output_is_validated(self):
        llm, _ = _structured_llm({
            "goal": "g",
            "steps": [{"id": "1", "description": "run tests", "type": "command"}],
        })
        plan = PlanCoordinator(llm=llm).create_plan("g", "/p")
        assert isinstance(plan, Plan)
        assert plan.steps[0].type == "command"


class TestStepVerifier:
    def test_returns_verification(self):
        verdict = Verification(success=False, feedback="file missing", next_action=NextAction.RETRY)
        llm, structured = _structured_llm(verdict)

        result = StepVerifier(llm=llm).verify("Create a.txt", "[tool] create_file -> error")

        assert result.next_action == NextAction.RETRY
        llm.with_structured_output.assert_called_once_with(Verification)
        system = structured.invoke.call_args.args[0][0]
        assert "Create a.txt" in system.content
        assert "[tool] create_file -> error" in system.content

    def test_long_logs_keep_the_tail(self):
        llm, structured = _structured_llm(Verification(success=True))
        log = "a" * MAX_LOG_CHARS + "TAIL-MARKER"

        StepVerifier(llm=llm).verify("step", log)

        system = structured.invoke.call_args.args[0][0].content
        assert "TAIL-MARKER" in system
        assert "a" * (MAX_LOG_CHARS + 1) not in system

    def test_empty_log(self):
        llm, structured = _structured_llm({"success": True})
        result = StepVerifier(llm=llm).verify("step", "")
        assert result.success is True
        assert "no output" in structured.invoke.call_args.args[0][0].content
