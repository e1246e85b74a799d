"""LangGraph orchestrator for the plan → execute → verify loop.

    plan ──► execute ──► verify ──► execute (next step) ...
      │         │           │
      └─────────┴───────────┴──► finish ──► END

Steps run strictly in sequence; step i+1 never starts before step i has
been executed and verified.  Every terminal outcome (completed, aborted,
failed) is narrated once by ``finish`` and the stream is then closed with a
single ``done`` event.
"""

from __future__ import annotations

import asyncio

from langgraph.graph import END, StateGraph

from atelier.agents.coordinator import PlanCoordinator
from atelier.agents.executor import StepExecutor
from atelier.agents.verifier import StepVerifier
from atelier.core.config import get_settings
from atelier.core.events import EventChannel
from atelier.core.logging import get_logger
from atelier.core.session import EditSession
from atelier.core.state import (
    NextAction,
    OrchestratorState,
    RunPhase,
    StepOutcome,
)
from atelier.tools.registry import ToolDispatcher

logger = get_logger("core.orchestrator")

# Step results kept in the conversation history are cut to their tail.
HISTORY_RESULT_MAX_CHARS = 4_000


def _clip(transcript: str, limit: int = HISTORY_RESULT_MAX_CHARS) -> str:
    if len(transcript) <= limit:
        return transcript
    return "...\n" + transcript[-limit:]


def _route_after_plan(state: OrchestratorState) -> str:
    if state.is_terminal:
        return "finish"
    return "execute"


def _route_after_execute(state: OrchestratorState) -> str:
    if state.is_terminal:
        return "finish"
    return "verify"


def _route_after_verify(state: OrchestratorState) -> str:
    if state.is_terminal:
        return "finish"
    return "execute"


class Orchestrator:
    """Drives one editing session through the three-phase loop."""

    def __init__(
        self,
        session: EditSession,
        channel: EventChannel,
        coordinator: PlanCoordinator | None = None,
        executor: StepExecutor | None = None,
        verifier: StepVerifier | None = None,
        verification_policy: str | None = None,
    ):
        settings = get_settings()
        self.session = session
        self.channel = channel
        self.coordinator = coordinator or PlanCoordinator()
        self.executor = executor or StepExecutor(ToolDispatcher(session, channel), channel)
        self.verifier = verifier or StepVerifier()
        self.verification_policy = verification_policy or settings.verification_policy

    # ── Nodes ────────────────────────────────────────────────────────────

    def plan_node(self, state: OrchestratorState) -> dict:
        self.channel.text("🧠 **Coordinator:** Analyzing request and generating plan...\n")
        try:
            plan = self.coordinator.create_plan(state.user_request, state.project_root)
        except Exception as exc:
            logger.exception("Planning failed")
            return {
                "phase": RunPhase.FAILED,
                "stop_reason": "planning_failed",
                "error_message": f"Error creating plan: {exc}",
            }

        self.channel.text("📋 **Plan Created:**\n")
        for step in plan.steps:
            self.channel.text(f"- [ ] {step.description}\n")
        self.channel.text("\n---\n")

        if not plan.steps:
            return {"plan": plan, "phase": RunPhase.COMPLETED, "stop_reason": "empty_plan"}
        return {"plan": plan, "phase": RunPhase.EXECUTING, "step_index": 0}

    def execute_node(self, state: OrchestratorState) -> dict:
        step = state.current_step
        total = len(state.plan.steps)
        self.channel.text(f"\n### ▶️ Executing Step {state.step_index + 1}/{total}: {step.description}\n")
        logger.info("Executing step %s (%d/%d)", step.id, state.step_index + 1, total)

        try:
            transcript = self.executor.run_step(step, list(self.session.history))
        except Exception as exc:
            logger.exception("Step %s failed", step.id)
            return {
                "phase": RunPhase.FAILED,
                "stop_reason": "execution_failed",
                "error_message": f"Execution failed at step {step.id}: {exc}",
                "outcomes": [*state.outcomes, StepOutcome(step_id=step.id)],
            }

        self.session.add_history(
            "system", f"Completed step: {step.description}. Result: {_clip(transcript)}"
        )
        return {"last_transcript": transcript, "phase": RunPhase.VERIFYING}

    def verify_node(self, state: OrchestratorState) -> dict:
        step = state.current_step
        outcome = StepOutcome(step_id=step.id, transcript=state.last_transcript)
        self.channel.text("\n🕵️ **Verifying...**\n")

        try:
            verification = self.verifier.verify(step.description, state.last_transcript)
        except Exception as exc:
            logger.warning("Verification of step %s failed: %s", step.id, exc)
            outcome.verification_error = str(exc)
            outcomes = [*state.outcomes, outcome]
            if self.verification_policy == "fail_closed":
                return {
                    "outcomes": outcomes,
                    "phase": RunPhase.ABORTED,
                    "stop_reason": "verification_error",
                    "error_message": f"Verification unavailable: {exc}",
                }
            self.channel.text(f"(Verification skipped due to error: {exc})\n")
            return self._advance(state, outcomes)

        outcome.verification = verification
        outcomes = [*state.outcomes, outcome]

        if verification.success:
            self.channel.text(f"✅ **Verified:** {verification.feedback}\n")
            return self._advance(state, outcomes)

        self.channel.text(f"⚠️ **Verification Issue:** {verification.feedback}\n")
        if verification.next_action == NextAction.ABORT:
            return {
                "outcomes": outcomes,
                "phase": RunPhase.ABORTED,
                "stop_reason": "verifier_abort",
                "error_message": verification.feedback,
            }
        update = self._advance(state, outcomes)
        if verification.next_action == NextAction.RETRY:
            self.channel.text("👉 **Action Required:** Agent suggests retrying/fixing this step.\n")
            update["retry_suggestions"] = [*state.retry_suggestions, step.id]
        return update

    def _advance(self, state: OrchestratorState, outcomes: list[StepOutcome]) -> dict:
        self.channel.text("\n---\n")
        next_index = state.step_index + 1
        if next_index >= len(state.plan.steps):
            return {"outcomes": outcomes, "phase": RunPhase.COMPLETED, "step_index": next_index}
        return {"outcomes": outcomes, "phase": RunPhase.EXECUTING, "step_index": next_index}

    def finish_node(self, state: OrchestratorState) -> dict:
        if state.phase == RunPhase.COMPLETED:
            self.channel.text("\n🎉 **All tasks completed.**\n")
        elif state.phase == RunPhase.ABORTED:
            total = len(state.plan.steps) if state.plan else 0
            self.channel.text(
                f"\n🛑 **Aborting Plan** after step {state.step_index + 1}/{total}: "
                f"{state.error_message or state.stop_reason}\n"
            )
        else:
            self.channel.text(f"\n❌ **{state.error_message or 'Run failed.'}**\n")
        return {"stop_reason": state.stop_reason or state.phase.value}

    # ── Graph ────────────────────────────────────────────────────────────

    def build_graph(self) -> StateGraph:
        graph = StateGraph(OrchestratorState)

        graph.add_node("plan", self.plan_node)
        graph.add_node("execute", self.execute_node)
        graph.add_node("verify", self.verify_node)
        graph.add_node("finish", self.finish_node)

        graph.set_entry_point("plan")
        graph.add_conditional_edges("plan", _route_after_plan, {"execute": "execute", "finish": "finish"})
        graph.add_conditional_edges("execute", _route_after_execute, {"verify": "verify", "finish": "finish"})
        graph.add_conditional_edges("verify", _route_after_verify, {"execute": "execute", "finish": "finish"})
        graph.add_edge("finish", END)
        return graph

    def compile_graph(self):
        return self.build_graph().compile()

    def run(self, user_request: str) -> OrchestratorState:
        """Run the full loop for one request. Always closes the stream with ``done``."""
        settings = get_settings()
        initial = OrchestratorState(
            user_request=user_request,
            project_root=str(self.session.project_root),
        )
        logger.info("Starting run | request: %s | project: %s", user_request[:100], initial.project_root)

        try:
            if not self.session.ledger.are_changes_visible:
                self.channel.text("ℹ️ Showing pending changes again before editing.\n")
                self.session.ledger.toggle(True)
            self.session.add_history("user", user_request)

            compiled = self.compile_graph()
            final_dict = compiled.invoke(
                initial.model_dump(),
                config={"recursion_limit": settings.graph_recursion_limit},
            )
            final = OrchestratorState(**final_dict)
        except Exception as exc:
            logger.exception("Run crashed")
            self.channel.text(f"\n❌ **Run failed:** {exc}\n")
            final = initial.model_copy(update={
                "phase": RunPhase.FAILED,
                "stop_reason": "internal_error",
                "error_message": str(exc),
            })
        finally:
            self.channel.done()

        logger.info(
            "Run finished | phase: %s | steps run: %d | pending changes: %d | stop_reason: %s",
            final.phase.value,
            len(final.outcomes),
            len(self.session.ledger),
            final.stop_reason or "none",
        )
        return final


async def run_request(
    user_request: str,
    session: EditSession,
    channel: EventChannel,
    **collaborators,
) -> OrchestratorState:
    """Async entry point: runs the orchestrator in a worker thread."""
    try:
        orchestrator = Orchestrator(session, channel, **collaborators)
    except Exception:
        channel.done()
        raise
    return await asyncio.to_thread(orchestrator.run, user_request)
