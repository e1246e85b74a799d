"""LangGraph shared state and the structured objects exchanged with the models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class StepType(StrEnum):
    COMMAND = "command"
    CODE_CHANGE = "code_change"
    VERIFICATION = "verification"
    ANALYSIS = "analysis"


class PlanStep(BaseModel):
    """One unit of agent work, executed and verified on its own."""
    id: str = Field(description="Unique identifier for the step")
    description: str = Field(description="Clear description of what needs to be done in this step")
    reasoning: str = Field(default="", description="Why this step is necessary")
    type: StepType = Field(default=StepType.CODE_CHANGE, description="Type of action required")


class Plan(BaseModel):
    """The implementation plan structure."""
    goal: str = Field(description="The high-level goal of the user's request")
    steps: list[PlanStep] = Field(
        default_factory=list, description="Ordered list of steps to achieve the goal"
    )


class NextAction(StrEnum):
    PROCEED = "proceed"
    RETRY = "retry"
    ABORT = "abort"


class Verification(BaseModel):
    """The result of the verification step."""
    success: bool = Field(description="Whether the step was completed successfully")
    feedback: str = Field(default="", description="Critique or feedback for the executor")
    next_action: NextAction = Field(default=NextAction.PROCEED, description="What to do next")


class RunPhase(StrEnum):
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({RunPhase.COMPLETED, RunPhase.ABORTED, RunPhase.FAILED})


class StepOutcome(BaseModel):
    """What happened to one step, for the run summary."""
    step_id: str
    transcript: str = ""
    verification: Verification | None = None
    verification_error: str = ""


class OrchestratorState(BaseModel):
    """The complete state passed between LangGraph nodes."""

    user_request: str = ""
    project_root: str = ""

    plan: Plan | None = None
    step_index: int = 0
    phase: RunPhase = RunPhase.PLANNING

    last_transcript: str = ""
    outcomes: list[StepOutcome] = Field(default_factory=list)
    retry_suggestions: list[str] = Field(default_factory=list)

    stop_reason: str = ""
    error_message: str = ""

    @property
    def current_step(self) -> PlanStep | None:
        if self.plan is not None and 0 <= self.step_index < len(self.plan.steps):
            return self.plan.steps[self.step_index]
        return None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def get_progress_summary(self) -> str:
        total = len(self.plan.steps) if self.plan else 0
        current = self.current_step
        return (
            f"Phase: {self.phase.value} | "
            f"Progress: {len(self.outcomes)}/{total} steps run | "
            f"Current: {current.description if current else 'none'}"
        )
