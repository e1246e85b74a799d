"""Step verifier — classifies a step transcript as success or failure."""

from __future__ import annotations

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from atelier.agents.models import get_llm, load_system_prompt
from atelier.core.logging import get_logger
from atelier.core.state import Verification

logger = get_logger("agents.verifier")

# The verifier only needs the tail of very long transcripts.
MAX_LOG_CHARS = 12_000


class StepVerifier:
    """Asks the verifier model for ``{success, feedback, next_action}``."""

    def __init__(self, llm: BaseChatModel | None = None):
        self._llm = llm

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = get_llm("verifier")
        return self._llm

    def verify(self, step_description: str, execution_log: str) -> Verification:
        logger.info("Verifying step: %s", step_description[:100])
        if len(execution_log) > MAX_LOG_CHARS:
            execution_log = "...\n" + execution_log[-MAX_LOG_CHARS:]
        system = load_system_prompt(
            "verifier",
            step_description=step_description,
            execution_log=execution_log or "(the executor produced no output)",
        )
        structured = self.llm.with_structured_output(Verification)
        result = structured.invoke([
            SystemMessage(content=system),
            HumanMessage(content="Verify the execution."),
        ])
        verification = result if isinstance(result, Verification) else Verification.model_validate(result)
        logger.info(
            "Verdict | success=%s | next=%s", verification.success, verification.next_action.value
        )
        return verification
