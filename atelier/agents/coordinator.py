"""Plan coordinator — turns a user request into an ordered list of typed steps."""

from __future__ import annotations

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from atelier.agents.models import get_llm, load_system_prompt
from atelier.core.logging import get_logger
from atelier.core.state import Plan

logger = get_logger("agents.coordinator")


class PlanCoordinator:
    """Asks the coordinator model for a structured :class:`Plan`."""

    def __init__(self, llm: BaseChatModel | None = None):
        self._llm = llm

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = get_llm("coordinator")
        return self._llm

    def create_plan(self, user_request: str, project_path: str) -> Plan:
        logger.info("Creating plan for: %s", user_request[:100])
        system = load_system_prompt("coordinator", project_path=project_path, user_request=user_request)
        structured = self.llm.with_structured_output(Plan)
        result = structured.invoke([
            SystemMessage(content=system),
            HumanMessage(content="Generate the implementation plan."),
        ])
        plan = result if isinstance(result, Plan) else Plan.model_validate(result)
        logger.info("Plan ready | goal=%s | %d step(s)", plan.goal[:80], len(plan.steps))
        return plan
