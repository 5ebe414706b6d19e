from enum import Enum
from typing import Any, List, NamedTuple, Optional

from pydantic import BaseModel, Field

from kb_agent.domain.llm.provider import ToolChoice
from kb_agent.infrastructure.observability.logging import agent_logger


class Phase(str, Enum):
    """Stages of a system-mode run; SUMMARIZE is terminal"""
    EXPLORE = "EXPLORE"
    PRODUCE = "PRODUCE"
    SUMMARIZE = "SUMMARIZE"


_ORDER = {Phase.EXPLORE: 0, Phase.PRODUCE: 1, Phase.SUMMARIZE: 2}


class PhaseBudget(BaseModel):
    """Round and submission limits for one system-mode run"""
    max_iterations: int = Field(default=30, ge=1)
    search_budget: int = Field(default=10, ge=1, description="EXPLORE rounds before forcing PRODUCE")
    search_budget_grace: int = Field(default=6, ge=1, description="PRODUCE rounds tolerated with zero submissions")
    max_submits: int = Field(default=10, ge=0, description="0 disables the hard submission cap")
    soft_submit_limit: int = Field(default=5, ge=0)
    idle_rounds_to_exit: int = Field(default=3, ge=1)
    summarize_grace_rounds: int = Field(default=2, ge=1)


class PhaseTransition(NamedTuple):
    transitioned: bool
    phase: Phase
    reason: Optional[str] = None


class PhaseRouter:
    """Drives EXPLORE -> PRODUCE -> SUMMARIZE for autonomous runs"""

    def __init__(self, budget: Optional[PhaseBudget] = None, skip_produce: bool = False, session_id: str = ""):
        self.budget = budget or PhaseBudget()
        self.skip_produce = skip_produce
        self.session_id = session_id

        self.phase = Phase.EXPLORE
        self.phase_rounds = 0
        self.idle_rounds = 0
        self.total_iterations = 0
        self.total_submits = 0
        self.has_text_answer = False

    def tick(self):
        """Call once at the start of every iteration"""
        self.total_iterations += 1
        self.phase_rounds += 1

    def update(
        self,
        function_calls: Optional[List[Any]] = None,
        submit_count: int = 0,
        is_text_only: bool = False
    ) -> PhaseTransition:
        """Feed one round's outcome; may advance the phase"""

        self.total_submits += submit_count

        if self.phase != Phase.SUMMARIZE and self.total_iterations >= self.budget.max_iterations:
            return self._transition_to(Phase.SUMMARIZE, "iteration cap reached", is_text_only)

        if self.phase == Phase.EXPLORE:
            after_explore = Phase.SUMMARIZE if self.skip_produce else Phase.PRODUCE
            if submit_count > 0:
                return self._transition_to(after_explore, "first submission", is_text_only)
            if self.phase_rounds >= self.budget.search_budget:
                return self._transition_to(
                    after_explore,
                    f"search budget exhausted ({self.phase_rounds}/{self.budget.search_budget})",
                    is_text_only
                )
            if is_text_only:
                return self._transition_to(after_explore, "text reply while exploring", is_text_only)
            return PhaseTransition(False, self.phase)

        if self.phase == Phase.PRODUCE:
            if submit_count > 0:
                self.idle_rounds = 0
            else:
                self.idle_rounds += 1

            if self.budget.max_submits > 0 and self.total_submits >= self.budget.max_submits:
                return self._transition_to(
                    Phase.SUMMARIZE,
                    f"submission cap reached ({self.total_submits}/{self.budget.max_submits})",
                    is_text_only
                )
            if self.total_iterations >= self.budget.max_iterations - 1:
                return self._transition_to(Phase.SUMMARIZE, "iteration cap is one round away", is_text_only)
            if self.total_submits > 0 and self.idle_rounds >= self.budget.idle_rounds_to_exit:
                return self._transition_to(
                    Phase.SUMMARIZE, f"{self.idle_rounds} idle rounds after submitting", is_text_only
                )
            if is_text_only and self.total_submits >= self.budget.soft_submit_limit:
                return self._transition_to(
                    Phase.SUMMARIZE,
                    f"text reply after {self.total_submits} submissions",
                    is_text_only
                )
            if self.phase_rounds >= self.budget.search_budget_grace and self.total_submits == 0:
                return self._transition_to(
                    Phase.SUMMARIZE,
                    f"no submissions after {self.phase_rounds} produce rounds",
                    is_text_only
                )
            return PhaseTransition(False, self.phase)

        if is_text_only:
            self.has_text_answer = True
        return PhaseTransition(False, self.phase)

    def should_exit(self) -> bool:
        if self.total_iterations >= self.budget.max_iterations:
            return True
        if self.phase != Phase.SUMMARIZE:
            return False
        return self.has_text_answer or self.phase_rounds >= self.budget.summarize_grace_rounds

    def get_tool_choice(self) -> ToolChoice:
        if self.phase == Phase.EXPLORE:
            # Last exploring round lets the model answer in text
            if self.phase_rounds >= self.budget.search_budget - 1:
                return "auto"
            return "required"
        if self.phase == Phase.PRODUCE:
            return "auto"
        return "none"

    def get_phase_hint(self) -> Optional[str]:
        """Status line for the next turn's system prompt; never written into history"""

        if self.phase == Phase.EXPLORE:
            if self.phase_rounds >= self.budget.search_budget - 2:
                return (
                    f"Search budget nearly spent ({self.phase_rounds}/{self.budget.search_budget}). "
                    "Prepare to submit candidates or write your summary."
                )
            return None

        if self.phase == Phase.PRODUCE:
            if self.total_submits == 0 and self.phase_rounds >= 1:
                if self.skip_produce:
                    return "You have gathered enough information. Write your analysis now."
                return (
                    "Exploration is over. Submit your candidates now with the submission tool; "
                    "do not keep searching."
                )
            if self.budget.soft_submit_limit > 0 and self.total_submits >= self.budget.soft_submit_limit:
                remaining = self.budget.max_submits - self.total_submits
                extra = f" You can submit {remaining} more." if remaining > 0 else ""
                return (
                    f"{self.total_submits} candidates submitted (cap {self.budget.max_submits}).{extra} "
                    "Submit anything still worth recording, otherwise write the final summary."
                )
            return None

        return "Write the final summary now. Tools are no longer available."

    def _transition_to(self, phase: Phase, reason: str, is_text_only: bool = False) -> PhaseTransition:
        if _ORDER[phase] <= _ORDER[self.phase]:
            return PhaseTransition(False, self.phase)

        previous = self.phase
        self.phase = phase
        self.phase_rounds = 0
        self.idle_rounds = 0
        if phase == Phase.SUMMARIZE and is_text_only:
            self.has_text_answer = True

        agent_logger.log_phase_transition(
            session_id=self.session_id,
            from_phase=previous.value,
            to_phase=phase.value,
            reason=reason,
            iteration=self.total_iterations,
            submits=self.total_submits
        )
        return PhaseTransition(True, phase, reason)
