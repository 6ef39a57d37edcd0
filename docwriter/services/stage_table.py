"""Configuration-driven stage graph for the report workflow.

Every stage the machine can rest in has at most one outgoing ``StageEdge``.
Which optional stages exist is decided once, by ``build_stage_table``,
from a ``StageFlags`` value; the orchestration code never branches on the
flags itself.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from docwriter.core.exceptions import ConfigurationError
from docwriter.models.session_models import Stage
from docwriter.models.session_models import StageInfo
from docwriter.services.llm import render_template

logger = logging.getLogger(__name__)

OUTLINE_FEEDBACK_TEMPLATE = "outline_feedback.jinja2"
REVISE_SECTION_TEMPLATE = "revise_section.jinja2"

STAGE_INFO: dict[Stage, tuple[str, str]] = {
    Stage.INPUT_FORM: ("Topic details", "Enter the topic and school information"),
    Stage.OUTLINE: ("Outline", "Detailed outline of all six parts"),
    Stage.PART_I_II: ("Parts I & II", "Rationale and theoretical background"),
    Stage.PART_III: ("Part III", "Current situation and survey data"),
    Stage.PART_IV_SOL1: ("Solution 1", "Writing the core solution"),
    Stage.PART_IV_SOL1_REVIEW: ("Review solution 1", "Approve or revise solution 1"),
    Stage.PART_IV_SOL2: ("Solution 2", "Writing solution 2"),
    Stage.PART_IV_SOL2_REVIEW: ("Review solution 2", "Approve or revise solution 2"),
    Stage.PART_IV_SOL3: ("Solution 3", "Writing solution 3"),
    Stage.PART_IV_SOL3_REVIEW: ("Review solution 3", "Approve or revise solution 3"),
    Stage.PART_IV_SOL4: ("Solution 4", "Writing optional solution 4"),
    Stage.PART_IV_SOL4_REVIEW: ("Review solution 4", "Approve or revise solution 4"),
    Stage.PART_IV_SOL5: ("Solution 5", "Writing optional solution 5"),
    Stage.PART_IV_SOL5_REVIEW: ("Review solution 5", "Approve or revise solution 5"),
    Stage.PART_V_VI: ("Parts V & VI", "Results, conclusions and recommendations"),
    Stage.APPENDIX: ("Appendix", "References and survey forms"),
    Stage.COMPLETED: ("Completed", "The report is finished"),
}

SOLUTION_STAGES: dict[int, tuple[Stage, Stage]] = {
    1: (Stage.PART_IV_SOL1, Stage.PART_IV_SOL1_REVIEW),
    2: (Stage.PART_IV_SOL2, Stage.PART_IV_SOL2_REVIEW),
    3: (Stage.PART_IV_SOL3, Stage.PART_IV_SOL3_REVIEW),
    4: (Stage.PART_IV_SOL4, Stage.PART_IV_SOL4_REVIEW),
    5: (Stage.PART_IV_SOL5, Stage.PART_IV_SOL5_REVIEW),
}


class StageFlags(BaseModel):
    """User toggles that add or remove optional stages."""

    include_solution_4_5: bool = False
    include_appendix: bool = True


class StageEdge(BaseModel):
    """Static edge: render ``template`` with the session context, then enter ``to_stage``."""

    model_config = ConfigDict(frozen=True)

    from_stage: Stage
    template: str
    to_stage: Stage
    params: dict[str, Any] = Field(default_factory=dict)

    def render(self, context: dict[str, Any]) -> str:
        return render_template(self.template, {**context, **self.params})


class StageTable:
    def __init__(
        self,
        edges: list[StageEdge],
        follow_ups: dict[Stage, Stage],
        review_sections: dict[Stage, int],
        feedback_templates: dict[Stage, str] | None = None,
    ):
        self._edges: dict[Stage, StageEdge] = {}
        for edge in edges:
            if edge.from_stage in self._edges:
                raise ConfigurationError(f"Stage {edge.from_stage.name} has more than one outgoing edge")
            self._edges[edge.from_stage] = edge
        self._follow_ups = dict(follow_ups)
        self._review_sections = dict(review_sections)
        self._feedback_templates = dict(feedback_templates or {})
        self._validate()

    def _validate(self) -> None:
        for edge in self._edges.values():
            settled = self.settle(edge.to_stage)
            if settled != Stage.COMPLETED and settled not in self._edges:
                raise ConfigurationError(f"Stage {settled.name} is reachable but has no outgoing edge")

    # ------------------------------------------------------------------

    def edge_for(self, stage: Stage) -> StageEdge | None:
        return self._edges.get(stage)

    def resolve(self, stage: Stage, context: dict[str, Any]) -> tuple[str, Stage] | None:
        """Return ``(instruction, next_stage)`` or ``None`` for a terminal stage."""
        edge = self._edges.get(stage)
        if edge is None:
            return None
        return edge.render(context), edge.to_stage

    def settle(self, stage: Stage) -> Stage:
        """Stage entered automatically once streaming into ``stage`` completes."""
        return self._follow_ups.get(stage, stage)

    def is_terminal(self, stage: Stage) -> bool:
        return stage not in self._edges

    def is_review(self, stage: Stage) -> bool:
        return stage in self._review_sections

    def section_for(self, stage: Stage) -> int | None:
        return self._review_sections.get(stage)

    def feedback_template(self, stage: Stage) -> str | None:
        return self._feedback_templates.get(stage)

    def path(self) -> list[Stage]:
        """Stages the machine passes through, in order, starting at INPUT_FORM."""
        stages = [Stage.INPUT_FORM]
        current = Stage.INPUT_FORM
        while current in self._edges:
            to_stage = self._edges[current].to_stage
            settled = self.settle(to_stage)
            if to_stage != settled:
                stages.append(to_stage)
            stages.append(settled)
            current = settled
        return stages

    def progress(self) -> list[StageInfo]:
        return [
            StageInfo(
                stage=stage,
                label=STAGE_INFO[stage][0],
                description=STAGE_INFO[stage][1],
                is_review=self.is_review(stage),
            )
            for stage in self.path()
        ]


def build_stage_table(flags: StageFlags) -> StageTable:
    solutions = 5 if flags.include_solution_4_5 else 3

    edges = [
        StageEdge(from_stage=Stage.INPUT_FORM, template="outline.jinja2", to_stage=Stage.OUTLINE),
        StageEdge(from_stage=Stage.OUTLINE, template="part_i_ii.jinja2", to_stage=Stage.PART_I_II),
        StageEdge(from_stage=Stage.PART_I_II, template="part_iii.jinja2", to_stage=Stage.PART_III),
    ]
    follow_ups: dict[Stage, Stage] = {}
    review_sections: dict[Stage, int] = {}

    previous = Stage.PART_III
    for number in range(1, solutions + 1):
        generating, review = SOLUTION_STAGES[number]
        edges.append(
            StageEdge(
                from_stage=previous,
                template="solution_first.jinja2" if number == 1 else "solution_next.jinja2",
                to_stage=generating,
                params={"solution_number": number, "total_solutions": solutions},
            )
        )
        follow_ups[generating] = review
        review_sections[review] = number
        previous = review

    edges.append(StageEdge(from_stage=previous, template="part_v_vi.jinja2", to_stage=Stage.PART_V_VI))
    if flags.include_appendix:
        edges.append(StageEdge(from_stage=Stage.PART_V_VI, template="appendix.jinja2", to_stage=Stage.APPENDIX))
        follow_ups[Stage.APPENDIX] = Stage.COMPLETED
    else:
        follow_ups[Stage.PART_V_VI] = Stage.COMPLETED

    logger.debug("Built stage table: %d solutions, appendix=%s", solutions, flags.include_appendix)
    return StageTable(
        edges,
        follow_ups,
        review_sections,
        feedback_templates={Stage.OUTLINE: OUTLINE_FEEDBACK_TEMPLATE},
    )
