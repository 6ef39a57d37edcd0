"""Human approval gate for the reviewable sections of the document."""

import logging

from docwriter.core.exceptions import ExtractionNotFoundError
from docwriter.core.exceptions import InvalidActionError
from docwriter.models.session_models import ExtractedSection
from docwriter.models.session_models import ReviewState
from docwriter.models.session_models import SectionReviewView
from docwriter.services.llm import render_template
from docwriter.services.section_extractor import ExtractorParams
from docwriter.services.section_extractor import extract_section
from docwriter.services.stage_table import REVISE_SECTION_TEMPLATE

logger = logging.getLogger(__name__)


class SectionReview:
    """Working copy of one extracted section while the user reviews it.

    Revisions replace ``working_text`` only. The document is touched once,
    by :meth:`apply_to`, when the user approves.
    """

    def __init__(self, extracted: ExtractedSection):
        self.section_id = extracted.section_id
        self.extracted = extracted
        self.state = ReviewState.READY_FOR_REVIEW
        self.working_text = extracted.text
        self.revision_draft = ""
        self.revision_history: list[str] = []
        self.not_found_message = None if extracted.found else str(ExtractionNotFoundError(extracted.section_id))

    @classmethod
    def from_document(cls, document: str, section_id: int, params: ExtractorParams | None = None) -> "SectionReview":
        extracted = extract_section(document, section_id, params)
        if not extracted.found:
            logger.warning("Entering review of section %d without an extracted body", section_id)
        return cls(extracted)

    @property
    def found(self) -> bool:
        return self.extracted.found

    @property
    def is_revised(self) -> bool:
        return self.working_text != self.extracted.text

    def _require_state(self, *states: ReviewState) -> None:
        if self.state not in states:
            raise InvalidActionError(f"Section {self.section_id} is '{self.state.value}', expected one of: {', '.join(s.value for s in states)}")

    # ------------------------------------------------------------------
    # Revision
    # ------------------------------------------------------------------

    def begin_revision(self, feedback: str, reference_text: str | None, context: dict) -> str:
        """Move to ``revising`` and return the narrowly scoped revision instruction."""
        self._require_state(ReviewState.READY_FOR_REVIEW)
        if not feedback.strip():
            raise InvalidActionError("Revision feedback must not be empty")

        instruction = render_template(
            REVISE_SECTION_TEMPLATE,
            {
                **context,
                "section_id": self.section_id,
                "section_text": self.working_text,
                "feedback": feedback.strip(),
                "reference_text": (reference_text or "").strip(),
            },
        )
        self.state = ReviewState.REVISING
        self.revision_draft = ""
        return instruction

    def restart_revision_draft(self) -> None:
        self.revision_draft = ""

    def append_revision_chunk(self, text: str) -> None:
        self.revision_draft += text

    def complete_revision(self, reply: str) -> None:
        self._require_state(ReviewState.REVISING)
        self.revision_history.append(self.working_text)
        self.working_text = reply.strip()
        self.revision_draft = ""
        self.state = ReviewState.READY_FOR_REVIEW
        logger.info("Section %d revised (%d revisions so far)", self.section_id, len(self.revision_history))

    def fail_revision(self) -> None:
        # The partial revision stays visible in ``revision_draft``
        if self.state == ReviewState.REVISING:
            self.state = ReviewState.READY_FOR_REVIEW

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def apply_to(self, document: str) -> str:
        """Return ``document`` with the approved working text in place of the extracted range."""
        if not self.is_revised:
            return document
        if self.found:
            start, end = self.extracted.start_offset, self.extracted.end_offset
            return document[:start] + self.working_text + document[end:]
        if not self.working_text:
            return document
        separator = "\n\n" if document.strip() else ""
        return document.rstrip() + separator + self.working_text

    def relocate(self, document: str, params: ExtractorParams | None = None) -> None:
        """Re-extract the section from an edited document, keeping a pending revision."""
        pending = self.working_text if self.is_revised else None
        self.extracted = extract_section(document, self.section_id, params)
        self.not_found_message = None if self.extracted.found else str(ExtractionNotFoundError(self.section_id))
        self.working_text = self.extracted.text if pending is None else pending

    def approve(self) -> None:
        self._require_state(ReviewState.READY_FOR_REVIEW)
        self.state = ReviewState.APPROVED
        logger.info("Section %d approved", self.section_id)

    def view(self) -> SectionReviewView:
        return SectionReviewView(
            section_id=self.section_id,
            state=self.state,
            found=self.found,
            working_text=self.revision_draft if self.state == ReviewState.REVISING else self.working_text,
            not_found_message=self.not_found_message,
            revision_count=len(self.revision_history),
        )
