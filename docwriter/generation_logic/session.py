"""The per-document generation session.

A ``GenerationSession`` owns every piece of mutable state for one document:
its stage, the committed document text, the stage-local draft buffer, the
conversation history and the review in progress. All mutation goes through
its async methods; at most one of them streams at a time.
"""

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from functools import partial
from typing import Any
from uuid import uuid4

from docwriter.core.exceptions import AllResourcesExhaustedError
from docwriter.core.exceptions import ConfigurationError
from docwriter.core.exceptions import GenerationCancelled
from docwriter.core.exceptions import InvalidActionError
from docwriter.core.exceptions import LLMError
from docwriter.core.exceptions import SessionBusyError
from docwriter.generation_logic.review_cycle import SectionReview
from docwriter.models.session_models import ErrorInfo
from docwriter.models.session_models import ReviewState
from docwriter.models.session_models import SessionView
from docwriter.models.session_models import Stage
from docwriter.models.session_models import StepOutcome
from docwriter.models.session_models import TopicInfo
from docwriter.services.llm import CancellationToken
from docwriter.services.llm import ConversationHistory
from docwriter.services.llm import GenerationClient
from docwriter.services.llm import render_template
from docwriter.services.section_extractor import ExtractorParams
from docwriter.services.stage_table import STAGE_INFO
from docwriter.services.stage_table import StageFlags
from docwriter.services.stage_table import build_stage_table

logger = logging.getLogger(__name__)

# (event_type, data) -> None; event types: "chunk", "status"
EventCallback = Callable[[str, dict[str, Any]], None]
PendingAction = Callable[[EventCallback | None], Awaitable[StepOutcome]]

DOCUMENT_TARGET = "document"
REVISION_TARGET = "revision"
PART_SEPARATOR = "\n\n"


def describe_error(exc: BaseException) -> ErrorInfo:
    """Turn a failed action into the message shown to the user."""
    if isinstance(exc, GenerationCancelled):
        return ErrorInfo(
            category="cancelled",
            message="Generation was cancelled.",
            remediation="Retry to run this step again.",
        )
    if isinstance(exc, AllResourcesExhaustedError):
        return ErrorInfo(
            category="resources_exhausted",
            message=str(exc),
            remediation=exc.remediation,
        )
    if isinstance(exc, ConfigurationError):
        return ErrorInfo(
            category="configuration",
            message=str(exc),
            remediation="Check the server configuration and instruction templates.",
            retryable=False,
        )
    return ErrorInfo(
        category="upstream",
        message=str(exc),
        remediation="Wait a moment and retry.",
    )


class GenerationSession:
    def __init__(
        self,
        topic: TopicInfo,
        client: GenerationClient,
        flags: StageFlags | None = None,
        session_id: str | None = None,
        extractor_params: ExtractorParams | None = None,
    ):
        self.id = session_id or uuid4().hex
        self.topic = topic
        self.flags = flags or StageFlags()
        self.table = build_stage_table(self.flags)
        self.client = client
        self.extractor_params = extractor_params

        self.stage = Stage.INPUT_FORM
        self.document = ""
        self.draft = ""
        self.is_streaming = False
        self.last_error: ErrorInfo | None = None
        self.history = ConversationHistory()
        self.review: SectionReview | None = None
        self.approved_sections: dict[int, str] = {}

        self._pending: PendingAction | None = None
        self._cancel_token: CancellationToken | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _context(self, **extra: Any) -> dict[str, Any]:
        return {"topic": self.topic, "flags": self.flags, "document": self.document, **extra}

    def _ensure_idle(self) -> None:
        if self.is_streaming or self._lock.locked():
            raise SessionBusyError("A request is already running for this session")

    def _require_review(self) -> SectionReview:
        if not self.table.is_review(self.stage) or self.review is None:
            raise InvalidActionError(f"Stage {self.stage.name} is not a review stage")
        return self.review

    def _fail(self, exc: BaseException, request_id: str) -> StepOutcome:
        self.last_error = describe_error(exc)
        if isinstance(exc, GenerationCancelled):
            logger.info("[%s] Session %s: action cancelled at stage %s", request_id, self.id, self.stage.name)
        else:
            logger.error("[%s] Session %s: action failed at stage %s: %s", request_id, self.id, self.stage.name, str(exc))
        return StepOutcome(success=False, error=self.last_error)

    async def _run(self, action: PendingAction, on_event: EventCallback | None) -> StepOutcome:
        self._ensure_idle()
        self._pending = action
        async with self._lock:
            outcome = await action(on_event)
        if outcome.success:
            self._pending = None
        return outcome

    async def _stream(self, instruction: str, target: str, on_event: EventCallback | None, request_id: str) -> str:
        """Run one exchange, feeding chunks into the draft buffer of ``target``."""
        self._cancel_token = CancellationToken()
        self.is_streaming = True
        self.last_error = None

        def emit(event_type: str, **data: Any) -> None:
            if on_event is not None:
                on_event(event_type, data)

        def on_attempt(credential_name: str, model: str) -> None:
            # A new attempt restarts the scratch buffer
            if target == DOCUMENT_TARGET:
                self.draft = ""
            elif self.review is not None:
                self.review.restart_revision_draft()
            emit("status", message=f"Generating with {model} (key: {credential_name})", restart=True)

        def on_chunk(text: str) -> None:
            if target == DOCUMENT_TARGET:
                self.draft += text
            elif self.review is not None:
                self.review.append_revision_chunk(text)
            emit("chunk", target=target, text=text)

        try:
            return await self.client.send(
                self.history,
                instruction,
                on_chunk,
                cancel_token=self._cancel_token,
                on_attempt=on_attempt,
                request_id=request_id,
            )
        finally:
            self.is_streaming = False
            self._cancel_token = None

    def _commit(self, reply: str, replace: bool = False) -> None:
        if replace or not self.document:
            self.document = reply
        else:
            self.document = self.document + PART_SEPARATOR + reply
        self.draft = ""

    def _enter_review(self) -> None:
        section_id = self.table.section_for(self.stage)
        self.review = SectionReview.from_document(self.document, section_id, self.extractor_params)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _do_advance(self, on_event: EventCallback | None) -> StepOutcome:
        request_id = str(uuid4())
        from_stage = self.stage
        logger.info("[%s] Session %s: advancing from %s", request_id, self.id, from_stage.name)

        try:
            resolved = self.table.resolve(from_stage, self._context())
            if resolved is None:
                return StepOutcome(success=True)
            instruction, next_stage = resolved
            if from_stage == Stage.INPUT_FORM:
                # Starting from scratch
                self.history.reset()
                self.document = ""
                self.approved_sections.clear()
            reply = await self._stream(instruction, DOCUMENT_TARGET, on_event, request_id)
        except (LLMError, GenerationCancelled, ConfigurationError) as e:
            return self._fail(e, request_id)

        self._commit(reply)
        self.stage = self.table.settle(next_stage)
        self.review = None
        if self.table.is_review(self.stage):
            self._enter_review()
        logger.info("[%s] Session %s: now at %s (%d chars)", request_id, self.id, self.stage.name, len(self.document))
        return StepOutcome(success=True)

    def ensure_allowed(self, action: str, feedback: str | None = None) -> None:
        """Raise if ``action`` cannot start right now."""
        self._ensure_idle()
        if action == "advance":
            if self.table.is_review(self.stage) and (self.review is None or self.review.state != ReviewState.APPROVED):
                raise InvalidActionError("Approve or revise the section under review before continuing")
        elif action == "feedback":
            if self.table.feedback_template(self.stage) is None:
                raise InvalidActionError(f"Feedback is not accepted at stage {self.stage.name}")
        elif action == "approve":
            self._require_review()
        elif action == "revise":
            review = self._require_review()
            if review.state != ReviewState.READY_FOR_REVIEW:
                raise InvalidActionError(f"Section {review.section_id} cannot be revised while '{review.state.value}'")
        elif action == "retry":
            if self._pending is None:
                raise InvalidActionError("There is no failed action to retry")
        else:
            raise InvalidActionError(f"Unknown action: {action}")

        if action in ("feedback", "revise") and not (feedback or "").strip():
            raise InvalidActionError("Feedback must not be empty")

    async def advance(self, on_event: EventCallback | None = None) -> StepOutcome:
        """Generate the next part of the document. A no-op on a terminal stage."""
        self.ensure_allowed("advance")
        if self.table.is_terminal(self.stage):
            return StepOutcome(success=True)
        return await self._run(self._do_advance, on_event)

    async def _do_feedback(self, template: str, feedback: str, on_event: EventCallback | None) -> StepOutcome:
        request_id = str(uuid4())
        logger.info("[%s] Session %s: regenerating %s with feedback", request_id, self.id, self.stage.name)
        try:
            instruction = render_template(template, self._context(feedback=feedback))
            reply = await self._stream(instruction, DOCUMENT_TARGET, on_event, request_id)
        except (LLMError, GenerationCancelled, ConfigurationError) as e:
            return self._fail(e, request_id)

        self._commit(reply, replace=True)
        return StepOutcome(success=True)

    async def submit_feedback(self, feedback: str, on_event: EventCallback | None = None) -> StepOutcome:
        """Regenerate the current stage's output from user feedback (outline only)."""
        self.ensure_allowed("feedback", feedback)
        template = self.table.feedback_template(self.stage)
        return await self._run(partial(self._do_feedback, template, feedback.strip()), on_event)

    async def approve_section(self, on_event: EventCallback | None = None) -> StepOutcome:
        """Accept the section under review and continue with the next stage."""
        self.ensure_allowed("approve")
        review = self._require_review()
        if review.state != ReviewState.APPROVED:
            review.approve()
            self.document = review.apply_to(self.document)
            self.approved_sections[review.section_id] = review.working_text
        return await self._run(self._do_advance, on_event)

    async def _do_revise(self, feedback: str, reference_text: str | None, on_event: EventCallback | None) -> StepOutcome:
        request_id = str(uuid4())
        review = self._require_review()
        logger.info("[%s] Session %s: revising section %d", request_id, self.id, review.section_id)
        try:
            instruction = review.begin_revision(feedback, reference_text, self._context())
            reply = await self._stream(instruction, REVISION_TARGET, on_event, request_id)
        except (LLMError, GenerationCancelled, ConfigurationError) as e:
            review.fail_revision()
            return self._fail(e, request_id)

        review.complete_revision(reply)
        return StepOutcome(success=True)

    async def revise_section(self, feedback: str, reference_text: str | None = None, on_event: EventCallback | None = None) -> StepOutcome:
        """Ask for a replacement of the section under review. Never advances the stage."""
        self.ensure_allowed("revise", feedback)
        return await self._run(partial(self._do_revise, feedback, reference_text), on_event)

    async def retry(self, on_event: EventCallback | None = None) -> StepOutcome:
        """Re-run the action that failed last."""
        self.ensure_allowed("retry")
        return await self._run(self._pending, on_event)

    def cancel(self) -> bool:
        if self._cancel_token is None:
            return False
        self._cancel_token.cancel()
        logger.info("Session %s: cancellation requested", self.id)
        return True

    def edit_document(self, document: str) -> None:
        """Replace the whole document with a user edit."""
        self._ensure_idle()
        self.document = document
        if self.review is not None and self.review.state != ReviewState.APPROVED:
            self.review.relocate(document, self.extractor_params)

    def reset(self) -> None:
        self._ensure_idle()
        self.stage = Stage.INPUT_FORM
        self.document = ""
        self.draft = ""
        self.last_error = None
        self.history.reset()
        self.review = None
        self.approved_sections.clear()
        self._pending = None
        logger.info("Session %s reset", self.id)

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    @property
    def can_advance(self) -> bool:
        if self.is_streaming or self.table.is_terminal(self.stage):
            return False
        if self.table.is_review(self.stage):
            return self.review is not None and self.review.state == ReviewState.APPROVED
        return True

    def view(self) -> SessionView:
        return SessionView(
            id=self.id,
            stage=self.stage,
            stage_label=STAGE_INFO[self.stage][0],
            document=self.document,
            draft=self.draft,
            is_streaming=self.is_streaming,
            error=self.last_error,
            review=self.review.view() if self.review is not None else None,
            approved_sections=sorted(self.approved_sections),
            history_length=len(self.history),
            can_advance=self.can_advance,
            can_retry=self._pending is not None and not self.is_streaming,
        )
