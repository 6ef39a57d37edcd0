from enum import Enum
from enum import IntEnum
from typing import Literal

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class Stage(IntEnum):
    """Position of a session in the multi-part document workflow."""

    INPUT_FORM = 0
    OUTLINE = 1
    PART_I_II = 2
    PART_III = 3
    PART_IV_SOL1 = 4
    PART_IV_SOL1_REVIEW = 5
    PART_IV_SOL2 = 6
    PART_IV_SOL2_REVIEW = 7
    PART_IV_SOL3 = 8
    PART_IV_SOL3_REVIEW = 9
    PART_IV_SOL4 = 10
    PART_IV_SOL4_REVIEW = 11
    PART_IV_SOL5 = 12
    PART_IV_SOL5_REVIEW = 13
    PART_V_VI = 14
    APPENDIX = 15
    COMPLETED = 16


class TopicInfo(BaseModel):
    """User-entered topic metadata. Passed to the instruction templates as-is."""

    model_config = ConfigDict(extra="allow")

    topic: str = ""
    subject: str = ""
    level: str = ""
    grade: str = ""
    school: str = ""
    location: str = ""
    facilities: str = ""

    textbook: str = ""
    research_subjects: str = ""
    timeframe: str = ""
    apply_ai: str = ""
    focus: str = ""

    reference_documents: str = ""
    report_template: str = ""

    special_requirements: str = ""
    page_limit: int | None = None
    include_practical_examples: bool = False
    include_statistics: bool = False


class ChatTurn(BaseModel):
    """A single (role, text) turn exchanged with the upstream service."""

    role: Literal["user", "model"]
    text: str


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"


class CredentialInfo(BaseModel):
    """A stored API credential together with its health."""

    id: str
    key: str
    name: str
    status: CredentialStatus = CredentialStatus.ACTIVE
    error_count: int = 0
    last_error: str | None = None
    cooldown_until: float | None = None
    added_at: float = 0.0


class CredentialView(BaseModel):
    """Public view of a credential; the key is masked."""

    id: str
    name: str
    masked_key: str
    status: CredentialStatus
    error_count: int
    last_error: str | None = None
    cooldown_until: float | None = None


class RotationResult(BaseModel):
    success: bool
    has_more_keys: bool
    next_id: str | None = None
    message: str


class KeyStats(BaseModel):
    total: int
    active: int
    disabled: int
    cooldown: int


class CredentialsOverview(BaseModel):
    credentials: list[CredentialView]
    stats: KeyStats


# ---------------------------------------------------------------------------
# Extraction / review
# ---------------------------------------------------------------------------


class ExtractedSection(BaseModel):
    """Location of a reviewable section inside the document. Never persisted."""

    section_id: int
    start_offset: int
    end_offset: int
    text: str
    strategy: str | None = None
    found: bool = True

    @classmethod
    def not_found(cls, section_id: int) -> "ExtractedSection":
        return cls(section_id=section_id, start_offset=-1, end_offset=-1, text="", strategy=None, found=False)


class ReviewState(str, Enum):
    GENERATING = "generating"
    READY_FOR_REVIEW = "ready_for_review"
    REVISING = "revising"
    APPROVED = "approved"


class SectionReviewView(BaseModel):
    section_id: int
    state: ReviewState
    found: bool
    working_text: str
    not_found_message: str | None = None
    revision_count: int = 0


# ---------------------------------------------------------------------------
# Session outcome / view
# ---------------------------------------------------------------------------


class ErrorInfo(BaseModel):
    """Human-readable description of a failed action."""

    category: str
    message: str
    remediation: str
    retryable: bool = True


class StepOutcome(BaseModel):
    success: bool
    error: ErrorInfo | None = None


class StageInfo(BaseModel):
    stage: Stage
    label: str
    description: str
    is_review: bool = False


class SessionView(BaseModel):
    """Observable state of a session, as exposed to the UI."""

    id: str
    stage: Stage
    stage_label: str
    document: str
    draft: str
    is_streaming: bool
    error: ErrorInfo | None = None
    review: SectionReviewView | None = None
    approved_sections: list[int] = Field(default_factory=list)
    history_length: int = 0
    can_advance: bool = False
    can_retry: bool = False


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------


class CreateSessionPayload(BaseModel):
    topic: TopicInfo
    include_solution_4_5: bool | None = None
    include_appendix: bool | None = None


class FeedbackPayload(BaseModel):
    feedback: str = Field(..., min_length=1, description="Requested changes to the outline.")


class RevisePayload(BaseModel):
    feedback: str = Field(..., min_length=1, description="Requested changes to the section under review.")
    reference_text: str | None = Field(default=None, description="Optional additional reference material.")


class DocumentPayload(BaseModel):
    document: str


class CredentialPayload(BaseModel):
    key: str = Field(..., min_length=1)
    name: str | None = None


class CredentialNamePayload(BaseModel):
    name: str = Field(..., min_length=1)


class PreferredModelPayload(BaseModel):
    model: str = Field(..., min_length=1)
