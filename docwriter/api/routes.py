import logging
from uuid import uuid4

from fastapi import APIRouter
from fastapi import Depends
from fastapi import status
from fastapi.responses import StreamingResponse

from docwriter.core.config import settings
from docwriter.core.security import verify_api_key
from docwriter.generation_logic.report_finalization import _generate_and_stream_docx
from docwriter.generation_logic.session import GenerationSession
from docwriter.generation_logic.session_registry import SessionRegistry
from docwriter.generation_logic.session_registry import get_credential_pool
from docwriter.generation_logic.session_registry import get_model_chain
from docwriter.generation_logic.session_registry import get_session_registry
from docwriter.generation_logic.stream_orchestrator import stream_session_action
from docwriter.models.session_models import CreateSessionPayload
from docwriter.models.session_models import CredentialNamePayload
from docwriter.models.session_models import CredentialPayload
from docwriter.models.session_models import CredentialView
from docwriter.models.session_models import CredentialsOverview
from docwriter.models.session_models import DocumentPayload
from docwriter.models.session_models import FeedbackPayload
from docwriter.models.session_models import KeyStats
from docwriter.models.session_models import PreferredModelPayload
from docwriter.models.session_models import RevisePayload
from docwriter.models.session_models import SessionView
from docwriter.models.session_models import StageInfo
from docwriter.services.credential_pool import CredentialPool
from docwriter.services.credential_pool import mask_key
from docwriter.services.model_chain import ModelChain
from docwriter.services.stage_table import StageFlags

# Configure module logger
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(verify_api_key)])

NDJSON_MEDIA_TYPE = "application/x-ndjson"


async def _session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> GenerationSession:
    return registry.get(session_id)


def _stream(session: GenerationSession, action: str, feedback: str | None = None, **kwargs) -> StreamingResponse:
    # Rejected before the stream opens so the client gets a proper status code
    session.ensure_allowed(action, feedback)
    if feedback is not None:
        kwargs["feedback"] = feedback
    return StreamingResponse(stream_session_action(session, action, **kwargs), media_type=NDJSON_MEDIA_TYPE)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/sessions", status_code=status.HTTP_201_CREATED, tags=["Sessions"])
async def create_session(payload: CreateSessionPayload, registry: SessionRegistry = Depends(get_session_registry)) -> SessionView:
    """Create a session for a topic. Generation starts with the first ``advance`` call."""
    flags = StageFlags(
        include_solution_4_5=settings.include_solution_4_5 if payload.include_solution_4_5 is None else payload.include_solution_4_5,
        include_appendix=settings.include_appendix if payload.include_appendix is None else payload.include_appendix,
    )
    session = registry.create(payload.topic, flags)
    return session.view()


@router.get("/sessions/{session_id}", tags=["Sessions"])
async def get_session(session: GenerationSession = Depends(_session)) -> SessionView:
    return session.view()


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Sessions"])
async def delete_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> None:
    registry.remove(session_id)


@router.get("/sessions/{session_id}/progress", tags=["Sessions"])
async def get_progress(session: GenerationSession = Depends(_session)) -> list[StageInfo]:
    """Ordered stage path for this session's flags."""
    return session.table.progress()


@router.post("/sessions/{session_id}/advance", tags=["Sessions"])
async def advance_session(session: GenerationSession = Depends(_session)) -> StreamingResponse:
    """Generate the next part of the document.

    Streams NDJSON events:
    - `status`: progress messages (a `restart` flag means a new attempt began).
    - `chunk`: a text fragment, `payload.target` is `document` or `revision`.
    - `review`: the section now awaiting approval.
    - `error`: the step failed; `payload` carries category, remediation and retryable.
    - `finished`: the final session view.
    """
    return _stream(session, "advance")


@router.post("/sessions/{session_id}/feedback", tags=["Sessions"])
async def submit_feedback(payload: FeedbackPayload, session: GenerationSession = Depends(_session)) -> StreamingResponse:
    """Regenerate the outline from user feedback."""
    return _stream(session, "feedback", feedback=payload.feedback)


@router.post("/sessions/{session_id}/approve", tags=["Sessions"])
async def approve_section(session: GenerationSession = Depends(_session)) -> StreamingResponse:
    return _stream(session, "approve")


@router.post("/sessions/{session_id}/revise", tags=["Sessions"])
async def revise_section(payload: RevisePayload, session: GenerationSession = Depends(_session)) -> StreamingResponse:
    return _stream(session, "revise", feedback=payload.feedback, reference_text=payload.reference_text)


@router.post("/sessions/{session_id}/retry", tags=["Sessions"])
async def retry_step(session: GenerationSession = Depends(_session)) -> StreamingResponse:
    return _stream(session, "retry")


@router.post("/sessions/{session_id}/cancel", tags=["Sessions"])
async def cancel_step(session: GenerationSession = Depends(_session)) -> dict[str, bool]:
    return {"cancelled": session.cancel()}


@router.put("/sessions/{session_id}/document", tags=["Sessions"])
async def edit_document(payload: DocumentPayload, session: GenerationSession = Depends(_session)) -> SessionView:
    session.edit_document(payload.document)
    return session.view()


@router.post("/sessions/{session_id}/reset", tags=["Sessions"])
async def reset_session(session: GenerationSession = Depends(_session)) -> SessionView:
    session.reset()
    return session.view()


@router.get("/sessions/{session_id}/export", tags=["Export"])
async def export_session(session: GenerationSession = Depends(_session)) -> StreamingResponse:
    """Return the committed document as a DOCX attachment."""
    request_id = str(uuid4())
    logger.info("[%s] Exporting session %s (%d chars)", request_id, session.id, len(session.document))
    return await _generate_and_stream_docx(session, request_id)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@router.get("/credentials", tags=["Credentials"])
def list_credentials(pool: CredentialPool = Depends(get_credential_pool)) -> CredentialsOverview:
    return CredentialsOverview(credentials=pool.credentials(), stats=pool.stats())


@router.post("/credentials", status_code=status.HTTP_201_CREATED, tags=["Credentials"])
def add_credential(payload: CredentialPayload, pool: CredentialPool = Depends(get_credential_pool)) -> CredentialView:
    cred = pool.add_key(payload.key, payload.name)
    return CredentialView(
        id=cred.id,
        name=cred.name,
        masked_key=mask_key(cred.key),
        status=cred.status,
        error_count=cred.error_count,
    )


@router.delete("/credentials/{credential_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Credentials"])
def remove_credential(credential_id: str, pool: CredentialPool = Depends(get_credential_pool)) -> None:
    pool.remove_key(credential_id)


@router.post("/credentials/{credential_id}/reset", tags=["Credentials"])
def reset_credential(credential_id: str, pool: CredentialPool = Depends(get_credential_pool)) -> KeyStats:
    pool.reset_key(credential_id)
    return pool.stats()


@router.put("/credentials/{credential_id}/name", tags=["Credentials"])
def rename_credential(credential_id: str, payload: CredentialNamePayload, pool: CredentialPool = Depends(get_credential_pool)) -> KeyStats:
    pool.rename_key(credential_id, payload.name)
    return pool.stats()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


@router.get("/models", tags=["Models"])
def list_models(chain: ModelChain = Depends(get_model_chain)) -> dict[str, str | list[str]]:
    return {"preferred": chain.preferred, "order": chain.ordered()}


@router.put("/models/preferred", tags=["Models"])
def set_preferred_model(payload: PreferredModelPayload, chain: ModelChain = Depends(get_model_chain)) -> dict[str, str | list[str]]:
    chain.set_preferred(payload.model)
    return {"preferred": chain.preferred, "order": chain.ordered()}
