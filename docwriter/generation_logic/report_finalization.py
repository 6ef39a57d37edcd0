"""Handles the final generation and streaming of the DOCX report document."""

import logging
import re

from fastapi.responses import StreamingResponse

from docwriter.core.config import settings
from docwriter.core.exceptions import DocBuilderError
from docwriter.core.exceptions import InvalidActionError
from docwriter.core.exceptions import PipelineError
from docwriter.generation_logic.session import GenerationSession
from docwriter.services.doc_builder import build_docx

__all__ = [
    "_generate_and_stream_docx",
    "export_filename",
    "DOCX_MEDIA_TYPE",
]

logger = logging.getLogger(__name__)

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
UNSAFE_FILENAME_CHARS = re.compile(r"[^\w\-]+", re.ASCII)


def export_filename(topic: str) -> str:
    """``Report_<first 30 chars of the topic>.docx`` with unsafe characters replaced."""
    stem = UNSAFE_FILENAME_CHARS.sub("_", topic[:30].strip()).strip("_") or "document"
    return f"{settings.export_filename_prefix}{stem}.docx"


async def _generate_and_stream_docx(session: GenerationSession, request_id: str) -> StreamingResponse:
    """Render the session's committed document to DOCX and stream it back as an attachment."""
    if not session.document.strip():
        raise InvalidActionError("The document is empty; generate at least the outline before exporting.")

    filename = export_filename(session.topic.topic)
    try:
        docx_bytes = await build_docx(session.document, title=session.topic.topic or None)
    except DocBuilderError:
        logger.error("[%s] DOCX rendering failed for session %s", request_id, session.id, exc_info=True)
        raise
    except Exception as e:
        logger.error("[%s] Export of session %s failed: %s", request_id, session.id, str(e), exc_info=True)
        raise PipelineError("An unexpected error occurred while generating the final DOCX document.") from e

    logger.info("[%s] Exported %s (%d bytes, stage %s)", request_id, filename, len(docx_bytes), session.stage.name)
    return StreamingResponse(
        iter([docx_bytes]),
        media_type=DOCX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
