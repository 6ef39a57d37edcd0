"""Orchestration for the staged document workflow.

A ``GenerationSession`` drives one document through the stage table and
its review gates; the registry keeps the live sessions, the stream
orchestrator turns session actions into NDJSON for the HTTP layer, and
report finalization handles DOCX export.
"""

from .report_finalization import _generate_and_stream_docx  # noqa: F401
from .review_cycle import SectionReview  # noqa: F401
from .session import GenerationSession  # noqa: F401
from .session_registry import SessionRegistry  # noqa: F401
from .stream_orchestrator import stream_session_action  # noqa: F401
