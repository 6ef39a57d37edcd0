import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

from docwriter.core.exceptions import PipelineError
from docwriter.core.exceptions import SessionError
from docwriter.generation_logic.session import GenerationSession

__all__ = [
    "_create_stream_event",
    "stream_session_action",
    "SESSION_ACTIONS",
]

logger = logging.getLogger(__name__)

SESSION_ACTIONS = {
    "advance": "advance",
    "feedback": "submit_feedback",
    "approve": "approve_section",
    "revise": "revise_section",
    "retry": "retry",
}

# Actions still running after their client went away
_background_tasks: set[asyncio.Task] = set()


# ---------------------------------------------------------------------------
# NDJSON event helper
# ---------------------------------------------------------------------------


def _create_stream_event(
    event_type: str,
    message: str | None = None,
    payload: dict[str, Any] | None = None,
) -> str:
    """Serialize one event dict to an NDJSON line."""
    event: dict[str, Any] = {"type": event_type}
    if message is not None:
        event["message"] = message
    if payload is not None:
        event["payload"] = payload
    return json.dumps(event, ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# Session action streaming
# ---------------------------------------------------------------------------


async def stream_session_action(
    session: GenerationSession,
    action: str,
    **kwargs: Any,
) -> AsyncIterator[str]:
    """Run one session action and yield its progress as NDJSON events.

    Event types: ``status``, ``chunk`` (payload ``{target, text}``),
    ``review``, ``error`` and a final ``finished`` carrying the session view.
    """
    request_id = str(uuid4())
    method_name = SESSION_ACTIONS.get(action)
    if method_name is None:
        raise PipelineError(f"Unknown session action: {action}")

    queue: asyncio.Queue[str | None] = asyncio.Queue()

    def on_event(event_type: str, data: dict[str, Any]) -> None:
        if event_type == "chunk":
            queue.put_nowait(_create_stream_event("chunk", payload=data))
        else:
            message = data.get("message")
            extra = {k: v for k, v in data.items() if k != "message"}
            queue.put_nowait(_create_stream_event(event_type, message=message, payload=extra or None))

    logger.info("[%s] Streaming action '%s' for session %s at %s", request_id, action, session.id, session.stage.name)
    yield _create_stream_event("status", message=f"Starting '{action}' at stage {session.stage.name}.")

    task = asyncio.create_task(getattr(session, method_name)(on_event=on_event, **kwargs))
    task.add_done_callback(lambda _: queue.put_nowait(None))

    try:
        while True:
            line = await queue.get()
            if line is None:
                break
            yield line

        outcome = task.result()
        if not outcome.success and outcome.error is not None:
            yield _create_stream_event("error", message=outcome.error.message, payload=outcome.error.model_dump(mode="json"))

        view = session.view()
        if view.review is not None:
            yield _create_stream_event("review", payload=view.review.model_dump(mode="json"))
        yield _create_stream_event(
            "finished",
            message="Step completed." if outcome.success else "Step failed.",
            payload=view.model_dump(mode="json"),
        )

    except SessionError as se:
        logger.warning("[%s] Session action '%s' rejected: %s", request_id, action, str(se))
        yield _create_stream_event("error", message=str(se), payload={"category": "invalid_action", "retryable": False})
    except Exception as e:  # General catch-all MUST be last
        logger.exception("[%s] Unexpected error during session stream: %s", request_id, str(e))
        yield _create_stream_event("error", message=f"An unexpected server error occurred: {str(e)}")
    finally:
        if not task.done():
            # Client disconnected mid-stream
            session.cancel()
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)
        logger.info("[%s] Session stream for action '%s' finished.", request_id, action)
