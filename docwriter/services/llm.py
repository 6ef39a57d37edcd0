import logging
import pathlib
import re
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import httpx
import jinja2
from openai import AsyncOpenAI
from openai import AuthenticationError
from openai import PermissionDeniedError
from tenacity import AsyncRetrying
from tenacity import before_sleep_log
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from docwriter.core.config import settings
from docwriter.core.exceptions import AllResourcesExhaustedError
from docwriter.core.exceptions import ConfigurationError
from docwriter.core.exceptions import GenerationCancelled
from docwriter.core.exceptions import InvalidCredentialError
from docwriter.core.exceptions import LLMError
from docwriter.core.exceptions import NoCredentialsAvailableError
from docwriter.core.exceptions import PipelineError
from docwriter.core.exceptions import TransientUpstreamError
from docwriter.models.session_models import ChatTurn
from docwriter.services.credential_pool import CredentialPool
from docwriter.services.credential_pool import ErrorKind
from docwriter.services.credential_pool import mask_key
from docwriter.services.model_chain import ModelChain

# Configure module logger
logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]
AttemptCallback = Callable[[str, str], None]

# Messages some providers return with a 400 instead of a 401 for a bad key
INVALID_KEY_PATTERN = re.compile(r"api[ _-]?key (?:not valid|invalid)|invalid api[ _-]?key|incorrect api key", re.IGNORECASE)


# --- Reusable Jinja2 Environment ---
PROMPT_DIR = pathlib.Path(__file__).parent / "prompt_templates"
env: jinja2.Environment | None = None
try:
    loader = jinja2.FileSystemLoader(PROMPT_DIR)
    env = jinja2.Environment(loader=loader, trim_blocks=True, lstrip_blocks=True)
    logger.info("Jinja2 environment initialized successfully for path: %s", PROMPT_DIR)
except Exception:
    logger.exception("Failed to initialize Jinja2 environment at %s", PROMPT_DIR)
    env = None


SYSTEM_INSTRUCTION_TEMPLATE = "system_instruction.jinja2"


def render_template(template_name: str, context: dict[str, Any]) -> str:
    """Render one instruction template from ``prompt_templates/``."""
    if env is None:
        logger.error("Jinja2 environment not initialized, cannot render %s", template_name)
        raise ConfigurationError("Internal configuration error: Template environment not available.")
    try:
        return env.get_template(template_name).render(**context).strip()
    except jinja2.TemplateNotFound:
        logger.error("Template not found: %s", template_name)
        raise ConfigurationError(f"Internal configuration error: Template '{template_name}' not found.") from None


# ---------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------


class ConversationHistory:
    """Ordered (role, text) turns seen by the upstream service.

    Grows only through :meth:`commit_exchange`, which is called once per
    successful request. Failed attempts never touch it.
    """

    def __init__(self, turns: list[ChatTurn] | None = None):
        self._turns: list[ChatTurn] = list(turns or [])

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> list[ChatTurn]:
        return list(self._turns)

    def commit_exchange(self, instruction: str, reply: str) -> None:
        self._turns.extend(
            [
                ChatTurn(role="user", text=instruction),
                ChatTurn(role="model", text=reply),
            ]
        )

    def reset(self) -> None:
        self._turns.clear()


def as_messages(system_instruction: str, turns: list[ChatTurn], instruction: str) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_instruction}]
    for turn in turns:
        messages.append({"role": "assistant" if turn.role == "model" else "user", "content": turn.text})
    messages.append({"role": "user", "content": instruction})
    return messages


class CancellationToken:
    """Cooperative cancellation flag checked between streamed fragments."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled("Generation cancelled by the user")


# ---------------------------------------------------------------
# OpenAI-compatible async clients, one per credential
# ---------------------------------------------------------------
timeout_config = httpx.Timeout(
    settings.LLM_CONNECT_TIMEOUT,
    read=settings.LLM_READ_TIMEOUT,
)

_clients: dict[str, AsyncOpenAI] = {}


def get_client(api_key: str) -> AsyncOpenAI:
    client = _clients.get(api_key)
    if client is None:
        client = AsyncOpenAI(
            base_url=settings.llm_base_url,
            api_key=api_key,
            default_headers={"X-Title": "docwriter"},
            timeout=timeout_config,
            max_retries=0,  # rotation handles retries
        )
        _clients[api_key] = client
    return client


def classify_upstream_error(exc: Exception) -> LLMError:
    """Translate any upstream failure into the application's error taxonomy."""
    if isinstance(exc, LLMError):
        return exc
    if isinstance(exc, AuthenticationError | PermissionDeniedError):
        return InvalidCredentialError(f"API key rejected: {str(exc)}")

    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if status in {401, 403}:
        return InvalidCredentialError(f"API key rejected (status {status}): {str(exc)}")
    if status == 400 and INVALID_KEY_PATTERN.search(str(exc)):
        return InvalidCredentialError(f"API key rejected: {str(exc)}")
    return TransientUpstreamError(f"Upstream error{f' (status {status})' if status else ''}: {str(exc)}")


async def stream_chat(
    api_key: str,
    model: str,
    turns: list[ChatTurn],
    instruction: str,
    on_chunk: ChunkCallback,
    cancel_token: CancellationToken | None = None,
    system_instruction: str | None = None,
) -> str:
    """Send one message in the context of ``turns`` and stream the reply.

    Every text fragment is handed to ``on_chunk`` in arrival order. Returns
    the concatenated reply.
    """
    request_id = str(uuid4())
    system_instruction = system_instruction if system_instruction is not None else render_template(SYSTEM_INSTRUCTION_TEMPLATE, {})
    logger.info("[%s] Streaming request with model %s (key %s, %d prior turns)", request_id, model, mask_key(api_key), len(turns))

    parts: list[str] = []
    try:
        stream = await get_client(api_key).chat.completions.create(
            model=model,
            messages=as_messages(system_instruction, turns, instruction),
            stream=True,
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_tokens=settings.max_output_tokens,
            extra_body={"top_k": settings.top_k},
            timeout=timeout_config,
        )
        try:
            async for chunk in stream:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    on_chunk(text)
                    parts.append(text)
        finally:
            await stream.close()
    except (GenerationCancelled, LLMError):
        raise
    except Exception as e:
        error = classify_upstream_error(e)
        logger.error("[%s] Streaming request failed after %d fragments: %s", request_id, len(parts), str(error))
        raise error from e

    reply = "".join(parts)
    logger.debug("[%s] Stream completed, %d chars", request_id, len(reply))
    return reply


# ---------------------------------------------------------------
# Credential rotation x model fallback
# ---------------------------------------------------------------


class GenerationClient:
    """Executes one conversational exchange, absorbing transient failures."""

    def __init__(
        self,
        pool: CredentialPool,
        model_chain: ModelChain,
        stream_fn: Callable[..., Any] | None = None,
    ):
        self.pool = pool
        self.model_chain = model_chain
        self._stream_fn = stream_fn or stream_chat

    async def _attempt_with_credential(
        self,
        history: ConversationHistory,
        instruction: str,
        on_chunk: ChunkCallback,
        cancel_token: CancellationToken | None,
        on_attempt: AttemptCallback | None,
        request_id: str,
        system_instruction: str,
    ) -> str:
        credential = self.pool.acquire_active()
        logger.info("[%s] Using credential '%s'", request_id, credential.name)

        async def attempt(model: str) -> str:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            if on_attempt is not None:
                on_attempt(credential.name, model)
            return await self._stream_fn(
                api_key=credential.key,
                model=model,
                turns=history.turns,
                instruction=instruction,
                on_chunk=on_chunk,
                cancel_token=cancel_token,
                system_instruction=system_instruction,
            )

        try:
            # Local errors propagate without counting against the key
            reply = await self.model_chain.try_in_order(attempt, abort_on=(InvalidCredentialError, GenerationCancelled, PipelineError))
        except InvalidCredentialError:
            self.pool.report_failure(credential.id, ErrorKind.INVALID_CREDENTIAL)
            raise
        except TransientUpstreamError:
            self.pool.report_failure(credential.id, ErrorKind.TRANSIENT)
            raise

        self.pool.report_success(credential.id)
        self.pool.advance_rotation_pointer()
        return reply

    async def send(
        self,
        history: ConversationHistory,
        instruction: str,
        on_chunk: ChunkCallback,
        cancel_token: CancellationToken | None = None,
        on_attempt: AttemptCallback | None = None,
        request_id: str | None = None,
    ) -> str:
        """Run one exchange and commit it to ``history`` on success."""
        request_id = request_id or str(uuid4())
        max_attempts = max(1, len(self.pool) * settings.rotation_max_rounds)
        # Rendered before rotation so a broken template surfaces as a ConfigurationError
        system_instruction = render_template(SYSTEM_INSTRUCTION_TEMPLATE, {})

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=settings.rotation_backoff_multiplier, max=settings.rotation_backoff_max),
            retry=retry_if_exception_type((TransientUpstreamError, InvalidCredentialError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        reply = ""
        try:
            async for attempt in retrying:
                with attempt:
                    reply = await self._attempt_with_credential(
                        history, instruction, on_chunk, cancel_token, on_attempt, request_id, system_instruction
                    )
        except NoCredentialsAvailableError as e:
            logger.error("[%s] No active credential left", request_id)
            raise AllResourcesExhaustedError("No API key is available.", last_error=e) from e
        except (TransientUpstreamError, InvalidCredentialError) as e:
            logger.error("[%s] Credential rotation exhausted after %d attempts: %s", request_id, max_attempts, str(e))
            raise AllResourcesExhaustedError(f"All API keys and models failed: {str(e)}", last_error=e) from e

        history.commit_exchange(instruction, reply)
        logger.info("[%s] Exchange committed, history now %d turns", request_id, len(history))
        return reply
