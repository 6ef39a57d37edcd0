from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from docwriter.core.exceptions import AllResourcesExhaustedError
from docwriter.core.exceptions import ConfigurationError
from docwriter.core.exceptions import GenerationCancelled
from docwriter.core.exceptions import InvalidCredentialError
from docwriter.core.exceptions import TransientUpstreamError
from docwriter.models.session_models import ChatTurn
from docwriter.models.session_models import CredentialStatus
from docwriter.services.llm import CancellationToken
from docwriter.services.llm import ConversationHistory
from docwriter.services.llm import as_messages
from docwriter.services.llm import classify_upstream_error
from docwriter.services.llm import render_template
from docwriter.services.llm import stream_chat

# ---------------------------------------------------------------------------
# Fake OpenAI streaming objects
# ---------------------------------------------------------------------------


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class DummyStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk


def _patch_client(monkeypatch, create):
    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    monkeypatch.setattr("docwriter.services.llm.get_client", lambda api_key: client)


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# stream_chat
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_chat_delivers_chunks_in_order(monkeypatch):
    stream = DummyStream([_chunk("Hello"), SimpleNamespace(choices=[]), _chunk(None), _chunk(", "), _chunk("world")])
    create = AsyncMock(return_value=stream)
    _patch_client(monkeypatch, create)

    received = []
    turns = [ChatTurn(role="user", text="first"), ChatTurn(role="model", text="reply")]
    result = await stream_chat("key-aaaa-1111", "model-p", turns, "next", received.append, system_instruction="SYS")

    assert result == "Hello, world"
    assert received == ["Hello", ", ", "world"]
    stream.close.assert_awaited_once()

    kwargs = create.await_args.kwargs
    assert kwargs["model"] == "model-p"
    assert kwargs["stream"] is True
    assert kwargs["extra_body"] == {"top_k": 64}
    assert [m["role"] for m in kwargs["messages"]] == ["system", "user", "assistant", "user"]
    assert kwargs["messages"][-1]["content"] == "next"


@pytest.mark.asyncio
async def test_stream_chat_uses_default_system_instruction(monkeypatch):
    create = AsyncMock(return_value=DummyStream([_chunk("ok")]))
    _patch_client(monkeypatch, create)

    await stream_chat("key-aaaa-1111", "model-p", [], "go", lambda _: None)

    system = create.await_args.kwargs["messages"][0]
    assert system["role"] == "system"
    assert "education expert" in system["content"]


@pytest.mark.asyncio
async def test_stream_chat_stops_when_cancelled(monkeypatch):
    stream = DummyStream([_chunk("a"), _chunk("b")])
    _patch_client(monkeypatch, AsyncMock(return_value=stream))

    token = CancellationToken()
    received = []

    def on_chunk(text):
        received.append(text)
        token.cancel()

    with pytest.raises(GenerationCancelled):
        await stream_chat("key-aaaa-1111", "model-p", [], "go", on_chunk, cancel_token=token, system_instruction="SYS")

    assert received == ["a"]
    stream.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_stream_chat_translates_upstream_errors(monkeypatch):
    _patch_client(monkeypatch, AsyncMock(side_effect=RuntimeError("connection reset")))

    with pytest.raises(TransientUpstreamError, match="connection reset"):
        await stream_chat("key-aaaa-1111", "model-p", [], "go", lambda _: None, system_instruction="SYS")


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (StatusError("unauthorized", 401), InvalidCredentialError),
        (StatusError("forbidden", 403), InvalidCredentialError),
        (StatusError("API key not valid. Please pass a valid API key.", 400), InvalidCredentialError),
        (StatusError("bad request", 400), TransientUpstreamError),
        (StatusError("rate limited", 429), TransientUpstreamError),
        (StatusError("model not found", 404), TransientUpstreamError),
        (StatusError("overloaded", 503), TransientUpstreamError),
        (TimeoutError("read timeout"), TransientUpstreamError),
    ],
)
def test_classify_upstream_error(exc, expected):
    assert type(classify_upstream_error(exc)) is expected


# ---------------------------------------------------------------------------
# History and templates
# ---------------------------------------------------------------------------


def test_history_commit_and_messages():
    history = ConversationHistory()
    history.commit_exchange("instruction", "reply")
    assert len(history) == 2
    assert [t.role for t in history.turns] == ["user", "model"]

    messages = as_messages("SYS", history.turns, "next")
    assert messages == [
        {"role": "system", "content": "SYS"},
        {"role": "user", "content": "instruction"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "next"},
    ]

    history.reset()
    assert len(history) == 0


def test_render_missing_template_raises():
    with pytest.raises(ConfigurationError, match="not found"):
        render_template("does_not_exist.jinja2", {})


# ---------------------------------------------------------------------------
# GenerationClient: rotation x fallback
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_commits_history_once_on_success(make_client, make_stream):
    stream = make_stream(["The outline"])
    client = make_client(stream)
    history = ConversationHistory()
    chunks = []

    reply = await client.send(history, "Write the outline", chunks.append)

    assert reply == "The outline"
    assert "".join(chunks) == "The outline"
    assert [(t.role, t.text) for t in history.turns] == [("user", "Write the outline"), ("model", "The outline")]


@pytest.mark.asyncio
async def test_send_falls_back_to_next_model(make_client, make_stream):
    stream = make_stream([TransientUpstreamError("overloaded"), "from A"])
    client = make_client(stream, models=("model-p", "model-a", "model-b"))
    attempts = []

    reply = await client.send(ConversationHistory(), "go", lambda _: None, on_attempt=lambda name, model: attempts.append(model))

    assert reply == "from A"
    assert stream.models == ["model-p", "model-a"]
    assert attempts == ["model-p", "model-a"]
    # Same credential served both models
    assert len(set(stream.api_keys)) == 1


@pytest.mark.asyncio
async def test_invalid_credential_is_disabled_and_next_key_used(make_client, make_stream):
    stream = make_stream([InvalidCredentialError("API key rejected"), "ok"])
    client = make_client(stream)

    reply = await client.send(ConversationHistory(), "go", lambda _: None)

    assert reply == "ok"
    assert stream.api_keys == ["key-aaaa-1111", "key-bbbb-2222"]
    # Invalid credentials are not retried on other models
    assert stream.models == ["model-p", "model-p"]
    statuses = [c.status for c in client.pool.credentials()]
    assert statuses == [CredentialStatus.DISABLED, CredentialStatus.ACTIVE]


@pytest.mark.asyncio
async def test_successful_sends_round_robin_credentials(make_client, make_stream):
    stream = make_stream(["one", "two", "three"])
    client = make_client(stream)

    for _ in range(3):
        await client.send(ConversationHistory(), "go", lambda _: None)

    assert stream.api_keys == ["key-aaaa-1111", "key-bbbb-2222", "key-aaaa-1111"]


@pytest.mark.asyncio
async def test_failed_request_leaves_history_unchanged(make_client, make_stream):
    failure = TransientUpstreamError("503")
    # Two keys x two models, every attempt fails after streaming some text
    stream = make_stream([("partial text", failure)] * 4)
    client = make_client(stream)
    history = ConversationHistory()
    history.commit_exchange("earlier", "answer")
    chunks = []

    with pytest.raises(AllResourcesExhaustedError) as exc:
        await client.send(history, "go", chunks.append)

    assert len(history) == 2
    assert len(stream.calls) == 4
    assert exc.value.remediation
    assert "partial text" in "".join(chunks)


@pytest.mark.asyncio
async def test_empty_pool_is_exhausted_immediately(make_client, make_stream):
    stream = make_stream(["never"])
    client = make_client(stream, keys=())

    with pytest.raises(AllResourcesExhaustedError, match="No API key"):
        await client.send(ConversationHistory(), "go", lambda _: None)
    assert stream.calls == []


@pytest.mark.asyncio
async def test_cancellation_is_not_retried(make_client, make_stream):
    token = CancellationToken()
    token.cancel()
    stream = make_stream(["never"])
    client = make_client(stream)

    with pytest.raises(GenerationCancelled):
        await client.send(ConversationHistory(), "go", lambda _: None, cancel_token=token)
    assert stream.calls == []
    assert all(c.error_count == 0 for c in client.pool.credentials())


@pytest.mark.asyncio
async def test_configuration_error_does_not_count_against_credentials(make_client, make_stream):
    stream = make_stream([ConfigurationError("Template 'x' not found.")] * 3)
    client = make_client(stream, keys=("key-aaaa-1111",))

    for _ in range(3):
        with pytest.raises(ConfigurationError):
            await client.send(ConversationHistory(), "go", lambda _: None)

    # One call per send: no model fallback, no credential rotation
    assert len(stream.calls) == 3
    (credential,) = client.pool.credentials()
    assert credential.status == CredentialStatus.ACTIVE
    assert credential.error_count == 0


@pytest.mark.asyncio
async def test_system_instruction_is_rendered_once_before_rotation(make_client, make_stream, monkeypatch):
    stream = make_stream([TransientUpstreamError("overloaded"), "ok"])
    client = make_client(stream)

    reply = await client.send(ConversationHistory(), "go", lambda _: None)

    assert reply == "ok"
    assert stream.calls[0]["system_instruction"]
    assert stream.calls[0]["system_instruction"] == stream.calls[1]["system_instruction"]

    monkeypatch.setattr("docwriter.services.llm.SYSTEM_INSTRUCTION_TEMPLATE", "missing_system.jinja2")
    with pytest.raises(ConfigurationError, match="not found"):
        await client.send(ConversationHistory(), "go", lambda _: None)
    assert len(stream.calls) == 2
    assert all(c.error_count == 0 for c in client.pool.credentials())
