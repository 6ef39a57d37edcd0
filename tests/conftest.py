import re
from types import SimpleNamespace

import pytest

from docwriter.core.config import settings
from docwriter.models.session_models import TopicInfo
from docwriter.services.credential_pool import CredentialPool
from docwriter.services.llm import GenerationClient
from docwriter.services.model_chain import ModelChain

CHUNK_SIZE = 40


def split_chunks(text: str, size: int = CHUNK_SIZE) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


class FakeStream:
    """Stand-in for ``stream_chat``.

    Each call takes the next scripted item (or asks ``handler``). An item is a
    reply string, an exception, or a ``(partial_text, exception)`` tuple that
    streams some text before failing.
    """

    def __init__(self, responses=None, handler=None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls = []

    async def __call__(self, api_key, model, turns, instruction, on_chunk, cancel_token=None, system_instruction=None):
        self.calls.append(
            {"api_key": api_key, "model": model, "turns": list(turns), "instruction": instruction, "system_instruction": system_instruction}
        )
        item = self.handler(api_key, model, instruction) if self.handler else self.responses.pop(0)

        partial = ""
        if isinstance(item, tuple):
            partial, item = item
        for piece in split_chunks(partial):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            on_chunk(piece)
        if isinstance(item, BaseException):
            raise item

        for piece in split_chunks(item):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            on_chunk(piece)
        return item

    @property
    def models(self):
        return [c["model"] for c in self.calls]

    @property
    def api_keys(self):
        return [c["api_key"] for c in self.calls]


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def no_rotation_backoff(monkeypatch):
    monkeypatch.setattr(settings, "rotation_backoff_multiplier", 0)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def topic():
    return TopicInfo(
        topic="Using reading corners to build fluency in grade 5",
        subject="Literature",
        level="Primary",
        grade="Grade 5",
        school="Hoa Binh Primary School",
        location="Da Nang",
        facilities="Projector, 10 tablets, classroom library",
        textbook="Connecting Knowledge",
        apply_ai="ChatGPT",
    )


@pytest.fixture
def make_pool(fake_clock):
    def _make_pool(keys=("key-aaaa-1111", "key-bbbb-2222"), **kwargs):
        kwargs.setdefault("clock", fake_clock)
        pool = CredentialPool(**kwargs)
        for key in keys:
            pool.add_key(key)
        return pool

    return _make_pool


@pytest.fixture
def make_client(make_pool):
    def _make_client(stream, keys=("key-aaaa-1111", "key-bbbb-2222"), models=("model-p", "model-a"), **pool_kwargs):
        pool = make_pool(keys, **pool_kwargs)
        chain = ModelChain(preferred=models[0], fallback_models=list(models))
        return GenerationClient(pool, chain, stream_fn=stream)

    return _make_client


# ---------------------------------------------------------------------------
# Scripted upstream replies for whole-workflow tests
# ---------------------------------------------------------------------------

OUTLINE = (
    "I. RATIONALE\n"
    "II. THEORETICAL BACKGROUND\n"
    "III. CURRENT SITUATION\n"
    "IV. SOLUTIONS\n"
    "   SOLUTION 1: Reading corners\n"
    "   SOLUTION 2: Paired reading\n"
    "   SOLUTION 3: Reading journals\n"
    "V. RESULTS\n"
    "VI. CONCLUSIONS\n\n"
    "**Would you like to revise the outline?**"
)
REVISED_OUTLINE = OUTLINE.replace("Reading journals", "Digital reading journals")


def solution_body(number: int, title: str = "Reading corners", steps: int = 3) -> str:
    lines = [f"### SOLUTION {number}: {title}", "", f"#### {number}.1. Objective", "Students read aloud with confidence.", ""]
    for step in range(1, steps + 1):
        lines.append(f"Step {step}: The teacher prepares the corner materials and explains the rules of the activity to the class.")
        lines.append("")
    lines.extend(["Illustrative example: a reading lesson from the textbook.", "", f"END OF SOLUTION {number}"])
    return "\n".join(lines)


def revised_body(number: int) -> str:
    return "\n".join(
        [
            f"### SOLUTION {number}: Short version",
            "",
            "Step 1: Students pick a book.",
            "",
            f"END OF SOLUTION {number}",
        ]
    )


def scripted_reply(instruction: str) -> str:
    revision = re.search(r"reviewed SOLUTION (\d+)", instruction)
    if revision:
        return revised_body(int(revision.group(1)))
    if "changes to the outline" in instruction:
        return REVISED_OUTLINE
    if "DETAILED OUTLINE" in instruction:
        return OUTLINE
    if "PART I (Rationale)" in instruction:
        return "## PART I. RATIONALE\n\nReading matters.\n\n## PART II. THEORETICAL BACKGROUND\n\nTheory."
    if "PART III (Current situation)" in instruction:
        return "## PART III. CURRENT SITUATION\n\n| Level | Students |\n|---|---|\n| Good | 12 |"
    first = re.search(r"SOLUTION (\d+) OF (\d+)", instruction)
    if first:
        return "## PART IV. SOLUTIONS (DETAILED)\n\n" + solution_body(int(first.group(1)))
    following = re.search(r"write SOLUTION (\d+) of", instruction)
    if following:
        return solution_body(int(following.group(1)), title=f"Solution number {following.group(1)}")
    if "PART V (Results)" in instruction:
        return "## PART V. RESULTS\n\nFluency improved.\n\n## PART VI. CONCLUSIONS AND RECOMMENDATIONS\n\nKeep going."
    if "APPENDIX" in instruction:
        return "## APPENDIX\n\nReferences."
    raise AssertionError(f"Unexpected instruction: {instruction[:200]}")


@pytest.fixture
def scripted_stream():
    return FakeStream(handler=lambda api_key, model, instruction: scripted_reply(instruction))


@pytest.fixture
def make_stream():
    return FakeStream


@pytest.fixture
def samples():
    """Scripted replies shared by the workflow tests."""
    return SimpleNamespace(
        outline=OUTLINE,
        revised_outline=REVISED_OUTLINE,
        solution=solution_body,
        revised=revised_body,
        reply=scripted_reply,
    )
