"""Locate the detailed body of a numbered section inside the accumulated document.

The document usually mentions every section twice: once as a terse line in
the outline and once as the full body written later. Extraction tries a
short list of pure strategies in priority order and stops at the first one
that finds a span:

* ``heading``: a decorated, detailed heading (``### SOLUTION 2: <title>``) after the
  last "body start" marker (the ``PART IV`` heading of the full draft).
* ``detail_window``: the first bare label occurrence whose following text is
  long enough and carries at least one detail indicator.
* ``segment_scan``: the document split on separator lines, scanned from the
  end backwards.

When nothing qualifies a not-found sentinel is returned. Callers must not
fall back to a guess.
"""

import logging
import re
from collections.abc import Callable

from pydantic import BaseModel

from docwriter.core.config import settings
from docwriter.core.exceptions import ExtractionNotFoundError
from docwriter.models.session_models import ExtractedSection

# Configure module logger
logger = logging.getLogger(__name__)

Span = tuple[int, int]

BODY_START_PATTERN = re.compile(r"^[ \t]*(?:#{1,3}[ \t]*)?(?:\*\*)?[ \t]*PART[ \t]+IV\b", re.IGNORECASE | re.MULTILINE)
PART_HEADING_PATTERN = re.compile(r"^[ \t]*(?:#{1,2}[ \t]*)?(?:\*\*)?[ \t]*(?:PART[ \t]+[IVX]+\b|APPENDIX\b)", re.IGNORECASE | re.MULTILINE)
SEPARATOR_PATTERN = re.compile(r"^[ \t]*(?:-{3,}|\*{3,}|_{3,}|={3,}|━{3,})[ \t]*$", re.MULTILINE)

DETAIL_INDICATORS = [
    re.compile(r"^[ \t]*#{3,6}[ \t]+\S", re.MULTILINE),  # sub-heading
    re.compile(r"^[ \t]*\**\d+\.\d+\.?\**[ \t]+\S", re.MULTILINE),  # numbered sub-section, "2.3. Procedure"
    re.compile(r"\bStep[ \t]+\d+\b", re.IGNORECASE),
    re.compile(r"\b(?:illustrative example|example|for instance)\b", re.IGNORECASE),
]


class ExtractorParams(BaseModel):
    label: str = "SOLUTION"
    min_length: int = 300
    detail_window: int = 4000
    min_end_distance: int = 80

    @classmethod
    def from_settings(cls) -> "ExtractorParams":
        return cls(
            label=settings.section_label,
            min_length=settings.section_min_length,
            detail_window=settings.section_detail_window,
            min_end_distance=settings.section_min_end_distance,
        )


# ---------------------------------------------------------------------------
# Pattern helpers
# ---------------------------------------------------------------------------


def _label_pattern(label: str, section_id: int) -> re.Pattern[str]:
    # (?!\d) keeps "SOLUTION 1" from matching "SOLUTION 12"
    return re.compile(rf"\b{re.escape(label)}[ \t]+{section_id}(?!\d)", re.IGNORECASE)


def _heading_pattern(label: str, section_id: int) -> re.Pattern[str]:
    return re.compile(
        rf"^[ \t]*(?:#{{2,4}}[ \t]*(?:\*\*)?|\*\*)[ \t]*{re.escape(label)}[ \t]+{section_id}(?!\d)[ \t]*[:.\-–][ \t]*\S",
        re.IGNORECASE | re.MULTILINE,
    )


def _any_section_start_pattern(label: str) -> re.Pattern[str]:
    # A start is a heading-like line: "SOLUTION 2: ...", "**SOLUTION 2**", never prose such as "Solution 2 was ..."
    return re.compile(
        rf"^[ \t]*(?:#{{1,6}}[ \t]*)?(?:\*\*)?[ \t]*{re.escape(label)}[ \t]+\d+[ \t]*(?:\*\*)?[ \t]*(?:[:.\-–]|$)",
        re.IGNORECASE | re.MULTILINE,
    )


def _end_marker_pattern(label: str, section_id: int) -> re.Pattern[str]:
    return re.compile(rf"\bEND[ \t]+OF[ \t]+{re.escape(label)}[ \t]+{section_id}(?!\d)[^\n]*", re.IGNORECASE)


def _line_start(text: str, pos: int) -> int:
    return text.rfind("\n", 0, pos) + 1


def _line_end(text: str, pos: int) -> int:
    end = text.find("\n", pos)
    return len(text) if end == -1 else end


def _decorated_start(text: str, pos: int) -> int:
    """Widen ``pos`` to the start of its line when only markup precedes it."""
    start = _line_start(text, pos)
    if re.fullmatch(r"[ \t#*>]*", text[start:pos]):
        return start
    return pos


def _rstrip_span(text: str, start: int, end: int) -> Span:
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def has_detail(text: str) -> bool:
    return any(p.search(text) for p in DETAIL_INDICATORS)


def _is_detailed(text: str, params: ExtractorParams) -> bool:
    return len(text.strip()) >= params.min_length and has_detail(text)


def section_end(text: str, start: int, section_id: int, params: ExtractorParams) -> int:
    """Offset where the section beginning at ``start`` stops.

    The next section heading and the next part heading bound the section.
    Prose that merely names a section does not. An explicit end marker
    before that bound wins. Separator lines only count once they are
    ``min_end_distance`` past the start.
    """
    search_from = _line_end(text, start)

    bound = len(text)
    for pattern in (_any_section_start_pattern(params.label), PART_HEADING_PATTERN):
        match = pattern.search(text, search_from)
        if match:
            bound = min(bound, match.start())

    end_marker = _end_marker_pattern(params.label, section_id).search(text, search_from, bound)
    if end_marker:
        return end_marker.end()

    for match in SEPARATOR_PATTERN.finditer(text, search_from, bound):
        if match.start() - start > params.min_end_distance:
            return match.start()
    return bound


# ---------------------------------------------------------------------------
# Strategies: (text, section_id, params) -> (start, end) | None
# ---------------------------------------------------------------------------


def match_heading(text: str, section_id: int, params: ExtractorParams) -> Span | None:
    body_starts = list(BODY_START_PATTERN.finditer(text))
    offset = body_starts[-1].start() if body_starts else 0

    for match in _heading_pattern(params.label, section_id).finditer(text, offset):
        start = match.start()
        end = section_end(text, start, section_id, params)
        # Outline entries use the same heading markup as the full draft
        if not _is_detailed(text[start:end], params):
            continue
        return _rstrip_span(text, start, end)
    return None


def match_detail_window(text: str, section_id: int, params: ExtractorParams) -> Span | None:
    for match in _label_pattern(params.label, section_id).finditer(text):
        start = _decorated_start(text, match.start())
        end = section_end(text, start, section_id, params)
        window = text[start : min(start + params.detail_window, end)]
        if _is_detailed(window, params):
            return _rstrip_span(text, start, end)
    return None


def match_segment_scan(text: str, section_id: int, params: ExtractorParams) -> Span | None:
    bounds = [0]
    for match in SEPARATOR_PATTERN.finditer(text):
        bounds.extend([match.start(), match.end()])
    bounds.append(len(text))
    segments = list(zip(bounds[::2], bounds[1::2], strict=True))

    label = _label_pattern(params.label, section_id)
    for seg_start, seg_end in reversed(segments):
        segment = text[seg_start:seg_end]
        found = label.search(segment)
        if found is None or not _is_detailed(segment, params):
            continue
        start = _decorated_start(text, seg_start + found.start())
        return _rstrip_span(text, start, seg_end)
    return None


STRATEGIES: list[tuple[str, Callable[[str, int, ExtractorParams], Span | None]]] = [
    ("heading", match_heading),
    ("detail_window", match_detail_window),
    ("segment_scan", match_segment_scan),
]


def extract_section(text: str, section_id: int, params: ExtractorParams | None = None) -> ExtractedSection:
    """Return the detailed occurrence of ``section_id`` or the not-found sentinel."""
    params = params or ExtractorParams.from_settings()
    if not text or section_id < 1:
        return ExtractedSection.not_found(section_id)

    for name, strategy in STRATEGIES:
        span = strategy(text, section_id, params)
        if span is None:
            continue
        start, end = span
        if end <= start:
            continue
        logger.debug("Section %d located by '%s' strategy at [%d, %d)", section_id, name, start, end)
        return ExtractedSection(
            section_id=section_id,
            start_offset=start,
            end_offset=end,
            text=text[start:end],
            strategy=name,
        )

    logger.warning("Section %d not found in a document of %d chars", section_id, len(text))
    return ExtractedSection.not_found(section_id)


def require_section(text: str, section_id: int, params: ExtractorParams | None = None) -> ExtractedSection:
    section = extract_section(text, section_id, params)
    if not section.found:
        raise ExtractionNotFoundError(section_id)
    return section
