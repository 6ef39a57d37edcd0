import asyncio
import io
import logging
import re
from uuid import uuid4

from docx import Document
from docx.document import Document as DocxDocument
from docx.text.paragraph import Paragraph

from docwriter.core.exceptions import DocBuilderError

# Configure module logger
logger = logging.getLogger(__name__)

HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)$")
BULLET_RE = re.compile(r"^\s*[-*•]\s+(.*)$")
NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s+(.*)$")
TABLE_ROW_RE = re.compile(r"^\s*\|.*\|\s*$")
TABLE_DIVIDER_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$")
SEPARATOR_RE = re.compile(r"^\s*(?:-{3,}|\*{3,}|_{3,}|━{3,})\s*$")
BOLD_RE = re.compile(r"\*\*(.+?)\*\*")


def _add_runs(paragraph: Paragraph, text: str) -> None:
    """Add ``text`` to ``paragraph``, turning ``**bold**`` spans into bold runs."""
    pos = 0
    for match in BOLD_RE.finditer(text):
        if match.start() > pos:
            paragraph.add_run(text[pos : match.start()])
        paragraph.add_run(match.group(1)).bold = True
        pos = match.end()
    if pos < len(text):
        paragraph.add_run(text[pos:])


def _split_row(line: str) -> list[str]:
    return [cell.strip() for cell in line.strip().strip("|").split("|")]


def _add_table(doc: DocxDocument, rows: list[list[str]]) -> None:
    width = max(len(r) for r in rows)
    table = doc.add_table(rows=len(rows), cols=width)
    table.style = "Table Grid"
    for r_idx, row in enumerate(rows):
        for c_idx in range(width):
            cell = table.cell(r_idx, c_idx)
            cell.text = ""
            _add_runs(cell.paragraphs[0], row[c_idx] if c_idx < len(row) else "")
            if r_idx == 0:
                for run in cell.paragraphs[0].runs:
                    run.bold = True


def _render_markdown(doc: DocxDocument, markdown_text: str) -> None:
    table_rows: list[list[str]] = []

    def flush_table() -> None:
        if table_rows:
            _add_table(doc, table_rows)
            table_rows.clear()

    for raw_line in markdown_text.splitlines():
        line = raw_line.rstrip()

        if TABLE_ROW_RE.match(line):
            if not TABLE_DIVIDER_RE.match(line):
                table_rows.append(_split_row(line))
            continue
        flush_table()

        if not line.strip() or SEPARATOR_RE.match(line):
            continue

        heading = HEADING_RE.match(line)
        if heading:
            level = min(len(heading.group(1)), 4)
            doc.add_heading(heading.group(2).strip("* ").strip(), level=level)
            continue

        bullet = BULLET_RE.match(line)
        if bullet:
            _add_runs(doc.add_paragraph(style="List Bullet"), bullet.group(1))
            continue

        numbered = NUMBERED_RE.match(line)
        if numbered:
            _add_runs(doc.add_paragraph(style="List Number"), numbered.group(1))
            continue

        _add_runs(doc.add_paragraph(), line.strip())

    flush_table()


async def build_docx(markdown_text: str, title: str | None = None) -> bytes:
    """Convert the accumulated Markdown document into DOCX bytes."""

    def _sync(text: str, doc_title: str | None) -> bytes:
        rid = str(uuid4())
        logger.info("[%s] Building DOCX from %d chars of Markdown", rid, len(text))
        try:
            doc = Document()
            if doc_title:
                doc.add_heading(doc_title, level=0)
            _render_markdown(doc, text)

            bio = io.BytesIO()
            doc.save(bio)
            size = bio.tell()
            bio.seek(0)
            logger.info("[%s] Report ready (%d bytes)", rid, size)
            return bio.read()
        except Exception as err:
            logger.exception("[%s] Report generation failed", rid)
            raise DocBuilderError("unexpected rendering error") from err

    # run sync work in a thread
    return await asyncio.to_thread(_sync, markdown_text, title)
