"""Outbound text helpers: chunking to the chat message limit, fence escaping
and markdown table rendering."""

from __future__ import annotations

import io
import re

from rich import box
from rich.console import Console
from rich.table import Table

MAX_MESSAGE_LENGTH = 1950

_FENCE_RE = re.compile(r"^```[^\s`]*", re.MULTILINE)
_CLOSE_FENCE = "\n```"


def find_split_point(text: str) -> int:
    """Return the index to cut *text* at.

    Prefers a paragraph break, then a line break, then a space, as long as the
    cut keeps more than half of the text; otherwise splits hard at the end.
    """
    half = len(text) * 0.5
    for sep in ("\n\n", "\n", " "):
        idx = text.rfind(sep)
        if idx > half:
            return idx + len(sep)
    return len(text)


def open_fence(text: str) -> str | None:
    """Return the opening line of a code fence left unclosed in *text*."""
    fence: str | None = None
    for match in _FENCE_RE.finditer(text):
        fence = match.group(0) if fence is None else None
    return fence


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split *text* into chunks of at most *limit* characters.

    A code fence that is open at a cut is closed at the end of that chunk and
    reopened (with its language tag) at the start of the next one.
    """
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    reopen = ""
    while remaining:
        if len(reopen) + len(remaining) <= limit:
            chunks.append(reopen + remaining)
            break
        budget = max(limit - len(reopen) - len(_CLOSE_FENCE), 1)
        cut = find_split_point(remaining[:budget])
        piece = reopen + remaining[:cut]
        remaining = remaining[cut:]
        fence = open_fence(piece)
        if fence is not None:
            piece = piece.rstrip("\n") + _CLOSE_FENCE
            reopen = fence + "\n"
        else:
            reopen = ""
        chunks.append(piece)
    return chunks


def escape_code_fences(text: str) -> str:
    """Break up triple backticks so *text* can sit inside a code block."""
    return text.replace("```", "`\u200b``")


# -- Markdown tables -----------------------------------------------------------

_TABLE_LINE_RE = re.compile(r"^\|.+\|$")
_SEPARATOR_RE = re.compile(r"^\|[\s\-:|]+\|$")
_CODE_BLOCK_RE = re.compile(r"```.*?```", re.DOTALL)
TABLE_RENDER_WIDTH = 200


def _cells(line: str) -> list[str]:
    return [c.strip() for c in line.strip().strip("|").split("|")]


def render_table(lines: list[str]) -> str | None:
    """Render markdown table rows as a box-drawn table, or ``None`` if not a table."""
    rows = [_cells(line) for line in lines if not _SEPARATOR_RE.match(line.strip())]
    if len(lines) < 2 or not rows:
        return None
    header, body = rows[0], rows[1:]
    table = Table(box=box.SQUARE, show_header=True, header_style=None, pad_edge=True)
    for name in header:
        table.add_column(name)
    for row in body:
        row = (row + [""] * len(header))[: len(header)]
        table.add_row(*row)
    console = Console(
        file=io.StringIO(), width=TABLE_RENDER_WIDTH, color_system=None, highlight=False, markup=False, emoji=False
    )
    console.print(table)
    rendered = console.file.getvalue()  # type: ignore[attr-defined]
    return "\n".join(line.rstrip() for line in rendered.rstrip("\n").split("\n"))


def _wrap_segment(segment: str) -> str:
    out: list[str] = []
    pending: list[str] = []

    def flush() -> None:
        rendered = render_table(pending) if pending else None
        if rendered is None:
            out.extend(pending)
        else:
            out.extend(["```", rendered, "```"])
        pending.clear()

    for line in segment.split("\n"):
        if _TABLE_LINE_RE.match(line.strip()):
            pending.append(line)
            continue
        flush()
        out.append(line)
    flush()
    return "\n".join(out)


def wrap_tables(text: str) -> str:
    """Turn markdown tables outside code blocks into monospace box tables."""
    if "|" not in text:
        return text
    parts: list[str] = []
    last = 0
    for match in _CODE_BLOCK_RE.finditer(text):
        parts.append(_wrap_segment(text[last : match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(_wrap_segment(text[last:]))
    return "".join(parts)
