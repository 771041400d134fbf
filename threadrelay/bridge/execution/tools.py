"""Per-tool display helpers.

Derives the short detail shown on a tool card, the status footer summary,
diff captures for file-editing tools, and image paths worth attaching.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from threadrelay.bridge.models.session import DiffEntry

TOOL_CATEGORIES: dict[str, str] = {
    "Read": "file read",
    "Write": "file write",
    "Edit": "file edit",
    "Bash": "command",
    "Grep": "search",
    "Glob": "search",
    "Task": "task",
    "WebFetch": "web fetch",
    "WebSearch": "web search",
}

DIFF_TOOLS = frozenset({"Edit", "Write"})

MAX_COMMAND_DETAIL = 80

IMAGE_EXTENSION_RE = re.compile(r"\.(png|jpe?g|gif|webp|svg|bmp)$", re.IGNORECASE)

# Absolute, ./relative, dir/relative or bare image filenames, delimited by
# whitespace, backticks or parentheses.
_IMAGE_PATH_RE = re.compile(
    r"(?:^|[\s`(])((?:/|\.{1,2}/)?[\w./ -]+\.(?:png|jpe?g|gif|webp|svg|bmp))(?=$|[\s`),;:!?])",
    re.IGNORECASE | re.MULTILINE,
)


def shorten_path(path: str, working_dir: str) -> str:
    prefix = working_dir.rstrip("/") + "/"
    if working_dir and path.startswith(prefix):
        return path[len(prefix) :]
    return path


def tool_detail(name: str, tool_input: Mapping[str, Any], working_dir: str) -> str:
    """Return a short human-readable detail for a tool call, or ``""``."""
    match name:
        case "Read" | "Write" | "Edit":
            return shorten_path(str(tool_input.get("file_path") or ""), working_dir)
        case "Bash":
            command = str(tool_input.get("command") or "")
            if len(command) > MAX_COMMAND_DETAIL:
                return command[: MAX_COMMAND_DETAIL - 3] + "..."
            return command
        case "Grep" | "Glob":
            return str(tool_input.get("pattern") or "")
        case "WebFetch":
            return str(tool_input.get("url") or "")
        case "WebSearch":
            return str(tool_input.get("query") or "")
        case "Task":
            return str(tool_input.get("description") or "")
        case _:
            return ""


def format_counts_summary(tool_counts: Mapping[str, int]) -> str:
    """Summarise per-tool counts by category, e.g. ``2 file reads · 1 command``."""
    categories: dict[str, int] = {}
    for tool, count in tool_counts.items():
        category = TOOL_CATEGORIES.get(tool, tool)
        categories[category] = categories.get(category, 0) + count
    return " · ".join(f"{count} {cat}{'' if count == 1 else 's'}" for cat, count in categories.items())


def _count_lines(text: str) -> int:
    return len(text.split("\n")) if text else 0


def capture_diff(name: str, tool_input: Mapping[str, Any], working_dir: str, now: float) -> DiffEntry | None:
    """Capture before/after content for an Edit or Write call."""
    if name not in DIFF_TOOLS:
        return None
    if name == "Edit":
        old = str(tool_input.get("old_string") or "")
        new = str(tool_input.get("new_string") or "")
    else:
        old = ""
        new = str(tool_input.get("content") or "")
    return DiffEntry(
        file_path=str(tool_input.get("file_path") or ""),
        old_string=old,
        new_string=new,
        lines_added=_count_lines(new),
        lines_removed=_count_lines(old),
        is_new_file=name == "Write",
        working_dir=working_dir,
        created_at=now,
    )


def _resolve(path: str, working_dir: str) -> str:
    return path if os.path.isabs(path) else os.path.normpath(os.path.join(working_dir, path))


def image_path_from_input(tool_input: Mapping[str, Any], working_dir: str) -> str | None:
    """Return the resolved image file a tool call touches, if it exists."""
    raw = tool_input.get("file_path") or tool_input.get("path")
    if not isinstance(raw, str) or not IMAGE_EXTENSION_RE.search(raw):
        return None
    resolved = _resolve(raw, working_dir)
    return resolved if Path(resolved).is_file() else None


def extract_image_paths(text: str, working_dir: str) -> list[str]:
    """Return existing image files mentioned in *text*, in order, deduplicated."""
    found: list[str] = []
    for match in _IMAGE_PATH_RE.finditer(text):
        candidate = match.group(1).strip()
        # Paths may contain spaces, so the match can swallow preceding words.
        for raw in (candidate, candidate.rsplit(" ", 1)[-1]):
            resolved = _resolve(raw, working_dir)
            if Path(resolved).is_file():
                if resolved not in found:
                    found.append(resolved)
                break
    return found


def merge_attachments(text_paths: Iterable[str], tool_paths: Iterable[str]) -> list[str]:
    """Combine attachment paths, keeping the first of any shared filename."""
    merged: list[str] = []
    names: set[str] = set()
    for path in (*text_paths, *tool_paths):
        name = os.path.basename(path)
        if name in names or not Path(path).is_file():
            continue
        names.add(name)
        merged.append(path)
    return merged
