"""Embed builders for the live status message, tool cards and diff cards."""

from __future__ import annotations

from collections.abc import Mapping

from threadrelay.bridge.chat import Button, Embed
from threadrelay.bridge.execution.text import escape_code_fences
from threadrelay.bridge.execution.tools import format_counts_summary, shorten_path
from threadrelay.bridge.models.enums import ToolCardStatus
from threadrelay.bridge.models.session import DiffEntry

STATUS_COLOR = 0x5865F2
DONE_COLOR = 0x57F287
ERROR_COLOR = 0xED4245

OUTPUT_TAIL_LINES = 8
OUTPUT_MAX_CHARS = 3800

_ICONS = {
    ToolCardStatus.RUNNING: "⏳",
    ToolCardStatus.DONE: "✅",
    ToolCardStatus.ERROR: "❌",
}
_COLORS = {
    ToolCardStatus.RUNNING: STATUS_COLOR,
    ToolCardStatus.DONE: DONE_COLOR,
    ToolCardStatus.ERROR: ERROR_COLOR,
}
_RULE = "┄" * 8


def status_embed(tool_counts: Mapping[str, int]) -> Embed:
    """'Thinking...' before any tool ran this turn, 'Working...' plus counts after."""
    if not tool_counts:
        return Embed(description="*Thinking...*", color=STATUS_COLOR)
    return Embed(
        description="*Working...*",
        color=STATUS_COLOR,
        footer=format_counts_summary(tool_counts) or None,
    )


def truncate_output(text: str, max_lines: int = OUTPUT_TAIL_LINES, max_chars: int = OUTPUT_MAX_CHARS) -> str:
    """Keep the last *max_lines* lines of tool output, capped at *max_chars*."""
    lines = text.split("\n")
    if len(lines) > max_lines:
        result = f"... ({len(lines) - max_lines} lines hidden)\n" + "\n".join(lines[-max_lines:])
    else:
        result = text
    return result[-max_chars:] if len(result) > max_chars else result


def tool_card_embed(
    name: str,
    detail: str,
    *,
    status: ToolCardStatus = ToolCardStatus.RUNNING,
    output: str | None = None,
    elapsed_seconds: float | None = None,
) -> Embed:
    description = f"{_ICONS[status]} **{name}**"
    if detail:
        description += f"  `{detail}`"
    if output:
        description += f"\n{_RULE}\n```\n{escape_code_fences(truncate_output(output))}\n```"
    footer = f"⏱ {elapsed_seconds:.1f}s" if elapsed_seconds is not None else None
    return Embed(description=description, color=_COLORS[status], footer=footer)


# -- Diff cards ----------------------------------------------------------------


def diff_summary_embed(entry: DiffEntry) -> Embed:
    icon = "📝" if entry.is_new_file else "✏️"
    stats = []
    if entry.lines_added > 0:
        stats.append(f"+{entry.lines_added} added")
    if entry.lines_removed > 0:
        stats.append(f"-{entry.lines_removed} removed")
    path = shorten_path(entry.file_path, entry.working_dir)
    return Embed(description=f"{icon} `{path}`\n{' · '.join(stats)}", color=DONE_COLOR)


def show_diff_button(diff_id: str) -> Button:
    return Button(custom_id=diff_id, label="Show Diff", emoji="📄")


def hide_diff_button(diff_id: str) -> Button:
    return Button(custom_id=f"hide-{diff_id}", label="Hide Diff", emoji="📄")
