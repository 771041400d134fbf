"""Tests for outbound text chunking and table rendering."""

from __future__ import annotations

from threadrelay.bridge.execution.text import (
    MAX_MESSAGE_LENGTH,
    escape_code_fences,
    find_split_point,
    open_fence,
    render_table,
    split_message,
    wrap_tables,
)


def test_short_text_is_single_chunk() -> None:
    assert split_message("hello") == ["hello"]
    assert split_message("") == [""]


def test_split_prefers_paragraph_break() -> None:
    text = "a" * 60 + "\n\n" + "b" * 30 + "\n" + "c" * 5
    assert find_split_point(text) == 62


def test_split_falls_back_to_hard_cut() -> None:
    chunks = split_message("a" * 4000)
    assert len(chunks) == 3
    assert all(len(c) <= MAX_MESSAGE_LENGTH for c in chunks)
    assert "".join(chunks) == "a" * 4000


def test_split_on_words_respects_limit() -> None:
    text = ("lorem ipsum " * 400).strip()
    chunks = split_message(text)

    assert len(chunks) > 1
    assert all(len(c) <= MAX_MESSAGE_LENGTH for c in chunks)
    assert "".join(chunks) == text


def test_open_code_fence_is_closed_and_reopened() -> None:
    text = "Here:\n```python\n" + "x = 1\n" * 400 + "```\nDone."
    chunks = split_message(text)

    assert len(chunks) == 2
    assert all(len(c) <= MAX_MESSAGE_LENGTH for c in chunks)
    assert chunks[0].endswith("\n```")
    assert chunks[1].startswith("```python\n")
    assert chunks[1].endswith("```\nDone.")


def test_open_fence_detection() -> None:
    assert open_fence("```js\nlet a") == "```js"
    assert open_fence("```js\nlet a\n```") is None
    assert open_fence("no code") is None


def test_escape_code_fences() -> None:
    assert "```" not in escape_code_fences("before ``` after")


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

TABLE = "| Name | Score |\n|------|-------|\n| alice | 10 |\n| bob | 7 |"


def test_render_table_draws_box() -> None:
    rendered = render_table(TABLE.split("\n"))

    assert rendered is not None
    assert rendered.startswith("┌")
    assert "alice" in rendered
    assert "Score" in rendered
    assert "|---" not in rendered


def test_single_row_is_not_a_table() -> None:
    assert render_table(["| just | one |"]) is None


def test_wrap_tables_in_code_block() -> None:
    wrapped = wrap_tables(f"Results:\n{TABLE}\nThat's all.")
    lines = wrapped.split("\n")

    assert lines[0] == "Results:"
    assert lines[1] == "```"
    assert lines[2].startswith("┌")
    assert lines[-2] == "```"
    assert lines[-1] == "That's all."


def test_tables_inside_code_blocks_are_untouched() -> None:
    text = f"```\n{TABLE}\n```"
    assert wrap_tables(text) == text


def test_text_without_pipes_is_untouched() -> None:
    assert wrap_tables("plain text") == "plain text"
