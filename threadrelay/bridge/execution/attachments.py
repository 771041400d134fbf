"""Inbound attachment download.

Files attached to a chat message are saved into ``<working_dir>/<upload dir>/``
(overwriting same-named files) so the agent can read them, and the prompt is
told where they are.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

import httpx
from anyio import to_thread

from threadrelay.bridge.chat import InboundAttachment

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30.0


def _safe_name(filename: str, index: int) -> str:
    # Only the basename; attachment names must not escape the upload dir.
    name = Path(filename).name if filename else ""
    return name or f"file-{index}"


def _write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def download_attachments(
    attachments: Sequence[InboundAttachment],
    working_dir: str,
    upload_dir_name: str,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> list[str]:
    """Download *attachments* and return the saved file names.

    Failures are logged and skipped; the remaining files are still saved.
    A temporary HTTP client is created if none is given.
    """
    if not attachments:
        return []

    target_dir = Path(working_dir) / upload_dir_name
    saved: list[str] = []
    own_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT)
    try:
        for index, attachment in enumerate(attachments, start=1):
            name = _safe_name(attachment.filename, index)
            dest = target_dir / name
            try:
                response = await client.get(attachment.url, follow_redirects=True)
                response.raise_for_status()
                await to_thread.run_sync(_write, dest, response.content)
            except (httpx.HTTPError, OSError):
                logger.exception("Failed to download attachment %s", name)
                continue
            saved.append(name)
            logger.info("Saved attachment %s to %s", name, dest)
    finally:
        if own_client:
            await client.aclose()
    return saved


def with_attachment_note(prompt: str, saved: Sequence[str], upload_dir_name: str) -> str:
    """Append the ``[Attached files saved to: ...]`` note when files were saved."""
    if not saved:
        return prompt
    listing = ", ".join(f"{upload_dir_name}/{name}" for name in saved)
    return f"{prompt}\n\n[Attached files saved to: {listing}]"
