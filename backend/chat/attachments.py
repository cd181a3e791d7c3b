from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any

from chat.message_store import AttachmentRecord

logger = logging.getLogger(__name__)

MAX_TEXT_ATTACHMENT_BYTES = 200_000

TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/typescript",
    "application/x-typescript",
    "application/x-javascript",
    "application/x-sh",
    "application/x-yaml",
    "application/yaml",
    "application/x-toml",
    "application/toml",
    "text/markdown",
}

TEXT_EXTENSIONS = set(
    (
        ".txt .md .markdown .json .jsonl .csv .tsv .xml .html .htm .js .jsx .ts .tsx "
        ".css .scss .yml .yaml .toml .py .rb .go .rs .java .c .h .cpp .swift .kt .sh "
        ".sql .log"
    ).split()
)


def _attachment_note(attachment: AttachmentRecord) -> str:
    return f"[Attached {attachment.kind}: {attachment.filename}]"


def is_text_attachment(attachment: AttachmentRecord) -> bool:
    if attachment.kind == "image":
        return False
    if attachment.mime_type.startswith("text/"):
        return True
    if attachment.mime_type in TEXT_MIME_TYPES:
        return True
    return Path(attachment.filename).suffix.lower() in TEXT_EXTENSIONS


def resolve_attachment_path(attachment: AttachmentRecord, storage_root: Path) -> Path:
    path = Path(attachment.storage_path)
    return path if path.is_absolute() else storage_root / path


def _text_block(attachment: AttachmentRecord, storage_root: Path) -> str:
    if not is_text_attachment(attachment):
        return _attachment_note(attachment)
    try:
        raw = resolve_attachment_path(attachment, storage_root).read_bytes()
    except OSError:
        logger.warning("Attachment %s is unreadable", attachment.id)
        return _attachment_note(attachment)

    truncated = len(raw) > MAX_TEXT_ATTACHMENT_BYTES
    content = raw[:MAX_TEXT_ATTACHMENT_BYTES].decode("utf-8", errors="replace").rstrip()
    note = "\n\n[Truncated]" if truncated else ""
    return f"---\n[Attachment: {attachment.filename}]\n{content}{note}\n---"


def build_user_content(
    text: str,
    attachments: list[AttachmentRecord],
    *,
    supports_vision: bool,
    storage_root: Path,
) -> str | list[dict[str, Any]]:
    """Render the user turn with text attachments inlined and images as data URLs."""
    blocks = [
        _text_block(attachment, storage_root)
        for attachment in attachments
        if attachment.kind != "image"
    ]
    base_text = "\n\n".join(part for part in [text, *blocks] if part)

    images = [a for a in attachments if a.kind == "image"] if supports_vision else []
    if not images:
        return base_text

    parts: list[dict[str, Any]] = [{"type": "text", "text": base_text}]
    for attachment in images:
        try:
            raw = resolve_attachment_path(attachment, storage_root).read_bytes()
        except OSError:
            logger.warning("Image attachment %s is unreadable", attachment.id)
            continue
        encoded = base64.b64encode(raw).decode("ascii")
        parts.append(
            {
                "type": "image_url",
                "image_url": {"url": f"data:{attachment.mime_type};base64,{encoded}"},
            }
        )
    return parts
