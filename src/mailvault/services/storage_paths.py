"""Object key and archive entry path helpers.

Every user-controlled value that ends up in a storage key or a zip entry
name (source names, mailbox folders, attachment filenames) goes through
these sanitizers, so exported paths are printable ASCII without path
separators or shell-hostile characters.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import uuid

DEFAULT_MAX_SEGMENT_LENGTH = 80

_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")
_RESERVED = re.compile(r'[\\/:*?"<>|]')
_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"-+")
_EDGE = re.compile(r"^[-.]+|[-.]+$")
_SEPARATORS = re.compile(r"[\\/]")


def sanitize_path_segment(
    value: str | None,
    fallback: str = "unknown",
    max_length: int = DEFAULT_MAX_SEGMENT_LENGTH,
) -> str:
    """Reduce an arbitrary string to a single safe path segment.

    Non-printable and non-ASCII characters are dropped, separators and
    reserved characters become dashes, whitespace and dash runs collapse
    to a single dash, and leading/trailing dashes and dots are stripped.

    Returns:
        The sanitized segment (at most max_length characters), or fallback
        when nothing is left.
    """
    normalized = _NON_PRINTABLE.sub("", str(value or "")).strip()
    if not normalized:
        return fallback

    replaced = _RESERVED.sub("-", normalized)
    collapsed = _DASHES.sub("-", _WHITESPACE.sub("-", replaced))
    trimmed = _EDGE.sub("", collapsed)
    return trimmed[:max_length] or fallback


def sanitize_mailbox_path(mailbox_path: str | None) -> str:
    """Sanitize each folder of a mailbox path, keeping '/' between them."""
    if not mailbox_path:
        return ""
    parts = (sanitize_path_segment(part, "folder") for part in _SEPARATORS.split(mailbox_path))
    return "/".join(part for part in parts if part)


def sanitize_filename(filename: str | None, fallback: str = "file") -> str:
    """Sanitize a filename, treating base name and extension separately."""
    name = filename or ""
    base, dot, ext = name.rpartition(".")
    # No dot, or a leading dot only ('.bashrc'): the whole name is the base
    if not dot or not base:
        base, ext = name, ""

    safe_base = sanitize_path_segment(base, fallback)
    safe_ext = sanitize_path_segment(ext, "") if ext else ""
    return f"{safe_base}.{safe_ext}" if safe_ext else safe_base


def build_source_folder_name(name: str | None, source_id: uuid.UUID | str) -> str:
    """Folder name for an ingestion source: '<sanitized name>-<id>'."""
    return f"{sanitize_path_segment(name, 'source')}-{source_id}"


def export_storage_path(folder_name: str, export_job_id: uuid.UUID | str) -> str:
    """Object key of a targeted export container."""
    return f"{folder_name}/exports/{export_job_id}/export.zip"


def archive_export_storage_path(folder_name: str, archive_export_job_id: uuid.UUID | str) -> str:
    """Object key of a full archive export container."""
    return f"{folder_name}/archive-exports/{archive_export_job_id}/export.zip"


def eml_entry_path(source_folder: str, mailbox_path: str | None, record_id: uuid.UUID | str) -> str:
    """Zip entry name of a record's raw message."""
    folder = sanitize_mailbox_path(mailbox_path)
    if folder:
        return f"eml/{source_folder}/{folder}/{record_id}.eml"
    return f"eml/{source_folder}/{record_id}.eml"


def attachment_entry_path(attachment_id: uuid.UUID | str, filename: str | None) -> str:
    """Zip entry name of an attachment blob."""
    return f"attachments/{attachment_id}/{sanitize_filename(filename)}"
