"""
Utility functions for filenames, storage keys and content hashing.

This module provides helper functions for:
- Sanitizing user-provided filenames for use in object storage keys
- Splitting filenames into stem and normalized extension
- Building the storage key for an uploaded lesson file
- Hashing uploaded bytes for deduplication metadata
"""

from __future__ import annotations

import hashlib
import re
from pathlib import PurePosixPath

# Pattern to match characters that are not safe for storage keys
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a storage-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, storage-safe label or the fallback value

    Example:
        >>> sanitize_label("My Worksheet!", "file")
        "my-worksheet"
        >>> sanitize_label("@#$", "file")
        "file"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercase extension without the dot.

    Example:
        >>> split_extension("Unit 3/Phonics.PNG")
        ("Phonics", "png")
        >>> split_extension("README")
        ("README", "")
        >>> split_extension(".png")
        ("", "png")
    """
    path = PurePosixPath(filename.replace("\\", "/"))
    if not path.suffix and path.name.startswith(".") and path.name.strip("."):
        # pathlib treats ".png" as a stem with no suffix
        return "", path.name[1:].lower()
    return path.stem, path.suffix.lstrip(".").lower()


def sanitize_filename(filename: str) -> str:
    stem, ext = split_extension(filename)
    safe_stem = sanitize_label(stem, fallback="file")
    return f"{safe_stem}.{ext}" if ext else safe_stem


def build_storage_key(prefix: str, lesson_id: str, file_id: str, filename: str) -> str:
    """Object key for an uploaded lesson file: ``{prefix}/{lesson}/{file}/{name}``."""
    parts = [
        prefix.strip("/"),
        sanitize_label(lesson_id, fallback="lesson"),
        sanitize_label(file_id, fallback="file"),
        sanitize_filename(filename),
    ]
    return "/".join(part for part in parts if part)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
