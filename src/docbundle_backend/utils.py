"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided names for download filenames and archive entries
- Ensuring directory creation
- Millisecond timestamps used to disambiguate generated files
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Iterable

# Characters allowed in a download base name; everything else becomes "_"
DOWNLOAD_NAME_PATTERN = re.compile(r"[^a-zA-Z0-9_-]")

# Characters allowed in an archive entry name
ENTRY_NAME_PATTERN = re.compile(r"[^a-zA-Z0-9._ -]+")

# Longest stem kept in generated file names; filesystems cap names at 255 bytes
MAX_STEM_LENGTH = 100


def safe_download_name(*candidates: str | None, fallback: str) -> str:
    """
    Build a download base name from the first non-empty candidate.

    Every character outside ``[A-Za-z0-9_-]`` is replaced with an underscore
    and the result is cut to ``MAX_STEM_LENGTH`` characters.

    Example:
        >>> safe_download_name("John Doe", fallback="merged_documents")
        "John_Doe"
        >>> safe_download_name(None, "", fallback="compressed")
        "compressed"
    """
    chosen = next((candidate for candidate in candidates if candidate and candidate.strip()), fallback)
    return DOWNLOAD_NAME_PATTERN.sub("_", chosen.strip())[:MAX_STEM_LENGTH]


def safe_entry_name(name: str, fallback: str = "document.pdf") -> str:
    """
    Strip directory components and unsafe characters from an archive entry name.

    The stem is cut to ``MAX_STEM_LENGTH`` characters; the suffix is kept.
    """
    base = Path(name.replace("\\", "/")).name
    cleaned = ENTRY_NAME_PATTERN.sub("_", base).strip(" .")
    if not cleaned:
        return fallback
    stem, suffix = Path(cleaned).stem, Path(cleaned).suffix
    if len(suffix) > 10:
        stem, suffix = cleaned, ""
    return f"{stem[:MAX_STEM_LENGTH]}{suffix}"


def unique_names(names: Iterable[str]) -> list[str]:
    """
    De-duplicate names while preserving order, appending " (n)" before the suffix.

    Example:
        >>> unique_names(["a.pdf", "a.pdf", "b.pdf"])
        ["a.pdf", "a (1).pdf", "b.pdf"]
    """
    seen: set[str] = set()
    result: list[str] = []
    for name in names:
        candidate = name
        stem, suffix = Path(name).stem, Path(name).suffix
        counter = 1
        while candidate.lower() in seen:
            candidate = f"{stem} ({counter}){suffix}"
            counter += 1
        seen.add(candidate.lower())
        result.append(candidate)
    return result


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def timestamp_ms() -> int:
    """Current UNIX time in milliseconds."""
    return int(time.time() * 1000)
