"""
Utility functions for file names, tags and timestamps.

This module provides helper functions for:
- Sanitizing user-provided strings into tag/filename slugs
- Ensuring directory creation for the local database
- Extracting normalized file extensions
- Producing timezone-aware UTC timestamps
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

# Pattern to match characters that are not safe for filesystem paths or tags
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("Die Cut", "untagged")
        "die-cut"
        >>> sanitize_label("@#$", "untagged")
        "untagged"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


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


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercase extension (without the dot).

    Example:
        >>> split_extension("Logo FINAL.AI")
        ("Logo FINAL", "ai")
        >>> split_extension("artwork")
        ("artwork", "")
    """
    path = Path(filename)
    return path.stem, path.suffix.lower().lstrip(".")


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Lowercase, strip and de-duplicate tags, preserving first-seen order."""
    seen: List[str] = []
    for tag in tags or []:
        cleaned = tag.strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
