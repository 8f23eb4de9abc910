"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem usage
- Ensuring directory creation
- Copying groups of files (fonts, template assets) between directories
- Validating identifiers that end up in paths
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger(__name__)

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

# Document identifiers and user identifiers are path components
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "default-doc")
        "my-document"
        >>> sanitize_label("@#$", "default-doc")
        "default-doc"
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

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Example:
        >>> split_extension("/path/to/photo.final.png")
        ("photo.final", ".png")
    """
    path = Path(filename)
    return path.stem, path.suffix


def safe_basename(name: str) -> str:
    """
    Strip any directory components from a user-supplied name.

    Both separators are handled so that a Windows-style path coming from a browser
    cannot smuggle a parent directory into a template or image lookup.
    """
    return name.replace("\\", "/").rstrip("/").split("/")[-1].strip()


def is_safe_identifier(value: str) -> bool:
    return bool(value) and IDENTIFIER_PATTERN.match(value) is not None


def copy_matching_files(source_dir: Path, target_dir: Path, suffixes: Iterable[str] | None = None) -> List[Path]:
    """
    Copy the regular files of ``source_dir`` into ``target_dir``.

    Args:
        source_dir: Directory to copy from; a missing directory copies nothing
        target_dir: Destination, created on demand
        suffixes: Optional case-insensitive extension filter such as ``(".ttf", ".otf")``

    Returns:
        The list of files written into ``target_dir``
    """
    if not source_dir.is_dir():
        return []

    wanted = {suffix.lower() for suffix in suffixes} if suffixes else None
    copied: List[Path] = []
    for source in sorted(source_dir.iterdir()):
        if not source.is_file():
            continue
        if wanted is not None and source.suffix.lower() not in wanted:
            continue
        destination = ensure_directory(target_dir) / source.name
        shutil.copyfile(source, destination)
        copied.append(destination)

    if copied:
        logger.debug(f"Copied {len(copied)} file(s) from {source_dir} to {target_dir}")
    return copied
