"""
Utility functions for file system operations and checksums.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem usage
- Ensuring directory creation with proper error handling
- Computing content checksums of files
- Copying files with explicit permissions and returning the copy's checksum
"""

from __future__ import annotations

import hashlib
import re
import shutil
from pathlib import Path

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

CHUNK_SIZE = 8 * 1024 * 1024


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("ab1c/../x", "unknown")
        "ab1c-..-x"
        >>> sanitize_label("@#$", "unknown")
        "unknown"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path, mode: int = 0o775) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    This is a safe idempotent operation that won't fail if the directory
    already exists.

    Args:
        path: The directory path to create
        mode: Permission bits for newly created directories

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(mode=mode, parents=True, exist_ok=True)
    return path


def file_checksum(path: Path, algorithm: str = "md5") -> str:
    """
    Compute the hex digest of a file's content.

    The digest depends only on the bytes, never on the path. A missing
    file yields an empty string so callers can compare it against a
    stored checksum and report a mismatch.

    Args:
        path: File to hash
        algorithm: Any algorithm name accepted by :func:`hashlib.new`

    Returns:
        Lowercase hex digest, or "" if the file does not exist
    """
    if not path.is_file():
        return ""
    digest = hashlib.new(algorithm)
    with path.open("rb") as handle:
        while chunk := handle.read(CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def copy_file(src: Path, dest: Path, mode: int = 0o664, algorithm: str = "md5") -> str:
    """
    Copy a file, set the destination permissions and checksum the copy.

    Args:
        src: Source file
        dest: Destination file (overwritten if present)
        mode: Permission bits for the destination
        algorithm: Checksum algorithm

    Returns:
        Checksum of the destination bytes

    Raises:
        OSError: If the source cannot be read or the destination written
    """
    shutil.copyfile(src, dest)
    dest.chmod(mode)
    return file_checksum(dest, algorithm)
