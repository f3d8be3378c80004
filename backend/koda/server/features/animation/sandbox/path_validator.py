"""Validation for paths requested from inside a sandbox.

Runs before any registry lookup or substrate I/O. Paths are always treated
as POSIX paths relative to the sandbox work root.
"""

import posixpath

from koda.server.features.animation.errors import InvalidPathError


def _has_drive_letter(path: str) -> bool:
    # "C:", "C:/x" but not a file named "a:b.txt"
    return (
        len(path) >= 2
        and path[0].isalpha()
        and path[1] == ":"
        and (len(path) == 2 or path[2] == "/")
    )


def validate_sandbox_path(requested_path: str | None, allow_root: bool = False) -> str:
    """Return the normalized relative path or raise InvalidPathError.

    Rejects empty paths, NUL bytes, absolute paths (POSIX, UNC or drive
    letter), and any ``..`` segment, whether it survives normalization or not.
    With ``allow_root`` an empty path or ``.`` normalizes to ``.`` (used for
    directory listings of the work root itself).
    """
    if not requested_path or not requested_path.strip():
        if allow_root:
            return "."
        raise InvalidPathError(requested_path or "", "Missing path")

    if "\0" in requested_path:
        raise InvalidPathError(requested_path, "Path contains NUL byte")

    # backslashes are separators for traversal purposes
    unified = requested_path.replace("\\", "/")

    if unified.startswith("/") or _has_drive_letter(unified):
        raise InvalidPathError(requested_path, "Absolute paths are not allowed")

    if ".." in unified.split("/"):
        raise InvalidPathError(requested_path, "Path traversal not allowed")

    normalized = posixpath.normpath(unified)

    if normalized == ".":
        if allow_root:
            return normalized
        raise InvalidPathError(requested_path, "Path does not name a file")
    if normalized.startswith(".."):
        raise InvalidPathError(requested_path, "Path traversal not allowed")
    if ".." in normalized.split("/"):
        raise InvalidPathError(requested_path, "Path traversal not allowed")

    return normalized


def resolve_in_work_root(work_root: str, normalized_path: str) -> str:
    """Join a validated relative path onto the sandbox work root."""
    return posixpath.normpath(posixpath.join(work_root, normalized_path))
