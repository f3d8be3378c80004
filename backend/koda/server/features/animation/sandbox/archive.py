"""Tarball helpers for moving sandbox subtrees in and out of a filesystem."""

import io
import posixpath
import tarfile
from pathlib import Path

from koda.server.features.animation.sandbox.models import SandboxArchive


def build_archive(root: Path, subpath: str) -> SandboxArchive:
    """Archive ``root / subpath`` with member names relative to ``root``.

    Args:
        root: Directory the member names are relative to (the work root)
        subpath: Validated relative subtree to capture

    Raises:
        FileNotFoundError: If the subtree does not exist
    """
    source = root / subpath
    if not source.exists():
        raise FileNotFoundError(f"Snapshot source does not exist: {subpath}")

    file_count = 0
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        tar.add(source, arcname=subpath, recursive=False)
        if source.is_dir():
            for item in sorted(source.rglob("*")):
                # symlinks could point outside the sandbox
                if item.is_symlink():
                    continue
                arcname = item.relative_to(root).as_posix()
                tar.add(item, arcname=arcname, recursive=False)
                if item.is_file():
                    file_count += 1
        else:
            file_count = 1

    return SandboxArchive(data=buffer.getvalue(), file_count=file_count)


def _check_member(member: tarfile.TarInfo) -> None:
    name = member.name
    if name.startswith("/") or ".." in name.split("/"):
        raise ValueError(f"Unsafe archive member: {name}")
    if member.issym() or member.islnk():
        raise ValueError(f"Links are not allowed in sandbox archives: {name}")


def extract_archive(data: bytes, destination: Path) -> int:
    """Extract a gzipped tarball into ``destination``. Returns the file count.

    Raises:
        ValueError: If a member would land outside ``destination``
        tarfile.TarError: If the data is not a valid archive
    """
    destination.mkdir(parents=True, exist_ok=True)
    file_count = 0
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        members = tar.getmembers()
        for member in members:
            _check_member(member)
            if member.isfile():
                file_count += 1
        tar.extractall(destination, members=members, filter="data")
    return file_count


def list_archive_files(data: bytes) -> dict[str, bytes]:
    """Map member name -> content for every regular file in an archive."""
    files: dict[str, bytes] = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            extracted = tar.extractfile(member)
            if extracted is not None:
                files[posixpath.normpath(member.name)] = extracted.read()
    return files
