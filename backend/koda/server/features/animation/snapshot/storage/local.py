import os
import tempfile
from pathlib import Path

from koda.server.features.animation.configs import SNAPSHOT_LOCAL_PATH
from koda.server.features.animation.snapshot.storage.base import BlobNotFoundError
from koda.server.features.animation.snapshot.storage.base import BlobStore
from koda.server.features.animation.snapshot.storage.base import BlobStoreError
from koda.utils.logger import setup_logger

logger = setup_logger()


class LocalBlobStore(BlobStore):
    """Blobs as files under a root directory, keys map to relative paths."""

    def __init__(self, root: Path | None = None) -> None:
        self._root = root or Path(SNAPSHOT_LOCAL_PATH)

    def _path_for(self, key: str) -> Path:
        parts = key.split("/")
        if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
            raise BlobStoreError(f"Invalid blob key: {key!r}")
        return self._root.joinpath(*parts)

    def put(self, key: str, data: bytes) -> None:
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # write to a sibling temp file and rename into place
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise BlobStoreError(f"Failed to write blob {key}: {e}") from e

        logger.debug(f"Wrote blob {key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e
        except OSError as e:
            raise BlobStoreError(f"Failed to read blob {key}: {e}") from e

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete blob {key}: {e}") from e

    def list_keys(self, prefix: str) -> list[str]:
        if not self._root.is_dir():
            return []
        keys = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.name.startswith(".tmp-"):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
