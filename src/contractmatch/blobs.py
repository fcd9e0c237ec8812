from __future__ import annotations

import asyncio
import os
from pathlib import Path, PurePosixPath
from urllib.parse import quote

from .errors import BlobError


class BlobStore:
    """Contract consumed from the file-storage collaborator."""

    async def upload(self, path: str, data: bytes) -> None:
        raise NotImplementedError

    def get_public_url(self, path: str) -> str:
        raise NotImplementedError


def _clean_path(path: str) -> PurePosixPath:
    candidate = PurePosixPath(path)
    if not candidate.parts or candidate.is_absolute() or ".." in candidate.parts:
        raise BlobError(f"invalid blob path: {path!r}")
    return candidate


def _write_atomic(target: Path, data: bytes) -> None:
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(tmp_path, "wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    tmp_path.replace(target)


class LocalBlobStore(BlobStore):
    """Stores blobs as files under ``root`` and serves them from ``base_url``."""

    def __init__(self, root: Path | str, base_url: str) -> None:
        self.root = Path(root).expanduser()
        self.base_url = base_url.rstrip("/")

    def _target(self, path: str) -> Path:
        return self.root.joinpath(*_clean_path(path).parts)

    async def upload(self, path: str, data: bytes) -> None:
        target = self._target(path)
        try:
            await asyncio.to_thread(_write_atomic, target, data)
        except OSError as exc:
            raise BlobError(f"upload of {path} failed: {exc}") from exc

    def get_public_url(self, path: str) -> str:
        return f"{self.base_url}/{quote(str(_clean_path(path)))}"

    def read(self, path: str) -> bytes | None:
        target = self._target(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None
