from __future__ import annotations

import logging
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict

from .dates import now_ms
from .envelope import BadRequest

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


def sanitize_filename(name: str | None, default: str = "attachment") -> str:
    base = Path(str(name or "")).name.strip()
    cleaned = _UNSAFE_CHARS.sub("_", base).strip(" .")
    return cleaned or default


@dataclass
class Upload:
    upload_id: str
    path: Path
    size: int
    updated_at_ms: int


class ChunkedUploads:
    """Assembles attachment uploads into files the daemon can read by path.

    Chunks must arrive in order: each ``start`` has to equal the number of
    bytes assembled so far.  Uploads idle for longer than ``ttl_ms`` are
    removed on the next call.
    """

    def __init__(
        self,
        staging_dir: str | Path,
        *,
        ttl_ms: int = 30 * 60 * 1000,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.staging_dir = Path(staging_dir)
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._uploads: Dict[str, Upload] = {}

    def new_path(self, name: str | None) -> Path:
        """Reserve a fresh staging path for a single-shot upload."""

        directory = self.staging_dir / uuid.uuid4().hex
        directory.mkdir(parents=True, exist_ok=True)
        return directory / sanitize_filename(name)

    def append(self, upload_id: str, start: int, data: bytes, name: str | None = None) -> int:
        if not upload_id:
            raise BadRequest("No upload identifier provided")
        self.expire()
        upload = self._uploads.get(upload_id)
        if upload is None:
            if start != 0:
                raise BadRequest(f"Upload {upload_id} is unknown; first chunk must start at 0")
            directory = self.staging_dir / sanitize_filename(upload_id, default=uuid.uuid4().hex)
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / sanitize_filename(name)
            path.write_bytes(b"")
            upload = Upload(upload_id=upload_id, path=path, size=0, updated_at_ms=self._now())
            self._uploads[upload_id] = upload
        if start != upload.size:
            raise BadRequest(f"Chunk for {upload_id} starts at {start}, expected {upload.size}")
        with upload.path.open("ab") as handle:
            handle.write(data)
        upload.size += len(data)
        upload.updated_at_ms = self._now()
        return upload.size

    def finish(self, upload_id: str) -> Path:
        upload = self._uploads.pop(upload_id, None)
        if upload is None:
            raise BadRequest(f"Upload {upload_id} is unknown")
        logger.info("assembled upload %s (%d bytes)", upload_id, upload.size)
        return upload.path

    def discard(self, upload_id: str) -> None:
        upload = self._uploads.pop(upload_id, None)
        if upload is not None:
            shutil.rmtree(upload.path.parent, ignore_errors=True)

    def discard_path(self, path: str | Path) -> None:
        """Remove a staged file together with its per-upload directory."""

        directory = Path(path).parent
        if directory.resolve().parent != self.staging_dir.resolve():
            logger.warning("refusing to remove %s outside the staging directory", path)
            return
        shutil.rmtree(directory, ignore_errors=True)

    def size_of(self, upload_id: str) -> int | None:
        upload = self._uploads.get(upload_id)
        return upload.size if upload else None

    def expire(self) -> None:
        if self._ttl_ms <= 0:
            return
        cutoff = self._now() - self._ttl_ms
        for upload_id, upload in list(self._uploads.items()):
            if upload.updated_at_ms <= cutoff:
                logger.debug("discarding idle upload %s", upload_id)
                self.discard(upload_id)
