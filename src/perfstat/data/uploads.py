from __future__ import annotations

import logging
import re
import time
from pathlib import Path

from perfstat.exceptions import FieldError, PersistenceFailure

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]")


class LocalUploadStore:
    """
    Stores uploaded documents on local disk and returns the public URL for each.
    File names are prefixed with a millisecond timestamp and stripped of path parts
    and whitespace, e.g. "Beat report.pdf" -> "1760000000000-Beat_report.pdf".
    """

    def __init__(self, uploads_dir: Path, base_url: str, max_bytes: int):
        self.uploads_dir = Path(uploads_dir)
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.max_bytes = max_bytes

    def stored_name(self, filename: str) -> str:
        name = Path(filename or "upload").name
        name = re.sub(r"\s+", "_", name.strip())
        name = _UNSAFE_RE.sub("", name) or "upload"
        return f"{int(time.time() * 1000)}-{name}"

    def save(self, filename: str, content: bytes) -> str:
        if len(content) > self.max_bytes:
            raise FieldError(f"File exceeds {self.max_bytes} bytes")
        name = self.stored_name(filename)
        try:
            self.uploads_dir.mkdir(parents=True, exist_ok=True)
            (self.uploads_dir / name).write_bytes(content)
        except OSError as exc:
            raise PersistenceFailure(f"Could not store upload {filename!r}: {exc}") from exc
        logger.info("Stored upload", extra={"file_name": name, "size": len(content)})
        return f"{self.base_url}{name}"

    def path_for(self, url: str) -> Path:
        return self.uploads_dir / url.rsplit("/", 1)[-1]
