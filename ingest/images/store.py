"""Content-addressed local image store, JSON state files and remote mirror."""
from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import orjson
from supabase import Client, create_client
from tenacity import retry, stop_after_attempt, wait_random

from .detector import CONTENT_TYPES

LOGGER = logging.getLogger(__name__)


def atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class JsonStateFile:
    """Versioned JSON snapshot writer.

    Callers mutate their state under their own lock, take a snapshot with
    :meth:`bump`, then call :meth:`write` outside that lock. Older snapshots
    never overwrite newer ones.
    """

    def __init__(self, path: Optional[Path]) -> None:
        self.path = Path(path) if path else None
        self._version = 0
        self._written = 0
        self._write_lock = threading.Lock()

    def load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = orjson.loads(self.path.read_bytes())
        except orjson.JSONDecodeError as exc:
            raise ValueError(f"corrupt state file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"state file {self.path} must hold an object")
        return data

    def bump(self) -> int:
        self._version += 1
        return self._version

    def write(self, version: int, snapshot: Dict[str, Any]) -> None:
        if self.path is None:
            return
        with self._write_lock:
            if version <= self._written:
                return
            atomic_write(self.path, orjson.dumps(snapshot, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS))
            self._written = version


class LocalImageStore:
    """Files named ``<hash>.<ext>`` under a single directory."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, content_hash: str, extension: str) -> Path:
        return self.root / f"{content_hash}.{extension}"

    def put(self, content_hash: str, extension: str, data: bytes) -> Path:
        path = self.path_for(content_hash, extension)
        if not path.exists():
            atomic_write(path, data)
            LOGGER.debug("Stored %s (%d bytes)", path.name, len(data))
        return path

    def iter_files(self) -> Iterator[Path]:
        for path in sorted(self.root.iterdir()):
            if path.is_file() and not path.name.startswith(".") and path.suffix.lstrip(".") in CONTENT_TYPES:
                yield path


class SupabaseImageMirror:
    """Upload accepted images to a Supabase storage bucket."""

    def __init__(self, client: Client, bucket: str, prefix: str = "cache") -> None:
        self.client = client
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    @classmethod
    def from_env(cls, bucket: Optional[str]) -> Optional["SupabaseImageMirror"]:
        """Build a mirror from ``SUPABASE_URL``/``SUPABASE_KEY``; None when unset."""
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        if not (url and key and bucket):
            return None
        return cls(create_client(url, key), bucket)

    @retry(stop=stop_after_attempt(3), wait=wait_random(1, 3), reraise=True)
    def _upload(self, path: str, data: bytes, content_type: str) -> None:
        self.client.storage.from_(self.bucket).upload(
            path,
            data,
            {"content-type": content_type, "upsert": "true"},
        )

    def upload(self, filename: str, data: bytes, extension: str) -> Optional[str]:
        """Upload and return the public URL, or None if the upload failed."""
        path = f"{self.prefix}/{filename}"
        try:
            self._upload(path, data, CONTENT_TYPES.get(extension, "application/octet-stream"))
        except Exception as exc:
            LOGGER.warning("Mirror upload of %s failed: %s", path, exc)
            return None
        return self.client.storage.from_(self.bucket).get_public_url(path)

