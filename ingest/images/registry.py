"""Process-wide registry of known-bad image content hashes and the URL manifest."""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from .store import JsonStateFile

LOGGER = logging.getLogger(__name__)

# Placeholders marketplaces serve to scrapers in place of product photos
KNOWN_PLACEHOLDER_HASHES: Dict[str, str] = {
    "4e70cc58277297de2d4741c437c9dc425c4f8adb": "marketplace_placeholder",
    "e7cc244e1d0f558ae9669f57b973758bc14103ee": "marketplace_placeholder",
}


class BadHashRegistry:
    """Thread-safe, append-only set of bad content hashes.

    Constructed once and injected into the image cache; optionally seeded
    from and persisted to a JSON file so the denylist survives restarts.
    """

    def __init__(self, path: Optional[Path | str] = None, seed: Optional[Dict[str, str]] = None) -> None:
        self._lock = threading.Lock()
        self._state = JsonStateFile(Path(path) if path else None)
        self._hashes: Dict[str, str] = dict(KNOWN_PLACEHOLDER_HASHES if seed is None else seed)
        self._hashes.update({key: str(value) for key, value in self._state.load().items()})

    def __contains__(self, content_hash: object) -> bool:
        with self._lock:
            return content_hash in self._hashes

    def __len__(self) -> int:
        with self._lock:
            return len(self._hashes)

    def reason(self, content_hash: str) -> Optional[str]:
        with self._lock:
            return self._hashes.get(content_hash)

    def add(self, content_hash: str, reason: str = "manual") -> bool:
        """Mark a hash bad; returns False when it was already known."""
        with self._lock:
            if content_hash in self._hashes:
                return False
            self._hashes[content_hash] = reason
            version = self._state.bump()
            snapshot = dict(self._hashes)
        self._state.write(version, snapshot)
        LOGGER.info("Marked image hash %s bad (%s)", content_hash, reason)
        return True

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._hashes)


class ImageManifest:
    """URL → hash index plus per-hash metadata, persisted as ``manifest.json``."""

    def __init__(self, path: Optional[Path | str] = None) -> None:
        self._lock = threading.Lock()
        self._state = JsonStateFile(Path(path) if path else None)
        data = self._state.load()
        self._urls: Dict[str, str] = dict(data.get("urls", {}))
        self._hashes: Dict[str, dict] = dict(data.get("hashes", {}))

    def hash_for_url(self, url: str) -> Optional[str]:
        with self._lock:
            return self._urls.get(url)

    def entry(self, content_hash: str) -> Optional[dict]:
        with self._lock:
            entry = self._hashes.get(content_hash)
            return dict(entry) if entry else None

    def record(self, url: str, content_hash: str, **metadata) -> None:
        with self._lock:
            self._urls[url] = content_hash
            if metadata:
                entry = self._hashes.setdefault(content_hash, {"source_url": url})
                entry.update(metadata)
            version = self._state.bump()
            snapshot = {"urls": dict(self._urls), "hashes": {k: dict(v) for k, v in self._hashes.items()}}
        self._state.write(version, snapshot)

    def mark_bad(self, content_hash: str, reason: str) -> None:
        with self._lock:
            entry = self._hashes.setdefault(content_hash, {})
            entry.update({"bad": True, "reason": reason})
            version = self._state.bump()
            snapshot = {"urls": dict(self._urls), "hashes": {k: dict(v) for k, v in self._hashes.items()}}
        self._state.write(version, snapshot)

    def hashes(self) -> Dict[str, dict]:
        with self._lock:
            return {key: dict(value) for key, value in self._hashes.items()}
