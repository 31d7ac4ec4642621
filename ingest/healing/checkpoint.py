"""Resumable progress file for healing runs."""
from __future__ import annotations

import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..images.store import JsonStateFile

LOGGER = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


class Checkpoint:
    """Processed identities, running counts and terminal failures.

    Saved after every finished task so an interrupted run can resume where it
    stopped.
    """

    def __init__(self, path: Optional[Path | str]) -> None:
        self.path = Path(path) if path else None
        self._state = JsonStateFile(self.path)
        self._lock = threading.Lock()
        self.processed: set = set()
        self.last_identity: Optional[str] = None
        self.counts: Counter = Counter()
        self.attempts: Dict[str, int] = {}
        self.terminal: List[Dict[str, Any]] = []

    @classmethod
    def load(cls, path: Optional[Path | str]) -> "Checkpoint":
        """Read a checkpoint, or start empty when the file does not exist.

        Raises
        ------
        ValueError
            If the file is not a valid checkpoint
        """
        checkpoint = cls(path)
        data = checkpoint._state.load()
        if not data:
            return checkpoint
        if data.get("version") != CHECKPOINT_VERSION:
            raise ValueError(f"unsupported checkpoint format in {checkpoint.path}")

        checkpoint.processed = set(data.get("processed", []))
        checkpoint.last_identity = data.get("last_identity")
        checkpoint.counts = Counter(data.get("counts", {}))
        checkpoint.attempts = dict(data.get("attempts", {}))
        checkpoint.terminal = list(data.get("terminal", []))
        LOGGER.info(
            "Resuming from checkpoint %s (%d processed)",
            checkpoint.path,
            len(checkpoint.processed),
        )
        return checkpoint

    def is_processed(self, identity: str) -> bool:
        with self._lock:
            return identity in self.processed

    def record(
        self,
        identity: str,
        outcome: str,
        quality: Optional[str] = None,
        terminal: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Mark ``identity`` finished and persist."""
        with self._lock:
            self.processed.add(identity)
            self.last_identity = identity
            self.attempts.pop(identity, None)
            self.counts[outcome] += 1
            if quality:
                self.counts[f"quality:{quality}"] += 1
            if terminal is not None:
                self.terminal.append(terminal)
            version = self._state.bump()
            snapshot = self._snapshot()
        self._state.write(version, snapshot)

    def record_attempt(self, identity: str, attempts: int) -> None:
        """Remember attempts spent on a task waiting for retry."""
        with self._lock:
            self.attempts[identity] = attempts
            version = self._state.bump()
            snapshot = self._snapshot()
        self._state.write(version, snapshot)

    def clear(self) -> None:
        if self.path is not None and self.path.exists():
            self.path.unlink()
            LOGGER.info("Removed checkpoint %s", self.path)

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "version": CHECKPOINT_VERSION,
            "processed": sorted(self.processed),
            "last_identity": self.last_identity,
            "counts": dict(self.counts),
            "attempts": dict(self.attempts),
            "terminal": list(self.terminal),
        }
