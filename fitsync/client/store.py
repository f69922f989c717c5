from __future__ import annotations

"""
EMBED_SUMMARY: Durable local storage for the client's fitness state and mutation queue (in-memory or JSON file).
EMBED_TAGS: client, offline, queue, storage
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional


logger = logging.getLogger(__name__)


class QueueStore(ABC):
    """Where the client keeps its state between runs. Reconciliation never looks behind this."""

    @abstractmethod
    def load(self) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def save(self, data: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        raise NotImplementedError


class InMemoryQueueStore(QueueStore):
    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._data = json.loads(json.dumps(initial)) if initial is not None else None

    def load(self) -> Optional[dict[str, Any]]:
        return json.loads(json.dumps(self._data)) if self._data is not None else None

    def save(self, data: dict[str, Any]) -> None:
        # Round-trip through JSON so callers never share mutable structures with the store
        self._data = json.loads(json.dumps(data))

    def clear(self) -> None:
        self._data = None


class JsonFileQueueStore(QueueStore):
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable fitness state at %s: %s", self.path, exc)
            return None
        return data if isinstance(data, dict) else None

    def save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, separators=(",", ":")), encoding="utf-8")
        os.replace(tmp, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
