"""
In-memory record of job keys that were already handled.

Not persisted; a restart forgets every key.
"""
from __future__ import annotations

from typing import Dict, Iterator

DEFAULT_MAX_SIZE = 1000


class ProcessedJobSet:
    """Insertion-ordered set of job keys, trimmed to the newest half past `max_size`."""

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        if max_size < 2:
            raise ValueError("max_size must be at least 2")
        self.max_size = max_size
        self._keys: Dict[str, None] = {}

    def has(self, key: str) -> bool:
        return key in self._keys

    def add(self, key: str) -> None:
        if key in self._keys:
            return
        self._keys[key] = None
        if len(self._keys) > self.max_size:
            self.trim()

    def trim(self) -> int:
        """Drop the oldest entries so only the newest max_size // 2 remain. Returns how many were dropped."""
        keep = self.max_size // 2
        if len(self._keys) <= keep:
            return 0
        recent = list(self._keys)[-keep:]
        dropped = len(self._keys) - len(recent)
        self._keys = dict.fromkeys(recent)
        return dropped

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)
