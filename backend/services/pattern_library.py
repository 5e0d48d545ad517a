"""Saved backtest patterns (create/replace, list, delete)."""

from __future__ import annotations

import asyncio
from typing import Optional

from models.history import Pattern
from services.kv_store import (
    SAVED_PATTERNS_KEY,
    KeyValueStore,
    read_collection,
    write_collection,
)
from services.subscriptions import Subscribable
from utils.logger import get_logger

logger = get_logger("pattern_library")


class PatternLibrary(Subscribable):
    def __init__(self, store: KeyValueStore):
        super().__init__()
        self._store = store
        self._patterns: list[Pattern] = []
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        self._patterns = await read_collection(self._store, SAVED_PATTERNS_KEY, Pattern)
        logger.info("Saved patterns loaded", count=len(self._patterns))

    def patterns(self) -> list[Pattern]:
        return list(self._patterns)

    def get(self, pattern_id: str) -> Optional[Pattern]:
        return next((p for p in self._patterns if p.id == pattern_id), None)

    async def save(self, pattern: Pattern) -> Pattern:
        """Replace in place when the id exists, otherwise insert at the front."""
        async with self._lock:
            patterns = list(self._patterns)
            for idx, existing in enumerate(patterns):
                if existing.id == pattern.id:
                    patterns[idx] = pattern
                    break
            else:
                patterns.insert(0, pattern)
            self._patterns = patterns
            await write_collection(self._store, SAVED_PATTERNS_KEY, self._patterns)
            self._notify()
        return pattern

    async def delete(self, pattern_id: str) -> bool:
        async with self._lock:
            remaining = [p for p in self._patterns if p.id != pattern_id]
            if len(remaining) == len(self._patterns):
                return False
            self._patterns = remaining
            await write_collection(self._store, SAVED_PATTERNS_KEY, self._patterns)
            self._notify()
        return True
