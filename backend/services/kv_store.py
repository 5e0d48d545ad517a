"""Key-value persistence for the in-memory service collections.

Each collection is written as one JSON array under a well-known key. There
is no schema versioning: a value that no longer validates loads as an empty
collection.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Optional, Protocol, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError
from sqlalchemy.orm import sessionmaker

from models.database import KeyValueEntry
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("kv_store")

EXPERIMENTS_KEY = "experiments"
ACTIVITY_LOGS_KEY = "activity_logs"
ACTIVATED_SIGNALS_KEY = "activated_signals"
SIGNAL_EVENTS_KEY = "signal_events"
SAVED_PATTERNS_KEY = "saved_patterns"
SIMULATED_TRADES_KEY = "simulated_trades"
WALLET_SETTINGS_KEY = "wallet_settings"

ModelT = TypeVar("ModelT", bound=BaseModel)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...


class SqlKeyValueStore:
    """Key-value store backed by the ``kv_store`` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[Any]:
        async with self._session_factory() as session:
            row = await session.get(KeyValueEntry, key)
            return None if row is None else row.value

    async def set(self, key: str, value: Any) -> None:
        async with self._session_factory() as session:
            row = await session.get(KeyValueEntry, key)
            if row is None:
                session.add(KeyValueEntry(key=key, value=value, updated_at=utcnow()))
            else:
                row.value = value
                row.updated_at = utcnow()
            await session.commit()


class InMemoryKeyValueStore:
    """Process-local store; values are JSON round-tripped like the SQL store."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._data[key] = json.dumps(value)

    async def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def raw(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return None if raw is None else copy.deepcopy(json.loads(raw))


def dump_collection(items: list[BaseModel]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


async def read_collection(store: KeyValueStore, key: str, item_type: type[ModelT]) -> list[ModelT]:
    """Load a persisted array; missing or malformed data degrades to ``[]``."""
    try:
        raw = await store.get(key)
    except Exception as exc:
        logger.warning("Failed to read persisted collection", key=key, error=str(exc))
        return []
    if raw is None:
        return []
    if not isinstance(raw, list):
        logger.warning("Persisted collection is not a list, ignoring", key=key)
        return []
    try:
        return TypeAdapter(list[item_type]).validate_python(raw)
    except ValidationError as exc:
        logger.warning(
            "Persisted collection failed validation, ignoring",
            key=key,
            errors=exc.error_count(),
        )
        return []


async def write_collection(store: KeyValueStore, key: str, items: list[BaseModel]) -> bool:
    """Persist a collection; failures are logged and reported, never raised."""
    try:
        await store.set(key, dump_collection(items))
        return True
    except Exception as exc:
        logger.warning("Failed to persist collection", key=key, error=str(exc), exc_info=True)
        return False
