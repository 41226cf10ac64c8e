"""
Key-addressed record store for check-ins, quests and cached scripts.

Records are addressed by (collection, user_id, key) where key is usually an
ISO date or a scenario name. Last write wins; no transactions.
"""

import copy
import threading
from typing import Any, Dict, Optional, Protocol, Tuple

DAILY_STATES = "daily_states"
QUESTS = "quests"
SCRIPTS_CACHE = "scripts_cache"


class RecordStore(Protocol):
    def upsert(self, collection: str, user_id: str, key: str, record: Dict[str, Any]) -> Dict[str, Any]: ...

    def select(self, collection: str, user_id: str, key: str) -> Optional[Dict[str, Any]]: ...

    def delete(self, collection: str, user_id: str, key: str) -> bool: ...


class InMemoryRecordStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, str, str], Dict[str, Any]] = {}

    def upsert(self, collection: str, user_id: str, key: str, record: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(record)
        with self._lock:
            self._records[(collection, user_id, key)] = stored
        return copy.deepcopy(stored)

    def select(self, collection: str, user_id: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get((collection, user_id, key))
        return copy.deepcopy(record) if record is not None else None

    def delete(self, collection: str, user_id: str, key: str) -> bool:
        with self._lock:
            return self._records.pop((collection, user_id, key), None) is not None
