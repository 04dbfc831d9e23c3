from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Set

PROCESS_LOCK = "processLock"
RESET = "reset"
BATCH_CUMULATIVE_COUNT = "batchCumulativeCount"
FUSION_STATE = "fusionState"
RESET_CONSUMED = "resetConsumed"


class StateStore(Protocol):
    def get(self, source_id: str) -> Dict[str, Any]: ...

    def patch(self, source_id: str, operations: Iterable[Mapping[str, Any]]) -> Dict[str, Any]: ...

    def get_values(self, source_id: str, attribute: str) -> Set[str]: ...

    def set_values(self, source_id: str, attribute: str, values: Iterable[str]) -> None: ...

    def close(self) -> None: ...


def _key_from_path(path: str) -> str:
    key = path.lstrip("/")
    if not key or "/" in key:
        raise ValueError(f"Only top-level keys can be patched, got {path!r}")
    return key


def apply_patch(bag: Dict[str, Any], operations: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Apply JSON-patch style ``add``/``replace``/``remove`` operations on top-level keys."""
    for operation in operations:
        op = operation.get("op")
        key = _key_from_path(str(operation.get("path", "")))
        if op in ("add", "replace"):
            bag[key] = operation.get("value")
        elif op == "remove":
            bag.pop(key, None)
        else:
            raise ValueError(f"Unsupported patch operation {op!r}")
    return bag


class SqliteStateStore:
    """Persisted connector attribute bag, one JSON document per fusion source."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS source_state (
                source_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY(source_id, key)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS unique_values (
                source_id TEXT NOT NULL,
                attribute TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY(source_id, attribute, value)
            )
            """
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get(self, source_id: str) -> Dict[str, Any]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, value FROM source_state WHERE source_id=?",
                (source_id,),
            ).fetchall()
        return {key: json.loads(value) for key, value in rows}

    def patch(self, source_id: str, operations: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
        operations = list(operations)
        updates = apply_patch({}, operations)
        removals = [
            _key_from_path(str(operation.get("path", "")))
            for operation in operations
            if operation.get("op") == "remove"
        ]
        with self._lock:
            for key in removals:
                self._conn.execute(
                    "DELETE FROM source_state WHERE source_id=? AND key=?",
                    (source_id, key),
                )
            for key, value in updates.items():
                self._conn.execute(
                    "INSERT OR REPLACE INTO source_state(source_id, key, value) VALUES(?, ?, ?)",
                    (source_id, key, json.dumps(value)),
                )
            self._conn.commit()
        return self.get(source_id)

    def get_values(self, source_id: str, attribute: str) -> Set[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT value FROM unique_values WHERE source_id=? AND attribute=?",
                (source_id, attribute),
            ).fetchall()
        return {row[0] for row in rows}

    def set_values(self, source_id: str, attribute: str, values: Iterable[str]) -> None:
        payload: List[tuple[str, str, str]] = [(source_id, attribute, value) for value in set(values)]
        with self._lock:
            self._conn.execute(
                "DELETE FROM unique_values WHERE source_id=? AND attribute=?",
                (source_id, attribute),
            )
            self._conn.executemany(
                "INSERT INTO unique_values(source_id, attribute, value) VALUES(?, ?, ?)",
                payload,
            )
            self._conn.commit()


class InMemoryStateStore:
    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._bags: Dict[str, Dict[str, Any]] = {key: dict(value) for key, value in (initial or {}).items()}
        self._values: Dict[tuple[str, str], Set[str]] = {}

    def get(self, source_id: str) -> Dict[str, Any]:
        return json.loads(json.dumps(self._bags.get(source_id, {})))

    def patch(self, source_id: str, operations: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
        bag = self.get(source_id)
        self._bags[source_id] = apply_patch(bag, json.loads(json.dumps(list(operations))))
        return self.get(source_id)

    def get_values(self, source_id: str, attribute: str) -> Set[str]:
        return set(self._values.get((source_id, attribute), set()))

    def set_values(self, source_id: str, attribute: str, values: Iterable[str]) -> None:
        self._values[(source_id, attribute)] = set(values)

    def close(self) -> None:
        return None
