"""Keyed state store shared by every matching run.

State is a dict of namespaces, each an insertion-ordered dict of JSON
values. All mutation of shared control-loop state goes through
``transaction()``, which holds the store lock (single-writer discipline).
"""
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

CANARY_STATE = "marketplace_matching_canary_state"
SHADOW_DIFFS = "marketplace_matching_shadow_diffs"
ALT_SHADOW_DIFFS = "marketplace_matching_alt_shadow_diffs"
CANARY_DECISIONS = "marketplace_matching_canary_decisions"
SEQUENCES = "sequences"


class InMemoryStateStore:
    def __init__(self, state: Optional[Dict[str, Dict[str, Any]]] = None):
        self.state: Dict[str, Dict[str, Any]] = state if state is not None else {}
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStateStore"]:
        with self._lock:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            if self._depth == 0:
                self._commit()

    def _commit(self) -> None:
        pass

    def _namespace(self, namespace: str) -> Dict[str, Any]:
        return self.state.setdefault(namespace, {})

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        with self._lock:
            return self.state.get(namespace, {}).get(key, default)

    def set(self, namespace: str, key: str, value: Any) -> None:
        with self.transaction():
            self._namespace(namespace)[key] = value

    def delete(self, namespace: str, key: str) -> None:
        with self.transaction():
            self._namespace(namespace).pop(key, None)

    def items(self, namespace: str) -> List[Tuple[str, Any]]:
        with self._lock:
            return list(self.state.get(namespace, {}).items())

    def prune(self, namespace: str, max_count: int) -> List[str]:
        """Evict oldest entries until at most ``max_count`` remain."""
        with self.transaction():
            entries = self._namespace(namespace)
            overflow = len(entries) - max(max_count, 0)
            if overflow <= 0:
                return []
            evicted = list(entries)[:overflow]
            for key in evicted:
                del entries[key]
            return evicted

    def put_and_prune(self, namespace: str, key: str, value: Any, max_count: int) -> List[str]:
        with self.transaction():
            self.set(namespace, key, value)
            return self.prune(namespace, max_count)

    def next_sequence(self, name: str) -> int:
        with self.transaction():
            counters = self._namespace(SEQUENCES)
            counters[name] = int(counters.get(name, 0)) + 1
            return counters[name]


class JsonFileStateStore(InMemoryStateStore):
    """Persists the whole state to a JSON file after each outer transaction."""

    def __init__(self, file_path: str):
        super().__init__()
        self.file_path = file_path
        self.load()

    def load(self) -> None:
        if not os.path.exists(self.file_path):
            return
        with open(self.file_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"state file {self.file_path} does not hold a JSON object")
        self.state = data
        logger.info("Matching state loaded", extra={"path": self.file_path, "namespaces": len(data)})

    def _commit(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.file_path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self.state, fh)
            os.replace(tmp_path, self.file_path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
