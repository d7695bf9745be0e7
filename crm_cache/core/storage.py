"""String key-value stores with change notifications.

Two scopes mirror what the backup subsystem snapshots:
- MemoryKeyValueStore: per-session, lost when the process exits.
- FileKeyValueStore: origin-wide, persisted to a JSON file on every mutation.

Both are synchronous so the emergency backup can write without awaiting.
"""

import json
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from crm_cache.core.logging import get_logger

logger = get_logger(__name__)

ChangeListener = Callable[[str, str], None]


class KeyValueStore:
    """In-memory string store; base class for the persisted variant."""

    def __init__(self, name: str):
        self.name = name
        self._data: Dict[str, str] = {}
        self._listeners: List[ChangeListener] = []

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"{self.name} values must be strings, got {type(value).__name__}")
        self._data[key] = value
        self._persist()
        self._notify(key)

    def remove_item(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._persist()
            self._notify(key)

    def clear(self) -> None:
        keys = list(self._data)
        self._data.clear()
        self._persist()
        for key in keys:
            self._notify(key)

    def keys(self) -> List[str]:
        return list(self._data)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._data.items())

    def to_dict(self) -> Dict[str, str]:
        return dict(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register listener(store_name, key). Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.name, key)
            except Exception as e:
                logger.warning("Storage change listener failed", store=self.name, key=key, error=str(e))

    def _persist(self) -> None:
        pass


class MemoryKeyValueStore(KeyValueStore):
    """Session-scoped store."""

    def __init__(self, name: str = "session_storage"):
        super().__init__(name)


class FileKeyValueStore(KeyValueStore):
    """Origin-scoped store persisted as a JSON object on disk."""

    def __init__(self, path: str, name: str = "local_storage"):
        super().__init__(name)
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Failed to load key-value store, starting empty",
                         path=str(self.path), error=str(e))
            return
        if isinstance(data, dict):
            self._data = {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data), encoding="utf-8")
        tmp_path.replace(self.path)
