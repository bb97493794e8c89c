import threading
from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

from zbx import ChartConfig, base_url

V = TypeVar("V")


@dataclass(frozen=True)
class GraphMetadata:
    title: str
    items: list = field(default_factory=list)


class KeyValueStore(Generic[V]):
    """In-memory map shared by concurrent requests; entries are swapped whole."""

    def __init__(self) -> None:
        self._data: dict[str, V] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: V) -> None:
        with self._lock:
            self._data[key] = value

    def evict(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class CredentialStore(KeyValueStore[str]):
    """Session tokens keyed by ``zbx.credential_key``."""


class MetadataCache(KeyValueStore[GraphMetadata]):
    """Graph title and items keyed by ``graph_cache_key``."""


def graph_cache_key(config: ChartConfig) -> Optional[str]:
    if not config or not config.graph_id or not config.zabbix_url:
        return None
    return f"{base_url(config.zabbix_url)}|{config.graph_id}"
