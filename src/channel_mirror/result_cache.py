import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger
from pydantic import BaseModel


@dataclass
class _Entry:
    value: BaseModel
    size: int
    stored_at: float


class ResultCache:
    """LRU cache of channel snapshots with a TTL and a soft size bound.

    Entry size is the length of the value's JSON serialization. Reads hand
    out deep copies so callers never share a cached object.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_bytes: int = 50 * 1024 * 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._max_bytes = max_bytes
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._total = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def total_size(self) -> int:
        return self._total

    def get(self, key: str) -> BaseModel | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self._ttl_seconds:
            self._drop(key)
            return None
        self._entries.move_to_end(key)
        return entry.value.model_copy(deep=True)

    def set(self, key: str, value: BaseModel) -> None:
        size = len(value.model_dump_json())
        if size > self._max_bytes:
            logger.warning("Result for {} is larger than the cache, not stored", key)
            return

        if key in self._entries:
            self._drop(key)
        self._entries[key] = _Entry(
            value=value.model_copy(deep=True), size=size, stored_at=self._clock()
        )
        self._total += size

        while self._total > self._max_bytes:
            oldest = next(iter(self._entries))
            logger.debug("Evicting {} from result cache", oldest)
            self._drop(oldest)

    def clear(self) -> None:
        self._entries.clear()
        self._total = 0

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._total -= entry.size
