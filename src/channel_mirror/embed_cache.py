import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from urllib.parse import quote

from loguru import logger

from channel_mirror.models import EmbedCacheEntry, EmbedDescriptor


class EmbedCache:
    """On-disk cache of resolved embed descriptors, one JSON file per key."""

    def __init__(
        self,
        directory: Path,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._directory = directory
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def path_for(self, key: str) -> Path:
        # Keys hold URLs; only unreserved marks stay literal.
        name = quote(key, safe="!*'()")
        return self._directory / f"{name}.json"

    def get(self, key: str) -> EmbedDescriptor | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            entry = EmbedCacheEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Unreadable embed cache entry at {}, ignoring", path)
            return None

        if self._clock() - entry.timestamp > self._ttl_seconds:
            logger.debug("Embed cache entry for {} expired", key)
            return None
        logger.debug("Embed cache hit for {}", key)
        return entry.value

    def set(self, key: str, value: EmbedDescriptor) -> None:
        path = self.path_for(key)
        entry = EmbedCacheEntry(timestamp=self._clock(), value=value)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            # Atomic write: temp file in the same directory, then rename
            fd, tmp_path = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
            try:
                with open(fd, "w", encoding="utf-8") as f:
                    f.write(entry.model_dump_json())
                Path(tmp_path).replace(path)
            except Exception:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.warning("Failed to write embed cache entry {}: {}", key, e)
