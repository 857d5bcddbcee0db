"""Content-addressed memoisation of successful execution results."""

from __future__ import annotations

import copy
import json
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from .models import ExecutionResult, SandboxConfig, sha256_text

logger = logging.getLogger(__name__)


def cache_key(wrapper_sha: str, config: SandboxConfig) -> str:
    """Key on the wrapper hash plus the sandbox configuration it ran under."""

    config_json = json.dumps(config.to_dict(), sort_keys=True, separators=(",", ":"))
    return sha256_text(f"{wrapper_sha}:{config_json}")


@dataclass
class _Entry:
    result: ExecutionResult
    expires_at: float
    hits: int = 0
    last_used: float = 0.0


class ResultCache:
    def __init__(self, ttl: float = 3600, capacity: int = 256) -> None:
        self.ttl = ttl
        self.capacity = capacity
        self._entries: Dict[str, _Entry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[ExecutionResult]:
        entry = self._entries.get(key)
        now = time.time()
        if entry is None or entry.expires_at <= now:
            if entry is not None:
                del self._entries[key]
            self.misses += 1
            return None
        entry.hits += 1
        entry.last_used = now
        self.hits += 1
        return copy.deepcopy(entry.result)

    def set(self, key: str, result: ExecutionResult, ttl: Optional[float] = None) -> bool:
        """Store ``result``; failed results are refused."""

        if not result.success:
            return False
        now = time.time()
        if key not in self._entries and len(self._entries) >= self.capacity:
            self._evict()
        self._entries[key] = _Entry(
            result=copy.deepcopy(result),
            expires_at=now + (self.ttl if ttl is None else ttl),
            last_used=now,
        )
        return True

    def _evict(self) -> None:
        victim = min(self._entries, key=lambda k: (self._entries[k].hits, self._entries[k].last_used))
        del self._entries[victim]
        self.evictions += 1
        logger.debug("Evicted cache entry %s", victim[:12])

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        now = time.time()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def stats(self) -> Dict[str, object]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hitRate": round(self.hits / lookups, 4) if lookups else 0.0,
        }
