"""In-process cache for successful oracle verdicts."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .oracle import NavigationOracle, OracleOk, OracleRequest, OracleResult

logger = logging.getLogger(__name__)


def cache_key(request: OracleRequest) -> str:
    data = json.dumps(request.to_wire(), sort_keys=True, ensure_ascii=False)
    return "oracle_" + hashlib.sha256(data.encode("utf-8")).hexdigest()[:24]


@dataclass
class _CacheEntry:
    result: OracleOk
    expires_at: float


class CachingOracle:
    """Serve identical requests from memory; failures are never cached."""

    def __init__(
        self,
        oracle: NavigationOracle,
        ttl_s: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.oracle = oracle
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[OracleOk]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry.result

    async def analyze(self, request: OracleRequest) -> OracleResult:
        key = cache_key(request)
        cached = self.get(key)
        if cached is not None:
            self.hits += 1
            logger.debug("Oracle cache hit %s", key)
            return cached

        self.misses += 1
        result = await self.oracle.analyze(request)
        if isinstance(result, OracleOk) and self.ttl_s > 0:
            self._entries[key] = _CacheEntry(result=result, expires_at=self._clock() + self.ttl_s)
        return result

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
