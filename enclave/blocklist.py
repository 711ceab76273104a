# enclave/blocklist.py

import logging
import threading
import time
from typing import Dict, Optional

logger = logging.getLogger("enclave.security")


class IPBlocklist:
    """In-memory ``ip -> unblock_at`` map, one per application."""

    def __init__(self, default_ttl: int = 3600, sweep_interval: int = 60, clock=time.time):
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._blocks: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def add(self, ip: str, ttl: Optional[float] = None) -> float:
        unblock_at = self._clock() + float(ttl or self.default_ttl)
        with self._lock:
            self._blocks[ip] = unblock_at
        logger.warning("IP blocked: %s for %ss", ip, ttl or self.default_ttl)
        return unblock_at

    def remove(self, ip: str) -> bool:
        with self._lock:
            return self._blocks.pop(ip, None) is not None

    def is_blocked(self, ip: Optional[str]) -> bool:
        self.maybe_sweep()
        if not ip:
            return False
        now = self._clock()
        with self._lock:
            ts = self._blocks.get(ip)
            return bool(ts and ts > now)

    def active(self) -> Dict[str, float]:
        now = self._clock()
        with self._lock:
            return {k: v for k, v in self._blocks.items() if v > now}

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._blocks.items() if v <= now]
            for k in expired:
                del self._blocks[k]
            self._last_sweep = now
        if expired:
            logger.info("Blocklist sweep released %d IPs", len(expired))
        return len(expired)

    def maybe_sweep(self) -> None:
        if self._clock() - self._last_sweep >= self.sweep_interval:
            self.sweep()
