"""
ChainTrace Compliance Engine - Cache Adapter
Version: 1.0.0

Generic TTL cache contract used by the rule repository and the
sequence state tracker, plus the in-process implementation.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from abc import ABC, abstractmethod
import threading
import time

from ct_compliance_core_v1 import CacheUnavailable, logger

# ============================================
# CACHE CONTRACT
# ============================================

class ComplianceCache(ABC):
    """Shared key/value cache with per-entry TTL and atomic conditional update."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or expiry."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int):
        pass

    @abstractmethod
    def delete(self, key: str):
        pass

    @abstractmethod
    def compare_and_set(self, key: str, expected: Optional[Any], value: Any, ttl_seconds: int) -> bool:
        """
        Store value only if the current value equals expected.

        expected=None means the key must be absent (or expired).
        Returns True when the write happened.
        """
        pass

    @abstractmethod
    def clear_pattern(self, prefix: str) -> int:
        """Remove every key starting with prefix; returns the count removed."""
        pass

# ============================================
# IN-MEMORY IMPLEMENTATION
# ============================================

@dataclass
class _CacheEntry:
    value: Any
    expires_at: float

class InMemoryComplianceCache(ComplianceCache):
    """Process-local cache (production would back this with a shared store)."""

    DEFAULT_TTL = 3600

    def __init__(self, operation_timeout: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._operation_timeout = operation_timeout
        self._clock = clock

    def _acquire(self, operation: str, key: str):
        if not self._lock.acquire(timeout=self._operation_timeout):
            logger.error(f"[CACHE] {operation} timed out after {self._operation_timeout}s for {key}")
            raise CacheUnavailable(f"Cache {operation} timed out for {key}")

    def _live_entry(self, key: str) -> Optional[_CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[int]) -> float:
        ttl = ttl_seconds if ttl_seconds else self.DEFAULT_TTL
        return self._clock() + ttl

    def get(self, key: str) -> Optional[Any]:
        self._acquire("get", key)
        try:
            entry = self._live_entry(key)
            return entry.value if entry else None
        finally:
            self._lock.release()

    def set(self, key: str, value: Any, ttl_seconds: int):
        self._acquire("set", key)
        try:
            self._entries[key] = _CacheEntry(value=value, expires_at=self._expiry(ttl_seconds))
        finally:
            self._lock.release()

    def delete(self, key: str):
        self._acquire("delete", key)
        try:
            self._entries.pop(key, None)
        finally:
            self._lock.release()

    def compare_and_set(self, key: str, expected: Optional[Any], value: Any, ttl_seconds: int) -> bool:
        self._acquire("compare_and_set", key)
        try:
            entry = self._live_entry(key)
            current = entry.value if entry else None
            if current != expected:
                logger.warning(f"[CACHE] compare_and_set rejected for {key}: value changed")
                return False
            self._entries[key] = _CacheEntry(value=value, expires_at=self._expiry(ttl_seconds))
            return True
        finally:
            self._lock.release()

    def clear_pattern(self, prefix: str) -> int:
        self._acquire("clear_pattern", prefix)
        try:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)
        finally:
            self._lock.release()

    def cleanup(self) -> int:
        """Evict expired entries."""
        self._acquire("cleanup", "*")
        try:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)
        finally:
            self._lock.release()

    def get_stats(self) -> Dict[str, int]:
        self._acquire("get_stats", "*")
        try:
            now = self._clock()
            expired_count = sum(1 for entry in self._entries.values() if now > entry.expires_at)
            return {
                'size': len(self._entries),
                'expired_count': expired_count
            }
        finally:
            self._lock.release()
