import threading
from typing import Dict, Set

from ipgate.core import Address


class AccessState:
    """
    Dynamic allow set and failed-attempt counters, shared by every request
    and the renewal loop. Each method holds the lock for one lookup/update.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._dynamic: Set[Address] = set()
        self._attempts: Dict[Address, int] = {}

    def is_dynamic(self, addr: Address) -> bool:
        with self._lock:
            return addr in self._dynamic

    def allow_dynamic(self, addr: Address) -> None:
        with self._lock:
            self._dynamic.add(addr)

    def reset_dynamic(self) -> int:
        with self._lock:
            discarded = len(self._dynamic)
            self._dynamic = set()
        return discarded

    def dynamic_count(self) -> int:
        with self._lock:
            return len(self._dynamic)

    def attempts(self, addr: Address) -> int:
        with self._lock:
            return self._attempts.get(addr, 0)

    def record_failure(self, addr: Address) -> int:
        with self._lock:
            count = self._attempts.get(addr, 0) + 1
            self._attempts[addr] = count
        return count

    def banned_count(self, threshold: int) -> int:
        with self._lock:
            return sum(1 for count in self._attempts.values() if count >= threshold)
