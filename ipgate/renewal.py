import logging
import socket
import threading
from typing import Callable, Iterable, List, Optional, Protocol

from ipgate.core import Address, parse_address
from ipgate.state import AccessState

logger = logging.getLogger(__name__)

Resolver = Callable[[str], List[Address]]


class StopSignal(Protocol):
    def wait(self, timeout: Optional[float] = None) -> bool: ...


def resolve_host(hostname: str) -> List[Address]:
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    addrs: List[Address] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        addr = parse_address(sockaddr[0])
        if addr not in addrs:
            addrs.append(addr)
    return addrs


class RenewalLoop:
    """
    Keeps the dynamic allow set filled with the addresses of trusted
    hostnames and wipes it every `interval` seconds, which also drops
    addresses that were added by a successful Basic-auth login.
    """

    def __init__(
        self,
        state: AccessState,
        interval: float,
        resolver: Resolver = resolve_host,
    ) -> None:
        self.state = state
        self.interval = interval
        self.resolver = resolver
        self.hostnames: List[str] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def record_resolved_hosts(self, hostnames: Iterable[str]) -> None:
        self.hostnames = [h.strip() for h in hostnames if h and h.strip()]

    def sweep(self) -> int:
        added = 0
        for host in self.hostnames:
            try:
                addrs = self.resolver(host)
            except (OSError, ValueError) as exc:
                logger.error("lookup ip failed: host=%s error=%s", host, exc)
                continue
            for addr in addrs:
                self.state.allow_dynamic(addr)
                added += 1
                logger.info("added ip from host: host=%s ip=%s", host, addr)
        return added

    def reset(self) -> None:
        discarded = self.state.reset_dynamic()
        logger.info("renewing dynamic IPs (%d discarded)", discarded)

    def run(self, stop: StopSignal) -> None:
        """Sweep, wait, reset, until `stop.wait(interval)` returns True."""
        while True:
            self.sweep()
            if stop.wait(self.interval):
                return
            self.reset()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, args=(self._stop_event,), name="ipgate-renewal", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
