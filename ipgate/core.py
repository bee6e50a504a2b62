import hmac
from dataclasses import dataclass
from enum import Enum
from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network, ip_address, ip_network
from typing import Iterable, Optional, Tuple, Union

Address = Union[IPv4Address, IPv6Address]
Network = Union[IPv4Network, IPv6Network]

PRIVATE_BLOCKED = "private address blocked"
IN_DENY_LIST = "in deny list"
BANNED = "banned"
AUTH_DISABLED = "auth disabled"
NO_MATCH = "no match"

STATIC_ALLOW = "static allow"
DYNAMIC_ALLOW = "dynamic allow"
AUTHENTICATED = "authenticated"

PRIVATE_NETS = (
    ip_network("10.0.0.0/8"),
    ip_network("172.16.0.0/12"),
    ip_network("192.168.0.0/16"),
    ip_network("fc00::/7"),
)

LINK_LOCAL_MULTICAST_NETS = (
    ip_network("224.0.0.0/24"),
    ip_network("ff02::/16"),
)


@dataclass(frozen=True)
class Credential:
    name: str
    secret: str

    def __repr__(self) -> str:
        return f"Credential(name={self.name!r}, secret='***')"


@dataclass(frozen=True)
class Policy:
    deny_ranges: Tuple[Network, ...] = ()
    allow_ranges: Tuple[Network, ...] = ()
    deny_private: bool = False
    credentials: Tuple[Credential, ...] = ()
    max_attempts: int = 10


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    matched: Optional[str] = None

    @classmethod
    def allow(cls, reason: str, matched: Optional[str] = None) -> "Decision":
        return cls(True, reason, matched)

    @classmethod
    def deny(cls, reason: str, matched: Optional[str] = None) -> "Decision":
        return cls(False, reason, matched)


class Label(str, Enum):
    PRIVATE = "private"
    DENY = "deny"
    STATIC_ALLOW = "static-allow"
    DYNAMIC_ALLOW = "dynamic-allow"
    BANNED = "banned"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class Classification:
    label: Label
    matched: Optional[str] = None
    attempts: int = 0


def parse_address(value: str) -> Address:
    """
    Parse a client address. IPv4-mapped IPv6 addresses come back as IPv4
    so that IPv4 ranges apply to them.
    """
    addr = ip_address(value.strip())
    if isinstance(addr, IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def parse_networks(raw: str) -> Tuple[Network, ...]:
    networks = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        networks.append(ip_network(item, strict=False))
    return tuple(networks)


def parse_credentials(raw: str) -> Tuple[Credential, ...]:
    """
    'alice:secret,bob:1234' -> credentials. The secret is everything after
    the first colon.
    """
    creds = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        if ":" not in item:
            raise ValueError("malformed user entry (expected name:secret)")
        name, secret = item.split(":", 1)
        creds.append(Credential(name, secret))
    return tuple(creds)


def is_private_blocked(addr: Address) -> bool:
    if addr.is_loopback or addr.is_link_local:
        return True
    if first_match(addr, LINK_LOCAL_MULTICAST_NETS) is not None:
        return True
    return first_match(addr, PRIVATE_NETS) is not None


def first_match(addr: Address, networks: Iterable[Network]) -> Optional[Network]:
    # mixed families never match
    for net in networks:
        if addr in net:
            return net
    return None


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def match_credentials(
    supplied: Optional[Credential], credentials: Iterable[Credential]
) -> Optional[Credential]:
    if supplied is None:
        return None
    for cred in credentials:
        if _same(supplied.name, cred.name) and _same(supplied.secret, cred.secret):
            return cred
    return None
