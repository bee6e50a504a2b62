import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from ipgate.core import Credential, Network, Policy, parse_credentials, parse_networks

_TRUE = {"1", "t", "true"}
_FALSE = {"0", "f", "false"}
_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


class ConfigError(Exception):
    pass


@dataclass
class Settings:
    target: str
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    tls_cert: str = ""
    tls_key: str = ""
    status_path: str = "/basic-ip-auth"
    max_attempts: int = 10
    credentials: Tuple[Credential, ...] = ()
    allow_hosts: Tuple[str, ...] = ()
    allow_ranges: Tuple[Network, ...] = ()
    deny_ranges: Tuple[Network, ...] = ()
    deny_private: bool = False
    trust_headers: bool = False
    reset_interval: float = 7 * 86400.0
    log_level: str = "INFO"
    event_log: str = "logs/events.jsonl"

    @property
    def use_tls(self) -> bool:
        return bool(self.tls_cert and self.tls_key)

    def policy(self) -> Policy:
        return Policy(
            deny_ranges=self.deny_ranges,
            allow_ranges=self.allow_ranges,
            deny_private=self.deny_private,
            credentials=self.credentials,
            max_attempts=self.max_attempts,
        )


def parse_bool(key: str, value: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"failed parsing {value!r} as bool ({key})")


def parse_int(key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigError(f"failed parsing {value!r} as int ({key})") from None


def parse_duration(key: str, value: str) -> float:
    """'90' or '90s', '15m', '12h', '7d' -> seconds."""
    m = _DURATION.match(value.lower())
    if not m:
        raise ConfigError(f"failed parsing {value!r} as duration ({key})")
    seconds = float(m.group(1)) * _UNITS[m.group(2)]
    if seconds <= 0:
        raise ConfigError(f"{key} must be positive")
    return seconds


def parse_listen(value: str) -> Tuple[str, int]:
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        raise ConfigError(f"failed parsing {value!r} as listen address (LISTEN)")
    host = host.strip("[]") or "0.0.0.0"
    return host, parse_int("LISTEN", port)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    if environ is None:
        load_dotenv(override=False)
        environ = os.environ

    def get(key: str, default: str = "") -> str:
        return environ.get(key, default)

    target = get("TARGET").strip()
    if not target:
        raise ConfigError("TARGET is required (e.g. http://127.0.0.1:5000)")

    max_attempts = parse_int("MAX_ATTEMPTS", get("MAX_ATTEMPTS", "10"))
    if max_attempts < 0:
        raise ConfigError("MAX_ATTEMPTS must be >= 0")

    status_path = get("STATUS_PATH", "/basic-ip-auth").strip() or "/basic-ip-auth"
    if not status_path.startswith("/"):
        status_path = "/" + status_path

    try:
        credentials = parse_credentials(get("USERS"))
    except ValueError as exc:
        raise ConfigError(f"USERS: {exc}") from None

    ranges = {}
    for key in ("ALLOW_CIDR", "DENY_CIDR"):
        try:
            ranges[key] = parse_networks(get(key))
        except ValueError as exc:
            raise ConfigError(f"{key}: {exc}") from None

    host, port = parse_listen(get("LISTEN", ":8080"))
    tls_cert = get("TLS_CERT").strip()
    tls_key = get("TLS_KEY").strip()
    if bool(tls_cert) != bool(tls_key):
        raise ConfigError("TLS_CERT and TLS_KEY must be set together")

    return Settings(
        target=target.rstrip("/"),
        listen_host=host,
        listen_port=port,
        tls_cert=tls_cert,
        tls_key=tls_key,
        status_path=status_path.rstrip("/") or "/basic-ip-auth",
        max_attempts=max_attempts,
        credentials=credentials,
        allow_hosts=tuple(h.strip() for h in get("ALLOW_HOSTS").split(",") if h.strip()),
        allow_ranges=ranges["ALLOW_CIDR"],
        deny_ranges=ranges["DENY_CIDR"],
        deny_private=parse_bool("DENY_PRIVATE", get("DENY_PRIVATE", "false")),
        trust_headers=parse_bool("TRUST_HEADERS", get("TRUST_HEADERS", "false")),
        reset_interval=parse_duration("RESET_INTERVAL", get("RESET_INTERVAL", "7d")),
        log_level=get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        event_log=get("EVENT_LOG", "logs/events.jsonl").strip(),
    )
