from __future__ import annotations

import hashlib
import ipaddress
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

from admingate.config import DEFAULT_FINGERPRINT_SIGNALS

UNKNOWN_ORIGIN = "unknown"

# Consulted after X-Forwarded-For / X-Real-IP, in order
_FALLBACK_ORIGIN_HEADERS = ("cf-connecting-ip", "true-client-ip", "x-client-ip")

_MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad")


@dataclass(frozen=True)
class RequestMetadata:
    """Transport-agnostic view of an inbound request.

    Header names are lower-cased on construction so lookups are
    case-insensitive regardless of how the transport delivered them.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    connection_address: Optional[str] = None

    def __post_init__(self) -> None:
        normalized = {str(k).lower(): str(v) for k, v in dict(self.headers).items()}
        object.__setattr__(self, "headers", normalized)

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")

    @property
    def user_agent(self) -> str:
        return self.header("user-agent")

    @classmethod
    def from_mapping(
        cls, headers: Iterable[tuple[str, str]] | Mapping[str, str], connection_address: Optional[str] = None
    ) -> "RequestMetadata":
        items = headers.items() if isinstance(headers, Mapping) else headers
        return cls(headers={k: v for k, v in items}, connection_address=connection_address)


def normalize_address(value: str) -> Optional[str]:
    """Return a canonical textual address, or None if ``value`` is not an IP."""
    candidate = value.strip()
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1 : candidate.index("]")]
    elif candidate.count(":") == 1 and "." in candidate:
        # IPv4 with port
        candidate = candidate.split(":", 1)[0]
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def is_private_address(value: str) -> bool:
    """Private, loopback, link-local and unique-local ranges count as non-public."""
    normalized = normalize_address(value)
    if normalized is None:
        return False
    addr = ipaddress.ip_address(normalized)
    return addr.is_private or addr.is_loopback or addr.is_link_local


def resolve_real_origin(
    headers: Mapping[str, str], connection_address: Optional[str] = None
) -> str:
    """Best-effort client address behind proxies.

    X-Forwarded-For is walked left to right and the first public address wins
    (falling back to the first entry). Then X-Real-IP when public, then the
    CDN headers, then the socket address.
    """
    lowered = {str(k).lower(): str(v) for k, v in headers.items()}

    forwarded = lowered.get("x-forwarded-for", "")
    entries = [part.strip() for part in forwarded.split(",") if part.strip()]
    if entries:
        for entry in entries:
            normalized = normalize_address(entry)
            if normalized and not is_private_address(normalized):
                return normalized
        return normalize_address(entries[0]) or entries[0]

    real_ip = lowered.get("x-real-ip", "").strip()
    if real_ip and not is_private_address(real_ip):
        return normalize_address(real_ip) or real_ip

    for header in _FALLBACK_ORIGIN_HEADERS:
        value = lowered.get(header, "").strip()
        if value:
            return normalize_address(value) or value

    if connection_address:
        return normalize_address(connection_address) or connection_address
    return UNKNOWN_ORIGIN


def device_class(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    if _MOBILE_RE.search(user_agent):
        return "mobile"
    if "Windows" in user_agent:
        return "windows"
    if "Mac" in user_agent:
        return "mac"
    if "Linux" in user_agent:
        return "linux"
    return "unknown"


class FingerprintEngine:
    """Derives a stable device identity from request headers.

    The signal set is policy: it is configured once and used identically at
    creation and validation time. With ``bind_origin`` the resolved network
    origin becomes part of the hash, so a network change is a mismatch. It is
    off by default, which leaves origin drift a logged-only signal.
    """

    def __init__(
        self,
        signals: Sequence[str] = DEFAULT_FINGERPRINT_SIGNALS,
        *,
        bind_origin: bool = False,
    ) -> None:
        self.signals = tuple(s.lower() for s in signals)
        self.bind_origin = bind_origin

    def signal_values(self, metadata: RequestMetadata) -> list[str]:
        values = [metadata.header(name) for name in self.signals]
        if self.bind_origin:
            values.append(resolve_real_origin(metadata.headers, metadata.connection_address))
        return values

    def compute(self, metadata: RequestMetadata) -> str:
        joined = "|".join(self.signal_values(metadata))
        return hashlib.sha256(joined.encode("utf-8")).hexdigest()

    def origin(self, metadata: RequestMetadata) -> str:
        return resolve_real_origin(metadata.headers, metadata.connection_address)
