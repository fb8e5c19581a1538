"""
Request snapshot handed to the classification pipeline.

A RequestContext is built once per inbound request by the HTTP layer and
never mutated afterwards. Header keys keep their original order and casing
(header-order and case-consistency checks need both) while lookups are
case-insensitive and treat "_" like "-" (CGI-style HTTP_ACCEPT_LANGUAGE).
"""

import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.config import get_settings


def _norm(key: str) -> str:
    return key.strip().lower().replace("_", "-")


class HeaderMap(Mapping):
    """Immutable, order-preserving, case-insensitive header mapping."""

    __slots__ = ("_items", "_index")

    def __init__(self, items: Mapping[str, str] | Iterable[tuple[str, str]] | None = None):
        if items is None:
            pairs: list[tuple[str, str]] = []
        elif isinstance(items, Mapping):
            pairs = [(str(k), str(v)) for k, v in items.items()]
        else:
            pairs = [(str(k), str(v)) for k, v in items]
        self._items = tuple(pairs)
        # First occurrence wins, like most proxies
        index: dict[str, str] = {}
        for k, v in self._items:
            index.setdefault(_norm(k), v)
        self._index = index

    def __getitem__(self, key: str) -> str:
        return self._index[_norm(key)]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _norm(key) in self._index

    def __iter__(self) -> Iterator[str]:
        return (k for k, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def raw_keys(self) -> list[str]:
        """Header keys exactly as received, in arrival order."""
        return [k for k, _ in self._items]

    def __repr__(self) -> str:
        return f"HeaderMap({list(self._items)!r})"


@dataclass(frozen=True)
class SessionAggregates:
    """Prior-session behavior metrics collected client-side (optional)."""
    previous_requests: int = 0
    avg_time_between_requests: float | None = None  # ms
    timing_stddev_ms: float | None = None
    pages_visited: tuple[str, ...] = ()
    has_scrolled: bool = False
    has_mouse_movement: bool = False
    has_focus_blur: bool = False
    viewport_changes: int = 0


@dataclass(frozen=True)
class RequestContext:
    ip: str
    user_agent: str
    headers: HeaderMap
    country: str | None = None
    country_source: str | None = None       # cloudflare, ipv6_prefix, geoip ...
    query_params: Mapping[str, str] = field(default_factory=dict)
    request_path: str = "/"
    platform: str = "unknown"               # mobile | desktop | tablet | unknown
    navigation_depth: int = 0
    has_referer: bool = False
    request_started_ms: float = 0.0
    server_received_ms: float = 0.0
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    asn: int | None = None
    domain_id: str = "default"
    session: SessionAggregates | None = None

    @property
    def processing_ms(self) -> float:
        return self.server_received_ms - self.request_started_ms

    @property
    def referer(self) -> str | None:
        return self.headers.get("referer") or self.headers.get("referrer")


@dataclass(frozen=True)
class ProtectionConfig:
    """Per-domain protection toggles. Network rules are loaded from the store."""
    block_bots: bool = True
    block_vpn: bool = False
    block_datacenter: bool = True
    block_proxy: bool = False
    rate_limit_enabled: bool = False
    rate_limit_requests: int = 60
    rate_limit_window: int = 60
    allowed_countries: tuple[str, ...] = ()
    blocked_countries: tuple[str, ...] = ()
    bypass_param_key: str | None = None
    bypass_param_value: str | None = None
    high_trust_network: str = "google_ads"

    @classmethod
    def from_settings(cls, **overrides) -> "ProtectionConfig":
        s = get_settings()
        values = dict(
            block_bots=s.block_bots,
            block_vpn=s.block_vpn,
            block_datacenter=s.block_datacenter,
            block_proxy=s.block_proxy,
            rate_limit_enabled=s.rate_limit_enabled,
            rate_limit_requests=s.rate_limit_requests,
            rate_limit_window=s.rate_limit_window,
            allowed_countries=tuple(c.upper() for c in s.allowed_countries),
            blocked_countries=tuple(c.upper() for c in s.blocked_countries),
            bypass_param_key=s.bypass_param_key,
            bypass_param_value=s.bypass_param_value,
            high_trust_network=s.high_trust_network,
        )
        values.update(overrides)
        return cls(**values)


# --- Platform classification ---

_MOBILE_UA = re.compile(
    r"mobile|android(?!.*tablet)|iphone|ipod|blackberry|windows phone|opera mini|iemobile",
    re.IGNORECASE,
)
_TABLET_UA = re.compile(r"tablet|ipad|playbook|silk|kindle", re.IGNORECASE)
_DESKTOP_UA = re.compile(r"windows|macintosh|linux|x11", re.IGNORECASE)


def detect_platform_type(user_agent: str | None) -> str:
    ua = user_agent or ""
    if _MOBILE_UA.search(ua):
        return "mobile"
    if _TABLET_UA.search(ua):
        return "tablet"
    if _DESKTOP_UA.search(ua):
        return "desktop"
    return "unknown"
