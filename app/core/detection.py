"""
Detection layers — the pass/fail checks that run once a click-id is valid.

Layers:
  1. IP validity (unknown / localhost / private ranges)
  2. Geo blocking (unknown country fails closed, allow + deny lists)
  3. Bot UA (automation libraries, crawlers, user-agents is_bot)   [block_bots]
  4. Datacenter origin (cloud ASNs, hosting-provider tokens)         [block_datacenter]
  5. VPN tokens in UA / headers                                      [block_vpn]
  6. Multi-hop proxy forwarding headers                              [block_proxy]
  7. Header fingerprint (missing UA, scripted HTTP clients)

Toggled layers that are switched off report "passed" without running.
Geo has no toggle; it fails closed on an unknown country.
Results feed the risk engine (passed_all_layers, is_bot, is_datacenter)
and the behavioral observer (critical-layer failures → "blocked").
"""

import ipaddress
import re
from dataclasses import dataclass, field

from user_agents import parse as parse_ua

from app.core.context import ProtectionConfig, RequestContext

LAYER_IP = "ip_validation"
LAYER_GEO = "geo_blocking"
LAYER_BOT = "bot_detection"
LAYER_DATACENTER = "datacenter_detection"
LAYER_VPN = "vpn_detection"
LAYER_PROXY = "proxy_detection"
LAYER_FINGERPRINT = "header_fingerprint"

CRITICAL_LAYER_TOKENS = ("bot", "datacenter", "vpn", "proxy")

# --- Automation / crawler UA substrings ---
BOT_UA_PATTERNS: list[re.Pattern] = [
    re.compile(p, re.IGNORECASE) for p in [
        r"bot", r"crawl", r"spider", r"slurp", r"mediapartners",
        r"yandex", r"baiduspider", r"facebookexternalhit",
        r"whatsapp", r"telegram", r"slack", r"discord",
        r"curl/", r"wget/", r"python-requests", r"python-urllib",
        r"java/", r"okhttp", r"go-http-client", r"axios/",
        r"node-fetch", r"scrapy", r"phantomjs", r"headless",
        r"selenium", r"puppeteer",
    ]
]

# Scripted HTTP clients that should never carry a paid click
SCRIPTED_UA_PATTERNS: list[re.Pattern] = [
    re.compile(p, re.IGNORECASE) for p in [
        r"^curl/", r"^wget/", r"python-requests", r"^java/", r"okhttp", r"go-http",
    ]
]

# Known datacenter / cloud ASNs
DATACENTER_ASNS: set[int] = {
    14061,   # DigitalOcean
    16509,   # Amazon AWS
    15169,   # Google Cloud
    8075,    # Microsoft Azure
    20473,   # Vultr
    63949,   # Linode/Akamai
    14618,   # Amazon
    396982,  # Google
    16276,   # OVH
    24940,   # Hetzner
    51167,   # Contabo
}

DATACENTER_TOKENS = re.compile(
    r"amazon|aws|google cloud|azure|digitalocean|linode|vultr|ovh|hetzner|contabo",
    re.IGNORECASE,
)
VPN_TOKENS = re.compile(
    r"vpn|tunnel|nordvpn|expressvpn|surfshark|protonvpn|mullvad",
    re.IGNORECASE,
)
PROXY_HEADERS = ("x-forwarded-for", "x-forwarded-host", "x-real-ip", "x-proxy-id", "via", "forwarded")

# Headers whose values are scanned for provider tokens. Free-form headers
# like user-agent and referer are excluded to avoid false positives.
_PROVIDER_HEADERS = ("via", "x-hosting-provider", "x-asn-org", "x-isp", "x-forwarded-server")


@dataclass(frozen=True)
class LayerResult:
    layer: str
    passed: bool
    reason: str = ""
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class LayerSummary:
    passed: bool
    failed_layers: tuple[str, ...]
    results: tuple[LayerResult, ...]

    @property
    def is_bot(self) -> bool:
        return LAYER_BOT in self.failed_layers

    @property
    def is_datacenter(self) -> bool:
        return LAYER_DATACENTER in self.failed_layers

    @property
    def has_critical_failure(self) -> bool:
        return any(tok in layer for layer in self.failed_layers for tok in CRITICAL_LAYER_TOKENS)


def check_ip(ctx: RequestContext) -> LayerResult:
    ip = (ctx.ip or "").strip()
    if not ip or ip in ("unknown", "localhost"):
        return LayerResult(LAYER_IP, False, "IP address unknown or missing", {"ip": ip})
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return LayerResult(LAYER_IP, False, "Malformed IP address", {"ip": ip})
    if addr.is_loopback:
        return LayerResult(LAYER_IP, False, "Localhost IP detected", {"ip": ip})
    if addr.is_private:
        return LayerResult(LAYER_IP, False, "Private IP address detected", {"ip": ip})
    return LayerResult(LAYER_IP, True)


def check_geo(ctx: RequestContext, config: ProtectionConfig) -> LayerResult:
    country = (ctx.country or "").upper()
    if not country or country in ("UNKNOWN", "XX"):
        # fail closed
        return LayerResult(LAYER_GEO, False, "Country unknown", {"country": country})
    if config.allowed_countries and country not in config.allowed_countries:
        return LayerResult(LAYER_GEO, False, "Country not in allowed list",
                           {"country": country, "allowed": list(config.allowed_countries)})
    if country in config.blocked_countries:
        return LayerResult(LAYER_GEO, False, "Country is blocked", {"country": country})
    return LayerResult(LAYER_GEO, True)


def check_bot(ctx: RequestContext, config: ProtectionConfig) -> LayerResult:
    if not config.block_bots:
        return LayerResult(LAYER_BOT, True)
    ua = ctx.user_agent or ""
    for pattern in BOT_UA_PATTERNS:
        if pattern.search(ua):
            return LayerResult(LAYER_BOT, False, "Bot user-agent detected", {"pattern": pattern.pattern})
    if ua and parse_ua(ua).is_bot:
        return LayerResult(LAYER_BOT, False, "Bot user-agent detected", {"pattern": "user_agents"})
    return LayerResult(LAYER_BOT, True)


def check_datacenter(ctx: RequestContext, config: ProtectionConfig) -> LayerResult:
    if not config.block_datacenter:
        return LayerResult(LAYER_DATACENTER, True)
    if ctx.asn and ctx.asn in DATACENTER_ASNS:
        return LayerResult(LAYER_DATACENTER, False, "Datacenter ASN", {"asn": ctx.asn})
    for name in _PROVIDER_HEADERS:
        value = ctx.headers.get(name)
        if value and DATACENTER_TOKENS.search(value):
            return LayerResult(LAYER_DATACENTER, False, "Datacenter provider header",
                               {"header": name})
    return LayerResult(LAYER_DATACENTER, True)


def check_vpn(ctx: RequestContext, config: ProtectionConfig) -> LayerResult:
    if not config.block_vpn:
        return LayerResult(LAYER_VPN, True)
    haystack = " ".join([ctx.user_agent or ""] + [ctx.headers.get(h, "") for h in _PROVIDER_HEADERS])
    match = VPN_TOKENS.search(haystack)
    if match:
        return LayerResult(LAYER_VPN, False, "VPN detected", {"indicator": match.group(0).lower()})
    return LayerResult(LAYER_VPN, True)


def check_proxy(ctx: RequestContext, config: ProtectionConfig) -> LayerResult:
    if not config.block_proxy:
        return LayerResult(LAYER_PROXY, True)
    for name in PROXY_HEADERS:
        value = ctx.headers.get(name)
        if value and "," in value:
            return LayerResult(LAYER_PROXY, False, "Proxy chain detected", {"header": name})
    return LayerResult(LAYER_PROXY, True)


def check_fingerprint(ctx: RequestContext) -> LayerResult:
    ua = ctx.user_agent or ctx.headers.get("user-agent", "")
    if not ua or ua == "unknown":
        return LayerResult(LAYER_FINGERPRINT, False, "Missing User-Agent", {"missing": ["user-agent"]})
    for pattern in SCRIPTED_UA_PATTERNS:
        if pattern.search(ua):
            return LayerResult(LAYER_FINGERPRINT, False, "Suspicious User-Agent pattern",
                               {"pattern": pattern.pattern})
    return LayerResult(LAYER_FINGERPRINT, True)


def run_layers(ctx: RequestContext, config: ProtectionConfig) -> LayerSummary:
    """Run every layer. No early exit: the bot and datacenter verdicts must
    exist even when the request already failed on IP or geo."""
    results = [
        check_ip(ctx),
        check_geo(ctx, config),
        check_bot(ctx, config),
        check_datacenter(ctx, config),
        check_vpn(ctx, config),
        check_proxy(ctx, config),
        check_fingerprint(ctx),
    ]
    return summarize_layers(results)


def summarize_layers(results: list[LayerResult]) -> LayerSummary:
    failed = tuple(r.layer for r in results if not r.passed)
    return LayerSummary(passed=not failed, failed_layers=failed, results=tuple(results))
