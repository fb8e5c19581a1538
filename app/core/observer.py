"""
Behavioral observer — shadow recording of every classified request.

Extracts a coarse feature vector, buckets it, hashes the buckets (never
raw identifying values) and upserts an aggregate pattern row keyed by the
hash. The learning consolidator reads these rows later.

Fire-and-forget: observe_request() never raises and nothing on the
request path waits for it. The HTTP layer schedules it as a background
task after the decision has been returned.
"""

import hashlib
import hmac
import json
import re
from dataclasses import asdict, dataclass

import structlog

from app.core import thresholds as t
from app.core.context import ProtectionConfig, RequestContext
from app.core.detection import LayerSummary

logger = structlog.get_logger()

LEGITIMATE = "legitimate"
SUSPICIOUS = "suspicious"
BLOCKED = "blocked"

_BOT_UA = re.compile(r"bot|crawler|spider|scraper", re.IGNORECASE)
_MOBILE_UA = re.compile(r"mobile|android|iphone|ipad|ipod|blackberry|windows phone", re.IGNORECASE)


@dataclass(frozen=True)
class BehavioralFeatures:
    hour_of_day: int
    day_of_week: int            # Monday = 0
    has_user_agent: bool
    has_referer: bool
    has_accept_language: bool
    header_count: int
    is_direct_access: bool
    url_depth: int
    has_query_params: bool
    query_param_count: int
    bypass_param_present: bool
    bypass_param_valid: bool
    is_mobile: bool
    platform_category: str
    header_order_entropy: float
    header_case_consistency: bool

    def to_dict(self) -> dict:
        return asdict(self)


def header_order_entropy(keys: list[str]) -> float:
    """Share of headers sitting within ±2 of their standard browser position."""
    if not keys:
        return 0.0
    order = t.OBSERVER_STANDARD_ORDER
    matched = 0
    for index, key in enumerate(keys):
        normalized = key.upper().replace("_", "-")
        if normalized in order and abs(order.index(normalized) - index) <= t.HEADER_ORDER_TOLERANCE:
            matched += 1
    return matched / len(keys)


def header_case_consistent(keys: list[str]) -> bool:
    if not keys:
        return True
    if all(k == k.upper() for k in keys) or all(k == k.lower() for k in keys):
        return True
    return all(part and part[0] == part[0].upper() for k in keys for part in k.split("-"))


def extract_features(ctx: RequestContext, config: ProtectionConfig | None = None) -> BehavioralFeatures:
    ua = ctx.user_agent or ""
    keys = ctx.headers.raw_keys()
    has_ua = bool(ua) and ua != "unknown"
    has_referer = bool(ctx.referer)

    if _BOT_UA.search(ua):
        category = "bot"
    elif _MOBILE_UA.search(ua):
        category = "mobile"
    elif has_ua:
        category = "desktop"
    else:
        category = "unknown"

    bypass_present = bypass_valid = False
    if config and config.bypass_param_key:
        value = ctx.query_params.get(config.bypass_param_key)
        bypass_present = value is not None
        if bypass_present and config.bypass_param_value:
            bypass_valid = hmac.compare_digest(value, config.bypass_param_value)

    received = ctx.received_at
    return BehavioralFeatures(
        hour_of_day=received.hour,
        day_of_week=received.weekday(),
        has_user_agent=has_ua,
        has_referer=has_referer,
        has_accept_language=bool(ctx.headers.get("accept-language")),
        header_count=len(keys),
        is_direct_access=not has_referer,
        url_depth=len([p for p in (ctx.request_path or "/").split("/") if p]),
        has_query_params=bool(ctx.query_params),
        query_param_count=len(ctx.query_params),
        bypass_param_present=bypass_present,
        bypass_param_valid=bypass_valid,
        is_mobile=bool(_MOBILE_UA.search(ua)),
        platform_category=category,
        header_order_entropy=header_order_entropy(keys),
        header_case_consistency=header_case_consistent(keys),
    )


def normalized_buckets(features: BehavioralFeatures) -> dict:
    """The privacy-preserving projection that gets hashed."""
    return {
        "time_bucket": features.hour_of_day // t.TIME_BUCKET_HOURS,
        "day_type": "weekday" if features.day_of_week < 5 else "weekend",
        "header_completeness": sum([features.has_user_agent, features.has_referer,
                                    features.has_accept_language]),
        "navigation_depth": min(features.url_depth, t.NAV_DEPTH_BUCKET_CAP),
        "bypass_status": f"{features.bypass_param_present}_{features.bypass_param_valid}".lower(),
        "platform": features.platform_category,
        "header_count_bucket": min(features.header_count // t.HEADER_COUNT_BUCKET_SIZE,
                                   t.HEADER_COUNT_BUCKET_CAP),
        "is_direct": features.is_direct_access,
    }


def pattern_hash(features: BehavioralFeatures) -> str:
    payload = json.dumps(normalized_buckets(features), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()


def classify_traffic(layers: LayerSummary | None, pipeline_passed: bool) -> str:
    if pipeline_passed:
        return LEGITIMATE
    if layers is not None and layers.has_critical_failure:
        return BLOCKED
    return SUSPICIOUS


async def observe_request(
    store,
    ctx: RequestContext,
    layers: LayerSummary | None,
    pipeline_passed: bool,
    config: ProtectionConfig | None = None,
) -> None:
    """Record one observation. Swallows every failure."""
    try:
        features = extract_features(ctx, config)
        digest = pattern_hash(features)
        classification = classify_traffic(layers, pipeline_passed)
        await store.upsert_behavioral_pattern(
            pattern_hash=digest,
            classification=classification,
            features=features.to_dict(),
            seen_at=ctx.received_at,
        )
    except Exception:
        logger.warning("pattern_observation_failed", domain_id=ctx.domain_id, exc_info=True)
