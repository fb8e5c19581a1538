"""
Scoring model constants — every weight and threshold used by the
classification pipeline lives here, so the model can be audited and
tuned without touching request plumbing.

Sections:
  1. Platform trust profiles
  2. Risk engine (coherence, human noise, perfection, temporal, blend)
  3. Contradiction detector
  4. Behavioral observer buckets
  5. Learning consolidator
"""

from dataclasses import dataclass


# ---------------------------------------------------------------------------
# 1. Platform trust profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlatformProfile:
    platform: str
    base_trust: float
    min_human_noise: float      # organic noise required before "real"
    max_perfection: float       # tolerated "too clean" composite
    context_weight: float       # multiplier on the context-risk blend


PLATFORM_PROFILES: dict[str, PlatformProfile] = {
    "desktop": PlatformProfile("desktop", base_trust=0.3, min_human_noise=0.15, max_perfection=0.7, context_weight=1.5),
    "mobile": PlatformProfile("mobile", base_trust=0.6, min_human_noise=0.05, max_perfection=0.9, context_weight=0.8),
    "tablet": PlatformProfile("tablet", base_trust=0.5, min_human_noise=0.1, max_perfection=0.8, context_weight=1.0),
    "unknown": PlatformProfile("unknown", base_trust=0.2, min_human_noise=0.2, max_perfection=0.6, context_weight=2.0),
}


def profile_for(platform: str | None) -> PlatformProfile:
    return PLATFORM_PROFILES.get(platform or "unknown", PLATFORM_PROFILES["unknown"])


# ---------------------------------------------------------------------------
# 2. Risk engine
# ---------------------------------------------------------------------------

RISK_NO_CLICK_ID = 1.0
RISK_INVALID_CLICK_ID = 0.9
RISK_HIGH_TRUST_OVERRIDE = 0.05

CLICK_ID_SCORE_VALID = 1.0
CLICK_ID_SCORE_INVALID = 0.2

# Branch 1: human without economic value
HUMAN_NO_VALUE_MIN_COHERENCE = 0.5
HUMAN_NO_VALUE_MIN_NOISE = 0.3

# Coherence
COHERENCE_START = 0.5
COHERENCE_MOBILE_UA_MISMATCH = 0.3
COHERENCE_DESKTOP_UA_MISMATCH = 0.2
COHERENCE_LANGUAGE_MISMATCH = 0.1
COHERENCE_CONTRADICTED = 0.1
HEADER_COHERENCE_STANDARD_WEIGHT = 0.3
HEADER_COHERENCE_MIXED_CASE_PENALTY = 0.1
HEADER_COHERENCE_MIXED_CASE_SHARE = 0.3
HEADER_COHERENCE_XHR_NO_REFERER = 0.15
BEHAVIOR_COHERENCE_DEPTH = 0.1
BEHAVIOR_COHERENCE_REFERER = 0.15
BEHAVIOR_COHERENCE_SESSION = 0.1

# Human noise (organic behavior indicators)
NOISE_SCROLL = 0.1
NOISE_MOUSE = 0.15
NOISE_FOCUS_BLUR = 0.1
NOISE_VIEWPORT = 0.1
NOISE_NATURAL_TIMING = 0.15
NOISE_NATURAL_TIMING_MS = (500, 30000)  # exclusive bounds
NOISE_DETAILED_UA = 0.05
NOISE_DETAILED_UA_MIN_LEN = 50
NOISE_REFERER = 0.1
NOISE_DEPTH_STEP = 0.05
NOISE_DEPTH_CAP = 3

# Perfection ("too clean to be organic")
PERFECTION_PASSED_ALL = 0.2
PERFECTION_IDEAL_HEADER_COUNT = 0.15
PERFECTION_IDEAL_HEADER_RANGE = (8, 15)
PERFECTION_IDEAL_LATENCY = 0.15
PERFECTION_IDEAL_LATENCY_MS = (100, 500)
PERFECTION_ALL_STANDARD = 0.2
PERFECTION_LINEAR_NAV = 0.15
PERFECTION_CONSISTENT_TIMING = 0.15
PERFECTION_CONSISTENT_TIMING_CV = 0.1  # stddev / mean
PERFECTION_SOFT_KNEE = 0.5
PERFECTION_SOFT_SLOPE = 0.5
PERFECTION_HARD_KNEE = 0.7
PERFECTION_HARD_SLOPE = 2.0

# Temporal variance (session inter-request timing)
TEMPORAL_TOO_FAST_MS = 100
TEMPORAL_NATURAL_MS = (1000, 10000)
TEMPORAL_SLOW_MS = 60000
TEMPORAL_NATURAL = 0.8
TEMPORAL_SLOW = 0.5
TEMPORAL_OTHER = 0.4

# Blend
BASE_RISK_WEIGHT = 0.4
CONTEXT_RISK_WEIGHT = 0.6
CONTEXT_WEIGHTS_GENERAL = {"coherence": 0.25, "human_noise": 0.30, "perfection": 0.25, "temporal": 0.20}
CONTEXT_WEIGHTS_HIGH_TRUST = {"coherence": 0.10, "human_noise": 0.10, "perfection": 0.05, "temporal": 0.05}
HIGH_TRUST_RISK_CAP = 0.35

# Desktop hardening
DESKTOP_HARDENING_PENALTY = 0.3
DESKTOP_HARDENING_MAX_PERFECTION = 0.1

# Decisions
HIGH_TRUST_REAL_MAX_RISK = 0.5
HIGH_TRUST_SAFE_MIN_RISK = 0.7
REAL_MAX_RISK = 0.3
OBSERVE_MAX_RISK = 0.5
DESKTOP_REAL_MIN_NOISE = 0.2
DESKTOP_REAL_MIN_COHERENCE = 0.7


# ---------------------------------------------------------------------------
# 3. Contradiction detector
# ---------------------------------------------------------------------------

SOFTENING_FACTOR = 0.4                 # bot-signal weight multiplier on a valid click-id
SIGNIFICANT_BOT_LIKELIHOOD = 0.8       # with a valid click-id, only this counts
AUDIT_SIGNAL_MIN_WEIGHT = 0.3
HEADER_ORDER_TOLERANCE = 2
HEADER_ORDER_TYPICAL = 0.8
HEADER_ORDER_ATYPICAL = 0.3
HEADER_CASE_MIN_CONSISTENCY = 0.7
TIMING_TOO_FAST_MS = 50
TIMING_NATURAL_MS = (200, 2000)
MODERN_CHROME_VERSION = 90

# Canonical browser header order (upper-case, dash separated)
CANONICAL_HEADER_ORDER = (
    "HOST", "CONNECTION", "UPGRADE-INSECURE-REQUESTS",
    "USER-AGENT", "ACCEPT", "ACCEPT-ENCODING", "ACCEPT-LANGUAGE",
)

LANGUAGE_BY_COUNTRY: dict[str, tuple[str, ...]] = {
    "BR": ("pt", "pt-br", "portuguese"),
    "US": ("en", "en-us", "english"),
    "ES": ("es", "es-es", "spanish"),
    "FR": ("fr", "fr-fr", "french"),
    "DE": ("de", "de-de", "german"),
    "IT": ("it", "it-it", "italian"),
    "JP": ("ja", "jp", "japanese"),
    "CN": ("zh", "cn", "chinese"),
    "RU": ("ru", "russian"),
    "PT": ("pt", "pt-pt", "portuguese"),
    "MX": ("es", "es-mx", "spanish"),
    "AR": ("es", "es-ar", "spanish"),
}


# ---------------------------------------------------------------------------
# 4. Behavioral observer
# ---------------------------------------------------------------------------

TIME_BUCKET_HOURS = 4
NAV_DEPTH_BUCKET_CAP = 5
HEADER_COUNT_BUCKET_SIZE = 5
HEADER_COUNT_BUCKET_CAP = 5
OBSERVER_STANDARD_ORDER = (
    "HOST", "USER-AGENT", "ACCEPT", "ACCEPT-LANGUAGE",
    "ACCEPT-ENCODING", "REFERER", "CONNECTION",
)


# ---------------------------------------------------------------------------
# 5. Learning consolidator
# ---------------------------------------------------------------------------

# Perfection analysis
STABILITY_RATIO_THRESHOLD = 10        # occurrences per context variation
PERF_STABILITY = 0.3
PERF_HEADER_ENTROPY_THRESHOLD = 0.9
PERF_HEADER_ENTROPY = 0.2
PERF_CASE_CONSISTENT = 0.1
PERF_ALL_HEADERS = 0.15
PERF_LINEAR_DIRECT = 0.1
PERF_NO_VARIATION = 0.25
PERF_NO_VARIATION_MIN_REPEATS = 5
SUSPICION_HIGH = 0.7
SUSPICION_MEDIUM = 0.5
SUSPICION_LOW = 0.3
IS_PERFECT_SCORE = 0.6

# Stages
ESTABLISHED_MIN_OCCURRENCES = 5
ESTABLISHED_MIN_CONFIDENCE = 0.6
FADING_MAX_CONFIDENCE = 0.3

# Stability anomalies (tunable pending calibration)
ANOMALY_MIN_OCCURRENCES = 10
HIGH_FREQUENCY_PER_HOUR = 10
HIGH_FREQUENCY_FACTOR = 0.7
LOW_VARIATION_RATIO = 0.05
LOW_VARIATION_MIN_OCCURRENCES = 20
LOW_VARIATION_FACTOR = 0.6

# Confidence formula
CONFIDENCE_OCCURRENCE_WEIGHT = 0.5
CONFIDENCE_VARIATION_WEIGHT = 0.3
CONFIDENCE_PERSISTENCE_WEIGHT = 0.2
CONFIDENCE_OCCURRENCE_SATURATION = 50
CONFIDENCE_VARIATION_SATURATION = 5
CONFIDENCE_PERSISTENCE_SATURATION_HOURS = 72
PERFECTION_CONFIDENCE_THRESHOLD = 0.6
PERFECTION_CONFIDENCE_FACTOR = 0.3
DECAY_FLOOR = 0.05
HIGH_CONFIDENCE = 0.7
