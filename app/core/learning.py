"""
Learning model — pure functions behind the consolidation job.

Nothing here touches storage. The job (app/jobs/consolidate.py) feeds rows
in and writes results back, so every rule below is unit-testable on its own:

  - analyze_perfection     "too perfect to be organic" score for a pattern
  - consolidation_stage    stage assigned when raw evidence is folded in
  - next_stage             stage after confidence has been recomputed
  - stability_anomalies    high-frequency / low-variation detection
  - decay_coefficient      time-based confidence decay
  - pattern_confidence     final confidence for a learned pattern
"""

import hashlib
import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from app.core import thresholds as t


class LearningStage(str, Enum):
    EMERGING = "emerging"
    ESTABLISHED = "established"
    FADING = "fading"
    SUSPICIOUS_PERFECT = "suspicious_perfect"


class SuspicionLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


HIGH_FREQUENCY = "high_frequency"
LOW_VARIATION = "low_variation"


@dataclass(frozen=True)
class PerfectionAnalysis:
    score: float
    suspicion: SuspicionLevel
    indicators: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_perfect(self) -> bool:
        return self.score >= t.IS_PERFECT_SCORE

    def to_profile(self) -> dict:
        return {
            "score": round(self.score, 4),
            "suspicion": self.suspicion.value,
            "indicators": list(self.indicators),
        }


def suspicion_for(score: float) -> SuspicionLevel:
    if score >= t.SUSPICION_HIGH:
        return SuspicionLevel.HIGH
    if score >= t.SUSPICION_MEDIUM:
        return SuspicionLevel.MEDIUM
    if score >= t.SUSPICION_LOW:
        return SuspicionLevel.LOW
    return SuspicionLevel.NONE


def analyze_perfection(features: dict, occurrences: int, context_variations: int) -> PerfectionAnalysis:
    score = 0.0
    indicators: list[str] = []

    stability = occurrences / max(context_variations, 1)
    if stability > t.STABILITY_RATIO_THRESHOLD:
        score += t.PERF_STABILITY
        indicators.append(f"High stability ratio: {stability:.1f}")

    features = features or {}
    if features.get("header_order_entropy", 0.0) > t.PERF_HEADER_ENTROPY_THRESHOLD:
        score += t.PERF_HEADER_ENTROPY
        indicators.append("Perfect header order entropy")
    if features.get("header_case_consistency") is True:
        score += t.PERF_CASE_CONSISTENT
        indicators.append("Perfect header case consistency")
    if features.get("has_user_agent") and features.get("has_referer") and features.get("has_accept_language"):
        score += t.PERF_ALL_HEADERS
        indicators.append("All standard headers present")
    if features.get("is_direct_access") is True and features.get("url_depth") == 0:
        score += t.PERF_LINEAR_DIRECT
        indicators.append("Linear direct access pattern")

    if context_variations <= 1 and occurrences >= t.PERF_NO_VARIATION_MIN_REPEATS:
        score += t.PERF_NO_VARIATION
        indicators.append("No context variation despite repeats")

    score = round(score, 6)
    return PerfectionAnalysis(score=score, suspicion=suspicion_for(score), indicators=tuple(indicators))


def consolidation_stage(current: LearningStage | None, occurrences: int,
                        analysis: PerfectionAnalysis) -> LearningStage:
    """Stage when new raw evidence is folded into a learned pattern."""
    if current == LearningStage.SUSPICIOUS_PERFECT or analysis.suspicion == SuspicionLevel.HIGH:
        return LearningStage.SUSPICIOUS_PERFECT
    if occurrences >= t.ESTABLISHED_MIN_OCCURRENCES:
        return LearningStage.ESTABLISHED
    return LearningStage.EMERGING


def next_stage(current: LearningStage, confidence: float, occurrences: int,
               perfection: dict | None = None) -> LearningStage:
    """Stage after confidence recomputation. suspicious_perfect is sticky."""
    if current == LearningStage.SUSPICIOUS_PERFECT:
        return current
    if perfection and perfection.get("suspicion") == SuspicionLevel.HIGH.value:
        return LearningStage.SUSPICIOUS_PERFECT
    if confidence >= t.ESTABLISHED_MIN_CONFIDENCE and occurrences >= t.ESTABLISHED_MIN_OCCURRENCES:
        return LearningStage.ESTABLISHED
    if current == LearningStage.ESTABLISHED and confidence < t.FADING_MAX_CONFIDENCE:
        return LearningStage.FADING
    return current


def _hours(start: datetime | None, end: datetime | None) -> float:
    if not start or not end:
        return 0.0
    return max((end - start).total_seconds() / 3600.0, 0.0)


def stability_anomalies(occurrences: int, context_variations: int,
                        first_seen: datetime | None, last_seen: datetime | None) -> dict:
    """Anomalies for an established pattern, keyed by type. Empty if clean."""
    found: dict = {}
    if occurrences < t.ANOMALY_MIN_OCCURRENCES:
        return found
    hours = _hours(first_seen, last_seen)
    if hours <= 0:
        return found

    per_hour = occurrences / hours
    if per_hour > t.HIGH_FREQUENCY_PER_HOUR:
        found[HIGH_FREQUENCY] = {"occurrences_per_hour": round(per_hour, 3)}

    ratio = max(context_variations, 1) / occurrences
    if ratio < t.LOW_VARIATION_RATIO and occurrences > t.LOW_VARIATION_MIN_OCCURRENCES:
        found[LOW_VARIATION] = {"context_ratio": round(ratio, 4)}
    return found


def decay_coefficient(last_seen: datetime | None, now: datetime, half_life_hours: float) -> float:
    """Exponential decay since the last reinforcing sighting. Not compounding."""
    idle = _hours(last_seen, now)
    if half_life_hours <= 0:
        return 1.0
    return max(t.DECAY_FLOOR, 0.5 ** (idle / half_life_hours))


def base_confidence(occurrences: int, context_variations: int,
                    persistence_hours: float, decay: float) -> float:
    occ = min(math.log1p(max(occurrences, 0)) / math.log1p(t.CONFIDENCE_OCCURRENCE_SATURATION), 1.0)
    var = min(max(context_variations, 0) / t.CONFIDENCE_VARIATION_SATURATION, 1.0)
    persist = min(max(persistence_hours, 0.0) / t.CONFIDENCE_PERSISTENCE_SATURATION_HOURS, 1.0)
    raw = (
        t.CONFIDENCE_OCCURRENCE_WEIGHT * occ
        + t.CONFIDENCE_VARIATION_WEIGHT * var
        + t.CONFIDENCE_PERSISTENCE_WEIGHT * persist
    )
    return min(max(raw * decay, 0.0), 1.0)


def pattern_confidence(occurrences: int, context_variations: int,
                       first_seen: datetime | None, last_seen: datetime | None,
                       decay: float, profile: dict | None) -> float:
    profile = profile or {}
    confidence = base_confidence(occurrences, context_variations, _hours(first_seen, last_seen), decay)

    anomalies = profile.get("stability_anomalies") or {}
    if HIGH_FREQUENCY in anomalies:
        confidence *= t.HIGH_FREQUENCY_FACTOR
    if LOW_VARIATION in anomalies:
        confidence *= t.LOW_VARIATION_FACTOR

    perfection = profile.get("perfection_analysis") or {}
    score = perfection.get("score", 0.0)
    if score > t.PERFECTION_CONFIDENCE_THRESHOLD:
        confidence *= 1 - score * t.PERFECTION_CONFIDENCE_FACTOR

    return round(min(max(confidence, 0.0), 1.0), 6)


def context_hash(features: dict) -> str:
    """Identity of one evidencing context: the full, un-bucketed snapshot."""
    payload = json.dumps(features or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode()).hexdigest()
