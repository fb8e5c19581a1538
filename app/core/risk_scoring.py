"""
Risk scoring — turns click-id evidence, detection layers and contradiction
signals into one routing decision.

Decision ladder:
  1. No click-id            → risk 1.0, "human_no_value" (organic-looking) or "safe"
  2. Invalid / reused id    → risk 0.9, "safe"
  3. Valid high-trust id, not datacenter, not bot
                            → "real", risk 0.05 (deterministic, no weighting)
  4. Valid id otherwise     → weighted model:
       final = 0.4 * (1 - platform trust) + 0.6 * context risk
       context risk = blend(1-coherence, 1-human noise, perfection penalty,
                            1-temporal variance) * platform context weight

The engine is a pure function of its inputs: same inputs, same
assessment, same reasoning trail.
"""

import re
from dataclasses import dataclass, field

import structlog

from app.core import thresholds as t
from app.core.click_id import ClickIdEvidence
from app.core.context import RequestContext
from app.core.contradiction import ContradictionResult
from app.core.detection import LayerSummary
from app.core.thresholds import PlatformProfile, profile_for

logger = structlog.get_logger()

REAL = "real"
SAFE = "safe"
SAFE_OBSERVE = "safe_observe"
HUMAN_NO_VALUE = "human_no_value"

_STANDARD_HEADERS = ("user-agent", "accept", "accept-language", "accept-encoding")
_PERFECT_HEADERS = ("host", "user-agent", "accept", "accept-language", "accept-encoding", "connection")
_DETAILED_VERSION = re.compile(r"\d+\.\d+\.\d+")


@dataclass(frozen=True)
class RiskFactors:
    platform_trust: float
    header_coherence: float
    behavior_coherence: float
    timing_naturalness: float
    navigation_pattern: float


@dataclass(frozen=True)
class RiskAssessment:
    final_risk: float
    decision: str
    coherence_score: float
    human_noise_score: float
    perfection_penalty: float
    temporal_variance: float
    click_id_score: float
    economic_value: bool
    factors: RiskFactors
    reasoning: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "decision": self.decision,
            "final_risk": round(self.final_risk, 4),
            "coherence_score": round(self.coherence_score, 4),
            "human_noise_score": round(self.human_noise_score, 4),
            "perfection_penalty": round(self.perfection_penalty, 4),
            "temporal_variance": round(self.temporal_variance, 4),
            "click_id_score": self.click_id_score,
            "economic_value": self.economic_value,
            "factors": {
                "platform_trust": self.factors.platform_trust,
                "header_coherence": round(self.factors.header_coherence, 4),
                "behavior_coherence": round(self.factors.behavior_coherence, 4),
                "timing_naturalness": self.factors.timing_naturalness,
                "navigation_pattern": round(self.factors.navigation_pattern, 4),
            },
            "reasoning": list(self.reasoning),
        }


def conservative_assessment(reason: str) -> RiskAssessment:
    """What the caller gets when the pipeline itself breaks."""
    return RiskAssessment(
        final_risk=1.0,
        decision=SAFE,
        coherence_score=0.0,
        human_noise_score=0.0,
        perfection_penalty=0.0,
        temporal_variance=0.0,
        click_id_score=0.0,
        economic_value=False,
        factors=RiskFactors(0.0, 0.0, 0.0, 0.0, 0.0),
        reasoning=(f"Conservative default: {reason}",),
    )


def perfection_penalty(score: float) -> float:
    """Zero up to 0.5, gentle slope to 0.7, steep after. Monotone, capped at 1."""
    if score > t.PERFECTION_HARD_KNEE:
        # continuous at the hard knee
        penalty = (t.PERFECTION_HARD_KNEE - t.PERFECTION_SOFT_KNEE) * t.PERFECTION_SOFT_SLOPE \
            + (score - t.PERFECTION_HARD_KNEE) * t.PERFECTION_HARD_SLOPE
    elif score > t.PERFECTION_SOFT_KNEE:
        penalty = (score - t.PERFECTION_SOFT_KNEE) * t.PERFECTION_SOFT_SLOPE
    else:
        penalty = 0.0
    return min(penalty, 1.0)


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class RiskScoringEngine:
    def __init__(self, high_trust_network: str = "google_ads"):
        self.high_trust_network = high_trust_network

    def assess(
        self,
        ctx: RequestContext,
        evidence: ClickIdEvidence,
        layers: LayerSummary | None = None,
        contradictions: ContradictionResult | None = None,
    ) -> RiskAssessment:
        reasoning: list[str] = []
        profile = profile_for(ctx.platform)
        passed_all = bool(layers and layers.passed)
        reasoning.append(f"Platform: {profile.platform} (base trust: {profile.base_trust})")

        # --- 1. No click-id: no economic value ---
        if not evidence.has_click_id:
            reasoning.append("Click-id filter: none present, no economic value")
            coherence, noise, penalty, temporal = self._sub_scores(ctx, passed_all, contradictions, reasoning)
            if evidence.rules_unavailable:
                decision = SAFE
                reasoning.append("Network rules unavailable: failing closed")
            elif coherence > t.HUMAN_NO_VALUE_MIN_COHERENCE and noise > t.HUMAN_NO_VALUE_MIN_NOISE:
                decision = HUMAN_NO_VALUE
                reasoning.append("Human-like but no click-id")
            else:
                decision = SAFE
            reasoning.append(f"Decision: {decision}")
            return self._result(ctx, profile, t.RISK_NO_CLICK_ID, decision,
                                coherence, noise, penalty, temporal, 0.0, False, reasoning)

        # --- 2. Invalid or recycled click-id ---
        if not evidence.is_valid:
            reasoning.append(f"Click-id filter: invalid {evidence.network} id "
                             f"({', '.join(evidence.validation_errors)}; entropy {evidence.entropy:.2f})")
            coherence, noise, penalty, temporal = self._sub_scores(ctx, passed_all, contradictions, reasoning)
            reasoning.append(f"Decision: {SAFE}")
            return self._result(ctx, profile, t.RISK_INVALID_CLICK_ID, SAFE,
                                coherence, noise, penalty, temporal,
                                t.CLICK_ID_SCORE_INVALID, False, reasoning)

        reasoning.append(f"Click-id filter: valid {evidence.network} id "
                         f"(entropy {evidence.entropy:.2f}, referer match: "
                         f"{'yes' if evidence.referer_match else 'no'})")

        is_high_trust = evidence.network == self.high_trust_network
        is_datacenter = bool(layers and layers.is_datacenter)
        is_bot = bool(layers and layers.is_bot)

        # --- 3. Deterministic high-trust fast path ---
        if is_high_trust and not is_datacenter and not is_bot:
            reasoning.append("High-trust override: valid id, not datacenter, not bot")
            reasoning.append(f"Decision: {REAL}")
            logger.info("high_trust_override", network=evidence.network, decision=REAL)
            return RiskAssessment(
                final_risk=t.RISK_HIGH_TRUST_OVERRIDE,
                decision=REAL,
                coherence_score=1.0,
                human_noise_score=1.0,
                perfection_penalty=0.0,
                temporal_variance=1.0,
                click_id_score=t.CLICK_ID_SCORE_VALID,
                economic_value=True,
                factors=RiskFactors(profile.base_trust, 1.0, 1.0, 1.0, 1.0),
                reasoning=tuple(reasoning),
            )

        # --- 4. Weighted model ---
        coherence, noise, penalty, temporal = self._sub_scores(ctx, passed_all, contradictions, reasoning)

        base_risk = 1.0 - profile.base_trust
        weights = t.CONTEXT_WEIGHTS_HIGH_TRUST if is_high_trust else t.CONTEXT_WEIGHTS_GENERAL
        if is_high_trust:
            reasoning.append("High-trust network: secondary signals down-weighted")

        context_risk = (
            (1.0 - coherence) * weights["coherence"]
            + (1.0 - noise) * weights["human_noise"]
            + penalty * weights["perfection"]
            + (1.0 - min(temporal, 1.0)) * weights["temporal"]
        ) * profile.context_weight

        if (
            not is_high_trust
            and profile.platform == "desktop"
            and passed_all
            and penalty < t.DESKTOP_HARDENING_MAX_PERFECTION
            and noise < profile.min_human_noise
        ):
            context_risk += t.DESKTOP_HARDENING_PENALTY
            reasoning.append("Desktop hardening: clean passage without human noise")

        raw_risk = base_risk * t.BASE_RISK_WEIGHT + context_risk * t.CONTEXT_RISK_WEIGHT
        final_risk = raw_risk
        if is_high_trust:
            final_risk = min(final_risk, t.HIGH_TRUST_RISK_CAP)
            reasoning.append(f"High-trust network: risk capped at {t.HIGH_TRUST_RISK_CAP}")
        final_risk = _clamp(final_risk)

        reasoning.append(f"Risk: base({base_risk:.2f}) * {t.BASE_RISK_WEIGHT} + "
                         f"context({context_risk:.2f}) * {t.CONTEXT_RISK_WEIGHT} = {final_risk:.2f}")

        decision = self._decide(final_risk, noise, coherence, profile, is_high_trust, reasoning)

        if is_high_trust:
            logger.info("high_trust_scored", network=evidence.network,
                        is_datacenter=is_datacenter, is_bot=is_bot,
                        risk_before_cap=round(raw_risk, 3), risk_after_cap=round(final_risk, 3),
                        decision=decision)

        return self._result(ctx, profile, final_risk, decision, coherence, noise, penalty,
                            temporal, t.CLICK_ID_SCORE_VALID, True, reasoning)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def _decide(self, risk, noise, coherence, profile: PlatformProfile, is_high_trust, reasoning) -> str:
        if is_high_trust:
            if risk <= t.HIGH_TRUST_REAL_MAX_RISK:
                reasoning.append("Decision: real (valid high-trust id, acceptable risk)")
                return REAL
            if risk > t.HIGH_TRUST_SAFE_MIN_RISK:
                reasoning.append("Decision: safe (high risk despite high-trust id)")
                return SAFE
            reasoning.append("Decision: safe_observe (medium risk)")
            return SAFE_OBSERVE

        if risk <= t.REAL_MAX_RISK and noise >= profile.min_human_noise:
            if profile.platform == "desktop" and (
                noise < t.DESKTOP_REAL_MIN_NOISE or coherence < t.DESKTOP_REAL_MIN_COHERENCE
            ):
                reasoning.append("Decision: safe_observe (desktop needs stronger human signals)")
                return SAFE_OBSERVE
            reasoning.append("Decision: real (low risk with human signals)")
            return REAL

        if risk <= t.OBSERVE_MAX_RISK:
            reasoning.append("Decision: safe_observe (medium risk)")
            return SAFE_OBSERVE

        reasoning.append("Decision: safe (high risk)")
        return SAFE

    # ------------------------------------------------------------------
    # Sub-scores
    # ------------------------------------------------------------------

    def _sub_scores(self, ctx, passed_all, contradictions, reasoning):
        return (
            self.coherence(ctx, contradictions, reasoning),
            self.human_noise(ctx, reasoning),
            self.perfection(ctx, passed_all, reasoning),
            self.temporal_variance(ctx, reasoning),
        )

    def coherence(self, ctx: RequestContext, contradictions: ContradictionResult | None,
                  reasoning: list[str]) -> float:
        issues: list[str] = []
        score = t.COHERENCE_START
        score = (score + self.header_coherence(ctx)) / 2
        score = (score + self.behavior_coherence(ctx)) / 2

        ua = ctx.user_agent or ""
        if ctx.platform == "mobile" and not re.search(r"mobile|android|iphone|ipad", ua, re.I):
            score -= t.COHERENCE_MOBILE_UA_MISMATCH
            issues.append("claims mobile but UA suggests otherwise")
        if ctx.platform == "desktop" and re.search(r"mobile|android|iphone", ua, re.I):
            score -= t.COHERENCE_DESKTOP_UA_MISMATCH
            issues.append("claims desktop but UA suggests mobile")

        expected = t.LANGUAGE_BY_COUNTRY.get((ctx.country or "").upper())
        lang = ctx.headers.get("accept-language", "").lower()
        if expected and lang and not any(code in lang for code in expected):
            score -= t.COHERENCE_LANGUAGE_MISMATCH
            issues.append(f"{ctx.country} origin without matching Accept-Language")

        if contradictions is not None and contradictions.has_contradictions:
            score -= t.COHERENCE_CONTRADICTED
            issues.append(f"contradictions (bot likelihood {contradictions.bot_likelihood:.2f})")

        score = _clamp(score)
        if issues:
            reasoning.append(f"Coherence issues: {'; '.join(issues)}")
        reasoning.append(f"Coherence score: {score:.2f}")
        return score

    def header_coherence(self, ctx: RequestContext) -> float:
        score = 0.5
        present = sum(1 for h in _STANDARD_HEADERS if ctx.headers.get(h))
        score += present / len(_STANDARD_HEADERS) * t.HEADER_COHERENCE_STANDARD_WEIGHT

        keys = ctx.headers.raw_keys()
        if keys:
            upper = sum(1 for k in keys if k == k.upper())
            lower = sum(1 for k in keys if k == k.lower())
            mixed = len(keys) - max(upper, lower)
            if mixed > len(keys) * t.HEADER_COHERENCE_MIXED_CASE_SHARE:
                score -= t.HEADER_COHERENCE_MIXED_CASE_PENALTY

        if ctx.headers.get("x-requested-with") == "XMLHttpRequest" and not ctx.has_referer:
            score -= t.HEADER_COHERENCE_XHR_NO_REFERER
        return _clamp(score)

    def behavior_coherence(self, ctx: RequestContext) -> float:
        score = 0.5
        if ctx.navigation_depth > 0:
            score += t.BEHAVIOR_COHERENCE_DEPTH
        if ctx.has_referer:
            score += t.BEHAVIOR_COHERENCE_REFERER
        if ctx.session:
            if ctx.session.previous_requests > 1:
                score += t.BEHAVIOR_COHERENCE_SESSION
            if len(ctx.session.pages_visited) > 1:
                score += t.BEHAVIOR_COHERENCE_SESSION
        return _clamp(score)

    def human_noise(self, ctx: RequestContext, reasoning: list[str]) -> float:
        score = 0.0
        found: list[str] = []
        s = ctx.session
        if s:
            if s.has_scrolled:
                score += t.NOISE_SCROLL
                found.append("scroll")
            if s.has_mouse_movement:
                score += t.NOISE_MOUSE
                found.append("mouse")
            if s.has_focus_blur:
                score += t.NOISE_FOCUS_BLUR
                found.append("focus/blur")
            if s.viewport_changes > 0:
                score += t.NOISE_VIEWPORT
                found.append("viewport")
            lo, hi = t.NOISE_NATURAL_TIMING_MS
            if s.avg_time_between_requests and lo < s.avg_time_between_requests < hi:
                score += t.NOISE_NATURAL_TIMING
                found.append("natural timing")

        ua = ctx.user_agent or ""
        if len(ua) > t.NOISE_DETAILED_UA_MIN_LEN and _DETAILED_VERSION.search(ua):
            score += t.NOISE_DETAILED_UA
            found.append("detailed UA")
        if ctx.has_referer:
            score += t.NOISE_REFERER
            found.append("referer")
        if ctx.navigation_depth > 0:
            score += t.NOISE_DEPTH_STEP * min(ctx.navigation_depth, t.NOISE_DEPTH_CAP)
            found.append(f"depth:{ctx.navigation_depth}")

        score = min(score, 1.0)
        if found:
            reasoning.append(f"Human signals: {', '.join(found)} (noise {score:.2f})")
        else:
            reasoning.append("No human signals (noise 0.00)")
        return score

    def perfection_score(self, ctx: RequestContext, passed_all: bool) -> tuple[float, list[str]]:
        score = 0.0
        found: list[str] = []

        if passed_all:
            score += t.PERFECTION_PASSED_ALL
            found.append("passed all layers")

        lo, hi = t.PERFECTION_IDEAL_HEADER_RANGE
        if lo <= len(ctx.headers) <= hi:
            score += t.PERFECTION_IDEAL_HEADER_COUNT
            found.append("ideal header count")

        lo, hi = t.PERFECTION_IDEAL_LATENCY_MS
        if ctx.request_started_ms > 0 and lo <= ctx.processing_ms <= hi:
            score += t.PERFECTION_IDEAL_LATENCY
            found.append("ideal response time")

        if all(ctx.headers.get(h) for h in _PERFECT_HEADERS):
            score += t.PERFECTION_ALL_STANDARD
            found.append("all standard headers")

        if not ctx.has_referer and ctx.navigation_depth == 0:
            score += t.PERFECTION_LINEAR_NAV
            found.append("linear navigation")

        s = ctx.session
        if s and s.avg_time_between_requests and s.timing_stddev_ms is not None:
            if s.timing_stddev_ms / s.avg_time_between_requests < t.PERFECTION_CONSISTENT_TIMING_CV:
                score += t.PERFECTION_CONSISTENT_TIMING
                found.append("consistent timing")

        return score, found

    def perfection(self, ctx: RequestContext, passed_all: bool, reasoning: list[str]) -> float:
        score, found = self.perfection_score(ctx, passed_all)
        penalty = perfection_penalty(score)
        if found:
            reasoning.append(f"Perfection signals: {', '.join(found)} (penalty {penalty:.2f})")
        profile = profile_for(ctx.platform)
        if score > profile.max_perfection:
            reasoning.append(f"Perfection {score:.2f} above {profile.platform} tolerance {profile.max_perfection}")
        return penalty

    def temporal_variance(self, ctx: RequestContext, reasoning: list[str]) -> float:
        avg = ctx.session.avg_time_between_requests if ctx.session else None
        if not avg:
            return 0.0
        if avg < t.TEMPORAL_TOO_FAST_MS:
            reasoning.append("Temporal: too fast between requests")
            return 0.0
        if avg > t.TEMPORAL_SLOW_MS:
            reasoning.append("Temporal: very slow, ambiguous")
            return t.TEMPORAL_SLOW
        lo, hi = t.TEMPORAL_NATURAL_MS
        if lo <= avg <= hi:
            reasoning.append("Temporal: natural human range")
            return t.TEMPORAL_NATURAL
        return t.TEMPORAL_OTHER

    # --- Audit-only factors ---

    def timing_naturalness(self, ctx: RequestContext) -> float:
        avg = ctx.session.avg_time_between_requests if ctx.session else None
        if not avg:
            return 0.5
        if 2000 <= avg <= 8000:
            return 0.9
        if 1000 <= avg <= 15000:
            return 0.7
        if 500 <= avg <= 30000:
            return 0.5
        if avg < 200:
            return 0.1
        return 0.3

    def navigation_pattern(self, ctx: RequestContext) -> float:
        score = 0.5
        if ctx.has_referer:
            score += 0.2
        if ctx.navigation_depth > 0:
            score += 0.1 * min(ctx.navigation_depth, 3)
        if ctx.session and len(ctx.session.pages_visited) > 1:
            score += 0.15
        return min(score, 1.0)

    def _result(self, ctx, profile, final_risk, decision, coherence, noise, penalty,
                temporal, click_id_score, economic_value, reasoning) -> RiskAssessment:
        return RiskAssessment(
            final_risk=final_risk,
            decision=decision,
            coherence_score=coherence,
            human_noise_score=noise,
            perfection_penalty=penalty,
            temporal_variance=temporal,
            click_id_score=click_id_score,
            economic_value=economic_value,
            factors=RiskFactors(
                platform_trust=profile.base_trust,
                header_coherence=self.header_coherence(ctx),
                behavior_coherence=self.behavior_coherence(ctx),
                timing_naturalness=self.timing_naturalness(ctx),
                navigation_pattern=self.navigation_pattern(ctx),
            ),
            reasoning=tuple(reasoning),
        )
