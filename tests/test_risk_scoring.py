"""Tests for the risk scoring engine."""

import pytest
from app.core.click_id import (
    DEFAULT_NETWORK_RULES,
    NO_CLICK_ID,
    REUSED,
    ClickIdEvidence,
    rules_unavailable_evidence,
    validate_click_id,
)
from app.core.contradiction import ContradictionResult
from app.core.detection import LAYER_BOT, LAYER_DATACENTER, LAYER_IP, LayerResult, summarize_layers
from app.core.risk_scoring import (
    HUMAN_NO_VALUE,
    REAL,
    SAFE,
    SAFE_OBSERVE,
    RiskScoringEngine,
    conservative_assessment,
    perfection_penalty,
)
from app.core.thresholds import profile_for

from conftest import FBCLID, GCLID, WINDOWS_CHROME_UA, build_context

engine = RiskScoringEngine()

NO_ID = ClickIdEvidence(validation_errors=(NO_CLICK_ID,))
CLEAN_LAYERS = summarize_layers([LayerResult(LAYER_IP, True)])


def _evidence(params):
    return validate_click_id(params, None, DEFAULT_NETWORK_RULES)


class TestPerfectionPenalty:
    @pytest.mark.parametrize("score", [0.0, 0.2, 0.35, 0.5])
    def test_zero_up_to_soft_knee(self, score):
        assert perfection_penalty(score) == 0.0

    def test_known_points(self):
        assert perfection_penalty(0.6) == pytest.approx(0.05)
        assert perfection_penalty(0.7) == pytest.approx(0.1)
        assert perfection_penalty(0.8) == pytest.approx(0.3)

    def test_capped(self):
        assert perfection_penalty(1.2) == 1.0

    def test_monotone(self):
        grid = [i / 100 for i in range(0, 121)]
        penalties = [perfection_penalty(s) for s in grid]
        assert penalties == sorted(penalties)

    def test_continuous_at_hard_knee(self):
        assert perfection_penalty(0.7001) - perfection_penalty(0.7) < 0.001


class TestNoClickId:
    def test_organic_visitor_is_human_no_value(self, human_session):
        ctx = build_context(session=human_session)
        result = engine.assess(ctx, NO_ID)
        assert result.final_risk == 1.0
        assert result.decision == HUMAN_NO_VALUE
        assert result.economic_value is False
        assert result.click_id_score == 0.0

    def test_bare_request_is_safe(self):
        result = engine.assess(build_context(), NO_ID)
        assert result.final_risk == 1.0
        assert result.decision == SAFE

    def test_rules_unavailable_fails_closed(self, human_session):
        result = engine.assess(build_context(session=human_session), rules_unavailable_evidence())
        assert result.decision == SAFE
        assert "Network rules unavailable: failing closed" in result.reasoning


class TestInvalidClickId:
    def test_forged_id(self):
        result = engine.assess(build_context(), _evidence({"gclid": "abcdefghijklmnopqrstuvwxy"}))
        assert result.final_risk == 0.9
        assert result.decision == SAFE
        assert result.click_id_score == 0.2
        assert result.economic_value is False

    def test_reused_id(self):
        evidence = ClickIdEvidence(has_click_id=True, network="google_ads", click_id=GCLID,
                                   entropy=4.46, length=22, validation_errors=(REUSED,), hit_count=2)
        result = engine.assess(build_context(), evidence)
        assert result.decision == SAFE
        assert any("reused" in line for line in result.reasoning)


class TestHighTrust:
    def test_override(self):
        result = engine.assess(build_context(), _evidence({"gclid": GCLID}), CLEAN_LAYERS)
        assert result.decision == REAL
        assert result.final_risk == 0.05
        assert result.economic_value is True
        assert result.coherence_score == 1.0
        assert result.perfection_penalty == 0.0

    def test_override_ignores_contradictions(self):
        contradictions = ContradictionResult(True, 0.1, 0.9)
        result = engine.assess(build_context(platform="desktop"), _evidence({"gclid": GCLID}),
                               CLEAN_LAYERS, contradictions)
        assert result.decision == REAL
        assert result.final_risk == 0.05

    def test_bot_falls_back_to_capped_model(self):
        layers = summarize_layers([LayerResult(LAYER_BOT, False)])
        result = engine.assess(build_context(), _evidence({"gclid": GCLID}), layers)
        assert result.final_risk <= 0.35
        assert result.decision == REAL
        assert "High-trust network: risk capped at 0.35" in result.reasoning

    def test_datacenter_on_desktop_still_capped(self):
        layers = summarize_layers([LayerResult(LAYER_DATACENTER, False)])
        ctx = build_context(platform="unknown", user_agent="", headers=[])
        result = engine.assess(ctx, _evidence({"gclid": GCLID}), layers)
        assert result.final_risk <= 0.35
        assert result.decision != SAFE

    def test_configurable_network(self):
        meta_engine = RiskScoringEngine(high_trust_network="meta_ads")
        result = meta_engine.assess(build_context(), _evidence({"fbclid": FBCLID}), CLEAN_LAYERS)
        assert result.final_risk == 0.05


class TestWeightedModel:
    def test_desktop_hardening(self):
        ctx = build_context(platform="desktop", country="US", user_agent=WINDOWS_CHROME_UA,
                            headers=[("Host", "shop.example.com"), ("User-Agent", WINDOWS_CHROME_UA),
                                     ("Accept-Language", "en-US")])
        result = engine.assess(ctx, _evidence({"fbclid": FBCLID}), CLEAN_LAYERS)
        assert "Desktop hardening: clean passage without human noise" in result.reasoning
        assert result.decision in (SAFE, SAFE_OBSERVE)
        assert result.economic_value is True

    def test_mobile_with_human_signals(self, human_session):
        ctx = build_context(session=human_session, navigation_depth=2, has_referer=True,
                            headers=[("Host", "shop.example.com"), ("User-Agent", "x"),
                                     ("Referer", "https://www.facebook.com/")])
        result = engine.assess(ctx, _evidence({"fbclid": FBCLID}), CLEAN_LAYERS)
        assert result.final_risk < 0.5
        assert result.human_noise_score > 0.5

    def test_contradictions_lower_coherence(self):
        ctx = build_context()
        plain = engine.coherence(ctx, None, [])
        contradicted = engine.coherence(ctx, ContradictionResult(True, 0.2, 0.8), [])
        assert plain - contradicted == pytest.approx(0.1)

    def test_deterministic(self, human_session):
        ctx = build_context(session=human_session, platform="desktop", user_agent=WINDOWS_CHROME_UA)
        evidence = _evidence({"fbclid": FBCLID})
        assert engine.assess(ctx, evidence, CLEAN_LAYERS) == engine.assess(ctx, evidence, CLEAN_LAYERS)

    def test_risk_in_unit_interval(self):
        ctx = build_context(platform="unknown", user_agent="", headers=[], country=None)
        result = engine.assess(ctx, _evidence({"fbclid": FBCLID}), summarize_layers([]))
        assert 0.0 <= result.final_risk <= 1.0


class TestDecide:
    def test_mobile_real(self):
        assert engine._decide(0.2, 0.1, 0.5, profile_for("mobile"), False, []) == REAL

    def test_needs_platform_noise(self):
        assert engine._decide(0.2, 0.01, 0.9, profile_for("mobile"), False, []) == SAFE_OBSERVE

    def test_desktop_needs_stronger_signals(self):
        desktop = profile_for("desktop")
        assert engine._decide(0.2, 0.18, 0.9, desktop, False, []) == SAFE_OBSERVE
        assert engine._decide(0.2, 0.3, 0.6, desktop, False, []) == SAFE_OBSERVE
        assert engine._decide(0.2, 0.3, 0.8, desktop, False, []) == REAL

    def test_bands(self):
        mobile = profile_for("mobile")
        assert engine._decide(0.45, 0.5, 0.9, mobile, False, []) == SAFE_OBSERVE
        assert engine._decide(0.6, 0.5, 0.9, mobile, False, []) == SAFE

    def test_high_trust_bands(self):
        mobile = profile_for("mobile")
        assert engine._decide(0.5, 0.0, 0.0, mobile, True, []) == REAL
        assert engine._decide(0.6, 0.0, 0.0, mobile, True, []) == SAFE_OBSERVE
        assert engine._decide(0.8, 0.0, 0.0, mobile, True, []) == SAFE


def test_conservative_assessment():
    result = conservative_assessment("classification_failed")
    assert result.decision == SAFE
    assert result.final_risk == 1.0
    assert result.reasoning == ("Conservative default: classification_failed",)


def test_to_dict_shape():
    data = engine.assess(build_context(), NO_ID).to_dict()
    assert data["decision"] == SAFE
    assert set(data["factors"]) == {"platform_trust", "header_coherence", "behavior_coherence",
                                    "timing_naturalness", "navigation_pattern"}
    assert isinstance(data["reasoning"], list)
