"""End-to-end tests for the classification pipeline."""

from app.core.click_id import REUSED
from app.core.context import ProtectionConfig
from app.core.pipeline import classify_request, persist_audit
from app.core.risk_scoring import REAL, SAFE, SAFE_OBSERVE, RiskScoringEngine
from app.models.store import InMemoryEvidenceStore

from conftest import FBCLID, GCLID, WINDOWS_CHROME_UA, build_context

CONFIG = ProtectionConfig()


async def _classify(ctx, store=None, **kwargs):
    store = store if store is not None else InMemoryEvidenceStore()
    return await classify_request(ctx, store, CONFIG, **kwargs)


class _RulesDown(InMemoryEvidenceStore):
    async def load_network_rules(self):
        raise ConnectionError("rules table unreachable")


class _SightingsDown(InMemoryEvidenceStore):
    async def record_click_id_sighting(self, **kwargs):
        raise ConnectionError("write timeout")


class _AuditDown(InMemoryEvidenceStore):
    async def save_risk_assessment(self, **kwargs):
        raise ConnectionError("write timeout")


class _ExplodingEngine(RiskScoringEngine):
    def assess(self, *args, **kwargs):
        raise ZeroDivisionError


async def test_mobile_google_click_is_real():
    store = InMemoryEvidenceStore()
    result = await _classify(build_context(query_params={"gclid": GCLID}), store)

    assert result.decision == REAL
    assert result.assessment.final_risk == 0.05
    assert result.pipeline_passed
    assert result.evidence.hit_count == 1
    assert result.layers is not None and result.layers.passed
    assert store.click_ids[(GCLID, "shop.example.com")].hit_count == 1


async def test_no_click_id_has_no_value():
    result = await _classify(build_context(query_params={"utm_source": "google"}))

    assert result.assessment.final_risk == 1.0
    assert result.decision == SAFE
    assert result.layers is None
    assert result.contradictions is None
    assert not result.pipeline_passed


async def test_clean_desktop_without_noise_is_hardened():
    ctx = build_context(
        platform="desktop",
        country="US",
        user_agent=WINDOWS_CHROME_UA,
        query_params={"fbclid": FBCLID},
        headers=[("Host", "shop.example.com"), ("User-Agent", WINDOWS_CHROME_UA),
                 ("Accept-Language", "en-US")],
    )
    result = await _classify(ctx)

    assert result.evidence.network == "meta_ads"
    assert result.decision in (SAFE, SAFE_OBSERVE)
    assert "Desktop hardening: clean passage without human noise" in result.assessment.reasoning


async def test_second_sighting_is_reused():
    store = InMemoryEvidenceStore()
    ctx = build_context(query_params={"gclid": GCLID})

    first = await _classify(ctx, store)
    second = await _classify(ctx, store)

    assert first.decision == REAL
    assert second.decision == SAFE
    assert second.assessment.final_risk == 0.9
    assert REUSED in second.evidence.validation_errors
    assert second.evidence.hit_count == 2


async def test_same_click_id_on_another_domain_is_fresh():
    store = InMemoryEvidenceStore()
    await _classify(build_context(query_params={"gclid": GCLID}), store)
    other = await _classify(build_context(query_params={"gclid": GCLID}, domain_id="other.example.com"), store)
    assert other.decision == REAL


async def test_rules_unavailable_fails_closed():
    result = await _classify(build_context(query_params={"gclid": GCLID}), _RulesDown())

    assert result.evidence.rules_unavailable
    assert result.decision == SAFE
    assert result.assessment.final_risk == 1.0


async def test_sighting_failure_degrades_to_request_signals():
    result = await _classify(build_context(query_params={"gclid": GCLID}), _SightingsDown())

    assert result.decision == REAL
    assert result.evidence.hit_count == 0


async def test_never_raises():
    result = await _classify(build_context(query_params={"gclid": GCLID}), engine=_ExplodingEngine())

    assert result.decision == SAFE
    assert result.assessment.final_risk == 1.0
    assert result.assessment.reasoning[0].startswith("Conservative default")


async def test_datacenter_google_click_is_not_overridden():
    result = await _classify(build_context(query_params={"gclid": GCLID}, asn=16509))

    assert result.layers.is_datacenter
    assert result.assessment.final_risk != 0.05
    assert result.assessment.final_risk <= 0.35


class TestAudit:
    async def test_persists_signals_and_assessment(self):
        store = InMemoryEvidenceStore()
        ctx = build_context(platform="desktop", country="US", user_agent=WINDOWS_CHROME_UA,
                            query_params={"fbclid": FBCLID})

        result = await classify_request(ctx, store, CONFIG)
        await persist_audit(store, ctx, result)

        assert len(store.risk_assessments) == 1
        row = store.risk_assessments[0]
        assert row["decision"] == result.decision
        assert row["click_id_network"] == "meta_ads"
        assert "ua_version_natural" in {s["signal_type"] for s in store.contradiction_signals}
        assert all(s["confidence"] >= 0.3 for s in store.contradiction_signals)

    async def test_write_failure_is_swallowed(self):
        store = _AuditDown()
        ctx = build_context()

        result = await classify_request(ctx, store, CONFIG)
        await persist_audit(store, ctx, result)

        assert store.risk_assessments == []
