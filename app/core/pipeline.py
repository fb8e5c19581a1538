"""
Classification pipeline — one request in, one decision out.

  1. Load network rules (failure → fail closed, "no click-id")
  2. Validate the click-id, record the sighting, fold reuse in
  3. Valid click-id only: detection layers + contradiction detector
  4. Risk engine → RiskAssessment

classify_request() never raises. Observation and audit writes are not part
of it: the caller dispatches observe_request() / persist_audit() after the
decision has been returned, and nothing the observer writes is read here.
"""

from dataclasses import dataclass

import structlog

from app.core.click_id import (
    ClickIdEvidence,
    fingerprint,
    mark_reuse,
    rules_unavailable_evidence,
    validate_click_id,
)
from app.core.context import ProtectionConfig, RequestContext
from app.core.contradiction import ContradictionDetector, ContradictionResult
from app.core.detection import LayerSummary, run_layers
from app.core.risk_scoring import REAL, RiskAssessment, RiskScoringEngine, conservative_assessment
from app.models.store import EvidenceStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class PipelineResult:
    evidence: ClickIdEvidence
    assessment: RiskAssessment
    layers: LayerSummary | None = None
    contradictions: ContradictionResult | None = None

    @property
    def pipeline_passed(self) -> bool:
        return self.assessment.decision == REAL

    @property
    def decision(self) -> str:
        return self.assessment.decision


async def resolve_click_id(ctx: RequestContext, store: EvidenceStore) -> ClickIdEvidence:
    try:
        rules = await store.load_network_rules()
    except Exception:
        logger.error("network_rules_unavailable", domain_id=ctx.domain_id, exc_info=True)
        return rules_unavailable_evidence()

    evidence = validate_click_id(ctx.query_params, ctx.referer, rules)
    if not evidence.has_click_id:
        return evidence

    try:
        sighting = await store.record_click_id_sighting(
            domain_id=ctx.domain_id,
            click_id=evidence.click_id,
            network=evidence.network,
            is_valid=evidence.is_valid,
            validation_errors=list(evidence.validation_errors),
            entropy=evidence.entropy,
            ip=ctx.ip,
            user_agent=ctx.user_agent,
            referer=ctx.referer,
            seen_at=ctx.received_at,
        )
    except Exception:
        # Degrade to in-request signals only
        logger.warning("click_id_sighting_failed", domain_id=ctx.domain_id,
                       network=evidence.network, exc_info=True)
        return evidence

    evidence = mark_reuse(evidence, sighting.hit_count)
    if evidence.is_reused:
        logger.warning("click_id_reused", domain_id=ctx.domain_id, network=evidence.network,
                       click_id=fingerprint(evidence.click_id), hit_count=sighting.hit_count)
    return evidence


async def classify_request(
    ctx: RequestContext,
    store: EvidenceStore,
    config: ProtectionConfig | None = None,
    engine: RiskScoringEngine | None = None,
    detector: ContradictionDetector | None = None,
) -> PipelineResult:
    try:
        config = config or ProtectionConfig.from_settings()
        engine = engine or RiskScoringEngine(config.high_trust_network)
        detector = detector or ContradictionDetector()

        evidence = await resolve_click_id(ctx, store)

        layers = contradictions = None
        if evidence.is_valid:
            layers = run_layers(ctx, config)
            contradictions = detector.analyze(ctx, has_valid_click_id=True)

        assessment = engine.assess(ctx, evidence, layers, contradictions)
    except Exception:
        logger.error("classification_failed", domain_id=ctx.domain_id, exc_info=True)
        return PipelineResult(
            evidence=ClickIdEvidence(),
            assessment=conservative_assessment("classification pipeline error"),
        )

    logger.info(
        "request_classified",
        domain_id=ctx.domain_id,
        decision=assessment.decision,
        final_risk=round(assessment.final_risk, 3),
        network=evidence.network,
        click_id_errors=list(evidence.validation_errors),
        failed_layers=list(layers.failed_layers) if layers else [],
        platform=ctx.platform,
    )
    return PipelineResult(evidence, assessment, layers, contradictions)


async def persist_audit(store: EvidenceStore, ctx: RequestContext, result: PipelineResult) -> None:
    """Filtered contradiction signals + the assessment copy. Best effort."""
    try:
        if result.contradictions is not None:
            signals = result.contradictions.audit_signals
            if signals:
                await store.save_contradiction_signals(domain_id=ctx.domain_id, ip=ctx.ip, signals=signals)
        await store.save_risk_assessment(
            domain_id=ctx.domain_id,
            ip=ctx.ip,
            user_agent=ctx.user_agent,
            platform=ctx.platform,
            network=result.evidence.network,
            navigation_depth=ctx.navigation_depth,
            assessment=result.assessment,
        )
    except Exception:
        logger.warning("audit_write_failed", domain_id=ctx.domain_id, exc_info=True)
