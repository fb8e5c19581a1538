"""
PostgreSQL evidence store.

Every operation opens its own short session and commits on its own, so a
request-time write never shares a transaction with anything else. The one
multi-row write is fold_observation: the learned-pattern upsert and its
evidence row commit together or not at all, so an aborted consolidation run
never leaves a count folded without the ledger entry that guards it.

Statements are built by the module-level functions below so they can be
compiled and inspected without a database.
"""

import uuid
from dataclasses import replace
from datetime import datetime, timedelta

from sqlalchemy import DateTime, func, literal, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import thresholds as t
from app.core.click_id import NetworkRule
from app.models.store import (
    WINDOW_FINALIZED,
    BehavioralPatternRecord,
    ClickIdSighting,
    ConsolidationEvidence,
    EvidenceStore,
    LearnedPatternRecord,
    LearningWindowRecord,
)
from app.models.tables import (
    BehavioralPattern,
    ClickIdObservation,
    ClickIdValidationRule,
    ContradictionSignalRow,
    LearnedPattern,
    LearningWindow,
    PatternConsolidation,
    RiskAssessmentRow,
)

# pg_advisory_xact_lock key serializing window creation
_WINDOW_LOCK_KEY = 0x1CE3A11


def _learned(row: LearnedPattern) -> LearnedPatternRecord:
    return LearnedPatternRecord(
        id=row.id,
        signature_hash=row.signature_hash,
        pattern_class=row.pattern_class,
        behavior_profile=dict(row.behavior_profile or {}),
        occurrence_count=row.occurrence_count,
        context_variations=row.context_variations,
        confidence_score=row.confidence_score,
        decay_coefficient=row.decay_coefficient,
        learning_stage=row.learning_stage,
        first_seen_at=row.first_seen_at,
        last_seen_at=row.last_seen_at,
        last_decay_applied=row.last_decay_applied,
    )


def _pattern(row) -> BehavioralPatternRecord:
    return BehavioralPatternRecord(
        id=row.id,
        pattern_hash=row.pattern_hash,
        traffic_classification=row.traffic_classification,
        feature_vector=dict(row.feature_vector or {}),
        occurrence_count=row.occurrence_count,
        first_seen=row.first_seen,
        last_seen=row.last_seen,
    )


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def click_id_sighting_upsert(*, domain_id, click_id, network, is_valid, validation_errors,
                             entropy, ip, user_agent, referer, seen_at):
    stmt = insert(ClickIdObservation).values(
        id=uuid.uuid4(),
        domain_id=domain_id,
        click_id=click_id,
        network=network,
        ip=ip,
        user_agent=user_agent,
        referer=referer,
        is_valid=is_valid,
        validation_errors=list(validation_errors),
        entropy_score=entropy,
        hit_count=1,
        first_seen=seen_at,
        last_seen=seen_at,
    )
    return stmt.on_conflict_do_update(
        constraint="uq_click_id_observations_click_domain",
        set_={
            "hit_count": ClickIdObservation.hit_count + 1,
            "last_seen": func.greatest(ClickIdObservation.last_seen, stmt.excluded.last_seen),
            "is_valid": stmt.excluded.is_valid,
            "validation_errors": stmt.excluded.validation_errors,
        },
    ).returning(
        ClickIdObservation.hit_count,
        ClickIdObservation.first_seen,
        ClickIdObservation.last_seen,
    )


def behavioral_pattern_upsert(*, pattern_hash, classification, features, seen_at):
    stmt = insert(BehavioralPattern).values(
        id=uuid.uuid4(),
        pattern_hash=pattern_hash,
        traffic_classification=classification,
        feature_vector=features,
        occurrence_count=1,
        first_seen=seen_at,
        last_seen=seen_at,
    )
    return stmt.on_conflict_do_update(
        index_elements=[BehavioralPattern.pattern_hash],
        set_={
            "occurrence_count": BehavioralPattern.occurrence_count + 1,
            "last_seen": func.greatest(BehavioralPattern.last_seen, stmt.excluded.last_seen),
            "traffic_classification": stmt.excluded.traffic_classification,
            "feature_vector": stmt.excluded.feature_vector,
        },
    ).returning(*BehavioralPattern.__table__.c)


def learned_pattern_upsert(pattern: LearnedPatternRecord):
    values = {
        "signature_hash": pattern.signature_hash,
        "pattern_class": pattern.pattern_class,
        "behavior_profile": pattern.behavior_profile,
        "occurrence_count": pattern.occurrence_count,
        "context_variations": pattern.context_variations,
        "confidence_score": pattern.confidence_score,
        "decay_coefficient": pattern.decay_coefficient,
        "learning_stage": pattern.learning_stage,
        "first_seen_at": pattern.first_seen_at,
        "last_seen_at": pattern.last_seen_at,
        "last_decay_applied": pattern.last_decay_applied,
    }
    stmt = insert(LearnedPattern).values(id=pattern.id, **values)
    return stmt.on_conflict_do_update(
        index_elements=[LearnedPattern.signature_hash],
        set_={k: v for k, v in values.items() if k != "signature_hash"},
    ).returning(LearnedPattern.id)


def consolidation_evidence_upsert(evidence: ConsolidationEvidence):
    stmt = insert(PatternConsolidation).values(
        id=uuid.uuid4(),
        learned_pattern_id=evidence.learned_pattern_id,
        observation_ref=evidence.observation_ref,
        context_hash=evidence.context_hash,
        folded_occurrences=evidence.folded_occurrences,
        evidence_profile=evidence.evidence_profile,
        learning_window_id=evidence.learning_window_id,
        captured_at=evidence.captured_at,
    )
    return stmt.on_conflict_do_update(
        constraint="uq_pattern_consolidation_evidence",
        set_={
            "folded_occurrences": func.greatest(PatternConsolidation.folded_occurrences,
                                                stmt.excluded.folded_occurrences),
            "evidence_profile": stmt.excluded.evidence_profile,
            "learning_window_id": stmt.excluded.learning_window_id,
            "captured_at": stmt.excluded.captured_at,
        },
    )


def decay_update(now: datetime, half_life_hours: float):
    idle_hours = func.extract(
        "epoch", literal(now, DateTime(timezone=True)) - LearnedPattern.last_seen_at
    ) / 3600.0
    if half_life_hours <= 0:
        coefficient = literal(1.0)
    else:
        coefficient = func.greatest(
            t.DECAY_FLOOR,
            func.least(1.0, func.power(0.5, idle_hours / half_life_hours)),
        )
    return update(LearnedPattern).values(decay_coefficient=coefficient, last_decay_applied=now)


class SqlEvidenceStore(EvidenceStore):
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._sessions = session_maker

    # --- request time ---

    async def load_network_rules(self) -> list[NetworkRule]:
        async with self._sessions() as db:
            result = await db.execute(
                select(ClickIdValidationRule)
                .where(ClickIdValidationRule.enabled.is_(True))
                .order_by(ClickIdValidationRule.priority.desc())
            )
            return [
                NetworkRule(
                    network=r.network,
                    click_id_param=r.click_id_param,
                    min_length=r.min_length,
                    max_length=r.max_length,
                    min_entropy=r.min_entropy,
                    requires_referer=r.requires_referer,
                    referer_pattern=r.referer_pattern,
                    priority=r.priority,
                )
                for r in result.scalars().all()
            ]

    async def record_click_id_sighting(self, *, domain_id, click_id, network, is_valid,
                                       validation_errors, entropy, ip, user_agent, referer,
                                       seen_at) -> ClickIdSighting:
        stmt = click_id_sighting_upsert(
            domain_id=domain_id, click_id=click_id, network=network, is_valid=is_valid,
            validation_errors=validation_errors, entropy=entropy, ip=ip,
            user_agent=user_agent, referer=referer, seen_at=seen_at,
        )
        async with self._sessions() as db:
            row = (await db.execute(stmt)).one()
            await db.commit()
        return ClickIdSighting(click_id, domain_id, network, row.hit_count,
                               row.first_seen, row.last_seen, is_valid)

    async def upsert_behavioral_pattern(self, *, pattern_hash, classification, features,
                                        seen_at) -> BehavioralPatternRecord:
        stmt = behavioral_pattern_upsert(pattern_hash=pattern_hash, classification=classification,
                                         features=features, seen_at=seen_at)
        async with self._sessions() as db:
            row = (await db.execute(stmt)).one()
            await db.commit()
        return _pattern(row)

    async def save_contradiction_signals(self, *, domain_id, ip, signals) -> None:
        if not signals:
            return
        async with self._sessions() as db:
            db.add_all([
                ContradictionSignalRow(
                    domain_id=domain_id,
                    ip=ip,
                    signal_type=s.type,
                    expected_behavior=s.expected,
                    actual_behavior=s.observed,
                    was_human_response=s.is_human_indicator,
                    confidence=s.weight,
                )
                for s in signals
            ])
            await db.commit()

    async def save_risk_assessment(self, *, domain_id, ip, user_agent, platform, network,
                                   navigation_depth, assessment) -> None:
        data = assessment.to_dict()
        async with self._sessions() as db:
            db.add(RiskAssessmentRow(
                domain_id=domain_id,
                ip=ip,
                user_agent=user_agent,
                platform_type=platform,
                raw_score=assessment.final_risk,
                decision=assessment.decision,
                risk_factors=data["factors"],
                coherence_score=assessment.coherence_score,
                human_noise_score=assessment.human_noise_score,
                perfection_penalty=assessment.perfection_penalty,
                temporal_variance=assessment.temporal_variance,
                click_id_network=network,
                economic_value=assessment.economic_value,
                navigation_depth=navigation_depth,
                reasoning=data["reasoning"],
            ))
            await db.commit()

    # --- learning ---

    async def open_window(self, *, now, duration_hours, stale_after_hours) -> LearningWindowRecord | None:
        async with self._sessions() as db:
            async with db.begin():
                await db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": _WINDOW_LOCK_KEY})
                busy = await db.execute(
                    select(LearningWindow.id)
                    .where(LearningWindow.window_status != WINDOW_FINALIZED)
                    .where(LearningWindow.created_at > now - timedelta(hours=stale_after_hours))
                    .limit(1)
                )
                if busy.scalar_one_or_none() is not None:
                    return None
                window = LearningWindowRecord(
                    starts_at=now - timedelta(hours=duration_hours),
                    ends_at=now,
                    duration_hours=duration_hours,
                    created_at=now,
                )
                db.add(LearningWindow(
                    id=window.id,
                    starts_at=window.starts_at,
                    ends_at=window.ends_at,
                    duration_hours=window.duration_hours,
                    window_status=window.window_status,
                    created_at=window.created_at,
                ))
        return window

    async def update_window(self, window_id, **values) -> None:
        async with self._sessions() as db:
            await db.execute(update(LearningWindow).where(LearningWindow.id == window_id).values(**values))
            await db.commit()

    async def recent_patterns(self, since) -> list[BehavioralPatternRecord]:
        async with self._sessions() as db:
            result = await db.execute(
                select(BehavioralPattern)
                .where(BehavioralPattern.last_seen >= since)
                .order_by(BehavioralPattern.last_seen)
            )
            return [_pattern(r) for r in result.scalars().all()]

    async def get_learned_pattern(self, signature_hash) -> LearnedPatternRecord | None:
        async with self._sessions() as db:
            result = await db.execute(
                select(LearnedPattern).where(LearnedPattern.signature_hash == signature_hash)
            )
            row = result.scalar_one_or_none()
            return _learned(row) if row else None

    async def save_learned_pattern(self, pattern) -> LearnedPatternRecord:
        async with self._sessions() as db:
            pattern.id = (await db.execute(learned_pattern_upsert(pattern))).scalar_one()
            await db.commit()
        return pattern

    async def fold_observation(self, pattern, evidence) -> LearnedPatternRecord:
        async with self._sessions() as db:
            async with db.begin():
                pattern_id = (await db.execute(learned_pattern_upsert(pattern))).scalar_one()
                await db.execute(consolidation_evidence_upsert(
                    replace(evidence, learned_pattern_id=pattern_id)
                ))
        pattern.id = pattern_id
        return pattern

    async def list_learned_patterns(self, stages=None) -> list[LearnedPatternRecord]:
        stmt = select(LearnedPattern)
        if stages is not None:
            stmt = stmt.where(LearnedPattern.learning_stage.in_(stages))
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return [_learned(r) for r in result.scalars().all()]

    async def folded_occurrences(self, learned_pattern_id, observation_ref) -> int:
        async with self._sessions() as db:
            result = await db.execute(
                select(func.coalesce(func.max(PatternConsolidation.folded_occurrences), 0))
                .where(PatternConsolidation.learned_pattern_id == learned_pattern_id)
                .where(PatternConsolidation.observation_ref == observation_ref)
            )
            return result.scalar_one()

    async def count_distinct_contexts(self, learned_pattern_id) -> int:
        async with self._sessions() as db:
            result = await db.execute(
                select(func.count(func.distinct(PatternConsolidation.context_hash)))
                .where(PatternConsolidation.learned_pattern_id == learned_pattern_id)
            )
            return result.scalar_one()

    async def apply_decay(self, *, now: datetime, half_life_hours) -> int:
        async with self._sessions() as db:
            result = await db.execute(decay_update(now, half_life_hours))
            await db.commit()
            return result.rowcount
