"""
Learning consolidation job — scheduled, never request-triggered.

Run order (one LearningWindow per run):
  a. open window (refused while another fresh window is not finalized)
  b. fold recent raw patterns (occurrence_count >= min) into learned patterns,
     adding only the raw delta since the last fold of each observation
  c. context_variations = distinct evidence context hashes
  d. re-run perfection analysis with the new variation counts
  e. stability anomalies on established patterns (>= 10 occurrences)
  f. decay refresh (time based, idempotent)
  g. recompute confidence + stage, finalize the window

Each fold writes the learned pattern and its evidence row as one unit and
every other write is an idempotent upsert, so an aborted run leaves the
window non-finalized and the next run picks up from the same raw rows.

Usage:
    python -m app.jobs.consolidate
    python -m app.jobs.consolidate --insights
"""

import argparse
import asyncio
import json
import sys
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

import structlog

from app.config import Settings, get_settings
from app.core import thresholds as t
from app.core.learning import (
    LearningStage,
    SuspicionLevel,
    analyze_perfection,
    consolidation_stage,
    context_hash,
    next_stage,
    pattern_confidence,
    stability_anomalies,
)
from app.models.store import (
    WINDOW_FINALIZED,
    WINDOW_PROCESSING,
    ConsolidationEvidence,
    EvidenceStore,
    LearnedPatternRecord,
    LearningWindowRecord,
)

logger = structlog.get_logger()

_REANALYZED_STAGES = (LearningStage.EMERGING.value, LearningStage.ESTABLISHED.value)


@dataclass
class ConsolidationReport:
    success: bool = False
    in_progress: bool = False
    window_id: uuid.UUID | None = None
    patterns_processed: int = 0
    patterns_consolidated: int = 0
    patterns_discarded: int = 0
    patterns_flagged: int = 0
    patterns_penalized: int = 0
    stability_anomalies: int = 0
    decay_applied: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["window_id"] = str(self.window_id) if self.window_id else None
        return data


async def run_learning_consolidation(
    store: EvidenceStore,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> ConsolidationReport:
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    report = ConsolidationReport()

    try:
        window = await store.open_window(
            now=now,
            duration_hours=settings.learning_window_hours,
            stale_after_hours=settings.learning_stale_window_hours,
        )
    except Exception:
        logger.error("learning_window_open_failed", exc_info=True)
        report.error = "window_open_failed"
        return report

    if window is None:
        logger.info("consolidation_skipped", reason="window_in_progress")
        report.in_progress = True
        report.error = "window_in_progress"
        return report

    report.window_id = window.id
    log = logger.bind(window_id=str(window.id))
    log.info("consolidation_started", starts_at=window.starts_at.isoformat(), ends_at=window.ends_at.isoformat())

    try:
        await store.update_window(window.id, window_status=WINDOW_PROCESSING)
        await _consolidate(store, window, settings, report)
        await _refresh_context_variations(store)
        await _reanalyze_perfection(store, report)
        await _detect_stability_anomalies(store, now, report)
        report.decay_applied = await store.apply_decay(now=now, half_life_hours=settings.decay_half_life_hours)
        await _recompute_confidence(store)
        await store.update_window(
            window.id,
            window_status=WINDOW_FINALIZED,
            observations_processed=report.patterns_processed,
            patterns_discovered=report.patterns_consolidated,
            noise_discarded=report.patterns_discarded,
            finalized_at=now,
        )
    except Exception:
        # window stays non-finalized; the next scheduled run retries
        log.error("consolidation_failed", exc_info=True)
        report.error = "consolidation_failed"
        return report

    report.success = True
    log.info("consolidation_finalized", **{k: v for k, v in report.to_dict().items() if k != "window_id"})
    return report


# ---------------------------------------------------------------------------
# b. Fold raw patterns
# ---------------------------------------------------------------------------

def _profile(features: dict, analysis, previous: dict | None = None) -> dict:
    profile = dict(previous or {})
    profile["features"] = dict(features)
    if analysis.is_perfect:
        profile["perfection_analysis"] = analysis.to_profile()
    else:
        profile.pop("perfection_analysis", None)
    return profile


async def _consolidate(store: EvidenceStore, window: LearningWindowRecord,
                       settings: Settings, report: ConsolidationReport) -> None:
    for raw in await store.recent_patterns(window.starts_at):
        report.patterns_processed += 1
        if raw.occurrence_count < settings.learning_min_occurrences:
            report.patterns_discarded += 1
            continue

        features = raw.feature_vector or {}
        learned = await store.get_learned_pattern(raw.pattern_hash)
        folded = await store.folded_occurrences(learned.id, raw.id) if learned else 0
        delta = raw.occurrence_count - folded
        if delta <= 0:
            continue

        if learned is None:
            analysis = analyze_perfection(features, delta, 1)
            learned = LearnedPatternRecord(
                signature_hash=raw.pattern_hash,
                pattern_class=raw.traffic_classification,
                behavior_profile=_profile(features, analysis),
                occurrence_count=delta,
                first_seen_at=raw.first_seen,
                last_seen_at=raw.last_seen,
                learning_stage=consolidation_stage(None, delta, analysis).value,
            )
        else:
            occurrences = learned.occurrence_count + delta
            analysis = analyze_perfection(features, occurrences, learned.context_variations)
            learned.pattern_class = raw.traffic_classification
            learned.behavior_profile = _profile(features, analysis, learned.behavior_profile)
            learned.occurrence_count = occurrences
            learned.first_seen_at = min(learned.first_seen_at, raw.first_seen)
            learned.last_seen_at = max(learned.last_seen_at, raw.last_seen)
            learned.learning_stage = consolidation_stage(
                LearningStage(learned.learning_stage), occurrences, analysis
            ).value

        # count and ledger entry commit together
        learned = await store.fold_observation(learned, ConsolidationEvidence(
            learned_pattern_id=learned.id,
            observation_ref=raw.id,
            context_hash=context_hash(features),
            folded_occurrences=raw.occurrence_count,
            evidence_profile={"classification": raw.traffic_classification, "features": features},
            learning_window_id=window.id,
            captured_at=raw.last_seen,
        ))
        report.patterns_consolidated += 1
        logger.debug("pattern_consolidated", signature=raw.pattern_hash[:12], delta=delta,
                     stage=learned.learning_stage)


# ---------------------------------------------------------------------------
# c. Context diversity
# ---------------------------------------------------------------------------

async def _refresh_context_variations(store: EvidenceStore) -> None:
    for pattern in await store.list_learned_patterns():
        variations = await store.count_distinct_contexts(pattern.id)
        if variations and variations != pattern.context_variations:
            pattern.context_variations = variations
            await store.save_learned_pattern(pattern)


# ---------------------------------------------------------------------------
# d. Perfection re-analysis
# ---------------------------------------------------------------------------

async def _reanalyze_perfection(store: EvidenceStore, report: ConsolidationReport) -> None:
    for pattern in await store.list_learned_patterns(_REANALYZED_STAGES):
        features = (pattern.behavior_profile or {}).get("features") or {}
        analysis = analyze_perfection(features, pattern.occurrence_count, pattern.context_variations)
        profile = _profile(features, analysis, pattern.behavior_profile)
        stage = pattern.learning_stage

        if analysis.is_perfect:
            report.patterns_flagged += 1
            if analysis.suspicion == SuspicionLevel.HIGH:
                stage = LearningStage.SUSPICIOUS_PERFECT.value
                report.patterns_penalized += 1
                logger.info("pattern_suspicious_perfect", signature=pattern.signature_hash[:12],
                            score=analysis.score, indicators=list(analysis.indicators))

        if profile != pattern.behavior_profile or stage != pattern.learning_stage:
            pattern.behavior_profile = profile
            pattern.learning_stage = stage
            await store.save_learned_pattern(pattern)


# ---------------------------------------------------------------------------
# e. Stability anomalies
# ---------------------------------------------------------------------------

async def _detect_stability_anomalies(store: EvidenceStore, now: datetime, report: ConsolidationReport) -> None:
    for pattern in await store.list_learned_patterns((LearningStage.ESTABLISHED.value,)):
        if pattern.occurrence_count < t.ANOMALY_MIN_OCCURRENCES:
            continue
        found = stability_anomalies(pattern.occurrence_count, pattern.context_variations,
                                    pattern.first_seen_at, pattern.last_seen_at)
        previous = (pattern.behavior_profile or {}).get("stability_anomalies") or {}
        for kind, details in found.items():
            details["detected_at"] = previous.get(kind, {}).get("detected_at", now.isoformat())
        report.stability_anomalies += len(found)

        if found != previous:
            pattern.behavior_profile = {**(pattern.behavior_profile or {}), "stability_anomalies": found}
            await store.save_learned_pattern(pattern)
            if found:
                logger.info("stability_anomaly_detected", signature=pattern.signature_hash[:12],
                            anomalies=sorted(found))


# ---------------------------------------------------------------------------
# g. Confidence + stage
# ---------------------------------------------------------------------------

async def _recompute_confidence(store: EvidenceStore) -> None:
    for pattern in await store.list_learned_patterns():
        confidence = pattern_confidence(
            pattern.occurrence_count,
            pattern.context_variations,
            pattern.first_seen_at,
            pattern.last_seen_at,
            pattern.decay_coefficient,
            pattern.behavior_profile,
        )
        stage = next_stage(
            LearningStage(pattern.learning_stage),
            confidence,
            pattern.occurrence_count,
            (pattern.behavior_profile or {}).get("perfection_analysis"),
        ).value
        if stage != pattern.learning_stage:
            logger.info("learning_stage_changed", signature=pattern.signature_hash[:12],
                        from_stage=pattern.learning_stage, to_stage=stage, confidence=confidence)
        pattern.confidence_score = confidence
        pattern.learning_stage = stage
        await store.save_learned_pattern(pattern)


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

async def get_learning_insights(store: EvidenceStore) -> dict:
    patterns = await store.list_learned_patterns()
    by_stage = {stage.value: 0 for stage in LearningStage}
    for p in patterns:
        by_stage[p.learning_stage] = by_stage.get(p.learning_stage, 0) + 1

    flagged = [p.behavior_profile["perfection_analysis"] for p in patterns
               if (p.behavior_profile or {}).get("perfection_analysis")]
    avg = sum(p.confidence_score for p in patterns) / len(patterns) if patterns else 0.0

    return {
        "total_patterns": len(patterns),
        "established_patterns": by_stage[LearningStage.ESTABLISHED.value],
        "emerging_patterns": by_stage[LearningStage.EMERGING.value],
        "fading_patterns": by_stage[LearningStage.FADING.value],
        "suspicious_perfect_patterns": by_stage[LearningStage.SUSPICIOUS_PERFECT.value],
        "avg_confidence": round(avg, 4),
        "high_confidence_patterns": sum(1 for p in patterns if p.confidence_score >= t.HIGH_CONFIDENCE),
        "perfection_analysis": {
            "total_flagged": len(flagged),
            "high_suspicion": sum(1 for a in flagged if a.get("suspicion") == SuspicionLevel.HIGH.value),
            "medium_suspicion": sum(1 for a in flagged if a.get("suspicion") == SuspicionLevel.MEDIUM.value),
        },
    }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

async def _main(insights: bool) -> int:
    from app.models.database import dispose_engine, get_store

    store = get_store()
    try:
        if insights:
            print(json.dumps(await get_learning_insights(store), indent=2))
            return 0
        report = await run_learning_consolidation(store)
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.success else 1
    finally:
        await dispose_engine()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m app.jobs.consolidate",
                                     description="Run one learning consolidation cycle.")
    parser.add_argument("--insights", action="store_true", help="print learning insights and exit")
    args = parser.parse_args(argv)

    from app.main import configure_logging

    configure_logging()
    return asyncio.run(_main(args.insights))


if __name__ == "__main__":
    sys.exit(main())
