"""Tests for the learning consolidation job."""

import uuid
from datetime import timedelta

import pytest
from app.core.learning import base_confidence
from app.jobs.consolidate import get_learning_insights, run_learning_consolidation
from app.models.store import (
    WINDOW_FINALIZED,
    WINDOW_PROCESSING,
    BehavioralPatternRecord,
    InMemoryEvidenceStore,
    LearnedPatternRecord,
    LearningWindowRecord,
)

from conftest import FIXED_NOW

MESSY = {
    "header_order_entropy": 0.8,
    "header_case_consistency": False,
    "has_user_agent": True,
    "has_referer": False,
    "has_accept_language": True,
    "is_direct_access": True,
    "url_depth": 2,
}

# stability + no variation + case consistency: perfect but only medium suspicion
TIDY = {**MESSY, "header_order_entropy": 0.5, "header_case_consistency": True}

PERFECT = {
    "header_order_entropy": 1.0,
    "header_case_consistency": True,
    "has_user_agent": True,
    "has_referer": True,
    "has_accept_language": True,
    "is_direct_access": True,
    "url_depth": 0,
}


def _seed(store, features, occurrences, hours=2.0, last_seen=FIXED_NOW, pattern_hash=None):
    record = BehavioralPatternRecord(
        id=uuid.uuid4(),
        pattern_hash=pattern_hash or uuid.uuid4().hex,
        traffic_classification="legitimate",
        feature_vector=dict(features),
        occurrence_count=occurrences,
        first_seen=last_seen - timedelta(hours=hours),
        last_seen=last_seen,
    )
    store.patterns[record.pattern_hash] = record
    return record


async def _run(store, now=FIXED_NOW):
    return await run_learning_consolidation(store, now=now)


class TestConsolidation:
    async def test_burst_pattern_gets_anomalies(self):
        store = InMemoryEvidenceStore()
        raw = _seed(store, MESSY, occurrences=50)

        report = await _run(store)

        assert report.success
        assert report.patterns_processed == 1
        assert report.patterns_consolidated == 1
        assert report.stability_anomalies == 2

        learned = store.learned[raw.pattern_hash]
        anomalies = learned.behavior_profile["stability_anomalies"]
        assert set(anomalies) == {"high_frequency", "low_variation"}
        assert anomalies["high_frequency"]["detected_at"] == FIXED_NOW.isoformat()
        assert "perfection_analysis" not in learned.behavior_profile

        expected = base_confidence(50, 1, 2.0, 1.0) * 0.7 * 0.6
        assert learned.confidence_score == pytest.approx(expected, abs=1e-6)
        assert learned.learning_stage == "fading"
        assert learned.decay_coefficient == 1.0

    async def test_noise_discarded(self):
        store = InMemoryEvidenceStore()
        _seed(store, MESSY, occurrences=2)

        report = await _run(store)

        assert report.success
        assert report.patterns_discarded == 1
        assert store.learned == {}
        window = next(iter(store.windows.values()))
        assert window.window_status == WINDOW_FINALIZED
        assert window.noise_discarded == 1

    async def test_old_patterns_outside_window_ignored(self):
        store = InMemoryEvidenceStore()
        _seed(store, MESSY, occurrences=10, last_seen=FIXED_NOW - timedelta(days=3))
        assert (await _run(store)).patterns_processed == 0

    async def test_rerun_is_idempotent(self):
        store = InMemoryEvidenceStore()
        raw = _seed(store, MESSY, occurrences=50)

        await _run(store)
        first = store.learned[raw.pattern_hash]
        second_report = await _run(store)
        second = store.learned[raw.pattern_hash]

        assert second_report.success
        assert second_report.patterns_consolidated == 0
        assert second.occurrence_count == first.occurrence_count == 50
        assert second.confidence_score == first.confidence_score
        assert second.learning_stage == first.learning_stage
        assert second.behavior_profile == first.behavior_profile

    async def test_only_new_occurrences_are_folded(self):
        store = InMemoryEvidenceStore()
        raw = _seed(store, MESSY, occurrences=50)
        await _run(store)

        later = FIXED_NOW + timedelta(hours=1)
        store.patterns[raw.pattern_hash] = BehavioralPatternRecord(
            raw.id, raw.pattern_hash, raw.traffic_classification, raw.feature_vector,
            55, raw.first_seen, later,
        )
        report = await _run(store, now=later)

        learned = store.learned[raw.pattern_hash]
        assert report.patterns_consolidated == 1
        assert learned.occurrence_count == 55
        assert learned.last_seen_at == later
        assert len(store.evidence) == 1
        assert next(iter(store.evidence.values())).folded_occurrences == 55

    async def test_perfect_pattern_is_suspicious(self):
        store = InMemoryEvidenceStore()
        raw = _seed(store, PERFECT, occurrences=50)

        await _run(store)

        learned = store.learned[raw.pattern_hash]
        assert learned.learning_stage == "suspicious_perfect"
        assert learned.behavior_profile["perfection_analysis"]["suspicion"] == "high"

    async def test_reanalysis_flags_and_penalizes(self):
        store = InMemoryEvidenceStore()
        established = LearnedPatternRecord(
            signature_hash="sig-established",
            pattern_class="legitimate",
            behavior_profile={"features": PERFECT},
            occurrence_count=50,
            first_seen_at=FIXED_NOW - timedelta(hours=48),
            last_seen_at=FIXED_NOW - timedelta(hours=1),
            learning_stage="established",
        )
        store.learned[established.signature_hash] = established
        raw = _seed(store, TIDY, occurrences=50)

        report = await _run(store)

        assert report.patterns_flagged == 2
        assert report.patterns_penalized == 1
        assert store.learned["sig-established"].learning_stage == "suspicious_perfect"
        tidy = store.learned[raw.pattern_hash]
        assert tidy.behavior_profile["perfection_analysis"]["suspicion"] == "medium"
        assert tidy.learning_stage != "suspicious_perfect"


class TestWindowGuard:
    async def test_refuses_while_window_in_progress(self):
        store = InMemoryEvidenceStore()
        running = LearningWindowRecord(
            starts_at=FIXED_NOW - timedelta(hours=25),
            ends_at=FIXED_NOW - timedelta(hours=1),
            duration_hours=24,
            created_at=FIXED_NOW - timedelta(hours=1),
            window_status=WINDOW_PROCESSING,
        )
        store.windows[running.id] = running
        _seed(store, MESSY, occurrences=50)

        report = await _run(store)

        assert report.in_progress
        assert not report.success
        assert store.learned == {}
        assert len(store.windows) == 1

    async def test_stale_window_is_abandoned(self):
        store = InMemoryEvidenceStore()
        stale = LearningWindowRecord(
            starts_at=FIXED_NOW - timedelta(hours=34),
            ends_at=FIXED_NOW - timedelta(hours=10),
            duration_hours=24,
            created_at=FIXED_NOW - timedelta(hours=10),
            window_status=WINDOW_PROCESSING,
        )
        store.windows[stale.id] = stale

        report = await _run(store)

        assert report.success
        assert len(store.windows) == 2


class _DecayFails(InMemoryEvidenceStore):
    async def apply_decay(self, *, now, half_life_hours):
        raise RuntimeError("statement timeout")


async def test_failure_leaves_window_open():
    store = _DecayFails()
    _seed(store, MESSY, occurrences=50)

    report = await _run(store)

    assert report.success is False
    assert report.error == "consolidation_failed"
    window = store.windows[report.window_id]
    assert window.window_status == WINDOW_PROCESSING
    assert window.finalized_at is None


class _EvidenceWriteFailsOnce(InMemoryEvidenceStore):
    def __init__(self):
        super().__init__()
        self.failures = 1

    async def add_consolidation_evidence(self, evidence):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("connection reset")
        await super().add_consolidation_evidence(evidence)


class TestAbortedFold:
    async def test_retry_does_not_double_count_new_pattern(self):
        store = _EvidenceWriteFailsOnce()
        raw = _seed(store, MESSY, occurrences=50)

        failed = await _run(store)
        assert failed.error == "consolidation_failed"
        assert store.learned == {}

        # past the stale-window guard, same raw row
        retry = await _run(store, now=FIXED_NOW + timedelta(hours=7))

        assert retry.success
        assert store.learned[raw.pattern_hash].occurrence_count == 50
        assert [e.folded_occurrences for e in store.evidence.values()] == [50]

    async def test_retry_does_not_double_count_delta(self):
        store = _EvidenceWriteFailsOnce()
        store.failures = 0
        raw = _seed(store, MESSY, occurrences=50)
        await _run(store)

        later = FIXED_NOW + timedelta(hours=1)
        store.patterns[raw.pattern_hash] = BehavioralPatternRecord(
            raw.id, raw.pattern_hash, raw.traffic_classification, raw.feature_vector,
            55, raw.first_seen, later,
        )
        store.failures = 1
        failed = await _run(store, now=later)
        assert not failed.success
        assert store.learned[raw.pattern_hash].occurrence_count == 50

        retry = await _run(store, now=later + timedelta(hours=7))

        assert retry.success
        assert store.learned[raw.pattern_hash].occurrence_count == 55
        assert next(iter(store.evidence.values())).folded_occurrences == 55


async def test_report_serializes():
    store = InMemoryEvidenceStore()
    data = (await _run(store)).to_dict()
    assert data["success"] is True
    assert isinstance(data["window_id"], str)


async def test_insights():
    store = InMemoryEvidenceStore()
    _seed(store, MESSY, occurrences=50)
    _seed(store, TIDY, occurrences=50)
    _seed(store, PERFECT, occurrences=50)
    await _run(store)

    insights = await get_learning_insights(store)

    assert insights["total_patterns"] == 3
    assert insights["suspicious_perfect_patterns"] == 1
    assert insights["perfection_analysis"] == {
        "total_flagged": 2,
        "high_suspicion": 1,
        "medium_suspicion": 1,
    }
    assert 0.0 <= insights["avg_confidence"] <= 1.0


async def test_insights_empty_store():
    insights = await get_learning_insights(InMemoryEvidenceStore())
    assert insights["total_patterns"] == 0
    assert insights["avg_confidence"] == 0.0
