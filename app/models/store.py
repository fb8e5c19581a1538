"""
Evidence store — the only seam between the classification core and storage.

Request time uses four operations (rules, click-id sighting, pattern upsert,
audit writes). The consolidation job uses the rest. Both the click-id
sighting and the pattern upsert are atomic "insert or increment" per key:

  - SqlEvidenceStore (app/models/sql_store.py): INSERT ... ON CONFLICT
  - InMemoryEvidenceStore (below): one asyncio.Lock per key

Consolidation folds a raw observation into a learned pattern through
fold_observation, which writes the pattern and its evidence row as one unit
(a transaction in SQL, a lock plus rollback in memory).

Records are plain dataclasses so the core never sees ORM objects.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from app.core.click_id import DEFAULT_NETWORK_RULES, NetworkRule
from app.core.learning import decay_coefficient

WINDOW_COLLECTING = "collecting"
WINDOW_PROCESSING = "processing"
WINDOW_FINALIZED = "finalized"


@dataclass(frozen=True)
class ClickIdSighting:
    click_id: str
    domain_id: str
    network: str
    hit_count: int
    first_seen: datetime
    last_seen: datetime
    is_valid: bool = False


@dataclass(frozen=True)
class BehavioralPatternRecord:
    id: uuid.UUID
    pattern_hash: str
    traffic_classification: str
    feature_vector: dict
    occurrence_count: int
    first_seen: datetime
    last_seen: datetime


@dataclass
class LearnedPatternRecord:
    signature_hash: str
    pattern_class: str
    behavior_profile: dict
    occurrence_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    context_variations: int = 1
    confidence_score: float = 0.0
    decay_coefficient: float = 1.0
    learning_stage: str = "emerging"
    last_decay_applied: datetime | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass(frozen=True)
class ConsolidationEvidence:
    learned_pattern_id: uuid.UUID
    observation_ref: uuid.UUID
    context_hash: str
    folded_occurrences: int
    evidence_profile: dict
    learning_window_id: uuid.UUID | None = None
    captured_at: datetime | None = None


@dataclass
class LearningWindowRecord:
    starts_at: datetime
    ends_at: datetime
    duration_hours: int
    created_at: datetime
    window_status: str = WINDOW_COLLECTING
    observations_processed: int = 0
    patterns_discovered: int = 0
    noise_discarded: int = 0
    finalized_at: datetime | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)


class EvidenceStore(ABC):

    # --- request time ---

    @abstractmethod
    async def load_network_rules(self) -> list[NetworkRule]:
        """Enabled rules. Raising here makes the pipeline fail closed."""

    @abstractmethod
    async def record_click_id_sighting(
        self, *, domain_id: str, click_id: str, network: str, is_valid: bool,
        validation_errors: list[str], entropy: float, ip: str | None,
        user_agent: str | None, referer: str | None, seen_at: datetime,
    ) -> ClickIdSighting:
        """Insert or increment. Returns the row after this sighting."""

    @abstractmethod
    async def upsert_behavioral_pattern(
        self, *, pattern_hash: str, classification: str, features: dict, seen_at: datetime,
    ) -> BehavioralPatternRecord:
        ...

    @abstractmethod
    async def save_contradiction_signals(self, *, domain_id: str, ip: str | None, signals: list) -> None:
        ...

    @abstractmethod
    async def save_risk_assessment(self, *, domain_id: str, ip: str | None, user_agent: str | None,
                                   platform: str, network: str | None, navigation_depth: int,
                                   assessment) -> None:
        ...

    # --- learning ---

    @abstractmethod
    async def open_window(self, *, now: datetime, duration_hours: int,
                          stale_after_hours: float) -> LearningWindowRecord | None:
        """New window, or None while a fresh non-finalized one exists."""

    @abstractmethod
    async def update_window(self, window_id: uuid.UUID, **values) -> None:
        ...

    @abstractmethod
    async def recent_patterns(self, since: datetime) -> list[BehavioralPatternRecord]:
        ...

    @abstractmethod
    async def get_learned_pattern(self, signature_hash: str) -> LearnedPatternRecord | None:
        ...

    @abstractmethod
    async def save_learned_pattern(self, pattern: LearnedPatternRecord) -> LearnedPatternRecord:
        """Insert or overwrite by signature_hash."""

    @abstractmethod
    async def list_learned_patterns(self, stages: tuple[str, ...] | None = None) -> list[LearnedPatternRecord]:
        ...

    @abstractmethod
    async def folded_occurrences(self, learned_pattern_id: uuid.UUID, observation_ref: uuid.UUID) -> int:
        """Highest raw count of this observation already folded into the pattern."""

    @abstractmethod
    async def fold_observation(self, pattern: LearnedPatternRecord,
                               evidence: ConsolidationEvidence) -> LearnedPatternRecord:
        """Save the pattern and its evidence row in one unit; neither is kept if either fails.

        The evidence is re-keyed to the id the pattern ends up with.
        """

    @abstractmethod
    async def count_distinct_contexts(self, learned_pattern_id: uuid.UUID) -> int:
        ...

    @abstractmethod
    async def apply_decay(self, *, now: datetime, half_life_hours: float) -> int:
        """Refresh every pattern's decay coefficient from its idle time. Returns rows touched."""


class InMemoryEvidenceStore(EvidenceStore):
    """Dict-backed store for tests and single-process runs."""

    def __init__(self, rules: tuple[NetworkRule, ...] | list[NetworkRule] = DEFAULT_NETWORK_RULES):
        self.rules = list(rules)
        self.click_ids: dict[tuple[str, str], ClickIdSighting] = {}
        self.patterns: dict[str, BehavioralPatternRecord] = {}
        self.learned: dict[str, LearnedPatternRecord] = {}
        self.evidence: dict[tuple[uuid.UUID, uuid.UUID, str], ConsolidationEvidence] = {}
        self.windows: dict[uuid.UUID, LearningWindowRecord] = {}
        self.contradiction_signals: list[dict] = []
        self.risk_assessments: list[dict] = []
        self._locks: defaultdict = defaultdict(asyncio.Lock)

    async def load_network_rules(self) -> list[NetworkRule]:
        return list(self.rules)

    async def record_click_id_sighting(self, *, domain_id, click_id, network, is_valid,
                                       validation_errors, entropy, ip, user_agent, referer,
                                       seen_at) -> ClickIdSighting:
        key = (click_id, domain_id)
        async with self._locks[("click_id",) + key]:
            current = self.click_ids.get(key)
            if current is None:
                current = ClickIdSighting(click_id, domain_id, network, 1, seen_at, seen_at, is_valid)
            else:
                current = replace(current, hit_count=current.hit_count + 1,
                                  last_seen=max(current.last_seen, seen_at), is_valid=is_valid)
            self.click_ids[key] = current
            return current

    async def upsert_behavioral_pattern(self, *, pattern_hash, classification, features,
                                        seen_at) -> BehavioralPatternRecord:
        async with self._locks[("pattern", pattern_hash)]:
            current = self.patterns.get(pattern_hash)
            if current is None:
                current = BehavioralPatternRecord(uuid.uuid4(), pattern_hash, classification,
                                                  dict(features), 1, seen_at, seen_at)
            else:
                current = replace(current, traffic_classification=classification,
                                  feature_vector=dict(features),
                                  occurrence_count=current.occurrence_count + 1,
                                  last_seen=max(current.last_seen, seen_at))
            self.patterns[pattern_hash] = current
            return current

    async def save_contradiction_signals(self, *, domain_id, ip, signals) -> None:
        for s in signals:
            self.contradiction_signals.append({
                "domain_id": domain_id, "ip": ip, "signal_type": s.type,
                "expected_behavior": s.expected, "actual_behavior": s.observed,
                "was_human_response": s.is_human_indicator, "confidence": s.weight,
            })

    async def save_risk_assessment(self, *, domain_id, ip, user_agent, platform, network,
                                   navigation_depth, assessment) -> None:
        row = assessment.to_dict()
        row.update(domain_id=domain_id, ip=ip, user_agent=user_agent, platform_type=platform,
                   click_id_network=network, navigation_depth=navigation_depth)
        self.risk_assessments.append(row)

    async def open_window(self, *, now, duration_hours, stale_after_hours) -> LearningWindowRecord | None:
        async with self._locks[("window",)]:
            fresh_after = now - timedelta(hours=stale_after_hours)
            for w in self.windows.values():
                if w.window_status != WINDOW_FINALIZED and w.created_at > fresh_after:
                    return None
            window = LearningWindowRecord(
                starts_at=now - timedelta(hours=duration_hours),
                ends_at=now,
                duration_hours=duration_hours,
                created_at=now,
            )
            self.windows[window.id] = window
            return replace(window)

    async def update_window(self, window_id, **values) -> None:
        window = self.windows[window_id]
        for name, value in values.items():
            setattr(window, name, value)

    async def recent_patterns(self, since) -> list[BehavioralPatternRecord]:
        return sorted((p for p in self.patterns.values() if p.last_seen >= since),
                      key=lambda p: p.last_seen)

    async def get_learned_pattern(self, signature_hash) -> LearnedPatternRecord | None:
        current = self.learned.get(signature_hash)
        return replace(current) if current else None

    async def save_learned_pattern(self, pattern) -> LearnedPatternRecord:
        existing = self.learned.get(pattern.signature_hash)
        if existing is not None and existing.id != pattern.id:
            pattern = replace(pattern, id=existing.id)
        self.learned[pattern.signature_hash] = replace(pattern)
        return pattern

    async def list_learned_patterns(self, stages=None) -> list[LearnedPatternRecord]:
        return [replace(p) for p in self.learned.values() if stages is None or p.learning_stage in stages]

    async def folded_occurrences(self, learned_pattern_id, observation_ref) -> int:
        return max((e.folded_occurrences for (lid, ref, _), e in self.evidence.items()
                    if lid == learned_pattern_id and ref == observation_ref), default=0)

    async def add_consolidation_evidence(self, evidence) -> None:
        key = (evidence.learned_pattern_id, evidence.observation_ref, evidence.context_hash)
        existing = self.evidence.get(key)
        if existing is not None and existing.folded_occurrences > evidence.folded_occurrences:
            evidence = replace(evidence, folded_occurrences=existing.folded_occurrences)
        self.evidence[key] = evidence

    async def fold_observation(self, pattern, evidence) -> LearnedPatternRecord:
        async with self._locks[("learned", pattern.signature_hash)]:
            previous = self.learned.get(pattern.signature_hash)
            saved = await self.save_learned_pattern(pattern)
            try:
                await self.add_consolidation_evidence(replace(evidence, learned_pattern_id=saved.id))
            except Exception:
                if previous is None:
                    del self.learned[pattern.signature_hash]
                else:
                    self.learned[pattern.signature_hash] = previous
                raise
            return saved

    async def count_distinct_contexts(self, learned_pattern_id) -> int:
        return len({h for (lid, _, h) in self.evidence if lid == learned_pattern_id})

    async def apply_decay(self, *, now, half_life_hours) -> int:
        for pattern in self.learned.values():
            pattern.decay_coefficient = decay_coefficient(pattern.last_seen_at, now, half_life_hours)
            pattern.last_decay_applied = now
        return len(self.learned)
