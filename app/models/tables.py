"""
Database models — the evidence layer.

Design principles:
  - Request-time tables (click_id_observations, behavioral_patterns) are
    written with atomic INSERT ... ON CONFLICT upserts keyed by natural keys
  - Learning tables (learned_patterns, pattern_consolidation) are only ever
    written by the consolidation job
  - learning_windows is an append-only audit trail (never deleted)
  - contradiction_signals / risk_assessments are append-only audit copies
"""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ClickIdValidationRule(Base):
    """One row per ad network. Loaded on every request (enabled only)."""
    __tablename__ = "click_id_validation_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    network = Column(String(50), nullable=False, unique=True)
    click_id_param = Column(String(50), nullable=False)
    min_length = Column(Integer, nullable=False)
    max_length = Column(Integer, nullable=False)
    min_entropy = Column(Float, nullable=False)
    requires_referer = Column(Boolean, default=False, nullable=False)
    referer_pattern = Column(Text, nullable=True)
    priority = Column(Integer, default=0, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ---------------------------------------------------------------------------
# Request-time evidence (atomic upserts)
# ---------------------------------------------------------------------------

class ClickIdObservation(Base):
    """One row per (click_id, domain). hit_count > 1 = recycled click."""
    __tablename__ = "click_id_observations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    domain_id = Column(String(100), nullable=False)
    click_id = Column(String(300), nullable=False)
    network = Column(String(50), nullable=False)
    ip = Column(String(45), nullable=True)                   # first sighting only
    user_agent = Column(Text, nullable=True)
    referer = Column(Text, nullable=True)
    is_valid = Column(Boolean, default=False)                # last validation outcome
    validation_errors = Column(JSONB, nullable=True)
    entropy_score = Column(Float, nullable=True)
    hit_count = Column(Integer, default=1, nullable=False)
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("click_id", "domain_id", name="uq_click_id_observations_click_domain"),
    )


class BehavioralPattern(Base):
    """Raw aggregate per bucketed feature hash. Cumulative counts."""
    __tablename__ = "behavioral_patterns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    pattern_hash = Column(String(64), nullable=False, unique=True)
    traffic_classification = Column(String(20), nullable=False)   # legitimate, suspicious, blocked
    feature_vector = Column(JSONB, nullable=True)                 # latest snapshot
    occurrence_count = Column(Integer, default=1, nullable=False)
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False, index=True)


# ---------------------------------------------------------------------------
# Learning (consolidation job only)
# ---------------------------------------------------------------------------

class LearnedPattern(Base):
    __tablename__ = "learned_patterns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    signature_hash = Column(String(64), nullable=False, unique=True)
    pattern_class = Column(String(20), nullable=False)            # legitimate, suspicious, blocked
    behavior_profile = Column(JSONB, nullable=True)               # features + perfection_analysis + stability_anomalies
    occurrence_count = Column(Integer, default=0, nullable=False)
    context_variations = Column(Integer, default=1, nullable=False)
    confidence_score = Column(Float, default=0.0, nullable=False)
    decay_coefficient = Column(Float, default=1.0, nullable=False)
    learning_stage = Column(String(30), default="emerging", nullable=False, index=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_decay_applied = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PatternConsolidation(Base):
    """Evidence linking a learned pattern to the raw observation it absorbed."""
    __tablename__ = "pattern_consolidation"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    learned_pattern_id = Column(UUID(as_uuid=True), ForeignKey("learned_patterns.id"), nullable=False)
    observation_ref = Column(UUID(as_uuid=True), nullable=False)  # behavioral_patterns.id
    context_hash = Column(String(64), nullable=False)
    folded_occurrences = Column(Integer, default=0, nullable=False)  # raw count already absorbed
    evidence_profile = Column(JSONB, nullable=True)
    learning_window_id = Column(UUID(as_uuid=True), ForeignKey("learning_windows.id"), nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("learned_pattern_id", "observation_ref", "context_hash",
                         name="uq_pattern_consolidation_evidence"),
        Index("ix_pattern_consolidation_learned", "learned_pattern_id"),
    )


class LearningWindow(Base):
    __tablename__ = "learning_windows"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    duration_hours = Column(Integer, nullable=False)
    window_status = Column(String(20), default="collecting", nullable=False, index=True)  # collecting, processing, finalized
    observations_processed = Column(Integer, default=0)
    patterns_discovered = Column(Integer, default=0)
    noise_discarded = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    finalized_at = Column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Audit (append-only)
# ---------------------------------------------------------------------------

class ContradictionSignalRow(Base):
    __tablename__ = "contradiction_signals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain_id = Column(String(100), nullable=False, index=True)
    ip = Column(String(45), nullable=True)
    signal_type = Column(String(50), nullable=False)
    expected_behavior = Column(Text, nullable=True)
    actual_behavior = Column(Text, nullable=True)
    was_human_response = Column(Boolean, default=False)
    confidence = Column(Float, nullable=False)                    # signal weight after softening
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class RiskAssessmentRow(Base):
    __tablename__ = "risk_assessments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain_id = Column(String(100), nullable=False)
    ip = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    platform_type = Column(String(20), nullable=True)
    raw_score = Column(Float, nullable=False)
    decision = Column(String(20), nullable=False)
    risk_factors = Column(JSONB, nullable=True)
    coherence_score = Column(Float, nullable=True)
    human_noise_score = Column(Float, nullable=True)
    perfection_penalty = Column(Float, nullable=True)
    temporal_variance = Column(Float, nullable=True)
    click_id_network = Column(String(50), nullable=True)
    economic_value = Column(Boolean, default=False)
    navigation_depth = Column(Integer, nullable=True)
    reasoning = Column(JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_risk_assessments_domain_created", "domain_id", "created_at"),
    )
