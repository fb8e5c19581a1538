"""Tests for the PostgreSQL evidence store.

Statement shape is checked by compiling against the PostgreSQL dialect. The
live tests run only when IW_TEST_DATABASE_URL points at a scratch database;
they create and drop every table.
"""

import os
import re
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models.sql_store import (
    SqlEvidenceStore,
    behavioral_pattern_upsert,
    click_id_sighting_upsert,
    consolidation_evidence_upsert,
    decay_update,
    learned_pattern_upsert,
)
from app.models.store import ConsolidationEvidence, LearnedPatternRecord
from app.models.tables import Base

from conftest import FIXED_NOW, GCLID

LIVE_DATABASE_URL = os.environ.get("IW_TEST_DATABASE_URL")


def _sql(stmt):
    return str(stmt.compile(dialect=postgresql.dialect()))


def _learned(**overrides):
    values = dict(
        signature_hash="a" * 64,
        pattern_class="legitimate",
        behavior_profile={"features": {"url_depth": 0}},
        occurrence_count=50,
        first_seen_at=FIXED_NOW - timedelta(hours=2),
        last_seen_at=FIXED_NOW,
    )
    values.update(overrides)
    return LearnedPatternRecord(**values)


def _evidence(pattern, **overrides):
    values = dict(
        learned_pattern_id=pattern.id,
        observation_ref=uuid.uuid4(),
        context_hash="c" * 64,
        folded_occurrences=50,
        evidence_profile={"classification": "legitimate"},
        captured_at=FIXED_NOW,
    )
    values.update(overrides)
    return ConsolidationEvidence(**values)


def _sighting(**overrides):
    values = dict(
        domain_id="shop.example.com", click_id=GCLID, network="google_ads", is_valid=True,
        validation_errors=[], entropy=4.46, ip="177.67.80.10", user_agent="UA",
        referer=None, seen_at=FIXED_NOW,
    )
    values.update(overrides)
    return values


# ---------------------------------------------------------------------------
# Compiled statements
# ---------------------------------------------------------------------------

class TestStatements:
    def test_click_id_sighting_increments_on_conflict(self):
        sql = _sql(click_id_sighting_upsert(**_sighting()))
        assert "ON CONFLICT ON CONSTRAINT uq_click_id_observations_click_domain DO UPDATE SET" in sql
        assert re.search(r"hit_count = \(click_id_observations\.hit_count \+ %\(\w+\)s\)", sql)
        assert "last_seen = greatest(click_id_observations.last_seen, excluded.last_seen)" in sql
        assert "RETURNING click_id_observations.hit_count" in sql

    def test_click_id_sighting_keeps_first_seen(self):
        update_clause = _sql(click_id_sighting_upsert(**_sighting())).split("DO UPDATE SET")[1]
        assert "first_seen =" not in update_clause.split("RETURNING")[0]
        assert "ip =" not in update_clause

    def test_behavioral_pattern_increments_by_hash(self):
        sql = _sql(behavioral_pattern_upsert(pattern_hash="f" * 64, classification="legitimate",
                                             features={"url_depth": 0}, seen_at=FIXED_NOW))
        assert "ON CONFLICT (pattern_hash) DO UPDATE SET" in sql
        assert re.search(r"occurrence_count = \(behavioral_patterns\.occurrence_count \+ %\(\w+\)s\)", sql)
        assert "last_seen = greatest(behavioral_patterns.last_seen, excluded.last_seen)" in sql
        assert "RETURNING behavioral_patterns.id" in sql

    def test_learned_pattern_overwrites_by_signature(self):
        sql = _sql(learned_pattern_upsert(_learned()))
        assert "ON CONFLICT (signature_hash) DO UPDATE SET" in sql
        assert "RETURNING learned_patterns.id" in sql
        update_clause = sql.split("DO UPDATE SET")[1]
        assert "signature_hash =" not in update_clause
        assert "occurrence_count = %(" in update_clause

    def test_evidence_keeps_highest_fold(self):
        pattern = _learned()
        sql = _sql(consolidation_evidence_upsert(_evidence(pattern)))
        assert "ON CONFLICT ON CONSTRAINT uq_pattern_consolidation_evidence DO UPDATE SET" in sql
        assert ("folded_occurrences = greatest(pattern_consolidation.folded_occurrences, "
                "excluded.folded_occurrences)") in sql

    def test_decay_is_computed_from_idle_time(self):
        sql = _sql(decay_update(FIXED_NOW, 168.0))
        assert sql.startswith("UPDATE learned_patterns SET decay_coefficient=greatest(")
        assert "power(" in sql
        assert "EXTRACT(epoch FROM" in sql
        assert "learned_patterns.last_seen_at" in sql

    def test_decay_disabled(self):
        compiled = decay_update(FIXED_NOW, 0).compile(dialect=postgresql.dialect())
        assert "power(" not in str(compiled)
        assert 1.0 in compiled.params.values()


# ---------------------------------------------------------------------------
# Live database
# ---------------------------------------------------------------------------

@pytest.fixture
async def sql_store():
    engine = create_async_engine(LIVE_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield SqlEvidenceStore(async_sessionmaker(engine, expire_on_commit=False))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.mark.skipif(not LIVE_DATABASE_URL, reason="IW_TEST_DATABASE_URL not set")
class TestLiveStore:
    async def test_sighting_counts(self, sql_store):
        first = await sql_store.record_click_id_sighting(**_sighting())
        second = await sql_store.record_click_id_sighting(**_sighting(seen_at=FIXED_NOW + timedelta(minutes=5)))
        other = await sql_store.record_click_id_sighting(**_sighting(domain_id="other.example.com"))

        assert (first.hit_count, second.hit_count, other.hit_count) == (1, 2, 1)
        assert second.first_seen == FIXED_NOW
        assert second.last_seen == FIXED_NOW + timedelta(minutes=5)

    async def test_fold_writes_pattern_and_evidence(self, sql_store):
        pattern = _learned()
        evidence = _evidence(pattern)

        saved = await sql_store.fold_observation(pattern, evidence)

        assert (await sql_store.get_learned_pattern(pattern.signature_hash)).occurrence_count == 50
        assert await sql_store.folded_occurrences(saved.id, evidence.observation_ref) == 50
        assert await sql_store.count_distinct_contexts(saved.id) == 1

    async def test_failed_evidence_write_rolls_back_pattern(self, sql_store):
        pattern = _learned()
        # no such learning window: the evidence insert violates its foreign key
        evidence = _evidence(pattern, learning_window_id=uuid.uuid4())

        with pytest.raises(IntegrityError):
            await sql_store.fold_observation(pattern, evidence)

        assert await sql_store.get_learned_pattern(pattern.signature_hash) is None

    async def test_window_guard(self, sql_store):
        window = await sql_store.open_window(now=FIXED_NOW, duration_hours=24, stale_after_hours=6)
        assert window is not None
        assert await sql_store.open_window(now=FIXED_NOW, duration_hours=24, stale_after_hours=6) is None
        later = await sql_store.open_window(now=FIXED_NOW + timedelta(hours=7), duration_hours=24,
                                            stale_after_hours=6)
        assert later is not None
