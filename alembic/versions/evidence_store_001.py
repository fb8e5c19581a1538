"""evidence store schema

Revision ID: evidence_store_001
Revises:
Create Date: 2026-10-19 09:12:41.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'evidence_store_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


DEFAULT_RULES = [
    # network, param, min_len, max_len, min_entropy, referer_pattern, priority
    ('google_ads', 'gclid', 20, 200, 3.5, r'google\.|doubleclick\.|googleadservices\.', 100),
    ('meta_ads', 'fbclid', 20, 300, 3.5, r'facebook\.|instagram\.|fb\.', 90),
    ('tiktok_ads', 'ttclid', 20, 300, 3.5, r'tiktok\.', 80),
    ('microsoft_ads', 'msclkid', 20, 64, 3.0, r'bing\.|microsoft\.', 70),
    ('generic', 'click_id', 20, 200, 3.0, None, 10),
]


def upgrade() -> None:
    # --- Network rules ---
    rules = op.create_table('click_id_validation_rules',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('network', sa.String(length=50), nullable=False),
        sa.Column('click_id_param', sa.String(length=50), nullable=False),
        sa.Column('min_length', sa.Integer(), nullable=False),
        sa.Column('max_length', sa.Integer(), nullable=False),
        sa.Column('min_entropy', sa.Float(), nullable=False),
        sa.Column('requires_referer', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('referer_pattern', sa.Text(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('network'),
    )
    op.bulk_insert(rules, [
        {
            'network': network,
            'click_id_param': param,
            'min_length': min_len,
            'max_length': max_len,
            'min_entropy': min_entropy,
            'requires_referer': False,
            'referer_pattern': pattern,
            'priority': priority,
            'enabled': True,
        }
        for network, param, min_len, max_len, min_entropy, pattern, priority in DEFAULT_RULES
    ])

    # --- Click-id sightings ---
    op.create_table('click_id_observations',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('domain_id', sa.String(length=100), nullable=False),
        sa.Column('click_id', sa.String(length=300), nullable=False),
        sa.Column('network', sa.String(length=50), nullable=False),
        sa.Column('ip', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('referer', sa.Text(), nullable=True),
        sa.Column('is_valid', sa.Boolean(), nullable=True),
        sa.Column('validation_errors', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('entropy_score', sa.Float(), nullable=True),
        sa.Column('hit_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('first_seen', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('click_id', 'domain_id', name='uq_click_id_observations_click_domain'),
    )

    # --- Raw behavioral patterns ---
    op.create_table('behavioral_patterns',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('pattern_hash', sa.String(length=64), nullable=False),
        sa.Column('traffic_classification', sa.String(length=20), nullable=False),
        sa.Column('feature_vector', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('occurrence_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('first_seen', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pattern_hash'),
    )
    op.create_index(op.f('ix_behavioral_patterns_last_seen'), 'behavioral_patterns', ['last_seen'], unique=False)

    # --- Learning ---
    op.create_table('learned_patterns',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('signature_hash', sa.String(length=64), nullable=False),
        sa.Column('pattern_class', sa.String(length=20), nullable=False),
        sa.Column('behavior_profile', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('occurrence_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('context_variations', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('confidence_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('decay_coefficient', sa.Float(), nullable=False, server_default='1'),
        sa.Column('learning_stage', sa.String(length=30), nullable=False, server_default='emerging'),
        sa.Column('first_seen_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_decay_applied', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('signature_hash'),
    )
    op.create_index(op.f('ix_learned_patterns_learning_stage'), 'learned_patterns', ['learning_stage'], unique=False)

    op.create_table('learning_windows',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_hours', sa.Integer(), nullable=False),
        sa.Column('window_status', sa.String(length=20), nullable=False, server_default='collecting'),
        sa.Column('observations_processed', sa.Integer(), nullable=True),
        sa.Column('patterns_discovered', sa.Integer(), nullable=True),
        sa.Column('noise_discarded', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_learning_windows_window_status'), 'learning_windows', ['window_status'], unique=False)

    op.create_table('pattern_consolidation',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('learned_pattern_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('observation_ref', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('context_hash', sa.String(length=64), nullable=False),
        sa.Column('folded_occurrences', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('evidence_profile', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('learning_window_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['learned_pattern_id'], ['learned_patterns.id']),
        sa.ForeignKeyConstraint(['learning_window_id'], ['learning_windows.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('learned_pattern_id', 'observation_ref', 'context_hash',
                            name='uq_pattern_consolidation_evidence'),
    )
    op.create_index('ix_pattern_consolidation_learned', 'pattern_consolidation', ['learned_pattern_id'], unique=False)

    # --- Audit ---
    op.create_table('contradiction_signals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('domain_id', sa.String(length=100), nullable=False),
        sa.Column('ip', sa.String(length=45), nullable=True),
        sa.Column('signal_type', sa.String(length=50), nullable=False),
        sa.Column('expected_behavior', sa.Text(), nullable=True),
        sa.Column('actual_behavior', sa.Text(), nullable=True),
        sa.Column('was_human_response', sa.Boolean(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_contradiction_signals_domain_id'), 'contradiction_signals', ['domain_id'], unique=False)

    op.create_table('risk_assessments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('domain_id', sa.String(length=100), nullable=False),
        sa.Column('ip', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('platform_type', sa.String(length=20), nullable=True),
        sa.Column('raw_score', sa.Float(), nullable=False),
        sa.Column('decision', sa.String(length=20), nullable=False),
        sa.Column('risk_factors', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('coherence_score', sa.Float(), nullable=True),
        sa.Column('human_noise_score', sa.Float(), nullable=True),
        sa.Column('perfection_penalty', sa.Float(), nullable=True),
        sa.Column('temporal_variance', sa.Float(), nullable=True),
        sa.Column('click_id_network', sa.String(length=50), nullable=True),
        sa.Column('economic_value', sa.Boolean(), nullable=True),
        sa.Column('navigation_depth', sa.Integer(), nullable=True),
        sa.Column('reasoning', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_risk_assessments_domain_created', 'risk_assessments', ['domain_id', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_risk_assessments_domain_created', table_name='risk_assessments')
    op.drop_table('risk_assessments')
    op.drop_index(op.f('ix_contradiction_signals_domain_id'), table_name='contradiction_signals')
    op.drop_table('contradiction_signals')
    op.drop_index('ix_pattern_consolidation_learned', table_name='pattern_consolidation')
    op.drop_table('pattern_consolidation')
    op.drop_index(op.f('ix_learning_windows_window_status'), table_name='learning_windows')
    op.drop_table('learning_windows')
    op.drop_index(op.f('ix_learned_patterns_learning_stage'), table_name='learned_patterns')
    op.drop_table('learned_patterns')
    op.drop_index(op.f('ix_behavioral_patterns_last_seen'), table_name='behavioral_patterns')
    op.drop_table('behavioral_patterns')
    op.drop_table('click_id_observations')
    op.drop_table('click_id_validation_rules')
