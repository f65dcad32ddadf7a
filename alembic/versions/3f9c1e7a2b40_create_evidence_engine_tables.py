"""create_evidence_engine_tables

Revision ID: 3f9c1e7a2b40
Revises:
Create Date: 2026-10-19 09:12:44.118302

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector


# revision identifiers, used by Alembic.
revision: str = '3f9c1e7a2b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True)


def _fk(name: str, target: str, nullable: bool = False, ondelete: str = 'CASCADE') -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(f'{target}.id', ondelete=ondelete),
        nullable=nullable,
    )


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'))


def upgrade() -> None:
    """Upgrade schema."""
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    op.create_table(
        'workspaces',
        _id(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('health_weights', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _created_at(),
    )

    op.create_table(
        'projects',
        _id(),
        _fk('workspace_id', 'workspaces'),
        sa.Column('name', sa.String(), nullable=False),
        _created_at(),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )

    op.create_table(
        'sources',
        _id(),
        _fk('workspace_id', 'workspaces'),
        _fk('project_id', 'projects'),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('source_type', sa.String(), nullable=False),
        sa.Column('file_size_bytes', sa.Integer(), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index('ix_sources_project_id', 'sources', ['project_id'])

    op.create_table(
        'source_chunks',
        _id(),
        _fk('source_id', 'sources'),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('speaker', sa.String(), nullable=True),
        sa.Column('timestamp_label', sa.String(), nullable=True),
        sa.Column('classification_tag', sa.String(), nullable=True),
        sa.Column('classification_confidence', sa.Float(), nullable=True),
        sa.Column('embedding', Vector(1536), nullable=True),
        _created_at(),
        sa.UniqueConstraint('source_id', 'chunk_index', name='uq_source_chunk_position'),
        sa.CheckConstraint(
            'classification_confidence IS NULL OR (classification_confidence >= 0 AND classification_confidence <= 1)',
            name='ck_source_chunk_confidence_range',
        ),
        comment='Source chunks with embeddings and classification',
    )
    op.execute(
        'CREATE INDEX ix_source_chunks_embedding ON source_chunks '
        'USING hnsw (embedding vector_cosine_ops)'
    )

    op.create_table(
        'packs',
        _id(),
        _fk('workspace_id', 'workspaces'),
        _fk('project_id', 'projects'),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('last_baseline_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('diverged_from_baseline', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('health_score', sa.Integer(), nullable=True),
        sa.Column('health_status', sa.String(), nullable=True),
        sa.Column('last_health_check', sa.TIMESTAMP(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index('ix_packs_workspace_id', 'packs', ['workspace_id'])

    op.create_table(
        'pack_versions',
        _id(),
        _fk('pack_id', 'packs'),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('source_ids', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('quality_report', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _created_at(),
        sa.UniqueConstraint('pack_id', 'version_number', name='uq_pack_version_number'),
    )

    op.create_table(
        'stories',
        _id(),
        _fk('pack_version_id', 'pack_versions'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('persona', sa.String(), nullable=False, server_default=''),
        sa.Column('want', sa.Text(), nullable=False, server_default=''),
        sa.Column('so_that', sa.Text(), nullable=False, server_default=''),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index('ix_stories_pack_version_id', 'stories', ['pack_version_id'])

    op.create_table(
        'acceptance_criteria',
        _id(),
        _fk('story_id', 'stories'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('given', sa.Text(), nullable=False, server_default=''),
        sa.Column('when', sa.Text(), nullable=False, server_default=''),
        sa.Column('then', sa.Text(), nullable=False, server_default=''),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index('ix_acceptance_criteria_story_id', 'acceptance_criteria', ['story_id'])

    op.create_table(
        'evidence_links',
        _id(),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=False),
        _fk('source_chunk_id', 'source_chunks'),
        sa.Column('confidence', sa.String(), nullable=False),
        sa.Column('evolution_status', sa.String(), nullable=False, server_default='new'),
        _created_at(),
        sa.CheckConstraint(
            "confidence IN ('direct', 'inferred', 'assumption')", name='ck_evidence_link_confidence'
        ),
    )
    op.create_index('ix_evidence_links_entity', 'evidence_links', ['entity_type', 'entity_id'])

    op.create_table(
        'evidence_conflicts',
        _id(),
        _fk('workspace_id', 'workspaces'),
        _fk('project_id', 'projects'),
        _fk('chunk_a_id', 'source_chunks'),
        _fk('chunk_b_id', 'source_chunks'),
        sa.Column('similarity', sa.Float(), nullable=False),
        sa.Column('contradicts', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('summary', sa.Text(), nullable=False, server_default=''),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('resolution', sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint('project_id', 'chunk_a_id', 'chunk_b_id', name='uq_evidence_conflict_pair'),
        sa.CheckConstraint('chunk_a_id < chunk_b_id', name='ck_evidence_conflict_canonical_order'),
        comment='Detected contradictions, canonical chunk pair ordering',
    )

    op.create_table(
        'qa_flags',
        _id(),
        _fk('pack_version_id', 'pack_versions'),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('rule_code', sa.String(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False, server_default=''),
        sa.Column('resolved_by', postgresql.UUID(as_uuid=True), nullable=True),
        _created_at(),
    )
    op.create_index('ix_qa_flags_pack_version_id', 'qa_flags', ['pack_version_id'])

    op.create_table(
        'baselines',
        _id(),
        _fk('workspace_id', 'workspaces'),
        _fk('pack_id', 'packs'),
        _fk('pack_version_id', 'pack_versions'),
        sa.Column('version_label', sa.String(), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('snapshot_data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=False),
        _created_at(),
        sa.UniqueConstraint('pack_id', 'version_number', name='uq_baseline_pack_version_number'),
        comment='Immutable baseline snapshots',
    )
    op.create_foreign_key(
        'fk_pack_last_baseline', 'packs', 'baselines', ['last_baseline_id'], ['id'], ondelete='SET NULL'
    )

    op.create_table(
        'pack_health',
        _id(),
        _fk('pack_id', 'packs'),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('factors', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('computed_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_pack_health_pack_id', 'pack_health', ['pack_id'])

    op.create_table(
        'change_requests',
        _id(),
        _fk('workspace_id', 'workspaces'),
        _fk('pack_id', 'packs'),
        sa.Column('status', sa.String(), nullable=False, server_default='open'),
        _created_at(),
    )
    op.create_index('ix_change_requests_workspace_id', 'change_requests', ['workspace_id'])

    op.create_table(
        'story_exports',
        _id(),
        _fk('workspace_id', 'workspaces'),
        _fk('pack_id', 'packs'),
        sa.Column('last_synced_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index('ix_story_exports_workspace_id', 'story_exports', ['workspace_id'])

    op.create_table(
        'pack_edit_events',
        _id(),
        _fk('workspace_id', 'workspaces'),
        _fk('pack_id', 'packs'),
        sa.Column('action', sa.String(), nullable=False),
        _created_at(),
    )
    op.create_index('ix_pack_edit_events_workspace_id', 'pack_edit_events', ['workspace_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('pack_edit_events')
    op.drop_table('story_exports')
    op.drop_table('change_requests')
    op.drop_table('pack_health')
    op.drop_constraint('fk_pack_last_baseline', 'packs', type_='foreignkey')
    op.drop_table('baselines')
    op.drop_table('qa_flags')
    op.drop_table('evidence_conflicts')
    op.drop_table('evidence_links')
    op.drop_table('acceptance_criteria')
    op.drop_table('stories')
    op.drop_table('pack_versions')
    op.drop_table('packs')
    op.execute('DROP INDEX IF EXISTS ix_source_chunks_embedding')
    op.drop_table('source_chunks')
    op.drop_table('sources')
    op.drop_table('projects')
    op.drop_table('workspaces')
