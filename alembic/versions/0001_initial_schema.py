"""Initial schema: funnels, conversations, interactions and messages.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables."""

    # =========================================================================
    # Table: funnel
    # =========================================================================
    op.create_table(
        'funnel',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('version', sa.Integer(), nullable=True),
        sa.Column('experience_id', sa.String(64), nullable=True),
        sa.Column('flow', sa.JSON(), nullable=False),
        sa.Column('resources', sa.JSON(), nullable=True),
        sa.Column('is_deployed', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_funnel_experience_id', 'funnel', ['experience_id'])
    op.create_index('ix_funnel_is_deployed', 'funnel', ['is_deployed'])

    # =========================================================================
    # Table: conversation
    # =========================================================================
    op.create_table(
        'conversation',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('external_user_id', sa.String(128), nullable=False),
        sa.Column('experience_id', sa.String(64), nullable=False),
        sa.Column('funnel_id', sa.Integer(), nullable=False),
        sa.Column('current_block_id', sa.String(128), nullable=True),
        sa.Column('user_path', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('conversation_type', sa.String(20), nullable=True),
        sa.Column('invalid_response_count', sa.Integer(), nullable=True),
        sa.Column('last_invalid_response_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_valid_response_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('abandon_reason', sa.String(50), nullable=True),
        sa.Column('internal_conversation_id', sa.String(64), nullable=True),
        sa.Column('source_conversation_id', sa.String(64), nullable=True),
        sa.Column('handoff_link', sa.String(512), nullable=True),
        sa.Column('handoff_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('handoff_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_processed_message_id', sa.String(128), nullable=True),
        sa.Column('last_processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('nudges_sent', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('phase2_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['funnel_id'], ['funnel.id']),
        sa.ForeignKeyConstraint(['internal_conversation_id'], ['conversation.id']),
        sa.ForeignKeyConstraint(['source_conversation_id'], ['conversation.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_conversation_id'),
    )
    op.create_index('ix_conversation_external_user_id', 'conversation', ['external_user_id'])
    op.create_index('ix_conversation_experience_id', 'conversation', ['experience_id'])
    op.create_index('ix_conversation_funnel_id', 'conversation', ['funnel_id'])
    op.create_index('ix_conversation_status', 'conversation', ['status'])
    op.create_index('ix_conversation_conversation_type', 'conversation', ['conversation_type'])
    op.create_index(
        'ix_conversation_internal_conversation_id', 'conversation', ['internal_conversation_id']
    )
    op.create_index('ix_conversation_status_type', 'conversation', ['status', 'conversation_type'])
    op.create_index(
        'ix_conversation_user_experience', 'conversation', ['external_user_id', 'experience_id']
    )

    # =========================================================================
    # Table: funnel_interaction
    # =========================================================================
    op.create_table(
        'funnel_interaction',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('conversation_id', sa.String(64), nullable=False),
        sa.Column('block_id', sa.String(128), nullable=False),
        sa.Column('option_text', sa.Text(), nullable=False),
        sa.Column('next_block_id', sa.String(128), nullable=True),
        sa.Column('user_text', sa.Text(), nullable=True),
        sa.Column('source_message_id', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversation.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'conversation_id', 'source_message_id', name='uq_interaction_source_message'
        ),
    )
    op.create_index(
        'ix_funnel_interaction_conversation_id', 'funnel_interaction', ['conversation_id']
    )

    # =========================================================================
    # Table: message
    # =========================================================================
    op.create_table(
        'message',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('conversation_id', sa.String(64), nullable=False),
        sa.Column('message_type', sa.String(20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('provider_message_id', sa.String(128), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversation.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'conversation_id', 'provider_message_id', name='uq_message_provider_id'
        ),
    )
    op.create_index('ix_message_conversation_id', 'message', ['conversation_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('message')
    op.drop_table('funnel_interaction')
    op.drop_table('conversation')
    op.drop_table('funnel')
