"""Scan engine schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    ingestionstate = postgresql.ENUM('Pending', 'Scanned', 'Blocked', 'NotFound', 'Error', name='ingestionstate')
    ingestionstate.create(op.get_bind())

    tagruletype = postgresql.ENUM('Replace', 'Append', name='tagruletype')
    tagruletype.create(op.get_bind())

    moderationruleaction = postgresql.ENUM('Approve', 'Hold', 'Block', name='moderationruleaction')
    moderationruleaction.create(op.get_bind())

    op.create_table('user_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('media_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('media_type', sa.String(length=20), nullable=False, server_default='image'),
        sa.Column('ingestion', postgresql.ENUM('Pending', 'Scanned', 'Blocked', 'NotFound', 'Error', name='ingestionstate', create_type=False), nullable=False, server_default='Pending'),
        sa.Column('nsfw_level', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('nsfw_level_locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ai_nsfw_level', sa.Integer(), nullable=True),
        sa.Column('ai_model', sa.String(length=100), nullable=True),
        sa.Column('needs_review', sa.String(length=20), nullable=True),
        sa.Column('blocked_for', sa.Text(), nullable=True),
        sa.Column('poi', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('minor', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('phash', sa.String(length=32), nullable=True),
        sa.Column('meta', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('metadata', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('scan_jobs', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('tools', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('scanned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user_accounts.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_media_items_user_id', 'media_items', ['user_id'], unique=False)
    op.create_index('idx_media_items_ingestion', 'media_items', ['ingestion'], unique=False)
    op.create_index('idx_media_items_needs_review', 'media_items', ['needs_review'], unique=False)

    op.create_table('tags',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('nsfw_level', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('type', sa.String(length=20), nullable=False, server_default='Label'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    op.create_table('tags_on_media',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('media_id', sa.Integer(), nullable=False),
        sa.Column('tag_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('confidence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('automated', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('disabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['media_id'], ['media_items.id'], ),
        sa.ForeignKeyConstraint(['tag_id'], ['tags.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('media_id', 'tag_id', 'source', name='uq_tags_on_media_media_tag_source')
    )
    op.create_index('idx_tags_on_media_media_id', 'tags_on_media', ['media_id'], unique=False)

    op.create_table('media_scan_completions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('media_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('reported_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['media_id'], ['media_items.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('media_id', 'source', name='uq_scan_completion_media_source')
    )

    op.create_table('media_resources',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('media_id', sa.Integer(), nullable=False),
        sa.Column('resource_id', sa.Integer(), nullable=False),
        sa.Column('poi', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('minor', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('restricted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(['media_id'], ['media_items.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('media_id', 'resource_id', name='uq_media_resource')
    )
    op.create_index('idx_media_resources_media_id', 'media_resources', ['media_id'], unique=False)

    op.create_table('tag_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', postgresql.ENUM('Replace', 'Append', name='tagruletype', create_type=False), nullable=False),
        sa.Column('trigger_tag', sa.String(length=255), nullable=False),
        sa.Column('target_tag', sa.String(length=255), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('moderation_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('action', postgresql.ENUM('Approve', 'Hold', 'Block', name='moderationruleaction', create_type=False), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('definition', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_moderation_rules_position', 'moderation_rules', ['position'], unique=False)

    op.create_table('blocked_media_hashes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('hash', sa.String(length=32), nullable=False),
        sa.Column('disabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('disposition_audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('media_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=True),
        sa.Column('previous_state', sa.String(length=20), nullable=True),
        sa.Column('new_state', sa.String(length=20), nullable=False),
        sa.Column('blocked_for', sa.Text(), nullable=True),
        sa.Column('needs_review', sa.String(length=20), nullable=True),
        sa.Column('nsfw_level', sa.Integer(), nullable=True),
        sa.Column('action_data', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('correlation_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_disposition_audit_logs_media_id', 'disposition_audit_logs', ['media_id'], unique=False)
    op.create_index('idx_disposition_audit_logs_created_at', 'disposition_audit_logs', ['created_at'], unique=False)


def downgrade():
    op.drop_index('idx_disposition_audit_logs_created_at', table_name='disposition_audit_logs')
    op.drop_index('idx_disposition_audit_logs_media_id', table_name='disposition_audit_logs')
    op.drop_index('idx_moderation_rules_position', table_name='moderation_rules')
    op.drop_index('idx_media_resources_media_id', table_name='media_resources')
    op.drop_index('idx_tags_on_media_media_id', table_name='tags_on_media')
    op.drop_index('idx_media_items_needs_review', table_name='media_items')
    op.drop_index('idx_media_items_ingestion', table_name='media_items')
    op.drop_index('idx_media_items_user_id', table_name='media_items')

    op.drop_table('disposition_audit_logs')
    op.drop_table('blocked_media_hashes')
    op.drop_table('moderation_rules')
    op.drop_table('tag_rules')
    op.drop_table('media_resources')
    op.drop_table('media_scan_completions')
    op.drop_table('tags_on_media')
    op.drop_table('tags')
    op.drop_table('media_items')
    op.drop_table('user_accounts')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS moderationruleaction')
    op.execute('DROP TYPE IF EXISTS tagruletype')
    op.execute('DROP TYPE IF EXISTS ingestionstate')
