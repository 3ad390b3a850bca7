"""add_bitrix24_connector_tables

Revision ID: 4c2e9b7d1a05
Revises:
Create Date: 2026-10-19 00:01:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c2e9b7d1a05'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create bitrix24_integrations table
    op.create_table(
        'bitrix24_integrations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('workspace_id', sa.String(), nullable=True),
        sa.Column('member_id', sa.String(), nullable=False),
        sa.Column('domain', sa.String(), nullable=True),
        sa.Column('client_endpoint', sa.String(), nullable=True),
        sa.Column('application_token', sa.String(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_token_refresh_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('token_refresh_error', sa.Text(), nullable=True),
        sa.Column('token_refresh_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('connector_id', sa.String(), nullable=True),
        sa.Column('registered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('registered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('events_bound', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_setup_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_diagnosis_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settings', sa.dialects.postgresql.JSONB(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('installed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('uninstalled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('workspace_id', 'member_id', name='uq_bitrix24_integrations_workspace_member'),
    )
    op.create_index('ix_bitrix24_integrations_member_id', 'bitrix24_integrations', ['member_id'], unique=True)
    op.create_index('ix_bitrix24_integrations_workspace_id', 'bitrix24_integrations', ['workspace_id'])
    op.create_index('ix_bitrix24_integrations_domain', 'bitrix24_integrations', ['domain'])

    # Create bitrix24_channel_mappings table
    op.create_table(
        'bitrix24_channel_mappings',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('integration_id', sa.String(), nullable=False),
        sa.Column('line_id', sa.Integer(), nullable=False),
        sa.Column('line_name', sa.String(), nullable=True),
        sa.Column('instance_id', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('activation_state', sa.String(), nullable=True),
        sa.Column('last_activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['bitrix24_integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'line_id', name='uq_bitrix24_channel_mappings_line'),
    )
    op.create_index('ix_bitrix24_channel_mappings_integration_id', 'bitrix24_channel_mappings', ['integration_id'])


def downgrade() -> None:
    op.drop_index('ix_bitrix24_channel_mappings_integration_id', table_name='bitrix24_channel_mappings')
    op.drop_table('bitrix24_channel_mappings')
    op.drop_index('ix_bitrix24_integrations_domain', table_name='bitrix24_integrations')
    op.drop_index('ix_bitrix24_integrations_workspace_id', table_name='bitrix24_integrations')
    op.drop_index('ix_bitrix24_integrations_member_id', table_name='bitrix24_integrations')
    op.drop_table('bitrix24_integrations')
