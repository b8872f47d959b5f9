"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Provider credentials (OAuth token sets and API keys), one per account + provider
    op.create_table(
        'provider_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('scope', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('api_domain', sa.String(512), nullable=True),
        sa.Column('provider_metadata', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'provider', name='uq_provider_credentials_account_provider'),
    )
    op.create_index('ix_provider_credentials_account_id', 'provider_credentials', ['account_id'])

    # Canonical deals; id is deterministic per provider + external id
    op.create_table(
        'deals',
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=True),
        sa.Column('company_name', sa.String(255), nullable=True),
        sa.Column('value_amount', sa.Numeric(15, 2), nullable=True),
        sa.Column('value_currency', sa.String(10), nullable=False, server_default='USD'),
        sa.Column('stage', sa.String(50), nullable=False, server_default='interested'),
        sa.Column('close_date', sa.Date(), nullable=True),
        sa.Column('probability', sa.Integer(), nullable=True),
        sa.Column('pain_points', postgresql.ARRAY(sa.Text()), nullable=False, server_default='{}'),
        sa.Column('next_steps', postgresql.ARRAY(sa.Text()), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('account_id', 'id'),
        sa.UniqueConstraint('account_id', 'provider', 'external_id', name='uq_deals_account_provider_external'),
    )

    # Contacts attached to deals
    op.create_table(
        'deal_contacts',
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('deal_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('role', sa.String(255), nullable=True),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_decision_maker', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('account_id', 'id'),
    )
    op.create_index('ix_deal_contacts_deal_id', 'deal_contacts', ['deal_id'])

    # Sync state per account + provider
    op.create_table(
        'sync_watermarks',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('cursor', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='idle'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('window_started_at', sa.DateTime(), nullable=True),
        sa.Column('last_completed_at', sa.DateTime(), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('records_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(50), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'provider', name='uq_sync_watermarks_account_provider'),
        sa.CheckConstraint(
            "status IN ('idle', 'in_progress', 'completed', 'failed')",
            name='ck_sync_watermarks_status',
        ),
    )

    # Gmail messages
    op.create_table(
        'emails',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('gmail_id', sa.String(255), nullable=False),
        sa.Column('thread_id', sa.String(255), nullable=False),
        sa.Column('from_email', sa.String(255), nullable=True),
        sa.Column('from_name', sa.String(255), nullable=True),
        sa.Column('to_emails', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('cc_emails', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('snippet', sa.Text(), nullable=True),
        sa.Column('body_text', sa.Text(), nullable=True),
        sa.Column('labels', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'gmail_id', name='uq_emails_account_gmail_id'),
    )
    op.create_index('ix_emails_account_id', 'emails', ['account_id'])
    op.create_index('ix_emails_thread_id', 'emails', ['thread_id'])


def downgrade() -> None:
    op.drop_index('ix_emails_thread_id', table_name='emails')
    op.drop_index('ix_emails_account_id', table_name='emails')
    op.drop_table('emails')
    op.drop_table('sync_watermarks')
    op.drop_index('ix_deal_contacts_deal_id', table_name='deal_contacts')
    op.drop_table('deal_contacts')
    op.drop_table('deals')
    op.drop_index('ix_provider_credentials_account_id', table_name='provider_credentials')
    op.drop_table('provider_credentials')
