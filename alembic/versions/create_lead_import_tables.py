"""Create Google connection, OAuth state, contact, and import batch tables

Revision ID: create_lead_import_tables
Revises:
Create Date: 2026-01-26 20:23:36.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'create_lead_import_tables'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create lead import tables."""
    op.create_table('spreadsheet_connections',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('external_account_email', sa.String(length=320), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=False),
        sa.Column('token_expiry', sa.DateTime(timezone=True), nullable=False),
        sa.Column('granted_scopes', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'user_id', name='uq_spreadsheet_connections_tenant_user')
    )
    op.create_index(op.f('ix_spreadsheet_connections_tenant_id'), 'spreadsheet_connections', ['tenant_id'], unique=False)

    op.create_table('oauth_states',
        sa.Column('state', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('state')
    )
    op.create_index(op.f('ix_oauth_states_expires_at'), 'oauth_states', ['expires_at'], unique=False)

    op.create_table('import_batches',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('source_type', sa.String(length=50), nullable=False),
        sa.Column('source_id', sa.String(length=255), nullable=True),
        sa.Column('source_name', sa.String(length=500), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('total_rows', sa.Integer(), nullable=False),
        sa.Column('imported_count', sa.Integer(), nullable=False),
        sa.Column('skipped_count', sa.Integer(), nullable=False),
        sa.Column('error_count', sa.Integer(), nullable=False),
        sa.Column('error_details', sa.JSON(), nullable=True),
        sa.Column('column_mapping', sa.JSON(), nullable=True),
        sa.Column('duplicate_strategy', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_import_batches_tenant_created', 'import_batches', ['tenant_id', 'created_at'], unique=False)

    op.create_table('contacts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('first_name', sa.String(length=255), nullable=False),
        sa.Column('last_name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('phone', sa.String(length=100), nullable=True),
        sa.Column('company', sa.String(length=255), nullable=True),
        sa.Column('source', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('score', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('import_batch_id', sa.Uuid(), nullable=True),
        sa.Column('import_source_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['import_batch_id'], ['import_batches.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_contacts_tenant_email', 'contacts', ['tenant_id', 'email'], unique=False)
    op.create_index('ix_contacts_import_batch', 'contacts', ['import_batch_id'], unique=False)


def downgrade() -> None:
    """Drop lead import tables."""
    op.drop_index('ix_contacts_import_batch', table_name='contacts')
    op.drop_index('ix_contacts_tenant_email', table_name='contacts')
    op.drop_table('contacts')
    op.drop_index('ix_import_batches_tenant_created', table_name='import_batches')
    op.drop_table('import_batches')
    op.drop_index(op.f('ix_oauth_states_expires_at'), table_name='oauth_states')
    op.drop_table('oauth_states')
    op.drop_index(op.f('ix_spreadsheet_connections_tenant_id'), table_name='spreadsheet_connections')
    op.drop_table('spreadsheet_connections')
