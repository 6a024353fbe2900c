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


def _sync_columns() -> list[sa.Column]:
    return [
        sa.Column('external_id', sa.String(64), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('provenance', sa.String(20), nullable=True),  # 'app' | 'external'
    ]


def _approval_columns() -> list[sa.Column]:
    return [
        sa.Column('approval_status', sa.String(20), nullable=False, server_default='Pending'),
        sa.Column('approved_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
    ]


def _external_id_index(table: str) -> None:
    op.create_index(
        f'uq_{table}_external_id', table, ['external_id'],
        unique=True, postgresql_where=sa.text('external_id IS NOT NULL'),
    )


def upgrade() -> None:
    # Users table (admins and field salesmen)
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('role', sa.String(50), nullable=False, server_default='salesman'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_email_lower', 'users', [sa.text('lower(email)')])

    # Customers table (mirrors HubSpot contacts)
    op.create_table(
        'customers',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('company', sa.String(255), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('state', sa.String(100), nullable=True),
        sa.Column('pincode', sa.String(20), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='Not Visited'),
        sa.Column('assigned_salesman_id', postgresql.UUID(as_uuid=True), nullable=True),
        *_sync_columns(),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['assigned_salesman_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
    )
    _external_id_index('customers')
    op.create_index(
        'uq_customers_email', 'customers', ['email'],
        unique=True, postgresql_where=sa.text('email IS NOT NULL'),
    )
    op.create_index('idx_customers_status', 'customers', ['status'])

    # Visit targets table
    op.create_table(
        'visit_targets',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('salesman_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='Pending'),
        sa.Column('priority', sa.String(20), nullable=False, server_default='Medium'),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('visit_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_approval_columns(),
        *_sync_columns(),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['salesman_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['approved_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['rejected_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
    )
    _external_id_index('visit_targets')
    op.create_index('idx_visit_targets_salesman_status', 'visit_targets', ['salesman_id', 'status'])
    op.create_index('idx_visit_targets_approval_status', 'visit_targets', ['approval_status', 'status'])

    # Tasks table (mirrors HubSpot tasks)
    op.create_table(
        'tasks',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('type', sa.String(30), nullable=False, server_default='Call'),
        sa.Column('priority', sa.String(20), nullable=False, server_default='Medium'),
        sa.Column('status', sa.String(20), nullable=False, server_default='Upcoming'),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        sa.Column('visit_target_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('external_owner_id', sa.String(64), nullable=True),
        sa.Column('external_owner_name', sa.String(255), nullable=True),
        sa.Column('external_owner_email', sa.String(255), nullable=True),
        sa.Column('external_contact_id', sa.String(64), nullable=True),
        sa.Column('external_contact_name', sa.String(255), nullable=True),
        sa.Column('external_contact_email', sa.String(255), nullable=True),
        sa.Column('external_company_id', sa.String(64), nullable=True),
        sa.Column('external_company_name', sa.String(255), nullable=True),
        sa.Column('external_company_domain', sa.String(255), nullable=True),
        sa.Column('external_status', sa.String(50), nullable=True),
        *_approval_columns(),
        *_sync_columns(),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.ForeignKeyConstraint(['visit_target_id'], ['visit_targets.id'], ),
        sa.ForeignKeyConstraint(['approved_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['rejected_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
    )
    _external_id_index('tasks')
    op.create_index('idx_tasks_owner', 'tasks', ['owner_id'])
    op.create_index('idx_tasks_approval_status', 'tasks', ['approval_status'])
    op.create_index('idx_tasks_visit_target_type', 'tasks', ['visit_target_id', 'type'])
    # At most one companion Visit task per visit target
    op.create_index(
        'uq_tasks_visit_target_visit', 'tasks', ['visit_target_id'],
        unique=True, postgresql_where=sa.text("type = 'Visit' AND visit_target_id IS NOT NULL"),
    )

    # Sales submissions table (pushed to HubSpot as orders)
    op.create_table(
        'sales_submissions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('salesman_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        sa.Column('sales_amount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('sales_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        *_approval_columns(),
        *_sync_columns(),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['salesman_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.ForeignKeyConstraint(['approved_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['rejected_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
    )
    _external_id_index('sales_submissions')
    op.create_index('idx_sales_submissions_salesman', 'sales_submissions', ['salesman_id'])
    op.create_index('idx_sales_submissions_approval_status', 'sales_submissions', ['approval_status'])

    # Sales targets table (revenue progress)
    op.create_table(
        'sales_targets',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('salesman_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('target_name', sa.String(255), nullable=False),
        sa.Column('target_type', sa.String(20), nullable=False, server_default='Revenue'),
        sa.Column('target_value', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('period', sa.String(20), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_progress', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='Active'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['salesman_id'], ['users.id'], ),
    )
    op.create_index('idx_sales_targets_salesman_window', 'sales_targets', ['salesman_id', 'start_date', 'end_date'])


def downgrade() -> None:
    op.drop_table('sales_targets')
    op.drop_table('sales_submissions')
    op.drop_table('tasks')
    op.drop_table('visit_targets')
    op.drop_table('customers')
    op.drop_index('ix_users_email_lower', table_name='users')
    op.drop_table('users')
