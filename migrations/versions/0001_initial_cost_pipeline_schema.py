"""
initial cost pipeline schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

Creates ingestion_jobs, billing_line_items, aggregates, anomalies and
recommendations.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _audit_columns():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        'ingestion_jobs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_path', sa.String(1024), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('rows_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', _json(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_ingestion_jobs'),
    )
    op.create_index('ix_ingestion_jobs_user_id', 'ingestion_jobs', ['user_id'])
    op.create_index('ix_ingestion_jobs_status', 'ingestion_jobs', ['status'])

    op.create_table(
        'billing_line_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('invoice_id', sa.String(), nullable=True),
        sa.Column('payer_account_id', sa.String(), nullable=True),
        sa.Column('linked_account_id', sa.String(), nullable=True),
        sa.Column('record_type', sa.String(), nullable=True),
        sa.Column('product_name', sa.String(), nullable=True),
        sa.Column('product_code', sa.String(), nullable=True),
        sa.Column('usage_type', sa.String(), nullable=True),
        sa.Column('operation', sa.String(), nullable=True),
        sa.Column('availability_zone', sa.String(), nullable=True),
        sa.Column('reserved_instance', sa.String(), nullable=True),
        sa.Column('item_description', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('usage_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('usage_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('usage_quantity', sa.Numeric(18, 8), nullable=True),
        sa.Column('blended_rate', sa.Numeric(18, 8), nullable=True),
        sa.Column('blended_cost', sa.Numeric(18, 8), nullable=True),
        sa.Column('unblended_rate', sa.Numeric(18, 8), nullable=True),
        sa.Column('unblended_cost', sa.Numeric(18, 8), nullable=True),
        sa.Column('currency', sa.String(8), nullable=True),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=False),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('cost', sa.Numeric(18, 8), nullable=False),
        sa.Column('usage_quantity_normalized', sa.Numeric(18, 8), nullable=True),
        sa.Column('tags', _json(), nullable=True),
        sa.Column('ingestion_job_id', sa.Uuid(), nullable=True),
        sa.Column('ingestion_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('fingerprint', sa.String(64), nullable=False),
        sa.Column('is_anomaly', sa.Boolean(), nullable=True),
        sa.Column('anomaly_score', sa.Float(), nullable=True),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_billing_line_items'),
        sa.ForeignKeyConstraint(
            ['ingestion_job_id'], ['ingestion_jobs.id'],
            name='fk_billing_line_items_ingestion_job_id_ingestion_jobs',
            ondelete='SET NULL',
        ),
        sa.UniqueConstraint('user_id', 'fingerprint', name='uix_line_item_fingerprint'),
    )
    op.create_index('ix_billing_line_items_user_id', 'billing_line_items', ['user_id'])
    op.create_index('ix_billing_line_items_account_id', 'billing_line_items', ['account_id'])
    op.create_index('ix_billing_line_items_service', 'billing_line_items', ['service'])
    op.create_index('ix_billing_line_items_usage_start_date', 'billing_line_items', ['usage_start_date'])
    op.create_index('ix_billing_line_items_ingestion_job_id', 'billing_line_items', ['ingestion_job_id'])
    op.create_index('ix_line_items_user_usage_start', 'billing_line_items', ['user_id', 'usage_start_date'])

    op.create_table(
        'aggregates',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=False),
        sa.Column('region', sa.String(), nullable=False),
        sa.Column('aggregation_type', sa.String(10), nullable=False),
        sa.Column('total_cost', sa.Numeric(18, 8), nullable=True),
        sa.Column('total_usage_quantity', sa.Numeric(18, 8), nullable=True),
        sa.Column('line_item_count', sa.Integer(), nullable=True),
        sa.Column('previous_period_cost', sa.Numeric(18, 8), nullable=True),
        sa.Column('cost_variance', sa.Numeric(18, 8), nullable=True),
        sa.Column('cost_variance_percent', sa.Float(), nullable=True),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_aggregates'),
        sa.UniqueConstraint(
            'user_id', 'date', 'account_id', 'service', 'region', 'aggregation_type',
            name='uix_aggregate_dimensions',
        ),
    )
    op.create_index('ix_aggregates_user_id', 'aggregates', ['user_id'])
    op.create_index('ix_aggregates_date', 'aggregates', ['date'])

    op.create_table(
        'anomalies',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('service', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cost', sa.Numeric(18, 8), nullable=False),
        sa.Column('expected_cost', sa.Numeric(18, 8), nullable=False),
        sa.Column('variance', sa.Numeric(18, 8), nullable=False),
        sa.Column('variance_percent', sa.Float(), nullable=True),
        sa.Column('z_score', sa.Float(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('acknowledged', sa.Boolean(), nullable=True),
        sa.Column('acknowledged_by', sa.String(255), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_anomalies'),
    )
    op.create_index('ix_anomalies_user_id', 'anomalies', ['user_id'])
    op.create_index('ix_anomalies_date', 'anomalies', ['date'])

    op.create_table(
        'recommendations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.String(40), nullable=False),
        sa.Column('priority', sa.String(10), nullable=False),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('service', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('current_cost', sa.Numeric(18, 8), nullable=True),
        sa.Column('estimated_savings', sa.Numeric(18, 8), nullable=True),
        sa.Column('estimated_savings_percent', sa.Float(), nullable=True),
        sa.Column('implementation_effort', sa.String(10), nullable=True),
        sa.Column('action_items', _json(), nullable=True),
        sa.Column('metadata', _json(), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('implemented_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('implemented_by', sa.String(255), nullable=True),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_recommendations'),
    )
    op.create_index('ix_recommendations_user_id', 'recommendations', ['user_id'])
    op.create_index('ix_recommendations_type', 'recommendations', ['type'])
    op.create_index('ix_recommendations_status', 'recommendations', ['status'])


def downgrade() -> None:
    op.drop_table('recommendations')
    op.drop_table('anomalies')
    op.drop_table('aggregates')
    op.drop_table('billing_line_items')
    op.drop_table('ingestion_jobs')
