"""initial schema

Revision ID: 2025_11_03_0000
Revises:
Create Date: 2025-11-03 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2025_11_03_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create accounts, credits, valuation requests, images and history."""

    # ========================================================================
    # Create pricing_tiers table
    # ========================================================================
    op.create_table(
        'pricing_tiers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('price_monthly_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_yearly_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('appraisals_per_month', sa.Integer(), nullable=False),
        sa.Column('features', ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),

        sa.CheckConstraint('appraisals_per_month >= -1', name='ck_tier_allowance_valid'),
    )

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('plan_name', sa.String(100), nullable=False, server_default='free'),
        sa.Column('usage_allowance', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('usage_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("NOW() + INTERVAL '1 month'")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # -1 = unlimited
        sa.CheckConstraint('usage_allowance >= -1', name='ck_usage_allowance_valid'),
        sa.CheckConstraint('usage_used >= 0', name='ck_usage_used_non_negative'),
    )
    op.create_index('idx_accounts_email', 'accounts', ['email'], postgresql_where=sa.text('email IS NOT NULL'))

    # ========================================================================
    # Create credit_grants table
    # ========================================================================
    op.create_table(
        'credit_grants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('credits_purchased', sa.Integer(), nullable=False),
        sa.Column('credits_remaining', sa.Integer(), nullable=False),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('credits_purchased > 0', name='ck_credits_purchased_positive'),
        sa.CheckConstraint('credits_remaining >= 0', name='ck_credits_remaining_non_negative'),
        sa.CheckConstraint('credits_remaining <= credits_purchased', name='ck_credits_remaining_bounded'),
        sa.UniqueConstraint('external_reference', name='uq_credit_grant_reference'),
    )
    # Oldest spendable grant first
    op.create_index(
        'idx_credit_grants_spendable', 'credit_grants', ['account_id', 'created_at'],
        postgresql_where=sa.text('credits_remaining > 0'),
    )

    # ========================================================================
    # Create valuation_requests table
    # ========================================================================
    op.create_table(
        'valuation_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id', ondelete='SET NULL'), nullable=True),
        sa.Column('category', sa.String(100), nullable=False),
        sa.Column('item_description', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('entitlement_source', sa.String(64), nullable=True),
        sa.Column('failure_kind', sa.String(32), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),

        # Structured result
        sa.Column('ai_analysis', JSONB(), nullable=True),
        sa.Column('item_identification', sa.Text(), nullable=True),
        sa.Column('estimated_value_low', sa.Numeric(14, 2), nullable=True),
        sa.Column('estimated_value_high', sa.Numeric(14, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('confidence_score', sa.Numeric(5, 2), nullable=True),
        sa.Column('condition_rating', sa.String(20), nullable=True),
        sa.Column('condition_assessment', sa.Text(), nullable=True),
        sa.Column('valuation_methodology', sa.Text(), nullable=True),
        sa.Column('market_type', sa.String(20), nullable=True),
        sa.Column('market_context', sa.Text(), nullable=True),
        sa.Column('recommendations', ARRAY(sa.Text()), nullable=True),
        sa.Column('requires_expert_review', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('limitations', sa.Text(), nullable=True),
        sa.Column('sources', ARRAY(sa.Text()), nullable=True),

        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint(
            "status IN ('pending', 'analyzing', 'completed', 'failed', 'expert_review')",
            name='ck_valuation_status',
        ),
        sa.CheckConstraint(
            'estimated_value_low IS NULL OR estimated_value_high IS NULL '
            'OR estimated_value_low <= estimated_value_high',
            name='ck_value_range_ordered',
        ),
        sa.CheckConstraint(
            'confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 100)',
            name='ck_confidence_range',
        ),
    )
    op.create_index('idx_valuation_requests_account', 'valuation_requests', ['account_id', 'created_at'])
    # Sweeper scan
    op.create_index(
        'idx_valuation_requests_analyzing', 'valuation_requests', ['updated_at'],
        postgresql_where=sa.text("status = 'analyzing'"),
    )

    # ========================================================================
    # Create valuation_images table
    # ========================================================================
    op.create_table(
        'valuation_images',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('request_id', UUID(as_uuid=True),
                  sa.ForeignKey('valuation_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('storage_path', sa.String(512), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('display_order >= 0', name='ck_display_order_non_negative'),
        sa.CheckConstraint('file_size > 0', name='ck_file_size_positive'),
        sa.CheckConstraint('is_primary = (display_order = 0)', name='ck_primary_is_first_image'),
        sa.UniqueConstraint('request_id', 'display_order', name='uq_image_display_order'),
    )

    # ========================================================================
    # Create valuation_history table
    # ========================================================================
    op.create_table(
        'valuation_history',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('request_id', UUID(as_uuid=True),
                  sa.ForeignKey('valuation_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('analysis_type', sa.String(20), nullable=False),
        sa.Column('analysis_data', JSONB(), nullable=False),
        sa.Column('performed_by', sa.String(255), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "analysis_type IN ('ai_initial', 'ai_revision', 'expert_review')",
            name='ck_history_analysis_type',
        ),
    )
    op.create_index('ix_valuation_history_request_id', 'valuation_history', ['request_id'])

    # ========================================================================
    # Seed the default plan
    # ========================================================================
    op.execute(
        """
        INSERT INTO pricing_tiers
            (name, display_name, description, appraisals_per_month, features, sort_order)
        VALUES
            ('free', 'Free', 'Try a photo valuation at no cost', 1,
             ARRAY['1 AI appraisal per month', 'Basic valuation report'], 0)
        """
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('valuation_history')
    op.drop_table('valuation_images')
    op.drop_table('valuation_requests')
    op.drop_table('credit_grants')
    op.drop_table('accounts')
    op.drop_table('pricing_tiers')
