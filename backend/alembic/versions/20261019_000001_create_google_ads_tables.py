"""Create Google Ads token, binding, directory, ingestion and metrics tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19

WHAT:
    Creates the tables behind the Google Ads integration:
    - google_tokens: encrypted OAuth bundles per (user, company)
    - account_bindings: 24h MCC resolution cache ("" = not managed)
    - accounts_map: accessible accounts typed manager/client
    - google_ads_ingestions: audit trail of ingestion runs
    - metrics: daily campaign metrics keyed by (customer_id, date, campaign_id, platform)

WHY:
    Token refresh, MCC resolution and metrics ingestion all persist here.

REFERENCES:
    - metricus/models.py
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


account_type_enum = sa.Enum('manager', 'client', name='accounttypeenum')
ingestion_status_enum = sa.Enum('running', 'completed', 'failed', name='ingestionstatusenum')
platform_enum = sa.Enum('google_ads', 'meta_ads', name='platformenum')


def upgrade() -> None:
    op.create_table(
        'google_tokens',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('company_id', sa.String(), nullable=True),
        sa.Column('customer_id', sa.String(), nullable=True),
        sa.Column('login_customer_id', sa.String(), nullable=True),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('refresh_token_enc', sa.Text(), nullable=False),
        sa.Column('token_expiry', sa.DateTime(), nullable=False),
        sa.Column('scope', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'company_id', name='uq_google_tokens_user_company'),
    )
    op.create_index('ix_google_tokens_user_id', 'google_tokens', ['user_id'])

    op.create_table(
        'account_bindings',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('resolved_login_customer_id', sa.String(), nullable=False, server_default=''),
        sa.Column('last_verified_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('user_id', 'customer_id', name='pk_account_bindings'),
    )

    op.create_table(
        'accounts_map',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('company_id', sa.String(), nullable=True),
        sa.Column('client_id', sa.String(), nullable=True),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('account_name', sa.String(), nullable=True),
        sa.Column('account_type', account_type_enum, nullable=False),
        sa.Column('currency_code', sa.String(), nullable=True),
        sa.Column('time_zone', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'customer_id', name='uq_accounts_map_user_customer'),
    )
    op.create_index('ix_accounts_map_user_id', 'accounts_map', ['user_id'])

    op.create_table(
        'google_ads_ingestions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('status', ingestion_status_enum, nullable=False),
        sa.Column('records_processed', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'metrics',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('client_id', sa.String(), nullable=True),
        sa.Column('customer_id', sa.String(), nullable=True),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('impressions', sa.Integer(), nullable=True),
        sa.Column('clicks', sa.Integer(), nullable=True),
        sa.Column('spend', sa.Numeric(18, 6), nullable=True),
        sa.Column('leads', sa.Numeric(18, 4), nullable=True),
        sa.Column('conversions', sa.Numeric(18, 4), nullable=True),
        sa.Column('revenue', sa.Numeric(18, 6), nullable=True),
        sa.Column('cpa', sa.Numeric(18, 6), nullable=True),
        sa.Column('roas', sa.Numeric(18, 6), nullable=True),
        sa.Column('ctr', sa.Numeric(18, 6), nullable=True),
        sa.Column('conv_rate', sa.Numeric(18, 6), nullable=True),
        sa.Column('row_key', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('customer_id', 'date', 'campaign_id', 'platform', name='uq_metrics_natural_key'),
    )
    op.create_index('ix_metrics_date', 'metrics', ['date'])


def downgrade() -> None:
    op.drop_index('ix_metrics_date', table_name='metrics')
    op.drop_table('metrics')
    op.drop_table('google_ads_ingestions')
    op.drop_index('ix_accounts_map_user_id', table_name='accounts_map')
    op.drop_table('accounts_map')
    op.drop_table('account_bindings')
    op.drop_index('ix_google_tokens_user_id', table_name='google_tokens')
    op.drop_table('google_tokens')

    bind = op.get_bind()
    platform_enum.drop(bind, checkfirst=True)
    ingestion_status_enum.drop(bind, checkfirst=True)
    account_type_enum.drop(bind, checkfirst=True)
