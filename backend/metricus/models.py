"""SQLAlchemy ORM models and enums.

This module defines the persisted side of the Google Ads integration:
OAuth token bundles, the MCC resolution cache, the accounts directory,
the ingestion audit trail, and the metrics rows the dashboard reads.

Status/type columns are backed by `str` enums so call sites handle every
variant explicitly instead of comparing free-form strings.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Date, Enum, Integer, Numeric, Text, Uuid, UniqueConstraint, PrimaryKeyConstraint
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store UTC without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums ---------------------------------------------------------

class IngestionStatusEnum(str, enum.Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class AccountTypeEnum(str, enum.Enum):
    """Google Ads account kind as stored in the accounts directory.

    - manager: MCC with delegated access to other accounts
    - client: regular advertiser account
    """
    manager = "manager"
    client = "client"


class PlatformEnum(str, enum.Enum):
    google_ads = "google_ads"
    meta_ads = "meta_ads"


# Core models ----------------------------------------------------

class GoogleToken(Base):
    """OAuth credential bundle for one (user, company) pair.

    WHAT:
        Stores the Google access/refresh tokens (encrypted at rest) plus the
        advertiser account the user connected and an optional saved manager id.
    WHY:
        Every Google Ads call starts from a valid access token; the refresh
        token lets us mint a new one without user interaction.
    REFERENCES:
        - metricus/security.py (encrypt_secret / decrypt_secret)
        - metricus/services/token_service.py
    """
    __tablename__ = "google_tokens"
    __table_args__ = (UniqueConstraint("user_id", "company_id", name="uq_google_tokens_user_company"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    company_id = Column(String, nullable=True)

    # Advertiser account this token was connected for (digits only)
    customer_id = Column(String, nullable=True)
    # Manager account saved by the user (digits only), first MCC candidate
    login_customer_id = Column(String, nullable=True)

    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=False)
    token_expiry = Column(DateTime, nullable=False)
    scope = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"google token for {self.user_id} (expires: {self.token_expiry:%Y-%m-%d %H:%M})"


class AccountBinding(Base):
    """Time-boxed cache of MCC resolution results.

    `resolved_login_customer_id == ""` is the negative sentinel: no manager
    account available to the user manages `customer_id`. Rows are only trusted
    while `last_verified_at` is inside the resolver TTL.
    """
    __tablename__ = "account_bindings"
    __table_args__ = (PrimaryKeyConstraint("user_id", "customer_id", name="pk_account_bindings"),)

    user_id = Column(String, nullable=False)
    customer_id = Column(String, nullable=False)
    resolved_login_customer_id = Column(String, nullable=False, default="")
    last_verified_at = Column(DateTime, nullable=False, default=utcnow)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AccountMap(Base):
    """Accounts directory: Google Ads accounts visible to a user.

    Populated by the accounts sync. Rows typed `manager` are MCC candidates
    for the resolver.
    """
    __tablename__ = "accounts_map"
    __table_args__ = (UniqueConstraint("user_id", "customer_id", name="uq_accounts_map_user_customer"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    company_id = Column(String, nullable=True)
    client_id = Column(String, nullable=True)  # Agency client this account belongs to
    customer_id = Column(String, nullable=False)
    account_name = Column(String, nullable=True)
    account_type = Column(Enum(AccountTypeEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False, default=AccountTypeEnum.client)
    currency_code = Column(String, nullable=True)
    time_zone = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"{self.account_name or self.customer_id} ({self.account_type.value})"


class GoogleAdsIngestion(Base):
    """Audit trail for one ingestion run.

    Created as `running`, mutated exactly once to `completed` or `failed`.
    Never consulted for control decisions.
    """
    __tablename__ = "google_ads_ingestions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False)
    customer_id = Column(String, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(Enum(IngestionStatusEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False, default=IngestionStatusEnum.running)
    records_processed = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class Metric(Base):
    """Daily campaign metrics row read by the dashboard.

    Base measures come from the ad platform; cpa/roas/ctr/conv_rate are
    derived at ingestion time. Upserts are keyed by
    (customer_id, date, campaign_id, platform).
    """
    __tablename__ = "metrics"
    __table_args__ = (
        UniqueConstraint("customer_id", "date", "campaign_id", "platform", name="uq_metrics_natural_key"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    date = Column(Date, nullable=False, index=True)
    platform = Column(Enum(PlatformEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    client_id = Column(String, nullable=True)
    customer_id = Column(String, nullable=True)
    campaign_id = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)

    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    spend = Column(Numeric(18, 6), default=0)
    leads = Column(Numeric(18, 4), default=0)
    conversions = Column(Numeric(18, 4), default=0)
    revenue = Column(Numeric(18, 6), default=0)

    cpa = Column(Numeric(18, 6), nullable=True)
    roas = Column(Numeric(18, 6), nullable=True)
    ctr = Column(Numeric(18, 6), nullable=True)
    conv_rate = Column(Numeric(18, 6), nullable=True)

    row_key = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
