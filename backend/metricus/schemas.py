"""Pydantic schemas for request/response payloads."""

import datetime as dt
from datetime import date
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import PlatformEnum
from .services.metrics_ingestor import NotManagedPolicy


class IngestRequest(BaseModel):
    """Payload for a single-account Google Ads ingestion.

    Dates default to the configured lookback window ending today.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "customer_id": "123-456-7890",
                "user_id": "6d0f6b8e-1c1a-4c55-9d8f-2f6a3c2b9a10",
                "startDate": "2025-01-01",
                "endDate": "2025-01-07",
            }
        },
    )

    customer_id: str = Field(min_length=1, description="Google Ads customer id (separators allowed)")
    user_id: str = Field(min_length=1, description="Owner of the stored Google token")
    start_date: Optional[date] = Field(default=None, alias="startDate")
    end_date: Optional[date] = Field(default=None, alias="endDate")
    on_not_managed: NotManagedPolicy = Field(
        default=NotManagedPolicy.proceed,
        description="proceed without a login-customer-id header, or fail when no MCC manages the account",
    )


class IngestResponse(BaseModel):
    success: bool
    records_processed: int
    customer_id: str
    inserted: int = 0
    updated: int = 0
    retries: int = 0


class ResolveMccRequest(BaseModel):
    targetCustomerId: str = Field(min_length=1)


class PingSearchRequest(BaseModel):
    customerId: str = Field(min_length=1)
    loginCustomerId: Optional[str] = None


class MetricIn(BaseModel):
    """One metrics row posted to the internal intake.

    Derived ratios are optional; missing ones are computed on upsert.
    """

    date: dt.date
    platform: PlatformEnum
    client_id: str = Field(min_length=1)
    customer_id: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    spend: float = 0
    leads: float = 0
    conversions: float = 0
    revenue: float = 0
    cpa: Optional[float] = None
    roas: Optional[float] = None
    ctr: Optional[float] = None
    conv_rate: Optional[float] = None
    row_key: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def _strict_iso_date(cls, value):
        # Only plain YYYY-MM-DD strings are accepted
        if isinstance(value, str) and (len(value) != 10 or value[4] != "-" or value[7] != "-"):
            raise ValueError("date must be YYYY-MM-DD")
        return value


class MetricsIntakeResponse(BaseModel):
    success: bool
    inserted: int
    updated: int
    errors: Optional[List[Dict[str, Any]]] = None
