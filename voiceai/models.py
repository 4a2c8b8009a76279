"""
Shared data models used across the application.

Call-side models serialise with the camelCase keys of the persisted call
documents; the dashboard/billing API models keep snake_case keys.
"""

from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Enums ───────────────────────────────────────────────────────
class Direction(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Sentiment(str, enum.Enum):
    POSITIVE = "Positive"
    NEUTRAL = "Neutral"
    NEGATIVE = "Negative"
    UNKNOWN = "Unknown"


class CallOutcome(str, enum.Enum):
    SUCCESSFUL = "successful"
    UNSUCCESSFUL = "unsuccessful"  # ended, not marked successful
    ERRORED = "errored"            # failed / error status
    OTHER = "other"                # in progress or unrecognised status


# ── Call records ────────────────────────────────────────────────
class CallAnalysis(_CamelModel):
    user_sentiment: Optional[str] = None
    call_successful: Optional[bool] = None
    call_summary: Optional[str] = None
    in_voicemail: Optional[bool] = None


class CallRecord(_CamelModel):
    id: str
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    dynamic_variables: Optional[dict[str, Any]] = None
    start_time: str
    end_time: str
    duration_seconds: int = Field(default=0, ge=0)
    direction: Direction = Direction.INBOUND
    status: str = "ended"
    recording_url: Optional[str] = None
    transcript_text: Optional[str] = None
    call_analysis: Optional[CallAnalysis] = None
    cost_usd: float = Field(default=0.0, ge=0)
    created_at: str


class Agent(_CamelModel):
    agent_id: str
    agent_name: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


class CallsPage(BaseModel):
    calls: list[CallRecord]
    next_cursor: Optional[str] = None
    has_more: bool = False


# ── Aggregations ────────────────────────────────────────────────
class CallStats(_CamelModel):
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    errored_calls: int = 0
    other_calls: int = 0
    success_rate: float = 0.0  # percent
    total_duration: int = 0
    avg_duration: float = 0.0
    total_cost: float = 0.0
    sentiment_positive: int = 0
    sentiment_neutral: int = 0
    sentiment_negative: int = 0
    sentiment_unknown: int = 0


class AgentStats(CallStats):
    agent_id: str
    agent_name: str


class TrendPoint(_CamelModel):
    date: str
    positive: int = 0
    neutral: int = 0
    negative: int = 0
    unknown: int = 0


class VolumePoint(BaseModel):
    date: str
    calls: int = 0


class AnalyticsVolume(BaseModel):
    data: list[VolumePoint]
    granularity: str  # daily | weekly


class SentimentShare(BaseModel):
    count: int = 0
    percentage: float = 0.0


class AnalyticsSentiment(BaseModel):
    positive: SentimentShare
    neutral: SentimentShare
    negative: SentimentShare
    unknown: SentimentShare


class AnalyticsOutcomes(BaseModel):
    successful: int = 0
    failed: int = 0
    errored: int = 0
    other: int = 0
    voicemail: int = 0


class MetricTrend(BaseModel):
    change_percent: float = 0.0
    positive: bool = True


class AnalyticsMetrics(BaseModel):
    total_calls: int = 0
    avg_call_duration_seconds: float = 0.0
    success_rate: float = 0.0  # fraction
    avg_cost_usd: float = 0.0
    trends: dict[str, MetricTrend] = Field(default_factory=dict)


class MonthCost(BaseModel):
    dashboard_fee: float = 0.0
    retell_cost: float = 0.0
    openrouter_cost: float = 0.0
    total: float = 0.0


class DashboardOverview(BaseModel):
    total_calls_this_month: int = 0
    total_calls_last_month: int = 0
    success_rate: float = 0.0  # fraction
    avg_duration_seconds: float = 0.0
    avg_duration_last_month_seconds: float = 0.0
    sparkline_data: list[int] = Field(default_factory=list)
    current_month_cost: MonthCost = Field(default_factory=MonthCost)
    last_month_cost_total: float = 0.0


# ── Billing ─────────────────────────────────────────────────────
class BillingUsage(BaseModel):
    retell_minutes: float = 0.0
    retell_cost_usd: float = 0.0
    openrouter_tokens: int = 0
    openrouter_cost_usd: float = 0.0


class BillingCosts(BaseModel):
    dashboard_fee: float = 0.0
    retell_passthrough: float = 0.0
    openrouter_passthrough: float = 0.0
    total_projected: float = 0.0


class BillingCurrentCycle(BaseModel):
    cycle_number: int
    period_start: str
    period_end: str
    days_remaining: int
    usage: BillingUsage
    costs: BillingCosts
    invoice_date: str


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    OVERDUE = "overdue"


class Invoice(BaseModel):
    id: str
    user_id: str
    cycle_number: int
    period_start: str
    period_end: str
    total_amount: float
    payment_status: PaymentStatus = PaymentStatus.PENDING
    paid_at: Optional[str] = None
    payment_link: Optional[str] = None
    dashboard_fee: float = 0.0
    retell_cost: float = 0.0
    openrouter_cost: float = 0.0
    file_name: str = ""


# ── API keys / accounts ─────────────────────────────────────────
class ProviderValidation(BaseModel):
    valid: bool = False
    error: Optional[str] = None
    account_info: Optional[Any] = None


class ValidateKeysResponse(BaseModel):
    retell: ProviderValidation = Field(default_factory=ProviderValidation)
    openrouter: ProviderValidation = Field(default_factory=ProviderValidation)


class KeyConnectionStatus(BaseModel):
    connected: bool = False
    masked_key: Optional[str] = None
    connected_at: Optional[str] = None
    last_validated_at: Optional[str] = None


class UserProfile(BaseModel):
    id: str
    email: str = ""
    business_name: str = ""
    contact_email: str = ""
    phone_number: str = ""
    timezone: str = "America/New_York"
    billing_email: str = ""
    email_verified: bool = False
    autopay_enabled: bool = False
    payment_customer_id: Optional[str] = None
