from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, Union
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import math
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"

class PlanName(str, Enum):
    FREE = "free"
    PREMIUM = "premium"

class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PENDING = "pending"

class PaymentMethodKind(str, Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"

class AuditAction(str, Enum):
    # Plans
    PLAN_DEFAULTS_SEEDED = "PLAN_DEFAULTS_SEEDED"
    PLAN_UPDATED = "PLAN_UPDATED"

    # Subscription lifecycle
    SUBSCRIPTION_FREE_ACTIVATED = "SUBSCRIPTION_FREE_ACTIVATED"
    SUBSCRIPTION_CHECKOUT_STARTED = "SUBSCRIPTION_CHECKOUT_STARTED"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_PAYMENT_FAILED = "SUBSCRIPTION_PAYMENT_FAILED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    SUBSCRIPTION_CANCEL_SCHEDULED = "SUBSCRIPTION_CANCEL_SCHEDULED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"

    # Payments / webhooks
    PAYMENT_WEBHOOK_REJECTED = "PAYMENT_WEBHOOK_REJECTED"
    PAYMENT_CORRELATION_MISS = "PAYMENT_CORRELATION_MISS"
    PAYMENT_EVENT_STALE = "PAYMENT_EVENT_STALE"

    # Usage
    REPORT_ADMISSION_DENIED = "REPORT_ADMISSION_DENIED"
    FEATURE_ACCESS_DENIED = "FEATURE_ACCESS_DENIED"
    USAGE_ROLLED_OVER = "USAGE_ROLLED_OVER"


# ============================================================================
# PLAN CATALOG
# ============================================================================

class PlanFeatures(BaseModel):
    model_config = ConfigDict(extra="allow")

    # -1 means unlimited; missing or NaN falls back to the registry default
    max_reports_per_month: Optional[Union[int, float]] = 3
    unlimited_reports: bool = False
    priority_support: bool = False
    detailed_tracking: bool = False
    download_reports: bool = False
    sms_notifications: bool = False
    email_notifications: bool = True
    advanced_analytics: bool = False
    case_notes_access: bool = False

    @field_validator("max_reports_per_month", mode="before")
    @classmethod
    def _numeric_cap_or_none(cls, value):
        # Non-numeric caps read as missing so the registry default applies
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
        return value if math.isfinite(value) else None

class Plan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: PlanName
    display_name: str
    description: Optional[str] = None
    price: float = 0
    currency: str = "KES"
    interval: BillingInterval = BillingInterval.MONTH
    features: PlanFeatures = Field(default_factory=PlanFeatures)
    is_active: bool = True

class PlanUpdate(BaseModel):
    """Operator edit of a catalog entry. Only supplied fields change."""
    model_config = ConfigDict(extra="forbid")

    display_name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    interval: Optional[BillingInterval] = None
    features: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


# ============================================================================
# SUBSCRIPTION / USAGE
# ============================================================================

class EffectiveSubscription(BaseModel):
    """Lazily-corrected view of a user's subscription."""
    plan: PlanName = PlanName.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    expired_on_read: bool = False

    @property
    def is_premium_active(self) -> bool:
        return self.plan == PlanName.PREMIUM and self.status == SubscriptionStatus.ACTIVE

class UsageSnapshot(BaseModel):
    reports_this_month: int = 0
    last_reset_date: Optional[datetime] = None
    period: Optional[str] = None

class AdmissionDecision(BaseModel):
    allowed: bool
    reason: str
    current_plan: PlanName = PlanName.FREE
    reports_used: Optional[int] = None
    reports_limit: Optional[int] = None
    remaining_reports: Optional[int] = None
    counts_against_quota: bool = False

    @property
    def requires_upgrade(self) -> bool:
        return not self.allowed


# ============================================================================
# PAYMENTS
# ============================================================================

class PaymentRequest(BaseModel):
    amount: Decimal
    currency: str = "KES"
    payer_email: str
    payer_name: Optional[str] = None
    payment_method: PaymentMethodKind = PaymentMethodKind.CARD
    phone_number: Optional[str] = None
    callback_url: Optional[str] = None
    narrative: str = "Premium Subscription"
    metadata: Dict[str, Any] = Field(default_factory=dict)

class PaymentSession(BaseModel):
    correlation_id: str
    checkout_reference: str
    status: str = "pending"
    redirect_url: Optional[str] = None
    provider: str

class PaymentFailure(BaseModel):
    reason_message: str
    retryable: bool = False
    configuration_missing: bool = False
    details: Optional[Dict[str, Any]] = None

class PaymentEvent(BaseModel):
    """Provider-independent result of a webhook or verification lookup."""
    provider: str
    correlation_id: Optional[str] = None
    is_success: bool = False
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None

    @property
    def event_key(self) -> str:
        return f"{self.provider}:{self.correlation_id}:{(self.raw_status or '').lower()}"

class InvalidWebhook(BaseModel):
    reason: str

class ReconciliationResult(BaseModel):
    applied: bool
    reason: str
    user_id: Optional[str] = None
    subscription: Optional[Dict[str, Any]] = None


# ============================================================================
# API REQUEST BODIES
# ============================================================================

class SubscribeRequest(BaseModel):
    plan: PlanName

class InitiatePaymentRequest(BaseModel):
    plan: PlanName
    payment_method: PaymentMethodKind = Field(default=PaymentMethodKind.CARD, alias="paymentMethod")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")

    model_config = ConfigDict(populate_by_name=True)

class ReportSubmission(BaseModel):
    """Opaque report body; content validation belongs to the reports service."""
    model_config = ConfigDict(extra="allow")


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
