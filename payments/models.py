from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from common.money import parse_amount
from ledger.models import Customer, LedgerEntry


class PaymentStatus(str, Enum):
    CREATED = "CREATED"
    WAITING_FOR_SMS = "WAITING_FOR_SMS"
    SUCCESS = "SUCCESS"
    NEEDS_MANUAL_CONFIRMATION = "NEEDS_MANUAL_CONFIRMATION"
    FAILED = "FAILED"


class VerificationMethod(str, Enum):
    SMS = "SMS"
    MANUAL = "MANUAL"


class TransactionType(str, Enum):
    SALE = "SALE"
    EXPENSE = "EXPENSE"


class TransactionSource(str, Enum):
    UPI_REQUEST = "UPI_REQUEST"
    MANUAL = "MANUAL"


class PaymentMode(str, Enum):
    CASH = "cash"
    UPI = "upi"


ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset({PaymentStatus.WAITING_FOR_SMS}),
    PaymentStatus.WAITING_FOR_SMS: frozenset({
        PaymentStatus.SUCCESS,
        PaymentStatus.FAILED,
        PaymentStatus.NEEDS_MANUAL_CONFIRMATION,
    }),
    PaymentStatus.NEEDS_MANUAL_CONFIRMATION: frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED}),
    PaymentStatus.SUCCESS: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED})


def sources_for(target: PaymentStatus) -> frozenset[PaymentStatus]:
    return frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


class SmsData(BaseModel):
    amount: Decimal
    utr: Optional[str] = None
    raw_sms: str
    timestamp: datetime


class PaymentRecord(BaseModel):
    id: UUID
    merchant_id: str
    amount: Decimal
    note: str = ""
    customer_name: str = ""
    customer_phone: str = ""
    type: TransactionType = TransactionType.SALE
    source: TransactionSource = TransactionSource.UPI_REQUEST
    status: PaymentStatus
    created_at: datetime
    updated_at: datetime
    verified_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    verification_method: Optional[VerificationMethod] = None
    manually_confirmed: Optional[bool] = None
    sms_data: Optional[SmsData] = None
    upi_link: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def can_transition_to(self, target: PaymentStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def can_confirm_manually(self) -> bool:
        return self.status in (PaymentStatus.WAITING_FOR_SMS, PaymentStatus.NEEDS_MANUAL_CONFIRMATION)


class CreatePaymentRequest(BaseModel):
    merchant_id: str = Field(..., min_length=1)
    amount: Decimal
    note: str = ""
    customer_name: str = ""
    customer_phone: str = ""
    upi_id: Optional[str] = Field(default=None, description="Merchant UPI VPA used for the deep link")
    merchant_name: str = "Merchant"
    send_sms: bool = False

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "merchant_id": "merchant-123",
            "amount": 250.00,
            "note": "Groceries",
            "customer_phone": "9876543210",
            "upi_id": "shop@okaxis",
            "merchant_name": "Sharma Kirana",
        }
    })

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value):
        return parse_amount(value, allow_zero=False)


class ManualTransactionRequest(BaseModel):
    """A sale or expense the merchant records by hand."""

    type: TransactionType = TransactionType.SALE
    amount: Decimal
    status: PaymentStatus = PaymentStatus.SUCCESS
    note: str = ""
    customer_name: str = ""
    customer_phone: str = ""

    model_config = ConfigDict(json_schema_extra={
        "example": {"type": "EXPENSE", "amount": 1200, "note": "Stock from wholesaler"}
    })

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value):
        return parse_amount(value, allow_zero=False)

    @field_validator("status")
    @classmethod
    def check_status(cls, value: PaymentStatus):
        if value not in TERMINAL_STATES:
            raise ValueError("A manual transaction is recorded as SUCCESS or FAILED")
        return value


class TransactionFilter(BaseModel):
    type: Optional[TransactionType] = None
    status: Optional[PaymentStatus] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    @field_validator("min_amount", "max_amount", mode="before")
    @classmethod
    def check_amounts(cls, value):
        return None if value is None else parse_amount(value)

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def check_ranges(self):
        if self.start and self.end and self.start > self.end:
            raise ValueError("start must not be after end")
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValueError("min_amount must not exceed max_amount")
        return self

    def matches(self, record: dict) -> bool:
        return (
            (self.type is None or record.get("type", TransactionType.SALE) == self.type)
            and (self.status is None or record["status"] == self.status)
            and (self.start is None or record["created_at"] >= self.start)
            and (self.end is None or record["created_at"] <= self.end)
            and (self.min_amount is None or record["amount"] >= self.min_amount)
            and (self.max_amount is None or record["amount"] <= self.max_amount)
        )


class DashboardStats(BaseModel):
    """Sales figures for the merchant home screen. Revenue counts SUCCESS sales only."""

    merchant_id: str
    today_sales: Decimal
    yesterday_sales: Decimal
    today_transactions: int
    yesterday_transactions: int
    month_revenue: Decimal
    last_month_revenue: Decimal
    today_expenses: Decimal
    month_expenses: Decimal
    total_transactions: int
    pending_payments: int
    pending_amount: Decimal
    as_of: datetime


class NotificationResult(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    request_id: Optional[str] = None


class CreatePaymentResponse(BaseModel):
    payment: PaymentRecord
    upi_link: Optional[str] = None
    expires_at: datetime
    notification: Optional[NotificationResult] = None
    message: str


class ManualConfirmRequest(BaseModel):
    accepted: bool


class TransitionResponse(BaseModel):
    payment: PaymentRecord
    changed: bool
    message: str


class KhataPaymentRequest(BaseModel):
    amount: Decimal
    note: str = ""
    mode: PaymentMode = PaymentMode.CASH
    upi_id: Optional[str] = None
    merchant_name: str = "Merchant"

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value):
        return parse_amount(value, allow_zero=False)


class SmsWebhookPayload(BaseModel):
    """Inbound SMS, accepting the field names different gateways use."""

    text: str = ""
    merchant_id: Optional[str] = None
    sender: Optional[str] = None
    timestamp: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_aliases(cls, data: Any):
        if not isinstance(data, dict):
            return data
        return {
            "text": data.get("text") or data.get("Body") or data.get("message") or "",
            "merchant_id": data.get("merchant_id") or data.get("merchantId"),
            "sender": data.get("from") or data.get("From") or data.get("sender"),
            "timestamp": data.get("timestamp") or data.get("receivedAt"),
        }

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class SmsWebhookResponse(BaseModel):
    outcome: str
    success: bool
    message: str
    payment_id: Optional[UUID] = None
    candidates: list[UUID] = Field(default_factory=list)
    amount: Optional[Decimal] = None
    utr: Optional[str] = None
    duplicate: bool = False


class SweepResponse(BaseModel):
    escalated: list[UUID]
    skipped: list[UUID]
    failed: list[UUID]
    ran_at: datetime


class KhataPaymentResponse(BaseModel):
    entry: LedgerEntry
    customer: Customer
    upi_link: Optional[str] = None
    message: str
