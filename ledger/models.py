from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator

from common.money import ZERO, parse_amount


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    NOTE = "NOTE"


class EntryStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class KhataType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def default_entry_status(entry_type: EntryType, due_date: Optional[date]) -> EntryStatus:
    if entry_type == EntryType.CREDIT and due_date is not None:
        return EntryStatus.PENDING
    return EntryStatus.PAID


class CreateCustomerRequest(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = ""
    email: str = ""
    address: str = ""
    notes: str = ""
    tags: list[str] = Field(default_factory=list)
    khata_type: KhataType = KhataType.MONTHLY
    credit_limit: Decimal = ZERO
    avatar_color: str = "#6366f1"

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Ramesh Kumar",
            "phone": "9876543210",
            "khata_type": "monthly",
            "credit_limit": 5000,
        }
    })

    @field_validator("credit_limit", mode="before")
    @classmethod
    def check_credit_limit(cls, value):
        return parse_amount(value)


class UpdateCustomerRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[list[str]] = None
    khata_type: Optional[KhataType] = None
    credit_limit: Optional[Decimal] = None
    avatar_color: Optional[str] = None

    @field_validator("credit_limit", mode="before")
    @classmethod
    def check_credit_limit(cls, value):
        return None if value is None else parse_amount(value)


class CreateEntryRequest(BaseModel):
    type: EntryType
    amount: Decimal = ZERO
    description: str = ""
    note: str = ""
    due_date: Optional[date] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"type": "CREDIT", "amount": 300, "description": "Rice 5kg"}
    })

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value):
        return parse_amount(value)


class UpdateEntryRequest(BaseModel):
    type: Optional[EntryType] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    note: Optional[str] = None
    due_date: Optional[date] = None

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value):
        return None if value is None else parse_amount(value)


class Customer(BaseModel):
    id: UUID
    merchant_id: str
    name: str
    phone: str = ""
    email: str = ""
    address: str = ""
    notes: str = ""
    tags: list[str] = Field(default_factory=list)
    khata_type: KhataType = KhataType.MONTHLY
    credit_limit: Decimal = ZERO
    avatar_color: str = "#6366f1"
    total_balance: Decimal = ZERO
    total_credit: Decimal = ZERO
    total_debit: Decimal = ZERO
    last_entry_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_balanced(self) -> bool:
        return self.total_balance == self.total_credit - self.total_debit


class LedgerEntry(BaseModel):
    id: UUID
    customer_id: UUID
    merchant_id: str
    type: EntryType
    amount: Decimal
    description: str = ""
    note: str = ""
    due_date: Optional[date] = None
    status: EntryStatus = EntryStatus.PAID
    seq: int = 0
    version: int = 1
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EntryResponse(BaseModel):
    entry: LedgerEntry
    customer: Customer
    message: str


class StatementLine(BaseModel):
    entry: LedgerEntry
    balance_after: Decimal


class StatementResponse(BaseModel):
    customer: Customer
    lines: list[StatementLine]
    closing_balance: Decimal


class KhataStats(BaseModel):
    merchant_id: str
    total_to_collect: Decimal
    total_to_pay: Decimal
    customers_count: int
    overdue_count: int


class RepairReport(BaseModel):
    customer_id: UUID
    drift_detected: bool
    before: dict
    after: dict
    entries_scanned: int
