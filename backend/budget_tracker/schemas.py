from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CENT = Decimal("0.01")


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class Frequency(str, Enum):
    daily = "DAILY"
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    yearly = "YEARLY"


class SharePermission(str, Enum):
    view = "VIEW"
    edit = "EDIT"


def _upper(value):
    return value.strip().upper() if isinstance(value, str) else value


def _currency(value: str) -> str:
    up = value.upper()
    if len(up) != 3:
        raise ValueError("must be 3-letter ISO code")
    return up


def _money(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return value
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str
    storage: str


class WalletCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    currency: str = Field(default="USD")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return _currency(value)


class WalletResponse(BaseModel):
    id: UUID
    ownerId: UUID
    name: str
    currency: str
    balance: Decimal
    createdAt: datetime


class WalletShareCreate(BaseModel):
    userId: UUID
    permission: SharePermission = SharePermission.view

    @field_validator("permission", mode="before")
    @classmethod
    def normalize_permission(cls, value):
        return _upper(value)


class WalletShareResponse(BaseModel):
    walletId: UUID
    userId: UUID
    permission: SharePermission


class ReconciliationResponse(BaseModel):
    walletId: UUID
    balance: Decimal
    ledgerBalance: Decimal
    consistent: bool


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: TransactionType

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("name cannot be empty")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _upper(value)


class CategoryResponse(BaseModel):
    id: UUID
    walletId: UUID
    name: str
    type: TransactionType


class TransactionCreate(BaseModel):
    walletId: UUID
    type: TransactionType
    amount: Decimal = Field(gt=Decimal("0"))
    categoryId: UUID
    description: Optional[str] = Field(default=None, max_length=500)
    occurredOn: Optional[date] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _upper(value)

    @field_validator("amount")
    @classmethod
    def round_amount(cls, value: Decimal) -> Decimal:
        return _money(value)


class TransactionUpdate(BaseModel):
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, gt=Decimal("0"))
    categoryId: Optional[UUID] = None
    description: Optional[str] = Field(default=None, max_length=500)
    occurredOn: Optional[date] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _upper(value)

    @field_validator("amount")
    @classmethod
    def round_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return _money(value)


class TransactionResponse(BaseModel):
    id: UUID
    walletId: UUID
    userId: UUID
    type: TransactionType
    amount: Decimal
    categoryId: UUID
    description: Optional[str] = None
    occurredOn: date
    recurringTransactionId: Optional[UUID] = None


class RecurringTransactionCreate(BaseModel):
    walletId: UUID
    name: str = Field(min_length=1, max_length=120)
    amount: Decimal = Field(gt=Decimal("0"))
    frequency: Frequency
    transactionType: TransactionType
    categoryId: UUID
    description: Optional[str] = Field(default=None, max_length=500)
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    cycleDayOfMonth: Optional[int] = Field(default=None, ge=1, le=31)
    cycleDayOfWeek: Optional[int] = Field(default=None, ge=0, le=6)

    @field_validator("frequency", "transactionType", mode="before")
    @classmethod
    def normalize_enum(cls, value):
        return _upper(value)

    @field_validator("amount")
    @classmethod
    def round_amount(cls, value: Decimal) -> Decimal:
        return _money(value)

    @model_validator(mode="after")
    def validate_period(self) -> "RecurringTransactionCreate":
        if self.startDate and self.endDate and self.endDate < self.startDate:
            raise ValueError("endDate must be >= startDate")
        return self


class RecurringTransactionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount: Optional[Decimal] = Field(default=None, gt=Decimal("0"))
    frequency: Optional[Frequency] = None
    transactionType: Optional[TransactionType] = None
    categoryId: Optional[UUID] = None
    description: Optional[str] = Field(default=None, max_length=500)
    isActive: Optional[bool] = None
    endDate: Optional[date] = None
    cycleDayOfMonth: Optional[int] = Field(default=None, ge=1, le=31)
    cycleDayOfWeek: Optional[int] = Field(default=None, ge=0, le=6)

    @field_validator("frequency", "transactionType", mode="before")
    @classmethod
    def normalize_enum(cls, value):
        return _upper(value)

    @field_validator("amount")
    @classmethod
    def round_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return _money(value)


class RecurringTransactionResponse(BaseModel):
    id: UUID
    walletId: UUID
    userId: UUID
    name: str
    amount: Decimal
    frequency: Frequency
    transactionType: TransactionType
    categoryId: UUID
    description: Optional[str] = None
    startDate: date
    endDate: Optional[date] = None
    isActive: bool
    cycleDayOfMonth: Optional[int] = None
    cycleDayOfWeek: Optional[int] = None
    lastRunAt: Optional[date] = None
    nextRunAt: Optional[date] = None


class RecurringRunResponse(BaseModel):
    success: bool
    processedCount: int
    timestamp: datetime


class TrendInterval(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class WalletUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    currency: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return _currency(value) if value is not None else value


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[TransactionType] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        v = value.strip()
        if not v:
            raise ValueError("name cannot be empty")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _upper(value)


class TransactionQuery(BaseModel):
    type: Optional[TransactionType] = None
    categoryId: Optional[UUID] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    cursor: Optional[UUID] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _upper(value)

    @model_validator(mode="after")
    def validate_period(self) -> "TransactionQuery":
        if self.startDate and self.endDate and self.endDate < self.startDate:
            raise ValueError("endDate must be >= startDate")
        return self


class TransactionPage(BaseModel):
    items: list[TransactionResponse]
    nextCursor: Optional[UUID] = None


class CategoryTotals(BaseModel):
    income: Decimal
    expense: Decimal


class ReportSummaryResponse(BaseModel):
    walletId: UUID
    startDate: date
    endDate: date
    income: Decimal
    expenses: Decimal
    net: Decimal
    categoryBreakdown: dict[str, CategoryTotals]
    transactionCount: int


class CategoryAmount(BaseModel):
    category: str
    amount: Decimal


class TrendPoint(BaseModel):
    date: str
    income: Decimal
    expense: Decimal
    net: Decimal
