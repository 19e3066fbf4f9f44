"""Pydantic models for Expense data"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# Upper bound accepted by the expense form
MAX_AMOUNT = 999999.99
MAX_DESCRIPTION_LENGTH = 200


class Category(str, Enum):
    FOOD = "Food"
    TRANSPORT = "Transport"
    ENTERTAINMENT = "Entertainment"
    HEALTH = "Health"
    EDUCATION = "Education"
    HOUSING = "Housing"
    UTILITIES = "Utilities"
    SHOPPING = "Shopping"
    OTHER = "Other"


def normalize_timestamp(value: datetime) -> datetime:
    """Return an aware UTC datetime truncated to milliseconds (BSON precision).

    Naive datetimes are read as UTC, which is how MongoDB hands them back.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


class Expense(BaseModel):
    """
    A single expense owned by one user.
    """
    id: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    name: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    category: Category
    date: datetime
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)

    class Config:
        populate_by_name = True
        from_attributes = True
        frozen = True

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("amount")
    @classmethod
    def round_amount(cls, value: float) -> float:
        return round(value, 2)

    @field_validator("date")
    @classmethod
    def utc_date(cls, value: datetime) -> datetime:
        return normalize_timestamp(value)

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, value: Any) -> Any:
        return "" if value is None else value

    def to_document(self) -> Dict[str, Any]:
        """Document body as stored in the expenses collection. The id lives in `_id`."""
        return {
            "userId": self.user_id,
            "name": self.name,
            "amount": self.amount,
            "category": self.category.value,
            "date": self.date,
            "description": self.description,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Expense":
        data = dict(document)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class ExpenseInput(BaseModel):
    """Expense form submitted by a client. Stricter than the stored model."""
    name: str = Field(..., min_length=3)
    amount: float = Field(..., gt=0, le=MAX_AMOUNT)
    category: Category
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("name")
    @classmethod
    def name_length(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 3:
            raise ValueError("name must have at least 3 characters")
        return value

    @field_validator("amount")
    @classmethod
    def two_decimals(cls, value: float) -> float:
        if Decimal(str(value)).as_tuple().exponent < -2:
            raise ValueError("amount accepts at most two decimals")
        return value

    def to_expense(self, expense_id: Optional[str] = None) -> Expense:
        return Expense(
            id=expense_id,
            name=self.name,
            amount=self.amount,
            category=self.category,
            date=self.date,
            description=self.description,
        )


class OperationStatus(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OperationState(BaseModel):
    """Outcome of the latest create/update/delete issued through the view model."""
    status: OperationStatus = OperationStatus.IDLE
    reason: Optional[str] = None
    error: Optional[str] = None
    expense_id: Optional[str] = None

    class Config:
        frozen = True


class ViewState(BaseModel):
    """Everything a display collaborator needs to render the expense list."""
    user_id: Optional[str] = None
    expenses: List[Expense] = Field(default_factory=list)
    monthly_total: Decimal = Decimal("0.00")
    operation: OperationState = Field(default_factory=OperationState)
    sync_error: Optional[str] = None


class SessionInput(BaseModel):
    user_id: str = Field(..., min_length=1)


class MonthlyTotal(BaseModel):
    year: int
    month: int
    total: Decimal
