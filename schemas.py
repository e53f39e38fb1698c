from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    constr,
    field_validator,
)
from datetime import date, datetime, time as dt_time
from typing import Optional
import math
import time


def now_ms() -> int:
    return int(time.time() * 1000)


def is_valid_epoch_ms(value) -> bool:
    """True when `value` is a number of milliseconds a local datetime can hold."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not math.isfinite(value):
        return False
    try:
        datetime.fromtimestamp(value / 1000)
    except (OverflowError, OSError, ValueError):
        return False
    return True


def to_epoch_ms(value) -> int:
    """Accepts epoch milliseconds, a date, a datetime or an ISO-8601 string."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if not is_valid_epoch_ms(value):
            raise ValueError("Please enter a valid date")
        return int(value)
    if isinstance(value, date):
        if not isinstance(value, datetime):
            value = datetime.combine(value, dt_time.min)
        try:
            moment = round(value.timestamp() * 1000)
        except (OverflowError, OSError, ValueError):
            raise ValueError("Please enter a valid date")
        return to_epoch_ms(moment)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return to_epoch_ms(int(text))
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError("Please enter a valid date")
        return to_epoch_ms(parsed)
    raise ValueError("Please enter a valid date")


class UserBase(BaseModel):
    username: constr(min_length=3, max_length=50)


class UserCreate(UserBase):
    password: str


class UserLogin(UserBase):
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ExpenseFormInput(BaseModel):
    description: str = Field(default="", validate_default=True)
    amount: float = Field(default=None, validate_default=True)
    date: int = Field(default=None, validate_default=True)
    note: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def check_description(cls, value):
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Please enter a description")
        return value.strip()

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value):
        if isinstance(value, bool) or value is None:
            raise ValueError("Please enter a valid amount")
        try:
            amount = float(value)
        except (TypeError, ValueError):
            raise ValueError("Please enter a valid amount")
        if not math.isfinite(amount) or amount < 0:
            raise ValueError("Please enter a valid amount")
        return amount

    @field_validator("date", mode="before")
    @classmethod
    def check_date(cls, value):
        if value is None or value == "":
            return now_ms()
        return to_epoch_ms(value)

    @field_validator("note", mode="before")
    @classmethod
    def check_note(cls, value):
        if value is None:
            return None
        return str(value).strip() or None


class ExpenseRecord(BaseModel):
    id: str
    description: str
    amount: float
    date: int
    created_at: int
    note: str = ""
    user_id: str

    model_config = ConfigDict(from_attributes=True)

    @property
    def local_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.date / 1000)


class DateRange(BaseModel):
    from_: Optional[date] = Field(default=None, alias="from")
    to: Optional[date] = None

    model_config = ConfigDict(populate_by_name=True)


class DailyTotal(BaseModel):
    label: str
    amount: float


class ExpenseSummary(BaseModel):
    filtered_expenses: list[ExpenseRecord]
    total_spent: float
    daily_series: list[DailyTotal]


class FeedState(BaseModel):
    status: str
    expenses: list[ExpenseRecord]
    loading: bool
    error: Optional[str] = None
    last_sync_time: Optional[datetime] = None


class CreatedExpense(BaseModel):
    id: str
