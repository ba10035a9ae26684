import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import EditScope, Periodicity, TransactionKind, TransactionStatus


RESERVED_TAGS = {"recurring"}


def clean_tags(tags: list[str]) -> list[str]:
    result: list[str] = []
    seen: set[str] = set()
    for raw in tags:
        value = re.sub(r"\s+", " ", str(raw).strip().lstrip("# \t")).strip()
        key = value.lower()
        if not value or key in RESERVED_TAGS or key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


class RecurrenceIn(BaseModel):
    id: Optional[uuid.UUID] = None
    periodicity: Optional[Periodicity] = None
    interval_days: Optional[int] = Field(default=None, ge=1, le=366)
    interval_months: Optional[int] = Field(default=None, ge=1, le=120)
    end_date: Optional[date] = None
    fixed_expense: bool = False
    repeat: bool = False
    repeat_times: int = Field(default=2, ge=2, le=120)
    repeat_every_months: int = Field(default=1, ge=1, le=120)


class TransactionUpdateIn(BaseModel):
    kind: TransactionKind
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=255)
    account_id: int
    category_id: int
    date: date
    is_paid: bool = False
    tags: list[str] = Field(default_factory=list, max_length=50)
    recurrence: Optional[RecurrenceIn] = None

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: list[str]) -> list[str]:
        for tag in value:
            if len(tag) > 50:
                raise ValueError("Tags must be at most 50 characters")
        return clean_tags(value)


class TransactionIn(TransactionUpdateIn):
    installment_count: Optional[int] = Field(default=None, ge=1, le=99)
    installment_plan_id: Optional[uuid.UUID] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: int
    kind: TransactionKind
    status: TransactionStatus
    amount_cents: int
    description: str
    date: date
    paid_at: Optional[datetime]
    recurrence_rule_id: Optional[str]
    recurrence_periodicity: Optional[Periodicity]
    recurrence_end_date: Optional[date]
    installment_plan_id: Optional[str]
    installment_index: Optional[int]
    installment_total: Optional[int]
    tags: list[str]


class TransactionEditIn(BaseModel):
    data: TransactionUpdateIn
    scope: Optional[EditScope] = None


class ProjectionPointOut(BaseModel):
    date: date
    balance: Decimal


class ProjectionOut(BaseModel):
    start: date
    end: date
    starting_balance: Decimal
    final_balance: Decimal
    first_negative_date: Optional[date]
    points: list[ProjectionPointOut]


class BalanceAlertOut(BaseModel):
    first_negative_date: date
    days_until: int
    projected_balance: Decimal
