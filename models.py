import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionKind(str, Enum):
    income = "income"
    expense = "expense"


class TransactionStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    received = "received"


EFFECTIVE_STATUSES = frozenset({TransactionStatus.paid, TransactionStatus.received})


class Periodicity(str, Enum):
    monthly = "monthly"
    biweekly = "biweekly"
    every_n_days = "every_n_days"
    every_n_months = "every_n_months"


class TemplateFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class AccountType(str, Enum):
    wallet = "wallet"
    checking = "checking"
    savings = "savings"
    investment = "investment"
    credit_card = "credit_card"


class EditScope(str, Enum):
    this_one = "this_one"
    future = "future"
    all = "all"


def new_uuid() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.wallet
    )
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    include_in_total: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    @property
    def is_credit_card(self) -> bool:
        return self.type == AccountType.credit_card

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_account_user_name"),
        CheckConstraint(
            "closing_day IS NULL OR (closing_day >= 0 AND closing_day <= 31)",
            name="ck_account_closing_day",
        ),
        CheckConstraint(
            "due_day IS NULL OR (due_day >= 0 AND due_day <= 31)",
            name="ck_account_due_day",
        ),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "name", name="uq_category_user_kind_name"),
    )


class RecurrenceRule(Base, TimestampMixin):
    __tablename__ = "recurrence_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    periodicity: Mapped[Optional[Periodicity]] = mapped_column(
        SAEnum(Periodicity), default=Periodicity.monthly
    )
    interval_days: Mapped[Optional[int]] = mapped_column(Integer)
    interval_months: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    account: Mapped["Account"] = relationship("Account")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="recurrence_rule",
        foreign_keys="Transaction.recurrence_rule_id",
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        CheckConstraint(
            "periodicity != 'every_n_days' OR coalesce(interval_days, 0) >= 1",
            name="ck_rule_interval_days",
        ),
        CheckConstraint(
            "periodicity != 'every_n_months' OR coalesce(interval_months, 0) >= 1",
            name="ck_rule_interval_months",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="ck_rule_end_after_start"
        ),
        Index("ix_rules_user_active", "user_id", "active"),
    )


class InstallmentPlan(Base, TimestampMixin):
    __tablename__ = "installment_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    installment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    first_installment_date: Mapped[date] = mapped_column(Date, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="installment_plan"
    )

    __table_args__ = (
        CheckConstraint("installment_count >= 2", name="ck_plan_count_min"),
        CheckConstraint("total_amount_cents >= 0", name="ck_plan_total_positive"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.pending
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    recurrence_periodicity: Mapped[Optional[Periodicity]] = mapped_column(
        SAEnum(Periodicity)
    )
    recurrence_end_date: Mapped[Optional[date]] = mapped_column(Date)
    # Date the rule scheduled this occurrence for. It does not follow edits to
    # `date`, so a moved or detached occurrence keeps its slot.
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    recurrence_rule_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("recurrence_rules.id")
    )
    # Set when an occurrence is detached from its rule so its slot stays taken.
    detached_rule_id: Mapped[Optional[str]] = mapped_column(String(36))
    installment_plan_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("installment_plans.id")
    )
    installment_index: Mapped[Optional[int]] = mapped_column(Integer)
    installment_total: Mapped[Optional[int]] = mapped_column(Integer)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped["Category"] = relationship("Category")
    recurrence_rule: Mapped[Optional["RecurrenceRule"]] = relationship(
        "RecurrenceRule",
        back_populates="transactions",
        foreign_keys=[recurrence_rule_id],
    )
    installment_plan: Mapped[Optional["InstallmentPlan"]] = relationship(
        "InstallmentPlan", back_populates="transactions"
    )

    @property
    def is_effective(self) -> bool:
        return self.status in EFFECTIVE_STATUSES

    __table_args__ = (
        UniqueConstraint(
            "recurrence_rule_id", "scheduled_date", name="uq_txn_rule_slot"
        ),
        CheckConstraint(
            "recurrence_rule_id IS NULL OR installment_plan_id IS NULL",
            name="ck_txn_rule_xor_plan",
        ),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account_status_date", "account_id", "status", "date"),
        Index("ix_transactions_plan_index", "installment_plan_id", "installment_index"),
        Index("ix_transactions_detached_rule", "detached_rule_id", "scheduled_date"),
    )


class RecurringTemplate(Base, TimestampMixin):
    """Standalone repeating entry posted on its due date, outside the rule model."""

    __tablename__ = "recurring_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[TemplateFrequency] = mapped_column(
        SAEnum(TemplateFrequency), nullable=False, default=TemplateFrequency.monthly
    )
    next_run_on: Mapped[date] = mapped_column(Date, nullable=False)
    end_on: Mapped[Optional[date]] = mapped_column(Date)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
        Index("ix_templates_active_next_run", "active", "next_run_on"),
    )
