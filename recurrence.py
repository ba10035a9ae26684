import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from balances import adjust_balance
from config import get_settings
from models import (
    Periodicity,
    RecurrenceRule,
    RecurringTemplate,
    TemplateFrequency,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from repository import AccountRepository, RecurrenceRuleRepository, TransactionRepository


logger = logging.getLogger(__name__)

BIWEEKLY_DAYS = 15


def local_today() -> date:
    return datetime.now(get_settings().zone).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Shift ``base`` by whole months, clamping to the target month's last day."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day if desired_day is not None else base.day
    return date(year, month, min(day, days_in_month(year, month)))


@dataclass(frozen=True)
class Monthly:
    pass


@dataclass(frozen=True)
class Biweekly:
    pass


@dataclass(frozen=True)
class EveryNDays:
    days: int

    def __post_init__(self) -> None:
        if self.days is None or self.days < 1:
            raise ValueError(f"Day interval must be at least 1, got {self.days}")


@dataclass(frozen=True)
class EveryNMonths:
    months: int

    def __post_init__(self) -> None:
        if self.months is None or self.months < 1:
            raise ValueError(f"Month interval must be at least 1, got {self.months}")


Cadence = Union[Monthly, Biweekly, EveryNDays, EveryNMonths]


def cadence_for(rule: RecurrenceRule) -> Cadence:
    if rule.periodicity == Periodicity.biweekly:
        return Biweekly()
    if rule.periodicity == Periodicity.every_n_days:
        return EveryNDays(rule.interval_days)
    if rule.periodicity == Periodicity.every_n_months:
        return EveryNMonths(rule.interval_months)
    return Monthly()


def calculate_next_date(rule: RecurrenceRule, from_date: date) -> date:
    cadence = cadence_for(rule)
    if isinstance(cadence, Biweekly):
        return from_date + timedelta(days=BIWEEKLY_DAYS)
    if isinstance(cadence, EveryNDays):
        return from_date + timedelta(days=cadence.days)
    months = cadence.months if isinstance(cadence, EveryNMonths) else 1
    # Month steps aim at the start date's day so a short month doesn't drift it.
    return add_months(from_date, months, desired_day=rule.start_date.day)


def is_active(rule: RecurrenceRule, at: date) -> bool:
    if not rule.active:
        return False
    if rule.end_date is not None and at > rule.end_date:
        return False
    return True


def iter_occurrences(
    rule: RecurrenceRule,
    after: date,
    *,
    before: Optional[date] = None,
    through: Optional[date] = None,
) -> Iterator[date]:
    """Yield the rule's occurrence dates strictly after ``after``.

    Stops when the rule stops being active, at the first date ``>= before``
    or the first date ``> through``. Shared by materialization and
    simulation so both walk exactly the same dates.
    """
    cursor = after
    while True:
        cursor = calculate_next_date(rule, cursor)
        if not is_active(rule, cursor):
            return
        if before is not None and cursor >= before:
            return
        if through is not None and cursor > through:
            return
        yield cursor


def occurrence_for(rule: RecurrenceRule, occurrence_date: date) -> Transaction:
    return Transaction(
        user_id=rule.user_id,
        account_id=rule.account_id,
        category_id=rule.category_id,
        kind=rule.kind,
        status=TransactionStatus.pending,
        amount_cents=rule.amount_cents,
        description=rule.description,
        date=occurrence_date,
        scheduled_date=occurrence_date,
        recurrence_rule_id=rule.id,
        recurrence_periodicity=rule.periodicity,
        recurrence_end_date=rule.end_date,
        tags=list(rule.tags or []),
    )


class RecurrenceMaterializer:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.rules = RecurrenceRuleRepository(session)
        self.transactions = TransactionRepository(session)

    def extend(
        self, rule_id: str, horizon_months: int, today: Optional[date] = None
    ) -> int:
        rule = self.rules.find_by_id(rule_id)
        if rule is None:
            logger.info(f"materialize_skip: rule={rule_id} reason=not_found")
            return 0
        today = today or local_today()
        target = add_months(today, max(1, horizon_months))
        cursor = self.transactions.find_latest_date(rule.id) or rule.start_date

        created = 0
        for occurrence_date in iter_occurrences(rule, cursor, before=target):
            if self.transactions.exists_on_date(rule.id, occurrence_date):
                continue
            txn = self.transactions.create_if_absent(
                occurrence_for(rule, occurrence_date)
            )
            if txn is not None:
                created += 1
        if created:
            logger.info(
                f"materialize: rule={rule.id} created={created} target={target}"
            )
        return created

    def extend_all(
        self, horizon_months: Optional[int] = None, today: Optional[date] = None
    ) -> int:
        today = today or local_today()
        horizon = horizon_months or get_settings().horizon_months
        rule_ids = [rule.id for rule in self.rules.list_active(today)]
        total = 0
        for rule_id in rule_ids:
            try:
                with self.session.begin_nested():
                    total += self.extend(rule_id, horizon, today)
            except Exception:
                logger.exception(f"materialize_failed: rule={rule_id}")
        return total


def next_template_date(template: RecurringTemplate, from_date: date) -> date:
    if template.frequency == TemplateFrequency.daily:
        return from_date + timedelta(days=1)
    if template.frequency == TemplateFrequency.weekly:
        return from_date + timedelta(weeks=1)
    if template.frequency == TemplateFrequency.yearly:
        return add_months(from_date, 12)
    return add_months(from_date, 1)


class TemplateEngine:
    """Posts standalone recurring templates once their run date has arrived."""

    max_iterations = 366

    def __init__(self, session: Session) -> None:
        self.session = session
        self.transactions = TransactionRepository(session)
        self.accounts = AccountRepository(session)

    def catch_up(self, template: RecurringTemplate, today: Optional[date] = None) -> int:
        today = today or local_today()
        posted = 0
        while (
            template.active
            and template.next_run_on <= today
            and posted < self.max_iterations
        ):
            if template.end_on and template.next_run_on > template.end_on:
                template.active = False
                break
            self._post(template, template.next_run_on)
            posted += 1
            template.next_run_on = next_template_date(template, template.next_run_on)
        if template.end_on and template.next_run_on > template.end_on:
            template.active = False
        return posted

    def post_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        stmt = (
            select(RecurringTemplate)
            .where(
                RecurringTemplate.active.is_(True),
                RecurringTemplate.next_run_on <= today,
            )
            .order_by(RecurringTemplate.next_run_on, RecurringTemplate.id)
        )
        templates = self.session.scalars(stmt).all()
        count = 0
        for template in templates:
            count += self.catch_up(template, today)
        self.session.flush()
        return count

    def _post(self, template: RecurringTemplate, run_on: date) -> None:
        status = (
            TransactionStatus.received
            if template.kind == TransactionKind.income
            else TransactionStatus.pending
        )
        txn = self.transactions.create(
            Transaction(
                user_id=template.user_id,
                account_id=template.account_id,
                category_id=template.category_id,
                kind=template.kind,
                status=status,
                amount_cents=template.amount_cents,
                description=template.description,
                date=run_on,
                paid_at=datetime.utcnow() if status == TransactionStatus.received else None,
                tags=list(template.tags or []),
            )
        )
        adjust_balance(self.accounts.get_for_update(template.account_id), txn, 1)
