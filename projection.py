"""Read-only balance projection.

A projection starts from the cached balances of the accounts in scope and
walks forward day by day, adding pending entries already on the ledger and
the occurrences that active recurrence rules will produce but the
materializer has not written yet. Nothing here writes to the session.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from balances import signed_amount
from models import RecurrenceRule, TransactionKind
from recurrence import add_months, cadence_for, days_in_month, iter_occurrences, local_today
from repository import AccountRepository, RecurrenceRuleRepository, TransactionRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectionPoint:
    date: date
    balance_cents: int


@dataclass(frozen=True)
class SimulatedOccurrence:
    rule_id: str
    date: date
    kind: TransactionKind
    amount_cents: int

    @property
    def signed_cents(self) -> int:
        return signed_amount(self.kind, self.amount_cents)


@dataclass
class Projection:
    start: date
    end: date
    starting_balance_cents: int
    points: list[ProjectionPoint] = field(default_factory=list)
    first_negative_date: Optional[date] = None
    simulated: list[SimulatedOccurrence] = field(default_factory=list)

    @property
    def final_balance_cents(self) -> int:
        if not self.points:
            return self.starting_balance_cents
        return self.points[-1].balance_cents

    def balance_on(self, day: date) -> int:
        for point in reversed(self.points):
            if point.date <= day:
                return point.balance_cents
        return self.starting_balance_cents


@dataclass(frozen=True)
class BalanceAlert:
    first_negative_date: date
    days_until: int
    projected_balance_cents: int


def simulate_occurrences(
    rules: Iterable[RecurrenceRule],
    cursors: dict[str, date],
    occupied: dict[str, set[date]],
    start: date,
    end: date,
) -> list[SimulatedOccurrence]:
    """Occurrences in ``[start, end]`` the materializer would still create.

    Each rule is walked from its latest materialized date (or its start date)
    exactly like the materializer does. A rule whose cadence is malformed is
    logged and skipped.
    """
    simulated: list[SimulatedOccurrence] = []
    for rule in rules:
        try:
            cadence_for(rule)
            after = cursors.get(rule.id) or rule.start_date
            taken = occupied.get(rule.id, set())
            found = [
                SimulatedOccurrence(rule.id, day, rule.kind, rule.amount_cents)
                for day in iter_occurrences(rule, after, through=end)
                if day >= start and day not in taken
            ]
        except ValueError as exc:
            logger.warning(f"projection_skip_rule: rule={rule.id} reason={exc}")
            continue
        simulated.extend(found)
    return simulated


def negative_balance_alert(
    projection: Projection, today: date, within_days: int = 7
) -> Optional[BalanceAlert]:
    first_negative = projection.first_negative_date
    if first_negative is None:
        return None
    days_until = (first_negative - today).days
    if days_until > within_days:
        return None
    return BalanceAlert(
        first_negative_date=first_negative,
        days_until=days_until,
        projected_balance_cents=projection.balance_on(first_negative),
    )


class BalanceProjector:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.accounts = AccountRepository(session)
        self.rules = RecurrenceRuleRepository(session)
        self.transactions = TransactionRepository(session)

    def project_daily_series(
        self, account_ids: Sequence[int], start: date, end: date
    ) -> Projection:
        if end < start:
            raise ValueError("Projection end must not be before its start")
        account_ids = list(account_ids)
        accounts = self.accounts.by_ids(account_ids)
        starting = sum(account.current_balance_cents or 0 for account in accounts)

        deltas: dict[date, int] = defaultdict(int)
        for txn in self.transactions.pending_between(account_ids, start, end):
            deltas[txn.date] += signed_amount(txn.kind, txn.amount_cents)

        rules = self.rules.list_active(start, account_ids=account_ids)
        rule_ids = [rule.id for rule in rules]
        simulated = simulate_occurrences(
            rules,
            self.transactions.latest_dates(rule_ids),
            self.transactions.occupied_dates(rule_ids, start, end),
            start,
            end,
        )
        for occurrence in simulated:
            deltas[occurrence.date] += occurrence.signed_cents

        projection = Projection(
            start=start,
            end=end,
            starting_balance_cents=starting,
            simulated=simulated,
        )
        running = starting
        day = start
        while day <= end:
            running += deltas.get(day, 0)
            projection.points.append(ProjectionPoint(day, running))
            if running < 0 and projection.first_negative_date is None:
                projection.first_negative_date = day
            day += timedelta(days=1)
        return projection

    def project_balance(
        self, account_ids: Sequence[int], as_of: date, today: Optional[date] = None
    ) -> int:
        today = today or local_today()
        if as_of < today:
            raise ValueError("Projection date must not be in the past")
        return self.project_daily_series(account_ids, today, as_of).final_balance_cents

    def month_end_balances(
        self, account_ids: Sequence[int], months: int, today: Optional[date] = None
    ) -> list[ProjectionPoint]:
        """Projected balance at the end of this month and the following ones."""
        today = today or local_today()
        last = add_months(today, max(1, months) - 1)
        last = last.replace(day=days_in_month(last.year, last.month))
        projection = self.project_daily_series(account_ids, today, last)
        return [
            point
            for point in projection.points
            if point.date.day == days_in_month(point.date.year, point.date.month)
        ]
