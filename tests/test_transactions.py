import uuid
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base, configure_sqlite
from models import (
    Account,
    Category,
    EditScope,
    InstallmentPlan,
    Periodicity,
    RecurrenceRule,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from projection import BalanceProjector
from schemas import RecurrenceIn, TransactionIn, TransactionUpdateIn
from services import (
    NotFoundError,
    ProjectionService,
    RecurrenceRuleService,
    TransactionService,
    TransactionValidationError,
)


def make_session():
    engine = configure_sqlite(
        create_engine(
            "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
        )
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session, balance_cents=50_000):
    account = Account(
        name="Checking",
        initial_balance_cents=balance_cents,
        current_balance_cents=balance_cents,
    )
    expense = Category(name="Housing", kind=TransactionKind.expense)
    income = Category(name="Salary", kind=TransactionKind.income)
    session.add_all([account, expense, income])
    session.commit()
    return account, expense, income


def new_entry(account, category, **overrides) -> TransactionIn:
    fields = dict(
        kind=category.kind,
        amount_cents=10_000,
        description="Rent",
        account_id=account.id,
        category_id=category.id,
        date=date(2025, 1, 31),
    )
    fields.update(overrides)
    return TransactionIn(**fields)


def edit_of(txn: Transaction, **overrides) -> TransactionUpdateIn:
    fields = dict(
        kind=txn.kind,
        amount_cents=txn.amount_cents,
        description=txn.description,
        account_id=txn.account_id,
        category_id=txn.category_id,
        date=txn.date,
        is_paid=txn.is_effective,
        tags=list(txn.tags),
    )
    fields.update(overrides)
    return TransactionUpdateIn(**fields)


def rule_rows(session, rule_id):
    return list(
        session.scalars(
            select(Transaction)
            .where(
                Transaction.recurrence_rule_id == rule_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date)
        ).all()
    )


def monthly_rent(session, account, category, start=date(2025, 1, 10)):
    txn = TransactionService(session).create(
        new_entry(
            account,
            category,
            date=start,
            recurrence=RecurrenceIn(periodicity=Periodicity.monthly),
        ),
        today=start,
    )
    return txn, session.get(RecurrenceRule, txn.recurrence_rule_id)


def test_create_recurring_materializes_twelve_months():
    session = make_session()
    account, expense, _ = seed(session)

    txn = TransactionService(session).create(
        new_entry(
            account,
            expense,
            tags=["#home", "Home"],
            recurrence=RecurrenceIn(periodicity=Periodicity.monthly),
        ),
        today=date(2025, 2, 1),
    )

    rule = session.get(RecurrenceRule, txn.recurrence_rule_id)
    rows = rule_rows(session, rule.id)
    assert rule.start_date == date(2025, 1, 31)
    assert txn.recurrence_periodicity == Periodicity.monthly
    assert [row.date for row in rows[:4]] == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
    ]
    assert len(rows) == 13
    assert rows[-1].date == date(2026, 1, 31)
    assert rows[-1].tags == ["home"]
    assert account.current_balance_cents == 50_000


def test_create_with_client_rule_identifier():
    session = make_session()
    account, expense, _ = seed(session)
    rule_id = uuid.uuid4()

    txn = TransactionService(session).create(
        new_entry(
            account,
            expense,
            recurrence=RecurrenceIn(id=rule_id, periodicity=Periodicity.biweekly),
        ),
        today=date(2025, 1, 31),
    )

    assert txn.recurrence_rule_id == str(rule_id)


def test_create_fixed_expense_is_open_ended_monthly():
    session = make_session()
    account, expense, _ = seed(session)

    txn = TransactionService(session).create(
        new_entry(account, expense, recurrence=RecurrenceIn(fixed_expense=True)),
        today=date(2025, 1, 31),
    )

    rule = session.get(RecurrenceRule, txn.recurrence_rule_id)
    assert rule.periodicity == Periodicity.every_n_months
    assert rule.interval_months == 1
    assert rule.end_date is None


def test_create_repeat_stops_after_requested_count():
    session = make_session()
    account, expense, _ = seed(session)

    txn = TransactionService(session).create(
        new_entry(account, expense, recurrence=RecurrenceIn(repeat=True, repeat_times=3)),
        today=date(2025, 2, 1),
    )

    rule = session.get(RecurrenceRule, txn.recurrence_rule_id)
    assert rule.end_date == date(2025, 3, 31)
    assert [row.date for row in rule_rows(session, rule.id)] == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
    ]


@pytest.mark.parametrize(
    "overrides",
    [
        {"recurrence": RecurrenceIn(fixed_expense=True, repeat=True)},
        {"recurrence": RecurrenceIn()},
        {"recurrence": RecurrenceIn(periodicity=Periodicity.every_n_days)},
        {"recurrence": RecurrenceIn(periodicity=Periodicity.every_n_months)},
        {
            "recurrence": RecurrenceIn(
                periodicity=Periodicity.monthly, end_date=date(2025, 1, 15)
            )
        },
        {
            "date": date(2025, 3, 10),
            "recurrence": RecurrenceIn(
                periodicity=Periodicity.monthly, end_date=date(2025, 3, 1)
            ),
        },
        {
            "installment_count": 3,
            "recurrence": RecurrenceIn(periodicity=Periodicity.monthly),
        },
        {"kind": TransactionKind.income},
    ],
)
def test_create_rejects_invalid_combinations(overrides):
    session = make_session()
    account, expense, _ = seed(session)

    with pytest.raises(TransactionValidationError):
        TransactionService(session).create(
            new_entry(account, expense, **overrides), today=date(2025, 2, 1)
        )


def test_installments_are_expense_only():
    session = make_session()
    account, _, income = seed(session)

    with pytest.raises(TransactionValidationError):
        TransactionService(session).create(
            new_entry(account, income, installment_count=3), today=date(2025, 2, 1)
        )


def test_create_paid_entry_moves_balance():
    session = make_session()
    account, expense, income = seed(session)
    service = TransactionService(session)

    service.create(new_entry(account, income, amount_cents=7_000, is_paid=True))
    paid = service.create(new_entry(account, expense, amount_cents=2_000, is_paid=True))

    assert paid.status == TransactionStatus.paid
    assert paid.paid_at is not None
    assert account.current_balance_cents == 55_000


def test_create_installments_through_service():
    session = make_session()
    account, expense, _ = seed(session)

    first = TransactionService(session).create(
        new_entry(account, expense, date=date(2025, 1, 15), installment_count=3)
    )

    plan = session.get(InstallmentPlan, first.installment_plan_id)
    rows = session.scalars(
        select(Transaction)
        .where(Transaction.installment_plan_id == plan.id)
        .order_by(Transaction.installment_index)
    ).all()
    assert [(row.date, row.amount_cents) for row in rows] == [
        (date(2025, 1, 15), 3_334),
        (date(2025, 2, 15), 3_333),
        (date(2025, 3, 15), 3_333),
    ]
    assert plan.total_amount_cents == 10_000


def test_edit_this_one_detaches_and_keeps_slot():
    session = make_session()
    account, expense, _ = seed(session)
    _, rule = monthly_rent(session, account, expense)
    february = rule_rows(session, rule.id)[1]

    TransactionService(session).update(
        february.id,
        edit_of(february, amount_cents=12_345),
        EditScope.this_one,
        today=date(2025, 1, 10),
    )

    assert february.recurrence_rule_id is None
    assert february.detached_rule_id == rule.id
    assert february.amount_cents == 12_345
    assert all(row.amount_cents == 10_000 for row in rule_rows(session, rule.id))
    assert RecurrenceRuleService(session).extend(rule.id, 12, today=date(2025, 1, 10)) == 0


def test_edit_future_updates_later_occurrences_and_rule():
    session = make_session()
    account, expense, _ = seed(session)
    _, rule = monthly_rent(session, account, expense)
    april = rule_rows(session, rule.id)[3]

    TransactionService(session).update(
        april.id,
        edit_of(april, amount_cents=15_000, description="Rent (new lease)"),
        EditScope.future,
        today=date(2025, 1, 10),
    )

    rows = rule_rows(session, rule.id)
    assert [row.amount_cents for row in rows[:3]] == [10_000] * 3
    assert {row.amount_cents for row in rows[3:]} == {15_000}
    assert rows[-1].description == "Rent (new lease)"
    assert rule.amount_cents == 15_000

    RecurrenceRuleService(session).extend(rule.id, 13, today=date(2025, 1, 10))
    assert rule_rows(session, rule.id)[-1].amount_cents == 15_000


def test_edit_all_rebalances_settled_siblings():
    session = make_session()
    account, expense, _ = seed(session)
    first, rule = monthly_rent(session, account, expense)
    service = TransactionService(session)
    service.toggle_paid(rule_rows(session, rule.id)[1].id)
    assert account.current_balance_cents == 40_000

    service.update(
        first.id,
        edit_of(first, amount_cents=20_000),
        EditScope.all,
        today=date(2025, 1, 10),
    )

    assert {row.amount_cents for row in rule_rows(session, rule.id)} == {20_000}
    assert account.current_balance_cents == 30_000


def test_edit_all_with_new_cadence_regenerates_pending_occurrences():
    session = make_session()
    account, expense, _ = seed(session)
    first, rule = monthly_rent(session, account, expense)

    TransactionService(session).update(
        first.id,
        edit_of(
            first,
            recurrence=RecurrenceIn(periodicity=Periodicity.every_n_days, interval_days=30),
        ),
        EditScope.all,
        today=date(2025, 1, 10),
    )

    rows = rule_rows(session, rule.id)
    assert rule.periodicity == Periodicity.every_n_days
    assert [row.date for row in rows[:3]] == [
        date(2025, 1, 10),
        date(2025, 2, 9),
        date(2025, 3, 11),
    ]
    assert len(rows) == 13
    assert {row.recurrence_periodicity for row in rows} == {Periodicity.every_n_days}


def test_edit_rejects_date_taken_by_another_occurrence():
    session = make_session()
    account, expense, _ = seed(session)
    _, rule = monthly_rent(session, account, expense)
    february = rule_rows(session, rule.id)[1]

    with pytest.raises(TransactionValidationError):
        TransactionService(session).update(
            february.id,
            edit_of(february, date=date(2025, 3, 10)),
            EditScope.future,
            today=date(2025, 1, 10),
        )


def test_moving_one_occurrence_past_the_horizon_keeps_the_schedule():
    session = make_session()
    account, expense, _ = seed(session)
    _, rule = monthly_rent(session, account, expense, start=date(2025, 1, 15))
    february = rule_rows(session, rule.id)[1]

    TransactionService(session).update(
        february.id,
        edit_of(february, date=date(2026, 3, 20)),
        EditScope.this_one,
        today=date(2025, 1, 15),
    )

    assert february.scheduled_date == date(2025, 2, 15)
    projection = BalanceProjector(session).project_daily_series(
        [account.id], date(2025, 4, 1), date(2026, 3, 31)
    )
    assert [occurrence.date for occurrence in projection.simulated] == [
        date(2026, 1, 15),
        date(2026, 2, 15),
        date(2026, 3, 15),
    ]

    created = RecurrenceRuleService(session).extend(rule.id, 12, today=date(2025, 4, 1))

    dates = [row.date for row in rule_rows(session, rule.id)]
    assert created == 3
    assert date(2025, 2, 15) not in dates
    assert dates[-3:] == [date(2026, 1, 15), date(2026, 2, 15), date(2026, 3, 15)]
    assert february.date == date(2026, 3, 20)


def test_moved_occurrence_does_not_take_the_date_it_lands_on():
    session = make_session()
    account, expense, _ = seed(session)
    _, rule = monthly_rent(session, account, expense, start=date(2025, 1, 15))
    february = rule_rows(session, rule.id)[1]

    TransactionService(session).update(
        february.id,
        edit_of(february, date=date(2026, 2, 15)),
        EditScope.this_one,
        today=date(2025, 1, 15),
    )

    projection = BalanceProjector(session).project_daily_series(
        [account.id], date(2026, 1, 1), date(2026, 2, 28)
    )
    assert [occurrence.date for occurrence in projection.simulated] == [
        date(2026, 1, 15),
        date(2026, 2, 15),
    ]
    # The moved entry and the simulated occurrence both land on Feb 15.
    assert projection.balance_on(date(2026, 2, 15)) == 50_000 - 3 * 10_000

    RecurrenceRuleService(session).extend(rule.id, 14, today=date(2025, 1, 15))
    assert [row.date for row in rule_rows(session, rule.id)][-2:] == [
        date(2026, 1, 15),
        date(2026, 2, 15),
    ]


def test_this_one_move_onto_another_occurrence_is_rejected():
    session = make_session()
    account, expense, _ = seed(session)
    _, rule = monthly_rent(session, account, expense, start=date(2025, 1, 15))
    february = rule_rows(session, rule.id)[1]

    with pytest.raises(TransactionValidationError):
        TransactionService(session).update(
            february.id,
            edit_of(february, date=date(2025, 3, 15)),
            EditScope.this_one,
            today=date(2025, 1, 15),
        )

    assert february.recurrence_rule_id == rule.id
    assert february.detached_rule_id is None
    projection = BalanceProjector(session).project_daily_series(
        [account.id], date(2025, 2, 1), date(2025, 3, 31)
    )
    assert projection.simulated == []
    assert projection.final_balance_cents == 50_000 - 2 * 10_000


def test_new_cadence_restarts_from_the_edited_occurrence():
    session = make_session()
    account, expense, _ = seed(session)
    first, rule = monthly_rent(session, account, expense, start=date(2025, 1, 15))
    service = TransactionService(session)
    rows = rule_rows(session, rule.id)
    march, june, december = rows[2], rows[5], rows[11]
    service.update(
        march.id,
        edit_of(march, amount_cents=11_000),
        EditScope.this_one,
        today=date(2025, 1, 15),
    )
    service.toggle_paid(june.id)
    service.delete(december.id)
    assert account.current_balance_cents == 40_000

    service.update(
        first.id,
        edit_of(first, recurrence=RecurrenceIn(periodicity=Periodicity.biweekly)),
        EditScope.all,
        today=date(2025, 1, 15),
    )

    dates = [row.date for row in rule_rows(session, rule.id)]
    assert dates[:3] == [date(2025, 1, 15), date(2025, 1, 30), date(2025, 2, 14)]
    assert len(dates) == 25
    assert dates[-1] == date(2026, 1, 10)
    assert session.get(Transaction, december.id) is None
    assert (june.recurrence_rule_id, june.status) == (None, TransactionStatus.paid)
    assert (march.detached_rule_id, march.amount_cents) == (None, 11_000)
    assert account.current_balance_cents == 40_000

    projection = BalanceProjector(session).project_daily_series(
        [account.id], date(2026, 1, 11), date(2026, 3, 1)
    )
    assert [occurrence.date for occurrence in projection.simulated] == [
        date(2026, 1, 25),
        date(2026, 2, 9),
        date(2026, 2, 24),
    ]


def test_recurrence_changes_need_bulk_scope():
    session = make_session()
    account, expense, _ = seed(session)
    first, _ = monthly_rent(session, account, expense)

    with pytest.raises(TransactionValidationError):
        TransactionService(session).update(
            first.id,
            edit_of(first, recurrence=RecurrenceIn(periodicity=Periodicity.biweekly)),
            EditScope.this_one,
            today=date(2025, 1, 10),
        )


def test_edit_future_installments_recomputes_plan_total():
    session = make_session()
    account, expense, _ = seed(session)
    service = TransactionService(session)
    first = service.create(
        new_entry(account, expense, date=date(2025, 1, 15), installment_count=3)
    )
    plan = session.get(InstallmentPlan, first.installment_plan_id)
    second = session.scalar(
        select(Transaction).where(
            Transaction.installment_plan_id == plan.id,
            Transaction.installment_index == 2,
        )
    )

    service.update(second.id, edit_of(second, amount_cents=4_000), EditScope.future)

    amounts = session.scalars(
        select(Transaction.amount_cents)
        .where(Transaction.installment_plan_id == plan.id)
        .order_by(Transaction.installment_index)
    ).all()
    assert amounts == [3_334, 4_000, 4_000]
    assert plan.total_amount_cents == 11_334


def test_toggle_paid_round_trip_restores_balance():
    session = make_session()
    account, expense, income = seed(session)
    service = TransactionService(session)
    bill = service.create(new_entry(account, expense, amount_cents=2_500))
    salary = service.create(new_entry(account, income, amount_cents=9_000))

    service.toggle_paid(bill.id)
    service.toggle_paid(salary.id)
    assert bill.status == TransactionStatus.paid
    assert salary.status == TransactionStatus.received
    assert account.current_balance_cents == 56_500

    service.toggle_paid(bill.id)
    assert bill.status == TransactionStatus.pending
    assert bill.paid_at is None
    assert account.current_balance_cents == 59_000


def test_delete_reverses_balance_and_hides_entry():
    session = make_session()
    account, expense, _ = seed(session)
    service = TransactionService(session)
    paid = service.create(new_entry(account, expense, amount_cents=2_500, is_paid=True))

    service.delete(paid.id)

    assert account.current_balance_cents == 50_000
    with pytest.raises(NotFoundError):
        service.get(paid.id)


def test_delete_installment_updates_plan_total():
    session = make_session()
    account, expense, _ = seed(session)
    service = TransactionService(session)
    first = service.create(
        new_entry(account, expense, date=date(2025, 1, 15), installment_count=3)
    )

    service.delete(first.id)

    plan = session.get(InstallmentPlan, first.installment_plan_id)
    assert plan.total_amount_cents == 6_666


def test_unknown_records_raise_not_found():
    session = make_session()
    seed(session)

    with pytest.raises(NotFoundError):
        TransactionService(session).toggle_paid(999)
    with pytest.raises(NotFoundError):
        RecurrenceRuleService(session).extend("missing")


def test_deactivate_with_cancellation_stops_rule():
    session = make_session()
    account, expense, _ = seed(session)
    _, rule = monthly_rent(session, account, expense)
    service = RecurrenceRuleService(session)

    service.deactivate(rule.id, cancel_pending=True, today=date(2025, 3, 1))

    assert rule.active is False
    assert [row.date for row in rule_rows(session, rule.id)] == [
        date(2025, 1, 10),
        date(2025, 2, 10),
    ]
    assert service.extend_all(12, today=date(2025, 3, 1)) == 0


def test_alert_warns_about_upcoming_negative_balance():
    session = make_session()
    account, expense, _ = seed(session, balance_cents=5_000)
    monthly_rent(session, account, expense, start=date(2025, 1, 10))
    service = ProjectionService(session)

    alert = service.alert(today=date(2025, 2, 5))

    assert alert is not None
    assert alert.first_negative_date == date(2025, 2, 10)
    assert alert.days_until == 5
    assert service.alert(today=date(2025, 2, 5), within_days=2) is None
