"""initial schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


KIND = sa.Enum("income", "expense", name="transactionkind")
PERIODICITY = sa.Enum(
    "monthly", "biweekly", "every_n_days", "every_n_months", name="periodicity"
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "wallet",
                "checking",
                "savings",
                "investment",
                "credit_card",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("initial_balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("closing_day", sa.Integer()),
        sa.Column("due_day", sa.Integer()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("include_in_total", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_account_user_name"),
        sa.CheckConstraint(
            "closing_day IS NULL OR (closing_day >= 0 AND closing_day <= 31)",
            name="ck_account_closing_day",
        ),
        sa.CheckConstraint(
            "due_day IS NULL OR (due_day >= 0 AND due_day <= 31)",
            name="ck_account_due_day",
        ),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("kind", KIND, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "kind", "name", name="uq_category_user_kind_name"),
    )

    op.create_table(
        "recurrence_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("kind", KIND, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("periodicity", PERIODICITY),
        sa.Column("interval_days", sa.Integer()),
        sa.Column("interval_months", sa.Integer()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("tags", sa.JSON(), nullable=False, server_default="[]"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        sa.CheckConstraint(
            "periodicity != 'every_n_days' OR coalesce(interval_days, 0) >= 1",
            name="ck_rule_interval_days",
        ),
        sa.CheckConstraint(
            "periodicity != 'every_n_months' OR coalesce(interval_months, 0) >= 1",
            name="ck_rule_interval_months",
        ),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="ck_rule_end_after_start"
        ),
    )
    op.create_index("ix_rules_user_active", "recurrence_rules", ["user_id", "active"])

    op.create_table(
        "installment_plans",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("installment_count", sa.Integer(), nullable=False),
        sa.Column("first_installment_date", sa.Date(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False, server_default="[]"),
        *_timestamps(),
        sa.CheckConstraint("installment_count >= 2", name="ck_plan_count_min"),
        sa.CheckConstraint("total_amount_cents >= 0", name="ck_plan_total_positive"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("kind", KIND, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "paid", "received", name="transactionstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("recurrence_periodicity", PERIODICITY),
        sa.Column("recurrence_end_date", sa.Date()),
        sa.Column("scheduled_date", sa.Date()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column(
            "recurrence_rule_id", sa.String(length=36), sa.ForeignKey("recurrence_rules.id")
        ),
        sa.Column("detached_rule_id", sa.String(length=36)),
        sa.Column(
            "installment_plan_id", sa.String(length=36), sa.ForeignKey("installment_plans.id")
        ),
        sa.Column("installment_index", sa.Integer()),
        sa.Column("installment_total", sa.Integer()),
        sa.Column("tags", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint(
            "recurrence_rule_id", "scheduled_date", name="uq_txn_rule_slot"
        ),
        sa.CheckConstraint(
            "recurrence_rule_id IS NULL OR installment_plan_id IS NULL",
            name="ck_txn_rule_xor_plan",
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_account_status_date",
        "transactions",
        ["account_id", "status", "date"],
    )
    op.create_index(
        "ix_transactions_plan_index",
        "transactions",
        ["installment_plan_id", "installment_index"],
    )
    op.create_index(
        "ix_transactions_detached_rule", "transactions", ["detached_rule_id", "scheduled_date"]
    )

    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("kind", KIND, nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="templatefrequency"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("next_run_on", sa.Date(), nullable=False),
        sa.Column("end_on", sa.Date()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("tags", sa.JSON(), nullable=False, server_default="[]"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
    )
    op.create_index(
        "ix_templates_active_next_run", "recurring_templates", ["active", "next_run_on"]
    )


def downgrade():
    op.drop_index("ix_templates_active_next_run", table_name="recurring_templates")
    op.drop_table("recurring_templates")
    op.drop_index("ix_transactions_detached_rule", table_name="transactions")
    op.drop_index("ix_transactions_plan_index", table_name="transactions")
    op.drop_index("ix_transactions_account_status_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("installment_plans")
    op.drop_index("ix_rules_user_active", table_name="recurrence_rules")
    op.drop_table("recurrence_rules")
    op.drop_table("categories")
    op.drop_table("accounts")
