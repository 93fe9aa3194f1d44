"""initial schema: rules, materialized events, income rules, sync checkpoints

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


FREQUENCY_KIND = ("monthly", "weekly", "yearly", "biweekly", "semi_monthly")
MONTH_DAY_POLICY = ("snap_to_end", "skip")


def _timestamps():
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def _frequency_columns(enum_suffix: str):
    return [
        sa.Column(
            "frequency",
            sa.Enum(*FREQUENCY_KIND, name=f"frequencykind_{enum_suffix}"),
            nullable=False,
        ),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("second_day_of_month", sa.Integer(), nullable=True),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("month_of_year", sa.Integer(), nullable=True),
        sa.Column("anchor_date", sa.Date(), nullable=True),
        sa.Column(
            "month_day_policy",
            sa.Enum(*MONTH_DAY_POLICY, name=f"monthdaypolicy_{enum_suffix}"),
            nullable=False,
            server_default="snap_to_end",
        ),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=True),
        sa.Column(
            "monthly_budget_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
        sa.UniqueConstraint("owner_id", "name", name="uq_category_owner_name"),
        sa.CheckConstraint(
            "monthly_budget_cents >= 0", name="ck_category_budget_positive"
        ),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("owner_id", "name", name="uq_tag_owner_name"),
    )

    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        *_frequency_columns("rule"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_rule_amount_positive"),
    )
    op.create_index(
        "ix_recurring_rules_owner_active",
        "recurring_rules",
        ["owner_id", "is_active"],
    )

    op.create_table(
        "recurring_rule_tags",
        sa.Column(
            "rule_id",
            sa.Integer(),
            sa.ForeignKey("recurring_rules.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "materialized_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column(
            "state",
            sa.Enum("projected", "actual", name="eventstate"),
            nullable=False,
        ),
        sa.Column(
            "origin_rule_id",
            sa.Integer(),
            sa.ForeignKey("recurring_rules.id"),
            nullable=True,
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "owner_id", "origin_rule_id", "date", name="uq_event_origin_occurrence"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_events_amount_positive"),
        sa.CheckConstraint(
            "total_amount_cents >= 0", name="ck_events_total_amount_positive"
        ),
    )
    op.create_index(
        "ix_events_owner_date", "materialized_events", ["owner_id", "date"]
    )
    op.create_index(
        "ix_events_owner_state_date",
        "materialized_events",
        ["owner_id", "state", "date"],
    )
    op.create_index(
        "ix_events_owner_category_date",
        "materialized_events",
        ["owner_id", "category_id", "date"],
    )

    op.create_table(
        "event_tags",
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("materialized_events.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "income_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "monthly_deduction_cents",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        *_frequency_columns("income"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
        sa.CheckConstraint(
            "monthly_deduction_cents >= 0", name="ck_income_deduction_positive"
        ),
    )

    op.create_table(
        "sync_checkpoints",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("window_start", sa.Date(), nullable=False),
        sa.Column("window_end", sa.Date(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("as_of", sa.Date(), nullable=True),
        sa.Column("synced_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "owner_id", "window_start", "window_end", name="uq_checkpoint_window"
        ),
    )


def downgrade():
    op.drop_table("sync_checkpoints")
    op.drop_table("income_rules")
    op.drop_table("event_tags")
    op.drop_index("ix_events_owner_category_date", table_name="materialized_events")
    op.drop_index("ix_events_owner_state_date", table_name="materialized_events")
    op.drop_index("ix_events_owner_date", table_name="materialized_events")
    op.drop_table("materialized_events")
    op.drop_table("recurring_rule_tags")
    op.drop_index("ix_recurring_rules_owner_active", table_name="recurring_rules")
    op.drop_table("recurring_rules")
    op.drop_table("tags")
    op.drop_table("categories")
