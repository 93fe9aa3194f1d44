from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from recurrence import (
    Biweekly,
    Frequency,
    MonthDayPolicy,
    Monthly,
    SemiMonthly,
    Weekly,
    Yearly,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))


class FrequencyKind(str, Enum):
    monthly = "monthly"
    weekly = "weekly"
    yearly = "yearly"
    biweekly = "biweekly"
    semi_monthly = "semi_monthly"


class EventState(str, Enum):
    projected = "projected"
    actual = "actual"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class FrequencyMixin:
    """Relational storage of a frequency: a kind plus the anchors it needs.

    Rows may carry missing or out-of-range anchors (legacy data, direct
    inserts); ``frequency_spec`` returns ``None`` for those instead of raising.
    """

    frequency: Mapped[FrequencyKind] = mapped_column(
        SAEnum(FrequencyKind), nullable=False
    )
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    second_day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)
    month_of_year: Mapped[Optional[int]] = mapped_column(Integer)
    anchor_date: Mapped[Optional[date]] = mapped_column(Date)
    month_day_policy: Mapped[MonthDayPolicy] = mapped_column(
        SAEnum(MonthDayPolicy), default=MonthDayPolicy.snap_to_end, nullable=False
    )

    def frequency_spec(self) -> Optional[Frequency]:
        try:
            if self.frequency == FrequencyKind.monthly:
                return Monthly(self.day_of_month)
            if self.frequency == FrequencyKind.weekly:
                return Weekly(self.day_of_week)
            if self.frequency == FrequencyKind.yearly:
                return Yearly(self.month_of_year, self.day_of_month)
            if self.frequency == FrequencyKind.biweekly:
                return Biweekly(self.anchor_date)
            if self.frequency == FrequencyKind.semi_monthly:
                return SemiMonthly(self.day_of_month, self.second_day_of_month)
        except (TypeError, ValueError):
            return None
        return None

    def set_frequency(self, spec: Frequency) -> None:
        self.day_of_month = None
        self.second_day_of_month = None
        self.day_of_week = None
        self.month_of_year = None
        self.anchor_date = None
        if isinstance(spec, Monthly):
            self.frequency = FrequencyKind.monthly
            self.day_of_month = spec.day
        elif isinstance(spec, Weekly):
            self.frequency = FrequencyKind.weekly
            self.day_of_week = spec.weekday
        elif isinstance(spec, Yearly):
            self.frequency = FrequencyKind.yearly
            self.month_of_year = spec.month
            self.day_of_month = spec.day
        elif isinstance(spec, Biweekly):
            self.frequency = FrequencyKind.biweekly
            self.anchor_date = spec.anchor
        elif isinstance(spec, SemiMonthly):
            self.frequency = FrequencyKind.semi_monthly
            self.day_of_month = spec.first_day
            self.second_day_of_month = spec.second_day
        else:
            raise ValueError(f"Unsupported frequency: {spec!r}")


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    monthly_budget_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    recurring_rules: Mapped[list["RecurringRule"]] = relationship(
        "RecurringRule", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_category_owner_name"),
        CheckConstraint(
            "monthly_budget_cents >= 0", name="ck_category_budget_positive"
        ),
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_tag_owner_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))


event_tags = Table(
    "event_tags",
    Base.metadata,
    Column("event_id", Integer, ForeignKey("materialized_events.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)

recurring_rule_tags = Table(
    "recurring_rule_tags",
    Base.metadata,
    Column("rule_id", Integer, ForeignKey("recurring_rules.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class RecurringRule(Base, TimestampMixin, FrequencyMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="recurring_rules"
    )
    tags: Mapped[list["Tag"]] = relationship("Tag", secondary="recurring_rule_tags")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_rule_amount_positive"),
        Index("ix_recurring_rules_owner_active", "owner_id", "is_active"),
    )

    @property
    def amount(self) -> Decimal:
        return cents_to_decimal(self.amount_cents)


class MaterializedEvent(Base, TimestampMixin):
    __tablename__ = "materialized_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    state: Mapped[EventState] = mapped_column(SAEnum(EventState), nullable=False)
    origin_rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_rules.id")
    )

    category: Mapped["Category"] = relationship("Category")
    origin_rule: Mapped[Optional["RecurringRule"]] = relationship("RecurringRule")
    tags: Mapped[list["Tag"]] = relationship("Tag", secondary="event_tags")

    __table_args__ = (
        UniqueConstraint(
            "owner_id",
            "origin_rule_id",
            "date",
            name="uq_event_origin_occurrence",
        ),
        Index("ix_events_owner_date", "owner_id", "date"),
        Index("ix_events_owner_state_date", "owner_id", "state", "date"),
        Index("ix_events_owner_category_date", "owner_id", "category_id", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_events_amount_positive"),
        CheckConstraint(
            "total_amount_cents >= 0", name="ck_events_total_amount_positive"
        ),
    )

    @property
    def amount(self) -> Decimal:
        return cents_to_decimal(self.amount_cents)

    @property
    def total_amount(self) -> Decimal:
        return cents_to_decimal(self.total_amount_cents)

    @property
    def is_rule_owned(self) -> bool:
        return self.origin_rule_id is not None


class IncomeRule(Base, TimestampMixin, FrequencyMixin):
    __tablename__ = "income_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_deduction_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
        CheckConstraint(
            "monthly_deduction_cents >= 0", name="ck_income_deduction_positive"
        ),
    )


class SyncCheckpoint(Base):
    __tablename__ = "sync_checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    window_start: Mapped[date] = mapped_column(Date, nullable=False)
    window_end: Mapped[date] = mapped_column(Date, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    as_of: Mapped[Optional[date]] = mapped_column(Date)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "window_start", "window_end", name="uq_checkpoint_window"
        ),
    )
