import datetime as dt
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import EventState
from recurrence import (
    Biweekly,
    MonthDayPolicy,
    Monthly,
    SemiMonthly,
    Weekday,
    Weekly,
    Yearly,
)


class MonthlyIn(BaseModel):
    kind: Literal["monthly"] = "monthly"
    day_of_month: int = Field(..., ge=1, le=31)

    def to_frequency(self) -> Monthly:
        return Monthly(self.day_of_month)


class WeeklyIn(BaseModel):
    kind: Literal["weekly"] = "weekly"
    day_of_week: Weekday

    def to_frequency(self) -> Weekly:
        return Weekly(int(self.day_of_week))


class YearlyIn(BaseModel):
    kind: Literal["yearly"] = "yearly"
    month_of_year: int = Field(..., ge=1, le=12)
    day_of_month: int = Field(..., ge=1, le=31)

    def to_frequency(self) -> Yearly:
        return Yearly(self.month_of_year, self.day_of_month)


class BiweeklyIn(BaseModel):
    kind: Literal["biweekly"] = "biweekly"
    anchor_date: dt.date

    def to_frequency(self) -> Biweekly:
        return Biweekly(self.anchor_date)


class SemiMonthlyIn(BaseModel):
    kind: Literal["semi_monthly"] = "semi_monthly"
    first_day: int = Field(..., ge=1, le=31)
    second_day: int = Field(..., ge=1, le=31)

    def to_frequency(self) -> SemiMonthly:
        return SemiMonthly(self.first_day, self.second_day)


FrequencyIn = Annotated[
    Union[MonthlyIn, WeeklyIn, YearlyIn, BiweeklyIn, SemiMonthlyIn],
    Field(discriminator="kind"),
]


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=7)
    monthly_budget_cents: int = Field(default=0, ge=0)


class RecurringRuleIn(BaseModel):
    category_id: int
    description: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    frequency: FrequencyIn
    month_day_policy: MonthDayPolicy = MonthDayPolicy.snap_to_end
    is_active: bool = True
    tags: list[str] = Field(default_factory=list)


class IncomeRuleIn(BaseModel):
    source: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    frequency: FrequencyIn
    month_day_policy: MonthDayPolicy = MonthDayPolicy.snap_to_end
    monthly_deduction_cents: int = Field(default=0, ge=0)
    is_active: bool = True


class EventIn(BaseModel):
    category_id: int
    date: dt.date
    amount_cents: int = Field(..., ge=0)
    total_amount_cents: Optional[int] = Field(default=None, ge=0)
    description: str = Field(..., min_length=1, max_length=200)
    tags: list[str] = Field(default_factory=list)


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    category_id: int
    date: dt.date
    amount: Decimal
    total_amount: Decimal
    description: str
    state: EventState
    origin_rule_id: Optional[int]
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _tag_names(cls, value):
        return [getattr(tag, "name", tag) for tag in value or []]


class SyncReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    owner_id: int
    as_of: dt.date
    inserted: int
    updated: int
    unchanged: int
    deleted: int
    preserved: int
    skipped_duplicates: int
    skipped_rules: int
    failed: int
    version: int
