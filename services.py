from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload, selectinload

from materializer import StateSweeper, classify
from models import (
    Category,
    EventState,
    IncomeRule,
    MaterializedEvent,
    RecurringRule,
    Tag,
)
from periods import Window, month_window
from recurrence import average_monthly_occurrences, local_today, rule_occurrences
from schemas import CategoryIn, EventIn, IncomeRuleIn, RecurringRuleIn
from stores import EventFilters, EventStore


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class TagService:
    def __init__(self, session: Session, owner_id: int) -> None:
        self.session = session
        self.owner_id = owner_id

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.owner_id == self.owner_id).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.owner_id == self.owner_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(owner_id=self.owner_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: list[str]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[str] = set()
        for name in names:
            key = name.strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            tags.append(self.get_or_create(name))
        return tags


class CategoryService:
    def __init__(self, session: Session, owner_id: int) -> None:
        self.session = session
        self.owner_id = owner_id

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.owner_id != self.owner_id:
            raise ValueError("Category not found")
        return category

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.owner_id == self.owner_id)
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        stmt = select(Category).where(
            Category.owner_id == self.owner_id,
            func.lower(Category.name) == data.name.strip().lower(),
        )
        if self.session.scalar(stmt):
            raise ValueError("Category already exists")
        category = Category(
            owner_id=self.owner_id,
            name=data.name.strip(),
            color=data.color,
            monthly_budget_cents=data.monthly_budget_cents,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def set_budget(self, category_id: int, monthly_budget_cents: int) -> Category:
        if monthly_budget_cents < 0:
            raise ValueError("Budget cannot be negative")
        category = self.get(category_id)
        category.monthly_budget_cents = monthly_budget_cents
        self.session.commit()
        return category


class RecurringRuleService:
    """Rule Store maintenance. Edits never touch already materialized events;
    they show up once the affected windows are synced again."""

    def __init__(self, session: Session, owner_id: int) -> None:
        self.session = session
        self.owner_id = owner_id

    def get(self, rule_id: int) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id)
        if not rule or rule.owner_id != self.owner_id:
            raise ValueError("Rule not found")
        return rule

    def list(self, *, active_only: bool = False) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .options(
                joinedload(RecurringRule.category),
                selectinload(RecurringRule.tags),
            )
            .where(RecurringRule.owner_id == self.owner_id)
            .order_by(RecurringRule.id)
        )
        if active_only:
            stmt = stmt.where(RecurringRule.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        CategoryService(self.session, self.owner_id).get(data.category_id)
        rule = RecurringRule(
            owner_id=self.owner_id,
            category_id=data.category_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            month_day_policy=data.month_day_policy,
            is_active=data.is_active,
        )
        rule.set_frequency(data.frequency.to_frequency())
        rule.tags = TagService(self.session, self.owner_id).resolve(data.tags)
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RecurringRuleIn) -> RecurringRule:
        rule = self.get(rule_id)
        if data.category_id != rule.category_id:
            CategoryService(self.session, self.owner_id).get(data.category_id)
        rule.category_id = data.category_id
        rule.description = data.description.strip()
        rule.amount_cents = data.amount_cents
        rule.month_day_policy = data.month_day_policy
        rule.is_active = data.is_active
        rule.set_frequency(data.frequency.to_frequency())
        rule.tags = TagService(self.session, self.owner_id).resolve(data.tags)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def set_active(self, rule_id: int, is_active: bool) -> RecurringRule:
        rule = self.get(rule_id)
        rule.is_active = is_active
        self.session.commit()
        return rule

    def get_statistics(self) -> dict[str, object]:
        """Monthly-equivalent totals of active rules, by category."""
        expenses_by_category: dict[str, int] = {}
        total_expenses = 0
        skipped = 0
        for rule in self.list(active_only=True):
            spec = rule.frequency_spec()
            if spec is None:
                skipped += 1
                continue
            monthly = _round_cents(
                Decimal(rule.amount_cents) * average_monthly_occurrences(spec)
            )
            total_expenses += monthly
            name = rule.category.name if rule.category else "Uncategorized"
            expenses_by_category[name] = expenses_by_category.get(name, 0) + monthly

        total_income = 0
        for income in IncomeRuleService(self.session, self.owner_id).list(
            active_only=True
        ):
            spec = income.frequency_spec()
            if spec is None:
                skipped += 1
                continue
            total_income += _round_cents(
                Decimal(income.amount_cents) * average_monthly_occurrences(spec)
            )

        coverage_ratio = (
            (total_income / total_expenses * 100) if total_expenses > 0 else 100.0
        )
        breakdown = [
            {
                "name": name,
                "amount_cents": amount,
                "percent": (amount / total_expenses * 100) if total_expenses else 0,
            }
            for name, amount in sorted(
                expenses_by_category.items(), key=lambda x: x[1], reverse=True
            )
        ]
        return {
            "total_monthly_income": total_income,
            "total_monthly_expenses": total_expenses,
            "net_monthly": total_income - total_expenses,
            "coverage_ratio": coverage_ratio,
            "expense_breakdown": breakdown,
            "skipped_rules": skipped,
        }


class IncomeRuleService:
    def __init__(self, session: Session, owner_id: int) -> None:
        self.session = session
        self.owner_id = owner_id

    def get(self, income_id: int) -> IncomeRule:
        income = self.session.get(IncomeRule, income_id)
        if not income or income.owner_id != self.owner_id:
            raise ValueError("Income rule not found")
        return income

    def list(self, *, active_only: bool = False) -> list[IncomeRule]:
        stmt = (
            select(IncomeRule)
            .where(IncomeRule.owner_id == self.owner_id)
            .order_by(IncomeRule.id)
        )
        if active_only:
            stmt = stmt.where(IncomeRule.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def create(self, data: IncomeRuleIn) -> IncomeRule:
        income = IncomeRule(
            owner_id=self.owner_id,
            source=data.source.strip(),
            amount_cents=data.amount_cents,
            monthly_deduction_cents=data.monthly_deduction_cents,
            month_day_policy=data.month_day_policy,
            is_active=data.is_active,
        )
        income.set_frequency(data.frequency.to_frequency())
        self.session.add(income)
        self.session.commit()
        self.session.refresh(income)
        return income

    def set_active(self, income_id: int, is_active: bool) -> IncomeRule:
        income = self.get(income_id)
        income.is_active = is_active
        self.session.commit()
        return income


class EventService:
    """Manual (non-recurring) entries plus read access for consumers."""

    def __init__(self, session: Session, owner_id: int) -> None:
        self.session = session
        self.owner_id = owner_id
        self.store = EventStore(session)

    def get(self, event_id: int) -> MaterializedEvent:
        event = self.session.get(MaterializedEvent, event_id)
        if not event or event.owner_id != self.owner_id:
            raise ValueError("Event not found")
        return event

    def query_events(
        self, window: Window, filters: Optional[EventFilters] = None
    ) -> list[MaterializedEvent]:
        return self.store.query_events(self.owner_id, window, filters)

    def create(self, data: EventIn, *, as_of: Optional[date] = None) -> MaterializedEvent:
        CategoryService(self.session, self.owner_id).get(data.category_id)
        as_of = as_of or local_today()
        event = MaterializedEvent(
            owner_id=self.owner_id,
            category_id=data.category_id,
            date=data.date,
            amount_cents=data.amount_cents,
            total_amount_cents=(
                data.total_amount_cents
                if data.total_amount_cents is not None
                else data.amount_cents
            ),
            description=data.description.strip(),
            state=classify(data.date, as_of),
            origin_rule_id=None,
        )
        event.tags = TagService(self.session, self.owner_id).resolve(data.tags)
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def update(
        self, event_id: int, data: EventIn, *, as_of: Optional[date] = None
    ) -> MaterializedEvent:
        event = self._manual(event_id)
        if data.category_id != event.category_id:
            CategoryService(self.session, self.owner_id).get(data.category_id)
        as_of = as_of or local_today()
        event.category_id = data.category_id
        event.date = data.date
        event.amount_cents = data.amount_cents
        event.total_amount_cents = (
            data.total_amount_cents
            if data.total_amount_cents is not None
            else data.amount_cents
        )
        event.description = data.description.strip()
        event.state = classify(data.date, as_of)
        event.tags = TagService(self.session, self.owner_id).resolve(data.tags)
        self.session.commit()
        self.session.refresh(event)
        return event

    def delete(self, event_id: int) -> None:
        event = self._manual(event_id)
        self.store.delete_events([event])
        self.session.commit()

    def _manual(self, event_id: int) -> MaterializedEvent:
        event = self.get(event_id)
        if event.is_rule_owned:
            raise ValueError("Recurring events are managed by sync")
        return event


@dataclass
class CategorySpend:
    category_id: int
    name: str
    budget_cents: int
    actual_cents: int = 0
    projected_cents: int = 0

    @property
    def spent_cents(self) -> int:
        return self.actual_cents + self.projected_cents

    @property
    def remaining_cents(self) -> int:
        return self.budget_cents - self.spent_cents


@dataclass
class IncomeLine:
    income_rule_id: int
    source: str
    occurrences: int
    gross_cents: int
    deduction_cents: int

    @property
    def net_cents(self) -> int:
        return self.gross_cents - self.deduction_cents


@dataclass
class MonthSummary:
    window: Window
    as_of: date
    categories: list[CategorySpend] = field(default_factory=list)
    by_tag: dict[str, int] = field(default_factory=dict)
    income: list[IncomeLine] = field(default_factory=list)

    @property
    def actual_cents(self) -> int:
        return sum(c.actual_cents for c in self.categories)

    @property
    def projected_cents(self) -> int:
        return sum(c.projected_cents for c in self.categories)

    @property
    def spent_cents(self) -> int:
        return self.actual_cents + self.projected_cents

    @property
    def budget_cents(self) -> int:
        return sum(c.budget_cents for c in self.categories)

    @property
    def gross_income_cents(self) -> int:
        return sum(line.gross_cents for line in self.income)

    @property
    def net_income_cents(self) -> int:
        return sum(line.net_cents for line in self.income)

    @property
    def cashflow_cents(self) -> int:
        return self.net_income_cents - self.spent_cents


DeductionSource = Callable[[IncomeRule], int]


def stored_monthly_deduction(income: IncomeRule) -> int:
    return income.monthly_deduction_cents


class SummaryService:
    """Spend-vs-budget and cashflow figures built from materialized events."""

    def __init__(
        self,
        session: Session,
        owner_id: int,
        *,
        deductions: Optional[DeductionSource] = None,
    ) -> None:
        self.session = session
        self.owner_id = owner_id
        self.deductions = deductions or stored_monthly_deduction

    def month_summary(
        self,
        year: int,
        month: int,
        *,
        as_of: Optional[date] = None,
        settle: bool = True,
    ) -> MonthSummary:
        window = month_window(year, month)
        as_of = as_of or local_today()
        if settle:
            StateSweeper(self.session).sweep(self.owner_id, as_of)

        summary = MonthSummary(window=window, as_of=as_of)
        spend: dict[int, CategorySpend] = {
            c.id: CategorySpend(
                category_id=c.id, name=c.name, budget_cents=c.monthly_budget_cents
            )
            for c in CategoryService(self.session, self.owner_id).list_all()
        }
        events = EventStore(self.session).query_events(self.owner_id, window)
        for event in events:
            row = spend.get(event.category_id)
            if row is None:
                row = spend[event.category_id] = CategorySpend(
                    category_id=event.category_id,
                    name=event.category.name,
                    budget_cents=event.category.monthly_budget_cents,
                )
            if event.state == EventState.actual:
                row.actual_cents += event.amount_cents
            else:
                row.projected_cents += event.amount_cents
            for tag in event.tags:
                summary.by_tag[tag.name] = (
                    summary.by_tag.get(tag.name, 0) + event.amount_cents
                )
        summary.categories = sorted(spend.values(), key=lambda c: c.name)
        summary.income = self.income_lines(window)
        return summary

    def income_lines(self, window: Window) -> list[IncomeLine]:
        """Recurring income for a one-month window.

        Gross uses the exact number of pay dates inside the window; the
        monthly deduction total applies once when at least one falls in it.
        """
        lines: list[IncomeLine] = []
        for income in IncomeRuleService(self.session, self.owner_id).list(
            active_only=True
        ):
            count = len(rule_occurrences(income, window.start, window.end))
            lines.append(
                IncomeLine(
                    income_rule_id=income.id,
                    source=income.source,
                    occurrences=count,
                    gross_cents=income.amount_cents * count,
                    deduction_cents=self.deductions(income) if count else 0,
                )
            )
        return lines
