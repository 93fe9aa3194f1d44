import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from models import (
    EventState,
    FrequencyKind,
    MaterializedEvent,
    RecurringRule,
    Tag,
    utcnow,
)
from periods import Window
from recurrence import Frequency, MonthDayPolicy


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleSnapshot:
    """Read-only copy of a rule taken at the start of a sync pass."""

    id: int
    owner_id: int
    category_id: int
    description: str
    amount_cents: int
    frequency: FrequencyKind
    month_day_policy: MonthDayPolicy
    spec: Optional[Frequency]
    tag_ids: tuple[int, ...]

    @classmethod
    def from_rule(cls, rule: RecurringRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            owner_id=rule.owner_id,
            category_id=rule.category_id,
            description=rule.description,
            amount_cents=rule.amount_cents,
            frequency=rule.frequency,
            month_day_policy=rule.month_day_policy,
            spec=rule.frequency_spec(),
            tag_ids=tuple(sorted(tag.id for tag in rule.tags)),
        )

    def frequency_spec(self) -> Optional[Frequency]:
        return self.spec


class RuleStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_active_rules(self, owner_id: int) -> list[RuleSnapshot]:
        stmt = (
            select(RecurringRule)
            .options(selectinload(RecurringRule.tags))
            .where(
                RecurringRule.owner_id == owner_id,
                RecurringRule.is_active.is_(True),
            )
            .order_by(RecurringRule.id)
        )
        return [RuleSnapshot.from_rule(rule) for rule in self.session.scalars(stmt)]

    def owners_with_active_rules(self) -> list[int]:
        stmt = (
            select(RecurringRule.owner_id)
            .where(RecurringRule.is_active.is_(True))
            .distinct()
            .order_by(RecurringRule.owner_id)
        )
        return list(self.session.scalars(stmt))


@dataclass
class EventFilters:
    state: Optional[EventState] = None
    category_id: Optional[int] = None
    tag_id: Optional[int] = None
    rule_owned: Optional[bool] = None


class EventStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def query_events(
        self,
        owner_id: int,
        window: Window,
        filters: Optional[EventFilters] = None,
    ) -> list[MaterializedEvent]:
        filters = filters or EventFilters()
        stmt = (
            select(MaterializedEvent)
            .options(
                joinedload(MaterializedEvent.category),
                selectinload(MaterializedEvent.tags),
            )
            .where(
                MaterializedEvent.owner_id == owner_id,
                MaterializedEvent.date.between(window.start, window.end),
            )
            .order_by(MaterializedEvent.date, MaterializedEvent.id)
        )
        if filters.state is not None:
            stmt = stmt.where(MaterializedEvent.state == filters.state)
        if filters.category_id is not None:
            stmt = stmt.where(MaterializedEvent.category_id == filters.category_id)
        if filters.tag_id is not None:
            stmt = stmt.where(MaterializedEvent.tags.any(Tag.id == filters.tag_id))
        if filters.rule_owned is True:
            stmt = stmt.where(MaterializedEvent.origin_rule_id.is_not(None))
        elif filters.rule_owned is False:
            stmt = stmt.where(MaterializedEvent.origin_rule_id.is_(None))
        return list(self.session.scalars(stmt).unique())

    def rule_owned_events(
        self, owner_id: int, window: Window
    ) -> list[MaterializedEvent]:
        return self.query_events(owner_id, window, EventFilters(rule_owned=True))

    def insert_event(self, event: MaterializedEvent) -> bool:
        """Insert one event inside its own SAVEPOINT.

        Constraint violations are logged and reported as ``False``; lock and
        connection errors propagate to the caller.
        """
        try:
            with self.session.begin_nested():
                self.session.add(event)
                self.session.flush()
        except IntegrityError as exc:
            logger.warning(
                f"event_insert_failed: owner={event.owner_id} "
                f"rule_id={event.origin_rule_id} date={event.date} error={exc}",
                extra={
                    "owner_id": event.owner_id,
                    "rule_id": event.origin_rule_id,
                    "date": event.date.isoformat(),
                },
            )
            return False
        return True

    def delete_events(self, events: Iterable[MaterializedEvent]) -> int:
        count = 0
        for event in events:
            self.session.delete(event)
            count += 1
        if count:
            self.session.flush()
        return count

    def delete_rule_owned(self, owner_id: int, window: Window) -> int:
        return self.delete_events(self.rule_owned_events(owner_id, window))

    def update_event_state(self, event_id: int, state: EventState) -> bool:
        event = self.session.get(MaterializedEvent, event_id)
        if event is None:
            return False
        if event.state != state:
            event.state = state
            self.session.flush()
        return True

    def settle_projected(self, as_of: date, owner_id: Optional[int] = None) -> int:
        """Flip every Projected event dated before ``as_of`` to Actual."""
        stmt = (
            update(MaterializedEvent)
            .where(
                MaterializedEvent.state == EventState.projected,
                MaterializedEvent.date < as_of,
            )
            .values(state=EventState.actual, updated_at=utcnow())
            .execution_options(synchronize_session="evaluate")
        )
        if owner_id is not None:
            stmt = stmt.where(MaterializedEvent.owner_id == owner_id)
        result = self.session.execute(stmt)
        return result.rowcount or 0
