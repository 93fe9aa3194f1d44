"""Materialization of recurring rules into dated events.

A sync pass for one ``(owner, window)`` runs in three phases:

1. snapshot the owner's active rules and the rule-owned events already stored
   in the window;
2. plan: compute occurrences, drop candidates the dedup guard rejects and
   classify the rest as projected or actual against ``as_of``;
3. apply: diff the plan against the stored events and write the difference
   inside a single SAVEPOINT, bumping the window's checkpoint version.

Cancellation is only honoured before phase 3, so a cancelled or failed pass
never leaves a window with its events deleted but not regenerated.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Iterator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from config import get_settings
from models import EventState, MaterializedEvent, SyncCheckpoint, Tag, utcnow
from periods import Window
from recurrence import local_today, rule_occurrences
from stores import EventFilters, EventStore, RuleSnapshot, RuleStore


logger = logging.getLogger(__name__)


class SyncError(RuntimeError):
    pass


class SyncBusy(SyncError):
    """Another sync of the same window is running in this process."""


class ConcurrentSyncError(SyncError):
    """The window was synced by someone else while this pass was running."""


class SyncCancelled(SyncError):
    pass


def classify(day: date, as_of: date) -> EventState:
    return EventState.actual if day < as_of else EventState.projected


def _raise_if_cancelled(
    cancel: Optional[threading.Event], deadline: Optional[float]
) -> None:
    if cancel is not None and cancel.is_set():
        raise SyncCancelled("sync cancelled")
    if deadline is not None and time.monotonic() >= deadline:
        raise SyncCancelled("sync deadline exceeded")


class WindowLocks:
    """Per-``(owner, window)`` mutexes shared by every sync in the process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[int, date, date], threading.Lock] = {}

    @contextmanager
    def hold(self, owner_id: int, window: Window, timeout: float) -> Iterator[None]:
        key = (owner_id, window.start, window.end)
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        if not lock.acquire(timeout=timeout):
            raise SyncBusy(
                f"Sync already running for owner {owner_id} "
                f"{window.start}..{window.end}"
            )
        try:
            yield
        finally:
            lock.release()


window_locks = WindowLocks()


class DedupGuard:
    """Tracks ``(owner, category, date, description)`` keys for one sync pass.

    Seeded with the events that survive the pass (manual entries and, when
    settled events are preserved, those too); candidates claimed during the
    pass are added to the in-flight batch.
    """

    def __init__(self, existing: Iterable[MaterializedEvent] = ()) -> None:
        self._stored = {
            self.key(e.owner_id, e.category_id, e.date, e.description)
            for e in existing
        }
        self._batch: set[tuple[int, int, date, str]] = set()

    @staticmethod
    def key(
        owner_id: int, category_id: int, day: date, description: str
    ) -> tuple[int, int, date, str]:
        return (owner_id, category_id, day, description)

    def exists(
        self, owner_id: int, category_id: int, day: date, description: str
    ) -> bool:
        key = self.key(owner_id, category_id, day, description)
        return key in self._stored or key in self._batch

    def claim(
        self, owner_id: int, category_id: int, day: date, description: str
    ) -> bool:
        if self.exists(owner_id, category_id, day, description):
            return False
        self._batch.add(self.key(owner_id, category_id, day, description))
        return True


@dataclass(frozen=True)
class PlannedEvent:
    rule_id: int
    category_id: int
    date: date
    amount_cents: int
    description: str
    tag_ids: tuple[int, ...]
    state: EventState


@dataclass
class SyncReport:
    owner_id: int
    window: Window
    as_of: date
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    preserved: int = 0
    skipped_duplicates: int = 0
    skipped_rules: int = 0
    failed: int = 0
    version: int = 0
    rules: int = 0
    failures: list[date] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


class Materializer:
    def __init__(
        self,
        session: Session,
        *,
        preserve_actual: Optional[bool] = None,
        lock_timeout: Optional[float] = None,
        locks: Optional[WindowLocks] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.rules = RuleStore(session)
        self.events = EventStore(session)
        self.preserve_actual = (
            settings.sync_preserve_actual if preserve_actual is None else preserve_actual
        )
        self.lock_timeout = (
            settings.sync_lock_timeout_secs if lock_timeout is None else lock_timeout
        )
        self.locks = locks or window_locks

    def sync(
        self,
        owner_id: int,
        window: Window,
        *,
        as_of: Optional[date] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        commit: bool = False,
    ) -> SyncReport:
        """Regenerate every rule-owned event of ``owner_id`` inside ``window``.

        Manual events (no origin rule) are never touched. With ``commit`` the
        session is committed, or rolled back on error, before the window lock
        is released, so a second sync of the same window only starts once this
        pass is durable. Without it the caller owns the surrounding
        transaction and nothing is committed here.
        """
        as_of = as_of or local_today()
        deadline = time.monotonic() + timeout if timeout is not None else None
        report = SyncReport(owner_id=owner_id, window=window, as_of=as_of)

        with self.locks.hold(owner_id, window, self.lock_timeout):
            try:
                self._run(owner_id, window, report, cancel, deadline, commit)
            except Exception:
                if commit:
                    self.session.rollback()
                raise

        logger.info(
            f"sync_done: owner={owner_id} window={window.start}..{window.end} "
            f"as_of={as_of} rules={report.rules} inserted={report.inserted} "
            f"updated={report.updated} deleted={report.deleted} "
            f"duplicates={report.skipped_duplicates} failed={report.failed}"
        )
        return report

    def ensure_synced(
        self,
        owner_id: int,
        window: Window,
        *,
        max_age: timedelta,
        as_of: Optional[date] = None,
        commit: bool = False,
    ) -> Optional[SyncReport]:
        """Sync only if the window was never synced, synced for another as-of
        date, or synced longer than ``max_age`` ago."""
        as_of = as_of or local_today()
        checkpoint = self.session.scalar(
            select(SyncCheckpoint).where(
                SyncCheckpoint.owner_id == owner_id,
                SyncCheckpoint.window_start == window.start,
                SyncCheckpoint.window_end == window.end,
            )
        )
        if (
            checkpoint is not None
            and checkpoint.as_of == as_of
            and checkpoint.synced_at is not None
            and utcnow() - checkpoint.synced_at < max_age
        ):
            return None
        if commit:
            # End the read transaction so the pass snapshots under the lock.
            self.session.rollback()
        return self.sync(owner_id, window, as_of=as_of, commit=commit)

    def _run(
        self,
        owner_id: int,
        window: Window,
        report: SyncReport,
        cancel: Optional[threading.Event],
        deadline: Optional[float],
        commit: bool,
    ) -> None:
        expected_version = self._checkpoint_version(owner_id, window)
        rules = self.rules.list_active_rules(owner_id)
        report.rules = len(rules)
        _raise_if_cancelled(cancel, deadline)

        existing = self.events.rule_owned_events(owner_id, window)
        preserved = [
            e for e in existing if self.preserve_actual and e.state == EventState.actual
        ]
        preserved_ids = {e.id for e in preserved}
        replaceable = [e for e in existing if e.id not in preserved_ids]
        report.preserved = len(preserved)

        manual = self.events.query_events(
            owner_id, window, EventFilters(rule_owned=False)
        )
        guard = DedupGuard([*manual, *preserved])
        held = {(e.origin_rule_id, e.date) for e in preserved}

        plan = self._plan(
            owner_id, window, rules, guard, held, report.as_of, report, cancel, deadline
        )
        _raise_if_cancelled(cancel, deadline)

        try:
            with self.session.begin_nested():
                self._apply(owner_id, plan, replaceable, report)
                report.version = self._bump_checkpoint(
                    owner_id, window, expected_version, report.as_of
                )
            if commit:
                self.session.commit()
        except OperationalError as exc:
            # SQLite reports a writer that overtook our snapshot as "locked".
            raise ConcurrentSyncError(
                f"Window {window.start}..{window.end} is being written by "
                f"another sync: {exc.orig}"
            ) from exc

    def _plan(
        self,
        owner_id: int,
        window: Window,
        rules: list[RuleSnapshot],
        guard: DedupGuard,
        held: set[tuple[int, date]],
        as_of: date,
        report: SyncReport,
        cancel: Optional[threading.Event],
        deadline: Optional[float],
    ) -> list[PlannedEvent]:
        plan: list[PlannedEvent] = []
        for rule in rules:
            _raise_if_cancelled(cancel, deadline)
            if rule.frequency_spec() is None:
                report.skipped_rules += 1
            for day in rule_occurrences(rule, window.start, window.end):
                if (rule.id, day) in held:
                    continue
                if not guard.claim(owner_id, rule.category_id, day, rule.description):
                    report.skipped_duplicates += 1
                    logger.info(
                        f"duplicate_skipped: owner={owner_id} rule_id={rule.id} "
                        f"date={day} category_id={rule.category_id}"
                    )
                    continue
                plan.append(
                    PlannedEvent(
                        rule_id=rule.id,
                        category_id=rule.category_id,
                        date=day,
                        amount_cents=rule.amount_cents,
                        description=rule.description,
                        tag_ids=rule.tag_ids,
                        state=classify(day, as_of),
                    )
                )
        return plan

    def _apply(
        self,
        owner_id: int,
        plan: list[PlannedEvent],
        replaceable: list[MaterializedEvent],
        report: SyncReport,
    ) -> None:
        tags = self._load_tags({tag_id for p in plan for tag_id in p.tag_ids})
        pending = {(p.rule_id, p.date): p for p in plan}

        stale: list[MaterializedEvent] = []
        for event in replaceable:
            planned = pending.pop((event.origin_rule_id, event.date), None)
            if planned is None:
                stale.append(event)
            elif self._refresh(event, planned, tags):
                report.updated += 1
            else:
                report.unchanged += 1
        report.deleted = self.events.delete_events(stale)

        for planned in pending.values():
            event = self._new_event(owner_id, planned, tags)
            if self.events.insert_event(event):
                report.inserted += 1
            else:
                report.failed += 1
                report.failures.append(planned.date)

    def _new_event(
        self, owner_id: int, planned: PlannedEvent, tags: dict[int, Tag]
    ) -> MaterializedEvent:
        return MaterializedEvent(
            owner_id=owner_id,
            category_id=planned.category_id,
            date=planned.date,
            amount_cents=planned.amount_cents,
            total_amount_cents=planned.amount_cents,
            description=planned.description,
            state=planned.state,
            origin_rule_id=planned.rule_id,
            tags=[tags[tag_id] for tag_id in planned.tag_ids if tag_id in tags],
        )

    @staticmethod
    def _refresh(
        event: MaterializedEvent, planned: PlannedEvent, tags: dict[int, Tag]
    ) -> bool:
        changed = False
        values = {
            "category_id": planned.category_id,
            "amount_cents": planned.amount_cents,
            "total_amount_cents": planned.amount_cents,
            "description": planned.description,
            "state": planned.state,
        }
        for name, value in values.items():
            if getattr(event, name) != value:
                setattr(event, name, value)
                changed = True
        current_tags = tuple(sorted(tag.id for tag in event.tags))
        if current_tags != planned.tag_ids:
            event.tags = [tags[t] for t in planned.tag_ids if t in tags]
            changed = True
        return changed

    def _load_tags(self, tag_ids: set[int]) -> dict[int, Tag]:
        if not tag_ids:
            return {}
        stmt = select(Tag).where(Tag.id.in_(tag_ids))
        return {tag.id: tag for tag in self.session.scalars(stmt)}

    def _checkpoint_version(self, owner_id: int, window: Window) -> Optional[int]:
        return self.session.scalar(
            select(SyncCheckpoint.version).where(
                SyncCheckpoint.owner_id == owner_id,
                SyncCheckpoint.window_start == window.start,
                SyncCheckpoint.window_end == window.end,
            )
        )

    def _bump_checkpoint(
        self,
        owner_id: int,
        window: Window,
        expected: Optional[int],
        as_of: date,
    ) -> int:
        now = utcnow()
        if expected is None:
            try:
                with self.session.begin_nested():
                    self.session.add(
                        SyncCheckpoint(
                            owner_id=owner_id,
                            window_start=window.start,
                            window_end=window.end,
                            version=1,
                            as_of=as_of,
                            synced_at=now,
                        )
                    )
                    self.session.flush()
            except IntegrityError as exc:
                raise ConcurrentSyncError(
                    f"Window {window.start}..{window.end} was synced concurrently"
                ) from exc
            return 1

        result = self.session.execute(
            update(SyncCheckpoint)
            .where(
                SyncCheckpoint.owner_id == owner_id,
                SyncCheckpoint.window_start == window.start,
                SyncCheckpoint.window_end == window.end,
                SyncCheckpoint.version == expected,
            )
            .values(version=expected + 1, as_of=as_of, synced_at=now)
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount != 1:
            raise ConcurrentSyncError(
                f"Window {window.start}..{window.end} was synced concurrently"
            )
        return expected + 1


class StateSweeper:
    """Settles past Projected events in place without regenerating anything."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.events = EventStore(session)

    def sweep(
        self,
        owner_id: int,
        as_of: Optional[date] = None,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> int:
        as_of = as_of or local_today()
        deadline = time.monotonic() + timeout if timeout is not None else None
        _raise_if_cancelled(cancel, deadline)
        settled = self.events.settle_projected(as_of, owner_id=owner_id)
        logger.info(f"sweep_done: owner={owner_id} as_of={as_of} settled={settled}")
        return settled

    def sweep_all(self, as_of: Optional[date] = None) -> int:
        as_of = as_of or local_today()
        settled = self.events.settle_projected(as_of)
        logger.info(f"sweep_done: owner=all as_of={as_of} settled={settled}")
        return settled

