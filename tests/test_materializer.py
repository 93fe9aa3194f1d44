import logging
import threading
import time
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base, build_engine
from materializer import (
    ConcurrentSyncError,
    Materializer,
    SyncBusy,
    SyncCancelled,
    WindowLocks,
)
from models import EventState, FrequencyKind, RecurringRule, SyncCheckpoint
from periods import month_window
from schemas import (
    CategoryIn,
    EventIn,
    MonthlyIn,
    RecurringRuleIn,
    SemiMonthlyIn,
    WeeklyIn,
)
from services import CategoryService, EventService, RecurringRuleService
from stores import EventFilters, EventStore


JUNE = month_window(2024, 6)
JULY = month_window(2024, 7)
MID_JUNE = date(2024, 6, 15)


def _engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    return engine


def _category(session: Session, name: str = "Housing", owner_id: int = 1):
    return CategoryService(session, owner_id).create(CategoryIn(name=name))


def _rule(
    session: Session,
    category,
    *,
    description: str = "Rent",
    amount_cents: int = 999,
    frequency=None,
    tags=(),
    owner_id: int = 1,
):
    data = RecurringRuleIn(
        category_id=category.id,
        description=description,
        amount_cents=amount_cents,
        frequency=frequency or MonthlyIn(day_of_month=15),
        tags=list(tags),
    )
    return RecurringRuleService(session, owner_id).create(data)


def _events(session: Session, window=JUNE, owner_id: int = 1, **filters):
    return EventStore(session).query_events(owner_id, window, EventFilters(**filters))


def _fingerprint(session: Session, window=JUNE):
    return sorted(
        (e.date, e.category_id, e.amount_cents, e.description, e.state.value)
        for e in _events(session, window)
    )


def test_monthly_rule_materializes_one_event() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        rule = _rule(session, category, frequency=MonthlyIn(day_of_month=15))

        report = Materializer(session).sync(
            1, month_window(2024, 1), as_of=date(2024, 1, 1)
        )

        events = _events(session, month_window(2024, 1))
        assert report.inserted == 1
        assert len(events) == 1
        event = events[0]
        assert event.date == date(2024, 1, 15)
        assert event.amount == Decimal("9.99")
        assert event.total_amount == Decimal("9.99")
        assert event.state == EventState.projected
        assert event.origin_rule_id == rule.id
        assert event.category_id == category.id


def test_weekly_rule_materializes_every_weekday_in_window() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category, frequency=WeeklyIn(day_of_week=0))

        Materializer(session).sync(1, JUNE, as_of=MID_JUNE)

        dates = [e.date for e in _events(session)]
        assert dates == [
            date(2024, 6, 3),
            date(2024, 6, 10),
            date(2024, 6, 17),
            date(2024, 6, 24),
        ]


def test_state_is_partitioned_by_as_of() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(
            session,
            category,
            frequency=SemiMonthlyIn(first_day=10, second_day=20),
        )
        _rule(
            session,
            category,
            description="Insurance",
            frequency=MonthlyIn(day_of_month=15),
        )

        Materializer(session).sync(1, JUNE, as_of=MID_JUNE)

        states = {e.date: e.state for e in _events(session)}
        assert states == {
            date(2024, 6, 10): EventState.actual,
            date(2024, 6, 15): EventState.projected,
            date(2024, 6, 20): EventState.projected,
        }


def test_sync_is_idempotent() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category, frequency=WeeklyIn(day_of_week=4), tags=["Fixed"])
        materializer = Materializer(session)

        first = materializer.sync(1, JUNE, as_of=MID_JUNE)
        snapshot = _fingerprint(session)
        ids = sorted(e.id for e in _events(session))
        second = materializer.sync(1, JUNE, as_of=MID_JUNE)

        assert _fingerprint(session) == snapshot
        assert sorted(e.id for e in _events(session)) == ids
        assert first.inserted == len(snapshot)
        assert second.inserted == 0
        assert second.deleted == 0
        assert second.unchanged == len(snapshot)


def test_repeated_syncs_never_duplicate() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category, frequency=WeeklyIn(day_of_week=0))
        materializer = Materializer(session)

        for _ in range(50):
            materializer.sync(1, JUNE, as_of=MID_JUNE)

        keys = [(e.origin_rule_id, e.date) for e in _events(session)]
        assert len(keys) == 4
        assert len(set(keys)) == len(keys)


def test_checkpoint_version_increments_per_pass() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category)
        materializer = Materializer(session)

        assert materializer.sync(1, JUNE, as_of=MID_JUNE).version == 1
        assert materializer.sync(1, JUNE, as_of=MID_JUNE).version == 2

        checkpoint = session.scalar(select(SyncCheckpoint))
        assert checkpoint.version == 2
        assert checkpoint.as_of == MID_JUNE


def test_manual_events_are_never_touched() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category, frequency=MonthlyIn(day_of_month=1))
        manual = EventService(session, 1).create(
            EventIn(
                category_id=category.id,
                date=date(2024, 6, 15),
                amount_cents=4250,
                description="Plumber",
            ),
            as_of=MID_JUNE,
        )

        Materializer(session).sync(1, JUNE, as_of=MID_JUNE)
        Materializer(session).sync(1, JUNE, as_of=date(2024, 6, 30))

        survivors = _events(session, rule_owned=False)
        assert [e.id for e in survivors] == [manual.id]
        assert survivors[0].amount_cents == 4250
        assert survivors[0].state == EventState.projected


def test_rule_occurrence_matching_a_manual_event_is_skipped() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category, description="Rent")
        EventService(session, 1).create(
            EventIn(
                category_id=category.id,
                date=date(2024, 6, 15),
                amount_cents=999,
                description="Rent",
            ),
            as_of=MID_JUNE,
        )

        report = Materializer(session).sync(1, JUNE, as_of=MID_JUNE)

        assert report.inserted == 0
        assert report.skipped_duplicates == 1
        assert len(_events(session)) == 1


def test_two_rules_with_the_same_key_produce_one_event() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        first = _rule(session, category, description="Gym")
        _rule(session, category, description="Gym")
        materializer = Materializer(session)

        report = materializer.sync(1, JUNE, as_of=MID_JUNE)
        again = materializer.sync(1, JUNE, as_of=MID_JUNE)

        events = _events(session)
        assert len(events) == 1
        assert events[0].origin_rule_id == first.id
        assert report.skipped_duplicates == 1
        assert again.skipped_duplicates == 1
        assert again.inserted == 0


def test_deactivated_rule_is_removed_from_resynced_window_only() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        rule = _rule(session, category, frequency=MonthlyIn(day_of_month=10))
        materializer = Materializer(session, preserve_actual=False)
        materializer.sync(1, JUNE, as_of=MID_JUNE)
        materializer.sync(1, JULY, as_of=MID_JUNE)

        RecurringRuleService(session, 1).set_active(rule.id, False)
        report = materializer.sync(1, JUNE, as_of=MID_JUNE)

        assert report.deleted == 1
        assert _events(session) == []
        july = _events(session, JULY)
        assert [e.date for e in july] == [date(2024, 7, 10)]


def test_preserve_actual_keeps_settled_events_of_deactivated_rule() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        rule = _rule(
            session,
            category,
            frequency=SemiMonthlyIn(first_day=10, second_day=20),
        )
        materializer = Materializer(session, preserve_actual=True)
        materializer.sync(1, JUNE, as_of=MID_JUNE)

        RecurringRuleService(session, 1).set_active(rule.id, False)
        report = materializer.sync(1, JUNE, as_of=MID_JUNE)

        remaining = _events(session)
        assert [(e.date, e.state) for e in remaining] == [
            (date(2024, 6, 10), EventState.actual)
        ]
        assert report.preserved == 1
        assert report.deleted == 1


def test_preserve_actual_does_not_regenerate_settled_events() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        rule = _rule(
            session,
            category,
            frequency=SemiMonthlyIn(first_day=10, second_day=20),
        )
        materializer = Materializer(session, preserve_actual=True)
        materializer.sync(1, JUNE, as_of=MID_JUNE)

        RecurringRuleService(session, 1).update(
            rule.id,
            RecurringRuleIn(
                category_id=category.id,
                description="Rent",
                amount_cents=1500,
                frequency=SemiMonthlyIn(first_day=10, second_day=20),
            ),
        )
        report = materializer.sync(1, JUNE, as_of=MID_JUNE)

        amounts = {e.date: e.amount_cents for e in _events(session)}
        assert amounts == {date(2024, 6, 10): 999, date(2024, 6, 20): 1500}
        assert report.preserved == 1
        assert report.updated == 1
        assert report.inserted == 0


def test_rule_edits_reach_events_only_after_resync() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        rule = _rule(session, category, tags=["Fixed"])
        materializer = Materializer(session)
        materializer.sync(1, JUNE, as_of=MID_JUNE)

        RecurringRuleService(session, 1).update(
            rule.id,
            RecurringRuleIn(
                category_id=category.id,
                description="Rent",
                amount_cents=1250,
                frequency=MonthlyIn(day_of_month=15),
                tags=["Home"],
            ),
        )
        (event,) = _events(session)
        assert event.amount_cents == 999
        assert [t.name for t in event.tags] == ["Fixed"]

        report = materializer.sync(1, JUNE, as_of=MID_JUNE)

        (event,) = _events(session)
        assert report.updated == 1
        assert event.amount_cents == 1250
        assert [t.name for t in event.tags] == ["Home"]


def test_moved_occurrence_replaces_the_old_date() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        rule = _rule(session, category, frequency=MonthlyIn(day_of_month=15))
        materializer = Materializer(session)
        materializer.sync(1, JUNE, as_of=MID_JUNE)

        RecurringRuleService(session, 1).update(
            rule.id,
            RecurringRuleIn(
                category_id=category.id,
                description="Rent",
                amount_cents=999,
                frequency=MonthlyIn(day_of_month=1),
            ),
        )
        report = materializer.sync(1, JUNE, as_of=MID_JUNE)

        assert [e.date for e in _events(session)] == [date(2024, 6, 1)]
        assert report.deleted == 1
        assert report.inserted == 1


def test_cancelled_sync_leaves_store_unchanged() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        rule = _rule(session, category)
        materializer = Materializer(session)
        materializer.sync(1, JUNE, as_of=date(2024, 6, 1))
        before = _fingerprint(session)

        RecurringRuleService(session, 1).set_active(rule.id, False)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SyncCancelled):
            materializer.sync(1, JUNE, as_of=MID_JUNE, cancel=cancel)

        assert _fingerprint(session) == before


def test_expired_deadline_cancels_before_writing() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category)

        with pytest.raises(SyncCancelled):
            Materializer(session).sync(1, JUNE, as_of=MID_JUNE, timeout=0)

        assert _events(session) == []
        assert session.scalar(select(SyncCheckpoint)) is None


def test_sync_of_a_locked_window_is_busy() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category)
        locks = WindowLocks()
        materializer = Materializer(session, locks=locks, lock_timeout=0.01)

        with locks.hold(1, JUNE, timeout=1):
            with pytest.raises(SyncBusy):
                materializer.sync(1, JUNE, as_of=MID_JUNE)
            report = materializer.sync(1, JULY, as_of=MID_JUNE)

        assert report.inserted == 1
        assert _events(session) == []


def _file_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'budget.db'}")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        _rule(session, _category(session), frequency=WeeklyIn(day_of_week=0))
    return engine


def _hold_first_pass_open(monkeypatch, seconds: float) -> threading.Event:
    """Keep the pass running in the ``first`` thread open after its writes."""
    written = threading.Event()
    original = Materializer._bump_checkpoint

    def bump_checkpoint(self, *args):
        version = original(self, *args)
        if threading.current_thread().name == "first":
            written.set()
            time.sleep(seconds)
        return version

    monkeypatch.setattr(Materializer, "_bump_checkpoint", bump_checkpoint)
    return written


def _race(engine, written: threading.Event, first: dict, second: dict):
    reports: dict[str, object] = {}
    errors: dict[str, Exception] = {}

    def run(name: str, options: dict) -> None:
        with Session(engine) as session:
            try:
                reports[name] = Materializer(session, **options).sync(
                    1, JUNE, as_of=MID_JUNE, commit=True
                )
            except Exception as exc:
                errors[name] = exc

    threads = [
        threading.Thread(target=run, args=("first", first), name="first"),
        threading.Thread(target=run, args=("second", second), name="second"),
    ]
    threads[0].start()
    assert written.wait(timeout=5)
    threads[1].start()
    for thread in threads:
        thread.join(timeout=10)
    return reports, errors


def _committed_dates(engine):
    with Session(engine) as session:
        return [e.date for e in _events(session)]


def test_concurrent_syncs_of_one_window_are_serialized(tmp_path, monkeypatch) -> None:
    engine = _file_engine(tmp_path)
    written = _hold_first_pass_open(monkeypatch, 0.5)
    locks = WindowLocks()
    options = {"locks": locks, "lock_timeout": 5}

    reports, errors = _race(engine, written, options, options)

    assert errors == {}
    assert reports["first"].inserted == 4
    assert reports["first"].version == 1
    assert reports["second"].inserted == 0
    assert reports["second"].unchanged == 4
    assert reports["second"].version == 2
    dates = _committed_dates(engine)
    assert dates == [
        date(2024, 6, 3),
        date(2024, 6, 10),
        date(2024, 6, 17),
        date(2024, 6, 24),
    ]


def test_second_sync_gives_up_while_the_first_is_uncommitted(
    tmp_path, monkeypatch
) -> None:
    engine = _file_engine(tmp_path)
    written = _hold_first_pass_open(monkeypatch, 0.5)
    locks = WindowLocks()

    reports, errors = _race(
        engine,
        written,
        {"locks": locks, "lock_timeout": 5},
        {"locks": locks, "lock_timeout": 0.05},
    )

    assert set(reports) == {"first"}
    assert isinstance(errors["second"], SyncBusy)
    assert len(_committed_dates(engine)) == 4


def test_sync_from_another_process_is_a_conflict(tmp_path, monkeypatch) -> None:
    engine = _file_engine(tmp_path)
    written = _hold_first_pass_open(monkeypatch, 1.0)

    # Separate lock registries stand in for two worker processes.
    reports, errors = _race(
        engine,
        written,
        {"locks": WindowLocks(), "lock_timeout": 5},
        {"locks": WindowLocks(), "lock_timeout": 5},
    )

    assert set(reports) == {"first"}
    assert isinstance(errors["second"], ConcurrentSyncError)
    dates = _committed_dates(engine)
    assert len(dates) == 4
    assert len(set(dates)) == 4
    with Session(engine) as session:
        assert session.scalar(select(SyncCheckpoint.version)) == 1


def test_locked_store_during_apply_is_a_conflict(monkeypatch) -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category)

        def insert_event(self, event):
            raise OperationalError(
                "INSERT INTO materialized_events", {}, Exception("database is locked")
            )

        monkeypatch.setattr(EventStore, "insert_event", insert_event)
        with pytest.raises(ConcurrentSyncError):
            Materializer(session).sync(1, JUNE, as_of=MID_JUNE, commit=True)

        assert _events(session) == []
        assert session.scalar(select(SyncCheckpoint)) is None


def test_stale_checkpoint_version_rolls_back_the_pass(monkeypatch) -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        rule = _rule(session, category)
        materializer = Materializer(session)
        materializer.sync(1, JUNE, as_of=MID_JUNE)
        RecurringRuleService(session, 1).update(
            rule.id,
            RecurringRuleIn(
                category_id=category.id,
                description="Rent",
                amount_cents=2000,
                frequency=MonthlyIn(day_of_month=15),
            ),
        )

        monkeypatch.setattr(
            materializer, "_checkpoint_version", lambda owner_id, window: 0
        )
        with pytest.raises(ConcurrentSyncError):
            materializer.sync(1, JUNE, as_of=MID_JUNE)

        (event,) = _events(session)
        assert event.amount_cents == 999
        assert session.scalar(select(SyncCheckpoint.version)) == 1


def test_checkpoint_created_by_another_pass_is_a_conflict(monkeypatch) -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category)
        materializer = Materializer(session)
        materializer.sync(1, JUNE, as_of=MID_JUNE)
        session.commit()

        monkeypatch.setattr(
            materializer, "_checkpoint_version", lambda owner_id, window: None
        )
        with pytest.raises(ConcurrentSyncError):
            materializer.sync(1, JUNE, as_of=MID_JUNE)

        assert len(_events(session)) == 1


def test_failed_insert_is_counted_and_the_pass_continues(monkeypatch, caplog) -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category, frequency=WeeklyIn(day_of_week=0))
        broken_day = date(2024, 6, 17)
        original = Materializer._new_event

        def new_event(self, owner_id, planned, tags):
            event = original(self, owner_id, planned, tags)
            if planned.date == broken_day:
                event.amount_cents = -1
            return event

        monkeypatch.setattr(Materializer, "_new_event", new_event)
        with caplog.at_level(logging.WARNING, logger="stores"):
            report = Materializer(session).sync(1, JUNE, as_of=MID_JUNE)

        assert report.failed == 1
        assert report.failures == [broken_day]
        assert not report.ok
        assert report.inserted == 3
        assert broken_day not in [e.date for e in _events(session)]
        assert "event_insert_failed" in caplog.text


def test_rule_with_invalid_anchor_is_skipped(caplog) -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category, description="Rent")
        broken = RecurringRule(
            owner_id=1,
            category_id=category.id,
            description="Broken",
            amount_cents=100,
            frequency=FrequencyKind.weekly,
            day_of_week=None,
        )
        session.add(broken)
        session.commit()

        with caplog.at_level(logging.WARNING, logger="recurrence"):
            report = Materializer(session).sync(1, JUNE, as_of=MID_JUNE)

        assert report.skipped_rules == 1
        assert report.inserted == 1
        assert [e.description for e in _events(session)] == ["Rent"]
        assert f"rule_id={broken.id}" in caplog.text


def test_owners_are_isolated() -> None:
    engine = _engine()
    with Session(engine) as session:
        mine = _category(session, owner_id=1)
        theirs = _category(session, owner_id=2)
        _rule(session, mine, owner_id=1)
        _rule(session, theirs, owner_id=2, amount_cents=5000)

        Materializer(session).sync(1, JUNE, as_of=MID_JUNE)

        assert len(_events(session, owner_id=1)) == 1
        assert _events(session, owner_id=2) == []


def test_ensure_synced_skips_fresh_windows() -> None:
    engine = _engine()
    with Session(engine) as session:
        category = _category(session)
        _rule(session, category)
        materializer = Materializer(session)

        first = materializer.ensure_synced(
            1, JUNE, max_age=timedelta(hours=1), as_of=MID_JUNE
        )
        fresh = materializer.ensure_synced(
            1, JUNE, max_age=timedelta(hours=1), as_of=MID_JUNE
        )
        new_day = materializer.ensure_synced(
            1, JUNE, max_age=timedelta(hours=1), as_of=date(2024, 6, 16)
        )
        stale = materializer.ensure_synced(
            1, JUNE, max_age=timedelta(0), as_of=date(2024, 6, 16)
        )

        assert first is not None and first.inserted == 1
        assert fresh is None
        assert new_day is not None and new_day.updated == 1
        assert stale is not None and stale.unchanged == 1
