"""Tests for replay, daily view, reconciliation and day reset."""

from datetime import date, datetime, timedelta, timezone

import pytest

from habits_engine import (
    AlreadyTracked,
    HabitTracker,
    NoActiveHabits,
    NotTracked,
    UserAborted,
    daily_view,
    reconcile,
    resolve_active,
)
from habits_store import CompletionEvent, StorageUnavailable, TrackEvent

T0 = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)


def _track(habit, started, minutes, id_=None):
    return TrackEvent(id_, habit, T0 + timedelta(minutes=minutes), started)


def _done(habit, when):
    return CompletionEvent(None, habit, when)


# -------------------------
# resolve_active
# -------------------------
def test_replay_is_deterministic():
    events = [_track("run", True, 0), _track("read", True, 1), _track("run", False, 2)]
    assert dict(resolve_active(events)) == dict(resolve_active(events)) == {"read": True}


def test_last_event_wins():
    events = [_track("run", True, 1), _track("run", False, 2), _track("run", True, 3)]
    assert "run" in resolve_active(events)
    assert "run" not in resolve_active(events[:2])


def test_untracked_habit_is_removed_not_false():
    active = resolve_active([_track("run", True, 0), _track("run", False, 1)])
    assert dict(active) == {}


def test_resolve_returns_fresh_read_only_mapping():
    events = [_track("run", True, 0)]
    first = resolve_active(events)
    with pytest.raises(TypeError):
        first["read"] = True
    assert resolve_active(events) is not first


# -------------------------
# daily_view
# -------------------------
def test_view_covers_only_active_habits():
    active = {"run": True, "read": True}
    events = [_done("run", T0), _done("swim", T0)]
    assert dict(daily_view(active, events, T0.date())) == {"run": True, "read": False}


def test_view_is_isolated_per_day():
    active = {"run": True}
    events = [_done("run", T0)]
    assert daily_view(active, events, T0.date())["run"] is True
    assert daily_view(active, events, T0.date() + timedelta(days=1))["run"] is False


def test_view_collapses_duplicate_completions():
    active = {"run": True}
    events = [_done("run", T0), _done("run", T0 + timedelta(hours=1))]
    assert dict(daily_view(active, events, T0.date())) == {"run": True}


def test_view_day_follows_timezone():
    tz = timezone(timedelta(hours=-5))
    late_evening = datetime(2026, 3, 15, 3, 0, tzinfo=timezone.utc)
    events = [_done("run", late_evening)]
    assert daily_view({"run": True}, events, date(2026, 3, 14), tz)["run"] is True
    assert daily_view({"run": True}, events, date(2026, 3, 15), tz)["run"] is False


# -------------------------
# reconcile
# -------------------------
def test_reconcile_appends_only_missing():
    assert reconcile({"a": True, "b": False}, {"b"}) == ["b"]


def test_reconcile_never_retracts():
    # Deselecting a completed habit is a no-op, not an un-log.
    assert reconcile({"a": True, "b": False}, set()) == []


def test_reconcile_keeps_selection_order_and_dedupes():
    view = {"a": False, "b": False, "c": True}
    assert reconcile(view, ["b", "c", "a", "b"]) == ["b", "a"]


# -------------------------
# HabitTracker
# -------------------------
def test_track_guards(tracker):
    tracker.track("x")
    with pytest.raises(AlreadyTracked):
        tracker.track("x")
    with pytest.raises(NotTracked):
        tracker.untrack("never")


def test_track_untrack_track_again_keeps_history(tracker, store, clock):
    tracker.track("run")
    clock.advance(minutes=1)
    tracker.untrack("run")
    clock.advance(minutes=1)
    tracker.track("run")
    assert tracker.list_habits() == ["run"]
    assert [e.started for e in store.tracks.scan_ordered()] == [True, False, True]


def test_track_strips_and_rejects_blank_names(tracker):
    assert tracker.track("  read  ").habit == "read"
    with pytest.raises(ValueError):
        tracker.track("   ")


def test_list_is_empty_without_error(tracker):
    assert tracker.list_habits() == []
    assert dict(tracker.view()) == {}


def test_end_to_end_day(tracker, store):
    tracker.track("exercise")
    assert dict(tracker.view()) == {"exercise": False}

    appended = tracker.log(["exercise"])
    assert [e.habit for e in appended] == ["exercise"]
    assert dict(tracker.view()) == {"exercise": True}

    assert tracker.reset_day(tracker.today()) == 1
    assert dict(tracker.view()) == {"exercise": False}
    assert store.tracks.count() == 1


def test_log_is_additive_and_idempotent(tracker, store):
    tracker.track("a")
    tracker.track("b")
    tracker.log(["a"])

    assert tracker.log([]) == []
    assert dict(tracker.view()) == {"a": True, "b": False}

    assert [e.habit for e in tracker.log(["a", "b"])] == ["b"]
    assert tracker.log(["a", "b"]) == []
    assert store.completions.count() == 2


def test_log_next_day_starts_fresh(tracker, clock):
    tracker.track("run")
    tracker.log(["run"])
    clock.advance(days=1)
    assert dict(tracker.view()) == {"run": False}
    assert tracker.view(clock.now.date() - timedelta(days=1))["run"] is True


def test_reset_is_idempotent(tracker, store):
    tracker.track("run")
    tracker.track("read")
    tracker.log(["run", "read"])
    assert tracker.reset_day() == 2
    assert tracker.reset_day() == 0
    assert dict(tracker.view()) == {"run": False, "read": False}


def test_reset_leaves_other_days(tracker, store, clock):
    tracker.track("run")
    tracker.log(["run"])
    clock.advance(days=1)
    tracker.log(["run"])
    assert tracker.reset_day() == 1
    assert store.completions.count() == 1


def test_orphaned_completion_is_tolerated(tracker, store, clock):
    tracker.track("reading")
    tracker.track("run")
    tracker.log(["reading"])
    clock.advance(minutes=5)
    tracker.untrack("reading")

    assert dict(tracker.view()) == {"run": False}
    rows = store.completions.scan_ordered()
    assert [e.habit for e in rows] == ["reading"]


def test_log_without_active_habits(tracker, store):
    with pytest.raises(NoActiveHabits):
        tracker.log(["run"])
    assert store.completions.count() == 0


def test_log_rejects_untracked_selection(tracker, store):
    tracker.track("run")
    with pytest.raises(NotTracked):
        tracker.log(["run", "swim"])
    assert store.completions.count() == 0


def test_log_uses_selector_with_current_view(tracker, store):
    tracker.track("run")
    tracker.track("read")
    tracker.log(["read"])
    seen = {}

    def selector(view):
        seen.update(view)
        return ["run"]

    appended = tracker.log(selector=selector)
    assert seen == {"run": False, "read": True}
    assert [e.habit for e in appended] == ["run"]


def test_aborted_selection_appends_nothing(tracker, store):
    tracker.track("run")

    def selector(view):
        raise UserAborted("user aborted")

    with pytest.raises(UserAborted):
        tracker.log(selector=selector)
    assert store.completions.count() == 0


def test_log_is_all_or_nothing_on_storage_failure(tracker, store, monkeypatch):
    for name in ("a", "b", "c"):
        tracker.track(name)

    real_append = store.completions.append
    calls = []

    def flaky_append(record):
        calls.append(record.habit)
        if len(calls) == 2:
            raise StorageUnavailable("append to log failed: disk I/O error")
        return real_append(record)

    monkeypatch.setattr(store.completions, "append", flaky_append)
    with pytest.raises(StorageUnavailable):
        tracker.log(["a", "b", "c"])
    monkeypatch.undo()

    assert store.completions.count() == 0
    assert [e.habit for e in tracker.log(["a", "b", "c"])] == ["a", "b", "c"]


def test_untrack_within_the_same_second_wins(store, clock):
    clock.now = datetime(2026, 3, 14, 9, 0, 0, 100000, tzinfo=timezone.utc)
    tracker = HabitTracker(store, clock=clock)
    tracker.track("run")
    clock.advance(microseconds=800000)
    tracker.untrack("run")
    assert tracker.list_habits() == []


def test_returned_events_match_what_was_stored(tracker, store, clock):
    clock.now = datetime(2026, 3, 14, 9, 30, 5, 700000, tzinfo=timezone.utc)
    ev = tracker.track("run")
    done = tracker.log(["run"])
    assert store.tracks.scan_ordered() == [ev]
    assert store.completions.scan_ordered() == done


def test_naive_clock_is_read_as_utc(store):
    # 23:30 UTC is already the next day at UTC+2.
    naive = datetime(2026, 3, 14, 23, 30)
    tracker = HabitTracker(store, tz=timezone(timedelta(hours=2)), clock=lambda: naive)
    assert tracker.now() == naive.replace(tzinfo=timezone.utc)
    assert tracker.today() == date(2026, 3, 15)

    tracker.track("run")
    tracker.log(["run"])
    assert tracker.view(date(2026, 3, 15))["run"] is True
    assert tracker.view(date(2026, 3, 14))["run"] is False
