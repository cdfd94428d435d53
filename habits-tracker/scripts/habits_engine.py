#!/usr/bin/env python3
"""
State reconstruction and reconciliation for the habits tracker.

The active habit set and the per-day completion view are never stored; they
are folded from the event logs every time they are needed.
"""

from __future__ import annotations

from datetime import date, datetime, timezone, tzinfo
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Sequence

from habits_store import (
    CompletionEvent,
    HabitStore,
    HabitsError,
    TrackEvent,
    day_bounds,
)


class AlreadyTracked(HabitsError):
    kind = "already_tracked"


class NotTracked(HabitsError):
    kind = "not_tracked"


class UserAborted(HabitsError):
    kind = "user_aborted"


class NoActiveHabits(HabitsError):
    kind = "no_active_habits"


def normalize_habit_name(raw: str) -> str:
    name = (raw or "").strip()
    if not name:
        raise ValueError("Habit name required.")
    return name


def resolve_active(events: Iterable[TrackEvent]) -> Mapping[str, bool]:
    """
    Replay track events (already in log order) into the active habit set.

    A started event adds the habit, a stopped event removes the key entirely,
    so the key set of the result is the active set.
    """
    active: dict[str, bool] = {}
    for ev in events:
        if ev.started:
            active[ev.habit] = True
        else:
            active.pop(ev.habit, None)
    return MappingProxyType(active)


def daily_view(
    active: Mapping[str, bool],
    events: Iterable[CompletionEvent],
    day: date,
    tz: tzinfo = timezone.utc,
) -> Mapping[str, bool]:
    """
    Map every active habit to whether it has a completion on `day`.

    Completions for habits outside `active` are ignored.
    """
    start, end = day_bounds(day, tz)
    view = {habit: False for habit in active}
    for ev in events:
        if ev.habit in view and start <= ev.logged_at < end:
            view[ev.habit] = True
    return MappingProxyType(view)


def reconcile(view: Mapping[str, bool], selection: Iterable[str]) -> list[str]:
    """
    Habits to append so that `view` covers `selection`, in selection order.

    Additive only: a habit already done in `view` is never retracted, even
    when it is missing from `selection`.
    """
    out: list[str] = []
    seen: set[str] = set()
    for habit in selection:
        if habit in seen:
            continue
        seen.add(habit)
        if not view.get(habit, False):
            out.append(habit)
    return out


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HabitTracker:
    """
    Track/untrack/log/reset operations over an explicit HabitStore.

    Callers are assumed to be a single process with no concurrent writers;
    nothing here locks.
    """

    def __init__(
        self,
        store: HabitStore,
        *,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.tz = tz
        self.clock = clock

    def now(self) -> datetime:
        # Naive clock values are UTC, the same reading format_ts gives them.
        current = self.clock()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current

    def today(self) -> date:
        return self.now().astimezone(self.tz).date()

    def active(self) -> Mapping[str, bool]:
        return resolve_active(self.store.tracks.scan_ordered())

    def list_habits(self) -> list[str]:
        return sorted(self.active(), key=lambda h: (h.casefold(), h))

    def track(self, name: str) -> TrackEvent:
        habit = normalize_habit_name(name)
        if habit in self.active():
            raise AlreadyTracked(f"Already tracking {habit}.")
        return self._append_track(habit, started=True)

    def untrack(self, name: str) -> TrackEvent:
        habit = normalize_habit_name(name)
        if habit not in self.active():
            raise NotTracked(f"Already not tracking {habit}.")
        return self._append_track(habit, started=False)

    def _append_track(self, habit: str, *, started: bool) -> TrackEvent:
        ev = TrackEvent(id=None, habit=habit, timestamp=self.now(), started=started)
        new_id = self.store.tracks.append(ev)
        return TrackEvent(id=new_id, habit=ev.habit, timestamp=ev.timestamp, started=started)

    def view(self, day: date | None = None) -> Mapping[str, bool]:
        d = day if day is not None else self.today()
        return daily_view(self.active(), self.store.completions.scan_day(d, self.tz), d, self.tz)

    def log(
        self,
        selection: Sequence[str] | None = None,
        *,
        selector: Callable[[Mapping[str, bool]], Sequence[str]] | None = None,
    ) -> list[CompletionEvent]:
        """
        Reconcile today's completions with a desired selection.

        The selection is either given directly or obtained from `selector`,
        which receives today's view and may raise UserAborted. All appends
        are committed in one transaction: either every missing habit is
        logged or none is, so a rerun after a failure only appends what is
        still missing.
        """
        current = self.view()
        if not current:
            raise NoActiveHabits("Not tracking any habits yet.")

        if selection is None:
            if selector is None:
                raise ValueError("Provide a selection or a selector.")
            selection = selector(current)

        chosen = [normalize_habit_name(h) for h in selection]
        unknown = [h for h in chosen if h not in current]
        if unknown:
            raise NotTracked(f"Not tracking {', '.join(unknown)}.")

        now = self.now()
        appended: list[CompletionEvent] = []
        with self.store.transaction():
            for habit in reconcile(current, chosen):
                ev = CompletionEvent(id=None, habit=habit, logged_at=now)
                new_id = self.store.completions.append(ev)
                appended.append(CompletionEvent(id=new_id, habit=habit, logged_at=now))
        return appended

    def reset_day(self, day: date | None = None) -> int:
        """Delete every completion logged on `day`; track events are untouched."""
        d = day if day is not None else self.today()
        return self.store.completions.delete_day(d, self.tz)
