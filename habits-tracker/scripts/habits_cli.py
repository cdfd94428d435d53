#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import re
import sys
from datetime import date, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Any, NoReturn
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from habits_engine import (
    AlreadyTracked,
    HabitTracker,
    NoActiveHabits,
    NotTracked,
    UserAborted,
)
from habits_select import prompt_selection
from habits_store import HabitStore, StorageUnavailable, format_ts


SKILL_NAME = "habits-tracker"
NO_HABITS_WARNING = "Not tracking any habits yet."


def _print_json(obj: Any) -> None:
    json.dump(obj, sys.stdout, ensure_ascii=False, indent=2, sort_keys=True)
    sys.stdout.write("\n")


def _die(message: str, *, code: int = 1, kind: str = "usage") -> NoReturn:
    _print_json({"ok": False, "error": message, "kind": kind})
    raise SystemExit(code)


def _skill_root() -> Path:
    # .../<skill>/scripts/habits_cli.py -> skill root is 2 parents up.
    return Path(__file__).resolve().parents[1]


def _project_root() -> Path:
    skill_root = _skill_root()
    if skill_root.parent.name == "skills" and len(skill_root.parents) >= 3:
        return skill_root.parents[2]
    return skill_root.parent


def _skill_data_dir() -> Path:
    raw = os.environ.get("SKILL_DATA_DIR")
    if raw:
        return Path(raw).expanduser()
    return _project_root() / ".skills-data" / SKILL_NAME


def _env_path() -> Path:
    return _skill_data_dir() / ".env"


def _config_path() -> Path:
    return _skill_data_dir() / "config.json"


_ENV_KEY_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=(.*)$")


def _quote_env_value(v: str) -> str:
    return '"' + v.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote_env_value(v: str) -> str:
    v = v.strip()
    if len(v) >= 2 and v[0] == '"' and v[-1] == '"':
        return v[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return v


def _read_env() -> dict[str, str]:
    """KEY=value pairs from the data dir .env; comments and other lines are skipped."""
    p = _env_path()
    if not p.exists():
        return {}
    out: dict[str, str] = {}
    for line in p.read_text(encoding="utf-8").splitlines():
        m = _ENV_KEY_RE.match(line)
        if m:
            out[m.group(1)] = _unquote_env_value(m.group(2))
    return out


def _upsert_env(updates: dict[str, str]) -> None:
    p = _env_path()
    lines = p.read_text(encoding="utf-8").splitlines() if p.exists() else []

    positions: dict[str, int] = {}
    for i, line in enumerate(lines):
        m = _ENV_KEY_RE.match(line)
        if m:
            positions[m.group(1)] = i

    for key in sorted(updates):
        rendered = f"{key}={_quote_env_value(updates[key])}"
        if key in positions:
            lines[positions[key]] = rendered
        else:
            lines.append(rendered)

    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text("\n".join(lines).rstrip("\n") + "\n", encoding="utf-8")


def _read_config() -> dict[str, Any]:
    p = _config_path()
    if not p.exists():
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _setting(key: str, env: dict[str, str] | None = None) -> str:
    # Process environment wins over the data dir .env.
    raw = os.environ.get(key)
    if raw is not None:
        return raw
    return (env if env is not None else _read_env()).get(key, "")


def _db_path() -> Path:
    raw = _setting("HABITS_DB")
    if raw:
        return Path(raw).expanduser()
    database = _read_config().get("database")
    if isinstance(database, dict) and database.get("path"):
        return Path(str(database["path"])).expanduser()
    return _skill_data_dir() / "habits.sqlite3"


def _timezone() -> tzinfo:
    name = _setting("TIMEZONE").strip()
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        _die(f"Unknown TIMEZONE '{name}'. Use an IANA name like Europe/Madrid.")


_REL_DAY_RE = re.compile(r"^(?P<sign>[+-])(?P<num>\d+)d$")


def _parse_date(raw: str, today: date) -> date:
    raw = raw.strip().lower()
    if raw == "today":
        return today
    if raw == "yesterday":
        return today - timedelta(days=1)
    if raw == "tomorrow":
        return today + timedelta(days=1)
    m = _REL_DAY_RE.match(raw)
    if m:
        n = int(m.group("num"))
        if m.group("sign") == "-":
            n = -n
        return today + timedelta(days=n)
    try:
        return date.fromisoformat(raw)
    except ValueError as e:
        raise ValueError(
            f"Invalid date '{raw}'. Use YYYY-MM-DD, today, yesterday, tomorrow, or +/-Nd."
        ) from e


def _day_arg(tracker: HabitTracker, raw: str | None) -> date:
    if not raw:
        return tracker.today()
    try:
        return _parse_date(raw, tracker.today())
    except ValueError as e:
        _die(str(e))


def _open_tracker() -> HabitTracker:
    tz = _timezone()
    return HabitTracker(HabitStore.open(_db_path()), tz=tz)


def _cmd_init(args: argparse.Namespace) -> None:
    db_path = _db_path()
    with HabitStore.open(db_path) as store:
        version = store.schema_version()
    _print_json({"ok": True, "db_path": str(db_path), "schema_version": version})


def _cmd_track(args: argparse.Namespace) -> None:
    tracker = _open_tracker()
    with tracker.store:
        ev = tracker.track(args.name)
    _print_json(
        {
            "ok": True,
            "habit": ev.habit,
            "event": {"id": ev.id, "event_date": format_ts(ev.timestamp), "started": True},
            "message": f"Now tracking {ev.habit} as a habit!",
        }
    )


def _cmd_untrack(args: argparse.Namespace) -> None:
    tracker = _open_tracker()
    with tracker.store:
        ev = tracker.untrack(args.name)
    _print_json(
        {
            "ok": True,
            "habit": ev.habit,
            "event": {"id": ev.id, "event_date": format_ts(ev.timestamp), "started": False},
            "message": f"No longer tracking {ev.habit} as a habit!",
        }
    )


def _cmd_list(args: argparse.Namespace) -> None:
    tracker = _open_tracker()
    with tracker.store:
        habits = tracker.list_habits()
    out: dict[str, Any] = {"ok": True, "habits": habits}
    if not habits:
        out["warnings"] = [NO_HABITS_WARNING]
    _print_json(out)


def _cmd_today(args: argparse.Namespace) -> None:
    tracker = _open_tracker()
    with tracker.store:
        day = _day_arg(tracker, args.date)
        view = tracker.view(day)

    names = sorted(view, key=lambda h: (h.casefold(), h))
    if args.text:
        if not names:
            sys.stdout.write(NO_HABITS_WARNING + "\n")
        for name in names:
            sys.stdout.write(f"{'🟩' if view[name] else '⬛'} {name}\n")
        return

    out: dict[str, Any] = {
        "ok": True,
        "date": day.isoformat(),
        "habits": [{"habit": n, "done": view[n]} for n in names],
        "done": sum(1 for n in names if view[n]),
        "total": len(names),
    }
    if not names:
        out["warnings"] = [NO_HABITS_WARNING]
    _print_json(out)


def _cmd_log(args: argparse.Namespace) -> None:
    tracker = _open_tracker()
    with tracker.store:
        if args.select:
            appended = tracker.log(args.select)
        else:
            appended = tracker.log(selector=prompt_selection)
        view = tracker.view()

    _print_json(
        {
            "ok": True,
            "changed": bool(appended),
            "logged": [
                {"id": ev.id, "habit": ev.habit, "logged": format_ts(ev.logged_at)}
                for ev in appended
            ],
            "today": {h: view[h] for h in sorted(view, key=lambda h: (h.casefold(), h))},
        }
    )


def _cmd_reset(args: argparse.Namespace) -> None:
    tracker = _open_tracker()
    with tracker.store:
        day = _day_arg(tracker, args.date)
        deleted = tracker.reset_day(day)
    _print_json({"ok": True, "date": day.isoformat(), "deleted": deleted})


def _cmd_prefs_get(args: argparse.Namespace) -> None:
    env = _read_env()
    _print_json(
        {
            "ok": True,
            "db_path": str(_db_path()),
            "prefs": {"timezone": _setting("TIMEZONE", env)},
        }
    )


def _cmd_prefs_set(args: argparse.Namespace) -> None:
    updates: dict[str, str] = {}
    if args.timezone is not None:
        tz_name = args.timezone.strip()
        if tz_name:
            try:
                ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                _die(f"Unknown timezone '{tz_name}'.")
        updates["TIMEZONE"] = tz_name
    if args.db is not None:
        updates["HABITS_DB"] = args.db

    if not updates:
        _die("No preferences provided.")

    _upsert_env(updates)
    _cmd_prefs_get(args)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="habits", description="Mark off your habits daily.")
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("init", help="Initialize the SQLite DB (idempotent)").set_defaults(
        func=_cmd_init
    )

    tr = sub.add_parser("track", help="Add a habit to track")
    tr.add_argument("name")
    tr.set_defaults(func=_cmd_track)

    un = sub.add_parser("untrack", help="Stop tracking a habit")
    un.add_argument("name")
    un.set_defaults(func=_cmd_untrack)

    sub.add_parser("list", help="List all current habits").set_defaults(func=_cmd_list)

    td = sub.add_parser("today", help="What have you done today?")
    td.add_argument("--date", help="YYYY-MM-DD or today/yesterday/tomorrow or +/-Nd")
    td.add_argument("--text", action="store_true", help="Print a square-per-habit report")
    td.set_defaults(func=_cmd_today)

    lg = sub.add_parser("log", help="Log today's habits (interactive unless --select)")
    lg.add_argument(
        "--select",
        action="append",
        metavar="NAME",
        help="Habit done today (repeatable); skips the interactive prompt",
    )
    lg.set_defaults(func=_cmd_log)

    rs = sub.add_parser("reset", help="Delete every completion logged on a day")
    rs.add_argument("--date", help="YYYY-MM-DD or today/yesterday/tomorrow or +/-Nd")
    rs.set_defaults(func=_cmd_reset)

    sub.add_parser("prefs-get", help="Read preferences from .env").set_defaults(
        func=_cmd_prefs_get
    )

    ps = sub.add_parser("prefs-set", help="Set preferences in .env")
    ps.add_argument("--timezone", help="IANA timezone, e.g. Europe/Madrid ('' for UTC)")
    ps.add_argument("--db", help="SQLite database path")
    ps.set_defaults(func=_cmd_prefs_set)

    return p


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    if getattr(args, "func", None) is None:
        parser.print_help()
        raise SystemExit(0)
    try:
        args.func(args)
    except UserAborted:
        _print_json({"ok": True, "changed": False, "message": "No changes made."})
    except NoActiveHabits as e:
        _print_json({"ok": True, "changed": False, "warnings": [str(e)]})
    except (AlreadyTracked, NotTracked) as e:
        _die(str(e), kind=e.kind)
    except StorageUnavailable as e:
        _die(f"{e} Something broke.", kind=e.kind)
    except ValueError as e:
        _die(str(e))
    except BrokenPipeError:
        # Allow piping to head/jq without stack traces.
        raise SystemExit(0)


if __name__ == "__main__":
    main(sys.argv[1:])
