#!/usr/bin/env python3
"""
Terminal multi-select used by `habits log`.

Habits are listed with their current state preselected. Typing numbers
toggles entries, an empty line confirms, `q` aborts.
"""

from __future__ import annotations

import re
import sys
from typing import Callable, Mapping, TextIO

from habits_engine import UserAborted


def _render(names: list[str], chosen: set[str], out: TextIO) -> None:
    out.write("Habits\n")
    for i, name in enumerate(names, start=1):
        mark = "x" if name in chosen else " "
        out.write(f"  {i:>2}. [{mark}] {name}\n")
    out.write("Toggle numbers (e.g. 1 3), Enter to confirm, q to abort: ")
    out.flush()


def prompt_selection(
    view: Mapping[str, bool],
    *,
    input_fn: Callable[[], str] | None = None,
    out: TextIO | None = None,
) -> list[str]:
    """Return the chosen habits in display order, or raise UserAborted."""
    out = out or sys.stderr
    read = input_fn or sys.stdin.readline

    names = sorted(view, key=lambda h: (h.casefold(), h))
    chosen = {h for h in names if view[h]}

    while True:
        _render(names, chosen, out)
        try:
            raw = read()
        except (EOFError, KeyboardInterrupt) as e:
            out.write("\n")
            raise UserAborted("user aborted") from e
        if raw == "":
            # readline() returns "" only at EOF.
            out.write("\n")
            raise UserAborted("user aborted")

        line = raw.strip().lower()
        if line in ("q", "quit"):
            raise UserAborted("user aborted")
        if not line:
            return [h for h in names if h in chosen]

        for tok in re.split(r"[\s,]+", line):
            if not tok:
                continue
            if not tok.isdigit() or not (1 <= int(tok) <= len(names)):
                out.write(f"Ignoring '{tok}': pick 1..{len(names)}.\n")
                continue
            name = names[int(tok) - 1]
            if name in chosen:
                chosen.discard(name)
            else:
                chosen.add(name)
