#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Navigator smoke tests: date input, descriptor building, override loading,
--validate exit codes and the explain panel (rendered into a buffer).

Run:
  python3 tools/happenings_navigator_tests.py [--verbose]
"""

import importlib
import sys, os, io, tempfile
from datetime import date

HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(HERE))

from rich.console import Console

core = importlib.import_module("happenings_core")
nav = importlib.import_module("happenings_navigator")

EV1 = "0b7e5a52-8f7c-4d0e-9a35-1f6e2b9c4d11"

def expect(cond, msg):
    if not cond:
        raise AssertionError(msg)

def _captured(fn, *a, **kw):
    buf = io.StringIO()
    saved = nav.console
    nav.console = Console(file=buf, width=120, color_system=None)
    try:
        rc = fn(*a, **kw)
    finally:
        nav.console = saved
    return rc, buf.getvalue()

def test_loose_date():
    expect(nav.loose_date("2026-01-24") == date(2026, 1, 24), "date-key input")
    expect(nav.loose_date("Jan 24 2026") == date(2026, 1, 24), "free-form input")
    expect(nav.loose_date("  ") is None, "blank -> None")
    try:
        nav.loose_date("not a date at all")
    except core.InvalidDateKey:
        pass
    else:
        raise AssertionError("unreadable date must raise InvalidDateKey")

def test_descriptor_from_args_custom_dates():
    d = nav.descriptor_from_args("custom", None, None, "2026-02-01, Jan 15 2026")
    expect(d.custom_dates == ("2026-02-01", "2026-01-15"), f"custom dates: {d.custom_dates}")
    rec = core.interpret(d)
    expect(rec == core.CustomDates(["2026-01-15", "2026-02-01"]), f"interpreted: {rec!r}")

def test_load_overrides_filters_event():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "ov.csv")
        with open(path, "w", encoding="utf-8") as f:
            f.write("event_id,date_key,status,override_start_time,override_notes,override_cover_image_url\n")
            f.write(f"{EV1},2026-01-31,cancelled,,,\n")
            f.write("5c1d2e3f-4a5b-4c6d-8e7f-901234abcdef,2026-02-07,cancelled,,,\n")
        omap = nav.load_overrides(path, EV1)
    expect(list(omap) == ["2026-01-31"] and omap["2026-01-31"].is_cancelled, f"override map: {omap}")
    expect(nav.load_overrides(None, EV1) == {}, "no path -> no overrides")

def test_validate_exit_codes():
    rc, out = _captured(nav.validate, core.RecurrenceDescriptor(weekday="Saturday", rule="weekly"))
    expect(rc == 0 and "OK" in out, f"weekly ok: {out!r}")
    rc, out = _captured(nav.validate, core.RecurrenceDescriptor(rule="seasonal"))
    expect(rc == 1 and "FAIL" in out, f"seasonal fails: {out!r}")
    rc, out = _captured(nav.validate, core.RecurrenceDescriptor(anchor_date="2026-01-24", weekday="Friday", rule="weekly"))
    expect(rc == 0 and "WARN" in out and "trusting weekday" in out, f"mismatch warns: {out!r}")

def test_explain_renders_cancellations():
    omap = core.build_override_map([{"date_key": "2026-01-31", "status": "cancelled"}])
    rc, out = _captured(
        nav.explain,
        core.RecurrenceDescriptor(weekday="sat", rule="weekly"),
        date(2026, 1, 24),
        days=14,
        overrides=omap,
        start_time="19:00",
    )
    expect(rc == 0, f"explain rc={rc}")
    expect("Every Saturday" in out, "pattern label shown")
    expect("2026-01-31" in out and "cancelled" in out, "cancelled date shown")
    expect("7 PM" in out, "base start time shown")
    expect("January 2026" in out, "calendar rendered")


TESTS = [
    test_loose_date,
    test_descriptor_from_args_custom_dates,
    test_load_overrides_filters_event,
    test_validate_exit_codes,
    test_explain_renders_cancellations,
]

def main():
    verbose = "--verbose" in sys.argv
    fails = 0
    for fn in TESTS:
        try:
            fn()
            if verbose:
                print(f"✓ {fn.__name__}")
        except AssertionError as e:
            fails += 1
            print(f"✗ {fn.__name__}: {e}")
    print(f"\nDone: {len(TESTS) - fails}/{len(TESTS)} passing")
    sys.exit(1 if fails else 0)

if __name__ == "__main__":
    main()
