#!/usr/bin/env python3
"""
Happenings Navigator: explain, validate and preview event recurrences.

- Explains a stored recurrence (rule + weekday + event date + custom dates):
  canonical pattern, human label, interpretation notes, next occurrence,
  upcoming dates and a month calendar.
- Applies an override CSV for one event so cancelled/retimed dates show up.
- Interactive mode with fuzzy completion for weekday and rule.
- --self-check verifies config, timezone data and DST-safe day arithmetic.
"""

from __future__ import annotations

import argparse
import calendar
import os
import sys
from datetime import date
from typing import Dict, List, Optional, Tuple

from dateutil import parser as date_parser

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.columns import Columns
from rich.text import Text
from rich import box
from rich.markup import escape

from prompt_toolkit import prompt
from prompt_toolkit.completion import FuzzyCompleter, WordCompleter

import happenings_core as core
import happenings_override_ops as ops


# ──────────────────────────────────────────────────────────────────────────────
# Constants / styling
# ──────────────────────────────────────────────────────────────────────────────
console = Console()

COLORS = {
    'primary': 'bright_cyan',
    'secondary': 'bright_blue',
    'success': 'green',
    'warning': 'bright_yellow',
    'error': 'bright_red',
    'muted': 'grey58',
    'future': 'bright_blue',
    'override': 'bright_magenta',
}

UPCOMING_MAX = 12  # rows in the upcoming list

RULE_SUGGESTIONS = [
    "weekly", "biweekly", "every other week", "none", "seasonal", "custom",
    "1st", "2nd", "3rd", "4th", "5th", "last",
    "1st/3rd", "2nd/4th", "1st & 3rd", "2nd and last",
    "FREQ=MONTHLY;BYDAY=1TH", "FREQ=MONTHLY;BYDAY=1TH,3TH", "FREQ=MONTHLY;BYDAY=-1FR",
    "FREQ=WEEKLY;BYDAY=SA", "FREQ=WEEKLY;INTERVAL=2;BYDAY=SA",
]


def _diag_enabled() -> bool:
    return os.environ.get("HAPPENINGS_DIAG") == "1"


def _emit_check(status: str, label: str, detail: str) -> None:
    color = {
        "OK": COLORS["success"],
        "WARN": COLORS["warning"],
        "FAIL": COLORS["error"],
    }.get(status, COLORS["muted"])
    console.print(f"[{color}]{status:>4}[/] {label}: {detail}")


# ──────────────────────────────────────────────────────────────────────────────
# Input helpers
# ──────────────────────────────────────────────────────────────────────────────
def loose_date(text: Optional[str]) -> Optional[date]:
    """Parse a user-typed date ("2026-01-24", "Jan 24 2026", "today", "tomorrow")."""
    s = (text or "").strip()
    if not s:
        return None
    low = s.lower()
    if low == "today":
        return core.today()
    if low == "tomorrow":
        return core.add_days(core.today(), 1)
    if core.is_valid_date_key(s):
        return core.parse_date_key(s)
    try:
        return date_parser.parse(s).date()
    except (ValueError, OverflowError) as e:
        raise core.InvalidDateKey(s, f"unreadable date ({e})") from None


def descriptor_from_args(rule: Optional[str], weekday: Optional[str], when: Optional[str],
                         custom: Optional[str]) -> core.RecurrenceDescriptor:
    anchor = loose_date(when) if when else None
    custom_dates = None
    if custom:
        custom_dates = [core.date_key(loose_date(p)) for p in custom.split(",") if p.strip()]
    return core.RecurrenceDescriptor(
        anchor_date=anchor,
        weekday=weekday or None,
        rule=rule or "",
        custom_dates=custom_dates,
    )


def load_overrides(path: Optional[str], event_id: Optional[str]) -> Dict[str, core.OccurrenceOverride]:
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        res = ops.parse_override_csv(f.read())
    if not res.success:
        raise ValueError("; ".join(res.errors))
    report = ops.validate_override_rows(res.rows)
    for bad in report["invalid_rows"]:
        console.print(f"[{COLORS['warning']}]skipping override row {bad['row_index'] + 2}:[/] {escape('; '.join(bad['errors']))}")
    return core.build_override_map(report["valid_rows"], event_id=event_id)


# ──────────────────────────────────────────────────────────────────────────────
# Rendering
# ──────────────────────────────────────────────────────────────────────────────
def _months_per_row() -> int:
    width = console.size.width
    if width >= 120:  # wide → 3 per row
        return 3
    if width >= 90:   # medium → 2 per row
        return 2
    return 1


def _month_table(year: int, month: int, active: set, cancelled: set, changed: set, ref: date) -> Table:
    table = Table(show_header=True, box=None, padding=(0, 1))
    for day in ["Mo", "Tu", "We", "Th", "Fr", "Sa", "Su"]:
        table.add_column(day, justify="center", min_width=3, style=COLORS['muted'])
    for week in calendar.Calendar(calendar.MONDAY).monthdayscalendar(year, month):
        row = []
        for day_num in week:
            if day_num == 0:
                row.append("   ")
                continue
            d = date(year, month, day_num)
            if d in cancelled:
                color = COLORS['error']
            elif d in changed:
                color = COLORS['override']
            elif d in active:
                color = COLORS['success']
            else:
                color = COLORS['muted']
            cell = f"[{color}]{day_num:2d}[/{color}]"
            if d == ref:
                cell = f"[underline]{cell}[/underline]"
            row.append(cell)
        table.add_row(*row)
    return table


def calendar_panel(effective: List[core.EffectiveOccurrence], ref: date) -> Panel:
    days = [core.parse_date_key(e.date_key) for e in effective]
    if not days:
        return Panel(Text("📅 No dates in window", style=COLORS['warning']), title="📅 Calendar",
                     border_style=COLORS['warning'], expand=False)
    active = {core.parse_date_key(e.date_key) for e in effective if not e.is_cancelled}
    cancelled = {core.parse_date_key(e.date_key) for e in effective if e.is_cancelled}
    changed = {core.parse_date_key(e.date_key) for e in effective if e.has_override and not e.is_cancelled}

    panels = []
    cursor = date(min(days).year, min(days).month, 1)
    last = date(max(days).year, max(days).month, 1)
    while cursor <= last:
        panels.append(Panel(_month_table(cursor.year, cursor.month, active, cancelled, changed, ref),
                            title=f"{core._MONTH_FULL[cursor.month]} {cursor.year}",
                            border_style=COLORS['secondary'], padding=(0, 1), expand=False))
        cursor = date(cursor.year + (cursor.month // 12), cursor.month % 12 + 1, 1)

    mpr = _months_per_row()
    rows = [Columns(panels[i:i + mpr], equal=False, expand=False, padding=1) for i in range(0, len(panels), mpr)]
    summary = f"🟢 {len(active - changed)} on • 🟣 {len(changed)} changed • 🔴 {len(cancelled)} cancelled"
    return Panel(Columns(rows, equal=False, expand=False, padding=0), title=summary,
                 border_style=COLORS['primary'], padding=(0, 1), expand=False)


def _next_text(nxt: core.NextOccurrence) -> str:
    if not nxt.found:
        return "no known occurrence"
    when = core.format_date_key_long(nxt.date_key)
    if nxt.is_today:
        when = f"Today · {when}"
    elif nxt.is_tomorrow:
        when = f"Tomorrow · {when}"
    if not nxt.is_confident:
        when += " (not confident)"
    return when


def explain(desc: core.RecurrenceDescriptor, ref: date, *, days: int, overrides=None,
            start_time: Optional[str] = None, show_calendar: bool = True) -> int:
    rec, notes = core.interpret_with_notes(desc)
    window = core.Window.from_today(ref, days)
    occs, meta = core.expand_occurrences(rec, window)
    effective = core.merge_overrides(occs, overrides or {}, core.BaseFields(start_time=start_time))

    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_row("Rule", Text(desc.rule or "—"))
    table.add_row("Weekday", Text(str(desc.weekday or "—")))
    table.add_row("Event date", core.date_key(desc.anchor_date) if desc.anchor_date else "—")
    if desc.custom_dates:
        table.add_row("Custom", ", ".join(str(d) for d in desc.custom_dates))
    table.add_row("Pattern", f"[bold]{core.humanize(rec)}[/bold]")
    table.add_row("Variant", Text(repr(rec), style=COLORS['muted']))
    for n in notes:
        table.add_row(f"[{COLORS['warning']}]Note[/]", Text(n))
    table.add_row("Next", _next_text(core.display_occurrence(rec, ref)))

    ref_key = core.date_key(ref)
    lines = []
    for eff in effective[:UPCOMING_MAX]:
        head = core.format_date_group_header(eff.date_key, ref_key)
        t = core.format_time_ampm(eff.display_start_time) if eff.display_start_time else ""
        if eff.is_cancelled:
            lines.append(f"[{COLORS['error']}]✗ {eff.date_key} {head} cancelled[/]")
        elif eff.has_override:
            lines.append(f"[{COLORS['override']}]✎ {eff.date_key} {head} {t}[/] {escape(eff.notes or '')}".rstrip())
        else:
            lines.append(f"• {eff.date_key} {head} {t}".rstrip())
    if len(effective) > UPCOMING_MAX:
        lines.append(f"[{COLORS['muted']}]…and {len(effective) - UPCOMING_MAX} more[/]")
    table.add_row("Upcoming", "\n".join(lines) if lines else "—")
    if meta["capped"]:
        table.add_row(f"[{COLORS['warning']}]Warning[/]", f"truncated at {meta['cap']} dates")

    border = COLORS['secondary'] if rec.is_confident else COLORS['warning']
    console.print(Panel(table, title=f"Recurrence explain · {days} days from {ref_key}", border_style=border, expand=False))
    if show_calendar and effective:
        console.print(calendar_panel(effective, ref))
    return 0


def validate(desc: core.RecurrenceDescriptor) -> int:
    rec, notes = core.interpret_with_notes(desc)
    if core.is_ambiguous(rec):
        console.print(f"[{COLORS['error']}]FAIL[/] recurrence: {core.humanize(rec)} ({rec.kind})")
        for n in notes:
            console.print(f"     {escape(n)}")
        return 1
    mismatch = core.check_day_consistency(desc)
    if notes or mismatch:
        console.print(f"[{COLORS['warning']}]WARN[/] recurrence: {core.humanize(rec)}")
        for n in notes:
            console.print(f"     {escape(n)}")
        return 0
    console.print(f"[{COLORS['success']}]OK[/] recurrence: {core.humanize(rec)}")
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# Self-check
# ──────────────────────────────────────────────────────────────────────────────
def self_check() -> int:
    console.print("[bold]Happenings self-check[/bold]")
    ok = True

    cfg_existing = [p for p in core._config_paths() if os.path.exists(p)]
    if cfg_existing:
        try:
            data = core._read_toml(cfg_existing[0])
            _emit_check("OK" if data else "WARN", "config",
                        f"found {cfg_existing[0]}" + ("" if data else " (empty or parse error)"))
        except RuntimeError as e:
            ok = False
            _emit_check("FAIL", "config", str(e))
    else:
        _emit_check("WARN", "config", "no config file found; defaults in use")

    tz_key = getattr(core._LOCAL_TZ, "key", None)
    if tz_key == core.LOCAL_TZ_NAME:
        _emit_check("OK", "timezone", tz_key)
    else:
        ok = False
        _emit_check("FAIL", "timezone", f"configured {core.LOCAL_TZ_NAME!r}, using {tz_key or 'UTC'}")

    # a day step across each DST edge must land on the next civil date
    year = core.today().year
    samples: List[Tuple[date, date]] = []
    for m in (3, 11):
        for d in range(1, calendar.monthrange(year, m)[1]):
            a = date(year, m, d)
            samples.append((a, date.fromordinal(a.toordinal() + 1)))
    bad = [a for a, b in samples if core.add_days(a, 1) != b or core.add_days(b, -1) != a]
    if bad:
        ok = False
        _emit_check("FAIL", "day arithmetic", f"drift around {core.date_key(bad[0])}")
    else:
        _emit_check("OK", "day arithmetic", f"DST months of {year} step cleanly")

    sample = core.generate(core.MonthlyOrdinal("Friday", {5}), core.Window("2027-02-01", "2027-02-28"))
    if sample:
        ok = False
        _emit_check("FAIL", "5th-weekday guard", f"unexpected {sample[0].date_key}")
    else:
        _emit_check("OK", "5th-weekday guard", "no rollover into March")

    _emit_check("OK" if core.tomllib else "WARN", "toml parser",
                getattr(core.tomllib, "__name__", "unavailable; config files ignored"))

    if _diag_enabled():
        console.print("\n[bold]Diagnostics[/bold]")
        console.print(f"happenings_core={getattr(core, '__file__', 'unknown')}")
        for k in ("HAPPENINGS_CONFIG", "HAPPENINGS_DATA", "HAPPENINGS_DIAG_LOG"):
            v = os.environ.get(k)
            if v is not None:
                console.print(f"env.{k}={v}")
        console.print(f"core.window_days={core.WINDOW_DAYS} core.max_occurrences={core.MAX_OCCURRENCES} "
                      f"core.lookahead_days={core.LOOKAHEAD_DAYS}")
    return 0 if ok else 1


# ──────────────────────────────────────────────────────────────────────────────
# Interactive
# ──────────────────────────────────────────────────────────────────────────────
def interactive() -> core.RecurrenceDescriptor:
    console.print(Panel("🔍 Type to search (fuzzy matching enabled); leave blank to skip",
                        title="Recurrence entry", border_style=COLORS['primary']))
    wd_completer = FuzzyCompleter(WordCompleter(list(core._WEEKDAY_NAMES), ignore_case=True))
    rule_completer = FuzzyCompleter(WordCompleter(RULE_SUGGESTIONS, ignore_case=True, match_middle=True,
                                                  sentence=True))
    while True:
        try:
            weekday = prompt("Weekday ❯ ", completer=wd_completer).strip()
            if weekday and core.parse_weekday(weekday) is None:
                console.print(f"[{COLORS['error']}]Unknown weekday. Please try again.[/]")
                continue
            rule = prompt("Rule ❯ ", completer=rule_completer).strip()
            when = console.input("Event date (YYYY-MM-DD, blank for none): ").strip()
            custom = ""
            if rule.lower() == "custom":
                custom = console.input("Custom dates (comma separated): ").strip()
            return descriptor_from_args(rule, weekday, when, custom)
        except core.InvalidDateKey as e:
            console.print(f"[{COLORS['error']}]{escape(str(e))}[/]")
        except KeyboardInterrupt:
            console.print(f"\n[{COLORS['warning']}]Cancelled by user[/]")
            sys.exit(0)


def main():
    parser = argparse.ArgumentParser(
        description="Happenings Navigator: explain and validate event recurrences",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--explain", metavar="RULE", help="Explain a recurrence rule (with --weekday/--date)")
    parser.add_argument("--validate", metavar="RULE", help="Validate a recurrence rule (with --weekday/--date)")
    parser.add_argument("--self-check", action="store_true", help="Run self-check diagnostics")
    parser.add_argument("--weekday", help="Day of week, e.g. Saturday or sat")
    parser.add_argument("--date", help="Event/anchor date")
    parser.add_argument("--custom", metavar="DATES", help="Comma-separated custom dates")
    parser.add_argument("--today", help="Reference date (default: today in the event timezone)")
    parser.add_argument("--days", type=int, default=core.WINDOW_DAYS, help="Window length in days")
    parser.add_argument("--overrides", metavar="CSV", help="Override CSV to apply")
    parser.add_argument("--event-id", help="Only apply overrides for this event id")
    parser.add_argument("--start-time", help="Base start time HH:MM")
    parser.add_argument("--no-calendar", action="store_true", help="Skip the month calendar")
    args = parser.parse_args()

    try:
        ref = loose_date(args.today) or core.today()
        if args.self_check or args.explain is not None or args.validate is not None:
            code = 0
            if args.self_check:
                code = max(code, self_check())
            if args.validate is not None:
                code = max(code, validate(descriptor_from_args(args.validate, args.weekday, args.date, args.custom)))
            if args.explain is not None:
                desc = descriptor_from_args(args.explain, args.weekday, args.date, args.custom)
                code = max(code, explain(desc, ref, days=args.days,
                                         overrides=load_overrides(args.overrides, args.event_id),
                                         start_time=args.start_time, show_calendar=not args.no_calendar))
            sys.exit(code)

        if args.weekday or args.date or args.custom:
            desc = descriptor_from_args("", args.weekday, args.date, args.custom)
        else:
            desc = interactive()
        sys.exit(explain(desc, ref, days=args.days,
                         overrides=load_overrides(args.overrides, args.event_id),
                         start_time=args.start_time, show_calendar=not args.no_calendar))
    except KeyboardInterrupt:
        console.print(f"\n[{COLORS['warning']}]Operation cancelled[/]")
        sys.exit(0)
    except (ValueError, OSError) as e:
        console.print(f"[{COLORS['error']}]Error: {escape(str(e))}[/]")
        sys.exit(1)


if __name__ == '__main__':
    main()
