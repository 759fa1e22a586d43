#!/usr/bin/env python3
"""
Occurrence override operations: CSV import/export, validation and diffing.

Ops staff edit per-date overrides (cancellations, time/notes/image changes)
as a spreadsheet. This script checks such a CSV, diffs it against the
currently stored overrides and previews what a series looks like with the
overrides applied. It never writes to storage; update payloads are printed
for the caller to apply.

Examples:
  happenings_override_ops.py validate overrides.csv
  happenings_override_ops.py diff current.csv incoming.csv --events events.txt
  happenings_override_ops.py preview overrides.csv --event-id ID --weekday Thu --rule "1st/3rd"
"""
from __future__ import annotations
import argparse, csv, io, json, re, sys
from dataclasses import dataclass, field

import happenings_core as core

OVERRIDE_CSV_HEADERS = (
    "event_id",
    "date_key",
    "status",
    "override_start_time",
    "override_notes",
    "override_cover_image_url",
)
VALID_OVERRIDE_STATUSES = core.VALID_OVERRIDE_STATUSES
_DIFF_FIELDS = OVERRIDE_CSV_HEADERS[2:]

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_START_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")
_URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)


@dataclass
class ParseResult:
    success: bool
    rows: list = field(default_factory=list)
    errors: list = field(default_factory=list)


# ---------- CSV ---------------------------------------------------------------
def _cell(v):
    s = (v or "").strip()
    return s if s else None


def parse_override_csv(text: str) -> ParseResult:
    """Parse override CSV text; empty optional cells become None."""
    if not text or not text.strip():
        return ParseResult(False, [], ["CSV is empty"])
    text = text.lstrip("\ufeff")
    reader = csv.reader(io.StringIO(text.strip()))
    try:
        header = [h.strip().lower() for h in next(reader)]
    except StopIteration:
        return ParseResult(False, [], ["CSV is empty"])
    if len(header) != len(OVERRIDE_CSV_HEADERS):
        return ParseResult(False, [], [
            f"Invalid header count: expected {len(OVERRIDE_CSV_HEADERS)} columns "
            f"({','.join(OVERRIDE_CSV_HEADERS)}), got {len(header)}"
        ])
    if tuple(header) != OVERRIDE_CSV_HEADERS:
        return ParseResult(False, [], [f"Invalid header: expected {','.join(OVERRIDE_CSV_HEADERS)}"])

    rows, errors = [], []
    for lineno, cells in enumerate(reader, start=2):
        if not any((c or "").strip() for c in cells):
            continue
        if len(cells) != len(OVERRIDE_CSV_HEADERS):
            errors.append(f"Row {lineno}: expected {len(OVERRIDE_CSV_HEADERS)} columns, got {len(cells)}")
            continue
        rows.append({k: _cell(v) for k, v in zip(OVERRIDE_CSV_HEADERS, cells)})
    return ParseResult(not errors, rows, errors)


def serialize_override_csv(overrides) -> str:
    """Header plus one line per override; extra keys (id, timestamps) are dropped."""
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(OVERRIDE_CSV_HEADERS)
    for ov in overrides or ():
        w.writerow(["" if ov.get(k) is None else str(ov.get(k)) for k in OVERRIDE_CSV_HEADERS])
    return buf.getvalue().rstrip("\n")


def get_override_composite_key(row: dict) -> str:
    return core.override_key(row.get("event_id"), row.get("date_key"))


# ---------- Validation --------------------------------------------------------
def normalize_override_row(row: dict) -> dict:
    out = {}
    for k in OVERRIDE_CSV_HEADERS:
        v = row.get(k)
        out[k] = None if v is None else _cell(str(v))
    if out["status"]:
        out["status"] = out["status"].lower()
    return out


def validate_override_row(row: dict) -> tuple[bool, list[str]]:
    """Return (valid, errors) for one normalized override row."""
    errors: list[str] = []
    event_id = row.get("event_id")
    key = row.get("date_key")
    status = row.get("status")

    if not event_id:
        errors.append("Missing required field: event_id")
    elif not _UUID_RE.match(event_id):
        errors.append(f"Invalid UUID format for event_id: {event_id}")

    if not key:
        errors.append("Missing required field: date_key")
    elif not core.is_valid_date_key(key):
        errors.append(f"Invalid date_key format: {key} (expected YYYY-MM-DD)")

    if not status:
        errors.append("Missing required field: status")
    elif status not in VALID_OVERRIDE_STATUSES:
        errors.append(f"Invalid status: {status} (expected one of {', '.join(VALID_OVERRIDE_STATUSES)})")

    start = row.get("override_start_time")
    if start and not _START_TIME_RE.match(start):
        errors.append(f"Invalid override_start_time format: {start} (expected HH:MM or HH:MM:SS)")

    url = row.get("override_cover_image_url")
    if url and not _URL_RE.match(url):
        errors.append(f"Invalid override_cover_image_url: {url}")
    return (not errors), errors


def validate_override_rows(rows) -> dict:
    """Normalize and validate rows, flagging duplicate (event_id, date_key) pairs."""
    valid_rows, invalid_rows = [], []
    seen: dict[str, int] = {}
    for idx, raw in enumerate(rows or ()):
        row = normalize_override_row(raw)
        ok, errors = validate_override_row(row)
        if row.get("event_id") and row.get("date_key"):
            ck = get_override_composite_key(row)
            if ck in seen:
                errors.append(f"Duplicate event_id + date_key (first seen in row {seen[ck] + 1}): {ck}")
                ok = False
            else:
                seen[ck] = idx
        if ok:
            valid_rows.append(row)
        else:
            invalid_rows.append({"row_index": idx, "row": row, "errors": errors})
    return {
        "valid_rows": valid_rows,
        "invalid_rows": invalid_rows,
        "all_valid": not invalid_rows,
    }


# ---------- Diff --------------------------------------------------------------
def _same(a, b) -> bool:
    return (a or None) == (b or None)


def compute_override_diff(current, incoming, valid_event_ids) -> dict:
    """
    Compare incoming CSV rows with stored overrides.

    `current` rows carry their storage `id`. Rows for events not in
    valid_event_ids are reported, never inserted.
    """
    valid_ids = {str(e) for e in (valid_event_ids or ())}
    stored = {get_override_composite_key(r): r for r in (current or ())}
    updates, inserts, missing = [], [], []
    unchanged = 0

    for raw in incoming or ():
        row = normalize_override_row(raw)
        if row["event_id"] not in valid_ids:
            if row["event_id"] not in missing:
                missing.append(row["event_id"])
            continue
        existing = stored.get(get_override_composite_key(row))
        if existing is None:
            inserts.append(row)
            continue
        changes = [
            {"field": f, "old_value": existing.get(f), "new_value": row.get(f)}
            for f in _DIFF_FIELDS
            if not _same(existing.get(f), row.get(f))
        ]
        if changes:
            updates.append({
                "id": existing.get("id"),
                "event_id": row["event_id"],
                "date_key": row["date_key"],
                "changes": changes,
            })
        else:
            unchanged += 1
    return {
        "updates": updates,
        "inserts": inserts,
        "unchanged": unchanged,
        "event_ids_not_found": missing,
    }


def build_override_update_payloads(diffs) -> list[dict]:
    return [
        {"id": d["id"], "updates": {c["field"]: c["new_value"] for c in d["changes"]}}
        for d in diffs or ()
    ]


# ---------- CLI ---------------------------------------------------------------
def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _read_event_ids(source: str | None) -> list[str]:
    if not source:
        return []
    try:
        text = _read_text(source)
    except OSError:
        text = source
    return [t for t in re.split(r"[\s,]+", text) if t]


def _load_csv_or_die(path: str) -> list[dict]:
    res = parse_override_csv(_read_text(path))
    if not res.success:
        for e in res.errors:
            print(f"ERR {path}: {e}", file=sys.stderr)
        sys.exit(1)
    return res.rows


def cmd_validate(args) -> int:
    rows = _load_csv_or_die(args.csv)
    report = validate_override_rows(rows)
    result_rows = [("Rows", str(len(rows))), ("Valid", str(len(report["valid_rows"])))]
    for bad in report["invalid_rows"]:
        result_rows.append((f"Error row {bad['row_index'] + 2}", "\n".join(bad["errors"])))
    core.render_panel(
        "Override CSV " + ("OK" if report["all_valid"] else "has errors"),
        result_rows,
        kind="ok" if report["all_valid"] else "error",
    )
    return 0 if report["all_valid"] else 1


def cmd_diff(args) -> int:
    current = _load_csv_or_die(args.current)
    incoming = _load_csv_or_die(args.incoming)
    report = validate_override_rows(incoming)
    if not report["all_valid"]:
        for bad in report["invalid_rows"]:
            print(f"ERR row {bad['row_index'] + 2}: {'; '.join(bad['errors'])}", file=sys.stderr)
        return 1
    ids = _read_event_ids(args.events) or sorted({r["event_id"] for r in current} | {r["event_id"] for r in incoming})
    # stored CSV exports carry no id column; the composite key stands in for it
    for r in current:
        r.setdefault("id", get_override_composite_key(r))
    diff = compute_override_diff(current, report["valid_rows"], ids)
    if args.json:
        print(json.dumps({
            "inserts": diff["inserts"],
            "updates": build_override_update_payloads(diff["updates"]),
            "unchanged": diff["unchanged"],
            "event_ids_not_found": diff["event_ids_not_found"],
        }, indent=2))
        return 0
    rows = [
        ("Inserts", str(len(diff["inserts"]))),
        ("Updates", str(len(diff["updates"]))),
        ("Unchanged", str(diff["unchanged"])),
    ]
    for u in diff["updates"]:
        rows.append((f"{u['date_key']}", ", ".join(
            f"{c['field']}: {c['old_value']!r} -> {c['new_value']!r}" for c in u["changes"]
        )))
    if diff["event_ids_not_found"]:
        rows.append(("Warning", "unknown event ids: " + ", ".join(diff["event_ids_not_found"])))
    core.render_panel("Override diff", rows, kind="warning" if diff["event_ids_not_found"] else "info")
    return 0


def cmd_preview(args) -> int:
    rows = _load_csv_or_die(args.csv)
    desc = core.RecurrenceDescriptor(
        anchor_date=args.date or None,
        weekday=args.weekday or None,
        rule=args.rule or "",
    )
    rec, notes = core.interpret_with_notes(desc)
    ref = core.parse_date_key(args.today) if args.today else core.today()
    window = core.Window.from_today(ref, args.days)
    occs, meta = core.expand_occurrences(rec, window)
    omap = core.build_override_map(rows, event_id=args.event_id)
    merged = core.merge_overrides(occs, omap, core.BaseFields(start_time=args.start_time))

    out = [("Pattern", core.humanize(rec)), ("Variant", rec.kind)]
    for n in notes:
        out.append(("Note", n))
    if meta["capped"]:
        out.append(("Warning", f"truncated at {meta['cap']} dates"))
    for eff in merged:
        label = core.format_date_group_header(eff.date_key, core.date_key(ref))
        value = core.format_time_ampm(eff.display_start_time) if eff.display_start_time else ""
        if eff.notes:
            value = f"{value}  {eff.notes}".strip()
        out.append(("Cancelled " + eff.date_key if eff.is_cancelled else f"{label} {eff.date_key}", value))
    if not merged:
        out.append(("Upcoming", core.UNKNOWN_LABEL if core.is_ambiguous(rec) else "none in window"))
    core.render_panel(f"Preview {args.event_id}", out)
    return 0


def main(argv=None):
    ap = argparse.ArgumentParser(description="Validate, diff and preview per-date occurrence overrides.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("validate", help="Check an override CSV.")
    p.add_argument("csv", help="Override CSV file ('-' for stdin).")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("diff", help="Diff an incoming CSV against the stored overrides export.")
    p.add_argument("current", help="CSV export of stored overrides.")
    p.add_argument("incoming", help="Edited CSV to apply.")
    p.add_argument("--events", metavar="IDS", help="File or comma list of known event ids.")
    p.add_argument("--json", action="store_true", help="Print inserts and update payloads as JSON.")
    p.set_defaults(func=cmd_diff)

    p = sub.add_parser("preview", help="Show upcoming dates of a series with overrides applied.")
    p.add_argument("csv", help="Override CSV file.")
    p.add_argument("--event-id", required=True)
    p.add_argument("--weekday", help="Day of week, e.g. Thursday or thu.")
    p.add_argument("--rule", help='Recurrence rule, e.g. weekly, "1st/3rd", FREQ=MONTHLY;BYDAY=2TH.')
    p.add_argument("--date", help="Anchor/event date YYYY-MM-DD.")
    p.add_argument("--start-time", help="Base start time HH:MM.")
    p.add_argument("--today", help="Reference date YYYY-MM-DD (default: today in the event timezone).")
    p.add_argument("--days", type=int, default=core.WINDOW_DAYS, help="Window length in days.")
    p.set_defaults(func=cmd_preview)

    args = ap.parse_args(argv)
    try:
        return args.func(args)
    except core.InvalidDateKey as e:
        print(f"ERR {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"ERR {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
