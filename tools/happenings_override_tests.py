#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Override CSV tests
 - Imports local happenings_override_ops.py
 - Parse/serialize, per-row validation, duplicate detection, diffing against
   stored overrides and the validate/diff/preview CLI paths

Run:
  python3 tools/happenings_override_tests.py [--only diff] [--verbose]
"""

import importlib
import sys, os, io, json, tempfile
from contextlib import redirect_stdout, redirect_stderr

HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(HERE))

ops = importlib.import_module("happenings_override_ops")

EV1 = "0b7e5a52-8f7c-4d0e-9a35-1f6e2b9c4d11"
EV2 = "5c1d2e3f-4a5b-4c6d-8e7f-901234abcdef"
HEADER = ",".join(ops.OVERRIDE_CSV_HEADERS)

def expect(cond, msg):
    if not cond:
        raise AssertionError(msg)

def row(**kw):
    out = {k: None for k in ops.OVERRIDE_CSV_HEADERS}
    out.update(kw)
    return out

def _run_cli(argv):
    out, err = io.StringIO(), io.StringIO()
    with redirect_stdout(out), redirect_stderr(err):
        rc = ops.main(argv)
    return rc, out.getvalue(), err.getvalue()

def _write(tmp, name, text):
    path = os.path.join(tmp, name)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path

# -------- CSV -----------------------------------------------------------------

def test_parse_csv_basic_and_empty_cells():
    text = "\n".join([
        HEADER,
        f"{EV1},2026-01-31,cancelled,,,",
        f'{EV1},2026-02-07,normal,20:00,"Back room, bring a capo",',
        "",
    ])
    res = ops.parse_override_csv(text)
    expect(res.success and not res.errors, f"parse failed: {res.errors}")
    expect(len(res.rows) == 2, f"rows: {res.rows}")
    expect(res.rows[0]["override_start_time"] is None, "empty cells become None")
    expect(res.rows[1]["override_notes"] == "Back room, bring a capo", "quoted comma survives")

def test_parse_csv_errors():
    expect(ops.parse_override_csv("").errors == ["CSV is empty"], "empty text")
    expect(ops.parse_override_csv("  \n ").errors == ["CSV is empty"], "blank text")
    res = ops.parse_override_csv("event_id,date_key,status\n")
    expect(not res.success and res.errors[0].startswith("Invalid header count"), f"header count: {res.errors}")
    res = ops.parse_override_csv("event_id,date_key,state,a,b,c\n")
    expect(not res.success and res.errors[0].startswith("Invalid header"), f"header names: {res.errors}")
    res = ops.parse_override_csv(f"{HEADER}\n{EV1},2026-01-31,cancelled\n")
    expect(not res.success and "Row 2" in res.errors[0], f"short row: {res.errors}")

def test_parse_csv_strips_bom_and_header_case():
    res = ops.parse_override_csv("\ufeff" + HEADER.upper() + f"\n{EV1},2026-01-31,cancelled,,,\n")
    expect(res.success and res.rows[0]["event_id"] == EV1, f"BOM/upper header: {res.errors}")

def test_serialize_csv():
    expect(ops.serialize_override_csv([]) == HEADER, "empty list -> header only")
    text = ops.serialize_override_csv([
        {"id": "x", "event_id": EV1, "date_key": "2026-01-31", "status": "normal",
         "override_start_time": "20:00", "override_notes": 'says "hi", loudly', "override_cover_image_url": None},
    ])
    lines = text.split("\n")
    expect(lines[0] == HEADER and len(lines) == 2, f"serialized: {text!r}")
    expect(lines[1] == f'{EV1},2026-01-31,normal,20:00,"says ""hi"", loudly",', f"quoting: {lines[1]!r}")
    back = ops.parse_override_csv(text).rows[0]
    expect(back["override_notes"] == 'says "hi", loudly' and "id" not in back, f"reparse: {back}")

# -------- Validation ----------------------------------------------------------

def test_validate_row_messages():
    ok, errors = ops.validate_override_row(row(event_id=EV1, date_key="2026-01-31", status="normal"))
    expect(ok and errors == [], f"valid row: {errors}")
    ok, errors = ops.validate_override_row(row())
    expect(not ok and errors == [
        "Missing required field: event_id",
        "Missing required field: date_key",
        "Missing required field: status",
    ], f"missing fields: {errors}")
    ok, errors = ops.validate_override_row(row(
        event_id="not-a-uuid", date_key="2026-02-30", status="postponed",
        override_start_time="7pm", override_cover_image_url="ftp://x",
    ))
    expect(not ok and len(errors) == 5, f"five errors: {errors}")
    expect(errors[0].startswith("Invalid UUID format for event_id"), errors[0])
    expect(errors[1].startswith("Invalid date_key format: 2026-02-30"), errors[1])
    expect(errors[2].startswith("Invalid status: postponed"), errors[2])
    expect(errors[3].startswith("Invalid override_start_time format: 7pm"), errors[3])
    expect(errors[4].startswith("Invalid override_cover_image_url"), errors[4])

def test_validate_rows_normalizes_and_flags_duplicates():
    report = ops.validate_override_rows([
        {"event_id": EV1, "date_key": "2026-01-31", "status": " Cancelled "},
        {"event_id": EV1, "date_key": "2026-01-31", "status": "normal"},
        {"event_id": EV2, "date_key": "2026-01-31", "status": "normal", "override_start_time": "19:30:00"},
    ])
    expect(not report["all_valid"], "duplicate makes the batch invalid")
    expect([r["date_key"] for r in report["valid_rows"]] == ["2026-01-31", "2026-01-31"], "two valid rows")
    expect(report["valid_rows"][0]["status"] == "cancelled", "status lower-cased and trimmed")
    bad = report["invalid_rows"]
    expect(len(bad) == 1 and bad[0]["row_index"] == 1, f"invalid rows: {bad}")
    expect(bad[0]["errors"][0].startswith("Duplicate event_id + date_key"), bad[0]["errors"])

# -------- Diff ----------------------------------------------------------------

CURRENT = [
    {"id": "ov-1", **row(event_id=EV1, date_key="2026-01-31", status="cancelled")},
    {"id": "ov-2", **row(event_id=EV1, date_key="2026-02-07", status="normal", override_start_time="20:00")},
]

def test_compute_diff_updates_inserts_unchanged_missing():
    incoming = [
        row(event_id=EV1, date_key="2026-01-31", status="cancelled", override_notes=""),
        row(event_id=EV1, date_key="2026-02-07", status="normal", override_start_time="21:00"),
        row(event_id=EV1, date_key="2026-02-14", status="cancelled"),
        row(event_id=EV2, date_key="2026-02-14", status="cancelled"),
    ]
    diff = ops.compute_override_diff(CURRENT, incoming, [EV1])
    expect(diff["unchanged"] == 1, f"empty string equals None: {diff}")
    expect([r["date_key"] for r in diff["inserts"]] == ["2026-02-14"], f"inserts: {diff['inserts']}")
    expect(diff["event_ids_not_found"] == [EV2], f"missing ids: {diff['event_ids_not_found']}")
    upd = diff["updates"]
    expect(len(upd) == 1 and upd[0]["id"] == "ov-2", f"updates: {upd}")
    expect(upd[0]["changes"] == [{"field": "override_start_time", "old_value": "20:00", "new_value": "21:00"}],
           f"changes: {upd[0]['changes']}")
    payloads = ops.build_override_update_payloads(upd)
    expect(payloads == [{"id": "ov-2", "updates": {"override_start_time": "21:00"}}], f"payloads: {payloads}")

def test_composite_key():
    expect(ops.get_override_composite_key({"event_id": EV1, "date_key": "2026-01-31"}) == f"{EV1}:2026-01-31", "key")

# -------- CLI -----------------------------------------------------------------

def test_cli_validate():
    with tempfile.TemporaryDirectory() as tmp:
        good = _write(tmp, "good.csv", f"{HEADER}\n{EV1},2026-01-31,cancelled,,,\n")
        rc, out, _err = _run_cli(["validate", good])
        expect(rc == 0 and "Override CSV OK" in out, f"validate ok: rc={rc} out={out!r}")
        bad = _write(tmp, "bad.csv", f"{HEADER}\n{EV1},2026-13-01,cancelled,,,\n")
        rc, out, _err = _run_cli(["validate", bad])
        expect(rc == 1 and "Invalid date_key format" in out, f"validate bad: rc={rc} out={out!r}")
        rc, _out, err = _run_cli(["validate", os.path.join(tmp, "missing.csv")])
        expect(rc == 1 and err.startswith("ERR"), f"missing file: rc={rc} err={err!r}")

def test_cli_diff_json():
    with tempfile.TemporaryDirectory() as tmp:
        cur = _write(tmp, "cur.csv", ops.serialize_override_csv(CURRENT))
        inc = _write(tmp, "inc.csv", ops.serialize_override_csv([
            row(event_id=EV1, date_key="2026-02-07", status="cancelled", override_start_time="20:00"),
            row(event_id=EV1, date_key="2026-02-21", status="normal", override_notes="Guest host"),
        ]))
        rc, out, _err = _run_cli(["diff", cur, inc, "--events", EV1, "--json"])
        expect(rc == 0, f"diff rc={rc}")
        data = json.loads(out)
        expect(data["updates"] == [{"id": f"{EV1}:2026-02-07", "updates": {"status": "cancelled"}}], f"updates: {data}")
        expect([r["date_key"] for r in data["inserts"]] == ["2026-02-21"], f"inserts: {data['inserts']}")
        expect(data["event_ids_not_found"] == [], "no unknown events")

def test_cli_preview_applies_overrides():
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(tmp, "ov.csv", "\n".join([
            HEADER,
            f"{EV1},2026-01-31,cancelled,,,",
            f"{EV1},2026-02-07,normal,20:30,Guest host,",
            f"{EV2},2026-01-24,cancelled,,,",
        ]))
        rc, out, _err = _run_cli([
            "preview", path, "--event-id", EV1, "--weekday", "sat", "--rule", "weekly",
            "--start-time", "19:00", "--today", "2026-01-24", "--days", "14",
        ])
    expect(rc == 0, f"preview rc={rc}")
    expect("Every Saturday" in out, f"pattern label: {out!r}")
    expect("Today 2026-01-24" in out and "7 PM" in out, "other event's cancellation is not applied")
    expect("Cancelled 2026-01-31" in out, "own cancellation shown")
    expect("8:30 PM  Guest host" in out, "time and notes override shown")

def test_cli_preview_bad_today():
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(tmp, "ov.csv", HEADER + "\n")
        rc, _out, err = _run_cli(["preview", path, "--event-id", EV1, "--weekday", "sat", "--today", "2026-02-30"])
    expect(rc == 1 and "invalid date-key" in err, f"bad --today: rc={rc} err={err!r}")


TESTS = [
    test_parse_csv_basic_and_empty_cells,
    test_parse_csv_errors,
    test_parse_csv_strips_bom_and_header_case,
    test_serialize_csv,
    test_validate_row_messages,
    test_validate_rows_normalizes_and_flags_duplicates,
    test_compute_diff_updates_inserts_unchanged_missing,
    test_composite_key,
    test_cli_validate,
    test_cli_diff_json,
    test_cli_preview_applies_overrides,
    test_cli_preview_bad_today,
]

def main():
    import argparse
    ap = argparse.ArgumentParser()
    ap.add_argument("--only", help="substring filter for test names")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    selected = [fn for fn in TESTS if not args.only or args.only.lower() in fn.__name__.lower()]
    fails = 0
    for fn in selected:
        try:
            fn()
            if args.verbose:
                print(f"✓ {fn.__name__}")
        except AssertionError as e:
            fails += 1
            print(f"✗ {fn.__name__}: {e}")
        except Exception as e:
            fails += 1
            print(f"✗ {fn.__name__}: unexpected error {e}")

    total = len(selected)
    print(f"\nDone: {total - fails}/{total} passing")
    sys.exit(1 if fails else 0)

if __name__ == "__main__":
    main()
