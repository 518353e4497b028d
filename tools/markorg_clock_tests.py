#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
markorg clock / metadata / CLI tests
 - Clock sessions: start, finish, rounding, placement in the metadata block
 - CREATED / SCHEDULED / DEADLINE toggles, TODO/DONE and priority toggles
 - LineBuffer patches (CRLF, missing trailing newline), heading summaries
 - markorg_edit CLI against a temp file

Run:
  python3 markorg_clock_tests.py
Optional:
  python3 markorg_clock_tests.py --only cli --verbose
"""

import importlib
import io
import sys, os
import tempfile
from contextlib import redirect_stdout
from datetime import datetime
from pathlib import Path

HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(HERE))

core = importlib.import_module("markorg_core")
cli = importlib.import_module("markorg_edit")

LATIN = core.WeekdayStyle.LATIN_SHORT

# -------- Helpers -------------------------------------------------------------

def expect(cond, msg):
    if not cond:
        raise AssertionError(msg)

def buf_of(*lines):
    return core.LineBuffer("\n".join(lines) + "\n")

def applied(buf, patch):
    core.apply_patch(buf, patch)
    return buf.text().split("\n")

DOC = (
    "## TODO Test task",
    "`CREATED: <2025-12-09 Вт 10:00>`",
    "",
    "## TODO Another task",
    "`SCHEDULED: <2025-12-10 Ср 14:00>`",
)

# -------- Clock start ---------------------------------------------------------

def test_start_inserts_after_timestamps():
    buf = buf_of(*DOC)
    lines = applied(buf, core.start_clock(buf, 0, datetime(2025, 12, 9, 11, 17, 42), 0))
    expect(lines[2] == "`CLOCK: [2025-12-09 Вт 11:17]`", f"clock line: {lines[2]!r}")
    expect(lines[3] == "" and lines[4] == "## TODO Another task", f"rest shifted down: {lines}")

def test_start_under_second_heading():
    buf = buf_of(*DOC)
    lines = applied(buf, core.start_clock(buf, 3, datetime(2025, 12, 10, 8, 5), 0))
    expect(lines[5] == "`CLOCK: [2025-12-10 Ср 08:05]`", f"clock under second heading: {lines}")
    expect(lines[:5] == list(DOC), "first section untouched")

def test_start_rounds_down():
    now = datetime(2025, 12, 9, 11, 17)
    expect(core.round_start(now, 30) == datetime(2025, 12, 9, 11, 0), "floor to 30")
    expect(core.round_start(now, 15) == datetime(2025, 12, 9, 11, 15), "floor to 15")
    expect(core.round_start(now, 0) == now, "no rounding")
    buf = buf_of(*DOC)
    lines = applied(buf, core.start_clock(buf, 0, now, 30))
    expect(lines[2] == "`CLOCK: [2025-12-09 Вт 11:00]`", f"rounded start: {lines[2]!r}")

def test_start_refuses_second_session():
    buf = buf_of(*DOC)
    core.apply_patch(buf, core.start_clock(buf, 0, datetime(2025, 12, 9, 11, 0), 0))
    before = buf.text()
    try:
        core.start_clock(buf, 0, datetime(2025, 12, 9, 12, 0), 0)
    except core.AlreadyOpenSession as e:
        expect(e.clock_line == 2 and e.heading_line == 0, f"error lines: {e.heading_line}/{e.clock_line}")
        expect(str(e) == "There is already an open CLOCK entry", f"message: {e}")
    else:
        raise AssertionError("second start must raise AlreadyOpenSession")
    expect(buf.text() == before, "buffer untouched on refusal")
    expect(core.is_clocked_in(buf, 0) and not core.is_clocked_in(buf, 4), "only first heading clocked in")

def test_start_appends_after_existing_entries():
    buf = buf_of(
        "## TODO Task",
        "`SCHEDULED: <2025-12-10 Wed>`",
        "`CLOCK: [2025-12-09 Tue 09:00]--[2025-12-09 Tue 10:00] =>  1:00`",
        "`CLOCK: [2025-12-09 Tue 11:00]--[2025-12-09 Tue 12:00] =>  1:00`",
        "Body",
    )
    lines = applied(buf, core.start_clock(buf, 0, datetime(2025, 12, 10, 9, 0), 0))
    expect(lines[4] == "`CLOCK: [2025-12-10 Wed 09:00]`", f"appended after entries: {lines}")
    expect(lines[5] == "Body", "body stays below the block")
    block = core.scan_metadata(buf, 0)
    expect(block.clock_lines == [2, 3, 4], f"clock lines: {block.clock_lines}")

def test_start_skips_blank_lines_between_entries():
    buf = buf_of(
        "## TODO Task",
        "`CLOCK: [2025-12-09 Tue 09:00]--[2025-12-09 Tue 09:30] =>  0:30`",
        "",
        "`CLOCK: [2025-12-09 Tue 10:00]--[2025-12-09 Tue 10:30] =>  0:30`",
        "",
        "Body text",
    )
    lines = applied(buf, core.start_clock(buf, 0, datetime(2025, 12, 9, 11, 0), 0))
    expect(lines[4] == "`CLOCK: [2025-12-09 Tue 11:00]`", f"after the last entry: {lines}")
    expect(lines[5:7] == ["", "Body text"], f"blank and body kept: {lines}")

def test_start_copies_block_indent():
    buf = buf_of("## TODO Task", "  `CREATED: <2025-12-09 Tue 10:00>`", "Body")
    lines = applied(buf, core.start_clock(buf, 0, datetime(2025, 12, 9, 10, 30), 0))
    expect(lines[2] == "  `CLOCK: [2025-12-09 Tue 10:30]`", f"indent copied: {lines[2]!r}")

def test_start_on_last_line_without_newline():
    buf = core.LineBuffer("## Task")
    core.apply_patch(buf, core.start_clock(buf, 0, datetime(2025, 12, 9, 8, 0), 0, LATIN))
    expect(buf.text() == "## Task\n`CLOCK: [2025-12-09 Tue 08:00]`", f"appended at EOF: {buf.text()!r}")

# -------- Clock finish --------------------------------------------------------

def test_finish_closes_open_entry():
    buf = buf_of("## TODO Test task", "`CREATED: <2025-12-09 Вт 10:00>`", "`CLOCK: [2025-12-09 Вт 10:30]`")
    lines = applied(buf, core.finish_clock(buf, 0, datetime(2025, 12, 9, 11, 47, 10), 0))
    want = "`CLOCK: [2025-12-09 Вт 10:30]--[2025-12-09 Вт 11:47] =>  1:17`"
    expect(lines[2] == want, f"closed entry: {lines[2]!r}")
    expect(not core.is_clocked_in(buf, 0), "no longer clocked in")

def test_finish_rounding_never_zero():
    start = datetime(2025, 12, 9, 10, 30)
    expect(core.round_end(start, datetime(2025, 12, 9, 10, 30, 40), 30) == datetime(2025, 12, 9, 11, 0),
           "end equal to start moves one step forward")
    expect(core.round_end(start, datetime(2025, 12, 9, 10, 44), 30) == datetime(2025, 12, 9, 11, 0), "ceil to 30")
    expect(core.round_end(start, datetime(2025, 12, 9, 11, 0), 30) == datetime(2025, 12, 9, 11, 0), "already aligned")
    expect(core.round_end(start, datetime(2025, 12, 9, 10, 41), 0) == datetime(2025, 12, 9, 10, 41), "no rounding")

    buf = buf_of("## TODO Task", "`CLOCK: [2025-12-09 Tue 10:30]`")
    lines = applied(buf, core.finish_clock(buf, 0, datetime(2025, 12, 9, 10, 30, 40), 30))
    expect(lines[1] == "`CLOCK: [2025-12-09 Tue 10:30]--[2025-12-09 Tue 11:00] =>  0:30`",
           f"positive duration: {lines[1]!r}")

def test_finish_across_midnight():
    buf = buf_of("## TODO Task", "`CLOCK: [2025-12-31 Wed 23:40]`")
    lines = applied(buf, core.finish_clock(buf, 0, datetime(2026, 1, 1, 0, 25), 0))
    expect(lines[1] == "`CLOCK: [2025-12-31 Wed 23:40]--[2026-01-01 Thu 00:25] =>  0:45`", f"{lines[1]!r}")

def test_finish_without_open_entry():
    buf = buf_of("## TODO Task", "`CLOCK: [2025-12-09 Tue 09:00]--[2025-12-09 Tue 10:00] =>  1:00`")
    try:
        core.finish_clock(buf, 0, datetime(2025, 12, 9, 11, 0), 0)
    except core.NoOpenSession as e:
        expect(str(e) == "No open CLOCK entry found" and e.heading_line == 0, f"error: {e}")
    else:
        raise AssertionError("finish must raise NoOpenSession")

def test_finish_normalizes_legacy_brackets():
    buf = buf_of("## TODO Task", "`CLOCK: <2025-12-09 Tue 10:00>`")
    lines = applied(buf, core.finish_clock(buf, 0, datetime(2025, 12, 9, 10, 20), 0))
    expect(lines[1] == "`CLOCK: [2025-12-09 Tue 10:00]--[2025-12-09 Tue 10:20] =>  0:20`", f"{lines[1]!r}")

def test_start_then_finish_round_trip():
    buf = buf_of("## TODO Task", "Body")
    core.apply_patch(buf, core.start_clock(buf, 0, datetime(2025, 12, 9, 9, 7), 15, LATIN))
    core.apply_patch(buf, core.finish_clock(buf, 0, datetime(2025, 12, 9, 9, 52), 15))
    lines = buf.text().split("\n")
    expect(lines[1] == "`CLOCK: [2025-12-09 Tue 09:00]--[2025-12-09 Tue 10:00] =>  1:00`", f"{lines[1]!r}")
    expect(lines[2] == "Body", "body below the entry")

# -------- Metadata toggles ----------------------------------------------------

def test_toggle_created():
    buf = core.LineBuffer("## TODO Task\nBody")
    core.apply_patch(buf, core.toggle_created(buf, 0, datetime(2025, 12, 9, 9, 5), LATIN))
    expect(buf.text() == "## TODO Task\n`CREATED: <2025-12-09 Tue 09:05>`\nBody", f"inserted: {buf.text()!r}")
    core.apply_patch(buf, core.toggle_created(buf, 0, datetime(2025, 12, 9, 9, 6), LATIN))
    expect(buf.text() == "## TODO Task\nBody", f"removed: {buf.text()!r}")

def test_toggle_planning_cycle():
    original = "## TODO Task\n`CREATED: <2025-12-09 Tue 09:00>`\nBody\n"
    buf = core.LineBuffer(original)
    now = datetime(2025, 12, 12, 15, 30)

    core.apply_patch(buf, core.toggle_planning(buf, 0, "SCHEDULED", now))
    expect(buf.get_line(2) == "`SCHEDULED: <2025-12-12 Fri 15:30>`", f"inserted after CREATED: {buf.get_line(2)!r}")

    core.apply_patch(buf, core.toggle_planning(buf, 0, "DEADLINE", datetime(2026, 1, 1)))
    expect(buf.get_line(2) == "`DEADLINE: <2025-12-12 Fri 15:30>`", f"relabelled, stamp kept: {buf.get_line(2)!r}")

    core.apply_patch(buf, core.toggle_planning(buf, 0, "DEADLINE", now))
    expect(buf.text() == original, f"removed: {buf.text()!r}")

def test_toggle_planning_rejects_other_kinds():
    buf = buf_of("## Task")
    try:
        core.toggle_planning(buf, 0, "CLOSED")
    except ValueError:
        pass
    else:
        raise AssertionError("CLOSED is not a planning kind")

def test_set_status_and_priority():
    expect(core.set_status("## Task", "TODO") == "## TODO Task", "add TODO")
    expect(core.set_status("## TODO Task", "TODO") == "## Task", "same status clears")
    expect(core.set_status("## TODO [#B] Task", "DONE") == "## DONE [#B] Task", "switch keeps priority")
    expect(core.set_status("plain", "DONE") is None, "non-heading")
    expect(core.toggle_priority("## TODO Task") == "## TODO [#A] Task", "add [#A]")
    expect(core.toggle_priority("## TODO [#C] Task") == "## TODO Task", "drop priority")

# -------- Buffer / headings ---------------------------------------------------

def test_line_buffer_keeps_crlf():
    buf = core.LineBuffer("## A\r\nBody\r\n")
    core.apply_patch(buf, core.insert_line_patch(buf, 1, "X"))
    expect(buf.text() == "## A\r\nX\r\nBody\r\n", f"crlf kept: {buf.text()!r}")
    core.apply_patch(buf, core.delete_line_patch(buf, 1))
    expect(buf.text() == "## A\r\nBody\r\n", f"delete: {buf.text()!r}")

def test_nearest_heading():
    buf = buf_of("intro", "# A", "text", "## B", "more")
    expect(core.nearest_heading(buf, 4) == 3, "B above 'more'")
    expect(core.nearest_heading(buf, 3) == 3, "heading line itself")
    expect(core.nearest_heading(buf, 2) == 1, "A above 'text'")
    expect(core.nearest_heading(buf, 0) is None, "nothing above intro")

def test_summarize_headings():
    buf = buf_of(
        "# Project",
        "## TODO [#B] Write report",
        "`SCHEDULED: <2025-12-10 Wed>`",
        "`CLOCK: [2025-12-09 Tue 10:00]--[2025-12-09 Tue 11:00] =>  1:00`",
        "`CLOCK: [2025-12-09 Tue 12:00]--[2025-12-09 Tue 13:00] =>  1:00`",
        "`CLOCK: [2025-12-09 Tue 14:00]`",
        "Body",
        "## DONE Other",
    )
    out = core.summarize_headings(buf)
    expect([s.line for s in out] == [0, 1, 7], f"heading lines: {[s.line for s in out]}")
    report = out[1]
    expect(report.heading.priority == "B" and report.planning_kind == "SCHEDULED", f"summary: {report}")
    expect(report.planning.day == 10, "planning stamp")
    expect(report.clocked_minutes == 120 and len(report.clocks) == 3, f"clocked: {report.clocked_minutes}")
    expect(report.is_clocked_in and report.open_clock_line == 5, "open session line")
    expect(not out[0].clocks and not out[2].is_clocked_in, "other headings empty")

# -------- CLI -----------------------------------------------------------------

CLI_DOC = "## TODO [#A] Task\n`SCHEDULED: <2025-12-06 Sat>`\n"

def _with_doc(fn):
    with tempfile.TemporaryDirectory() as d:
        path = Path(d) / "notes.md"
        path.write_text(CLI_DOC, encoding="utf-8")
        fn(path)

def test_cli_adjust_writes_file():
    def run(path):
        rc = cli.main([str(path), "adjust", "--line", "0", "--col", "9", "--delta", "1"])
        expect(rc == 0, f"exit code {rc}")
        expect(path.read_text(encoding="utf-8").startswith("## TODO [#B] Task\n"), "priority bumped on disk")
    _with_doc(run)

def test_cli_no_token_exit_code():
    def run(path):
        rc = cli.main([str(path), "adjust", "--line", "0", "--col", "14"])
        expect(rc == cli.EXIT_NO_TOKEN, f"exit code {rc}")
        expect(path.read_text(encoding="utf-8") == CLI_DOC, "file untouched")
    _with_doc(run)

def test_cli_dry_run_prints():
    def run(path):
        out = io.StringIO()
        with redirect_stdout(out):
            rc = cli.main([str(path), "--dry-run", "adjust", "--line", "1", "--col", "3"])
        expect(rc == 0, f"exit code {rc}")
        expect(out.getvalue().startswith("## TODO [#A] Task\n`DEADLINE: <2025-12-06 Sat>`"), f"{out.getvalue()!r}")
        expect(path.read_text(encoding="utf-8") == CLI_DOC, "dry run never writes")
    _with_doc(run)

def test_cli_resolve_json():
    import json
    def run(path):
        out = io.StringIO()
        with redirect_stdout(out):
            rc = cli.main([str(path), "resolve", "--line", "1", "--col", "3"])
        expect(rc == 0, f"exit code {rc}")
        data = json.loads(out.getvalue())
        expect(data["token"] == "TimestampLineToken" and data["field"] == "type", f"payload: {data}")
        expect(data["value"]["kind"] == "SCHEDULED", f"value: {data['value']}")
        expect("spans" not in data["value"]["timestamp"], "spans stripped")
    _with_doc(run)

def test_cli_clock_in_and_out():
    def run(path):
        args = [str(path), "clock-in", "--line", "1", "--now", "2025-12-09 11:17", "--round", "0"]
        expect(cli.main(args) == 0, "clock-in")
        expect(path.read_text(encoding="utf-8").split("\n")[2] == "`CLOCK: [2025-12-09 Tue 11:17]`", "clock line")
        expect(cli.main(args) == cli.EXIT_WARNING, "second clock-in warns")
        rc = cli.main([str(path), "clock-out", "--line", "2", "--now", "2025-12-09 12:02", "--round", "0"])
        expect(rc == 0, f"clock-out exit {rc}")
        lines = path.read_text(encoding="utf-8").split("\n")
        expect(lines[2] == "`CLOCK: [2025-12-09 Tue 11:17]--[2025-12-09 Tue 12:02] =>  0:45`", f"{lines[2]!r}")
        rc = cli.main([str(path), "clock-out", "--line", "0", "--round", "0"])
        expect(rc == cli.EXIT_WARNING, "clock-out with nothing open warns")
    _with_doc(run)

def test_cli_line_out_of_range():
    def run(path):
        rc = cli.main([str(path), "priority", "--line", "42"])
        expect(rc == cli.EXIT_WARNING, f"exit code {rc}")
    _with_doc(run)


def test_cli_now_with_utc_offset():
    def run(path):
        args = [str(path), "clock-in", "--line", "1", "--now", "2025-12-09 11:17", "--round", "0"]
        expect(cli.main(args) == 0, "clock-in")
        rc = cli.main([str(path), "clock-out", "--line", "1", "--now", "2025-12-09T12:00+02:00", "--round", "0"])
        expect(rc == 0, f"clock-out exit {rc}")
        lines = path.read_text(encoding="utf-8").split("\n")
        expect(lines[2] == "`CLOCK: [2025-12-09 Tue 11:17]--[2025-12-09 Tue 12:00] =>  0:43`", f"{lines[2]!r}")
    _with_doc(run)
    expect(cli.parse_now("2025-12-09T12:00+02:00") == datetime(2025, 12, 9, 12, 0), "offset dropped")

def test_cli_unparsable_now():
    def run(path):
        rc = cli.main([str(path), "clock-in", "--line", "1", "--now", "yesterday-ish"])
        expect(rc == cli.EXIT_WARNING, f"exit code {rc}")
        expect(path.read_text(encoding="utf-8") == CLI_DOC, "file untouched")
    _with_doc(run)

# -------- Runner --------------------------------------------------------------

TESTS = [
    test_start_inserts_after_timestamps,
    test_start_under_second_heading,
    test_start_rounds_down,
    test_start_refuses_second_session,
    test_start_appends_after_existing_entries,
    test_start_skips_blank_lines_between_entries,
    test_start_copies_block_indent,
    test_start_on_last_line_without_newline,
    test_finish_closes_open_entry,
    test_finish_rounding_never_zero,
    test_finish_across_midnight,
    test_finish_without_open_entry,
    test_finish_normalizes_legacy_brackets,
    test_start_then_finish_round_trip,
    test_toggle_created,
    test_toggle_planning_cycle,
    test_toggle_planning_rejects_other_kinds,
    test_set_status_and_priority,
    test_line_buffer_keeps_crlf,
    test_nearest_heading,
    test_summarize_headings,
    test_cli_adjust_writes_file,
    test_cli_no_token_exit_code,
    test_cli_dry_run_prints,
    test_cli_resolve_json,
    test_cli_clock_in_and_out,
    test_cli_line_out_of_range,
    test_cli_now_with_utc_offset,
    test_cli_unparsable_now,
]

def main():
    import argparse
    ap = argparse.ArgumentParser()
    ap.add_argument("--only", help="substring filter for test names")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    selected = TESTS
    if args.only:
        selected = [fn for fn in TESTS if args.only.lower() in fn.__name__.lower()]

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
