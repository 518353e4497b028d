#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
markorg_edit.py: apply one markup edit to a Markdown file.

Commands (lines and columns are 0-based, as editor APIs report them):
- adjust     Increment/decrement the field under the caret (status, priority,
             timestamp parts, timestamp type, clock times). Exit 3 when there is
             no token under the caret so the editor can fall back to moving the cursor.
- resolve    Print the token/field under the caret as JSON.
- status     Set TODO/DONE on the heading line (same status again clears it).
- priority   Add [#A] or remove the priority marker.
- created    Toggle the CREATED stamp of the nearest heading.
- scheduled / deadline
             Toggle SCHEDULED/DEADLINE of the nearest heading.
- clock-in / clock-out
             Open or close a CLOCK session under the nearest heading.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import tempfile
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

from dateutil import parser as date_parser

import markorg_core as core


# --------------------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------------------
EXIT_OK = 0
EXIT_WARNING = 1
EXIT_NO_TOKEN = 3


def _panel(title, rows, kind: str = "info"):
    """
    Render a 2-column panel on stderr.

    `rows` is a list of (label, value) pairs; a `None` label makes a spacer row.
    `kind` selects a colour theme (info, warning, error). panel_mode=line prints plain text.
    """
    if core.conf_str("panel_mode", "rich").lower() == "line":
        sys.stderr.write(f"[{title}]\n")
        for k, v in rows:
            sys.stderr.write(f"{v}\n" if k is None else f"  {k}: {v}\n")
        return

    from rich.console import Console
    from rich.panel import Panel
    from rich.table import Table
    from rich.text import Text

    THEMES = {
        "error": {"border": "red", "title": "red", "label": "red"},
        "warning": {"border": "yellow", "title": "yellow", "label": "yellow"},
        "info": {"border": "blue", "title": "cyan", "label": "cyan"},
    }
    theme = THEMES.get(kind, THEMES["info"])

    console = Console(file=sys.stderr)
    t = Table.grid(padding=(0, 1), expand=False)
    t.add_column(style=f"bold {theme['label']}", no_wrap=True, justify="right")
    t.add_column(style="white")
    for k, v in rows:
        if k is None:
            t.add_row("", v or "")
        else:
            t.add_row(Text(str(k)), str(v))

    console.print(
        Panel(
            t,
            title=Text(title, style=f"bold {theme['title']}"),
            border_style=theme["border"],
            expand=False,
            padding=(0, 1),
        )
    )


def read_document(path: Path) -> core.LineBuffer:
    return core.LineBuffer(path.read_text(encoding="utf-8"))


def write_document(path: Path, text: str) -> None:
    """Write via a temp file in the same directory and rename over the original."""
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def parse_now(raw: str | None) -> datetime:
    """Parse --now; an explicit UTC offset is dropped, stamps hold wall-clock time as typed."""
    if not raw:
        return datetime.now()
    dt = date_parser.parse(raw)
    if dt.tzinfo is not None:
        dt = dt.replace(tzinfo=None)
    return dt


def _nearest_heading_or_warn(buf: core.LineBuffer, line: int) -> int | None:
    heading = core.nearest_heading(buf, line)
    if heading is None:
        _panel("markorg", [("Warning", f"No heading at or above line {line}")], kind="warning")
    return heading


def _drop_spans(data):
    if isinstance(data, dict):
        return {k: _drop_spans(v) for k, v in data.items() if k != "spans"}
    return data


def _token_payload(hit: core.Resolved) -> dict:
    tok = hit.token
    data = _drop_spans(asdict(tok))
    return {"token": type(tok).__name__, "field": hit.field, "value": data}


# --------------------------------------------------------------------------------------
# Commands
# --------------------------------------------------------------------------------------
def _cmd_adjust(buf, args):
    patch = core.adjust(buf, args.line, args.col, args.delta)
    if patch is None:
        core.diag(f"adjust: no token at {args.line}:{args.col}", tool="markorg-edit")
        return EXIT_NO_TOKEN, None
    return EXIT_OK, patch


def _cmd_resolve(buf, args):
    hit = core.resolve(buf.get_line(args.line), args.col)
    if hit is None:
        return EXIT_NO_TOKEN, None
    print(json.dumps(_token_payload(hit), ensure_ascii=False))
    return EXIT_OK, None


def _cmd_status(buf, args):
    new = core.set_status(buf.get_line(args.line), args.value)
    if new is None:
        _panel("markorg", [("Warning", f"Line {args.line} is not a heading")], kind="warning")
        return EXIT_WARNING, None
    return EXIT_OK, core.replace_line_patch(buf, args.line, new)


def _cmd_priority(buf, args):
    new = core.toggle_priority(buf.get_line(args.line))
    if new is None:
        _panel("markorg", [("Warning", f"Line {args.line} is not a heading")], kind="warning")
        return EXIT_WARNING, None
    return EXIT_OK, core.replace_line_patch(buf, args.line, new)


def _cmd_created(buf, args):
    heading = _nearest_heading_or_warn(buf, args.line)
    if heading is None:
        return EXIT_WARNING, None
    return EXIT_OK, core.toggle_created(buf, heading, args.now_dt)


def _cmd_planning(buf, args):
    heading = _nearest_heading_or_warn(buf, args.line)
    if heading is None:
        return EXIT_WARNING, None
    return EXIT_OK, core.toggle_planning(buf, heading, args.kind, args.now_dt)


def _round_minutes(args) -> int:
    if args.round is not None:
        return max(0, args.round)
    return core.clock_round_minutes()


def _cmd_clock_in(buf, args):
    heading = _nearest_heading_or_warn(buf, args.line)
    if heading is None:
        return EXIT_WARNING, None
    try:
        return EXIT_OK, core.start_clock(buf, heading, args.now_dt, _round_minutes(args))
    except core.AlreadyOpenSession as e:
        _panel("CLOCK", [("Warning", str(e)), ("Open entry", f"line {e.clock_line}")], kind="warning")
        return EXIT_WARNING, None


def _cmd_clock_out(buf, args):
    heading = _nearest_heading_or_warn(buf, args.line)
    if heading is None:
        return EXIT_WARNING, None
    try:
        return EXIT_OK, core.finish_clock(buf, heading, args.now_dt, _round_minutes(args))
    except core.NoOpenSession as e:
        _panel("CLOCK", [("Warning", str(e)), ("Heading", f"line {e.heading_line}")], kind="warning")
        return EXIT_WARNING, None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="markorg-edit",
        description="Apply one markup edit to a Markdown task file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("file", type=Path, help="Markdown document to edit")
    parser.add_argument("--dry-run", action="store_true", help="Print the edited document instead of writing it")
    sub = parser.add_subparsers(dest="command", required=True)

    def _pos(p, col=False):
        p.add_argument("--line", type=int, required=True, help="0-based line of the caret")
        if col:
            p.add_argument("--col", type=int, required=True, help="0-based caret column")

    p = sub.add_parser("adjust", help="Increment/decrement the field under the caret")
    _pos(p, col=True)
    p.add_argument("--delta", type=int, default=1, help="Signed step (default: +1)")
    p.set_defaults(func=_cmd_adjust)

    p = sub.add_parser("resolve", help="Print the token under the caret as JSON")
    _pos(p, col=True)
    p.set_defaults(func=_cmd_resolve)

    p = sub.add_parser("status", help="Set or clear TODO/DONE on a heading line")
    _pos(p)
    p.add_argument("value", choices=core.STATUSES)
    p.set_defaults(func=_cmd_status)

    p = sub.add_parser("priority", help="Toggle [#A] on a heading line")
    _pos(p)
    p.set_defaults(func=_cmd_priority)

    p = sub.add_parser("created", help="Toggle the CREATED stamp of the nearest heading")
    _pos(p)
    p.add_argument("--now", help="Override the current time (any dateutil-parsable string)")
    p.set_defaults(func=_cmd_created)

    for kind in core.PLANNING_KINDS:
        p = sub.add_parser(kind.lower(), help=f"Toggle {kind} of the nearest heading")
        _pos(p)
        p.add_argument("--now", help="Override the current time (any dateutil-parsable string)")
        p.set_defaults(func=_cmd_planning, kind=kind)

    for name, fn, helptext in (
        ("clock-in", _cmd_clock_in, "Open a CLOCK session under the nearest heading"),
        ("clock-out", _cmd_clock_out, "Close the open CLOCK session under the nearest heading"),
    ):
        p = sub.add_parser(name, help=helptext)
        _pos(p)
        p.add_argument("--now", help="Override the current time (any dateutil-parsable string)")
        p.add_argument("--round", type=int, default=None,
                       help="Rounding step in minutes (default: clock_round_minutes from config)")
        p.set_defaults(func=fn)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        args.now_dt = parse_now(getattr(args, "now", None))
    except (ValueError, OverflowError) as e:
        _panel("markorg", [("Error", f"Cannot parse --now {args.now!r}: {e}")], kind="error")
        return EXIT_WARNING

    try:
        buf = read_document(args.file)
    except (OSError, UnicodeDecodeError) as e:
        _panel("markorg", [("Error", f"Cannot read {args.file}: {e}")], kind="error")
        return EXIT_WARNING

    if not (0 <= args.line < buf.line_count()):
        _panel("markorg", [("Error", f"Line {args.line} is outside the document")], kind="error")
        return EXIT_WARNING

    code, patch = args.func(buf, args)
    if patch is None:
        return code

    core.apply_patch(buf, patch)
    core.diag(f"{args.command}: {args.file} lines {patch.start_line}-{patch.end_line}", tool="markorg-edit")
    if args.dry_run:
        sys.stdout.write(buf.text())
        return code
    try:
        write_document(args.file, buf.text())
    except OSError as e:
        _panel("markorg", [("Error", f"Cannot write {args.file}: {e}")], kind="error")
        return EXIT_WARNING
    return code


if __name__ == "__main__":
    sys.exit(main())
