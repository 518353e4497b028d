#!/usr/bin/env python3
"""
Markdown task navigator

- Lists every heading of a document with status, priority, planning stamp,
  clocked time and whether a CLOCK session is running.
- Fuzzy search across headings, then clock in/out or flip TODO/DONE on the pick.
- Non-interactive use: --list, or --heading TEXT --action ACTION.
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.text import Text
from rich import box

from prompt_toolkit import prompt
from prompt_toolkit.completion import FuzzyCompleter, WordCompleter

import markorg_core as core
from markorg_edit import parse_now, write_document


# ──────────────────────────────────────────────────────────────────────────────
# Constants / styling
# ──────────────────────────────────────────────────────────────────────────────
console = Console()

COLORS = {
    'primary': 'bright_cyan',
    'success': 'green',
    'warning': 'bright_yellow',
    'error': 'bright_red',
    'muted': 'grey58',
    'accent': 'bright_magenta',
}

STATUS_COLORS = {
    'TODO': 'bright_red',
    'DONE': 'green',
}

ACTIONS = {
    'clock-in': 'Start a CLOCK session',
    'clock-out': 'Finish the running CLOCK session',
    'todo': 'Toggle TODO',
    'done': 'Toggle DONE',
}


def _fmt_stamp(ts: Optional[core.InlineTimestamp]) -> str:
    if ts is None:
        return ""
    out = f"{ts.year:04d}-{ts.month:02d}-{ts.day:02d}"
    if ts.time:
        out += f" {ts.time[0]:02d}:{ts.time[1]:02d}"
    return out


class HeadingNavigator:
    def __init__(self, path: Path, round_minutes: int = 0, now: Optional[datetime] = None):
        self.path = path
        self.round_minutes = round_minutes
        self.now = now
        self.buffer = core.LineBuffer(path.read_text(encoding="utf-8"))

    # ── Data ─────────────────────────────────────────────────────────────────
    def headings(self) -> List[core.HeadingSummary]:
        return core.summarize_headings(self.buffer)

    def find_heading(self, text: str) -> Optional[core.HeadingSummary]:
        needle = text.strip().lower()
        for summary in self.headings():
            if needle in summary.heading.title.lower():
                return summary
        return None

    # ── Display ──────────────────────────────────────────────────────────────
    def render_table(self) -> Table:
        t = Table(box=box.SIMPLE_HEAVY, header_style=f"bold {COLORS['primary']}")
        t.add_column("Line", justify="right", style=COLORS['muted'])
        t.add_column("Heading")
        t.add_column("Planned")
        t.add_column("Clocked", justify="right")
        for s in self.headings():
            h = s.heading
            title = Text("  " * (h.level - 1))
            if h.status:
                title.append(f"{h.status} ", style=f"bold {STATUS_COLORS.get(h.status, 'white')}")
            if h.priority:
                title.append(f"[#{h.priority}] ", style=COLORS['warning'])
            title.append(h.title)
            planned = ""
            if s.planning is not None:
                planned = f"{s.planning_kind[:1]} {_fmt_stamp(s.planning)}"
            clocked = Text(core.format_duration(s.clocked_minutes).strip() if s.clocks else "")
            if s.is_clocked_in:
                clocked.append(" ●", style=f"bold {COLORS['success']}")
            t.add_row(str(s.line + 1), title, planned, clocked)
        return t

    def show(self):
        console.print(Panel(self.render_table(), title=str(self.path), border_style=COLORS['primary'], expand=False))

    # ── Interaction ──────────────────────────────────────────────────────────
    def select_heading_interactively(self) -> core.HeadingSummary:
        choices: Dict[str, core.HeadingSummary] = {}
        for s in self.headings():
            label = s.heading.title
            if s.heading.status:
                label = f"[{s.heading.status}] {label}"
            if label in choices:
                label = f"{label} (line {s.line + 1})"
            choices[label] = s
        if not choices:
            raise core.MarkorgError(f"No headings in {self.path}")

        completer = FuzzyCompleter(WordCompleter(list(choices.keys()), match_middle=True))
        console.print(Panel("🔍 Type to search for a heading (fuzzy matching enabled)",
                            title="Heading Selection", border_style=COLORS['primary']))
        while True:
            selection = prompt("❯ ", completer=completer).strip()
            if selection in choices:
                return choices[selection]
            console.print(f"[{COLORS['error']}]Heading not found. Please try again.[/]")

    def select_action_interactively(self, summary: core.HeadingSummary) -> str:
        default = 'clock-out' if summary.is_clocked_in else 'clock-in'
        completer = WordCompleter(list(ACTIONS.keys()))
        for name, desc in ACTIONS.items():
            console.print(f"  [{COLORS['accent']}]{name:<10}[/] {desc}")
        while True:
            inp = prompt(f"Action [{default}]: ", completer=completer).strip() or default
            if inp in ACTIONS:
                return inp
            console.print(f"[{COLORS['error']}]Unknown action '{inp}'[/]")

    # ── Edits ────────────────────────────────────────────────────────────────
    def apply(self, summary: core.HeadingSummary, action: str) -> bool:
        now = self.now or datetime.now()
        try:
            if action == 'clock-in':
                patch = core.start_clock(self.buffer, summary.line, now, self.round_minutes)
            elif action == 'clock-out':
                patch = core.finish_clock(self.buffer, summary.line, now, self.round_minutes)
            elif action in ('todo', 'done'):
                new = core.set_status(self.buffer.get_line(summary.line), action.upper())
                patch = core.replace_line_patch(self.buffer, summary.line, new)
            else:
                raise ValueError(f"unknown action: {action}")
        except (core.AlreadyOpenSession, core.NoOpenSession) as e:
            console.print(f"[{COLORS['warning']}]{e}[/]")
            return False

        core.apply_patch(self.buffer, patch)
        write_document(self.path, self.buffer.text())
        core.diag(f"navigator {action} on line {summary.line} of {self.path}", tool="markorg-navigator")
        console.print(f"[{COLORS['success']}]✓ {ACTIONS[action]}: {summary.heading.title}[/]")
        return True


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Markdown task navigator",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("file", type=Path, help="Markdown document")
    parser.add_argument("--list", action="store_true", help="Print the heading table and exit")
    parser.add_argument("--heading", help="Pick the first heading whose title contains TEXT")
    parser.add_argument("--action", choices=sorted(ACTIONS), help="Action to apply without prompting")
    parser.add_argument("--round", type=int, default=None,
                        help="Clock rounding step in minutes (default: clock_round_minutes from config)")
    parser.add_argument("--now", help="Override the current time (any dateutil-parsable string)")
    args = parser.parse_args(argv)

    round_minutes = core.clock_round_minutes() if args.round is None else max(0, args.round)
    try:
        now = parse_now(args.now) if args.now else None
    except (ValueError, OverflowError) as e:
        console.print(f"[{COLORS['error']}]Cannot parse --now '{args.now}': {e}[/]")
        return 1

    try:
        nav = HeadingNavigator(args.file, round_minutes=round_minutes, now=now)
        if args.list:
            nav.show()
            return 0

        if args.heading:
            summary = nav.find_heading(args.heading)
            if summary is None:
                console.print(f"[{COLORS['error']}]No heading matches '{args.heading}'[/]")
                return 1
        else:
            nav.show()
            summary = nav.select_heading_interactively()

        action = args.action or nav.select_action_interactively(summary)
        return 0 if nav.apply(summary, action) else 1

    except KeyboardInterrupt:
        console.print(f"\n[{COLORS['warning']}]Operation cancelled[/]")
        return 0
    except (OSError, core.MarkorgError) as e:
        console.print(f"[{COLORS['error']}]Error: {e}[/]")
        return 1


if __name__ == '__main__':
    sys.exit(main())
