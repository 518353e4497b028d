#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared core for markorg: plain-text task markup inside Markdown documents.

"""
from __future__ import annotations
import os, re, sys
import json, time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, date
from enum import Enum
from typing import Protocol, Union


# ==============================================================================
# TABLE OF CONTENTS (major sections)
# 1) Config & defaults
# 2) Diagnostics (diag, JSONL diag log)
# 3) Grammar (heading, timestamp line, inline timestamp, clock entry)
# 4) Weekday naming
# 5) Cursor resolver
# 6) Field mutator
# 7) Text buffer & patches
# 8) Metadata block (CREATED / SCHEDULED / DEADLINE)
# 9) Clock sessions
# 10) Heading summaries
# ==============================================================================


# ==============================================================================
# SECTION: Config & defaults
# ==============================================================================
try:
    import tomllib  # Python 3.11+
except ImportError:
    try:
        import tomli as tomllib  # Python 3.10 and earlier (pip install tomli)
    except ImportError:
        tomllib = None


_DEFAULTS = {
    "clock_round_minutes": 0,            # 0 => clock start/finish use the exact minute
    "weekday_style": "cyrillic-short",   # label style for freshly written timestamps
    "panel_mode": "rich",                # rich | line
}

_CONF_CACHE = None


def _read_toml(path: str) -> dict:
    if not path or not os.path.isfile(path):
        return {}

    env_path = os.environ.get("MARKORG_CONFIG") or ""
    env_abs = os.path.abspath(os.path.expanduser(env_path)) if env_path else ""
    is_env_path = bool(env_abs and path == env_abs)

    if tomllib is None:
        if is_env_path:
            raise RuntimeError(
                f"MARKORG_CONFIG is set but TOML parser is unavailable for {path}. "
                "Install tomli or upgrade to Python 3.11+."
            )
        diag(f"config present but TOML parser unavailable; ignoring {path}")
        return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f) or {}
    except (OSError, tomllib.TOMLDecodeError) as e:
        if is_env_path:
            raise RuntimeError(f"MARKORG_CONFIG parse failed for {path}: {e}")
        diag(f"failed to parse TOML {path}: {e}; using defaults")
        return {}


def _config_paths() -> list[str]:
    env_path = os.environ.get("MARKORG_CONFIG")
    if env_path:
        return [os.path.abspath(os.path.expanduser(env_path))]

    def _candidates_in_dir(d: str) -> list[str]:
        d = os.path.abspath(os.path.expanduser(d))
        return [
            os.path.join(d, "config-markorg.toml"),
            os.path.join(d, "markorg.toml"),
        ]

    paths: list[str] = []
    paths.extend(_candidates_in_dir(os.path.dirname(os.path.abspath(__file__))))
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        paths.extend(_candidates_in_dir(os.path.join(xdg, "markorg")))
    paths.extend(_candidates_in_dir("~/.config/markorg"))

    seen = set()
    out = []
    for p in paths:
        if p not in seen:
            seen.add(p)
            out.append(p)
    return out


def _normalize_keys(d: dict) -> dict:
    # allow users to write keys in any case
    return {str(k).strip().lower(): v for k, v in (d or {}).items()}


def _load_config() -> dict:
    cfg = dict(_DEFAULTS)
    chosen = None
    paths = _config_paths()
    for p in paths:
        data = _read_toml(p)
        if data:
            cfg.update(_normalize_keys(data))
            chosen = p
            break

    if chosen:
        diag(f"using config: {chosen}")
    else:
        diag("no config file found; using defaults. Search order: " + ", ".join(paths))
    return cfg


def get_config() -> dict:
    global _CONF_CACHE
    if _CONF_CACHE is None:
        _CONF_CACHE = _load_config()
    return _CONF_CACHE


def reset_config() -> None:
    """Drop the cached config so the next lookup re-reads the files."""
    global _CONF_CACHE
    _CONF_CACHE = None


def conf_str(key: str, default: str) -> str:
    v = get_config().get(key)
    if v is None:
        return str(default)
    s = str(v).strip()
    return s if s else str(default)


def conf_int(
    key: str,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    v = get_config().get(key)
    try:
        out = int(str(v).strip())
    except (TypeError, ValueError):
        out = int(default)
    if min_value is not None and out < min_value:
        out = int(min_value)
    if max_value is not None and out > max_value:
        out = int(max_value)
    return out


def clock_round_minutes() -> int:
    return conf_int("clock_round_minutes", 0, min_value=0, max_value=24 * 60)


def default_weekday_style() -> "WeekdayStyle":
    return WeekdayStyle.from_name(conf_str("weekday_style", _DEFAULTS["weekday_style"]))


# ==============================================================================
# SECTION: Diagnostics
# ==============================================================================
def _diag_log_path() -> str:
    p = os.environ.get("MARKORG_DIAG_LOG_PATH")
    if p:
        return os.path.abspath(os.path.expanduser(p))
    base = os.environ.get("XDG_CACHE_HOME") or os.path.expanduser("~/.cache")
    return os.path.join(base, "markorg", "diag.jsonl")


def diag_log(msg: str, tool: str = "markorg") -> None:
    """Append a JSONL diagnostic log entry (when MARKORG_DIAG_LOG=1)."""
    if os.environ.get("MARKORG_DIAG_LOG") != "1":
        return
    path = _diag_log_path()
    try:
        max_bytes = int(os.environ.get("MARKORG_DIAG_LOG_MAX_BYTES") or 262144)
    except ValueError:
        max_bytes = 262144
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if max_bytes > 0 and os.path.exists(path) and os.stat(path).st_size > max_bytes:
            os.replace(path, path.replace(".jsonl", f".overflow.{int(time.time())}.jsonl"))
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "tool": tool,
            "pid": os.getpid(),
            "msg": str(msg),
        }
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n")
    except OSError:
        pass


def diag(msg, tool: str = "markorg") -> None:
    """Write diagnostics to stderr when MARKORG_DIAG=1 and to the diag log when MARKORG_DIAG_LOG=1."""
    if os.environ.get("MARKORG_DIAG") == "1":
        try:
            sys.stderr.write(f"[markorg] {msg}\n")
        except OSError:
            pass
    diag_log(msg, tool)


# ==============================================================================
# SECTION: Errors
# ==============================================================================
class MarkorgError(Exception):
    pass


class AlreadyOpenSession(MarkorgError):
    def __init__(self, heading_line: int, clock_line: int):
        super().__init__("There is already an open CLOCK entry")
        self.heading_line = heading_line
        self.clock_line = clock_line


class NoOpenSession(MarkorgError):
    def __init__(self, heading_line: int):
        super().__init__("No open CLOCK entry found")
        self.heading_line = heading_line


# ==============================================================================
# SECTION: Grammar
# ==============================================================================
STATUSES = ("TODO", "DONE")
TIMESTAMP_KINDS = ("CREATED", "SCHEDULED", "DEADLINE", "CLOSED")
_KIND_RING = ("SCHEDULED", "DEADLINE", "CLOSED")
PLANNING_KINDS = ("SCHEDULED", "DEADLINE")

_HEADING_RE = re.compile(
    r"^(?P<hashes>#+)\s+(?:(?P<status>TODO|DONE)\s+)?(?:\[#(?P<priority>[A-Z])\]\s+)?(?P<title>.+)$"
)
_HEADING_START_RE = re.compile(r"^#+\s+")

# Weekday labels are script-agnostic: any run of letters (Latin "Fri", Cyrillic "Пт").
_INLINE_TS_RE = re.compile(
    r"<(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    r"(?: (?P<weekday>[^\W\d_]{2,3}))?"
    r"(?: (?P<hour>\d{2}):(?P<minute>\d{2}))?"
    r"(?: (?P<repeater>\+\d+[dwmy]{1,2}))?>"
)
_TIMESTAMP_LINE_RE = re.compile(
    r"^(?P<indent>\s*)`(?P<kind>CREATED|SCHEDULED|DEADLINE|CLOSED): (?P<stamp><[^>]+>)`$"
)
_CLOCK_STAMP = r"[\[<]\d{4}-\d{2}-\d{2} [^\W\d_]+ \d{2}:\d{2}[\]>]"
_CLOCK_RE = re.compile(
    r"^(?P<indent>\s*)`CLOCK: (?P<start>" + _CLOCK_STAMP + r")"
    r"(?:--(?P<end>" + _CLOCK_STAMP + r") => +(?P<duration>-?\d+:\d{2}))?`$"
)
_CLOCK_STAMP_RE = re.compile(
    r"(?P<open>[\[<])(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2}) "
    r"(?P<weekday>[^\W\d_]+) (?P<hour>\d{2}):(?P<minute>\d{2})(?P<close>[\]>])"
)


@dataclass(frozen=True)
class FieldSpan:
    """
    Column range of one editable field; `end` is the column right after the field.

    With `caret_after` (the default) a caret sitting on `end` still edits the field;
    clock fields switch it off so the separator or bracket after them is not a hit.
    """
    name: str
    start: int
    end: int
    caret_after: bool = True

    def contains(self, col: int) -> bool:
        if self.caret_after:
            return self.start <= col <= self.end
        return self.start <= col < self.end


def _first_span(spans, col: int) -> str | None:
    for sp in spans:
        if sp.contains(col):
            return sp.name
    return None


def carry_datetime(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Build a datetime with calendar carry: month 13 is next January, Feb 30 is early March."""
    y = year + (month - 1) // 12
    m = (month - 1) % 12 + 1
    return datetime(y, m, 1) + timedelta(days=day - 1, hours=hour, minutes=minute)


@dataclass(frozen=True)
class HeadingToken:
    level: int
    status: str | None
    priority: str | None
    title: str
    spans: tuple = ()

    def render(self) -> str:
        out = "#" * self.level + " "
        if self.status:
            out += f"{self.status} "
        if self.priority:
            out += f"[#{self.priority}] "
        return out + self.title


@dataclass(frozen=True)
class InlineTimestamp:
    year: int
    month: int
    day: int
    weekday: str | None = None
    time: tuple | None = None        # (hour, minute)
    repeater: str | None = None      # "+1w", "+2wd"; never interpreted
    start: int = 0                   # column of '<'
    end: int = 0                     # column after '>'
    spans: tuple = ()

    def as_datetime(self) -> datetime:
        hh, mm = self.time or (0, 0)
        return carry_datetime(self.year, self.month, self.day, hh, mm)


@dataclass(frozen=True)
class TimestampLineToken:
    indent: str
    kind: str
    timestamp: InlineTimestamp
    stamp: str                       # bracketed timestamp text, verbatim
    spans: tuple = ()

    def render(self, kind: str | None = None) -> str:
        return f"{self.indent}`{kind or self.kind}: {self.stamp}`"


@dataclass(frozen=True)
class ClockTimestamp:
    open_bracket: str
    year: int
    month: int
    day: int
    weekday: str
    hour: int
    minute: int
    close_bracket: str

    def as_datetime(self) -> datetime:
        return carry_datetime(self.year, self.month, self.day, self.hour, self.minute)


@dataclass(frozen=True)
class ClockEntry:
    indent: str
    start: ClockTimestamp
    end: ClockTimestamp | None = None
    duration: int | None = None      # minutes, as written after "=>"
    spans: tuple = ()

    @property
    def is_open(self) -> bool:
        return self.end is None


Token = Union[HeadingToken, TimestampLineToken, InlineTimestamp, ClockEntry]


def parse_heading(line: str) -> HeadingToken | None:
    m = _HEADING_RE.match(line or "")
    if not m:
        return None
    spans = []
    if m.group("status"):
        spans.append(FieldSpan("status", m.start("status"), m.end("status")))
    if m.group("priority"):
        # the whole "[#X]" marker is the priority field
        spans.append(FieldSpan("priority", m.start("priority") - 2, m.end("priority") + 1))
    return HeadingToken(
        level=len(m.group("hashes")),
        status=m.group("status"),
        priority=m.group("priority"),
        title=m.group("title"),
        spans=tuple(spans),
    )


def is_heading(line: str) -> bool:
    return bool(_HEADING_START_RE.match(line or ""))


def _inline_from_match(m: re.Match) -> InlineTimestamp | None:
    ts_time = None
    if m.group("hour") is not None:
        ts_time = (int(m.group("hour")), int(m.group("minute")))
    ts = InlineTimestamp(
        year=int(m.group("year")),
        month=int(m.group("month")),
        day=int(m.group("day")),
        weekday=m.group("weekday"),
        time=ts_time,
        repeater=m.group("repeater"),
        start=m.start(),
        end=m.end(),
        spans=tuple(
            FieldSpan(name, m.start(name), m.end(name))
            for name in ("year", "month", "day", "weekday", "hour", "minute")
            if m.group(name) is not None
        ),
    )
    try:
        ts.as_datetime()
    except (ValueError, OverflowError):
        return None
    return ts


def iter_inline_timestamps(line: str):
    """Yield every well-formed inline timestamp of a line, left to right."""
    for m in _INLINE_TS_RE.finditer(line or ""):
        ts = _inline_from_match(m)
        if ts is not None:
            yield ts


def parse_inline_timestamp(text: str) -> InlineTimestamp | None:
    m = _INLINE_TS_RE.fullmatch(text or "")
    return _inline_from_match(m) if m else None


def is_timestamp_line(line: str) -> bool:
    return bool(_TIMESTAMP_LINE_RE.match(line or ""))


def parse_timestamp_line(line: str) -> TimestampLineToken | None:
    m = _TIMESTAMP_LINE_RE.match(line or "")
    if not m:
        return None
    ts = parse_inline_timestamp(m.group("stamp"))
    if ts is None:
        return None
    return TimestampLineToken(
        indent=m.group("indent"),
        kind=m.group("kind"),
        timestamp=ts,
        stamp=m.group("stamp"),
        spans=(FieldSpan("type", m.start("kind"), m.end("kind")),),
    )


def _parse_clock_stamp(text: str) -> ClockTimestamp | None:
    m = _CLOCK_STAMP_RE.fullmatch(text)
    if not m:
        return None
    cts = ClockTimestamp(
        open_bracket=m.group("open"),
        year=int(m.group("year")),
        month=int(m.group("month")),
        day=int(m.group("day")),
        weekday=m.group("weekday"),
        hour=int(m.group("hour")),
        minute=int(m.group("minute")),
        close_bracket=m.group("close"),
    )
    try:
        cts.as_datetime()
    except (ValueError, OverflowError):
        return None
    return cts


def parse_duration(text: str) -> int:
    """'  1:30' -> 90, '-0:15' -> -15."""
    s = text.strip()
    sign = -1 if s.startswith("-") else 1
    hh, mm = s.lstrip("-").split(":", 1)
    return sign * (int(hh) * 60 + int(mm))


def format_duration(minutes: int) -> str:
    """Render whole minutes as H:MM with the hours space-padded to two columns."""
    sign = "-" if minutes < 0 else ""
    hh, mm = divmod(abs(int(minutes)), 60)
    return f"{sign}{hh}".rjust(2) + f":{mm:02d}"


def parse_clock_entry(line: str) -> ClockEntry | None:
    m = _CLOCK_RE.match(line or "")
    if not m:
        return None
    start = _parse_clock_stamp(m.group("start"))
    if start is None:
        return None
    # "HH:MM" sits right before the closing bracket of each stamp
    h = m.end("start") - 6
    spans = [FieldSpan("start-hour", h, h + 2, False), FieldSpan("start-minute", h + 3, h + 5, False)]
    end = None
    duration = None
    if m.group("end"):
        end = _parse_clock_stamp(m.group("end"))
        if end is None:
            return None
        duration = parse_duration(m.group("duration"))
        h = m.end("end") - 6
        spans += [FieldSpan("end-hour", h, h + 2, False), FieldSpan("end-minute", h + 3, h + 5, False)]
    return ClockEntry(
        indent=m.group("indent"),
        start=start,
        end=end,
        duration=duration,
        spans=tuple(spans),
    )


def is_clock_line(line: str) -> bool:
    return bool(_CLOCK_RE.match(line or ""))


# ==============================================================================
# SECTION: Weekday naming
# ==============================================================================
class WeekdayStyle(Enum):
    LATIN_SHORT = "latin-short"
    LATIN_FULL = "latin-full"
    CYRILLIC_SHORT = "cyrillic-short"
    CYRILLIC_FULL = "cyrillic-full"

    @classmethod
    def detect(cls, label: str) -> "WeekdayStyle":
        """Classify an existing label by script and length (<=3 letters is short)."""
        cyrillic = any("Ѐ" <= ch <= "ӿ" for ch in label or "")
        full = len(label or "") > 3
        if cyrillic:
            return cls.CYRILLIC_FULL if full else cls.CYRILLIC_SHORT
        return cls.LATIN_FULL if full else cls.LATIN_SHORT

    @classmethod
    def from_name(cls, name: str) -> "WeekdayStyle":
        key = str(name or "").strip().lower().replace("_", "-")
        for style in cls:
            if style.value == key:
                return style
        diag(f"unknown weekday_style {name!r}; using {cls.CYRILLIC_SHORT.value}")
        return cls.CYRILLIC_SHORT


# Monday first, matching date.weekday()
_WEEKDAY_NAMES = {
    WeekdayStyle.LATIN_SHORT: ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"),
    WeekdayStyle.LATIN_FULL: (
        "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    ),
    WeekdayStyle.CYRILLIC_SHORT: ("Пн", "Вт", "Ср", "Чт", "Пт", "Сб", "Вс"),
    WeekdayStyle.CYRILLIC_FULL: (
        "Понедельник", "Вторник", "Среда", "Четверг", "Пятница", "Суббота", "Воскресенье",
    ),
}


def weekday_label(d: date, style: WeekdayStyle) -> str:
    return _WEEKDAY_NAMES[style][d.weekday()]


def relabel_weekday(d: date, previous_label: str) -> str:
    """Weekday label for `d` written in the same script and length as `previous_label`."""
    return weekday_label(d, WeekdayStyle.detect(previous_label))


# ==============================================================================
# SECTION: Cursor resolver
# ==============================================================================
@dataclass(frozen=True)
class Resolved:
    line: str
    token: Token
    field: str


def _resolve_clock(line: str, col: int) -> Resolved | None:
    entry = parse_clock_entry(line)
    if entry is None:
        return None
    name = _first_span(entry.spans, col)
    return Resolved(line, entry, name) if name else None


def _resolve_inline(line: str, col: int) -> Resolved | None:
    for ts in iter_inline_timestamps(line):
        if not (ts.start <= col < ts.end):
            continue
        name = _first_span(ts.spans, col)
        if name:
            return Resolved(line, ts, name)
    return None


def _resolve_timestamp_type(line: str, col: int) -> Resolved | None:
    tok = parse_timestamp_line(line)
    if tok is None:
        return None
    name = _first_span(tok.spans, col)
    return Resolved(line, tok, name) if name else None


def _resolve_heading(line: str, col: int) -> Resolved | None:
    tok = parse_heading(line)
    if tok is None:
        return None
    name = _first_span(tok.spans, col)
    return Resolved(line, tok, name) if name else None


_RESOLVERS = (_resolve_inline, _resolve_timestamp_type, _resolve_heading)


def resolve(line: str, col: int) -> Resolved | None:
    """Find the token and field under the caret; None means "no token here"."""
    if parse_clock_entry(line) is not None:
        # only the clock's own fields; its dates never go through the inline resolver
        hit = _resolve_clock(line, col)
        if hit is None:
            diag(f"no clock field at column {col}")
        return hit
    for fn in _RESOLVERS:
        hit = fn(line, col)
        if hit is not None:
            return hit
    diag(f"no token at column {col}")
    return None


# ==============================================================================
# SECTION: Field mutator
# ==============================================================================
def _shift(dt: datetime, unit: str, delta: int) -> datetime:
    if unit == "year":
        return carry_datetime(dt.year + delta, dt.month, dt.day, dt.hour, dt.minute)
    if unit == "month":
        return carry_datetime(dt.year, dt.month + delta, dt.day, dt.hour, dt.minute)
    if unit in ("day", "weekday"):
        return dt + timedelta(days=delta)
    if unit == "hour":
        return dt + timedelta(hours=delta)
    if unit == "minute":
        return dt + timedelta(minutes=delta)
    raise ValueError(f"unknown time unit: {unit}")


def render_inline_timestamp(
    dt: datetime,
    weekday_style: WeekdayStyle | None = None,
    with_time: bool = True,
    repeater: str | None = None,
) -> str:
    out = f"<{dt.year:04d}-{dt.month:02d}-{dt.day:02d}"
    if weekday_style is not None:
        out += " " + weekday_label(dt, weekday_style)
    if with_time:
        out += f" {dt.hour:02d}:{dt.minute:02d}"
    if repeater:
        out += f" {repeater}"
    return out + ">"


def render_clock_timestamp(
    dt: datetime,
    weekday_style: WeekdayStyle,
    brackets: tuple = ("[", "]"),
) -> str:
    return (
        f"{brackets[0]}{dt.year:04d}-{dt.month:02d}-{dt.day:02d} "
        f"{weekday_label(dt, weekday_style)} {dt.hour:02d}:{dt.minute:02d}{brackets[1]}"
    )


def render_clock_line(
    indent: str,
    start: datetime,
    end: datetime | None,
    weekday_style: WeekdayStyle,
    brackets: tuple = ("[", "]"),
    end_style: WeekdayStyle | None = None,
    end_brackets: tuple | None = None,
) -> str:
    out = f"{indent}`CLOCK: {render_clock_timestamp(start, weekday_style, brackets)}"
    if end is not None:
        minutes = int((end - start).total_seconds() // 60)
        out += (
            f"--{render_clock_timestamp(end, end_style or weekday_style, end_brackets or brackets)}"
            f" => {format_duration(minutes)}"
        )
    return out + "`"


def _mutate_heading(tok: HeadingToken, fld: str, delta: int) -> HeadingToken:
    if fld == "status":
        if tok.status not in STATUSES:
            return tok
        idx = (STATUSES.index(tok.status) + delta) % len(STATUSES)
        return HeadingToken(tok.level, STATUSES[idx], tok.priority, tok.title)
    if fld == "priority":
        if not tok.priority:
            return tok
        code = ord(tok.priority) + delta
        if not (ord("A") <= code <= ord("Z")):
            return tok
        return HeadingToken(tok.level, tok.status, chr(code), tok.title)
    return tok


def _mutate_inline(ts: InlineTimestamp, fld: str, delta: int) -> str:
    dt = _shift(ts.as_datetime(), fld, delta)
    style = WeekdayStyle.detect(ts.weekday) if ts.weekday else None
    return render_inline_timestamp(dt, style, ts.time is not None, ts.repeater)


def _mutate_clock(entry: ClockEntry, fld: str, delta: int) -> str:
    side, unit = fld.split("-", 1)
    start_dt = entry.start.as_datetime()
    if side == "start":
        start_dt = _shift(start_dt, unit, delta)
    start_style = WeekdayStyle.detect(entry.start.weekday)
    start_br = (entry.start.open_bracket, entry.start.close_bracket)
    if entry.end is None:
        return render_clock_line(entry.indent, start_dt, None, start_style, start_br)
    end_dt = entry.end.as_datetime()
    if side == "end":
        end_dt = _shift(end_dt, unit, delta)
    return render_clock_line(
        entry.indent,
        start_dt,
        end_dt,
        start_style,
        start_br,
        end_style=WeekdayStyle.detect(entry.end.weekday),
        end_brackets=(entry.end.open_bracket, entry.end.close_bracket),
    )


def mutate(hit: Resolved, delta: int) -> str:
    """Return the new line text after moving the resolved field by `delta`."""
    tok = hit.token
    try:
        if isinstance(tok, ClockEntry):
            return _mutate_clock(tok, hit.field, delta)
        if isinstance(tok, InlineTimestamp):
            return hit.line[: tok.start] + _mutate_inline(tok, hit.field, delta) + hit.line[tok.end:]
        if isinstance(tok, TimestampLineToken):
            if tok.kind == "CREATED" or not delta or tok.kind not in _KIND_RING:
                return hit.line
            nxt = _KIND_RING[(_KIND_RING.index(tok.kind) + 1) % len(_KIND_RING)]
            return tok.render(nxt)
        if isinstance(tok, HeadingToken):
            new = _mutate_heading(tok, hit.field, delta)
            return hit.line if new is tok else new.render()
    except (ValueError, OverflowError) as e:
        # outside datetime's 1..9999 year range
        diag(f"mutation of {hit.field} by {delta} left line unchanged: {e}")
        return hit.line
    return hit.line


# ==============================================================================
# SECTION: Text buffer & patches
# ==============================================================================
class TextBuffer(Protocol):
    def get_line(self, index: int) -> str: ...
    def line_count(self) -> int: ...
    def replace_range(self, from_line: int, from_col: int, to_line: int, to_col: int, text: str) -> None: ...
    def insert_at(self, line: int, col: int, text: str) -> None: ...


class LineBuffer:
    """In-memory text buffer over a document string; keeps the document's newline style."""

    def __init__(self, text: str = ""):
        self.newline = "\r\n" if "\r\n" in text else "\n"
        self._lines = text.split(self.newline)

    def get_line(self, index: int) -> str:
        return self._lines[index]

    def line_count(self) -> int:
        return len(self._lines)

    def text(self) -> str:
        return self.newline.join(self._lines)

    def _offset(self, line: int, col: int) -> int:
        if line >= len(self._lines):
            return len(self.text())
        nl = len(self.newline)
        base = sum(len(self._lines[i]) + nl for i in range(max(line, 0)))
        return base + max(0, min(col, len(self._lines[line])))

    def replace_range(self, from_line: int, from_col: int, to_line: int, to_col: int, text: str) -> None:
        full = self.text()
        a = self._offset(from_line, from_col)
        b = self._offset(to_line, to_col)
        if self.newline != "\n":
            text = text.replace("\r\n", "\n").replace("\n", self.newline)
        self._lines = (full[:a] + text + full[b:]).split(self.newline)

    def insert_at(self, line: int, col: int, text: str) -> None:
        self.replace_range(line, col, line, col, text)


@dataclass(frozen=True)
class Patch:
    start_line: int
    start_col: int
    end_line: int
    end_col: int
    text: str

    @property
    def is_insert(self) -> bool:
        return self.start_line == self.end_line and self.start_col == self.end_col


def apply_patch(buffer: TextBuffer, patch: Patch) -> None:
    if patch.is_insert:
        buffer.insert_at(patch.start_line, patch.start_col, patch.text)
    else:
        buffer.replace_range(patch.start_line, patch.start_col, patch.end_line, patch.end_col, patch.text)


def replace_line_patch(buffer: TextBuffer, index: int, text: str) -> Patch:
    return Patch(index, 0, index, len(buffer.get_line(index)), text)


def delete_line_patch(buffer: TextBuffer, index: int) -> Patch:
    return Patch(index, 0, index + 1, 0, "")


def insert_line_patch(buffer: TextBuffer, index: int, text: str) -> Patch:
    """Insert `text` as a whole line before line `index` (or after the last line)."""
    count = buffer.line_count()
    if index >= count:
        last = count - 1
        return Patch(last, len(buffer.get_line(last)), last, len(buffer.get_line(last)), "\n" + text)
    return Patch(index, 0, index, 0, text + "\n")


def adjust(buffer: TextBuffer, line: int, col: int, delta: int) -> Patch | None:
    """Increment/decrement whatever field sits under the caret; None => no token (caller falls back)."""
    hit = resolve(buffer.get_line(line), col)
    if hit is None:
        return None
    return replace_line_patch(buffer, line, mutate(hit, delta))


# ==============================================================================
# SECTION: Metadata block
# ==============================================================================
def nearest_heading(buffer: TextBuffer, line: int) -> int | None:
    """Nearest heading at or above `line` (plain scan; editors may supply an outline instead)."""
    for i in range(min(line, buffer.line_count() - 1), -1, -1):
        if is_heading(buffer.get_line(i)):
            return i
    return None


@dataclass
class MetadataBlock:
    heading: int
    timestamp_lines: list = field(default_factory=list)
    clock_lines: list = field(default_factory=list)

    @property
    def last_timestamp_line(self) -> int:
        """Last line of the leading run of timestamp lines (the heading itself when none)."""
        last = self.heading
        for i in self.timestamp_lines:
            if i != last + 1:
                break
            last = i
        return last


def scan_metadata(buffer: TextBuffer, heading: int) -> MetadataBlock:
    """Walk the lines under a heading: timestamp lines, clock entries, and blanks between clocks."""
    block = MetadataBlock(heading)
    for i in range(heading + 1, buffer.line_count()):
        text = buffer.get_line(i)
        if is_timestamp_line(text):
            block.timestamp_lines.append(i)
            continue
        if parse_clock_entry(text) is not None:
            block.clock_lines.append(i)
            continue
        if not text.strip() and block.clock_lines:
            continue
        break
    return block


def _block_weekday_style(buffer: TextBuffer, block: MetadataBlock, fallback: WeekdayStyle) -> WeekdayStyle:
    # New stamps follow whatever notation the heading already uses
    for i in block.timestamp_lines:
        tok = parse_timestamp_line(buffer.get_line(i))
        if tok is not None and tok.timestamp.weekday:
            return WeekdayStyle.detect(tok.timestamp.weekday)
    for i in block.clock_lines:
        entry = parse_clock_entry(buffer.get_line(i))
        if entry is not None:
            return WeekdayStyle.detect(entry.start.weekday)
    return fallback


def _block_indent(buffer: TextBuffer, heading: int) -> str:
    if heading + 1 >= buffer.line_count():
        return ""
    text = buffer.get_line(heading + 1)
    tok = _TIMESTAMP_LINE_RE.match(text) or _CLOCK_RE.match(text)
    return tok.group("indent") if tok else ""


def set_status(line: str, status: str) -> str | None:
    """Set TODO/DONE on a heading; setting the current status again clears it."""
    tok = parse_heading(line)
    if tok is None:
        return None
    if status not in STATUSES:
        raise ValueError(f"status must be one of {STATUSES}, got {status!r}")
    new_status = None if tok.status == status else status
    return HeadingToken(tok.level, new_status, tok.priority, tok.title).render()


def toggle_priority(line: str) -> str | None:
    """Add [#A] to a heading without priority; drop the priority marker otherwise."""
    tok = parse_heading(line)
    if tok is None:
        return None
    return HeadingToken(tok.level, tok.status, None if tok.priority else "A", tok.title).render()


def toggle_created(
    buffer: TextBuffer,
    heading: int,
    now: datetime | None = None,
    weekday_style: WeekdayStyle | None = None,
) -> Patch:
    nxt = heading + 1
    if nxt < buffer.line_count():
        tok = parse_timestamp_line(buffer.get_line(nxt))
        if tok is not None and tok.kind == "CREATED":
            return delete_line_patch(buffer, nxt)
    now = now or datetime.now()
    block = scan_metadata(buffer, heading)
    style = _block_weekday_style(buffer, block, weekday_style or default_weekday_style())
    stamp = render_inline_timestamp(now, style)
    return insert_line_patch(buffer, nxt, f"{_block_indent(buffer, heading)}`CREATED: {stamp}`")


def toggle_planning(
    buffer: TextBuffer,
    heading: int,
    kind: str,
    now: datetime | None = None,
    weekday_style: WeekdayStyle | None = None,
) -> Patch:
    """
    Toggle SCHEDULED/DEADLINE under a heading.

    Same kind present -> line removed. Other kind present -> relabelled, timestamp kept.
    Neither -> a fresh stamp is inserted after CREATED (or right below the heading).
    """
    if kind not in PLANNING_KINDS:
        raise ValueError(f"kind must be one of {PLANNING_KINDS}, got {kind!r}")
    block = scan_metadata(buffer, heading)
    found = None
    for i in range(heading + 1, block.last_timestamp_line + 1):
        tok = parse_timestamp_line(buffer.get_line(i))
        if tok is not None and tok.kind in PLANNING_KINDS:
            found = (i, tok)
    if found is not None:
        i, tok = found
        if tok.kind == kind:
            return delete_line_patch(buffer, i)
        return replace_line_patch(buffer, i, tok.render(kind))

    insert_at = heading + 1
    if insert_at < buffer.line_count():
        tok = parse_timestamp_line(buffer.get_line(insert_at))
        if tok is not None and tok.kind == "CREATED":
            insert_at += 1
    now = now or datetime.now()
    style = _block_weekday_style(buffer, block, weekday_style or default_weekday_style())
    stamp = render_inline_timestamp(now, style)
    return insert_line_patch(buffer, insert_at, f"{_block_indent(buffer, heading)}`{kind}: {stamp}`")


# ==============================================================================
# SECTION: Clock sessions
# ==============================================================================
def round_start(now: datetime, round_minutes: int | None) -> datetime:
    """Floor to the rounding step (seconds always dropped)."""
    now = now.replace(second=0, microsecond=0)
    if not round_minutes:
        return now
    return now.replace(minute=(now.minute // round_minutes) * round_minutes)


def round_end(start: datetime, now: datetime, round_minutes: int | None) -> datetime:
    """Ceil to the rounding step; a result not after `start` moves one more step forward."""
    now = now.replace(second=0, microsecond=0)
    if not round_minutes:
        return now
    steps = -(-now.minute // round_minutes)
    end = now.replace(minute=0) + timedelta(minutes=steps * round_minutes)
    if end <= start:
        end += timedelta(minutes=round_minutes)
    return end


def find_open_clock(buffer: TextBuffer, block: MetadataBlock) -> tuple | None:
    for i in block.clock_lines:
        entry = parse_clock_entry(buffer.get_line(i))
        if entry is not None and entry.is_open:
            return i, entry
    return None


def is_clocked_in(buffer: TextBuffer, heading: int) -> bool:
    return find_open_clock(buffer, scan_metadata(buffer, heading)) is not None


def start_clock(
    buffer: TextBuffer,
    heading: int,
    now: datetime | None = None,
    round_minutes: int | None = None,
    weekday_style: WeekdayStyle | None = None,
) -> Patch:
    """Open a session under `heading`; raises AlreadyOpenSession when one is running."""
    block = scan_metadata(buffer, heading)
    open_clock = find_open_clock(buffer, block)
    if open_clock is not None:
        raise AlreadyOpenSession(heading, open_clock[0])

    start = round_start(now or datetime.now(), round_minutes)
    style = _block_weekday_style(buffer, block, weekday_style or default_weekday_style())
    text = render_clock_line(_block_indent(buffer, heading), start, None, style)

    if block.clock_lines:
        insert_at = block.clock_lines[-1] + 1
    else:
        insert_at = block.last_timestamp_line + 1
    diag(f"clock start under line {heading} at {start:%Y-%m-%d %H:%M}, inserted at line {insert_at}")
    return insert_line_patch(buffer, insert_at, text)


def finish_clock(
    buffer: TextBuffer,
    heading: int,
    now: datetime | None = None,
    round_minutes: int | None = None,
) -> Patch:
    """Close the open session under `heading`; raises NoOpenSession when nothing is running."""
    block = scan_metadata(buffer, heading)
    open_clock = find_open_clock(buffer, block)
    if open_clock is None:
        raise NoOpenSession(heading)

    index, entry = open_clock
    start = entry.start.as_datetime()
    end = round_end(start, now or datetime.now(), round_minutes)
    text = render_clock_line(entry.indent, start, end, WeekdayStyle.detect(entry.start.weekday))
    diag(f"clock finish on line {index}: {format_duration(int((end - start).total_seconds() // 60)).strip()}")
    return replace_line_patch(buffer, index, text)


# ==============================================================================
# SECTION: Heading summaries
# ==============================================================================
@dataclass
class HeadingSummary:
    line: int
    heading: HeadingToken
    created: InlineTimestamp | None = None
    planning_kind: str | None = None
    planning: InlineTimestamp | None = None
    closed: InlineTimestamp | None = None
    clocks: list = field(default_factory=list)
    clocked_minutes: int = 0
    open_clock_line: int | None = None

    @property
    def is_clocked_in(self) -> bool:
        return self.open_clock_line is not None


def summarize_heading(buffer: TextBuffer, heading: int) -> HeadingSummary | None:
    tok = parse_heading(buffer.get_line(heading))
    if tok is None:
        return None
    out = HeadingSummary(line=heading, heading=tok)
    block = scan_metadata(buffer, heading)
    for i in block.timestamp_lines:
        ts = parse_timestamp_line(buffer.get_line(i))
        if ts is None:
            continue
        if ts.kind == "CREATED":
            out.created = ts.timestamp
        elif ts.kind == "CLOSED":
            out.closed = ts.timestamp
        else:
            out.planning_kind = ts.kind
            out.planning = ts.timestamp
    for i in block.clock_lines:
        entry = parse_clock_entry(buffer.get_line(i))
        if entry is None:
            continue
        out.clocks.append(entry)
        if entry.is_open:
            if out.open_clock_line is None:
                out.open_clock_line = i
        elif entry.duration is not None:
            out.clocked_minutes += entry.duration
    return out


def summarize_headings(buffer: TextBuffer) -> list[HeadingSummary]:
    out = []
    for i in range(buffer.line_count()):
        summary = summarize_heading(buffer, i)
        if summary is not None:
            out.append(summary)
    return out
