#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared core for Happenings: recurrence interpretation and occurrence expansion.

"""
from __future__ import annotations
import os, re, sys
import copy
import json, time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, date

from dateutil.relativedelta import relativedelta, MO, TU, WE, TH, FR, SA, SU


# ==============================================================================
# TABLE OF CONTENTS (major sections)
# 1) Config & defaults
# 2) Diagnostics (diag, diag_log)
# 3) Panels & formatting helpers
# 4) Calendar primitives
# 5) Recurrence model
# 6) Recurrence interpreter
# 7) Occurrence generator & next-occurrence resolver
# 8) Override merge layer
# 9) Recurrence humanizer & display formats
# 10) Batch expansion for listings
# ==============================================================================


# ==============================================================================
# SECTION: Config & defaults
# ==============================================================================
# --- TOML loading helpers ---


try:
    import tomllib  # Python 3.11+
except Exception:
    try:
        import tomli as tomllib  # Python 3.10 and earlier (pip install tomli)
    except Exception:
        tomllib = None


# --- Defaults ---
_DEFAULTS = {
    "tz": "America/Denver",        # the one civil timezone every date is read in
    "window_days": 90,
    "max_occurrences": 90,
    "lookahead_days": 365,
    "max_per_event": 40,
    "max_events": 200,
    "max_total_occurrences": 500,
    "panel_mode": "rich",
}

# --- Config cache ---
_CONF_CACHE = None


def _diag_on() -> bool:
    return os.environ.get("HAPPENINGS_DIAG") == "1"


def _read_toml(path: str) -> dict:
    # Fast path: missing file => no config here
    try:
        if not path or not os.path.exists(path):
            return {}
    except Exception:
        return {}

    env_path = os.environ.get("HAPPENINGS_CONFIG") or ""
    env_abs = os.path.abspath(os.path.expanduser(env_path)) if env_path else ""
    is_env_path = bool(env_abs and path == env_abs)

    if tomllib is None:
        if is_env_path:
            raise RuntimeError(
                f"HAPPENINGS_CONFIG is set but TOML parser is unavailable for {path}. "
                "Install tomli or upgrade to Python 3.11+."
            )
        _warn_once_per_day(
            "missing_toml_parser",
            f"[happenings] Config present but TOML parser unavailable; using defaults. ({path})",
        )
        return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f) or {}
    except Exception as e:
        if is_env_path:
            raise RuntimeError(f"HAPPENINGS_CONFIG parse failed for {path}: {e}")
        if _diag_on():
            print(f"[happenings] Failed to parse TOML: {path}: {e}", file=sys.stderr)
        else:
            _warn_once_per_day(
                "toml_parse_error",
                "[happenings] Config parse failed; using defaults.",
                always=True,
            )
        return {}


def _config_paths() -> list[str]:
    env_path = os.environ.get("HAPPENINGS_CONFIG")
    if env_path:
        ap = os.path.abspath(os.path.expanduser(env_path))
        if (not os.path.exists(ap)) or os.path.isdir(ap):
            _warn_once_per_day(
                "config_missing",
                f"[happenings] HAPPENINGS_CONFIG path missing; using defaults. ({ap})",
                always=True,
            )
        return [ap]

    def _candidates_in_dir(d: str) -> list[str]:
        d = os.path.abspath(os.path.expanduser(d))
        return [
            os.path.join(d, "config-happenings.toml"),
            os.path.join(d, "happenings.toml"),
        ]

    paths: list[str] = []

    # module-adjacent
    paths.extend(_candidates_in_dir(os.path.dirname(os.path.abspath(__file__))))

    # XDG config (explicit, then default)
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        paths.extend(_candidates_in_dir(os.path.join(xdg, "happenings")))
    paths.extend(_candidates_in_dir(os.path.expanduser("~/.config/happenings")))

    seen = set()
    out = []
    for p in paths:
        if p in seen:
            continue
        seen.add(p)
        out.append(p)

    if _diag_on():
        print("[happenings] Config search order:", file=sys.stderr)
        for p in out:
            print(f"  - {p}", file=sys.stderr)
    return out


def _normalize_keys(d: dict) -> dict:
    # allow users to write keys in any case
    return {str(k).strip().lower(): v for k, v in (d or {}).items()}


def _load_config() -> dict:
    cfg = dict(_DEFAULTS)
    chosen = None
    for p in _config_paths():
        data = _read_toml(p)
        if data:
            cfg.update(_normalize_keys(data))
            chosen = p
            break

    if _diag_on():
        if chosen:
            print(f"[happenings] Using config: {chosen}", file=sys.stderr)
        else:
            print("[happenings] No config file found; using defaults.", file=sys.stderr)

    cfg["tz"] = str(cfg.get("tz") or _DEFAULTS["tz"]).strip()
    cfg["panel_mode"] = str(cfg.get("panel_mode") or _DEFAULTS["panel_mode"]).strip().lower()
    return cfg


def _happenings_cache_dir() -> str:
    base = os.environ.get("XDG_CACHE_HOME") or os.path.expanduser("~/.cache")
    return os.path.join(base, "happenings")


def _warn_once_per_day(key: str, message: str, always: bool = False) -> None:
    """Persist a tiny sentinel so repeated runs do not spam stderr.

    With always=False the sentinel is only touched in diagnostic mode; with
    always=True it is stamped regardless and the message still prints only
    under HAPPENINGS_DIAG=1.
    """
    if not always and not _diag_on():
        return
    try:
        d = _happenings_cache_dir()
        os.makedirs(d, exist_ok=True)
        stamp_path = os.path.join(d, f".diag_{key}.stamp")
        stamp = date.today().isoformat()
        if os.path.exists(stamp_path):
            with open(stamp_path, "r", encoding="utf-8") as f:
                if f.read().strip() == stamp:
                    return
        with open(stamp_path, "w", encoding="utf-8") as f:
            f.write(stamp)
        if _diag_on():
            print(message, file=sys.stderr)
    except OSError:
        pass


def _get_config() -> dict:
    global _CONF_CACHE
    if _CONF_CACHE is None:
        _CONF_CACHE = _load_config()
    return _CONF_CACHE

_CONF = _get_config()

def _conf_raw(key: str):
    return _CONF.get(key)

def _conf_str(key: str, default: str) -> str:
    v = _conf_raw(key)
    if v is None:
        return str(default)
    s = str(v).strip()
    return s if s else str(default)

def _conf_int(
    key: str,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    v = _conf_raw(key)
    try:
        out = int(str(v).strip())
    except (TypeError, ValueError):
        out = int(default)
    if min_value is not None and out < min_value:
        out = int(min_value)
    if max_value is not None and out > max_value:
        out = int(max_value)
    return out


LOCAL_TZ_NAME = _conf_str("tz", _DEFAULTS["tz"])
WINDOW_DAYS = _conf_int("window_days", 90, min_value=1, max_value=1830)
MAX_OCCURRENCES = _conf_int("max_occurrences", 90, min_value=1, max_value=1000)
LOOKAHEAD_DAYS = _conf_int("lookahead_days", 365, min_value=31, max_value=1830)
MAX_PER_EVENT = _conf_int("max_per_event", 40, min_value=1, max_value=1000)
MAX_EVENTS = _conf_int("max_events", 200, min_value=1)
MAX_TOTAL_OCCURRENCES = _conf_int("max_total_occurrences", 500, min_value=1)
PANEL_MODE = _conf_str("panel_mode", "rich").lower()
if PANEL_MODE not in ("rich", "fast", "line"):
    PANEL_MODE = "rich"


# ==============================================================================
# SECTION: Diagnostics (diag, diag_log)
# ==============================================================================
# Free text supplied by hosts never reaches the log verbatim.
_DIAG_LOG_REDACT_KEYS = frozenset({"notes", "note", "override_notes", "host_notes", "description"})


def diag_log_redact(msg, redact_keys: frozenset | None = None):
    """Redact free-text keys from a dict or JSON message for diagnostic logs."""
    keys = redact_keys or _DIAG_LOG_REDACT_KEYS
    if isinstance(msg, dict):
        return {k: ("[redacted]" if k in keys else v) for k, v in msg.items()}
    try:
        data = json.loads(msg)
    except (TypeError, ValueError):
        return msg
    if isinstance(data, dict):
        for k in list(data.keys()):
            if k in keys:
                data[k] = "[redacted]"
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return msg


def _diag_log_path(data_dir: str | None = None) -> str:
    base = data_dir or os.environ.get("HAPPENINGS_DATA")
    if base:
        return os.path.join(os.path.abspath(os.path.expanduser(base)), ".happenings_diag.jsonl")
    return os.path.join(os.path.expanduser("~/.happenings"), ".happenings_diag.jsonl")


def diag_log(msg, source: str, data_dir: str | None = None) -> None:
    """Append a JSONL diagnostic log entry (when HAPPENINGS_DIAG_LOG=1)."""
    if os.environ.get("HAPPENINGS_DIAG_LOG") != "1":
        return
    path = _diag_log_path(data_dir)
    try:
        max_bytes = int(os.environ.get("HAPPENINGS_DIAG_LOG_MAX_BYTES") or 262144)
    except ValueError:
        max_bytes = 262144
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if max_bytes > 0 and os.path.exists(path) and os.stat(path).st_size > max_bytes:
            overflow = path.replace(".jsonl", f".overflow.{int(time.time())}.jsonl")
            os.replace(path, overflow)
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "source": source,
            "pid": os.getpid(),
        }
        if isinstance(msg, dict):
            red = diag_log_redact(msg)
            payload["msg"] = str(red.get("msg") or red.get("message") or "")
            payload["data"] = red
        else:
            payload["msg"] = diag_log_redact(str(msg))
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str) + "\n")
    except OSError:
        pass


def diag(msg, source: str = "happenings", data_dir: str | None = None) -> None:
    """Write diagnostics to stderr when HAPPENINGS_DIAG=1 and append to diag log when HAPPENINGS_DIAG_LOG=1."""
    if _diag_on():
        try:
            sys.stderr.write(f"[happenings] {msg}\n")
        except Exception:
            pass
    diag_log(msg, source, data_dir)


# ==============================================================================
# SECTION: Panels & formatting helpers
# ==============================================================================
_RICH_TAG_RE = re.compile(r"\[/\]|\[/?[A-Za-z0-9_ ]+\]")


def strip_rich_markup(s: str) -> str:
    # Strip simple Rich tags; preserve bracketed literals with non-word chars.
    if not s:
        return s
    return _RICH_TAG_RE.sub("", s)


def ansi(code: str) -> str:
    return f"\x1b[{code}m"


def _term_width(stream, default: int = 80) -> int:
    try:
        w = os.get_terminal_size(stream.fileno()).columns
    except Exception:
        w = default
    return max(40, min(100, int(w)))


def _emit_fast_panel(title, rows, stream, use_color: bool) -> None:
    RESET = ansi("0") if use_color else ""
    BOLD = ansi("1") if use_color else ""
    CYAN = ansi("36") if use_color else ""
    RED = ansi("31") if use_color else ""
    YELLOW = ansi("33") if use_color else ""
    DIM = ansi("2") if use_color else ""

    width = _term_width(stream)
    delim = "─" * width
    stream.write(delim + "\n")
    stream.write(BOLD + CYAN + strip_rich_markup(str(title)) + RESET + "\n")
    keys = [str(k) for (k, _v) in rows if k is not None]
    label_w = min(16, max(6, max((len(k) for k in keys), default=0)))
    for k, v in rows:
        if k is None:
            stream.write("\n")
            continue
        k = strip_rich_markup(str(k))
        v = "" if v is None else strip_rich_markup(str(v))
        lk = k.lower()
        style = ""
        if "error" in lk or "cancel" in lk:
            style = RED
        elif "warning" in lk or "note" in lk:
            style = YELLOW
        elif "variant" in lk:
            style = DIM
        lines = v.splitlines() or [""]
        stream.write(f"{k:<{label_w}} {style}{lines[0]}{RESET if style else ''}\n")
        for ln in lines[1:]:
            stream.write(" " * (label_w + 1) + style + ln + (RESET if style else "") + "\n")
    stream.write(delim + "\n")


def render_panel(title, rows, *, kind: str = "info", panel_mode: str | None = None, stream=None) -> None:
    """
    Render a titled key/value panel using Rich or a fast ANSI fallback.

    rows is a list of (label, value); a None label inserts a spacer row.
    Rich is only used on a terminal; piped output gets the plain layout.
    """
    stream = stream or sys.stdout
    mode = str(panel_mode or PANEL_MODE).strip().lower()
    try:
        if mode == "line":
            parts = [f"{strip_rich_markup(str(k))}: {strip_rich_markup(str(v))}" for k, v in rows if k is not None and v]
            stream.write(strip_rich_markup(str(title)) + (" | " + " | ".join(parts) if parts else "") + "\n")
            return
        is_tty = hasattr(stream, "isatty") and stream.isatty()
        if mode == "fast" or not is_tty:
            _emit_fast_panel(title, rows, stream, use_color=is_tty and not os.environ.get("NO_COLOR"))
            return

        from rich.console import Console
        from rich.panel import Panel
        from rich.table import Table
        from rich.text import Text

        border = {"error": "red", "warning": "yellow", "ok": "green"}.get(kind, "blue")
        console = Console(file=stream, force_terminal=True)
        t = Table.grid(padding=(0, 1), expand=False)
        t.add_column(style="bold cyan", no_wrap=True, justify="right")
        t.add_column(style="white")
        for k, v in rows:
            if k is None:
                t.add_row("", v or "")
                continue
            label_text = Text(str(k))
            lk = str(k).lower()
            if "warning" in lk:
                label_text.stylize("bold yellow")
            elif "error" in lk or "cancel" in lk:
                label_text.stylize("bold red")
            elif "note" in lk:
                label_text.stylize("italic cyan")
            t.add_row(label_text, "" if v is None else str(v))
        console.print(
            Panel(
                t,
                title=Text(str(title), style="bold cyan"),
                border_style=border,
                expand=False,
                padding=(0, 1),
            )
        )
    except Exception as e:
        stream.write(f"[{strip_rich_markup(str(title))}]\n")
        for k, v in rows or []:
            if k is None:
                continue
            stream.write(f"  {strip_rich_markup(str(k))}: {strip_rich_markup(str(v))}\n")
        if _diag_on():
            sys.stderr.write(f"[happenings] panel error: {e}\n")


# ==============================================================================
# SECTION: Calendar primitives
# ==============================================================================
try:
    from zoneinfo import ZoneInfo
except Exception:
    ZoneInfo = None


def _resolve_tz(name: str):
    if ZoneInfo is None:
        return timezone.utc
    for cand in (name, _DEFAULTS["tz"]):
        try:
            return ZoneInfo(cand)
        except Exception:
            diag(f"timezone '{cand}' unavailable")
    return timezone.utc


_LOCAL_TZ = _resolve_tz(LOCAL_TZ_NAME)

# Local wall-clock hour every civil date is pinned to before instant math.
ANCHOR_HOUR = 12

_DATE_KEY_RE = re.compile(r"([0-9]{4})-([0-9]{2})-([0-9]{2})")

_WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_WEEKDAY_INDEX = {name: i for i, name in enumerate(_WEEKDAY_NAMES)}
_WEEKDAYS = {
    "mon": 0, "monday": 0,
    "tue": 1, "tues": 1, "tuesday": 1,
    "wed": 2, "weds": 2, "wednesday": 2,
    "thu": 3, "thur": 3, "thurs": 3, "thursday": 3,
    "fri": 4, "friday": 4,
    "sat": 5, "saturday": 5,
    "sun": 6, "sunday": 6,
}
_WD_ABBR = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTH_FULL = (
    "", "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)
_MONTH_ABBR = ("", "Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class ParseError(Exception):
    pass


class InvalidDateKey(ParseError, ValueError):
    """A string that is not a calendar-valid YYYY-MM-DD date-key."""

    def __init__(self, value, reason: str = "malformed"):
        self.value = value
        self.reason = reason
        super().__init__(f"invalid date-key {value!r}: {reason}")


def now_utc() -> datetime:
    """Get current UTC time without microseconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def _ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_local(dt_utc: datetime) -> datetime:
    """Convert a UTC (or naive-as-UTC) datetime to the civil timezone."""
    return _ensure_utc(dt_utc).astimezone(_LOCAL_TZ)


def parse_date_key(s) -> date:
    """Parse a YYYY-MM-DD date-key; raise InvalidDateKey on anything else."""
    if not isinstance(s, str):
        raise InvalidDateKey(s, "not a string")
    m = _DATE_KEY_RE.fullmatch(s)
    if not m:
        raise InvalidDateKey(s, "expected YYYY-MM-DD")
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError as e:
        raise InvalidDateKey(s, str(e)) from None


def is_valid_date_key(s) -> bool:
    try:
        parse_date_key(s)
    except InvalidDateKey:
        return False
    return True


def _coerce_date(v) -> date:
    if isinstance(v, datetime):
        return to_local(v).date() if v.tzinfo is not None else v.date()
    if isinstance(v, date):
        return v
    return parse_date_key(v)


def date_key(d) -> str:
    d = _coerce_date(d)
    return f"{d.year:04d}-{d.month:02d}-{d.day:02d}"


def noon_local(d) -> datetime:
    """The instant at local noon of civil date d; all day arithmetic starts here."""
    d = _coerce_date(d)
    return datetime(d.year, d.month, d.day, ANCHOR_HOUR, 0, tzinfo=_LOCAL_TZ)


def today(now: datetime | None = None, tz=None) -> date:
    """Civil date for `now` (defaults to the live clock) in the fixed timezone, or `tz` if given."""
    instant = now if now is not None else now_utc()
    if tz is None:
        return to_local(instant).date()
    zone = _resolve_tz(tz) if isinstance(tz, str) else tz
    return _ensure_utc(instant).astimezone(zone).date()


def add_days(d, n: int) -> date:
    instant = noon_local(d).astimezone(timezone.utc) + timedelta(days=int(n))
    return instant.astimezone(_LOCAL_TZ).date()


def _try_add_days(d, n: int) -> date | None:
    """add_days, or None when the result falls outside date.min..date.max."""
    try:
        return add_days(d, n)
    except OverflowError:
        return None


def _clamped_add_days(d, n: int) -> date:
    out = _try_add_days(d, n)
    if out is None:
        return date.max if n > 0 else date.min
    return out


def days_between(a, b) -> int:
    """Signed civil-day difference b - a."""
    return (_coerce_date(b) - _coerce_date(a)).days


def weekday_of(d) -> str:
    return _WEEKDAY_NAMES[noon_local(d).weekday()]


def parse_weekday(label) -> str | None:
    """Canonical weekday name for a full name or abbreviation in any case."""
    s = str(label or "").strip().lower().rstrip(".")
    if not s:
        return None
    idx = _WEEKDAYS.get(s)
    if idx is None and s.endswith("s"):
        idx = _WEEKDAYS.get(s[:-1])  # "Saturdays"
    return _WEEKDAY_NAMES[idx] if idx is not None else None


def _weeks_between(d1: date, d2: date) -> int:
    """Return number of Monday-start weeks between two dates (d2 - d1)."""
    mon1 = d1 - timedelta(days=d1.weekday())
    mon2 = d2 - timedelta(days=d2.weekday())
    return (mon2 - mon1).days // 7


def _ordinal(n: int) -> str:
    n = int(n)
    if 10 <= n % 100 <= 20:
        suf = "th"
    else:
        suf = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suf}"


# ==============================================================================
# SECTION: Recurrence model
# ==============================================================================
LAST = "last"
_VALID_ORDINALS = frozenset({1, 2, 3, 4, 5, LAST})


def _ordinal_sort_key(o) -> tuple:
    return (1, 0) if o == LAST else (0, int(o))


@dataclass(frozen=True)
class RecurrenceDescriptor:
    """Raw "when does this happen" fields as stored on an event row."""

    anchor_date: date | str | None = None
    weekday: str | None = None
    rule: str = ""
    custom_dates: tuple | None = None

    def __post_init__(self):
        if self.custom_dates is not None and not isinstance(self.custom_dates, tuple):
            object.__setattr__(self, "custom_dates", tuple(self.custom_dates))
        if self.rule is None:
            object.__setattr__(self, "rule", "")

    @classmethod
    def from_row(cls, row: dict) -> "RecurrenceDescriptor":
        row = row or {}
        custom = row.get("custom_dates")
        if isinstance(custom, str):
            custom = [p for p in re.split(r"[,\s]+", custom) if p]
        return cls(
            anchor_date=row.get("event_date") or row.get("anchor_date") or None,
            weekday=row.get("day_of_week") or row.get("weekday") or None,
            rule=row.get("recurrence_rule") or row.get("rule") or "",
            custom_dates=custom or None,
        )


@dataclass(frozen=True)
class OneTime:
    day: date
    kind = "one_time"
    is_confident = True

    def __post_init__(self):
        object.__setattr__(self, "day", _coerce_date(self.day))


@dataclass(frozen=True)
class Weekly:
    weekday: str
    kind = "weekly"
    is_confident = True


@dataclass(frozen=True)
class MonthlyOrdinal:
    weekday: str
    ordinals: frozenset
    kind = "monthly_ordinal"
    is_confident = True

    def __post_init__(self):
        ords = frozenset(LAST if str(o).lower() == LAST else int(o) for o in self.ordinals)
        bad = ords - _VALID_ORDINALS
        if not ords or bad:
            raise ValueError(f"unsupported ordinals: {sorted(map(str, bad)) or 'empty'}")
        object.__setattr__(self, "ordinals", ords)

    @property
    def sorted_ordinals(self) -> list:
        return sorted(self.ordinals, key=_ordinal_sort_key)


@dataclass(frozen=True)
class Biweekly:
    weekday: str
    anchor_date: date
    kind = "biweekly"
    is_confident = True

    def __post_init__(self):
        object.__setattr__(self, "anchor_date", _coerce_date(self.anchor_date))


@dataclass(frozen=True)
class CustomDates:
    dates: tuple
    kind = "custom_dates"
    is_confident = True

    def __post_init__(self):
        object.__setattr__(self, "dates", tuple(sorted({_coerce_date(d) for d in self.dates})))


@dataclass(frozen=True)
class Opaque:
    label_hint: str = ""
    kind = "opaque"
    is_confident = False


@dataclass(frozen=True)
class Unknown:
    kind = "unknown"
    is_confident = False


UNKNOWN = Unknown()
RECURRENCE_TYPES = (OneTime, Weekly, MonthlyOrdinal, Biweekly, CustomDates, Opaque, Unknown)


def is_ambiguous(recurrence) -> bool:
    """True for the variants interpretation could not pin to concrete dates."""
    return isinstance(recurrence, (Opaque, Unknown))


@dataclass(frozen=True)
class Occurrence:
    date_key: str
    is_confident: bool = True


@dataclass(frozen=True)
class NextOccurrence:
    """is_today/is_tomorrow compare date_key with the reference date the caller passed."""

    date_key: str | None = None
    is_confident: bool = False
    is_today: bool = False
    is_tomorrow: bool = False

    @property
    def found(self) -> bool:
        return self.date_key is not None


NO_OCCURRENCE = NextOccurrence()


@dataclass(frozen=True)
class Window:
    """Inclusive [start, end] civil-date window."""

    start: date
    end: date

    def __post_init__(self):
        object.__setattr__(self, "start", _coerce_date(self.start))
        object.__setattr__(self, "end", _coerce_date(self.end))

    @classmethod
    def from_today(cls, reference=None, days: int | None = None) -> "Window":
        ref = _coerce_date(reference) if reference is not None else today()
        return cls(ref, _clamped_add_days(ref, WINDOW_DAYS if days is None else int(days)))

    @classmethod
    def around(cls, center, before: int = 0, after: int = 0) -> "Window":
        return cls(_clamped_add_days(center, -int(before)), _clamped_add_days(center, int(after)))

    @property
    def is_empty(self) -> bool:
        return self.start > self.end

    def contains(self, d) -> bool:
        d = _coerce_date(d)
        return self.start <= d <= self.end

    def keys(self) -> tuple[str, str]:
        return date_key(self.start), date_key(self.end)


def _coerce_window(window) -> Window:
    if isinstance(window, Window):
        return window
    if isinstance(window, dict):
        start = window.get("start", window.get("start_key"))
        end = window.get("end", window.get("end_key"))
        return Window(start, end)
    start, end = window
    return Window(start, end)


# ==============================================================================
# SECTION: Recurrence interpreter
# ==============================================================================
_BLANK_RULES = frozenset({"", "none"})
_WEEKLY_RULES = frozenset({"weekly", "every week"})
_BIWEEKLY_RULES = frozenset({"biweekly", "bi-weekly", "every other week", "every-other-week", "fortnightly"})
_ORDINAL_WORDS = {
    "1st": 1, "first": 1,
    "2nd": 2, "second": 2,
    "3rd": 3, "third": 3,
    "4th": 4, "fourth": 4,
    "5th": 5, "fifth": 5,
    "last": LAST,
}
_ORDINAL_SPLIT_RE = re.compile(r"\s*(?:/|&|,|\band\b)\s*")
_RRULE_HINT_RE = re.compile(r"(?:^|[;:\s])FREQ\s*=", re.IGNORECASE)
_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")
_BYDAY_WEEKDAY = {"MO": "Monday", "TU": "Tuesday", "WE": "Wednesday", "TH": "Thursday",
                  "FR": "Friday", "SA": "Saturday", "SU": "Sunday"}
_RD_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)


def parse_ordinals_from_rule(rule) -> frozenset | None:
    """Ordinal set for "2nd", "1st/3rd", "2nd & 4th", "1st and last"; None otherwise."""
    s = " ".join(str(rule or "").lower().split())
    if not s:
        return None
    parts = [p for p in _ORDINAL_SPLIT_RE.split(s) if p]
    if not parts:
        return None
    out = set()
    for p in parts:
        if p not in _ORDINAL_WORDS:
            return None
        out.add(_ORDINAL_WORDS[p])
    return frozenset(out)


def build_rule_from_ordinals(ordinals) -> str:
    """Canonical rule string for an ordinal set: "1st/3rd", "2nd/last"."""
    ords = sorted({LAST if str(o).lower() == LAST else int(o) for o in (ordinals or ())}, key=_ordinal_sort_key)
    for o in ords:
        if o not in _VALID_ORDINALS:
            raise ValueError(f"unsupported ordinal: {o}")
    return "/".join(LAST if o == LAST else _ordinal(o) for o in ords)


def parse_rrule(rule) -> dict | None:
    """
    Parse the RRULE subset this engine reads. Returns None when there is no FREQ.

    Result keys: freq, interval, byday [(ordinal|None, weekday)], bad_byday,
    bymonthday, count, until (raw strings for the last three).
    """
    s = str(rule or "").strip()
    if s.upper().startswith("RRULE:"):
        s = s[6:]
    out = {"freq": None, "interval": 1, "byday": [], "bad_byday": [],
           "bymonthday": None, "count": None, "until": None}
    for part in s.split(";"):
        if "=" not in part:
            continue
        key, _, value = part.partition("=")
        key = key.strip().upper()
        value = value.strip()
        if key == "FREQ":
            out["freq"] = value.upper()
        elif key == "INTERVAL":
            try:
                out["interval"] = max(1, int(value))
            except ValueError:
                out["bad_byday"].append(f"INTERVAL={value}")
        elif key == "BYDAY":
            for tok in value.upper().split(","):
                tok = tok.strip()
                if not tok:
                    continue
                m = _BYDAY_RE.match(tok)
                if not m:
                    out["bad_byday"].append(tok)
                    continue
                n = int(m.group(1)) if m.group(1) else None
                out["byday"].append((n, _BYDAY_WEEKDAY[m.group(2)]))
        elif key == "BYMONTHDAY":
            out["bymonthday"] = value
        elif key == "COUNT":
            out["count"] = value
        elif key == "UNTIL":
            out["until"] = value
    return out if out["freq"] else None


def _interpret_rrule(raw_rule: str, weekday: str | None, anchor: date | None, notes: list[str]):
    parsed = parse_rrule(raw_rule)
    if parsed is None:
        notes.append(f"rule {raw_rule!r} looks like an RRULE but has no FREQ")
        return Opaque(raw_rule)
    for tok in parsed["bad_byday"]:
        notes.append(f"RRULE token {tok!r} not understood; dropped")
    if parsed["count"] or parsed["until"]:
        notes.append("RRULE COUNT/UNTIL are not applied")
    freq = parsed["freq"]

    if freq == "MONTHLY":
        pairs = []
        for n, wd in parsed["byday"]:
            if n is None:
                notes.append(f"BYDAY {wd} without an ordinal dropped")
            elif 1 <= n <= 5:
                pairs.append((n, wd))
            elif n == -1:
                pairs.append((LAST, wd))
            else:
                notes.append(f"BYDAY ordinal {n} for {wd} unsupported; dropped")
        if not pairs:
            notes.append(f"monthly RRULE {raw_rule!r} has no usable ordinal weekday")
            return Opaque(raw_rule)
        first_wd = pairs[0][1]
        dropped = sorted({wd for _n, wd in pairs if wd != first_wd}, key=_WEEKDAY_INDEX.get)
        if dropped:
            notes.append(
                f"multi-weekday monthly pattern kept {first_wd} only; dropped {', '.join(dropped)}"
            )
        if weekday and weekday != first_wd:
            notes.append(f"BYDAY weekday {first_wd} differs from weekday field {weekday}; using BYDAY")
        return MonthlyOrdinal(first_wd, frozenset(n for n, wd in pairs if wd == first_wd))

    if freq == "WEEKLY":
        days = [wd for _n, wd in parsed["byday"]] or ([weekday] if weekday else [])
        if not days:
            notes.append("weekly RRULE without BYDAY or weekday")
            return UNKNOWN
        if len(set(days)) > 1:
            notes.append(f"multi-weekday weekly pattern kept {days[0]} only")
        interval = parsed["interval"]
        if interval == 1:
            return Weekly(days[0])
        if interval == 2:
            if anchor is None:
                notes.append("every-other-week RRULE needs an anchor date")
                return UNKNOWN
            return Biweekly(days[0], anchor)
        notes.append(f"weekly INTERVAL={interval} unsupported")
        return Opaque(raw_rule)

    notes.append(f"RRULE FREQ={freq} unsupported")
    return Opaque(raw_rule)


def _soft_date(v, what: str, notes: list[str]) -> date | None:
    if v is None or v == "":
        return None
    try:
        return _coerce_date(v)
    except InvalidDateKey as e:
        notes.append(f"{what} ignored: {e}")
        return None


def interpret_with_notes(descriptor) -> tuple:
    """
    Resolve a descriptor to exactly one canonical recurrence variant.

    Returns (recurrence, notes). Notes describe anything that was dropped,
    collapsed or contradictory; interpretation itself never raises for
    malformed strings.
    """
    if isinstance(descriptor, dict):
        descriptor = RecurrenceDescriptor.from_row(descriptor)
    notes: list[str] = []

    anchor = _soft_date(descriptor.anchor_date, "anchor_date", notes)
    weekday = None
    if descriptor.weekday:
        weekday = parse_weekday(descriptor.weekday)
        if weekday is None:
            notes.append(f"weekday {descriptor.weekday!r} not recognized; ignored")
    raw_rule = " ".join(str(descriptor.rule or "").split())
    rule = raw_rule.lower()

    if descriptor.custom_dates:
        dates = [d for d in (_soft_date(v, "custom date", notes) for v in descriptor.custom_dates) if d]
        if dates:
            return CustomDates(tuple(dates)), notes
        notes.append("custom_dates present but none usable")

    blank = rule in _BLANK_RULES
    if blank and anchor is not None:
        return OneTime(anchor), notes

    if anchor is not None and weekday is not None and weekday_of(anchor) != weekday:
        notes.append(
            f"anchor_date {date_key(anchor)} is a {weekday_of(anchor)}, weekday says {weekday}; trusting weekday"
        )

    ordinals = parse_ordinals_from_rule(rule)
    if ordinals:
        if weekday is None:
            notes.append(f"ordinal rule {raw_rule!r} needs a weekday")
            return UNKNOWN, notes
        return MonthlyOrdinal(weekday, ordinals), notes

    if _RRULE_HINT_RE.search(raw_rule):
        return _interpret_rrule(raw_rule, weekday, anchor, notes), notes

    if rule in _WEEKLY_RULES or blank:
        if weekday is not None:
            return Weekly(weekday), notes
        if not blank:
            notes.append("weekly rule needs a weekday")
            return UNKNOWN, notes

    if rule in _BIWEEKLY_RULES:
        if weekday is None or anchor is None:
            notes.append("biweekly rule needs both a weekday and an anchor date")
            return UNKNOWN, notes
        return Biweekly(weekday, anchor), notes

    if rule == "custom":
        notes.append("custom rule without any dates")
        return UNKNOWN, notes
    if rule:
        return Opaque(raw_rule), notes
    return UNKNOWN, notes


def interpret(descriptor):
    rec, notes = interpret_with_notes(descriptor)
    for note in notes:
        diag(f"interpret: {note}")
    return rec


def _coerce_recurrence(recurrence):
    if isinstance(recurrence, RECURRENCE_TYPES):
        return recurrence
    if isinstance(recurrence, (RecurrenceDescriptor, dict)):
        return interpret(recurrence)
    raise TypeError(f"not a recurrence: {type(recurrence).__name__}")


# --- Write-path canonicalization helpers ---
def is_ordinal_monthly_rule(rule) -> bool:
    s = " ".join(str(rule or "").lower().split())
    if not s:
        return False
    if parse_ordinals_from_rule(s):
        return True
    parsed = parse_rrule(s) if _RRULE_HINT_RE.search(s) else None
    return bool(parsed and parsed["freq"] == "MONTHLY" and any(n is not None for n, _wd in parsed["byday"]))


def derive_weekday_from_date(d) -> str:
    return weekday_of(d)


def canonicalize_weekday(rule, weekday, anchor_date=None) -> str | None:
    """Weekday to store for a series.

    A recognizable weekday is normalized to its full name. When it is missing
    on an ordinal-monthly or weekly series, it is derived from anchor_date.
    Interpretation never does this derivation on its own.
    """
    wd = parse_weekday(weekday)
    if wd:
        return wd
    rl = " ".join(str(rule or "").lower().split())
    if not (is_ordinal_monthly_rule(rl) or rl in _WEEKLY_RULES or rl in _BIWEEKLY_RULES):
        return None
    if not anchor_date:
        return None
    try:
        return weekday_of(anchor_date)
    except InvalidDateKey:
        return None


def check_day_consistency(descriptor) -> str | None:
    """Describe an anchor-date/weekday mismatch, or None when consistent."""
    if isinstance(descriptor, dict):
        descriptor = RecurrenceDescriptor.from_row(descriptor)
    wd = parse_weekday(descriptor.weekday)
    if not wd or not descriptor.anchor_date:
        return None
    try:
        actual = weekday_of(descriptor.anchor_date)
    except InvalidDateKey:
        return None
    if actual == wd:
        return None
    return f"{date_key(descriptor.anchor_date)} is a {actual}, not a {wd}"


# ==============================================================================
# SECTION: Occurrence generator & next-occurrence resolver
# ==============================================================================
def _weekly_days(weekday: str, win: Window):
    offset = (_WEEKDAY_INDEX[weekday] - _WEEKDAY_INDEX[weekday_of(win.start)]) % 7
    d = _try_add_days(win.start, offset)
    while d is not None and d <= win.end:
        yield d
        d = _try_add_days(d, 7)


def _biweekly_days(weekday: str, anchor: date, win: Window):
    for d in _weekly_days(weekday, win):
        if _weeks_between(anchor, d) % 2 == 0:
            yield d


def nth_weekday_of_month(year: int, month: int, weekday: str, ordinal) -> date | None:
    """The nth (or last) weekday of a month; None when the month has no such day."""
    rd_wd = _RD_WEEKDAYS[_WEEKDAY_INDEX[weekday]]
    first = date(year, month, 1)
    try:
        if ordinal == LAST:
            hit = first + relativedelta(day=31, weekday=rd_wd(-1))
        else:
            hit = first + relativedelta(weekday=rd_wd(+int(ordinal)))
    except OverflowError:
        return None  # past December 9999
    # a 5th weekday that does not exist lands in the next month
    if (hit.year, hit.month) != (year, month):
        return None
    return hit


def _monthly_days(weekday: str, ordinals, win: Window):
    cursor = date(win.start.year, win.start.month, 1)
    stop = date(win.end.year, win.end.month, 1)
    while cursor <= stop:
        hits = set()
        for o in ordinals:
            hit = nth_weekday_of_month(cursor.year, cursor.month, weekday, o)
            if hit is not None and win.start <= hit <= win.end:
                hits.add(hit)
        yield from sorted(hits)
        if cursor == stop:
            break
        cursor += relativedelta(months=1)


def _variant_days(rec, win: Window):
    if isinstance(rec, OneTime):
        return [rec.day] if win.start <= rec.day <= win.end else []
    if isinstance(rec, Weekly):
        return _weekly_days(rec.weekday, win)
    if isinstance(rec, Biweekly):
        return _biweekly_days(rec.weekday, rec.anchor_date, win)
    if isinstance(rec, MonthlyOrdinal):
        return _monthly_days(rec.weekday, rec.ordinals, win)
    if isinstance(rec, CustomDates):
        return [d for d in rec.dates if win.start <= d <= win.end]
    return []


def expand_occurrences(recurrence, window, cap: int | None = None) -> tuple:
    """
    Expand a recurrence into occurrences inside an inclusive window.

    Returns (occurrences, meta). meta["capped"] is set when output was
    truncated at `cap`; Opaque/Unknown report meta["confident"] = False and
    never produce dates.
    """
    rec = _coerce_recurrence(recurrence)
    win = _coerce_window(window)
    limit = MAX_OCCURRENCES if cap is None else max(0, int(cap))
    meta = {
        "variant": rec.kind,
        "confident": rec.is_confident,
        "capped": False,
        "cap": limit,
        "window": win.keys(),
    }
    if win.is_empty:
        meta["basis"] = "empty-window"
        return [], meta

    out: list[Occurrence] = []
    seen: set[str] = set()
    for d in _variant_days(rec, win):
        k = date_key(d)
        if k in seen:
            continue
        if len(out) >= limit:
            meta["capped"] = True
            break
        seen.add(k)
        out.append(Occurrence(k, True))
    out.sort(key=lambda o: o.date_key)

    if meta["capped"]:
        diag(f"generate: {rec.kind} truncated at {limit} in {meta['window'][0]}..{meta['window'][1]}")
    return out, meta


def generate(recurrence, window, cap: int | None = None) -> list[Occurrence]:
    return expand_occurrences(recurrence, window, cap)[0]


def next_occurrence(recurrence, reference=None) -> NextOccurrence:
    """Soonest occurrence on/after reference within the lookahead horizon."""
    ref = _coerce_date(reference) if reference is not None else today()
    occs = generate(recurrence, Window(ref, _clamped_add_days(ref, LOOKAHEAD_DAYS)), cap=1)
    if not occs:
        return NO_OCCURRENCE
    k = occs[0].date_key
    tomorrow = _try_add_days(ref, 1)
    return NextOccurrence(
        date_key=k,
        is_confident=occs[0].is_confident,
        is_today=k == date_key(ref),
        is_tomorrow=tomorrow is not None and k == date_key(tomorrow),
    )


def placeholder_occurrence(reference=None) -> Occurrence:
    """The reference date as a clearly not-confident stand-in."""
    ref = _coerce_date(reference) if reference is not None else today()
    return Occurrence(date_key(ref), is_confident=False)


def display_occurrence(recurrence, reference=None) -> NextOccurrence:
    """
    Next occurrence, or the reference date flagged not-confident when there is none.

    A placeholder is not an occurrence, so is_today/is_tomorrow stay False on it.
    """
    nxt = next_occurrence(recurrence, reference)
    if nxt.found:
        return nxt
    ph = placeholder_occurrence(reference)
    return NextOccurrence(date_key=ph.date_key, is_confident=False)


# ==============================================================================
# SECTION: Override merge layer
# ==============================================================================
OVERRIDE_STATUS_NORMAL = "normal"
OVERRIDE_STATUS_CANCELLED = "cancelled"
VALID_OVERRIDE_STATUSES = (OVERRIDE_STATUS_NORMAL, OVERRIDE_STATUS_CANCELLED)

# Per-occurrence fields an override_patch may set.
ALLOWED_OVERRIDE_FIELDS = frozenset({
    "title", "description", "start_time", "end_time",
    "venue_id", "location_mode", "custom_location_name", "custom_address",
    "custom_city", "custom_state", "online_url", "location_notes",
    "capacity", "has_timeslots", "total_slots", "slot_duration_minutes",
    "is_free", "cost_label", "signup_url", "signup_deadline",
    "age_policy", "external_url", "categories", "cover_image_url",
    "host_notes", "is_published",
})
# Series-level fields; changing them is a series edit, never a per-date one.
BLOCKED_OVERRIDE_FIELDS = frozenset({
    "event_type", "recurrence_rule", "day_of_week", "custom_dates",
    "max_occurrences", "series_mode", "is_dsc_event",
})
_LEGACY_OVERRIDE_COLUMNS = (
    ("override_start_time", "start_time"),
    ("override_cover_image_url", "cover_image_url"),
    ("override_notes", "host_notes"),
)


@dataclass(frozen=True)
class OccurrenceOverride:
    date_key: str
    status: str = OVERRIDE_STATUS_NORMAL
    override_start_time: str | None = None
    override_notes: str | None = None
    override_cover_image_url: str | None = None
    event_id: str | None = None
    override_patch: dict | None = field(default=None, compare=False)

    @property
    def is_cancelled(self) -> bool:
        return str(self.status or "").strip().lower() == OVERRIDE_STATUS_CANCELLED

    @classmethod
    def from_row(cls, row: dict) -> "OccurrenceOverride":
        patch = row.get("override_patch")
        return cls(
            date_key=row.get("date_key"),
            status=str(row.get("status") or OVERRIDE_STATUS_NORMAL).strip().lower(),
            override_start_time=row.get("override_start_time") or None,
            override_notes=row.get("override_notes") or None,
            override_cover_image_url=row.get("override_cover_image_url") or None,
            event_id=row.get("event_id") or None,
            override_patch=patch if isinstance(patch, dict) else None,
        )


@dataclass(frozen=True)
class BaseFields:
    start_time: str | None = None
    notes: str | None = None
    cover_image_url: str | None = None

    @classmethod
    def from_event(cls, event: dict) -> "BaseFields":
        event = event or {}
        return cls(
            start_time=event.get("start_time") or None,
            notes=event.get("host_notes") or event.get("notes") or None,
            cover_image_url=event.get("cover_image_url") or None,
        )


@dataclass(frozen=True)
class EffectiveOccurrence:
    date_key: str
    is_confident: bool
    is_cancelled: bool
    display_start_time: str | None
    notes: str | None = None
    cover_image_url: str | None = None
    has_override: bool = False


def override_key(event_id, key: str) -> str:
    """Composite (event, date) key used to index overrides across events."""
    return f"{event_id}:{key}"


def _as_override(ov) -> OccurrenceOverride:
    return ov if isinstance(ov, OccurrenceOverride) else OccurrenceOverride.from_row(ov)


def build_override_map(overrides, event_id=None) -> dict:
    """Index overrides by date-key; with event_id, keep only that event's rows."""
    out: dict[str, OccurrenceOverride] = {}
    if isinstance(overrides, dict):
        overrides = overrides.values()
    for raw in overrides or ():
        ov = _as_override(raw)
        if event_id is not None and ov.event_id is not None and str(ov.event_id) != str(event_id):
            continue
        if not ov.date_key:
            continue
        out[ov.date_key] = ov
    return out


def _patched(ov: OccurrenceOverride, column: str, patch_key: str, base_value):
    patch = ov.override_patch or {}
    if patch_key in patch:
        return patch[patch_key]
    v = getattr(ov, column)
    return base_value if v in (None, "") else v


def merge_overrides(occurrences, overrides, base_fields=None) -> list[EffectiveOccurrence]:
    """
    Layer per-date overrides onto generated occurrences.

    Output has exactly one row per input occurrence, in input order. A
    cancelled override marks the row, it never removes it; dates that have
    an override but no occurrence are ignored.
    """
    if isinstance(overrides, dict) and all(isinstance(v, OccurrenceOverride) for v in overrides.values()):
        omap = overrides
    else:
        omap = build_override_map(overrides)
    if base_fields is None:
        base = BaseFields()
    elif isinstance(base_fields, BaseFields):
        base = base_fields
    else:
        base = BaseFields.from_event(base_fields)

    out: list[EffectiveOccurrence] = []
    for occ in occurrences:
        if isinstance(occ, str):
            occ = Occurrence(occ, True)
        ov = omap.get(occ.date_key)
        if ov is None:
            out.append(EffectiveOccurrence(
                date_key=occ.date_key,
                is_confident=occ.is_confident,
                is_cancelled=False,
                display_start_time=base.start_time,
                notes=base.notes,
                cover_image_url=base.cover_image_url,
            ))
            continue
        out.append(EffectiveOccurrence(
            date_key=occ.date_key,
            is_confident=occ.is_confident,
            is_cancelled=ov.is_cancelled,
            display_start_time=_patched(ov, "override_start_time", "start_time", base.start_time),
            notes=_patched(ov, "override_notes", "host_notes", base.notes),
            cover_image_url=_patched(ov, "override_cover_image_url", "cover_image_url", base.cover_image_url),
            has_override=True,
        ))
    return out


def apply_occurrence_override(event: dict, override) -> dict:
    """
    Return a copy of `event` as it looks on one overridden date.

    Legacy override_* columns apply first (None means "not overridden"),
    then allow-listed override_patch keys, which win and may set None.
    The input event is never modified.
    """
    out = copy.deepcopy(event or {})
    if override is None:
        return out
    row = override if isinstance(override, dict) else {
        "override_start_time": override.override_start_time,
        "override_cover_image_url": override.override_cover_image_url,
        "override_notes": override.override_notes,
        "override_patch": override.override_patch,
    }
    for column, target in _LEGACY_OVERRIDE_COLUMNS:
        v = row.get(column)
        if v is not None:
            out[target] = v
    patch = row.get("override_patch")
    if isinstance(patch, dict):
        for k, v in patch.items():
            if k in ALLOWED_OVERRIDE_FIELDS:
                out[k] = copy.deepcopy(v)
            elif k in BLOCKED_OVERRIDE_FIELDS:
                diag(f"override_patch: series field {k!r} ignored")
    return out


def effective_occurrence_for(recurrence, key: str, overrides=None, base_fields=None) -> EffectiveOccurrence | None:
    """
    Resolve one selected date (e.g. ?date=YYYY-MM-DD on a detail page).

    Raises InvalidDateKey for a malformed key; returns None when the date is
    not an occurrence of the recurrence.
    """
    d = parse_date_key(key)
    occs = generate(recurrence, Window(d, d), cap=1)
    if not occs:
        return None
    return merge_overrides(occs, overrides or {}, base_fields)[0]


# ==============================================================================
# SECTION: Recurrence humanizer & display formats
# ==============================================================================
SEASONAL_LABEL = "Seasonal — check venue"
UNKNOWN_LABEL = "Schedule unknown"


def _ordinal_label(o) -> str:
    return "Last" if o == LAST else _ordinal(o)


def humanize(recurrence) -> str:
    """Short, stable label for a canonical recurrence."""
    rec = recurrence
    if isinstance(rec, OneTime):
        return "One-time"
    if isinstance(rec, Weekly):
        return f"Every {rec.weekday}"
    if isinstance(rec, Biweekly):
        return f"Every other {rec.weekday}"
    if isinstance(rec, MonthlyOrdinal):
        ords = rec.sorted_ordinals
        if len(ords) == 1:
            return f"{_ordinal_label(ords[0])} {rec.weekday} of the month"
        return " & ".join(_ordinal_label(o) for o in ords) + f" {rec.weekday}"
    if isinstance(rec, CustomDates):
        return "Custom schedule"
    if isinstance(rec, Opaque) and rec.label_hint.strip().lower() == "seasonal":
        return SEASONAL_LABEL
    return UNKNOWN_LABEL


def describe_descriptor(descriptor) -> str:
    return humanize(interpret(descriptor))


def format_date_key_long(key: str) -> str:
    """'2026-01-24' -> 'Saturday, January 24, 2026'."""
    d = parse_date_key(key)
    return f"{weekday_of(d)}, {_MONTH_FULL[d.month]} {d.day}, {d.year}"


def format_date_key_short(key: str) -> str:
    """'2026-01-24' -> 'Sat, Jan 24'."""
    d = parse_date_key(key)
    return f"{_WD_ABBR[_WEEKDAY_INDEX[weekday_of(d)]]}, {_MONTH_ABBR[d.month]} {d.day}"


def format_date_key_for_email(key: str) -> str:
    d = parse_date_key(key)
    return f"{d.month:02d}-{d.day:02d}-{d.year:04d}"


def format_date_group_header(key: str, today_key: str) -> str:
    if key == today_key:
        return "Today"
    tomorrow = _try_add_days(today_key, 1)
    if tomorrow is not None and key == date_key(tomorrow):
        return "Tomorrow"
    return format_date_key_short(key)


_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{1,2}))?(?::\d{1,2}(?:\.\d+)?)?$")


def _parse_time(value) -> tuple[int, int] | None:
    s = str(value or "").strip()
    if "T" in s:
        s = s.split("T", 1)[1]
    s = re.split(r"[Z+]", s, maxsplit=1)[0]
    m = _TIME_RE.match(s)
    if not m:
        return None
    hh, mm = int(m.group(1)), int(m.group(2) or 0)
    if hh > 23 or mm > 59:
        return None
    return hh, mm


def format_time_ampm(value) -> str:
    """'19:30' -> '7:30 PM', '19:00:00' -> '7 PM'; 'NA' when unreadable."""
    t = _parse_time(value)
    if t is None:
        return "NA"
    hh, mm = t
    suffix = "PM" if hh >= 12 else "AM"
    hour12 = (hh + 11) % 12 + 1
    return f"{hour12} {suffix}" if mm == 0 else f"{hour12}:{mm:02d} {suffix}"


def _start_sort_key(value) -> str:
    t = _parse_time(value)
    return "99:99" if t is None else f"{t[0]:02d}:{t[1]:02d}"


# ==============================================================================
# SECTION: Batch expansion for listings
# ==============================================================================
@dataclass(frozen=True)
class EventOccurrence:
    event_id: str
    date_key: str
    event: dict = field(compare=False)
    occurrence: EffectiveOccurrence = None


@dataclass
class ExpansionResult:
    groups: dict
    cancelled: list
    unknown_events: list
    metrics: dict


def expand_and_group(
    events,
    window,
    overrides=None,
    *,
    max_per_event: int | None = None,
    max_events: int | None = None,
    max_total: int | None = None,
) -> ExpansionResult:
    """
    Expand many event rows into a date-grouped listing.

    Each event row carries `id` plus its recurrence columns. Overrides are
    rows with event_id/date_key and are applied per date. Cancelled dates go
    to `cancelled`, not into `groups`; rows that interpret as Opaque/Unknown
    are listed in `unknown_events`.
    """
    per_event = MAX_PER_EVENT if max_per_event is None else int(max_per_event)
    ev_cap = MAX_EVENTS if max_events is None else int(max_events)
    total_cap = MAX_TOTAL_OCCURRENCES if max_total is None else int(max_total)
    win = _coerce_window(window)

    index: dict[str, OccurrenceOverride] = {}
    for raw in overrides or ():
        ov = _as_override(raw)
        if ov.event_id and ov.date_key:
            index[override_key(ov.event_id, ov.date_key)] = ov

    events = list(events or ())
    metrics = {
        "events_processed": 0,
        "events_skipped": max(0, len(events) - ev_cap),
        "total_occurrences": 0,
        "cancelled_count": 0,
        "was_capped": len(events) > ev_cap,
    }
    by_date: dict[str, list[EventOccurrence]] = {}
    cancelled: list[EventOccurrence] = []
    unknown_events: list[dict] = []

    for event in events[:ev_cap]:
        metrics["events_processed"] += 1
        event_id = str(event.get("id") or "")
        rec = interpret(event)
        if is_ambiguous(rec):
            unknown_events.append(event)
            continue
        occs, meta = expand_occurrences(rec, win, cap=per_event)
        if meta["capped"]:
            metrics["was_capped"] = True
        room = total_cap - metrics["total_occurrences"]
        if len(occs) > room:
            occs = occs[:max(0, room)]
            metrics["was_capped"] = True
        omap = {o.date_key: index[override_key(event_id, o.date_key)]
                for o in occs if override_key(event_id, o.date_key) in index}
        for eff in merge_overrides(occs, omap, BaseFields.from_event(event)):
            item = EventOccurrence(
                event_id=event_id,
                date_key=eff.date_key,
                event=apply_occurrence_override(event, omap.get(eff.date_key)),
                occurrence=eff,
            )
            metrics["total_occurrences"] += 1
            if eff.is_cancelled:
                metrics["cancelled_count"] += 1
                cancelled.append(item)
            else:
                by_date.setdefault(eff.date_key, []).append(item)
        if metrics["total_occurrences"] >= total_cap:
            skipped = len(events[:ev_cap]) - metrics["events_processed"]
            if skipped:
                metrics["events_skipped"] += skipped
                metrics["was_capped"] = True
            break

    groups = {}
    for k in sorted(by_date):
        groups[k] = sorted(
            by_date[k],
            key=lambda it: (
                _start_sort_key(it.occurrence.display_start_time),
                str(it.event.get("title") or ""),
                it.event_id,
            ),
        )
    cancelled.sort(key=lambda it: (it.date_key, it.event_id))
    if metrics["was_capped"]:
        diag({"msg": "expand_and_group capped", **metrics})
    return ExpansionResult(groups=groups, cancelled=cancelled, unknown_events=unknown_events, metrics=metrics)
