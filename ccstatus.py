#!/usr/bin/env python3
"""ccstatus — single-line Powerline status bar for Claude Code.

Reads the Claude Code status JSON on stdin and prints one ANSI line:

  user@host  path  git  model  remaining%  weekly/daily%  tokens  cost
  messages  context efficiency  compaction  [latency]  block timer  reset

Widgets whose metric is zero or unavailable are left out; the order of the
rest never changes.

Themes:       powerline (default), minimal, gruvbox — select with CCSTATUS_THEME
Config:       ~/.claude/ccstatus.toml (optional, CCSTATUS_CONFIG overrides path)
Data sources: ccusage CLI, ~/.claude/calculate-usage.sh, ~/.claude tracking files
Cache:        /tmp/ccstatus/
Debug:        CCSTATUS_DEBUG=1 logs degraded lookups to stderr
"""

import sys, json, os, re, subprocess, time, fcntl, shutil, socket, getpass, logging, math
from collections import namedtuple
from datetime import datetime, timezone, timedelta
from pathlib import Path
from types import MappingProxyType

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

VERSION = "1.0.0"

log = logging.getLogger("ccstatus")

# ═══════════════════════ LIMITS ═══════════════════════

CONTEXT_LIMIT = 200_000      # Context window
DAILY_LIMIT = 430_000        # Daily token estimate (Max 5x)
WEEKLY_LIMIT = 3_000_000     # Weekly token estimate (Max 5x)
MESSAGE_LIMIT = 225          # Messages per 5h window
RATE_WINDOW = timedelta(hours=5)
COMPACTION_RATIO = 0.9       # Compaction kicks in at 90% of the context window

# $/MTok (input, output)
PRICING = {
    "sonnet": (3.00, 15.00),
    "haiku":  (0.25, 1.25),
    "opus":   (15.00, 75.00),
}
MODEL_LABELS = ("sonnet", "opus", "haiku")

# ═══════════════════════ CONFIG ═══════════════════════

DEFAULTS = {
    "theme": "powerline",
    "path_max": 30,
    "show_latency": False,
    "tracking_dir": "~/.claude",
    "cache_dir": "/tmp/ccstatus",
    "timeout": 10,
    "ccusage_ttl": 60,
    "ccusage": True,
}
SECTIONS = {
    "display": ("theme", "path_max", "show_latency"),
    "providers": ("tracking_dir", "cache_dir", "timeout", "ccusage_ttl", "ccusage"),
}

def load_config(env=None):
    """Defaults, overlaid by the optional TOML file, overlaid by CCSTATUS_THEME."""
    env = os.environ if env is None else env
    cfg = dict(DEFAULTS)

    cfg_path = Path(env.get("CCSTATUS_CONFIG") or "~/.claude/ccstatus.toml").expanduser()
    raw = {}
    if cfg_path.exists():
        try:
            with open(cfg_path, "rb") as f:
                raw = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            log.debug("ignoring config %s: %s", cfg_path, e)

    for section, keys in SECTIONS.items():
        table = raw.get(section, {})
        if not isinstance(table, dict):
            continue
        for key in keys:
            # bool is an int subclass; keep flags and numbers apart
            if key in table and type(table[key]) is type(DEFAULTS[key]):
                cfg[key] = table[key]

    if env.get("CCSTATUS_THEME"):
        cfg["theme"] = env["CCSTATUS_THEME"]

    cfg["tracking_dir"] = Path(cfg["tracking_dir"]).expanduser()
    cfg["cache_dir"] = Path(cfg["cache_dir"]).expanduser()
    return cfg

def setup_logging(env=None):
    """Attach a stderr handler when CCSTATUS_DEBUG is set. Silent otherwise."""
    env = os.environ if env is None else env
    if not env.get("CCSTATUS_DEBUG") or log.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(name)s: %(levelname)s %(message)s"))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG)

# ═══════════════════════ ANSI ═══════════════════════

RESET = "\033[0m"

BLACK   = "\033[30m"
RED     = "\033[31m"
GREEN   = "\033[32m"
YELLOW  = "\033[33m"
BLUE    = "\033[34m"
MAGENTA = "\033[35m"
CYAN    = "\033[36m"
WHITE   = "\033[37m"

BRIGHT_BLACK   = "\033[90m"
BRIGHT_RED     = "\033[91m"
BRIGHT_GREEN   = "\033[92m"
BRIGHT_YELLOW  = "\033[93m"
BRIGHT_BLUE    = "\033[94m"
BRIGHT_MAGENTA = "\033[95m"
BRIGHT_CYAN    = "\033[96m"
BRIGHT_WHITE   = "\033[97m"

BG_BLACK   = "\033[40m"
BG_RED     = "\033[41m"
BG_GREEN   = "\033[42m"
BG_YELLOW  = "\033[43m"
BG_BLUE    = "\033[44m"
BG_MAGENTA = "\033[45m"
BG_CYAN    = "\033[46m"
BG_WHITE   = "\033[47m"

BG_BRIGHT_BLACK   = "\033[100m"
BG_BRIGHT_RED     = "\033[101m"
BG_BRIGHT_GREEN   = "\033[102m"
BG_BRIGHT_YELLOW  = "\033[103m"
BG_BRIGHT_BLUE    = "\033[104m"
BG_BRIGHT_MAGENTA = "\033[105m"
BG_BRIGHT_CYAN    = "\033[106m"
BG_BRIGHT_WHITE   = "\033[107m"

def true_color(r, g, b):
    return f"\033[38;2;{r};{g};{b}m"

def true_color_bg(r, g, b):
    return f"\033[48;2;{r};{g};{b}m"

# Background → foreground for separator arrows. Finite on purpose: anything
# outside the 16-colour palette (true colour included) gets plain white.
BG_TO_FG = MappingProxyType({
    BG_BLACK: BLACK, BG_RED: RED, BG_GREEN: GREEN, BG_YELLOW: YELLOW,
    BG_BLUE: BLUE, BG_MAGENTA: MAGENTA, BG_CYAN: CYAN, BG_WHITE: WHITE,
    BG_BRIGHT_BLACK: BRIGHT_BLACK, BG_BRIGHT_RED: BRIGHT_RED,
    BG_BRIGHT_GREEN: BRIGHT_GREEN, BG_BRIGHT_YELLOW: BRIGHT_YELLOW,
    BG_BRIGHT_BLUE: BRIGHT_BLUE, BG_BRIGHT_MAGENTA: BRIGHT_MAGENTA,
    BG_BRIGHT_CYAN: BRIGHT_CYAN, BG_BRIGHT_WHITE: BRIGHT_WHITE,
})

def bg_to_fg(bg):
    return BG_TO_FG.get(bg, WHITE)

# Symbols
ARROW = "\ue0b0"        # Powerline right arrow
THIN_ARROW = "\ue0b1"   # Powerline thin right arrow
GIT_BRANCH = "\ue0a0"
ELLIPSIS = "…"
ICON_TOKENS = "🔤"
ICON_COST = "$"
ICON_MESSAGES = "💬"
ICON_EFFICIENCY = "📊"
ICON_COMPACTION = "🗜️"
ICON_LATENCY = "⚡"
ICON_TIMER = "⏱"
ICON_WEEKLY = "📅"
ICON_DAILY = "📊"

# ═══════════════════════ CALCULATORS ═══════════════════════

def _clamp(pct, lo=0, hi=100):
    return max(lo, min(hi, pct))

def _ratio_pct(num, den):
    """Half-up rounded percentage of num/den, clamped to 0-100."""
    if den <= 0 or num <= 0:
        return 0
    return _clamp(math.floor(num * 100 / den + 0.5))

def usage_percentage(daily_tokens, context_tokens, context_chars):
    """Higher of context-window and daily-limit consumption."""
    if context_tokens <= 0 and context_chars > 0:
        context_tokens = context_chars // 4
    return max(_ratio_pct(context_tokens, CONTEXT_LIMIT), _ratio_pct(daily_tokens, DAILY_LIMIT))

def weekly_usage_percentage(weekly_tokens):
    return _ratio_pct(weekly_tokens, WEEKLY_LIMIT)

def daily_usage_percentage(daily_tokens):
    return _ratio_pct(daily_tokens, DAILY_LIMIT)

def compaction_percentage(context_tokens):
    """Progress toward compaction; restarts from 0 inside the last 10% of context."""
    if context_tokens <= 0:
        return 0
    threshold = math.floor(CONTEXT_LIMIT * COMPACTION_RATIO)
    if context_tokens < threshold:
        return _ratio_pct(context_tokens, threshold)
    danger_zone = CONTEXT_LIMIT - threshold
    remaining = CONTEXT_LIMIT - context_tokens
    return _clamp(math.floor((danger_zone - remaining) * 100 / danger_zone + 0.5))

def context_efficiency(context_tokens):
    if context_tokens <= 0:
        return 0.0
    return _clamp(context_tokens / CONTEXT_LIMIT * 100, 0.0, 100.0)

def format_tokens(tokens):
    """Format tokens: 500, 5.0k, 172.1k, 2.5M."""
    if tokens > 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens > 1000:
        return f"{tokens / 1000:.1f}k"
    return str(tokens)

def model_rates(model_name):
    name = (model_name or "").lower()
    for family, rates in PRICING.items():
        if family in name:
            return rates
    return PRICING["sonnet"]

def calculate_cost(model_name, input_tokens, output_tokens):
    """Return (session_cost, daily_cost) in dollars. Both are the same figure."""
    in_rate, out_rate = model_rates(model_name)
    cost = (input_tokens * in_rate + output_tokens * out_rate) / 1_000_000
    return cost, cost

def format_cost(cost):
    """Format cost: 0.500¢, 15.00¢, $1.50."""
    if cost < 0.01:
        return f"{cost * 100:.3f}¢"
    if cost < 1.0:
        return f"{cost * 100:.2f}¢"
    return f"${cost:.2f}"

def format_efficiency(efficiency):
    return f"{efficiency:.1f}%"

def format_latency(ms):
    if ms < 1000:
        return f"{ms:.0f}ms"
    return f"{ms / 1000:.1f}s"

def format_workspace_path(path, home):
    home = home.rstrip(os.sep) if home else ""
    if home and (path == home or path.startswith(home + os.sep)):
        return "~" + path[len(home):]
    return path

def truncate_path(path, max_len):
    """Keep the tail of a path within max_len bytes, marked with an ellipsis."""
    raw = path.encode("utf-8")
    if len(raw) <= max_len:
        return path
    if max_len > 5:
        return ELLIPSIS + raw[len(raw) - (max_len - 1):].decode("utf-8", "ignore")
    return raw[:max_len].decode("utf-8", "ignore")

def fmtdur(seconds):
    """Format duration: 2h 14m or 14m."""
    s = max(0, int(seconds))
    h, m = s // 3600, s % 3600 // 60
    return f"{h}h {m}m" if h else f"{m}m"

def time_to_reset(window_start, now):
    """Countdown to the end of the 5h rolling window, or to local midnight if unknown."""
    if window_start is not None:
        elapsed = now - window_start
        if elapsed >= RATE_WINDOW:
            return "0m", "5hr"
        if elapsed >= timedelta(0):
            return fmtdur((RATE_WINDOW - elapsed).total_seconds()), "5hr"
        log.debug("window start %s is in the future", window_start)

    local = now.astimezone()
    since_midnight = local.hour * 3600 + local.minute * 60 + local.second
    return fmtdur(86400 - since_midnight), "daily"

def time_to_weekly_reset(now):
    """Countdown to next Monday 00:00 UTC. On a Monday that is seven days out."""
    utc = now.astimezone(timezone.utc)
    days = (7 - utc.weekday()) % 7 or 7
    boundary = (utc + timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
    secs = int((boundary - utc).total_seconds())
    d, h, m = secs // 86400, secs % 86400 // 3600, secs % 3600 // 60
    if d > 0:
        return f"{d}d {h}h", "weekly"
    if h > 0:
        return f"{h}h {m}m", "weekly"
    return f"{m}m", "weekly"

def block_elapsed(window_start, now):
    """Time spent in the active 5h window; empty when no window is active."""
    if window_start is None:
        return ""
    elapsed = now - window_start
    if elapsed < timedelta(0) or elapsed >= RATE_WINDOW:
        return ""
    return fmtdur(elapsed.total_seconds())

def model_display(model):
    """Short model label: sonnet / opus / haiku, else the lower-cased name."""
    name = model.get("display_name") or model.get("id") or ""
    lowered = name.lower()
    for label in MODEL_LABELS:
        if label in lowered:
            return label
    return lowered or "unknown"

def parse_iso(s):
    """Parse RFC 3339 to an aware datetime. Handles Z and fractional seconds."""
    if not s or s in ("null", ""):
        return None
    try:
        dt = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

# ═══════════════════════ THEMES ═══════════════════════

Theme = namedtuple("Theme", "name styles separator powerline")
Widget = namedtuple("Widget", "name text fg bg")

ROLES = ("user", "path", "git", "model", "percent", "weekly", "tokens", "cost",
         "messages", "efficiency", "compaction", "latency", "time")

# A style is either a static (fg, bg) pair or threshold bands
# ((upper_bound, fg, bg), ..., (None, fg, bg)) picked by percentage.

def _bands(*bands):
    if not bands or bands[-1][0] is not None:
        raise ValueError("threshold bands must end with an open (None) bound")
    return tuple(bands)

THEMES = {
    "powerline": Theme(
        name="Powerline",
        styles=MappingProxyType({
            "user":       (BRIGHT_WHITE, BG_BLUE),
            "path":       (BLACK, BG_BRIGHT_CYAN),
            "git":        (BRIGHT_WHITE, BG_BRIGHT_GREEN),
            "model":      (BRIGHT_WHITE, BG_MAGENTA),
            "percent":    _bands((10, BRIGHT_WHITE, BG_RED), (30, BLACK, BG_YELLOW), (None, BLACK, BG_GREEN)),
            "weekly":     _bands((60, BRIGHT_WHITE, BG_BRIGHT_BLUE), (85, BLACK, BG_YELLOW), (None, BRIGHT_WHITE, BG_RED)),
            "tokens":     (BRIGHT_WHITE, BG_BRIGHT_BLACK),
            "cost":       (BRIGHT_WHITE, BG_RED),
            "messages":   (BRIGHT_WHITE, BG_MAGENTA),
            "efficiency": (BRIGHT_WHITE, BG_BRIGHT_BLUE),
            "compaction": _bands((50, BRIGHT_WHITE, BG_GREEN), (80, BLACK, BG_YELLOW), (None, BRIGHT_WHITE, BG_RED)),
            "latency":    (BRIGHT_WHITE, BG_BRIGHT_GREEN),
            "time":       (BRIGHT_WHITE, BG_BRIGHT_BLUE),
        }),
        separator=RESET,
        powerline=True,
    ),
    "minimal": Theme(
        name="Minimal",
        styles=MappingProxyType({
            "user":       (BRIGHT_GREEN, ""),
            "path":       (BRIGHT_BLUE, ""),
            "git":        (BRIGHT_YELLOW, ""),
            "model":      (BRIGHT_MAGENTA, ""),
            "percent":    _bands((10, BRIGHT_RED, ""), (30, BRIGHT_YELLOW, ""), (None, BRIGHT_GREEN, "")),
            "weekly":     _bands((60, BRIGHT_BLUE, ""), (85, BRIGHT_YELLOW, ""), (None, BRIGHT_RED, "")),
            "tokens":     (BRIGHT_BLACK, ""),
            "cost":       (BRIGHT_RED, ""),
            "messages":   (BRIGHT_MAGENTA, ""),
            "efficiency": (BRIGHT_BLUE, ""),
            "compaction": _bands((50, BRIGHT_GREEN, ""), (80, BRIGHT_YELLOW, ""), (None, BRIGHT_RED, "")),
            "latency":    (BRIGHT_GREEN, ""),
            "time":       (BRIGHT_CYAN, ""),
        }),
        separator=BRIGHT_BLACK,
        powerline=False,
    ),
    "gruvbox": Theme(
        name="Gruvbox",
        styles=MappingProxyType({
            "user":       (true_color(254, 128, 25), true_color_bg(40, 40, 40)),
            "path":       (true_color(131, 165, 152), true_color_bg(80, 73, 69)),
            "git":        (true_color(254, 128, 25), true_color_bg(60, 56, 54)),
            "model":      (true_color(211, 134, 155), true_color_bg(102, 92, 84)),
            "percent":    _bands((10, true_color(251, 73, 52), true_color_bg(60, 56, 54)),
                                 (30, true_color(250, 189, 47), true_color_bg(60, 56, 54)),
                                 (None, true_color(184, 187, 38), true_color_bg(60, 56, 54))),
            "weekly":     _bands((60, true_color(131, 165, 152), true_color_bg(60, 56, 54)),
                                 (85, true_color(250, 189, 47), true_color_bg(60, 56, 54)),
                                 (None, true_color(251, 73, 52), true_color_bg(60, 56, 54))),
            "tokens":     (true_color(235, 219, 178), true_color_bg(50, 48, 47)),
            "cost":       (true_color(251, 73, 52), true_color_bg(40, 40, 40)),
            "messages":   (true_color(211, 134, 155), true_color_bg(60, 56, 54)),
            "efficiency": (true_color(131, 165, 152), true_color_bg(80, 73, 69)),
            "compaction": _bands((50, true_color(142, 192, 124), true_color_bg(60, 56, 54)),
                                 (80, true_color(250, 189, 47), true_color_bg(60, 56, 54)),
                                 (None, true_color(251, 73, 52), true_color_bg(60, 56, 54))),
            "latency":    (true_color(142, 192, 124), true_color_bg(50, 48, 47)),
            "time":       (true_color(142, 192, 124), true_color_bg(40, 40, 40)),
        }),
        separator=true_color(80, 73, 69),
        powerline=True,
    ),
}
DEFAULT_THEME = "powerline"

def get_theme(name):
    """Theme by name; unknown names fall back to powerline."""
    theme = THEMES.get((name or "").strip().lower())
    if theme is None:
        log.debug("unknown theme %r, using %s", name, DEFAULT_THEME)
        return THEMES[DEFAULT_THEME]
    return theme

def resolve_style(theme, role, pct=0):
    """(fg, bg) for a widget role, evaluating threshold bands against pct."""
    rule = theme.styles.get(role) or THEMES[DEFAULT_THEME].styles[role]
    if isinstance(rule[0], tuple):
        for bound, fg, bg in rule:
            if bound is None or pct < bound:
                return fg, bg
    return rule

# ═══════════════════════ INPUT ═══════════════════════

class InputError(ValueError):
    """Stdin is unreadable or not a status JSON object."""

# Expected type of every field we read; anything else is a malformed envelope.
_OBJECTS = ("model", "workspace", "usage", "contextUsage", "context")
_NUMBERS = {
    None: ("inputTokens", "outputTokens", "totalTokens"),
    "usage": ("inputTokens", "outputTokens", "totalTokens"),
    "contextUsage": ("tokens", "characters"),
    "context": ("tokens", "characters"),
}
_STRINGS = {
    None: ("workspaceDirectory",),
    "model": ("id", "display_name"),
    "workspace": ("current_dir", "project_dir"),
}

def _check(obj, keys, kinds, where):
    for key in keys:
        v = obj.get(key)
        if v is not None and (isinstance(v, bool) or not isinstance(v, kinds)):
            raise InputError(f"{where}{key}: unexpected {type(v).__name__}")
        if isinstance(v, float) and not math.isfinite(v):
            raise InputError(f"{where}{key}: number out of range")

def _reject_constant(name):
    raise InputError(f"invalid JSON: {name} is not a number")

def parse_input(text):
    """Decode and shape-check the status JSON envelope."""
    try:
        data = json.loads(text, parse_constant=_reject_constant)
    except (json.JSONDecodeError, TypeError) as e:
        raise InputError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InputError("expected a JSON object")

    for key in _OBJECTS:
        if data.get(key) is not None and not isinstance(data[key], dict):
            raise InputError(f"{key}: expected an object")
    for parent, keys in _NUMBERS.items():
        obj = data if parent is None else (data.get(parent) or {})
        _check(obj, keys, (int, float), f"{parent}." if parent else "")
    for parent, keys in _STRINGS.items():
        obj = data if parent is None else (data.get(parent) or {})
        _check(obj, keys, str, f"{parent}." if parent else "")
    return data

def _num(obj, key):
    try:
        return int(obj.get(key) or 0)
    except (TypeError, ValueError):
        return 0

def _nested_or_flat(data, key):
    usage = data.get("usage") or {}
    n = _num(usage, key)
    return n if n > 0 else _num(data, key)

def input_tokens(data):
    return _nested_or_flat(data, "inputTokens")

def output_tokens(data):
    return _nested_or_flat(data, "outputTokens")

def total_tokens(data):
    return _nested_or_flat(data, "totalTokens")

def _context(data, key):
    for name in ("contextUsage", "context"):
        n = _num(data.get(name) or {}, key)
        if n > 0:
            return n
    return 0

def context_tokens(data):
    return _context(data, "tokens")

def context_characters(data):
    return _context(data, "characters")

def workspace_path(data):
    ws = data.get("workspace") or {}
    return ws.get("current_dir") or data.get("workspaceDirectory") or "~"

# ═══════════════════════ PROVIDERS ═══════════════════════

# Every provider returns a plain dict of named fields and {} on failure.

def field(fields, key, default=0):
    return fields.get(key) or default

def _int(s):
    try:
        return int(s.strip())
    except (ValueError, AttributeError):
        return 0

def run(args, timeout, cwd=None):
    """Run a command once. Returns stdout, or None on any failure."""
    try:
        r = subprocess.run(args, capture_output=True, text=True, timeout=timeout, cwd=cwd)
    except (OSError, subprocess.SubprocessError) as e:
        log.debug("%s: %s", " ".join(args), e)
        return None
    if r.returncode != 0:
        log.debug("%s exited %d", " ".join(args), r.returncode)
        return None
    return r.stdout

def is_stale(path, ttl):
    if not path.exists():
        return True
    return time.time() - path.stat().st_mtime > ttl

def try_lock(path):
    """Non-blocking exclusive lock. Returns fd or None."""
    try:
        fd = os.open(str(path), os.O_CREAT | os.O_WRONLY)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        return fd
    except (BlockingIOError, OSError):
        return None

def unlock(fd, path):
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        path.unlink(missing_ok=True)
    except OSError:
        pass

def rtext(path):
    """Read a small text file; None when missing or unreadable."""
    try:
        return path.read_text()
    except (OSError, UnicodeDecodeError):
        return None

def cached_run(args, cfg):
    """Run a usage CLI command, reusing its output for ccusage_ttl seconds.

    The lock keeps parallel status-line invocations from running the same
    command at once; the loser reads whatever the cache holds.
    """
    ttl = cfg["ccusage_ttl"]
    if ttl <= 0:
        return run(args, cfg["timeout"])

    cache_dir = cfg["cache_dir"]
    key = re.sub(r"[^A-Za-z0-9_.-]", "_", "-".join(args))
    path = cache_dir / f"{key}.out"
    if not is_stale(path, ttl):
        return rtext(path)

    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        log.debug("cache dir %s: %s", cache_dir, e)
        return run(args, cfg["timeout"])

    lk = path.with_suffix(".lock")
    fd = try_lock(lk)
    if fd is None:
        return rtext(path)
    try:
        out = run(args, cfg["timeout"])
        if out is not None:
            try:
                tmp = path.with_suffix(".tmp")
                tmp.write_text(out)
                tmp.rename(path)
            except OSError as e:
                log.debug("cache write %s: %s", path, e)
            return out
    finally:
        unlock(fd, lk)
    return rtext(path)

# ccusage output is scraped, JSON or plain text alike
P_TOKENS = r'"tokens"\s*:\s*(\d+)|"totalTokens"\s*:\s*(\d+)'
P_INPUT = r'"inputTokens"\s*:\s*(\d+)'
P_OUTPUT = r'"outputTokens"\s*:\s*(\d+)'
P_MESSAGES = r'"messages"\s*:\s*(\d+)|"messageCount"\s*:\s*(\d+)'
P_START = r'"start_time"\s*:\s*"([^"]+)"'
P_STATS = {
    "daily_tokens": r'"totalTokens"\s*:\s*(\d+)|total.*tokens.*:\s*(\d+)',
    "weekly_tokens": r'"weeklyTokens"\s*:\s*(\d+)|weekly.*tokens.*:\s*(\d+)',
}
P_STATS_FILL = {
    "session_tokens": r'"sessionTokens"\s*:\s*(\d+)|session.*tokens.*:\s*(\d+)',
    "input_tokens": r'"inputTokens"\s*:\s*(\d+)|input.*tokens.*:\s*(\d+)',
    "output_tokens": r'"outputTokens"\s*:\s*(\d+)|output.*tokens.*:\s*(\d+)',
    "messages": r'"messages"\s*:\s*(\d+)|message.*count.*:\s*(\d+)',
}

def extract_count(text, pattern):
    """First non-empty integer group of pattern in text, else 0."""
    m = re.search(pattern, text or "")
    if not m:
        return 0
    for group in m.groups():
        if group:
            return _int(group)
    return 0

def _block_fields(text):
    fields = {
        "session_tokens": extract_count(text, P_TOKENS),
        "input_tokens": extract_count(text, P_INPUT),
        "output_tokens": extract_count(text, P_OUTPUT),
        "messages": extract_count(text, P_MESSAGES),
    }
    m = re.search(P_START, text)
    if m:
        fields["start_time"] = m.group(1)
    return fields

def ccusage_fields(cfg, sid=""):
    """Current block, session and daily/weekly totals from the ccusage CLI."""
    if not cfg["ccusage"] or not shutil.which("ccusage"):
        return {}

    data = {}
    out = cached_run(["ccusage", "blocks", "--json"], cfg)
    if out:
        data.update(_block_fields(out))

    if sid:
        data["session_id"] = sid
        out = cached_run(["ccusage", "session", sid, "--json"], cfg)
        if out:
            for key, value in _block_fields(out).items():
                if key != "start_time" and value:
                    data[key] = value

    out = cached_run(["ccusage", "stats", "--json"], cfg)
    if out is None:
        out = cached_run(["ccusage", "stats"], cfg)
    if out is None:
        return data

    for key, pattern in P_STATS.items():
        data[key] = extract_count(out, pattern)
    for key, pattern in P_STATS_FILL.items():
        if not data.get(key):
            data[key] = extract_count(out, pattern)
    return data

SCRIPT_FIELDS = ("session_tokens", "daily_tokens", "messages", "input_tokens", "output_tokens")

def script_fields(cfg):
    """Usage from the user's calculate-usage.sh: session daily messages [input output]."""
    script = cfg["tracking_dir"] / "calculate-usage.sh"
    if not script.exists():
        return {}
    out = run([str(script)], cfg["timeout"])
    if out is None:
        return {}
    parts = out.split()
    if len(parts) >= 5:
        keys = SCRIPT_FIELDS
    elif len(parts) >= 3:
        keys = SCRIPT_FIELDS[:3]
    else:
        log.debug("%s: expected 3 or 5 fields, got %d", script, len(parts))
        return {}
    return {key: _int(value) for key, value in zip(keys, parts)}

def session_id(cfg, env):
    sid = env.get("CLAUDE_SESSION_ID")
    if sid:
        return sid
    text = rtext(cfg["tracking_dir"] / "current_session")
    if text and text.strip():
        return text.strip()

    out = run(["ps", "aux"], cfg["timeout"]) or ""
    for line in out.splitlines():
        if "claude" in line and "session" in line:
            m = re.search(r"session[=:]([a-zA-Z0-9-]+)", line)
            if m:
                return m.group(1)
    return ""

def window_start(usage, cfg, now):
    """Start of the active 5h window: ccusage block first, then the session_start file."""
    started = parse_iso(usage.get("start_time"))
    if started is not None and now - started < RATE_WINDOW:
        return started
    text = rtext(cfg["tracking_dir"] / "session_start")
    if text is None:
        return None
    started = parse_iso(text.strip())
    if started is None:
        log.debug("session_start: unparseable %r", text.strip())
    return started

def latency_fields(cfg):
    """latency.txt: average ms, last request ms, request count (one per line)."""
    text = rtext(cfg["tracking_dir"] / "latency.txt")
    if not text:
        return {}
    lines = text.strip().splitlines()
    if len(lines) < 3:
        return {}
    fields = {}
    for key, raw, cast in (("average_ms", lines[0], float), ("last_ms", lines[1], float),
                           ("count", lines[2], int)):
        try:
            fields[key] = cast(raw.strip())
        except ValueError:
            log.debug("latency.txt: bad %s %r", key, raw)
    return fields

def find_git_dir(start):
    d = Path(start)
    while True:
        if (d / ".git").is_dir():
            return d / ".git"
        parent = d.parent
        if parent == d or str(parent) == "/":
            return None
        d = parent

def git_changes(path, timeout):
    out = run(["git", "status", "--porcelain"], timeout, cwd=path)
    if not out or not out.strip():
        return 0
    return len(out.strip().splitlines())

def git_info(path, cfg):
    """' branch±N' for the enclosing repository, '' outside one."""
    path = os.path.expanduser(path)
    git_dir = find_git_dir(path)
    if git_dir is None:
        return ""
    head = rtext(git_dir / "HEAD")
    if head is None:
        return ""
    head = head.strip()
    if head.startswith("ref: refs/heads/"):
        branch = head[len("ref: refs/heads/"):]
    elif len(head) >= 7:
        branch = head[:7]
    else:
        return ""
    changes = git_changes(path, cfg["timeout"])
    if changes > 0:
        return f"{GIT_BRANCH} {branch}±{changes}"
    return f"{GIT_BRANCH} {branch}"

def username():
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "user"

def hostname():
    try:
        host = socket.gethostname()
    except OSError:
        return "localhost"
    dot = host.find(".")
    return host[:dot] if dot > 0 else (host or "localhost")

def collect(data, cfg, env, now=None):
    """Snapshot every external source once. Never raises for missing data."""
    now = now or datetime.now(timezone.utc)
    home = os.path.expanduser("~")
    sid = session_id(cfg, env) if cfg["ccusage"] else ""
    usage = ccusage_fields(cfg, sid)
    return {
        "now": now,
        "user": username(),
        "host": hostname(),
        "home": "" if home == "~" else home,
        "git": git_info(workspace_path(data), cfg),
        "script": script_fields(cfg),
        "ccusage": usage,
        "window_start": window_start(usage, cfg, now),
        "latency": latency_fields(cfg) if cfg["show_latency"] else {},
    }

# ═══════════════════════ WIDGETS ═══════════════════════

def resolve_usage(data, script, usage):
    """Token, message and weekly figures by source priority: script, ccusage, stdin."""
    if field(script, "daily_tokens") > 0:
        src = script
    elif field(usage, "daily_tokens") > 0:
        src = usage
    else:
        src = None

    if src is not None:
        daily = field(src, "daily_tokens")
        tin, tout = field(src, "input_tokens"), field(src, "output_tokens")
    else:
        tin, tout = input_tokens(data), output_tokens(data)
        daily = total_tokens(data) or tin + tout

    weekly = field(usage, "weekly_tokens") or field(usage, "daily_tokens")
    messages = field(script, "messages") or field(usage, "messages")
    return {"daily": daily, "input": tin, "output": tout, "weekly": weekly, "messages": messages}

def build_widgets(data, theme, snap, cfg):
    """Ordered widget list for one render. Missing metrics drop widgets, never reorder."""
    widgets = []

    def add(name, text, role, pct=0):
        fg, bg = resolve_style(theme, role, pct)
        widgets.append(Widget(name, text, fg, bg))

    now = snap["now"]
    u = resolve_usage(data, snap["script"], snap["ccusage"])
    ctx = context_tokens(data)

    add("user", f"{snap['user']}@{snap['host']}", "user")

    path = format_workspace_path(workspace_path(data), snap["home"])
    add("path", truncate_path(path, cfg["path_max"]), "path")

    if snap["git"]:
        add("git", snap["git"], "git")

    add("model", model_display(data.get("model") or {}), "model")

    remaining = max(0, 100 - usage_percentage(u["daily"], ctx, context_characters(data)))
    add("percent", f"{remaining}%", "percent", remaining)

    daily_pct = daily_usage_percentage(u["daily"])
    weekly_pct = weekly_usage_percentage(u["weekly"])
    if weekly_pct > daily_pct:
        add("weekly", f"{ICON_WEEKLY} {weekly_pct}%", "weekly", weekly_pct)
    elif daily_pct > 0:
        add("daily", f"{ICON_DAILY} {daily_pct}%", "weekly", daily_pct)

    if u["daily"] > 0:
        add("tokens", f"{ICON_TOKENS} {format_tokens(u['daily'])}", "tokens")

    if u["input"] > 0 or u["output"] > 0:
        model = data.get("model") or {}
        session_cost, _ = calculate_cost(model.get("display_name") or model.get("id"),
                                         u["input"], u["output"])
        add("cost", f"{ICON_COST} {format_cost(session_cost)}", "cost")

    if u["messages"] > 0:
        add("messages", f"{ICON_MESSAGES} {u['messages']}/{MESSAGE_LIMIT}", "messages")

    if ctx > 0:
        add("efficiency", f"{ICON_EFFICIENCY} {format_efficiency(context_efficiency(ctx))}", "efficiency")
        pct = compaction_percentage(ctx)
        add("compaction", f"{ICON_COMPACTION} {pct}%", "compaction", pct)

    if cfg["show_latency"] and field(snap["latency"], "count") > 0:
        add("latency", f"{ICON_LATENCY} {format_latency(field(snap['latency'], 'average_ms', 0.0))}", "latency")

    timer = block_elapsed(snap["window_start"], now)
    if timer:
        add("timer", f"{ICON_TIMER} {timer}", "time")

    left, label = time_to_reset(snap["window_start"], now)
    if label != "5hr" or left == "0m":
        left, label = time_to_weekly_reset(now)
    add("reset", f"{label} reset {left}", "time")

    return widgets

# ═══════════════════════ RENDER ═══════════════════════

def render_segment(theme, w):
    if theme.powerline and w.bg:
        return f"{w.bg}{w.fg} {w.text} {RESET}"
    return f"{w.fg}{w.text}{RESET}"

def separator(theme, current, nxt):
    """Separator between two widgets, chosen by their background states."""
    if not theme.powerline:
        return f" {theme.separator}|{RESET} "
    if current.bg and nxt.bg:
        return f"{nxt.bg}{bg_to_fg(current.bg)}{ARROW}{RESET}"
    if current.bg:
        return f"{bg_to_fg(current.bg)}{ARROW}{RESET}"
    return f" {theme.separator}{THIN_ARROW}{RESET} "

def render(theme, widgets):
    parts = []
    for i, w in enumerate(widgets):
        parts.append(render_segment(theme, w))
        if i < len(widgets) - 1:
            parts.append(separator(theme, w, widgets[i + 1]))
    return "".join(parts)

def render_status(data, cfg, env=None, now=None):
    """Full pipeline for one parsed input: theme, external snapshot, widgets, line."""
    env = os.environ if env is None else env
    theme = get_theme(cfg["theme"])
    snap = collect(data, cfg, env, now)
    return render(theme, build_widgets(data, theme, snap, cfg))

# ═══════════════════════ MAIN ═══════════════════════

def show_themes(cfg):
    """Print every theme with a preview line built from sample widgets."""
    snap = {
        "now": datetime.now(timezone.utc), "user": "user", "host": "host", "home": "",
        "git": f"{GIT_BRANCH} main±2", "script": {},
        "ccusage": {"daily_tokens": 172_100, "weekly_tokens": 2_400_000,
                    "input_tokens": 120_000, "output_tokens": 52_100, "messages": 42},
        "window_start": datetime.now(timezone.utc) - timedelta(hours=1, minutes=20),
        "latency": {},
    }
    sample = {"model": {"display_name": "Claude Sonnet 4"},
              "workspace": {"current_dir": "~/src/project"},
              "contextUsage": {"tokens": 96_000}}
    for name, theme in THEMES.items():
        print(f"{name:<10} {render(theme, build_widgets(sample, theme, snap, cfg))}")

def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()

    if argv and argv[0] == "--version":
        print(VERSION)
        return 0

    cfg = load_config()

    if argv and argv[0] == "--themes":
        show_themes(cfg)
        return 0

    try:
        data = parse_input(sys.stdin.read())
    except (InputError, OSError, UnicodeDecodeError) as e:
        print(f"ccstatus: {e}", file=sys.stderr)
        return 1

    print(render_status(data, cfg))
    return 0

if __name__ == "__main__":
    sys.exit(main())
