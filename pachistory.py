#!/usr/bin/env python3
"""
Pacman History Analyzer

Turns a pacman transaction log (/var/log/pacman.log) into statistics and
human-readable history narratives:
- Event extraction from the raw log lines
- Frequency tables for commands and packages (top-N reports)
- Summary counters (installs, removals, upgrades, system updates)
- Transaction narratives: which command caused which package changes
- Intentional packages: what was installed by name versus as a dependency
- Time distribution by year, month, day and hour with ASCII bar charts

The analysis is read-only; the package database is never touched.
"""

import json
import math
import os
import sys
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from functools import reduce
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import click
import yaml
from colorama import Fore, Style, just_fix_windows_console
from tqdm import tqdm


# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

DEFAULT_LOG_FILE = "/var/log/pacman.log"


# ============================================================================
# ERRORS
# ============================================================================


class PacHistoryError(Exception):
    """Base class for errors surfaced to the command line"""


class LogReadError(PacHistoryError):
    """The log file is missing, unreadable or not valid UTF-8"""


class ConfigError(PacHistoryError):
    """A configuration file could not be loaded or holds an invalid value"""


class NarrationError(PacHistoryError):
    """Rendering a transaction narrative failed"""


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


@dataclass(frozen=True, order=True)
class Timestamp:
    """
    Hour-resolution timestamp taken from the log's bracketed prefix.

    The hour is the log's local-time field as written; the trailing UTC
    offset is not applied.
    """

    year: int
    month: int
    day: int
    hour: int

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d} {self.hour:02d}:00"


@dataclass(frozen=True)
class CommandRun:
    """A pacman invocation, quotes stripped from the command text"""

    ts: Timestamp
    command: str

    def words(self) -> List[str]:
        return self.command.split(" ")


@dataclass(frozen=True)
class PackageEvent:
    """Base for the four package state changes recorded by ALPM"""

    action: ClassVar[str] = ""

    ts: Timestamp
    name: str
    version: str


@dataclass(frozen=True)
class PackageInstalled(PackageEvent):
    action: ClassVar[str] = "installed"


@dataclass(frozen=True)
class PackageRemoved(PackageEvent):
    action: ClassVar[str] = "removed"


@dataclass(frozen=True)
class PackageUpgraded(PackageEvent):
    action: ClassVar[str] = "upgraded"


@dataclass(frozen=True)
class PackageDowngraded(PackageEvent):
    action: ClassVar[str] = "downgraded"


Event = Union[CommandRun, PackageInstalled, PackageRemoved, PackageUpgraded, PackageDowngraded]

PACKAGE_EVENT_TYPES = {
    cls.action: cls
    for cls in (PackageInstalled, PackageRemoved, PackageUpgraded, PackageDowngraded)
}

# Order in which transaction categories are listed
ACTIONS = ("installed", "removed", "upgraded", "downgraded")

EVENT_KINDS = {"command": CommandRun, **PACKAGE_EVENT_TYPES}


def _unknown_event(event: Any):
    raise TypeError(f"Unknown event type: {type(event).__name__}")


# ============================================================================
# PARSING
# ============================================================================


def _parse_field(token: str, start: int, end: int) -> Optional[int]:
    text = token[start:end]
    if not (text.isascii() and text.isdigit()):
        return None
    return int(text)


def parse_timestamp(token: str) -> Optional[Timestamp]:
    """
    Parse a "[YYYY-MM-DDThh:mm:ss+ZZZZ]" token by fixed offsets.

    Args:
        token: First space-delimited token of a log line

    Returns:
        Timestamp, or None when the token is too short or a field is not
        an integer
    """
    if len(token) < 14:
        return None

    fields = [
        _parse_field(token, 1, 5),
        _parse_field(token, 6, 8),
        _parse_field(token, 9, 11),
        _parse_field(token, 12, 14),
    ]
    if any(value is None for value in fields):
        return None

    year, month, day, hour = fields
    return Timestamp(year=year, month=month, day=day, hour=hour)


def parse_line(line: str) -> Optional[Event]:
    """Classify a single log line. Returns None for lines without an event."""
    parts = line.rstrip("\r\n").split(" ")
    if len(parts) < 4:
        return None

    ts = parse_timestamp(parts[0])
    if ts is None:
        return None

    source, verb = parts[1], parts[2]

    if source == "[PACMAN]" and verb == "Running":
        command = " ".join(parts[3:]).replace("'", "")
        return CommandRun(ts=ts, command=command)

    if source == "[ALPM]" and verb in PACKAGE_EVENT_TYPES:
        event_type = PACKAGE_EVENT_TYPES[verb]
        return event_type(ts=ts, name=parts[3], version=" ".join(parts[4:]))

    return None


def parse_events(lines: Iterable[str]) -> List[Event]:
    """Extract the ordered event list from raw log lines"""
    events = []
    for line in lines:
        event = parse_line(line)
        if event is not None:
            events.append(event)
    return events


def read_log_lines(path: str) -> List[str]:
    """Read the whole log file as a list of lines (UTF-8, split on "\\n" only)"""
    try:
        with open(path, "r", encoding="utf-8", newline="\n") as f:
            return [line.rstrip("\n") for line in f]
    except (OSError, UnicodeDecodeError) as e:
        raise LogReadError(f"Cannot read log file {path}: {e}") from e


# ============================================================================
# FREQUENCY AGGREGATION
# ============================================================================


class FrequencyTable:
    """
    Increment-only multiset keyed by any hashable value.

    Two read orders are supported: descending count (ties keep first-seen
    order) and ascending key.
    """

    def __init__(self, keys: Iterable = ()):
        self._counts = Counter()
        for key in keys:
            self.increment(key)

    def increment(self, key):
        self._counts[key] += 1

    def total(self) -> int:
        return sum(self._counts.values())

    def sorted_by_frequency(self) -> List[Tuple[Any, int]]:
        return self._counts.most_common()

    def sorted_by_key(self) -> List[Tuple[Any, int]]:
        return sorted(self._counts.items())

    def most_common(self, n: int) -> List[Tuple[Any, int]]:
        if n <= 0:
            return []
        return self._counts.most_common(n)

    def __getitem__(self, key) -> int:
        return self._counts.get(key, 0)

    def __contains__(self, key) -> bool:
        return key in self._counts

    def __len__(self) -> int:
        return len(self._counts)


def count_commands(events: Iterable[Event]) -> FrequencyTable:
    """How often each command line was run"""
    return FrequencyTable(
        event.command for event in events if isinstance(event, CommandRun)
    )


def count_packages(events: Iterable[Event], action: str) -> FrequencyTable:
    """
    How often each package appears in events of one kind.

    Args:
        events: Parsed event list
        action: One of "installed", "removed", "upgraded", "downgraded"
    """
    if action not in PACKAGE_EVENT_TYPES:
        raise ValueError(f"Unknown package action: {action}")
    event_type = PACKAGE_EVENT_TYPES[action]
    return FrequencyTable(
        event.name for event in events if isinstance(event, event_type)
    )


# ============================================================================
# SUMMARY STATISTICS
# ============================================================================


@dataclass(frozen=True)
class SummaryStats:
    """Headline counters over the whole log"""

    events: int = 0
    commands: int = 0
    installs: int = 0
    removals: int = 0
    upgrades: int = 0
    downgrades: int = 0
    packages: int = 0
    updates: int = 0
    first_seen: Optional[Timestamp] = None
    last_seen: Optional[Timestamp] = None
    # whether an upgrade has been seen since the last command
    upgrading: bool = field(default=False, repr=False, compare=False)

    def to_dict(self) -> Dict:
        return {
            "events": self.events,
            "commands": self.commands,
            "installs": self.installs,
            "removals": self.removals,
            "upgrades": self.upgrades,
            "downgrades": self.downgrades,
            "packages": self.packages,
            "updates": self.updates,
            "first_seen": str(self.first_seen) if self.first_seen else None,
            "last_seen": str(self.last_seen) if self.last_seen else None,
        }


def _fold_summary(stats: SummaryStats, event: Event) -> SummaryStats:
    stats = replace(
        stats,
        events=stats.events + 1,
        first_seen=stats.first_seen or event.ts,
        last_seen=event.ts,
    )

    if isinstance(event, CommandRun):
        return replace(stats, commands=stats.commands + 1, upgrading=False)
    if isinstance(event, PackageInstalled):
        return replace(stats, installs=stats.installs + 1, packages=stats.packages + 1)
    if isinstance(event, PackageRemoved):
        return replace(stats, removals=stats.removals + 1, packages=stats.packages - 1)
    if isinstance(event, PackageUpgraded):
        # consecutive upgrades under one command are one system update
        return replace(
            stats,
            upgrades=stats.upgrades + 1,
            updates=stats.updates if stats.upgrading else stats.updates + 1,
            upgrading=True,
        )
    if isinstance(event, PackageDowngraded):
        return replace(stats, downgrades=stats.downgrades + 1)
    return _unknown_event(event)


def summarize(events: Iterable[Event]) -> SummaryStats:
    """Fold the event sequence into summary counters"""
    return reduce(_fold_summary, events, SummaryStats())


# ============================================================================
# RENDERING
# ============================================================================


class Palette:
    """
    Terminal styling for narratives and reports (colorama).
    With colors disabled every method returns the text unchanged.
    """

    VERB_COLORS = {
        "installed": Fore.GREEN,
        "removed": Fore.RED,
        "upgraded": Fore.CYAN,
        "downgraded": Fore.YELLOW,
    }

    def __init__(self, use_colors: bool = True):
        self.use_colors = use_colors

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors and text:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def verb(self, action: str) -> str:
        return self._colorize(action, self.VERB_COLORS.get(action, "") + Style.BRIGHT)

    def faint(self, text: str) -> str:
        return self._colorize(text, Style.DIM)

    def bold(self, text: str) -> str:
        return self._colorize(text, Style.BRIGHT)

    def header(self, text: str) -> str:
        return self._colorize(text, Fore.MAGENTA + Style.BRIGHT)


# ============================================================================
# TRANSACTION NARRATOR
# ============================================================================


@dataclass(frozen=True)
class Transaction:
    """
    Package changes attributed to one pacman command.

    Package names are kept in log order per category. ``delta`` and
    ``total`` are only set in count mode.
    """

    ts: Timestamp
    command: str
    installed: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()
    upgraded: Tuple[str, ...] = ()
    downgraded: Tuple[str, ...] = ()
    named: FrozenSet[str] = frozenset()
    delta: Optional[int] = None
    total: Optional[int] = None

    def packages(self, action: str) -> Tuple[str, ...]:
        return getattr(self, action)

    @property
    def is_empty(self) -> bool:
        return not any(self.packages(action) for action in ACTIONS)

    @property
    def is_singular(self) -> bool:
        """At most one of installs, removals, downgrades; upgrades do not count"""
        kinds = [self.installed, self.removed, self.downgraded]
        return sum(1 for names in kinds if names) <= 1

    @property
    def primary_action(self) -> str:
        for action in ("installed", "removed", "downgraded"):
            if self.packages(action):
                return action
        return "upgraded"

    def named_packages(self) -> List[str]:
        return [
            name
            for action in ACTIONS
            for name in self.packages(action)
            if name in self.named
        ]

    def unnamed_packages(self) -> List[str]:
        return [
            name
            for action in ACTIONS
            for name in self.packages(action)
            if name not in self.named
        ]


def installed_total(events: Iterable[Event]) -> int:
    """Net installed package count over the whole log (+1 install, -1 remove)"""
    total = 0
    for event in events:
        if isinstance(event, PackageInstalled):
            total += 1
        elif isinstance(event, PackageRemoved):
            total -= 1
    return total


def _build_transaction(command: CommandRun, pending: Dict[str, List[str]]) -> Transaction:
    """Close a transaction; pending names are in reverse log order"""
    words = set(command.words())
    categories = {action: tuple(reversed(pending[action])) for action in ACTIONS}
    named = frozenset(
        name for names in categories.values() for name in names if name in words
    )
    return Transaction(ts=command.ts, command=command.command, named=named, **categories)


def narrate(events: List[Event], n: int, count_mode: bool = False) -> List[Transaction]:
    """
    Group package events under the command that caused them.

    The log is scanned backwards so the most recent transactions are found
    first; the result is returned in chronological order. Transactions that
    name no package in their command are skipped unless ``count_mode`` is
    set. Package events before the first command are never attributed.

    Args:
        events: Parsed event list in log order
        n: Maximum number of transactions to return
        count_mode: Emit every transaction, decorated with the net package
            delta and the running installed total

    Returns:
        At most n transactions, oldest first
    """
    if n <= 0:
        return []

    running_total = installed_total(events) if count_mode else None
    pending = {action: [] for action in ACTIONS}
    emitted = []

    for index in range(len(events) - 1, -1, -1):
        event = events[index]

        if isinstance(event, PackageEvent):
            pending[event.action].append(event.name)
        elif isinstance(event, CommandRun):
            txn = _build_transaction(event, pending)
            for names in pending.values():
                names.clear()

            if count_mode:
                delta = len(txn.installed) - len(txn.removed)
                txn = replace(txn, delta=delta, total=running_total)
                running_total -= delta
            elif not txn.named:
                continue

            emitted.append(txn)
            if len(emitted) >= n:
                break
        else:
            _unknown_event(event)

    emitted.reverse()
    return emitted


def _render_segment(txn: Transaction, action: str, palette: Palette, separator: str = "") -> str:
    """One category: verb, named packages, then the unnamed ones faint"""
    names = txn.packages(action)
    direct = [name for name in names if name in txn.named]
    indirect = [name for name in names if name not in txn.named]

    segment = palette.verb(action)
    if direct:
        segment += " " + " ".join(direct)
    if indirect:
        segment += (separator if direct else "") + " " + palette.faint(" ".join(indirect))
    return segment


def render_transaction(txn: Transaction, palette: Palette) -> str:
    """Render one transaction as a single line"""
    prefix = f"{txn.ts} "
    if txn.delta is not None:
        prefix += f"[{txn.delta:+d} -> {txn.total}] "

    if txn.is_empty:
        return prefix + palette.faint(txn.command)

    if txn.is_singular:
        action = txn.primary_action
        segments = [_render_segment(txn, action, palette, separator=",")]
        if action != "upgraded" and txn.upgraded:
            segments.append(_render_segment(txn, "upgraded", palette, separator=","))
        return prefix + "; ".join(segments)

    if not txn.named:
        return prefix + txn.command

    segments = [
        _render_segment(txn, action, palette)
        for action in ACTIONS
        if txn.packages(action)
    ]
    return prefix + "; ".join(segments)


def narrate_lines(
    events: List[Event], n: int, palette: Palette, count_mode: bool = False
) -> List[str]:
    """Narrate and render; rendering failures surface as NarrationError"""
    lines = []
    for txn in narrate(events, n, count_mode=count_mode):
        try:
            lines.append(render_transaction(txn, palette))
        except Exception as e:
            raise NarrationError(
                f"Failed to render transaction at {txn.ts} ({txn.command}): {e}"
            ) from e
    return lines


# ============================================================================
# INTENTIONAL PACKAGE RECONCILER
# ============================================================================


@dataclass(frozen=True)
class Intent:
    """A package installed or removed by a command that named it"""

    action: str  # "install" or "remove"
    name: str


@dataclass(frozen=True)
class PackageStatus:
    name: str
    intentional: bool
    removed_before: bool


@dataclass
class Reconciliation:
    """Currently present packages split into intentional and dependency-only"""

    intentional: List[PackageStatus] = field(default_factory=list)
    dependencies: List[PackageStatus] = field(default_factory=list)
    intents: List[Intent] = field(default_factory=list)

    @property
    def present(self) -> List[PackageStatus]:
        return sorted(self.intentional + self.dependencies, key=lambda p: p.name)


def collect_intents(events: List[Event]) -> List[Intent]:
    """
    Match installs and removals against the command that caused them.

    Backward pass: package events are held until the command preceding
    them in the log is reached, so each package is checked against its own
    command. The records are returned in chronological order.
    """
    pending: List[Tuple[str, str]] = []
    intents: List[Intent] = []

    for index in range(len(events) - 1, -1, -1):
        event = events[index]

        if isinstance(event, PackageInstalled):
            pending.append(("install", event.name))
        elif isinstance(event, PackageRemoved):
            pending.append(("remove", event.name))
        elif isinstance(event, (PackageUpgraded, PackageDowngraded)):
            continue
        elif isinstance(event, CommandRun):
            words = set(event.words())
            for action, name in pending:
                if name in words:
                    intents.append(Intent(action=action, name=name))
            pending.clear()
        else:
            _unknown_event(event)

    intents.reverse()
    return intents


def present_packages(events: Iterable[Event]) -> Tuple[set, set]:
    """
    Replay all package events forward.

    Returns:
        (present, removed): packages installed at the end of the log and
        packages that were removed at least once
    """
    present = set()
    removed = set()
    for event in events:
        if isinstance(event, PackageRemoved):
            present.discard(event.name)
            removed.add(event.name)
        elif isinstance(event, PackageEvent):
            # upgrades and downgrades also prove the package is installed
            present.add(event.name)
        elif not isinstance(event, CommandRun):
            _unknown_event(event)
    return present, removed


def reconcile(events: List[Event]) -> Reconciliation:
    """Partition the current package set into intentional and dependency-only"""
    intents = collect_intents(events)

    wanted = set()
    unwanted_before = set()
    for intent in intents:
        if intent.action == "install":
            wanted.add(intent.name)
        else:
            wanted.discard(intent.name)
            unwanted_before.add(intent.name)

    present, removed = present_packages(events)

    intentional = [
        PackageStatus(name=name, intentional=True, removed_before=name in unwanted_before)
        for name in sorted(present & wanted)
    ]
    dependencies = [
        PackageStatus(name=name, intentional=False, removed_before=name in removed)
        for name in sorted(present - wanted)
    ]
    return Reconciliation(intentional=intentional, dependencies=dependencies, intents=intents)


# ============================================================================
# TIME BUCKETS
# ============================================================================

TIME_UNITS = ("year", "month", "day", "hour")


class TimeBuckets:
    """
    Event counts per calendar unit: year, month of year, day of month and
    hour of day.
    """

    def __init__(self):
        self.tables = {unit: FrequencyTable() for unit in TIME_UNITS}

    def add(self, ts: Timestamp):
        for unit in TIME_UNITS:
            self.tables[unit].increment(getattr(ts, unit))

    def table(self, unit: str) -> FrequencyTable:
        if unit not in self.tables:
            raise ValueError(f"Unknown time unit: {unit}")
        return self.tables[unit]

    @classmethod
    def from_events(cls, events: Iterable[Event], kinds: Optional[Iterable[str]] = None):
        """
        Bucket event timestamps.

        Args:
            events: Parsed event list
            kinds: Event kinds to include ("command", "installed", ...);
                all events when None or empty
        """
        types = tuple(EVENT_KINDS[kind] for kind in kinds) if kinds else None
        buckets = cls()
        for event in events:
            if types is None or isinstance(event, types):
                buckets.add(event.ts)
        return buckets


def fill_gaps(table: FrequencyTable) -> List[Tuple[int, int]]:
    """Every integer key between the observed min and max, zero where unseen"""
    if not len(table):
        return []
    keys = [key for key, _ in table.sorted_by_key()]
    return [(key, table[key]) for key in range(keys[0], keys[-1] + 1)]


def render_chart(table: FrequencyTable, height: int = 10, width: int = 3) -> List[str]:
    """
    ASCII bar chart over the gap-filled key range.

    Each column is ``width`` characters wide and round(height * count / max)
    rows tall (halves round up). The last row holds the trailing digits of
    each key.
    """
    if height < 1 or width < 2:
        raise ValueError("Chart height must be >= 1 and bar width >= 2")

    columns = fill_gaps(table)
    if not columns:
        return []

    peak = max(count for _, count in columns)
    heights = [math.floor(height * count / peak + 0.5) for _, count in columns]

    bar = "#" * (width - 1) + " "
    gap = " " * width
    rows = []
    for level in range(height, 0, -1):
        rows.append("".join(bar if h >= level else gap for h in heights).rstrip())

    labels = "".join(str(key)[-(width - 1):].rjust(width - 1) + " " for key, _ in columns)
    rows.append(labels.rstrip())
    return rows


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================

CONFIG_NAMES = [".pachistory.yaml", ".pachistory.yml", ".pachistory.json"]

DEFAULTS = {
    "log_file": DEFAULT_LOG_FILE,
    "no_color": False,
    "quiet": False,
    "verbose": False,
    "number": 20,
    "top": 10,
    "chart_height": 10,
    "bar_width": 3,
}

INT_KEYS = ["number", "top", "chart_height", "bar_width"]


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file"""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration must be a mapping: {config_path}")
    return data


def find_config_file(search_dirs: Optional[List[str]] = None) -> Optional[str]:
    """
    Auto-discover a configuration file.
    Searches the current directory, then ~/.config/pachistory.
    """
    if search_dirs is None:
        search_dirs = [
            os.getcwd(),
            os.path.join(os.path.expanduser("~"), ".config", "pachistory"),
        ]

    for search_dir in search_dirs:
        for config_name in CONFIG_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str] = None,
        search_dirs: Optional[List[str]] = None,
        reporter: Optional["ProgressReporter"] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.config_path = None

        if config_path:
            try:
                self.config = load_config_file(config_path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                raise ConfigError(f"Failed to load configuration {config_path}: {e}") from e
            self.config_path = config_path
        else:
            auto_path = find_config_file(search_dirs)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_path = auto_path
                except (OSError, ValueError, yaml.YAMLError) as e:
                    if reporter:
                        reporter.warning(f"Found config file but failed to load: {e}")

        # Normalize config keys (kebab-case to snake_case); empty values defer to defaults
        self.config = {
            str(k).replace("-", "_"): v for k, v in self.config.items() if v is not None
        }
        for key in INT_KEYS:
            if key in self.config:
                self.config[key] = self._to_int(key, self.config[key])

    def _to_int(self, key: str, value: Any) -> int:
        if isinstance(value, bool):
            raise ConfigError(f"Invalid value for {key} in {self.config_path}: {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(
                f"Invalid value for {key} in {self.config_path}: {value!r}"
            ) from e

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in DEFAULTS:
            return DEFAULTS[key]
        return default


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Diagnostics on stderr so report output on stdout stays pipeable.
    - Stage messages, info and progress bars (tqdm) in verbose mode
    - Warnings unless quiet, errors always
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose and not quiet
        self.use_colors = use_colors
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def _echo(self, text: str):
        click.echo(text, err=True)

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a processing stage"""
        if not self.verbose:
            return
        self.stage_times[stage_name] = time.time()
        self._echo(self._colorize(f"==> {stage_name}", Fore.BLUE + Style.BRIGHT))
        if message:
            self._echo(f"   {message}")

    def stage_complete(self, stage_name: str, stats: Dict = None):
        """Mark completion of a processing stage"""
        if not self.verbose:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())
        self._echo(
            self._colorize(f"{stage_name} complete ({elapsed:.2f}s)", Fore.GREEN)
        )
        for key, value in (stats or {}).items():
            self._echo(f"   {key}: {value}")

    def create_progress_bar(self, total: int, desc: str = "Processing") -> Optional[tqdm]:
        """Progress bar over log lines, only in verbose mode"""
        if not self.verbose:
            return None
        return tqdm(
            total=total,
            desc=desc,
            unit=" lines",
            file=sys.stderr,
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        if self.verbose:
            self._echo(message)

    def warning(self, message: str):
        if not self.quiet:
            self._echo(self._colorize(f"WARNING: {message}", Fore.YELLOW + Style.BRIGHT))

    def error(self, message: str):
        """Display error message (always shown)"""
        self._echo(self._colorize(f"ERROR: {message}", Fore.RED + Style.BRIGHT))


# ============================================================================
# LOG ANALYZER
# ============================================================================


class PacmanLog:
    """
    Loads a pacman log into the in-memory event list shared by all reports.
    """

    def __init__(self, path: str = DEFAULT_LOG_FILE, reporter: Optional[ProgressReporter] = None):
        self.path = path
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.events: List[Event] = []
        self.lines_read = 0
        self.skipped_lines = 0

    def load(self) -> List[Event]:
        """Read and parse the whole log. Raises LogReadError."""
        self.reporter.stage_start("Log Parsing", f"Reading {self.path}")
        lines = read_log_lines(self.path)

        progress_bar = self.reporter.create_progress_bar(len(lines), desc="Parsing log")
        events = []
        skipped = 0
        for line in lines:
            event = parse_line(line)
            if event is None:
                skipped += 1
            else:
                events.append(event)
            if progress_bar is not None:
                progress_bar.update(1)
        if progress_bar is not None:
            progress_bar.close()

        self.events = events
        self.lines_read = len(lines)
        self.skipped_lines = skipped

        self.reporter.stage_complete(
            "Log Parsing",
            {
                "Lines read": f"{self.lines_read:,}",
                "Events": f"{len(self.events):,}",
                "Lines without events": f"{self.skipped_lines:,}",
            },
        )
        return self.events


# ============================================================================
# REPORTS
# ============================================================================


class Session:
    """Per-invocation state shared by the CLI subcommands"""

    def __init__(self, resolver: ConfigResolver, reporter: ProgressReporter, palette: Palette):
        self.resolver = resolver
        self.reporter = reporter
        self.palette = palette
        self._events = None

    @property
    def events(self) -> List[Event]:
        if self._events is None:
            log = PacmanLog(self.resolver.get("log_file"), self.reporter)
            self._events = log.load()
        return self._events

    def echo(self, text: str = ""):
        # click strips ANSI codes when stdout is not a terminal
        click.echo(text)


def summary_report(session: Session, as_json: bool = False):
    stats = summarize(session.events)
    if as_json:
        session.echo(json.dumps({"schema_version": SCHEMA_VERSION, **stats.to_dict()}, indent=2))
        return

    rows = [
        ("Events", stats.events),
        ("Commands", stats.commands),
        ("Packages", stats.packages),
        ("Installs", stats.installs),
        ("Removals", stats.removals),
        ("Upgrades", stats.upgrades),
        ("Downgrades", stats.downgrades),
        ("Updates", stats.updates),
    ]
    if stats.first_seen:
        rows.append(("First event", stats.first_seen))
        rows.append(("Last event", stats.last_seen))
    for label, value in rows:
        session.echo(f"{session.palette.bold(label + ':')} {value}")


def top_report(session: Session, what: str, n: int, as_json: bool = False):
    if what == "commands":
        table = count_commands(session.events)
    else:
        table = count_packages(session.events, what)
    entries = table.most_common(n)

    if as_json:
        session.echo(
            json.dumps(
                {
                    "schema_version": SCHEMA_VERSION,
                    "kind": what,
                    "total": table.total(),
                    "entries": [{"name": key, "count": count} for key, count in entries],
                },
                indent=2,
            )
        )
        return

    for key, count in entries:
        session.echo(f"{key}: {count} times")


def history_report(session: Session, n: int, count_mode: bool = False):
    for line in narrate_lines(session.events, n, session.palette, count_mode=count_mode):
        session.echo(line)


def intentional_report(session: Session, show_all: bool = False):
    result = reconcile(session.events)
    palette = session.palette

    if show_all:
        session.echo(palette.header(f"Explicitly installed ({len(result.intentional)}):"))
    for package in result.intentional:
        # never-removed packages stand out, reinstalled ones are plain
        session.echo(package.name if package.removed_before else palette.bold(package.name))

    if show_all:
        session.echo()
        session.echo(palette.header(f"Dependencies ({len(result.dependencies)}):"))
        for package in result.dependencies:
            session.echo(palette.faint(package.name))


def time_report(
    session: Session,
    unit: str,
    kinds: Tuple[str, ...] = (),
    chart: bool = False,
    height: int = 10,
    width: int = 3,
    as_json: bool = False,
):
    table = TimeBuckets.from_events(session.events, kinds).table(unit)
    columns = fill_gaps(table)

    if as_json:
        session.echo(
            json.dumps(
                {
                    "schema_version": SCHEMA_VERSION,
                    "unit": unit,
                    "total": table.total(),
                    "buckets": {str(key): count for key, count in columns},
                },
                indent=2,
            )
        )
        return

    if chart:
        try:
            rows = render_chart(table, height=height, width=width)
        except ValueError as e:
            raise PacHistoryError(str(e)) from e
        for row in rows:
            session.echo(row)
        return

    for key, count in columns:
        session.echo(f"{key}: {count}")


# ============================================================================
# CLI INTERFACE
# ============================================================================


def _run_report(session: Session, report, *args, **kwargs):
    """Run one report; report failures are printed and end the command"""
    try:
        report(session, *args, **kwargs)
    except PacHistoryError as e:
        session.reporter.error(str(e))
        sys.exit(1)


def _load_or_exit(session: Session):
    try:
        session.events
    except LogReadError as e:
        session.reporter.error(str(e))
        sys.exit(1)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "-f",
    "--log-file",
    type=click.Path(dir_okay=False),
    help=f"Pacman log file (default: {DEFAULT_LOG_FILE})",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress warnings"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show parsing progress and statistics",
)
@click.version_option(version=VERSION)
@click.pass_context
def main(ctx, log_file, config, **kwargs):
    """
    Pacman History Analyzer

    Statistics and narratives from the pacman transaction log.
    """
    just_fix_windows_console()

    # unset flags defer to the config file
    cli_args = {key: value or None for key, value in kwargs.items()}
    cli_args["log_file"] = log_file
    startup_reporter = ProgressReporter(
        quiet=bool(cli_args["quiet"]), use_colors=not cli_args["no_color"]
    )
    try:
        resolver = ConfigResolver(cli_args, config, reporter=startup_reporter)
    except ConfigError as e:
        startup_reporter.error(str(e))
        sys.exit(1)

    use_colors = not resolver.get("no_color")
    reporter = ProgressReporter(
        quiet=bool(resolver.get("quiet")),
        verbose=bool(resolver.get("verbose")),
        use_colors=use_colors,
    )
    if resolver.config_path:
        reporter.info(f"Using configuration: {resolver.config_path}")

    ctx.obj = Session(resolver, reporter, Palette(use_colors=use_colors))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
@click.pass_obj
def summary(session, as_json):
    """Headline counters for the whole log."""
    _load_or_exit(session)
    _run_report(session, summary_report, as_json=as_json)


@main.command()
@click.argument(
    "what",
    type=click.Choice(["commands", *ACTIONS]),
    default="commands",
    required=False,
)
@click.option("-n", "--number", type=int, help="Number of entries (default: 10)")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
@click.pass_obj
def top(session, what, number, as_json):
    """Most frequent commands or packages."""
    _load_or_exit(session)
    n = number if number is not None else session.resolver.get("top")
    _run_report(session, top_report, what, n, as_json=as_json)


@main.command()
@click.option("-n", "--number", type=int, help="Number of transactions (default: 20)")
@click.option(
    "--count",
    "count_mode",
    is_flag=True,
    help="Show every transaction with package delta and running total",
)
@click.pass_obj
def history(session, number, count_mode):
    """What each recent command did, oldest first."""
    _load_or_exit(session)
    n = number if number is not None else session.resolver.get("number")
    _run_report(session, history_report, n, count_mode=count_mode)


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Also list dependency-only packages")
@click.pass_obj
def intentional(session, show_all):
    """Installed packages that were requested by name."""
    _load_or_exit(session)
    _run_report(session, intentional_report, show_all=show_all)


@main.command(name="time")
@click.option(
    "-u",
    "--unit",
    type=click.Choice(list(TIME_UNITS)),
    default="month",
    show_default=True,
    help="Calendar unit to bucket by",
)
@click.option(
    "-k",
    "--kind",
    "kinds",
    type=click.Choice(list(EVENT_KINDS)),
    multiple=True,
    help="Only count these event kinds (repeatable)",
)
@click.option("--chart", is_flag=True, help="Draw an ASCII bar chart")
@click.option("--height", type=int, help="Chart height in rows")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
@click.pass_obj
def time_command(session, unit, kinds, chart, height, as_json):
    """Event distribution over years, months, days or hours."""
    _load_or_exit(session)
    _run_report(
        session,
        time_report,
        unit,
        kinds=kinds,
        chart=chart,
        height=height if height is not None else session.resolver.get("chart_height"),
        width=session.resolver.get("bar_width"),
        as_json=as_json,
    )


@main.command()
@click.pass_obj
def report(session):
    """Run the summary, top commands, history and intentional reports."""
    _load_or_exit(session)

    top_n = session.resolver.get("top")
    history_n = session.resolver.get("number")
    sections = [
        ("Summary", summary_report, (), {}),
        ("Top commands", top_report, ("commands", top_n), {}),
        ("History", history_report, (history_n,), {}),
        ("Intentional packages", intentional_report, (), {}),
    ]

    failures = 0
    for index, (title, section, args, kwargs) in enumerate(sections):
        if index:
            session.echo()
        session.echo(session.palette.header(title))
        try:
            section(session, *args, **kwargs)
        except PacHistoryError as e:
            failures += 1
            session.reporter.error(f"{title} report failed: {e}")

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
