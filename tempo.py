#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tempo
=====

Personal time tracking utility for the command line.

Features
--------
- Start/Stop missions; starting a mission closes the one in progress
- Resume the most recently started mission
- Status of the active mission with elapsed time
- Listing of the latest missions, or of every mission since a date
  expression such as "yesterday", "2 weeks ago" or "2024-03-01"
- SQLite persistence in user data folder

Dependencies
------------
- Python 3.9+

Usage
-----
tempo start write the report
tempo status
tempo ls --from "last week"

The database location can be overridden with ``--db`` or the ``TEMPO_DB``
environment variable.

License: MIT
"""
from __future__ import annotations

import argparse
import calendar
import logging
import os
import re
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

__version__ = "0.1.0"

APP_NAME = "tempo"
DB_NAME = "tempo.db"
ENV_DB = "TEMPO_DB"
DEFAULT_LIMIT = 10

log = logging.getLogger(__name__)

# ----------------------------
# Utility helpers
# ----------------------------

def user_data_dir() -> Path:
    """Return a per‑user data directory suitable for the platform."""
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming"
        return Path(base) / APP_NAME
    else:
        # Linux and others
        base = os.environ.get("XDG_DATA_HOME") or (Path.home() / ".local" / "share")
        return Path(base) / APP_NAME


def resolve_db_path(override: Optional[str] = None) -> Path:
    """Database file: ``override``, then $TEMPO_DB, then the user data dir."""
    raw = override or os.environ.get(ENV_DB)
    if raw:
        return Path(raw).expanduser()
    return user_data_dir() / DB_NAME


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pretty_duration(seconds: int) -> str:
    neg = seconds < 0
    seconds = abs(int(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    sign = "-" if neg else ""
    return f"{sign}{h:02d}:{m:02d}:{s:02d}"


def format_timestamp(ts: datetime) -> str:
    """RFC 3339 text in UTC with a fixed width, so SQL text order is time order."""
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ----------------------------
# Errors
# ----------------------------

class TempoError(Exception):
    """Base class for every error reported to the user."""

    exit_code = 1


class PersistenceError(TempoError):
    """The database could not be opened, read or written."""

    exit_code = 2


class ParseError(TempoError):
    """A date expression could not be resolved to a timestamp."""


class InvalidRangeError(TempoError):
    """A report range does not start in the past."""


# ----------------------------
# Data model
# ----------------------------

@dataclass
class Mission:
    id: int
    name: str
    start_date: datetime
    end_date: Optional[datetime] = None

    @property
    def ongoing(self) -> bool:
        return self.end_date is None

    def elapsed(self, now: datetime) -> timedelta:
        """Time spent so far, truncated to whole seconds."""
        end = self.end_date if self.end_date is not None else now
        return timedelta(seconds=int((end - self.start_date).total_seconds()))

    def as_record(self, now: datetime) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "ongoing": self.ongoing,
            "elapsed": self.elapsed(now),
        }


@dataclass(frozen=True)
class MissionCounts:
    total: int
    running: int

    @property
    def finished(self) -> int:
        return self.total - self.running


# ----------------------------
# Data layer
# ----------------------------

class Store:
    """Mission store backed by a single SQLite file.

    At most one mission is ongoing at a time: starting a mission first
    stops every ongoing one. ``clock`` returns the current aware datetime
    and defaults to the system clock in UTC.
    """

    def __init__(self, path: Path, clock: Optional[Callable[[], datetime]] = None):
        self.path = Path(path)
        self.clock = clock or utcnow
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.path)
        except (OSError, sqlite3.Error) as ex:
            raise PersistenceError(f"cannot open database {self.path}: {ex}") from ex
        self.conn.row_factory = sqlite3.Row
        try:
            self._init_schema()
        except PersistenceError:
            self.conn.close()
            raise
        log.debug("opened mission store at %s", self.path)

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self):
        self._write(
            """
            CREATE TABLE IF NOT EXISTS missions(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                start_date TEXT NOT NULL,
                end_date TEXT
            );
            """
        )

    # --- statement helpers ---
    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
        except sqlite3.Error as ex:
            raise PersistenceError(f"{self.path}: {ex}") from ex
        return cur

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as ex:
            raise PersistenceError(f"{self.path}: {ex}") from ex

    def _query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    @staticmethod
    def _to_mission(row: sqlite3.Row) -> Mission:
        try:
            return Mission(
                id=int(row["id"]),
                name=row["name"],
                start_date=parse_timestamp(row["start_date"]),
                end_date=parse_timestamp(row["end_date"]) if row["end_date"] is not None else None,
            )
        except (TypeError, ValueError) as ex:
            raise PersistenceError(f"corrupt mission row {row['id']}: {ex}") from ex

    def now(self) -> datetime:
        return self.clock()

    # --- mission ops ---
    def start_mission(self, name: str) -> Mission:
        stopped = self.stop_active_missions()
        if stopped:
            log.debug("auto-stopped %d mission(s) before starting %r", stopped, name)
        now = self.now().astimezone(timezone.utc)
        cur = self._write(
            "INSERT INTO missions(name, start_date) VALUES(?, ?)",
            (name, format_timestamp(now)),
        )
        mission = Mission(id=int(cur.lastrowid), name=name, start_date=now)
        log.debug("started mission %d %r", mission.id, name)
        return mission

    def stop_active_missions(self) -> int:
        """Close every ongoing mission; returns how many were closed."""
        cur = self._write(
            "UPDATE missions SET end_date=? WHERE end_date IS NULL",
            (format_timestamp(self.now()),),
        )
        return cur.rowcount

    def resume_latest_mission(self) -> Optional[Mission]:
        """Reopen the most recently started mission, whatever its state.

        Other ongoing missions are left untouched.
        """
        row = self._query_one(
            "SELECT * FROM missions ORDER BY start_date DESC, id DESC LIMIT 1"
        )
        if row is None:
            log.debug("nothing to resume")
            return None
        mission = self._to_mission(row)
        self._write("UPDATE missions SET end_date=NULL WHERE id=?", (mission.id,))
        mission.end_date = None
        running = self.counts().running
        if running > 1:
            log.warning(
                "resumed mission %d while %d other mission(s) are ongoing",
                mission.id,
                running - 1,
            )
        log.debug("resumed mission %d %r", mission.id, mission.name)
        return mission

    def get_active_mission(self) -> Optional[Mission]:
        row = self._query_one(
            """
            SELECT * FROM missions
            WHERE end_date IS NULL
            ORDER BY start_date DESC, id DESC
            LIMIT 1
            """
        )
        return self._to_mission(row) if row is not None else None

    def list_missions(self, limit: int = DEFAULT_LIMIT) -> "MissionListing":
        return MissionListing(self, limit)

    def missions_since(self, bound: datetime) -> List[Mission]:
        """Missions started at or after ``bound``, plus every ongoing mission."""
        rows = self._query(
            """
            SELECT * FROM missions
            WHERE start_date >= ? OR end_date IS NULL
            ORDER BY start_date DESC, id DESC
            """,
            (format_timestamp(bound),),
        )
        return [self._to_mission(r) for r in rows]

    def counts(self) -> MissionCounts:
        row = self._query_one(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(end_date IS NULL), 0) AS running
            FROM missions
            """
        )
        return MissionCounts(total=int(row["total"]), running=int(row["running"]))

    def elapsed_time(self, mission: Mission) -> timedelta:
        return mission.elapsed(self.now())


class MissionListing:
    """The latest ``limit`` missions, newest id first.

    Nothing is read until iteration; every iteration queries the store again.
    """

    def __init__(self, store: Store, limit: int):
        self.store = store
        self.limit = limit

    def __iter__(self) -> Iterator[Mission]:
        rows = self.store._query(
            "SELECT * FROM missions ORDER BY id DESC LIMIT ?", (self.limit,)
        )
        for row in rows:
            yield self.store._to_mission(row)


# ----------------------------
# Report resolver
# ----------------------------

# resolve(expression, anchor) -> timestamp, raising ParseError
DateResolver = Callable[[str, datetime], datetime]

_UNIT_ALIASES = {"sec": "second", "min": "minute", "hr": "hour"}
_UNITS = ("second", "minute", "hour", "day", "week", "month", "year")
_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_AGO_RE = re.compile(r"^(?P<num>\d+|an?)\s+(?P<unit>[a-z]+)\s+ago$")
_IN_RE = re.compile(r"^in\s+(?P<num>\d+|an?)\s+(?P<unit>[a-z]+)$")
_LAST_RE = re.compile(r"^last\s+(?P<unit>[a-z]+)$")
_THIS_RE = re.compile(r"^this\s+(?P<unit>week|month|year)$")


def _unit(word: str) -> Optional[str]:
    if word.endswith("s") and len(word) > 1:
        word = word[:-1]
    word = _UNIT_ALIASES.get(word, word)
    return word if word in _UNITS else None


def _amount(num: str) -> int:
    return 1 if num in ("a", "an") else int(num)


def _midnight(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _add_months(dt: datetime, months: int) -> datetime:
    total = dt.year * 12 + (dt.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _shift(dt: datetime, unit: str, amount: int) -> datetime:
    if unit == "month":
        return _add_months(dt, amount)
    if unit == "year":
        return _add_months(dt, 12 * amount)
    return dt + timedelta(**{unit + "s": amount})


def _previous_weekday(anchor: datetime, weekday: int) -> datetime:
    today = _midnight(anchor)
    back = (today.weekday() - weekday) % 7 or 7
    return today - timedelta(days=back)


def _is_local(anchor: datetime) -> bool:
    return (
        isinstance(anchor.tzinfo, timezone)
        and anchor.utcoffset() == anchor.astimezone().utcoffset()
    )


def _wall_time(wall: datetime, anchor: datetime) -> datetime:
    """Attach the anchor's zone to a wall clock time.

    An anchor in the system's local offset only knows the offset in force at
    the anchor instant, so local wall times get their own offset instead.
    """
    if _is_local(anchor):
        return wall.replace(tzinfo=None).astimezone()
    return wall.replace(tzinfo=anchor.tzinfo)


def _resolve(expression: str, anchor: datetime) -> datetime:
    raw = expression.strip()
    text = " ".join(raw.lower().split())
    if not text:
        raise ParseError("empty date expression")

    if text == "now":
        return anchor
    if text == "today":
        return _wall_time(_midnight(anchor), anchor)
    if text == "yesterday":
        return _wall_time(_midnight(anchor) - timedelta(days=1), anchor)
    if text == "tomorrow":
        return _wall_time(_midnight(anchor) + timedelta(days=1), anchor)

    m = _AGO_RE.match(text) or _IN_RE.match(text)
    if m:
        unit = _unit(m.group("unit"))
        if unit is None:
            raise ParseError(f"unknown time unit {m.group('unit')!r} in {expression!r}")
        amount = _amount(m.group("num"))
        return _shift(anchor, unit, amount if text.startswith("in ") else -amount)

    m = _THIS_RE.match(text)
    if m:
        today = _midnight(anchor)
        unit = m.group("unit")
        if unit == "week":
            start = today - timedelta(days=today.weekday())
        elif unit == "month":
            start = today.replace(day=1)
        else:
            start = today.replace(month=1, day=1)
        return _wall_time(start, anchor)

    m = _LAST_RE.match(text)
    word = m.group("unit") if m else text
    if word in _WEEKDAYS:
        return _wall_time(_previous_weekday(anchor, _WEEKDAYS.index(word)), anchor)
    if m:
        unit = _unit(word)
        if unit is None:
            raise ParseError(f"unknown time unit {word!r} in {expression!r}")
        return _shift(anchor, unit, -1)

    try:
        ts = datetime.fromisoformat(raw)
    except ValueError:
        raise ParseError(f"cannot understand date expression {expression!r}") from None
    if ts.tzinfo is None:
        ts = _wall_time(ts, anchor)
    return ts


def resolve_date_expression(expression: str, anchor: datetime) -> datetime:
    """Resolve a human date expression relative to ``anchor``.

    Understands "now", "today", "yesterday", "tomorrow", "3 days ago",
    "an hour ago", "in 2 weeks", "last month", "this week", weekday names
    ("friday", "last monday") and ISO 8601 dates or date-times. Midnights
    and naive ISO values are wall times in the anchor's timezone, or in the
    system timezone when the anchor is local time. Raises ParseError
    otherwise, including for dates that cannot be represented in UTC.
    """
    try:
        ts = _resolve(expression, anchor)
        ts.astimezone(timezone.utc)
    except (ValueError, OverflowError, OSError) as ex:
        raise ParseError(f"date expression {expression!r} is out of range: {ex}") from ex
    return ts


def resolve_report_start(
    expression: str,
    now: datetime,
    resolver: DateResolver = resolve_date_expression,
) -> datetime:
    start = resolver(expression, now)
    if start >= now:
        raise InvalidRangeError(
            f"range must start in the past ({expression!r} resolves to {start.isoformat()})"
        )
    return start


def report(
    store: Store,
    expression: str,
    resolver: DateResolver = resolve_date_expression,
) -> List[Mission]:
    """Missions started since ``expression``, plus any still ongoing one."""
    now = store.now().astimezone()
    start = resolve_report_start(expression, now, resolver)
    log.debug("report window starts at %s", start.isoformat())
    return store.missions_since(start)


# ----------------------------
# CLI layer
# ----------------------------

def format_local(ts: datetime) -> str:
    return ts.astimezone().strftime("%Y-%m-%d %H:%M")


def render_table(records: List[Dict[str, object]]) -> str:
    headers = ("ID", "Name", "Start", "End", "Elapsed")
    rows = [
        (
            str(r["id"]),
            str(r["name"]),
            format_local(r["start_date"]),
            "ongoing" if r["ongoing"] else format_local(r["end_date"]),
            pretty_duration(int(r["elapsed"].total_seconds())),
        )
        for r in records
    ]
    widths = [max([len(h)] + [len(row[i]) for row in rows]) for i, h in enumerate(headers)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip()]
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)).rstrip())
    return "\n".join(lines)


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if n < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return n


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=APP_NAME, description="Personal time tracking utility.")
    p.add_argument("--db", default=None, help=f"Path to the SQLite database (default: ${ENV_DB} or the user data directory).")
    p.add_argument("-v", "--verbose", action="store_true", help="Log debug information to stderr.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True, metavar="COMMAND")

    ps = sub.add_parser("start", help="Start a new mission, stopping the ongoing one.")
    ps.add_argument("name", nargs="+", help="The name of the mission.")

    sub.add_parser("status", help="Show the current mission status.")
    sub.add_parser("stop", help="Stop all ongoing missions.")
    sub.add_parser("resume", help="Resume the latest mission.")

    pl = sub.add_parser("ls", help="List the missions.")
    pl.add_argument("--from", dest="since", default=None, metavar="EXPR",
                    help='List missions started since EXPR, e.g. "yesterday", "2 weeks ago", "2024-03-01".')
    pl.add_argument("-n", "--limit", type=_positive_int, default=DEFAULT_LIMIT,
                    help=f"Number of missions to show without --from (default: {DEFAULT_LIMIT}).")

    sub.add_parser("info", help="Show the database location and mission counts.")
    return p


def cmd_start(store: Store, args: argparse.Namespace) -> None:
    mission = store.start_mission(" ".join(args.name).strip())
    print(f"New mission started: {mission.name}")


def cmd_status(store: Store, args: argparse.Namespace) -> None:
    mission = store.get_active_mission()
    if mission is None:
        print("No active mission")
        return
    elapsed = store.elapsed_time(mission)
    print(f"Active mission: {mission.name} -> {pretty_duration(int(elapsed.total_seconds()))}")


def cmd_stop(store: Store, args: argparse.Namespace) -> None:
    stopped = store.stop_active_missions()
    if stopped:
        print(f"Stopped {stopped} ongoing mission(s)")
    else:
        print("No ongoing mission to stop")


def cmd_resume(store: Store, args: argparse.Namespace) -> None:
    mission = store.resume_latest_mission()
    if mission is None:
        print("No mission to resume")
    else:
        print(f"Mission resumed: {mission.name}")


def cmd_ls(store: Store, args: argparse.Namespace) -> None:
    if args.since:
        missions = report(store, args.since)
        empty = "No missions in range."
    else:
        missions = list(store.list_missions(args.limit))
        empty = "No missions found."
    if not missions:
        print(empty)
        return
    now = store.now()
    print(render_table([m.as_record(now) for m in missions]))


def cmd_info(store: Store, args: argparse.Namespace) -> None:
    counts = store.counts()
    print(f"Database: {store.path}")
    print(f"Missions: {counts.total}")
    print(f"Running:  {counts.running}")
    print(f"Finished: {counts.finished}")


COMMANDS: Dict[str, Callable[[Store, argparse.Namespace], None]] = {
    "start": cmd_start,
    "status": cmd_status,
    "stop": cmd_stop,
    "resume": cmd_resume,
    "ls": cmd_ls,
    "info": cmd_info,
}


# ----------------------------
# Entry point
# ----------------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.cmd == "start" and not " ".join(args.name).strip():
        parser.error("mission name cannot be empty")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        with Store(resolve_db_path(args.db)) as store:
            COMMANDS[args.cmd](store, args)
    except TempoError as ex:
        log.debug("%s failed", args.cmd, exc_info=True)
        print(f"{APP_NAME}: error: {ex}", file=sys.stderr)
        return ex.exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())
