#!/usr/bin/env python3
"""Audit Logger - Append-only record of every mutation made to the store.

One line per event:

    2026-01-02T03:04:05.000000Z [1234] OK DESTROY secret/db versions=1,3

The log sits beside the store file and is rotated daily into
`<name>.YYYYMMDD`; rotated files older than the retention period are removed.
"""

import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional

from .paths import canonicalize, is_beneath

ROOT = "/"


class AuditRecord(NamedTuple):
    """One parsed audit line."""

    timestamp: str
    pid: int
    result: str
    action: str
    path: str
    versions: List[int]
    note: Optional[str]


def format_record(result, action, path, versions=None, note=None):
    fields = [
        datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        f"[{os.getpid()}]",
        result,
        action,
        canonicalize(path) or ROOT,
    ]
    if versions:
        fields.append("versions=" + ",".join(str(n) for n in versions))
    if note:
        fields.append(note)
    return " ".join(fields)


def parse_record(line: str) -> Optional[AuditRecord]:
    """Parse one line written by format_record; None if it is not one."""
    fields = line.rstrip("\n").split(" ", 5)
    if len(fields) < 5 or not fields[1].startswith("["):
        return None

    try:
        pid = int(fields[1].strip("[]"))
    except ValueError:
        return None

    versions: List[int] = []
    note = None
    if len(fields) == 6:
        rest = fields[5]
        if rest.startswith("versions="):
            numbers, _, rest = rest.partition(" ")
            versions = [int(n) for n in numbers[len("versions="):].split(",") if n.isdigit()]
        note = rest or None

    path = "" if fields[4] == ROOT else fields[4]
    return AuditRecord(fields[0], pid, fields[2], fields[3], path, versions, note)


class AuditLogger:
    """Append-only audit log of store mutations."""

    def __init__(self, log_path: Path, retention_days: int = 30):
        """Initialize audit logger.

        Args:
            log_path: Path to the log file (e.g., ~/.safe/store.log)
            retention_days: Number of days to keep rotated logs

        """
        self.log_path = Path(log_path)
        self.retention_days = retention_days
        self.lock = threading.Lock()
        self._last_rotation_check: Optional[datetime] = None

        if not self.log_path.parent.exists():
            self.log_path.parent.mkdir(mode=0o700, parents=True)
        self._touch()

    def _touch(self) -> None:
        """Create the current log file, owner-only, if it is missing."""
        fd = os.open(str(self.log_path), os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o600)
        os.close(fd)

    def record(
        self,
        action: str,
        path: str,
        versions: Optional[Iterable[int]] = None,
        result: str = "OK",
        note: Optional[str] = None
    ) -> None:
        """Append one event.

        Args:
            action: WRITE | DELETE | UNDELETE | DESTROY | DESTROY_ALL | MOUNT | UNLOCK
            path: Secret path or mount name
            versions: Version numbers the event touched
            result: OK, or DENIED for a refused unlock
            note: Free text appended after the versions

        """
        self._maybe_rotate()
        line = format_record(result, action, path, sorted(versions or []), note)

        with self.lock, open(self.log_path, "a") as f:
            f.write(line + "\n")

    def _maybe_rotate(self) -> None:
        """Rotate when the current log was last written before today (checked hourly)."""
        now = datetime.now(timezone.utc)
        if self._last_rotation_check and (now - self._last_rotation_check).total_seconds() < 3600:
            return
        self._last_rotation_check = now

        try:
            last_written = datetime.fromtimestamp(self.log_path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            return

        if last_written < now.replace(hour=0, minute=0, second=0, microsecond=0):
            self._rotate(last_written)
            self._expire_rotated()

    def _rotated_name(self, day: datetime) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{day.strftime('%Y%m%d')}")

    def _rotated_files(self) -> List[Path]:
        return list(self.log_path.parent.glob(f"{self.log_path.name}.*"))

    def _rotate(self, last_written: datetime) -> None:
        """Move the current log aside, named after the day it was last written."""
        target = self._rotated_name(last_written)
        if target.exists():
            return

        try:
            self.log_path.rename(target)
        except OSError:
            return
        self._touch()

    def _expire_rotated(self) -> None:
        """Remove rotated logs older than the retention period."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)

        for rotated in self._rotated_files():
            suffix = rotated.name.rsplit(".", 1)[-1]
            try:
                day = datetime.strptime(suffix, "%Y%m%d").replace(tzinfo=timezone.utc)
            except ValueError:
                # Not one of ours
                continue
            if day < cutoff:
                rotated.unlink(missing_ok=True)

    def read_recent(self, lines: int = 100) -> List[str]:
        """Raw lines from the current log, most recent last."""
        if not self.log_path.exists():
            return []

        with open(self.log_path) as f:
            return f.readlines()[-lines:]

    def records(self, path: Optional[str] = None, limit: int = 100) -> List[AuditRecord]:
        """Parsed events from the current log, optionally only those at or beneath `path`."""
        if not self.log_path.exists():
            return []

        with open(self.log_path) as f:
            parsed = [r for r in map(parse_record, f) if r is not None]

        if path:
            root = canonicalize(path)
            parsed = [r for r in parsed if is_beneath(r.path, root)]
        return parsed[-limit:]

    def get_log_files(self) -> List[Path]:
        """Current and rotated log files, newest first."""
        logs = [self.log_path] if self.log_path.exists() else []
        logs.extend(self._rotated_files())
        logs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return logs
