"""Append-only execution log."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

import orjson

from paperpilot.models import ExecutionLogEntry


class ExecutionLedger:
    """Append-only record of every attempted state-changing action.

    Entries are written as JSON lines; ``ledger_path=None`` keeps them in memory.
    """

    def __init__(self, ledger_path: str | Path | None = None) -> None:
        self._file: Path | None = None
        self._entries: list[ExecutionLogEntry] = []
        if ledger_path is not None:
            directory = Path(ledger_path)
            directory.mkdir(parents=True, exist_ok=True)
            self._file = directory / "executions.jsonl"
            self._entries = list(self._iter_file())

    def append(self, entry: ExecutionLogEntry) -> None:
        if self._file is not None:
            with open(self._file, "ab") as handle:
                handle.write(orjson.dumps(entry.to_dict()) + b"\n")
        self._entries.append(entry)

    def entries(self) -> list[ExecutionLogEntry]:
        return list(self._entries)

    def since(self, cutoff: datetime) -> list[ExecutionLogEntry]:
        return [e for e in self._entries if e.timestamp >= cutoff]

    def tail(self, limit: int) -> list[ExecutionLogEntry]:
        if limit <= 0:
            return []
        return self._entries[-limit:]

    def window(self, now: datetime, hours: float) -> list[ExecutionLogEntry]:
        return self.since(now - timedelta(hours=hours))

    def _iter_file(self) -> Iterable[ExecutionLogEntry]:
        if self._file is None or not self._file.exists():
            return
        with open(self._file, "rb") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    yield ExecutionLogEntry.from_dict(orjson.loads(line))
                except orjson.JSONDecodeError:
                    # A torn final line from a crash mid-append.
                    continue
