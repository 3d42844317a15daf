"""Exclusive lock so only one runtime trades against a given state directory.

The lock file holds a small JSON record of the owning runtime, so a refused
start can say who holds the portfolio and since when.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
import os
from pathlib import Path
import socket
from typing import TextIO

import orjson

from paperpilot.models import format_timestamp, utc_now


@dataclass(frozen=True)
class LockOwner:
    pid: int
    host: str
    started_at: str | None

    @classmethod
    def current(cls, now: datetime | None = None) -> "LockOwner":
        return cls(pid=os.getpid(), host=socket.gethostname(), started_at=format_timestamp(now or utc_now()))

    @classmethod
    def parse(cls, content: str) -> "LockOwner | None":
        try:
            data = orjson.loads(content)
        except orjson.JSONDecodeError:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("pid"), int) or data["pid"] <= 0:
            return None
        return cls(pid=data["pid"], host=str(data.get("host", "")), started_at=data.get("started_at"))


class RuntimeAlreadyRunning(RuntimeError):
    def __init__(self, lock_path: str, owner: LockOwner | None) -> None:
        self.lock_path = lock_path
        self.owner = owner
        detail = ""
        if owner:
            detail = f" by pid {owner.pid} on {owner.host or 'unknown host'}"
            if owner.started_at:
                detail += f" since {owner.started_at}"
        super().__init__(f"Portfolio state is already in use{detail}: {lock_path}")

    @property
    def pid(self) -> int | None:
        return self.owner.pid if self.owner else None


class SingleInstanceLock:
    """Hold an OS file lock on ``<state_dir>/paperpilot.lock`` while the runtime is up."""

    FILENAME = "paperpilot.lock"

    def __init__(self, state_dir: str | Path) -> None:
        self.path = Path(state_dir) / self.FILENAME
        self.owner: LockOwner | None = None
        self._fh: TextIO | None = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> LockOwner:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+", encoding="utf-8")
        fh.seek(0)
        previous = LockOwner.parse(fh.read())
        try:
            _set_lock(fh, locked=True)
        except OSError as exc:
            fh.close()
            raise RuntimeAlreadyRunning(str(self.path), previous) from exc
        owner = LockOwner.current()
        fh.seek(0)
        fh.truncate()
        fh.write(orjson.dumps(asdict(owner)).decode() + "\n")
        fh.flush()
        self._fh = fh
        self.owner = owner
        return owner

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            _set_lock(self._fh, locked=False)
        finally:
            self._fh.close()
            self._fh = None
            self.owner = None

    def __enter__(self) -> "SingleInstanceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.release()


def _set_lock(fh: TextIO, locked: bool) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK if locked else msvcrt.LK_UNLCK, 1)
        return

    import fcntl

    fcntl.flock(fh.fileno(), (fcntl.LOCK_EX | fcntl.LOCK_NB) if locked else fcntl.LOCK_UN)
