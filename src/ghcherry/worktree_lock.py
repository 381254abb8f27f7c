from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import os
from pathlib import Path
import secrets
from typing import Iterator


LOCK_FILENAME = "gh-cherry.lock"


class WorkingCopyLockError(RuntimeError):
    """Another gh-cherry process is already mutating this working copy."""


@dataclass(frozen=True)
class _LockOwner:
    pid: int | None
    command: str | None
    token: str | None


@contextmanager
def working_copy_lock(*, git_dir: Path, command: str) -> Iterator[None]:
    lock = _WorkingCopyLock(lock_path=git_dir / LOCK_FILENAME, command=command)
    lock.acquire()
    try:
        yield
    finally:
        lock.release()


class _WorkingCopyLock:
    def __init__(self, *, lock_path: Path, command: str) -> None:
        self._lock_path = lock_path
        self._command = command
        self._token: str | None = None

    def acquire(self) -> None:
        # Second attempt only happens after a stale lock was removed.
        for _ in range(2):
            try:
                fd = os.open(self._lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._clear_stale_lock():
                    continue
                raise WorkingCopyLockError(self._busy_message()) from None

            token = secrets.token_hex(16)
            payload = {
                "pid": os.getpid(),
                "command": self._command,
                "started_at": datetime.now(timezone.utc).isoformat(),
                "token": token,
            }
            try:
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
            except OSError:
                os.close(fd)
                self._lock_path.unlink(missing_ok=True)
                raise
            os.close(fd)
            self._token = token
            return

        raise WorkingCopyLockError(self._busy_message())

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        if _read_owner(self._lock_path).token != token:
            return
        self._lock_path.unlink(missing_ok=True)

    def _clear_stale_lock(self) -> bool:
        owner = _read_owner(self._lock_path)
        if owner.pid is None or owner.pid == os.getpid() or _pid_is_running(owner.pid):
            return False
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True

    def _busy_message(self) -> str:
        owner = _read_owner(self._lock_path)
        detail = []
        if owner.pid is not None:
            detail.append(f"pid={owner.pid}")
        if owner.command:
            detail.append(f"command={owner.command}")
        suffix = f" ({', '.join(detail)})" if detail else ""
        return (
            f"Another gh-cherry process appears to own this working copy{suffix}. "
            f"Lock file: {self._lock_path}. Remove it if no such process is running."
        )


def _read_owner(lock_path: Path) -> _LockOwner:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return _LockOwner(pid=None, command=None, token=None)
    if not isinstance(payload, dict):
        return _LockOwner(pid=None, command=None, token=None)
    pid = payload.get("pid")
    command = payload.get("command")
    token = payload.get("token")
    return _LockOwner(
        pid=pid if isinstance(pid, int) else None,
        command=command if isinstance(command, str) else None,
        token=token if isinstance(token, str) else None,
    )


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True
