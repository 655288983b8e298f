#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
PID-tagged operation lock.

A single lock file guards every state-changing operation (backup, restore,
migrate, setup), so a backup and a restore can never run at the same time.
The file records which operation holds it and the owner's PID. A lock whose
owner is no longer alive is stale and is reclaimed by the next invocation,
escalating to `sudo rm` when the file belongs to another user.

Use it as a context manager; the lock is released on every exit path,
including exceptions and SIGTERM/SIGHUP.
"""

import log_setup
import logging
import json
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional, Tuple

try:
    import sh
except ImportError:
    print("[ERROR] The 'sh' library is not installed. Please run: pip install sh")
    sys.exit(1)

from backup_errors import BackupIOError, LockContention

LOCK_FILE_NAME = "backup_manager.lock"
OPERATION_KINDS = ("backup", "restore", "migrate", "setup")
# A lock file with no readable PID is treated as held for this long after
# creation; its owner may not have written the PID yet.
LOCK_GRACE_SECONDS = 5.0


def pid_alive(pid: int) -> bool:
    """True if a process with this PID exists (even if owned by another user)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _raise_system_exit(signum, frame):
    raise SystemExit(128 + signum)


class OperationLock:
    """Mutual exclusion for backup manager operations on one host."""

    def __init__(self, kind: str, lock_dir: str = "/tmp"):
        if kind not in OPERATION_KINDS:
            raise ValueError(f"Unknown operation kind '{kind}'.")
        self.kind = kind
        self.lock_file = Path(lock_dir) / LOCK_FILE_NAME
        self.acquired = False
        self._previous_handlers = {}

    # --- Lock file helpers ---

    def read_owner(self) -> Optional[Tuple[str, int]]:
        """Returns (operation, pid) from the lock file, or None if absent/unreadable."""
        try:
            content = self.lock_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logging.warning(f"Could not read lock file {self.lock_file}: {e}")
            return ("unknown", 0)

        try:
            data = json.loads(content)
            return (str(data.get("operation", "unknown")), int(data.get("pid", 0)))
        except (ValueError, TypeError, AttributeError):
            pass
        # Older lock files held just the PID.
        try:
            return ("unknown", int(content))
        except ValueError:
            return ("unknown", 0)

    def _just_created(self) -> bool:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except OSError:
            return False
        return age < LOCK_GRACE_SECONDS

    def _remove_stale(self):
        logging.warning(f"Removing stale lock file: {self.lock_file}")
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            return
        except PermissionError:
            try:
                sh.sudo.rm("-f", str(self.lock_file))
            except sh.ErrorReturnCode as e:
                raise BackupIOError(
                    f"Cannot remove stale lock file {self.lock_file}. "
                    f"Please run: sudo rm -f '{self.lock_file}'"
                ) from e

    def _write(self) -> bool:
        payload = json.dumps({"operation": self.kind, "pid": os.getpid()})
        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise BackupIOError(f"Cannot create lock file {self.lock_file}: {e}") from e
        with os.fdopen(fd, "w") as f:
            f.write(payload)
        return True

    # --- Public API ---

    def acquire(self) -> "OperationLock":
        """Takes the lock or raises LockContention if a live process holds it."""
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            if self._write():
                self.acquired = True
                logging.info(f"Acquired '{self.kind}' operation lock: {self.lock_file}")
                return self

            owner = self.read_owner()
            if owner is None:
                continue  # released between our attempts
            owner_kind, owner_pid = owner
            if owner_pid == os.getpid():
                raise LockContention(owner_kind, owner_pid, str(self.lock_file))
            if pid_alive(owner_pid):
                raise LockContention(owner_kind, owner_pid, str(self.lock_file))
            if owner_pid == 0 and self._just_created():
                raise LockContention(owner_kind, owner_pid, str(self.lock_file))
            self._remove_stale()

        owner_kind, owner_pid = self.read_owner() or ("unknown", 0)
        raise LockContention(owner_kind, owner_pid, str(self.lock_file))

    def release(self):
        """Deletes the lock file if this process owns it."""
        if not self.acquired:
            return
        owner = self.read_owner()
        if owner and owner[1] == os.getpid():
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass
            except PermissionError:
                sh.sudo.rm("-f", str(self.lock_file), _ok_code=[0, 1])
        self.acquired = False
        logging.debug(f"Released '{self.kind}' operation lock.")

    # --- Context manager ---

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGTERM, signal.SIGHUP):
            self._previous_handlers[signum] = signal.signal(signum, _raise_system_exit)

    def _restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

    def __enter__(self) -> "OperationLock":
        self.acquire()
        self._install_signal_handlers()
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            self.release()
        finally:
            self._restore_signal_handlers()
        return False
