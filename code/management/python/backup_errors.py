#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Error taxonomy shared by every manager.

Per-stack failures are caught and logged by the managers themselves; the
exceptions below are the ones that cross manager boundaries and, when they
reach the orchestrator, abort the operation.
"""

from typing import Optional


class BackupManagerError(Exception):
    """Base class for all errors raised by the backup manager."""


class LockContention(BackupManagerError):
    """Another invocation already holds the operation lock."""

    def __init__(self, kind: str, owner_pid: int, lock_file: str):
        self.kind = kind
        self.owner_pid = owner_pid
        self.lock_file = lock_file
        super().__init__(
            f"Another '{kind}' operation is already running (PID: {owner_pid}). "
            f"If this is incorrect, remove the lock file: rm '{lock_file}'"
        )


AlreadyRunning = LockContention


class AuthError(BackupManagerError):
    """Authentication against the container-management API failed."""


class ApiError(BackupManagerError):
    """A registry call failed or returned a body that could not be decoded."""

    def __init__(
        self, message: str, status_code: Optional[int] = None, body: str = ""
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ConflictError(ApiError):
    """The registry refused a create because the name is already taken."""


class ArchiveCorrupt(BackupManagerError):
    """An archive failed its post-build or pre-restore integrity checks."""


class BackupIOError(BackupManagerError):
    """A disk or permission problem while reading or writing host paths."""


class SpaceError(BackupIOError):
    """Not enough free space on the backup volume."""


class VerificationTimeout(BackupManagerError):
    """A state did not converge within its wall-clock budget."""


class ConfigError(BackupManagerError):
    """The configuration file is malformed or holds invalid values."""
