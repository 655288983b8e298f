#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Read-only health checks run after an operation.

Each battery returns a `ValidationResult` listing the checks that ran and a
human-readable line for every failure. Nothing here changes host state.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

# --- LOCAL APPLICATION IMPORTS ---
from archive_builder import ArchiveBuilder, find_archives
from backup_errors import ApiError, ArchiveCorrupt, AuthError, BackupManagerError
from config_manager import Config
from docker_manager import DockerComposeManager
from portainer_client import PortainerClient
from snapshot_reconciler import StackSnapshot

VALIDATION_KINDS = ("backup", "restore", "setup", "config")


@dataclass
class ValidationResult:
    kind: str
    checks: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failures

    def __bool__(self) -> bool:
        return self.passed


class SystemValidator:
    """Runs the check battery that fits the operation just performed."""

    def __init__(
        self,
        config: Config,
        client: PortainerClient,
        docker: DockerComposeManager,
        archives: Optional[ArchiveBuilder] = None,
    ):
        self.config = config
        self.client = client
        self.docker = docker
        self.archives = archives or ArchiveBuilder()

    def _check(self, result: ValidationResult, name: str, check: Callable[[], Optional[str]]):
        result.checks.append(name)
        try:
            failure = check()
        except (BackupManagerError, OSError) as e:
            failure = f"{name}: {e}"
        if failure:
            logging.warning(f"Validation failed: {failure}")
            result.failures.append(failure)
        else:
            logging.info(f"Validation passed: {name}")

    # --- Individual checks (return a failure string or None) ---

    def check_daemon(self) -> Optional[str]:
        if not self.docker.daemon_active():
            return "Docker daemon is not running"
        if not self.docker.socket_accessible():
            return f"User '{self.config.portainer_user}' cannot access the Docker socket"
        return None

    def check_api(self) -> Optional[str]:
        if not self.client.is_reachable():
            return f"Portainer API is not reachable at {self.client.api_url}"
        return None

    def check_control_plane_container(self) -> Optional[str]:
        if not self.docker.container_running("portainer"):
            return "Portainer container is not running"
        return None

    def check_stack_errors(self) -> Optional[str]:
        try:
            broken = [s.name for s in self.client.list_stacks() if s.status == "error"]
        except (ApiError, AuthError) as e:
            return f"Could not list stacks: {e}"
        if broken:
            return f"Stacks in error state: {', '.join(broken)}"
        return None

    def check_expected_stacks(self, snapshot: StackSnapshot) -> Optional[str]:
        expected = [s.name for s in snapshot.stacks if s.running]
        try:
            missing = [name for name in expected if not self.client.stack_running(name)]
        except (ApiError, AuthError) as e:
            return f"Could not query stack containers: {e}"
        if missing:
            return f"Stacks recorded as running are not running: {', '.join(missing)}"
        return None

    def check_latest_archive(self, archive: Optional[Path] = None) -> Optional[str]:
        if archive is None:
            found = find_archives(Path(self.config.backup_path), self.config.archive_prefix)
            if not found:
                return f"No backups found in {self.config.backup_path}"
            archive = found[0]
        try:
            self.archives.verify(archive)
        except ArchiveCorrupt as e:
            return str(e)
        return None

    def check_config(self) -> Optional[str]:
        problems = []
        for role, path in self.config.data_roots().items():
            if not Path(path).is_dir():
                problems.append(f"{role} path {path} does not exist")
        backup_dir = Path(self.config.backup_path)
        if backup_dir.is_dir() and not os.access(backup_dir, os.W_OK):
            problems.append(f"backup path {backup_dir} is not writable")
        if not self.config.credentials_file.exists():
            problems.append(f"credentials file {self.config.credentials_file} is missing")
        return "; ".join(problems) or None

    # --- Batteries ---

    def validate(
        self,
        kind: str,
        snapshot: Optional[StackSnapshot] = None,
        archive: Optional[Path] = None,
    ) -> ValidationResult:
        if kind not in VALIDATION_KINDS:
            raise ValueError(f"Unknown validation kind '{kind}'.")
        logging.info(f"--- Running {kind} validation ---")
        result = ValidationResult(kind)

        if kind == "config":
            self._check(result, "configuration", self.check_config)
        else:
            self._check(result, "docker daemon", self.check_daemon)
            self._check(result, "portainer container", self.check_control_plane_container)
            self._check(result, "portainer api", self.check_api)

        if kind == "backup":
            self._check(result, "archive integrity", lambda: self.check_latest_archive(archive))
        elif kind == "restore":
            self._check(result, "stack error states", self.check_stack_errors)
            if snapshot is not None:
                self._check(result, "expected stacks", lambda: self.check_expected_stacks(snapshot))
        elif kind == "setup":
            self._check(result, "configuration", self.check_config)

        if result.passed:
            logging.info(f"--- {kind.capitalize()} validation passed ({len(result.checks)} checks) ---")
        else:
            logging.warning(
                f"--- {kind.capitalize()} validation found {len(result.failures)} problem(s) ---"
            )
        return result
