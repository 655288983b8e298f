#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Orchestrates the backup and restore pipelines.

Backup:
1. Captures every Portainer stack (compose file, env, status).
2. Records permission metadata for the directories to archive.
3. Stops non-essential stacks for a consistent copy.
4. Builds the archive (directories + snapshot + metadata).
5. Restarts the stacks it stopped, even if the archive failed.
6. Prunes old archives and validates the result.

Restore runs the same pieces the other way round and reconciles the live
stack set with the snapshot stored in the archive.

NOTE: This module does not call host commands itself. It delegates to the
      specialised managers and only decides the order of the steps and which
      failures are fatal.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import os
import platform
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

# --- LOCAL APPLICATION IMPORTS ---
from archive_builder import (
    METADATA_NAME,
    SNAPSHOT_NAME,
    ArchiveBuilder,
    ArchiveInfo,
    archive_name,
    find_archives,
    parse_archive_timestamp,
)
from backup_errors import (
    ApiError,
    AuthError,
    BackupIOError,
    BackupManagerError,
    VerificationTimeout,
)
from config_manager import Config
from docker_manager import DEFAULT_NETWORK, DockerComposeManager
from lifecycle_manager import LifecycleManager, LifecycleReport
from metadata_manager import MetadataManager, MetadataRestoreReport
from operation_lock import OperationLock
from pipeline import OnError, Pipeline, PipelineResult, Step
from portainer_client import PortainerClient
from recovery_ledger import write_recovery_info
from retention_manager import RetentionManager
from snapshot_reconciler import ReconcileReport, SnapshotReconciler, StackSnapshot, remove_tree
from system_validator import SystemValidator, ValidationResult

API_READY_TIMEOUT = 120.0


@dataclass
class BackupResult:
    archive: Path
    snapshot: StackSnapshot
    pipeline: PipelineResult
    validation: Optional[ValidationResult] = None


@dataclass
class RestoreResult:
    archive: Path
    snapshot: StackSnapshot
    pipeline: PipelineResult
    safety_backup: Optional[Path] = None
    reconcile: Optional[ReconcileReport] = None
    metadata: Optional[MetadataRestoreReport] = None
    validation: Optional[ValidationResult] = None


@dataclass
class BackupListing:
    path: Path
    size: int
    created_at: datetime


class RestoreCancelled(BackupManagerError):
    """The operator declined to continue a restore."""


class BackupManager:
    """Coordinates the backup and restore pipelines across all managers."""

    def __init__(
        self,
        config: Config,
        client: PortainerClient,
        docker: DockerComposeManager,
        lifecycle: Optional[LifecycleManager] = None,
        archives: Optional[ArchiveBuilder] = None,
        metadata: Optional[MetadataManager] = None,
        validator: Optional[SystemValidator] = None,
        confirm: Callable[[str], bool] = lambda message: False,
        extract_root: Path = Path("/"),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.client = client
        self.docker = docker
        self.lifecycle = lifecycle or LifecycleManager(config, client, docker, sleep=sleep)
        self.archives = archives or ArchiveBuilder()
        self.metadata = metadata or MetadataManager()
        self.retention = RetentionManager(config)
        self.validator = validator or SystemValidator(config, client, docker, self.archives)
        self.confirm = confirm
        self.extract_root = Path(extract_root)
        self.recovery_file: Optional[Path] = None

    def lock(self, kind: str) -> OperationLock:
        return OperationLock(kind, self.config.lock_dir)

    def _ledger(self, operation: str) -> Callable[[Dict[str, Any]], None]:
        def action(ctx: Dict[str, Any]) -> None:
            ctx["recovery_file"] = write_recovery_info(operation, self.config.recovery_dir)
            self.recovery_file = ctx["recovery_file"]

        return action

    # --- Listing ---

    def list_backups(self) -> List[BackupListing]:
        listings = []
        for path in find_archives(Path(self.config.backup_path), self.config.archive_prefix):
            stamp = parse_archive_timestamp(path.name, self.config.archive_prefix)
            listings.append(BackupListing(path, path.stat().st_size, stamp))
        return listings

    # ==========================================================================
    # Backup
    # ==========================================================================

    def _prepare_backup_dir(self, ctx: Dict[str, Any]) -> None:
        backup_dir = Path(self.config.backup_path)
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupIOError(f"Cannot create backup directory {backup_dir}: {e}") from e
        if not os.access(backup_dir, os.W_OK):
            raise BackupIOError(f"Backup directory {backup_dir} is not writable.")

    def _capture_snapshot(self, ctx: Dict[str, Any]) -> None:
        try:
            ctx["snapshot"] = StackSnapshot.capture(self.client, ctx["now"])
            ctx["api_available"] = True
        except (ApiError, AuthError) as e:
            logging.warning(f"Could not capture stack states from Portainer: {e}")
            logging.warning("The stack snapshot will be marked incomplete.")
            ctx["snapshot"] = StackSnapshot(
                captured_at=ctx["now"].strftime("%Y-%m-%d %H:%M:%S"), complete=False
            )
            ctx["api_available"] = False

    def archive_paths(self, snapshot: StackSnapshot) -> List[Path]:
        """Portainer's data plus the data directory of every captured stack."""
        paths: List[Path] = []
        portainer = Path(self.config.portainer_path)
        if portainer.is_dir():
            paths.append(portainer)
        else:
            logging.warning(f"Portainer path {portainer} does not exist; skipping it.")

        stack_dirs = []
        for stack in snapshot.stacks:
            data_dir = self.config.stack_data_dir(stack.name)
            if data_dir.is_dir():
                if data_dir not in stack_dirs:
                    stack_dirs.append(data_dir)
            else:
                logging.warning(f"Data directory for stack '{stack.name}' not found: {data_dir}")

        if not stack_dirs:
            logging.info("No stack directories identified; archiving the whole tools path.")
            for fallback in (Path(self.config.npm_path), Path(self.config.tools_path)):
                if fallback.is_dir():
                    stack_dirs.append(fallback)

        paths.extend(stack_dirs)
        if not paths:
            raise BackupIOError("Nothing to back up: none of the configured paths exist.")
        return paths

    def _record_metadata(self, ctx: Dict[str, Any]) -> None:
        paths = self.archive_paths(ctx["snapshot"])
        ctx["paths"] = paths
        record = self.metadata.record(
            paths,
            paths={
                "portainer": self.config.portainer_path,
                "tools": self.config.tools_path,
                "npm": self.config.npm_path,
                "backup": self.config.backup_path,
                "archived": [str(p.resolve()) for p in paths],
            },
            runtime_version=self.docker.docker_version(),
            now=ctx["now"],
        )
        workdir = Path(ctx["workdir"])
        ctx["sidecars"] = {
            SNAPSHOT_NAME: ctx["snapshot"].write(workdir / SNAPSHOT_NAME),
            METADATA_NAME: self.metadata.write(record, workdir / METADATA_NAME),
        }

    def _stop_stacks(self, ctx: Dict[str, Any]) -> None:
        stacks = ctx["snapshot"].stacks if ctx.get("api_available") else None
        ctx["stopped"] = self.lifecycle.stop_stacks(stacks)

    def _build_archive(self, ctx: Dict[str, Any]) -> None:
        destination = Path(self.config.backup_path) / archive_name(
            self.config.archive_prefix, ctx.get("suffix"), ctx["now"]
        )
        ctx["archive"] = self.archives.build(
            ctx["paths"], ctx["sidecars"], destination, exclude=[Path(self.config.backup_path)]
        )

    def _restart_stacks(self, ctx: Dict[str, Any]) -> None:
        ctx["restarted"] = True
        stopped: Optional[LifecycleReport] = ctx.get("stopped")
        if stopped is None or not stopped.succeeded:
            logging.info("No stacks were stopped; nothing to restart.")
            return
        report = self.lifecycle.start_stacks(stopped.succeeded, used_fallback=stopped.used_fallback)
        if report.failed:
            raise RuntimeError(f"Stacks failed to restart: {', '.join(report.failed)}")

    def _prune(self, ctx: Dict[str, Any]) -> None:
        ctx["pruned"] = self.retention.prune()

    def _validate_backup(self, ctx: Dict[str, Any]) -> None:
        archive: ArchiveInfo = ctx["archive"]
        ctx["validation"] = self.validator.validate("backup", archive=archive.path)

    def run_backup(
        self, suffix: Optional[str] = None, prune: bool = True, validate: bool = True
    ) -> BackupResult:
        """Runs the backup pipeline. The caller must hold the operation lock."""
        steps = [
            Step("Prepare backup directory", self._prepare_backup_dir),
            Step("Capture stack states", self._capture_snapshot),
            Step("Record permission metadata", self._record_metadata),
            Step("Stop stacks", self._stop_stacks, OnError.CONTINUE),
            Step("Build archive", self._build_archive),
            Step("Restart stacks", self._restart_stacks, OnError.CONTINUE),
        ]
        if prune:
            steps.append(Step("Prune old backups", self._prune, OnError.CONTINUE))
        if validate:
            steps.append(Step("Validate backup", self._validate_backup, OnError.CONTINUE))

        with tempfile.TemporaryDirectory(prefix="docker-backup-") as workdir:
            ctx: Dict[str, Any] = {"now": datetime.now(), "suffix": suffix, "workdir": workdir}
            try:
                result = Pipeline("Backup", steps).run(ctx)
            finally:
                if ctx.get("stopped") and not ctx.get("restarted"):
                    logging.warning("Backup aborted; restarting the stacks it stopped.")
                    try:
                        self._restart_stacks(ctx)
                    except Exception as e:
                        logging.error(f"Could not restart stacks after failed backup: {e}")

        return BackupResult(
            archive=ctx["archive"].path,
            snapshot=ctx["snapshot"],
            pipeline=result,
            validation=ctx.get("validation"),
        )

    def backup(self, suffix: Optional[str] = None) -> BackupResult:
        """Creates a backup under the global operation lock."""
        with self.lock("backup"):
            self.recovery_file = write_recovery_info("backup", self.config.recovery_dir)
            return self.run_backup(suffix)

    # ==========================================================================
    # Restore
    # ==========================================================================

    def _verify_archive(self, ctx: Dict[str, Any]) -> None:
        info = self.archives.verify(ctx["archive"])
        ctx["info"] = info
        ctx["snapshot"] = StackSnapshot.from_dict(info.snapshot)
        logging.info(
            f"Backup from {info.created_at:%Y-%m-%d %H:%M:%S} holds "
            f"{len(ctx['snapshot'].stacks)} stacks: {', '.join(ctx['snapshot'].names) or 'none'}"
        )

    def _check_architecture(self, ctx: Dict[str, Any]) -> None:
        backup_arch = (ctx["info"].metadata.get("system") or {}).get("arch")
        current_arch = platform.machine()
        if not backup_arch or backup_arch == current_arch:
            return
        message = (
            f"Backup was created on {backup_arch} but this host is {current_arch}. "
            "Images may not be compatible. Continue?"
        )
        logging.warning(message)
        if not (ctx.get("assume_yes") or self.confirm(message)):
            raise RestoreCancelled("Restore cancelled due to architecture mismatch.")

    def _safety_backup(self, ctx: Dict[str, Any]) -> None:
        if ctx.get("skip_safety_backup"):
            logging.warning("Skipping the pre-restore safety backup as requested.")
            return
        result = self.run_backup("pre-restore", prune=False, validate=False)
        ctx["safety_backup"] = result.archive
        logging.info(f"Safety backup created: {result.archive}")

    def _stop_for_restore(self, ctx: Dict[str, Any]) -> None:
        # Every stack writes into the directories about to be replaced.
        self.lifecycle.stop_stacks(keep_essential=False)
        portainer = Path(self.config.portainer_path)
        if self.docker.compose_file(portainer):
            self.docker.compose_down(portainer)

    def _clear_data_dirs(self, ctx: Dict[str, Any]) -> None:
        archived = ctx["info"].archived_paths
        if not archived:
            logging.warning("Archive does not list its directories; extracting over existing data.")
            return
        backup_dir = Path(self.config.backup_path).resolve()
        for raw in archived:
            path = Path(raw)
            if path == Path("/") or backup_dir == path or path in backup_dir.parents:
                logging.warning(f"Refusing to clear {path}; it contains the backup directory.")
                continue
            logging.info(f"Clearing {path}")
            remove_tree(path)

    def _extract(self, ctx: Dict[str, Any]) -> None:
        self.archives.extract(ctx["archive"], self.extract_root)

    def _restore_metadata(self, ctx: Dict[str, Any]) -> None:
        ctx["metadata"] = self.metadata.restore(ctx["info"].metadata)
        if not ctx["metadata"].complete:
            raise RuntimeError("Permission metadata was only partially restored.")

    def _start_control_plane(self, ctx: Dict[str, Any]) -> None:
        self.docker.ensure_network(DEFAULT_NETWORK)
        self.docker.compose_up(Path(self.config.portainer_path))

    def _wait_for_api(self, ctx: Dict[str, Any]) -> None:
        # Restored data may carry different credentials.
        self.client.reset_auth()
        if not self.client.wait_until_ready(API_READY_TIMEOUT):
            raise VerificationTimeout(
                f"Portainer API did not become ready within {API_READY_TIMEOUT:.0f}s."
            )

    def _reconcile(self, ctx: Dict[str, Any]) -> None:
        reconciler = SnapshotReconciler(
            self.config,
            self.client,
            self.lifecycle,
            purge_uncaptured=ctx.get("purge_uncaptured", False),
            remove_unlisted=ctx.get("remove_unlisted", False),
        )
        ctx["reconcile"] = reconciler.reconcile(ctx["snapshot"])

    def _restart_control_plane(self, ctx: Dict[str, Any]) -> None:
        self.docker.compose_restart(Path(self.config.portainer_path))
        self.client.reset_auth()
        if not self.client.wait_until_ready(API_READY_TIMEOUT):
            raise VerificationTimeout("Portainer API did not come back after restart.")

    def _validate_restore(self, ctx: Dict[str, Any]) -> None:
        ctx["validation"] = self.validator.validate("restore", snapshot=ctx["snapshot"])

    def run_restore(
        self,
        archive: Path,
        assume_yes: bool = False,
        purge_uncaptured: bool = False,
        skip_safety_backup: bool = False,
        remove_unlisted: bool = False,
    ) -> RestoreResult:
        """Runs the restore pipeline. The caller must hold the operation lock."""
        steps = [
            Step("Write recovery information", self._ledger("restore"), OnError.CONTINUE),
            Step("Verify archive", self._verify_archive),
            Step("Check architecture compatibility", self._check_architecture),
            Step("Create pre-restore safety backup", self._safety_backup),
            Step("Stop stacks and Portainer", self._stop_for_restore, OnError.CONTINUE),
            Step("Clear data directories", self._clear_data_dirs),
            Step("Extract archive", self._extract),
            Step("Restore permission metadata", self._restore_metadata, OnError.CONTINUE),
            Step("Start Portainer", self._start_control_plane),
            Step("Wait for Portainer API", self._wait_for_api),
            Step("Reconcile stacks with snapshot", self._reconcile),
            Step("Restart Portainer", self._restart_control_plane, OnError.CONTINUE),
            Step("Validate restore", self._validate_restore, OnError.CONTINUE),
        ]
        ctx: Dict[str, Any] = {
            "archive": Path(archive),
            "assume_yes": assume_yes,
            "purge_uncaptured": purge_uncaptured,
            "skip_safety_backup": skip_safety_backup,
            "remove_unlisted": remove_unlisted,
        }
        try:
            result = Pipeline("Restore", steps).run(ctx)
        except Exception:
            if ctx.get("safety_backup"):
                logging.critical(f"Restore failed. Safety backup available: {ctx['safety_backup']}")
            raise

        return RestoreResult(
            archive=Path(archive),
            snapshot=ctx["snapshot"],
            pipeline=result,
            safety_backup=ctx.get("safety_backup"),
            reconcile=ctx.get("reconcile"),
            metadata=ctx.get("metadata"),
            validation=ctx.get("validation"),
        )

    def restore(self, archive: Path, **options) -> RestoreResult:
        """Restores an archive under the global operation lock."""
        with self.lock("restore"):
            return self.run_restore(archive, **options)
