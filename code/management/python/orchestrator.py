#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Master Orchestrator for the Docker Backup Manager

This script is the single entry point for backup, restore, migration and the
supporting maintenance commands. It wires the configuration into the
dedicated manager classes (Portainer API, Docker runtime, archives, locks,
scheduling) and maps each CLI command onto one of them.

Usage: docker-backup-manager <command> [options]
Example: docker-backup-manager restore --index 1 --yes
"""

# --- STANDARD LIBRARY IMPORTS ---
import argparse
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import log_setup  # Ensure logging is configured before any other imports
import logging

# --- LOCAL APPLICATION IMPORTS ---
from backup_errors import BackupManagerError, ConfigError
from backup_manager import BackupManager
from config_manager import Config
from docker_manager import DockerComposeManager
from migration_manager import MigrationManager
from operation_lock import OperationLock
from portainer_client import PortainerClient
from recovery_ledger import write_recovery_info
from replication_script import (
    DEFAULT_LOCAL_PATH,
    DEFAULT_OUTPUT,
    primary_ip,
    read_private_key,
    render_nas_script,
    write_nas_script,
)
from schedule_manager import SCHEDULE_PRESETS, ScheduleManager, default_command, resolve_schedule
from system_validator import VALIDATION_KINDS, ValidationResult

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION_FAILED = 2

# Commands that change host state and therefore need root.
ROOT_COMMANDS = {"backup", "restore", "migrate"}


def _confirm(message: str) -> bool:
    try:
        answer = input(f"{message} (yes/no): ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


class MasterOrchestrator:
    """
    Coordinates all management tasks by calling the appropriate manager classes.
    """

    def __init__(self, config: Config):
        self.config = config
        self.docker = DockerComposeManager(config)
        self.client = PortainerClient(config)
        self.backups = BackupManager(config, self.client, self.docker, confirm=_confirm)
        self.migration: Optional[MigrationManager] = None
        self.recovery_file: Optional[Path] = None

    def recovery_pointers(self) -> List[str]:
        """The recovery and rollback files written by the current command."""
        pointers = []
        recovery_file = self.recovery_file or self.backups.recovery_file
        if recovery_file:
            pointers.append(f"Recovery steps: {recovery_file}")
        if self.migration and self.migration.rollback_file:
            pointers.append(f"Rollback information: {self.migration.rollback_file}")
        return pointers

    def _report_validation(self, operation: str, validation: Optional[ValidationResult]) -> int:
        if validation is None or validation.passed:
            return EXIT_OK
        logging.error(
            f"{operation.capitalize()} completed, but validation failed. "
            "The data was processed; the system needs attention:"
        )
        for failure in validation.failures:
            logging.error(f"  - {failure}")
        return EXIT_VALIDATION_FAILED

    # --- Backup & Restore ---

    def backup(self, name: Optional[str] = None) -> int:
        """Creates a backup of Portainer and all stack data."""
        logging.info("====== Docker Backup Starting ======")
        result = self.backups.backup(name)
        logging.info(f"Backup archive: {result.archive}")
        for warning in result.pipeline.warnings:
            logging.warning(f"  ! {warning}")
        return self._report_validation("backup", result.validation)

    def _select_archive(self, backup: Optional[str], index: Optional[int]) -> Path:
        if backup:
            path = Path(backup)
            if not path.is_absolute() and not path.exists():
                path = Path(self.config.backup_path) / path
            return path

        listings = self.backups.list_backups()
        if not listings:
            raise BackupManagerError(f"No backups found in {self.config.backup_path}")
        if index is None:
            self.list_backups()
            try:
                index = int(input("Select backup number to restore: "))
            except (EOFError, ValueError):
                raise BackupManagerError("No valid backup number selected.")
        if not 1 <= index <= len(listings):
            raise BackupManagerError(f"Backup number must be between 1 and {len(listings)}.")
        return listings[index - 1].path

    def restore(
        self,
        backup: Optional[str] = None,
        index: Optional[int] = None,
        yes: bool = False,
        purge_uncaptured: bool = False,
        skip_safety_backup: bool = False,
        remove_unlisted: bool = False,
    ) -> int:
        """Restores a backup and reconciles stacks to match it exactly."""
        archive = self._select_archive(backup, index)
        logging.info(f"====== Restore from {archive.name} ======")
        if not yes and not _confirm(
            "This will replace all current Portainer and stack data. Continue?"
        ):
            logging.info("Restore cancelled.")
            return EXIT_OK

        result = self.backups.restore(
            archive,
            assume_yes=yes,
            purge_uncaptured=purge_uncaptured,
            skip_safety_backup=skip_safety_backup,
            remove_unlisted=remove_unlisted,
        )
        if result.reconcile and result.reconcile.manual_intervention:
            logging.warning(
                "Stacks needing manual attention: "
                + ", ".join(result.reconcile.manual_intervention)
            )
        for warning in result.pipeline.warnings:
            logging.warning(f"  ! {warning}")
        return self._report_validation("restore", result.validation)

    def list_backups(self) -> int:
        """Lists available backups, newest first."""
        listings = self.backups.list_backups()
        print(f"--- Backups in [{self.config.backup_path}] ---")
        if not listings:
            print("No backups found.")
        for i, item in enumerate(listings, 1):
            size_mb = item.size / (1024 * 1024)
            print(f"{i:>3}) {item.path.name} | {size_mb:.1f} MB | {item.created_at:%Y-%m-%d %H:%M:%S}")
        return EXIT_OK

    def prune(self, keep: Optional[int] = None) -> int:
        """Deletes old backups beyond the retention count."""
        removed = self.backups.retention.prune(keep=keep)
        logging.info(f"--- Removed {removed} old backup(s). ---")
        return EXIT_OK

    def validate(self, kind: str) -> int:
        """Runs the health check battery for an operation."""
        result = self.backups.validator.validate(kind)
        return EXIT_OK if result.passed else EXIT_VALIDATION_FAILED

    # --- Migration ---

    def migrate(
        self,
        portainer_path: Optional[str] = None,
        tools_path: Optional[str] = None,
        backup_path: Optional[str] = None,
    ) -> int:
        """Moves data directories to new paths with a pre-migration backup."""
        self.migration = migration = MigrationManager(
            self.config,
            self.client,
            self.docker,
            self.backups.lifecycle,
            self.backups.validator,
            create_backup=lambda suffix: self.backups.run_backup(suffix, prune=False, validate=False).archive,
            log_file=log_setup.LOG_FILE,
        )
        with OperationLock("migrate", self.config.lock_dir):
            self.recovery_file = write_recovery_info("migrate", self.config.recovery_dir)
            result = migration.migrate(portainer_path, tools_path, backup_path)
        if result.config_only:
            return EXIT_OK
        logging.info(f"Rollback information: {result.rollback_file}")
        validation = result.pipeline.context.get("validation") if result.pipeline else None
        return self._report_validation("migration", validation)

    # --- Scheduling & Replication ---

    def schedule(
        self,
        preset: Optional[str] = None,
        cron: Optional[str] = None,
        remove: bool = False,
        show: bool = False,
    ) -> int:
        """Installs, removes or shows the periodic backup job."""
        manager = ScheduleManager(
            self.config, command=default_command(), log_file=str(Path(log_setup.LOG_FILE).resolve())
        )
        if show:
            for line in manager.scheduled() or ["No backup job scheduled."]:
                print(line)
            return EXIT_OK
        if remove:
            manager.remove()
            return EXIT_OK
        line = manager.install(resolve_schedule(preset or "daily-3am", cron))
        print(f"Installed: {line}")
        return EXIT_OK

    def generate_nas_script(
        self,
        output: str = DEFAULT_OUTPUT,
        local_path: str = DEFAULT_LOCAL_PATH,
        server_ip: Optional[str] = None,
        key_file: Optional[str] = None,
    ) -> int:
        """Generates the self-contained NAS replication client."""
        server_ip = server_ip or primary_ip()
        logging.info(f"Primary server IP: {server_ip}")
        content = render_nas_script(
            self.config,
            read_private_key(self.config, Path(key_file) if key_file else None),
            server_ip=server_ip,
            local_path=local_path,
            generated_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        )
        path = write_nas_script(content, Path(output))
        print(f"Copy {path} to your NAS and run it from cron.")
        return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Docker Backup Manager for Portainer stacks.")
    parser.add_argument("--config-file", default=None, help="Path to the configuration file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    p_backup = subparsers.add_parser("backup", help=MasterOrchestrator.backup.__doc__)
    p_backup.add_argument("--name", default=None, help="Suffix appended to the archive name.")

    p_restore = subparsers.add_parser("restore", help=MasterOrchestrator.restore.__doc__)
    selection = p_restore.add_mutually_exclusive_group()
    selection.add_argument("--backup", default=None, help="Archive file to restore.")
    selection.add_argument("--index", type=int, default=None, help="Number from the 'list' output.")
    p_restore.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation.")
    p_restore.add_argument(
        "--purge-uncaptured",
        action="store_true",
        help="Delete data of stacks whose compose file was not captured.",
    )
    p_restore.add_argument(
        "--skip-safety-backup", action="store_true", help="Do not back up current state first."
    )
    p_restore.add_argument(
        "--remove-unlisted",
        action="store_true",
        help="Remove live stacks missing from a backup whose snapshot is incomplete.",
    )

    subparsers.add_parser("list", help=MasterOrchestrator.list_backups.__doc__)

    p_prune = subparsers.add_parser("prune", help=MasterOrchestrator.prune.__doc__)
    p_prune.add_argument("--keep", type=int, default=None)

    p_validate = subparsers.add_parser("validate", help=MasterOrchestrator.validate.__doc__)
    p_validate.add_argument("kind", choices=VALIDATION_KINDS)

    p_migrate = subparsers.add_parser("migrate", help=MasterOrchestrator.migrate.__doc__)
    p_migrate.add_argument("--portainer-path", default=None)
    p_migrate.add_argument("--tools-path", default=None)
    p_migrate.add_argument("--backup-path", default=None)

    p_schedule = subparsers.add_parser("schedule", help=MasterOrchestrator.schedule.__doc__)
    p_schedule.add_argument("preset", nargs="?", choices=list(SCHEDULE_PRESETS), default=None)
    p_schedule.add_argument("--cron", default=None, help="Custom five-field cron expression.")
    p_schedule.add_argument("--remove", action="store_true")
    p_schedule.add_argument("--show", action="store_true")

    p_nas = subparsers.add_parser(
        "generate-nas-script", help=MasterOrchestrator.generate_nas_script.__doc__
    )
    p_nas.add_argument("--output", default=DEFAULT_OUTPUT)
    p_nas.add_argument("--local-path", default=DEFAULT_LOCAL_PATH)
    p_nas.add_argument("--server-ip", default=None)
    p_nas.add_argument("--key-file", default=None)
    return parser


def run(orchestrator: MasterOrchestrator, args: argparse.Namespace) -> int:
    # --- Execute the appropriate method based on the command ---
    if args.command == "backup":
        return orchestrator.backup(args.name)
    if args.command == "restore":
        return orchestrator.restore(
            args.backup,
            args.index,
            args.yes,
            args.purge_uncaptured,
            args.skip_safety_backup,
            args.remove_unlisted,
        )
    if args.command == "list":
        return orchestrator.list_backups()
    if args.command == "prune":
        return orchestrator.prune(args.keep)
    if args.command == "validate":
        return orchestrator.validate(args.kind)
    if args.command == "migrate":
        return orchestrator.migrate(args.portainer_path, args.tools_path, args.backup_path)
    if args.command == "schedule":
        return orchestrator.schedule(args.preset, args.cron, args.remove, args.show)
    if args.command == "generate-nas-script":
        return orchestrator.generate_nas_script(
            args.output, args.local_path, args.server_ip, args.key_file
        )
    raise ValueError(f"Unknown command '{args.command}'")


def _log_recovery_pointers(orchestrator: Optional[MasterOrchestrator]) -> None:
    pointers = orchestrator.recovery_pointers() if orchestrator else []
    if not pointers:
        logging.critical("No recovery file was written for this run.")
    for pointer in pointers:
        logging.critical(pointer)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to parse arguments and execute commands."""
    args = build_parser().parse_args(argv)
    log_setup.set_verbose(args.verbose)

    if args.command in ROOT_COMMANDS and os.geteuid() != 0:
        logging.error(f"'{args.command}' must be run with sudo.")
        return EXIT_FAILURE

    orchestrator = None
    try:
        config = Config.from_file(Path(args.config_file) if args.config_file else None)
        orchestrator = MasterOrchestrator(config)
        return run(orchestrator, args)
    except ConfigError as e:
        logging.critical(f"Configuration error: {e}")
        return EXIT_FAILURE
    except (BackupManagerError, ValueError) as e:
        logging.critical(f"An error occurred during '{args.command}': {e}")
        _log_recovery_pointers(orchestrator)
        return EXIT_FAILURE
    except Exception as e:
        logging.critical(f"An error occurred during '{args.command}': {e}", exc_info=True)
        _log_recovery_pointers(orchestrator)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
