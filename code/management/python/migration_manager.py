#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Relocates the Portainer, tools and backup directories to new paths.

Nothing on disk is touched until a full pre-migration backup exists and the
rollback record pointing at it has been written. After that, containers are
stopped, directory trees are moved, compose files that mount the old paths
are rewritten, the new configuration is saved, and everything is started
again from the new locations. There is no automatic rollback; the rollback
record is the recovery path.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import json
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

# --- THIRD-PARTY LIBRARY IMPORTS ---
import yaml

# --- LOCAL APPLICATION IMPORTS ---
from backup_errors import ApiError, AuthError, BackupIOError, VerificationTimeout
from config_manager import Config
from docker_manager import DEFAULT_NETWORK, DockerComposeManager
from lifecycle_manager import LifecycleManager
from pipeline import OnError, Pipeline, PipelineResult, Step
from portainer_client import PortainerClient
from system_validator import SystemValidator

PATH_ROLES = ("portainer_path", "tools_path", "backup_path")


def _path_pattern(old: str):
    # Match the old root only as a whole path component.
    return re.compile(rf"(?<![\w./-]){re.escape(old)}(?=[/:\"'\s,\]]|$)")


def rewrite_volume_paths(text: str, replacements: Dict[str, str]) -> str:
    """
    Replaces old absolute roots with new ones inside `volumes:` blocks only.

    Image names, commands and environment values outside those blocks are
    left untouched.
    """
    ordered = sorted(replacements.items(), key=lambda item: len(item[0]), reverse=True)
    patterns = [(_path_pattern(old), new) for old, new in ordered if old != new]
    if not patterns:
        return text

    out = []
    volumes_indent: Optional[int] = None
    for line in text.splitlines(keepends=True):
        stripped = line.lstrip()
        indent = len(line) - len(stripped)
        content = stripped.rstrip("\r\n")

        if volumes_indent is not None and content and not content.startswith("#"):
            if indent <= volumes_indent and not content.startswith("- "):
                volumes_indent = None

        if re.match(r"^volumes:\s*(#.*)?$", content):
            volumes_indent = indent
        elif volumes_indent is not None:
            for pattern, new in patterns:
                line = pattern.sub(new, line)
        out.append(line)
    return "".join(out)


def move_tree(old: Path, new: Path) -> bool:
    """
    Moves the contents of `old` into `new`, keeping ownership and modes.

    Returns True if `old` was left empty and removed.
    """
    old, new = Path(old), Path(new)
    if not old.is_dir():
        logging.warning(f"Source directory does not exist, nothing to move: {old}")
        return False
    if new.exists() and any(new.iterdir()):
        raise BackupIOError(f"Destination {new} already exists and is not empty.")

    st = old.stat()
    new.mkdir(parents=True, exist_ok=True)
    os.chmod(new, st.st_mode & 0o7777)
    if (new.stat().st_uid, new.stat().st_gid) != (st.st_uid, st.st_gid):
        os.chown(new, st.st_uid, st.st_gid)

    ownership: List[Tuple[str, int, int]] = []
    for dirpath, dirnames, filenames in os.walk(old):
        for name in dirnames + filenames:
            path = os.path.join(dirpath, name)
            path_st = os.lstat(path)
            ownership.append((os.path.relpath(path, old), path_st.st_uid, path_st.st_gid))

    for child in sorted(old.iterdir()):
        logging.info(f"Moving {child} -> {new / child.name}")
        shutil.move(str(child), str(new / child.name))

    # Cross-device moves copy the data; put the original owners back.
    for rel, uid, gid in ownership:
        target = new / rel
        target_st = os.lstat(target)
        if (target_st.st_uid, target_st.st_gid) != (uid, gid):
            os.lchown(target, uid, gid)

    if any(old.iterdir()):
        logging.warning(f"Old directory {old} is not empty after the move; leaving it in place.")
        return False
    old.rmdir()
    return True


@dataclass
class MigrationResult:
    rollback_file: Optional[Path] = None
    backup_file: Optional[Path] = None
    moved: List[str] = field(default_factory=list)
    rewritten: List[str] = field(default_factory=list)
    config_only: bool = False
    pipeline: Optional[PipelineResult] = None


class MigrationManager:
    """Runs the path migration pipeline."""

    def __init__(
        self,
        config: Config,
        client: PortainerClient,
        docker: DockerComposeManager,
        lifecycle: LifecycleManager,
        validator: SystemValidator,
        create_backup: Callable[[str], Path],
        log_file: str = "",
    ):
        self.config = config
        self.client = client
        self.docker = docker
        self.lifecycle = lifecycle
        self.validator = validator
        self.create_backup = create_backup
        self.log_file = log_file
        self.rollback_file: Optional[Path] = None

    def rollback_record(self, new_config: Config, backup_file: Path, inventory_file: Path) -> Dict[str, Any]:
        return {
            "old_paths": {role: getattr(self.config, role) for role in PATH_ROLES},
            "new_paths": {role: getattr(new_config, role) for role in PATH_ROLES},
            "backup_file": str(backup_file),
            "stack_inventory_file": str(inventory_file),
            "log_file": self.log_file,
            "migration_date": datetime.now().isoformat(timespec="seconds"),
        }

    # --- Pipeline steps ---

    def _inventory(self, ctx: Dict[str, Any]) -> None:
        stamp = ctx["stamp"]
        inventory_file = Path(self.config.backup_path) / f"migration_inventory_{stamp}.json"
        try:
            stacks = [s.to_record() for s in self.client.list_stacks()]
        except (ApiError, AuthError) as e:
            logging.warning(f"Could not read stack inventory ({e}); stacks will not be restarted.")
            stacks = []
        Path(self.config.backup_path).mkdir(parents=True, exist_ok=True)
        inventory_file.write_text(json.dumps(stacks, indent=2))
        ctx["inventory"] = stacks
        ctx["inventory_file"] = inventory_file
        logging.info(f"Stack inventory ({len(stacks)} stacks) saved to {inventory_file}")

    def _pre_migration_backup(self, ctx: Dict[str, Any]) -> None:
        ctx["backup_file"] = self.create_backup("pre-migration")
        logging.info(f"Pre-migration backup: {ctx['backup_file']}")

    def _write_rollback(self, ctx: Dict[str, Any]) -> None:
        record = self.rollback_record(ctx["new_config"], ctx["backup_file"], ctx["inventory_file"])
        path = Path(self.config.backup_path) / f"migration_rollback_{ctx['stamp']}.json"
        path.write_text(json.dumps(record, indent=2))
        ctx["rollback_file"] = self.rollback_file = path
        logging.info(f"Rollback information written to {path}")

    def _stop_containers(self, ctx: Dict[str, Any]) -> None:
        report = self.lifecycle.stop_stacks(keep_essential=False)
        ctx["stopped_fallback"] = report.used_fallback
        if ctx["changed"].get("portainer_path"):
            self.docker.compose_down(Path(self.config.portainer_path))

    def _move_directories(self, ctx: Dict[str, Any]) -> None:
        for role, (old, new) in ctx["changed"].items():
            logging.info(f"Moving {role}: {old} -> {new}")
            move_tree(Path(old), Path(new))
            ctx["moved"].append(role)

    def _rewrite_compose_files(self, ctx: Dict[str, Any]) -> None:
        new_config: Config = ctx["new_config"]
        replacements = {old: new for old, new in ctx["changed"].values()}
        roots = {new_config.portainer_path, new_config.tools_path, new_config.npm_path}
        for root in sorted(roots):
            for compose_file in self.docker.find_compose_files(Path(root)):
                original = compose_file.read_text()
                updated = rewrite_volume_paths(original, replacements)
                if updated == original:
                    continue
                try:
                    yaml.safe_load(updated)
                except yaml.YAMLError as e:
                    logging.warning(f"Rewritten {compose_file} is not valid YAML ({e}); left unchanged.")
                    continue
                compose_file.write_text(updated)
                ctx["rewritten"].append(str(compose_file))
                logging.info(f"Updated volume paths in {compose_file}")

    def _save_config(self, ctx: Dict[str, Any]) -> None:
        ctx["new_config"].save(self.config.config_file)

    def _start_control_plane(self, ctx: Dict[str, Any]) -> None:
        self.docker.ensure_network(DEFAULT_NETWORK)
        self.docker.compose_up(Path(ctx["new_config"].portainer_path))
        if not self.client.wait_until_ready(120):
            raise VerificationTimeout("Portainer did not become ready after migration.")

    def _restart_stacks(self, ctx: Dict[str, Any]) -> None:
        names = [s["name"] for s in ctx["inventory"] if s.get("status") == "running"]
        lifecycle = LifecycleManager(
            ctx["new_config"],
            self.client,
            self.docker,
            sleep=self.lifecycle.sleep,
            startup_budget=self.lifecycle.startup_budget,
        )
        report = lifecycle.start_stacks(names, used_fallback=ctx.get("stopped_fallback", False))
        if report.failed:
            raise RuntimeError(f"Stacks failed to start: {', '.join(report.failed)}")

    def _validate(self, ctx: Dict[str, Any]) -> None:
        # The checks must look at the new locations, not the ones just vacated.
        validator = SystemValidator(
            ctx["new_config"], self.client, self.docker, self.validator.archives
        )
        ctx["validation"] = validator.validate("setup")

    # --- Entry point ---

    def migrate(
        self,
        portainer_path: Optional[str] = None,
        tools_path: Optional[str] = None,
        backup_path: Optional[str] = None,
    ) -> MigrationResult:
        new_config = self.config.with_paths(
            portainer_path=portainer_path, tools_path=tools_path, backup_path=backup_path
        )
        new_config.config_file = self.config.config_file
        changed = {
            role: (getattr(self.config, role), getattr(new_config, role))
            for role in PATH_ROLES
            if getattr(self.config, role) != getattr(new_config, role)
        }

        if not changed:
            logging.info("Paths are unchanged; updating configuration only.")
            new_config.save(self.config.config_file)
            return MigrationResult(config_only=True)

        for role, (old, new) in changed.items():
            if Path(new).resolve().is_relative_to(Path(old).resolve()):
                raise BackupIOError(f"New {role} {new} cannot be inside the old one ({old}).")

        ctx: Dict[str, Any] = {
            "stamp": datetime.now().strftime("%Y%m%d_%H%M%S"),
            "new_config": new_config,
            "changed": changed,
            "moved": [],
            "rewritten": [],
        }
        steps = [
            Step("Inventory live stacks", self._inventory),
            Step("Create pre-migration backup", self._pre_migration_backup),
            Step("Write rollback record", self._write_rollback),
            Step("Stop containers", self._stop_containers),
            Step("Move data directories", self._move_directories),
            Step("Rewrite compose volume paths", self._rewrite_compose_files, OnError.CONTINUE),
            Step("Save new configuration", self._save_config),
            Step("Start Portainer from new path", self._start_control_plane),
            Step("Restart stacks", self._restart_stacks, OnError.CONTINUE),
            Step("Validate system", self._validate, OnError.CONTINUE),
        ]
        try:
            result = Pipeline("Path migration", steps).run(ctx)
        except Exception:
            if ctx.get("rollback_file"):
                logging.critical(f"Migration failed. Rollback information: {ctx['rollback_file']}")
            raise

        return MigrationResult(
            rollback_file=ctx.get("rollback_file"),
            backup_file=ctx.get("backup_file"),
            moved=ctx["moved"],
            rewritten=ctx["rewritten"],
            pipeline=result,
        )
