#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Stack snapshots and the reconciliation that drives Portainer to match one.

A restore must leave exactly the stacks recorded in the backup: stacks that
exist live but not in the snapshot are stopped, deleted and have their data
directory removed; recorded stacks are updated in place or recreated, and
end up in the running/stopped state they had at capture time.

A snapshot taken while the registry was unreadable is marked incomplete and
never causes live stacks to be removed unless the operator asks for it.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import json
import shutil
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

# --- THIRD-PARTY LIBRARY IMPORTS ---
try:
    import sh
except ImportError:
    print("[ERROR] The 'sh' library is not installed. Please run: pip install sh")
    sys.exit(1)

# --- LOCAL APPLICATION IMPORTS ---
from backup_errors import ApiError, AuthError
from config_manager import Config
from lifecycle_manager import LifecycleManager
from portainer_client import PortainerClient, Stack

SNAPSHOT_VERSION = "enhanced-v2"


@dataclass
class StackSnapshot:
    """The stacks present at backup time, as embedded in the archive.

    `complete` is False when the registry could not be read at capture time;
    such a snapshot says nothing about which stacks existed.
    """

    stacks: List[Stack] = field(default_factory=list)
    captured_at: str = ""
    version: str = SNAPSHOT_VERSION
    complete: bool = True

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.stacks]

    def get(self, name: str) -> Optional[Stack]:
        for stack in self.stacks:
            if stack.name == name:
                return stack
        return None

    @classmethod
    def capture(cls, client: PortainerClient, now: Optional[datetime] = None) -> "StackSnapshot":
        """Reads every stack with its compose file from the registry."""
        now = now or datetime.now()
        stacks = []
        for stack in client.list_stacks():
            logging.info(f"Capturing stack '{stack.name}' (ID: {stack.id}, {stack.status})")
            stacks.append(client.capture_stack(stack))
        logging.info(f"Captured {len(stacks)} stacks.")
        return cls(stacks=stacks, captured_at=now.strftime("%Y-%m-%d %H:%M:%S"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capture_timestamp": self.captured_at,
            "capture_version": self.version,
            "capture_complete": self.complete,
            "total_stacks": len(self.stacks),
            "stacks": [s.to_record() for s in self.stacks],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StackSnapshot":
        if not data:
            logging.warning("Archive carries no stack snapshot; treating it as incomplete.")
            return cls(complete=False)
        stacks = []
        for record in data.get("stacks") or []:
            try:
                stacks.append(Stack.from_record(record))
            except ValueError as e:
                logging.warning(f"Ignoring unreadable snapshot entry: {e}")
        return cls(
            stacks=stacks,
            captured_at=str(data.get("capture_timestamp", "")),
            version=str(data.get("capture_version", SNAPSHOT_VERSION)),
            complete=bool(data.get("capture_complete", True)),
        )

    def write(self, destination: Path) -> Path:
        destination = Path(destination)
        destination.write_text(json.dumps(self.to_dict(), indent=2))
        return destination


@dataclass
class ReconcileReport:
    removed: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    running: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    manual_intervention: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.manual_intervention


def remove_tree(path: Path) -> None:
    """Deletes a directory tree, escalating to sudo when permissions require it."""
    path = Path(path)
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except PermissionError:
        sh.sudo.rm("-rf", str(path))


class SnapshotReconciler:
    """Makes the live stack set equal to a snapshot's stack set."""

    def __init__(
        self,
        config: Config,
        client: PortainerClient,
        lifecycle: LifecycleManager,
        purge_uncaptured: bool = False,
        remove_unlisted: bool = False,
    ):
        self.config = config
        self.client = client
        self.lifecycle = lifecycle
        self.purge_uncaptured = purge_uncaptured
        self.remove_unlisted = remove_unlisted

    def _remove(self, stack: Stack, report: ReconcileReport) -> None:
        logging.info(f"Removing stack not present in backup: {stack.name}")
        try:
            if stack.running:
                self.client.stop_stack(stack.id)
            self.client.delete_stack(stack.id)
        except (ApiError, AuthError) as e:
            logging.warning(f"Failed to remove stack '{stack.name}': {e}")
            report.failed.append(stack.name)
            return

        data_dir = self.config.stack_data_dir(stack.name)
        try:
            remove_tree(data_dir)
        except (OSError, sh.ErrorReturnCode) as e:
            logging.warning(f"Failed to remove data directory {data_dir}: {e}")
        report.removed.append(stack.name)

    def _handle_uncaptured(self, wanted: Stack, report: ReconcileReport) -> None:
        data_dir = self.config.stack_data_dir(wanted.name)
        if self.purge_uncaptured:
            logging.warning(
                f"Stack '{wanted.name}' has no captured compose file; purging {data_dir} as requested."
            )
            try:
                remove_tree(data_dir)
            except (OSError, sh.ErrorReturnCode) as e:
                logging.warning(f"Failed to remove data directory {data_dir}: {e}")
        else:
            logging.warning(
                f"Stack '{wanted.name}' has no captured compose file and cannot be recreated. "
                f"Its data directory {data_dir} was kept; recreate the stack manually in Portainer "
                "or re-run the restore with --purge-uncaptured."
            )
        report.manual_intervention.append(wanted.name)

    def _apply_status(self, stack_id: int, wanted: Stack, live_running: bool, report: ReconcileReport):
        if wanted.running:
            if not live_running:
                self.client.start_stack(stack_id)
            report.running.append(wanted.name)
        else:
            if live_running:
                self.client.stop_stack(stack_id)
            logging.info(f"Stack '{wanted.name}' kept in stopped state.")
            report.stopped.append(wanted.name)

    def _restore(self, wanted: Stack, live: Optional[Stack], report: ReconcileReport) -> None:
        try:
            if live is not None:
                logging.info(f"Updating existing stack: {wanted.name} (ID: {live.id})")
                if wanted.compose_content:
                    self.client.update_stack(live.id, wanted.compose_content, wanted.env)
                    live_running = self.client.get_stack(live.id).running
                else:
                    logging.warning(
                        f"No compose content captured for '{wanted.name}'; keeping live definition."
                    )
                    live_running = live.running
                report.updated.append(wanted.name)
                self._apply_status(live.id, wanted, live_running, report)
                return

            if not wanted.compose_content:
                self._handle_uncaptured(wanted, report)
                return

            logging.info(f"Creating stack {wanted.name} from backup configuration")
            stack_id = self.client.create_stack(wanted.name, wanted.compose_content, wanted.env)
            report.created.append(wanted.name)
            self._apply_status(stack_id, wanted, self.client.get_stack(stack_id).running, report)
        except (ApiError, AuthError) as e:
            logging.warning(f"Failed to restore stack '{wanted.name}': {e}")
            report.failed.append(wanted.name)

    def reconcile(self, snapshot: StackSnapshot) -> ReconcileReport:
        """
        Drives the live stack set to exactly the snapshot's set.

        Failures are recorded per stack; one broken stack never stops the
        rest. Listing the live stacks is the only call whose failure aborts.
        """
        logging.info("--- Reconciling live stacks with backup snapshot ---")
        report = ReconcileReport()
        live = {s.name: s for s in self.client.list_stacks()}
        wanted = {s.name: s for s in snapshot.stacks}

        to_remove = [s for name, s in live.items() if name not in wanted]
        logging.info(
            f"Backup contains {len(wanted)} stacks; {len(to_remove)} live stacks are not in it."
        )

        if to_remove and not snapshot.complete and not self.remove_unlisted:
            names = ", ".join(s.name for s in to_remove)
            logging.warning(
                "The backup snapshot is incomplete (stacks could not be captured at backup time). "
                f"Keeping live stacks not listed in it: {names}. Remove them manually in Portainer "
                "or re-run the restore with --remove-unlisted."
            )
            report.manual_intervention.extend(s.name for s in to_remove)
            to_remove = []

        for stack in to_remove:
            self._remove(stack, report)
        for name, stack in wanted.items():
            self._restore(stack, live.get(name), report)

        for name in list(report.running):
            if not self.lifecycle.wait_running(name):
                logging.warning(f"Stack '{name}' did not come up; start it manually via Portainer.")
                report.running.remove(name)
                report.failed.append(name)

        logging.info(
            f"--- Reconciliation finished: {len(report.created)} created, "
            f"{len(report.updated)} updated, {len(report.removed)} removed, "
            f"{len(report.failed)} failed ---"
        )
        return report
