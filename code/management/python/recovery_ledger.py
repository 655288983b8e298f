#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Writes a small JSON recovery hint before a risky operation.

The file is advisory: nothing reads it back. When an operation fails, the
orchestrator points the operator at it.
"""

import log_setup
import logging
import getpass
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

OPERATION_STATES = {
    "backup": "backup_creation",
    "restore": "system_restore",
    "setup": "initial_setup",
    "migrate": "path_migration",
}

RECOVERY_INSTRUCTIONS = {
    "backup_creation": "If backup creation failed, check disk space and try again. Previous backups are preserved.",
    "system_restore": "If restore failed, system may be in inconsistent state. Check logs and restore from the pre-restore safety backup or the last known good backup.",
    "initial_setup": "If setup failed, run uninstall command and restart setup. Check prerequisites and network connectivity.",
    "path_migration": "If migration failed, restore from pre-migration backup using restore command with the backup file listed in the rollback record.",
    "unknown_operation": "Check logs for specific error messages and recovery steps.",
}


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid())


def write_recovery_info(
    operation: str, recovery_dir: str = "/tmp", now: Optional[datetime] = None
) -> Optional[Path]:
    """
    Writes the recovery ledger entry and returns its path.

    Failing to write the hint never blocks the operation; it only logs.
    """
    now = now or datetime.now().astimezone()
    state = OPERATION_STATES.get(operation, "unknown_operation")
    path = Path(recovery_dir) / f"backup_manager_recovery_{now.strftime('%Y%m%d_%H%M%S')}.json"
    entry = {
        "operation": operation,
        "state": state,
        "timestamp": now.isoformat(timespec="seconds"),
        "user": _current_user(),
        "working_directory": os.getcwd(),
        "recovery_instructions": RECOVERY_INSTRUCTIONS,
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(entry, indent=2))
    except OSError as e:
        logging.warning(f"Could not write recovery information to {path}: {e}")
        return None
    logging.debug(f"Recovery information written to {path}")
    return path
