#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Records and re-applies per-path permission and ownership metadata.

The archive itself keeps mode and owner bits; this record is a backstop for
hosts where extraction defaults differ. Restoration is capped per run.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import grp
import json
import os
import platform
import pwd
import socket
import stat
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

# --- THIRD-PARTY LIBRARY IMPORTS ---
try:
    import sh
except ImportError:
    print("[ERROR] The 'sh' library is not installed. Please run: pip install sh")
    sys.exit(1)

BACKUP_FORMAT_VERSION = "2.0"
SCRIPT_VERSION = "2025.08.27.0823"
RESTORE_CAP = 500


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _resolve_uid(owner: str) -> Optional[int]:
    if owner.isdigit():
        return int(owner)
    try:
        return pwd.getpwnam(owner).pw_uid
    except KeyError:
        return None


def _resolve_gid(group: str) -> Optional[int]:
    if group.isdigit():
        return int(group)
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError:
        return None


def _os_description() -> str:
    try:
        for line in Path("/etc/os-release").read_text().splitlines():
            if line.startswith("PRETTY_NAME="):
                return line.split("=", 1)[1].strip().strip('"')
    except OSError:
        pass
    return platform.system()


def system_info(runtime_version: str = "unknown") -> Dict[str, str]:
    return {
        "hostname": socket.gethostname(),
        "kernel": platform.release(),
        "arch": platform.machine(),
        "os": _os_description(),
        "docker_version": runtime_version,
    }


def path_entry(path: Path) -> Dict[str, Any]:
    st = path.lstat()
    return {
        "path": str(path),
        "mode": format(stat.S_IMODE(st.st_mode), "o"),
        "owner": _user_name(st.st_uid),
        "group": _group_name(st.st_gid),
        "type": "directory" if stat.S_ISDIR(st.st_mode) else "file",
    }


@dataclass
class MetadataRestoreReport:
    applied: int = 0
    missing: int = 0
    failed: int = 0
    over_cap: int = 0

    @property
    def complete(self) -> bool:
        return self.over_cap == 0 and self.failed == 0


class MetadataManager:
    """Builds the metadata record and replays it after extraction."""

    def __init__(self, restore_cap: int = RESTORE_CAP):
        self.restore_cap = restore_cap

    def record(
        self,
        roots: Iterable[str],
        paths: Dict[str, Any],
        runtime_version: str = "unknown",
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Walks every root and captures mode/owner/group for each path under it."""
        now = now or datetime.now()
        permissions: List[Dict[str, Any]] = []
        for root in roots:
            root = Path(root)
            if not root.exists():
                logging.warning(f"Metadata root does not exist, skipping: {root}")
                continue
            permissions.append(path_entry(root))
            for dirpath, dirnames, filenames in os.walk(root):
                for name in sorted(dirnames) + sorted(filenames):
                    try:
                        permissions.append(path_entry(Path(dirpath) / name))
                    except OSError as e:
                        logging.debug(f"Cannot stat {Path(dirpath) / name}: {e}")

        logging.info(f"Captured metadata for {len(permissions)} paths.")
        return {
            "backup_version": BACKUP_FORMAT_VERSION,
            "timestamp": now.isoformat(timespec="seconds"),
            "script_version": SCRIPT_VERSION,
            "system": system_info(runtime_version),
            "paths": paths,
            "permissions": permissions,
            "ownership": [],
        }

    @staticmethod
    def write(record: Dict[str, Any], destination: Path) -> Path:
        destination = Path(destination)
        destination.write_text(json.dumps(record, indent=2))
        return destination

    def _apply(self, path: Path, entry: Dict[str, Any]) -> None:
        mode = int(str(entry["mode"]), 8)
        st = path.lstat()
        if stat.S_ISLNK(st.st_mode):
            return
        if stat.S_IMODE(st.st_mode) != mode:
            os.chmod(path, mode)

        uid = _resolve_uid(str(entry.get("owner", "")))
        gid = _resolve_gid(str(entry.get("group", "")))
        if uid is None or gid is None:
            logging.debug(f"Unknown owner/group for {path}; leaving ownership as is.")
            return
        if (st.st_uid, st.st_gid) == (uid, gid):
            return
        try:
            os.chown(path, uid, gid)
        except PermissionError:
            sh.sudo.chown(f"{uid}:{gid}", str(path))

    def restore(self, record: Dict[str, Any]) -> MetadataRestoreReport:
        """
        Re-applies recorded modes and ownership to paths that still exist.

        Paths that no longer exist are skipped. At most `restore_cap` entries
        are processed; the rest are counted in `over_cap`.
        """
        entries = record.get("permissions") or []
        report = MetadataRestoreReport()
        if len(entries) > self.restore_cap:
            report.over_cap = len(entries) - self.restore_cap
            entries = entries[: self.restore_cap]

        for entry in entries:
            path = Path(entry.get("path", ""))
            if not entry.get("path") or not os.path.lexists(path):
                report.missing += 1
                continue
            try:
                self._apply(path, entry)
                report.applied += 1
            except (OSError, ValueError, KeyError, sh.ErrorReturnCode) as e:
                logging.warning(f"Could not restore metadata for {path}: {e}")
                report.failed += 1

        logging.info(
            f"Metadata restore: {report.applied} applied, {report.missing} missing, "
            f"{report.failed} failed."
        )
        if report.over_cap:
            logging.warning(
                f"Metadata restore stopped after {self.restore_cap} entries; "
                f"{report.over_cap} entries were skipped."
            )
        return report
