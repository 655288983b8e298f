#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Builds, inspects and extracts backup archives.

An archive is a gzip-compressed tar of host directories (stored relative to
`/`, with owner and mode bits untouched) plus two top-level sidecar files:
the stack snapshot and the metadata record. The tar is written uncompressed
first, the sidecars are appended once the directory walk is done, and only
then is the whole thing compressed.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import errno
import gzip
import json
import os
import re
import shutil
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

# --- LOCAL APPLICATION IMPORTS ---
from backup_errors import ArchiveCorrupt, BackupIOError, SpaceError

SNAPSHOT_NAME = "stack_states.json"
METADATA_NAME = "backup_metadata.json"
SIDECAR_NAMES = (SNAPSHOT_NAME, METADATA_NAME)
MIN_ARCHIVE_SIZE = 10240
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def sanitize_suffix(suffix: Optional[str]) -> str:
    """Reduces an operator-supplied suffix to [A-Za-z0-9._-]."""
    if not suffix:
        return ""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", suffix)
    cleaned = re.sub(r"-{2,}", "-", cleaned)
    return cleaned.strip("-")


def archive_name(prefix: str, suffix: Optional[str] = None, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    name = f"{prefix}_{now.strftime(TIMESTAMP_FORMAT)}"
    suffix = sanitize_suffix(suffix)
    if suffix:
        name += f"-{suffix}"
    return f"{name}.tar.gz"


def _name_pattern(prefix: str):
    return re.compile(rf"^{re.escape(prefix)}_(\d{{8}}_\d{{6}})(?:-[A-Za-z0-9._-]+)?\.tar\.gz$")


def parse_archive_timestamp(name: str, prefix: str) -> Optional[datetime]:
    match = _name_pattern(prefix).match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def find_archives(directory: Path, prefix: str) -> List[Path]:
    """Archives in `directory`, newest embedded timestamp first."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    found = []
    for entry in directory.iterdir():
        stamp = parse_archive_timestamp(entry.name, prefix)
        if stamp is not None and entry.is_file():
            found.append((stamp, entry.name, entry))
    found.sort(key=lambda item: (item[0], item[1]), reverse=True)
    return [entry for _, _, entry in found]


def _arcname(path: Path) -> str:
    return str(Path(path).resolve()).lstrip("/")


@dataclass
class ArchiveInfo:
    path: Path
    size: int
    created_at: datetime
    metadata: Dict[str, Any]
    snapshot: Dict[str, Any] = field(default_factory=dict)

    @property
    def archived_paths(self) -> List[str]:
        return list((self.metadata.get("paths") or {}).get("archived") or [])


class ArchiveBuilder:
    """Produces and validates `<prefix>_<YYYYMMDD>_<HHMMSS>[-suffix].tar.gz` files."""

    def __init__(self, min_size: int = MIN_ARCHIVE_SIZE):
        self.min_size = min_size

    # --- Building ---

    @staticmethod
    def estimate_size(paths: Iterable[Path]) -> int:
        total = 0
        for root in paths:
            for dirpath, _, filenames in os.walk(root):
                for name in filenames:
                    try:
                        total += os.lstat(os.path.join(dirpath, name)).st_size
                    except OSError:
                        continue
        return total

    def check_space(self, destination_dir: Path, paths: Iterable[Path]) -> None:
        required = self.estimate_size(paths)
        free = shutil.disk_usage(destination_dir).free
        logging.info(
            f"Backup size estimate: {required // (1024 * 1024)} MiB, "
            f"free: {free // (1024 * 1024)} MiB"
        )
        if required > free:
            raise SpaceError(
                f"Not enough space in {destination_dir}: need ~{required} bytes, {free} free."
            )

    def build(
        self,
        paths: List[Path],
        sidecars: Dict[str, Path],
        destination: Path,
        exclude: Iterable[Path] = (),
    ) -> ArchiveInfo:
        """
        Writes the archive and checks it can be read back.
        Paths under any `exclude` directory (the backup directory itself) are left out.
        """
        destination = Path(destination)
        if destination.exists():
            raise BackupIOError(f"Archive already exists: {destination}")
        self.check_space(destination.parent, paths)

        excluded = [_arcname(p) for p in exclude]

        def _filter(member: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
            for prefix in excluded:
                if member.name == prefix or member.name.startswith(prefix + "/"):
                    return None
            return member

        tar_path = destination.parent / (destination.name[: -len(".gz")] + ".partial")
        logging.info(f"Creating archive: {destination}")
        try:
            with tarfile.open(tar_path, "w", format=tarfile.PAX_FORMAT) as tar:
                for path in paths:
                    logging.info(f"Adding {path}")
                    tar.add(str(path), arcname=_arcname(path), filter=_filter)

            with tarfile.open(tar_path, "a") as tar:
                for name, sidecar in sidecars.items():
                    tar.add(str(sidecar), arcname=name)

            with open(tar_path, "rb") as src, gzip.open(destination, "wb") as dst:
                shutil.copyfileobj(src, dst)
        except OSError as e:
            destination.unlink(missing_ok=True)
            if e.errno == errno.ENOSPC:
                raise SpaceError(f"Ran out of space writing {destination}: {e}") from e
            raise BackupIOError(f"Failed to write archive {destination}: {e}") from e
        finally:
            tar_path.unlink(missing_ok=True)

        try:
            info = self.verify(destination)
        except ArchiveCorrupt:
            logging.error(f"Removing archive that failed verification: {destination}")
            destination.unlink(missing_ok=True)
            raise
        logging.info(f"Archive created: {destination} ({info.size} bytes)")
        return info

    # --- Inspection ---

    @staticmethod
    def _read_json(tar: tarfile.TarFile, name: str) -> Optional[Dict[str, Any]]:
        try:
            member = tar.getmember(name)
        except KeyError:
            return None
        handle = tar.extractfile(member)
        if handle is None:
            return None
        with handle:
            return json.loads(handle.read().decode("utf-8"))

    def verify(self, archive: Path) -> ArchiveInfo:
        """
        Opens the archive and reads its sidecars.

        Raises ArchiveCorrupt if the file is too small, unreadable, or lacks a
        metadata record with a parseable timestamp.
        """
        archive = Path(archive)
        if not archive.is_file():
            raise ArchiveCorrupt(f"Backup file not found: {archive}")
        size = archive.stat().st_size
        if size < self.min_size:
            raise ArchiveCorrupt(
                f"Archive {archive.name} is only {size} bytes (minimum {self.min_size}); "
                "treating it as corrupt."
            )

        try:
            with tarfile.open(archive, "r:gz") as tar:
                metadata = self._read_json(tar, METADATA_NAME)
                snapshot = self._read_json(tar, SNAPSHOT_NAME) or {}
        except (tarfile.TarError, OSError, EOFError, ValueError) as e:
            raise ArchiveCorrupt(f"Archive {archive.name} cannot be read: {e}") from e

        if not isinstance(metadata, dict):
            raise ArchiveCorrupt(f"Archive {archive.name} has no {METADATA_NAME}.")
        try:
            created_at = datetime.fromisoformat(str(metadata.get("timestamp")))
        except ValueError as e:
            raise ArchiveCorrupt(
                f"Archive {archive.name} has an unparseable creation timestamp."
            ) from e
        return ArchiveInfo(archive, size, created_at, metadata, snapshot)

    # --- Extraction ---

    def extract(self, archive: Path, root: Path = Path("/")) -> int:
        """Extracts everything except the sidecars under `root`; returns the member count."""
        try:
            with tarfile.open(archive, "r:gz") as tar:
                members = [m for m in tar.getmembers() if m.name not in SIDECAR_NAMES]
                tar.extractall(
                    path=str(root), members=members, numeric_owner=True, filter="fully_trusted"
                )
        except (tarfile.TarError, EOFError) as e:
            raise ArchiveCorrupt(f"Failed to extract {archive}: {e}") from e
        except OSError as e:
            raise BackupIOError(f"Failed to extract {archive}: {e}") from e
        logging.info(f"Extracted {len(members)} entries from {Path(archive).name}.")
        return len(members)
