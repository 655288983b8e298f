#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Keeps the newest N backup archives and deletes the rest."""

import log_setup
import logging
from pathlib import Path
from typing import List, Optional

from archive_builder import find_archives
from backup_errors import BackupIOError
from config_manager import Config


class RetentionManager:
    def __init__(self, config: Config):
        self.config = config

    def expired(self, directory: Optional[Path] = None, keep: Optional[int] = None) -> List[Path]:
        """The archives that `prune` would delete, oldest last."""
        directory = Path(directory or self.config.backup_path)
        keep = self.config.backup_retention if keep is None else keep
        if keep < 1:
            raise ValueError("Retention must keep at least one backup.")
        return find_archives(directory, self.config.archive_prefix)[keep:]

    def prune(self, directory: Optional[Path] = None, keep: Optional[int] = None) -> int:
        """Deletes all but the `keep` newest archives; returns how many were removed."""
        expired = self.expired(directory, keep)
        if not expired:
            logging.info("No old backups to remove.")
            return 0

        logging.info(f"Removing {len(expired)} old backup(s)...")
        removed = 0
        for archive in expired:
            try:
                archive.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise BackupIOError(f"Could not remove old backup {archive}: {e}") from e
            logging.info(f"Removed old backup: {archive.name}")
            removed += 1
        return removed
