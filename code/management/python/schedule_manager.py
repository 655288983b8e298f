#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Registers the periodic backup job in the service account's crontab.

Registration is idempotent: every line carrying the job marker is dropped
before the new one is appended.
"""

import log_setup
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

try:
    import sh
except ImportError:
    print("[ERROR] The 'sh' library is not installed. Please run: pip install sh")
    sys.exit(1)

from croniter import croniter

from config_manager import Config

SCHEDULE_PRESETS: Dict[str, str] = {
    "daily-3am": "0 3 * * *",
    "daily-2am": "0 2 * * *",
    "every-12h": "0 */12 * * *",
    "every-6h": "0 */6 * * *",
}
JOB_MARKER = "docker-backup-manager"


def validate_cron(expression: str) -> str:
    """Checks a five-field cron expression and returns it normalised."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields, got {len(fields)}: '{expression}'")
    normalised = " ".join(fields)
    if not croniter.is_valid(normalised):
        raise ValueError(f"Invalid cron expression: '{expression}'")
    return normalised


def resolve_schedule(preset: Optional[str] = None, cron: Optional[str] = None) -> str:
    if cron:
        return validate_cron(cron)
    if preset not in SCHEDULE_PRESETS:
        raise ValueError(
            f"Unknown schedule preset '{preset}'. Choose from: {', '.join(SCHEDULE_PRESETS)}"
        )
    return SCHEDULE_PRESETS[preset]


class ScheduleManager:
    """Reads and rewrites the service user's crontab through `sudo crontab -u`."""

    def __init__(self, config: Config, command: str, log_file: str, crontab=None):
        self.config = config
        self.command = command
        self.log_file = log_file
        self.crontab = crontab or sh.sudo.bake("crontab", "-u", config.portainer_user)

    def current_lines(self) -> List[str]:
        # crontab -l exits 1 when the user has no crontab yet.
        output = self.crontab("-l", _ok_code=[0, 1], _return_cmd=True)
        if output.exit_code != 0:
            return []
        return [line for line in output.stdout.decode().splitlines() if line.strip()]

    def _write(self, lines: List[str]) -> None:
        content = "\n".join(lines) + "\n" if lines else ""
        try:
            self.crontab("-", _in=content)
        except sh.ErrorReturnCode as e:
            logging.error(f"Failed to install crontab: {e.stderr.decode(errors='replace')}")
            raise e

    def job_line(self, expression: str) -> str:
        return f"{expression} {self.command} backup >> {self.log_file} 2>&1 # {JOB_MARKER}"

    def install(self, expression: str) -> str:
        expression = validate_cron(expression)
        lines = [line for line in self.current_lines() if JOB_MARKER not in line]
        line = self.job_line(expression)
        lines.append(line)
        self._write(lines)
        logging.info(f"Scheduled backup for '{self.config.portainer_user}': {expression}")
        return line

    def remove(self) -> int:
        lines = self.current_lines()
        kept = [line for line in lines if JOB_MARKER not in line]
        removed = len(lines) - len(kept)
        if removed:
            self._write(kept)
            logging.info(f"Removed {removed} scheduled backup job(s).")
        else:
            logging.info("No scheduled backup job found.")
        return removed

    def scheduled(self) -> List[str]:
        return [line for line in self.current_lines() if JOB_MARKER in line]


def default_command() -> str:
    return str(Path(sys.argv[0]).resolve())
