#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Loads, validates and persists the backup manager configuration.

The configuration lives in a flat KEY="value" file (by default
/etc/docker-backup-manager.conf). It is read once at process start into a
`Config` instance that is handed to every manager explicitly; nothing in the
managers reads the environment or the file on its own.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional

# --- THIRD-PARTY LIBRARY IMPORTS ---
from dotenv import dotenv_values

# --- LOCAL APPLICATION IMPORTS ---
from backup_errors import AuthError, ConfigError

DEFAULT_CONFIG_FILE = "/etc/docker-backup-manager.conf"
NPM_STACK_NAME = "nginx-proxy-manager"

# Maps file keys to Config attributes. Order is the order keys are written.
CONFIG_KEYS = {
    "PORTAINER_PATH": "portainer_path",
    "NPM_PATH": "npm_path",
    "TOOLS_PATH": "tools_path",
    "BACKUP_PATH": "backup_path",
    "BACKUP_RETENTION": "backup_retention",
    "REMOTE_RETENTION": "remote_retention",
    "DOMAIN_NAME": "domain_name",
    "PORTAINER_SUBDOMAIN": "portainer_subdomain",
    "NPM_SUBDOMAIN": "npm_subdomain",
    "PORTAINER_USER": "portainer_user",
    "PORTAINER_API_URL": "portainer_api_url",
    "LOCK_DIR": "lock_dir",
    "RECOVERY_DIR": "recovery_dir",
    "ARCHIVE_PREFIX": "archive_prefix",
}

PATH_KEYS = ("portainer_path", "npm_path", "tools_path", "backup_path")
INT_KEYS = ("backup_retention", "remote_retention")


@dataclass
class Config:
    """All settings the managers need, with their defaults."""

    portainer_path: str = "/opt/portainer"
    npm_path: str = "/opt/nginx-proxy-manager"
    tools_path: str = "/opt/tools"
    backup_path: str = "/opt/backup"
    backup_retention: int = 7
    remote_retention: int = 30
    domain_name: str = "zuptalo.com"
    portainer_subdomain: str = "pt"
    npm_subdomain: str = "npm"
    portainer_user: str = "portainer"
    portainer_api_url: str = "http://localhost:9000/api"
    lock_dir: str = "/tmp"
    recovery_dir: str = "/tmp"
    archive_prefix: str = "docker_backup"
    config_file: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        self._validate()

    # --- Derived values ---

    @property
    def portainer_url(self) -> str:
        return f"{self.portainer_subdomain}.{self.domain_name}"

    @property
    def npm_url(self) -> str:
        return f"{self.npm_subdomain}.{self.domain_name}"

    @property
    def credentials_file(self) -> Path:
        return Path(self.portainer_path) / ".credentials"

    def stack_data_dir(self, stack_name: str) -> Path:
        """Returns the host directory holding a stack's compose file and data."""
        if stack_name == NPM_STACK_NAME:
            return Path(self.npm_path)
        return Path(self.tools_path) / stack_name

    def data_roots(self) -> Dict[str, str]:
        """The directories that a migration may relocate, keyed by role."""
        return {
            "portainer": self.portainer_path,
            "tools": self.tools_path,
            "backup": self.backup_path,
        }

    # --- Validation ---

    def _validate(self):
        for name in INT_KEYS:
            value = getattr(self, name)
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ConfigError(f"{name.upper()} must be an integer, got '{value}'.")
            if value < 1:
                raise ConfigError(f"{name.upper()} must be at least 1, got {value}.")
            setattr(self, name, value)

        for name in PATH_KEYS:
            value = str(getattr(self, name))
            if not os.path.isabs(value):
                raise ConfigError(f"{name.upper()} must be an absolute path, got '{value}'.")
            setattr(self, name, value.rstrip("/") or "/")

        if not str(self.portainer_user).strip():
            raise ConfigError("PORTAINER_USER cannot be empty.")

    # --- Persistence ---

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "Config":
        """
        Loads configuration from a flat key=value file.

        A missing default file yields the built-in defaults; a missing file
        that was asked for explicitly is an error.
        """
        explicit = path is not None or bool(os.getenv("DBM_CONFIG_FILE"))
        config_path = Path(path or os.getenv("DBM_CONFIG_FILE") or DEFAULT_CONFIG_FILE)

        if not config_path.exists():
            if explicit:
                raise ConfigError(f"Configuration file not found: {config_path}")
            logging.info(
                f"No configuration file at {config_path}, using built-in defaults."
            )
            return cls()

        logging.info(f"Loading configuration from: {config_path}")
        try:
            raw = dotenv_values(dotenv_path=config_path)
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Could not read configuration file {config_path}: {e}")

        values = {}
        for key, value in raw.items():
            if key not in CONFIG_KEYS:
                logging.debug(f"Ignoring unknown configuration key: {key}")
                continue
            if value is None or value == "":
                raise ConfigError(f"Configuration key '{key}' has no value in {config_path}")
            values[CONFIG_KEYS[key]] = value

        config = cls(**values, config_file=str(config_path))
        logging.info("Configuration loaded and validated successfully.")
        return config

    def save(self, path: Optional[Path] = None) -> Path:
        """Writes the configuration back as a flat key=value file."""
        target = Path(path or self.config_file or DEFAULT_CONFIG_FILE)
        lines = ["# Docker Backup Manager Configuration"]
        for key, attr in CONFIG_KEYS.items():
            lines.append(f'{key}="{getattr(self, attr)}"')
        lines.append(f'PORTAINER_URL="{self.portainer_url}"')
        lines.append(f'NPM_URL="{self.npm_url}"')
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text("\n".join(lines) + "\n")
        except OSError as e:
            raise ConfigError(f"Could not write configuration file {target}: {e}")
        self.config_file = str(target)
        logging.info(f"Configuration saved to {target}")
        return target

    def with_paths(self, **paths: str) -> "Config":
        """Returns a copy with some of the data paths replaced."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in paths.items() if v})
        return Config(**values)


@dataclass
class Credentials:
    """Admin credentials for the control-plane API."""

    username: str
    password: str
    api_url: Optional[str] = None

    @classmethod
    def from_file(cls, path: Path) -> "Credentials":
        """Reads PORTAINER_ADMIN_USERNAME / PORTAINER_ADMIN_PASSWORD from a key=value file."""
        if not Path(path).exists():
            raise AuthError(f"Portainer credentials not found: {path}")
        try:
            raw = dotenv_values(dotenv_path=path)
        except OSError as e:
            raise AuthError(f"Could not read Portainer credentials {path}: {e}")

        username = raw.get("PORTAINER_ADMIN_USERNAME")
        password = raw.get("PORTAINER_ADMIN_PASSWORD")
        if not username or not password:
            raise AuthError(
                f"Credentials file {path} is missing PORTAINER_ADMIN_USERNAME "
                "or PORTAINER_ADMIN_PASSWORD."
            )
        return cls(username=username, password=password, api_url=raw.get("PORTAINER_API_URL"))
