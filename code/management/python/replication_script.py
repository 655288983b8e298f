#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Generates the self-contained NAS replication client.

The client is a bash script rendered from a Jinja2 template. It embeds the
service account's private key (base64) and pulls archives from this host
with rsync over ssh, then applies its own day-based retention.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import base64
import socket
import sys
from pathlib import Path
from typing import Optional

# --- THIRD-PARTY LIBRARY IMPORTS ---
from jinja2 import Template

try:
    import sh
except ImportError:
    print("[ERROR] The 'sh' library is not installed. Please run: pip install sh")
    sys.exit(1)

# --- LOCAL APPLICATION IMPORTS ---
from backup_errors import BackupIOError
from config_manager import Config

DEFAULT_OUTPUT = "/tmp/nas-backup-client.sh"
DEFAULT_LOCAL_PATH = "/volume1/backup/docker"

NAS_CLIENT_TEMPLATE = """#!/bin/bash

# Self-Contained NAS Backup Client
# Generated by docker-backup-manager on {{ generated_at }}
# This script contains an embedded SSH key and requires no additional setup.

set -euo pipefail

# Primary server connection details
PRIMARY_SERVER_IP="{{ server_ip }}"
PRIMARY_SERVER_USER="{{ server_user }}"
PRIMARY_BACKUP_PATH="{{ remote_path }}"
ARCHIVE_PREFIX="{{ archive_prefix }}"

# Local backup storage
LOCAL_BACKUP_PATH="${LOCAL_BACKUP_PATH:-{{ local_path }}}"
RETENTION_DAYS={{ retention_days }}

TEMP_DIR="/tmp/docker-backup-$$"
SSH_KEY_FILE="$TEMP_DIR/primary_key"

# Embedded SSH private key (do not edit)
SSH_PRIVATE_KEY_B64="{{ private_key_b64 }}"

log() { printf '%s [%s] %s\\n' "$(date '+%Y-%m-%d %H:%M:%S')" "$1" "$2"; }

cleanup() { rm -rf "$TEMP_DIR"; }
trap cleanup EXIT

setup_ssh_key() {
    mkdir -p "$TEMP_DIR"
    chmod 700 "$TEMP_DIR"
    echo "$SSH_PRIVATE_KEY_B64" | base64 -d > "$SSH_KEY_FILE"
    chmod 600 "$SSH_KEY_FILE"
}

ssh_primary() {
    ssh -i "$SSH_KEY_FILE" -o ConnectTimeout=10 -o BatchMode=yes -o StrictHostKeyChecking=no \\
        "$PRIMARY_SERVER_USER@$PRIMARY_SERVER_IP" "$@"
}

test_connection() {
    log INFO "Testing SSH connection to $PRIMARY_SERVER_IP..."
    ssh_primary 'echo ok' >/dev/null
}

sync_backups() {
    mkdir -p "$LOCAL_BACKUP_PATH"
    local files
    files=$(ssh_primary "ls $PRIMARY_BACKUP_PATH/${ARCHIVE_PREFIX}_*.tar.gz 2>/dev/null || true")
    if [[ -z "$files" ]]; then
        log WARN "No backup files found on primary server"
        return 0
    fi
    while read -r file; do
        [[ -z "$file" ]] && continue
        log INFO "Syncing: $(basename "$file")"
        rsync -avz -e "ssh -i $SSH_KEY_FILE -o StrictHostKeyChecking=no" \\
            "$PRIMARY_SERVER_USER@$PRIMARY_SERVER_IP:$file" "$LOCAL_BACKUP_PATH/"
    done <<< "$files"
}

cleanup_old_backups() {
    log INFO "Removing local backups older than $RETENTION_DAYS days"
    find "$LOCAL_BACKUP_PATH" -name "${ARCHIVE_PREFIX}_*.tar.gz" -type f -mtime +"$RETENTION_DAYS" -delete
}

main() {
    case "${1:-sync}" in
        test) setup_ssh_key; test_connection ;;
        list) setup_ssh_key; ssh_primary "ls -la $PRIMARY_BACKUP_PATH/${ARCHIVE_PREFIX}_*.tar.gz" ;;
        sync) setup_ssh_key; test_connection; sync_backups; cleanup_old_backups ;;
        *) echo "Usage: $0 [sync|test|list]"; exit 1 ;;
    esac
}

main "$@"
"""


def primary_ip() -> str:
    """Best guess at the address the NAS should use to reach this host."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def read_private_key(config: Config, key_path: Optional[Path] = None) -> bytes:
    key_path = Path(key_path or f"/home/{config.portainer_user}/.ssh/id_ed25519")
    try:
        return key_path.read_bytes()
    except FileNotFoundError:
        raise BackupIOError(
            f"SSH private key not found at: {key_path}. Has the service account been set up?"
        )
    except PermissionError:
        return bytes(sh.sudo.cat(str(key_path), _return_cmd=True).stdout)


def render_nas_script(
    config: Config,
    private_key: bytes,
    server_ip: str,
    local_path: str = DEFAULT_LOCAL_PATH,
    generated_at: str = "",
) -> str:
    return Template(NAS_CLIENT_TEMPLATE).render(
        generated_at=generated_at,
        server_ip=server_ip,
        server_user=config.portainer_user,
        remote_path=config.backup_path,
        archive_prefix=config.archive_prefix,
        local_path=local_path,
        retention_days=config.remote_retention,
        private_key_b64=base64.b64encode(private_key).decode("ascii"),
    )


def write_nas_script(content: str, output: Path = Path(DEFAULT_OUTPUT)) -> Path:
    output = Path(output)
    output.write_text(content)
    output.chmod(0o755)
    logging.info(f"NAS backup client written to {output}")
    return output
