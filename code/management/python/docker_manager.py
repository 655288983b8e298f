# ==============================================================================
#
#   Docker Runtime Utility
#
#   Direct `docker` / `docker compose` access, run as the service account.
#   The backup manager normally drives stacks through the Portainer API; this
#   module covers the control plane's own compose project, low-level health
#   checks, and the fallback path when the API is unreachable.
#
# ==============================================================================

import log_setup
import logging
import sys
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set

# Import the 'sh' library.
try:
    import sh
except ImportError:
    print("[ERROR] The 'sh' library is not installed. Please run: pip install sh")
    sys.exit(1)

from config_manager import Config

COMPOSE_FILE_NAMES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)
DEFAULT_NETWORK = "prod-network"


class DockerComposeManager:
    """
    Runs docker and docker compose commands as the configured service user.
    Command failures are logged with their output and re-raised.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        # Bake the base 'sudo -u <user> docker' command for reuse.
        self.sudo_docker = sh.sudo.bake("-u", config.portainer_user, "docker")
        self.sudo_compose = self.sudo_docker.bake("compose")

    def _log_output(self, line: str, source: str):
        """
        Callback to log command output, distinguishing between stdout and stderr.
        """
        line = line.strip()
        if not line:
            return  # Avoid logging empty lines.

        if source == "stderr":
            # Docker Compose writes progress to stderr, so keep it at INFO.
            logging.info(f"[stderr] {line}")
        else:
            logging.info(line)

    # --- Compose project discovery ---

    def compose_file(self, project_dir: Path) -> Optional[Path]:
        """Returns the compose file of a project directory, if it has one."""
        for name in COMPOSE_FILE_NAMES:
            candidate = Path(project_dir) / name
            if candidate.is_file():
                return candidate
        return None

    def find_compose_projects(self, root: Path) -> List[Path]:
        """
        Collects the compose files of every direct subdirectory of `root`.
        """
        root = Path(root)
        if not root.is_dir():
            logging.warning(f"Compose project root '{root}' does not exist.")
            return []

        logging.info(f"Scanning for compose projects in: {root}...")
        compose_files = []
        for service_dir in sorted(d for d in root.iterdir() if d.is_dir()):
            compose_file = self.compose_file(service_dir)
            if compose_file is None:
                logging.debug(f"'{service_dir.name}' has no compose file. Skipping.")
                continue
            compose_files.append(compose_file)

        logging.info(f"Found {len(compose_files)} compose project(s) in {root}.")
        return compose_files

    def find_compose_files(self, root: Path) -> List[Path]:
        """Every compose file anywhere under `root` (used by path migration)."""
        root = Path(root)
        if not root.is_dir():
            return []
        found: Set[Path] = set()
        for name in COMPOSE_FILE_NAMES:
            found.update(p for p in root.rglob(name) if p.is_file())
        return sorted(found)

    # --- Compose commands ---

    def _compose(self, project_dir: Path, command: str, *args: str, ok_codes: Sequence[int] = (0,)):
        project_dir = Path(project_dir)
        compose_file = self.compose_file(project_dir)
        if compose_file is None:
            raise FileNotFoundError(f"No compose file found in '{project_dir}'.")

        final_command = self.sudo_compose.bake(
            "-f", str(compose_file), command, *args, _cwd=str(project_dir)
        )
        logging.info(f"Running command in '{project_dir}': {command} {' '.join(args)}".rstrip())
        try:
            # The `*a` in the lambda catches extra arguments from sh we don't need.
            final_command(
                _ok_code=list(ok_codes),
                _out=lambda line, *a: self._log_output(line, source="stdout"),
                _err=lambda line, *a: self._log_output(line, source="stderr"),
            )
        except sh.ErrorReturnCode as e:
            logging.error(
                f"'{command}' failed for {project_dir.name} with exit code {e.exit_code}."
            )
            raise e
        except sh.CommandNotFound as e:
            logging.error(f"'{e}' command not found. Is Docker installed?")
            raise e

    def compose_up(self, project_dir: Path) -> None:
        """Creates and starts a compose project in the background."""
        self._compose(project_dir, "up", "-d")

    def compose_down(self, project_dir: Path) -> None:
        """Stops and removes a compose project's containers."""
        self._compose(project_dir, "down")

    def compose_stop(self, project_dir: Path) -> None:
        """Stops a compose project's containers without removing them."""
        self._compose(project_dir, "stop")

    def compose_restart(self, project_dir: Path) -> None:
        # Exit code 1 is returned when there is nothing to restart.
        self._compose(project_dir, "restart", ok_codes=(0, 1))

    # --- Runtime queries ---

    def running_container_names(self) -> List[str]:
        output = self.sudo_docker.ps("--format", "{{.Names}}")
        return [line for line in str(output).splitlines() if line.strip()]

    def container_exists(self, name: str) -> bool:
        output = self.sudo_docker.ps("-a", "--format", "{{.Names}}")
        return name in str(output).split()

    def container_running(self, name: str) -> bool:
        return name in self.running_container_names()

    def ensure_network(self, network: str = DEFAULT_NETWORK) -> None:
        """Creates the shared external network if it does not exist yet."""
        try:
            existing_output = self.sudo_docker.network.ls("--format", "{{.Name}}")
        except sh.ErrorReturnCode as e:
            logging.error(f"Failed to list Docker networks: {e.stderr.decode()}")
            raise e

        if network in str(existing_output).split():
            logging.info(f"Network '{network}' already exists.")
            return

        logging.info(f"Creating network: '{network}'...")
        try:
            self.sudo_docker.network.create(network)
        except sh.ErrorReturnCode as e:
            logging.error(f"Failed to create network '{network}': {e.stderr.decode()}")
            raise e
        logging.info(f"Successfully created network '{network}'.")

    def daemon_active(self) -> bool:
        try:
            sh.systemctl("is-active", "--quiet", "docker")
            return True
        except (sh.ErrorReturnCode, sh.CommandNotFound):
            return False

    def socket_accessible(self) -> bool:
        try:
            self.sudo_docker.info()
            return True
        except (sh.ErrorReturnCode, sh.CommandNotFound):
            return False

    def docker_version(self) -> str:
        try:
            return str(self.sudo_docker.version("--format", "{{.Server.Version}}")).strip()
        except (sh.ErrorReturnCode, sh.CommandNotFound):
            return "unknown"

    # --- API-less fallbacks ---

    def stop_projects_fallback(
        self, roots: Iterable[Path], skip: Callable[[str], bool] = lambda name: False
    ) -> List[str]:
        """Stops every compose project under the given roots whose name `skip` rejects."""
        stopped = []
        for root in roots:
            root = Path(root)
            project_dirs = [root] if self.compose_file(root) else [
                f.parent for f in self.find_compose_projects(root)
            ]
            for project_dir in project_dirs:
                if skip(project_dir.name):
                    continue
                try:
                    self.compose_stop(project_dir)
                    stopped.append(project_dir.name)
                except (sh.ErrorReturnCode, FileNotFoundError) as e:
                    logging.warning(f"Could not stop '{project_dir.name}': {e}")
        return stopped

    def start_projects_fallback(
        self, project_dirs: Iterable[Path], priority: Iterable[str] = ()
    ) -> List[str]:
        """
        Starts compose projects directly, priority names first.
        Returns the names that failed to start.
        """
        priority = list(priority)
        ordered = sorted(
            (Path(p) for p in project_dirs),
            key=lambda p: (0 if any(name in p.name for name in priority) else 1, p.name),
        )
        failed = []
        for project_dir in ordered:
            try:
                self.compose_up(project_dir)
            except (sh.ErrorReturnCode, FileNotFoundError) as e:
                logging.warning(f"Could not start '{project_dir.name}': {e}")
                failed.append(project_dir.name)
        return failed
