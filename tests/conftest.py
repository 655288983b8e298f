import os
import tempfile

# Keep log files out of the working tree; must be set before log_setup is imported.
os.environ.setdefault("DBM_LOG_DIR", tempfile.mkdtemp(prefix="dbm-logs-"))

from pathlib import Path

import pytest

from backup_errors import ApiError, ConflictError
from config_manager import Config
from docker_manager import COMPOSE_FILE_NAMES, DockerComposeManager
from polling import Converged, TimedOut
from portainer_client import COMPOSE_PROJECT_LABEL, Container, Stack


class FakePortainer:
    """In-memory stand-in for PortainerClient."""

    api_url = "http://portainer.test/api"

    def __init__(self):
        self.stacks = {}
        self.next_id = 1
        self.calls = []
        self.reachable = True
        self.never_runs = set()
        self.fail_on = set()

    def add(self, name, status="running", compose="services: {}\n", env=None):
        stack_id = self.next_id
        self.next_id += 1
        self.stacks[stack_id] = {
            "name": name,
            "status": status,
            "compose": compose,
            "env": env or [],
        }
        return stack_id

    def state(self):
        return {rec["name"]: rec["status"] for rec in self.stacks.values()}

    def _check(self, op, stack_id=None):
        self.calls.append((op, stack_id))
        if op in self.fail_on:
            raise ApiError(f"{op} failed")
        if stack_id is not None and stack_id not in self.stacks:
            raise ApiError(f"stack {stack_id} not found", status_code=404)

    def _stack(self, stack_id):
        rec = self.stacks[stack_id]
        return Stack(id=stack_id, name=rec["name"], status=rec["status"], env=list(rec["env"]))

    def list_stacks(self):
        self._check("list")
        return [self._stack(i) for i in sorted(self.stacks)]

    def get_stack(self, stack_id):
        self._check("get", stack_id)
        return self._stack(stack_id)

    def find_stack(self, name):
        return next((s for s in self.list_stacks() if s.name == name), None)

    def get_stack_file(self, stack_id):
        self._check("file", stack_id)
        compose = self.stacks[stack_id]["compose"]
        if compose is None:
            raise ApiError("no stack file")
        return compose

    def capture_stack(self, stack):
        try:
            stack.compose_content = self.get_stack_file(stack.id)
        except ApiError:
            stack.compose_content = None
        return stack

    def create_stack(self, name, compose_content, env=None):
        self._check("create")
        if any(rec["name"] == name for rec in self.stacks.values()):
            raise ConflictError(f"stack {name} exists", status_code=409)
        return self.add(name, "running", compose_content, env)

    def update_stack(self, stack_id, compose_content, env=None):
        self._check("update", stack_id)
        self.stacks[stack_id]["compose"] = compose_content
        self.stacks[stack_id]["env"] = env or []

    def delete_stack(self, stack_id):
        self._check("delete", stack_id)
        del self.stacks[stack_id]

    def start_stack(self, stack_id):
        self._check("start", stack_id)
        self.stacks[stack_id]["status"] = "running"
        return True

    def stop_stack(self, stack_id):
        self._check("stop", stack_id)
        self.stacks[stack_id]["status"] = "stopped"
        return True

    def list_containers_for_stack(self, name):
        return [
            Container(id=str(i), names=[f"{name}-app-1"], state=rec["status"] == "running" and "running" or "exited",
                      labels={COMPOSE_PROJECT_LABEL: name})
            for i, rec in self.stacks.items()
            if rec["name"] == name
        ]

    def stack_running(self, name):
        if name in self.never_runs:
            return False
        return any(c.running for c in self.list_containers_for_stack(name))

    def is_reachable(self):
        return self.reachable

    def wait_until_ready(self, timeout=120.0):
        if self.reachable:
            return Converged(True, 0.0, 1)
        return TimedOut(timeout, 1)

    def reset_auth(self):
        self.calls.append(("reset_auth", None))


class FakeDocker:
    """Records docker/compose calls instead of running them."""

    def __init__(self):
        self.calls = []
        self.portainer_running = True

    def compose_file(self, project_dir):
        for name in COMPOSE_FILE_NAMES:
            candidate = Path(project_dir) / name
            if candidate.is_file():
                return candidate
        return None

    find_compose_projects = DockerComposeManager.find_compose_projects
    find_compose_files = DockerComposeManager.find_compose_files

    def compose_up(self, project_dir):
        self.calls.append(("up", str(project_dir)))

    def compose_down(self, project_dir):
        self.calls.append(("down", str(project_dir)))

    def compose_stop(self, project_dir):
        self.calls.append(("stop", str(project_dir)))

    def compose_restart(self, project_dir):
        self.calls.append(("restart", str(project_dir)))

    def ensure_network(self, network="prod-network"):
        self.calls.append(("network", network))

    def daemon_active(self):
        return True

    def socket_accessible(self):
        return True

    def docker_version(self):
        return "24.0.7"

    def container_running(self, name):
        return self.portainer_running

    def stop_projects_fallback(self, roots, skip=lambda name: False):
        self.calls.append(("stop_fallback", [str(r) for r in roots]))
        return []

    def start_projects_fallback(self, project_dirs, priority=()):
        self.calls.append(("start_fallback", [str(p) for p in project_dirs]))
        return []


@pytest.fixture
def fake_portainer():
    return FakePortainer()


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def host(tmp_path):
    """A miniature host layout with Portainer data and two stack directories."""
    root = tmp_path / "host"
    portainer = root / "opt" / "portainer"
    tools = root / "opt" / "tools"
    npm = root / "opt" / "nginx-proxy-manager"
    backup = root / "opt" / "backup"
    for d in (portainer / "data", tools, npm, backup):
        d.mkdir(parents=True)

    (portainer / "docker-compose.yml").write_text("services:\n  portainer:\n    image: portainer/portainer-ce\n")
    (portainer / "data" / "portainer.db").write_bytes(os.urandom(4096))
    (portainer / ".credentials").write_text(
        'PORTAINER_ADMIN_USERNAME="admin"\nPORTAINER_ADMIN_PASSWORD="secret"\n'
    )
    for name in ("web", "batch"):
        stack_dir = tools / name
        stack_dir.mkdir()
        (stack_dir / "docker-compose.yml").write_text(
            f"services:\n  {name}:\n    image: example/{name}:1.0\n    volumes:\n      - {stack_dir}/data:/data\n"
        )
        (stack_dir / "data").mkdir()
        (stack_dir / "data" / "state.bin").write_bytes(os.urandom(2048))
    return root


@pytest.fixture
def config(host, tmp_path):
    locks = tmp_path / "locks"
    recovery = tmp_path / "recovery"
    locks.mkdir()
    recovery.mkdir()
    return Config(
        portainer_path=str(host / "opt" / "portainer"),
        npm_path=str(host / "opt" / "nginx-proxy-manager"),
        tools_path=str(host / "opt" / "tools"),
        backup_path=str(host / "opt" / "backup"),
        backup_retention=3,
        lock_dir=str(locks),
        recovery_dir=str(recovery),
        config_file=str(tmp_path / "docker-backup-manager.conf"),
    )
