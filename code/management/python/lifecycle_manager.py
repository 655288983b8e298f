#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Graceful shutdown and startup of stacks around a backup or restore.

Stacks are driven through the Portainer API. The control plane's own stack
is never stopped. Stacks named like a backup or monitoring stack keep running
during a backup; a restore or a path migration stops them too.
Reverse proxies start first and get a short settle window before the stacks
that depend on them. A stack that does not come up within its budget is
reported and skipped; it never blocks the remaining stacks.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

# --- LOCAL APPLICATION IMPORTS ---
from backup_errors import ApiError, AuthError
from config_manager import Config
from docker_manager import DockerComposeManager
from polling import poll_until
from portainer_client import PortainerClient, Stack

CONTROL_PLANE_PATTERN = "portainer"
ESSENTIAL_PATTERNS = (CONTROL_PLANE_PATTERN, "backup", "monitoring")
PROXY_PATTERNS = ("nginx-proxy-manager", "traefik", "caddy")
PROXY_SETTLE_SECONDS = 5.0
STARTUP_BUDGET_SECONDS = 60.0
SHUTDOWN_GRACE_SECONDS = 8.0


def is_essential(name: str) -> bool:
    return any(pattern in name for pattern in ESSENTIAL_PATTERNS)


def is_control_plane(name: str) -> bool:
    return CONTROL_PLANE_PATTERN in name


def is_proxy(name: str) -> bool:
    return any(pattern in name for pattern in PROXY_PATTERNS)


def startup_order(stacks: Iterable[Stack]) -> List[Stack]:
    """Reverse proxies first, then everything else; stable within each group."""
    stacks = list(stacks)
    return [s for s in stacks if is_proxy(s.name)] + [s for s in stacks if not is_proxy(s.name)]


@dataclass
class LifecycleReport:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    used_fallback: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


class LifecycleManager:
    """Sequences stack stop/start through the API, falling back to compose."""

    def __init__(
        self,
        config: Config,
        client: PortainerClient,
        docker: DockerComposeManager,
        sleep: Callable[[float], None] = time.sleep,
        startup_budget: float = STARTUP_BUDGET_SECONDS,
    ):
        self.config = config
        self.client = client
        self.docker = docker
        self.sleep = sleep
        self.startup_budget = startup_budget

    # --- Shutdown ---

    def stop_stacks(
        self, stacks: Optional[List[Stack]] = None, keep_essential: bool = True
    ) -> LifecycleReport:
        """
        Stops every running, non-essential stack.
        With `keep_essential=False` only the control plane is left running.

        Returns the names that were stopped in `succeeded`; those are the ones
        `start_stacks` should bring back afterwards.
        """
        keep = is_essential if keep_essential else is_control_plane
        report = LifecycleReport()
        try:
            if stacks is None:
                stacks = self.client.list_stacks()
        except (ApiError, AuthError) as e:
            logging.warning(f"Portainer API unavailable ({e}); stopping compose projects directly.")
            return self._stop_fallback(keep)

        logging.info(f"Found {len(stacks)} stacks, stopping non-essential stacks...")
        for stack in stacks:
            if not stack.running:
                logging.info(f"Stack '{stack.name}' is already stopped.")
                continue
            if keep(stack.name):
                logging.info(f"Keeping essential stack '{stack.name}' running.")
                continue
            if is_proxy(stack.name):
                logging.info(f"Stopping reverse proxy stack '{stack.name}' for a clean archive.")

            logging.info(f"Stopping stack: {stack.name} (ID: {stack.id})")
            try:
                if not self.client.stop_stack(stack.id):
                    logging.warning(f"Stack '{stack.name}' may not have stopped completely.")
                report.succeeded.append(stack.name)
            except (ApiError, AuthError) as e:
                logging.warning(f"Failed to stop stack '{stack.name}': {e}")
                report.failed.append(stack.name)

        if report.succeeded:
            logging.info(
                f"Waiting for {len(report.succeeded)} stacks to shut down gracefully..."
            )
            self.sleep(SHUTDOWN_GRACE_SECONDS)
        logging.info(f"--- Graceful shutdown completed ({len(report.succeeded)} stacks stopped) ---")
        return report

    def _stop_fallback(self, keep: Callable[[str], bool] = is_essential) -> LifecycleReport:
        report = LifecycleReport(used_fallback=True)
        roots = [self.config.tools_path, self.config.npm_path]
        report.succeeded = self.docker.stop_projects_fallback(roots, skip=keep)
        return report

    # --- Startup ---

    def wait_running(self, name: str, budget: Optional[float] = None) -> bool:
        """Polls the compose-project label query until the stack has a running container."""
        budget = self.startup_budget if budget is None else budget
        result = poll_until(
            lambda: self.client.stack_running(name),
            timeout=budget,
            initial_interval=5.0,
            max_interval=10.0,
            description=f"stack '{name}'",
            sleep=self.sleep,
        )
        return bool(result)

    def start_stacks(self, names: Iterable[str], used_fallback: bool = False) -> LifecycleReport:
        """Starts the named stacks, proxies first, verifying each one."""
        names = list(names)
        if not names:
            logging.info("No stacks to start.")
            return LifecycleReport()
        if used_fallback:
            return self._start_fallback(names)

        try:
            live = {s.name: s for s in self.client.list_stacks()}
        except (ApiError, AuthError) as e:
            logging.warning(f"Portainer API unavailable ({e}); starting compose projects directly.")
            return self._start_fallback(names)

        report = LifecycleReport()
        ordered = startup_order(live[n] for n in names if n in live)
        for missing in (n for n in names if n not in live):
            logging.warning(f"Stack '{missing}' no longer exists in Portainer; cannot start it.")
            report.failed.append(missing)

        proxies_started = False
        for stack in ordered:
            if proxies_started and not is_proxy(stack.name):
                logging.info(f"Giving reverse proxies {PROXY_SETTLE_SECONDS:.0f}s to settle...")
                self.sleep(PROXY_SETTLE_SECONDS)
                proxies_started = False

            logging.info(f"Starting stack: {stack.name} (ID: {stack.id})")
            try:
                self.client.start_stack(stack.id)
            except (ApiError, AuthError) as e:
                logging.warning(f"Failed to start stack '{stack.name}': {e}")
                report.failed.append(stack.name)
                continue
            if is_proxy(stack.name):
                proxies_started = True

            if self.wait_running(stack.name):
                report.succeeded.append(stack.name)
            else:
                logging.warning(
                    f"Stack '{stack.name}' is not running after {self.startup_budget:.0f}s; "
                    "you may need to start it manually via Portainer."
                )
                report.failed.append(stack.name)

        logging.info(
            f"--- Startup completed: {len(report.succeeded)} running, {len(report.failed)} failed ---"
        )
        return report

    def _start_fallback(self, names: List[str]) -> LifecycleReport:
        report = LifecycleReport(used_fallback=True)
        project_dirs = [self.config.stack_data_dir(name) for name in names]
        report.failed = self.docker.start_projects_fallback(project_dirs, priority=PROXY_PATTERNS)
        failed = set(report.failed)
        report.succeeded = [d.name for d in project_dirs if d.name not in failed]
        return report
