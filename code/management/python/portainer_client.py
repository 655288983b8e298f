#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Client for the Portainer REST API (the stack registry).

Every response body is decoded into a typed `Stack` or `Container` value; a
body that does not have the expected shape raises `ApiError` instead of
leaking half-parsed JSON into the managers. Start and stop calls are followed
by a verification read, because Portainer can report success while the
containers are still transitioning.
"""

# --- STANDARD LIBRARY IMPORTS ---
import log_setup  # Ensure logging is configured before any other imports
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

# --- THIRD-PARTY LIBRARY IMPORTS ---
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# --- LOCAL APPLICATION IMPORTS ---
from backup_errors import ApiError, AuthError, ConflictError
from config_manager import Config, Credentials
from polling import PollResult, poll_until

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"

# Portainer stack status codes.
STATUS_RUNNING = 1
STATUS_STOPPED = 2
STATUS_NAMES = {STATUS_RUNNING: "running", STATUS_STOPPED: "stopped"}

# Stack type 2 is a standalone docker compose stack.
COMPOSE_STACK_TYPE = 2

AUTH_ATTEMPTS = 3
AUTH_RETRY_DELAY = 2.0
DEFAULT_TIMEOUT = 10
LIFECYCLE_TIMEOUT = 30
VERIFY_SETTLE_SECONDS = 3.0


def _require(data: Dict[str, Any], key: str, kind: type, what: str):
    value = data.get(key)
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ApiError(f"Malformed {what}: field '{key}' missing or not {kind.__name__}.")
    return value


def _decode_env(raw: Any) -> List[Dict[str, str]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ApiError("Malformed stack: 'Env' is not a list.")
    env = []
    for item in raw:
        if not isinstance(item, dict) or "name" not in item:
            raise ApiError("Malformed stack: env entries need a 'name'.")
        env.append({"name": str(item["name"]), "value": str(item.get("value", ""))})
    return env


@dataclass
class Stack:
    """A stack as known to Portainer, optionally with its compose content."""

    id: int
    name: str
    status: str = "stopped"
    endpoint_id: int = 1
    compose_content: Optional[str] = None
    env: List[Dict[str, str]] = field(default_factory=list)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.status == "running"

    @classmethod
    def from_api(cls, data: Any) -> "Stack":
        """Decodes one element of GET /stacks (or GET /stacks/{id})."""
        if not isinstance(data, dict):
            raise ApiError(f"Malformed stack: expected an object, got {type(data).__name__}.")
        status_code = data.get("Status")
        return cls(
            id=_require(data, "Id", int, "stack"),
            name=_require(data, "Name", str, "stack"),
            status=STATUS_NAMES.get(status_code, "error"),
            endpoint_id=int(data.get("EndpointId") or 1),
            env=_decode_env(data.get("Env")),
            created_at=data.get("CreationDate"),
            updated_at=data.get("UpdateDate"),
        )

    def to_record(self) -> Dict[str, Any]:
        """The entry written to the stack snapshot file inside an archive."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "endpoint_id": self.endpoint_id,
            "compose_file_content": self.compose_content,
            "env_variables": self.env,
            "created_date": self.created_at,
            "updated_date": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Stack":
        """Reads an entry back from a snapshot file."""
        if not isinstance(record, dict) or not record.get("name"):
            raise ValueError(f"Snapshot entry has no stack name: {record!r}")
        status = record.get("status")
        # Snapshots written by older versions kept the numeric Portainer status.
        if isinstance(status, int) or (isinstance(status, str) and status.isdigit()):
            status = STATUS_NAMES.get(int(status), "error")
        return cls(
            id=int(record.get("id") or 0),
            name=str(record["name"]),
            status=status or "stopped",
            endpoint_id=int(record.get("endpoint_id") or 1),
            compose_content=record.get("compose_file_content") or None,
            env=list(record.get("env_variables") or []),
            created_at=record.get("created_date"),
            updated_at=record.get("updated_date"),
        )


@dataclass
class Container:
    """A container as returned by the Docker-compatible listing endpoint."""

    id: str
    names: List[str]
    state: str
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def project(self) -> Optional[str]:
        return self.labels.get(COMPOSE_PROJECT_LABEL)

    @property
    def running(self) -> bool:
        return self.state == "running"

    @classmethod
    def from_api(cls, data: Any) -> "Container":
        if not isinstance(data, dict):
            raise ApiError("Malformed container: expected an object.")
        names = data.get("Names") or []
        labels = data.get("Labels") or {}
        if not isinstance(names, list) or not isinstance(labels, dict):
            raise ApiError("Malformed container: 'Names' or 'Labels' has the wrong type.")
        return cls(
            id=_require(data, "Id", str, "container"),
            names=[str(n).lstrip("/") for n in names],
            state=str(data.get("State") or "unknown"),
            labels={str(k): str(v) for k, v in labels.items()},
        )


class PortainerClient:
    """Synchronous Portainer API client with bounded timeouts and retries."""

    def __init__(
        self,
        config: Config,
        credentials: Optional[Credentials] = None,
        session: Optional[requests.Session] = None,
        endpoint_id: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        verify_timeout: float = 10.0,
    ):
        self.config = config
        self._credentials = credentials
        self._credentials_given = credentials is not None
        self.endpoint_id = endpoint_id
        self.sleep = sleep
        self.verify_timeout = verify_timeout
        self.token: Optional[str] = None

        if session is None:
            session = requests.Session()
            retries = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=[502, 503, 504],
                allowed_methods=["GET", "HEAD"],
            )
            session.mount("http://", HTTPAdapter(max_retries=retries))
            session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session = session

    @property
    def api_url(self) -> str:
        if self._credentials and self._credentials.api_url:
            return self._credentials.api_url.rstrip("/")
        return self.config.portainer_api_url.rstrip("/")

    @property
    def credentials(self) -> Credentials:
        if self._credentials is None:
            self._credentials = Credentials.from_file(self.config.credentials_file)
        return self._credentials

    # --- Low-level request handling ---

    def _request(
        self,
        method: str,
        path: str,
        expected=(200,),
        timeout: float = DEFAULT_TIMEOUT,
        auth: bool = True,
        **kwargs,
    ) -> requests.Response:
        headers = kwargs.pop("headers", {})
        if auth:
            if self.token is None:
                self.authenticate()
            headers["Authorization"] = f"Bearer {self.token}"

        url = f"{self.api_url}{path}"
        logging.debug(f"Portainer API {method} {url}")
        try:
            response = self.session.request(
                method, url, headers=headers, timeout=timeout, **kwargs
            )
        except requests.RequestException as e:
            raise ApiError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401 and auth:
            self.token = None
            raise AuthError(f"Portainer rejected the API token for {method} {path}.")
        if response.status_code == 409:
            raise ConflictError(
                f"{method} {path} conflicted: {response.text}",
                status_code=409,
                body=response.text,
            )
        if response.status_code not in expected:
            raise ApiError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    @staticmethod
    def _json(response: requests.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                f"Could not decode {what} response: {e}",
                status_code=response.status_code,
                body=response.text,
            ) from e

    # --- Authentication & readiness ---

    def authenticate(self) -> str:
        """Logs in with the stored admin credentials and caches the JWT."""
        creds = self.credentials
        payload = {"Username": creds.username, "Password": creds.password}
        last_error = None

        for attempt in range(1, AUTH_ATTEMPTS + 1):
            try:
                response = self._request(
                    "POST", "/auth", auth=False, json=payload, timeout=DEFAULT_TIMEOUT
                )
                token = self._json(response, "auth").get("jwt")
                if token:
                    self.token = token
                    logging.debug("Authenticated with Portainer API.")
                    return token
                last_error = "response did not contain a token"
            except (ApiError, AttributeError) as e:
                last_error = e
            logging.warning(
                f"Authentication attempt {attempt}/{AUTH_ATTEMPTS} failed: {last_error}"
            )
            if attempt < AUTH_ATTEMPTS:
                self.sleep(AUTH_RETRY_DELAY)

        raise AuthError(
            f"Failed to authenticate with Portainer API after {AUTH_ATTEMPTS} attempts: {last_error}"
        )

    def reset_auth(self) -> None:
        """Forgets the token and re-reads credentials on next use (after a restore)."""
        self.token = None
        if not self._credentials_given:
            self._credentials = None

    def is_reachable(self) -> bool:
        """True if the unauthenticated status endpoint answers."""
        try:
            self._request("GET", "/status", auth=False, timeout=5)
            return True
        except ApiError:
            return False

    def wait_until_ready(self, timeout: float = 120.0) -> PollResult:
        logging.info(f"Waiting up to {timeout:.0f}s for the Portainer API...")
        result = poll_until(
            self.is_reachable,
            timeout=timeout,
            initial_interval=2.0,
            max_interval=10.0,
            description="Portainer API",
            sleep=self.sleep,
        )
        if result:
            logging.info("Portainer API is ready.")
        return result

    # --- Stacks ---

    def list_stacks(self) -> List[Stack]:
        data = self._json(self._request("GET", "/stacks"), "stack list")
        if data is None:
            return []
        if not isinstance(data, list):
            raise ApiError("Malformed stack list: expected an array.")
        return [Stack.from_api(item) for item in data]

    def get_stack(self, stack_id: int) -> Stack:
        return Stack.from_api(self._json(self._request("GET", f"/stacks/{stack_id}"), "stack"))

    def find_stack(self, name: str) -> Optional[Stack]:
        for stack in self.list_stacks():
            if stack.name == name:
                return stack
        return None

    def get_stack_file(self, stack_id: int) -> str:
        data = self._json(self._request("GET", f"/stacks/{stack_id}/file"), "stack file")
        if not isinstance(data, dict) or not isinstance(data.get("StackFileContent"), str):
            raise ApiError(f"Malformed stack file response for stack {stack_id}.")
        return data["StackFileContent"]

    def capture_stack(self, stack: Stack) -> Stack:
        """Returns the stack with its compose content filled in, if retrievable."""
        try:
            stack.compose_content = self.get_stack_file(stack.id)
        except ApiError as e:
            logging.warning(f"Could not capture compose file for stack '{stack.name}': {e}")
            stack.compose_content = None
        return stack

    def create_stack(
        self, name: str, compose_content: str, env: Optional[List[Dict[str, str]]] = None
    ) -> int:
        payload = {
            "name": name,
            "stackFileContent": compose_content,
            "env": env or [],
            "fromAppTemplate": False,
        }
        response = self._request(
            "POST",
            "/stacks",
            params={"type": COMPOSE_STACK_TYPE, "method": "string", "endpointId": self.endpoint_id},
            json=payload,
            timeout=LIFECYCLE_TIMEOUT,
        )
        created = Stack.from_api(self._json(response, "stack create"))
        logging.info(f"Created stack '{name}' (ID: {created.id}).")
        return created.id

    def update_stack(
        self, stack_id: int, compose_content: str, env: Optional[List[Dict[str, str]]] = None
    ) -> None:
        payload = {"stackFileContent": compose_content, "env": env or [], "prune": False}
        self._request(
            "PUT",
            f"/stacks/{stack_id}",
            params={"endpointId": self.endpoint_id},
            json=payload,
            timeout=LIFECYCLE_TIMEOUT,
        )
        logging.info(f"Updated stack configuration (ID: {stack_id}).")

    def delete_stack(self, stack_id: int) -> None:
        self._request(
            "DELETE",
            f"/stacks/{stack_id}",
            expected=(200, 204),
            params={"endpointId": self.endpoint_id},
            timeout=LIFECYCLE_TIMEOUT,
        )
        logging.info(f"Deleted stack (ID: {stack_id}).")

    def _verify_status(self, stack_id: int, wanted: str) -> bool:
        result = poll_until(
            lambda: self.get_stack(stack_id).status == wanted,
            timeout=self.verify_timeout,
            initial_interval=3.0,
            sleep=self.sleep,
            initial_delay=VERIFY_SETTLE_SECONDS,
        )
        if not result:
            logging.warning(
                f"Stack {stack_id} did not report '{wanted}' within {self.verify_timeout:.0f}s; "
                "it may still converge."
            )
        return bool(result)

    def start_stack(self, stack_id: int) -> bool:
        """Starts a stack; returns whether the registry confirmed it running."""
        try:
            self._request(
                "POST",
                f"/stacks/{stack_id}/start",
                params={"endpointId": self.endpoint_id},
                timeout=LIFECYCLE_TIMEOUT,
            )
        except ConflictError:
            logging.info(f"Stack {stack_id} is already running.")
            return True
        return self._verify_status(stack_id, "running")

    def stop_stack(self, stack_id: int) -> bool:
        """Stops a stack; returns whether the registry confirmed it stopped."""
        try:
            self._request(
                "POST",
                f"/stacks/{stack_id}/stop",
                params={"endpointId": self.endpoint_id},
                timeout=LIFECYCLE_TIMEOUT,
            )
        except ConflictError:
            logging.info(f"Stack {stack_id} is already stopped.")
            return True
        return self._verify_status(stack_id, "stopped")

    # --- Endpoints & containers ---

    def list_endpoints(self) -> List[Dict[str, Any]]:
        data = self._json(self._request("GET", "/endpoints"), "endpoint list")
        if not isinstance(data, list) or not all(isinstance(e, dict) for e in data):
            raise ApiError("Malformed endpoint list.")
        return data

    def list_containers(self) -> List[Container]:
        data = self._json(
            self._request(
                "GET",
                f"/endpoints/{self.endpoint_id}/docker/containers/json",
                params={"all": 1},
            ),
            "container list",
        )
        if not isinstance(data, list):
            raise ApiError("Malformed container list: expected an array.")
        return [Container.from_api(item) for item in data]

    def list_containers_for_stack(self, name: str) -> List[Container]:
        """Containers whose compose-project label matches the stack name."""
        return [c for c in self.list_containers() if c.project == name]

    def stack_running(self, name: str) -> bool:
        running = [c.names[0] for c in self.list_containers_for_stack(name) if c.running and c.names]
        if running:
            logging.info(f"Stack {name} containers running: {', '.join(running)}")
        return bool(running)
