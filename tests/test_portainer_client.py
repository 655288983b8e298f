import json

import pytest
import requests

from backup_errors import ApiError, AuthError
from config_manager import Config, Credentials
from portainer_client import VERIFY_SETTLE_SECONDS, PortainerClient, Stack


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("Expecting value")
        return self._payload


class FakeSession:
    """Answers requests from a per-(method, path) queue of responses."""

    def __init__(self, routes):
        self.routes = {key: list(value) for key, value in routes.items()}
        self.requests = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        path = url.split("/api", 1)[1]
        self.requests.append((method, path, kwargs))
        queue = self.routes.get((method, path))
        if not queue:
            raise requests.ConnectionError(f"no route for {method} {path}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


AUTH_OK = FakeResponse(200, {"jwt": "token"})


def make_client(routes):
    session = FakeSession({("POST", "/auth"): [AUTH_OK], **routes})
    client = PortainerClient(
        Config(),
        credentials=Credentials("admin", "pw"),
        session=session,
        sleep=lambda s: None,
        verify_timeout=0,
    )
    return client, session


def test_list_stacks_decodes_status():
    client, _ = make_client({
        ("GET", "/stacks"): [FakeResponse(200, [
            {"Id": 1, "Name": "web", "Status": 1, "EndpointId": 1},
            {"Id": 2, "Name": "batch", "Status": 2, "Env": [{"name": "A", "value": "1"}]},
            {"Id": 3, "Name": "odd", "Status": 7},
        ])],
    })
    stacks = client.list_stacks()
    assert [(s.name, s.status) for s in stacks] == [
        ("web", "running"), ("batch", "stopped"), ("odd", "error")
    ]
    assert stacks[1].env == [{"name": "A", "value": "1"}]


def test_malformed_stack_body_raises_api_error():
    client, _ = make_client({("GET", "/stacks"): [FakeResponse(200, [{"Name": "no-id"}])]})
    with pytest.raises(ApiError):
        client.list_stacks()

    client, _ = make_client({("GET", "/stacks"): [FakeResponse(200, None, text="<html>")]})
    with pytest.raises(ApiError):
        client.list_stacks()


def test_authentication_retries_then_fails():
    session = FakeSession({("POST", "/auth"): [FakeResponse(500, {"message": "down"})]})
    client = PortainerClient(
        Config(), credentials=Credentials("admin", "pw"), session=session, sleep=lambda s: None
    )
    with pytest.raises(AuthError):
        client.authenticate()
    assert len([r for r in session.requests if r[1] == "/auth"]) == 3


def test_stop_conflict_means_already_stopped():
    client, session = make_client({("POST", "/stacks/5/stop"): [FakeResponse(409, {"message": "x"})]})
    assert client.stop_stack(5) is True
    assert ("GET", "/stacks/5") not in [(m, p) for m, p, _ in session.requests]


def test_start_verifies_status():
    client, _ = make_client({
        ("POST", "/stacks/5/start"): [FakeResponse(200, {"Id": 5, "Name": "web", "Status": 1})],
        ("GET", "/stacks/5"): [FakeResponse(200, {"Id": 5, "Name": "web", "Status": 2})],
    })
    assert client.start_stack(5) is False


def test_status_is_read_after_a_settle_delay():
    session = FakeSession({
        ("POST", "/auth"): [AUTH_OK],
        ("POST", "/stacks/5/stop"): [FakeResponse(200, {"Id": 5, "Name": "web", "Status": 2})],
        ("GET", "/stacks/5"): [FakeResponse(200, {"Id": 5, "Name": "web", "Status": 2})],
    })
    sleeps = []
    client = PortainerClient(
        Config(), credentials=Credentials("admin", "pw"), session=session, sleep=sleeps.append
    )

    assert client.stop_stack(5) is True
    assert sleeps == [VERIFY_SETTLE_SECONDS]


def test_create_stack_posts_compose_content():
    client, session = make_client({
        ("POST", "/stacks"): [FakeResponse(200, {"Id": 9, "Name": "web", "Status": 1})],
    })
    assert client.create_stack("web", "services: {}\n", [{"name": "A", "value": "1"}]) == 9
    method, path, kwargs = session.requests[-1]
    assert kwargs["params"]["type"] == 2
    assert kwargs["json"]["stackFileContent"] == "services: {}\n"


def test_capture_without_stack_file_keeps_none():
    client, _ = make_client({("GET", "/stacks/4/file"): [FakeResponse(404, {"message": "gone"})]})
    stack = client.capture_stack(Stack(id=4, name="web", status="running"))
    assert stack.compose_content is None


def test_stack_running_uses_compose_project_label():
    client, _ = make_client({
        ("GET", "/endpoints/1/docker/containers/json"): [FakeResponse(200, [
            {"Id": "a", "Names": ["/web-app-1"], "State": "running",
             "Labels": {"com.docker.compose.project": "web"}},
            {"Id": "b", "Names": ["/batch-job-1"], "State": "exited",
             "Labels": {"com.docker.compose.project": "batch"}},
        ])],
    })
    assert client.stack_running("web")
    assert not client.stack_running("batch")


def test_unreachable_api_reports_false():
    client, _ = make_client({})
    assert client.is_reachable() is False


def test_snapshot_record_round_trip_accepts_numeric_status():
    stack = Stack.from_record({"id": 3, "name": "web", "status": 1, "compose_file_content": ""})
    assert stack.running
    assert stack.compose_content is None
    assert Stack.from_record(stack.to_record()) == stack
