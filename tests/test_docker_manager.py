from docker_manager import DockerComposeManager


class RecordingCommand:
    """Stands in for a baked `sudo -u <user> docker compose` command."""

    def __init__(self, calls, args=()):
        self.calls = calls
        self.args = args

    def bake(self, *args, **kwargs):
        return RecordingCommand(self.calls, self.args + args)

    def __call__(self, *args, **kwargs):
        self.calls.append((self.args + args, kwargs["_ok_code"]))
        kwargs["_ok_code"].append(99)


def make_manager(config, calls):
    manager = DockerComposeManager.__new__(DockerComposeManager)
    manager.config = config
    manager.sudo_compose = RecordingCommand(calls)
    return manager


def test_compose_calls_do_not_share_accepted_exit_codes(config, host):
    calls = []
    manager = make_manager(config, calls)
    project = host / "opt" / "tools" / "web"

    manager.compose_stop(project)
    manager.compose_down(project)
    manager.compose_restart(project)

    assert [codes for _, codes in calls] == [[0, 99], [0, 99], [0, 1, 99]]
    assert calls[0][0][-1] == "stop"
