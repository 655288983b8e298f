import pytest

from schedule_manager import JOB_MARKER, ScheduleManager, resolve_schedule, validate_cron


class CompletedCommand:
    def __init__(self, exit_code, stdout):
        self.exit_code = exit_code
        self.stdout = stdout.encode()


class FakeCrontab:
    """Mimics `sudo crontab -u <user>` for list and install calls."""

    def __init__(self, content=None):
        self.content = content

    def __call__(self, *args, **kwargs):
        if args == ("-l",):
            if self.content is None:
                return CompletedCommand(1, "")
            return CompletedCommand(0, self.content)
        if args == ("-",):
            self.content = kwargs["_in"]
            return CompletedCommand(0, "")
        raise AssertionError(f"unexpected crontab call {args}")


def make_manager(config, crontab):
    return ScheduleManager(config, "/usr/local/bin/docker-backup-manager", "/var/log/dbm.log", crontab=crontab)


@pytest.mark.parametrize("expression", ["0 3 * * *", "*/15 0-6 1,15 * 1-5", "30 2 * 12 7", "0 3 * jan mon"])
def test_valid_cron_expressions(expression):
    assert validate_cron(expression) == expression


@pytest.mark.parametrize("expression", ["0 3 * *", "61 * * * *", "0 25 * * *", "a b c d e", "0 3 * * * 2025"])
def test_invalid_cron_expressions(expression):
    with pytest.raises(ValueError):
        validate_cron(expression)


def test_resolve_schedule_prefers_custom_cron():
    assert resolve_schedule("every-6h") == "0 */6 * * *"
    assert resolve_schedule("daily-3am", cron="15 1 * * *") == "15 1 * * *"
    with pytest.raises(ValueError):
        resolve_schedule("hourly")


def test_install_is_idempotent_and_keeps_other_jobs(config):
    crontab = FakeCrontab("0 1 * * * /usr/bin/other-job\n")
    manager = make_manager(config, crontab)

    manager.install("0 3 * * *")
    manager.install("0 2 * * *")

    lines = crontab.content.splitlines()
    assert lines[0] == "0 1 * * * /usr/bin/other-job"
    assert len([line for line in lines if JOB_MARKER in line]) == 1
    assert manager.scheduled() == [
        f"0 2 * * * /usr/local/bin/docker-backup-manager backup >> /var/log/dbm.log 2>&1 # {JOB_MARKER}"
    ]


def test_install_into_empty_crontab_and_remove(config):
    crontab = FakeCrontab()
    manager = make_manager(config, crontab)
    assert manager.scheduled() == []

    manager.install("0 3 * * *")
    assert manager.remove() == 1
    assert manager.scheduled() == []
    assert manager.remove() == 0
