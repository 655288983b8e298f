import os
from pathlib import Path

import pytest

from archive_builder import ArchiveBuilder
from backup_errors import ArchiveCorrupt, SpaceError
from backup_manager import BackupManager
from lifecycle_manager import LifecycleManager
from operation_lock import LOCK_FILE_NAME


def no_sleep(seconds):
    pass


def make_manager(config, portainer, docker):
    lifecycle = LifecycleManager(config, portainer, docker, sleep=no_sleep, startup_budget=0)
    return BackupManager(
        config,
        portainer,
        docker,
        lifecycle=lifecycle,
        archives=ArchiveBuilder(min_size=0),
        sleep=no_sleep,
    )


@pytest.fixture
def stacks(config, fake_portainer):
    for name, status in (("web", "running"), ("batch", "stopped")):
        compose = (Path(config.tools_path) / name / "docker-compose.yml").read_text()
        fake_portainer.add(name, status, compose=compose)
    return fake_portainer


def test_backup_captures_stacks_and_restarts_them(config, stacks, fake_docker):
    result = make_manager(config, stacks, fake_docker).backup("nightly")

    assert result.archive.exists()
    assert result.archive.name.endswith("-nightly.tar.gz")
    assert result.snapshot.names == ["web", "batch"]
    assert result.validation.passed
    assert stacks.state() == {"web": "running", "batch": "stopped"}
    stopped = [stacks.stacks[i]["name"] for op, i in stacks.calls if op == "stop"]
    assert stopped == ["web"]
    assert not (Path(config.lock_dir) / LOCK_FILE_NAME).exists()
    assert list(Path(config.recovery_dir).glob("backup_manager_recovery_*.json"))


def test_failed_archive_still_restarts_stacks(config, stacks, fake_docker, monkeypatch):
    manager = make_manager(config, stacks, fake_docker)

    def out_of_space(*args, **kwargs):
        raise SpaceError("disk full")

    monkeypatch.setattr(manager.archives, "build", out_of_space)
    with pytest.raises(SpaceError):
        manager.backup()

    assert stacks.state() == {"web": "running", "batch": "stopped"}
    assert not (Path(config.lock_dir) / LOCK_FILE_NAME).exists()


def test_backup_without_api_archives_directories(config, stacks, fake_docker):
    stacks.fail_on.add("list")
    result = make_manager(config, stacks, fake_docker).backup()

    assert result.snapshot.stacks == []
    assert any(call[0] == "stop_fallback" for call in fake_docker.calls)
    assert result.archive.exists()


def test_restore_returns_system_to_backup_state(config, stacks, fake_docker):
    manager = make_manager(config, stacks, fake_docker)
    tools = Path(config.tools_path)
    web_state = tools / "web" / "data" / "state.bin"
    original = web_state.read_bytes()
    archive = manager.backup().archive

    # Drift after the backup: new stack, changed data, stopped stack started.
    extra = tools / "extra"
    extra.mkdir()
    (extra / "docker-compose.yml").write_text("services: {}\n")
    stacks.add("extra", "running")
    web_state.write_bytes(os.urandom(128))
    batch_id = next(i for i, rec in stacks.stacks.items() if rec["name"] == "batch")
    stacks.stacks[batch_id]["status"] = "running"

    result = manager.restore(archive, assume_yes=True)

    assert stacks.state() == {"web": "running", "batch": "stopped"}
    assert not extra.exists()
    assert web_state.read_bytes() == original
    assert result.reconcile.removed == ["extra"]
    assert result.safety_backup.name.endswith("-pre-restore.tar.gz")
    assert result.safety_backup.exists()
    assert result.metadata.complete
    assert result.validation.passed
    assert ("up", config.portainer_path) in fake_docker.calls
    assert not (Path(config.lock_dir) / LOCK_FILE_NAME).exists()


def test_restore_of_corrupt_archive_changes_nothing(config, stacks, fake_docker):
    bogus = Path(config.backup_path) / "docker_backup_20250101_000000.tar.gz"
    bogus.write_bytes(b"not a tarball")
    web_state = Path(config.tools_path) / "web" / "data" / "state.bin"
    before = web_state.read_bytes()

    with pytest.raises(ArchiveCorrupt):
        make_manager(config, stacks, fake_docker).restore(bogus, assume_yes=True)

    assert web_state.read_bytes() == before
    assert [p.name for p in Path(config.backup_path).iterdir()] == [bogus.name]
    assert stacks.state() == {"web": "running", "batch": "stopped"}


def test_list_backups_newest_first(config, stacks, fake_docker):
    backup_dir = Path(config.backup_path)
    for name in ("docker_backup_20250101_030000.tar.gz", "docker_backup_20250102_030000-manual.tar.gz"):
        (backup_dir / name).write_bytes(b"x" * 10)

    listings = make_manager(config, stacks, fake_docker).list_backups()

    assert [item.path.name for item in listings] == [
        "docker_backup_20250102_030000-manual.tar.gz",
        "docker_backup_20250101_030000.tar.gz",
    ]
    assert listings[0].created_at.day == 2
    assert listings[0].size == 10


def test_restore_of_uncaptured_snapshot_keeps_live_stacks(config, stacks, fake_docker):
    manager = make_manager(config, stacks, fake_docker)
    stacks.fail_on.add("list")
    result = manager.backup()
    stacks.fail_on.clear()
    assert not result.snapshot.complete

    restored = manager.restore(result.archive, assume_yes=True, skip_safety_backup=True)

    assert set(stacks.state()) == {"web", "batch"}
    assert (Path(config.tools_path) / "web").is_dir()
    assert restored.reconcile.removed == []
    assert sorted(restored.reconcile.manual_intervention) == ["batch", "web"]


def test_restore_can_remove_stacks_missing_from_uncaptured_snapshot(config, stacks, fake_docker):
    manager = make_manager(config, stacks, fake_docker)
    stacks.fail_on.add("list")
    archive = manager.backup().archive
    stacks.fail_on.clear()

    restored = manager.restore(archive, assume_yes=True, skip_safety_backup=True, remove_unlisted=True)

    assert stacks.state() == {}
    assert sorted(restored.reconcile.removed) == ["batch", "web"]


def test_restore_stops_monitoring_stacks_too(config, stacks, fake_docker):
    monitoring_id = stacks.add("monitoring", "running")
    manager = make_manager(config, stacks, fake_docker)
    archive = manager.backup().archive
    assert ("stop", monitoring_id) not in stacks.calls
    before = len(stacks.calls)

    manager.restore(archive, assume_yes=True, skip_safety_backup=True)

    assert ("stop", monitoring_id) in stacks.calls[before:]
    assert stacks.state()["monitoring"] == "running"
