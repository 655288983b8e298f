from pathlib import Path

import pytest

import orchestrator
from backup_manager import BackupManager
from migration_manager import MigrationManager


@pytest.fixture
def cli(config, fake_portainer, fake_docker, monkeypatch):
    """Points the CLI at the test host and swaps in the fake runtime and API."""
    config.save()
    monkeypatch.setattr(orchestrator, "DockerComposeManager", lambda cfg: fake_docker)
    monkeypatch.setattr(orchestrator, "PortainerClient", lambda cfg: fake_portainer)

    def run(*argv):
        return orchestrator.main(["--config-file", config.config_file, *argv])

    return run


def test_parser_rejects_two_archive_selectors():
    with pytest.raises(SystemExit):
        orchestrator.build_parser().parse_args(["restore", "--backup", "a.tar.gz", "--index", "1"])


def test_parser_restore_options():
    args = orchestrator.build_parser().parse_args(
        ["restore", "--index", "2", "--yes", "--purge-uncaptured", "--skip-safety-backup"]
    )
    assert (args.index, args.yes, args.purge_uncaptured, args.skip_safety_backup) == (2, True, True, True)
    assert not args.remove_unlisted
    assert orchestrator.build_parser().parse_args(["restore", "--remove-unlisted"]).remove_unlisted


def test_list_prints_backups(cli, config, capsys):
    (Path(config.backup_path) / "docker_backup_20250827_082305.tar.gz").write_bytes(b"x" * 2048)

    assert cli("list") == orchestrator.EXIT_OK
    out = capsys.readouterr().out
    assert "1) docker_backup_20250827_082305.tar.gz" in out
    assert "2025-08-27 08:23:05" in out


def test_prune_applies_keep(cli, config):
    backup_dir = Path(config.backup_path)
    for day in range(1, 4):
        (backup_dir / f"docker_backup_202501{day:02d}_030000.tar.gz").write_text("x")

    assert cli("prune", "--keep", "1") == orchestrator.EXIT_OK
    assert [p.name for p in backup_dir.iterdir()] == ["docker_backup_20250103_030000.tar.gz"]


def test_validate_exit_codes(cli, fake_portainer):
    assert cli("validate", "config") == orchestrator.EXIT_OK
    fake_portainer.reachable = False
    assert cli("validate", "setup") == orchestrator.EXIT_VALIDATION_FAILED


def test_missing_config_file_fails(tmp_path):
    assert orchestrator.main(["--config-file", str(tmp_path / "nope.conf"), "list"]) == orchestrator.EXIT_FAILURE


def test_state_changing_commands_need_root(cli, monkeypatch):
    monkeypatch.setattr(orchestrator.os, "geteuid", lambda: 1000)
    assert cli("backup") == orchestrator.EXIT_FAILURE


def test_unexpected_failure_points_at_the_recovery_file(cli, config, monkeypatch, caplog):
    monkeypatch.setattr(orchestrator.os, "geteuid", lambda: 0)

    def compose_failure(self, *args, **kwargs):
        raise RuntimeError("docker compose up exited with 1")

    monkeypatch.setattr(BackupManager, "run_backup", compose_failure)

    assert cli("backup") == orchestrator.EXIT_FAILURE
    [recovery_file] = Path(config.recovery_dir).glob("backup_manager_recovery_*.json")
    assert f"Recovery steps: {recovery_file}" in caplog.text
    assert "backup_manager_recovery_*.json" not in caplog.text


def test_failed_migration_points_at_rollback_record(cli, config, tmp_path, monkeypatch, caplog):
    monkeypatch.setattr(orchestrator.os, "geteuid", lambda: 0)

    def no_backup(self, ctx):
        ctx["backup_file"] = Path(config.backup_path) / "docker_backup_20250827_082305-pre-migration.tar.gz"

    def stop_failure(self, ctx):
        raise RuntimeError("could not stop stacks")

    monkeypatch.setattr(MigrationManager, "_pre_migration_backup", no_backup)
    monkeypatch.setattr(MigrationManager, "_stop_containers", stop_failure)

    assert cli("migrate", "--tools-path", str(tmp_path / "new-tools")) == orchestrator.EXIT_FAILURE
    [rollback_file] = Path(config.backup_path).glob("migration_rollback_*.json")
    [recovery_file] = Path(config.recovery_dir).glob("backup_manager_recovery_*.json")
    assert f"Rollback information: {rollback_file}" in caplog.text
    assert f"Recovery steps: {recovery_file}" in caplog.text
