import os
import stat

from metadata_manager import BACKUP_FORMAT_VERSION, MetadataManager


def mode_of(path):
    return stat.S_IMODE(os.lstat(path).st_mode)


def test_record_captures_every_path(host):
    tools = host / "opt" / "tools"
    record = MetadataManager().record([tools, host / "missing"], paths={"archived": [str(tools)]})

    assert record["backup_version"] == BACKUP_FORMAT_VERSION
    recorded = {entry["path"] for entry in record["permissions"]}
    assert str(tools) in recorded
    assert str(tools / "web" / "data" / "state.bin") in recorded
    assert record["system"]["arch"]


def test_restore_reapplies_modes_and_skips_missing(host):
    tools = host / "opt" / "tools"
    secret = tools / "web" / "data" / "state.bin"
    gone = tools / "batch" / "data" / "state.bin"
    os.chmod(secret, 0o600)
    manager = MetadataManager()
    record = manager.record([tools], paths={})

    os.chmod(secret, 0o644)
    gone.unlink()
    report = manager.restore(record)

    assert mode_of(secret) == 0o600
    assert report.missing == 1
    assert report.failed == 0
    assert report.complete


def test_restore_cap_limits_work(host):
    tools = host / "opt" / "tools"
    manager = MetadataManager(restore_cap=3)
    record = manager.record([tools], paths={})

    report = manager.restore(record)
    assert report.applied + report.missing == 3
    assert report.over_cap == len(record["permissions"]) - 3
    assert not report.complete
