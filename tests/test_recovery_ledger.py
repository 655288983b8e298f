import json
from datetime import datetime

from recovery_ledger import write_recovery_info


def test_writes_timestamped_entry(tmp_path):
    now = datetime(2025, 8, 27, 8, 23, 5)
    path = write_recovery_info("restore", str(tmp_path), now=now)

    assert path.name == "backup_manager_recovery_20250827_082305.json"
    entry = json.loads(path.read_text())
    assert entry["operation"] == "restore"
    assert entry["state"] == "system_restore"
    assert entry["timestamp"].startswith("2025-08-27T08:23:05")
    assert "system_restore" in entry["recovery_instructions"]


def test_unknown_operation_gets_generic_state(tmp_path):
    path = write_recovery_info("upgrade", str(tmp_path))
    assert json.loads(path.read_text())["state"] == "unknown_operation"


def test_unwritable_location_does_not_raise(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    assert write_recovery_info("backup", str(blocker / "sub")) is None
