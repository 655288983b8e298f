from pathlib import Path

import pytest

from retention_manager import RetentionManager


def make_archives(directory, count):
    names = [f"docker_backup_202501{day:02d}_030000.tar.gz" for day in range(1, count + 1)]
    for name in names:
        (directory / name).write_text("archive")
    return names


def test_prune_keeps_newest(config, tmp_path):
    names = make_archives(tmp_path, 5)
    (tmp_path / "unrelated.tar.gz").write_text("keep")

    removed = RetentionManager(config).prune(tmp_path, keep=2)

    assert removed == 3
    assert sorted(p.name for p in tmp_path.glob("docker_backup_*")) == names[-2:]
    assert (tmp_path / "unrelated.tar.gz").exists()


def test_prune_twice_is_a_no_op(config, tmp_path):
    make_archives(tmp_path, 4)
    manager = RetentionManager(config)
    manager.prune(tmp_path, keep=3)
    assert manager.prune(tmp_path, keep=3) == 0


def test_default_retention_comes_from_config(config):
    make_archives(Path(config.backup_path), 5)
    assert RetentionManager(config).prune() == 5 - config.backup_retention


def test_keep_must_be_positive(config, tmp_path):
    with pytest.raises(ValueError):
        RetentionManager(config).prune(tmp_path, keep=0)
