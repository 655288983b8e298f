import pytest

from backup_errors import AuthError, ConfigError
from config_manager import Config, Credentials


def test_defaults_and_derived_values():
    config = Config()
    assert config.backup_retention == 7
    assert config.portainer_url == "pt.zuptalo.com"
    assert str(config.stack_data_dir("web")) == "/opt/tools/web"
    assert str(config.stack_data_dir("nginx-proxy-manager")) == "/opt/nginx-proxy-manager"


def test_save_and_load_round_trip(tmp_path):
    target = tmp_path / "dbm.conf"
    Config(backup_path="/srv/backup/", backup_retention=3, domain_name="example.org").save(target)

    text = target.read_text()
    assert 'BACKUP_PATH="/srv/backup"' in text
    assert 'PORTAINER_URL="pt.example.org"' in text

    loaded = Config.from_file(target)
    assert loaded.backup_path == "/srv/backup"
    assert loaded.backup_retention == 3
    assert loaded.config_file == str(target)


def test_invalid_values_raise_config_error(tmp_path):
    bad = tmp_path / "bad.conf"
    bad.write_text('BACKUP_RETENTION="lots"\n')
    with pytest.raises(ConfigError):
        Config.from_file(bad)

    with pytest.raises(ConfigError):
        Config(tools_path="relative/tools")


def test_missing_explicit_file_is_an_error(tmp_path):
    with pytest.raises(ConfigError):
        Config.from_file(tmp_path / "missing.conf")


def test_with_paths_only_replaces_given_paths():
    config = Config()
    moved = config.with_paths(tools_path="/data/tools", backup_path=None)
    assert moved.tools_path == "/data/tools"
    assert moved.backup_path == config.backup_path


def test_credentials_from_file(tmp_path):
    creds_file = tmp_path / ".credentials"
    creds_file.write_text('PORTAINER_ADMIN_USERNAME="admin"\nPORTAINER_ADMIN_PASSWORD="pw"\n')
    creds = Credentials.from_file(creds_file)
    assert (creds.username, creds.password) == ("admin", "pw")

    creds_file.write_text('PORTAINER_ADMIN_USERNAME="admin"\n')
    with pytest.raises(AuthError):
        Credentials.from_file(creds_file)
