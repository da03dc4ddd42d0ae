import json

import keyring
import pytest
from keyring.errors import NoKeyringError

from savedotfiles import config
from savedotfiles.audit import AuditLogger, get_audit_log
from savedotfiles.errors import ConfigurationError
from savedotfiles.items import DEFAULT_ITEMS
from savedotfiles.models import Settings


@pytest.fixture
def login(monkeypatch):
    monkeypatch.setattr(config.getpass, "getuser", lambda: "alice")


def test_repository_fallback_uses_login_name(login):
    assert config.resolve_repository(settings=Settings()) == "alice/dotfiles-backup"


def test_repository_precedence(login, monkeypatch):
    settings = Settings(repo="team/configs")
    assert config.resolve_repository(settings=settings) == "team/configs"

    monkeypatch.setenv(config.REPO_ENV_VAR, "env/repo")
    assert config.resolve_repository(settings=settings) == "env/repo"
    assert config.resolve_repository("flag/repo", settings) == "flag/repo"


@pytest.mark.parametrize("value", ["not a repo", "relative/path/deeper"])
def test_invalid_repository_is_rejected(value):
    with pytest.raises(ConfigurationError):
        config.resolve_repository(value, Settings())


@pytest.mark.parametrize("value", ["git@github.com:alice/dots.git", "https://example.com/dots.git", "/srv/git/dots.git"])
def test_other_repository_forms_are_accepted(value):
    assert config.resolve_repository(value, Settings()) == value


def test_settings_round_trip(tmp_path):
    assert config.load_settings() == Settings()

    updated = config.update_settings(compression="xz", level=9, retention_cap=3)
    assert updated.compression == "xz"
    assert config.load_settings() == updated

    path = config.get_settings_path()
    assert str(path).startswith(str(tmp_path / "xdg-config"))
    assert (path.stat().st_mode & 0o777) == 0o600


def test_update_rejects_invalid_values():
    with pytest.raises(ConfigurationError):
        config.update_settings(level=12)
    with pytest.raises(ConfigurationError):
        config.update_settings(retention_cap=0)
    assert config.load_settings() == Settings()


def test_corrupt_settings_file_is_a_configuration_error():
    config.get_settings_path().write_text("{not json")
    with pytest.raises(ConfigurationError):
        config.load_settings()


def test_configured_items_default_and_custom():
    defaults = config.configured_items(Settings())
    assert [s.path for s in defaults] == DEFAULT_ITEMS
    assert not any(s.is_wildcard for s in defaults)
    assert "bin" in DEFAULT_ITEMS and "doc" in DEFAULT_ITEMS

    custom = config.configured_items(Settings(items=[".vimrc", ".ssh/id_*"]))
    assert [(s.path, s.is_wildcard) for s in custom] == [(".vimrc", False), (".ssh/id_*", True)]


def test_token_lookup_tolerates_missing_keyring(monkeypatch):
    def broken(*args):
        raise NoKeyringError("no backend")

    monkeypatch.setattr(keyring, "get_password", broken)
    monkeypatch.setattr(keyring, "set_password", broken)
    assert config.get_token() is None
    assert config.save_token("abc") is False


def test_log_file_lives_under_state_dir(tmp_path):
    assert config.get_log_file() == tmp_path / "xdg-state" / "savedotfiles" / "backup.log"


def test_audit_log_redacts_secrets():
    AuditLogger().log("publish_end", repository="a/b", token="hunter2")
    with config.get_config_dir().joinpath("audit.jsonl").open("a") as f:
        f.write("garbage\n")

    events = get_audit_log()
    assert len(events) == 1
    assert events[0]["details"]["token"] == "*****"
    assert json.dumps(events).find("hunter2") == -1


def test_doctor_reports_every_check(monkeypatch, tmp_path):
    from savedotfiles import doctor

    monkeypatch.setattr(doctor, "get_token", lambda: None)
    checks = doctor.run_diagnostics(home=tmp_path)

    assert len(checks) == 11
    names = [c.name for c in checks]
    assert names[0] == "1. Git"
    assert any(n.startswith("4. Compression") for n in names)
    settings_check = next(c for c in checks if c.name == "5. Settings")
    assert settings_check.status == "pass"
