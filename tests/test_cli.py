import tarfile

import pytest
from typer.testing import CliRunner

from savedotfiles import cli
from savedotfiles.audit import get_audit_log
from savedotfiles.config import load_settings
from savedotfiles.schedule import REGULAR_ROLE, AnacronBackend, CronBackend, ScheduleInstaller, find_blocks

from .conftest import MemoryStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def no_keyring(monkeypatch):
    monkeypatch.setattr(cli, "get_token", lambda: None)


@pytest.fixture
def crontab(tmp_path, monkeypatch):
    store = MemoryStore(["MAILTO=me@example.com"])

    def installer(log_file=None):
        return ScheduleInstaller(
            CronBackend(store),
            AnacronBackend(home=tmp_path / "home", cron_store=store, anacron_bin=""),
            log_file=tmp_path / "state" / "backup.log",
            python="/usr/bin/python3",
        )

    monkeypatch.setattr(cli, "default_installer", installer)
    return store


def test_backup_writes_archive(home_tree, tmp_path):
    out = tmp_path / "out"
    result = runner.invoke(cli.app, ["backup", "nightly", "--source", str(home_tree), "--dest", str(out)])

    assert result.exit_code == 0, result.output
    archive = out / "nightly.tar.gz"
    with tarfile.open(archive) as tar:
        assert "nightly/.bashrc" in tar.getnames()
    assert "Backup complete" in result.output

    events = [e["event"] for e in get_audit_log()]
    assert events == ["backup_start", "backup_end"]


def test_backup_honours_codec_and_level(home_tree, tmp_path):
    out = tmp_path / "out"
    result = runner.invoke(
        cli.app, ["backup", "small", "-s", str(home_tree), "-d", str(out), "-c", "xz", "-l", "9"]
    )
    assert result.exit_code == 0, result.output
    with tarfile.open(out / "small.tar.xz", "r:xz") as tar:
        assert "small/.gitconfig" in tar.getnames()


@pytest.mark.parametrize("args", [["--compression", "zip"], ["--level", "12"], ["--level", "0"]])
def test_backup_rejects_bad_options(home_tree, tmp_path, args):
    out = tmp_path / "out"
    result = runner.invoke(cli.app, ["backup", "x", "-s", str(home_tree), "-d", str(out), *args])
    assert result.exit_code == 1
    assert not out.exists()


def test_backup_survives_publish_failure(home_tree, tmp_path):
    out = tmp_path / "out"
    missing_repo = tmp_path / "no-such-repo"
    result = runner.invoke(
        cli.app,
        ["backup", "pushed", "-s", str(home_tree), "-d", str(out), "--push", "--repo", str(missing_repo)],
    )

    assert result.exit_code == 0, result.output
    assert (out / "pushed.tar.gz").exists()
    assert "Publishing failed" in result.output
    assert get_audit_log()[-1]["details"]["status"] == "failed"


def test_backup_uses_persisted_defaults(home_tree, tmp_path):
    runner.invoke(cli.app, ["config", "set", "--compression", "bzip2", "--item", ".bashrc"])
    out = tmp_path / "out"
    result = runner.invoke(cli.app, ["backup", "cfg", "-s", str(home_tree), "-d", str(out)])

    assert result.exit_code == 0, result.output
    with tarfile.open(out / "cfg.tar.bz2") as tar:
        files = {n for n in tar.getnames() if not n.endswith((".sh", ".md", ".json"))}
    assert files == {"cfg", "cfg/.bashrc"}


def test_schedule_install_status_remove(crontab):
    result = runner.invoke(cli.app, ["schedule", "install", "--day", "3", "--hour", "4", "--no-push"])
    assert result.exit_code == 0, result.output
    assert "Every Wednesday at 04:00" in result.output
    assert "WARNING" in result.output
    assert len(find_blocks(crontab.lines, REGULAR_ROLE)) == 1

    again = runner.invoke(cli.app, ["schedule", "install", "--day", "3", "--hour", "4", "--no-push"])
    assert "already installed" in again.output
    assert len(find_blocks(crontab.lines, REGULAR_ROLE)) == 1

    status = runner.invoke(cli.app, ["schedule", "status"])
    assert status.exit_code == 0
    assert "Wednesday 04:00" in status.output

    removed = runner.invoke(cli.app, ["schedule", "remove"])
    assert removed.exit_code == 0
    assert crontab.lines == ["MAILTO=me@example.com"]

    nothing = runner.invoke(cli.app, ["schedule", "remove"])
    assert "No backup jobs found" in nothing.output


def test_schedule_prompts_until_valid(crontab):
    result = runner.invoke(cli.app, ["schedule"], input="9\n1\n25\n6\ny\n")

    assert result.exit_code == 0, result.output
    assert "Invalid value" in result.output
    job = find_blocks(crontab.lines, REGULAR_ROLE)[0][2]
    assert job.startswith("0 6 * * 1 ")
    assert "--push" in job


def test_config_set_repo_validates(tmp_path):
    ok = runner.invoke(cli.app, ["config", "set-repo", "alice/dots"])
    assert ok.exit_code == 0
    assert load_settings().repo == "alice/dots"

    bad = runner.invoke(cli.app, ["config", "set-repo", "not a repo"])
    assert bad.exit_code == 1
    assert load_settings().repo == "alice/dots"


def test_config_set_rejects_escaping_items():
    result = runner.invoke(cli.app, ["config", "set", "--item", "../etc/passwd"])
    assert result.exit_code == 1
    assert load_settings().items is None


def test_items_lists_resolution(home_tree):
    result = runner.invoke(cli.app, ["items", "--source", str(home_tree)])
    assert result.exit_code == 0
    assert ".bashrc" in result.output
    assert "absent" in result.output


def test_version():
    result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert cli.__version__ in result.output


def test_every_icon_has_an_ascii_fallback():
    from savedotfiles import ui
    from savedotfiles.models import ItemOutcome

    assert set(ui.ICONS) == set(ui.ASCII_ICONS)
    for name in ("backup", "rotate", "delete", "info", "success", "error", "warn"):
        assert name in ui.ICONS
    for outcome in ItemOutcome:
        with ui.console.capture() as captured:
            ui.render_item(".bashrc", outcome.value)
        assert ui.icon({"included": "item"}.get(outcome.value, outcome.value)) in captured.get()
    assert not hasattr(ui, "confirm")
