import argparse
import gzip
import json
import os
from datetime import datetime
from pathlib import Path

import pytest

from moodle_ops import backup_commands
from moodle_ops.backup_commands import classify_backup
from moodle_ops.backup_commands import cleanup_old_backups
from moodle_ops.backup_commands import cmd_backup_list
from moodle_ops.backup_commands import list_backups
from moodle_ops.backup_commands import plan_backup
from moodle_ops.backup_commands import run_backup
from moodle_ops.cli_shared import OpError
from moodle_ops.cli_shared import PrerequisiteError
from moodle_ops.cli_shared import UsageError
from moodle_ops.manifest import read_manifest


def test_classify_backup_monthly_takes_precedence():
    assert classify_backup(datetime(2026, 3, 1)) == "monthly"  # a Sunday
    assert classify_backup(datetime(2026, 3, 15)) == "weekly"
    assert classify_backup(datetime(2026, 3, 14)) == "daily"


def test_plan_backup_layout(tmp_path):
    plan = plan_backup(tmp_path, datetime(2026, 3, 15, 2, 0, 5))
    assert plan.backup_type == "weekly"
    assert plan.retention_days == 28
    assert plan.directory == tmp_path / "weekly" / "backup_20260315_020005"
    with pytest.raises(UsageError):
        plan_backup(tmp_path, datetime(2026, 3, 15), backup_type="hourly")


def _seed_moodle(ctx):
    data = Path(ctx.settings.moodle_data)
    (data / "filedir" / "aa").mkdir(parents=True)
    (data / "filedir" / "aa" / "blob").write_text("content")
    (data / "cache").mkdir()
    (data / "cache" / "x").write_text("cached")
    code = Path(ctx.settings.moodle_dir)
    code.mkdir(parents=True)
    (code / "config.php").write_text("<?php $CFG->dbname = 'moodle_lms';")
    (code / "index.php").write_text("<?php")


def test_run_backup_daily_writes_artifacts_and_manifest(make_runner, make_ctx):
    runner = make_runner(binaries=("systemctl",))
    ctx = make_ctx(runner, db_password="pw")
    _seed_moodle(ctx)

    summary = run_backup(ctx)

    d = Path(summary["path"])
    assert summary["type"] == "daily"
    assert d.name == "backup_20260314_020000"
    assert d.parent.name == "daily"
    for name in ("database.sql.gz", "moodledata.tar.gz", "config-files.tar.gz", "BACKUP_MANIFEST.txt"):
        assert (d / name).is_file(), name
    assert not (d / "moodle-code.tar.gz").exists()
    with gzip.open(d / "database.sql.gz", "rt") as fh:
        assert "mdl_user" in fh.read()
    manifest = read_manifest(d)
    assert manifest["Backup Type"] == "daily"
    assert manifest["Timestamp"] == "20260314_020000"
    dump = [c for c in runner.calls if c[0] == "mysqldump"][0]
    assert dump[:3] == ("mysqldump", "-u", "moodle_user")
    assert "--single-transaction" in dump and dump[-1] == "moodle_lms"
    assert summary["offsite"] == ""
    assert summary["notified"] is False


def test_run_backup_monthly_includes_code(make_runner, make_ctx):
    runner = make_runner(binaries=("systemctl",))
    ctx = make_ctx(runner, now=datetime(2026, 4, 1, 2, 0, 0), db_root_password="rootpw")
    _seed_moodle(ctx)

    summary = run_backup(ctx)

    d = Path(summary["path"])
    assert summary["type"] == "monthly"
    assert (d / "moodle-code.tar.gz").is_file()
    assert "code" in summary["sizes"]
    dump = [c for c in runner.calls if c[0] == "mysqldump"][0]
    assert dump[:3] == ("mysqldump", "-u", "root")


def test_run_backup_requires_running_mariadb(make_runner, make_ctx):
    runner = make_runner({"is-active": (3, "")}, binaries=("systemctl",))
    ctx = make_ctx(runner, db_password="pw")
    with pytest.raises(PrerequisiteError, match="MariaDB"):
        run_backup(ctx)


def test_run_backup_requires_credentials(make_runner, make_ctx):
    ctx = make_ctx(make_runner(binaries=("systemctl",)))
    with pytest.raises(PrerequisiteError, match="credentials"):
        run_backup(ctx)


def _backup_dir(root, kind, name, *, age_days=0, manifest=True):
    d = root / kind / name
    d.mkdir(parents=True)
    if manifest:
        (d / "BACKUP_MANIFEST.txt").write_text(f"Backup Type: {kind}\nBackup Date: x\nTotal Size: 1M\n")
    ts = datetime(2026, 3, 14).timestamp() - age_days * 86400
    os.utime(d, (ts, ts))
    return d


def test_cleanup_old_backups_uses_per_type_retention(tmp_path):
    old_daily = _backup_dir(tmp_path, "daily", "backup_20260301_020000", age_days=8)
    fresh_daily = _backup_dir(tmp_path, "daily", "backup_20260312_020000", age_days=2)
    kept_weekly = _backup_dir(tmp_path, "weekly", "backup_20260222_020000", age_days=20)

    deleted = cleanup_old_backups(tmp_path, datetime(2026, 3, 14))

    assert deleted == {"daily": 1, "weekly": 0, "monthly": 0}
    assert not old_daily.exists()
    assert fresh_daily.exists() and kept_weekly.exists()


def test_list_backups_newest_first_and_requires_manifest(tmp_path, g, capsys):
    _backup_dir(tmp_path, "daily", "backup_20260312_020000")
    _backup_dir(tmp_path, "weekly", "backup_20260308_020000")
    _backup_dir(tmp_path, "daily", "backup_20260313_020000", manifest=False)

    names = [b["name"] for b in list_backups(tmp_path)]
    assert names == ["backup_20260312_020000", "backup_20260308_020000"]

    g2 = type(g)(settings=g.settings.with_overrides(backup_root=str(tmp_path)), pretty=False, quiet=True)
    assert cmd_backup_list(argparse.Namespace(), g2) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["backups"][0]["type"] == "daily"
    assert out["backups"][0]["totalSize"] == "1M"


def test_run_backup_without_hmac_keys_keeps_local_copy_and_still_cleans_up(make_runner, make_ctx):
    runner = make_runner(binaries=("systemctl",))
    ctx = make_ctx(runner, db_password="pw", backup_bucket="moodle-backups")
    _seed_moodle(ctx)
    expired = _backup_dir(Path(ctx.settings.backup_root), "daily", "backup_20260301_020000", age_days=10)

    summary = run_backup(ctx)

    assert summary["offsite"] == ""
    assert summary["offsiteStatus"].startswith("skipped (missing GCS HMAC keys")
    assert summary["deleted"]["daily"] == 1
    assert not expired.exists()
    assert read_manifest(Path(summary["path"]))["Offsite"].startswith("skipped")


def test_run_backup_upload_failure_is_a_warning(monkeypatch, make_runner, make_ctx):
    def fail(ctx, plan):
        raise OpError("upload to gs://moodle-backups/x failed: 503")

    monkeypatch.setattr(backup_commands, "upload_offsite", fail)
    ctx = make_ctx(make_runner(binaries=("systemctl",)), db_password="pw", backup_bucket="moodle-backups")
    _seed_moodle(ctx)

    summary = run_backup(ctx)

    assert Path(summary["path"], "database.sql.gz").is_file()
    assert "503" in summary["offsiteStatus"]


def test_run_backup_records_uploaded_location(monkeypatch, make_runner, make_ctx):
    monkeypatch.setattr(backup_commands, "upload_offsite", lambda ctx, plan: "gs://moodle-backups/daily/b/")
    ctx = make_ctx(make_runner(binaries=("systemctl",)), db_password="pw", backup_bucket="moodle-backups")
    _seed_moodle(ctx)

    summary = run_backup(ctx)

    assert summary["offsite"] == "gs://moodle-backups/daily/b/"
    assert read_manifest(Path(summary["path"]))["Offsite"] == "uploaded to gs://moodle-backups/daily/b/"
