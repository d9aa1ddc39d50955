import argparse
import gzip
import json
from datetime import datetime
from pathlib import Path

import pytest

from moodle_ops.archives import make_tar_gz
from moodle_ops.cli_shared import OpError
from moodle_ops.validation_commands import ValidationTally
from moodle_ops.validation_commands import backup_counts
from moodle_ops.validation_commands import backup_trends
from moodle_ops.validation_commands import find_latest_backup
from moodle_ops.validation_commands import render_validation_report
from moodle_ops.validation_commands import run_validation
from conftest import quiet_log


def _backup(root: Path, kind: str, name: str, *, date="2026-03-13 02:00:00", lines=20):
    d = root / kind / name
    d.mkdir(parents=True)
    (d / "BACKUP_MANIFEST.txt").write_text(f"Backup Type: {kind}\nBackup Date: {date}\nTotal Size: 12M\n")
    with gzip.open(d / "database.sql.gz", "wt") as fh:
        for i in range(lines):
            fh.write(f"INSERT INTO `mdl_log` VALUES ({i});\n")
    data = root.parent / f"src-{name}" / "moodledata"
    (data / "filedir").mkdir(parents=True)
    (data / "filedir" / "f").write_text("x")
    make_tar_gz(d / "moodledata.tar.gz", source=data)
    return d


def test_tally_score_counts_warnings_in_total():
    t = ValidationTally(log=quiet_log())
    t.ok("a")
    t.ok("b")
    t.warn("c")
    t.fail("d")
    assert (t.passed, t.failed, t.warnings, t.total) == (2, 1, 1, 4)
    assert t.score == 50
    assert ValidationTally(log=quiet_log()).score == 0


def test_find_latest_backup_by_name_across_types(tmp_path):
    root = tmp_path / "backups"
    _backup(root, "daily", "backup_20260312_020000")
    newest = _backup(root, "weekly", "backup_20260313_020000")
    _backup(root, "monthly", "backup_20260301_020000")
    assert find_latest_backup(root) == newest
    assert backup_counts(root) == {"daily": 1, "weekly": 1, "monthly": 1}
    assert find_latest_backup(tmp_path / "nothing") is None


def test_run_validation_flags_small_dump_and_missing_offsite(tmp_path, make_runner, make_ctx):
    root = tmp_path / "backups"
    _backup(root, "daily", "backup_20260313_020000")
    ctx = make_ctx(make_runner(), backup_root=str(root))

    data, t = run_validation(ctx)

    assert data["backupPath"].endswith("backup_20260313_020000")
    assert data["ageHours"] == 24
    assert data["database"]["ok"] is True
    messages = {r["message"]: r["status"] for r in t.results}
    assert messages["Database dump is suspiciously small (< 1 MB) - may be incomplete"] == "fail"
    assert messages["Moodle tables detected in dump (mdl_ prefix)"] == "pass"
    assert messages["Required directory present: filedir/"] == "pass"
    assert messages["Daily backup retention low (1/7 days)"] == "warn"
    assert messages["Offsite backup not configured (GCS bucket not set)"] == "warn"
    assert data["offsite"]["configured"] is False
    assert t.failed >= 1


def test_run_validation_stale_daily_backup_warns(tmp_path, make_runner, make_ctx):
    root = tmp_path / "backups"
    _backup(root, "daily", "backup_20260310_020000", date="2026-03-10 02:00:00")
    ctx = make_ctx(make_runner(), backup_root=str(root))
    _, t = run_validation(ctx)
    assert any("older than 36 hours" in r["message"] for r in t.results)


def test_run_validation_test_restore_drops_scratch_db(tmp_path, make_runner, make_ctx):
    root = tmp_path / "backups"
    _backup(root, "daily", "backup_20260313_020000")
    runner = make_runner({"SELECT COUNT(*)": "312\n"})
    ctx = make_ctx(runner, backup_root=str(root), db_root_password="r")

    data, t = run_validation(ctx, test_restore=True)

    assert data["testRestore"]["tables"] == 312
    assert data["testRestore"]["database"] == "moodle_restore_test_20260314_020000"
    calls = runner.joined()
    assert any("CREATE DATABASE IF NOT EXISTS `moodle_restore_test_20260314_020000`" in c for c in calls)
    assert any("DROP DATABASE IF EXISTS `moodle_restore_test_20260314_020000`;" in c for c in calls)
    assert any(c.startswith("mysql -u root moodle_restore_test_20260314_020000 <") for c in calls)


def test_run_validation_missing_root_is_operation_error(tmp_path, make_runner, make_ctx):
    ctx = make_ctx(make_runner(), backup_root=str(tmp_path / "missing"))
    with pytest.raises(OpError):
        run_validation(ctx)


def test_backup_trends_success_rate(tmp_path, make_runner, make_ctx):
    root = tmp_path / "backups"
    _backup(root, "daily", "backup_20260313_020000")
    log = tmp_path / "moodle-backup.log"
    log.write_text("[x] LOG: Backup Complete!\n" * 10 + "[x] ERROR: mysqldump failed\n")
    ctx = make_ctx(make_runner(), backup_root=str(root))

    out, t = backup_trends(ctx, backup_log=log)

    assert out["total"] == 10
    assert out["failed"] == 1
    assert out["successRate"] == 90
    assert t.warnings == 1
    assert out["recentDaily"][0]["date"] == "20260313_020000"


def test_backup_trends_counts_each_failed_run_once(tmp_path, make_runner, make_ctx):
    log_file = tmp_path / "moodle-backup.log"
    for _ in range(29):
        quiet_log("backup", log_file=log_file).log("Backup Complete!")
    failed_run = quiet_log("backup", log_file=log_file)
    failed_run.error("mysqldump failed (exit 2): ERROR 2002 (HY000): Can't connect")
    failed_run.wide_event("error", error="mysqldump failed (exit 2): ERROR 2002 (HY000): Can't connect")
    ctx = make_ctx(make_runner(), backup_root=str(tmp_path / "backups"))

    out, t = backup_trends(ctx, backup_log=log_file)

    assert (out["total"], out["failed"], out["successRate"]) == (29, 1, 96)
    assert t.failed == 0 and t.warnings == 0


def test_render_validation_report_sections():
    t = ValidationTally(log=quiet_log())
    t.ok("fine")
    text = render_validation_report(
        {"backupPath": "/b", "ageHours": 5, "counts": {"daily": 7}, "offsite": {"configured": False}},
        t,
        generated=datetime(2026, 3, 14, 9, 0, 0),
    )
    for heading in ("## Summary", "## Backup Information", "## Recommendations", "## Next Validation",
                    "## Disaster Recovery Metrics"):
        assert heading in text
    assert "Validation Score: 100/100" in text
    assert "Scheduled: 2026-04-13" in text
    assert "RPO (backup age): 5 hours" in text


def test_cmd_validate_run_writes_report_and_exits_nonzero_on_failure(tmp_path, monkeypatch, g, capsys, make_runner, make_ctx):
    from moodle_ops import validation_commands

    root = tmp_path / "backups"
    _backup(root, "daily", "backup_20260313_020000")
    ctx = make_ctx(make_runner(), backup_root=str(root))
    monkeypatch.setattr(validation_commands, "require_root", lambda: None)
    monkeypatch.setattr(validation_commands, "build_ops_context", lambda _g, **kw: ctx)

    args = argparse.Namespace(backup=None, test_restore=False, report_dir=str(tmp_path / "reports"))
    assert validation_commands.cmd_validate_run(args, g) == 1

    out = json.loads(capsys.readouterr().out)
    report = Path(out["report"])
    assert report.name == "moodle-backup-validation-20260314_020000.txt"
    assert "Moodle Backup Validation Report" in report.read_text()
    assert out["failed"] >= 1
