import argparse
import json
import os
import stat

import pytest

from moodle_ops.cli_shared import UsageError
from moodle_ops.cron import ALL_JOBS
from moodle_ops.cron import BACKUP_JOB
from moodle_ops.cron import CIS_AUDIT_JOB
from moodle_ops.cron import DB_MAINTENANCE_JOB
from moodle_ops.cron import SECURITY_AUDIT_JOB
from moodle_ops.cron import VALIDATION_JOB
from moodle_ops.cron import cmd_cron_list
from moodle_ops.cron import find_job
from moodle_ops.cron import install_cron_d
from moodle_ops.cron import install_user_crontab
from moodle_ops.cron import merge_crontab
from moodle_ops.cron import render_cron_d


def test_schedules():
    assert BACKUP_JOB.schedule == "0 2 * * *"
    assert VALIDATION_JOB.schedule == "0 2 15 * *"
    assert SECURITY_AUDIT_JOB.schedule == "0 3 1 * *"
    assert DB_MAINTENANCE_JOB.schedule == "0 4 * * 0"
    assert "--run-now" in DB_MAINTENANCE_JOB.command
    assert "--audit-only" in CIS_AUDIT_JOB.command


def test_render_cron_d_has_root_column_and_log_redirect():
    text = render_cron_d(BACKUP_JOB)
    last = text.strip().splitlines()[-1]
    assert last.startswith("0 2 * * * root moodle-ops --quiet backup run")
    assert last.endswith(">> /var/log/moodle-backup-cron.log 2>&1")
    assert text.startswith("# Moodle automated backup")


def test_install_cron_d_writes_0644(tmp_path):
    path = install_cron_d(SECURITY_AUDIT_JOB, cron_dir=tmp_path)
    assert path == tmp_path / "moodle-security-check"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o644


def test_merge_crontab_replaces_marked_line():
    existing = "# m h dom mon dow command\n0 1 * * * old validate run\n\n5 5 * * * other\n"
    merged = merge_crontab(existing, marker="validate run", line="0 2 15 * * new validate run")
    assert merged.splitlines() == [
        "# m h dom mon dow command",
        "5 5 * * * other",
        "0 2 15 * * new validate run",
    ]


def test_install_user_crontab_feeds_merged_table(make_runner):
    runner = make_runner({"crontab -l": "0 3 * * * something\n"})
    line = install_user_crontab(VALIDATION_JOB, runner, marker="validate run")
    assert line.startswith("0 2 15 * * moodle-ops --quiet validate run")
    fed = runner.inputs["crontab -"]
    assert fed == "0 3 * * * something\n" + line + "\n"


def test_find_job_unknown_is_usage_error():
    assert find_job("moodle-backup") is BACKUP_JOB
    with pytest.raises(UsageError):
        find_job("nope")


def test_cmd_cron_list_outputs_every_job(g, capsys):
    assert cmd_cron_list(argparse.Namespace(), g) == 0
    out = json.loads(capsys.readouterr().out)
    assert [j["name"] for j in out["jobs"]] == [j.name for j in ALL_JOBS]


@pytest.mark.parametrize("job", ALL_JOBS, ids=lambda j: j.name)
def test_cron_output_never_shares_the_tool_log(job):
    assert job.console_log.endswith("-cron.log")
    assert job.console_log != job.log_file
    assert job.line_command.endswith(f">> {job.console_log} 2>&1")
