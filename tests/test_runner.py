import gzip
import io
import os
import stat

import pytest
from rich.console import Console

from moodle_ops import runner as runner_mod
from moodle_ops.cli_shared import OpError
from moodle_ops.cli_shared import PrerequisiteError
from moodle_ops.db import MysqlClient
from moodle_ops.oplog import OpsLog
from moodle_ops.runner import CommandRunner
from moodle_ops.runner import require_root


def _log():
    buf = io.StringIO()
    return OpsLog(tool="test", console=Console(file=buf, width=300)), buf


def test_run_captures_output_and_exit_status():
    r = CommandRunner()
    res = r.run(["sh", "-c", "echo out; echo err >&2"])
    assert res.ok
    assert res.stdout == "out\n"
    assert res.stderr == "err\n"

    res = r.run(["false"], check=False)
    assert res.returncode == 1 and not res.ok


def test_run_raises_op_error_with_label_and_stderr():
    with pytest.raises(OpError, match=r"verify-step failed \(exit 3\): went wrong"):
        CommandRunner().run(["sh", "-c", "echo went wrong >&2; exit 3"], label="verify-step")


def test_run_falls_back_to_stdout_in_error_message():
    with pytest.raises(OpError, match="only stdout"):
        CommandRunner().run(["sh", "-c", "echo only stdout; exit 1"])


def test_missing_binary_is_a_prerequisite_error():
    with pytest.raises(PrerequisiteError, match="command not found: no-such-binary-xyz"):
        CommandRunner().run(["no-such-binary-xyz"])


def test_input_text_and_cwd(tmp_path):
    res = CommandRunner().run(["sh", "-c", "cat > piped; pwd"], input_text="hello\n", cwd=tmp_path)
    assert (tmp_path / "piped").read_text() == "hello\n"
    assert res.stdout.strip() == str(tmp_path)


def test_dry_run_echoes_mutating_commands_without_running_them(tmp_path):
    log, buf = _log()
    r = CommandRunner(log=log, dry_run=True)
    marker = tmp_path / "touched"

    res = r.run(["touch", str(marker)], mutating=True)

    assert res.ok and res.stdout == ""
    assert not marker.exists()
    assert f"DRYRUN touch {marker}" in buf.getvalue()

    # read-only commands still run under --dry-run
    assert r.run(["sh", "-c", "echo ready"]).stdout == "ready\n"


def test_echo_prefixes_commands(tmp_path):
    log, buf = _log()
    CommandRunner(log=log, echo=True).run(["true"])
    assert "+ true" in buf.getvalue()


def test_require_binary_and_which():
    r = CommandRunner()
    assert r.require_binary("sh")
    with pytest.raises(PrerequisiteError, match="no-such-binary-xyz .install it."):
        r.require_binary("no-such-binary-xyz", hint="install it")


def test_systemctl_is_active_without_systemctl(monkeypatch):
    r = CommandRunner()
    monkeypatch.setattr(r, "which", lambda name: None)
    assert r.systemctl_is_active("mariadb") is False


def test_require_root(monkeypatch):
    monkeypatch.setattr(runner_mod.os, "geteuid", lambda: 1000)
    with pytest.raises(PrerequisiteError, match="root"):
        require_root()
    monkeypatch.setattr(runner_mod.os, "geteuid", lambda: 0)
    require_root()


def _fake_mysql(tmp_path, monkeypatch):
    bindir = tmp_path / "bin"
    bindir.mkdir()
    script = bindir / "mysql"
    script.write_text('#!/bin/sh\nprintf "%s|%s\\n" "$MYSQL_PWD" "$*"\n')
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("PATH", f"{bindir}{os.pathsep}{os.environ.get('PATH', '')}")


def test_mysql_password_travels_in_env_not_argv(tmp_path, monkeypatch):
    _fake_mysql(tmp_path, monkeypatch)
    client = MysqlClient(runner=CommandRunner(), user="root", password="s3cr3t", host="db1")

    res = client.execute("SELECT 1", database="moodle_lms")

    pwd, _, args = res.stdout.strip().partition("|")
    assert pwd == "s3cr3t"
    assert "s3cr3t" not in args
    assert "s3cr3t" not in " ".join(res.argv)
    assert args == "-u root -h db1 -N -B -e SELECT 1 moodle_lms"


def test_dump_to_gzip_survives_a_chatty_stderr(tmp_path):
    dest = tmp_path / "dump.sql.gz"
    script = "head -c 200000 /dev/zero | tr '\\0' w >&2; echo CREATE TABLE t;"

    CommandRunner().dump_to_gzip(["sh", "-c", script], dest)

    with gzip.open(dest, "rt") as fh:
        assert fh.read() == "CREATE TABLE t;\n"


def test_dump_to_gzip_failure_removes_partial_file(tmp_path):
    dest = tmp_path / "dump.sql.gz"
    with pytest.raises(OpError, match=r"mysqldump failed \(exit 2\): Access denied"):
        CommandRunner().dump_to_gzip(
            ["sh", "-c", "echo partial; echo Access denied >&2; exit 2"], dest, label="mysqldump"
        )
    assert not dest.exists()


def test_dump_to_gzip_dry_run_writes_nothing(tmp_path):
    log, buf = _log()
    dest = tmp_path / "dump.sql.gz"
    CommandRunner(log=log, dry_run=True).dump_to_gzip(["mysqldump", "moodle_lms"], dest)
    assert not dest.exists()
    assert "DRYRUN mysqldump moodle_lms '|' gzip -6 '>'" in buf.getvalue()


def test_load_from_gzip_streams_into_stdin(tmp_path):
    src = tmp_path / "in.sql.gz"
    with gzip.open(src, "wt") as fh:
        fh.write("INSERT INTO t VALUES (1);\n" * 1000)
    out = tmp_path / "out.sql"

    CommandRunner().load_from_gzip(["sh", "-c", f"head -c 200000 /dev/zero >&2; cat > {out}"], src)

    assert out.read_text().count("INSERT") == 1000


def test_load_from_gzip_reports_child_failure(tmp_path):
    src = tmp_path / "in.sql.gz"
    with gzip.open(src, "wt") as fh:
        fh.write("garbage\n")
    with pytest.raises(OpError, match=r"mysql import failed \(exit 1\): ERROR 1064"):
        CommandRunner().load_from_gzip(
            ["sh", "-c", "cat > /dev/null; echo ERROR 1064 >&2; exit 1"], src, label="mysql import"
        )


def test_load_from_gzip_rejects_a_corrupt_archive(tmp_path):
    src = tmp_path / "in.sql.gz"
    src.write_bytes(b"not gzip at all")
    with pytest.raises(OpError, match="failed to stream"):
        CommandRunner().load_from_gzip(["sh", "-c", "cat > /dev/null"], src)
