from __future__ import annotations

import gzip
import io
from datetime import datetime

import pytest
from rich.console import Console

from moodle_ops.cli_shared import GlobalOpts, OpError
from moodle_ops.context import OpsContext
from moodle_ops.oplog import OpsLog
from moodle_ops.runner import CommandResult, CommandRunner
from moodle_ops.settings import Settings


class FakeRunner(CommandRunner):
    """Records argv and answers from substring-matched canned results."""

    def __init__(self, responses=None, *, binaries=(), dry_run=False, log=None):
        super().__init__(log=log, dry_run=dry_run)
        self.responses = list((responses or {}).items())
        self.binaries = set(binaries)
        self.calls: list[tuple[str, ...]] = []
        self.inputs: dict[str, str] = {}
        self.skipped: list[str] = []

    def run(self, argv, *, label=None, input_text=None, env=None, cwd=None, check=True, mutating=False):
        cmd = tuple(str(a) for a in argv)
        self.calls.append(cmd)
        line = " ".join(cmd)
        if input_text is not None:
            self.inputs[line] = input_text
        if mutating and self.dry_run:
            self.skipped.append(line)
            return CommandResult(argv=cmd, returncode=0)
        rc, out = 0, ""
        for needle, answer in self.responses:
            if needle in line:
                rc, out = answer if isinstance(answer, tuple) else (0, answer)
                break
        result = CommandResult(argv=cmd, returncode=rc, stdout=out, stderr="boom" if rc else "")
        if check and not result.ok:
            raise OpError(f"{label or cmd[0]} failed (exit {rc}): boom")
        return result

    dump_sql = "CREATE TABLE `mdl_user` (id int);\nINSERT INTO `mdl_user` VALUES (1);\n"

    def dump_to_gzip(self, argv, dest, *, env=None, level=6, label=None):
        self.calls.append(tuple(str(a) for a in argv))
        if self.dry_run:
            return
        with gzip.open(dest, "wt", encoding="utf-8") as fh:
            fh.write(self.dump_sql)

    def load_from_gzip(self, argv, src, *, env=None, label=None):
        self.calls.append(tuple(str(a) for a in argv) + ("<", str(src)))

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.binaries else None

    def joined(self) -> list[str]:
        return [" ".join(c) for c in self.calls]


def quiet_log(tool: str = "test", log_file=None) -> OpsLog:
    return OpsLog(tool=tool, log_file=log_file, quiet=True, console=Console(file=io.StringIO(), width=200))


@pytest.fixture
def make_runner():
    def _make(responses=None, *, binaries=(), dry_run=False):
        return FakeRunner(responses, binaries=binaries, dry_run=dry_run, log=quiet_log())

    return _make


@pytest.fixture
def make_ctx(tmp_path):
    def _make(runner, *, settings=None, now=datetime(2026, 3, 14, 2, 0, 0), **overrides):
        base = settings or Settings(
            moodle_dir=str(tmp_path / "moodle"),
            moodle_data=str(tmp_path / "moodledata"),
            backup_root=str(tmp_path / "backups"),
            credentials_file=str(tmp_path / "creds"),
        )
        if overrides:
            base = base.with_overrides(**overrides)
        return OpsContext(settings=base, runner=runner, log=runner.log or quiet_log(), clock=lambda: now)

    return _make


@pytest.fixture
def g(tmp_path):
    return GlobalOpts(
        settings=Settings(
            moodle_dir=str(tmp_path / "moodle"),
            moodle_data=str(tmp_path / "moodledata"),
            backup_root=str(tmp_path / "backups"),
            credentials_file=str(tmp_path / "creds"),
        ),
        pretty=False,
        quiet=True,
    )
