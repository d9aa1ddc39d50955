import argparse
import json
from datetime import datetime
from pathlib import Path

import pytest

from moodle_ops import audit_commands
from moodle_ops.audit_commands import CRITICAL
from moodle_ops.audit_commands import HIGH
from moodle_ops.audit_commands import MEDIUM
from moodle_ops.audit_commands import PASS
from moodle_ops.audit_commands import HostProbe
from moodle_ops.audit_commands import SecurityAudit
from moodle_ops.audit_commands import classify_config_mode
from moodle_ops.audit_commands import classify_db_password
from moodle_ops.audit_commands import classify_memory_limit
from moodle_ops.audit_commands import classify_release
from moodle_ops.audit_commands import render_security_report
from moodle_ops.audit_commands import security_grade
from moodle_ops.audit_commands import security_score
from moodle_ops.cli_shared import OpError


class FakeProbe(HostProbe):
    def __init__(self, runner, *, modes=None, php=None, ufw="active", exposed=0, upgradable=(0, 0)):
        super().__init__(runner)
        self.modes = modes or {}
        self.php = php
        self.ufw = ufw
        self.exposed = exposed
        self.upgradable = upgradable

    def stat(self, path):
        return self.modes.get(Path(path).name, ("755", "www-data", "www-data"))

    def world_writable_files(self, root):
        return 0

    def php_ini(self, name):
        if self.php is None:
            return None
        return self.php.get(name, "")

    def apt_upgradable(self):
        return self.upgradable

    def last_apt_update(self, history=None):
        return datetime(2026, 3, 12)

    def ufw_status(self):
        return self.ufw

    def exposed_db_listeners(self):
        return self.exposed

    def cert_paths(self, live=None):
        return []

    def service_active(self, unit):
        return False

    def secret_helper_available(self):
        return True


def _site(ctx, *, wwwroot="https://lms.example.edu", dbpass="Str0ng-Passw0rd!", release="4.3.2 (Build: 20231222)"):
    code = Path(ctx.settings.moodle_dir)
    code.mkdir(parents=True)
    Path(ctx.settings.moodle_data).mkdir(parents=True)
    (code / "config.php").write_text(
        "<?php\n"
        f"$CFG->wwwroot = '{wwwroot}';\n"
        "$CFG->dbhost = 'localhost';\n"
        f"$CFG->dbpass = '{dbpass}';\n"
        "$CFG->minpasswordlength = 12;\n"
        "$CFG->passwordpolicy = true;\n"
    )
    (code / "version.php").write_text(f"<?php\n$version = 2023100902.00;\n$release = '{release}';\n")


GOOD_PHP = {
    "display_errors": "0",
    "expose_php": "",
    "session.cookie_httponly": "1",
    "session.cookie_secure": "1",
    "file_uploads": "1",
    "upload_max_filesize": "100M",
    "memory_limit": "512M",
}


def test_score_and_grade_bands():
    assert security_score(critical=1, high=1, medium=1, low=1) == 63
    assert security_score(critical=6, high=0, medium=0, low=0) == 0
    assert security_grade(100) == "A+ (Excellent)"
    assert security_grade(80) == "B (Good)"
    assert security_grade(59).startswith("F")


def test_classifiers():
    assert classify_config_mode("644").severity == CRITICAL
    assert classify_config_mode("640").severity == PASS
    assert classify_release("3.11.4").severity == CRITICAL
    assert classify_release("4.0.1").severity == HIGH
    assert classify_db_password("short").severity == HIGH
    assert classify_db_password("onlylowercaseletters").severity == HIGH
    assert classify_db_password("Mixed-Case-123").severity == PASS
    assert classify_memory_limit("1G").severity == PASS
    assert classify_memory_limit("128M").severity == MEDIUM
    assert classify_memory_limit("-1").severity == PASS


def test_clean_site_scores_high(make_runner, make_ctx):
    ctx = make_ctx(make_runner())
    _site(ctx)
    probe = FakeProbe(
        ctx.runner,
        modes={"moodledata": ("700", "www-data", "www-data"), "config.php": ("640", "root", "www-data"),
               "moodle": ("755", "root", "root")},
        php=GOOD_PHP,
    )

    result = SecurityAudit(ctx, probe).run()

    assert result.count(CRITICAL) == 0
    assert result.count(HIGH) == 0
    assert result.score == 100
    assert result.facts["moodleVersion"].startswith("4.3.2")


def test_insecure_site_reports_one_finding_per_issue(make_runner, make_ctx):
    ctx = make_ctx(make_runner())
    _site(ctx, wwwroot="http://lms.example.edu", dbpass="abc", release="3.9.1")
    probe = FakeProbe(
        ctx.runner,
        modes={"moodledata": ("777", "root", "root"), "config.php": ("644", "root", "root")},
        php={**GOOD_PHP, "display_errors": "On"},
        ufw="inactive",
        exposed=1,
        upgradable=(12, 2),
    )

    result = SecurityAudit(ctx, probe).run()

    critical = [f.message for f in result.by_severity(CRITICAL)]
    assert "moodledata permissions TOO OPEN: 777 (should be 700 or 755)" in critical
    assert any(m.startswith("config.php permissions TOO OPEN: 644") for m in critical)
    assert any("NOT using HTTPS" in m for m in critical)
    assert any("END-OF-LIFE" in m for m in critical)
    assert any("SECURITY updates" in m for m in critical)
    assert any("EXPOSED" in m for m in critical)
    high = [f.message for f in result.by_severity(HIGH)]
    assert any("display_errors: On" in m for m in high)
    assert any("UFW firewall is INACTIVE" in m for m in high)
    assert any(m.startswith("moodledata ownership incorrect") for m in high)
    assert result.score == 0
    assert result.grade.startswith("F")


def test_quick_audit_checks_permissions_only(make_runner, make_ctx):
    ctx = make_ctx(make_runner())
    _site(ctx, wwwroot="http://insecure")
    result = SecurityAudit(ctx, FakeProbe(ctx.runner)).run(quick=True)
    assert not any("HTTPS" in f.message for f in result.findings)
    assert result.findings


def test_missing_config_php_is_operation_error(make_runner, make_ctx):
    ctx = make_ctx(make_runner())
    Path(ctx.settings.moodle_dir).mkdir(parents=True)
    Path(ctx.settings.moodle_data).mkdir(parents=True)
    with pytest.raises(OpError, match="config.php"):
        SecurityAudit(ctx, FakeProbe(ctx.runner)).run()


def test_report_includes_compliance_section_on_request(make_runner, make_ctx):
    ctx = make_ctx(make_runner())
    _site(ctx)
    result = SecurityAudit(ctx, FakeProbe(ctx.runner, php=GOOD_PHP)).run()
    dirs = (ctx.settings.moodle_dir, ctx.settings.moodle_data)
    generated = datetime(2026, 3, 14, 3, 0, 0)

    plain = render_security_report(result, settings_dirs=dirs, generated=generated, compliance=False)
    full = render_security_report(result, settings_dirs=dirs, generated=generated, compliance=True)

    assert "## Executive Summary" in plain
    assert "## Compliance Status" not in plain
    assert "### GDPR Compliance" in full
    assert "Data encryption: Yes (HTTPS)" in full
    assert "Schedule next security audit: 2026-04-13" in full


def test_cmd_audit_run_exits_one_on_critical(tmp_path, monkeypatch, g, capsys, make_runner, make_ctx):
    ctx = make_ctx(make_runner())
    _site(ctx, wwwroot="http://lms.example.edu")
    monkeypatch.setattr(audit_commands, "require_root", lambda: None)
    monkeypatch.setattr(audit_commands, "build_ops_context", lambda _g, **kw: ctx)
    monkeypatch.setattr(audit_commands, "build_probe", lambda c: FakeProbe(c.runner, php=GOOD_PHP))

    args = argparse.Namespace(quick=False, compliance_report=True, report_dir=str(tmp_path / "reports"))
    assert audit_commands.cmd_audit_run(args, g) == 1

    out = json.loads(capsys.readouterr().out)
    assert out["counts"]["critical"] >= 1
    assert Path(out["report"]).name == "moodle-security-report-20260314_020000.txt"
    assert "### SOC 2 Controls" in Path(out["report"]).read_text()


def test_cmd_audit_install_cron_writes_cron_d(tmp_path, monkeypatch, g, capsys):
    monkeypatch.setattr(audit_commands, "require_root", lambda: None)
    assert audit_commands.cmd_audit_install_cron(argparse.Namespace(cron_dir=str(tmp_path)), g) == 0
    out = json.loads(capsys.readouterr().out)
    assert Path(out["installed"]).is_file()
    assert "audit run" in Path(out["installed"]).read_text()


def test_apt_index_refresh_is_skipped_under_dry_run(make_runner):
    runner = make_runner({"apt list": "libssl3/jammy-security 3.0.2 amd64 [upgradable from: 3.0.1]\n"}, binaries=("apt",), dry_run=True)

    assert HostProbe(runner).apt_upgradable() == (1, 1)
    assert runner.skipped == ["apt update -qq"]
    assert "apt list --upgradable" in runner.joined()
