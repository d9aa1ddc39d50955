import argparse
import json

import pytest

from moodle_ops import hardening_commands
from moodle_ops.cli_shared import OpError
from moodle_ops.cli_shared import PrerequisiteError
from moodle_ops.cli_shared import UsageError
from moodle_ops.hardening_commands import SecurityHardener
from moodle_ops.hardening_commands import configure_ufw
from moodle_ops.hardening_commands import render_jail_local
from moodle_ops.hardening_commands import render_php_security_ini
from moodle_ops.hardening_commands import render_ratelimit_conf
from moodle_ops.hardening_commands import set_bind_address

INSTALLED = {"dpkg-query": "install ok installed"}


def test_jail_local_per_web_server():
    apache = render_jail_local(web_server="apache", ssh_port=2222)
    assert "[sshd]\nenabled = true\nport = 2222\n" in apache
    assert "[apache-badbots]" in apache and "[nginx-http-auth]" not in apache
    assert "[moodle-auth]" in apache
    nginx = render_jail_local(web_server="nginx")
    assert "[nginx-botsearch]" in nginx and "[apache-auth]" not in nginx


def test_php_security_ini_leaves_functions_moodle_needs():
    ini = render_php_security_ini()
    disabled = next(line for line in ini.splitlines() if line.startswith("disable_functions"))
    for needed in ("exec", "proc_open", "curl_exec", "parse_ini_file"):
        assert needed not in disabled.split(" = ")[1].split(",")
    assert "shell_exec" in disabled
    assert "session.cookie_samesite = Lax" in ini


def test_ratelimit_conf_thresholds():
    text = render_ratelimit_conf(page_count=10, site_count=50)
    assert "DOSPageCount 10" in text and "DOSSiteCount 50" in text
    assert "DOSLogDir /var/log/mod_evasive" in text


def test_set_bind_address():
    assert set_bind_address("[mysqld]\n#bind-address = 0.0.0.0\n") == "[mysqld]\nbind-address = 127.0.0.1\n"
    assert set_bind_address("[mysqld]\nport = 3306\n") == "[mysqld]\nport = 3306\n"


def test_configure_ufw_rules_in_order(make_runner):
    runner = make_runner(INSTALLED)
    rules = configure_ufw(runner, ssh_port=2222, trusted=("10.0.0.0/8",))
    assert rules[0] == "default deny incoming"
    assert "limit 2222/tcp" in rules
    assert rules[-1] == "allow from 10.0.0.0/8"
    assert runner.joined()[-1] == "ufw --force enable"
    assert not any(line.startswith("apt-get") for line in runner.joined())


def test_configure_ufw_installs_when_missing(make_runner):
    runner = make_runner({"dpkg-query": (1, "")})
    configure_ufw(runner)
    assert "apt-get install -y -qq ufw" in runner.joined()


def test_mariadb_step_runs_cleanup_and_binds_localhost(tmp_path, make_runner, make_ctx):
    cnf = tmp_path / "etc/mysql/mariadb.conf.d/50-server.cnf"
    cnf.parent.mkdir(parents=True)
    cnf.write_text("[mysqld]\nbind-address = 0.0.0.0\n")
    runner = make_runner(binaries=("mysql",))
    h = SecurityHardener(make_ctx(runner, db_root_password="r"), root=tmp_path)

    h.mariadb()

    assert "DROP DATABASE IF EXISTS test;" in runner.inputs["mysql -u root"]
    assert "bind-address = 127.0.0.1" in cnf.read_text()
    assert "systemctl restart mariadb" in runner.joined()
    assert (tmp_path / "root/security-hardening-backup-20260314_020000/50-server.cnf.backup").is_file()


def test_mariadb_step_skipped_without_client(tmp_path, make_runner, make_ctx):
    runner = make_runner()
    h = SecurityHardener(make_ctx(runner), root=tmp_path)
    h.mariadb()
    assert runner.calls == []
    assert "mariadb" not in h.steps


def test_php_step_targets_the_fpm_pool(tmp_path, make_runner, make_ctx):
    (tmp_path / "etc/php/8.2/fpm/conf.d").mkdir(parents=True)
    runner = make_runner({"php -r": "8.2"}, binaries=("php",))
    h = SecurityHardener(make_ctx(runner), root=tmp_path)

    h.php()

    assert (tmp_path / "etc/php/8.2/fpm/conf.d/99-security-hardening.ini").is_file()
    assert "systemctl restart php8.2-fpm" in runner.joined()
    assert h.steps == ["php-fpm"]


def test_cmd_harden_run(tmp_path, monkeypatch, g, capsys, make_runner, make_ctx):
    runner = make_runner(INSTALLED, binaries=("systemctl",))
    ctx = make_ctx(runner)
    monkeypatch.setattr(hardening_commands, "require_root", lambda: None)
    monkeypatch.setattr(hardening_commands, "build_ops_context", lambda _g, **kw: ctx)

    args = argparse.Namespace(ssh_port=22, trusted_ips="203.0.113.9", skip_firewall=False, audit_tools=False,
                              root=str(tmp_path))
    assert hardening_commands.cmd_harden_run(args, g) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["webServer"] == "apache"
    assert out["steps"] == ["unattended-upgrades", "fail2ban", "ufw", "permissions", "apache-headers"]
    assert "[apache-auth]" in (tmp_path / "etc/fail2ban/jail.local").read_text()
    assert (tmp_path / "etc/apache2/conf-available/moodle-security.conf").is_file()
    joined = runner.joined()
    assert "ufw --force allow from 203.0.113.9/32" in joined
    assert joined[-1] == "systemctl restart apache2"


def test_cmd_harden_run_rejects_bad_trusted_ip(g):
    with pytest.raises(UsageError, match="trusted IP"):
        hardening_commands.cmd_harden_run(argparse.Namespace(ssh_port=22, trusted_ips="10.0.0.300"), g)


def test_cmd_ratelimit_requires_apache(monkeypatch, g, make_runner, make_ctx):
    monkeypatch.setattr(hardening_commands, "require_root", lambda: None)
    monkeypatch.setattr(hardening_commands, "build_ops_context", lambda _g, **kw: make_ctx(make_runner()))
    with pytest.raises(PrerequisiteError, match="Apache"):
        hardening_commands.cmd_harden_ratelimit(argparse.Namespace(), g)


def test_cmd_ratelimit_enables_evasive(tmp_path, monkeypatch, g, capsys, make_runner, make_ctx):
    runner = make_runner({"a2query -m rewrite": (1, "")}, binaries=("apache2",))
    monkeypatch.setattr(hardening_commands, "require_root", lambda: None)
    monkeypatch.setattr(hardening_commands, "build_ops_context", lambda _g, **kw: make_ctx(runner))

    args = argparse.Namespace(mod_security=False, page_count=30, site_count=None, root=str(tmp_path))
    assert hardening_commands.cmd_harden_ratelimit(args, g) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["modules"] == ["evasive", "rewrite"]
    assert "DOSPageCount 30" in (tmp_path / "etc/apache2/conf-available/ratelimit.conf").read_text()
    assert runner.joined()[-1] == "systemctl reload apache2"


def test_cmd_ratelimit_disables_conf_when_configtest_fails(tmp_path, monkeypatch, g, make_runner, make_ctx):
    runner = make_runner({"apache2ctl configtest": (1, "")}, binaries=("apache2",))
    monkeypatch.setattr(hardening_commands, "require_root", lambda: None)
    monkeypatch.setattr(hardening_commands, "build_ops_context", lambda _g, **kw: make_ctx(runner))

    with pytest.raises(OpError, match="ratelimit.conf disabled"):
        hardening_commands.cmd_harden_ratelimit(argparse.Namespace(root=str(tmp_path)), g)
    assert "a2disconf ratelimit" in runner.joined()
    assert "systemctl reload apache2" not in runner.joined()
