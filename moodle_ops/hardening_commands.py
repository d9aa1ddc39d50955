from __future__ import annotations

import argparse
import ipaddress
import re
from pathlib import Path
from typing import Any

from .cli_shared import GlobalOpts, OpError, PrerequisiteError, UsageError, _parse_csv, _print_json
from .context import OpsContext, build_ops_context
from .db import CLEANUP_SQL, MysqlClient
from .host import HostFiles, active_web_server, apt_install, package_installed, php_version, systemctl
from .runner import CommandRunner, require_root
from .web_config import render_apache_security_conf

HARDENING_LOG = "/var/log/moodle-security-hardening.log"
RATELIMIT_LOG = "/var/log/apache-ratelimit-setup.log"

UNATTENDED_UPGRADES_CONF = "/etc/apt/apt.conf.d/50unattended-upgrades"
AUTO_UPGRADES_CONF = "/etc/apt/apt.conf.d/20auto-upgrades"
JAIL_LOCAL = "/etc/fail2ban/jail.local"
MOODLE_AUTH_FILTER = "/etc/fail2ban/filter.d/moodle-auth.conf"
MARIADB_SERVER_CNF = "/etc/mysql/mariadb.conf.d/50-server.cnf"
APACHE_SECURITY_CONF = "/etc/apache2/conf-available/moodle-security.conf"
RATELIMIT_CONF = "/etc/apache2/conf-available/ratelimit.conf"
MODSECURITY_CONF = "/etc/modsecurity/modsecurity.conf"
EVASIVE_LOG_DIR = "/var/log/mod_evasive"
LOGWATCH_CRON = "/etc/cron.daily/00logwatch"
RKHUNTER_CRON = "/etc/cron.weekly/rkhunter-scan"

# Moodle itself calls curl_exec, parse_ini_file, exec and proc_open.
PHP_DISABLED_FUNCTIONS = ("passthru", "shell_exec", "system", "popen", "show_source", "pcntl_exec")

UNATTENDED_UPGRADES = """\
Unattended-Upgrade::Allowed-Origins {
    "${distro_id}:${distro_codename}-security";
    "${distro_id}ESMApps:${distro_codename}-apps-security";
    "${distro_id}ESM:${distro_codename}-infra-security";
};
Unattended-Upgrade::Automatic-Reboot "false";
Unattended-Upgrade::Automatic-Reboot-Time "03:00";
Unattended-Upgrade::Remove-Unused-Dependencies "true";
Unattended-Upgrade::Remove-Unused-Kernel-Packages "true";
"""
AUTO_UPGRADES = """\
APT::Periodic::Update-Package-Lists "1";
APT::Periodic::Unattended-Upgrade "1";
APT::Periodic::Download-Upgradeable-Packages "1";
APT::Periodic::AutocleanInterval "7";
"""
MOODLE_AUTH_FILTER_TEXT = """\
[Definition]
failregex = ^.*Failed login attempt.*from <HOST>.*$
            ^.*Invalid login attempt.*<HOST>.*$
ignoreregex =
"""

_WEB_JAILS = {
    "apache": (("apache-auth", 5), ("apache-badbots", 2), ("apache-noscript", 5), ("apache-overflows", 2)),
    "nginx": (("nginx-http-auth", 5), ("nginx-botsearch", 2)),
}


def render_jail_local(*, web_server: str, ssh_port: int = 22) -> str:
    sections: list[tuple[str, dict[str, Any]]] = [
        ("DEFAULT", {"bantime": 3600, "findtime": 600, "maxretry": 5}),
        ("sshd", {"enabled": "true", "port": ssh_port, "filter": "sshd", "maxretry": 3, "bantime": 7200}),
    ]
    for jail, maxretry in _WEB_JAILS.get(web_server, ()):
        sections.append((jail, {"enabled": "true", "port": "http,https", "maxretry": maxretry}))
    sections += [
        ("mysqld-auth", {"enabled": "true", "filter": "mysqld-auth", "port": 3306, "maxretry": 3, "bantime": 7200}),
        ("moodle-auth", {"enabled": "true", "port": "http,https", "filter": "moodle-auth", "maxretry": 5, "findtime": 300}),
    ]
    out: list[str] = []
    for name, values in sections:
        out.append(f"[{name}]")
        out += [f"{k} = {v}" for k, v in values.items()]
        out.append("")
    return "\n".join(out)


def render_php_security_ini() -> str:
    return f"""\
; Moodle PHP hardening
disable_functions = {",".join(PHP_DISABLED_FUNCTIONS)}
allow_url_include = Off
expose_php = Off
display_errors = Off
display_startup_errors = Off

session.cookie_httponly = On
session.cookie_secure = On
session.cookie_samesite = Lax
session.use_strict_mode = On

file_uploads = On
max_file_uploads = 20
"""


def render_ratelimit_conf(*, page_count: int = 20, site_count: int = 100, blocking_period: int = 60) -> str:
    return f"""\
<IfModule mod_evasive20.c>
    DOSHashTableSize 3097
    DOSPageCount {page_count}
    DOSSiteCount {site_count}
    DOSPageInterval 1
    DOSSiteInterval 1
    DOSBlockingPeriod {blocking_period}
    DOSLogDir {EVASIVE_LOG_DIR}
</IfModule>

<IfModule mod_reqtimeout.c>
    RequestReadTimeout header=20-40,MinRate=500 body=20,MinRate=500
</IfModule>

LimitRequestBody 104857600
"""


def set_bind_address(text: str, address: str = "127.0.0.1") -> str:
    pattern = re.compile(r"^#?\s*bind-address\s*=.*$", re.MULTILINE)
    if pattern.search(text):
        return pattern.sub(f"bind-address = {address}", text, count=1)
    return text


def _valid_source(raw: str) -> str:
    try:
        return str(ipaddress.ip_network(raw, strict=False))
    except ValueError as e:
        raise UsageError(f"invalid trusted IP or CIDR: {raw}") from e


def configure_ufw(runner: CommandRunner, *, ssh_port: int = 22, trusted: tuple[str, ...] = ()) -> list[str]:
    """Default-deny inbound, SSH rate-limited, HTTP and HTTPS open."""
    if not package_installed(runner, "ufw"):
        apt_install(runner, "ufw")
    rules = [
        ["default", "deny", "incoming"],
        ["default", "allow", "outgoing"],
        ["allow", "in", "on", "lo"],
        ["limit", f"{ssh_port}/tcp"],
        ["allow", "80/tcp"],
        ["allow", "443/tcp"],
    ]
    rules += [["allow", "from", src] for src in trusted]
    for rule in rules:
        runner.run(["ufw", "--force", *rule], label="ufw", mutating=True)
    runner.run(["ufw", "--force", "enable"], label="ufw enable", mutating=True)
    return [" ".join(r) for r in rules]


class SecurityHardener:
    def __init__(self, ctx: OpsContext, *, root: Path = Path("/"), ssh_port: int = 22) -> None:
        self.ctx = ctx
        self.ssh_port = ssh_port
        stamp = ctx.now().strftime("%Y%m%d_%H%M%S")
        self.files = HostFiles(ctx, backup_dir=root / f"root/security-hardening-backup-{stamp}", root=root)
        self.web_server = active_web_server(ctx.runner) or "apache"
        self.steps: list[str] = []

    @property
    def runner(self) -> CommandRunner:
        return self.ctx.runner

    def automatic_updates(self) -> None:
        self.ctx.log.section("Automatic security updates")
        apt_install(self.runner, "unattended-upgrades", "apt-listchanges")
        self.files.write(UNATTENDED_UPGRADES_CONF, UNATTENDED_UPGRADES)
        self.files.write(AUTO_UPGRADES_CONF, AUTO_UPGRADES)
        systemctl(self.runner, "enable", "--now", "unattended-upgrades", check=False)
        self.steps.append("unattended-upgrades")

    def fail2ban(self) -> None:
        self.ctx.log.section("Fail2ban")
        if not package_installed(self.runner, "fail2ban"):
            apt_install(self.runner, "fail2ban")
        self.files.write(JAIL_LOCAL, render_jail_local(web_server=self.web_server, ssh_port=self.ssh_port))
        self.files.write(MOODLE_AUTH_FILTER, MOODLE_AUTH_FILTER_TEXT)
        systemctl(self.runner, "enable", "fail2ban")
        systemctl(self.runner, "restart", "fail2ban")
        self.ctx.log.success(f"Fail2ban jails configured for {self.web_server}")
        self.steps.append("fail2ban")

    def firewall(self, trusted: tuple[str, ...]) -> None:
        self.ctx.log.section("UFW firewall")
        configure_ufw(self.runner, ssh_port=self.ssh_port, trusted=trusted)
        for src in trusted:
            self.ctx.log.log(f"Trusted source allowed: {src}")
        self.steps.append("ufw")

    def permissions(self) -> None:
        self.ctx.log.section("File permissions")
        s = self.ctx.settings
        config_php = self.files.path(str(s.config_php))
        if config_php.is_file():
            self.runner.run(["chown", f"root:{s.web_user}", str(config_php)], label="chown config.php", mutating=True)
            self.runner.run(["chmod", "440", str(config_php)], label="chmod config.php", mutating=True)
        data = self.files.path(s.moodle_data)
        if data.is_dir():
            self.runner.run(["chown", "-R", f"{s.web_user}:{s.web_user}", str(data)], label="chown moodledata", mutating=True)
            self.runner.run(["chmod", "-R", "u=rwX,g=rwX,o=", str(data)], label="chmod moodledata", mutating=True)
        creds = self.files.path(s.credentials_file)
        if creds.is_file():
            self.runner.run(["chmod", "600", str(creds)], label="chmod credentials", mutating=True)
        self.steps.append("permissions")

    def mariadb(self) -> None:
        self.ctx.log.section("MariaDB")
        if not self.runner.which("mysql"):
            self.ctx.log.warn("mysql client not found, skipping database hardening")
            return
        client = MysqlClient(runner=self.runner, user="root", password=self.ctx.credentials().root_password)
        res = client.script(CLEANUP_SQL, label="mysql cleanup", check=False)
        if not res.ok:
            self.ctx.log.warn(f"MariaDB cleanup failed: {res.stderr.strip()}")
        text = self.files.read(MARIADB_SERVER_CNF)
        if text:
            updated = set_bind_address(text)
            if self.files.write(MARIADB_SERVER_CNF, updated):
                systemctl(self.runner, "restart", "mariadb")
                self.ctx.log.success("MariaDB bound to 127.0.0.1")
        self.steps.append("mariadb")

    def php(self) -> None:
        self.ctx.log.section("PHP")
        version = php_version(self.runner)
        if not version:
            self.ctx.log.warn("PHP not found, skipping PHP hardening")
            return
        sapi = "apache2" if self.files.exists(f"/etc/php/{version}/apache2/conf.d") else "fpm"
        conf_dir = f"/etc/php/{version}/{sapi}/conf.d"
        if not self.files.exists(conf_dir):
            self.ctx.log.warn(f"PHP configuration directory not found: {conf_dir}")
            return
        self.files.write(f"{conf_dir}/99-security-hardening.ini", render_php_security_ini())
        if sapi == "fpm":
            systemctl(self.runner, "restart", f"php{version}-fpm", check=False)
        self.steps.append(f"php-{sapi}")

    def web_server_headers(self) -> None:
        if self.web_server != "apache":
            return
        self.ctx.log.section("Apache")
        self.files.write(APACHE_SECURITY_CONF, render_apache_security_conf())
        self.runner.run(["a2enmod", "headers"], label="a2enmod", mutating=True)
        self.runner.run(["a2enconf", "moodle-security"], label="a2enconf", mutating=True)
        self.steps.append("apache-headers")

    def audit_tools(self) -> None:
        self.ctx.log.section("Audit tools")
        apt_install(self.runner, "lynis", "logwatch", "rkhunter")
        self.files.write(
            LOGWATCH_CRON,
            "#!/bin/sh\n/usr/sbin/logwatch --output mail --mailto root --detail high --service all --range yesterday\n",
            mode=0o755,
        )
        self.files.write(RKHUNTER_CRON, "#!/bin/sh\n/usr/bin/rkhunter --check --skip-keypress --report-warnings-only\n", mode=0o755)
        self.runner.run(["rkhunter", "--propupd"], label="rkhunter --propupd", check=False, mutating=True)
        self.steps.append("audit-tools")

    def restart_web(self) -> None:
        unit = "apache2" if self.web_server == "apache" else "nginx"
        res = systemctl(self.runner, "restart", unit, check=False)
        if not res.ok:
            self.ctx.log.warn(f"{unit} restart failed; check: systemctl status {unit}")


def cmd_harden_run(args: argparse.Namespace, g: GlobalOpts) -> int:
    ssh_port = int(getattr(args, "ssh_port", None) or 22)
    if not 0 < ssh_port < 65536:
        raise UsageError(f"invalid --ssh-port: {ssh_port}")
    trusted = tuple(_valid_source(ip) for ip in _parse_csv(getattr(args, "trusted_ips", None)))
    require_root()
    ctx = build_ops_context(g, tool="hardening", default_log_file=HARDENING_LOG)
    ctx.log.section("Moodle Security Hardening")
    h = SecurityHardener(ctx, root=Path(getattr(args, "root", None) or "/"), ssh_port=ssh_port)
    h.automatic_updates()
    h.fail2ban()
    if getattr(args, "skip_firewall", False):
        ctx.log.warn("Firewall configuration skipped")
    else:
        h.firewall(trusted)
    h.permissions()
    h.mariadb()
    h.php()
    h.web_server_headers()
    if getattr(args, "audit_tools", False):
        h.audit_tools()
    h.restart_web()
    ctx.log.success("Security hardening complete; run `moodle-ops cis run` for SSH and kernel controls")
    ctx.log.wide_event("success", steps=h.steps, webServer=h.web_server)
    _print_json(
        {
            "webServer": h.web_server,
            "steps": h.steps,
            "written": h.files.written,
            "backupDir": str(h.files.backup_dir),
        },
        pretty=g.pretty,
    )
    return 0


def _a2query_enabled(runner: CommandRunner, module: str) -> bool:
    return runner.run(["a2query", "-m", module], check=False).ok


def cmd_harden_ratelimit(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    ctx = build_ops_context(g, tool="ratelimit", default_log_file=RATELIMIT_LOG)
    runner = ctx.runner
    if not runner.which("apache2") and not runner.dry_run:
        raise PrerequisiteError("Apache is not installed (run: moodle-ops vm provision --web-server apache)")
    root = Path(getattr(args, "root", None) or "/")
    files = HostFiles(ctx, backup_dir=root / f"root/ratelimit-backup-{ctx.now().strftime('%Y%m%d_%H%M%S')}", root=root)
    modules: list[str] = []

    ctx.log.section("mod_evasive")
    apt_install(runner, "libapache2-mod-evasive")
    files.mkdir(EVASIVE_LOG_DIR)
    runner.run(["chown", f"{ctx.settings.web_user}:{ctx.settings.web_user}", str(files.path(EVASIVE_LOG_DIR))], mutating=True)
    runner.run(["a2enmod", "evasive"], label="a2enmod evasive", mutating=True)
    modules.append("evasive")

    for module in ("headers", "reqtimeout", "rewrite"):
        if _a2query_enabled(runner, module):
            ctx.log.log(f"Module already enabled: {module}")
            continue
        runner.run(["a2enmod", module], label=f"a2enmod {module}", mutating=True)
        modules.append(module)

    mod_security = bool(getattr(args, "mod_security", False))
    if mod_security:
        ctx.log.section("ModSecurity")
        apt_install(runner, "libapache2-mod-security2", "modsecurity-crs")
        runner.run(["a2enmod", "security2"], label="a2enmod security2", mutating=True)
        base = files.read(MODSECURITY_CONF) or files.read(f"{MODSECURITY_CONF}-recommended")
        if base:
            files.write(MODSECURITY_CONF, base.replace("SecRuleEngine DetectionOnly", "SecRuleEngine On"))
        else:
            ctx.log.warn(f"{MODSECURITY_CONF} not found; SecRuleEngine left at its default")
        modules.append("security2")
    else:
        ctx.log.warn("ModSecurity not installed (use --mod-security to install)")

    text = render_ratelimit_conf(
        page_count=int(getattr(args, "page_count", None) or 20),
        site_count=int(getattr(args, "site_count", None) or 100),
    )
    files.write(RATELIMIT_CONF, text)
    runner.run(["a2enconf", "ratelimit"], label="a2enconf ratelimit", mutating=True)

    test = runner.run(["apache2ctl", "configtest"], check=False, mutating=True)
    if not test.ok:
        runner.run(["a2disconf", "ratelimit"], label="a2disconf ratelimit", check=False, mutating=True)
        raise OpError(f"Apache configuration test failed, ratelimit.conf disabled: {test.stderr.strip()}")
    systemctl(runner, "reload", "apache2")
    ctx.log.success("Rate limiting enabled")
    ctx.log.wide_event("success", modules=modules, modSecurity=mod_security)
    _print_json({"config": str(files.path(RATELIMIT_CONF)), "modules": modules, "modSecurity": mod_security}, pretty=g.pretty)
    return 0
