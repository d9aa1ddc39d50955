from __future__ import annotations

import argparse
import secrets
import shutil
from pathlib import Path
from typing import Any

from .cis_commands import check_os
from .cli_shared import GlobalOpts, PrerequisiteError, UsageError, _print_json
from .config_files import ConfigPhpParams, render_config_php
from .context import OpsContext, build_ops_context
from .credentials import read_credentials_file, write_credentials_file
from .db import CLEANUP_SQL, MysqlClient, sql_identifier, sql_string
from .hardening_commands import configure_ufw
from .host import APT_ENV, HostFiles, apt_install, apt_update, systemctl
from .runner import require_root
from .web_config import (
    WEB_SERVERS,
    innodb_buffer_mb,
    parse_meminfo_mb,
    render_apache_security_conf,
    render_logrotate,
    render_mariadb_cnf,
    render_moodle_cron,
    render_nginx_site,
    render_php_ini,
)

PROVISION_LOG = "/var/log/moodle-setup.log"
MIN_FREE_GB = 20
DEFAULT_PHP_VERSION = "8.2"
APACHE_MODULES = ("rewrite", "ssl", "headers", "expires", "deflate", "http2")
PHP_EXTENSIONS = (
    "fpm", "cli", "common", "mysql", "gd", "intl", "mbstring", "xml", "soap",
    "zip", "curl", "opcache", "ldap", "bcmath", "readline",
)
BASE_TOOLS = ("git", "curl", "wget", "unzip", "cron", "logrotate", "fail2ban", "certbot")
MARIADB_TUNING = "/etc/mysql/mariadb.conf.d/99-moodle.cnf"
MOODLE_CRON = "/etc/cron.d/moodle"
LOGROTATE_CONF = "/etc/logrotate.d/moodle"
NGINX_SITE = "/etc/nginx/sites-available/moodle"
BACKUP_SUBDIRS = ("automated", "manual", "database")


def php_packages(version: str, web_server: str) -> list[str]:
    pkgs = [f"php{version}"] + [f"php{version}-{ext}" for ext in PHP_EXTENSIONS]
    if web_server == "apache":
        pkgs.append(f"libapache2-mod-php{version}")
    return pkgs


def root_password_sql(password: str) -> str:
    # unix_socket stays first so root on the host keeps password-less access.
    return (
        "ALTER USER 'root'@'localhost' IDENTIFIED VIA unix_socket "
        f"OR mysql_native_password USING PASSWORD({sql_string(password)});\n"
    )


def moodle_database_sql(*, name: str, user: str, password: str) -> str:
    account = f"{sql_string(user)}@'localhost'"
    return (
        f"CREATE DATABASE IF NOT EXISTS {sql_identifier(name)} "
        "DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;\n"
        f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {sql_string(password)};\n"
        f"ALTER USER {account} IDENTIFIED BY {sql_string(password)};\n"
        f"GRANT ALL PRIVILEGES ON {sql_identifier(name)}.* TO {account};\n"
        "FLUSH PRIVILEGES;\n"
    )


def _new_password() -> str:
    return secrets.token_urlsafe(24)


class Provisioner:
    def __init__(
        self,
        ctx: OpsContext,
        *,
        web_server: str = "apache",
        php_version: str = DEFAULT_PHP_VERSION,
        timezone: str = "UTC",
        root: Path = Path("/"),
    ) -> None:
        if web_server not in WEB_SERVERS:
            raise UsageError(f"unsupported web server: {web_server} (expected one of: {', '.join(WEB_SERVERS)})")
        self.ctx = ctx
        self.web_server = web_server
        self.php_version = php_version
        self.timezone = timezone
        self.root = root
        stamp = ctx.now().strftime("%Y%m%d_%H%M%S")
        self.files = HostFiles(ctx, backup_dir=root / f"var/backups/moodle-setup-{stamp}", root=root)
        self.steps: list[str] = []
        self.generated: list[str] = []
        self.db_password = ""
        self.root_password = ""

    @property
    def unit(self) -> str:
        return "apache2" if self.web_server == "apache" else "nginx"

    def _step(self, name: str) -> None:
        self.steps.append(name)
        self.ctx.log.section(f"Step {len(self.steps)}: {name}")

    def _resolve_passwords(self) -> None:
        s = self.ctx.settings
        existing = read_credentials_file(self.files.path(s.credentials_file))
        self.root_password = s.db_root_password or existing.get("DB_ROOT_PASSWORD", "")
        self.db_password = s.db_password or existing.get("MOODLE_DB_PASSWORD", "")
        if not self.root_password:
            self.root_password = _new_password()
            self.generated.append("DB_ROOT_PASSWORD")
        if not self.db_password:
            self.db_password = _new_password()
            self.generated.append("MOODLE_DB_PASSWORD")

    def system_update(self) -> None:
        self._step("System update")
        apt_update(self.ctx.runner)
        self.ctx.runner.run(["apt-get", "upgrade", "-y", "-qq"], label="apt-get upgrade", env=APT_ENV, mutating=True)
        self.ctx.runner.run(["apt-get", "autoremove", "-y", "-qq"], label="apt-get autoremove", env=APT_ENV, mutating=True)

    def install_web_server(self) -> None:
        runner = self.ctx.runner
        if self.web_server == "apache":
            self._step("Apache")
            apt_install(runner, "apache2", update=False)
            for module in APACHE_MODULES:
                runner.run(["a2enmod", module], label=f"a2enmod {module}", mutating=True)
            self.files.write("/etc/apache2/conf-available/moodle-security.conf", render_apache_security_conf())
            runner.run(["a2enconf", "moodle-security"], label="a2enconf", mutating=True)
        else:
            self._step("Nginx")
            apt_install(runner, "nginx", update=False)
        systemctl(runner, "enable", self.unit)

    def install_mariadb(self) -> None:
        self._step("MariaDB")
        runner = self.ctx.runner
        apt_install(runner, "mariadb-server", "mariadb-client", update=False)
        systemctl(runner, "enable", "--now", "mariadb")
        self._resolve_passwords()
        # root reaches a fresh server through unix_socket; MYSQL_PWD covers a re-run.
        client = MysqlClient(runner=runner, user="root", password=self.root_password)
        client.script(root_password_sql(self.root_password) + CLEANUP_SQL, label="secure mariadb")
        s = self.ctx.settings
        client.script(
            moodle_database_sql(name=s.db_name, user=s.db_user, password=self.db_password),
            label="create moodle database",
        )
        self.ctx.log.success(f"Database {s.db_name} ready for {s.db_user}@localhost")

    def install_php(self) -> None:
        self._step(f"PHP {self.php_version}")
        runner = self.ctx.runner
        apt_install(runner, "software-properties-common", update=False)
        runner.run(["add-apt-repository", "-y", "ppa:ondrej/php"], label="add-apt-repository", env=APT_ENV, mutating=True)
        apt_install(runner, *php_packages(self.php_version, self.web_server))
        ini = render_php_ini(timezone=self.timezone)
        sapi = "apache2" if self.web_server == "apache" else "fpm"
        for target in (sapi, "cli"):
            self.files.write(f"/etc/php/{self.php_version}/{target}/conf.d/99-moodle.ini", ini)
        systemctl(runner, "enable", "--now", f"php{self.php_version}-fpm")

    def configure_nginx_site(self) -> None:
        if self.web_server != "nginx":
            return
        runner = self.ctx.runner
        s = self.ctx.settings
        self.files.write(NGINX_SITE, render_nginx_site(("_",), moodle_dir=s.moodle_dir, php_version=self.php_version))
        enabled = self.files.path("/etc/nginx/sites-enabled")
        runner.run(["ln", "-sf", str(self.files.path(NGINX_SITE)), str(enabled / "moodle")], label="enable site", mutating=True)
        runner.run(["rm", "-f", str(enabled / "default")], label="remove default site", mutating=True)
        runner.run(["nginx", "-t"], label="nginx -t", mutating=True)

    def tune_mariadb(self) -> int:
        self._step("MariaDB tuning")
        ram_mb = parse_meminfo_mb(self.files.read("/proc/meminfo"))
        if self.files.write(MARIADB_TUNING, render_mariadb_cnf(ram_mb)):
            systemctl(self.ctx.runner, "restart", "mariadb")
        buffer_mb = innodb_buffer_mb(ram_mb)
        self.ctx.log.log(f"InnoDB buffer pool: {buffer_mb}M ({ram_mb}MB RAM)")
        return buffer_mb

    def directories(self) -> None:
        self._step("Directories")
        s = self.ctx.settings
        self.files.mkdir(s.moodle_dir, mode=0o755)
        data = self.files.mkdir(s.moodle_data, mode=0o2770)
        for sub in ("sessions", "cache"):
            self.files.mkdir(f"{s.moodle_data.rstrip('/')}/{sub}", mode=0o2770)
        self.files.mkdir(s.backup_root, mode=0o750)
        for sub in BACKUP_SUBDIRS:
            self.files.mkdir(f"{s.backup_root.rstrip('/')}/{sub}", mode=0o750)
        owner = f"{s.web_user}:{s.web_user}"
        for path in (self.files.path(s.moodle_dir), data):
            self.ctx.runner.run(["chown", "-R", owner, str(path)], label="chown", mutating=True)

    def firewall(self) -> None:
        self._step("Firewall")
        configure_ufw(self.ctx.runner)

    def tools(self) -> None:
        self._step("Additional tools")
        apt_install(self.ctx.runner, *BASE_TOOLS, f"python3-certbot-{self.web_server}", update=False)
        systemctl(self.ctx.runner, "enable", "--now", "fail2ban")

    def moodle_cron(self) -> None:
        self._step("Moodle cron and log rotation")
        s = self.ctx.settings
        self.files.write(MOODLE_CRON, render_moodle_cron(moodle_dir=s.moodle_dir, web_user=s.web_user))
        self.files.write(LOGROTATE_CONF, render_logrotate(web_user=s.web_user))

    def save_credentials(self) -> Path:
        self._step("Credentials")
        s = self.ctx.settings
        path = self.files.path(s.credentials_file)
        values = {
            "DB_ROOT_USER": "root",
            "DB_ROOT_PASSWORD": self.root_password,
            "MOODLE_DB_NAME": s.db_name,
            "MOODLE_DB_USER": s.db_user,
            "MOODLE_DB_PASSWORD": self.db_password,
            "MOODLE_DIR": s.moodle_dir,
            "MOODLE_DATA": s.moodle_data,
            "BACKUP_DIR": s.backup_root,
        }
        if self.ctx.runner.dry_run:
            self.ctx.log.log(f"DRYRUN write {path}")
            return path
        write_credentials_file(
            path,
            values,
            header=f"Moodle installation credentials, {self.ctx.now():%Y-%m-%d %H:%M:%S}\n"
            "Migrate to Secret Manager: moodle-ops gcp secrets setup",
        )
        self.ctx.log.warn(f"Credentials saved to {path}; migrate them with `moodle-ops gcp secrets setup`")
        return path

    def config_php(self, wwwroot: str) -> bool:
        s = self.ctx.settings
        path = self.files.path(str(s.config_php))
        if path.exists():
            self.ctx.log.log(f"{path} exists, left unchanged")
            return False
        params = ConfigPhpParams(
            wwwroot=wwwroot,
            dbname=s.db_name,
            dbuser=s.db_user,
            dbpass=self.db_password,
            dataroot=s.moodle_data,
        )
        if not self.files.write(str(s.config_php), render_config_php(params), mode=0o640):
            return False
        self.ctx.runner.run(["chown", f"root:{s.web_user}", str(path)], label="chown config.php", mutating=True)
        return True

    def restart(self) -> None:
        systemctl(self.ctx.runner, "restart", self.unit)


def check_free_space(root: Path, *, force: bool) -> float:
    free_gb = shutil.disk_usage(root).free / 1024**3
    if free_gb < MIN_FREE_GB and not force:
        raise PrerequisiteError(f"only {free_gb:.1f}GB free on {root}, need {MIN_FREE_GB}GB (use --force to continue)")
    return free_gb


def cmd_vm_provision(args: argparse.Namespace, g: GlobalOpts) -> int:
    web_server = (getattr(args, "web_server", None) or "apache").strip().lower()
    wwwroot = (getattr(args, "wwwroot", None) or "").strip()
    if wwwroot and not wwwroot.startswith(("http://", "https://")):
        raise UsageError(f"invalid --wwwroot (expected http(s) URL): {wwwroot}")
    require_root()
    root = Path(getattr(args, "root", None) or "/")
    force = bool(getattr(args, "force", False))
    detected = check_os(root, force=force)
    free_gb = check_free_space(root, force=force)

    ctx = build_ops_context(g, tool="provision", default_log_file=PROVISION_LOG)
    ctx.log.section("Moodle VM provisioning")
    ctx.log.log(f"Detected OS: {detected}, {free_gb:.1f}GB free")
    p = Provisioner(
        ctx,
        web_server=web_server,
        php_version=(getattr(args, "php_version", None) or DEFAULT_PHP_VERSION).strip(),
        timezone=(getattr(args, "timezone", None) or "UTC").strip(),
        root=root,
    )
    p.system_update()
    p.install_web_server()
    p.install_mariadb()
    p.install_php()
    p.configure_nginx_site()
    buffer_mb = p.tune_mariadb()
    p.directories()
    if getattr(args, "skip_firewall", False):
        ctx.log.warn("Firewall configuration skipped")
    else:
        p.firewall()
    p.tools()
    p.moodle_cron()
    creds_path = p.save_credentials()
    config_written = p.config_php(wwwroot) if wwwroot else False
    p.restart()

    for name in p.generated:
        ctx.log.warn(f"Generated {name}; stored in {creds_path}")
    ctx.log.success("Provisioning complete; next: deploy Moodle code, then `moodle-ops tls setup DOMAIN`")
    ctx.log.wide_event("success", webServer=p.web_server, php=p.php_version, steps=len(p.steps))
    out: dict[str, Any] = {
        "webServer": p.web_server,
        "phpVersion": p.php_version,
        "database": ctx.settings.db_name,
        "dbUser": ctx.settings.db_user,
        "innodbBufferMb": buffer_mb,
        "credentialsFile": str(creds_path),
        "generated": p.generated,
        "configPhpWritten": config_written,
        "steps": p.steps,
        "written": p.files.written,
    }
    _print_json(out, pretty=g.pretty)
    return 0
