from __future__ import annotations

import argparse
import re
import shutil
import socket
from pathlib import Path
from typing import Any

from .cli_shared import GlobalOpts, OpError, PrerequisiteError, UsageError, _print_json, _require_str
from .context import OpsContext, build_ops_context
from .host import HostFiles, active_web_server, apt_install, php_version, systemctl
from .runner import CommandRunner, require_root
from .site import purge_caches
from .web_config import insert_apache_headers, render_apache_site, render_nginx_site

TLS_LOG = "/var/log/moodle-ssl-setup.log"
PUBLIC_IP_URLS = ("https://ifconfig.me", "https://api.ipify.org")
RENEW_TIMER = "certbot.timer"

_DOMAIN_RE = re.compile(r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))+$")
_WWWROOT_HTTP_RE = re.compile(r"""(\$CFG->wwwroot\s*=\s*['"])http://""")


def validate_domain(raw: str) -> str:
    domain = raw.strip().lower().rstrip(".")
    if not _DOMAIN_RE.match(domain):
        raise UsageError(f"invalid domain: {raw!r}")
    return domain


def resolve_host(name: str) -> list[str]:
    try:
        infos = socket.getaddrinfo(name, None, socket.AF_INET, socket.SOCK_STREAM)
    except socket.gaierror:
        return []
    return sorted({str(info[4][0]) for info in infos})


def public_ip(runner: CommandRunner) -> str:
    for url in PUBLIC_IP_URLS:
        res = runner.run(["curl", "-s", "--max-time", "10", url], check=False)
        ip = res.stdout.strip()
        if res.ok and re.fullmatch(r"\d{1,3}(\.\d{1,3}){3}", ip):
            return ip
    return ""


def certbot_argv(web_server: str, domains: list[str], *, email: str = "", staging: bool = False) -> list[str]:
    argv = ["certbot", f"--{web_server}", "--non-interactive", "--agree-tos"]
    argv += ["--email", email] if email else ["--register-unsafely-without-email"]
    argv += ["--domains", ",".join(domains), "--redirect", "--hsts"]
    if web_server == "apache":
        argv.append("--uir")
    if staging:
        argv.append("--test-cert")
    return argv


def https_wwwroot(text: str, domains: list[str]) -> str:
    out = _WWWROOT_HTTP_RE.sub(r"\1https://", text)
    for d in domains:
        out = out.replace(f"http://{d}", f"https://{d}")
    return out


class TlsSetup:
    def __init__(self, ctx: OpsContext, *, domain: str, web_server: str, www: bool = True, root: Path = Path("/")) -> None:
        self.ctx = ctx
        self.domain = domain
        self.web_server = web_server
        self.domains = [domain, f"www.{domain}"] if www else [domain]
        stamp = ctx.now().strftime("%Y%m%d_%H%M%S")
        self.files = HostFiles(ctx, backup_dir=root / f"root/ssl-setup-backup-{stamp}", root=root)

    @property
    def runner(self) -> CommandRunner:
        return self.ctx.runner

    @property
    def unit(self) -> str:
        return "apache2" if self.web_server == "apache" else "nginx"

    def check_dns(self, *, assume_yes: bool) -> dict[str, Any]:
        resolved = resolve_host(self.domain)
        if not resolved:
            raise PrerequisiteError(f"{self.domain} does not resolve; create the DNS A record first")
        server = public_ip(self.runner)
        self.ctx.log.log(f"{self.domain} resolves to {', '.join(resolved)}; server IP {server or 'unknown'}")
        if server and server not in resolved:
            msg = f"{self.domain} points at {', '.join(resolved)}, not this server ({server})"
            if not assume_yes:
                raise UsageError(f"{msg}; certificate validation would fail (use --yes to continue anyway)")
            self.ctx.log.warn(f"{msg}; continuing")
        return {"resolved": resolved, "serverIp": server}

    def ensure_certbot(self) -> None:
        if self.runner.which("certbot"):
            self.ctx.log.log("Certbot already installed")
            return
        apt_install(self.runner, "certbot", f"python3-certbot-{self.web_server}")

    def backup_config(self) -> Path:
        dest = self.files.backup_dir
        if self.runner.dry_run:
            self.ctx.log.log(f"DRYRUN backup web server config to {dest}")
            return dest
        base = "/etc/apache2" if self.web_server == "apache" else "/etc/nginx"
        try:
            dest.mkdir(parents=True, exist_ok=True)
            for sub in ("sites-available", "sites-enabled"):
                src = self.files.path(f"{base}/{sub}")
                if src.is_dir():
                    shutil.copytree(src, dest / sub, symlinks=True, dirs_exist_ok=True)
            config_php = self.files.path(str(self.ctx.settings.config_php))
            if config_php.is_file():
                shutil.copy2(config_php, dest / "config.php.backup")
        except OSError as e:
            raise OpError(f"failed to back up web server config to {dest}: {e}") from e
        self.ctx.log.log(f"Backup saved to: {dest}")
        return dest

    def http_vhost(self) -> str:
        s = self.ctx.settings
        if self.web_server == "apache":
            path = f"/etc/apache2/sites-available/{self.domain}.conf"
            text = render_apache_site(
                self.domain, moodle_dir=s.moodle_dir, moodle_data=s.moodle_data, aliases=tuple(self.domains[1:])
            )
            self.files.write(path, text)
            self.runner.run(["a2ensite", self.domain], label="a2ensite", mutating=True)
            self.runner.run(["a2enmod", "rewrite", "headers", "ssl"], label="a2enmod", mutating=True)
            self.runner.run(["apache2ctl", "configtest"], label="apache2ctl configtest", mutating=True)
        else:
            path = f"/etc/nginx/sites-available/{self.domain}"
            version = php_version(self.runner) or "8.2"
            self.files.write(path, render_nginx_site(tuple(self.domains), moodle_dir=s.moodle_dir, php_version=version))
            enabled = self.files.path("/etc/nginx/sites-enabled")
            self.runner.run(["ln", "-sf", str(self.files.path(path)), str(enabled / self.domain)], label="enable site", mutating=True)
            self.runner.run(["rm", "-f", str(enabled / "default")], label="remove default site", mutating=True)
            self.runner.run(["nginx", "-t"], label="nginx -t", mutating=True)
        systemctl(self.runner, "reload", self.unit)
        return path

    def obtain_certificate(self, *, email: str, staging: bool) -> None:
        self.ctx.log.section("Obtaining certificate from Let's Encrypt")
        self.runner.run(certbot_argv(self.web_server, self.domains, email=email, staging=staging), label="certbot", mutating=True)
        res = self.runner.run(["certbot", "certificates", "--cert-name", self.domain], check=False)
        if res.ok and self.domain in res.stdout:
            self.ctx.log.success(f"Certificate installed for {', '.join(self.domains)}")

    def update_wwwroot(self) -> bool:
        s = self.ctx.settings
        path = self.files.path(str(s.config_php))
        if not path.is_file():
            self.ctx.log.warn("config.php not found; set $CFG->wwwroot to https:// after installation")
            return False
        text = path.read_text(encoding="utf-8", errors="replace")
        updated = https_wwwroot(text, self.domains)
        if updated == text:
            self.ctx.log.log("config.php already uses https")
            return False
        if self.runner.dry_run:
            self.ctx.log.log(f"DRYRUN rewrite wwwroot to https in {path}")
            return False
        shutil.copy2(path, path.with_name(f"{path.name}.pre-ssl-backup"))
        mode = path.stat().st_mode & 0o777
        self.files.write(str(s.config_php), updated, mode=mode)
        self.ctx.log.success("config.php wwwroot now uses https")
        return True

    def enable_renewal(self) -> bool:
        res = self.runner.run(["certbot", "renew", "--dry-run"], check=False, mutating=True)
        if not res.ok:
            self.ctx.log.warn(f"certbot renew --dry-run failed: {res.stderr.strip() or res.stdout.strip()}")
        timer = systemctl(self.runner, "enable", "--now", RENEW_TIMER, check=False)
        if not timer.ok:
            self.ctx.log.warn(f"{RENEW_TIMER} could not be enabled; check: systemctl list-timers | grep certbot")
        return res.ok and timer.ok

    def harden_ssl_vhost(self) -> bool:
        if self.web_server != "apache":
            return False
        path = f"/etc/apache2/sites-available/{self.domain}-le-ssl.conf"
        text = self.files.read(path)
        if not text:
            return False
        changed = self.files.write(path, insert_apache_headers(text))
        if changed:
            systemctl(self.runner, "reload", self.unit)
        return changed

    def check_https(self) -> bool:
        res = self.runner.run(["curl", "-sI", "--max-time", "15", f"https://{self.domain}"], check=False)
        status = res.stdout.splitlines()[0] if res.ok and res.stdout else ""
        ok = bool(re.match(r"^HTTP/\S+ [23]\d\d", status))
        if ok:
            self.ctx.log.success(f"HTTPS answered: {status.strip()}")
        else:
            self.ctx.log.warn("HTTPS check failed; see the web server error log")
        return ok


def cmd_tls_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    domain = validate_domain(_require_str(getattr(args, "domain", None), "DOMAIN", hint="e.g. lms.example.com"))
    email = (getattr(args, "email", None) or "").strip()
    if email and "@" not in email:
        raise UsageError(f"invalid --email: {email}")
    require_root()
    ctx = build_ops_context(g, tool="tls", default_log_file=TLS_LOG)
    ctx.log.section("Moodle TLS certificate setup")

    web_server = active_web_server(ctx.runner)
    if not web_server:
        if not ctx.runner.dry_run:
            raise PrerequisiteError("no running web server (apache2 or nginx); run `moodle-ops vm provision` first")
        web_server = "apache"
    ctx.log.log(f"Web server: {web_server}")
    if not email:
        ctx.log.warn("No --email given; Let's Encrypt will not send expiry notices")

    tls = TlsSetup(
        ctx,
        domain=domain,
        web_server=web_server,
        www=not getattr(args, "no_www", False),
        root=Path(getattr(args, "root", None) or "/"),
    )
    dns: dict[str, Any] = {}
    if getattr(args, "skip_dns_check", False):
        ctx.log.warn("DNS check skipped")
    else:
        dns = tls.check_dns(assume_yes=bool(getattr(args, "yes", False)))
    tls.ensure_certbot()
    backup_dir = tls.backup_config()
    vhost = tls.http_vhost()
    tls.obtain_certificate(email=email, staging=bool(getattr(args, "staging", False)))
    wwwroot_updated = tls.update_wwwroot()
    renewal = tls.enable_renewal()
    headers = tls.harden_ssl_vhost()
    https_ok = tls.check_https() if not ctx.runner.dry_run else False
    purge_caches(ctx)

    ctx.log.success(f"TLS ready: https://{domain} (certificates under /etc/letsencrypt/live/{domain}/)")
    ctx.log.wide_event("success", domain=domain, webServer=web_server, renewal=renewal, httpsOk=https_ok)
    _print_json(
        {
            "domain": domain,
            "domains": tls.domains,
            "webServer": web_server,
            "vhost": str(tls.files.path(vhost)),
            "backupDir": str(backup_dir),
            "wwwrootUpdated": wwwroot_updated,
            "renewal": renewal,
            "hstsAdded": headers,
            "httpsOk": https_ok,
            **({"dns": dns} if dns else {}),
        },
        pretty=g.pretty,
    )
    return 0
