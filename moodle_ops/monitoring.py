from __future__ import annotations

import argparse
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

import yaml

from .cli_shared import GlobalOpts, OpError, UsageError, _print_json, _write_secure_text
from .context import OpsContext, build_ops_context
from .db import root_client, sql_string
from .gcp_commands import _gcp_context
from .gcp_shared import GCLOUD_BIN, Gcloud, default_project
from .host import HostFiles, package_installed, systemctl
from .runner import require_root

OPS_AGENT_CONFIG = "/etc/google-cloud-ops-agent/config.yaml"
OPS_AGENT_SERVICE = "google-cloud-ops-agent"
OPS_AGENT_INSTALLER = "https://dl.google.com/cloudagents/add-google-cloud-ops-agent-repo.sh"
MYSQL_MONITORING_USER = "monitoring"
MYSQL_MONITORING_PASSWORD_FILE = "/root/.mysql-monitoring-password"
HEALTH_SERVICE = "moodle-ops-health"
HEALTH_UNIT = f"/etc/systemd/system/{HEALTH_SERVICE}.service"
HEALTH_PORT = 8081
APACHE_STATUS_CONF = "/etc/apache2/conf-available/server-status.conf"
NGINX_STATUS_CONF = "/etc/nginx/conf.d/nginx-status.conf"
WEB_SERVERS = ("apache", "nginx")

_WEB_LOGS = {
    "apache": ("/var/log/apache2/*access*.log", "/var/log/apache2/*error*.log"),
    "nginx": ("/var/log/nginx/*access*.log", "/var/log/nginx/*error*.log"),
}
_WEB_STATUS = {
    "apache": "http://127.0.0.1/server-status?auto",
    "nginx": "http://127.0.0.1/nginx-status",
}
_TOOL_LOGS = (
    "/var/log/moodle-backup.log",
    "/var/log/moodle-restore.log",
    "/var/log/moodle-backup-validation.log",
    "/var/log/moodle-security-audit.log",
    "/var/log/moodle-db-maintenance.log",
    "/var/log/moodle-health-check.log",
    "/var/log/cis-hardening.log",
)


def _files(*paths: str) -> dict[str, Any]:
    return {"type": "files", "include_paths": list(paths)}


def render_ops_agent_config(web_server: str, *, moodle_data: str = "/var/moodledata") -> str:
    if web_server not in WEB_SERVERS:
        raise UsageError(f"unsupported web server: {web_server} (expected one of: {', '.join(WEB_SERVERS)})")
    access_log, error_log = _WEB_LOGS[web_server]
    receivers: dict[str, Any] = {
        "syslog": _files("/var/log/syslog", "/var/log/messages"),
        f"{web_server}_access": _files(access_log),
        f"{web_server}_error": _files(error_log),
        "mysql_error": _files("/var/log/mysql/error.log", "/var/log/mysql/mysql-slow.log"),
        "moodle": _files(f"{moodle_data.rstrip('/')}/error.log"),
        "moodle_ops": _files(*_TOOL_LOGS),
        "php_error": _files("/var/log/php*-fpm*.log"),
        "auth": _files("/var/log/auth.log", "/var/log/fail2ban.log"),
    }
    metrics_receivers: dict[str, Any] = {
        "hostmetrics": {"type": "hostmetrics", "collection_interval": "60s"},
        web_server: {"type": web_server, "endpoint": _WEB_STATUS[web_server], "collection_interval": "60s"},
        "mysql": {
            "type": "mysql",
            "endpoint": "localhost:3306",
            "username": MYSQL_MONITORING_USER,
            "password_file": MYSQL_MONITORING_PASSWORD_FILE,
            "collection_interval": "60s",
        },
    }
    doc = {
        "logging": {
            "receivers": receivers,
            "processors": {"parse_json": {"type": "parse_json", "field": "message"}},
            "service": {
                "pipelines": {
                    "default_pipeline": {"receivers": list(receivers), "processors": ["parse_json"]},
                }
            },
        },
        "metrics": {
            "receivers": metrics_receivers,
            "service": {"pipelines": {"default_pipeline": {"receivers": list(metrics_receivers)}}},
        },
    }
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def detect_web_server(ctx: OpsContext) -> str:
    if ctx.runner.systemctl_is_active("nginx") and not ctx.runner.systemctl_is_active("apache2"):
        return "nginx"
    return "apache"


def write_ops_agent_config(ctx: OpsContext, text: str, *, path: Path) -> bool:
    if ctx.runner.dry_run:
        ctx.log.log(f"DRYRUN write {path}")
        return False
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.is_file():
            backup = path.with_name(f"{path.name}.backup-{ctx.now().strftime('%Y%m%d_%H%M%S')}")
            path.replace(backup)
            ctx.log.log(f"Previous config saved to {backup}")
        path.write_text(text, encoding="utf-8")
        os.chmod(path, 0o644)
    except OSError as e:
        raise OpError(f"failed to write {path}: {e}") from e
    return True


def cmd_monitoring_ops_agent_config(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_ops_context(g, tool="monitoring")
    web_server = (getattr(args, "web_server", None) or "").strip().lower() or detect_web_server(ctx)
    text = render_ops_agent_config(web_server, moodle_data=ctx.settings.moodle_data)
    if not getattr(args, "write", False):
        # Bare YAML on stdout so it can be redirected.
        print(text, end="")
        return 0

    require_root()
    path = Path(getattr(args, "path", None) or OPS_AGENT_CONFIG)
    written = write_ops_agent_config(ctx, text, path=path)
    restarted = False
    if written and ctx.runner.which("systemctl"):
        res = ctx.runner.run(["systemctl", "restart", OPS_AGENT_SERVICE], check=False, mutating=True)
        restarted = res.ok
        if not restarted:
            ctx.log.warn(f"{OPS_AGENT_SERVICE} restart failed; check: journalctl -u {OPS_AGENT_SERVICE}")
    ctx.log.wide_event("success", webServer=web_server, written=written)
    _print_json({"path": str(path), "webServer": web_server, "written": written, "restarted": restarted}, pretty=g.pretty)
    return 0


# Host setup

APACHE_STATUS = """\
<Location /server-status>
    SetHandler server-status
    Require local
    Require ip 127.0.0.1
</Location>
"""
NGINX_STATUS = """\
server {
    listen 127.0.0.1:80;
    server_name localhost;

    location /nginx-status {
        stub_status on;
        access_log off;
        allow 127.0.0.1;
        deny all;
    }
}
"""
LOG_METRICS: tuple[tuple[str, str, str], ...] = (
    (
        "moodle_failed_logins",
        "Count of failed Moodle login attempts",
        'resource.type="gce_instance"\ntextPayload=~"Failed login"',
    ),
    (
        "moodle_php_errors",
        "Count of PHP errors in Moodle",
        'resource.type="gce_instance"\nseverity="ERROR"\nlogName=~"php"',
    ),
)


def render_health_unit(exec_path: str, *, port: int = HEALTH_PORT, config: str = "") -> str:
    cmd = f"{exec_path} --host 127.0.0.1 --port {port}"
    if config:
        cmd += f" --config {config}"
    return f"""\
[Unit]
Description=Moodle health endpoint
After=network-online.target mariadb.service

[Service]
Type=simple
ExecStart={cmd}
Restart=on-failure
RestartSec=5
NoNewPrivileges=true

[Install]
WantedBy=multi-user.target
"""


def monitoring_user_sql(password: str) -> str:
    user = f"'{MYSQL_MONITORING_USER}'@'localhost'"
    return (
        f"CREATE USER IF NOT EXISTS {user} IDENTIFIED BY {sql_string(password)};\n"
        f"ALTER USER {user} IDENTIFIED BY {sql_string(password)};\n"
        f"GRANT PROCESS, REPLICATION CLIENT ON *.* TO {user};\n"
        "FLUSH PRIVILEGES;\n"
    )


class MonitoringSetup:
    def __init__(self, ctx: OpsContext, *, web_server: str, root: Path = Path("/")) -> None:
        self.ctx = ctx
        self.web_server = web_server
        stamp = ctx.now().strftime("%Y%m%d_%H%M%S")
        self.files = HostFiles(ctx, backup_dir=root / f"var/backups/monitoring-setup-{stamp}", root=root)

    def install_agent(self) -> bool:
        runner = self.ctx.runner
        if package_installed(runner, OPS_AGENT_SERVICE):
            self.ctx.log.log("Ops Agent already installed")
            return False
        self.ctx.log.section("Installing Google Cloud Ops Agent")
        with tempfile.TemporaryDirectory(prefix="ops-agent-") as tmp:
            script = Path(tmp) / "add-google-cloud-ops-agent-repo.sh"
            runner.run(["curl", "-sSfL", "-o", str(script), OPS_AGENT_INSTALLER], label="download ops agent installer",
                       mutating=True)
            runner.run(["bash", str(script), "--also-install"], label="install ops agent", mutating=True)
        return True

    def status_endpoint(self) -> str:
        runner = self.ctx.runner
        if self.web_server == "apache":
            runner.run(["a2enmod", "status"], label="a2enmod status", mutating=True)
            self.files.write(APACHE_STATUS_CONF, APACHE_STATUS)
            runner.run(["a2enconf", "server-status"], label="a2enconf server-status", mutating=True)
            systemctl(runner, "reload", "apache2")
            return APACHE_STATUS_CONF
        self.files.write(NGINX_STATUS_CONF, NGINX_STATUS)
        runner.run(["nginx", "-t"], label="nginx -t", mutating=True)
        systemctl(runner, "reload", "nginx")
        return NGINX_STATUS_CONF

    def mysql_user(self) -> bool:
        creds = self.ctx.credentials()
        if not creds.has_root:
            self.ctx.log.warn("MariaDB root credentials not found; skipping the monitoring user")
            return False
        path = self.files.path(MYSQL_MONITORING_PASSWORD_FILE)
        password = path.read_text(encoding="utf-8").strip() if path.is_file() else ""
        if self.ctx.runner.dry_run:
            self.ctx.log.log(f"DRYRUN create MariaDB user {MYSQL_MONITORING_USER}@localhost")
            return False
        if not password:
            password = secrets.token_urlsafe(18)
            _write_secure_text(path=path, text=password + "\n")
        root_client(self.ctx.runner, creds).script(monitoring_user_sql(password), label="mysql monitoring user")
        self.ctx.log.success(f"MariaDB user {MYSQL_MONITORING_USER}@localhost ready")
        return True

    def agent_config(self) -> bool:
        runner = self.ctx.runner
        text = render_ops_agent_config(self.web_server, moodle_data=self.ctx.settings.moodle_data)
        written = write_ops_agent_config(self.ctx, text, path=self.files.path(OPS_AGENT_CONFIG))
        systemctl(runner, "restart", OPS_AGENT_SERVICE)
        if not runner.dry_run and not runner.systemctl_is_active(OPS_AGENT_SERVICE):
            raise OpError(f"{OPS_AGENT_SERVICE} failed to start (check: journalctl -u {OPS_AGENT_SERVICE})")
        return written

    def health_service(self, *, port: int = HEALTH_PORT, config: str = "") -> str:
        runner = self.ctx.runner
        exec_path = runner.which(HEALTH_SERVICE) or f"/usr/local/bin/{HEALTH_SERVICE}"
        self.files.write(HEALTH_UNIT, render_health_unit(exec_path, port=port, config=config))
        systemctl(runner, "daemon-reload")
        systemctl(runner, "enable", "--now", HEALTH_SERVICE)
        return f"http://127.0.0.1:{port}/health"

    def log_metrics(self, gc: Gcloud) -> list[str]:
        created = []
        for name, description, log_filter in LOG_METRICS:
            if gc.exists("logging", "metrics", "describe", name):
                self.ctx.log.log(f"Log-based metric already exists: {name}")
                continue
            res = gc.run("logging", "metrics", "create", name, f"--description={description}",
                         f"--log-filter={log_filter}", check=False)
            if res.ok:
                created.append(name)
            else:
                self.ctx.log.warn(f"Could not create log-based metric {name}: {res.stderr.strip()}")
        return created


def cmd_monitoring_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    ctx = build_ops_context(g, tool="monitoring", default_log_file="/var/log/moodle-monitoring-setup.log")
    ctx.log.section("Moodle monitoring setup")
    web_server = (getattr(args, "web_server", None) or "").strip().lower() or detect_web_server(ctx)
    if web_server not in WEB_SERVERS:
        raise UsageError(f"unsupported web server: {web_server} (expected one of: {', '.join(WEB_SERVERS)})")
    m = MonitoringSetup(ctx, web_server=web_server, root=Path(getattr(args, "root", None) or "/"))

    installed = False if getattr(args, "skip_agent", False) else m.install_agent()
    status_conf = m.status_endpoint()
    mysql_user = m.mysql_user()
    written = m.agent_config()
    health_url = m.health_service(config=getattr(args, "health_config", None) or "")

    metrics: list[str] = []
    project = (getattr(args, "project", None) or "").strip() or ctx.settings.gcp_project or default_project(ctx.runner)
    if getattr(args, "skip_metrics", False):
        ctx.log.log("Log-based metrics skipped")
    elif not ctx.runner.which(GCLOUD_BIN) or not project:
        ctx.log.warn("gcloud or a GCP project not available; skipping log-based metrics")
    else:
        metrics = m.log_metrics(Gcloud(runner=ctx.runner, project=project))

    ctx.log.wide_event("success", webServer=web_server, agentInstalled=installed, metrics=len(metrics))
    _print_json(
        {
            "webServer": web_server,
            "agentInstalled": installed,
            "statusConfig": str(m.files.path(status_conf)),
            "mysqlUser": mysql_user,
            "configWritten": written,
            "healthUrl": health_url,
            "logMetrics": metrics,
        },
        pretty=g.pretty,
    )
    return 0


# Alert policies

ALERT_THRESHOLDS: tuple[tuple[str, str, float], ...] = (
    ("Moodle VM: CPU above 80%", 'metric.type="compute.googleapis.com/instance/cpu/utilization"', 0.8),
    (
        "Moodle VM: memory above 90%",
        'metric.type="agent.googleapis.com/memory/percent_used" AND metric.label.state="used"',
        90.0,
    ),
    (
        "Moodle VM: disk above 90%",
        'metric.type="agent.googleapis.com/disk/percent_used" AND metric.label.state="used"',
        90.0,
    ),
)


def alert_policy(display_name: str, metric_filter: str, threshold: float, *, channel: str = "") -> dict[str, Any]:
    doc: dict[str, Any] = {
        "displayName": display_name,
        "combiner": "OR",
        "conditions": [
            {
                "displayName": display_name,
                "conditionThreshold": {
                    "filter": f'resource.type="gce_instance" AND {metric_filter}',
                    "comparison": "COMPARISON_GT",
                    "thresholdValue": threshold,
                    "duration": "300s",
                    "aggregations": [{"alignmentPeriod": "60s", "perSeriesAligner": "ALIGN_MEAN"}],
                },
            }
        ],
        "alertStrategy": {"autoClose": "1800s"},
    }
    if channel:
        doc["notificationChannels"] = [channel]
    return doc


def ensure_email_channel(gc: Gcloud, email: str) -> str:
    found = gc.value(
        "beta", "monitoring", "channels", "list",
        f'--filter=type="email" AND labels.email_address="{email}"',
        "--format=value(name)",
    )
    if found:
        return found.splitlines()[0].strip()
    res = gc.run(
        "beta", "monitoring", "channels", "create",
        f"--display-name=Moodle ops ({email})",
        "--type=email",
        f"--channel-labels=email_address={email}",
        "--format=value(name)",
    )
    return res.stdout.strip()


def create_alert_policies(ctx: OpsContext, gc: Gcloud, *, channel: str) -> dict[str, list[str]]:
    existing = set(gc.value("alpha", "monitoring", "policies", "list", "--format=value(displayName)").splitlines())
    out: dict[str, list[str]] = {"created": [], "existing": []}
    with tempfile.TemporaryDirectory(prefix="moodle-alerts-") as tmp:
        for i, (name, metric_filter, threshold) in enumerate(ALERT_THRESHOLDS):
            if name in existing:
                ctx.log.log(f"Alert policy already exists: {name}")
                out["existing"].append(name)
                continue
            path = Path(tmp) / f"policy-{i}.yaml"
            path.write_text(yaml.safe_dump(alert_policy(name, metric_filter, threshold, channel=channel), sort_keys=False),
                            encoding="utf-8")
            gc.run("alpha", "monitoring", "policies", "create", f"--policy-from-file={path}", label="create alert policy")
            out["created"].append(name)
    return out


def cmd_monitoring_alerts(args: argparse.Namespace, g: GlobalOpts) -> int:
    email = (getattr(args, "email", None) or "").strip()
    if not email or "@" not in email:
        raise UsageError("missing or invalid --email")
    ctx, gc = _gcp_context(g, args, tool="monitoring")
    channel = ensure_email_channel(gc, email)
    if channel:
        ctx.log.log(f"Notification channel: {channel}")
    elif not ctx.runner.dry_run:
        raise OpError(f"failed to create an email notification channel for {email}")
    out = create_alert_policies(ctx, gc, channel=channel)
    ctx.log.wide_event("success", created=len(out["created"]), existing=len(out["existing"]))
    _print_json({"channel": channel, **out}, pretty=g.pretty)
    return 0
