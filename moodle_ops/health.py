from __future__ import annotations

import argparse
import os
import resource
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .cli_shared import GlobalOpts, OpError, PrerequisiteError, _print_json
from .config_files import parse_config_php
from .context import OpsContext, build_ops_context
from .cron import HEALTH_JOB, install_user_crontab
from .db import MysqlClient
from .runner import CommandRunner
from .settings import Settings

HEALTH_LOG = "/var/log/moodle-health-check.log"

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"
WARNING = "warning"
CRITICAL = "critical"

DISK_CRITICAL_PERCENT = 90.0
DISK_WARNING_PERCENT = 80.0
HOST_CPU_LOAD_LIMIT = 0.8
HOST_MEMORY_LIMIT_PERCENT = 90.0
HOST_SERVICES = ("mariadb", "apache2", "nginx", "google-cloud-ops-agent")


@dataclass
class HealthReport:
    status: str = HEALTHY
    timestamp: str = ""
    checks: dict[str, dict[str, Any]] = field(default_factory=dict)

    def mark_unhealthy(self) -> None:
        self.status = UNHEALTHY

    def mark_degraded(self) -> None:
        if self.status == HEALTHY:
            self.status = DEGRADED

    @property
    def http_status(self) -> int:
        return 200 if self.status == HEALTHY else 503

    def as_dict(self) -> dict[str, Any]:
        return {"status": self.status, "timestamp": self.timestamp, "checks": self.checks}


def classify_disk(used_percent: float) -> dict[str, Any]:
    pct = round(used_percent, 2)
    if used_percent > DISK_CRITICAL_PERCENT:
        return {"status": CRITICAL, "message": "Disk space critically low", "used_percent": pct}
    if used_percent > DISK_WARNING_PERCENT:
        return {"status": WARNING, "message": "Disk space low", "used_percent": pct}
    return {"status": HEALTHY, "message": "Disk space OK", "used_percent": pct}


def db_params_from_config(config_php: Path) -> dict[str, str]:
    params = {"dbhost": "localhost", "dbname": "moodle_lms", "dbuser": "moodle_user", "dbpass": ""}
    if not config_php.is_file():
        return params
    parsed = parse_config_php(config_php.read_text(encoding="utf-8", errors="replace"))
    for key in params:
        value = parsed.get(key)
        if isinstance(value, str) and value:
            params[key] = value
    return params


class HealthProbe:
    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        *,
        disk_usage: Callable[[str], Any] = shutil.disk_usage,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self._disk_usage = disk_usage

    def database(self) -> dict[str, Any]:
        params = db_params_from_config(self.settings.config_php)
        client = MysqlClient(
            runner=self.runner,
            user=params["dbuser"],
            password=params["dbpass"],
            host=params["dbhost"],
            connect_timeout=5,
        )
        # authenticates with the config.php login; a refused login fails here
        try:
            res = client.execute("SELECT 1", database=params["dbname"], check=False)
        except PrerequisiteError:
            return {"status": UNHEALTHY, "message": "mysql client not installed"}
        if not res.ok:
            return {"status": UNHEALTHY, "message": "Database connection failed"}
        return {"status": HEALTHY, "message": "Database connected", "database": params["dbname"]}

    def disk_used_percent(self, path: str = "/") -> float:
        usage = self._disk_usage(path)
        if not usage.total:
            return 0.0
        return 100.0 - (usage.free / usage.total * 100.0)

    def moodledata_writable(self) -> bool:
        return os.access(self.settings.moodle_data, os.W_OK)

    def php_version(self) -> str:
        try:
            res = self.runner.run(["php", "-r", "echo PHP_VERSION;"], check=False)
        except PrerequisiteError:
            return ""
        return res.stdout.strip() if res.ok else ""

    def memory_usage_mb(self) -> float:
        # ru_maxrss is reported in KiB on Linux.
        return round(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024, 2)


def collect_health(probe: HealthProbe, *, now: datetime | None = None) -> HealthReport:
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    report = HealthReport(timestamp=stamp)

    db = probe.database()
    report.checks["database"] = db
    if db["status"] != HEALTHY:
        report.mark_unhealthy()

    disk = classify_disk(probe.disk_used_percent())
    report.checks["disk_space"] = disk
    if disk["status"] == CRITICAL:
        report.mark_unhealthy()
    elif disk["status"] == WARNING:
        report.mark_degraded()

    if probe.moodledata_writable():
        report.checks["moodledata"] = {"status": HEALTHY, "message": "Moodledata writable"}
    else:
        report.checks["moodledata"] = {"status": UNHEALTHY, "message": "Moodledata not writable"}
        report.mark_unhealthy()

    version = probe.php_version()
    report.checks["php"] = {"status": HEALTHY if version else WARNING, "version": version or "unknown"}
    report.checks["memory"] = {"status": HEALTHY, "usage_mb": probe.memory_usage_mb()}
    return report


def build_health_probe(settings: Settings) -> HealthProbe:
    return HealthProbe(settings, CommandRunner())


def _meminfo(path: Path = Path("/proc/meminfo")) -> dict[str, int]:
    out: dict[str, int] = {}
    if not path.is_file():
        return out
    for line in path.read_text(encoding="utf-8").splitlines():
        key, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            out[key.strip()] = int(parts[0])
    return out


def memory_used_percent(meminfo: dict[str, int]) -> float | None:
    total = meminfo.get("MemTotal", 0)
    if not total:
        return None
    available = meminfo.get("MemAvailable", meminfo.get("MemFree", 0))
    return round((total - available) / total * 100.0, 2)


def _service_installed(runner: CommandRunner, unit: str) -> bool:
    res = runner.run(
        ["systemctl", "list-unit-files", f"{unit}.service", "--no-legend", "--plain"],
        check=False,
    )
    return res.ok and bool(res.stdout.strip())


def host_report(ctx: OpsContext, probe: HealthProbe) -> dict[str, Any]:
    status = HEALTHY
    passed = 0
    failed = 0
    checks: dict[str, Any] = {}

    load1 = os.getloadavg()[0] / max(os.cpu_count() or 1, 1)
    if load1 > HOST_CPU_LOAD_LIMIT:
        ctx.log.warn(f"CPU load HIGH: {load1:.2f} per core")
        checks["cpu"] = {"status": WARNING, "load_per_core": round(load1, 2)}
        failed += 1
        status = DEGRADED
    else:
        ctx.log.log(f"CPU load OK: {load1:.2f} per core")
        checks["cpu"] = {"status": HEALTHY, "load_per_core": round(load1, 2)}
        passed += 1

    mem = memory_used_percent(_meminfo())
    if mem is not None and mem > HOST_MEMORY_LIMIT_PERCENT:
        ctx.log.warn(f"Memory usage HIGH: {mem}%")
        checks["memory"] = {"status": WARNING, "used_percent": mem}
        failed += 1
        if status == HEALTHY:
            status = DEGRADED
    else:
        checks["memory"] = {"status": HEALTHY, "used_percent": mem}
        passed += 1

    disk = classify_disk(probe.disk_used_percent())
    checks["disk_space"] = disk
    if disk["status"] == CRITICAL:
        ctx.log.error(f"Disk usage CRITICAL: {disk['used_percent']}%")
        failed += 1
        status = UNHEALTHY
    else:
        if disk["status"] == WARNING and status == HEALTHY:
            status = DEGRADED
        passed += 1

    services: dict[str, str] = {}
    for unit in HOST_SERVICES:
        if not _service_installed(ctx.runner, unit):
            continue
        if ctx.runner.systemctl_is_active(unit):
            services[unit] = "running"
            passed += 1
        elif unit == "google-cloud-ops-agent":
            services[unit] = "stopped"
            if status == HEALTHY:
                status = DEGRADED
        else:
            ctx.log.error(f"{unit}: STOPPED")
            services[unit] = "stopped"
            failed += 1
            status = UNHEALTHY
    checks["services"] = services

    if probe.moodledata_writable():
        checks["moodledata"] = {"status": HEALTHY}
        passed += 1
    else:
        checks["moodledata"] = {"status": UNHEALTHY}
        failed += 1
        status = UNHEALTHY

    return {"status": status, "passed": passed, "failed": failed, "checks": checks}


def cmd_health_check(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    report = collect_health(build_health_probe(g.settings))
    _print_json(report.as_dict(), pretty=g.pretty)
    return 0 if report.status == HEALTHY else 1


def cmd_health_host(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    ctx = build_ops_context(g, tool="health", default_log_file=HEALTH_LOG)
    out = host_report(ctx, build_health_probe(g.settings))
    ctx.log.wide_event(out["status"], passed=out["passed"], failed=out["failed"])
    _print_json(out, pretty=g.pretty)
    # Degraded hosts still exit 0.
    return 1 if out["status"] == UNHEALTHY else 0


def cmd_health_install_cron(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    ctx = build_ops_context(g, tool="health", default_log_file=HEALTH_LOG)
    if not ctx.runner.which("crontab"):
        raise PrerequisiteError("crontab is not available on this host")
    try:
        line = install_user_crontab(HEALTH_JOB, ctx.runner, marker="health host")
    except OpError as e:
        ctx.log.error(str(e))
        raise
    _print_json({"installed": line, "schedule": HEALTH_JOB.schedule}, pretty=g.pretty)
    return 0
