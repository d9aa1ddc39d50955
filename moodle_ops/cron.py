from __future__ import annotations

import argparse
import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from .cli_shared import GlobalOpts, OpError, UsageError, _print_json
from .runner import CommandRunner

CRON_D_DIR = "/etc/cron.d"


@dataclass(frozen=True)
class CronJob:
    name: str
    schedule: str
    command: str
    log_file: str = ""
    description: str = ""

    @property
    def console_log(self) -> str:
        """Cron output file, kept apart from the tool log the command appends to itself."""
        if not self.log_file:
            return ""
        base = self.log_file[:-4] if self.log_file.endswith(".log") else self.log_file
        return f"{base}-cron.log"

    @property
    def line_command(self) -> str:
        if self.log_file:
            return f"{self.command} >> {self.console_log} 2>&1"
        return self.command


def ops_command(*args: str) -> str:
    return shlex.join(["moodle-ops", "--quiet", *args])


BACKUP_JOB = CronJob(
    name="moodle-backup",
    schedule="0 2 * * *",
    command=ops_command("backup", "run"),
    log_file="/var/log/moodle-backup.log",
    description="Moodle automated backup, daily at 2:00 AM",
)
VALIDATION_JOB = CronJob(
    name="moodle-backup-validation",
    schedule="0 2 15 * *",
    command=ops_command("validate", "run"),
    log_file="/var/log/moodle-backup-validation.log",
    description="Moodle backup validation, 15th of each month at 2:00 AM",
)
SECURITY_AUDIT_JOB = CronJob(
    name="moodle-security-check",
    schedule="0 3 1 * *",
    command=ops_command("audit", "run", "--compliance-report"),
    log_file="/var/log/moodle-security-audit.log",
    description="Moodle security audit, 1st of each month at 3:00 AM",
)
DB_MAINTENANCE_JOB = CronJob(
    name="moodle-db-maintenance",
    schedule="0 4 * * 0",
    command=ops_command("db", "maintain", "--run-now"),
    log_file="/var/log/moodle-db-maintenance.log",
    description="Moodle database maintenance, Sundays at 4:00 AM",
)
HEALTH_JOB = CronJob(
    name="moodle-health-check",
    schedule="*/5 * * * *",
    command=ops_command("health", "host"),
    log_file="/var/log/moodle-health-check.log",
    description="Moodle host health check, every 5 minutes",
)
CIS_AUDIT_JOB = CronJob(
    name="cis-hardening-audit",
    schedule="0 5 1 * *",
    command=ops_command("cis", "run", "--audit-only"),
    log_file="/var/log/cis-hardening.log",
    description="CIS benchmark compliance audit, monthly",
)


def render_cron_d(job: CronJob) -> str:
    lines = []
    if job.description:
        lines.append(f"# {job.description}")
    lines.append("SHELL=/bin/bash")
    lines.append("PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin")
    lines.append(f"{job.schedule} root {job.line_command}")
    return "\n".join(lines) + "\n"


def install_cron_d(job: CronJob, *, cron_dir: str | Path = CRON_D_DIR) -> Path:
    path = Path(cron_dir) / job.name
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_cron_d(job), encoding="utf-8")
        os.chmod(path, 0o644)
    except OSError as e:
        raise OpError(f"failed to install cron file {path}: {e}") from e
    return path


def merge_crontab(existing: str, *, marker: str, line: str) -> str:
    kept = [ln for ln in existing.splitlines() if ln.strip() and marker not in ln]
    kept.append(line)
    return "\n".join(kept) + "\n"


def install_user_crontab(job: CronJob, runner: CommandRunner, *, marker: str | None = None) -> str:
    current = runner.run(["crontab", "-l"], check=False)
    existing = current.stdout if current.ok else ""
    line = f"{job.schedule} {job.line_command}"
    merged = merge_crontab(existing, marker=marker or job.command, line=line)
    runner.run(["crontab", "-"], input_text=merged, label="crontab", mutating=True)
    return line


ALL_JOBS = (BACKUP_JOB, VALIDATION_JOB, SECURITY_AUDIT_JOB, DB_MAINTENANCE_JOB, HEALTH_JOB, CIS_AUDIT_JOB)


def find_job(name: str) -> CronJob:
    for job in ALL_JOBS:
        if job.name == name:
            return job
    raise UsageError(f"unknown cron job: {name} (known: {', '.join(j.name for j in ALL_JOBS)})")


def cmd_cron_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    jobs = [
        {
            "name": j.name,
            "schedule": j.schedule,
            "command": j.command,
            "logFile": j.log_file,
            "description": j.description,
        }
        for j in ALL_JOBS
    ]
    _print_json({"jobs": jobs}, pretty=g.pretty)
    return 0


def cmd_cron_render(args: argparse.Namespace, g: GlobalOpts) -> int:
    del g
    print(render_cron_d(find_job(getattr(args, "name", None) or "")), end="")
    return 0
