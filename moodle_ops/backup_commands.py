from __future__ import annotations

import argparse
import glob
import platform
import shutil
import socket
import time
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from .archives import make_tar_gz, make_tar_gz_of_files
from .cli_shared import (
    GlobalOpts,
    OpError,
    PrerequisiteError,
    UsageError,
    _human_size,
    _path_size,
    _print_json,
)
from .context import OpsContext, build_ops_context
from .cron import BACKUP_JOB, install_cron_d
from .db import admin_client
from .manifest import (
    CODE_FILE,
    CONFIG_FILE,
    DATABASE_FILE,
    MANIFEST_NAME,
    MOODLEDATA_FILE,
    BackupManifest,
    read_manifest,
    render_manifest,
)
from .offsite import build_offsite_store, ensure_bucket
from .runner import require_root

BACKUP_LOG = "/var/log/moodle-backup.log"
BACKUP_TYPES = ("daily", "weekly", "monthly")
RETENTION_DAYS = {"daily": 7, "weekly": 28, "monthly": 365}
COMPRESSION_LEVEL = 6
MOODLEDATA_EXCLUDES = ("cache", "sessions", "temp", "trashdir")
CONFIG_FILE_PATTERNS = (
    "/etc/apache2/sites-available/*",
    "/etc/nginx/sites-available/*",
    "/etc/mysql/mariadb.conf.d/99-moodle.cnf",
    "/etc/php/*/apache2/conf.d/99-moodle.ini",
    "/etc/php/*/fpm/conf.d/99-moodle.ini",
)


@dataclass(frozen=True)
class BackupPlan:
    backup_type: str
    retention_days: int
    timestamp: str
    directory: Path


def classify_backup(now: datetime) -> str:
    if now.day == 1:
        return "monthly"
    if now.isoweekday() == 7:
        return "weekly"
    return "daily"


def plan_backup(root: Path, now: datetime, *, backup_type: str | None = None) -> BackupPlan:
    kind = backup_type or classify_backup(now)
    if kind not in RETENTION_DAYS:
        raise UsageError(f"invalid backup type: {kind} (expected one of: {', '.join(BACKUP_TYPES)})")
    ts = now.strftime("%Y%m%d_%H%M%S")
    return BackupPlan(
        backup_type=kind,
        retention_days=RETENTION_DAYS[kind],
        timestamp=ts,
        directory=root / kind / f"backup_{ts}",
    )


def config_file_candidates(ctx: OpsContext) -> list[Path]:
    out = [ctx.settings.config_php]
    for pattern in CONFIG_FILE_PATTERNS:
        out.extend(Path(p) for p in sorted(glob.glob(pattern)))
    out.append(Path(ctx.settings.credentials_file))
    return out


def cleanup_old_backups(root: Path, now: datetime, *, retention: dict[str, int] | None = None) -> dict[str, int]:
    limits = retention or RETENTION_DAYS
    deleted: dict[str, int] = {}
    cutoff_ts = now.timestamp()
    for kind in BACKUP_TYPES:
        count = 0
        type_dir = root / kind
        if type_dir.is_dir():
            for d in type_dir.glob("backup_*"):
                if not d.is_dir():
                    continue
                age_days = int((cutoff_ts - d.stat().st_mtime) // 86400)
                if age_days > limits[kind]:
                    shutil.rmtree(d)
                    count += 1
        deleted[kind] = count
    return deleted


def upload_offsite(ctx: OpsContext, plan: BackupPlan) -> str:
    s = ctx.settings
    store = build_offsite_store(s)
    if ctx.runner.which("gcloud"):
        if ensure_bucket(ctx.runner, bucket=s.backup_bucket, region=s.gcp_region, project=s.gcp_project):
            ctx.log.log(f"Created GCS bucket: {s.backup_bucket}")
    prefix = f"{plan.backup_type}/{plan.directory.name}"
    store.upload_dir(plan.directory, prefix=prefix)
    return f"gs://{s.backup_bucket}/{prefix}/"


def list_backups(root: Path) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    for kind in BACKUP_TYPES:
        type_dir = root / kind
        if not type_dir.is_dir():
            continue
        for d in type_dir.glob("backup_*"):
            if not (d / MANIFEST_NAME).is_file():
                continue
            manifest = read_manifest(d)
            found.append(
                {
                    "path": str(d),
                    "type": kind,
                    "name": d.name,
                    "date": manifest.get("Backup Date", ""),
                    "totalSize": manifest.get("Total Size", ""),
                }
            )
    found.sort(key=lambda b: b["name"], reverse=True)
    return found


def _system_info(ctx: OpsContext) -> dict[str, str]:
    info = {
        "Hostname": socket.gethostname(),
        "OS": platform.platform(),
        "Kernel": platform.release(),
    }
    php = ctx.runner.run(["php", "-v"], check=False) if ctx.runner.which("php") else None
    if php is not None and php.ok and php.stdout:
        info["PHP"] = php.stdout.splitlines()[0].strip()
    mysql = ctx.runner.run(["mysql", "--version"], check=False) if ctx.runner.which("mysql") else None
    if mysql is not None and mysql.ok:
        info["MariaDB"] = mysql.stdout.strip()
    return info


def _notify(ctx: OpsContext, *, plan: BackupPlan, summary: dict[str, Any]) -> bool:
    email = ctx.settings.notification_email
    if not email or not ctx.runner.which("sendmail"):
        ctx.log.log("Step 9: Skipping email notification (not configured)")
        return False
    host = socket.gethostname()
    body = [
        f"Subject: Moodle Backup Complete - {host}",
        f"From: moodle-backup@{host}",
        f"To: {email}",
        "",
        "Moodle backup completed successfully.",
        "",
        f"Backup Type: {plan.backup_type}",
        f"Date: {ctx.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"Duration: {summary['durationSeconds'] // 60} minutes",
        "",
        f"Backup Size: {summary['totalSize']}",
        f"Location: {plan.directory}",
    ]
    if summary.get("offsite"):
        body.append(f"Cloud Backup: {summary['offsite']}")
    body += ["", "Status: SUCCESS", ""]
    ctx.runner.run(["sendmail", email], input_text="\n".join(body), label="sendmail", mutating=True)
    ctx.log.log(f"Notification sent to {email}")
    return True


def run_backup(ctx: OpsContext, *, backup_type: str | None = None, skip_offsite: bool = False) -> dict[str, Any]:
    s = ctx.settings
    log = ctx.log
    if not ctx.runner.systemctl_is_active("mariadb"):
        raise PrerequisiteError("MariaDB is not running")
    creds = ctx.credentials()
    if not creds.usable:
        raise PrerequisiteError(
            f"database credentials not found (run 'moodle-ops gcp secrets setup' or check {s.credentials_file})"
        )

    started = time.time()
    now = ctx.now()
    root = Path(s.backup_root)
    for kind in BACKUP_TYPES:
        (root / kind).mkdir(parents=True, exist_ok=True)
    plan = plan_backup(root, now, backup_type=backup_type)
    plan.directory.mkdir(parents=True, exist_ok=True)

    log.section("Starting Moodle Backup")
    log.log(f"Backup type: {plan.backup_type}")
    log.log(f"Backup directory: {plan.directory}")
    log.log(f"Retention period: {plan.retention_days} days")

    log.log(f"Step 1: Backing up database ({creds.name})...")
    db_file = plan.directory / DATABASE_FILE
    admin_client(ctx.runner, creds).dump(creds.name, db_file, level=COMPRESSION_LEVEL)
    db_size = _human_size(_path_size(db_file)) if db_file.exists() else "0B"
    log.log(f"Database backup complete: {db_size}")

    log.log("Step 2: Backing up moodledata directory...")
    data_file = plan.directory / MOODLEDATA_FILE
    make_tar_gz(data_file, source=Path(s.moodle_data), excludes=MOODLEDATA_EXCLUDES, level=COMPRESSION_LEVEL)
    data_size = _human_size(_path_size(data_file))
    log.log(f"Moodledata backup complete: {data_size}")

    code_size = ""
    if plan.backup_type == "monthly":
        log.log("Step 3: Backing up Moodle code directory (monthly only)...")
        code_file = plan.directory / CODE_FILE
        make_tar_gz(code_file, source=Path(s.moodle_dir), excludes=("config.php",), level=COMPRESSION_LEVEL)
        code_size = _human_size(_path_size(code_file))
        log.log(f"Moodle code backup complete: {code_size}")
    else:
        log.log("Step 3: Skipping code backup (not monthly)")

    log.log("Step 4: Backing up configuration files...")
    config_file = plan.directory / CONFIG_FILE
    added = make_tar_gz_of_files(config_file, config_file_candidates(ctx), level=COMPRESSION_LEVEL)
    config_size = _human_size(_path_size(config_file))
    log.log(f"Configuration files backup complete: {config_size} ({len(added)} files)")

    log.log("Step 5: Creating backup manifest...")
    total_size = _human_size(_path_size(plan.directory))
    manifest = BackupManifest(
        backup_type=plan.backup_type,
        backup_date=now.strftime("%Y-%m-%d %H:%M:%S"),
        timestamp=plan.timestamp,
        db_name=creds.name,
        db_size=db_size,
        moodledata_path=s.moodle_data,
        moodledata_size=data_size,
        config_size=config_size,
        total_size=total_size,
        moodle_code_path=s.moodle_dir if code_size else "",
        code_size=code_size,
        system_info=_system_info(ctx),
        offsite="pending" if s.backup_bucket and not skip_offsite else "not configured",
    )
    manifest_path = plan.directory / MANIFEST_NAME
    manifest_path.write_text(render_manifest(manifest), encoding="utf-8")

    duration = int(time.time() - started)
    log.log(f"Total backup size: {total_size}")
    log.log(f"Backup duration: {duration // 60}m {duration % 60}s")

    offsite_url = ""
    offsite_status = manifest.offsite
    if s.backup_bucket and not skip_offsite:
        log.log("Step 7: Uploading to Google Cloud Storage...")
        try:
            offsite_url = upload_offsite(ctx, plan)
            offsite_status = f"uploaded to {offsite_url}"
            log.log(f"Backup uploaded to {offsite_url}")
        except (UsageError, OpError) as e:
            offsite_status = f"skipped ({e})"
            log.warn(f"Offsite upload skipped, local backup kept: {e}")
        manifest_path.write_text(render_manifest(replace(manifest, offsite=offsite_status)), encoding="utf-8")
    elif skip_offsite:
        log.log("Step 7: Skipping cloud backup (--skip-offsite)")
    else:
        log.log("Step 7: Skipping cloud backup (MOODLE_BACKUP_BUCKET not configured)")

    log.log("Step 8: Cleaning up old backups...")
    deleted = cleanup_old_backups(root, now)
    for kind, count in deleted.items():
        if count:
            log.log(f"Deleted {count} old {kind} backup(s)")

    summary: dict[str, Any] = {
        "type": plan.backup_type,
        "path": str(plan.directory),
        "timestamp": plan.timestamp,
        "totalSize": total_size,
        "durationSeconds": duration,
        "sizes": {"database": db_size, "moodledata": data_size, "config": config_size},
        "offsite": offsite_url,
        "offsiteStatus": offsite_status,
        "deleted": deleted,
        "credentialSources": list(creds.sources),
    }
    if code_size:
        summary["sizes"]["code"] = code_size
    summary["notified"] = _notify(ctx, plan=plan, summary=summary)

    log.log("Backup Complete!")
    log.wide_event("success", backupType=plan.backup_type, path=str(plan.directory), totalSize=total_size)
    return summary


def cmd_backup_run(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    ctx = build_ops_context(g, tool="backup", default_log_file=BACKUP_LOG)
    try:
        summary = run_backup(
            ctx,
            backup_type=getattr(args, "backup_type", None),
            skip_offsite=bool(getattr(args, "skip_offsite", False)),
        )
    except OpError as e:
        ctx.log.error(str(e))
        ctx.log.wide_event("error", error=str(e))
        raise
    _print_json(summary, pretty=g.pretty)
    return 0


def cmd_backup_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    _print_json({"backups": list_backups(Path(g.settings.backup_root))}, pretty=g.pretty)
    return 0


def cmd_backup_cleanup(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    require_root()
    ctx = build_ops_context(g, tool="backup", default_log_file=BACKUP_LOG)
    deleted = cleanup_old_backups(Path(ctx.settings.backup_root), ctx.now())
    _print_json({"deleted": deleted}, pretty=g.pretty)
    return 0


def cmd_backup_install_cron(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    path = install_cron_d(BACKUP_JOB, cron_dir=getattr(args, "cron_dir", None) or "/etc/cron.d")
    _print_json({"installed": str(path), "schedule": BACKUP_JOB.schedule, "logFile": BACKUP_JOB.log_file}, pretty=g.pretty)
    return 0
