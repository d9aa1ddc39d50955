from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .archives import check_tar_gz, gzip_head_lines, gzip_ok, tar_has_member
from .backup_commands import BACKUP_LOG, BACKUP_TYPES
from .cli_shared import (
    GlobalOpts,
    OpError,
    PrerequisiteError,
    _human_size,
    _path_size,
    _print_json,
    _write_secure_text,
)
from .context import OpsContext, build_ops_context
from .cron import VALIDATION_JOB, install_user_crontab
from .db import root_client
from .manifest import DATABASE_FILE, MANIFEST_NAME, MOODLEDATA_FILE, read_manifest
from .oplog import OpsLog
from .offsite import build_offsite_store
from .runner import require_root

VALIDATION_LOG = "/var/log/moodle-backup-validation.log"
MAX_AGE_HOURS = {"daily": 36, "weekly": 192}
MB = 1024 * 1024


@dataclass
class ValidationTally:
    log: OpsLog
    passed: int = 0
    failed: int = 0
    warnings: int = 0
    results: list[dict[str, str]] = field(default_factory=list)

    def ok(self, msg: str) -> None:
        self.passed += 1
        self.results.append({"status": "pass", "message": msg})
        self.log.emit("PASS", msg)

    def fail(self, msg: str) -> None:
        self.failed += 1
        self.results.append({"status": "fail", "message": msg})
        self.log.error(msg)

    def warn(self, msg: str) -> None:
        self.warnings += 1
        self.results.append({"status": "warn", "message": msg})
        self.log.warn(msg)

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.warnings

    @property
    def score(self) -> int:
        return self.passed * 100 // max(self.total, 1)


def find_latest_backup(root: Path) -> Path | None:
    candidates = [d for d in root.glob("*/backup_*") if d.is_dir()]
    candidates += [d for d in root.glob("backup_*") if d.is_dir()]
    if not candidates:
        return None
    return max(candidates, key=lambda d: d.name)


def backup_counts(root: Path) -> dict[str, int]:
    return {
        kind: sum(1 for d in (root / kind).glob("backup_*") if d.is_dir()) if (root / kind).is_dir() else 0
        for kind in BACKUP_TYPES
    }


def _check_completeness(t: ValidationTally, backup: Path) -> None:
    for name in (MANIFEST_NAME, DATABASE_FILE, MOODLEDATA_FILE):
        if (backup / name).is_file():
            t.ok(f"Required file present: {name}")
        else:
            t.fail(f"Missing required file: {name}")


def _check_age(t: ValidationTally, manifest: dict[str, str], now: datetime) -> int | None:
    kind = manifest.get("Backup Type", "")
    raw = manifest.get("Backup Date", "")
    try:
        taken = datetime.strptime(raw, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        t.warn(f"Backup date unreadable: {raw!r}")
        return None
    age_hours = int((now - taken).total_seconds() // 3600)
    limit = MAX_AGE_HOURS.get(kind)
    if limit is not None and age_hours > limit:
        t.warn(f"{kind.capitalize()} backup is older than {limit} hours (may be stale)")
    else:
        t.ok("Backup age is acceptable")
    return age_hours


def _check_database(t: ValidationTally, dump: Path) -> dict[str, Any]:
    info: dict[str, Any] = {"ok": False}
    if not dump.is_file():
        t.fail(f"Database dump file not found: {dump}")
        return info
    if not gzip_ok(dump):
        t.fail("Database dump gzip file is corrupted!")
        return info
    t.ok("Database dump gzip integrity OK")
    info["ok"] = True
    size_mb = dump.stat().st_size // MB
    info["sizeMb"] = size_mb
    if size_mb < 1:
        t.fail("Database dump is suspiciously small (< 1 MB) - may be incomplete")
    elif size_mb < 5:
        t.warn("Database dump is small (< 5 MB) - verify Moodle installation is not empty")
    else:
        t.ok("Database dump size appears normal")
    if len(gzip_head_lines(dump, 100)) > 10:
        t.ok("Database dump contains SQL statements")
        if any("mdl_" in line for line in gzip_head_lines(dump, 1000)):
            t.ok("Moodle tables detected in dump (mdl_ prefix)")
        else:
            t.warn("No Moodle tables detected in first 1000 lines (may be valid)")
    else:
        t.fail("Database dump appears empty or corrupted")
    return info


def _check_moodledata(t: ValidationTally, archive: Path) -> dict[str, Any]:
    info: dict[str, Any] = {"ok": False}
    if not archive.is_file():
        t.fail(f"Moodledata archive file not found: {archive}")
        return info
    check = check_tar_gz(archive)
    if not check.ok:
        t.fail("Moodledata tar.gz file is corrupted!")
        return info
    t.ok("Moodledata tar.gz integrity OK")
    info["ok"] = True
    size_mb = archive.stat().st_size // MB
    info["sizeMb"] = size_mb
    info["fileCount"] = check.file_count
    if size_mb < 10:
        t.warn("Moodledata archive is small (< 10 MB) - verify not empty")
    else:
        t.ok("Moodledata archive size appears normal")
    if check.file_count < 10:
        t.warn(f"Very few files in moodledata archive ({check.file_count})")
    else:
        t.ok(f"Moodledata archive contains files: {check.file_count}")
    if tar_has_member(archive, "filedir/") or tar_has_member(archive, "/filedir"):
        t.ok("Required directory present: filedir/")
    else:
        t.warn("Missing filedir/ directory in moodledata archive")
    return info


def _test_restore(ctx: OpsContext, t: ValidationTally, dump: Path) -> dict[str, Any]:
    test_db = f"moodle_restore_test_{ctx.now().strftime('%Y%m%d_%H%M%S')}"
    info: dict[str, Any] = {"database": test_db}
    client = root_client(ctx.runner, ctx.credentials())
    ctx.log.warn(f"Test restore will create temporary test database: {test_db}")
    created = client.execute(
        f"CREATE DATABASE IF NOT EXISTS `{test_db}` DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
        check=False,
    )
    if not created.ok:
        t.fail("Could not create test database")
        return info
    try:
        started = time.time()
        try:
            client.load(test_db, dump)
        except OpError as e:
            t.fail(f"Database restore FAILED - backup may be corrupted! ({e})")
            return info
        info["restoreSeconds"] = int(time.time() - started)
        t.ok(f"Database restore successful ({info['restoreSeconds']}s)")
        raw = client.scalar(
            f"SELECT COUNT(*) FROM information_schema.TABLES WHERE TABLE_SCHEMA='{test_db}'"
        )
        tables = int(raw) if raw.isdigit() else 0
        info["tables"] = tables
        if tables > 100:
            t.ok(f"Restored database contains expected number of tables ({tables})")
        else:
            t.warn(f"Restored database has few tables ({tables}) - verify backup is complete")
    finally:
        ctx.log.log("Cleaning up test database...")
        client.execute(f"DROP DATABASE IF EXISTS `{test_db}`;", check=False)
    return info


def _check_retention(t: ValidationTally, counts: dict[str, int]) -> None:
    daily, weekly, monthly = counts["daily"], counts["weekly"], counts["monthly"]
    if daily >= 7:
        t.ok("Daily backup retention met (>=7 days)")
    elif daily > 0:
        t.warn(f"Daily backup retention low ({daily}/7 days)")
    else:
        t.fail("No daily backups found!")
    if weekly >= 4:
        t.ok("Weekly backup retention met (>=4 weeks)")
    elif weekly > 0:
        t.warn(f"Weekly backup retention low ({weekly}/4 weeks)")
    if monthly >= 3:
        t.ok("Monthly backup retention good (>=3 months)")


def _check_offsite(ctx: OpsContext, t: ValidationTally, local_daily: int) -> dict[str, Any]:
    s = ctx.settings
    info: dict[str, Any] = {"configured": bool(s.backup_bucket), "bucket": s.backup_bucket}
    if not s.backup_bucket or not s.hmac_access_id:
        t.warn("Offsite backup not configured (GCS bucket not set)")
        ctx.log.info("  Set MOODLE_BACKUP_BUCKET and the GCS HMAC keys to enable offsite backups")
        return info
    store = build_offsite_store(s)
    if not store.accessible():
        t.fail(f"Cannot access GCS bucket: {s.backup_bucket}")
        info["accessible"] = False
        return info
    info["accessible"] = True
    t.ok(f"GCS bucket accessible: {s.backup_bucket}")
    count = store.count_manifests()
    info["count"] = count
    if count >= local_daily:
        t.ok("Offsite backups in sync with local backups")
    else:
        t.warn(f"Offsite backups may be out of sync ({count} offsite vs {local_daily} local)")
    return info


def render_validation_report(data: dict[str, Any], t: ValidationTally, *, generated: datetime) -> str:
    db = data.get("database") or {}
    md = data.get("moodledata") or {}
    counts = data.get("counts") or {}
    offsite = data.get("offsite") or {}
    restore = data.get("testRestore")
    lines = [
        "# ============================================================================",
        "# Moodle Backup Validation Report",
        f"# Generated: {generated.strftime('%Y-%m-%d %H:%M:%S')}",
        "# ============================================================================",
        "",
        "## Summary",
        "",
        f"Validation Score: {t.score}/100",
        "",
        f"Total Checks: {t.total}",
        f"- Passed: {t.passed}",
        f"- Failed: {t.failed}",
        f"- Warnings: {t.warnings}",
        "",
        "## Backup Information",
        "",
        f"Backup Path: {data.get('backupPath', 'Unknown')}",
        f"Backup Date: {data.get('backupDate') or 'Unknown'}",
        f"Backup Type: {data.get('backupType') or 'Unknown'}",
        f"Backup Size: {data.get('backupSize') or 'Unknown'}",
        f"Backup Age: {data.get('ageHours', 'Unknown')} hours",
        "",
        "## Validation Results",
        "",
        "### Database Dump",
    ]
    if db.get("ok"):
        lines += ["OK Database dump integrity verified", f"OK Database dump size: {db.get('sizeMb', 'Unknown')} MB"]
    else:
        lines.append("FAIL Database dump failed validation")
    lines += ["", "### Moodledata Archive"]
    if md.get("ok"):
        lines += [
            "OK Moodledata archive integrity verified",
            f"OK Moodledata archive size: {md.get('sizeMb', 'Unknown')} MB",
            f"OK Files in archive: {md.get('fileCount', 'Unknown')}",
        ]
    else:
        lines.append("FAIL Moodledata archive failed validation")
    lines += ["", "### Test Restore"]
    if restore is None:
        lines.append("- Test restore not performed (use --test-restore to enable)")
    elif "tables" in restore:
        lines += ["OK Test restore completed", f"OK Restored tables: {restore['tables']}"]
    else:
        lines.append("FAIL Test restore failed")
    lines += [
        "",
        "### Retention Compliance",
        f"- Daily backups: {counts.get('daily', 0)}/7",
        f"- Weekly backups: {counts.get('weekly', 0)}/4",
        f"- Monthly backups: {counts.get('monthly', 0)}/12",
        "",
        "### Offsite Backup",
    ]
    if not offsite.get("configured"):
        lines.append("WARN Offsite backup not configured")
    elif offsite.get("accessible"):
        lines += [f"OK Offsite backup configured: {offsite.get('bucket')}", f"  Offsite backups: {offsite.get('count', 'Unknown')}"]
    else:
        lines.append("WARN Offsite backup configured but inaccessible")

    recs: list[str] = []
    if t.failed:
        recs += ["**URGENT**: Fix failed validations immediately", "Investigate backup process for failures"]
    if t.warnings:
        recs.append("Review warnings and address potential issues")
    if restore is None:
        recs.append("Schedule quarterly test restores: moodle-ops validate run --test-restore")
    if not offsite.get("configured"):
        recs.append("Configure offsite backup to Google Cloud Storage")
    if counts.get("daily", 0) < 7:
        recs.append("Increase daily backup retention to 7 days minimum")
    lines += ["", "## Recommendations", ""]
    lines += [f"{i}. {r}" for i, r in enumerate(recs, start=1)] or ["None"]

    rto = (restore or {}).get("restoreSeconds")
    lines += [
        "",
        "## Next Validation",
        "",
        f"Scheduled: {(generated + timedelta(days=30)).strftime('%Y-%m-%d')}",
        "Run: moodle-ops validate run",
        "",
        "## Disaster Recovery Metrics",
        "",
        f"RTO (database restore): {f'{rto}s' if rto is not None else 'not measured'}",
        f"RPO (backup age): {data.get('ageHours', 'Unknown')} hours",
        "",
    ]
    return "\n".join(lines)


def run_validation(ctx: OpsContext, *, backup_path: str | None = None, test_restore: bool = False) -> tuple[dict[str, Any], ValidationTally]:
    root = Path(ctx.settings.backup_root)
    if not root.is_dir():
        raise OpError(f"backup root directory not found: {root}")
    if test_restore and not ctx.credentials().has_root:
        raise PrerequisiteError("database root password not found (required for test restore)")
    t = ValidationTally(log=ctx.log)
    now = ctx.now()

    ctx.log.section("Step 1: Locating backup to validate")
    if backup_path:
        backup = Path(backup_path)
        if not backup.is_dir():
            raise OpError(f"backup directory not found: {backup}")
    else:
        latest = find_latest_backup(root)
        if latest is None:
            raise OpError(f"no backups found in {root}")
        backup = latest
    ctx.log.log(f"Validating backup: {backup}")
    data: dict[str, Any] = {"backupPath": str(backup)}

    ctx.log.section("Step 2: Checking backup completeness")
    _check_completeness(t, backup)
    manifest = read_manifest(backup)
    if manifest:
        data["backupDate"] = manifest.get("Backup Date", "")
        data["backupType"] = manifest.get("Backup Type", "")
        data["backupSize"] = manifest.get("Total Size") or _human_size(_path_size(backup))
        age = _check_age(t, manifest, now)
        if age is not None:
            data["ageHours"] = age

    ctx.log.section("Step 3: Validating database dump integrity")
    data["database"] = _check_database(t, backup / DATABASE_FILE)
    ctx.log.section("Step 4: Validating moodledata archive integrity")
    data["moodledata"] = _check_moodledata(t, backup / MOODLEDATA_FILE)

    if test_restore and data["database"].get("ok"):
        ctx.log.section("Step 5: Performing test restore")
        data["testRestore"] = _test_restore(ctx, t, backup / DATABASE_FILE)
    else:
        ctx.log.log("Step 5: Test restore skipped (use --test-restore to enable)")

    ctx.log.section("Step 6: Checking backup retention compliance")
    counts = backup_counts(root)
    data["counts"] = counts
    _check_retention(t, counts)

    ctx.log.section("Step 7: Checking offsite backup sync")
    data["offsite"] = _check_offsite(ctx, t, counts["daily"])
    return data, t


def backup_trends(ctx: OpsContext, *, backup_log: Path) -> tuple[dict[str, Any], ValidationTally]:
    t = ValidationTally(log=ctx.log)
    out: dict[str, Any] = {}
    if backup_log.is_file():
        text = backup_log.read_text(encoding="utf-8", errors="replace")
        total = sum(1 for line in text.splitlines() if "Backup Complete" in line)
        failed = sum(1 for line in text.splitlines() if "] ERROR: " in line)
        rate = (total - failed) * 100 // (total if total > 0 else 1)
        out.update({"total": total, "failed": failed, "successRate": rate})
        if rate >= 95:
            t.ok("Backup success rate is excellent (>=95%)")
        elif rate >= 90:
            t.warn("Backup success rate is good but could improve (90-95%)")
        else:
            t.fail("Backup success rate is LOW (<90%) - investigate failures!")
    daily_dir = Path(ctx.settings.backup_root) / "daily"
    recent: list[dict[str, str]] = []
    if daily_dir.is_dir():
        dirs = sorted((d for d in daily_dir.glob("backup_*") if d.is_dir()), key=lambda d: d.name, reverse=True)
        for d in dirs[:7]:
            recent.append({"date": d.name.removeprefix("backup_"), "size": _human_size(_path_size(d))})
    out["recentDaily"] = recent
    return out, t


def cmd_validate_run(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    ctx = build_ops_context(g, tool="validate", default_log_file=VALIDATION_LOG)
    data, t = run_validation(
        ctx,
        backup_path=getattr(args, "backup", None),
        test_restore=bool(getattr(args, "test_restore", False)),
    )
    now = ctx.now()
    report_dir = Path(getattr(args, "report_dir", None) or "/tmp")
    report_path = report_dir / f"moodle-backup-validation-{now.strftime('%Y%m%d_%H%M%S')}.txt"
    _write_secure_text(path=report_path, text=render_validation_report(data, t, generated=now))
    ctx.log.log(f"Validation report: {report_path}")
    outcome = "success" if t.failed == 0 else "failed"
    ctx.log.wide_event(outcome, passed=t.passed, failed=t.failed, warnings=t.warnings, score=t.score)
    _print_json(
        {
            "backupPath": data["backupPath"],
            "score": t.score,
            "passed": t.passed,
            "failed": t.failed,
            "warnings": t.warnings,
            "report": str(report_path),
            "results": t.results,
        },
        pretty=g.pretty,
    )
    return 1 if t.failed else 0


def cmd_validate_trends(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_ops_context(g, tool="validate", default_log_file=VALIDATION_LOG)
    log_path = Path(getattr(args, "backup_log", None) or BACKUP_LOG)
    out, t = backup_trends(ctx, backup_log=log_path)
    _print_json(out, pretty=g.pretty)
    return 1 if t.failed else 0


def cmd_validate_install_cron(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    require_root()
    ctx = build_ops_context(g, tool="validate", default_log_file=VALIDATION_LOG)
    if not ctx.runner.which("crontab"):
        raise PrerequisiteError("crontab is not available on this host")
    line = install_user_crontab(VALIDATION_JOB, ctx.runner, marker="validate run")
    _print_json({"installed": line, "schedule": VALIDATION_JOB.schedule}, pretty=g.pretty)
    return 0
