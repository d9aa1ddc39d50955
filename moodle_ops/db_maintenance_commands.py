from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from rich.prompt import Confirm

from .cli_shared import GlobalOpts, OpError, PrerequisiteError, _print_json, _write_secure_text
from .context import OpsContext, build_ops_context
from .cron import DB_MAINTENANCE_JOB, install_user_crontab
from .db import MysqlClient, root_client
from .runner import require_root
from .site import set_maintenance_mode

MAINTENANCE_LOG = "/var/log/moodle-db-maintenance.log"
FRAGMENTATION_THRESHOLD = 10.0
TABLE_SIZE_THRESHOLD = 1024 * 1024 * 1024
SESSION_MAX_AGE_DAYS = 7
TEMP_MAX_AGE_DAYS = 1


@dataclass
class MaintenanceStats:
    tables: int = 0
    corrupted: list[str] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)
    optimized: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    analyzed: bool = False
    cache_files_deleted: int = 0
    sessions_deleted: int = 0
    temp_files_deleted: int = 0
    durations: dict[str, int] = field(default_factory=dict)
    size_mb: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "tables": self.tables,
            "corrupted": self.corrupted,
            "repaired": self.repaired,
            "optimized": self.optimized,
            "skipped": self.skipped,
            "analyzed": self.analyzed,
            "cleanup": {
                "cacheFilesDeleted": self.cache_files_deleted,
                "sessionsDeleted": self.sessions_deleted,
                "tempFilesDeleted": self.temp_files_deleted,
            },
            "durations": self.durations,
            "sizeMb": self.size_mb,
        }


def fragmented_tables(rows: list[list[str]], *, threshold: float = FRAGMENTATION_THRESHOLD) -> list[tuple[str, int]]:
    out: list[tuple[str, int]] = []
    for row in rows:
        if len(row) < 3:
            continue
        name, data_length, data_free = row[0], row[1], row[2]
        try:
            length = int(data_length)
            free = int(data_free)
        except ValueError:
            continue
        if length <= 0:
            continue
        if free / length * 100 > threshold:
            out.append((name, length))
    return out


def delete_files_older_than(root: Path, *, now: datetime, days: int | None) -> int:
    if not root.is_dir():
        return 0
    cutoff = None if days is None else (now - timedelta(days=days)).timestamp()
    deleted = 0
    for p in root.rglob("*"):
        if not p.is_file() or p.is_symlink():
            continue
        if cutoff is not None and p.stat().st_mtime >= cutoff:
            continue
        try:
            p.unlink()
        except OSError:
            continue
        deleted += 1
    return deleted


def _check_tables(ctx: OpsContext, client: MysqlClient, db: str, stats: MaintenanceStats) -> None:
    ctx.log.section("Step 1: Checking database health")
    started = time.time()
    tables = [r[0] for r in client.rows(
        f"SELECT TABLE_NAME FROM information_schema.TABLES WHERE TABLE_SCHEMA='{db}'"
    ) if r]
    stats.tables = len(tables)
    for i, table in enumerate(tables, start=1):
        if i % 10 == 0:
            ctx.log.info(f"Progress: {i}/{len(tables)} tables checked")
        res = client.execute(f"CHECK TABLE `{table}`", database=db, check=False)
        if "OK" not in res.stdout:
            ctx.log.warn(f"Table {table} has issues: {(res.stdout or res.stderr).strip()}")
            stats.corrupted.append(table)
    stats.durations["check"] = int(time.time() - started)
    if stats.corrupted:
        ctx.log.warn(f"Health check completed: {len(stats.corrupted)} tables need repair")
    else:
        ctx.log.log(f"Health check completed: All {stats.tables} tables are healthy")


def _repair_tables(ctx: OpsContext, client: MysqlClient, db: str, stats: MaintenanceStats) -> None:
    if not stats.corrupted:
        ctx.log.log("Step 2: No repairs needed - all tables healthy")
        return
    ctx.log.section("Step 2: Repairing corrupted tables")
    for table in stats.corrupted:
        res = client.execute(f"REPAIR TABLE `{table}`", database=db, check=False, mutating=True)
        if "OK" in res.stdout or (ctx.runner.dry_run and res.ok):
            stats.repaired.append(table)
            ctx.log.log(f"Repaired table: {table}")
        else:
            ctx.log.error(f"Repair failed for {table}: {(res.stdout or res.stderr).strip()}")
    ctx.log.log(f"Repair completed: {len(stats.repaired)}/{len(stats.corrupted)} tables repaired")


def _optimize_tables(ctx: OpsContext, client: MysqlClient, db: str, stats: MaintenanceStats, *, force: bool) -> None:
    ctx.log.section("Step 4: Optimizing tables (defragmentation)")
    started = time.time()
    if force:
        ctx.log.log("Force optimize enabled: Optimizing ALL tables...")
        try:
            client.mysqlcheck("--optimize", database=db)
            stats.optimized.append("*")
        except OpError as e:
            ctx.log.warn(f"Optimization completed with warnings: {e}")
    else:
        rows = client.rows(
            "SELECT TABLE_NAME, DATA_LENGTH, DATA_FREE FROM information_schema.TABLES "
            f"WHERE TABLE_SCHEMA='{db}' AND DATA_FREE > 0 AND ENGINE IN ('InnoDB', 'MyISAM')"
        )
        candidates = fragmented_tables(rows)
        if not candidates:
            ctx.log.log(f"No tables need optimization (fragmentation < {FRAGMENTATION_THRESHOLD:g}%)")
        for table, length in candidates:
            if length > TABLE_SIZE_THRESHOLD:
                ctx.log.warn(f"Skipping large table: {table} ({length // 1024 // 1024} MB)")
                stats.skipped.append(table)
                continue
            res = client.execute(f"OPTIMIZE TABLE `{table}`", database=db, check=False, mutating=True)
            if res.ok:
                stats.optimized.append(table)
                ctx.log.log(f"Optimized table: {table}")
            else:
                ctx.log.warn(f"Optimization failed for {table}")
    stats.durations["optimize"] = int(time.time() - started)


def _cleanup_moodledata(ctx: OpsContext, stats: MaintenanceStats) -> None:
    ctx.log.section("Step 5: Cleaning Moodle temporary data")
    data = Path(ctx.settings.moodle_data)
    now = ctx.now()
    if ctx.runner.dry_run:
        ctx.log.log("DRYRUN skipping moodledata cleanup")
        return
    stats.cache_files_deleted = delete_files_older_than(data / "cache", now=now, days=None)
    stats.sessions_deleted = delete_files_older_than(data / "sessions", now=now, days=SESSION_MAX_AGE_DAYS)
    stats.temp_files_deleted = delete_files_older_than(data / "temp", now=now, days=TEMP_MAX_AGE_DAYS)
    ctx.log.log(
        f"Cleanup: {stats.cache_files_deleted} cache files, {stats.sessions_deleted} sessions, "
        f"{stats.temp_files_deleted} temp files deleted"
    )


def _database_sizes(client: MysqlClient, db: str) -> dict[str, str]:
    row = client.rows(
        "SELECT ROUND(SUM(DATA_LENGTH + INDEX_LENGTH)/1024/1024, 2), ROUND(SUM(DATA_LENGTH)/1024/1024, 2), "
        "ROUND(SUM(INDEX_LENGTH)/1024/1024, 2), ROUND(SUM(DATA_FREE)/1024/1024, 2) "
        f"FROM information_schema.TABLES WHERE TABLE_SCHEMA='{db}'"
    )
    values = row[0] if row else []
    keys = ("total", "data", "indexes", "free")
    return {k: (values[i] if i < len(values) else "0") for i, k in enumerate(keys)}


def render_maintenance_report(stats: MaintenanceStats, *, db: str, generated: datetime, check_only: bool, force: bool) -> str:
    lines = [
        "# ============================================================================",
        "# Moodle Database Maintenance Report",
        f"# Generated: {generated.strftime('%Y-%m-%d %H:%M:%S')}",
        "# ============================================================================",
        "",
        "## Summary",
        "",
        f"Database: {db}",
        f"Total Tables: {stats.tables}",
        f"Check Only: {str(check_only).lower()}",
        f"Force Optimize: {str(force).lower()}",
        "",
        "## Database Statistics",
        "",
        f"Total Size: {stats.size_mb.get('total', '0')} MB",
        f"  - Data: {stats.size_mb.get('data', '0')} MB",
        f"  - Indexes: {stats.size_mb.get('indexes', '0')} MB",
        f"  - Free Space: {stats.size_mb.get('free', '0')} MB",
        "",
        "## Maintenance Results",
        "",
        "### Health Check",
        f"- Tables Checked: {stats.tables}",
        f"- Corrupted Tables: {len(stats.corrupted)}",
        f"- Status: {'HEALTHY' if not stats.corrupted else 'ISSUES FOUND'}",
        "",
        "### Repairs",
        f"- Tables Repaired: {len(stats.repaired)}",
        "",
        "### Analysis",
        f"- Status: {'COMPLETED' if stats.analyzed else 'WARNINGS'}",
        "",
        "### Optimization",
        f"- Tables Optimized: {len(stats.optimized)}",
        f"- Tables Skipped: {len(stats.skipped)}",
        f"- Status: {'SKIPPED' if check_only else 'COMPLETED'}",
        "",
        "### Cleanup",
        f"- Cache Files Deleted: {stats.cache_files_deleted}",
        f"- Sessions Deleted: {stats.sessions_deleted}",
        f"- Temp Files Deleted: {stats.temp_files_deleted}",
        "",
        "## Next Maintenance",
        "",
        f"Recommended: {(generated + timedelta(days=7)).strftime('%Y-%m-%d')}",
        "Frequency: Weekly (every Sunday at 4 AM)",
        "",
    ]
    return "\n".join(lines)


def run_maintenance(ctx: OpsContext, *, check_only: bool = False, force_optimize: bool = False) -> MaintenanceStats:
    if not ctx.runner.systemctl_is_active("mariadb"):
        raise PrerequisiteError("MariaDB is not running")
    creds = ctx.credentials()
    if not creds.has_root:
        raise PrerequisiteError("database root password not found")
    client = root_client(ctx.runner, creds)
    if not client.ping():
        raise OpError("cannot connect to database with provided credentials")
    ctx.log.log("Preflight checks passed")

    db = creds.name
    stats = MaintenanceStats()
    maintenance_on = set_maintenance_mode(ctx, enabled=True)
    if not maintenance_on:
        ctx.log.warn("Could not enable maintenance mode (Moodle may not be installed yet)")
    try:
        _check_tables(ctx, client, db, stats)
        _repair_tables(ctx, client, db, stats)
        ctx.log.section("Step 3: Analyzing tables (updating statistics)")
        try:
            client.mysqlcheck("--analyze", database=db)
            stats.analyzed = True
            ctx.log.log("Analysis completed: Table statistics updated")
        except OpError as e:
            ctx.log.warn(f"Analysis completed with warnings: {e}")
        if check_only:
            ctx.log.log("Step 4: Skipped (--check-only mode)")
        else:
            _optimize_tables(ctx, client, db, stats, force=force_optimize)
        _cleanup_moodledata(ctx, stats)
        ctx.log.section("Step 6: Generating maintenance report")
        stats.size_mb = _database_sizes(client, db)
    finally:
        if maintenance_on:
            set_maintenance_mode(ctx, enabled=False)
    return stats


def cmd_db_maintain(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    ctx = build_ops_context(g, tool="db-maintenance", default_log_file=MAINTENANCE_LOG)
    check_only = bool(getattr(args, "check_only", False))
    force = bool(getattr(args, "force_optimize", False))
    if not getattr(args, "run_now", False):
        if not Confirm.ask("Run database maintenance now? Moodle will be in maintenance mode", console=ctx.log.console):
            ctx.log.log("Maintenance cancelled by user")
            return 0
    try:
        stats = run_maintenance(ctx, check_only=check_only, force_optimize=force)
    except OpError as e:
        ctx.log.error(str(e))
        ctx.log.wide_event("error", error=str(e))
        raise
    now = ctx.now()
    report_dir = Path(getattr(args, "report_dir", None) or "/tmp")
    report_path = report_dir / f"moodle-db-maintenance-report-{now.strftime('%Y%m%d_%H%M%S')}.txt"
    _write_secure_text(
        path=report_path,
        text=render_maintenance_report(stats, db=ctx.credentials().name, generated=now, check_only=check_only, force=force),
    )
    ctx.log.log(f"Maintenance report generated: {report_path}")
    ctx.log.wide_event(
        "success",
        tables=stats.tables,
        corrupted=len(stats.corrupted),
        repaired=len(stats.repaired),
        optimized=len(stats.optimized),
    )
    out = stats.as_dict()
    out["report"] = str(report_path)
    _print_json(out, pretty=g.pretty)
    return 0


def cmd_db_install_cron(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    require_root()
    ctx = build_ops_context(g, tool="db-maintenance", default_log_file=MAINTENANCE_LOG)
    if not ctx.runner.which("crontab"):
        raise PrerequisiteError("crontab is not available on this host")
    line = install_user_crontab(DB_MAINTENANCE_JOB, ctx.runner, marker="db maintain")
    _print_json({"installed": line, "schedule": DB_MAINTENANCE_JOB.schedule}, pretty=g.pretty)
    return 0
