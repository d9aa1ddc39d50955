from __future__ import annotations

import argparse
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.prompt import Prompt

from .archives import extract_tar_gz
from .backup_commands import list_backups
from .cli_shared import (
    GlobalOpts,
    OpError,
    PrerequisiteError,
    UsageError,
    _print_json,
)
from .context import OpsContext, build_ops_context
from .db import root_client
from .manifest import CODE_FILE, CONFIG_FILE, DATABASE_FILE, MANIFEST_NAME, MOODLEDATA_FILE
from .offsite import build_offsite_store, parse_gs_url
from .runner import require_root
from .site import chown_tree, purge_caches, set_maintenance_mode, start_web_server, stop_web_server

RESTORE_LOG = "/var/log/moodle-restore.log"
RECREATED_DIRS = ("cache", "sessions", "temp", "trashdir")


class RestoreCancelled(Exception):
    pass


@dataclass
class RestoreOutcome:
    source: str
    safety_dir: str
    restored: list[str] = field(default_factory=list)
    db_seconds: int = 0
    web_server: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "safetyDir": self.safety_dir,
            "restored": self.restored,
            "databaseRestoreSeconds": self.db_seconds,
            "webServer": self.web_server,
        }


def _ask(prompt: str, *, ctx: OpsContext) -> str:
    return Prompt.ask(prompt, console=ctx.log.console, default="", show_default=False)


def select_backup_interactively(ctx: OpsContext) -> str | None:
    backups = list_backups(Path(ctx.settings.backup_root))
    ctx.log.section("Moodle Disaster Recovery - Backup Selection")
    ctx.log.log("Available local backups:")
    for i, b in enumerate(backups, start=1):
        ctx.log.console.print(f"  [{i}] {b['type']} - {b['date']} ({b['totalSize'] or 'unknown size'})", markup=False)
        ctx.log.console.print(f"      Path: {b['path']}", markup=False)
    ctx.log.console.print("  [0] Enter custom path (local or GCS)", markup=False)
    ctx.log.console.print("  [q] Quit", markup=False)
    selection = _ask("Select backup to restore", ctx=ctx).strip()
    if selection.lower() == "q":
        return None
    if selection == "0":
        return _ask("Enter backup path", ctx=ctx).strip() or None
    if selection.isdigit() and 1 <= int(selection) <= len(backups):
        return str(backups[int(selection) - 1]["path"])
    raise UsageError(f"invalid selection: {selection!r}")


def _fetch_source(ctx: OpsContext, source: str) -> tuple[Path, Path | None]:
    if source.startswith("gs://"):
        bucket, prefix = parse_gs_url(source)
        ctx.log.log("Backup source: Google Cloud Storage")
        temp = Path(tempfile.mkdtemp(prefix="moodle-restore-"))
        ctx.log.log("Downloading backup from Cloud Storage...")
        try:
            build_offsite_store(ctx.settings, bucket=bucket).download_prefix(prefix, temp)
        except Exception:
            shutil.rmtree(temp, ignore_errors=True)
            raise
        return temp, temp
    ctx.log.log("Backup source: Local filesystem")
    path = Path(source)
    if not path.is_dir():
        raise OpError(f"backup directory not found: {source}")
    return path, None


def _confirm_overwrite(ctx: OpsContext) -> None:
    s = ctx.settings
    ctx.log.warn("WARNING: This will OVERWRITE existing data!")
    ctx.log.warn(f"  - Database: {ctx.credentials().name}")
    ctx.log.warn(f"  - Moodledata: {s.moodle_data}")
    ctx.log.warn("  - Configuration files")
    ctx.log.warn("Current Moodle site will be OFFLINE during restore")
    answer = _ask("Are you absolutely sure you want to continue? (type YES to confirm)", ctx=ctx)
    if answer.strip() != "YES":
        raise RestoreCancelled()


def _safety_backup(ctx: OpsContext, safety_dir: Path) -> None:
    ctx.log.section("Creating safety backup of current state")
    safety_dir.mkdir(parents=True, exist_ok=True)
    creds = ctx.credentials()
    root_client(ctx.runner, creds).dump(creds.name, safety_dir / "database-pre-restore.sql.gz")
    config_php = ctx.settings.config_php
    if config_php.is_file():
        shutil.copy2(config_php, safety_dir / "config.php.backup")
    ctx.log.log(f"Safety backup created: {safety_dir}")


def _restore_database(ctx: OpsContext, backup: Path) -> int:
    ctx.log.section("Step 1: Restoring database")
    dump = backup / DATABASE_FILE
    if not dump.is_file():
        raise OpError(f"database backup file not found: {dump}")
    creds = ctx.credentials()
    client = root_client(ctx.runner, creds)
    ctx.log.log("Dropping existing database...")
    client.execute(f"DROP DATABASE IF EXISTS `{creds.name}`;", mutating=True)
    ctx.log.log("Creating fresh database...")
    client.execute(
        f"CREATE DATABASE `{creds.name}` DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
        mutating=True,
    )
    started = time.time()
    client.load(creds.name, dump)
    seconds = int(time.time() - started)
    ctx.log.log(f"Database restored successfully ({seconds}s)")
    return seconds


def _restore_moodledata(ctx: OpsContext, backup: Path, safety_dir: Path) -> None:
    ctx.log.section("Step 2: Restoring moodledata")
    archive = backup / MOODLEDATA_FILE
    if not archive.is_file():
        raise OpError(f"moodledata backup file not found: {archive}")
    data = Path(ctx.settings.moodle_data)
    if data.exists():
        ctx.log.log("Moving existing moodledata to safety location...")
        shutil.move(str(data), str(safety_dir / "moodledata-old"))
    data.parent.mkdir(parents=True, exist_ok=True)
    extract_tar_gz(archive, data.parent)
    for name in RECREATED_DIRS:
        (data / name).mkdir(parents=True, exist_ok=True)
    chown_tree(ctx, data)
    os.chmod(data, 0o755)
    ctx.log.log("Moodledata restored successfully")


def _restore_config(ctx: OpsContext, backup: Path, restore_root: Path) -> bool:
    ctx.log.section("Step 3: Restoring configuration files")
    archive = backup / CONFIG_FILE
    if not archive.is_file():
        ctx.log.warn("Configuration backup not found, skipping")
        return False
    extract_tar_gz(archive, restore_root)
    ctx.log.log("Configuration files restored")
    return True


def _restore_code(ctx: OpsContext, backup: Path, safety_dir: Path) -> None:
    moodle_dir = Path(ctx.settings.moodle_dir)
    if moodle_dir.exists():
        shutil.move(str(moodle_dir), str(safety_dir / "moodle-code-old"))
    extract_tar_gz(backup / CODE_FILE, moodle_dir.parent)
    saved = safety_dir / "config.php.backup"
    if saved.is_file():
        shutil.copy2(saved, moodle_dir / "config.php")
    chown_tree(ctx, moodle_dir)
    ctx.log.log("Moodle code restored")


def _recovery_steps(ctx: OpsContext, safety_dir: Path) -> list[str]:
    s = ctx.settings
    steps = [
        f"gunzip < {safety_dir / 'database-pre-restore.sql.gz'} | mysql -u root {ctx.credentials().name}",
    ]
    if (safety_dir / "moodledata-old").exists():
        steps.append(f"rm -rf {s.moodle_data} && mv {safety_dir / 'moodledata-old'} {s.moodle_data}")
    if (safety_dir / "moodle-code-old").exists():
        steps.append(f"rm -rf {s.moodle_dir} && mv {safety_dir / 'moodle-code-old'} {s.moodle_dir}")
    steps.append(f"sudo -u {s.web_user} php {Path(s.moodle_dir) / 'admin' / 'cli' / 'maintenance.php'} --disable")
    return steps


def _apply_backup(ctx: OpsContext, backup: Path, outcome: RestoreOutcome, *, safety_dir: Path, restore_code: bool,
                  restore_root: Path) -> None:
    outcome.db_seconds = _restore_database(ctx, backup)
    outcome.restored.append("database")
    _restore_moodledata(ctx, backup, safety_dir)
    outcome.restored.append("moodledata")
    if _restore_config(ctx, backup, restore_root):
        outcome.restored.append("config")

    ctx.log.section("Step 4: Checking for Moodle code backup")
    if (backup / CODE_FILE).is_file():
        if restore_code:
            _restore_code(ctx, backup, safety_dir)
            outcome.restored.append("code")
        else:
            ctx.log.log("Skipping code restoration (using existing code)")
    else:
        ctx.log.log("No code backup found (normal for daily/weekly backups)")

    ctx.log.section("Step 5: Clearing Moodle cache")
    purge_caches(ctx)
    ctx.log.section("Step 6: Fixing permissions")
    moodle_dir = Path(ctx.settings.moodle_dir)
    if moodle_dir.exists():
        chown_tree(ctx, moodle_dir)


def run_restore(
    ctx: OpsContext,
    *,
    source: str,
    restore_code: bool = False,
    auto_confirm: bool = False,
    restore_root: Path = Path("/"),
) -> RestoreOutcome:
    if restore_code and auto_confirm:
        raise UsageError("--restore-code needs an interactive restore (drop --confirm)")
    creds = ctx.credentials()
    if not creds.has_root:
        raise PrerequisiteError(
            f"database root password not found (run 'moodle-ops gcp secrets setup' or check {ctx.settings.credentials_file})"
        )
    ctx.log.section("Validating backup")
    backup, temp = _fetch_source(ctx, source)
    try:
        manifest = backup / MANIFEST_NAME
        if not manifest.is_file():
            raise OpError(f"invalid backup: {MANIFEST_NAME} not found")
        head = manifest.read_text(encoding="utf-8", errors="replace").splitlines()[:20]
        ctx.log.log("Backup Information:\n" + "\n".join(head))

        if not auto_confirm:
            _confirm_overwrite(ctx)

        stamp = ctx.now().strftime("%Y%m%d_%H%M%S")
        safety_dir = Path(ctx.settings.backup_root) / f"pre-restore-safety-{stamp}"
        _safety_backup(ctx, safety_dir)
        outcome = RestoreOutcome(source=source, safety_dir=str(safety_dir))

        set_maintenance_mode(ctx, enabled=True)
        outcome.web_server = stop_web_server(ctx)
        try:
            _apply_backup(
                ctx, backup, outcome, safety_dir=safety_dir, restore_code=restore_code, restore_root=restore_root
            )
        except BaseException:
            # site comes back in maintenance mode; data may be half restored
            ctx.log.error(f"Restore failed after {', '.join(outcome.restored) or 'no'} step(s) completed")
            ctx.log.error("Manual recovery from the safety backup:")
            for step in _recovery_steps(ctx, safety_dir):
                ctx.log.error(f"  {step}")
            start_web_server(ctx, outcome.web_server)
            raise
        start_web_server(ctx, outcome.web_server)
        set_maintenance_mode(ctx, enabled=False)
    finally:
        if temp is not None:
            ctx.log.log("Cleaning up temporary files...")
            shutil.rmtree(temp, ignore_errors=True)

    ctx.log.log("Restoration Complete!")
    ctx.log.log(f"Safety backup location: {outcome.safety_dir} (keep for at least 24 hours)")
    return outcome


def cmd_restore_run(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    ctx = build_ops_context(g, tool="restore", default_log_file=RESTORE_LOG)
    if not ctx.runner.systemctl_is_active("mariadb"):
        raise PrerequisiteError("MariaDB is not running")
    source = (getattr(args, "backup", None) or getattr(args, "path", None) or "").strip()
    try:
        if not source:
            selected = select_backup_interactively(ctx)
            if not selected:
                raise RestoreCancelled()
            source = selected
        outcome = run_restore(
            ctx,
            source=source,
            restore_code=bool(getattr(args, "restore_code", False)),
            auto_confirm=bool(getattr(args, "confirm", False)),
        )
    except RestoreCancelled:
        ctx.log.log("Restoration cancelled by user")
        ctx.log.wide_event("cancelled")
        return 0
    except OpError as e:
        ctx.log.error(str(e))
        ctx.log.wide_event("error", error=str(e), source=source)
        raise
    ctx.log.wide_event("success", source=source, restored=outcome.restored)
    _print_json(outcome.as_dict(), pretty=g.pretty)
    return 0
