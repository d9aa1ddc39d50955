from __future__ import annotations

from pathlib import Path

from .context import OpsContext

WEB_SERVERS = ("apache2", "nginx")


def _moodle_cli(ctx: OpsContext, script: str) -> Path:
    return Path(ctx.settings.moodle_dir) / "admin" / "cli" / script


def _php_as_web_user(ctx: OpsContext, script: Path, *extra: str) -> list[str]:
    argv = ["php", str(script), *extra]
    if ctx.runner.which("sudo"):
        return ["sudo", "-u", ctx.settings.web_user] + argv
    return argv


def set_maintenance_mode(ctx: OpsContext, *, enabled: bool) -> bool:
    script = _moodle_cli(ctx, "maintenance.php")
    if not script.is_file():
        return False
    flag = "--enable" if enabled else "--disable"
    res = ctx.runner.run(_php_as_web_user(ctx, script, flag), check=False, mutating=True)
    if not res.ok:
        ctx.log.warn(f"maintenance mode {flag} failed: {res.stderr.strip() or res.stdout.strip()}")
        return False
    ctx.log.log(f"Maintenance mode {'enabled' if enabled else 'disabled'}")
    return True


def purge_caches(ctx: OpsContext) -> bool:
    script = _moodle_cli(ctx, "purge_caches.php")
    if not script.is_file():
        ctx.log.warn("Cache purge script not found, skipping")
        return False
    ctx.runner.run(_php_as_web_user(ctx, script), label="purge_caches", mutating=True)
    ctx.log.log("Cache purged")
    return True


def stop_web_server(ctx: OpsContext) -> str:
    for unit in WEB_SERVERS:
        if ctx.runner.run(["systemctl", "stop", unit], check=False, mutating=True).ok:
            ctx.log.log(f"Stopped {unit}")
            return unit
    ctx.log.warn("No web server could be stopped")
    return ""


def start_web_server(ctx: OpsContext, preferred: str = "") -> str:
    order = [preferred] if preferred else []
    order += [u for u in WEB_SERVERS if u != preferred]
    for unit in order:
        if ctx.runner.run(["systemctl", "start", unit], check=False, mutating=True).ok:
            ctx.log.log(f"Started {unit}")
            return unit
    ctx.log.warn("No web server could be started")
    return ""


def chown_tree(ctx: OpsContext, path: Path) -> None:
    owner = f"{ctx.settings.web_user}:{ctx.settings.web_user}"
    ctx.runner.run(["chown", "-R", owner, str(path)], label="chown", mutating=True)
