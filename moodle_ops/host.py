from __future__ import annotations

import os
import shutil
from pathlib import Path

from .cli_shared import OpError
from .context import OpsContext
from .runner import CommandResult, CommandRunner

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def apt_update(runner: CommandRunner) -> None:
    runner.run(["apt-get", "update", "-qq"], label="apt-get update", env=APT_ENV, mutating=True)


def apt_install(runner: CommandRunner, *packages: str, update: bool = True) -> None:
    if update:
        apt_update(runner)
    runner.run(
        ["apt-get", "install", "-y", "-qq", *packages],
        label="apt-get install",
        env=APT_ENV,
        mutating=True,
    )


def package_installed(runner: CommandRunner, name: str) -> bool:
    res = runner.run(["dpkg-query", "-W", "-f=${Status}", name], check=False)
    return res.ok and "install ok installed" in res.stdout


def systemctl(runner: CommandRunner, action: str, *units: str, check: bool = True) -> CommandResult:
    return runner.run(["systemctl", action, *units], label=f"systemctl {action}", check=check, mutating=True)


def active_web_server(runner: CommandRunner) -> str:
    """Return "apache" or "nginx" for the running web server, "" when neither runs."""
    if runner.systemctl_is_active("apache2"):
        return "apache"
    if runner.systemctl_is_active("nginx"):
        return "nginx"
    return ""


def php_version(runner: CommandRunner) -> str:
    if not runner.which("php"):
        return ""
    res = runner.run(["php", "-r", "echo PHP_MAJOR_VERSION.'.'.PHP_MINOR_VERSION;"], check=False)
    return res.stdout.strip() if res.ok else ""


class HostFiles:
    """Writes system files under an optional root, keeping a copy of what it replaces."""

    def __init__(self, ctx: OpsContext, *, backup_dir: Path, root: Path = Path("/")) -> None:
        self.ctx = ctx
        self.root = root
        self.backup_dir = backup_dir
        self.written: list[str] = []

    def path(self, abs_path: str) -> Path:
        return self.root / str(abs_path).lstrip("/")

    def read(self, abs_path: str) -> str:
        p = self.path(abs_path)
        return p.read_text(encoding="utf-8", errors="replace") if p.is_file() else ""

    def exists(self, abs_path: str) -> bool:
        return self.path(abs_path).exists()

    def backup(self, path: Path) -> None:
        if not path.is_file() or self.ctx.runner.dry_run:
            return
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, self.backup_dir / f"{path.name}.backup")
        self.ctx.log.info(f"Backed up: {path}")

    def write(self, abs_path: str, text: str, *, mode: int = 0o644) -> bool:
        path = self.path(abs_path)
        if self.ctx.runner.dry_run:
            self.ctx.log.log(f"DRYRUN write {path}")
            return False
        if path.is_file() and path.read_text(encoding="utf-8", errors="replace") == text:
            return False
        self.backup(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
            os.chmod(path, mode)
        except OSError as e:
            raise OpError(f"failed to write {path}: {e}") from e
        self.written.append(str(path))
        return True

    def mkdir(self, abs_path: str, *, mode: int = 0o755) -> Path:
        path = self.path(abs_path)
        if self.ctx.runner.dry_run:
            self.ctx.log.log(f"DRYRUN mkdir -p {path}")
            return path
        try:
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, mode)
        except OSError as e:
            raise OpError(f"failed to create {path}: {e}") from e
        return path
