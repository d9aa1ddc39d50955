from __future__ import annotations

import gzip
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .cli_shared import OpError, PrerequisiteError
from .oplog import OpsLog

_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _trim(text: str, limit: int = 400) -> str:
    t = (text or "").strip()
    if len(t) > limit:
        return t[:limit] + "..."
    return t


def _read_spool(spool) -> str:
    spool.seek(0)
    return spool.read().decode("utf-8", "replace")


def _child_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


class CommandRunner:
    def __init__(self, *, log: OpsLog | None = None, dry_run: bool = False, echo: bool = False) -> None:
        self.log = log
        self.dry_run = dry_run
        self.echo = echo

    def _announce(self, argv: Sequence[str], *, prefix: str = "+") -> None:
        line = f"{prefix} {shlex.join(list(argv))}"
        if self.log is not None:
            self.log.console.print(line, markup=False, highlight=False)
        else:
            print(line, flush=True)

    def run(
        self,
        argv: Sequence[str],
        *,
        label: str | None = None,
        input_text: str | None = None,
        env: dict[str, str] | None = None,
        cwd: str | Path | None = None,
        check: bool = True,
        mutating: bool = False,
    ) -> CommandResult:
        cmd = tuple(str(a) for a in argv)
        if mutating and self.dry_run:
            self._announce(cmd, prefix="DRYRUN")
            return CommandResult(argv=cmd, returncode=0)
        if self.echo:
            self._announce(cmd)
        try:
            cp = subprocess.run(
                list(cmd),
                input=input_text,
                text=True,
                capture_output=True,
                env=_child_env(env),
                cwd=str(cwd) if cwd else None,
            )
        except FileNotFoundError as e:
            raise PrerequisiteError(f"command not found: {cmd[0]}") from e
        result = CommandResult(argv=cmd, returncode=cp.returncode, stdout=cp.stdout or "", stderr=cp.stderr or "")
        if check and not result.ok:
            name = label or cmd[0]
            raise OpError(f"{name} failed (exit {result.returncode}): {_trim(result.stderr or result.stdout)}")
        return result

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def require_binary(self, name: str, *, hint: str = "") -> str:
        path = self.which(name)
        if not path:
            suffix = f" ({hint})" if hint else ""
            raise PrerequisiteError(f"required command not found: {name}{suffix}")
        return path

    def systemctl_is_active(self, unit: str) -> bool:
        if not self.which("systemctl"):
            return False
        return self.run(["systemctl", "is-active", "--quiet", unit], check=False).ok

    def dump_to_gzip(
        self,
        argv: Sequence[str],
        dest: Path,
        *,
        env: dict[str, str] | None = None,
        level: int = 6,
        label: str | None = None,
    ) -> None:
        cmd = [str(a) for a in argv]
        if self.dry_run:
            self._announce(cmd + ["|", "gzip", f"-{level}", ">", str(dest)], prefix="DRYRUN")
            return
        # stderr goes to a spool file; an undrained stderr pipe stalls the child
        with tempfile.TemporaryFile() as spool:
            try:
                proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=spool, env=_child_env(env))
            except FileNotFoundError as e:
                raise PrerequisiteError(f"command not found: {cmd[0]}") from e
            assert proc.stdout is not None
            with gzip.open(dest, "wb", compresslevel=level) as out:
                shutil.copyfileobj(proc.stdout, out, _CHUNK)
            proc.stdout.close()
            rc = proc.wait()
            err = _read_spool(spool)
        if rc != 0:
            dest.unlink(missing_ok=True)
            raise OpError(f"{label or cmd[0]} failed (exit {rc}): {_trim(err)}")

    def load_from_gzip(
        self,
        argv: Sequence[str],
        src: Path,
        *,
        env: dict[str, str] | None = None,
        label: str | None = None,
    ) -> None:
        cmd = [str(a) for a in argv]
        if self.dry_run:
            self._announce(["gunzip", "<", str(src), "|"] + cmd, prefix="DRYRUN")
            return
        with tempfile.TemporaryFile() as spool:
            try:
                proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, stderr=spool, env=_child_env(env))
            except FileNotFoundError as e:
                raise PrerequisiteError(f"command not found: {cmd[0]}") from e
            assert proc.stdin is not None
            try:
                with gzip.open(src, "rb") as fh:
                    shutil.copyfileobj(fh, proc.stdin, _CHUNK)
            except BrokenPipeError:
                # child exited early; reported through rc below
                pass
            except (OSError, EOFError) as e:
                proc.kill()
                proc.wait()
                raise OpError(f"failed to stream {src} into {cmd[0]}: {e}") from e
            finally:
                if not proc.stdin.closed:
                    try:
                        proc.stdin.close()
                    except BrokenPipeError:
                        pass
            rc = proc.wait()
            err = _read_spool(spool)
        if rc != 0:
            raise OpError(f"{label or cmd[0]} failed (exit {rc}): {_trim(err)}")


def require_root() -> None:
    if os.geteuid() != 0:
        raise PrerequisiteError("this command must be run as root")
