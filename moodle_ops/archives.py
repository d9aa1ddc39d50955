from __future__ import annotations

import gzip
import tarfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .cli_shared import OpError

_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class TarCheck:
    ok: bool
    file_count: int = 0
    member_names: tuple[str, ...] = ()
    error: str = ""


def make_tar_gz(
    dest: Path,
    *,
    source: Path,
    excludes: Iterable[str] = (),
    level: int = 6,
) -> None:
    if not source.exists():
        raise OpError(f"archive source does not exist: {source}")
    base = source.name
    skip = {f"{base}/{e.strip('/')}" for e in excludes}

    def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        for s in skip:
            if info.name == s or info.name.startswith(s + "/"):
                return None
        return info

    try:
        with tarfile.open(dest, "w:gz", compresslevel=level) as tar:
            tar.add(str(source), arcname=base, filter=_filter)
    except (OSError, tarfile.TarError) as e:
        raise OpError(f"failed to create {dest}: {e}") from e


def make_tar_gz_of_files(dest: Path, files: Iterable[Path], *, level: int = 6) -> list[Path]:
    added: list[Path] = []
    try:
        with tarfile.open(dest, "w:gz", compresslevel=level) as tar:
            for f in files:
                if not f.exists():
                    continue
                tar.add(str(f), arcname=str(f).lstrip("/"))
                added.append(f)
    except (OSError, tarfile.TarError) as e:
        raise OpError(f"failed to create {dest}: {e}") from e
    return added


# extraction filters exist from 3.10.12 / 3.11.4 on
_EXTRACT_FILTER = {"filter": "tar"} if hasattr(tarfile, "tar_filter") else {}


def _check_members(tar: tarfile.TarFile, src: Path) -> None:
    for member in tar.getmembers():
        parts = Path(member.name).parts
        if member.name.startswith("/") or ".." in parts:
            raise OpError(f"refusing to extract {src}: unsafe member path {member.name!r}")


def extract_tar_gz(src: Path, dest: Path) -> None:
    try:
        with tarfile.open(src, "r:gz") as tar:
            _check_members(tar, src)
            tar.extractall(path=str(dest), **_EXTRACT_FILTER)
    except (OSError, tarfile.TarError) as e:
        raise OpError(f"failed to extract {src} into {dest}: {e}") from e


def check_tar_gz(path: Path, *, keep_names: int = 0) -> TarCheck:
    count = 0
    names: list[str] = []
    try:
        with tarfile.open(path, "r:gz") as tar:
            for member in tar:
                if member.isfile():
                    count += 1
                if keep_names and len(names) < keep_names:
                    names.append(member.name)
    except (OSError, EOFError, tarfile.TarError, zlib.error) as e:
        return TarCheck(ok=False, error=str(e))
    return TarCheck(ok=True, file_count=count, member_names=tuple(names))


def tar_has_member(path: Path, fragment: str) -> bool:
    try:
        with tarfile.open(path, "r:gz") as tar:
            return any(fragment in m.name for m in tar)
    except (OSError, EOFError, tarfile.TarError, zlib.error):
        return False


def gzip_ok(path: Path) -> bool:
    try:
        with gzip.open(path, "rb") as fh:
            while fh.read(_CHUNK):
                pass
    except (OSError, EOFError, zlib.error):
        return False
    return True


def gzip_head_lines(path: Path, limit: int) -> list[str]:
    out: list[str] = []
    try:
        with gzip.open(path, "rt", encoding="utf-8", errors="replace") as fh:
            for line in fh:
                out.append(line)
                if len(out) >= limit:
                    break
    except (OSError, EOFError, zlib.error):
        return out
    return out
