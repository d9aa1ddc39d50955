from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

MANIFEST_NAME = "BACKUP_MANIFEST.txt"
DATABASE_FILE = "database.sql.gz"
MOODLEDATA_FILE = "moodledata.tar.gz"
CONFIG_FILE = "config-files.tar.gz"
CODE_FILE = "moodle-code.tar.gz"


@dataclass(frozen=True)
class BackupManifest:
    backup_type: str
    backup_date: str
    timestamp: str
    db_name: str
    db_size: str
    moodledata_path: str
    moodledata_size: str
    config_size: str
    total_size: str = ""
    moodle_code_path: str = ""
    code_size: str = ""
    offsite: str = ""
    system_info: dict[str, str] = field(default_factory=dict)


def render_manifest(m: BackupManifest, *, generated: str = "") -> str:
    lines = [
        "# ============================================================================",
        "# Moodle Backup Manifest",
        f"# Generated: {generated or m.backup_date}",
        "# ============================================================================",
        "",
        f"Backup Type: {m.backup_type}",
        f"Backup Date: {m.backup_date}",
        f"Timestamp: {m.timestamp}",
    ]
    if m.total_size:
        lines.append(f"Total Size: {m.total_size}")
    if m.offsite:
        lines.append(f"Offsite: {m.offsite}")
    lines += [
        "",
        "Database:",
        f"  Name: {m.db_name}",
        f"  File: {DATABASE_FILE}",
        f"  Size: {m.db_size}",
        "",
        "Moodledata:",
        f"  Path: {m.moodledata_path}",
        f"  File: {MOODLEDATA_FILE}",
        f"  Size: {m.moodledata_size}",
        "",
        "Configuration:",
        f"  File: {CONFIG_FILE}",
        f"  Size: {m.config_size}",
    ]
    if m.moodle_code_path:
        lines += [
            "",
            "Moodle Code:",
            f"  Path: {m.moodle_code_path}",
            f"  File: {CODE_FILE}",
            f"  Size: {m.code_size}",
        ]
    if m.system_info:
        lines += ["", "System Info:"]
        lines += [f"  {k}: {v}" for k, v in m.system_info.items()]
    lines += [
        "",
        "Restore Instructions:",
        "  moodle-ops restore run <this directory>",
        "",
    ]
    return "\n".join(lines)


def parse_manifest(text: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if line[:1].isspace() or ":" not in line:
            continue
        key, _, value = line.partition(":")
        value = value.strip()
        if key and value and key not in out:
            out[key.strip()] = value
    return out


def read_manifest(backup_dir: Path) -> dict[str, str]:
    path = backup_dir / MANIFEST_NAME
    if not path.is_file():
        return {}
    return parse_manifest(path.read_text(encoding="utf-8", errors="replace"))
