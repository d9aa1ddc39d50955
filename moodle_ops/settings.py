from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .cli_shared import UsageError

DEFAULT_CONFIG_PATH = "/etc/moodle-ops.env"
MOODLE_OPS_CONFIG = "MOODLE_OPS_CONFIG"


@dataclass(frozen=True)
class Settings:
    moodle_dir: str = "/var/www/html/moodle"
    moodle_data: str = "/var/moodledata"
    backup_root: str = "/var/backups/moodle"
    db_name: str = "moodle_lms"
    db_user: str = "moodle_user"
    db_password: str = ""
    db_root_password: str = ""
    credentials_file: str = "/root/.moodle-credentials"
    backup_bucket: str = ""
    gcp_project: str = ""
    gcp_region: str = "us-central1"
    gcp_zone: str = "us-central1-a"
    notification_email: str = ""
    hmac_access_id: str = ""
    hmac_secret: str = ""
    web_user: str = "www-data"

    @property
    def config_php(self) -> Path:
        return Path(self.moodle_dir) / "config.php"

    def with_overrides(self, **kwargs: Any) -> "Settings":
        known = {f.name for f in fields(self)}
        clean = {k: v for k, v in kwargs.items() if k in known and v not in (None, "")}
        return replace(self, **clean)


_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "moodle_dir": ("MOODLE_DIR",),
    "moodle_data": ("MOODLE_DATA", "MOODLEDATA_DIR"),
    "backup_root": ("MOODLE_BACKUP_ROOT", "BACKUP_ROOT"),
    "db_name": ("MOODLE_DB_NAME",),
    "db_user": ("MOODLE_DB_USER",),
    "db_password": ("MOODLE_DB_PASSWORD",),
    "db_root_password": ("DB_ROOT_PASSWORD",),
    "credentials_file": ("MOODLE_CREDENTIALS_FILE",),
    "backup_bucket": ("MOODLE_BACKUP_BUCKET",),
    "gcp_project": ("GCP_PROJECT_ID", "GOOGLE_CLOUD_PROJECT"),
    "gcp_region": ("GCP_REGION",),
    "gcp_zone": ("GCP_ZONE",),
    "notification_email": ("BACKUP_NOTIFICATION_EMAIL",),
    "hmac_access_id": ("MOODLE_GCS_HMAC_ACCESS_ID",),
    "hmac_secret": ("MOODLE_GCS_HMAC_SECRET",),
    "web_user": ("MOODLE_WEB_USER",),
}


def load_config_file(config_path: str | None) -> Path | None:
    raw = (config_path or os.environ.get(MOODLE_OPS_CONFIG) or "").strip()
    if raw:
        path = Path(raw).expanduser()
        if not path.is_file():
            raise UsageError(f"config file not found: {path}")
    else:
        path = Path(DEFAULT_CONFIG_PATH)
        if not path.is_file():
            return None
    # The real environment wins over the file.
    load_dotenv(dotenv_path=path, override=False)
    return path


def settings_from_env(environ: dict[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    values: dict[str, str] = {}
    for attr, names in _ENV_KEYS.items():
        for n in names:
            v = (env.get(n) or "").strip()
            if v:
                values[attr] = v
                break
    return Settings(**values)
