from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from .cli_shared import OpError, _write_secure_text
from .runner import CommandRunner
from .settings import Settings

SECRET_DB_USER = "moodle-db-user"
SECRET_DB_PASSWORD = "moodle-db-password"
SECRET_DB_ROOT_PASSWORD = "db-root-password"
SECRET_SMTP_USER = "moodle-smtp-user"
SECRET_SMTP_PASSWORD = "moodle-smtp-password"

SOURCE_SECRET_MANAGER = "secret-manager"
SOURCE_FILE = "credentials-file"
SOURCE_ENV = "environment"


@dataclass(frozen=True)
class DbCredentials:
    name: str
    user: str
    password: str = ""
    root_password: str = ""
    sources: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_root(self) -> bool:
        return bool(self.root_password)

    @property
    def usable(self) -> bool:
        return bool(self.root_password or self.password)


def read_credentials_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        return {}
    try:
        raw = dotenv_values(path)
    except OSError as e:
        raise OpError(f"failed to read credentials file {path}: {e}") from e
    return {str(k): str(v) for k, v in raw.items() if k and v is not None}


def write_credentials_file(path: Path, values: dict[str, str], *, header: str = "") -> None:
    lines: list[str] = []
    if header:
        lines.extend(f"# {h}" if h else "#" for h in header.splitlines())
    for k, v in values.items():
        lines.append(f"{k}={v}")
    _write_secure_text(path=path, text="\n".join(lines) + "\n")


def access_secret(runner: CommandRunner, *, name: str, project: str) -> str | None:
    res = runner.run(
        [
            "gcloud",
            "secrets",
            "versions",
            "access",
            "latest",
            f"--secret={name}",
            f"--project={project}",
        ],
        check=False,
    )
    if not res.ok:
        return None
    value = res.stdout.rstrip("\n")
    return value or None


def secret_manager_available(runner: CommandRunner, settings: Settings) -> bool:
    return bool(settings.gcp_project) and runner.which("gcloud") is not None


def resolve_db_credentials(settings: Settings, runner: CommandRunner) -> DbCredentials:
    name = settings.db_name
    user = settings.db_user
    password = settings.db_password
    root_password = settings.db_root_password
    sources: list[str] = [SOURCE_ENV]

    file_values = read_credentials_file(Path(settings.credentials_file))
    if file_values:
        sources.append(SOURCE_FILE)
        name = file_values.get("MOODLE_DB_NAME") or name
        user = file_values.get("MOODLE_DB_USER") or user
        password = file_values.get("MOODLE_DB_PASSWORD") or password
        root_password = file_values.get("DB_ROOT_PASSWORD") or root_password

    if secret_manager_available(runner, settings):
        found = False
        for secret, attr in (
            (SECRET_DB_USER, "user"),
            (SECRET_DB_PASSWORD, "password"),
            (SECRET_DB_ROOT_PASSWORD, "root_password"),
        ):
            value = access_secret(runner, name=secret, project=settings.gcp_project)
            if value is None:
                continue
            found = True
            if attr == "user":
                user = value
            elif attr == "password":
                password = value
            else:
                root_password = value
        if found:
            sources.append(SOURCE_SECRET_MANAGER)

    return DbCredentials(
        name=name,
        user=user,
        password=password,
        root_password=root_password,
        sources=tuple(reversed(sources)),
    )
