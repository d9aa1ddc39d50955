from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .credentials import DbCredentials
from .runner import CommandResult, CommandRunner

DUMP_FLAGS = (
    "--single-transaction",
    "--quick",
    "--lock-tables=false",
    "--routines",
    "--triggers",
    "--events",
)

CLEANUP_SQL = (
    "DROP DATABASE IF EXISTS test;\n"
    "DELETE FROM mysql.db WHERE Db='test' OR Db='test\\\\_%';\n"
    "DELETE FROM mysql.global_priv WHERE User='';\n"
    "DELETE FROM mysql.global_priv WHERE User='root' AND Host NOT IN ('localhost', '127.0.0.1', '::1');\n"
    "FLUSH PRIVILEGES;\n"
)


def sql_string(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def sql_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


@dataclass(frozen=True)
class MysqlClient:
    runner: CommandRunner
    user: str
    password: str = ""
    host: str = ""
    connect_timeout: int = 0

    def _env(self) -> dict[str, str]:
        # Passwords travel through the environment, never argv.
        return {"MYSQL_PWD": self.password} if self.password else {}

    def _base(self, binary: str) -> list[str]:
        argv = [binary, "-u", self.user]
        if self.host:
            argv += ["-h", self.host]
        if self.connect_timeout:
            argv.append(f"--connect-timeout={self.connect_timeout}")
        return argv

    def execute(
        self,
        sql: str,
        *,
        database: str | None = None,
        check: bool = True,
        mutating: bool = False,
    ) -> CommandResult:
        argv = self._base("mysql") + ["-N", "-B", "-e", sql]
        if database:
            argv.append(database)
        return self.runner.run(argv, label="mysql", env=self._env(), check=check, mutating=mutating)

    def script(self, sql: str, *, label: str = "mysql", check: bool = True) -> CommandResult:
        # SQL on stdin keeps literals such as new passwords out of argv.
        return self.runner.run(
            self._base("mysql"), label=label, input_text=sql, env=self._env(), check=check, mutating=True
        )

    def rows(self, sql: str, *, database: str | None = None) -> list[list[str]]:
        out = self.execute(sql, database=database).stdout
        return [line.split("\t") for line in out.splitlines() if line.strip()]

    def scalar(self, sql: str, *, database: str | None = None) -> str:
        rows = self.rows(sql, database=database)
        if not rows or not rows[0]:
            return ""
        return rows[0][0].strip()

    def ping(self) -> bool:
        return self.execute("SELECT 1", check=False).ok

    def dump(self, database: str, dest: Path, *, level: int = 6) -> None:
        argv = self._base("mysqldump") + list(DUMP_FLAGS) + [database]
        self.runner.dump_to_gzip(argv, dest, env=self._env(), level=level, label="mysqldump")

    def load(self, database: str, src: Path) -> None:
        self.runner.load_from_gzip(self._base("mysql") + [database], src, env=self._env(), label="mysql import")

    def mysqlcheck(self, *flags: str, database: str) -> CommandResult:
        argv = self._base("mysqlcheck") + list(flags) + [database]
        return self.runner.run(argv, label="mysqlcheck", env=self._env(), mutating=True)


def admin_client(runner: CommandRunner, creds: DbCredentials) -> MysqlClient:
    if creds.has_root:
        return MysqlClient(runner=runner, user="root", password=creds.root_password)
    return MysqlClient(runner=runner, user=creds.user, password=creds.password)


def root_client(runner: CommandRunner, creds: DbCredentials) -> MysqlClient:
    return MysqlClient(runner=runner, user="root", password=creds.root_password)
