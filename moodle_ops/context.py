from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .cli_shared import GlobalOpts
from .credentials import DbCredentials, resolve_db_credentials
from .oplog import OpsLog
from .runner import CommandRunner
from .settings import Settings


@dataclass
class OpsContext:
    settings: Settings
    runner: CommandRunner
    log: OpsLog
    clock: Callable[[], datetime] = datetime.now
    _creds: DbCredentials | None = field(default=None, repr=False)

    def now(self) -> datetime:
        return self.clock()

    def credentials(self) -> DbCredentials:
        if self._creds is None:
            self._creds = resolve_db_credentials(self.settings, self.runner)
        return self._creds


def build_ops_context(g: GlobalOpts, *, tool: str, default_log_file: str = "") -> OpsContext:
    log = OpsLog(tool=tool, log_file=g.log_file or default_log_file or None, quiet=g.quiet)
    runner = CommandRunner(log=log, dry_run=g.dry_run)
    return OpsContext(settings=g.settings, runner=runner, log=log)
