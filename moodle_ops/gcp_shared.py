from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .cli_shared import PrerequisiteError, UsageError
from .oplog import OpsLog
from .runner import CommandResult, CommandRunner
from .settings import Settings

GCLOUD_BIN = "gcloud"


@dataclass(frozen=True)
class Gcloud:
    runner: CommandRunner
    project: str = ""

    def argv(self, args: Sequence[str]) -> list[str]:
        base = [GCLOUD_BIN, "--quiet"]
        if self.project:
            base += ["--project", self.project]
        return base + [str(a) for a in args]

    def run(
        self,
        *args: str,
        label: str | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        return self.runner.run(
            self.argv(args),
            label=label or f"gcloud {' '.join(args[:2])}",
            input_text=input_text,
            check=check,
            mutating=True,
        )

    def query(self, *args: str) -> CommandResult:
        if self.runner.dry_run and not self.runner.which(GCLOUD_BIN):
            return CommandResult(argv=tuple(self.argv(args)), returncode=1)
        return self.runner.run(self.argv(args), check=False)

    def exists(self, *args: str) -> bool:
        return self.query(*args).ok

    def value(self, *args: str) -> str:
        res = self.query(*args)
        return res.stdout.strip() if res.ok else ""


def active_account(runner: CommandRunner) -> str:
    res = runner.run(
        [GCLOUD_BIN, "auth", "list", "--filter=status:ACTIVE", "--format=value(account)"],
        check=False,
    )
    if not res.ok:
        return ""
    for line in res.stdout.splitlines():
        if "@" in line:
            return line.strip()
    return ""


def require_gcloud(runner: CommandRunner, log: OpsLog | None = None) -> str:
    if not runner.which(GCLOUD_BIN):
        if runner.dry_run:
            if log is not None:
                log.warn("gcloud CLI not found; dry run continues without it")
            return ""
        raise PrerequisiteError("gcloud CLI not found (https://cloud.google.com/sdk/docs/install)")
    account = active_account(runner)
    if not account:
        if runner.dry_run:
            return ""
        raise PrerequisiteError("not authenticated with gcloud (run: gcloud auth login)")
    return account


def default_project(runner: CommandRunner) -> str:
    if not runner.which(GCLOUD_BIN):
        return ""
    res = runner.run([GCLOUD_BIN, "config", "get-value", "project"], check=False)
    p = res.stdout.strip() if res.ok else ""
    # `gcloud config get-value project` prints "(unset)" when unset.
    if not p or p == "(unset)":
        return ""
    return p


def resolve_project(explicit: str | None, settings: Settings, runner: CommandRunner) -> str:
    project = (explicit or "").strip() or settings.gcp_project or default_project(runner)
    if not project:
        raise UsageError("missing GCP project (pass --project, set GCP_PROJECT_ID, or run: gcloud config set project ID)")
    return project


@dataclass(frozen=True)
class VmNames:
    instance: str
    static_ip: str
    data_disk: str
    snapshot_schedule: str = "moodle-daily-snapshots"
    http_rule: str = "allow-http-moodle"
    https_rule: str = "allow-https-moodle"

    @classmethod
    def for_instance(cls, instance: str) -> "VmNames":
        return cls(instance=instance, static_ip=f"{instance}-ip", data_disk=f"{instance}-data")


@dataclass(frozen=True)
class IapNames:
    router: str = "nat-router"
    nat: str = "nat-config"
    ssh_rule: str = "allow-iap-ssh"
    https_rule: str = "allow-iap-https"
    source_range: str = "35.235.240.0/20"
