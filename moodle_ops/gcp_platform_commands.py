from __future__ import annotations

import argparse
import base64
import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .cli_shared import GlobalOpts, OpError, UsageError, _print_json, _write_secure_text
from .context import OpsContext
from .gcp_commands import _gcp_context
from .gcp_shared import Gcloud

# Service account

SERVICE_ACCOUNT_NAME = "moodle-vm-service-account"
SERVICE_ACCOUNT_ROLES = (
    "roles/logging.logWriter",
    "roles/monitoring.metricWriter",
    "roles/secretmanager.secretAccessor",
    "roles/storage.objectAdmin",
)
DANGEROUS_ROLES = ("roles/owner", "roles/editor", "roles/viewer", "roles/iam.serviceAccountUser")
SERVICE_ACCOUNT_INFO = ".moodle-vm-service-account.txt"


def service_account_email(name: str, project: str) -> str:
    return f"{name}@{project}.iam.gserviceaccount.com"


def setup_service_account(ctx: OpsContext, gc: Gcloud, *, name: str = SERVICE_ACCOUNT_NAME) -> dict[str, Any]:
    log = ctx.log
    email = service_account_email(name, gc.project)
    out: dict[str, Any] = {"email": email, "created": False, "roles": [], "dangerousRoles": []}

    log.section("Service account")
    if gc.exists("iam", "service-accounts", "describe", email):
        log.warn(f"Service account already exists: {email}")
    else:
        gc.run(
            "iam", "service-accounts", "create", name,
            "--display-name=Moodle VM Service Account",
            "--description=Least-privilege identity for the Moodle VM",
        )
        out["created"] = True
        log.success(f"Service account created: {email}")

    log.section("Granting roles")
    for role in SERVICE_ACCOUNT_ROLES:
        res = gc.run("projects", "add-iam-policy-binding", gc.project, f"--member=serviceAccount:{email}",
                     f"--role={role}", "--condition=None", check=False)
        if res.ok:
            out["roles"].append(role)
        else:
            log.warn(f"Failed to grant {role}")

    granted = gc.value(
        "projects", "get-iam-policy", gc.project,
        "--flatten=bindings[].members",
        f"--filter=bindings.members:serviceAccount:{email}",
        "--format=value(bindings.role)",
    ).split()
    out["dangerousRoles"] = sorted(r for r in granted if r in DANGEROUS_ROLES)
    for role in out["dangerousRoles"]:
        log.warn(f"{email} holds {role}; remove it: gcloud projects remove-iam-policy-binding {gc.project} "
                 f"--member=serviceAccount:{email} --role={role}")
    return out


def service_account_info(email: str, project: str, roles: list[str]) -> str:
    lines = [f"SERVICE_ACCOUNT_EMAIL={email}", f"PROJECT_ID={project}", f"ROLES={','.join(roles)}"]
    lines.append(f"VM_FLAGS=--service-account={email} --scopes=cloud-platform")
    return "\n".join(lines) + "\n"


def cmd_gcp_service_account_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    name = (getattr(args, "name", None) or SERVICE_ACCOUNT_NAME).strip()
    if not re.fullmatch(r"[a-z][a-z0-9-]{4,28}[a-z0-9]", name):
        raise UsageError(f"invalid service account name: {name} (6-30 chars, lowercase letters, digits, hyphens)")
    ctx, gc = _gcp_context(g, args, tool="gcp-service-account")
    out = setup_service_account(ctx, gc, name=name)
    info = getattr(args, "info_file", None)
    if info and not ctx.runner.dry_run:
        path = Path(info).expanduser()
        _write_secure_text(path=path, text=service_account_info(out["email"], gc.project, out["roles"]))
        out["infoFile"] = str(path)
    ctx.log.log(f"Attach to the VM with: --service-account={out['email']} --scopes=cloud-platform")
    ctx.log.wide_event("success", email=out["email"], roles=len(out["roles"]))
    _print_json(out, pretty=g.pretty)
    return 0


# Cloud CDN

CACHE_MODES = {
    "static": "CACHE_ALL_STATIC",
    "origin": "USE_ORIGIN_HEADERS",
    "force": "FORCE_CACHE_ALL",
}
NEGATIVE_CACHING_POLICY = "404=120,500=60,501=60,502=60,503=30,504=30"
TRACKING_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "fbclid", "gclid")
CLIENT_TTL = 31536000
SERVE_WHILE_STALE = 86400
SIGNED_URL_MAX_AGE = 3600


@dataclass(frozen=True)
class CdnConfig:
    backend_service: str
    cache_mode: str = "static"
    ttl: int = 3600
    compression: bool = False
    negative_caching: bool = False
    cache_keys: bool = False
    signed_urls: bool = False
    key_file: Path = Path("cdn-signing-key.txt")


def cdn_update_flags(cfg: CdnConfig) -> list[str]:
    flags = ["--enable-cdn", f"--cache-mode={CACHE_MODES[cfg.cache_mode]}"]
    if cfg.cache_mode != "origin":
        flags += [f"--default-ttl={cfg.ttl}", f"--client-ttl={CLIENT_TTL}", f"--max-ttl={max(cfg.ttl, CLIENT_TTL)}"]
    if cfg.compression:
        flags.append("--compression-mode=AUTOMATIC")
    if cfg.negative_caching:
        flags += ["--negative-caching", f"--negative-caching-policy={NEGATIVE_CACHING_POLICY}"]
    if cfg.cache_keys:
        flags += ["--cache-key-include-query-string", f"--cache-key-query-string-blacklist={','.join(TRACKING_PARAMS)}"]
    if cfg.signed_urls:
        flags.append(f"--signed-url-cache-max-age={SIGNED_URL_MAX_AGE}")
    flags.append(f"--serve-while-stale={SERVE_WHILE_STALE}")
    return flags


def new_signing_key() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(16)).decode("ascii")


def setup_cdn(ctx: OpsContext, gc: Gcloud, cfg: CdnConfig) -> dict[str, Any]:
    log = ctx.log
    if not gc.exists("compute", "backend-services", "describe", cfg.backend_service, "--global"):
        raise OpError(f"backend service not found: {cfg.backend_service}")
    out: dict[str, Any] = {"backendService": cfg.backend_service, "cacheMode": CACHE_MODES[cfg.cache_mode]}

    log.section("Enabling Cloud CDN")
    flags = cdn_update_flags(cfg)
    gc.run("compute", "backend-services", "update", cfg.backend_service, "--global", *flags)
    out["flags"] = flags
    log.success(f"Cloud CDN enabled on {cfg.backend_service} ({out['cacheMode']})")

    if cfg.signed_urls:
        key_name = f"cdn-signing-key-{ctx.now().strftime('%Y%m%d')}"
        if ctx.runner.dry_run:
            log.log(f"DRYRUN write signing key to {cfg.key_file}")
        else:
            _write_secure_text(path=cfg.key_file, text=new_signing_key() + "\n")
        gc.run("compute", "backend-services", "add-signed-url-key", cfg.backend_service, "--global",
               f"--key-name={key_name}", f"--key-file={cfg.key_file}")
        out["signedUrlKey"] = {"name": key_name, "file": str(cfg.key_file)}
        log.warn(f"Keep {cfg.key_file} secret; it signs every CDN URL")
    return out


def cmd_gcp_cdn_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    backend = (getattr(args, "backend_service", None) or "").strip()
    if not backend:
        raise UsageError("missing --backend-service")
    mode = (getattr(args, "cache_mode", None) or "static").strip().lower()
    if mode not in CACHE_MODES:
        raise UsageError(f"invalid --cache-mode: {mode} (expected {', '.join(CACHE_MODES)})")
    ttl = int(getattr(args, "ttl", None) or 3600)
    if ttl <= 0:
        raise UsageError(f"invalid --ttl: {ttl}")
    ctx, gc = _gcp_context(g, args, tool="gcp-cdn")
    cfg = CdnConfig(
        backend_service=backend,
        cache_mode=mode,
        ttl=ttl,
        compression=bool(getattr(args, "compression", False)),
        negative_caching=bool(getattr(args, "negative_caching", False)),
        cache_keys=bool(getattr(args, "cache_keys", False)),
        signed_urls=bool(getattr(args, "signed_urls", False)),
        key_file=Path(getattr(args, "key_file", None) or "cdn-signing-key.txt"),
    )
    out = setup_cdn(ctx, gc, cfg)
    ctx.log.wide_event("success", backendService=backend, cacheMode=out["cacheMode"])
    _print_json(out, pretty=g.pretty)
    return 0


# Security Command Center

SCC_APIS = (
    "securitycenter.googleapis.com",
    "containerthreatdetection.googleapis.com",
    "websecurityscanner.googleapis.com",
    "eventarcpublishing.googleapis.com",
)
SCC_TIERS = ("standard", "premium")
SCC_NOTIFY_FILTER = 'state="ACTIVE" AND severity="CRITICAL"'


@dataclass(frozen=True)
class SccConfig:
    org: str = ""
    tier: str = "standard"
    export_dataset: str = ""
    notify_topic: str = ""

    @property
    def parent_flag(self) -> str:
        return f"--organization={self.org}" if self.org else ""


def setup_scc(ctx: OpsContext, gc: Gcloud, cfg: SccConfig) -> dict[str, Any]:
    log = ctx.log
    parent = f"organizations/{cfg.org}" if cfg.org else f"projects/{gc.project}"
    out: dict[str, Any] = {"parent": parent, "tier": cfg.tier, "apis": [], "export": None, "notification": None}

    log.section("Enabling Security Command Center APIs")
    for api in SCC_APIS:
        if gc.run("services", "enable", api, check=False).ok:
            out["apis"].append(api)
        else:
            log.warn(f"Could not enable {api}")
    if not cfg.org:
        log.warn("Project-level SCC has limited detectors; organization level gives full coverage")

    if cfg.export_dataset:
        log.section("BigQuery findings export")
        dataset = f"{gc.project}:{cfg.export_dataset}"
        bq_ls = ctx.runner.run(["bq", "ls", "-d", dataset], check=False) if ctx.runner.which("bq") else None
        if bq_ls is not None and bq_ls.ok:
            log.log(f"BigQuery dataset already exists: {dataset}")
        else:
            ctx.runner.require_binary("bq", hint="install the Google Cloud SDK bq component")
            ctx.runner.run(
                ["bq", "mk", "--dataset", "--location=US",
                 "--description=Security Command Center continuous export", dataset],
                label="bq mk", mutating=True,
            )
        export = "moodle-scc-export"
        scope = [cfg.parent_flag] if cfg.org else [f"--project={gc.project}"]
        res = gc.run("scc", "bqexports", "create", export, *scope,
                     f"--dataset=projects/{gc.project}/datasets/{cfg.export_dataset}",
                     "--description=Moodle SCC findings export", check=False)
        if not res.ok:
            log.warn(f"Could not create the findings export; configure it in the console ({res.stderr.strip()})")
        out["export"] = {"dataset": dataset, "export": export if res.ok else None}

    if cfg.notify_topic:
        if not cfg.org:
            log.warn("SCC notifications need an organization; skipping --notify-topic")
        else:
            log.section("Critical finding notifications")
            topic = f"projects/{gc.project}/topics/{cfg.notify_topic}"
            if not gc.exists("pubsub", "topics", "describe", cfg.notify_topic):
                gc.run("pubsub", "topics", "create", cfg.notify_topic)
            name = "moodle-critical-findings"
            res = gc.run("scc", "notifications", "create", name, cfg.parent_flag,
                         f"--pubsub-topic={topic}", f"--filter={SCC_NOTIFY_FILTER}", check=False)
            if res.ok:
                out["notification"] = {"name": name, "topic": topic}
            else:
                log.warn(f"Could not create notification config: {res.stderr.strip()}")

    res = gc.query("scc", "findings", "list", parent, "--limit=1", "--format=value(name)")
    out["findingsReadable"] = res.ok
    if res.ok:
        log.success(f"Findings readable under {parent}")
    elif not ctx.runner.dry_run:
        log.warn(f"Could not list findings under {parent}; SCC may still be activating")
    return out


def cmd_gcp_scc_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    org = (getattr(args, "org", None) or "").strip()
    project = (getattr(args, "project", None) or "").strip()
    if org and project:
        raise UsageError("--org and --project are mutually exclusive")
    if org and not org.isdigit():
        raise UsageError(f"invalid --org: {org} (numeric organization id)")
    tier = (getattr(args, "tier", None) or "standard").strip().lower()
    if tier not in SCC_TIERS:
        raise UsageError(f"invalid --tier: {tier} (expected standard or premium)")
    if org and not getattr(args, "confirm_org_activated", False):
        raise UsageError(
            "activate SCC for the organization in the console first "
            f"(https://console.cloud.google.com/security/command-center/organizations/{org}), "
            "then pass --confirm-org-activated"
        )
    dataset = ""
    if getattr(args, "enable_export", False):
        dataset = (getattr(args, "export_dataset", None) or "scc_findings").strip()
        if not re.fullmatch(r"\w{1,1024}", dataset):
            raise UsageError(f"invalid --export-dataset: {dataset}")
    ctx, gc = _gcp_context(g, args, tool="gcp-scc")
    cfg = SccConfig(org=org, tier=tier, export_dataset=dataset,
                    notify_topic=(getattr(args, "notify_topic", None) or "").strip())
    out = setup_scc(ctx, gc, cfg)
    ctx.log.wide_event("success", parent=out["parent"], apis=len(out["apis"]))
    _print_json(out, pretty=g.pretty)
    return 0
