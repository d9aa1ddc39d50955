from __future__ import annotations

import argparse
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.prompt import Prompt

from .cli_shared import GlobalOpts, OpError, UsageError, _mask_secret, _parse_csv, _print_json, _write_secure_text
from .context import OpsContext, build_ops_context
from .credentials import (
    SECRET_DB_PASSWORD,
    SECRET_DB_ROOT_PASSWORD,
    SECRET_DB_USER,
    SECRET_SMTP_PASSWORD,
    SECRET_SMTP_USER,
    read_credentials_file,
)
from .gcp_shared import Gcloud, IapNames, VmNames, require_gcloud, resolve_project

DEFAULT_POLICY = "moodle-waf-policy"
DEFAULT_RULE_PRIORITY = "2147483647"
OWASP_RULES: tuple[tuple[int, str, str], ...] = (
    (9001, "sqli", "SQL Injection"),
    (9002, "xss", "Cross-Site Scripting (XSS)"),
    (9003, "lfi", "Local File Inclusion (LFI)"),
    (9004, "rce", "Remote Code Execution (RCE)"),
    (9005, "rfi", "Remote File Inclusion (RFI)"),
    (9006, "methodenforcement", "Method Enforcement"),
    (9007, "scannerdetection", "Scanner Detection"),
    (9008, "protocolattack", "Protocol Attack"),
    (9009, "sessionfixation", "Session Fixation"),
    (9010, "php", "PHP Injection"),
    (9011, "nodejs", "NodeJS Injection"),
    (9012, "java", "Java Injection"),
)
SCANNER_AGENTS = "nikto|sqlmap|nmap|masscan|metasploit|burp|w3af|acunetix"

IAP_APIS = ("compute.googleapis.com", "iap.googleapis.com", "cloudresourcemanager.googleapis.com")
IAP_WEB_ROLE = "roles/iap.httpsResourceAccessor"
IAP_TUNNEL_ROLE = "roles/iap.tunnelResourceAccessor"

SECRETS_SERVICE_ACCOUNT = "moodle-vm-secrets"
SECRET_ACCESSOR_ROLE = "roles/secretmanager.secretAccessor"
SECRET_HELPER_PATH = "/usr/local/bin/get-moodle-secret"
# Credentials file key -> Secret Manager name.
CREDENTIAL_SECRETS: tuple[tuple[str, str], ...] = (
    ("MOODLE_DB_USER", SECRET_DB_USER),
    ("MOODLE_DB_PASSWORD", SECRET_DB_PASSWORD),
    ("SMTP_USER", SECRET_SMTP_USER),
    ("SMTP_PASSWORD", SECRET_SMTP_PASSWORD),
    ("DB_ROOT_PASSWORD", SECRET_DB_ROOT_PASSWORD),
)
SECRET_HELPER = """\
#!/bin/bash
# Print a Moodle secret from Google Secret Manager.
# Usage: get-moodle-secret SECRET_NAME
set -e
SECRET_NAME="$1"
if [[ -z "$SECRET_NAME" ]]; then
    echo "Usage: get-moodle-secret SECRET_NAME" >&2
    exit 1
fi
PROJECT_ID="${GCP_PROJECT_ID:-$(gcloud config get-value project 2>/dev/null || curl -s -H 'Metadata-Flavor: Google' http://metadata.google.internal/computeMetadata/v1/project/project-id)}"
gcloud secrets versions access latest --secret="$SECRET_NAME" --project="$PROJECT_ID"
"""

VM_TAGS = "http-server,https-server,moodle-vm"
VM_IMAGE_FAMILY = "ubuntu-2204-lts"
VM_IMAGE_PROJECT = "ubuntu-os-cloud"
VM_STARTUP_SCRIPT = """\
#!/bin/bash
# Mount the Moodle data disk and link moodledata and backups onto it.
if ! grep -q "/dev/sdb" /etc/fstab; then
    if ! lsblk -f /dev/sdb | grep -q ext4; then
        mkfs.ext4 -F /dev/sdb
    fi
    mkdir -p /mnt/moodle-data
    echo "/dev/sdb /mnt/moodle-data ext4 defaults,nofail 0 2" >> /etc/fstab
    mount /mnt/moodle-data
fi
mkdir -p /mnt/moodle-data/moodledata /mnt/moodle-data/backups /var/backups
ln -sfn /mnt/moodle-data/moodledata /var/moodledata
ln -sfn /mnt/moodle-data/backups /var/backups/moodle
chown -R www-data:www-data /mnt/moodle-data
"""

RUN_DEFAULT_SECRETS = (
    f"MOODLE_DB_USER={SECRET_DB_USER}:latest",
    f"MOODLE_DB_PASSWORD={SECRET_DB_PASSWORD}:latest",
    f"SMTP_USER={SECRET_SMTP_USER}:latest",
    f"SMTP_PASSWORD={SECRET_SMTP_PASSWORD}:latest",
)


def _gcp_context(g: GlobalOpts, args: argparse.Namespace, *, tool: str) -> tuple[OpsContext, Gcloud]:
    ctx = build_ops_context(g, tool=tool)
    account = require_gcloud(ctx.runner, ctx.log)
    if account:
        ctx.log.log(f"gcloud authenticated as {account}")
    project = resolve_project(getattr(args, "project", None), ctx.settings, ctx.runner)
    ctx.log.log(f"Using GCP project: {project}")
    return ctx, Gcloud(runner=ctx.runner, project=project)


# Cloud Armor


@dataclass(frozen=True)
class ArmorRule:
    priority: int
    description: str
    flags: tuple[str, ...]
    optional: bool = False


@dataclass(frozen=True)
class ArmorConfig:
    backend_service: str
    policy: str = DEFAULT_POLICY
    sensitivity: int = 1
    allow_ips: tuple[str, ...] = ()
    countries: tuple[str, ...] = ()
    preview: bool = False
    adaptive: bool = False
    verbose_logging: bool = False
    recreate: bool = False


def validate_sensitivity(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise UsageError(f"sensitivity must be 1-4, got {raw!r}") from e
    if value not in (1, 2, 3, 4):
        raise UsageError(f"sensitivity must be 1-4, got {value}")
    return value


def cidr_list(ips: tuple[str, ...]) -> str:
    return ",".join(ip if "/" in ip else f"{ip}/32" for ip in ips)


def geo_expression(countries: tuple[str, ...]) -> str:
    codes = [c.strip().upper() for c in countries if c.strip()]
    for code in codes:
        if len(code) != 2 or not code.isalpha():
            raise UsageError(f"invalid country code: {code!r} (expected ISO 3166 alpha-2)")
    return f"!origin.region_code.matches('^({'|'.join(codes)})$')"


def build_armor_rules(cfg: ArmorConfig) -> list[ArmorRule]:
    rules: list[ArmorRule] = []
    if cfg.allow_ips:
        rules.append(ArmorRule(1000, "Allowlist trusted IPs", (f"--src-ip-ranges={cidr_list(cfg.allow_ips)}", "--action=allow")))
    if cfg.countries:
        rules.append(
            ArmorRule(2000, "Allow only specific countries", (f"--expression={geo_expression(cfg.countries)}", "--action=deny-403"))
        )
    rate = ("--action=rate-based-ban", "--conform-action=allow", "--exceed-action=deny-429", "--enforce-on-key=IP",
            "--rate-limit-threshold-interval-sec=60")
    rules.append(
        ArmorRule(3000, "General rate limit: 100 req/min per IP",
                  ("--expression=true", "--rate-limit-threshold-count=100", "--ban-duration-sec=600") + rate)
    )
    rules.append(
        ArmorRule(3001, "Login rate limit: 10 req/min per IP",
                  ("--expression=request.path.matches('/login/.*')", "--rate-limit-threshold-count=10",
                   "--ban-duration-sec=300") + rate)
    )
    action = "allow" if cfg.preview else "deny-403"
    for priority, rule_id, desc in OWASP_RULES:
        flags = (
            f"--expression=evaluatePreconfiguredWaf('{rule_id}-v33-stable', {{'sensitivity': {cfg.sensitivity}}})",
            f"--action={action}",
        )
        if cfg.preview:
            flags += ("--preview",)
        rules.append(ArmorRule(priority, f"Block {desc}", flags, optional=True))
    rules.append(
        ArmorRule(8000, "Block malicious user agents",
                  (f"--expression=request.headers['user-agent'].matches('(?i)({SCANNER_AGENTS})')", "--action=deny-403"))
    )
    rules.append(
        ArmorRule(8001, "Block suspicious query parameters",
                  ("--expression=request.query.matches('.*(<script|javascript:|onerror=|onload=).*')", "--action=deny-403"))
    )
    return rules


def setup_armor(ctx: OpsContext, gc: Gcloud, cfg: ArmorConfig) -> dict[str, Any]:
    log = ctx.log
    if not gc.exists("compute", "backend-services", "describe", cfg.backend_service, "--global"):
        available = gc.value("compute", "backend-services", "list", "--format=value(name)")
        raise OpError(f"backend service not found: {cfg.backend_service} (available: {available.replace(chr(10), ', ') or 'none'})")

    log.section(f"Cloud Armor security policy: {cfg.policy}")
    existed = gc.exists("compute", "security-policies", "describe", cfg.policy)
    if existed and cfg.recreate:
        gc.run("compute", "security-policies", "delete", cfg.policy)
        log.info("Deleted existing policy")
        existed = False
    if existed:
        log.warn(f"Security policy already exists, reusing: {cfg.policy}")
    else:
        gc.run("compute", "security-policies", "create", cfg.policy,
               "--description=Cloud Armor WAF for Moodle - OWASP Top 10 Protection")
        log.success(f"Created security policy: {cfg.policy}")
    gc.run("compute", "security-policies", "rules", "update", DEFAULT_RULE_PRIORITY,
           f"--security-policy={cfg.policy}", "--action=allow")

    applied: list[int] = []
    skipped: list[int] = []
    for rule in build_armor_rules(cfg):
        verb = "create"
        if existed and gc.exists("compute", "security-policies", "rules", "describe", str(rule.priority),
                                 f"--security-policy={cfg.policy}"):
            verb = "update"
        res = gc.run("compute", "security-policies", "rules", verb, str(rule.priority),
                     f"--security-policy={cfg.policy}", f"--description={rule.description}", *rule.flags,
                     check=not rule.optional)
        if res.ok:
            applied.append(rule.priority)
            log.log(f"Rule {rule.priority}: {rule.description}")
        else:
            skipped.append(rule.priority)
            log.warn(f"Rule {rule.priority} may not be available: {res.stderr.strip()}")
    if cfg.preview:
        log.warn("OWASP rules are in PREVIEW mode - review logs before enforcing")

    if cfg.adaptive:
        gc.run("compute", "security-policies", "update", cfg.policy, "--enable-layer7-ddos-defense",
               label="enable adaptive protection")
        log.success("Adaptive protection enabled")
    log_level = "VERBOSE" if cfg.verbose_logging else "NORMAL"
    gc.run("compute", "security-policies", "update", cfg.policy, f"--log-level={log_level}")
    gc.run("compute", "backend-services", "update", cfg.backend_service, "--global", f"--security-policy={cfg.policy}")
    log.success(f"Security policy attached to backend service {cfg.backend_service}")
    return {
        "policy": cfg.policy,
        "backendService": cfg.backend_service,
        "reused": existed,
        "rules": applied,
        "skippedRules": skipped,
        "logLevel": log_level,
        "preview": cfg.preview,
    }


def cmd_gcp_armor_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    backend = (getattr(args, "backend_service", None) or "").strip()
    if not backend:
        raise UsageError("missing --backend-service")
    cfg = ArmorConfig(
        backend_service=backend,
        policy=getattr(args, "policy_name", None) or DEFAULT_POLICY,
        sensitivity=validate_sensitivity(getattr(args, "sensitivity", 1)),
        allow_ips=tuple(_parse_csv(getattr(args, "allow_ips", None))),
        countries=tuple(_parse_csv(getattr(args, "allowed_countries", None))),
        preview=bool(getattr(args, "preview", False)),
        adaptive=bool(getattr(args, "enable_adaptive", False)),
        verbose_logging=bool(getattr(args, "verbose_logging", False)),
        recreate=bool(getattr(args, "recreate", False)),
    )
    ctx, gc = _gcp_context(g, args, tool="gcp-armor")
    out = setup_armor(ctx, gc, cfg)
    ctx.log.wide_event("success", policy=cfg.policy, rules=len(out["rules"]))
    _print_json(out, pretty=g.pretty)
    return 0


# IAP and Cloud NAT


@dataclass(frozen=True)
class IapConfig:
    region: str
    network: str = "default"
    backend_service: str = ""
    users: tuple[str, ...] = ()
    groups: tuple[str, ...] = ()
    ssh: bool = False
    https: bool = False
    skip_nat: bool = False
    names: IapNames = field(default_factory=IapNames)


def iam_bindings(cfg: IapConfig) -> list[tuple[str, str]]:
    members = [f"user:{u}" for u in cfg.users] + [f"group:{grp}" for grp in cfg.groups]
    out: list[tuple[str, str]] = []
    for m in members:
        out.append((m, IAP_WEB_ROLE))
        if cfg.ssh:
            out.append((m, IAP_TUNNEL_ROLE))
    return out


def _ensure_firewall(gc: Gcloud, ctx: OpsContext, name: str, *flags: str) -> bool:
    if gc.exists("compute", "firewall-rules", "describe", name):
        ctx.log.warn(f"Firewall rule already exists: {name}")
        return False
    gc.run("compute", "firewall-rules", "create", name, *flags)
    ctx.log.success(f"Firewall rule created: {name}")
    return True


def setup_iap(ctx: OpsContext, gc: Gcloud, cfg: IapConfig) -> dict[str, Any]:
    log = ctx.log
    n = cfg.names
    out: dict[str, Any] = {"nat": None, "firewallRules": [], "bindings": [], "backendIap": False}
    log.section("Enabling required APIs")
    for api in IAP_APIS:
        if not gc.run("services", "enable", api, check=False).ok:
            log.warn(f"Could not enable {api}")

    if cfg.skip_nat:
        log.warn("Skipping Cloud NAT setup (--skip-nat)")
    else:
        log.section("Cloud NAT")
        if not gc.exists("compute", "networks", "describe", cfg.network):
            raise OpError(f"VPC network not found: {cfg.network}")
        if gc.exists("compute", "routers", "describe", n.router, f"--region={cfg.region}"):
            log.warn(f"Cloud Router already exists: {n.router}")
        else:
            gc.run("compute", "routers", "create", n.router, f"--network={cfg.network}", f"--region={cfg.region}")
        if gc.exists("compute", "routers", "nats", "describe", n.nat, f"--router={n.router}", f"--region={cfg.region}"):
            log.warn(f"Cloud NAT already exists: {n.nat}")
        else:
            gc.run("compute", "routers", "nats", "create", n.nat, f"--router={n.router}", f"--region={cfg.region}",
                   "--auto-allocate-nat-external-ips", "--nat-all-subnet-ip-ranges", "--enable-logging")
        out["nat"] = {"router": n.router, "nat": n.nat, "region": cfg.region}

    if not (cfg.ssh or cfg.https):
        log.warn("Neither SSH nor HTTPS IAP enabled (use --enable-ssh-iap or --enable-https-iap)")
        return out

    log.section("Identity-Aware Proxy")
    if "name:" not in gc.value("iap", "oauth-brands", "list"):
        log.warn(f"OAuth consent screen not configured: https://console.cloud.google.com/apis/credentials/consent?project={gc.project}")
    common = (f"--network={cfg.network}", "--direction=INGRESS", "--action=ALLOW", f"--source-ranges={n.source_range}")
    if cfg.ssh and _ensure_firewall(gc, ctx, n.ssh_rule, *common, "--rules=tcp:22", "--description=Allow SSH from IAP"):
        out["firewallRules"].append(n.ssh_rule)
    if cfg.https and _ensure_firewall(gc, ctx, n.https_rule, *common, "--rules=tcp:443", "--description=Allow HTTPS from IAP"):
        out["firewallRules"].append(n.https_rule)

    if cfg.backend_service:
        if not gc.exists("compute", "backend-services", "describe", cfg.backend_service, "--global"):
            raise OpError(f"backend service not found: {cfg.backend_service}")
        gc.run("compute", "backend-services", "update", cfg.backend_service, "--global", "--iap=enabled")
        out["backendIap"] = True
        log.success(f"IAP enabled for backend service {cfg.backend_service}")
    else:
        log.warn("No backend service specified, skipping IAP enablement")

    for member, role in iam_bindings(cfg):
        res = gc.run("projects", "add-iam-policy-binding", gc.project, f"--member={member}", f"--role={role}",
                     "--condition=None", check=False)
        if res.ok:
            out["bindings"].append({"member": member, "role": role})
        else:
            log.warn(f"Failed to grant {role} to {member}")
    return out


def cmd_gcp_iap_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx, gc = _gcp_context(g, args, tool="gcp-iap")
    cfg = IapConfig(
        region=getattr(args, "region", None) or ctx.settings.gcp_region,
        network=getattr(args, "network", None) or "default",
        backend_service=(getattr(args, "backend_service", None) or "").strip(),
        users=tuple(_parse_csv(getattr(args, "allowed_users", None))),
        groups=tuple(_parse_csv(getattr(args, "allowed_groups", None))),
        ssh=bool(getattr(args, "enable_ssh_iap", False)),
        https=bool(getattr(args, "enable_https_iap", False)),
        skip_nat=bool(getattr(args, "skip_nat", False)),
    )
    out = setup_iap(ctx, gc, cfg)
    ctx.log.wide_event("success", region=cfg.region, bindings=len(out["bindings"]))
    _print_json(out, pretty=g.pretty)
    return 0


# Secret Manager


def put_secret(gc: Gcloud, name: str, value: str) -> str:
    if gc.exists("secrets", "describe", name):
        gc.run("secrets", "versions", "add", name, "--data-file=-", input_text=value, label=f"add version {name}")
        return "updated"
    gc.run("secrets", "create", name, "--data-file=-", "--replication-policy=automatic",
           "--labels=app=moodle,managed-by=moodle-ops", input_text=value, label=f"create secret {name}")
    return "created"


def install_secret_helper(path: Path) -> None:
    _write_secure_text(path=path, text=SECRET_HELPER, mode=0o755)


def setup_secrets(
    ctx: OpsContext,
    gc: Gcloud,
    *,
    credentials_file: Path,
    helper_path: Path = Path(SECRET_HELPER_PATH),
) -> dict[str, Any]:
    log = ctx.log
    sa_email = f"{SECRETS_SERVICE_ACCOUNT}@{gc.project}.iam.gserviceaccount.com"
    log.section("Step 1: Enabling Secret Manager API")
    gc.run("services", "enable", "secretmanager.googleapis.com")

    log.section("Step 2: Service account")
    if gc.exists("iam", "service-accounts", "describe", sa_email):
        log.warn(f"Service account {SECRETS_SERVICE_ACCOUNT} already exists")
    else:
        gc.run("iam", "service-accounts", "create", SECRETS_SERVICE_ACCOUNT,
               "--display-name=Moodle VM Secrets Access",
               "--description=Service account for Moodle VM to access Secret Manager")

    log.section("Step 3: Migrating credentials")
    migrated: dict[str, str] = {}
    values = read_credentials_file(credentials_file)
    backup = ""
    if values:
        for key, secret in CREDENTIAL_SECRETS:
            value = values.get(key, "")
            if value:
                migrated[secret] = put_secret(gc, secret, value)
                log.log(f"Secret {secret} {migrated[secret]}")
        stamp = ctx.now().strftime("%Y%m%d_%H%M%S")
        backup_path = credentials_file.with_name(f"{credentials_file.name}.backup-{stamp}")
        if not ctx.runner.dry_run:
            shutil.copy2(credentials_file, backup_path)
            os.chmod(backup_path, 0o600)
        backup = str(backup_path)
        log.warn(f"Remove {credentials_file} and {backup} after verifying secrets work")
    else:
        log.warn(f"No credentials file found at {credentials_file}; set secrets with 'moodle-ops gcp secrets set'")

    log.section("Step 4: Granting secret access")
    granted: list[str] = []
    for _, secret in CREDENTIAL_SECRETS:
        if secret not in migrated and not gc.exists("secrets", "describe", secret):
            continue
        res = gc.run("secrets", "add-iam-policy-binding", secret, f"--member=serviceAccount:{sa_email}",
                     f"--role={SECRET_ACCESSOR_ROLE}", check=False)
        if res.ok:
            granted.append(secret)
        else:
            log.warn(f"Failed to grant access to {secret}")

    log.section("Step 5: Installing secret helper")
    if ctx.runner.dry_run:
        log.log(f"DRYRUN write {helper_path}")
    else:
        install_secret_helper(helper_path)
        log.log(f"Created helper script: {helper_path}")
    log.info(f"Attach {sa_email} to the VM: gcloud compute instances set-service-account INSTANCE "
             f"--service-account={sa_email} --scopes=https://www.googleapis.com/auth/cloud-platform")
    return {
        "serviceAccount": sa_email,
        "secrets": migrated,
        "granted": granted,
        "credentialsBackup": backup,
        "helper": str(helper_path),
    }


def cmd_gcp_secrets_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx, gc = _gcp_context(g, args, tool="gcp-secrets")
    cred = Path(getattr(args, "credentials_file", None) or ctx.settings.credentials_file)
    helper = Path(getattr(args, "helper_path", None) or SECRET_HELPER_PATH)
    out = setup_secrets(ctx, gc, credentials_file=cred, helper_path=helper)
    ctx.log.wide_event("success", secrets=sorted(out["secrets"]))
    _print_json(out, pretty=g.pretty)
    return 0


def cmd_gcp_secrets_set(args: argparse.Namespace, g: GlobalOpts) -> int:
    name = (getattr(args, "name", None) or "").strip()
    if not name:
        raise UsageError("missing secret name")
    ctx, gc = _gcp_context(g, args, tool="gcp-secrets")
    value = getattr(args, "value", None)
    if value is None:
        value = Prompt.ask(f"Value for {name}", password=True, console=ctx.log.console)
    if not value:
        raise UsageError("secret value must not be empty")
    state = put_secret(gc, name, value)
    ctx.log.wide_event("success", secret=name, state=state)
    _print_json({"name": name, "state": state}, pretty=g.pretty)
    return 0


def cmd_gcp_secrets_get(args: argparse.Namespace, g: GlobalOpts) -> int:
    name = (getattr(args, "name", None) or "").strip()
    if not name:
        raise UsageError("missing secret name")
    ctx, gc = _gcp_context(g, args, tool="gcp-secrets")
    res = gc.query("secrets", "versions", "access", "latest", f"--secret={name}")
    if not res.ok:
        raise OpError(f"failed to retrieve secret: {name}")
    value = res.stdout.rstrip("\n")
    shown = value if getattr(args, "reveal", False) else _mask_secret(value)
    _print_json({"name": name, "value": shown}, pretty=g.pretty)
    return 0


# Compute Engine VM


@dataclass(frozen=True)
class VmConfig:
    names: VmNames
    region: str
    zone: str
    environment: str = "production"
    machine_type: str = "e2-medium"
    boot_disk_size: str = "30GB"
    data_disk_size: str = "50GB"
    disk_type: str = "pd-standard"
    network: str = "default"
    subnet: str = "default"
    service_account: str = ""
    snapshot_retention_days: int = 7


def instance_create_args(cfg: VmConfig, *, project: str, static_ip: str, startup_file: str) -> list[str]:
    n = cfg.names
    boot = (
        f"auto-delete=yes,boot=yes,device-name={n.instance},"
        f"image=projects/{VM_IMAGE_PROJECT}/global/images/family/{VM_IMAGE_FAMILY},mode=rw,"
        f"size={cfg.boot_disk_size},type=projects/{project}/zones/{cfg.zone}/diskTypes/{cfg.disk_type}"
    )
    argv = [
        "compute", "instances", "create", n.instance,
        f"--zone={cfg.zone}",
        f"--machine-type={cfg.machine_type}",
        f"--network-interface=network-tier=PREMIUM,subnet={cfg.subnet},address={static_ip}",
        f"--metadata-from-file=startup-script={startup_file}",
        f"--metadata=environment={cfg.environment}",
        "--maintenance-policy=MIGRATE",
        "--scopes=cloud-platform",
        f"--tags={VM_TAGS}",
        f"--create-disk={boot}",
        f"--disk=name={n.data_disk},device-name={n.data_disk},mode=rw,boot=no",
        "--shielded-vtpm",
        "--shielded-integrity-monitoring",
        f"--labels=environment={cfg.environment},application=moodle,managed-by=moodle-ops",
    ]
    if cfg.service_account:
        argv.append(f"--service-account={cfg.service_account}")
    return argv


def deploy_vm(ctx: OpsContext, gc: Gcloud, cfg: VmConfig) -> dict[str, Any]:
    log = ctx.log
    n = cfg.names
    if not gc.exists("services", "list", "--enabled", "--filter=name:compute.googleapis.com", "--format=value(name)"):
        gc.run("services", "enable", "compute.googleapis.com")
    if gc.exists("compute", "instances", "describe", n.instance, f"--zone={cfg.zone}"):
        raise OpError(f"instance already exists: {n.instance} (delete it first or choose another name)")

    log.section("Firewall rules")
    common = (f"--network={cfg.network}", "--source-ranges=0.0.0.0/0")
    _ensure_firewall(gc, ctx, n.http_rule, *common, "--allow=tcp:80", "--target-tags=http-server",
                     "--description=Allow HTTP traffic for Moodle")
    _ensure_firewall(gc, ctx, n.https_rule, *common, "--allow=tcp:443", "--target-tags=https-server",
                     "--description=Allow HTTPS traffic for Moodle")

    log.section("Static IP")
    if gc.exists("compute", "addresses", "describe", n.static_ip, f"--region={cfg.region}"):
        log.warn(f"Static IP already exists: {n.static_ip}")
    else:
        gc.run("compute", "addresses", "create", n.static_ip, f"--region={cfg.region}", "--network-tier=PREMIUM",
               f"--description=Static IP for Moodle VM - {n.instance}")
    static_ip = gc.value("compute", "addresses", "describe", n.static_ip, f"--region={cfg.region}",
                         "--format=get(address)") or n.static_ip
    log.info(f"Configure a DNS A record for {static_ip} before TLS setup")

    log.section("Data disk")
    if gc.exists("compute", "disks", "describe", n.data_disk, f"--zone={cfg.zone}"):
        log.warn(f"Data disk already exists: {n.data_disk}")
    else:
        gc.run("compute", "disks", "create", n.data_disk, f"--zone={cfg.zone}", f"--size={cfg.data_disk_size}",
               f"--type={cfg.disk_type}", "--description=Moodle data disk")

    log.section(f"Instance {n.instance}")
    fd, startup = tempfile.mkstemp(prefix="moodle-startup-", suffix=".sh")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(VM_STARTUP_SCRIPT)
        gc.run(*instance_create_args(cfg, project=gc.project, static_ip=static_ip, startup_file=startup))
    finally:
        os.unlink(startup)
    log.success(f"VM instance created: {n.instance}")

    log.section("Snapshot schedule")
    if gc.exists("compute", "resource-policies", "describe", n.snapshot_schedule, f"--region={cfg.region}"):
        log.info("Snapshot schedule already exists")
    else:
        gc.run("compute", "resource-policies", "create", "snapshot-schedule", n.snapshot_schedule,
               f"--region={cfg.region}", f"--max-retention-days={cfg.snapshot_retention_days}",
               "--on-source-disk-delete=keep-auto-snapshots", "--daily-schedule", "--start-time=03:00",
               f"--storage-location={cfg.region}")
    gc.run("compute", "disks", "add-resource-policies", n.data_disk, f"--zone={cfg.zone}",
           f"--resource-policies={n.snapshot_schedule}", check=False)
    return {
        "instance": n.instance,
        "zone": cfg.zone,
        "staticIp": static_ip,
        "dataDisk": n.data_disk,
        "snapshotSchedule": n.snapshot_schedule,
        "ssh": f"gcloud compute ssh {n.instance} --zone={cfg.zone}",
    }


def cmd_gcp_vm_deploy(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx, gc = _gcp_context(g, args, tool="gcp-vm")
    instance = (getattr(args, "instance", None) or "moodle-vm").strip()
    cfg = VmConfig(
        names=VmNames.for_instance(instance),
        region=getattr(args, "region", None) or ctx.settings.gcp_region,
        zone=getattr(args, "zone", None) or ctx.settings.gcp_zone,
        environment=getattr(args, "environment", None) or "production",
        machine_type=getattr(args, "machine_type", None) or "e2-medium",
        data_disk_size=getattr(args, "data_disk_size", None) or "50GB",
        service_account=getattr(args, "service_account", None) or "",
    )
    out = deploy_vm(ctx, gc, cfg)
    ctx.log.wide_event("success", instance=instance, zone=cfg.zone)
    _print_json(out, pretty=g.pretty)
    return 0


# Cloud Run


@dataclass(frozen=True)
class RunConfig:
    service: str
    image: str
    region: str
    cloudsql_instance: str = ""
    env: tuple[str, ...] = ()
    secrets: tuple[str, ...] = RUN_DEFAULT_SECRETS
    memory: str = "2Gi"
    cpu: str = "2"
    port: int = 8080
    min_instances: int = 0
    max_instances: int = 4
    allow_unauthenticated: bool = True


def run_deploy_args(cfg: RunConfig) -> list[str]:
    for item in cfg.env:
        if "=" not in item:
            raise UsageError(f"invalid --env entry {item!r} (expected KEY=VALUE)")
    argv = [
        "run", "deploy", cfg.service,
        f"--image={cfg.image}",
        f"--region={cfg.region}",
        "--platform=managed",
        f"--port={cfg.port}",
        f"--memory={cfg.memory}",
        f"--cpu={cfg.cpu}",
        f"--min-instances={cfg.min_instances}",
        f"--max-instances={cfg.max_instances}",
    ]
    if cfg.cloudsql_instance:
        argv.append(f"--add-cloudsql-instances={cfg.cloudsql_instance}")
    if cfg.env:
        argv.append(f"--set-env-vars={','.join(cfg.env)}")
    if cfg.secrets:
        argv.append(f"--set-secrets={','.join(cfg.secrets)}")
    argv.append("--allow-unauthenticated" if cfg.allow_unauthenticated else "--no-allow-unauthenticated")
    return argv


def cmd_gcp_run_deploy(args: argparse.Namespace, g: GlobalOpts) -> int:
    image = (getattr(args, "image", None) or "").strip()
    if not image:
        raise UsageError("missing --image")
    env = list(getattr(args, "env", None) or [])
    cloudsql = (getattr(args, "cloudsql_instance", None) or "").strip()
    if cloudsql and not any(e.startswith("MOODLE_DB_HOST=") for e in env):
        env.append(f"MOODLE_DB_HOST=/cloudsql/{cloudsql}")
    ctx, gc = _gcp_context(g, args, tool="gcp-run")
    cfg = RunConfig(
        service=getattr(args, "service", None) or "moodle",
        image=image,
        region=getattr(args, "region", None) or ctx.settings.gcp_region,
        cloudsql_instance=cloudsql,
        env=tuple(env),
        allow_unauthenticated=not bool(getattr(args, "no_allow_unauthenticated", False)),
    )
    gc.run(*run_deploy_args(cfg), label="gcloud run deploy")
    url = gc.value("run", "services", "describe", cfg.service, f"--region={cfg.region}", "--format=value(status.url)")
    ctx.log.wide_event("success", service=cfg.service, region=cfg.region)
    _print_json({"service": cfg.service, "region": cfg.region, "image": cfg.image, "url": url}, pretty=g.pretty)
    return 0
