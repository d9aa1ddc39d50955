from __future__ import annotations

import argparse
import contextlib
import io
import sys
from typing import Any

import click
import typer
from rich.console import Console

from .. import __version__
from ..audit_commands import cmd_audit_install_cron, cmd_audit_run
from ..backup_commands import cmd_backup_cleanup, cmd_backup_install_cron, cmd_backup_list, cmd_backup_run
from ..cis_commands import cmd_cis_install_cron, cmd_cis_run
from ..cli_shared import EXIT_ERROR, EXIT_PREREQUISITE, EXIT_USAGE, GlobalOpts, OpError, PrerequisiteError, UsageError
from ..config_commands import cmd_config_render_php, cmd_config_show
from ..cron import cmd_cron_list, cmd_cron_render
from ..db_maintenance_commands import cmd_db_install_cron, cmd_db_maintain
from ..gcp_commands import (
    cmd_gcp_armor_setup,
    cmd_gcp_iap_setup,
    cmd_gcp_run_deploy,
    cmd_gcp_secrets_get,
    cmd_gcp_secrets_set,
    cmd_gcp_secrets_setup,
    cmd_gcp_vm_deploy,
)
from ..gcp_platform_commands import cmd_gcp_cdn_setup, cmd_gcp_scc_setup, cmd_gcp_service_account_setup
from ..hardening_commands import cmd_harden_ratelimit, cmd_harden_run
from ..health import cmd_health_check, cmd_health_host, cmd_health_install_cron
from ..monitoring import cmd_monitoring_alerts, cmd_monitoring_ops_agent_config, cmd_monitoring_setup
from ..provision_commands import cmd_vm_provision
from ..redis_commands import cmd_redis_setup, cmd_redis_status
from ..restore_commands import cmd_restore_run
from ..settings import load_config_file, settings_from_env
from ..tls_commands import cmd_tls_setup
from ..validation_commands import cmd_validate_install_cron, cmd_validate_run, cmd_validate_trends


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _root_help_text(*, root_app: typer.Typer, prog_name: str) -> str:
    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        try:
            root_app(args=["--help"], prog_name=prog_name, standalone_mode=False)
        except (typer.Exit, click.ClickException):
            pass
    return str(buf.getvalue() or "").strip()


def _render_usage_error_with_help(
    *,
    message: str,
    ctx: click.Context | None = None,
    fallback_help: str = "",
) -> None:
    _rich_error(message)
    help_text = ""
    if isinstance(ctx, click.Context):
        help_text = str(ctx.get_help() or "").strip()
    if not help_text:
        help_text = str(fallback_help or "").strip()
    if help_text:
        _eprint("")
        _eprint(help_text)


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"moodle-ops {__version__}")
        raise typer.Exit(code=0)


app = typer.Typer(
    name="moodle-ops",
    help="Operate a Moodle LMS deployment on Google Cloud.",
    no_args_is_help=True,
    add_completion=False,
)

backup_app = typer.Typer(help="Database, moodledata and config backups", no_args_is_help=True)
restore_app = typer.Typer(help="Restore from a local or gs:// backup", no_args_is_help=True)
validate_app = typer.Typer(help="Backup validation and DR metrics", no_args_is_help=True)
audit_app = typer.Typer(help="Security audit with severity scoring", no_args_is_help=True)
db_app = typer.Typer(help="Database maintenance", no_args_is_help=True)
health_app = typer.Typer(help="Health checks", no_args_is_help=True)
cis_app = typer.Typer(help="CIS Ubuntu 22.04 hardening and audit", no_args_is_help=True)
gcp_app = typer.Typer(help="Google Cloud resources (gcloud)", no_args_is_help=True)
armor_app = typer.Typer(help="Cloud Armor WAF policy", no_args_is_help=True)
iap_app = typer.Typer(help="Identity-Aware Proxy and Cloud NAT", no_args_is_help=True)
secrets_app = typer.Typer(help="Secret Manager", no_args_is_help=True)
vm_app = typer.Typer(help="Compute Engine VM", no_args_is_help=True)
run_app = typer.Typer(help="Cloud Run", no_args_is_help=True)
cron_app = typer.Typer(help="Scheduled jobs", no_args_is_help=True)
config_app = typer.Typer(help="Settings and config.php", no_args_is_help=True)
monitoring_app = typer.Typer(help="Ops Agent, health endpoint and alert policies", no_args_is_help=True)
server_app = typer.Typer(help="Provision this host as a Moodle server", no_args_is_help=True)
tls_app = typer.Typer(help="Let's Encrypt certificates", no_args_is_help=True)
harden_app = typer.Typer(help="Firewall, fail2ban, PHP and MariaDB hardening", no_args_is_help=True)
redis_app = typer.Typer(help="Redis cache and sessions", no_args_is_help=True)
service_account_app = typer.Typer(help="Least-privilege VM service account", no_args_is_help=True)
cdn_app = typer.Typer(help="Cloud CDN", no_args_is_help=True)
scc_app = typer.Typer(help="Security Command Center", no_args_is_help=True)

app.add_typer(backup_app, name="backup")
app.add_typer(restore_app, name="restore")
app.add_typer(validate_app, name="validate")
app.add_typer(audit_app, name="audit")
app.add_typer(db_app, name="db")
app.add_typer(health_app, name="health")
app.add_typer(cis_app, name="cis")
app.add_typer(gcp_app, name="gcp")
app.add_typer(cron_app, name="cron")
app.add_typer(config_app, name="config")
app.add_typer(monitoring_app, name="monitoring")
app.add_typer(server_app, name="vm")
app.add_typer(tls_app, name="tls")
app.add_typer(harden_app, name="harden")
app.add_typer(redis_app, name="redis")

gcp_app.add_typer(armor_app, name="armor")
gcp_app.add_typer(iap_app, name="iap")
gcp_app.add_typer(secrets_app, name="secrets")
gcp_app.add_typer(vm_app, name="vm")
gcp_app.add_typer(run_app, name="run")
gcp_app.add_typer(service_account_app, name="service-account")
gcp_app.add_typer(cdn_app, name="cdn")
gcp_app.add_typer(scc_app, name="scc")


def _global_opts(
    *,
    config: str | None = None,
    log_file: str | None = None,
    plain_json: bool = False,
    quiet: bool = False,
    dry_run: bool = False,
    moodle_dir: str | None = None,
    moodle_data: str | None = None,
    backup_root: str | None = None,
) -> GlobalOpts:
    load_config_file(config)
    settings = settings_from_env().with_overrides(
        moodle_dir=moodle_dir,
        moodle_data=moodle_data,
        backup_root=backup_root,
    )
    return GlobalOpts(
        settings=settings,
        pretty=not plain_json,
        quiet=quiet,
        dry_run=dry_run,
        log_file=(log_file or "").strip(),
    )


@app.callback()
def app_callback(
    ctx: typer.Context,
    config: str | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Dotenv settings file (default: /etc/moodle-ops.env when present; env override: MOODLE_OPS_CONFIG)",
    ),
    log_file: str | None = typer.Option(None, "--log-file", help="Override the per-command log file"),
    moodle_dir: str | None = typer.Option(None, "--moodle-dir", help="Moodle code directory (env MOODLE_DIR)"),
    moodle_data: str | None = typer.Option(None, "--moodle-data", help="Moodle data directory (env MOODLE_DATA)"),
    backup_root: str | None = typer.Option(None, "--backup-root", help="Backup root (env MOODLE_BACKUP_ROOT)"),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print mutating commands instead of running them"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    try:
        g = _global_opts(
            config=config,
            log_file=log_file,
            plain_json=plain_json,
            quiet=quiet,
            dry_run=dry_run,
            moodle_dir=moodle_dir,
            moodle_data=moodle_data,
            backup_root=backup_root,
        )
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=EXIT_USAGE)
    ctx.obj = {"g": g}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    root = ctx.find_root()
    obj = root.obj if isinstance(root.obj, dict) else ctx.obj
    if isinstance(obj, dict) and isinstance(obj.get("g"), GlobalOpts):
        return obj["g"]
    try:
        return _global_opts()
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=EXIT_USAGE)


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(**kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=EXIT_USAGE)
    except PrerequisiteError as e:
        _rich_error(str(e))
        raise typer.Exit(code=EXIT_PREREQUISITE)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=EXIT_ERROR)

    if code:
        raise typer.Exit(code=code)


def _invoke_from_locals(
    ctx: typer.Context,
    func: Any,
    local_vars: dict[str, Any],
    *,
    drop: tuple[str, ...] = ("ctx",),
) -> None:
    _invoke(ctx, func, **{k: v for k, v in local_vars.items() if k not in drop})


_CRON_DIR_HELP = "Directory for the cron.d file (default: /etc/cron.d)"
_PROJECT_HELP = "GCP project id (default: GCP_PROJECT_ID or gcloud config)"


@backup_app.command("run", help="Run a full backup (type chosen from the date unless --type is given).")
def backup_run(
    ctx: typer.Context,
    backup_type: str | None = typer.Option(None, "--type", help="Force daily, weekly or monthly"),
    skip_offsite: bool = typer.Option(False, "--skip-offsite", help="Do not upload to the offsite bucket"),
) -> None:
    _invoke_from_locals(ctx, cmd_backup_run, locals())


@backup_app.command("list", help="List local backups, newest first.")
def backup_list(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_backup_list)


@backup_app.command("cleanup", help="Delete backups older than their retention.")
def backup_cleanup(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_backup_cleanup)


@backup_app.command("install-cron", help="Install the daily backup cron job.")
def backup_install_cron(
    ctx: typer.Context,
    cron_dir: str | None = typer.Option(None, "--cron-dir", help=_CRON_DIR_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_backup_install_cron, locals())


@restore_app.command("run", help="Restore a backup directory or gs:// URL (interactive selection when omitted).")
def restore_run(
    ctx: typer.Context,
    backup: str | None = typer.Argument(None, help="Backup directory or gs://bucket/prefix"),
    confirm: bool = typer.Option(False, "--confirm", help="Skip the YES confirmation prompt"),
    restore_code: bool = typer.Option(False, "--restore-code", help="Also restore moodle-code.tar.gz when present"),
) -> None:
    _invoke_from_locals(ctx, cmd_restore_run, locals())


@validate_app.command("run", help="Validate the latest (or given) backup and write a report.")
def validate_run(
    ctx: typer.Context,
    backup: str | None = typer.Option(None, "--backup", help="Backup directory (default: newest)"),
    test_restore: bool = typer.Option(False, "--test-restore", help="Restore the dump into a scratch database"),
    report_dir: str | None = typer.Option(None, "--report-dir", help="Report directory (default: /tmp)"),
) -> None:
    _invoke_from_locals(ctx, cmd_validate_run, locals())


@validate_app.command("trends", help="Backup success rate and recent sizes.")
def validate_trends(
    ctx: typer.Context,
    backup_log: str | None = typer.Option(None, "--backup-log", help="Backup log (default: /var/log/moodle-backup.log)"),
) -> None:
    _invoke_from_locals(ctx, cmd_validate_trends, locals())


@validate_app.command("install-cron", help="Install the monthly validation crontab entry.")
def validate_install_cron(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_validate_install_cron)


@audit_app.command("run", help="Run the security audit and write a scored report.")
def audit_run(
    ctx: typer.Context,
    quick: bool = typer.Option(False, "--quick", help="Only check permissions"),
    compliance_report: bool = typer.Option(False, "--compliance-report", help="Append the compliance section"),
    report_dir: str | None = typer.Option(None, "--report-dir", help="Report directory (default: /tmp)"),
) -> None:
    _invoke_from_locals(ctx, cmd_audit_run, locals())


@audit_app.command("install-cron", help="Install the monthly security audit cron job.")
def audit_install_cron(
    ctx: typer.Context,
    cron_dir: str | None = typer.Option(None, "--cron-dir", help=_CRON_DIR_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_audit_install_cron, locals())


@db_app.command("maintain", help="Check, repair, analyze and optimize tables, then clean moodledata.")
def db_maintain(
    ctx: typer.Context,
    check_only: bool = typer.Option(False, "--check-only", help="Skip optimization"),
    force_optimize: bool = typer.Option(False, "--force-optimize", help="Optimize every table"),
    run_now: bool = typer.Option(False, "--run-now", help="Do not ask for confirmation"),
    report_dir: str | None = typer.Option(None, "--report-dir", help="Report directory (default: /tmp)"),
) -> None:
    _invoke_from_locals(ctx, cmd_db_maintain, locals())


@db_app.command("install-cron", help="Install the weekly maintenance crontab entry.")
def db_install_cron(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_db_install_cron)


@health_app.command("check", help="Print the health JSON; exit 0 only when healthy.")
def health_check(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_health_check)


@health_app.command("host", help="Host report: load, memory, disk and services.")
def health_host(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_health_host)


@health_app.command("install-cron", help="Install the 5-minute host health crontab entry.")
def health_install_cron(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_health_install_cron)


@cis_app.command("run", help="Apply (or with --audit-only, audit) CIS controls.")
def cis_run(
    ctx: typer.Context,
    level: int = typer.Option(1, "--level", help="CIS level 1 or 2"),
    audit_only: bool = typer.Option(False, "--audit-only", help="Report compliance without changes"),
    force: bool = typer.Option(False, "--force", help="Run on an unsupported OS"),
) -> None:
    _invoke_from_locals(ctx, cmd_cis_run, locals())


@cis_app.command("install-cron", help="Install the monthly CIS audit cron job.")
def cis_install_cron(
    ctx: typer.Context,
    cron_dir: str | None = typer.Option(None, "--cron-dir", help=_CRON_DIR_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_cis_install_cron, locals())


@armor_app.command("setup", help="Create the WAF policy, its rules, and attach it to a backend service.")
def armor_setup(
    ctx: typer.Context,
    backend_service: str = typer.Option(..., "--backend-service", help="Load balancer backend service"),
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    policy_name: str | None = typer.Option(None, "--policy-name", help="Policy name (default: moodle-waf-policy)"),
    sensitivity: int = typer.Option(1, "--sensitivity", help="OWASP rule sensitivity 1-4"),
    allow_ips: str | None = typer.Option(None, "--allow-ips", help="Comma-separated IPs or CIDRs to allow"),
    allowed_countries: str | None = typer.Option(None, "--allowed-countries", help="Comma-separated country codes"),
    preview: bool = typer.Option(False, "--preview", help="OWASP rules log only"),
    enable_adaptive: bool = typer.Option(False, "--enable-adaptive", help="Enable adaptive protection"),
    verbose_logging: bool = typer.Option(False, "--verbose-logging", help="VERBOSE policy logging"),
    recreate: bool = typer.Option(False, "--recreate", help="Delete and recreate an existing policy"),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_armor_setup, locals())


@iap_app.command("setup", help="Cloud NAT, IAP firewall rules, backend IAP and IAM bindings.")
def iap_setup(
    ctx: typer.Context,
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    region: str | None = typer.Option(None, "--region", help="Region (default: GCP_REGION)"),
    network: str | None = typer.Option(None, "--network", help="VPC network (default: default)"),
    backend_service: str | None = typer.Option(None, "--backend-service", help="Backend service to protect"),
    allowed_users: str | None = typer.Option(None, "--allowed-users", help="Comma-separated user emails"),
    allowed_groups: str | None = typer.Option(None, "--allowed-groups", help="Comma-separated group emails"),
    enable_ssh_iap: bool = typer.Option(False, "--enable-ssh-iap", help="Allow SSH through IAP"),
    enable_https_iap: bool = typer.Option(False, "--enable-https-iap", help="Allow HTTPS through IAP"),
    skip_nat: bool = typer.Option(False, "--skip-nat", help="Skip Cloud NAT"),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_iap_setup, locals())


@secrets_app.command("setup", help="Service account, migrate the credentials file, grant access.")
def secrets_setup(
    ctx: typer.Context,
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    credentials_file: str | None = typer.Option(None, "--credentials-file", help="Credentials file to migrate"),
    helper_path: str | None = typer.Option(None, "--helper-path", help="Where to install get-moodle-secret"),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_secrets_setup, locals())


@secrets_app.command("set", help="Create a secret or add a new version.")
def secrets_set(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Secret name"),
    value: str | None = typer.Option(None, "--value", help="Secret value (prompted when omitted)"),
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_secrets_set, locals())


@secrets_app.command("get", help="Read the latest secret version (masked unless --reveal).")
def secrets_get(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Secret name"),
    reveal: bool = typer.Option(False, "--reveal", help="Print the value unmasked"),
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_secrets_get, locals())


@vm_app.command("deploy", help="Firewall, static IP, data disk, instance and snapshot schedule.")
def vm_deploy(
    ctx: typer.Context,
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    instance: str | None = typer.Option(None, "--instance", help="Instance name (default: moodle-vm)"),
    region: str | None = typer.Option(None, "--region", help="Region (default: GCP_REGION)"),
    zone: str | None = typer.Option(None, "--zone", help="Zone (default: GCP_ZONE)"),
    environment: str | None = typer.Option(None, "--environment", help="Environment label (default: production)"),
    machine_type: str | None = typer.Option(None, "--machine-type", help="Machine type (default: e2-medium)"),
    data_disk_size: str | None = typer.Option(None, "--data-disk-size", help="Data disk size (default: 50GB)"),
    service_account: str | None = typer.Option(None, "--service-account", help="Instance service account"),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_vm_deploy, locals())


@run_app.command("deploy", help="Deploy a Moodle image to Cloud Run.")
def run_deploy(
    ctx: typer.Context,
    image: str = typer.Option(..., "--image", help="Container image"),
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    service: str | None = typer.Option(None, "--service", help="Service name (default: moodle)"),
    region: str | None = typer.Option(None, "--region", help="Region (default: GCP_REGION)"),
    cloudsql_instance: str | None = typer.Option(None, "--cloudsql-instance", help="PROJECT:REGION:INSTANCE"),
    env: list[str] = typer.Option([], "--env", help="KEY=VALUE (repeatable)"),
    no_allow_unauthenticated: bool = typer.Option(False, "--no-allow-unauthenticated", help="Require IAM auth"),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_run_deploy, locals())


@service_account_app.command("setup", help="Create the VM service account and grant its minimal roles.")
def service_account_setup(
    ctx: typer.Context,
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    name: str | None = typer.Option(None, "--name", help="Account id (default: moodle-vm-service-account)"),
    info_file: str | None = typer.Option(None, "--info-file", help="Also write the account details here (0600)"),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_service_account_setup, locals())


@cdn_app.command("setup", help="Enable Cloud CDN on a load balancer backend service.")
def cdn_setup(
    ctx: typer.Context,
    backend_service: str = typer.Option(..., "--backend-service", help="Load balancer backend service"),
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    cache_mode: str = typer.Option("static", "--cache-mode", help="static, origin or force"),
    ttl: int = typer.Option(3600, "--ttl", help="Default TTL in seconds"),
    compression: bool = typer.Option(False, "--compression", help="Automatic gzip/brotli compression"),
    negative_caching: bool = typer.Option(False, "--negative-caching", help="Cache 404 and 5xx briefly"),
    cache_keys: bool = typer.Option(False, "--cache-keys", help="Ignore tracking query parameters in cache keys"),
    signed_urls: bool = typer.Option(False, "--signed-urls", help="Generate and attach a signed URL key"),
    key_file: str | None = typer.Option(None, "--key-file", help="Where to write the signing key"),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_cdn_setup, locals())


@scc_app.command("setup", help="Enable Security Command Center, findings export and notifications.")
def scc_setup(
    ctx: typer.Context,
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    org: str | None = typer.Option(None, "--org", help="Organization id (instead of --project)"),
    tier: str = typer.Option("standard", "--tier", help="standard or premium"),
    confirm_org_activated: bool = typer.Option(
        False, "--confirm-org-activated", help="SCC is already activated for --org in the console"
    ),
    enable_export: bool = typer.Option(False, "--enable-export", help="Export findings to BigQuery"),
    export_dataset: str | None = typer.Option(None, "--export-dataset", help="BigQuery dataset (default: scc_findings)"),
    notify_topic: str | None = typer.Option(None, "--notify-topic", help="Pub/Sub topic for critical findings"),
) -> None:
    _invoke_from_locals(ctx, cmd_gcp_scc_setup, locals())


@server_app.command("provision", help="Install the web server, PHP and MariaDB and prepare Moodle directories.")
def vm_provision(
    ctx: typer.Context,
    web_server: str = typer.Option("apache", "--web-server", help="apache (LAMP) or nginx (LEMP)"),
    wwwroot: str | None = typer.Option(None, "--wwwroot", help="Public site URL for config.php"),
    php_version: str | None = typer.Option(None, "--php-version", help="PHP version (default: 8.2)"),
    timezone: str | None = typer.Option(None, "--timezone", help="PHP date.timezone (default: UTC)"),
    skip_firewall: bool = typer.Option(False, "--skip-firewall", help="Leave ufw untouched"),
    force: bool = typer.Option(False, "--force", help="Run on an unsupported OS or with low disk space"),
) -> None:
    _invoke_from_locals(ctx, cmd_vm_provision, locals())


@tls_app.command("setup", help="Obtain a Let's Encrypt certificate and switch the site to HTTPS.")
def tls_setup(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site domain, e.g. lms.example.com"),
    email: str | None = typer.Option(None, "--email", help="Expiry notice address"),
    no_www: bool = typer.Option(False, "--no-www", help="Do not include www.DOMAIN"),
    skip_dns_check: bool = typer.Option(False, "--skip-dns-check", help="Skip the DNS lookup"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Continue when DNS points elsewhere"),
    staging: bool = typer.Option(False, "--staging", help="Use the Let's Encrypt staging CA"),
) -> None:
    _invoke_from_locals(ctx, cmd_tls_setup, locals())


@harden_app.command("run", help="ufw, fail2ban, unattended upgrades, PHP, MariaDB and header hardening.")
def harden_run(
    ctx: typer.Context,
    ssh_port: int = typer.Option(22, "--ssh-port", help="SSH port to keep open"),
    trusted_ips: str | None = typer.Option(None, "--trusted-ips", help="Comma-separated IPs or CIDRs to allow"),
    skip_firewall: bool = typer.Option(False, "--skip-firewall", help="Leave ufw untouched"),
    audit_tools: bool = typer.Option(False, "--audit-tools", help="Install logwatch and rkhunter"),
) -> None:
    _invoke_from_locals(ctx, cmd_harden_run, locals())


@harden_app.command("ratelimit", help="Apache request rate limiting with mod_evasive.")
def harden_ratelimit(
    ctx: typer.Context,
    page_count: int = typer.Option(20, "--page-count", help="Requests per page per second"),
    site_count: int = typer.Option(100, "--site-count", help="Requests per site per second"),
    mod_security: bool = typer.Option(False, "--mod-security", help="Also enable ModSecurity"),
) -> None:
    _invoke_from_locals(ctx, cmd_harden_ratelimit, locals())


@redis_app.command("setup", help="Install Redis and use it for sessions and the Moodle cache.")
def redis_setup(
    ctx: typer.Context,
    max_memory: str = typer.Option("256mb", "--max-memory", help="Redis maxmemory, e.g. 256mb or 1gb"),
    port: int = typer.Option(6379, "--port", help="Redis port"),
    skip_sessions: bool = typer.Option(False, "--skip-sessions", help="Leave session storage unchanged"),
    skip_muc: bool = typer.Option(False, "--skip-muc", help="Leave the Moodle cache stores unchanged"),
) -> None:
    _invoke_from_locals(ctx, cmd_redis_setup, locals())


@redis_app.command("status", help="Redis memory, hit rate and keyspace as JSON.")
def redis_status(
    ctx: typer.Context,
    port: int = typer.Option(6379, "--port", help="Redis port"),
) -> None:
    _invoke_from_locals(ctx, cmd_redis_status, locals())


@cron_app.command("list", help="List every scheduled job.")
def cron_list(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_cron_list)


@cron_app.command("render", help="Print the cron.d file for a job.")
def cron_render(ctx: typer.Context, name: str = typer.Argument(..., help="Job name")) -> None:
    _invoke_from_locals(ctx, cmd_cron_render, locals())


@config_app.command("show", help="Print resolved settings with secrets masked.")
def config_show(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_config_show)


@config_app.command("render-php", help="Write config.php from settings and credentials.")
def config_render_php(
    ctx: typer.Context,
    wwwroot: str | None = typer.Option(None, "--wwwroot", help="Public site URL"),
    dbhost: str | None = typer.Option(None, "--dbhost", help="Database host (default: localhost)"),
    sslproxy: bool = typer.Option(False, "--sslproxy", help="Site sits behind a TLS-terminating proxy"),
    redis_host: str | None = typer.Option(None, "--redis-host", help="Redis host for sessions"),
    smtp_host: str | None = typer.Option(None, "--smtp-host", help="SMTP host:port"),
    noreply: str | None = typer.Option(None, "--noreply", help="No-reply address"),
    output: str | None = typer.Option(None, "--output", help="Target path (default: MOODLE_DIR/config.php)"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
    stdout: bool = typer.Option(False, "--stdout", help="Print instead of writing"),
) -> None:
    _invoke_from_locals(ctx, cmd_config_render_php, locals())


@monitoring_app.command("ops-agent-config", help="Render (or --write) the Ops Agent config.yaml.")
def monitoring_ops_agent_config(
    ctx: typer.Context,
    web_server: str | None = typer.Option(None, "--web-server", help="apache or nginx (default: detected)"),
    write: bool = typer.Option(False, "--write", help="Write the file and restart the agent"),
    path: str | None = typer.Option(None, "--path", help="Target path"),
) -> None:
    _invoke_from_locals(ctx, cmd_monitoring_ops_agent_config, locals())


@monitoring_app.command("setup", help="Install the Ops Agent, status endpoints, health service and log metrics.")
def monitoring_setup(
    ctx: typer.Context,
    web_server: str | None = typer.Option(None, "--web-server", help="apache or nginx (default: detected)"),
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
    skip_agent: bool = typer.Option(False, "--skip-agent", help="Do not install the Ops Agent"),
    skip_metrics: bool = typer.Option(False, "--skip-metrics", help="Do not create log-based metrics"),
    health_config: str | None = typer.Option(None, "--health-config", help="Config file for the health service"),
) -> None:
    _invoke_from_locals(ctx, cmd_monitoring_setup, locals())


@monitoring_app.command("alerts", help="Email notification channel and CPU, memory and disk alert policies.")
def monitoring_alerts(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", help="Alert recipient"),
    project: str | None = typer.Option(None, "--project", help=_PROJECT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_monitoring_alerts, locals())


def _run_cli(*, root_app: typer.Typer, prog_name: str, argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        result = root_app(args=argv, prog_name=prog_name, standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.exceptions.Abort:
        _rich_error("aborted")
        return EXIT_ERROR
    except click.ClickException as e:
        if isinstance(e, click.UsageError):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _render_usage_error_with_help(
            message=str(e),
            fallback_help=_root_help_text(root_app=root_app, prog_name=prog_name),
        )
        return EXIT_USAGE
    except PrerequisiteError as e:
        _rich_error(str(e))
        return EXIT_PREREQUISITE
    except OpError as e:
        _rich_error(str(e))
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=app, prog_name="moodle-ops", argv=argv)
