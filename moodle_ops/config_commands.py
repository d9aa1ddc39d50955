from __future__ import annotations

import argparse
import shutil
from dataclasses import asdict
from pathlib import Path
from typing import Any

from .cli_shared import GlobalOpts, UsageError, _mask_secret, _print_json, _require_str, _write_secure_text
from .config_files import ConfigPhpParams, render_config_php
from .context import build_ops_context
from .settings import Settings

SECRET_FIELDS = ("db_password", "db_root_password", "hmac_secret")


def masked_settings(settings: Settings) -> dict[str, Any]:
    out = asdict(settings)
    for key in SECRET_FIELDS:
        out[key] = _mask_secret(out.get(key) or "")
    out["config_php"] = str(settings.config_php)
    return out


def cmd_config_show(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    _print_json(masked_settings(g.settings), pretty=g.pretty)
    return 0


def cmd_config_render_php(args: argparse.Namespace, g: GlobalOpts) -> int:
    wwwroot = _require_str(getattr(args, "wwwroot", None), "--wwwroot", hint="e.g. https://lms.example.com")
    if not wwwroot.startswith(("http://", "https://")):
        raise UsageError(f"invalid --wwwroot (expected http(s) URL): {wwwroot}")
    ctx = build_ops_context(g, tool="config")
    creds = ctx.credentials()
    if not creds.password:
        ctx.log.warn("No database password resolved; config.php will carry an empty dbpass")
    params = ConfigPhpParams(
        wwwroot=wwwroot,
        dbname=creds.name,
        dbuser=creds.user,
        dbpass=creds.password,
        dbhost=getattr(args, "dbhost", None) or "localhost",
        dataroot=ctx.settings.moodle_data,
        sslproxy=bool(getattr(args, "sslproxy", False)),
        redis_host=getattr(args, "redis_host", None) or "",
        smtphosts=getattr(args, "smtp_host", None) or "",
        noreplyaddress=getattr(args, "noreply", None) or ConfigPhpParams.noreplyaddress,
    )
    text = render_config_php(params)
    if getattr(args, "stdout", False):
        print(text, end="")
        return 0

    path = Path(getattr(args, "output", None) or ctx.settings.config_php)
    if path.exists() and not getattr(args, "force", False):
        raise UsageError(f"{path} already exists (use --force to overwrite)")
    if ctx.runner.dry_run:
        ctx.log.log(f"DRYRUN write {path}")
    else:
        _write_secure_text(path=path, text=text, mode=0o640)
        try:
            shutil.chown(path, group=ctx.settings.web_user)
        except (LookupError, PermissionError) as e:
            ctx.log.warn(f"could not set group {ctx.settings.web_user} on {path}: {e}")
        ctx.log.success(f"Wrote {path}")
    ctx.log.wide_event("success", path=str(path), redis=bool(params.redis_host))
    _print_json(
        {
            "path": str(path),
            "wwwroot": params.wwwroot,
            "dbhost": params.dbhost,
            "dbname": params.dbname,
            "dbuser": params.dbuser,
            "sslproxy": params.sslproxy,
            "redis": bool(params.redis_host),
            "written": not ctx.runner.dry_run,
        },
        pretty=g.pretty,
    )
    return 0
