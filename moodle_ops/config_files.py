from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any

_CFG_RE = re.compile(r"^\s*\$CFG->(\w+)\s*=\s*(.+?);\s*(?://.*)?$")
_GETENV_RE = re.compile(r"^getenv\(\s*'([^']+)'\s*\)\s*\?:\s*(.+)$")
_RELEASE_RE = re.compile(r"\$release\s*=\s*'([^']*)'")
_VERSION_RE = re.compile(r"\$version\s*=\s*([0-9.]+)")


def _php_literal(raw: str, environ: dict[str, str]) -> Any:
    val = raw.strip()
    m = _GETENV_RE.match(val)
    if m:
        env_val = environ.get(m.group(1), "")
        if env_val:
            return env_val
        return _php_literal(m.group(2), environ)
    if len(val) >= 2 and val[0] == val[-1] and val[0] in "'\"":
        return val[1:-1]
    low = val.lower()
    if low == "true":
        return True
    if low == "false":
        return False
    if re.fullmatch(r"-?\d+", val):
        # Octal permission literals such as 0755 stay as written.
        return val if len(val) > 1 and val.startswith("0") else int(val)
    return val


def parse_config_php(text: str, *, environ: dict[str, str] | None = None) -> dict[str, Any]:
    env = dict(os.environ) if environ is None else environ
    out: dict[str, Any] = {}
    for line in text.splitlines():
        m = _CFG_RE.match(line)
        if not m:
            continue
        key = m.group(1)
        if key in out:
            continue
        out[key] = _php_literal(m.group(2), env)
    return out


def php_version_release(text: str) -> tuple[str, str]:
    release = ""
    version = ""
    m = _RELEASE_RE.search(text)
    if m:
        release = m.group(1).strip()
    m = _VERSION_RE.search(text)
    if m:
        version = m.group(1)
    return release, version


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


_SETUP_REQUIRE_RE = re.compile(r"^\s*require_once\(.*lib/setup\.php['\"]\s*\);", re.MULTILINE)


def redis_session_lines(host: str, port: int = 6379, *, database: int = 0) -> list[str]:
    return [
        "$CFG->session_handler_class = '\\core\\session\\redis';",
        f"$CFG->session_redis_host = {_quote(host)};",
        f"$CFG->session_redis_port = {int(port)};",
        f"$CFG->session_redis_database = {int(database)};",
        "$CFG->session_redis_prefix = 'moodle_session_';",
        "$CFG->session_redis_acquire_lock_timeout = 120;",
        "$CFG->session_redis_lock_expire = 7200;",
    ]


def insert_before_setup(text: str, lines: list[str]) -> str:
    """Insert lines ahead of the lib/setup.php include, or append when it is missing."""
    block = "\n".join(lines) + "\n"
    m = _SETUP_REQUIRE_RE.search(text)
    if not m:
        return text.rstrip("\n") + "\n\n" + block
    return text[: m.start()] + block + "\n" + text[m.start():]


@dataclass(frozen=True)
class ConfigPhpParams:
    wwwroot: str
    dbname: str = "moodle_lms"
    dbuser: str = "moodle_user"
    dbpass: str = ""
    dbhost: str = "localhost"
    dataroot: str = "/var/moodledata"
    prefix: str = "mdl_"
    dbport: int = 3306
    sslproxy: bool = False
    redis_host: str = ""
    redis_port: int = 6379
    minpasswordlength: int = 12
    smtphosts: str = ""
    noreplyaddress: str = "noreply@example.com"


def render_config_php(p: ConfigPhpParams) -> str:
    lines = [
        "<?php",
        "unset($CFG);",
        "global $CFG;",
        "$CFG = new stdClass();",
        "",
        "$CFG->dbtype    = 'mysqli';",
        "$CFG->dblibrary = 'native';",
        f"$CFG->dbhost    = {_quote(p.dbhost)};",
        f"$CFG->dbname    = {_quote(p.dbname)};",
        f"$CFG->dbuser    = {_quote(p.dbuser)};",
        f"$CFG->dbpass    = {_quote(p.dbpass)};",
        f"$CFG->prefix    = {_quote(p.prefix)};",
        "$CFG->dboptions = [",
        "    'dbpersist' => false,",
        f"    'dbport'    => {int(p.dbport)},",
        "    'dbcollation' => 'utf8mb4_unicode_ci',",
        "];",
        "",
        f"$CFG->wwwroot   = {_quote(p.wwwroot.rstrip('/'))};",
        f"$CFG->dataroot  = {_quote(p.dataroot)};",
        "$CFG->admin     = 'admin';",
        "$CFG->directorypermissions = 02770;",
    ]
    if p.sslproxy:
        lines.append("$CFG->sslproxy = true;")
    if p.redis_host:
        lines += [""] + redis_session_lines(p.redis_host, p.redis_port)
    lines += [
        "",
        "$CFG->passwordpolicy = 1;",
        f"$CFG->minpasswordlength = {int(p.minpasswordlength)};",
        "$CFG->minpassworddigits = 1;",
        "$CFG->minpasswordlower = 1;",
        "$CFG->minpasswordupper = 1;",
        "$CFG->cronclionly = true;",
        "$CFG->preventexecpath = true;",
        "",
        f"$CFG->smtphosts = {_quote(p.smtphosts)};",
        "$CFG->smtpsecure = 'tls';",
        f"$CFG->noreplyaddress = {_quote(p.noreplyaddress)};",
        "",
        "$CFG->debug = 0;",
        "$CFG->debugdisplay = 0;",
        "$CFG->loglifetime = 365;",
        "",
        "require_once(__DIR__ . '/lib/setup.php');",
        "",
    ]
    return "\n".join(lines)
