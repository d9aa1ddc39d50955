from __future__ import annotations

import argparse
import re
import shutil
from pathlib import Path
from typing import Any

from .cli_shared import GlobalOpts, OpError, PrerequisiteError, UsageError, _print_json
from .config_files import insert_before_setup, redis_session_lines
from .context import OpsContext, build_ops_context
from .host import HostFiles, active_web_server, apt_install, php_version, systemctl
from .runner import require_root

REDIS_LOG = "/var/log/moodle-redis-setup.log"
REDIS_CONF = "/etc/redis/redis.conf"
REDIS_SERVICE = "redis-server"
MUC_STORE = "moodle_redis"
_MEMORY_RE = re.compile(r"^\d+(kb|mb|gb)$", re.IGNORECASE)
INFO_FIELDS = (
    "redis_version",
    "uptime_in_seconds",
    "connected_clients",
    "used_memory_human",
    "maxmemory_human",
    "maxmemory_policy",
    "instantaneous_ops_per_sec",
    "total_commands_processed",
    "evicted_keys",
)


def render_redis_conf(*, port: int = 6379, max_memory: str = "256mb", policy: str = "allkeys-lru") -> str:
    return f"""\
bind 127.0.0.1 ::1
port {port}
protected-mode yes
timeout 0
tcp-keepalive 300
daemonize no
supervised systemd
pidfile /var/run/redis/redis-server.pid
loglevel notice
logfile /var/log/redis/redis-server.log
databases 16

save ""
appendonly no
dir /var/lib/redis

maxmemory {max_memory}
maxmemory-policy {policy}
maxmemory-samples 5
lazyfree-lazy-eviction yes
lazyfree-lazy-expire yes
lazyfree-lazy-server-del yes

slowlog-log-slower-than 10000
slowlog-max-len 128
latency-monitor-threshold 100
"""


def muc_php(*, moodle_dir: str, port: int, prefix: str = "moodle_muc_") -> str:
    """PHP that registers the Redis cache store and maps application and session caches onto it."""
    config_php = str(Path(moodle_dir) / "config.php")
    return (
        "define('CLI_SCRIPT', true);"
        f"require({config_php!r});"
        "require_once($CFG->dirroot.'/cache/locallib.php');"
        "$writer = cache_config_writer::instance();"
        f"if (!array_key_exists('{MUC_STORE}', $writer->get_all_stores())) {{"
        f"$writer->add_store_instance('{MUC_STORE}', 'redis', "
        f"['server' => '127.0.0.1:{port}', 'prefix' => '{prefix}', 'password' => '', 'serializer' => 1, 'compressor' => 0]);"
        "}"
        "$writer->set_mode_mappings(["
        f"cache_store::MODE_APPLICATION => ['{MUC_STORE}'],"
        f"cache_store::MODE_SESSION => ['{MUC_STORE}'],"
        "cache_store::MODE_REQUEST => ['default_request'],"
        "]);"
        "echo 'MUC OK';"
    )


def parse_redis_info(text: str) -> dict[str, Any]:
    raw: dict[str, str] = {}
    keyspace: dict[str, int] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, _, value = line.partition(":")
        if re.fullmatch(r"db\d+", key):
            m = re.search(r"keys=(\d+)", value)
            keyspace[key] = int(m.group(1)) if m else 0
            continue
        raw[key] = value
    out: dict[str, Any] = {k: raw[k] for k in INFO_FIELDS if k in raw}
    hits = int(raw.get("keyspace_hits", "0") or 0)
    misses = int(raw.get("keyspace_misses", "0") or 0)
    out["hitRate"] = round(100 * hits / (hits + misses), 1) if hits + misses else None
    out["keyspace"] = keyspace
    return out


class RedisSetup:
    def __init__(self, ctx: OpsContext, *, port: int = 6379, max_memory: str = "256mb", root: Path = Path("/")) -> None:
        self.ctx = ctx
        self.port = port
        self.max_memory = max_memory
        stamp = ctx.now().strftime("%Y%m%d_%H%M%S")
        self.stamp = stamp
        self.files = HostFiles(ctx, backup_dir=root / f"var/backups/redis-setup-{stamp}", root=root)
        self.php = ""

    def server(self) -> None:
        runner = self.ctx.runner
        self.ctx.log.section("Redis server")
        apt_install(runner, "redis-server", "redis-tools")
        self.files.write(REDIS_CONF, render_redis_conf(port=self.port, max_memory=self.max_memory), mode=0o640)
        runner.run(["chown", "redis:redis", str(self.files.path(REDIS_CONF))], label="chown redis.conf", mutating=True)
        systemctl(runner, "enable", REDIS_SERVICE)
        systemctl(runner, "restart", REDIS_SERVICE)
        if runner.dry_run:
            return
        if not runner.systemctl_is_active(REDIS_SERVICE):
            raise OpError(f"{REDIS_SERVICE} failed to start (check: journalctl -u {REDIS_SERVICE})")
        res = runner.run(["redis-cli", "-p", str(self.port), "ping"], check=False)
        if "PONG" not in res.stdout:
            raise OpError(f"redis-cli ping failed: {res.stderr.strip() or res.stdout.strip()}")
        self.ctx.log.success(f"Redis answering on 127.0.0.1:{self.port}")

    def php_extension(self) -> None:
        runner = self.ctx.runner
        self.ctx.log.section("PHP Redis extension")
        self.php = php_version(runner)
        if not self.php:
            if not runner.dry_run:
                raise PrerequisiteError("PHP not found (run: moodle-ops vm provision)")
            self.php = "8.2"
        apt_install(runner, f"php{self.php}-redis", update=False)
        if not runner.dry_run:
            modules = runner.run(["php", "-m"], check=False).stdout.split()
            if "redis" not in modules:
                raise OpError(f"php{self.php}-redis installed but PHP does not load the redis module")
        web = active_web_server(runner)
        if web == "apache":
            systemctl(runner, "restart", "apache2")
        elif web == "nginx":
            systemctl(runner, "restart", "nginx")
            systemctl(runner, "restart", f"php{self.php}-fpm", check=False)

    def sessions(self) -> bool:
        s = self.ctx.settings
        path = self.files.path(str(s.config_php))
        if not path.is_file():
            self.ctx.log.warn(f"{path} not found; add the Redis session settings after installing Moodle")
            return False
        text = path.read_text(encoding="utf-8", errors="replace")
        if "session_redis_host" in text:
            self.ctx.log.log("config.php already uses Redis sessions")
            return False
        if self.ctx.runner.dry_run:
            self.ctx.log.log(f"DRYRUN add Redis session handler to {path}")
            return False
        shutil.copy2(path, path.with_name(f"{path.name}.pre-redis-{self.stamp}"))
        updated = insert_before_setup(text, ["// Redis sessions", *redis_session_lines("127.0.0.1", self.port)])
        self.files.write(str(s.config_php), updated, mode=path.stat().st_mode & 0o777)
        self.ctx.log.success("config.php now stores sessions in Redis")
        return True

    def muc(self) -> bool:
        s = self.ctx.settings
        if not self.files.path(str(s.config_php)).is_file():
            self.ctx.log.warn("Moodle not installed; skipping cache store configuration")
            return False
        argv = ["php", "-r", muc_php(moodle_dir=s.moodle_dir, port=self.port)]
        if self.ctx.runner.which("sudo"):
            argv = ["sudo", "-u", s.web_user] + argv
        res = self.ctx.runner.run(argv, label="configure MUC", check=False, mutating=True)
        if not res.ok:
            self.ctx.log.warn(f"Cache store configuration failed: {res.stderr.strip() or res.stdout.strip()}")
            return False
        self.ctx.log.success(f"MUC application and session caches mapped to {MUC_STORE}")
        return True


def _port(args: argparse.Namespace) -> int:
    port = int(getattr(args, "port", None) or 6379)
    if not 0 < port < 65536:
        raise UsageError(f"invalid --port: {port}")
    return port


def cmd_redis_setup(args: argparse.Namespace, g: GlobalOpts) -> int:
    max_memory = (getattr(args, "max_memory", None) or "256mb").strip().lower()
    if not _MEMORY_RE.match(max_memory):
        raise UsageError(f"invalid --max-memory: {max_memory} (e.g. 256mb, 1gb)")
    port = _port(args)
    require_root()
    ctx = build_ops_context(g, tool="redis", default_log_file=REDIS_LOG)
    ctx.log.section("Redis cache for Moodle")
    r = RedisSetup(ctx, port=port, max_memory=max_memory, root=Path(getattr(args, "root", None) or "/"))
    r.server()
    r.php_extension()
    sessions = False if getattr(args, "skip_sessions", False) else r.sessions()
    muc = False if getattr(args, "skip_muc", False) else r.muc()
    ctx.log.wide_event("success", port=port, sessions=sessions, muc=muc)
    _print_json(
        {
            "port": port,
            "maxMemory": max_memory,
            "phpVersion": r.php,
            "sessionsConfigured": sessions,
            "mucConfigured": muc,
            "written": r.files.written,
        },
        pretty=g.pretty,
    )
    return 0


def cmd_redis_status(args: argparse.Namespace, g: GlobalOpts) -> int:
    port = _port(args)
    ctx = build_ops_context(g, tool="redis")
    ctx.runner.require_binary("redis-cli", hint="apt-get install redis-tools")
    res = ctx.runner.run(["redis-cli", "-p", str(port), "INFO"], label="redis-cli INFO")
    out = parse_redis_info(res.stdout)
    out["active"] = ctx.runner.systemctl_is_active(REDIS_SERVICE)
    out["port"] = port
    _print_json(out, pretty=g.pretty)
    return 0
