import argparse
import json
import stat

import pytest

from moodle_ops import redis_commands
from moodle_ops.cli_shared import OpError
from moodle_ops.cli_shared import PrerequisiteError
from moodle_ops.cli_shared import UsageError
from moodle_ops.redis_commands import RedisSetup
from moodle_ops.redis_commands import muc_php
from moodle_ops.redis_commands import parse_redis_info
from moodle_ops.redis_commands import render_redis_conf

_INFO = """\
# Server
redis_version:7.0.15
uptime_in_seconds:3600
# Memory
used_memory_human:12.5M
maxmemory_human:256.00M
maxmemory_policy:allkeys-lru
# Stats
keyspace_hits:90
keyspace_misses:10
evicted_keys:0
# Keyspace
db0:keys=42,expires=40,avg_ttl=1000
db1:keys=3,expires=0,avg_ttl=0
"""

_CONFIG = "<?php\n$CFG->wwwroot = 'https://lms.example.com';\nrequire_once(__DIR__ . '/lib/setup.php');\n"


def _under(root, path):
    return root / str(path).lstrip("/")


def test_render_redis_conf_is_local_and_bounded():
    text = render_redis_conf(port=6380, max_memory="1gb")
    assert text.startswith("bind 127.0.0.1 ::1\nport 6380\nprotected-mode yes\n")
    assert "maxmemory 1gb\nmaxmemory-policy allkeys-lru\n" in text
    assert 'save ""' in text


def test_muc_php_maps_application_and_session_caches():
    php = muc_php(moodle_dir="/var/www/html/moodle", port=6379)
    assert "require('/var/www/html/moodle/config.php');" in php
    assert "add_store_instance('moodle_redis', 'redis'" in php
    assert "'server' => '127.0.0.1:6379'" in php
    assert "cache_store::MODE_SESSION => ['moodle_redis']" in php
    assert "cache_store::MODE_REQUEST => ['default_request']" in php


def test_parse_redis_info():
    info = parse_redis_info(_INFO)
    assert info["redis_version"] == "7.0.15"
    assert info["maxmemory_policy"] == "allkeys-lru"
    assert info["hitRate"] == 90.0
    assert info["keyspace"] == {"db0": 42, "db1": 3}
    assert parse_redis_info("")["hitRate"] is None


def test_server_writes_conf_and_checks_ping(tmp_path, make_runner, make_ctx):
    runner = make_runner({"ping": "PONG"}, binaries=("systemctl",))
    r = RedisSetup(make_ctx(runner), port=6379, max_memory="512mb", root=tmp_path)

    r.server()

    conf = tmp_path / "etc/redis/redis.conf"
    assert "maxmemory 512mb" in conf.read_text()
    assert stat.S_IMODE(conf.stat().st_mode) == 0o640
    assert f"chown redis:redis {conf}" in runner.joined()
    assert runner.joined()[-1] == "redis-cli -p 6379 ping"


def test_server_fails_when_ping_does_not_answer(tmp_path, make_runner, make_ctx):
    runner = make_runner({"ping": (1, "")}, binaries=("systemctl",))
    with pytest.raises(OpError, match="ping failed"):
        RedisSetup(make_ctx(runner), root=tmp_path).server()


def test_php_extension_requires_php(make_runner, make_ctx):
    with pytest.raises(PrerequisiteError, match="PHP not found"):
        RedisSetup(make_ctx(make_runner())).php_extension()


def test_php_extension_restarts_nginx_and_fpm(make_runner, make_ctx):
    runner = make_runner(
        {"is-active --quiet apache2": (3, ""), "php -r": "8.2", "php -m": "Core\nredis\nzip\n"},
        binaries=("php", "systemctl"),
    )
    r = RedisSetup(make_ctx(runner))
    r.php_extension()
    assert r.php == "8.2"
    assert runner.joined()[-2:] == ["systemctl restart nginx", "systemctl restart php8.2-fpm"]


def test_sessions_inserted_before_setup_once(tmp_path, make_runner, make_ctx):
    ctx = make_ctx(make_runner())
    config_php = _under(tmp_path, ctx.settings.config_php)
    config_php.parent.mkdir(parents=True)
    config_php.write_text(_CONFIG)
    r = RedisSetup(ctx, port=6380, root=tmp_path)

    assert r.sessions() is True
    assert r.sessions() is False

    text = config_php.read_text()
    assert text.index("$CFG->session_redis_port = 6380;") < text.index("lib/setup.php")
    assert text.count("session_handler_class") == 1
    assert config_php.with_name("config.php.pre-redis-20260314_020000").read_text() == _CONFIG


def test_sessions_skipped_without_config(tmp_path, make_runner, make_ctx):
    assert RedisSetup(make_ctx(make_runner()), root=tmp_path).sessions() is False


def test_muc_runs_as_web_user(tmp_path, make_runner, make_ctx):
    runner = make_runner({"php -r": "MUC OK"}, binaries=("sudo",))
    ctx = make_ctx(runner)
    config_php = _under(tmp_path, ctx.settings.config_php)
    config_php.parent.mkdir(parents=True)
    config_php.write_text(_CONFIG)

    assert RedisSetup(ctx, root=tmp_path).muc() is True
    assert runner.calls[0][:5] == ("sudo", "-u", "www-data", "php", "-r")


def test_cmd_redis_setup_validates_memory(g):
    with pytest.raises(UsageError, match="--max-memory"):
        redis_commands.cmd_redis_setup(argparse.Namespace(max_memory="lots"), g)
    with pytest.raises(UsageError, match="--port"):
        redis_commands.cmd_redis_setup(argparse.Namespace(max_memory="256mb", port=70000), g)


def test_cmd_redis_setup_dry_run(tmp_path, monkeypatch, g, capsys, make_runner, make_ctx):
    runner = make_runner(dry_run=True)
    monkeypatch.setattr(redis_commands, "require_root", lambda: None)
    monkeypatch.setattr(redis_commands, "build_ops_context", lambda _g, **kw: make_ctx(runner))

    args = argparse.Namespace(max_memory="256MB", port=None, skip_sessions=False, skip_muc=True, root=str(tmp_path))
    assert redis_commands.cmd_redis_setup(args, g) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["maxMemory"] == "256mb"
    assert out["phpVersion"] == "8.2"
    assert out["sessionsConfigured"] is False
    assert out["written"] == []
    assert "apt-get install -y -qq php8.2-redis" in runner.skipped


def test_cmd_redis_status(monkeypatch, g, capsys, make_runner, make_ctx):
    runner = make_runner({"INFO": _INFO}, binaries=("redis-cli", "systemctl"))
    monkeypatch.setattr(redis_commands, "build_ops_context", lambda _g, **kw: make_ctx(runner))

    assert redis_commands.cmd_redis_status(argparse.Namespace(port=6379), g) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["active"] is True
    assert out["keyspace"]["db0"] == 42
    assert out["used_memory_human"] == "12.5M"
