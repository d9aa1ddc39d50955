from moodle_ops.config_files import ConfigPhpParams
from moodle_ops.config_files import insert_before_setup
from moodle_ops.config_files import parse_config_php
from moodle_ops.config_files import php_version_release
from moodle_ops.config_files import redis_session_lines
from moodle_ops.config_files import render_config_php


_CONFIG = """<?php
unset($CFG);
$CFG = new stdClass();
$CFG->dbtype    = 'mysqli';
$CFG->dbhost    = 'localhost';
$CFG->dbname    = getenv('MOODLE_DB_NAME') ?: 'moodle_lms';
$CFG->dbpass    = "p4ss'word";  // inline comment
$CFG->sslproxy  = true;
$CFG->minpasswordlength = 12;
$CFG->directorypermissions = 02770;
$CFG->dbhost    = 'ignored-second';
require_once(__DIR__ . '/lib/setup.php');
"""


def test_parse_config_php_literals_and_first_assignment_wins():
    cfg = parse_config_php(_CONFIG, environ={})
    assert cfg["dbtype"] == "mysqli"
    assert cfg["dbhost"] == "localhost"
    assert cfg["dbname"] == "moodle_lms"
    assert cfg["dbpass"] == "p4ss'word"
    assert cfg["sslproxy"] is True
    assert cfg["minpasswordlength"] == 12
    assert cfg["directorypermissions"] == "02770"


def test_parse_config_php_getenv_prefers_environment():
    cfg = parse_config_php(_CONFIG, environ={"MOODLE_DB_NAME": "from_env"})
    assert cfg["dbname"] == "from_env"


def test_render_config_php_round_trips_core_keys():
    text = render_config_php(
        ConfigPhpParams(
            wwwroot="https://lms.example.edu/",
            dbpass="it's-secret",
            sslproxy=True,
            redis_host="10.0.0.5",
        )
    )
    cfg = parse_config_php(text, environ={})
    assert cfg["wwwroot"] == "https://lms.example.edu"
    assert cfg["dbname"] == "moodle_lms"
    assert cfg["dataroot"] == "/var/moodledata"
    assert cfg["sslproxy"] is True
    assert cfg["session_redis_host"] == "10.0.0.5"
    assert cfg["minpasswordlength"] == 12
    assert cfg["passwordpolicy"] == 1
    assert "it\\'s-secret" in text
    assert text.rstrip().endswith("require_once(__DIR__ . '/lib/setup.php');")


def test_render_config_php_without_redis_or_sslproxy():
    text = render_config_php(ConfigPhpParams(wwwroot="http://10.0.0.2"))
    assert "session_handler_class" not in text
    assert "sslproxy" not in text


def test_php_version_release():
    text = "<?php\n$version  = 2024100700.00;\n$release  = '4.5 (Build: 20241007)';\n"
    assert php_version_release(text) == ("4.5 (Build: 20241007)", "2024100700.00")
    assert php_version_release("") == ("", "")


def test_insert_before_setup_keeps_setup_last():
    out = insert_before_setup(_CONFIG, ["$CFG->a = 1;", "$CFG->b = 2;"])
    assert out.index("$CFG->b = 2;") < out.index("require_once(__DIR__ . '/lib/setup.php');")
    assert out.endswith("require_once(__DIR__ . '/lib/setup.php');\n")


def test_insert_before_setup_appends_without_include():
    assert insert_before_setup("<?php\n$CFG->x = 1;\n\n", ["$CFG->a = 1;"]) == "<?php\n$CFG->x = 1;\n\n$CFG->a = 1;\n"


def test_redis_session_lines_parse_back():
    cfg = parse_config_php("\n".join(redis_session_lines("127.0.0.1", 6380, database=2)), environ={})
    assert cfg["session_handler_class"] == "\\core\\session\\redis"
    assert cfg["session_redis_host"] == "127.0.0.1"
    assert cfg["session_redis_port"] == 6380
    assert cfg["session_redis_database"] == 2
