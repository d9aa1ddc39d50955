import tarfile

import pytest

from moodle_ops.archives import check_tar_gz
from moodle_ops.archives import extract_tar_gz
from moodle_ops.archives import gzip_ok
from moodle_ops.archives import make_tar_gz
from moodle_ops.archives import make_tar_gz_of_files
from moodle_ops.archives import tar_has_member
from moodle_ops.cli_shared import OpError
from moodle_ops.manifest import BackupManifest
from moodle_ops.manifest import parse_manifest
from moodle_ops.manifest import read_manifest
from moodle_ops.manifest import render_manifest


def _manifest(**kw):
    base = dict(
        backup_type="daily",
        backup_date="2026-03-14 02:00:00",
        timestamp="20260314_020000",
        db_name="moodle_lms",
        db_size="1.2M",
        moodledata_path="/var/moodledata",
        moodledata_size="30.0M",
        config_size="4.0K",
        total_size="31.2M",
    )
    base.update(kw)
    return BackupManifest(**base)


def test_render_manifest_layout_and_parse():
    text = render_manifest(_manifest(system_info={"Hostname": "moodle-vm"}))
    assert "Backup Type: daily" in text
    assert "Total Size: 31.2M" in text
    assert "Moodle Code:" not in text
    parsed = parse_manifest(text)
    assert parsed["Backup Type"] == "daily"
    assert parsed["Backup Date"] == "2026-03-14 02:00:00"
    assert parsed["Timestamp"] == "20260314_020000"
    # Indented section lines are not top-level keys.
    assert "Name" not in parsed


def test_render_manifest_includes_code_section_for_monthly():
    text = render_manifest(_manifest(backup_type="monthly", moodle_code_path="/var/www/html/moodle", code_size="80M"))
    assert "Moodle Code:" in text
    assert "  File: moodle-code.tar.gz" in text


def test_read_manifest_missing_dir_is_empty(tmp_path):
    assert read_manifest(tmp_path) == {}


def test_make_tar_gz_excludes_and_extracts(tmp_path):
    src = tmp_path / "moodledata"
    (src / "filedir" / "ab").mkdir(parents=True)
    (src / "filedir" / "ab" / "f1").write_text("x")
    (src / "cache").mkdir()
    (src / "cache" / "junk").write_text("y")
    dest = tmp_path / "moodledata.tar.gz"

    make_tar_gz(dest, source=src, excludes=("cache",))

    check = check_tar_gz(dest, keep_names=10)
    assert check.ok
    assert check.file_count == 1
    assert tar_has_member(dest, "filedir/")
    assert not tar_has_member(dest, "cache/junk")

    out = tmp_path / "out"
    out.mkdir()
    extract_tar_gz(dest, out)
    assert (out / "moodledata" / "filedir" / "ab" / "f1").read_text() == "x"


def test_make_tar_gz_of_files_skips_missing(tmp_path):
    present = tmp_path / "config.php"
    present.write_text("<?php")
    added = make_tar_gz_of_files(tmp_path / "cfg.tar.gz", [present, tmp_path / "missing.cnf"])
    assert added == [present]


def test_corrupt_archives_detected(tmp_path):
    bad = tmp_path / "bad.gz"
    bad.write_bytes(b"not gzip at all")
    assert gzip_ok(bad) is False
    assert check_tar_gz(bad).ok is False


def test_restore_hint_uses_positional_backup_argument():
    text = render_manifest(_manifest(offsite="pending"))
    assert "  moodle-ops restore run <this directory>" in text
    assert "--backup" not in text
    assert parse_manifest(text)["Offsite"] == "pending"


def test_extract_refuses_members_outside_destination(tmp_path):
    evil = tmp_path / "evil.tar.gz"
    payload = tmp_path / "payload"
    payload.write_text("x")
    with tarfile.open(evil, "w:gz") as tar:
        tar.add(str(payload), arcname="../escaped")

    with pytest.raises(OpError, match="unsafe member path '../escaped'"):
        extract_tar_gz(evil, tmp_path / "out")
    assert not (tmp_path / "escaped").exists()
