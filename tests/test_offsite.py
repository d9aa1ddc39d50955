import json

import pytest
from botocore.exceptions import ClientError

from moodle_ops.cli_shared import OpError
from moodle_ops.cli_shared import UsageError
from moodle_ops.offsite import OffsiteStore
from moodle_ops.offsite import build_offsite_store
from moodle_ops.offsite import ensure_bucket
from moodle_ops.offsite import parse_gs_url
from moodle_ops.settings import Settings


class FakeS3:
    def __init__(self, keys=()):
        self.keys = list(keys)
        self.uploaded: list[tuple[str, str]] = []
        self.downloaded: list[str] = []

    def list_objects_v2(self, **kwargs):
        prefix = kwargs.get("Prefix", "")
        return {"Contents": [{"Key": k} for k in self.keys if k.startswith(prefix)], "IsTruncated": False}

    def upload_file(self, filename, bucket, key):
        self.uploaded.append((bucket, key))

    def download_file(self, bucket, key, filename):
        self.downloaded.append(key)
        with open(filename, "w", encoding="utf-8") as fh:
            fh.write(key)

    def head_bucket(self, **kwargs):
        raise ClientError({"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadBucket")


class FakeSession:
    def __init__(self, s3):
        self.s3 = s3
        self.endpoints: list[str] = []

    def client(self, name, endpoint_url=None):
        assert name == "s3"
        self.endpoints.append(endpoint_url)
        return self.s3


def test_parse_gs_url():
    assert parse_gs_url("gs://bkt/daily/backup_1/") == ("bkt", "daily/backup_1")
    assert parse_gs_url("gs://bkt") == ("bkt", "")
    with pytest.raises(UsageError):
        parse_gs_url("s3://bkt/x")


def test_build_offsite_store_requires_bucket_and_hmac():
    with pytest.raises(UsageError, match="bucket"):
        build_offsite_store(Settings())
    with pytest.raises(UsageError, match="HMAC"):
        build_offsite_store(Settings(backup_bucket="bkt"))


def test_upload_dir_uses_gcs_xml_endpoint(tmp_path):
    (tmp_path / "BACKUP_MANIFEST.txt").write_text("m")
    (tmp_path / "database.sql.gz").write_text("d")
    s3 = FakeS3()
    session = FakeSession(s3)
    store = OffsiteStore(session=session, bucket="bkt")

    keys = store.upload_dir(tmp_path, prefix="daily/backup_20260314_020000/")

    assert keys == [
        "daily/backup_20260314_020000/BACKUP_MANIFEST.txt",
        "daily/backup_20260314_020000/database.sql.gz",
    ]
    assert session.endpoints == ["https://storage.googleapis.com"]


def test_download_prefix_and_count_manifests(tmp_path):
    s3 = FakeS3(
        [
            "daily/backup_1/BACKUP_MANIFEST.txt",
            "daily/backup_1/database.sql.gz",
            "weekly/backup_2/BACKUP_MANIFEST.txt",
        ]
    )
    store = OffsiteStore(session=FakeSession(s3), bucket="bkt")
    written = store.download_prefix("daily/backup_1", tmp_path)
    assert sorted(p.name for p in written) == ["BACKUP_MANIFEST.txt", "database.sql.gz"]
    assert store.count_manifests() == 2
    assert store.accessible() is False
    with pytest.raises(OpError, match="no objects"):
        store.download_prefix("monthly/none", tmp_path)


def test_ensure_bucket_creates_with_lifecycle(make_runner, monkeypatch):
    runner = make_runner({"buckets describe": (1, "")})
    seen = {}
    real_run = runner.run

    def spy(argv, **kwargs):
        for a in argv:
            if str(a).startswith("--lifecycle-file="):
                with open(str(a).split("=", 1)[1], encoding="utf-8") as fh:
                    seen["lifecycle"] = json.load(fh)
        return real_run(argv, **kwargs)

    monkeypatch.setattr(runner, "run", spy)
    assert ensure_bucket(runner, bucket="bkt", region="us-central1", project="p1") is True
    calls = runner.joined()
    assert "gcloud --quiet --project p1 storage buckets create gs://bkt --location=us-central1" in calls
    rules = seen["lifecycle"]["lifecycle"]["rule"]
    assert rules[0]["condition"] == {"age": 90, "matchesPrefix": ["daily/", "weekly/"]}
    assert rules[1]["condition"]["age"] == 365


def test_ensure_bucket_existing_is_noop(make_runner):
    runner = make_runner()
    assert ensure_bucket(runner, bucket="bkt", region="us-central1") is False
    assert len(runner.calls) == 1
