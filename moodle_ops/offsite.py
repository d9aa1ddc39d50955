from __future__ import annotations

import json
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .cli_shared import OpError, UsageError
from .manifest import MANIFEST_NAME
from .runner import CommandRunner
from .settings import Settings

GCS_XML_ENDPOINT = "https://storage.googleapis.com"

LIFECYCLE_RULES: dict[str, Any] = {
    "rule": [
        {
            "action": {"type": "Delete"},
            "condition": {"age": 90, "matchesPrefix": ["daily/", "weekly/"]},
        },
        {
            "action": {"type": "Delete"},
            "condition": {"age": 365, "matchesPrefix": ["monthly/"]},
        },
    ]
}


def parse_gs_url(url: str) -> tuple[str, str]:
    raw = (url or "").strip()
    if not raw.startswith("gs://"):
        raise UsageError(f"not a gs:// url: {url!r}")
    rest = raw[len("gs://"):]
    bucket, _, prefix = rest.partition("/")
    if not bucket:
        raise UsageError(f"missing bucket in {url!r}")
    return bucket, prefix.strip("/")


def _offsite_session(settings: Settings) -> Any:
    if not settings.hmac_access_id or not settings.hmac_secret:
        raise UsageError(
            "missing GCS HMAC keys (set MOODLE_GCS_HMAC_ACCESS_ID and MOODLE_GCS_HMAC_SECRET)"
        )
    return boto3.session.Session(
        aws_access_key_id=settings.hmac_access_id,
        aws_secret_access_key=settings.hmac_secret,
        region_name="auto",
    )


@dataclass
class OffsiteStore:
    session: Any
    bucket: str

    def _s3(self) -> Any:
        return self.session.client("s3", endpoint_url=GCS_XML_ENDPOINT)

    def _keys(self, prefix: str) -> list[str]:
        s3 = self._s3()
        keys: list[str] = []
        kwargs: dict[str, Any] = {"Bucket": self.bucket}
        if prefix:
            kwargs["Prefix"] = prefix
        try:
            while True:
                resp = s3.list_objects_v2(**kwargs)
                for obj in resp.get("Contents") or []:
                    key = str(obj.get("Key", ""))
                    if key:
                        keys.append(key)
                token = resp.get("NextContinuationToken")
                if not resp.get("IsTruncated") or not token:
                    break
                kwargs["ContinuationToken"] = token
        except Exception as e:
            raise OpError(f"listing gs://{self.bucket}/{prefix} failed: {e}") from e
        return keys

    def accessible(self) -> bool:
        try:
            self._s3().head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError):
            return False
        return True

    def upload_dir(self, local_dir: Path, *, prefix: str) -> list[str]:
        s3 = self._s3()
        uploaded: list[str] = []
        for path in sorted(local_dir.rglob("*")):
            if not path.is_file():
                continue
            key = f"{prefix.strip('/')}/{path.relative_to(local_dir).as_posix()}"
            try:
                s3.upload_file(str(path), self.bucket, key)
            except Exception as e:
                raise OpError(f"upload to gs://{self.bucket}/{key} failed: {e}") from e
            uploaded.append(key)
        return uploaded

    def download_prefix(self, prefix: str, dest: Path) -> list[Path]:
        s3 = self._s3()
        clean = prefix.strip("/")
        written: list[Path] = []
        for key in self._keys(clean + "/" if clean else ""):
            rel = key[len(clean):].lstrip("/") if clean else key
            if not rel or rel.endswith("/"):
                continue
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                s3.download_file(self.bucket, key, str(target))
            except Exception as e:
                raise OpError(f"download of gs://{self.bucket}/{key} failed: {e}") from e
            written.append(target)
        if not written:
            raise OpError(f"no objects found under gs://{self.bucket}/{clean}")
        return written

    def count_manifests(self) -> int:
        return sum(1 for k in self._keys("") if k.endswith("/" + MANIFEST_NAME))


def build_offsite_store(settings: Settings, *, bucket: str | None = None) -> OffsiteStore:
    name = (bucket or settings.backup_bucket or "").strip()
    if not name:
        raise UsageError("missing backup bucket (set MOODLE_BACKUP_BUCKET)")
    return OffsiteStore(session=_offsite_session(settings), bucket=name)


def ensure_bucket(runner: CommandRunner, *, bucket: str, region: str, project: str = "") -> bool:
    base = ["gcloud", "--quiet"]
    if project:
        base += ["--project", project]
    existing = runner.run(base + ["storage", "buckets", "describe", f"gs://{bucket}"], check=False)
    if existing.ok:
        return False
    runner.run(
        base + ["storage", "buckets", "create", f"gs://{bucket}", f"--location={region}"],
        label="gcloud storage buckets create",
        mutating=True,
    )
    with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as fh:
        json.dump({"lifecycle": LIFECYCLE_RULES}, fh)
        lifecycle_path = Path(fh.name)
    try:
        runner.run(
            base + ["storage", "buckets", "update", f"gs://{bucket}", f"--lifecycle-file={lifecycle_path}"],
            label="gcloud storage buckets update",
            mutating=True,
        )
    finally:
        lifecycle_path.unlink(missing_ok=True)
    return True
