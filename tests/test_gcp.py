import argparse
import json
import os
import stat

import pytest

from moodle_ops import gcp_commands
from moodle_ops.cli_shared import OpError
from moodle_ops.cli_shared import PrerequisiteError
from moodle_ops.cli_shared import UsageError
from moodle_ops.gcp_commands import ArmorConfig
from moodle_ops.gcp_commands import IapConfig
from moodle_ops.gcp_commands import RunConfig
from moodle_ops.gcp_commands import VmConfig
from moodle_ops.gcp_commands import build_armor_rules
from moodle_ops.gcp_commands import cidr_list
from moodle_ops.gcp_commands import deploy_vm
from moodle_ops.gcp_commands import geo_expression
from moodle_ops.gcp_commands import iam_bindings
from moodle_ops.gcp_commands import instance_create_args
from moodle_ops.gcp_commands import put_secret
from moodle_ops.gcp_commands import run_deploy_args
from moodle_ops.gcp_commands import setup_armor
from moodle_ops.gcp_commands import setup_iap
from moodle_ops.gcp_commands import setup_secrets
from moodle_ops.gcp_commands import validate_sensitivity
from moodle_ops.gcp_shared import Gcloud
from moodle_ops.gcp_shared import VmNames
from moodle_ops.gcp_shared import require_gcloud
from moodle_ops.gcp_shared import resolve_project
from moodle_ops.settings import Settings


def _gc(runner):
    return Gcloud(runner=runner, project="p1")


def test_validate_sensitivity():
    assert validate_sensitivity("3") == 3
    for bad in ("0", "5", "high", None):
        with pytest.raises(UsageError):
            validate_sensitivity(bad)


def test_cidr_and_geo_helpers():
    assert cidr_list(("1.2.3.4", "10.0.0.0/8")) == "1.2.3.4/32,10.0.0.0/8"
    assert geo_expression(("us", "ca")) == "!origin.region_code.matches('^(US|CA)$')"
    assert geo_expression(("de",)) == "!origin.region_code.matches('^(DE)$')"
    with pytest.raises(UsageError, match="country code"):
        geo_expression(("USA",))


def test_geo_rule_passes_a_single_quoted_regex():
    rules = build_armor_rules(ArmorConfig(backend_service="bs", countries=("us", "ca")))
    geo = next(r for r in rules if r.priority == 2000)
    assert "--expression=!origin.region_code.matches('^(US|CA)$')" in geo.flags


def test_build_armor_rules_priorities():
    plain = [r.priority for r in build_armor_rules(ArmorConfig(backend_service="bs"))]
    assert plain[:2] == [3000, 3001]
    assert plain[-2:] == [8000, 8001]
    assert len(plain) == 16

    full = build_armor_rules(
        ArmorConfig(backend_service="bs", allow_ips=("1.2.3.4",), countries=("us",), preview=True, sensitivity=2)
    )
    assert [r.priority for r in full[:2]] == [1000, 2000]
    sqli = next(r for r in full if r.priority == 9001)
    assert sqli.optional
    assert "--action=allow" in sqli.flags and "--preview" in sqli.flags
    assert "{'sensitivity': 2}" in sqli.flags[0]


def test_setup_armor_creates_policy_and_tolerates_missing_waf_rule(make_runner, make_ctx):
    runner = make_runner({"security-policies describe": (1, ""), "'java-v33-stable'": (1, "")})
    ctx = make_ctx(runner)

    out = setup_armor(ctx, _gc(runner), ArmorConfig(backend_service="moodle-bs", adaptive=True))

    assert out["reused"] is False
    assert out["skippedRules"] == [9012]
    assert 9001 in out["rules"] and 8001 in out["rules"]
    calls = runner.joined()
    assert any(c.endswith("security-policies create moodle-waf-policy "
                          "--description=Cloud Armor WAF for Moodle - OWASP Top 10 Protection") for c in calls)
    assert any("rules update 2147483647 --security-policy=moodle-waf-policy --action=allow" in c for c in calls)
    assert any("--enable-layer7-ddos-defense" in c for c in calls)
    assert any(c.endswith("backend-services update moodle-bs --global --security-policy=moodle-waf-policy") for c in calls)
    assert not any("rules update 3000" in c for c in calls)


def test_setup_armor_reuses_policy_and_updates_rules(make_runner, make_ctx):
    runner = make_runner()
    out = setup_armor(make_ctx(runner), _gc(runner), ArmorConfig(backend_service="moodle-bs", verbose_logging=True))
    assert out["reused"] is True
    assert out["logLevel"] == "VERBOSE"
    calls = runner.joined()
    assert any("rules update 3000" in c for c in calls)
    assert not any("security-policies create" in c for c in calls)


def test_setup_armor_recreate_deletes_first(make_runner, make_ctx):
    runner = make_runner()
    out = setup_armor(make_ctx(runner), _gc(runner), ArmorConfig(backend_service="bs", recreate=True))
    calls = runner.joined()
    assert out["reused"] is False
    delete = next(i for i, c in enumerate(calls) if "security-policies delete" in c)
    create = next(i for i, c in enumerate(calls) if "security-policies create" in c)
    assert delete < create


def test_setup_armor_missing_backend_lists_available(make_runner, make_ctx):
    runner = make_runner({"backend-services describe": (1, ""), "backend-services list": "bs-a\nbs-b\n"})
    with pytest.raises(OpError, match="available: bs-a, bs-b"):
        setup_armor(make_ctx(runner), _gc(runner), ArmorConfig(backend_service="nope"))


def test_iam_bindings_with_ssh():
    cfg = IapConfig(region="r", users=("a@x.edu",), groups=("ops@x.edu",), ssh=True)
    assert iam_bindings(cfg) == [
        ("user:a@x.edu", "roles/iap.httpsResourceAccessor"),
        ("user:a@x.edu", "roles/iap.tunnelResourceAccessor"),
        ("group:ops@x.edu", "roles/iap.httpsResourceAccessor"),
        ("group:ops@x.edu", "roles/iap.tunnelResourceAccessor"),
    ]


def test_setup_iap_full(make_runner, make_ctx):
    runner = make_runner({"routers describe": (1, ""), "nats describe": (1, ""), "firewall-rules describe": (1, "")})
    cfg = IapConfig(region="us-central1", backend_service="web-bs", users=("a@x.edu",), ssh=True, https=True)

    out = setup_iap(make_ctx(runner), _gc(runner), cfg)

    assert out["nat"] == {"router": "nat-router", "nat": "nat-config", "region": "us-central1"}
    assert out["firewallRules"] == ["allow-iap-ssh", "allow-iap-https"]
    assert out["backendIap"] is True
    assert len(out["bindings"]) == 2
    calls = runner.joined()
    assert any("routers nats create nat-config --router=nat-router" in c for c in calls)
    assert any("--source-ranges=35.235.240.0/20" in c and "--rules=tcp:22" in c for c in calls)
    assert any(c.endswith("--role=roles/iap.tunnelResourceAccessor --condition=None") for c in calls)


def test_setup_iap_requires_network_unless_nat_skipped(make_runner, make_ctx):
    runner = make_runner({"networks describe": (1, "")})
    with pytest.raises(OpError, match="VPC network not found"):
        setup_iap(make_ctx(runner), _gc(runner), IapConfig(region="r"))
    out = setup_iap(make_ctx(runner), _gc(runner), IapConfig(region="r", skip_nat=True))
    assert out["nat"] is None and out["bindings"] == []


def test_put_secret_sends_value_on_stdin(make_runner):
    runner = make_runner({"secrets describe": (1, "")})
    assert put_secret(_gc(runner), "moodle-smtp-password", "hunter2") == "created"
    line = runner.joined()[-1]
    assert "--replication-policy=automatic" in line
    assert "hunter2" not in line
    assert runner.inputs[line] == "hunter2"

    existing = make_runner()
    assert put_secret(_gc(existing), "moodle-smtp-password", "x") == "updated"
    assert "secrets versions add moodle-smtp-password --data-file=-" in existing.joined()[-1]


def test_setup_secrets_migrates_and_backs_up_credentials(tmp_path, make_runner, make_ctx):
    cred = tmp_path / ".moodle-credentials"
    cred.write_text("MOODLE_DB_PASSWORD=app-pw\nDB_ROOT_PASSWORD=root-pw\nUNRELATED=1\n")
    runner = make_runner({"secrets describe moodle-db-password": "", "secrets describe": (1, "")})
    helper = tmp_path / "bin" / "get-moodle-secret"

    out = setup_secrets(make_ctx(runner), _gc(runner), credentials_file=cred, helper_path=helper)

    assert out["secrets"] == {"moodle-db-password": "updated", "db-root-password": "created"}
    assert out["granted"] == ["moodle-db-password", "db-root-password"]
    assert out["serviceAccount"] == "moodle-vm-secrets@p1.iam.gserviceaccount.com"
    backup = tmp_path / ".moodle-credentials.backup-20260314_020000"
    assert out["credentialsBackup"] == str(backup)
    assert stat.S_IMODE(backup.stat().st_mode) == 0o600
    assert cred.exists()
    assert stat.S_IMODE(helper.stat().st_mode) == 0o755
    assert "gcloud secrets versions access latest" in helper.read_text()


def test_setup_secrets_dry_run_touches_nothing(tmp_path, make_runner, make_ctx):
    cred = tmp_path / "creds"
    cred.write_text("MOODLE_DB_PASSWORD=pw\n")
    runner = make_runner(dry_run=True)
    helper = tmp_path / "helper"

    out = setup_secrets(make_ctx(runner), _gc(runner), credentials_file=cred, helper_path=helper)

    assert out["secrets"] == {"moodle-db-password": "created"}
    assert not helper.exists()
    assert sorted(os.listdir(tmp_path)) == ["creds"]


def test_instance_create_args():
    cfg = VmConfig(names=VmNames.for_instance("lms"), region="us-central1", zone="us-central1-a",
                   service_account="sa@p1.iam.gserviceaccount.com")
    argv = instance_create_args(cfg, project="p1", static_ip="34.1.2.3", startup_file="/tmp/s.sh")
    assert argv[:4] == ["compute", "instances", "create", "lms"]
    assert "--network-interface=network-tier=PREMIUM,subnet=default,address=34.1.2.3" in argv
    assert "--disk=name=lms-data,device-name=lms-data,mode=rw,boot=no" in argv
    assert argv[-1] == "--service-account=sa@p1.iam.gserviceaccount.com"


def test_deploy_vm_creates_resources(make_runner, make_ctx):
    runner = make_runner(
        {
            "instances describe": (1, ""),
            "disks describe": (1, ""),
            "resource-policies describe": (1, ""),
            "--format=get(address)": "34.1.2.3\n",
        }
    )
    cfg = VmConfig(names=VmNames.for_instance("moodle-vm"), region="us-central1", zone="us-central1-a")

    out = deploy_vm(make_ctx(runner), _gc(runner), cfg)

    assert out["staticIp"] == "34.1.2.3"
    calls = runner.joined()
    assert any("disks create moodle-vm-data --zone=us-central1-a --size=50GB" in c for c in calls)
    assert any("instances create moodle-vm" in c and "address=34.1.2.3" in c for c in calls)
    assert any("snapshot-schedule moodle-daily-snapshots" in c and "--max-retention-days=7" in c for c in calls)
    assert any("add-resource-policies moodle-vm-data" in c for c in calls)


def test_deploy_vm_refuses_existing_instance(make_runner, make_ctx):
    runner = make_runner()
    cfg = VmConfig(names=VmNames.for_instance("moodle-vm"), region="r", zone="z")
    with pytest.raises(OpError, match="already exists"):
        deploy_vm(make_ctx(runner), _gc(runner), cfg)
    assert not any("instances create" in c for c in runner.joined())


def test_run_deploy_args():
    argv = run_deploy_args(RunConfig(service="moodle", image="gcr.io/p1/moodle:1", region="us-central1",
                                     cloudsql_instance="p1:us-central1:db", env=("A=1",),
                                     allow_unauthenticated=False))
    assert argv[:3] == ["run", "deploy", "moodle"]
    assert "--memory=2Gi" in argv and "--max-instances=4" in argv
    assert "--add-cloudsql-instances=p1:us-central1:db" in argv
    assert "--set-env-vars=A=1" in argv
    assert any(a.startswith("--set-secrets=MOODLE_DB_USER=moodle-db-user:latest,") for a in argv)
    assert argv[-1] == "--no-allow-unauthenticated"
    with pytest.raises(UsageError):
        run_deploy_args(RunConfig(service="s", image="i", region="r", env=("NOEQUALS",)))


def test_cmd_gcp_run_deploy(monkeypatch, g, capsys, make_runner, make_ctx):
    runner = make_runner(
        {"auth list": "ops@example.edu\n", "status.url": "https://moodle-abc.a.run.app\n"},
        binaries=("gcloud",),
    )
    ctx = make_ctx(runner, gcp_project="p1")
    monkeypatch.setattr(gcp_commands, "build_ops_context", lambda _g, **kw: ctx)
    args = argparse.Namespace(image="gcr.io/p1/moodle:2", env=[], cloudsql_instance="p1:r:db", service=None,
                              region=None, no_allow_unauthenticated=False, project=None)

    assert gcp_commands.cmd_gcp_run_deploy(args, g) == 0

    out = json.loads(capsys.readouterr().out)
    assert out == {"service": "moodle", "region": "us-central1", "image": "gcr.io/p1/moodle:2",
                   "url": "https://moodle-abc.a.run.app"}
    deploy = next(c for c in runner.joined() if " run deploy " in c)
    assert deploy.startswith("gcloud --quiet --project p1 run deploy moodle")
    assert "--set-env-vars=MOODLE_DB_HOST=/cloudsql/p1:r:db" in deploy


def test_cmd_gcp_run_deploy_requires_image(g):
    with pytest.raises(UsageError, match="--image"):
        gcp_commands.cmd_gcp_run_deploy(argparse.Namespace(image=""), g)


def test_cmd_gcp_secrets_get_masks_by_default(monkeypatch, g, capsys, make_runner, make_ctx):
    runner = make_runner({"auth list": "ops@example.edu\n", "versions access": "supersecret\n"}, binaries=("gcloud",))
    monkeypatch.setattr(gcp_commands, "build_ops_context", lambda _g, **kw: make_ctx(runner, gcp_project="p1"))

    assert gcp_commands.cmd_gcp_secrets_get(argparse.Namespace(name="moodle-db-password", reveal=False, project=None), g) == 0
    assert json.loads(capsys.readouterr().out)["value"] == "su*******et"
    gcp_commands.cmd_gcp_secrets_get(argparse.Namespace(name="moodle-db-password", reveal=True, project=None), g)
    assert json.loads(capsys.readouterr().out)["value"] == "supersecret"


def test_require_gcloud_and_resolve_project(make_runner):
    with pytest.raises(PrerequisiteError, match="gcloud CLI not found"):
        require_gcloud(make_runner())
    assert require_gcloud(make_runner(dry_run=True)) == ""
    with pytest.raises(PrerequisiteError, match="not authenticated"):
        require_gcloud(make_runner(binaries=("gcloud",)))

    runner = make_runner({"get-value project": "(unset)\n"}, binaries=("gcloud",))
    with pytest.raises(UsageError, match="missing GCP project"):
        resolve_project(None, Settings(), runner)
    assert resolve_project(" p2 ", Settings(gcp_project="p1"), runner) == "p2"
    assert resolve_project(None, Settings(gcp_project="p1"), runner) == "p1"
