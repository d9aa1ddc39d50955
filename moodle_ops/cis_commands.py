from __future__ import annotations

import argparse
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

from .cli_shared import GlobalOpts, OpError, PrerequisiteError, UsageError, _print_json
from .context import OpsContext, build_ops_context
from .cron import CIS_AUDIT_JOB, install_cron_d
from .host import apt_install, package_installed

CIS_LOG = "/var/log/cis-hardening.log"
CIS_LEVELS = (1, 2)
SUPPORTED_OS = ("ubuntu", "22.04")

SYSCTL_CIS_CONF = "/etc/sysctl.d/99-cis.conf"
AUDIT_RULES_FILE = "/etc/audit/rules.d/99-cis.rules"
SSHD_CONFIG = "/etc/ssh/sshd_config"
PWQUALITY_CONF = "/etc/security/pwquality.conf"
MODPROBE_CONF = "/etc/modprobe.d/cis-filesystems.conf"
LIMITS_CONF = "/etc/security/limits.conf"
LOGIN_DEFS = "/etc/login.defs"
SHADOW = "/etc/shadow"

FILESYSTEM_MODULES = ("cramfs", "freevxfs", "jffs2", "hfs", "hfsplus", "udf", "vfat")

SYSCTL_SETTINGS: dict[str, str] = {
    "net.ipv4.ip_forward": "0",
    "net.ipv6.conf.all.forwarding": "0",
    "net.ipv4.conf.all.send_redirects": "0",
    "net.ipv4.conf.default.send_redirects": "0",
    "net.ipv4.conf.all.accept_source_route": "0",
    "net.ipv4.conf.default.accept_source_route": "0",
    "net.ipv6.conf.all.accept_source_route": "0",
    "net.ipv6.conf.default.accept_source_route": "0",
    "net.ipv4.conf.all.accept_redirects": "0",
    "net.ipv4.conf.default.accept_redirects": "0",
    "net.ipv6.conf.all.accept_redirects": "0",
    "net.ipv6.conf.default.accept_redirects": "0",
    "net.ipv4.conf.all.secure_redirects": "0",
    "net.ipv4.conf.default.secure_redirects": "0",
    "net.ipv4.conf.all.log_martians": "1",
    "net.ipv4.conf.default.log_martians": "1",
    "net.ipv4.icmp_echo_ignore_broadcasts": "1",
    "net.ipv4.icmp_ignore_bogus_error_responses": "1",
    "net.ipv4.conf.all.rp_filter": "1",
    "net.ipv4.conf.default.rp_filter": "1",
    "net.ipv4.tcp_syncookies": "1",
    "net.ipv6.conf.all.accept_ra": "0",
    "net.ipv6.conf.default.accept_ra": "0",
    "kernel.randomize_va_space": "2",
    "kernel.dmesg_restrict": "1",
    "kernel.kptr_restrict": "2",
    "kernel.yama.ptrace_scope": "1",
    "fs.suid_dumpable": "0",
    "fs.protected_symlinks": "1",
    "fs.protected_hardlinks": "1",
}
LEVEL2_SYSCTL_SETTINGS: dict[str, str] = {
    "kernel.perf_event_paranoid": "3",
    "kernel.unprivileged_bpf_disabled": "1",
    "net.core.bpf_jit_harden": "2",
}

SSHD_SETTINGS: tuple[tuple[str, str], ...] = (
    ("PermitRootLogin", "no"),
    ("MaxAuthTries", "4"),
    ("PermitEmptyPasswords", "no"),
    ("ClientAliveInterval", "300"),
    ("ClientAliveCountMax", "0"),
    ("LoginGraceTime", "60"),
    ("X11Forwarding", "no"),
    ("Ciphers", "chacha20-poly1305@openssh.com,aes256-gcm@openssh.com,aes128-gcm@openssh.com,aes256-ctr,aes192-ctr,aes128-ctr"),
    ("MACs", "hmac-sha2-512-etm@openssh.com,hmac-sha2-256-etm@openssh.com,hmac-sha2-512,hmac-sha2-256"),
    (
        "KexAlgorithms",
        "curve25519-sha256,curve25519-sha256@libssh.org,diffie-hellman-group14-sha256,"
        "diffie-hellman-group16-sha512,diffie-hellman-group18-sha512,ecdh-sha2-nistp521,"
        "ecdh-sha2-nistp384,ecdh-sha2-nistp256,diffie-hellman-group-exchange-sha256",
    ),
    ("IgnoreRhosts", "yes"),
    ("HostbasedAuthentication", "no"),
    ("PermitUserEnvironment", "no"),
    ("AllowTcpForwarding", "no"),
    ("MaxSessions", "2"),
    ("TCPKeepAlive", "no"),
    ("Compression", "no"),
    ("AllowAgentForwarding", "no"),
)
# PasswordAuthentication stays untouched so key-less operators are not locked out.
SSHD_AUDITED = ("PermitRootLogin", "MaxAuthTries", "PermitEmptyPasswords", "ClientAliveInterval",
                "ClientAliveCountMax", "LoginGraceTime", "X11Forwarding")

PWQUALITY_SETTINGS: dict[str, str] = {
    "minlen": "14",
    "minclass": "4",
    "dcredit": "-1",
    "ucredit": "-1",
    "ocredit": "-1",
    "lcredit": "-1",
    "maxrepeat": "3",
    "maxclassrepeat": "4",
    "gecoscheck": "1",
    "dictcheck": "1",
    "usercheck": "1",
    "enforcing": "1",
}
LOGIN_DEFS_SETTINGS: dict[str, str] = {"PASS_MAX_DAYS": "90", "PASS_MIN_DAYS": "1", "PASS_WARN_AGE": "7"}

FILE_MODES: dict[str, str] = {
    "/etc/passwd": "644",
    "/etc/shadow": "640",
    "/etc/group": "644",
    "/etc/gshadow": "640",
    "/etc/passwd-": "600",
    "/etc/shadow-": "600",
    "/etc/group-": "600",
    "/etc/gshadow-": "600",
}

AUDIT_RULES = """\
-D
-b 8192
-f 1

## time-change
-a always,exit -F arch=b64 -S adjtimex -S settimeofday -k time-change
-a always,exit -F arch=b32 -S adjtimex -S settimeofday -S stime -k time-change
-a always,exit -F arch=b64 -S clock_settime -k time-change
-a always,exit -F arch=b32 -S clock_settime -k time-change
-w /etc/localtime -p wa -k time-change

## identity
-w /etc/group -p wa -k identity
-w /etc/passwd -p wa -k identity
-w /etc/gshadow -p wa -k identity
-w /etc/shadow -p wa -k identity
-w /etc/security/opasswd -p wa -k identity

## system-locale
-a always,exit -F arch=b64 -S sethostname -S setdomainname -k system-locale
-a always,exit -F arch=b32 -S sethostname -S setdomainname -k system-locale
-w /etc/issue -p wa -k system-locale
-w /etc/issue.net -p wa -k system-locale
-w /etc/hosts -p wa -k system-locale
-w /etc/network -p wa -k system-locale

## MAC-policy
-w /etc/apparmor/ -p wa -k MAC-policy
-w /etc/apparmor.d/ -p wa -k MAC-policy

## logins and sessions
-w /var/log/faillog -p wa -k logins
-w /var/log/lastlog -p wa -k logins
-w /var/log/tallylog -p wa -k logins
-w /var/run/utmp -p wa -k session
-w /var/log/wtmp -p wa -k logins
-w /var/log/btmp -p wa -k logins

## perm_mod
-a always,exit -F arch=b64 -S chmod -S fchmod -S fchmodat -F auid>=1000 -F auid!=4294967295 -k perm_mod
-a always,exit -F arch=b32 -S chmod -S fchmod -S fchmodat -F auid>=1000 -F auid!=4294967295 -k perm_mod
-a always,exit -F arch=b64 -S chown -S fchown -S fchownat -S lchown -F auid>=1000 -F auid!=4294967295 -k perm_mod
-a always,exit -F arch=b32 -S chown -S fchown -S fchownat -S lchown -F auid>=1000 -F auid!=4294967295 -k perm_mod

## access
-a always,exit -F arch=b64 -S open -S openat -F exit=-EACCES -F auid>=1000 -F auid!=4294967295 -k access
-a always,exit -F arch=b64 -S open -S openat -F exit=-EPERM -F auid>=1000 -F auid!=4294967295 -k access

## mounts and deletes
-a always,exit -F arch=b64 -S mount -F auid>=1000 -F auid!=4294967295 -k mounts
-a always,exit -F arch=b64 -S unlink -S unlinkat -S rename -S renameat -F auid>=1000 -F auid!=4294967295 -k delete

## scope and actions
-w /etc/sudoers -p wa -k scope
-w /etc/sudoers.d/ -p wa -k scope
-w /var/log/sudo.log -p wa -k actions

## modules
-w /sbin/insmod -p x -k modules
-w /sbin/rmmod -p x -k modules
-w /sbin/modprobe -p x -k modules
-a always,exit -F arch=b64 -S init_module -S delete_module -k modules

## sshd and cron
-w /etc/ssh/sshd_config -p wa -k sshd_config
-w /etc/cron.d/ -p wa -k cron
-w /etc/crontab -p wa -k cron
"""


@dataclass
class CisTally:
    total: int = 0
    passed: int = 0
    failed: int = 0
    changes: int = 0

    @property
    def compliance(self) -> int:
        if not self.total:
            return 0
        return 100 * self.passed // self.total


def compliance_grade(pct: int) -> str:
    if pct >= 95:
        return "A+"
    if pct >= 90:
        return "A"
    if pct >= 80:
        return "B"
    if pct >= 70:
        return "C"
    return "D"


def sysctl_targets(level: int) -> dict[str, str]:
    out = dict(SYSCTL_SETTINGS)
    if level >= 2:
        out.update(LEVEL2_SYSCTL_SETTINGS)
    return out


def render_sysctl_conf(level: int) -> str:
    lines = ["# CIS Benchmark - network and kernel hardening", f"# Level {level}", ""]
    lines += [f"{k} = {v}" for k, v in sysctl_targets(level).items()]
    return "\n".join(lines) + "\n"


def render_audit_rules(level: int) -> str:
    text = "# CIS Benchmark - audit rules\n" + AUDIT_RULES
    if level >= 2:
        # Immutable until reboot.
        text += "\n-e 2\n"
    return text


def render_modprobe_conf() -> str:
    lines = ["# CIS Benchmark: disable uncommon filesystems"]
    lines += [f"install {m} /bin/true" for m in FILESYSTEM_MODULES]
    return "\n".join(lines) + "\n"


def parse_sshd_config(text: str) -> dict[str, str]:
    # sshd honours the first occurrence of a keyword.
    out: dict[str, str] = {}
    for line in text.splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        parts = s.split(None, 1)
        if len(parts) != 2 or parts[0] in out:
            continue
        if parts[0].lower() == "match":
            break
        out[parts[0]] = parts[1].strip()
    return out


def set_directive(text: str, key: str, value: str, *, sep: str = " ") -> str:
    active = re.compile(rf"^\s*{re.escape(key)}(\s|=)")
    commented = re.compile(rf"^\s*#\s*{re.escape(key)}(\s|=)")
    lines = text.splitlines()
    new_line = f"{key}{sep}{value}"
    for pattern in (active, commented):
        for i, line in enumerate(lines):
            if pattern.match(line):
                lines[i] = new_line
                return "\n".join(lines) + "\n"
    lines.append(new_line)
    return "\n".join(lines) + "\n"


def parse_kv_conf(text: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in text.splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        if "=" in s:
            k, _, v = s.partition("=")
        else:
            parts = s.split(None, 1)
            if len(parts) != 2:
                continue
            k, v = parts
        out[k.strip()] = v.strip()
    return out


def read_os_release(path: Path) -> dict[str, str]:
    if not path.is_file():
        raise PrerequisiteError(f"cannot determine OS version ({path} missing)")
    return {str(k): str(v) for k, v in dotenv_values(path).items() if v is not None}


class CisHardener:
    def __init__(self, ctx: OpsContext, *, level: int = 1, audit_only: bool = False, root: Path = Path("/")) -> None:
        if level not in CIS_LEVELS:
            raise UsageError(f"invalid CIS level: {level} (must be 1 or 2)")
        self.ctx = ctx
        self.level = level
        self.audit_only = audit_only
        self.root = root
        self.tally = CisTally()
        stamp = ctx.now().strftime("%Y%m%d_%H%M%S")
        self.backup_dir = self._path(f"/var/backups/cis-hardening-{stamp}")

    def _path(self, abs_path: str) -> Path:
        return self.root / abs_path.lstrip("/")

    def _check(self, ok: bool, msg: str) -> bool:
        self.tally.total += 1
        if ok:
            self.tally.passed += 1
            self.ctx.log.success(msg)
        else:
            self.tally.failed += 1
            self.ctx.log.warn(msg)
        return ok

    def _read(self, abs_path: str) -> str:
        p = self._path(abs_path)
        return p.read_text(encoding="utf-8", errors="replace") if p.is_file() else ""

    def _backup(self, path: Path) -> None:
        if not path.is_file() or self.ctx.runner.dry_run:
            return
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, self.backup_dir / f"{path.name}.backup")
        self.ctx.log.info(f"Backed up: {path}")

    def _write(self, abs_path: str, text: str, *, mode: int = 0o644) -> None:
        path = self._path(abs_path)
        if self.ctx.runner.dry_run:
            self.ctx.log.log(f"DRYRUN write {path}")
            return
        self._backup(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
            os.chmod(path, mode)
        except OSError as e:
            raise OpError(f"failed to write {path}: {e}") from e
        self.tally.changes += 1

    def _package_installed(self, name: str) -> bool:
        return package_installed(self.ctx.runner, name)

    def _apt_install(self, *packages: str) -> None:
        apt_install(self.ctx.runner, *packages)
        if not self.ctx.runner.dry_run:
            self.tally.changes += 1

    def filesystem_modules(self) -> None:
        self.ctx.log.section("Section 1.1: Filesystem hardening")
        if self.audit_only:
            res = self.ctx.runner.run(["lsmod"], check=False)
            loaded = {ln.split()[0] for ln in res.stdout.splitlines()[1:] if ln.strip()}
            for module in FILESYSTEM_MODULES:
                self._check(module not in loaded, f"Filesystem module {'loaded' if module in loaded else 'disabled'}: {module}")
            return
        self._write(MODPROBE_CONF, render_modprobe_conf())
        self.ctx.log.success("Disabled uncommon filesystems")

    def process_hardening(self) -> None:
        self.ctx.log.section("Section 1.5: Additional process hardening")
        limits = self._read(LIMITS_CONF)
        if self._check("hard core 0" in limits, "Core dumps disabled in limits.conf") or self.audit_only:
            return
        self._write(LIMITS_CONF, limits.rstrip("\n") + ("\n" if limits else "") + "* hard core 0\n")

    def network(self) -> None:
        self.ctx.log.section("Section 3: Network and kernel hardening via sysctl")
        if self.audit_only:
            for key, expected in sysctl_targets(self.level).items():
                res = self.ctx.runner.run(["sysctl", "-n", key], check=False)
                current = res.stdout.strip() if res.ok else "undefined"
                self._check(current == expected, f"Sysctl: {key} = {current} (expected: {expected})")
            return
        self._write(SYSCTL_CIS_CONF, render_sysctl_conf(self.level))
        self.ctx.runner.run(["sysctl", "--system"], label="sysctl --system", mutating=True)
        self.ctx.log.success("Applied network hardening sysctl parameters")

    def auditd(self) -> None:
        self.ctx.log.section("Section 4: Auditd configuration")
        installed = self._check(self._package_installed("auditd"), "Auditd is installed")
        if self.audit_only:
            self._check(self._path(AUDIT_RULES_FILE).is_file(), f"Audit rules present: {AUDIT_RULES_FILE}")
            return
        if not installed:
            self._apt_install("auditd", "audispd-plugins")
            self.ctx.runner.run(["systemctl", "enable", "--now", "auditd"], label="enable auditd", mutating=True)
        self._write(AUDIT_RULES_FILE, render_audit_rules(self.level), mode=0o640)
        if self.ctx.runner.which("augenrules"):
            self.ctx.runner.run(["augenrules", "--load"], label="augenrules", mutating=True)
        else:
            self.ctx.log.warn("augenrules command not found, rules will load on next reboot")

    def ssh(self) -> None:
        self.ctx.log.section("Section 5.2: SSH server configuration")
        path = self._path(SSHD_CONFIG)
        if not path.is_file():
            self._check(False, f"SSH config file not found: {path}")
            return
        text = path.read_text(encoding="utf-8", errors="replace")
        if self.audit_only:
            current = parse_sshd_config(text)
            expected = dict(SSHD_SETTINGS)
            for key in SSHD_AUDITED:
                value = current.get(key)
                self._check(value == expected[key], f"SSH: {key} = {value or 'not configured'} (expected: {expected[key]})")
            return
        for key, value in SSHD_SETTINGS:
            text = set_directive(text, key, value)
        self._write(SSHD_CONFIG, text)
        if self.ctx.runner.dry_run:
            return
        test = self.ctx.runner.run(["sshd", "-t", "-f", str(path)], check=False)
        if not test.ok:
            backup = self.backup_dir / f"{path.name}.backup"
            if backup.is_file():
                shutil.copy2(backup, path)
            raise OpError(f"sshd rejected the hardened config, original restored: {test.stderr.strip()}")
        self.ctx.runner.run(["systemctl", "reload", "ssh"], label="reload ssh", mutating=True)
        self.ctx.log.warn("IMPORTANT: Verify SSH connectivity before closing this session!")

    def password_policy(self) -> None:
        self.ctx.log.section("Section 5.3: Password quality")
        text = self._read(PWQUALITY_CONF)
        current = parse_kv_conf(text)
        if self.audit_only:
            try:
                minlen = int(current.get("minlen", "0"))
            except ValueError:
                minlen = 0
            self._check(minlen >= int(PWQUALITY_SETTINGS["minlen"]), f"Password minimum length: {minlen or 'unset'}")
            self._check(current.get("minclass") == PWQUALITY_SETTINGS["minclass"], "Password complexity (minclass = 4)")
            return
        if not self._package_installed("libpam-pwquality"):
            self._apt_install("libpam-pwquality")
        for key, value in PWQUALITY_SETTINGS.items():
            text = set_directive(text, key, value, sep=" = ")
        self._write(PWQUALITY_CONF, text)

    def user_accounts(self) -> None:
        self.ctx.log.section("Section 5.4: User accounts and environment")
        defs = self._read(LOGIN_DEFS)
        current = parse_kv_conf(defs)
        aging_ok = all(current.get(k) == v for k, v in LOGIN_DEFS_SETTINGS.items())
        if not self._check(aging_ok, "Password aging configured in /etc/login.defs") and not self.audit_only:
            for key, value in LOGIN_DEFS_SETTINGS.items():
                defs = set_directive(defs, key, value, sep="   ")
            self._write(LOGIN_DEFS, defs)
        empty = [
            ln.split(":")[0]
            for ln in self._read(SHADOW).splitlines()
            if ln.count(":") >= 2 and ln.split(":")[1] == ""
        ]
        self._check(not empty, "No accounts with empty passwords" if not empty else f"Accounts with empty passwords: {', '.join(empty)}")

    def file_permissions(self) -> None:
        self.ctx.log.section("Section 6.1: System file permissions")
        for abs_path, expected in FILE_MODES.items():
            path = self._path(abs_path)
            if not path.is_file():
                continue
            current = format(path.stat().st_mode & 0o777, "o")
            ok = self._check(current == expected, f"File permissions: {abs_path} ({current}, expected {expected})")
            if ok or self.audit_only:
                continue
            if self.ctx.runner.dry_run:
                self.ctx.log.log(f"DRYRUN chmod {expected} {path}")
                continue
            os.chmod(path, int(expected, 8))
            self.tally.changes += 1

    def packages(self) -> None:
        self.ctx.log.section("Additional: AppArmor and automatic security updates")
        for pkg, extra in (("apparmor", ("apparmor-utils",)), ("unattended-upgrades", ())):
            if self._check(self._package_installed(pkg), f"{pkg} is installed") or self.audit_only:
                continue
            self._apt_install(pkg, *extra)
            if pkg == "apparmor":
                self.ctx.runner.run(["systemctl", "enable", "--now", "apparmor"], label="enable apparmor", mutating=True)

    def run(self) -> CisTally:
        self.ctx.log.log(f"Mode: {'AUDIT ONLY' if self.audit_only else 'HARDENING'}")
        self.ctx.log.log(f"CIS Level: {self.level}")
        self.filesystem_modules()
        self.process_hardening()
        self.network()
        self.auditd()
        self.ssh()
        self.password_policy()
        self.user_accounts()
        self.file_permissions()
        self.packages()
        return self.tally


def check_os(root: Path, *, force: bool) -> str:
    info = read_os_release(root / "etc" / "os-release")
    pretty = info.get("PRETTY_NAME", "unknown")
    if (info.get("ID"), info.get("VERSION_ID")) != SUPPORTED_OS and not force:
        raise PrerequisiteError(f"designed for Ubuntu 22.04 LTS, detected {pretty} (use --force to continue)")
    return pretty


def _require_root_usage() -> None:
    if os.geteuid() != 0:
        raise UsageError("this command must be run as root")


def cmd_cis_run(args: argparse.Namespace, g: GlobalOpts) -> int:
    try:
        level = int(getattr(args, "level", 1) or 1)
    except (TypeError, ValueError) as e:
        raise UsageError(f"invalid CIS level: {getattr(args, 'level', None)!r} (must be 1 or 2)") from e
    if level not in CIS_LEVELS:
        raise UsageError(f"invalid CIS level: {level} (must be 1 or 2)")
    _require_root_usage()
    root = Path(getattr(args, "root", None) or "/")
    detected = check_os(root, force=bool(getattr(args, "force", False)))
    ctx = build_ops_context(g, tool="cis", default_log_file=CIS_LOG)
    ctx.log.log(f"Detected OS: {detected}")
    hardener = CisHardener(ctx, level=level, audit_only=bool(getattr(args, "audit_only", False)), root=root)
    tally = hardener.run()
    pct = tally.compliance
    grade = compliance_grade(pct)
    if tally.failed:
        ctx.log.warn(f"{tally.failed} checks failed or have warnings")
    if not hardener.audit_only and tally.changes:
        ctx.log.warn("System changes were made. A reboot is recommended.")
    ctx.log.info(f"CIS Compliance Score: {pct}% (grade {grade})")
    ctx.log.wide_event("success", level=level, total=tally.total, passed=tally.passed, failed=tally.failed, changes=tally.changes)
    out: dict[str, Any] = {
        "mode": "audit" if hardener.audit_only else "harden",
        "level": level,
        "total": tally.total,
        "passed": tally.passed,
        "failed": tally.failed,
        "changes": tally.changes,
        "compliance": pct,
        "grade": grade,
    }
    if not hardener.audit_only:
        out["backupDir"] = str(hardener.backup_dir)
    _print_json(out, pretty=g.pretty)
    return 0


def cmd_cis_install_cron(args: argparse.Namespace, g: GlobalOpts) -> int:
    _require_root_usage()
    path = install_cron_d(CIS_AUDIT_JOB, cron_dir=getattr(args, "cron_dir", None) or "/etc/cron.d")
    _print_json({"installed": str(path), "schedule": CIS_AUDIT_JOB.schedule}, pretty=g.pretty)
    return 0
