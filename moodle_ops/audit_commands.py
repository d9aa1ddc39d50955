from __future__ import annotations

import argparse
import grp
import os
import pwd
import re
import stat
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .cli_shared import GlobalOpts, OpError, _print_json, _write_secure_text
from .config_files import parse_config_php, php_version_release
from .context import OpsContext, build_ops_context
from .cron import SECURITY_AUDIT_JOB, install_cron_d
from .oplog import OpsLog
from .runner import CommandRunner, require_root

AUDIT_LOG = "/var/log/moodle-security-audit.log"

CRITICAL = "CRITICAL"
HIGH = "HIGH"
MEDIUM = "MEDIUM"
LOW = "LOW"
PASS = "PASS"
INFO = "INFO"

SEVERITY_WEIGHTS = {CRITICAL: 20, HIGH: 10, MEDIUM: 5, LOW: 2}

GRADES = (
    (95, "A+ (Excellent)"),
    (90, "A (Very Good)"),
    (80, "B (Good)"),
    (70, "C (Fair - needs improvement)"),
    (60, "D (Poor - security risks)"),
)


@dataclass(frozen=True)
class Finding:
    severity: str
    message: str
    fix: str = ""


@dataclass
class AuditResult:
    findings: list[Finding] = field(default_factory=list)
    facts: dict[str, str] = field(default_factory=dict)

    def by_severity(self, severity: str) -> list[Finding]:
        return [f for f in self.findings if f.severity == severity]

    def count(self, severity: str) -> int:
        return len(self.by_severity(severity))

    @property
    def issues(self) -> int:
        return sum(self.count(s) for s in SEVERITY_WEIGHTS)

    @property
    def score(self) -> int:
        return security_score(
            critical=self.count(CRITICAL),
            high=self.count(HIGH),
            medium=self.count(MEDIUM),
            low=self.count(LOW),
        )

    @property
    def grade(self) -> str:
        return security_grade(self.score)


def security_score(*, critical: int, high: int, medium: int, low: int) -> int:
    return max(0, 100 - critical * 20 - high * 10 - medium * 5 - low * 2)


def security_grade(score: int) -> str:
    for floor, label in GRADES:
        if score >= floor:
            return label
    return "F (Critical - immediate action required)"


def classify_moodledata_mode(mode: str) -> Finding:
    if mode == "777":
        return Finding(CRITICAL, "moodledata permissions TOO OPEN: 777 (should be 700 or 755)")
    if mode in ("700", "755"):
        return Finding(PASS, f"moodledata permissions correct: {mode}")
    return Finding(MEDIUM, f"moodledata permissions: {mode} (recommended: 700 or 755)")


def classify_config_mode(mode: str, path: str = "config.php") -> Finding:
    if mode in ("644", "664", "666"):
        return Finding(CRITICAL, f"config.php permissions TOO OPEN: {mode} (contains DB credentials!)", fix=f"chmod 600 {path}")
    if mode in ("600", "640"):
        return Finding(PASS, f"config.php permissions secure: {mode}")
    return Finding(MEDIUM, f"config.php permissions: {mode} (recommended: 600)")


def classify_code_owner(owner: str) -> Finding:
    if owner == "root":
        return Finding(PASS, "Moodle directory ownership secure: root (prevents tampering)")
    if owner == "www-data":
        return Finding(MEDIUM, "Moodle directory owned by www-data (consider changing to root for security)")
    return Finding(MEDIUM, f"Moodle directory owner: {owner} (recommended: root)")


def classify_code_mode(mode: str) -> Finding:
    if mode in ("755", "750"):
        return Finding(PASS, f"Moodle directory permissions correct: {mode}")
    if mode == "777":
        return Finding(CRITICAL, "Moodle directory permissions TOO OPEN: 777 (allows anyone to modify code!)")
    return Finding(LOW, f"Moodle directory permissions: {mode} (recommended: 755)")


def classify_release(release: str) -> Finding:
    if release.startswith("3."):
        return Finding(CRITICAL, "Moodle 3.x is END-OF-LIFE and no longer receives security updates!", fix="Upgrade to Moodle 4.x immediately")
    if release.startswith("4.0"):
        return Finding(HIGH, "Moodle 4.0 is nearing end-of-support. Consider upgrading to latest 4.x")
    return Finding(PASS, f"Moodle version is recent: {release}")


def classify_cert_days(days: int, name: str) -> Finding:
    if days < 7:
        return Finding(CRITICAL, f"SSL certificate expires in {days} days: {name}")
    if days < 30:
        return Finding(HIGH, f"SSL certificate expires in {days} days: {name}")
    return Finding(PASS, f"SSL certificate valid for {days} days: {name}")


def classify_db_password(password: str) -> Finding:
    if len(password) < 12:
        return Finding(HIGH, "Database password is short (< 12 characters)")
    if re.fullmatch(r"[a-z]+", password) or re.fullmatch(r"[0-9]+", password):
        return Finding(HIGH, "Database password appears weak (only lowercase or only numbers)")
    return Finding(PASS, "Database password appears strong")


def classify_min_password_length(length: int) -> Finding:
    if length >= 12:
        return Finding(PASS, f"Minimum password length: {length} characters (strong)")
    if length >= 8:
        return Finding(MEDIUM, f"Minimum password length: {length} characters (consider 12+)")
    return Finding(HIGH, f"Minimum password length: {length} characters (too short!)")


def classify_memory_limit(raw: str) -> Finding:
    m = re.search(r"-?\d+", raw or "")
    mb = int(m.group(0)) if m else 0
    if raw.strip() == "-1":
        return Finding(PASS, "PHP memory_limit: unlimited")
    if raw.strip().upper().endswith("G"):
        mb *= 1024
    if mb >= 256:
        return Finding(PASS, f"PHP memory_limit: {raw} (sufficient)")
    if mb >= 128:
        return Finding(MEDIUM, f"PHP memory_limit: {raw} (consider increasing to 256M)")
    return Finding(HIGH, f"PHP memory_limit: {raw} (may cause issues - increase to 256M)")


def classify_pending_updates(count: int) -> Finding:
    if count == 0:
        return Finding(PASS, "System is up to date (no pending updates)")
    if count < 10:
        return Finding(MEDIUM, f"{count} system updates available")
    return Finding(HIGH, f"{count} system updates available (update soon!)")


def classify_days_since_update(days: int) -> Finding:
    if days < 7:
        return Finding(PASS, f"Last system update: {days} days ago")
    if days < 30:
        return Finding(MEDIUM, f"Last system update: {days} days ago (update soon)")
    return Finding(HIGH, f"Last system update: {days} days ago (update now!)")


def _ini_on(value: str) -> bool:
    return (value or "").strip().lower() not in ("", "0", "off", "false", "no")


class HostProbe:
    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def stat(self, path: Path) -> tuple[str, str, str]:
        st = path.stat()
        mode = format(stat.S_IMODE(st.st_mode), "o")
        try:
            owner = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            owner = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        return mode, owner, group

    def world_writable_files(self, root: Path) -> int:
        count = 0
        for dirpath, _dirs, files in os.walk(root):
            for name in files:
                try:
                    if os.lstat(os.path.join(dirpath, name)).st_mode & stat.S_IWOTH:
                        count += 1
                except OSError:
                    continue
        return count

    def php_ini(self, name: str) -> str | None:
        if not self.runner.which("php"):
            return None
        res = self.runner.run(["php", "-r", f"echo ini_get('{name}');"], check=False)
        return res.stdout.strip() if res.ok else None

    def apt_upgradable(self) -> tuple[int, int] | None:
        if not self.runner.which("apt"):
            return None
        self.runner.run(["apt", "update", "-qq"], check=False, mutating=True)
        res = self.runner.run(["apt", "list", "--upgradable"], check=False)
        lines = [ln for ln in res.stdout.splitlines() if "upgradable" in ln]
        security = sum(1 for ln in lines if "security" in ln.lower())
        return len(lines), security

    def last_apt_update(self, history: Path = Path("/var/log/apt/history.log")) -> datetime | None:
        if not history.is_file():
            return None
        last = ""
        for line in history.read_text(encoding="utf-8", errors="replace").splitlines():
            if line.startswith("Start-Date:"):
                last = line.split(":", 1)[1].strip()
        if not last:
            return None
        try:
            return datetime.strptime(last, "%Y-%m-%d  %H:%M:%S")
        except ValueError:
            try:
                return datetime.strptime(" ".join(last.split()), "%Y-%m-%d %H:%M:%S")
            except ValueError:
                return None

    def ufw_status(self) -> str | None:
        if not self.runner.which("ufw"):
            return None
        res = self.runner.run(["ufw", "status"], check=False)
        for line in res.stdout.splitlines():
            if line.lower().startswith("status:"):
                return line.split(":", 1)[1].strip().lower()
        return ""

    def firewalld_active(self) -> bool:
        return self.runner.systemctl_is_active("firewalld")

    def exposed_db_listeners(self) -> int | None:
        for argv in (["ss", "-tuln"], ["netstat", "-tuln"]):
            if not self.runner.which(argv[0]):
                continue
            res = self.runner.run(argv, check=False)
            if not res.ok:
                continue
            return sum(
                1
                for ln in res.stdout.splitlines()
                if re.search(r":(3306|5432)\b", ln) and "127.0.0.1" not in ln and "[::1]" not in ln
            )
        return None

    def cert_paths(self, live: Path = Path("/etc/letsencrypt/live")) -> list[Path]:
        if not live.is_dir():
            return []
        return sorted(live.glob("*/cert.pem"))

    def cert_days_left(self, cert: Path, now: datetime) -> int | None:
        if not self.runner.which("openssl"):
            return None
        res = self.runner.run(["openssl", "x509", "-enddate", "-noout", "-in", str(cert)], check=False)
        if not res.ok or "=" not in res.stdout:
            return None
        raw = res.stdout.strip().split("=", 1)[1].replace(" GMT", "").strip()
        try:
            expiry = datetime.strptime(" ".join(raw.split()), "%b %d %H:%M:%S %Y")
        except ValueError:
            return None
        return int((expiry - now).total_seconds() // 86400)

    def service_active(self, unit: str) -> bool:
        return self.runner.systemctl_is_active(unit)

    def secret_helper_available(self) -> bool:
        return self.runner.which("get-moodle-secret") is not None


class SecurityAudit:
    def __init__(self, ctx: OpsContext, probe: HostProbe) -> None:
        self.ctx = ctx
        self.probe = probe
        self.result = AuditResult()
        self.moodle_dir = Path(ctx.settings.moodle_dir)
        self.moodle_data = Path(ctx.settings.moodle_data)
        self.config_path = ctx.settings.config_php
        self.cfg: dict[str, Any] = {}
        self.config_text = ""

    @property
    def log(self) -> OpsLog:
        return self.ctx.log

    def add(self, finding: Finding) -> None:
        self.result.findings.append(finding)
        self.log.emit(finding.severity, finding.message, always=finding.severity in (CRITICAL, HIGH))
        if finding.fix:
            self.log.emit(finding.severity, f"  Fix: {finding.fix}", always=finding.severity in (CRITICAL, HIGH))

    def note(self, msg: str) -> None:
        self.result.findings.append(Finding(INFO, msg))
        self.log.info(msg)

    def preflight(self) -> None:
        for label, path in (
            ("Moodle directory", self.moodle_dir),
            ("Moodledata directory", self.moodle_data),
        ):
            if not path.is_dir():
                raise OpError(f"{label} not found: {path}")
        if not self.config_path.is_file():
            raise OpError(f"Moodle config.php not found: {self.config_path}")
        self.config_text = self.config_path.read_text(encoding="utf-8", errors="replace")
        self.cfg = parse_config_php(self.config_text)
        self.result.facts["wwwroot"] = str(self.cfg.get("wwwroot", "") or "")

    def check_permissions(self) -> None:
        self.log.section("Check 1: File Permissions & Ownership")
        mode, owner, group = self.probe.stat(self.moodle_data)
        self.result.facts["moodledataMode"] = mode
        web = self.ctx.settings.web_user
        if owner == web and group == web:
            self.add(Finding(PASS, f"moodledata ownership correct: {owner}:{group}"))
        else:
            self.add(Finding(HIGH, f"moodledata ownership incorrect: {owner}:{group} (should be {web}:{web})"))
        self.add(classify_moodledata_mode(mode))

        cmode, _cowner, _cgroup = self.probe.stat(self.config_path)
        self.add(classify_config_mode(cmode, str(self.config_path)))

        dmode, downer, _dgroup = self.probe.stat(self.moodle_dir)
        self.add(classify_code_owner(downer))
        self.add(classify_code_mode(dmode))

        writable = self.probe.world_writable_files(self.moodle_dir)
        if writable == 0:
            self.add(Finding(PASS, "No world-writable files found in Moodle directory"))
        else:
            self.add(
                Finding(
                    HIGH,
                    f"Found {writable} world-writable files in Moodle directory (security risk)",
                    fix=f"find {self.moodle_dir} -type f -perm -002 -exec chmod o-w {{}} +",
                )
            )

    def check_version(self) -> None:
        self.log.section("Check 2: Moodle Version & Known Vulnerabilities")
        version_php = self.moodle_dir / "version.php"
        if not version_php.is_file():
            self.log.warn("Could not determine Moodle version (version.php not found)")
            return
        release, build = php_version_release(version_php.read_text(encoding="utf-8", errors="replace"))
        self.result.facts["moodleVersion"] = release
        self.log.log(f"Moodle version: {release} (build {build})")
        self.add(classify_release(release))

    def check_tls(self, now: datetime) -> None:
        self.log.section("Check 3: SSL/TLS Configuration")
        wwwroot = self.result.facts.get("wwwroot", "")
        if wwwroot.startswith("https://"):
            self.add(Finding(PASS, f"Moodle configured to use HTTPS: {wwwroot}"))
        else:
            self.add(
                Finding(
                    CRITICAL,
                    f"Moodle NOT using HTTPS: {wwwroot or '(unset)'}",
                    fix="Update $CFG->wwwroot in config.php to use https://",
                )
            )
        if self.cfg.get("sslproxy") is True:
            self.note("SSL proxy enabled (using load balancer or reverse proxy)")
        for cert in self.probe.cert_paths():
            days = self.probe.cert_days_left(cert, now)
            if days is not None:
                self.add(classify_cert_days(days, cert.parent.name))

    def check_database(self) -> None:
        self.log.section("Check 4: Database Security")
        if "dbpass" in self.cfg:
            self.add(classify_db_password(str(self.cfg.get("dbpass") or "")))
        host = str(self.cfg.get("dbhost", "") or "")
        if host in ("localhost", "127.0.0.1"):
            self.add(Finding(PASS, "Database on localhost (secure - no remote access)"))
        else:
            self.add(Finding(MEDIUM, f"Database host is remote: {host} (ensure firewall restrictions)"))
        if self.probe.secret_helper_available() or (
            self.ctx.settings.gcp_project and self.ctx.runner.which("gcloud")
        ):
            self.add(Finding(PASS, "Secret Manager available for credential management"))
        else:
            self.add(Finding(MEDIUM, "Secret Manager not configured (consider migrating DB credentials)"))

    def check_password_policy(self) -> None:
        self.log.section("Check 5: Password Policies")
        raw = self.cfg.get("minpasswordlength")
        if isinstance(raw, int):
            self.add(classify_min_password_length(raw))
        else:
            self.note("Password length not explicitly set (using Moodle default: 8)")
        if "passwordpolicy" in self.cfg:
            self.add(Finding(PASS, "Password policy configured in config.php"))
        else:
            self.add(Finding(MEDIUM, "No password policy in config.php (check Moodle admin settings)"))

    def check_php(self) -> None:
        self.log.section("Check 6: PHP Security Configuration")
        if self.probe.php_ini("display_errors") is None:
            self.log.warn("php not available, skipping PHP checks")
            return
        if _ini_on(self.probe.php_ini("display_errors") or ""):
            self.add(Finding(HIGH, "PHP display_errors: On (reveals sensitive info to attackers!)", fix="Set display_errors = Off in php.ini"))
        else:
            self.add(Finding(PASS, "PHP display_errors: Off (secure for production)"))
        if _ini_on(self.probe.php_ini("expose_php") or ""):
            self.add(Finding(MEDIUM, "PHP expose_php: On (reveals PHP version to attackers)"))
        else:
            self.add(Finding(PASS, "PHP expose_php: Off (hides PHP version)"))
        if (self.probe.php_ini("session.cookie_httponly") or "") == "1":
            self.add(Finding(PASS, "session.cookie_httponly: On (prevents XSS cookie theft)"))
        else:
            self.add(Finding(HIGH, "session.cookie_httponly: Off (vulnerable to XSS attacks!)"))
        if self.result.facts.get("wwwroot", "").startswith("https://"):
            if (self.probe.php_ini("session.cookie_secure") or "") == "1":
                self.add(Finding(PASS, "session.cookie_secure: On (cookies only sent over HTTPS)"))
            else:
                self.add(Finding(HIGH, "session.cookie_secure: Off (cookies can be intercepted!)"))
        if (self.probe.php_ini("file_uploads") or "") == "1":
            self.add(Finding(PASS, "PHP file_uploads: On (required for Moodle)"))
            self.note(f"Max upload size: {self.probe.php_ini('upload_max_filesize') or 'unknown'}")
        else:
            self.add(Finding(CRITICAL, "PHP file_uploads: Off (breaks Moodle functionality!)"))
        self.add(classify_memory_limit(self.probe.php_ini("memory_limit") or ""))

    def check_updates(self, now: datetime) -> None:
        self.log.section("Check 7: System Updates & Security Patches")
        upgradable = self.probe.apt_upgradable()
        if upgradable is not None:
            count, security = upgradable
            self.add(classify_pending_updates(count))
            if security > 0:
                self.add(Finding(CRITICAL, f"{security} SECURITY updates available (apply immediately!)"))
        last = self.probe.last_apt_update()
        if last is not None:
            self.add(classify_days_since_update(int((now - last).total_seconds() // 86400)))

    def check_firewall(self) -> None:
        self.log.section("Check 8: Firewall & Network Security")
        ufw = self.probe.ufw_status()
        if ufw is not None:
            if ufw == "active":
                self.add(Finding(PASS, "UFW firewall is active"))
            else:
                self.add(Finding(HIGH, "UFW firewall is INACTIVE (no network protection!)"))
        elif self.probe.firewalld_active():
            self.add(Finding(PASS, "Firewalld is active"))
        else:
            self.add(Finding(HIGH, "No firewall detected (UFW or firewalld)"))
        exposed = self.probe.exposed_db_listeners()
        if exposed is not None:
            if exposed == 0:
                self.add(Finding(PASS, "Database port not exposed to external network"))
            else:
                self.add(Finding(CRITICAL, "Database port is EXPOSED to external network (security risk!)"))

    def run(self, *, quick: bool = False) -> AuditResult:
        now = self.ctx.now()
        self.preflight()
        self.check_permissions()
        if not quick:
            self.check_version()
            self.check_tls(now)
            self.check_database()
            self.check_password_policy()
            self.check_php()
            self.check_updates(now)
            self.check_firewall()
        self.result.facts["opsAgentActive"] = "yes" if self.probe.service_active("google-cloud-ops-agent") else "no"
        return self.result


def render_security_report(
    result: AuditResult,
    *,
    settings_dirs: tuple[str, str],
    generated: datetime,
    compliance: bool,
) -> str:
    moodle_dir, moodle_data = settings_dirs
    facts = result.facts
    lines = [
        "# ============================================================================",
        "# Moodle Security Audit Report",
        f"# Generated: {generated.strftime('%Y-%m-%d %H:%M:%S')}",
        "# ============================================================================",
        "",
        "## Executive Summary",
        "",
        f"Security Score: {result.score}/100",
        f"Security Grade: {result.grade}",
        "",
        f"Total Checks: {len(result.findings)}",
        f"Issues Found: {result.issues}",
        f"- Critical: {result.count(CRITICAL)}",
        f"- High: {result.count(HIGH)}",
        f"- Medium: {result.count(MEDIUM)}",
        f"- Low: {result.count(LOW)}",
        "",
        "## System Information",
        "",
        f"Moodle Directory: {moodle_dir}",
        f"Moodledata Directory: {moodle_data}",
        f"Moodle Version: {facts.get('moodleVersion') or 'Unknown'}",
        f"WWW Root: {facts.get('wwwroot') or 'Not configured'}",
    ]
    sections = (
        (CRITICAL, "Critical Issues (Immediate Action Required)", "critical issues", "X"),
        (HIGH, "High Priority Issues", "high priority issues", "!"),
        (MEDIUM, "Medium Priority Issues", "medium priority issues", "!"),
        (LOW, "Low Priority Issues", "low priority issues", "-"),
    )
    for severity, title, noun, mark in sections:
        lines += ["", f"## {title}", ""]
        items = result.by_severity(severity)
        if not items:
            lines.append(f"OK No {noun} found")
            continue
        for f in items:
            lines.append(f"  {mark} {f.message}")
            if f.fix:
                lines.append(f"      Fix: {f.fix}")
    lines += ["", "## Passed Checks", ""]
    lines += [f"  {f.message}" for f in result.findings if f.severity in (PASS, INFO)]

    recs: list[str] = []
    if result.count(CRITICAL):
        recs.append("**URGENT**: Address all critical issues immediately")
    if result.count(HIGH):
        recs.append("Fix high priority issues within 24-48 hours")
    if result.count(MEDIUM):
        recs.append("Schedule medium priority fixes within 1 week")
    if result.score < 90:
        recs.append("Run full security audit monthly")
        recs.append("Subscribe to Moodle security announcements: https://moodle.org/security/")
    lines += ["", "## Recommendations", ""]
    lines += [f"{i}. {r}" for i, r in enumerate(recs, start=1)] or ["None"]

    if compliance:
        https = facts.get("wwwroot", "").startswith("https://")
        clean = result.count(CRITICAL) == 0
        lines += [
            "",
            "## Compliance Status",
            "",
            "### GDPR Compliance",
            f"- Data encryption: {'Yes (HTTPS)' if https else 'No'}",
            f"- Access controls: {'Adequate' if clean else 'Needs review'}",
            "- Regular audits: Run monthly security checks",
            "",
            "### FERPA Compliance (Education Privacy)",
            f"- Student data protection: File permissions {'Secure' if facts.get('moodledataMode') == '700' else 'Review'}",
            "- Access logging: Check Moodle logs regularly",
            "- Data retention: Configure in Moodle admin settings",
            "",
            "### SOC 2 Controls",
            f"- Access control: {'Implemented' if clean else 'Issues found'}",
            f"- Monitoring: {'Active' if facts.get('opsAgentActive') == 'yes' else 'Not configured'}",
            "- Change management: Version control recommended",
        ]
    lines += [
        "",
        "## Next Steps",
        "",
        "1. Review this report thoroughly",
        "2. Prioritize fixes by severity (Critical, High, Medium, Low)",
        f"3. Schedule next security audit: {(generated + timedelta(days=30)).strftime('%Y-%m-%d')}",
        "4. Keep Moodle updated with latest security patches",
        "",
        "## Resources",
        "",
        "- Moodle Security: https://docs.moodle.org/en/Security",
        "- OWASP Top 10: https://owasp.org/www-project-top-ten/",
        "- CIS Benchmarks: https://www.cisecurity.org/benchmark/",
        "",
    ]
    return "\n".join(lines)


def build_probe(ctx: OpsContext) -> HostProbe:
    return HostProbe(ctx.runner)


def cmd_audit_run(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    ctx = build_ops_context(g, tool="audit", default_log_file=AUDIT_LOG)
    audit = SecurityAudit(ctx, build_probe(ctx))
    result = audit.run(quick=bool(getattr(args, "quick", False)))
    now = ctx.now()
    report_dir = Path(getattr(args, "report_dir", None) or "/tmp")
    report_path = report_dir / f"moodle-security-report-{now.strftime('%Y%m%d_%H%M%S')}.txt"
    report = render_security_report(
        result,
        settings_dirs=(ctx.settings.moodle_dir, ctx.settings.moodle_data),
        generated=now,
        compliance=bool(getattr(args, "compliance_report", False)),
    )
    _write_secure_text(path=report_path, text=report)
    ctx.log.log(f"Security report generated: {report_path}")
    critical = result.count(CRITICAL)
    if critical:
        ctx.log.error("CRITICAL ISSUES FOUND - IMMEDIATE ACTION REQUIRED!")
    elif result.count(HIGH):
        ctx.log.warn("High priority issues found - address within 24-48 hours")
    ctx.log.wide_event(
        "critical" if critical else "success",
        score=result.score,
        critical=critical,
        high=result.count(HIGH),
        medium=result.count(MEDIUM),
        low=result.count(LOW),
    )
    _print_json(
        {
            "score": result.score,
            "grade": result.grade,
            "counts": {s.lower(): result.count(s) for s in (CRITICAL, HIGH, MEDIUM, LOW, PASS)},
            "report": str(report_path),
        },
        pretty=g.pretty,
    )
    return 1 if critical else 0


def cmd_audit_install_cron(args: argparse.Namespace, g: GlobalOpts) -> int:
    require_root()
    path = install_cron_d(SECURITY_AUDIT_JOB, cron_dir=getattr(args, "cron_dir", None) or "/etc/cron.d")
    _print_json({"installed": str(path), "schedule": SECURITY_AUDIT_JOB.schedule}, pretty=g.pretty)
    return 0
