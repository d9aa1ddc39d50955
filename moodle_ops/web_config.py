from __future__ import annotations

from pathlib import Path

WEB_SERVERS = ("apache", "nginx")
SECURITY_HEADERS = (
    ("X-Content-Type-Options", "nosniff"),
    ("X-Frame-Options", "SAMEORIGIN"),
    ("X-XSS-Protection", "1; mode=block"),
    ("Referrer-Policy", "no-referrer-when-downgrade"),
)
HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"


def document_root(moodle_dir: str) -> str:
    """Moodle 5.1+ serves from public/; older trees serve the code directory itself."""
    public = Path(moodle_dir) / "public"
    return str(public) if public.is_dir() else moodle_dir.rstrip("/")


def _apache_headers(indent: str, *, hsts: bool = False) -> list[str]:
    headers = list(SECURITY_HEADERS)
    if hsts:
        headers.insert(0, ("Strict-Transport-Security", HSTS_VALUE))
    out = [f"{indent}<IfModule mod_headers.c>"]
    out += [f'{indent}    Header always set {name} "{value}"' for name, value in headers]
    out.append(f"{indent}</IfModule>")
    return out


def render_apache_security_conf() -> str:
    lines = _apache_headers("")
    lines += [
        "",
        "ServerTokens Prod",
        "ServerSignature Off",
        "TraceEnable Off",
        "",
    ]
    return "\n".join(lines)


def render_apache_site(domain: str, *, moodle_dir: str, moodle_data: str, aliases: tuple[str, ...] = ()) -> str:
    docroot = document_root(moodle_dir)
    lines = [
        "<VirtualHost *:80>",
        f"    ServerName {domain}",
    ]
    if aliases:
        lines.append(f"    ServerAlias {' '.join(aliases)}")
    lines += [
        f"    DocumentRoot {docroot}",
        "",
        f"    <Directory {docroot}>",
        "        Options -Indexes +FollowSymLinks",
        "        AllowOverride All",
        "        Require all granted",
        "    </Directory>",
        "",
        f"    <Directory {moodle_data.rstrip('/')}>",
        "        Require all denied",
        "    </Directory>",
        "",
        *_apache_headers("    "),
        "",
        f"    ErrorLog ${{APACHE_LOG_DIR}}/{domain}-error.log",
        f"    CustomLog ${{APACHE_LOG_DIR}}/{domain}-access.log combined",
        "</VirtualHost>",
        "",
    ]
    return "\n".join(lines)


def render_nginx_site(server_names: tuple[str, ...], *, moodle_dir: str, php_version: str) -> str:
    docroot = document_root(moodle_dir)
    names = " ".join(server_names) or "_"
    return f"""\
server {{
    listen 80;
    listen [::]:80;
    server_name {names};
    root {docroot};
    index index.php index.html;
    client_max_body_size 100M;

    location ^~ /.well-known/acme-challenge/ {{
        allow all;
        default_type "text/plain";
    }}

    location / {{
        try_files $uri $uri/ /index.php?$query_string;
    }}

    location ~ [^/]\\.php(/|$) {{
        fastcgi_split_path_info ^(.+\\.php)(/.+)$;
        include snippets/fastcgi-php.conf;
        fastcgi_pass unix:/run/php/php{php_version}-fpm.sock;
        fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
        fastcgi_param PATH_INFO $fastcgi_path_info;
        fastcgi_read_timeout 300s;
    }}

    location ~ /\\. {{
        deny all;
    }}

    add_header X-Content-Type-Options "nosniff" always;
    add_header X-Frame-Options "SAMEORIGIN" always;
    server_tokens off;
}}
"""


def insert_apache_headers(vhost: str) -> str:
    """Add HSTS and the security headers before each closing VirtualHost tag."""
    if "Strict-Transport-Security" in vhost:
        return vhost
    block = "\n".join(_apache_headers("    ", hsts=True))
    return vhost.replace("</VirtualHost>", f"{block}\n</VirtualHost>")


def render_php_ini(*, timezone: str = "UTC", error_log: str = "/var/log/php_errors.log") -> str:
    return f"""\
; Moodle PHP settings
[PHP]
memory_limit = 512M
upload_max_filesize = 100M
post_max_size = 100M
max_execution_time = 300
max_input_vars = 5000
max_input_time = 300

session.save_handler = files
session.save_path = "/var/lib/php/sessions"
session.gc_maxlifetime = 7200

date.timezone = {timezone}

display_errors = Off
display_startup_errors = Off
log_errors = On
error_log = {error_log}

realpath_cache_size = 4M
realpath_cache_ttl = 600

[opcache]
opcache.enable = 1
opcache.memory_consumption = 512
opcache.max_accelerated_files = 16229
opcache.interned_strings_buffer = 16
opcache.validate_timestamps = 1
opcache.revalidate_freq = 2
opcache.save_comments = 1
opcache.enable_cli = 0
"""


def innodb_buffer_mb(total_ram_mb: int) -> int:
    return max(256, total_ram_mb // 2)


def render_mariadb_cnf(total_ram_mb: int) -> str:
    return f"""\
# Moodle tuning for a {total_ram_mb}MB host
[mysqld]
innodb_buffer_pool_size = {innodb_buffer_mb(total_ram_mb)}M
innodb_log_file_size = 256M
innodb_log_buffer_size = 16M
innodb_flush_log_at_trx_commit = 2
innodb_flush_method = O_DIRECT
innodb_file_per_table = 1

max_connections = 100
max_allowed_packet = 64M
performance_schema = OFF

character_set_server = utf8mb4
collation_server = utf8mb4_unicode_ci

slow_query_log = 1
slow_query_log_file = /var/log/mysql/mysql-slow.log
long_query_time = 2
"""


def parse_meminfo_mb(text: str) -> int:
    for line in text.splitlines():
        if line.startswith("MemTotal:"):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1]) // 1024
    return 0


def render_moodle_cron(*, moodle_dir: str, web_user: str, php_bin: str = "/usr/bin/php") -> str:
    return (
        "# Moodle scheduled tasks, every minute\n"
        f"* * * * * {web_user} {php_bin} {moodle_dir.rstrip('/')}/admin/cli/cron.php > /dev/null 2>&1\n"
    )


def render_logrotate(*, web_user: str) -> str:
    return f"""\
/var/log/moodle-setup.log /var/log/moodle-ssl-setup.log {{
    weekly
    rotate 4
    compress
    delaycompress
    missingok
    notifempty
}}

/var/log/php_errors.log {{
    daily
    rotate 7
    compress
    delaycompress
    missingok
    notifempty
    create 0640 {web_user} adm
}}
"""
