"""Per-domain nginx reverse proxy configuration.

The config name is `<domain>.conf` inside the sites directory.
"""

from __future__ import annotations

import re
import shlex
import subprocess
from pathlib import Path

from scripts.sailer.errors import ProxyWriteFailure

NGINX_TEMPLATE = """\
server {{
    listen 80;
    listen [::]:80;
    server_name {domain};

    location / {{
        proxy_set_header Host {domain};
        proxy_set_header X-Forwarded-Host {domain};
        proxy_set_header X-Forwarded-Server {domain};
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
        proxy_pass http://127.0.0.1:{port};
    }}
}}
"""


# Hostname characters only; no path separators, whitespace or nginx syntax.
_SAFE_NAME = re.compile(r"[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*")


def check_domain_name(domain: str) -> str:
    """Return `domain` if it is safe as a file name and as an nginx `server_name`."""
    name = str(domain or "")
    if not _SAFE_NAME.fullmatch(name) or Path(name).name != name:
        raise ProxyWriteFailure(
            f"Domain {name!r} cannot be used for a proxy config",
            hint="Use letters, digits, '-', '_' and single dots only.",
        )
    return name


def render_proxy_config(*, domain: str, host_port: int) -> str:
    return NGINX_TEMPLATE.format(domain=check_domain_name(domain), port=int(host_port))


def proxy_config_path(*, sites_dir: Path, domain: str) -> Path:
    return Path(sites_dir) / f"{check_domain_name(domain)}.conf"


def reload_proxy(*, reload_cmd: str, timeout: int = 60) -> str | None:
    """Ask the proxy daemon to reload. Returns an error description, or None on success."""
    if not reload_cmd.strip():
        return None
    try:
        result = subprocess.run(
            shlex.split(reload_cmd),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"'{reload_cmd}' failed: {e}"
    if result.returncode != 0:
        details = str(result.stderr or result.stdout or "").strip().replace("\n", " ")[:300]
        return f"'{reload_cmd}' exited with {result.returncode}: {details}"
    return None


def install_proxy_config(
    *,
    sites_dir: Path,
    domain: str,
    config_text: str,
    reload_cmd: str,
    timeout: int = 60,
) -> str | None:
    """Write the domain config and reload the proxy.

    A write error is fatal. A reload error is returned as a warning; the file
    is kept so the next reload picks it up.
    """
    path = proxy_config_path(sites_dir=sites_dir, domain=domain)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(config_text, encoding="utf-8")
    except OSError as e:
        raise ProxyWriteFailure(
            f"Cannot write proxy config {path}: {e}",
            hint="Run as a user allowed to write the nginx sites directory or set SAILER_NGINX_SITES_DIR.",
        ) from e
    return reload_proxy(reload_cmd=reload_cmd, timeout=timeout)


def provision_tls(domain: str) -> None:
    """Certificate provisioning is not implemented yet; nothing is issued."""
    return None
