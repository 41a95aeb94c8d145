"""
Configuration file templates and the atomic writer that installs them.

Rendering is a pure function of (template id, params). Writing goes through
a temporary file in the target directory and ``os.replace`` so a crash leaves
either the old file or the new one, never a truncated mix.
"""

import datetime
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Union

from almahost.models import ServiceTemplate, StepResult, TemplateError, WriteError

logger = logging.getLogger(__name__)

Params = Mapping[str, Any]


def _nginx_default_ssl(p: Params) -> str:
    return (
        "server {\n"
        "    listen 443 ssl;\n"
        "    server_name _;\n"
        "\n"
        f"    ssl_certificate {p['ssl_certificate']};\n"
        f"    ssl_certificate_key {p['ssl_certificate_key']};\n"
        "\n"
        "    location / {\n"
        "        return 200 'Default Nginx SSL Configuration';\n"
        "        add_header Content-Type text/plain;\n"
        "    }\n"
        "}\n"
    )


def _nginx_site(p: Params) -> str:
    return (
        "server {\n"
        "    listen 80;\n"
        f"    server_name {p['domain']};\n"
        "\n"
        "    location / {\n"
        f"        proxy_pass {p['backend']};\n"
        "        proxy_set_header Host $host;\n"
        "        proxy_set_header X-Real-IP $remote_addr;\n"
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;\n"
        "    }\n"
        "}\n"
    )


def _httpd_vhost(p: Params) -> str:
    domain = p["domain"]
    log_dir = p["log_dir"]
    document_root = p["document_root"]
    return (
        "<VirtualHost *:80>\n"
        f"    ServerName {domain}\n"
        f"    DocumentRoot {document_root}\n"
        "\n"
        f"    <Directory {document_root}>\n"
        "        Options -Indexes +FollowSymLinks\n"
        "        AllowOverride All\n"
        "    </Directory>\n"
        "\n"
        f"    ErrorLog {log_dir}/{domain}_error.log\n"
        f"    CustomLog {log_dir}/{domain}_access.log combined\n"
        "</VirtualHost>\n"
    )


def _openvpn_server(p: Params) -> str:
    pki = p["pki_dir"]
    network, netmask = p["subnet"]
    lines = [
        f"port {p['port']}",
        "proto udp",
        "dev tun",
        f"ca {pki}/ca.crt",
        f"cert {pki}/issued/server.crt",
        f"key {pki}/private/server.key",
        f"dh {pki}/dh.pem",
        f"server {network} {netmask}",
        "ifconfig-pool-persist ipp.txt",
        'push "redirect-gateway def1 bypass-dhcp"',
    ]
    lines += [f'push "dhcp-option DNS {dns}"' for dns in p["dns"]]
    lines += [
        "keepalive 10 120",
        f"tls-auth {pki}/ta.key 0",
        f"cipher {p['cipher']}",
        "persist-key",
        "persist-tun",
        "status openvpn-status.log",
        "verb 3",
    ]
    return "\n".join(lines) + "\n"


def _ssh_banner(p: Params) -> str:
    rule = "=" * 40
    return (
        f"{rule}\n"
        f"Welcome to {p['domain']}\n"
        f"{rule}\n"
        "Unauthorized access is prohibited.\n"
        "All activities are monitored and logged.\n"
        f"{rule}\n"
    )


def _fail2ban_jail(p: Params) -> str:
    return (
        "[DEFAULT]\n"
        f"bantime = {p['ban_time']}\n"
        f"findtime = {p['find_window']}\n"
        f"maxretry = {p['max_retries']}\n"
        f"backend = {p['backend']}\n"
        "\n"
        f"[{p['jail']}]\n"
        "enabled = true\n"
        f"port = {p['port']}\n"
        f"logpath = {p['log_path']}\n"
    )


TEMPLATES: Dict[str, Callable[[Params], str]] = {
    "nginx_default_ssl": _nginx_default_ssl,
    "nginx_site": _nginx_site,
    "httpd_vhost": _httpd_vhost,
    "openvpn_server": _openvpn_server,
    "ssh_banner": _ssh_banner,
    "fail2ban_jail": _fail2ban_jail,
}


class TemplateRenderer:
    def render(self, template_id: str, params: Params) -> str:
        try:
            template = TEMPLATES[template_id]
        except KeyError:
            raise TemplateError(f"Unknown template: {template_id}")
        try:
            return template(params)
        except KeyError as e:
            raise TemplateError(f"Template {template_id} is missing parameter {e}")

    def build(self, template_id: str, target_path: Path, params: Params) -> ServiceTemplate:
        return ServiceTemplate(template_id, Path(target_path), self.render(template_id, params))

    def write_atomic(
        self,
        path: Union[str, Path],
        content: str,
        name: Optional[str] = None,
        errors: str = "strict",
    ) -> StepResult:
        path = Path(path)
        name = name or f"write {path}"
        try:
            changed = self._replace(path, content, errors)
        except WriteError as e:
            logger.error(f"✗ {e}")
            return StepResult.failed(name, str(e))
        if changed:
            logger.info(f"Wrote {path}")
            return StepResult.success(name, f"wrote {path}")
        logger.info(f"{path} is already up-to-date; rewritten unchanged")
        return StepResult.success(name, f"{path} unchanged")

    def write_template(self, template: ServiceTemplate) -> StepResult:
        return self.write_atomic(
            template.target_path, template.rendered_content, name=f"write {template.name}"
        )

    def _replace(self, path: Path, content: str, errors: str = "strict") -> bool:
        """Swap content into path; returns whether the content differs from before."""
        data = content.encode("utf-8", errors)
        previous: Optional[bytes] = None
        mode = 0o644
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.is_file():
                previous = path.read_bytes()
                mode = path.stat().st_mode & 0o7777
            if previous is not None and previous != data:
                self._backup(path)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        except OSError as e:
            raise WriteError(path, e.strerror or str(e))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise WriteError(path, e.strerror or str(e))
        return previous != data

    def _backup(self, path: Path) -> Path:
        timestamp = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.name}.bak.{timestamp}")
        shutil.copy2(path, backup_path)
        logger.debug(f"Backed up {path} to {backup_path}")
        return backup_path
