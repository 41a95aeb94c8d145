"""
Per-service configuration units.

Every configurator renders its files, installs them with the atomic writer
and then (re)starts its systemd unit. Web-facing configurators consult a
shared WebserverProbe so an operator's already-running nginx/httpd setup is
left alone.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from almahost.config import POLICY_AVOID_CONFLICT, Config
from almahost.models import (
    ExternalCommandError,
    HostDescriptor,
    ServiceTemplate,
    StepResult,
)
from almahost.runner import CommandRunner
from almahost.templates import TemplateRenderer

logger = logging.getLogger(__name__)


class WebserverProbe:
    """Which web servers were active before this run touched anything. Asked once, then cached."""

    UNITS: Tuple[str, ...] = ("nginx", "httpd")

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner
        self._active: Optional[List[str]] = None

    def active_units(self) -> List[str]:
        if self._active is None:
            active = []
            for unit in self.UNITS:
                try:
                    if self.runner.query(["systemctl", "is-active", "--quiet", unit]).ok:
                        active.append(unit)
                except ExternalCommandError as e:
                    logger.warning(f"Could not probe {unit}: {e.reason}")
            self._active = active
            if active:
                logger.info(f"Active web server(s) detected: {', '.join(active)}")
            else:
                logger.info("No webserver is currently active.")
        return list(self._active)

    def any_active(self) -> bool:
        return bool(self.active_units())


class ServiceConfigurator:
    name: str = "service"
    unit: str = ""

    def __init__(
        self,
        config: Config,
        runner: CommandRunner,
        renderer: TemplateRenderer,
        probe: Optional[WebserverProbe] = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.renderer = renderer
        self.probe = probe

    def templates(self, host: HostDescriptor) -> List[ServiceTemplate]:
        return []

    def conflicts(self) -> bool:
        """True when an existing web server must not be overwritten."""
        return False

    def configure(self, host: HostDescriptor) -> List[StepResult]:
        templates = self.templates(host)
        if self.conflicts():
            logger.info(f"A webserver is already active. Skipping {self.name} configuration.")
            return [
                StepResult.skipped(
                    f"write {t.name}", f"web server already active; left {t.target_path} untouched"
                )
                for t in templates
            ]
        results = [self.renderer.write_template(t) for t in templates]
        results.extend(self.activate(host))
        return results

    def activate(self, host: HostDescriptor) -> List[StepResult]:
        return [self.enable(), self.restart()]

    def systemctl(self, action: str, unit: Optional[str] = None) -> StepResult:
        unit = unit or self.unit
        cmd = ["systemctl", action, unit]
        if action == "enable":
            cmd.insert(2, "--now")
        return self.runner.run(cmd, name=f"{action} {unit}")

    def enable(self, unit: Optional[str] = None) -> StepResult:
        return self.systemctl("enable", unit)

    def restart(self, unit: Optional[str] = None) -> StepResult:
        return self.systemctl("restart", unit)


class _WebConfigurator(ServiceConfigurator):
    def conflicts(self) -> bool:
        if self.probe is None or self.config.WEBSERVER_POLICY != POLICY_AVOID_CONFLICT:
            return False
        return self.probe.any_active()


class DefaultSiteConfigurator(_WebConfigurator):
    """Catch-all nginx TLS site on 443, only for hosts without a running web server."""

    name = "default_site"
    unit = "nginx"

    def conflicts(self) -> bool:
        return self.probe is not None and self.probe.any_active()

    def templates(self, host: HostDescriptor) -> List[ServiceTemplate]:
        return [
            self.renderer.build(
                "nginx_default_ssl",
                self.config.NGINX_CONF_DIR / "default_ssl.conf",
                {
                    "ssl_certificate": self.config.SNAKEOIL_CERT,
                    "ssl_certificate_key": self.config.SNAKEOIL_KEY,
                },
            )
        ]


class ReverseProxyConfigurator(_WebConfigurator):
    name = "reverse_proxy"
    unit = "nginx"

    def templates(self, host: HostDescriptor) -> List[ServiceTemplate]:
        return [
            self.renderer.build(
                "nginx_site",
                self.config.NGINX_CONF_DIR / f"{host.domain}.conf",
                {"domain": host.domain, "backend": self.config.PROXY_BACKEND},
            )
        ]

    def activate(self, host: HostDescriptor) -> List[StepResult]:
        return [self.restart()]


class WebServerConfigurator(_WebConfigurator):
    name = "web_server"
    unit = "httpd"

    def templates(self, host: HostDescriptor) -> List[ServiceTemplate]:
        return [
            self.renderer.build(
                "httpd_vhost",
                self.config.HTTPD_CONF_DIR / f"{host.domain}.conf",
                {
                    "domain": host.domain,
                    "document_root": self.config.DOCUMENT_ROOT,
                    "log_dir": self.config.HTTPD_LOG_DIR,
                },
            )
        ]


class VpnConfigurator(ServiceConfigurator):
    name = "vpn"

    def templates(self, host: HostDescriptor) -> List[ServiceTemplate]:
        return [
            self.renderer.build(
                "openvpn_server",
                self.config.OPENVPN_CONF_DIR / f"{host.domain}.conf",
                {
                    "port": self.config.VPN_PORT,
                    "pki_dir": self.config.EASYRSA_PKI_DIR,
                    "subnet": self.config.VPN_SUBNET,
                    "dns": self.config.VPN_DNS,
                    "cipher": self.config.VPN_CIPHER,
                },
            )
        ]

    def activate(self, host: HostDescriptor) -> List[StepResult]:
        return [self.enable(f"openvpn-server@{host.domain}")]


_BANNER_LINE = re.compile(r"^\s*#?Banner\s+\S+\s*$")
_MATCH_LINE = re.compile(r"^\s*Match\s", re.IGNORECASE)


def set_banner_directive(sshd_config: str, banner_path: Path) -> str:
    """
    Point sshd at banner_path, leaving exactly one active global Banner directive.

    Only the global section (everything before the first Match line) is
    edited. There the first Banner directive (commented or not) is replaced
    and later active ones are dropped; without any, the directive is added at
    the end of the global section. Match blocks are left as they are.
    """
    directive = f"Banner {banner_path}"
    lines = sshd_config.splitlines()
    match_at = next((i for i, line in enumerate(lines) if _MATCH_LINE.match(line)), len(lines))
    out: List[str] = []
    placed = False
    for line in lines[:match_at]:
        if _BANNER_LINE.match(line):
            if not placed:
                out.append(directive)
                placed = True
                continue
            if not line.lstrip().startswith("#"):
                continue
        out.append(line)
    if not placed:
        out.append(directive)
    return "\n".join(out + lines[match_at:]) + "\n"


class SshBannerConfigurator(ServiceConfigurator):
    name = "ssh_banner"
    unit = "sshd"

    def templates(self, host: HostDescriptor) -> List[ServiceTemplate]:
        return [
            self.renderer.build("ssh_banner", self.config.SSH_BANNER, {"domain": host.domain})
        ]

    def activate(self, host: HostDescriptor) -> List[StepResult]:
        sshd_config = self.config.SSHD_CONFIG
        name = f"set Banner in {sshd_config}"
        try:
            current = sshd_config.read_text(encoding="utf-8", errors="surrogateescape")
        except OSError as e:
            logger.error(f"Cannot read {sshd_config}: {e}")
            return [StepResult.failed(name, f"cannot read {sshd_config}: {e.strerror or e}")]
        updated = set_banner_directive(current, self.config.host_path(self.config.SSH_BANNER))
        if updated == current:
            result = StepResult.skipped(name, "Banner directive already set")
        else:
            result = self.renderer.write_atomic(
                sshd_config, updated, name=name, errors="surrogateescape"
            )
        return [result, self.restart()]


class FirewallConfigurator(ServiceConfigurator):
    """Append-only firewalld allow-list, committed permanently and applied with one reload."""

    name = "firewall"
    unit = "firewalld"

    def rules(self) -> List[Tuple[str, str]]:
        return [("service", s) for s in self.config.FIREWALL_SERVICES] + [
            ("port", p) for p in self.config.FIREWALL_PORTS
        ]

    def configure(self, host: HostDescriptor) -> List[StepResult]:
        zone = self.config.FIREWALL_ZONE
        results = [
            self.enable(),
            self.runner.run(
                ["firewall-cmd", f"--set-default-zone={zone}"], name=f"default zone {zone}"
            ),
        ]
        for kind, value in self.rules():
            results.append(self._allow(zone, kind, value))
        results.append(self.runner.run(["firewall-cmd", "--reload"], name="firewall reload"))
        return results

    def _allow(self, zone: str, kind: str, value: str) -> StepResult:
        name = f"allow {kind} {value}"
        base = ["firewall-cmd", "--permanent", f"--zone={zone}"]
        try:
            present = self.runner.query(base + [f"--query-{kind}={value}"]).ok
        except ExternalCommandError as e:
            return StepResult.failed(name, e.reason)
        if present:
            return StepResult.skipped(name, "rule already present")
        result = self.runner.run(base + [f"--add-{kind}={value}"], name=name)
        if result.ok:
            logger.info(f"Allowed {kind} {value}.")
        return result


class IntrusionPreventionConfigurator(ServiceConfigurator):
    name = "intrusion_prevention"
    unit = "fail2ban"

    def templates(self, host: HostDescriptor) -> List[ServiceTemplate]:
        policy = self.config.BAN_POLICY
        return [
            self.renderer.build(
                "fail2ban_jail",
                self.config.FAIL2BAN_JAIL,
                {
                    "ban_time": policy.ban_time,
                    "find_window": policy.find_window,
                    "max_retries": policy.max_retries,
                    "backend": policy.backend,
                    "jail": policy.jail,
                    "port": policy.port,
                    "log_path": policy.log_path,
                },
            )
        ]
