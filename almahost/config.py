from dataclasses import dataclass, field, asdict, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Tuple

APP_NAME: str = "AlmaHost Provisioner"
VERSION: str = "1.0.0"
OPERATION_TIMEOUT: int = 300  # default timeout for external commands in seconds

POLICY_AVOID_CONFLICT = "avoid-conflict"
POLICY_DUAL_STACK = "dual-stack"
WEBSERVER_POLICIES = (POLICY_AVOID_CONFLICT, POLICY_DUAL_STACK)


@dataclass(frozen=True)
class BanPolicy:
    """Fail2Ban jail settings. A ban_time of -1 means the ban never expires."""

    ban_time: int = -1
    find_window: int = 600
    max_retries: int = 3
    backend: str = "auto"
    jail: str = "sshd"
    port: str = "ssh"
    log_path: str = "/var/log/secure"


@dataclass
class Config:
    """Configuration for an AlmaLinux host bring-up.

    Filesystem locations, the package list, the firewall allow-list and the
    renewal job are all declared here so a run is fully described by a
    Config plus the HostDescriptor.
    """

    ROOT: Path = field(default_factory=lambda: Path("/"))
    LOG_FILE: Path = field(default_factory=lambda: Path("/var/log/almahost.log"))
    OPERATION_TIMEOUT: int = OPERATION_TIMEOUT
    RETRY_DELAY: float = 5.0
    CERTBOT_RETRIES: int = 1
    WEBSERVER_POLICY: str = POLICY_AVOID_CONFLICT

    PACKAGES: List[str] = field(
        default_factory=lambda: [
            # Web servers and certificates
            "certbot",
            "nginx",
            "httpd",
            "mod_ssl",
            # Security
            "fail2ban",
            "policycoreutils-python-utils",
            # VPN and GeoIP
            "openvpn",
            "geoip",
            "geoip-update",
            # Utilities
            "wget",
            "cronie",
            "tar",
            "nano",
        ]
    )

    # Configuration targets
    NGINX_CONF_DIR: Path = field(default_factory=lambda: Path("/etc/nginx/conf.d"))
    HTTPD_CONF_DIR: Path = field(default_factory=lambda: Path("/etc/httpd/conf.d"))
    HTTPD_LOG_DIR: Path = field(default_factory=lambda: Path("/var/log/httpd"))
    DOCUMENT_ROOT: Path = field(default_factory=lambda: Path("/var/www/html"))
    OPENVPN_CONF_DIR: Path = field(
        default_factory=lambda: Path("/etc/openvpn/server")
    )
    EASYRSA_PKI_DIR: Path = field(
        default_factory=lambda: Path("/etc/openvpn/easy-rsa/pki")
    )
    SSH_BANNER: Path = field(default_factory=lambda: Path("/etc/ssh/banner.txt"))
    SSHD_CONFIG: Path = field(default_factory=lambda: Path("/etc/ssh/sshd_config"))
    FAIL2BAN_JAIL: Path = field(
        default_factory=lambda: Path("/etc/fail2ban/jail.local")
    )
    LETSENCRYPT_DIR: Path = field(default_factory=lambda: Path("/etc/letsencrypt"))
    GEOIP_DATABASE: Path = field(
        default_factory=lambda: Path("/usr/share/GeoIP/GeoIP.dat")
    )
    HOME_ROOT: Path = field(default_factory=lambda: Path("/home"))

    # Reverse proxy backend and snakeoil pair for the default TLS site
    PROXY_BACKEND: str = "http://localhost:8080"
    SNAKEOIL_CERT: str = "/etc/ssl/certs/ssl-cert-snakeoil.pem"
    SNAKEOIL_KEY: str = "/etc/ssl/private/ssl-cert-snakeoil.key"

    # Certificates
    CERTBOT_INTEGRATIONS: List[str] = field(default_factory=lambda: ["nginx", "apache"])
    BACKUP_DIR_NAME: str = "ssl_backups"

    # VPN
    VPN_PORT: int = 1194
    VPN_SUBNET: Tuple[str, str] = ("10.8.0.0", "255.255.255.0")
    VPN_DNS: List[str] = field(default_factory=lambda: ["8.8.8.8", "8.8.4.4"])
    VPN_CIPHER: str = "AES-256-CBC"

    # Firewall allow-list; rules are only ever added
    FIREWALL_ZONE: str = "public"
    FIREWALL_SERVICES: List[str] = field(
        default_factory=lambda: ["ssh", "http", "https", "ntp"]
    )
    FIREWALL_PORTS: List[str] = field(
        default_factory=lambda: [
            "8080/tcp",  # reverse proxy backend
            "1194/udp",  # OpenVPN
            "5060-5061/udp",  # SIP
            "3389/tcp",  # RDP
            "5900-5901/tcp",  # VNC
        ]
    )

    BAN_POLICY: BanPolicy = field(default_factory=BanPolicy)

    RENEWAL_CRON: str = (
        "0 0 * * * certbot renew --quiet && systemctl reload nginx && systemctl reload httpd"
    )

    def __post_init__(self) -> None:
        if self.WEBSERVER_POLICY not in WEBSERVER_POLICIES:
            raise ValueError(
                f"Unknown web server policy {self.WEBSERVER_POLICY!r}; "
                f"expected one of {', '.join(WEBSERVER_POLICIES)}"
            )

    def under(self, root: Path) -> "Config":
        """Return a copy with every filesystem location moved below root."""
        root = Path(root)
        changes: Dict[str, Any] = {"ROOT": root}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name != "ROOT" and isinstance(value, Path) and value.is_absolute():
                changes[f.name] = root / self.host_path(value).relative_to("/")
        return replace(self, **changes)

    def host_path(self, path: Path) -> Path:
        """Where path lives as seen from the provisioned host itself."""
        try:
            return Path("/") / Path(path).relative_to(self.ROOT)
        except ValueError:
            return Path(path)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
