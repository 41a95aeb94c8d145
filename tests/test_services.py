import tempfile
import unittest
from pathlib import Path

from almahost.config import POLICY_DUAL_STACK, Config
from almahost.models import HostDescriptor, StepStatus
from almahost.services import (
    DefaultSiteConfigurator,
    FirewallConfigurator,
    IntrusionPreventionConfigurator,
    ReverseProxyConfigurator,
    SshBannerConfigurator,
    VpnConfigurator,
    WebServerConfigurator,
    WebserverProbe,
    set_banner_directive,
)
from almahost.templates import TemplateRenderer
from tests._fake_host import FakeHost

HOST = HostDescriptor("203.0.113.5", "example.org")


class _ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.config = Config().under(self.root)
        self.host = FakeHost()
        self.renderer = TemplateRenderer()
        self.probe = WebserverProbe(self.host)

    def tearDown(self):
        self._tmp.cleanup()

    def make(self, cls, config=None):
        config = config or self.config
        return cls(config, self.host, self.renderer, self.probe)


class TestWebConfigurators(_ServiceTestCase):

    def test_fresh_host_gets_proxy_and_vhost(self):
        proxy = self.make(ReverseProxyConfigurator).configure(HOST)
        vhost = self.make(WebServerConfigurator).configure(HOST)
        self.assertTrue(all(r.ok for r in proxy + vhost))
        nginx = (self.root / "etc/nginx/conf.d/example.org.conf").read_text()
        self.assertIn("server_name example.org;", nginx)
        self.assertIn("proxy_pass http://localhost:8080;", nginx)
        self.assertIn(["systemctl", "restart", "nginx"], self.host.calls)
        self.assertIn(["systemctl", "enable", "--now", "httpd"], self.host.calls)

    def test_active_webserver_skips_config_writes(self):
        self.host.active.add("httpd")
        existing = self.root / "etc/nginx/conf.d/example.org.conf"
        existing.parent.mkdir(parents=True)
        existing.write_text("# operator config\n")
        for cls in (DefaultSiteConfigurator, ReverseProxyConfigurator, WebServerConfigurator):
            with self.subTest(configurator=cls.__name__):
                results = self.make(cls).configure(HOST)
                self.assertTrue(results)
                self.assertTrue(all(r.status is StepStatus.SKIPPED for r in results))
        self.assertEqual(existing.read_text(), "# operator config\n")
        self.assertFalse((self.root / "etc/httpd/conf.d/example.org.conf").exists())
        self.assertEqual(
            [c for c in self.host.commands("systemctl") if c[1] != "is-active"], [])

    def test_dual_stack_still_writes_domain_configs(self):
        self.host.active.add("nginx")
        config = Config(WEBSERVER_POLICY=POLICY_DUAL_STACK).under(self.root)
        default = self.make(DefaultSiteConfigurator, config).configure(HOST)
        proxy = self.make(ReverseProxyConfigurator, config).configure(HOST)
        self.assertIs(default[0].status, StepStatus.SKIPPED)
        self.assertIs(proxy[0].status, StepStatus.SUCCESS)
        self.assertTrue((self.root / "etc/nginx/conf.d/example.org.conf").is_file())

    def test_probe_snapshot_is_taken_once(self):
        probe = WebserverProbe(self.host)
        self.assertFalse(probe.any_active())
        self.host.active.add("nginx")
        self.assertFalse(probe.any_active())
        self.assertEqual(len(self.host.commands("systemctl")), 2)

    def test_failed_restart_is_recorded_after_write(self):
        self.host.failing_units.add("nginx")
        results = self.make(ReverseProxyConfigurator).configure(HOST)
        self.assertEqual(
            [r.status for r in results], [StepStatus.SUCCESS, StepStatus.FAILED])


class TestVpnConfigurator(_ServiceTestCase):

    def test_writes_server_config_and_enables_instance(self):
        results = self.make(VpnConfigurator).configure(HOST)
        self.assertTrue(all(r.ok for r in results))
        content = (self.root / "etc/openvpn/server/example.org.conf").read_text()
        self.assertIn("proto udp\n", content)
        self.assertIn("server 10.8.0.0 255.255.255.0\n", content)
        self.assertIn('push "redirect-gateway def1 bypass-dhcp"\n', content)
        self.assertIn(
            ["systemctl", "enable", "--now", "openvpn-server@example.org"], self.host.calls)


class TestSshBanner(_ServiceTestCase):

    def test_banner_written_and_directive_set(self):
        sshd_config = self.root / "etc/ssh/sshd_config"
        sshd_config.parent.mkdir(parents=True)
        sshd_config.write_text("Port 22\n#Banner none\nPermitRootLogin no\n")
        results = self.make(SshBannerConfigurator).configure(HOST)
        self.assertTrue(all(r.ok for r in results))
        self.assertIn("Welcome to example.org\n", (self.root / "etc/ssh/banner.txt").read_text())
        self.assertEqual(
            sshd_config.read_text(), "Port 22\nBanner /etc/ssh/banner.txt\nPermitRootLogin no\n")
        self.assertIn(["systemctl", "restart", "sshd"], self.host.calls)

    def test_second_run_leaves_sshd_config_alone(self):
        sshd_config = self.root / "etc/ssh/sshd_config"
        sshd_config.parent.mkdir(parents=True)
        sshd_config.write_text("Banner /etc/ssh/banner.txt\n")
        results = self.make(SshBannerConfigurator).configure(HOST)
        self.assertIs(results[1].status, StepStatus.SKIPPED)

    def test_missing_sshd_config_fails_that_sub_step(self):
        results = self.make(SshBannerConfigurator).configure(HOST)
        self.assertIs(results[0].status, StepStatus.SUCCESS)
        self.assertIs(results[1].status, StepStatus.FAILED)

    def test_non_utf8_sshd_config_keeps_its_bytes(self):
        sshd_config = self.root / "etc/ssh/sshd_config"
        sshd_config.parent.mkdir(parents=True)
        sshd_config.write_bytes(b"# Administr\xe9 par ops\n#Banner none\n")
        results = self.make(SshBannerConfigurator).configure(HOST)
        self.assertIs(results[1].status, StepStatus.SUCCESS)
        self.assertEqual(
            sshd_config.read_bytes(), b"# Administr\xe9 par ops\nBanner /etc/ssh/banner.txt\n")


class TestSetBannerDirective(unittest.TestCase):

    def test_appends_before_match_block(self):
        text = "Port 22\nMatch User backup\n    ForceCommand internal-sftp\n"
        self.assertEqual(
            set_banner_directive(text, Path("/etc/ssh/banner.txt")),
            "Port 22\nBanner /etc/ssh/banner.txt\nMatch User backup\n    ForceCommand internal-sftp\n")

    def test_keeps_exactly_one_active_directive(self):
        text = "Banner /etc/issue\nPort 22\nBanner /etc/motd\n"
        updated = set_banner_directive(text, Path("/etc/ssh/banner.txt"))
        self.assertEqual(updated, "Banner /etc/ssh/banner.txt\nPort 22\n")

    def test_appends_when_absent(self):
        self.assertEqual(
            set_banner_directive("Port 22\n", Path("/etc/ssh/banner.txt")),
            "Port 22\nBanner /etc/ssh/banner.txt\n")

    def test_prose_comment_mentioning_banner_is_kept(self):
        text = "# Banner text shown before auth\nPort 22\n"
        self.assertEqual(
            set_banner_directive(text, Path("/etc/ssh/banner.txt")),
            "# Banner text shown before auth\nPort 22\nBanner /etc/ssh/banner.txt\n")

    def test_banner_inside_match_block_is_left_alone(self):
        text = "Port 22\nMatch User guest\n    Banner /etc/guest_banner\n"
        self.assertEqual(
            set_banner_directive(text, Path("/etc/ssh/banner.txt")),
            "Port 22\nBanner /etc/ssh/banner.txt\nMatch User guest\n    Banner /etc/guest_banner\n")


class TestFirewallConfigurator(_ServiceTestCase):

    def test_declares_allow_list_and_reloads_once(self):
        results = self.make(FirewallConfigurator).configure(HOST)
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(self.host.default_zone, "public")
        self.assertEqual(self.host.firewall_rules, {
            ("service", "ssh"), ("service", "http"), ("service", "https"), ("service", "ntp"),
            ("port", "8080/tcp"), ("port", "1194/udp"), ("port", "5060-5061/udp"),
            ("port", "3389/tcp"), ("port", "5900-5901/tcp"),
            })
        self.assertEqual(self.host.firewall_reloads, 1)
        self.assertEqual(self.host.calls[-1], ["firewall-cmd", "--reload"])
        adds = [c for c in self.host.commands("firewall-cmd") if c[-1].startswith("--add-")]
        self.assertTrue(all("--permanent" in c for c in adds))

    def test_existing_rules_are_kept_and_not_re_added(self):
        self.host.firewall_rules.update({("port", "1194/udp"), ("service", "cockpit")})
        results = self.make(FirewallConfigurator).configure(HOST)
        vpn_rule = [r for r in results if r.step_name == "allow port 1194/udp"]
        self.assertIs(vpn_rule[0].status, StepStatus.SKIPPED)
        self.assertIn(("service", "cockpit"), self.host.firewall_rules)
        adds = [c[-1] for c in self.host.commands("firewall-cmd") if c[-1].startswith("--add-")]
        self.assertNotIn("--add-port=1194/udp", adds)
        self.assertEqual(len(adds), 8)
        self.assertFalse(any("--remove" in part for c in self.host.calls for part in c))


class TestIntrusionPrevention(_ServiceTestCase):

    def test_permanent_ban_for_sshd(self):
        jail = self.root / "etc/fail2ban/jail.local"
        jail.parent.mkdir(parents=True)
        jail.write_text("[DEFAULT]\nbantime = 600\n[recidive]\nenabled = true\n")
        results = self.make(IntrusionPreventionConfigurator).configure(HOST)
        self.assertTrue(all(r.ok for r in results))
        content = jail.read_text()
        self.assertIn("bantime = -1\n", content)
        self.assertIn("findtime = 600\n", content)
        self.assertIn("maxretry = 3\n", content)
        self.assertIn("[sshd]\nenabled = true\n", content)
        self.assertNotIn("recidive", content)
        self.assertIn(["systemctl", "enable", "--now", "fail2ban"], self.host.calls)
        self.assertIn(["systemctl", "restart", "fail2ban"], self.host.calls)
