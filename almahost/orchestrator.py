"""
Ordered, fail-open execution of the provisioning plan.

A plan is an immutable tuple of named steps built once from the host
descriptor. The orchestrator runs them strictly one after another; a failed
step is recorded and the next one still runs, so the final report shows
exactly which parts of the bring-up worked.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from rich.table import Table

from almahost.certificates import CertificateProvisioner
from almahost.config import Config
from almahost.installer import IdempotentInstaller
from almahost.maintenance import GeoIpUpdater, RenewalScheduler
from almahost.models import HostDescriptor, PackageSpec, StepResult, StepStatus
from almahost.runner import CommandRunner
from almahost.services import (
    DefaultSiteConfigurator,
    FirewallConfigurator,
    IntrusionPreventionConfigurator,
    ReverseProxyConfigurator,
    SshBannerConfigurator,
    VpnConfigurator,
    WebServerConfigurator,
    WebserverProbe,
)
from almahost.templates import TemplateRenderer
from almahost.ui import console, report_panel, status_markup

logger = logging.getLogger(__name__)

Action = Callable[[], Union[StepResult, Sequence[StepResult]]]


class StepState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Step:
    name: str
    description: str
    action: Action = field(repr=False, compare=False)


@dataclass(frozen=True)
class ProvisioningPlan:
    host: HostDescriptor
    steps: Tuple[Step, ...]

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def step_names(self) -> List[str]:
        return [s.name for s in self.steps]


def build_plan(
    host: HostDescriptor,
    config: Config,
    runner: CommandRunner,
    renderer: Optional[TemplateRenderer] = None,
) -> ProvisioningPlan:
    renderer = renderer or TemplateRenderer()
    probe = WebserverProbe(runner)
    installer = IdempotentInstaller(runner)
    certificates = CertificateProvisioner(config, runner)
    geoip = GeoIpUpdater(config, runner)
    renewal = RenewalScheduler(config, runner)
    packages = PackageSpec.of(config.PACKAGES)

    def configurator(cls):
        return cls(config, runner, renderer, probe)

    default_site = configurator(DefaultSiteConfigurator)
    reverse_proxy = configurator(ReverseProxyConfigurator)
    web_server = configurator(WebServerConfigurator)
    vpn = configurator(VpnConfigurator)
    ssh_banner = configurator(SshBannerConfigurator)
    firewall = configurator(FirewallConfigurator)
    fail2ban = configurator(IntrusionPreventionConfigurator)

    steps = (
        Step("system_update", "Updating system and enabling EPEL", installer.refresh_repositories),
        Step("packages", "Installing required packages", lambda: installer.ensure_installed(packages)),
        Step("default_site", "Configuring default Nginx TLS site", lambda: default_site.configure(host)),
        Step("reverse_proxy", f"Configuring Nginx for {host.domain}", lambda: reverse_proxy.configure(host)),
        Step("web_server", f"Configuring Apache for {host.domain}", lambda: web_server.configure(host)),
        Step("certificates", "Obtaining SSL certificates", lambda: certificates.provision(host.domain)),
        Step("geoip", "Updating GeoIP database", geoip.update),
        Step("vpn", "Creating OpenVPN server configuration", lambda: vpn.configure(host)),
        Step("ssh_banner", "Creating SSH login banner", lambda: ssh_banner.configure(host)),
        Step("firewall", "Configuring firewalld", lambda: firewall.configure(host)),
        Step("intrusion_prevention", "Configuring Fail2Ban", lambda: fail2ban.configure(host)),
        Step("renewal_schedule", "Scheduling certificate renewal", renewal.register),
    )
    return ProvisioningPlan(host, steps)


@dataclass
class StepRecord:
    name: str
    description: str
    state: StepState = StepState.PENDING
    results: List[StepResult] = field(default_factory=list)
    elapsed: float = 0.0


def summarize(results: Sequence[StepResult]) -> StepState:
    if any(r.status is StepStatus.FAILED for r in results):
        return StepState.FAILED
    if results and all(r.status is StepStatus.SKIPPED for r in results):
        return StepState.SKIPPED
    return StepState.SUCCEEDED


@dataclass
class ProvisioningReport:
    host: HostDescriptor
    records: List[StepRecord] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def results(self) -> List[StepResult]:
        """Every StepResult in execution order."""
        return [r for record in self.records for r in record.results]

    @property
    def states(self) -> Dict[str, StepState]:
        return {record.name: record.state for record in self.records}

    @property
    def failed(self) -> List[StepResult]:
        return [r for r in self.results if r.status is StepStatus.FAILED]

    def table(self) -> Table:
        table = Table(title=f"Provisioning {self.host.domain} ({self.host.public_ip})", style="banner")
        table.add_column("Step", style="header")
        table.add_column("Action", style="info")
        table.add_column("Status")
        table.add_column("Detail", overflow="fold")
        for record in self.records:
            table.add_row(
                record.name.replace("_", " ").title(),
                f"[dim]{record.elapsed:.1f}s[/dim]",
                status_markup(record.state.value),
                "",
            )
            for result in record.results:
                table.add_row(
                    "",
                    result.step_name,
                    status_markup(result.status.value),
                    result.detail.splitlines()[-1] if result.detail else "",
                )
        return table

    def print(self) -> None:
        console.print(report_panel(self.table(), title="Provisioning Report"))


class Orchestrator:
    def __init__(self) -> None:
        self.records: Dict[str, StepRecord] = {}

    def execute(self, plan: ProvisioningPlan) -> ProvisioningReport:
        report = ProvisioningReport(plan.host)
        self.records = {}
        for step in plan:
            record = StepRecord(step.name, step.description)
            self.records[step.name] = record
            report.records.append(record)
        start = time.time()
        for step in plan:
            self._run_step(step, self.records[step.name])
        report.elapsed = time.time() - start
        return report

    def _run_step(self, step: Step, record: StepRecord) -> None:
        record.state = StepState.RUNNING
        logger.info(f"--- {step.description} ---")
        start = time.time()
        try:
            outcome = step.action()
        except Exception as e:
            logger.exception(f"✗ {step.description} raised")
            outcome = [StepResult.failed(step.name, f"{type(e).__name__}: {e}")]
        if isinstance(outcome, StepResult):
            outcome = [outcome]
        record.results = list(outcome)
        record.state = summarize(record.results)
        record.elapsed = time.time() - start
        if record.state is StepState.FAILED:
            logger.error(f"✗ {step.description} failed in {record.elapsed:.2f}s")
        else:
            logger.info(
                f"✓ {step.description} {record.state.value} in {record.elapsed:.2f}s"
            )
