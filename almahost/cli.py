#!/usr/bin/env python3
"""
AlmaHost Provisioner
--------------------

Unattended bring-up of an AlmaLinux web host:
  • System update, EPEL and required packages
  • Nginx reverse proxy and Apache virtual host for the domain
  • Let's Encrypt certificates (nginx + apache) with a backup copy
  • GeoIP database refresh
  • OpenVPN server configuration
  • SSH login banner
  • firewalld allow-list
  • Fail2Ban with permanent bans for SSH
  • Daily certificate renewal via cron

Run with root privileges.
"""

import os
import signal
import sys
import time
from pathlib import Path
from typing import Optional

import click
from rich.prompt import Prompt
from rich.traceback import install as install_rich_traceback

from almahost.config import OPERATION_TIMEOUT, VERSION, WEBSERVER_POLICIES, Config
from almahost.log import setup_logger
from almahost.models import HostDescriptor, PreconditionError
from almahost.orchestrator import Orchestrator, build_plan
from almahost.runner import CommandRunner
from almahost.templates import TemplateRenderer
from almahost.ui import console, create_header, print_error, print_success, print_warning

install_rich_traceback(show_locals=False)


def signal_handler(signum: int, frame) -> None:
    sig = signal.Signals(signum).name
    print_warning(f"Provisioning interrupted by {sig}.")
    sys.exit(130 if signum == signal.SIGINT else 143 if signum == signal.SIGTERM else 128 + signum)


def check_root() -> None:
    if os.geteuid() != 0:
        raise PreconditionError("Please run this script as root.")


def read_host(ip: Optional[str], domain: Optional[str], non_interactive: bool) -> HostDescriptor:
    if not non_interactive:
        if not ip:
            ip = Prompt.ask("Enter the public IP address of the server", console=console)
        if not domain:
            domain = Prompt.ask(
                "Enter the domain or subdomain to be used (e.g., example.com)", console=console
            )
    return HostDescriptor(ip or "", domain or "").validate()


@click.command()
@click.option("--ip", "public_ip", help="Public IP address of the server")
@click.option("--domain", help="Domain or subdomain to provision (e.g., example.com)")
@click.option("--non-interactive", is_flag=True, help="Fail instead of prompting for missing values")
@click.option(
    "--policy",
    type=click.Choice(WEBSERVER_POLICIES),
    default=WEBSERVER_POLICIES[0],
    show_default=True,
    help="What to do when nginx or httpd is already active",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Config().LOG_FILE,
    show_default=True,
)
@click.option(
    "--timeout",
    type=click.IntRange(min=1),
    default=OPERATION_TIMEOUT,
    show_default=True,
    help="Per-command timeout in seconds",
)
@click.option("--debug", is_flag=True, help="Enable debug logging on the console")
@click.version_option(VERSION)
def main(
    public_ip: Optional[str],
    domain: Optional[str],
    non_interactive: bool,
    policy: str,
    log_file: Path,
    timeout: int,
    debug: bool,
) -> None:
    """Provision an AlmaLinux host: web servers, certificates, VPN, firewall and Fail2Ban."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    console.print(create_header())
    try:
        check_root()
        host = read_host(public_ip, domain, non_interactive)
    except PreconditionError as e:
        print_error(str(e))
        sys.exit(1)

    config = Config(
        LOG_FILE=log_file,
        OPERATION_TIMEOUT=timeout,
        WEBSERVER_POLICY=policy,
    )
    logger = setup_logger(config.LOG_FILE, debug=debug)
    logger.debug(f"Configuration: {config.to_dict()}")
    logger.info(f"Provisioning {host.domain} ({host.public_ip}) with policy {policy}")

    runner = CommandRunner(timeout=config.OPERATION_TIMEOUT, retry_delay=config.RETRY_DELAY)
    plan = build_plan(host, config, runner, TemplateRenderer())
    report = Orchestrator().execute(plan)
    report.print()

    hours, remainder = divmod(report.elapsed, 3600)
    minutes, seconds = divmod(remainder, 60)
    elapsed = f"{int(hours)}h {int(minutes)}m {int(seconds)}s"
    if report.failed:
        print_warning(
            f"Provisioning of {host.domain} finished in {elapsed} with "
            f"{len(report.failed)} failed action(s). See {config.LOG_FILE} for details."
        )
    else:
        print_success(
            f"Let's Encrypt and server configurations have been set up for {host.domain} "
            f"with firewall rules, GeoIP and Fail2Ban configured in {elapsed}!"
        )
    logger.info(f"Finished at {time.strftime('%Y-%m-%d %H:%M:%S')}")


if __name__ == "__main__":
    main()
