import logging

from almahost.config import Config
from almahost.models import ExternalCommandError, StepResult
from almahost.runner import CommandRunner

logger = logging.getLogger(__name__)


class GeoIpUpdater:
    def __init__(self, config: Config, runner: CommandRunner) -> None:
        self.config = config
        self.runner = runner

    def update(self) -> StepResult:
        logger.info("Updating GeoIP database...")
        result = self.runner.run(["geoipupdate"], name="geoipupdate")
        if not result.ok:
            return result
        if self.config.GEOIP_DATABASE.is_file():
            logger.info("GeoIP database updated successfully.")
            return StepResult.success("geoipupdate", f"{self.config.GEOIP_DATABASE} present")
        logger.error("Failed to update GeoIP database.")
        return StepResult.failed(
            "geoipupdate", f"{self.config.GEOIP_DATABASE} missing after update"
        )


class RenewalScheduler:
    """Adds the daily certbot renewal line to root's crontab unless it is already there."""

    def __init__(self, config: Config, runner: CommandRunner) -> None:
        self.config = config
        self.runner = runner

    def register(self) -> StepResult:
        name = "certificate renewal cron"
        line = self.config.RENEWAL_CRON
        try:
            current = self.runner.query(["crontab", "-l"])
        except ExternalCommandError as e:
            return StepResult.failed(name, e.reason)
        # crontab -l exits non-zero when root has no crontab yet
        existing = current.output.splitlines() if current.ok else []
        if any(entry.strip() == line for entry in existing):
            logger.info("Certificate renewal is already scheduled.")
            return StepResult.skipped(name, "renewal job already present")
        table = "\n".join(existing + [line]) + "\n"
        logger.info("Setting up automatic certificate renewal...")
        result = self.runner.run(["crontab", "-"], name=name, input=table)
        if result.ok:
            return StepResult.success(name, line)
        return result
