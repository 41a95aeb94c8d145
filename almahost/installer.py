import logging
from typing import List

from almahost.models import ExternalCommandError, PackageSpec, StepResult
from almahost.runner import CommandRunner

logger = logging.getLogger(__name__)


class IdempotentInstaller:
    """Installs only the packages rpm does not already know about. Never removes anything."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def refresh_repositories(self) -> List[StepResult]:
        logger.info("Updating system packages and enabling EPEL...")
        return [
            self.runner.run(["dnf", "update", "-y"], name="dnf update"),
            self.runner.run(["dnf", "install", "-y", "epel-release"], name="install epel-release"),
        ]

    def is_installed(self, package: str) -> bool:
        return self.runner.query(["rpm", "-q", package]).ok

    def ensure_installed(self, packages: PackageSpec) -> List[StepResult]:
        logger.info("Checking for required packages...")
        results: List[StepResult] = []
        for pkg in packages:
            name = f"package {pkg}"
            try:
                present = self.is_installed(pkg)
            except ExternalCommandError as e:
                logger.error(f"Could not query {pkg}: {e.reason}")
                results.append(StepResult.failed(name, f"rpm query failed: {e.reason}"))
                continue
            if present:
                logger.info(f"{pkg} is already installed.")
                results.append(StepResult.skipped(name, "already installed"))
                continue
            logger.info(f"Installing missing dependency: {pkg}")
            result = self.runner.run(["dnf", "install", "-y", pkg], name=name)
            if result.ok:
                result = StepResult.success(name, "installed")
            results.append(result)
        failed = [r.step_name for r in results if not r.ok]
        if failed:
            logger.warning(f"Failed to install: {', '.join(failed)}")
        return results
