import logging
import os
import pwd
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from almahost.config import Config
from almahost.models import ExternalCommandError, StepResult
from almahost.runner import CommandRunner

logger = logging.getLogger(__name__)


class CertificateProvisioner:
    """
    Requests Let's Encrypt certificates through certbot's server plugins and
    keeps a copy of the certificate store in the operator's home directory.

    Whether a certificate is still valid is certbot's business; a repeated
    request is a renewal-or-noop on its side.
    """

    def __init__(self, config: Config, runner: CommandRunner) -> None:
        self.config = config
        self.runner = runner

    def certbot_command(self, domain: str, integration: str) -> List[str]:
        return [
            "certbot",
            f"--{integration}",
            "-d",
            domain,
            "--non-interactive",
            "--agree-tos",
            "-m",
            f"admin@{domain}",
        ]

    def provision(
        self, domain: str, integrations: Optional[Sequence[str]] = None
    ) -> List[StepResult]:
        if integrations is None:
            integrations = self.config.CERTBOT_INTEGRATIONS
        results = []
        for integration in integrations:
            logger.info(f"Requesting certificate for {domain} via certbot --{integration}...")
            results.append(
                self.runner.run(
                    self.certbot_command(domain, integration),
                    name=f"certificate {domain} ({integration})",
                    retry=self.config.CERTBOT_RETRIES,
                )
            )
        results.append(self.backup())
        return results

    def resolve_operator(self) -> Optional[Tuple[str, int, int, Path]]:
        """The non-root user behind this session: (name, uid, gid, home)."""
        candidates = []
        try:
            outcome = self.runner.query(["logname"])
            if outcome.ok and outcome.output.strip():
                candidates.append(outcome.output.strip())
        except ExternalCommandError as e:
            logger.debug(f"logname unavailable: {e.reason}")
        sudo_user = os.environ.get("SUDO_USER")
        if sudo_user:
            candidates.append(sudo_user)
        for username in candidates:
            if username == "root":
                continue
            try:
                entry = pwd.getpwnam(username)
            except KeyError:
                logger.warning(f"User '{username}' not found.")
                continue
            home = self.config.HOME_ROOT / username
            return username, entry.pw_uid, entry.pw_gid, home
        return None

    def backup(self) -> StepResult:
        name = "backup certificates"
        store = self.config.LETSENCRYPT_DIR
        if not store.is_dir():
            return StepResult.failed(name, f"certificate store {store} not found")
        operator = self.resolve_operator()
        if operator is None:
            logger.warning("No non-root login user found; skipping certificate backup.")
            return StepResult.skipped(name, "no non-root operator to own the backup")
        username, uid, gid, home = operator
        backup_dir = home / self.config.BACKUP_DIR_NAME
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            _replace_tree(store, backup_dir / store.name)
        except (OSError, shutil.Error) as e:
            logger.error(f"Failed to back up {store}: {e}")
            return StepResult.failed(name, str(e))
        failures = _recursive_chown(backup_dir, uid, gid)
        if failures:
            return StepResult.failed(
                name, f"copied to {backup_dir}, but could not chown {len(failures)} path(s)"
            )
        logger.info(f"Certificates saved to {backup_dir} (owner {username}).")
        return StepResult.success(name, f"copied {store} to {backup_dir}")


def _replace_tree(source: Path, target: Path) -> None:
    """Copy source next to target, then swap it in; links inside the store are kept as links."""
    staging = Path(tempfile.mkdtemp(dir=str(target.parent), prefix=f".{target.name}."))
    try:
        shutil.copytree(source, staging / target.name, symlinks=True)
        if target.exists() or target.is_symlink():
            logger.debug(f"Replacing previous backup {target}")
            shutil.rmtree(target)
        os.replace(staging / target.name, target)
    finally:
        shutil.rmtree(staging, ignore_errors=True)


def _recursive_chown(path: Path, uid: int, gid: int) -> List[Path]:
    """Chown path and everything below it without following symlinks; returns paths that failed."""
    failed = []
    try:
        os.chown(path, uid, gid, follow_symlinks=False)
    except OSError as e:
        logger.warning(f"Could not chown {path}: {e}")
        failed.append(path)
    if path.is_dir() and not path.is_symlink():
        for item in path.iterdir():
            failed.extend(_recursive_chown(item, uid, gid))
    return failed
