"""
Thin wrapper around subprocess for the external collaborators
(dnf, rpm, systemctl, firewall-cmd, certbot, crontab, ...).

``run`` never raises for a failing command: it turns the exit status into a
StepResult the caller can inspect or hand straight to the report. ``query``
is for probes whose exit code carries meaning (``rpm -q``,
``systemctl is-active``) and returns the raw outcome.
"""

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from almahost.config import OPERATION_TIMEOUT
from almahost.models import ExternalCommandError, StepResult

logger = logging.getLogger(__name__)

MAX_DETAIL_CHARS = 2000


@dataclass(frozen=True)
class CommandOutcome:
    args: List[str]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandTimeout(ExternalCommandError):
    def __init__(self, command: Sequence[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(command, f"timed out after {timeout:g} seconds")


class CommandRunner:
    def __init__(
        self,
        timeout: Optional[float] = OPERATION_TIMEOUT,
        retry_delay: float = 5.0,
    ) -> None:
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _execute(
        self, cmd: List[str], input: Optional[str], timeout: Optional[float]
    ) -> CommandOutcome:
        """Spawn the process; raises ExternalCommandError when it cannot run to completion."""
        try:
            proc = subprocess.run(
                cmd,
                input=input,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise CommandTimeout(cmd, timeout)
        except FileNotFoundError:
            raise ExternalCommandError(cmd, "command not found")
        except OSError as e:
            raise ExternalCommandError(cmd, str(e))
        return CommandOutcome(cmd, proc.returncode, proc.stdout or "")

    def query(
        self,
        cmd: Sequence[str],
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        cmd = [str(part) for part in cmd]
        logger.debug(f"Running command: {' '.join(cmd)}")
        outcome = self._execute(cmd, input, timeout if timeout is not None else self.timeout)
        logger.debug(f"Command exited with {outcome.returncode}: {' '.join(cmd)}")
        return outcome

    def run(
        self,
        cmd: Sequence[str],
        name: Optional[str] = None,
        retry: int = 0,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> StepResult:
        """Run cmd and report it as a StepResult; retried up to ``retry`` extra times."""
        name = name or " ".join(str(part) for part in cmd)
        attempts = max(retry, 0) + 1
        detail = ""
        for attempt in range(1, attempts + 1):
            try:
                outcome = self.query(cmd, input=input, timeout=timeout)
            except ExternalCommandError as e:
                detail = e.reason
            else:
                if outcome.ok:
                    return StepResult.success(name, _tail(outcome.output))
                detail = f"exit status {outcome.returncode}"
                if outcome.output.strip():
                    detail += f": {_tail(outcome.output)}"
            if attempt < attempts:
                logger.warning(
                    f"{name} failed ({detail}); retrying in {self.retry_delay:g}s "
                    f"[{attempt}/{attempts - 1}]"
                )
                time.sleep(self.retry_delay)
        logger.error(f"✗ {name}: {detail}")
        return StepResult.failed(name, detail)


def _tail(output: str) -> str:
    output = output.strip()
    if len(output) > MAX_DETAIL_CHARS:
        return "..." + output[-MAX_DETAIL_CHARS:]
    return output
