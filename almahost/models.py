"""
Core data types shared by every provisioning component.

Each provisioning action reports a StepResult instead of raising, so the
orchestrator can keep going after a failure and print a complete report.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Tuple


# ----------------------------------------------------------------
# Errors
# ----------------------------------------------------------------
class ProvisionError(Exception):
    """Base class for every error raised by almahost."""


class PreconditionError(ProvisionError):
    """The run cannot start: missing privileges or invalid input."""


class ExternalCommandError(ProvisionError):
    """An external collaborator could not be run or exited non-zero."""

    def __init__(self, command: Iterable[str], reason: str) -> None:
        self.command = list(command)
        self.reason = reason
        super().__init__(f"{' '.join(self.command)}: {reason}")


class WriteError(ProvisionError):
    """A configuration file could not be written."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"cannot write {self.path}: {reason}")


class TemplateError(ProvisionError):
    """Unknown template id or missing template parameter."""


# ----------------------------------------------------------------
# Step outcomes
# ----------------------------------------------------------------
class StepStatus(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult:
    step_name: str
    status: StepStatus
    detail: str = ""

    @classmethod
    def success(cls, step_name: str, detail: str = "") -> "StepResult":
        return cls(step_name, StepStatus.SUCCESS, detail)

    @classmethod
    def skipped(cls, step_name: str, detail: str = "") -> "StepResult":
        return cls(step_name, StepStatus.SKIPPED, detail)

    @classmethod
    def failed(cls, step_name: str, detail: str = "") -> "StepResult":
        return cls(step_name, StepStatus.FAILED, detail)

    @property
    def ok(self) -> bool:
        return self.status is not StepStatus.FAILED


# ----------------------------------------------------------------
# Host input
# ----------------------------------------------------------------
_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


@dataclass(frozen=True)
class HostDescriptor:
    """The two values every configurator needs: where the host lives and what it serves."""

    public_ip: str
    domain: str

    def validate(self) -> "HostDescriptor":
        if not self.public_ip or not self.public_ip.strip():
            raise PreconditionError("A public IP address is required.")
        if not self.domain or not self.domain.strip():
            raise PreconditionError("A domain name is required.")
        try:
            ipaddress.ip_address(self.public_ip.strip())
        except ValueError:
            raise PreconditionError(f"Not a valid IP address: {self.public_ip!r}")
        domain = self.domain.strip().rstrip(".")
        if len(domain) > 253 or not all(
            _HOSTNAME_LABEL.match(label) for label in domain.split(".")
        ):
            raise PreconditionError(f"Not a valid domain name: {self.domain!r}")
        return HostDescriptor(self.public_ip.strip(), domain.lower())


@dataclass(frozen=True)
class PackageSpec:
    """
    Packages that must be present on the host.

    Duplicates collapse to their first occurrence; order only affects the
    order of the report.
    """

    names: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        unique = tuple(dict.fromkeys(n.strip() for n in self.names if n.strip()))
        object.__setattr__(self, "names", unique)

    @classmethod
    def of(cls, names: Iterable[str]) -> "PackageSpec":
        return cls(tuple(names))

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)

    def __contains__(self, name: object) -> bool:
        return name in self.names


@dataclass(frozen=True)
class ServiceTemplate:
    name: str
    target_path: Path
    rendered_content: str = field(repr=False)
