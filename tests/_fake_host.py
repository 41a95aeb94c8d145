from typing import Dict, List, Optional, Set, Tuple

from almahost.models import ExternalCommandError
from almahost.runner import CommandOutcome, CommandRunner


class FakeHost(CommandRunner):
    """CommandRunner that answers the collaborator CLIs from in-memory host state."""

    def __init__(self, installed=(), active=()) -> None:
        super().__init__(timeout=5, retry_delay=0)
        self.installed: Set[str] = set(installed)
        self.active: Set[str] = set(active)
        self.broken_packages: Set[str] = set()
        self.failing_units: Set[str] = set()
        self.failing_certbot: Set[str] = set()
        self.firewall_rules: Set[Tuple[str, str]] = set()
        self.firewall_reloads = 0
        self.default_zone: Optional[str] = None
        self.crontab: Optional[str] = None
        self.login_user: Optional[str] = None
        self.calls: List[List[str]] = []
        self.inputs: Dict[int, str] = {}

    def commands(self, program: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == program]

    def _execute(self, cmd, input, timeout) -> CommandOutcome:
        self.calls.append(list(cmd))
        if input is not None:
            self.inputs[len(self.calls) - 1] = input
        handler = getattr(self, "_" + cmd[0].replace("-", "_"), None)
        if handler is None:
            raise ExternalCommandError(cmd, "command not found")
        returncode, output = handler(cmd[1:], input)
        return CommandOutcome(list(cmd), returncode, output)

    def _rpm(self, args, input):
        package = args[-1]
        if package in self.installed:
            return 0, f"{package}-1.0-1.el9.x86_64\n"
        return 1, f"package {package} is not installed\n"

    def _dnf(self, args, input):
        if args[0] == "install":
            packages = [a for a in args[1:] if not a.startswith("-")]
            if any(p in self.broken_packages for p in packages):
                return 1, "Error: Unable to find a match\n"
            self.installed.update(packages)
            return 0, "Complete!\n"
        return 0, "Nothing to do.\n"

    def _systemctl(self, args, input):
        action, unit = args[0], args[-1]
        if action == "is-active":
            return (0 if unit in self.active else 3), ""
        if unit in self.failing_units:
            return 1, f"Job for {unit}.service failed.\n"
        if action in ("enable", "restart", "start"):
            self.active.add(unit)
        return 0, ""

    def _firewall_cmd(self, args, input):
        if args == ["--reload"]:
            self.firewall_reloads += 1
            return 0, "success\n"
        option = args[-1]
        if option.startswith("--set-default-zone="):
            self.default_zone = option.split("=", 1)[1]
            return 0, "success\n"
        verb_kind, value = option[2:].split("=", 1)
        verb, kind = verb_kind.split("-", 1)
        if verb == "query":
            return (0 if (kind, value) in self.firewall_rules else 1), ""
        self.firewall_rules.add((kind, value))
        return 0, "success\n"

    def _certbot(self, args, input):
        integration = args[0][2:]
        if integration in self.failing_certbot:
            return 1, f"Could not automatically find a matching server block ({integration})\n"
        return 0, "Successfully deployed certificate\n"

    def _geoipupdate(self, args, input):
        return 0, ""

    def _crontab(self, args, input):
        if args == ["-l"]:
            if self.crontab is None:
                return 1, "no crontab for root\n"
            return 0, self.crontab
        self.crontab = input
        return 0, ""

    def _logname(self, args, input):
        if self.login_user is None:
            return 1, "logname: no login name\n"
        return 0, self.login_user + "\n"
