"""
systemd service control with an optional config test before restart.

A service whose configuration can be checked offline (sshd via ``sshd -t``)
implements ``Validatable``. ``restart_service`` runs that check first and
withholds the restart when it fails, leaving the running daemon on its
last-known-good configuration.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from . import system
from .errors import (
    CommandFailedError,
    CommandTimeoutError,
    ServiceRestartFailedError,
    ValidationFailedError,
)
from .logs import logger


@runtime_checkable
class Validatable(Protocol):
    def test_config(self) -> None:
        """Raise ValidationFailedError if the on-disk configuration is invalid."""
        ...


@dataclass
class ManagedService:
    """A systemd unit hostguard may restart after changing its config."""

    name: str
    unit: Optional[str] = None
    settle: float = 2.0

    @property
    def unit_name(self) -> str:
        return self.unit or self.name

    def systemctl(self, action: str, check: bool = True):
        return system.run_command(["systemctl", action, self.unit_name], check=check)

    def is_active(self) -> bool:
        result = system.run_command(["systemctl", "is-active", self.unit_name], check=False)
        return result.returncode == 0 and result.stdout.strip() == "active"

    def status_text(self) -> str:
        result = system.run_command(
            ["systemctl", "status", self.unit_name, "--no-pager", "-l"], check=False
        )
        return (result.stdout or result.stderr or "").strip()


@dataclass
class SshService(ManagedService):
    """sshd, whose configuration is checked with ``sshd -t`` before restarts."""

    name: str = "sshd"
    unit: Optional[str] = None
    sshd_binary: str = "sshd"

    @property
    def unit_name(self) -> str:
        if self.unit:
            return self.unit
        # Debian and Ubuntu ship the unit as ssh.service.
        result = system.run_command(
            ["systemctl", "list-unit-files", "sshd.service", "--no-legend"], check=False
        )
        return "sshd" if "sshd.service" in (result.stdout or "") else "ssh"

    def test_config(self) -> None:
        try:
            system.run_command([self.sshd_binary, "-t"])
        except CommandFailedError as e:
            raise ValidationFailedError("sshd", (e.stderr or e.stdout).strip()) from e

    def effective_config(self) -> str:
        """Output of ``sshd -T``: the configuration sshd would actually use."""
        return system.run_command([self.sshd_binary, "-T"]).stdout


class RestartOutcome(Enum):
    RESTARTED = "restarted"
    WITHHELD = "withheld"


@dataclass
class RestartResult:
    service: str
    outcome: RestartOutcome
    detail: str = ""

    @property
    def restarted(self) -> bool:
        return self.outcome is RestartOutcome.RESTARTED


def restart_service(service: ManagedService) -> RestartResult:
    """
    Restart ``service`` and confirm it is running.

    Validatable services are tested first; a failing test withholds the
    restart and is reported as ``WITHHELD`` rather than raised.

    Raises:
        ServiceRestartFailedError: If the restart command fails or the
            unit is not active afterwards
    """
    if isinstance(service, Validatable):
        try:
            service.test_config()
        except ValidationFailedError as e:
            logger.error("Restart of %s withheld: %s", service.name, e)
            return RestartResult(service.name, RestartOutcome.WITHHELD, e.output)

    try:
        service.systemctl("restart")
    except (CommandFailedError, CommandTimeoutError) as e:
        raise ServiceRestartFailedError(f"Failed to restart {service.name}: {e}") from e
    if service.settle:
        time.sleep(service.settle)
    if not service.is_active():
        raise ServiceRestartFailedError(
            f"{service.name} is not active after restart; check 'journalctl -u {service.unit_name}'"
        )
    logger.info("Restarted %s", service.name)
    return RestartResult(service.name, RestartOutcome.RESTARTED)


def start_service(service: ManagedService) -> None:
    """Unmask, enable and restart ``service``, then confirm it is active."""
    system.run_command(["systemctl", "unmask", service.unit_name], check=False)
    try:
        service.systemctl("enable")
    except CommandFailedError as e:
        raise ServiceRestartFailedError(f"Failed to enable {service.name}: {e}") from e
    restart_service(service)


def stop_service(service: ManagedService) -> None:
    try:
        service.systemctl("stop")
    except (CommandFailedError, CommandTimeoutError) as e:
        raise ServiceRestartFailedError(f"Failed to stop {service.name}: {e}") from e
