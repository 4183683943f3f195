"""
Process boundary and environment probes.

Every external program hostguard calls goes through ``run_command`` so it
has one timeout policy, one error mapping and one place to fake in tests.
"""

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from .backup import BackupManager
from .errors import (
    CommandFailedError,
    CommandTimeoutError,
    NotRootError,
    PackageInstallError,
    UnsupportedPackageManagerError,
)
from .logs import logger
from .patcher import ConfigPatcher
from .settings import AppSettings

DEFAULT_TIMEOUT = 30
INSTALL_TIMEOUT = 600


# ----------------------------------------------------------------
# Command Execution Helpers
# ----------------------------------------------------------------
def run_command(
    cmd: List[str],
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external command and return the completed process.

    Args:
        cmd: Command and arguments
        check: Raise CommandFailedError on a non-zero exit status
        capture_output: Capture stdout/stderr as text
        timeout: Seconds before the command is killed
        env: Extra environment variables

    Raises:
        CommandFailedError: If ``check`` is set and the command fails
        CommandTimeoutError: If the command exceeds ``timeout``
    """
    logger.debug("Executing: %s", " ".join(cmd))
    full_env = {**os.environ, **env} if env else None
    try:
        result = subprocess.run(
            cmd,
            capture_output=capture_output,
            text=True,
            timeout=timeout,
            env=full_env,
        )
    except subprocess.TimeoutExpired as e:
        logger.error("Command timed out after %ss: %s", timeout, " ".join(cmd))
        raise CommandTimeoutError(cmd, timeout) from e
    except FileNotFoundError as e:
        raise CommandFailedError(cmd, 127, stderr=str(e)) from e

    if check and result.returncode != 0:
        logger.error("Command failed (%s): %s", result.returncode, " ".join(cmd))
        raise CommandFailedError(cmd, result.returncode, result.stdout or "", result.stderr or "")
    return result


def command_exists(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def check_root() -> None:
    if os.geteuid() != 0:
        raise NotRootError("This tool must be run with root privileges (try: sudo hostguard ...)")


# ----------------------------------------------------------------
# Package Managers
# ----------------------------------------------------------------
class PackageManager(Enum):
    APT = "apt"
    DNF = "dnf"
    YUM = "yum"

    @property
    def binary(self) -> str:
        return "apt-get" if self is PackageManager.APT else self.value


DETECTION_ORDER = (
    ("apt-get", PackageManager.APT),
    ("dnf", PackageManager.DNF),
    ("yum", PackageManager.YUM),
)


def detect_package_manager() -> PackageManager:
    for binary, manager in DETECTION_ORDER:
        if command_exists(binary):
            logger.debug("Detected package manager: %s", manager.value)
            return manager
    raise UnsupportedPackageManagerError(
        "No supported package manager found (apt-get, dnf or yum required)"
    )


def package_installed(manager: PackageManager, package: str) -> bool:
    if manager is PackageManager.APT:
        cmd = ["dpkg-query", "-W", "-f=${Status}", package]
        result = run_command(cmd, check=False)
        return result.returncode == 0 and "install ok installed" in result.stdout
    result = run_command(["rpm", "-q", package], check=False)
    return result.returncode == 0


def install_packages(manager: PackageManager, packages: Sequence[str]) -> None:
    """
    Install ``packages`` non-interactively.

    apt refreshes its index first. On dnf/yum, installing fail2ban pulls in
    epel-release first when it is not installed yet.

    Raises:
        PackageInstallError: If any install step fails
    """
    packages = list(packages)
    try:
        if manager is PackageManager.APT:
            run_command(["apt-get", "update"], timeout=INSTALL_TIMEOUT)
            run_command(
                ["apt-get", "install", "-y", *packages],
                timeout=INSTALL_TIMEOUT,
                env={"DEBIAN_FRONTEND": "noninteractive"},
            )
            return
        if "fail2ban" in packages and not package_installed(manager, "epel-release"):
            logger.info("Installing epel-release for fail2ban")
            run_command([manager.binary, "install", "-y", "epel-release"], timeout=INSTALL_TIMEOUT)
        run_command([manager.binary, "install", "-y", *packages], timeout=INSTALL_TIMEOUT)
    except (CommandFailedError, CommandTimeoutError) as e:
        raise PackageInstallError(f"Failed to install {' '.join(packages)}: {e}") from e


def remove_packages(manager: PackageManager, packages: Sequence[str]) -> None:
    packages = list(packages)
    if manager is PackageManager.APT:
        cmd = ["apt-get", "purge", "--auto-remove", "-y", *packages]
    else:
        cmd = [manager.binary, "remove", "-y", *packages]
    try:
        run_command(cmd, timeout=INSTALL_TIMEOUT)
    except (CommandFailedError, CommandTimeoutError) as e:
        raise PackageInstallError(f"Failed to remove {' '.join(packages)}: {e}") from e


# ----------------------------------------------------------------
# Environment Probes
# ----------------------------------------------------------------
class FirewallBackend(Enum):
    NFTABLES = "nftables-multiport"
    IPTABLES = "iptables-multiport"


def detect_firewall_backend() -> Optional[FirewallBackend]:
    """Ban action for the firewall in use, or None when neither is installed."""
    if command_exists("nft"):
        return FirewallBackend.NFTABLES
    if command_exists("iptables"):
        return FirewallBackend.IPTABLES
    return None


AUTH_LOG_CANDIDATES = ("/var/log/auth.log", "/var/log/secure")


@dataclass
class LogBackend:
    """How fail2ban reads sshd authentication events on this host."""

    backend: str
    logpath: Optional[str] = None
    auth_log: Optional[str] = None

    @property
    def uses_journal(self) -> bool:
        return self.backend == "systemd"


def detect_log_backend(candidates: Sequence[str] = AUTH_LOG_CANDIDATES) -> LogBackend:
    for candidate in candidates:
        if Path(candidate).exists():
            return LogBackend(backend="auto", logpath="%(sshd_log)s", auth_log=candidate)
    return LogBackend(backend="systemd")


def journal_bindings_available() -> bool:
    """Whether the system python3 (the one fail2ban runs on) can read the journal."""
    if not command_exists("python3"):
        return False
    result = run_command(["python3", "-c", "import systemd.journal"], check=False)
    return result.returncode == 0


# ----------------------------------------------------------------
# Session
# ----------------------------------------------------------------
@dataclass
class Session:
    """
    State shared by one hostguard run.

    Holds the settings, the lazily detected package manager, the patcher
    with its run-wide backup manager, and the services whose config changed
    but have not been restarted yet.
    """

    settings: AppSettings = field(default_factory=AppSettings)
    patcher: Optional[ConfigPatcher] = None
    pending_restart: Set[str] = field(default_factory=set)
    manager: Optional[PackageManager] = None
    config_path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.patcher is None:
            self.patcher = ConfigPatcher(BackupManager(), lock_dir=self.settings.lock_dir)

    @property
    def backups(self) -> BackupManager:
        return self.patcher.backups

    @property
    def package_manager(self) -> PackageManager:
        if self.manager is None:
            self.manager = detect_package_manager()
        return self.manager

    def run(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        kwargs.setdefault("timeout", self.settings.command_timeout)
        return run_command(cmd, **kwargs)

    def mark_changed(self, service: str) -> None:
        self.pending_restart.add(service)

    def mark_applied(self, service: str) -> None:
        self.pending_restart.discard(service)
