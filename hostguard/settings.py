"""
Application settings: managed file locations and fail2ban defaults.

Settings load from a JSON object whose keys are AppSettings field names.
The file is looked up at ``--config``, then ``$HOSTGUARD_CONFIG``, then
``/etc/hostguard/config.json``; a missing file means defaults.
"""

import json
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

from .errors import HostGuardError
from .logs import logger

DEFAULT_CONFIG_FILE = "/etc/hostguard/config.json"
CONFIG_ENV_VAR = "HOSTGUARD_CONFIG"


@dataclass
class AppSettings:
    # fail2ban
    fail2ban_dir: str = "/etc/fail2ban"
    jail_local: str = "/etc/fail2ban/jail.local"
    fail2ban_log: str = "/var/log/fail2ban.log"
    telegram_action: str = "/etc/fail2ban/action.d/telegram.conf"
    telegram_script: str = "/etc/fail2ban/action.d/telegram-notify.sh"
    ignoreip: str = "127.0.0.1/8 ::1"
    bantime: str = "23h"
    findtime: str = "10m"
    maxretry: str = "3"
    sshd_maxretry: str = "3"

    # log compression
    rsyslog_conf: str = "/etc/rsyslog.conf"
    journald_conf: str = "/etc/systemd/journald.conf"

    # sshd
    sshd_config: str = "/etc/ssh/sshd_config"
    sshd_override: str = "/etc/ssh/sshd_config.d/99-hostguard.conf"
    authorized_keys: str = "/root/.ssh/authorized_keys"

    # hostname
    hosts_file: str = "/etc/hosts"
    cloud_cfg: str = "/etc/cloud/cloud.cfg"

    # runtime
    command_timeout: int = 30
    restart_settle: float = 2.0
    log_file: Optional[str] = "/var/log/hostguard.log"
    lock_dir: Optional[str] = "/run/lock/hostguard"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppSettings":
        """Build settings from a mapping, ignoring unknown keys with a warning."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown settings: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})


def resolve_config_path(path: Optional[str] = None) -> str:
    return path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE


def load_settings(path: Optional[str] = None) -> AppSettings:
    """
    Load settings from JSON, or return defaults when the file is absent.

    Raises:
        HostGuardError: If the file exists but is not a valid JSON object
    """
    config_file = resolve_config_path(path)
    if not os.path.exists(config_file):
        logger.debug("No settings file at %s, using defaults", config_file)
        return AppSettings()
    try:
        with open(config_file, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise HostGuardError(f"Failed to load settings from {config_file}: {e}") from e
    if not isinstance(data, dict):
        raise HostGuardError(f"Settings file {config_file} must contain a JSON object")
    logger.debug("Loaded settings from %s", config_file)
    return AppSettings.from_dict(data)


def save_settings(settings: AppSettings, path: Optional[str] = None) -> str:
    config_file = resolve_config_path(path)
    os.makedirs(os.path.dirname(config_file) or ".", exist_ok=True)
    with open(config_file, "w") as f:
        json.dump(settings.to_dict(), f, indent=2)
    return config_file
