"""
fail2ban manager: install, configure and inspect fail2ban's sshd jail.

The jail configuration lives in ``jail.local``; after it exists, every
change to it goes through the config patcher so comments and unrelated
settings survive.
"""

import ipaddress
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from . import system, telegram, ui
from .document import FLAT, INI, SYSTEMD
from .errors import (
    ConfigFileNotFoundError,
    HostGuardError,
    InvalidInputError,
    PreconditionError,
)
from .fileio import atomic_write, read_text
from .locator import ConfigTarget, effective_value
from .logs import logger
from .patcher import CommentedPolicy, PatchResult
from .services import ManagedService, restart_service, start_service, stop_service
from .system import FirewallBackend, LogBackend, Session

APP_NAME = "fail2ban"
APP_SUBTITLE = "sshd brute-force protection"

JAIL_NAME = "sshd"
DEFAULT_SECTION = "DEFAULT"
TUNABLE_KEYS = ("bantime", "findtime", "maxretry")

APT_PACKAGES = ("fail2ban", "whois", "python3-pyinotify", "python3-systemd", "curl")
RPM_PACKAGES = ("fail2ban", "whois", "curl")

BAN_EVENT_RE = re.compile(r"\b(Ban|Unban)\b")
STATUS_FIELD_RE = re.compile(r"^[\s|`-]*([A-Za-z][A-Za-z ]*?):\s*(.*)$")


def fail2ban_service(session: Session) -> ManagedService:
    return ManagedService("fail2ban", settle=session.settings.restart_settle)


def is_installed() -> bool:
    return system.command_exists("fail2ban-client")


# ----------------------------------------------------------------
# jail.local
# ----------------------------------------------------------------
@dataclass
class JailOptions:
    ignoreip: str = "127.0.0.1/8 ::1"
    bantime: str = "23h"
    findtime: str = "10m"
    maxretry: str = "3"
    ssh_port: str = "ssh"
    sshd_maxretry: str = "3"

    @classmethod
    def from_settings(cls, session: Session) -> "JailOptions":
        s = session.settings
        return cls(
            ignoreip=s.ignoreip,
            bantime=s.bantime,
            findtime=s.findtime,
            maxretry=s.maxretry,
            sshd_maxretry=s.sshd_maxretry,
        )


def render_jail_local(
    options: JailOptions, banaction: FirewallBackend, log_backend: LogBackend
) -> str:
    lines = [
        "# Generated by hostguard. Local overrides for jail.conf;",
        "# later edits by hostguard keep comments and unrelated settings.",
        "",
        "[DEFAULT]",
        f"ignoreip = {options.ignoreip}",
        f"banaction = {banaction.value}",
        "",
        f"bantime = {options.bantime}",
        f"findtime = {options.findtime}",
        f"maxretry = {options.maxretry}",
        "",
        "# --- SSHD Protection ---",
        f"[{JAIL_NAME}]",
        "enabled = true",
        f"port = {options.ssh_port}",
        f"maxretry = {options.sshd_maxretry}",
    ]
    if log_backend.logpath:
        lines.append(f"logpath = {log_backend.logpath}")
    lines.append(f"backend = {log_backend.backend}")
    return "\n".join(lines) + "\n"


def write_jail_local(session: Session, content: str) -> Path:
    """Write a fresh jail.local, backing up any existing one first."""
    path = Path(session.settings.jail_local)
    if path.exists():
        session.backups.backup(path)
    atomic_write(path, content, mode=0o644)
    logger.info("Wrote %s", path)
    session.mark_changed("fail2ban")
    return path


def read_jail_defaults(session: Session) -> Dict[str, Optional[str]]:
    doc = session.patcher.load(session.settings.jail_local, INI)
    return {key: effective_value(doc, key, DEFAULT_SECTION) for key in TUNABLE_KEYS}


def update_jail_defaults(session: Session, values: Dict[str, str]) -> PatchResult:
    """
    Set ``bantime``/``findtime``/``maxretry`` under ``[DEFAULT]`` in jail.local.

    Empty values are skipped. Raises ConfigFileNotFoundError when jail.local
    does not exist yet.
    """
    unknown = set(values) - set(TUNABLE_KEYS)
    if unknown:
        raise InvalidInputError(f"Not a tunable jail setting: {', '.join(sorted(unknown))}")
    targets = [
        ConfigTarget(key, value.strip(), DEFAULT_SECTION)
        for key, value in values.items()
        if value and value.strip()
    ]
    path = session.settings.jail_local
    if not Path(path).exists():
        raise ConfigFileNotFoundError(
            f"{path} does not exist; install fail2ban through hostguard first"
        )
    result = session.patcher.patch(path, targets, INI)
    if result.changed:
        session.mark_changed("fail2ban")
    return result


# ----------------------------------------------------------------
# Log compression guard
# ----------------------------------------------------------------
def disable_log_compression(session: Session, restart: bool = True) -> List[str]:
    """
    Stop syslog daemons from collapsing repeated auth failures.

    rsyslog's ``$RepeatedMsgReduction on`` turns repeated lines into
    "message repeated N times", which hides attempts from fail2ban; journald
    rate limiting drops them. Only files whose setting needs changing are
    written, and only their services are restarted.

    Returns:
        Names of the services whose configuration was changed
    """
    settings = session.settings
    changed: List[str] = []

    rsyslog = Path(settings.rsyslog_conf)
    if rsyslog.exists():
        doc = session.patcher.load(rsyslog, FLAT)
        if (effective_value(doc, "$RepeatedMsgReduction") or "").lower() == "on":
            session.patcher.set_value(rsyslog, "$RepeatedMsgReduction", "off", FLAT)
            changed.append("rsyslog")

    journald = Path(settings.journald_conf)
    if journald.exists():
        result = session.patcher.patch(
            journald,
            [
                ConfigTarget("RateLimitIntervalSec", "0", "Journal"),
                ConfigTarget("RateLimitBurst", "0", "Journal"),
            ],
            SYSTEMD,
            policy=CommentedPolicy.UNCOMMENT,
        )
        if result.changed:
            changed.append("systemd-journald")

    if restart:
        for name in changed:
            restart_service(ManagedService(name, settle=0))
    return changed


# ----------------------------------------------------------------
# Status and bans
# ----------------------------------------------------------------
@dataclass
class Jail:
    name: str
    currently_failed: int = 0
    total_failed: int = 0
    currently_banned: int = 0
    total_banned: int = 0
    banned_ips: List[str] = field(default_factory=list)


def parse_status_fields(output: str) -> Dict[str, str]:
    """Flatten fail2ban-client's tree output into ``{label: value}``."""
    result: Dict[str, str] = {}
    for line in output.splitlines():
        match = STATUS_FIELD_RE.match(line)
        if match:
            result[match.group(1).strip()] = match.group(2).strip()
    return result


def parse_jail_list(output: str) -> List[str]:
    jails = parse_status_fields(output).get("Jail list", "")
    return [name.strip() for name in jails.split(",") if name.strip()]


def parse_jail_status(name: str, output: str) -> Jail:
    fields = parse_status_fields(output)

    def _int(label: str) -> int:
        try:
            return int(fields.get(label, "0"))
        except ValueError:
            return 0

    return Jail(
        name=name,
        currently_failed=_int("Currently failed"),
        total_failed=_int("Total failed"),
        currently_banned=_int("Currently banned"),
        total_banned=_int("Total banned"),
        banned_ips=fields.get("Banned IP list", "").split(),
    )


def jail_status(session: Session, name: str = JAIL_NAME) -> Jail:
    output = session.run(["fail2ban-client", "status", name]).stdout
    return parse_jail_status(name, output)


def list_jails(session: Session) -> List[Jail]:
    output = session.run(["fail2ban-client", "status"]).stdout
    return [jail_status(session, name) for name in parse_jail_list(output)]


def validate_ip(ip: str) -> str:
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError:
        raise InvalidInputError(f"Not a valid IP address: {ip!r}") from None


def ban_ip(session: Session, ip: str, jail: str = JAIL_NAME) -> None:
    ip = validate_ip(ip)
    session.run(["fail2ban-client", "set", jail, "banip", ip])
    logger.info("Banned %s in jail %s", ip, jail)


def unban_ip(session: Session, ip: str, jail: str = JAIL_NAME) -> None:
    ip = validate_ip(ip)
    session.run(["fail2ban-client", "set", jail, "unbanip", ip])
    logger.info("Unbanned %s from jail %s", ip, jail)


def ban_events(log_file: str, limit: int = 50) -> List[str]:
    """Last ``limit`` Ban/Unban lines of the fail2ban log."""
    path = Path(log_file)
    if not path.exists():
        raise ConfigFileNotFoundError(f"fail2ban log not found: {path}")
    events = [line for line in read_text(path).splitlines() if BAN_EVENT_RE.search(line)]
    return events[-limit:]


def tail(log_file: str, lines: int = 50) -> List[str]:
    path = Path(log_file)
    if not path.exists():
        raise ConfigFileNotFoundError(f"fail2ban log not found: {path}")
    return read_text(path).splitlines()[-lines:]


# ----------------------------------------------------------------
# Install / uninstall
# ----------------------------------------------------------------
def packages_for(manager: system.PackageManager) -> Sequence[str]:
    return APT_PACKAGES if manager is system.PackageManager.APT else RPM_PACKAGES


def ensure_firewall_backend(session: Session) -> FirewallBackend:
    backend = system.detect_firewall_backend()
    if backend is not None:
        ui.print_success(f"Detected firewall backend: {backend.value}")
        return backend
    ui.print_warning("Neither nftables nor iptables found; fail2ban needs one to ban IPs.")
    if not ui.confirm("Install nftables now?", default=True):
        raise PreconditionError("Install nftables or iptables before configuring fail2ban")
    with ui.spinner("Installing nftables..."):
        system.install_packages(session.package_manager, ["nftables"])
    backend = system.detect_firewall_backend()
    if backend is None:
        raise PreconditionError("nftables installation did not provide the 'nft' command")
    return backend


def ensure_log_backend(session: Session) -> LogBackend:
    backend = system.detect_log_backend()
    if not backend.uses_journal:
        ui.print_success(f"Detected auth log {backend.auth_log}; using logpath")
        return backend
    ui.print_step("No auth.log/secure found; using the systemd journal backend")
    if system.journal_bindings_available():
        return backend
    ui.print_warning("fail2ban needs the python3-systemd module to read the journal.")
    if not ui.confirm("Install python3-systemd now?", default=True):
        raise PreconditionError("The systemd backend requires python3-systemd")
    system.install_packages(session.package_manager, ["python3-systemd"])
    if not system.journal_bindings_available():
        raise PreconditionError("python3-systemd installed but 'import systemd.journal' still fails")
    return backend


def prompt_jail_options(session: Session) -> JailOptions:
    defaults = JailOptions.from_settings(session)
    ssh_port = ui.ask("SSH port to protect", default="22")
    if ssh_port != "ssh" and not ssh_port.isdigit():
        raise InvalidInputError(f"Not a port number: {ssh_port!r}")
    return JailOptions(
        ignoreip=ui.ask("IPs to never ban (ignoreip)", default=defaults.ignoreip),
        bantime=ui.ask("Ban duration (bantime)", default=defaults.bantime),
        findtime=ui.ask("Detection window (findtime)", default=defaults.findtime),
        maxretry=ui.ask("Failures before a ban (maxretry)", default=defaults.maxretry),
        ssh_port=ssh_port,
        sshd_maxretry=ui.ask("sshd jail maxretry", default=defaults.sshd_maxretry),
    )


def install(session: Session) -> None:
    if is_installed():
        ui.print_success("fail2ban is already installed.")
        return
    packages = packages_for(session.package_manager)
    with ui.spinner("Installing fail2ban..."):
        system.install_packages(session.package_manager, packages)
    if not is_installed():
        raise HostGuardError("fail2ban-client is still missing after installation")
    ui.print_success("fail2ban installed.")

    banaction = ensure_firewall_backend(session)
    log_backend = ensure_log_backend(session)
    options = prompt_jail_options(session)
    path = write_jail_local(session, render_jail_local(options, banaction, log_backend))
    ui.print_success(f"Wrote {path}")

    if not log_backend.uses_journal:
        changed = disable_log_compression(session)
        if changed:
            ui.print_success(f"Disabled log compression for: {', '.join(changed)}")
        else:
            ui.print_success("Log compression settings already fine.")

    start(session)


def start(session: Session) -> None:
    if not is_installed():
        raise PreconditionError("Install fail2ban first")
    with ui.spinner("Starting fail2ban..."):
        start_service(fail2ban_service(session))
    session.mark_applied("fail2ban")
    ui.print_success("fail2ban is running and enabled at boot.")


def stop(session: Session) -> None:
    service = fail2ban_service(session)
    stop_service(service)
    service.systemctl("disable", check=False)
    ui.print_success("fail2ban stopped and disabled.")


def uninstall(session: Session) -> None:
    if not is_installed():
        ui.print_success("fail2ban is not installed.")
        return
    if not ui.confirm("Uninstall fail2ban?", default=False):
        ui.print_warning("Uninstall cancelled.")
        return
    stop(session)
    with ui.spinner("Removing fail2ban..."):
        system.remove_packages(session.package_manager, ["fail2ban"])
    config_dir = Path(session.settings.fail2ban_dir)
    if config_dir.is_dir() and ui.confirm(
        f"Also delete every file under {config_dir}? This cannot be undone.", default=False
    ):
        shutil.rmtree(config_dir)
        ui.print_warning(f"Deleted {config_dir}")
    session.mark_applied("fail2ban")
    ui.print_success("fail2ban uninstalled.")


# ----------------------------------------------------------------
# Interactive Menu
# ----------------------------------------------------------------
def _show_status(session: Session) -> None:
    if not is_installed():
        raise PreconditionError("fail2ban is not installed")
    jail = jail_status(session)
    ui.display_panel(
        f"Jail: {jail.name}",
        "\n".join(
            [
                f"Currently failed: {jail.currently_failed}",
                f"Total failed:     {jail.total_failed}",
                f"Currently banned: {jail.currently_banned}",
                f"Total banned:     {jail.total_banned}",
                f"Banned IPs:       {' '.join(jail.banned_ips) or '-'}",
            ]
        ),
    )
    if ui.confirm(f"Show the last 50 lines of {session.settings.fail2ban_log}?"):
        ui.display_panel("fail2ban.log", "\n".join(tail(session.settings.fail2ban_log)))


def _show_ban_events(session: Session) -> None:
    events = ban_events(session.settings.fail2ban_log)
    if not events:
        ui.print_warning("No Ban/Unban events in the log yet.")
        return
    ui.display_panel("Ban / Unban events", "\n".join(events))


def _list_banned(session: Session) -> None:
    jails = list_jails(session)
    if not jails:
        ui.print_warning("No jails found.")
        return
    ui.display_table(
        "fail2ban Jails",
        ["Jail", "Banned", "Total banned", "Banned IPs"],
        [
            (j.name, str(j.currently_banned), str(j.total_banned), " ".join(j.banned_ips) or "-")
            for j in jails
        ],
    )


def _ban(session: Session) -> None:
    jail = ui.ask("Jail", default=JAIL_NAME)
    ban_ip(session, ui.ask("IP address to ban"), jail)
    ui.print_success("IP banned.")


def _unban(session: Session) -> None:
    jail = ui.ask("Jail", default=JAIL_NAME)
    unban_ip(session, ui.ask("IP address to unban"), jail)
    ui.print_success("IP unbanned.")


def _view_config(session: Session) -> None:
    path = Path(session.settings.jail_local)
    if not path.exists():
        ui.print_warning(f"{path} not found; run the install option to create it.")
        return
    ui.display_panel(str(path), read_text(path))


def _modify_config(session: Session) -> None:
    current = read_jail_defaults(session)
    ui.print_step("Enter a new value or press Enter to keep the current one.")
    values = {
        key: ui.ask(f"{key} [current: {current[key] or 'unset'}]", default="")
        for key in TUNABLE_KEYS
    }
    result = update_jail_defaults(session, values)
    if not result.changed:
        ui.print_warning("No changes made.")
        return
    ui.print_success("jail.local updated.")
    if result.backup_path:
        ui.print_step(f"Backup: {result.backup_path}")
    _view_config(session)
    if ui.confirm("Restart fail2ban now to apply?", default=True):
        _restart(session)


def _restart(session: Session) -> None:
    with ui.spinner("Restarting fail2ban..."):
        restart_service(fail2ban_service(session))
    session.mark_applied("fail2ban")
    ui.print_success("fail2ban restarted.")


MENU = (
    ("1", "Install fail2ban and configure the sshd jail", install),
    ("2", "Uninstall fail2ban", uninstall),
    ("3", "Start / restart fail2ban", start),
    ("4", "Stop fail2ban", stop),
    ("5", "Show sshd jail status", _show_status),
    ("6", "Show ban / unban events", _show_ban_events),
    ("7", "List banned IPs per jail", _list_banned),
    ("8", "Ban an IP", _ban),
    ("9", "Unban an IP", _unban),
    ("10", "View jail.local", _view_config),
    ("11", "Modify bantime / findtime / maxretry", _modify_config),
    ("12", "Configure Telegram ban notifications", telegram.configure_interactive),
    ("0", "Exit", None),
)


def run_menu(session: Session) -> None:
    while True:
        ui.show_header(APP_NAME, APP_SUBTITLE)
        if "fail2ban" in session.pending_restart:
            ui.print_warning("jail.local changed; restart fail2ban (option 3) to apply.")
        choice = ui.show_menu("Main Menu", [(key, label) for key, label, _ in MENU])
        action = next(func for key, _, func in MENU if key == choice)
        if action is None:
            ui.goodbye()
            return
        try:
            action(session)
        except HostGuardError as e:
            ui.print_error(str(e))
        ui.pause()
