"""
SSH manager: inspect and harden sshd_config.

Settings are written through the config patcher. When sshd_config has an
active ``Include`` that covers hostguard's drop-in file, values go into the
drop-in and conflicting lines in sshd_config and in the other included
files are commented out (layered mode); otherwise sshd_config itself is
patched.

sshd honours the *first* value it reads for most keywords, reading each
Included file at the point of its Include line. Effective values are
resolved in that order, and duplicate lines are reported because only the
first of them takes effect.
"""

import fnmatch
import glob
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from . import ui
from .document import SSHD, ConfigDocument, Line
from .errors import (
    CommandFailedError,
    ConfigFileNotFoundError,
    HostGuardError,
    InvalidInputError,
    PreconditionError,
)
from .fileio import atomic_write, read_text
from .locator import ConfigTarget, locate
from .logs import logger
from .patcher import CommentedPolicy
from .services import RestartOutcome, SshService, restart_service
from .system import Session

APP_NAME = "ssh manager"
APP_SUBTITLE = "sshd hardening"

SSHD_DEFAULTS: Dict[str, str] = {
    "Port": "22",
    "PubkeyAuthentication": "yes",
    "PasswordAuthentication": "yes",
    "PermitRootLogin": "prohibit-password",
}
KEY_PREFIXES = ("ssh-", "ecdsa-", "sk-")
MIN_PORT = 1024
MAX_PORT = 65535


@dataclass
class EffectiveSetting:
    key: str
    value: str
    source: str
    occurrences: int = 0


def ssh_service(session: Session) -> SshService:
    return SshService(settle=session.settings.restart_settle)


# ----------------------------------------------------------------
# Reading the configuration
# ----------------------------------------------------------------
def _include_patterns(value: str, base: Path) -> List[str]:
    patterns = []
    for pattern in value.split():
        if not os.path.isabs(pattern):
            pattern = str(base / pattern)
        patterns.append(pattern)
    return patterns


def include_covers(sshd_config: Path, target: Path) -> bool:
    """Whether an active global ``Include`` in ``sshd_config`` matches ``target``."""
    if not sshd_config.exists():
        return False
    doc = ConfigDocument.parse(read_text(sshd_config), SSHD)
    for index in locate(doc, "Include").active:
        for pattern in _include_patterns(doc.lines[index].value or "", sshd_config.parent):
            if fnmatch.fnmatch(str(target), pattern):
                return True
    return False


def uses_drop_in(session: Session) -> bool:
    settings = session.settings
    return include_covers(Path(settings.sshd_config), Path(settings.sshd_override))


def _walk(path: Path, base: Path, seen: Set[Path]) -> Iterator[Tuple[Path, Line]]:
    if path in seen or not path.is_file():
        return
    seen.add(path)
    doc = ConfigDocument.parse(read_text(path), SSHD)
    start, end = doc.scope_ranges()[0]
    for line in doc.lines[start:end]:
        if not line.active:
            continue
        yield path, line
        if line.key == "Include":
            for pattern in _include_patterns(line.value or "", base):
                for included in sorted(glob.glob(pattern)):
                    yield from _walk(Path(included).absolute(), base, seen)


def read_order(sshd_config: Path) -> List[Tuple[Path, Line]]:
    """
    Active global lines in the order sshd reads them.

    Each ``Include`` is expanded in place, its glob matches in sorted order,
    exactly as sshd does. Raises ConfigFileNotFoundError when sshd_config is
    missing.
    """
    if not sshd_config.exists():
        raise ConfigFileNotFoundError(f"Configuration file not found: {sshd_config}")
    return list(_walk(sshd_config.absolute(), sshd_config.parent, set()))


def included_files(sshd_config: Path) -> List[Path]:
    """Included files that set anything, in read order."""
    files: List[Path] = []
    main = sshd_config.absolute()
    for path, _ in read_order(sshd_config):
        if path != main and path not in files:
            files.append(path)
    return files


def _source(path: Path, session: Session) -> str:
    if path == Path(session.settings.sshd_config).absolute():
        return "sshd_config"
    if path == Path(session.settings.sshd_override).absolute():
        return "drop-in"
    return path.name


def effective_setting(
    session: Session, key: str, lines: Optional[List[Tuple[Path, Line]]] = None
) -> EffectiveSetting:
    """
    Value sshd will use for ``key`` and the file it comes from.

    sshd keeps the first value it reads, so the first occurrence in read
    order wins over later ones, in other files or in the same file.
    """
    if lines is None:
        lines = read_order(Path(session.settings.sshd_config))
    hits = [(path, line) for path, line in lines if line.key == key]
    if not hits:
        return EffectiveSetting(key, SSHD_DEFAULTS.get(key, ""), "default")
    path, line = hits[0]
    return EffectiveSetting(key, line.value or "", _source(path, session), len(hits))


def effective_settings(session: Session) -> List[EffectiveSetting]:
    lines = read_order(Path(session.settings.sshd_config))
    return [effective_setting(session, key, lines) for key in SSHD_DEFAULTS]


def get_setting(session: Session, key: str) -> str:
    return effective_setting(session, key).value


# ----------------------------------------------------------------
# Writing the configuration
# ----------------------------------------------------------------
def set_option(session: Session, key: str, value: str) -> bool:
    """
    Make ``key value`` effective for sshd. Returns whether a file changed.

    Commented defaults such as ``#Port 22`` are uncommented in place so the
    new line lands where the distribution documents the option. In layered
    mode the key is also disabled in every other included file, since any of
    them may be read before hostguard's drop-in. Raises HostGuardError when
    the value sshd would read afterwards is still not ``value``.
    """
    settings = session.settings
    target = ConfigTarget(key, value)
    if uses_drop_in(session):
        override = Path(settings.sshd_override).absolute()
        shadows = [
            path for path in included_files(Path(settings.sshd_config)) if path != override
        ]
        result = session.patcher.patch_layered(
            settings.sshd_config, settings.sshd_override, target, SSHD, shadows=shadows
        )
        for shadow in result.shadows:
            if shadow.changed:
                ui.print_warning(
                    f"Disabled {key} in {shadow.path} so it cannot override hostguard."
                )
    else:
        result = session.patcher.patch(
            settings.sshd_config, [target], SSHD, policy=CommentedPolicy.UNCOMMENT
        )
    changed = result.changed
    if changed:
        session.mark_changed("sshd")
        logger.info("sshd: %s set to %s", key, value)

    actual = effective_setting(session, key)
    if actual.value.lower() != value.lower():
        raise HostGuardError(
            f"{key} is still '{actual.value}' for sshd (from {actual.source}): sshd uses the "
            "first value it reads. Review the duplicate lines by hand."
        )
    if actual.occurrences > 1:
        ui.print_warning(
            f"{key} is set {actual.occurrences} times; sshd uses the first occurrence. "
            "Review the file by hand."
        )
    return changed


def validate_port(port: str) -> int:
    if not port.strip().isdigit():
        raise InvalidInputError(f"Port must be a number between {MIN_PORT} and {MAX_PORT}")
    number = int(port)
    if not MIN_PORT <= number <= MAX_PORT:
        raise InvalidInputError(f"Port must be between {MIN_PORT} and {MAX_PORT}")
    return number


def change_port(session: Session, port: str) -> bool:
    return set_option(session, "Port", str(validate_port(port)))


# ----------------------------------------------------------------
# authorized_keys
# ----------------------------------------------------------------
def list_keys(path: str) -> List[str]:
    keys_file = Path(path)
    if not keys_file.exists():
        return []
    return [
        line.strip()
        for line in read_text(keys_file).splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]


def has_keys(path: str) -> bool:
    return bool(list_keys(path))


def validate_public_key(key: str) -> str:
    key = key.strip()
    if not key.startswith(KEY_PREFIXES) or len(key.split()) < 2:
        raise InvalidInputError(
            "Not a public key: expected '<type> <base64> [comment]' with a type "
            f"starting {', '.join(KEY_PREFIXES)}"
        )
    return key


def add_key(session: Session, key: str) -> bool:
    """
    Append a public key to authorized_keys. Returns False for a duplicate.

    The directory is forced to 0700 and the file to 0600.
    """
    key = validate_public_key(key)
    path = Path(session.settings.authorized_keys)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.parent.chmod(0o700)

    existing = list_keys(str(path))
    # Same type and key material counts as a duplicate even with a new comment.
    if any(line.split()[:2] == key.split()[:2] for line in existing):
        path.chmod(0o600)
        return False

    content = read_text(path) if path.exists() else ""
    if content and not content.endswith("\n"):
        content += "\n"
    if path.exists():
        session.backups.backup(path)
    atomic_write(path, content + key + "\n", mode=0o600)
    path.chmod(0o600)
    logger.info("Added public key to %s", path)
    return True


def require_keys(session: Session, action: str) -> None:
    path = session.settings.authorized_keys
    if not has_keys(path):
        raise PreconditionError(
            f"Refusing to {action}: {path} is missing or empty. "
            "Add a public key first or you may lock yourself out."
        )


def disable_password_login(session: Session) -> bool:
    require_keys(session, "disable password login")
    return set_option(session, "PasswordAuthentication", "no")


def restrict_root_login(session: Session) -> bool:
    require_keys(session, "restrict root login")
    return set_option(session, "PermitRootLogin", "prohibit-password")


def restart(session: Session) -> RestartOutcome:
    """Test the configuration with ``sshd -t`` and restart only if it passes."""
    result = restart_service(ssh_service(session))
    if result.outcome is RestartOutcome.RESTARTED:
        session.mark_applied("sshd")
    return result.outcome


# ----------------------------------------------------------------
# Interactive Menu
# ----------------------------------------------------------------
def _preview(session: Session) -> None:
    current = effective_settings(session)
    ui.display_table(
        "Effective sshd settings",
        ["Setting", "Value", "Source"],
        [(s.key, s.value, s.source) for s in current],
    )
    for setting in current:
        if setting.occurrences > 1:
            ui.print_warning(
                f"{setting.key} is set {setting.occurrences} times; "
                f"sshd uses the first one ({setting.source})."
            )
    keys = list_keys(session.settings.authorized_keys)
    ui.display_panel(
        f"Public keys ({session.settings.authorized_keys})",
        "\n".join(keys) if keys else "No keys installed.",
    )
    ui.print_step("PermitRootLogin 'prohibit-password' allows root with keys only.")
    if ui.confirm("Show the full effective configuration from 'sshd -T'?"):
        try:
            ui.display_panel("sshd -T", ssh_service(session).effective_config())
        except CommandFailedError as e:
            ui.print_error(f"sshd -T failed: {e}")


def _add_key(session: Session) -> None:
    key = ui.ask("Paste the public key (e.g. ssh-ed25519 AAAA... user@host)")
    if add_key(session, key):
        ui.print_success(f"Key added to {session.settings.authorized_keys}")
    else:
        ui.print_warning("That key is already installed.")
    if get_setting(session, "PubkeyAuthentication") != "yes":
        ui.print_step("Enabling PubkeyAuthentication...")
        set_option(session, "PubkeyAuthentication", "yes")


def _change_port(session: Session) -> None:
    ui.print_warning(
        f"Current port is {get_setting(session, 'Port')}. After the change you must connect "
        "with the new port; make sure the firewall allows it."
    )
    port = ui.ask(f"New SSH port ({MIN_PORT}-{MAX_PORT}, empty to cancel)", default="")
    if not port:
        ui.print_step("Cancelled.")
        return
    validate_port(port)
    if not ui.confirm(f"Change the SSH port to {port}?"):
        ui.print_step("Cancelled.")
        return
    if change_port(session, port):
        ui.print_success(f"Port set to {port}.")
    else:
        ui.print_step(f"Port is already {port}.")


def _disable_password(session: Session) -> None:
    ui.print_warning("This prevents all password logins over SSH.")
    require_keys(session, "disable password login")
    ui.print_success("Public keys found.")
    if not ui.confirm("Disable password login?"):
        ui.print_step("Cancelled.")
        return
    if disable_password_login(session):
        ui.print_success("PasswordAuthentication set to no.")
    else:
        ui.print_step("Password login is already disabled.")


def _restrict_root(session: Session) -> None:
    ui.print_warning("Root will only be able to log in with a key.")
    require_keys(session, "restrict root login")
    ui.print_success("Public keys found.")
    if not ui.confirm("Set PermitRootLogin to 'prohibit-password'?"):
        ui.print_step("Cancelled.")
        return
    if restrict_root_login(session):
        ui.print_success("PermitRootLogin set to prohibit-password.")
    else:
        ui.print_step("Root login is already restricted.")


def _restart(session: Session) -> None:
    if "sshd" not in session.pending_restart:
        ui.print_step("No configuration changes to apply.")
        return
    with ui.spinner("Testing configuration and restarting sshd..."):
        outcome = restart(session)
    if outcome is RestartOutcome.WITHHELD:
        ui.print_error(
            "sshd -t rejected the configuration; restart withheld. "
            "The running sshd keeps its previous configuration. Fix the file or restore a backup."
        )
    else:
        ui.print_success("sshd restarted.")


MENU = (
    ("1", "Preview SSH configuration", _preview),
    ("2", "Add a public key (enables key login)", _add_key),
    ("3", "Change SSH port (high risk)", _change_port),
    ("4", "Disable password login (high risk)", _disable_password),
    ("5", "Restrict root login to keys (high risk)", _restrict_root),
    ("r", "Test and restart sshd", _restart),
    ("0", "Exit", None),
)


def run_menu(session: Session) -> None:
    while True:
        ui.show_header(APP_NAME, APP_SUBTITLE)
        if "sshd" in session.pending_restart:
            ui.print_warning("Configuration changed; choose 'r' to test and restart sshd.")
        choice = ui.show_menu("Main Menu", [(key, label) for key, label, _ in MENU])
        action = next(func for key, _, func in MENU if key == choice)
        if action is None:
            if "sshd" in session.pending_restart and not ui.confirm(
                "You have unapplied changes; sshd keeps running the old configuration until "
                "restarted. Exit anyway?"
            ):
                continue
            ui.goodbye()
            return
        try:
            action(session)
        except HostGuardError as e:
            ui.print_error(str(e))
        ui.pause()
