"""Change the system hostname and keep /etc/hosts and cloud-init in step."""

import re
from dataclasses import dataclass
from pathlib import Path

from . import ui
from .document import COLON, FLAT, ConfigDocument, LineKind
from .errors import InvalidInputError
from .locator import effective_value
from .logs import logger
from .patcher import CommentedPolicy
from .system import Session

HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
LOOPBACK_ALIAS = "127.0.1.1"


@dataclass
class HostnameChange:
    old: str
    new: str
    changed: bool = False
    hosts_updated: bool = False
    cloud_updated: bool = False


def validate_hostname(name: str) -> str:
    if not HOSTNAME_RE.match(name or ""):
        raise InvalidInputError(
            f"Invalid hostname {name!r}: use 1-63 letters, digits or hyphens, "
            "not starting or ending with a hyphen"
        )
    return name


def current_hostname(session: Session) -> str:
    return session.run(["hostname"]).stdout.strip()


def _name_pattern(name: str) -> "re.Pattern[str]":
    # Whole-name match: "web" must not hit "web-1", but "web.example.com" is fine.
    return re.compile(rf"(?<![A-Za-z0-9-]){re.escape(name)}(?![A-Za-z0-9-])")


def replace_in_hosts(doc: ConfigDocument, old: str, new: str) -> bool:
    """Replace ``old`` with ``new`` on every non-comment line. Returns whether any changed."""
    if not old:
        raise InvalidInputError("Cannot replace an empty hostname in the hosts file")
    pattern = _name_pattern(old)
    changed = False
    for index, line in enumerate(doc.lines):
        if line.kind is LineKind.COMMENT or line.kind is LineKind.BLANK or line.commented:
            continue
        updated = pattern.sub(new, line.raw)
        if updated != line.raw:
            doc.replace_line(index, updated)
            changed = True
    return changed


def name_resolvable(doc: ConfigDocument, name: str) -> bool:
    pattern = _name_pattern(name)
    return any(line.active and pattern.search(line.value or "") for line in doc.lines)


def update_hosts(session: Session, old: str, new: str) -> bool:
    path = Path(session.settings.hosts_file)
    if not path.exists():
        ui.print_warning(f"{path} not found; skipping.")
        return False
    if old:
        result = session.patcher.edit(path, FLAT, lambda doc: replace_in_hosts(doc, old, new))
        changed = result.changed
        if not changed:
            ui.print_warning(f"'{old}' not found in {path}.")
    else:
        ui.print_warning("Previous hostname unknown; only adding the new name.")
        changed = False

    doc = session.patcher.load(path, FLAT)
    if not name_resolvable(doc, new):
        current = effective_value(doc, LOOPBACK_ALIAS)
        value = f"{new} {current}" if current else new
        session.patcher.set_value(path, LOOPBACK_ALIAS, value, FLAT)
        changed = True
    return changed


def preserve_in_cloud_init(session: Session) -> bool:
    """Stop cloud-init from resetting the hostname on the next boot."""
    path = Path(session.settings.cloud_cfg)
    if not path.exists():
        logger.info("%s not found; cloud-init not in use", path)
        return False
    result = session.patcher.set_value(
        path, "preserve_hostname", "true", COLON, policy=CommentedPolicy.UNCOMMENT
    )
    return result.changed


def change_hostname(session: Session, new: str) -> HostnameChange:
    new = validate_hostname(new.strip())
    old = current_hostname(session)
    change = HostnameChange(old=old, new=new)
    if old == new:
        ui.print_warning(f"Hostname is already '{new}'. Nothing to do.")
        return change

    ui.print_step(f"Step 1/3: hostnamectl set-hostname {new}")
    session.run(["hostnamectl", "set-hostname", new])
    change.changed = True
    ui.print_success(f"Hostname set to '{new}'.")

    ui.print_step(f"Step 2/3: updating {session.settings.hosts_file}")
    change.hosts_updated = update_hosts(session, old, new)
    if change.hosts_updated:
        ui.print_success(f"{session.settings.hosts_file} updated.")

    ui.print_step("Step 3/3: checking cloud-init")
    change.cloud_updated = preserve_in_cloud_init(session)
    if change.cloud_updated:
        ui.print_success("cloud-init set to preserve the hostname.")
    else:
        ui.print_step("cloud-init needs no change.")

    logger.info("Hostname changed from %s to %s", old, new)
    return change


def show_status(session: Session) -> None:
    output = session.run(["hostnamectl"], check=False).stdout
    ui.display_panel("hostnamectl", output.strip())
