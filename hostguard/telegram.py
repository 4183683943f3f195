"""
Telegram ban notifications for fail2ban.

Two files are generated under ``action.d``: ``telegram.conf``, a fail2ban
action whose ``actionban`` runs the notify script, and the script itself,
which enriches the banned IP with whois/GeoIP data and posts a Markdown
message to the Bot API with curl. The sshd jail then gets
``action = %(action_)s`` followed by a ``telegram`` continuation line, so
the normal ban action still runs.
"""

import re
import shlex
from pathlib import Path
from typing import List

from . import system, ui
from .document import INI, ConfigDocument
from .errors import InvalidInputError, PreconditionError
from .fileio import atomic_write
from .locator import ConfigTarget, locate
from .logs import logger
from .patcher import PatchResult, apply_target, neutralize_key
from .services import ManagedService, restart_service
from .system import Session

TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")
CHAT_ID_RE = re.compile(r"^-?\d+$")

JAIL = "sshd"
ACTION_VALUE = "%(action_)s"
CONTINUATION = "         telegram"

# Documentation-range values so a test alert can never name a real host.
TEST_ALERT_ARGS = ("192.0.2.1", "sshd", "tcp", "22")

NOTIFY_SCRIPT = """\
#!/bin/bash
# fail2ban Telegram notify script, generated by hostguard.
# Arguments: <ip> <jail> <protocol> <port>

BOT_TOKEN={token}
CHAT_ID={chat_id}

IP="$1"
JAIL="$2"
PROTOCOL="$3"
PORT="$4"
HOSTNAME=$(hostname -f)
LOG_DATE=$(date)

WHOIS_INFO=$(whois "$IP" 2>/dev/null | grep -E "Country|OrgName|City|StateProv" | tr '\\n' '; ')
GEOIP_INFO=$(geoiplookup "$IP" 2>/dev/null | grep "GeoIP City" | awk -F": " '{{print $2}}')

MESSAGE="*Host:* \\`${{HOSTNAME}}\\`
-------------------------------
*Banned IP:* ${{IP}}
*Jail:* ${{JAIL}} (${{PROTOCOL}}/${{PORT}})
-------------------------------
*Whois:* ${{WHOIS_INFO}}
*GeoIP:* ${{GEOIP_INFO}}
-------------------------------
${{LOG_DATE}}
_Sent automatically by fail2ban_"

URL="https://api.telegram.org/bot${{BOT_TOKEN}}/sendMessage"

curl -s --max-time 15 -X POST "${{URL}}" \\
    -d "chat_id=${{CHAT_ID}}" \\
    --data-urlencode "text=${{MESSAGE}}" \\
    -d "parse_mode=Markdown" > /dev/null
"""


def validate_credentials(token: str, chat_id: str) -> None:
    if not TOKEN_RE.match(token or ""):
        raise InvalidInputError("Bot token must look like '123456:ABC-def_ghi'")
    if not CHAT_ID_RE.match(chat_id or ""):
        raise InvalidInputError("Chat ID must be an integer (group IDs start with '-')")


def render_action_conf(script: str) -> str:
    return (
        "# fail2ban action for Telegram notifications, generated by hostguard.\n"
        "[Definition]\n"
        f'actionban = {script} "<ip>" "<name>" "<protocol>" "<port>"\n'
        "[Init]\n"
    )


def render_notify_script(token: str, chat_id: str) -> str:
    validate_credentials(token, chat_id)
    return NOTIFY_SCRIPT.format(token=shlex.quote(token), chat_id=shlex.quote(chat_id))


def write_files(session: Session, token: str, chat_id: str) -> List[Path]:
    """Write the action definition and the executable notify script."""
    settings = session.settings
    script = Path(settings.telegram_script)
    action = Path(settings.telegram_action)
    script_body = render_notify_script(token, chat_id)
    written = []
    for path, content, mode in (
        (action, render_action_conf(str(script)), 0o644),
        (script, script_body, 0o755),
    ):
        if path.exists():
            session.backups.backup(path)
        atomic_write(path, content, mode=mode)
        path.chmod(mode)
        logger.info("Wrote %s", path)
        written.append(path)
    session.mark_changed("fail2ban")
    return written


def telegram_enabled(doc: ConfigDocument, jail: str = JAIL) -> bool:
    for index in locate(doc, "action", jail).active:
        block = [doc.lines[index].value or ""]
        block.extend(doc.lines[i].raw for i in doc.continuation(index))
        if any("telegram" in part for part in block):
            return True
    return False


def enable_in_document(doc: ConfigDocument, jail: str = JAIL) -> bool:
    """
    Point the jail's ``action`` at the default action plus telegram.

    Existing action lines (and their continuation lines) in the jail are
    commented out rather than deleted. Returns False when telegram is
    already part of the jail's action.
    """
    if not doc.scope_ranges(jail):
        raise PreconditionError(f"jail.local has no [{jail}] section")
    if telegram_enabled(doc, jail):
        return False
    neutralize_key(doc, "action", jail)
    outcome = apply_target(doc, ConfigTarget("action", ACTION_VALUE, jail))
    doc.insert(outcome.line_index + 1, CONTINUATION)
    return True


def enable_in_jail(session: Session) -> PatchResult:
    result = session.patcher.edit(session.settings.jail_local, INI, enable_in_document)
    if result.changed:
        session.mark_changed("fail2ban")
    return result


def send_test_alert(session: Session) -> None:
    script = session.settings.telegram_script
    if not Path(script).exists():
        raise PreconditionError(f"{script} does not exist; configure Telegram first")
    session.run([script, *TEST_ALERT_ARGS])
    logger.info("Sent Telegram test alert via %s", script)


def restart_fail2ban(session: Session) -> str:
    service = ManagedService("fail2ban", settle=session.settings.restart_settle)
    with ui.spinner("Restarting fail2ban..."):
        restart_service(service)
    session.mark_applied("fail2ban")
    return service.status_text()


def apply_template(session: Session, token: str, chat_id: str) -> None:
    """Non-interactive setup: write files, enable the action, restart fail2ban."""
    validate_credentials(token, chat_id)
    for path in write_files(session, token, chat_id):
        ui.print_success(f"Updated {path}")
    if enable_in_jail(session).changed:
        ui.print_success(f"Enabled Telegram notifications in [{JAIL}]")
    else:
        ui.print_step(f"Telegram already enabled in [{JAIL}]")
    ui.display_panel("fail2ban status", restart_fail2ban(session))


def configure_interactive(session: Session) -> None:
    if not system.command_exists("curl"):
        ui.print_warning("curl is required to send Telegram notifications.")
        if not ui.confirm("Install curl now?", default=True):
            raise PreconditionError("curl is not installed")
        system.install_packages(session.package_manager, ["curl"])

    ui.print_section("Telegram notifications")
    token = ui.ask("Bot token")
    chat_id = ui.ask("Chat ID")
    validate_credentials(token, chat_id)

    for path in write_files(session, token, chat_id):
        ui.print_success(f"Wrote {path}")
    if enable_in_jail(session).changed:
        ui.print_success(f"Enabled Telegram notifications in [{JAIL}]")
    else:
        ui.print_warning(f"Telegram already configured in [{JAIL}]; jail.local left unchanged.")

    if ui.confirm("Restart fail2ban now to apply?", default=True):
        restart_fail2ban(session)
        ui.print_success("fail2ban restarted.")
    if ui.confirm("Send a test alert?", default=False):
        send_test_alert(session)
        ui.print_success("Test alert sent; check your Telegram chat.")
