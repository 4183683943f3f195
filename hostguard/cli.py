"""Command-line entry point: ``hostguard <tool>``."""

import signal
import sys
from typing import Any, Optional

import click
from rich.traceback import install as install_rich_traceback

from . import __version__, fail2ban, hostname, ssh, system, telegram, ui
from .document import DIALECTS, get_dialect
from .errors import HostGuardError, NotRootError, UnsupportedPackageManagerError
from .locator import ConfigTarget, effective_value
from .logs import logger, setup_logging
from .patcher import CommentedPolicy
from .settings import load_settings, resolve_config_path, save_settings
from .system import Session


# ----------------------------------------------------------------
# Signal Handling
# ----------------------------------------------------------------
def signal_handler(sig: int, frame: Any) -> None:
    sig_name = signal.Signals(sig).name
    ui.print_warning(f"Process interrupted by {sig_name}")
    sys.exit(128 + sig)


def setup_signal_handlers() -> None:
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def _fail(error: HostGuardError, code: int = 1) -> None:
    ui.print_error(str(error))
    sys.exit(code)


def _start_tool(session: Session, needs_package_manager: bool = False) -> None:
    """Checks every system tool makes before touching anything."""
    try:
        system.check_root()
        if needs_package_manager:
            ui.print_step(f"Package manager: {session.package_manager.value}")
    except (NotRootError, UnsupportedPackageManagerError) as e:
        _fail(e)


# ----------------------------------------------------------------
# Commands
# ----------------------------------------------------------------
@click.group()
@click.version_option(__version__, prog_name="hostguard")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Settings file (default: $HOSTGUARD_CONFIG or /etc/hostguard/config.json).",
)
@click.option("--debug", is_flag=True, help="Echo log records to the terminal.")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], debug: bool) -> None:
    """Harden a Linux host: fail2ban, sshd and hostname tools."""
    try:
        settings = load_settings(config_path)
    except HostGuardError as e:
        _fail(e)
    setup_logging(settings.log_file, debug=debug, console=ui.console)
    logger.info("hostguard %s: %s", __version__, " ".join(sys.argv[1:]))
    ctx.obj = Session(settings=settings, config_path=resolve_config_path(config_path))


@cli.command("fail2ban")
@click.pass_obj
def fail2ban_cmd(session: Session) -> None:
    """Interactive fail2ban manager."""
    _start_tool(session, needs_package_manager=True)
    fail2ban.run_menu(session)


@cli.command("ssh")
@click.pass_obj
def ssh_cmd(session: Session) -> None:
    """Interactive sshd hardening menu."""
    _start_tool(session)
    ssh.run_menu(session)


@cli.command("hostname")
@click.argument("new_hostname", required=False)
@click.pass_obj
def hostname_cmd(session: Session, new_hostname: Optional[str]) -> None:
    """Change the hostname to NEW_HOSTNAME."""
    _start_tool(session)
    ui.show_header("hostname")
    if not new_hostname:
        new_hostname = ui.ask("New hostname")
    try:
        change = hostname.change_hostname(session, new_hostname)
        if change.changed:
            ui.print_success("Hostname change complete. Log in again to see it in your prompt.")
        hostname.show_status(session)
    except HostGuardError as e:
        _fail(e)


@cli.command("telegram-template")
@click.argument("bot_token")
@click.argument("chat_id")
@click.pass_obj
def telegram_cmd(session: Session, bot_token: str, chat_id: str) -> None:
    """Install the Telegram ban notification script for BOT_TOKEN and CHAT_ID."""
    _start_tool(session)
    try:
        telegram.apply_template(session, bot_token, chat_id)
        ui.print_success("Telegram notifications configured.")
    except HostGuardError as e:
        _fail(e)


@cli.command("patch")
@click.argument("path", type=click.Path(dir_okay=False))
@click.argument("key")
@click.argument("value")
@click.option(
    "--dialect",
    type=click.Choice(sorted(DIALECTS)),
    default="flat",
    show_default=True,
    help="Line syntax of the file.",
)
@click.option("--section", default=None, help="Section for ini-style dialects.")
@click.option("--uncomment", is_flag=True, help="Reuse a commented-out line for the key.")
@click.option("--create", is_flag=True, help="Create the file if it does not exist.")
@click.option("--dry-run", is_flag=True, help="Show the diff without writing.")
@click.pass_obj
def patch_cmd(
    session: Session,
    path: str,
    key: str,
    value: str,
    dialect: str,
    section: Optional[str],
    uncomment: bool,
    create: bool,
    dry_run: bool,
) -> None:
    """Ensure KEY is set to VALUE in the config file PATH."""
    target = ConfigTarget(key, value, section)
    policy = CommentedPolicy.UNCOMMENT if uncomment else CommentedPolicy.APPEND
    patcher = session.patcher
    try:
        if dry_run:
            result = patcher.plan(path, [target], get_dialect(dialect), policy=policy, create=create)
        else:
            result = patcher.patch(path, [target], get_dialect(dialect), policy=policy, create=create)
    except HostGuardError as e:
        _fail(e)
    except (OSError, ValueError) as e:
        _fail(HostGuardError(f"Cannot update {path}: {e}"))

    if not result.changed:
        ui.print_success(f"{path}: {target.describe()} already set ({result.state.value}).")
        return
    if dry_run:
        ui.console.print(result.diff(), markup=False, highlight=False)
        return
    ui.print_success(f"{path}: {target.describe()} ({result.state.value})")
    if result.backup_path:
        ui.print_step(f"Backup: {result.backup_path}")


@cli.command("get")
@click.argument("path", type=click.Path(dir_okay=False))
@click.argument("key")
@click.option(
    "--dialect", type=click.Choice(sorted(DIALECTS)), default="flat", show_default=True
)
@click.option("--section", default=None)
@click.pass_obj
def get_cmd(
    session: Session, path: str, key: str, dialect: str, section: Optional[str]
) -> None:
    """Print the effective value of KEY in PATH (exit 1 when unset)."""
    try:
        doc = session.patcher.load(path, get_dialect(dialect))
    except HostGuardError as e:
        _fail(e)
    try:
        value = effective_value(doc, key, section)
    except ValueError as e:
        _fail(HostGuardError(str(e)))
    if value is None:
        sys.exit(1)
    click.echo(value)


@cli.command("settings")
@click.option("--save", is_flag=True, help="Write the current settings to the settings file.")
@click.pass_obj
def settings_cmd(session: Session, save: bool) -> None:
    """Show the active settings."""
    rows = [(name, str(value)) for name, value in session.settings.to_dict().items()]
    ui.display_table(f"Settings ({session.config_path})", ["Setting", "Value"], rows)
    if save:
        try:
            written = save_settings(session.settings, session.config_path)
        except OSError as e:
            _fail(HostGuardError(f"Cannot save settings: {e}"))
        ui.print_success(f"Saved settings to {written}")


def main() -> None:
    install_rich_traceback(show_locals=False)
    setup_signal_handlers()
    cli()


if __name__ == "__main__":
    main()
