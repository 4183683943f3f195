"""Pytest configuration and fixtures for hostguard tests."""

import datetime
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from hostguard import system
from hostguard.backup import BackupManager
from hostguard.errors import CommandFailedError
from hostguard.patcher import ConfigPatcher
from hostguard.settings import AppSettings
from hostguard.system import PackageManager, Session

STAMP = datetime.datetime(2024, 5, 17, 9, 30, 15)


class FakeRunner:
    """Stand-in for ``system.run_command`` that records argv and replays canned results.

    Responses are keyed by an argv prefix; the longest matching prefix wins and
    unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.responses: Dict[Tuple[str, ...], Tuple[int, str, str]] = {}

    def respond(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.responses[tuple(prefix)] = (returncode, stdout, stderr)

    def __call__(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = True,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        cmd = list(cmd)
        self.calls.append(cmd)
        returncode, stdout, stderr = 0, "", ""
        best = -1
        for prefix, response in self.responses.items():
            if tuple(cmd[: len(prefix)]) == prefix and len(prefix) > best:
                best = len(prefix)
                returncode, stdout, stderr = response
        if check and returncode != 0:
            raise CommandFailedError(cmd, returncode, stdout, stderr)
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def ran(self, *prefix: str) -> bool:
        return any(tuple(call[: len(prefix)]) == prefix for call in self.calls)


@pytest.fixture
def runner(monkeypatch) -> FakeRunner:
    """Replace every external command with a FakeRunner."""
    fake = FakeRunner()
    monkeypatch.setattr(system, "run_command", fake)
    return fake


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    """Settings whose managed paths all live under tmp_path."""
    etc = tmp_path / "etc"
    (etc / "fail2ban" / "action.d").mkdir(parents=True)
    (etc / "ssh" / "sshd_config.d").mkdir(parents=True)
    return AppSettings(
        fail2ban_dir=str(etc / "fail2ban"),
        jail_local=str(etc / "fail2ban" / "jail.local"),
        fail2ban_log=str(tmp_path / "fail2ban.log"),
        telegram_action=str(etc / "fail2ban" / "action.d" / "telegram.conf"),
        telegram_script=str(etc / "fail2ban" / "action.d" / "telegram-notify.sh"),
        rsyslog_conf=str(etc / "rsyslog.conf"),
        journald_conf=str(etc / "journald.conf"),
        sshd_config=str(etc / "ssh" / "sshd_config"),
        sshd_override=str(etc / "ssh" / "sshd_config.d" / "99-hostguard.conf"),
        authorized_keys=str(tmp_path / "root" / ".ssh" / "authorized_keys"),
        hosts_file=str(etc / "hosts"),
        cloud_cfg=str(etc / "cloud.cfg"),
        restart_settle=0,
        log_file=None,
        lock_dir=str(tmp_path / "locks"),
    )


@pytest.fixture
def session(settings: AppSettings) -> Session:
    patcher = ConfigPatcher(BackupManager(STAMP), lock_dir=settings.lock_dir)
    return Session(settings=settings, patcher=patcher, manager=PackageManager.APT)


@pytest.fixture
def answers(monkeypatch):
    """Script the interactive prompts: ``answers(ask=[...], confirm=[...])``."""
    from hostguard import ui

    def _install(ask: Optional[List[str]] = None, confirm: Optional[List[bool]] = None) -> None:
        ask_queue = list(ask or [])
        confirm_queue = list(confirm or [])
        monkeypatch.setattr(ui, "ask", lambda message, default=None: ask_queue.pop(0))
        monkeypatch.setattr(ui, "confirm", lambda message, default=False: confirm_queue.pop(0))

    return _install
