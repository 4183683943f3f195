"""Tests for the fail2ban manager."""

from pathlib import Path

import pytest

from hostguard import fail2ban
from hostguard.errors import ConfigFileNotFoundError, InvalidInputError, PreconditionError
from hostguard.system import FirewallBackend, LogBackend, PackageManager

SSHD_STATUS = """\
Status for the jail: sshd
|- Filter
|  |- Currently failed:\t1
|  |- Total failed:\t14
|  `- File list:\t/var/log/auth.log
`- Actions
   |- Currently banned:\t2
   |- Total banned:\t5
   `- Banned IP list:\t192.0.2.10 198.51.100.7
"""

GLOBAL_STATUS = """\
Status
|- Number of jail:\t2
`- Jail list:\tsshd, recidive
"""

FAIL2BAN_LOG = """\
2024-05-17 09:00:01,123 fail2ban.filter [811]: INFO [sshd] Found 192.0.2.10
2024-05-17 09:00:02,456 fail2ban.actions [811]: NOTICE [sshd] Ban 192.0.2.10
2024-05-17 10:00:02,789 fail2ban.actions [811]: NOTICE [sshd] Unban 192.0.2.10
2024-05-17 10:05:00,000 fail2ban.actions [811]: NOTICE [sshd] Banned list refreshed
"""


@pytest.fixture
def jail_local(session) -> Path:
    content = fail2ban.render_jail_local(
        fail2ban.JailOptions(),
        FirewallBackend.NFTABLES,
        LogBackend(backend="auto", logpath="%(sshd_log)s", auth_log="/var/log/auth.log"),
    )
    path = Path(session.settings.jail_local)
    path.write_text(content)
    return path


class TestRenderJailLocal:
    """Generated jail.local contents."""

    def test_file_backend(self, jail_local: Path) -> None:
        text = jail_local.read_text()
        assert "[DEFAULT]\nignoreip = 127.0.0.1/8 ::1\nbanaction = nftables-multiport\n" in text
        assert "bantime = 23h\nfindtime = 10m\nmaxretry = 3\n" in text
        assert text.endswith(
            "[sshd]\nenabled = true\nport = ssh\nmaxretry = 3\n"
            "logpath = %(sshd_log)s\nbackend = auto\n"
        )

    def test_journal_backend_has_no_logpath(self) -> None:
        text = fail2ban.render_jail_local(
            fail2ban.JailOptions(ssh_port="2222"),
            FirewallBackend.IPTABLES,
            LogBackend(backend="systemd"),
        )
        assert "logpath" not in text
        assert "port = 2222\n" in text
        assert text.endswith("backend = systemd\n")

    def test_options_from_settings(self, session) -> None:
        session.settings.bantime = "1d"
        assert fail2ban.JailOptions.from_settings(session).bantime == "1d"

    def test_packages_per_manager(self) -> None:
        assert "python3-systemd" in fail2ban.packages_for(PackageManager.APT)
        assert "python3-systemd" not in fail2ban.packages_for(PackageManager.DNF)


class TestJailDefaults:
    """Tuning bantime/findtime/maxretry through the patcher."""

    def test_update_only_touches_default_section(self, session, jail_local: Path) -> None:
        result = fail2ban.update_jail_defaults(
            session, {"bantime": "2d", "findtime": "", "maxretry": "5"}
        )

        assert result.changed
        assert fail2ban.read_jail_defaults(session) == {
            "bantime": "2d",
            "findtime": "10m",
            "maxretry": "5",
        }
        assert "[sshd]\nenabled = true\nport = ssh\nmaxretry = 3\n" in jail_local.read_text()
        assert "fail2ban" in session.pending_restart

    def test_same_values_leave_file_alone(self, session, jail_local: Path) -> None:
        result = fail2ban.update_jail_defaults(session, {"bantime": "23h"})
        assert not result.changed
        assert session.pending_restart == set()

    def test_unknown_key_rejected(self, session, jail_local: Path) -> None:
        with pytest.raises(InvalidInputError):
            fail2ban.update_jail_defaults(session, {"banaction": "iptables"})

    def test_missing_jail_local(self, session) -> None:
        with pytest.raises(ConfigFileNotFoundError):
            fail2ban.update_jail_defaults(session, {"bantime": "2d"})

    def test_write_jail_local_backs_up(self, session, jail_local: Path) -> None:
        fail2ban.write_jail_local(session, "[DEFAULT]\n")
        assert jail_local.read_text() == "[DEFAULT]\n"
        assert session.backups.taken[jail_local.absolute()].read_text().startswith("# Generated")


class TestLogCompression:
    """rsyslog and journald settings that hide repeated failures."""

    def test_rsyslog_and_journald_patched(self, session, runner) -> None:
        runner.respond("systemctl", "is-active", stdout="active\n")
        settings = session.settings
        Path(settings.rsyslog_conf).write_text("$RepeatedMsgReduction on\n$FileOwner root\n")
        Path(settings.journald_conf).write_text(
            "[Journal]\n#Storage=auto\n#RateLimitIntervalSec=30s\n#RateLimitBurst=10000\n"
        )

        changed = fail2ban.disable_log_compression(session)

        assert changed == ["rsyslog", "systemd-journald"]
        assert Path(settings.rsyslog_conf).read_text() == (
            "$RepeatedMsgReduction off\n$FileOwner root\n"
        )
        assert Path(settings.journald_conf).read_text() == (
            "[Journal]\n#Storage=auto\nRateLimitIntervalSec=0\nRateLimitBurst=0\n"
        )
        assert ["systemctl", "restart", "rsyslog"] in runner.calls
        assert ["systemctl", "restart", "systemd-journald"] in runner.calls

    def test_already_off_is_untouched(self, session, runner) -> None:
        settings = session.settings
        Path(settings.rsyslog_conf).write_text("$RepeatedMsgReduction off\n")
        Path(settings.journald_conf).write_text(
            "[Journal]\nRateLimitIntervalSec=0\nRateLimitBurst=0\n"
        )

        assert fail2ban.disable_log_compression(session) == []
        assert not runner.calls

    def test_missing_files_skipped(self, session, runner) -> None:
        assert fail2ban.disable_log_compression(session, restart=False) == []


class TestStatus:
    """Parsing fail2ban-client output."""

    def test_parse_jail_status(self) -> None:
        jail = fail2ban.parse_jail_status("sshd", SSHD_STATUS)
        assert jail.currently_failed == 1
        assert jail.total_failed == 14
        assert jail.currently_banned == 2
        assert jail.total_banned == 5
        assert jail.banned_ips == ["192.0.2.10", "198.51.100.7"]

    def test_parse_jail_list(self) -> None:
        assert fail2ban.parse_jail_list(GLOBAL_STATUS) == ["sshd", "recidive"]

    def test_empty_ban_list(self) -> None:
        jail = fail2ban.parse_jail_status("sshd", "`- Banned IP list:\t\n")
        assert jail.banned_ips == []

    def test_list_jails(self, session, runner) -> None:
        runner.respond("fail2ban-client", "status", stdout=GLOBAL_STATUS)
        runner.respond("fail2ban-client", "status", "sshd", stdout=SSHD_STATUS)
        jails = fail2ban.list_jails(session)
        assert [j.name for j in jails] == ["sshd", "recidive"]
        assert jails[0].currently_banned == 2


class TestBans:
    def test_ban_normalises_address(self, session, runner) -> None:
        fail2ban.ban_ip(session, " 2001:DB8::1 ")
        assert runner.calls == [["fail2ban-client", "set", "sshd", "banip", "2001:db8::1"]]

    def test_unban_other_jail(self, session, runner) -> None:
        fail2ban.unban_ip(session, "192.0.2.10", jail="recidive")
        assert runner.calls == [["fail2ban-client", "set", "recidive", "unbanip", "192.0.2.10"]]

    def test_invalid_ip_never_reaches_fail2ban(self, session, runner) -> None:
        with pytest.raises(InvalidInputError):
            fail2ban.ban_ip(session, "192.0.2.300")
        assert not runner.calls

    def test_ban_events(self, session) -> None:
        Path(session.settings.fail2ban_log).write_text(FAIL2BAN_LOG)
        events = fail2ban.ban_events(session.settings.fail2ban_log)
        assert len(events) == 2
        assert events[0].endswith("Ban 192.0.2.10")
        assert events[1].endswith("Unban 192.0.2.10")

    def test_missing_log(self, session) -> None:
        with pytest.raises(ConfigFileNotFoundError):
            fail2ban.tail(session.settings.fail2ban_log)


class TestLifecycle:
    """Install and start flows with scripted answers."""

    def test_start_requires_install(self, session, monkeypatch) -> None:
        monkeypatch.setattr(fail2ban, "is_installed", lambda: False)
        with pytest.raises(PreconditionError):
            fail2ban.start(session)

    def test_firewall_install_declined(self, session, monkeypatch, answers) -> None:
        monkeypatch.setattr(fail2ban.system, "detect_firewall_backend", lambda: None)
        answers(confirm=[False])
        with pytest.raises(PreconditionError):
            fail2ban.ensure_firewall_backend(session)

    def test_prompted_port_validated(self, session, answers) -> None:
        answers(ask=["twenty-two"])
        with pytest.raises(InvalidInputError):
            fail2ban.prompt_jail_options(session)

    def test_install_writes_jail_and_starts(self, session, runner, monkeypatch, answers) -> None:
        installed = iter([False, True, True])
        monkeypatch.setattr(fail2ban, "is_installed", lambda: next(installed))
        monkeypatch.setattr(
            fail2ban.system, "detect_firewall_backend", lambda: FirewallBackend.NFTABLES
        )
        monkeypatch.setattr(
            fail2ban.system, "detect_log_backend", lambda: LogBackend(backend="systemd")
        )
        monkeypatch.setattr(fail2ban.system, "journal_bindings_available", lambda: True)
        runner.respond("systemctl", "is-active", stdout="active\n")
        answers(ask=["2222", "10.0.0.0/8", "1h", "5m", "4", "2"])

        fail2ban.install(session)

        text = Path(session.settings.jail_local).read_text()
        assert "ignoreip = 10.0.0.0/8\n" in text
        assert "port = 2222\nmaxretry = 2\nbackend = systemd\n" in text
        assert ["apt-get", "update"] in runner.calls
        assert ["systemctl", "enable", "fail2ban"] in runner.calls
        assert session.pending_restart == set()
