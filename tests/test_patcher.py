"""Tests for the idempotent config patcher."""

import os
import stat
from pathlib import Path

import pytest

from hostguard.backup import BackupManager
from hostguard.document import FLAT, INI, SSHD, ConfigDocument
from hostguard.errors import (
    ConfigFileNotFoundError,
    InvalidInputError,
    ParseAmbiguousError,
    PartialMultiFileWriteError,
)
from hostguard.locator import ConfigTarget, MatchState
from hostguard.patcher import (
    CommentedPolicy,
    ConfigPatcher,
    apply_target,
    neutralize_key,
)

from conftest import STAMP

BACKUP_SUFFIX = ".bak_2024-05-17_093015"


@pytest.fixture
def patcher(tmp_path: Path) -> ConfigPatcher:
    return ConfigPatcher(BackupManager(STAMP), lock_dir=tmp_path / "locks")


class TestApplyTarget:
    """In-memory patching of a parsed document."""

    def test_replace_value_in_place(self) -> None:
        doc = ConfigDocument.parse("# header\nPort 22  \nUsePAM yes\n", SSHD)
        outcome = apply_target(doc, ConfigTarget("Port", "2222"))
        assert outcome.changed
        assert outcome.state is MatchState.ACTIVE_MATCH_DIFFERENT_VALUE
        assert doc.serialize() == "# header\nPort 2222  \nUsePAM yes\n"

    def test_duplicates_reported_only_last_changed(self) -> None:
        doc = ConfigDocument.parse("Port 22\nPort 23\n", SSHD)
        outcome = apply_target(doc, ConfigTarget("Port", "24"))
        assert outcome.duplicates == [0]
        assert doc.serialize() == "Port 22\nPort 24\n"

    def test_commented_only_append_keeps_example(self) -> None:
        doc = ConfigDocument.parse("#Port 22\n\n", SSHD)
        apply_target(doc, ConfigTarget("Port", "2222"))
        assert doc.serialize() == "#Port 22\nPort 2222\n\n"

    def test_commented_only_uncomment_in_place(self) -> None:
        doc = ConfigDocument.parse("  #Port 22\nUsePAM yes\n", SSHD)
        apply_target(doc, ConfigTarget("Port", "2222"), CommentedPolicy.UNCOMMENT)
        assert doc.serialize() == "  Port 2222\nUsePAM yes\n"

    def test_section_created_when_missing(self) -> None:
        doc = ConfigDocument.parse("[DEFAULT]\nbantime = 1h\n", INI)
        apply_target(doc, ConfigTarget("enabled", "true", "sshd"))
        assert doc.serialize() == "[DEFAULT]\nbantime = 1h\n\n[sshd]\nenabled = true\n"

    def test_malformed_line_raises(self) -> None:
        doc = ConfigDocument.parse("Port\n", SSHD)
        with pytest.raises(ParseAmbiguousError):
            apply_target(doc, ConfigTarget("Port", "2222"))

    def test_multi_line_value_replaced_whole(self) -> None:
        doc = ConfigDocument.parse(
            "[sshd]\nenabled = true\naction = %(action_)s\n         telegram\n", INI
        )
        outcome = apply_target(doc, ConfigTarget("action", "%(action_mwl)s", "sshd"))
        assert outcome.state is MatchState.ACTIVE_MATCH_DIFFERENT_VALUE
        assert doc.serialize() == (
            "[sshd]\nenabled = true\naction = %(action_mwl)s\n#         telegram\n"
        )
        again = apply_target(doc, ConfigTarget("action", "%(action_mwl)s", "sshd"))
        assert again.state is MatchState.ACTIVE_MATCH_SAME_VALUE

    def test_same_first_line_with_continuation_is_different(self) -> None:
        doc = ConfigDocument.parse("[sshd]\naction = %(action_)s\n         telegram\n", INI)
        outcome = apply_target(doc, ConfigTarget("action", "%(action_)s", "sshd"))
        assert outcome.changed
        assert doc.serialize() == "[sshd]\naction = %(action_)s\n#         telegram\n"

    @pytest.mark.parametrize(
        "key,value,dialect",
        [
            ("Port 22", "x", SSHD),
            ("#Port", "22", SSHD),
            ("ban time", "1h", INI),
            ("bantime", "1h\nmaxretry = 9", INI),
            ("bantime", "1h ; one hour", INI),
            ("bantime", "1h # one hour", INI),
        ],
    )
    def test_target_that_would_not_read_back(self, key: str, value: str, dialect) -> None:
        doc = ConfigDocument.parse("[DEFAULT]\n" if dialect is INI else "A 1\n", dialect)
        before = doc.serialize()
        section = "DEFAULT" if dialect is INI else None
        with pytest.raises(InvalidInputError):
            apply_target(doc, ConfigTarget(key, value, section))
        assert doc.serialize() == before

    def test_surrounding_whitespace_in_value_ignored(self) -> None:
        doc = ConfigDocument.parse("Port 22\n", SSHD)
        apply_target(doc, ConfigTarget("Port", " 2222 "))
        assert doc.serialize() == "Port 2222\n"
        assert not apply_target(doc, ConfigTarget("Port", "2222")).changed

    def test_neutralize_key(self) -> None:
        doc = ConfigDocument.parse("Port 22\nPortForwarding no\n  Port 23\n", SSHD)
        assert neutralize_key(doc, "Port") == [0, 2]
        assert doc.serialize() == (
            "# Port 22 (disabled)\nPortForwarding no\n  # Port 23 (disabled)\n"
        )

    def test_neutralize_comments_out_continuation(self) -> None:
        doc = ConfigDocument.parse("[sshd]\naction = %(action_mwl)s\n    sendmail\n", INI)
        neutralize_key(doc, "action", "sshd")
        assert doc.serialize() == (
            "[sshd]\n# action = %(action_mwl)s (disabled)\n#    sendmail\n"
        )


class TestPatchFile:
    """Read-modify-write cycles on disk."""

    def test_flat_replace_takes_backup(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "sshd_config"
        path.write_text("Port 22\nPermitRootLogin yes\n")

        result = patcher.set_value(path, "Port", "2222", SSHD)

        assert result.changed
        assert path.read_text() == "Port 2222\nPermitRootLogin yes\n"
        assert result.backup_path == tmp_path / f"sshd_config{BACKUP_SUFFIX}"
        assert result.backup_path.read_text() == "Port 22\nPermitRootLogin yes\n"

    def test_flat_add(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "sshd_config"
        path.write_text("PermitRootLogin no\n")
        patcher.set_value(path, "Port", "2222", SSHD)
        assert path.read_text() == "PermitRootLogin no\nPort 2222\n"

    def test_idempotent_second_run(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "sshd_config"
        path.write_text("Port 22\n")
        patcher.set_value(path, "Port", "2222", SSHD)
        mtime = path.stat().st_mtime_ns

        again = ConfigPatcher(BackupManager(), lock_dir=tmp_path / "locks")
        result = again.set_value(path, "Port", "2222", SSHD)

        assert not result.changed
        assert result.state is MatchState.ACTIVE_MATCH_SAME_VALUE
        assert result.backup_path is None
        assert path.stat().st_mtime_ns == mtime

    def test_ini_scoped_to_default(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "jail.local"
        path.write_text("[DEFAULT]\nbantime = 1h\n\n[sshd]\nbantime = 5m\n")
        patcher.set_value(path, "bantime", "23h", INI, section="DEFAULT")
        assert path.read_text() == "[DEFAULT]\nbantime = 23h\n\n[sshd]\nbantime = 5m\n"

    def test_several_targets_in_one_write(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "jail.local"
        path.write_text("[DEFAULT]\nbantime = 1h\n")
        result = patcher.patch(
            path,
            [ConfigTarget("bantime", "23h", "DEFAULT"), ConfigTarget("maxretry", "3", "DEFAULT")],
            INI,
        )
        assert [o.changed for o in result.outcomes] == [True, True]
        assert path.read_text() == "[DEFAULT]\nbantime = 23h\nmaxretry = 3\n"

    def test_multi_line_action_rewritten(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "jail.local"
        path.write_text("[sshd]\nenabled = true\naction = %(action_)s\n         telegram\n")

        result = patcher.set_value(path, "action", "%(action_mwl)s", INI, section="sshd")

        assert result.changed
        assert path.read_text() == (
            "[sshd]\nenabled = true\naction = %(action_mwl)s\n#         telegram\n"
        )
        again = patcher.set_value(path, "action", "%(action_mwl)s", INI, section="sshd")
        assert not again.changed

    def test_invalid_target_leaves_file_alone(
        self, tmp_path: Path, patcher: ConfigPatcher
    ) -> None:
        path = tmp_path / "x.conf"
        path.write_text("A 1\n")
        with pytest.raises(InvalidInputError):
            patcher.set_value(path, "Port 22", "x", FLAT)
        assert path.read_text() == "A 1\n"
        assert not list(tmp_path.glob("x.conf.bak_*"))

    def test_missing_file(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        with pytest.raises(ConfigFileNotFoundError):
            patcher.set_value(tmp_path / "absent.conf", "Port", "2222", SSHD)
        assert not (tmp_path / "absent.conf").exists()

    def test_create_new_file(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "new.conf"
        result = patcher.set_value(path, "Port", "2222", SSHD, create=True)
        assert result.changed
        assert result.backup_path is None
        assert path.read_text() == "Port 2222\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o644

    def test_permissions_preserved(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "sshd_config"
        path.write_text("Port 22\n")
        os.chmod(path, 0o600)
        patcher.set_value(path, "Port", "2222", SSHD)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_one_backup_per_run(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "sshd_config"
        path.write_text("Port 22\n")
        first = patcher.set_value(path, "Port", "2222", SSHD)
        second = patcher.set_value(path, "Port", "2200", SSHD)
        assert first.backup_path == second.backup_path
        assert first.backup_path.read_text() == "Port 22\n"

    def test_dry_run_leaves_file_alone(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "sshd_config"
        path.write_text("Port 22\n")
        result = patcher.plan(path, [ConfigTarget("Port", "2222")], SSHD)
        assert result.changed
        assert path.read_text() == "Port 22\n"
        assert "-Port 22\n" in result.diff()
        assert "+Port 2222\n" in result.diff()
        assert not list(tmp_path.glob("*.bak_*"))

    def test_lock_file_created(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        path = tmp_path / "sshd_config"
        path.write_text("Port 22\n")
        patcher.set_value(path, "Port", "2222", SSHD)
        assert list((tmp_path / "locks").glob("*.lock"))

    def test_edit_without_effective_change_does_not_write(
        self, tmp_path: Path, patcher: ConfigPatcher
    ) -> None:
        path = tmp_path / "hosts"
        path.write_text("127.0.0.1 localhost\n")
        result = patcher.edit(path, FLAT, lambda doc: True)
        assert not result.changed
        assert result.backup_path is None


class TestLayeredPatch:
    """Writing an override file while disabling the key in the primary file."""

    def test_two_file_precedence(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        primary = tmp_path / "sshd_config"
        override = tmp_path / "sshd_config.d" / "99-hostguard.conf"
        primary.write_text("Include sshd_config.d/*.conf\nPort 22\n")

        result = patcher.patch_layered(primary, override, ConfigTarget("Port", "2222"), SSHD)

        assert result.changed
        assert primary.read_text() == "Include sshd_config.d/*.conf\n# Port 22 (disabled)\n"
        assert override.read_text() == "Port 2222\n"

        rerun = patcher.patch_layered(primary, override, ConfigTarget("Port", "2222"), SSHD)
        assert not rerun.changed

    def test_partial_failure_reported(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        primary = tmp_path / "sshd_config"
        primary.write_text("Port 22\n")
        blocker = tmp_path / "conf.d"
        blocker.write_text("not a directory\n")

        with pytest.raises(PartialMultiFileWriteError) as excinfo:
            patcher.patch_layered(primary, blocker / "99.conf", ConfigTarget("Port", "2222"), SSHD)

        assert excinfo.value.completed == [str(primary)]
        assert excinfo.value.failed == str(blocker / "99.conf")
        assert primary.read_text() == "# Port 22 (disabled)\n"

    def test_failure_without_primary_change_is_plain(
        self, tmp_path: Path, patcher: ConfigPatcher
    ) -> None:
        primary = tmp_path / "sshd_config"
        primary.write_text("UsePAM yes\n")
        blocker = tmp_path / "conf.d"
        blocker.write_text("not a directory\n")

        with pytest.raises(OSError):
            patcher.patch_layered(primary, blocker / "99.conf", ConfigTarget("Port", "2222"), SSHD)

    def test_shadowing_files_disabled(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        primary = tmp_path / "sshd_config"
        conf_d = tmp_path / "sshd_config.d"
        conf_d.mkdir()
        cloud = conf_d / "50-cloud-init.conf"
        cloud.write_text("PasswordAuthentication yes\n")
        override = conf_d / "99-hostguard.conf"
        primary.write_text("Include sshd_config.d/*.conf\n")
        target = ConfigTarget("PasswordAuthentication", "no")

        result = patcher.patch_layered(primary, override, target, SSHD, shadows=[cloud])

        assert result.changed
        assert not result.primary.changed
        assert [r.changed for r in result.shadows] == [True]
        assert cloud.read_text() == "# PasswordAuthentication yes (disabled)\n"
        assert result.shadows[0].backup_path.read_text() == "PasswordAuthentication yes\n"
        assert override.read_text() == "PasswordAuthentication no\n"

    def test_partial_failure_in_shadow_file(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        primary = tmp_path / "sshd_config"
        primary.write_text("Port 22\n")
        unreadable = tmp_path / "50-broken.conf"
        unreadable.mkdir()

        with pytest.raises(PartialMultiFileWriteError) as excinfo:
            patcher.patch_layered(
                primary, tmp_path / "99.conf", ConfigTarget("Port", "2222"), SSHD,
                shadows=[unreadable],
            )

        assert excinfo.value.completed == [str(primary)]
        assert excinfo.value.failed == str(unreadable)
        assert not (tmp_path / "99.conf").exists()

    def test_invalid_target_touches_nothing(self, tmp_path: Path, patcher: ConfigPatcher) -> None:
        primary = tmp_path / "sshd_config"
        primary.write_text("Port 22\n")
        with pytest.raises(InvalidInputError):
            patcher.patch_layered(
                primary, tmp_path / "99.conf", ConfigTarget("Port", "1 2\n"), SSHD
            )
        assert primary.read_text() == "Port 22\n"
