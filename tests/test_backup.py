"""Tests for run-scoped backups and atomic file helpers."""

import os
import stat
from pathlib import Path

from hostguard.backup import BackupManager
from hostguard.fileio import atomic_write, file_lock, lock_path_for, read_text

from conftest import STAMP


class TestBackupManager:
    """Backup naming and first-backup-wins behaviour."""

    def test_name_uses_run_stamp(self, tmp_path: Path) -> None:
        manager = BackupManager(STAMP)
        assert manager.backup_name(tmp_path / "jail.local") == (
            tmp_path / "jail.local.bak_2024-05-17_093015"
        )

    def test_first_backup_wins(self, tmp_path: Path) -> None:
        path = tmp_path / "hosts"
        path.write_text("original\n")
        manager = BackupManager(STAMP)

        first = manager.backup(path)
        path.write_text("changed\n")
        second = manager.backup(path)

        assert first == second
        assert first.read_text() == "original\n"
        assert manager.taken == {path.absolute(): first}

    def test_existing_backup_is_never_overwritten(self, tmp_path: Path) -> None:
        path = tmp_path / "hosts"
        path.write_text("new\n")
        (tmp_path / "hosts.bak_2024-05-17_093015").write_text("older run\n")

        backup = BackupManager(STAMP).backup(path)

        assert backup == tmp_path / "hosts.bak_2024-05-17_093015.1"
        assert (tmp_path / "hosts.bak_2024-05-17_093015").read_text() == "older run\n"

    def test_missing_file_has_no_backup(self, tmp_path: Path) -> None:
        assert BackupManager(STAMP).backup(tmp_path / "absent") is None


class TestFileIO:
    """Atomic replacement and advisory locking."""

    def test_atomic_write_keeps_mode(self, tmp_path: Path) -> None:
        path = tmp_path / "sshd_config"
        path.write_text("old\n")
        os.chmod(path, 0o600)
        atomic_write(path, "new\n")
        assert path.read_text() == "new\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_atomic_write_new_file_mode(self, tmp_path: Path) -> None:
        path = tmp_path / "sub" / "notify.sh"
        atomic_write(path, "#!/bin/sh\n", mode=0o755)
        assert stat.S_IMODE(path.stat().st_mode) == 0o755

    def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        atomic_write(tmp_path / "a.conf", "x\n")
        assert [p.name for p in tmp_path.iterdir()] == ["a.conf"]

    def test_undecodable_bytes_survive(self, tmp_path: Path) -> None:
        path = tmp_path / "legacy.conf"
        path.write_bytes(b"Banner caf\xe9\n")
        atomic_write(path, read_text(path))
        assert path.read_bytes() == b"Banner caf\xe9\n"

    def test_crlf_preserved(self, tmp_path: Path) -> None:
        path = tmp_path / "dos.conf"
        path.write_bytes(b"a 1\r\n")
        assert read_text(path) == "a 1\r\n"

    def test_lock_path_is_flattened(self, tmp_path: Path) -> None:
        lock = lock_path_for("/etc/ssh/sshd_config", tmp_path)
        assert lock == tmp_path / "etc_ssh_sshd_config.lock"

    def test_file_lock_creates_lock_file(self, tmp_path: Path) -> None:
        target = tmp_path / "jail.local"
        with file_lock(target, tmp_path / "locks"):
            assert lock_path_for(target, tmp_path / "locks").exists()

    def test_file_lock_disabled(self, tmp_path: Path) -> None:
        with file_lock(tmp_path / "jail.local", None):
            pass
        assert list(tmp_path.iterdir()) == []
