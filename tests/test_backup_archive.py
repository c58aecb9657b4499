"""
Tests for BackupArchive - snapshot, list, get, restore.
"""

import json
import os
import stat
from datetime import datetime
from unittest.mock import patch

import pytest

from keywarden.backup.archive import BackupArchive, restore_mode
from keywarden.exceptions import BackupError, BackupNotFoundError


def _mode(path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


@pytest.fixture
def key_files(ssh_dir):
    private = ssh_dir / "id_ed25519"
    public = ssh_dir / "id_ed25519.pub"
    authorized = ssh_dir / "authorized_keys"
    private.write_bytes(b"PRIVATE KEY BYTES\n")
    public.write_bytes(b"ssh-ed25519 AAAA me@host\n")
    authorized.write_bytes(b"ssh-ed25519 AAAA me@host\n")
    os.chmod(private, 0o600)
    os.chmod(public, 0o644)
    os.chmod(authorized, 0o600)
    return private, public, authorized


@pytest.fixture
def archive(ssh_dir):
    return BackupArchive(ssh_dir / "backup")


class TestSnapshot:

    def test_nothing_to_back_up(self, archive, ssh_dir):
        assert archive.snapshot([ssh_dir / "id_rsa", ssh_dir / "id_rsa.pub"]) is None
        assert not archive.root.exists()

    def test_copies_files_with_basenames(self, archive, key_files):
        record = archive.snapshot(key_files)

        assert record.backup_id.startswith("backup_")
        assert record.archive_dir.parent == archive.root
        names = sorted(p.name for p in record.archive_dir.iterdir())
        assert names == ["authorized_keys", "id_ed25519", "id_ed25519.pub", "manifest.json"]
        assert (record.archive_dir / "id_ed25519").read_bytes() == b"PRIVATE KEY BYTES\n"

    def test_skips_missing_paths(self, archive, key_files, ssh_dir):
        record = archive.snapshot([key_files[0], ssh_dir / "id_rsa"])
        assert [e.name for e in record.entries] == ["id_ed25519"]

    def test_archive_dirs_are_private(self, archive, key_files):
        record = archive.snapshot(key_files)
        assert _mode(archive.root) == 0o700
        assert _mode(record.archive_dir) == 0o700
        assert _mode(record.archive_dir / "id_ed25519.pub") == 0o600

    def test_manifest_records_source_and_mode(self, archive, key_files):
        record = archive.snapshot(key_files)
        manifest = json.loads((record.archive_dir / "manifest.json").read_text())
        by_name = {f["name"]: f for f in manifest["files"]}
        assert by_name["id_ed25519.pub"]["mode"] == "0o644"
        assert by_name["id_ed25519"]["source"] == str(key_files[0].resolve())

    def test_same_instant_gets_suffix(self, archive, key_files):
        fixed = datetime(2024, 5, 1, 12, 0, 0, 123456)
        with patch("keywarden.backup.archive.datetime") as dt:
            dt.now.return_value = fixed
            first = archive.snapshot(key_files)
            second = archive.snapshot(key_files)
        assert first.backup_id == "backup_20240501_120000_123456"
        assert second.backup_id == "backup_20240501_120000_123456_1"

    def test_copy_failure_removes_partial_snapshot(self, archive, key_files):
        with patch("keywarden.backup.archive.shutil.copyfile", side_effect=OSError("no space")):
            with pytest.raises(BackupError, match="no space"):
                archive.snapshot(key_files)
        assert list(archive.root.iterdir()) == []


class TestListAndGet:

    def test_empty_when_root_missing(self, archive):
        assert archive.list() == []
        assert archive.latest() is None

    def test_chronological_order(self, archive, key_files):
        stamps = [datetime(2024, 1, 2), datetime(2023, 12, 31), datetime(2024, 3, 1)]
        with patch("keywarden.backup.archive.datetime") as dt:
            dt.now.side_effect = stamps
            dt.fromisoformat.side_effect = datetime.fromisoformat
            dt.strptime.side_effect = datetime.strptime
            for _ in stamps:
                archive.snapshot(key_files)

        ids = [r.backup_id for r in archive.list()]
        assert ids == [
            "backup_20231231_000000_000000",
            "backup_20240102_000000_000000",
            "backup_20240301_000000_000000",
        ]
        assert archive.latest().backup_id == "backup_20240301_000000_000000"

    def test_get_round_trips_entries(self, archive, key_files):
        record = archive.snapshot(key_files)
        loaded = archive.get(record.backup_id)
        assert loaded.backup_id == record.backup_id
        assert loaded.sources == record.sources
        assert loaded.timestamp == record.timestamp

    def test_get_unknown(self, archive):
        with pytest.raises(BackupNotFoundError):
            archive.get("backup_19990101_000000_000000")

    def test_get_rejects_path_traversal(self, archive):
        with pytest.raises(BackupNotFoundError):
            archive.get("../etc")

    def test_legacy_snapshot_without_manifest(self, archive, ssh_dir):
        legacy = archive.root / "backup_20230102_030405"
        legacy.mkdir(parents=True)
        (legacy / "id_rsa").write_text("OLD RSA\n")
        (legacy / "authorized_keys.bak").write_text("ssh-rsa AAAA old@host\n")
        os.chmod(legacy / "authorized_keys.bak", 0o644)

        [record] = archive.list()
        assert record.timestamp == datetime(2023, 1, 2, 3, 4, 5)
        assert record.sources == [ssh_dir / "authorized_keys", ssh_dir / "id_rsa"]

        restored = archive.restore(record)

        assert sorted(restored) == [ssh_dir / "authorized_keys", ssh_dir / "id_rsa"]
        assert (ssh_dir / "authorized_keys").read_text() == "ssh-rsa AAAA old@host\n"
        assert _mode(ssh_dir / "authorized_keys") == 0o600
        assert not (ssh_dir / "authorized_keys.bak").exists()

    def test_legacy_snapshot_to_target_dir(self, archive, tmp_path):
        legacy = archive.root / "backup_20230102_030405"
        legacy.mkdir(parents=True)
        (legacy / "authorized_keys.bak").write_text("ssh-rsa AAAA old@host\n")

        restored = archive.restore(archive.get("backup_20230102_030405"), tmp_path / "out")

        assert restored == [tmp_path / "out" / "authorized_keys"]

    def test_unrelated_directories_ignored(self, archive):
        (archive.root / "notes").mkdir(parents=True)
        (archive.root / "backup_garbage").mkdir()
        assert archive.list() == []


class TestRestore:

    def test_restores_bytes_and_modes(self, archive, key_files):
        private, public, authorized = key_files
        record = archive.snapshot(key_files)

        private.write_bytes(b"REPLACED\n")
        os.chmod(private, 0o644)
        public.unlink()
        authorized.write_bytes(b"")

        restored = archive.restore(record)

        assert sorted(p.name for p in restored) == ["authorized_keys", "id_ed25519", "id_ed25519.pub"]
        assert private.read_bytes() == b"PRIVATE KEY BYTES\n"
        assert public.read_bytes() == b"ssh-ed25519 AAAA me@host\n"
        assert _mode(private) == 0o600
        assert _mode(public) == 0o644
        assert _mode(authorized) == 0o600

    def test_restore_keeps_archive(self, archive, key_files):
        record = archive.snapshot(key_files)
        archive.restore(record)
        assert record.archive_dir.is_dir()
        assert archive.get(record.backup_id).backup_id == record.backup_id

    def test_restore_to_target_dir(self, archive, key_files, tmp_path):
        record = archive.snapshot(key_files)
        target = tmp_path / "elsewhere"
        target.mkdir()

        archive.restore(record, target_dir=target)

        assert (target / "id_ed25519").read_bytes() == b"PRIVATE KEY BYTES\n"
        assert _mode(target / "id_ed25519") == 0o600

    def test_restore_other_files_use_recorded_mode(self, tmp_path):
        config = tmp_path / "sshd_config"
        config.write_text("Port 22\n")
        os.chmod(config, 0o644)
        archive = BackupArchive(tmp_path / "backup")
        record = archive.snapshot([config])

        config.write_text("Port 2222\n")
        os.chmod(config, 0o600)
        archive.restore(record)

        assert config.read_text() == "Port 22\n"
        assert _mode(config) == 0o644

    def test_restore_missing_directory(self, archive, key_files):
        import shutil

        record = archive.snapshot(key_files)
        shutil.rmtree(record.archive_dir)
        with pytest.raises(BackupNotFoundError):
            archive.restore(record)


class TestRestoreMode:

    @pytest.mark.parametrize("name,recorded,expected", [
        ("id_rsa", 0o644, 0o600),
        ("id_rsa.pub", 0o600, 0o644),
        ("authorized_keys", 0o644, 0o600),
        ("sshd_config", 0o640, 0o640),
    ])
    def test_modes(self, name, recorded, expected):
        assert restore_mode(name, recorded) == expected
