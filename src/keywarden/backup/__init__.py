"""Versioned snapshots of key material and sshd_config."""

from .archive import BackupArchive, BackupEntry, BackupRecord

__all__ = ["BackupArchive", "BackupEntry", "BackupRecord"]
