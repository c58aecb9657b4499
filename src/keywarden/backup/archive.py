"""Backup archive - versioned snapshots of key material and config files.

Each snapshot is a directory ``backup_YYYYmmdd_HHMMSS_ffffff`` under the
archive root holding:
  - a verbatim copy of every source file, under its original basename
  - a manifest.json with the source path and mode of every entry

Snapshots are never modified or deleted by keywarden. Restoring copies
files back out and leaves the snapshot in place.
"""

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..exceptions import BackupError, BackupNotFoundError
from ..keys.models import PRIVATE_KEY_MODE, PUBLIC_KEY_MODE
from ..keys.store import atomic_write

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
BACKUP_PREFIX = "backup_"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
ARCHIVE_DIR_MODE = 0o700

# Manifest version - increment if the layout changes
_MANIFEST_VERSION = 1

# backup_20240131_235959 (no microseconds) is the layout written by the
# shell toolkit keywarden replaces; those snapshots have no manifest.
_LEGACY_NAME = re.compile(r"^backup_(\d{8}_\d{6})$")

# The toolkit archived authorized_keys under a .bak name
_LEGACY_RENAMES = {"authorized_keys.bak": "authorized_keys"}


@dataclass
class BackupEntry:
    """One archived file."""
    name: str
    source: Path
    mode: int


@dataclass
class BackupRecord:
    """A snapshot directory and what it contains."""
    backup_id: str
    timestamp: datetime
    archive_dir: Path
    entries: List[BackupEntry] = field(default_factory=list)

    @property
    def sources(self) -> List[Path]:
        return [e.source for e in self.entries]

    def to_dict(self) -> dict:
        return {
            "backup_id": self.backup_id,
            "timestamp": self.timestamp.isoformat(),
            "archive_dir": str(self.archive_dir),
            "files": [e.name for e in self.entries],
        }


def restore_mode(name: str, recorded_mode: int) -> int:
    """Mode a restored file gets: keys and authorized_keys are forced."""
    if name.endswith(".pub"):
        return PUBLIC_KEY_MODE
    if name == "authorized_keys" or name.startswith("id_"):
        return PRIVATE_KEY_MODE
    return recorded_mode


class BackupArchive:
    """Snapshot, list and restore files under one archive root.

    Args:
        root: Directory holding the ``backup_*`` snapshot directories.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    # ── Snapshot ───────────────────────────────────────────────────

    def snapshot(self, paths: Iterable[Union[str, Path]]) -> Optional[BackupRecord]:
        """Copy every existing path into a new snapshot directory.

        Returns None (and creates nothing) when none of the paths exist.

        Raises:
            BackupError: any copy failed. The partial snapshot is removed, so
                callers must not go on to overwrite the originals.
        """
        sources = []
        for p in paths:
            p = Path(p)
            if p.is_file() and p not in sources:
                sources.append(p)
        if not sources:
            logger.debug("Nothing to back up under %s", self.root)
            return None

        names = [s.name for s in sources]
        if len(set(names)) != len(names):
            raise BackupError(f"Cannot snapshot files with clashing names: {names}")

        timestamp = datetime.now()
        try:
            self.root.mkdir(mode=ARCHIVE_DIR_MODE, parents=True, exist_ok=True)
            archive_dir = self._new_snapshot_dir(timestamp)
        except OSError as e:
            raise BackupError(f"Cannot create snapshot under {self.root}: {e}") from e

        record = BackupRecord(
            backup_id=archive_dir.name,
            timestamp=timestamp,
            archive_dir=archive_dir,
        )
        try:
            for source in sources:
                mode = source.stat().st_mode & 0o777
                dest = archive_dir / source.name
                shutil.copyfile(source, dest)
                # archived copies are owner-only whatever the source mode
                os.chmod(dest, mode & 0o700 | 0o400)
                record.entries.append(BackupEntry(source.name, source.resolve(), mode))
            self._write_manifest(record)
        except OSError as e:
            shutil.rmtree(archive_dir, ignore_errors=True)
            raise BackupError(f"Snapshot of {len(sources)} file(s) failed: {e}") from e

        logger.info("Created backup %s (%s)", record.backup_id, ", ".join(names))
        return record

    def _new_snapshot_dir(self, timestamp: datetime) -> Path:
        base = BACKUP_PREFIX + timestamp.strftime(TIMESTAMP_FORMAT)
        candidate = self.root / base
        n = 0
        while True:
            try:
                candidate.mkdir(mode=ARCHIVE_DIR_MODE)
                return candidate
            except FileExistsError:
                n += 1
                candidate = self.root / f"{base}_{n}"

    @staticmethod
    def _write_manifest(record: BackupRecord) -> None:
        manifest = {
            "version": _MANIFEST_VERSION,
            "backup_id": record.backup_id,
            "created_at": record.timestamp.isoformat(),
            "files": [
                {"name": e.name, "source": str(e.source), "mode": oct(e.mode)}
                for e in record.entries
            ],
        }
        (record.archive_dir / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2) + "\n")

    # ── List / lookup ──────────────────────────────────────────────

    def list(self) -> List[BackupRecord]:
        """All snapshots, oldest first (the most recent is last)."""
        if not self.root.is_dir():
            return []
        records = []
        for child in self.root.iterdir():
            if not child.is_dir() or not child.name.startswith(BACKUP_PREFIX):
                continue
            record = self._load(child)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: (r.timestamp, r.backup_id))
        return records

    def latest(self) -> Optional[BackupRecord]:
        records = self.list()
        return records[-1] if records else None

    def get(self, backup_id: str) -> BackupRecord:
        """Look up a snapshot by id (its directory name)."""
        if "/" in backup_id or backup_id in ("", ".", ".."):
            raise BackupNotFoundError(f"Invalid backup id: {backup_id!r}")
        record = self._load(self.root / backup_id)
        if record is None:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        return record

    def _load(self, archive_dir: Path) -> Optional[BackupRecord]:
        if not archive_dir.is_dir():
            return None
        manifest_path = archive_dir / MANIFEST_NAME
        if manifest_path.is_file():
            try:
                manifest = json.loads(manifest_path.read_text())
                return BackupRecord(
                    backup_id=archive_dir.name,
                    timestamp=datetime.fromisoformat(manifest["created_at"]),
                    archive_dir=archive_dir,
                    entries=[
                        BackupEntry(f["name"], Path(f["source"]), int(f["mode"], 8))
                        for f in manifest["files"]
                    ],
                )
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping backup with unreadable manifest %s: %s", archive_dir, e)
                return None

        match = _LEGACY_NAME.match(archive_dir.name)
        if not match:
            return None
        # Legacy snapshots sat in <dir>/backup and held files from <dir>
        origin = self.root.parent
        entries = [
            BackupEntry(f.name, origin / _LEGACY_RENAMES.get(f.name, f.name),
                        f.stat().st_mode & 0o777)
            for f in sorted(archive_dir.iterdir()) if f.is_file()
        ]
        return BackupRecord(
            backup_id=archive_dir.name,
            timestamp=datetime.strptime(match.group(1), "%Y%m%d_%H%M%S"),
            archive_dir=archive_dir,
            entries=entries,
        )

    # ── Restore ────────────────────────────────────────────────────

    def restore(
        self,
        record: BackupRecord,
        target_dir: Optional[Union[str, Path]] = None,
    ) -> List[Path]:
        """Copy a snapshot's files back into place.

        Files go to their original paths, or to ``target_dir/<name>`` when
        given. Each file is replaced atomically. The snapshot is kept.

        Returns:
            The restored paths.

        Raises:
            BackupNotFoundError: the snapshot directory no longer exists.
            BackupError: a file could not be restored.
        """
        if not record.archive_dir.is_dir():
            raise BackupNotFoundError(f"Backup directory missing: {record.archive_dir}")

        restored = []
        for entry in record.entries:
            archived = record.archive_dir / entry.name
            name = _LEGACY_RENAMES.get(entry.name, entry.name)
            dest = Path(target_dir) / name if target_dir else entry.source
            try:
                if not dest.parent.exists():
                    dest.parent.mkdir(mode=ARCHIVE_DIR_MODE, parents=True)
                atomic_write(dest, archived.read_bytes(), restore_mode(name, entry.mode))
            except OSError as e:
                raise BackupError(f"Failed to restore {entry.name} to {dest}: {e}") from e
            restored.append(dest)

        logger.info("Restored backup %s (%d file(s))", record.backup_id, len(restored))
        return restored
