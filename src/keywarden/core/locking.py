# Lifecycle Lock - Advisory pid lock around the key directory
#
# Two keywarden runs racing on the same ~/.ssh can interleave a backup of
# one with the install of the other. The lock file holds the owner's pid;
# a lock whose pid is no longer alive is reclaimed.

import errno
import logging
import os
from pathlib import Path
from typing import Optional, Union

from ..exceptions import LockHeldError

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class LifecycleLock:
    """Context manager holding ``<ssh_dir>/.keywarden.lock`` for one run."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._held = False

    def _read_owner(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip() or "0")
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except OSError as e:
                if e.errno != errno.EEXIST:
                    raise
                owner = self._read_owner()
                if owner is not None and _pid_alive(owner):
                    raise LockHeldError(
                        f"Another keywarden run (pid {owner}) holds {self.path}"
                    )
                logger.warning("Reclaiming stale lock %s (pid %s)", self.path, owner)
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._held = True
            return
        raise LockHeldError(f"Could not acquire {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self._read_owner() == os.getpid():
            self.path.unlink(missing_ok=True)

    def __enter__(self) -> "LifecycleLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
