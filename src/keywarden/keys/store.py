# Key Material Store - on-disk key pairs under ~/.ssh
#
# install() is rename-based: each staged file is first copied to a hidden
# temporary inside the key directory, given its final mode, then
# os.replace()d onto the final name. A reader sees either the old or the
# new file at ~/.ssh/id_<algo>, never a partial one. The staged files are
# not touched, so a failed install can be retried.

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Tuple, Union

from ..exceptions import KeyStoreIOError
from .models import (
    PRIVATE_KEY_MODE,
    PUBLIC_KEY_MODE,
    SSH_DIR_MODE,
    KeyAlgorithm,
    KeyPair,
)

logger = logging.getLogger(__name__)


def ensure_private_dir(path: Path, mode: int = SSH_DIR_MODE) -> None:
    """Create ``path`` if needed and force its mode."""
    try:
        path.mkdir(mode=mode, parents=True, exist_ok=True)
        os.chmod(path, mode)
    except OSError as e:
        raise KeyStoreIOError(f"Cannot prepare directory {path}: {e}") from e


def atomic_write(path: Path, data: Union[str, bytes], mode: int) -> None:
    """Write ``data`` to ``path`` through a temp file and os.replace().

    The temp file lives in the destination directory and already has
    ``mode`` when it is renamed into place.
    """
    payload = data.encode() if isinstance(data, str) else data
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


class KeyMaterialStore:
    """Key pairs stored as ``<ssh_dir>/id_<algo>`` and ``id_<algo>.pub``."""

    def __init__(self, ssh_dir: Union[str, Path]):
        self.ssh_dir = Path(ssh_dir)

    def paths_for(self, algorithm: KeyAlgorithm) -> Tuple[Path, Path]:
        private = self.ssh_dir / algorithm.key_filename
        return private, private.with_name(private.name + ".pub")

    def exists(self, algorithm: KeyAlgorithm) -> bool:
        private, public = self.paths_for(algorithm)
        return private.exists() or public.exists()

    def installed(self) -> List[KeyPair]:
        """Every algorithm that currently has a private key on disk."""
        return [self.load(a) for a in KeyAlgorithm if self.paths_for(a)[0].exists()]

    def load(self, algorithm: KeyAlgorithm) -> KeyPair:
        private, public = self.paths_for(algorithm)
        comment = ""
        if public.exists():
            parts = public.read_text().strip().split(None, 2)
            comment = parts[2] if len(parts) > 2 else ""
        return KeyPair(
            algorithm=algorithm,
            bits=None,
            private_path=private,
            public_path=public,
            comment=comment,
        )

    def read_public_key(self, algorithm: KeyAlgorithm) -> str:
        _, public = self.paths_for(algorithm)
        return public.read_text().strip()

    def install(self, staged: KeyPair) -> KeyPair:
        """Move a staged pair into its final location.

        Raises:
            KeyStoreIOError: the key directory cannot be created, a file
                cannot be placed, or permissions cannot be set. Staged files
                are left untouched.
        """
        ensure_private_dir(self.ssh_dir)
        private, public = self.paths_for(staged.algorithm)

        pending: List[str] = []
        try:
            tmp_private = self._stage_copy(staged.private_path, private, PRIVATE_KEY_MODE)
            pending.append(tmp_private)
            tmp_public = self._stage_copy(staged.public_path, public, PUBLIC_KEY_MODE)
            pending.append(tmp_public)

            os.replace(tmp_private, private)
            pending.remove(tmp_private)
            os.replace(tmp_public, public)
            pending.remove(tmp_public)

            # Re-assert the invariant on the final names
            os.chmod(private, PRIVATE_KEY_MODE)
            os.chmod(public, PUBLIC_KEY_MODE)
        except OSError as e:
            raise KeyStoreIOError(
                f"Failed to install {staged.describe()} key into {self.ssh_dir}: {e}"
            ) from e
        finally:
            for tmp in pending:
                try:
                    os.remove(tmp)
                except OSError:
                    pass

        logger.info("Installed %s key at %s", staged.describe(), private)
        return KeyPair(
            algorithm=staged.algorithm,
            bits=staged.bits,
            private_path=private,
            public_path=public,
            comment=staged.comment,
        )

    def remove(self, algorithm: KeyAlgorithm) -> bool:
        """Delete both files for ``algorithm``. Absent keys are not an error.

        Returns True if anything was deleted.
        """
        removed = False
        for path in self.paths_for(algorithm):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                raise KeyStoreIOError(f"Failed to remove {path}: {e}") from e
        if removed:
            logger.info("Removed %s key pair from %s", algorithm.value, self.ssh_dir)
        return removed

    @staticmethod
    def _stage_copy(source: Path, final: Path, mode: int) -> str:
        """Copy ``source`` next to ``final`` under a hidden temp name."""
        fd, tmp_name = tempfile.mkstemp(dir=str(final.parent), prefix=f".{final.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as dst:
                os.fchmod(dst.fileno(), mode)
                with open(source, "rb") as src:
                    shutil.copyfileobj(src, dst)
                dst.flush()
                os.fsync(dst.fileno())
        except OSError:
            os.remove(tmp_name)
            raise
        return tmp_name
