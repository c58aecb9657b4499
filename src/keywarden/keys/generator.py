# Key Generator - produce a fresh SSH key pair in a staging area
#
# Generation never writes near live material: each call gets its own
# private temporary directory, and the staged pair is only moved into
# ~/.ssh by KeyMaterialStore.install().
#
# Primitive: ssh-keygen with an empty passphrase (unattended login).
# If the binary is not installed and the backend is "auto", the
# cryptography library produces the same OpenSSH formats.

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional, Union

from ..exceptions import GenerationError
from .models import (
    PRIVATE_KEY_MODE,
    PUBLIC_KEY_MODE,
    KeyAlgorithm,
    KeyPair,
    validate_combination,
)

logger = logging.getLogger(__name__)

STAGING_PREFIX = "keywarden-stage-"


class KeyGenerator:
    """Generate staged key pairs.

    Args:
        backend: ``auto``, ``ssh-keygen`` or ``cryptography``.
        ssh_keygen_binary: Name or path of the ssh-keygen executable.
        staging_root: Parent directory for staging dirs (default: system temp).
        timeout: Seconds to wait for ssh-keygen (RSA 8192 is slow).
    """

    def __init__(
        self,
        backend: str = "auto",
        ssh_keygen_binary: str = "ssh-keygen",
        staging_root: Optional[Path] = None,
        timeout: int = 600,
    ):
        self.backend = backend
        self.ssh_keygen_binary = ssh_keygen_binary
        self.staging_root = Path(staging_root) if staging_root else None
        self.timeout = timeout

    def generate(
        self,
        algorithm: Union[KeyAlgorithm, str],
        bits: Optional[int] = None,
        comment: str = "",
    ) -> KeyPair:
        """Generate a new key pair into a fresh staging directory.

        Raises:
            UnsupportedAlgorithmError: invalid algorithm/bit-size combination
                (raised before anything touches the filesystem).
            GenerationError: the primitive failed or produced no output.
        """
        if not isinstance(algorithm, KeyAlgorithm):
            algorithm = KeyAlgorithm.parse(algorithm)
        bits = validate_combination(algorithm, bits)
        if any(ord(c) < 0x20 or c == "\x7f" for c in comment):
            raise GenerationError("Key comment must be a single printable line")

        if self.staging_root is not None:
            self.staging_root.mkdir(mode=0o700, parents=True, exist_ok=True)
        staging_dir = Path(tempfile.mkdtemp(
            prefix=STAGING_PREFIX,
            dir=str(self.staging_root) if self.staging_root else None,
        ))
        key_path = staging_dir / algorithm.key_filename
        pair = KeyPair(
            algorithm=algorithm,
            bits=bits,
            private_path=key_path,
            public_path=key_path.with_name(key_path.name + ".pub"),
            comment=comment,
            staging_dir=staging_dir,
        )

        try:
            self._run_primitive(pair)
            self._check_output(pair)
            os.chmod(pair.private_path, PRIVATE_KEY_MODE)
            os.chmod(pair.public_path, PUBLIC_KEY_MODE)
        except GenerationError:
            self.discard(pair)
            raise
        except OSError as e:
            self.discard(pair)
            raise GenerationError(f"Could not stage {pair.describe()} key: {e}") from e

        logger.info("Generated %s key in staging (%s)", pair.describe(), staging_dir)
        return pair

    def discard(self, pair: KeyPair) -> None:
        """Remove a staged pair's staging directory."""
        if pair.staging_dir is not None:
            shutil.rmtree(pair.staging_dir, ignore_errors=True)

    # ── Primitives ─────────────────────────────────────────────────

    def _run_primitive(self, pair: KeyPair) -> None:
        if self.backend == "cryptography":
            self._generate_with_cryptography(pair)
            return
        try:
            self._generate_with_ssh_keygen(pair)
        except FileNotFoundError as e:
            if self.backend != "auto":
                raise GenerationError(
                    f"{self.ssh_keygen_binary} not found; install OpenSSH or use the "
                    f"cryptography backend"
                ) from e
            logger.warning(
                "%s not found (%s), using Python cryptography fallback",
                self.ssh_keygen_binary, e,
            )
            self._generate_with_cryptography(pair)

    def _generate_with_ssh_keygen(self, pair: KeyPair) -> None:
        cmd = [
            self.ssh_keygen_binary, "-q",
            "-t", pair.algorithm.value,
            "-N", "",  # no passphrase
            "-C", pair.comment,
            "-f", str(pair.private_path),
        ]
        if pair.bits:
            cmd[4:4] = ["-b", str(pair.bits)]

        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise GenerationError(
                f"ssh-keygen timed out after {self.timeout}s generating {pair.describe()} key"
            ) from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise GenerationError(
                f"ssh-keygen exited with status {result.returncode}: {detail or 'no output'}"
            )

    @staticmethod
    def _generate_with_cryptography(pair: KeyPair) -> None:
        """Produce OpenSSH-format files with the cryptography library."""
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

        if pair.algorithm is KeyAlgorithm.RSA:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=pair.bits)
        elif pair.algorithm is KeyAlgorithm.ECDSA:
            curve = {256: ec.SECP256R1, 384: ec.SECP384R1, 521: ec.SECP521R1}[pair.bits]
            private_key = ec.generate_private_key(curve())
        else:
            private_key = ed25519.Ed25519PrivateKey.generate()

        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
        public_line = public_bytes.decode()
        if pair.comment:
            public_line += " " + pair.comment

        fd = os.open(str(pair.private_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, PRIVATE_KEY_MODE)
        with os.fdopen(fd, "wb") as f:
            f.write(private_bytes)
        pair.public_path.write_text(public_line + "\n")

    @staticmethod
    def _check_output(pair: KeyPair) -> None:
        for path in (pair.private_path, pair.public_path):
            if not path.is_file() or path.stat().st_size == 0:
                raise GenerationError(
                    f"Key generation produced no output at {path.name}"
                )
