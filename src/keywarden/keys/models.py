"""
Key material data model.

A ``KeyPair`` is either *staged* (files in a private temporary directory,
``staging_dir`` set) or *installed* (files at ``~/.ssh/id_<algo>``).
"""

import base64
import hashlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..exceptions import UnsupportedAlgorithmError

PRIVATE_KEY_MODE = 0o600
PUBLIC_KEY_MODE = 0o644
SSH_DIR_MODE = 0o700


class KeyAlgorithm(str, Enum):
    RSA = "rsa"
    ED25519 = "ed25519"
    ECDSA = "ecdsa"
    ED448 = "ed448"

    @property
    def key_filename(self) -> str:
        return f"id_{self.value}"

    @classmethod
    def parse(cls, value: str) -> "KeyAlgorithm":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(a.value for a in cls)
            raise UnsupportedAlgorithmError(
                f"Unknown algorithm {value!r} (expected one of: {allowed})"
            )


# Allowed bit sizes per algorithm; None means the size is fixed by the curve.
# Ed448 has no OpenSSH implementation.
SUPPORTED_BITS: Dict[KeyAlgorithm, Tuple[Optional[int], ...]] = {
    KeyAlgorithm.RSA: (2048, 3072, 4096, 8192),
    KeyAlgorithm.ECDSA: (256, 384, 521),
    KeyAlgorithm.ED25519: (None, 256),
}

DEFAULT_BITS: Dict[KeyAlgorithm, Optional[int]] = {
    KeyAlgorithm.RSA: 4096,
    KeyAlgorithm.ECDSA: 256,
    KeyAlgorithm.ED25519: None,
}


def validate_combination(algorithm: KeyAlgorithm, bits: Optional[int]) -> Optional[int]:
    """Check an algorithm/bit-size pair and return the effective bit size.

    Raises:
        UnsupportedAlgorithmError: before any I/O, for combinations the
            key-generation primitive cannot produce.
    """
    if algorithm not in SUPPORTED_BITS:
        raise UnsupportedAlgorithmError(
            f"{algorithm.value} keys are not supported by OpenSSH key generation"
        )
    if bits is None:
        bits = DEFAULT_BITS[algorithm]
    if bits not in SUPPORTED_BITS[algorithm]:
        sizes = ", ".join(str(b) for b in SUPPORTED_BITS[algorithm] if b is not None)
        raise UnsupportedAlgorithmError(
            f"{algorithm.value} does not support {bits}-bit keys (supported: {sizes})"
        )
    if algorithm is KeyAlgorithm.ED25519:
        return None
    return bits


def compute_fingerprint(public_key: str) -> str:
    """Compute the OpenSSH SHA256 fingerprint of a public key line."""
    parts = public_key.strip().split()
    if len(parts) < 2:
        return "unknown"
    try:
        raw = base64.b64decode(parts[1], validate=True)
    except ValueError:
        return "unknown"
    digest = hashlib.sha256(raw).digest()
    return "SHA256:" + base64.b64encode(digest).decode().rstrip("=")


@dataclass
class KeyPair:
    """A private/public key file pair for one algorithm."""
    algorithm: KeyAlgorithm
    bits: Optional[int]
    private_path: Path
    public_path: Path
    comment: str = ""
    staging_dir: Optional[Path] = None

    @property
    def is_staged(self) -> bool:
        return self.staging_dir is not None

    def read_public_key(self) -> str:
        return self.public_path.read_text().strip()

    def read_private_key(self) -> str:
        return self.private_path.read_text()

    def fingerprint(self) -> str:
        return compute_fingerprint(self.read_public_key())

    def describe(self) -> str:
        size = f" {self.bits}" if self.bits else ""
        return f"{self.algorithm.value.upper()}{size}"
