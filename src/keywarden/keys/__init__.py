"""Key material: data model, generation and on-disk store."""

from .generator import KeyGenerator
from .models import (
    DEFAULT_BITS,
    PRIVATE_KEY_MODE,
    PUBLIC_KEY_MODE,
    SSH_DIR_MODE,
    SUPPORTED_BITS,
    KeyAlgorithm,
    KeyPair,
    compute_fingerprint,
    validate_combination,
)
from .store import KeyMaterialStore, atomic_write, ensure_private_dir

__all__ = [
    "DEFAULT_BITS",
    "PRIVATE_KEY_MODE",
    "PUBLIC_KEY_MODE",
    "SSH_DIR_MODE",
    "SUPPORTED_BITS",
    "KeyAlgorithm",
    "KeyGenerator",
    "KeyMaterialStore",
    "KeyPair",
    "atomic_write",
    "compute_fingerprint",
    "ensure_private_dir",
    "validate_combination",
]
