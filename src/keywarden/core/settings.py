# Settings - Runtime Configuration
#
# Defaults follow the standard OpenSSH layout. Every value can be
# overridden through KEYWARDEN_* environment variables (optionally loaded
# from a .env file) and again by CLI flags.

import getpass
import logging
import os
import socket
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from ..exceptions import InvalidConfiguration

logger = logging.getLogger(__name__)

ENV_PREFIX = "KEYWARDEN_"

# Directive set applied by `configure` and `generate` unless overridden
DEFAULT_DIRECTIVES: Dict[str, str] = {
    "PermitRootLogin": "yes",
    "PubkeyAuthentication": "yes",
    "PasswordAuthentication": "no",
    "PermitEmptyPasswords": "no",
    "X11Forwarding": "no",
    "IgnoreRhosts": "yes",
}

KEYGEN_BACKENDS = ("auto", "ssh-keygen", "cryptography")


class OnRegenerate(str, Enum):
    """What happens to existing key material when a key is regenerated."""
    ARCHIVE = "archive"
    DELETE = "delete"


class AuthorizationMode(str, Enum):
    """How the new public key is written to authorized_keys."""
    EXCLUSIVE = "exclusive"
    APPEND = "append"


def default_key_comment() -> str:
    """``user@hostname``, as ssh-keygen would pick."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "root"
    return f"{user}@{socket.gethostname()}"


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise InvalidConfiguration(f"{name} must be a boolean, got {raw!r}")


def _parse_enum(name: str, enum_cls, raw: str):
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidConfiguration(f"{name} must be one of: {allowed} (got {raw!r})")


@dataclass
class Settings:
    """Resolved keywarden configuration.

    ``archive_dir`` defaults to ``<ssh_dir>/backup`` when not set.
    """
    ssh_dir: Path = field(default_factory=lambda: Path.home() / ".ssh")
    archive_dir: Optional[Path] = None
    sshd_config: Path = Path("/etc/ssh/sshd_config")
    sshd_backup_dir: Path = Path("/etc/ssh/backup")
    sshd_binary: str = "sshd"
    ssh_keygen_binary: str = "ssh-keygen"
    keygen_backend: str = "auto"
    audit_log_dir: Path = field(default_factory=lambda: Path.home() / ".keywarden" / "audit_logs")
    on_regenerate: OnRegenerate = OnRegenerate.ARCHIVE
    auth_mode: AuthorizationMode = AuthorizationMode.EXCLUSIVE
    rollback_invalid_config: bool = True
    key_comment: Optional[str] = None
    directives: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DIRECTIVES))

    def __post_init__(self):
        self.ssh_dir = Path(self.ssh_dir).expanduser()
        if self.archive_dir is None:
            self.archive_dir = self.ssh_dir / "backup"
        self.archive_dir = Path(self.archive_dir).expanduser()
        self.sshd_config = Path(self.sshd_config)
        self.sshd_backup_dir = Path(self.sshd_backup_dir)
        self.audit_log_dir = Path(self.audit_log_dir).expanduser()
        if self.keygen_backend not in KEYGEN_BACKENDS:
            raise InvalidConfiguration(
                f"keygen backend must be one of {', '.join(KEYGEN_BACKENDS)}, "
                f"got {self.keygen_backend!r}"
            )

    @property
    def authorized_keys(self) -> Path:
        return self.ssh_dir / "authorized_keys"

    @property
    def lock_path(self) -> Path:
        return self.ssh_dir / ".keywarden.lock"

    @property
    def comment(self) -> str:
        return self.key_comment or default_key_comment()

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if ("ssh_dir" in changes and "archive_dir" not in changes
                and self.archive_dir == self.ssh_dir / "backup"):
            changes["archive_dir"] = None
        return replace(self, **changes)

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None,
    ) -> "Settings":
        """Build settings from KEYWARDEN_* variables.

        When ``env`` is None the process environment is used, after loading
        a ``.env`` file (real environment variables win).
        """
        if env is None:
            load_dotenv(dotenv_path, override=False)
            env = os.environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        kwargs = {}
        path_fields = {
            "SSH_DIR": "ssh_dir",
            "ARCHIVE_DIR": "archive_dir",
            "SSHD_CONFIG": "sshd_config",
            "SSHD_BACKUP_DIR": "sshd_backup_dir",
            "AUDIT_LOG_DIR": "audit_log_dir",
        }
        for var, attr in path_fields.items():
            if get(var):
                kwargs[attr] = Path(get(var))

        for var, attr in (("SSHD_BINARY", "sshd_binary"),
                          ("SSH_KEYGEN_BINARY", "ssh_keygen_binary"),
                          ("KEY_COMMENT", "key_comment")):
            if get(var):
                kwargs[attr] = get(var)

        if get("KEYGEN_BACKEND"):
            kwargs["keygen_backend"] = get("KEYGEN_BACKEND").strip().lower()
        if get("ON_REGENERATE"):
            kwargs["on_regenerate"] = _parse_enum(
                ENV_PREFIX + "ON_REGENERATE", OnRegenerate, get("ON_REGENERATE"))
        if get("AUTH_MODE"):
            kwargs["auth_mode"] = _parse_enum(
                ENV_PREFIX + "AUTH_MODE", AuthorizationMode, get("AUTH_MODE"))
        if get("ROLLBACK_INVALID_CONFIG"):
            kwargs["rollback_invalid_config"] = _parse_bool(
                ENV_PREFIX + "ROLLBACK_INVALID_CONFIG", get("ROLLBACK_INVALID_CONFIG"))

        settings = cls(**kwargs)
        logger.debug("Settings resolved: ssh_dir=%s sshd_config=%s",
                     settings.ssh_dir, settings.sshd_config)
        return settings
