# Authorization List Manager - ~/.ssh/authorized_keys
#
# Two write modes:
#   exclusive      the file holds exactly the lines of one public key
#   append-unique  a line is added only if no identical line exists
#
# Every write goes through a temp file + os.replace() in ~/.ssh, then the
# directory is forced to 0700 and the file to 0600 (sshd's StrictModes
# refuses group/world-writable files).

import base64
import binascii
import logging
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple, Union

from ..exceptions import InvalidKeyFormatError, KeyStoreIOError
from ..keys.models import PRIVATE_KEY_MODE, SSH_DIR_MODE, compute_fingerprint
from ..keys.store import atomic_write, ensure_private_dir

logger = logging.getLogger(__name__)

AUTHORIZED_KEYS_MODE = PRIVATE_KEY_MODE

KEY_TYPES = frozenset({
    "ssh-rsa",
    "ssh-ed25519",
    "ssh-ed448",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
})


@dataclass
class AuthorizationEntry:
    """One authorized_keys line."""
    key_type: str
    key_data: str
    comment: str = ""
    options: str = ""
    line: str = ""

    @property
    def material(self) -> Tuple[str, str]:
        return self.key_type, self.key_data

    def fingerprint(self) -> str:
        return compute_fingerprint(f"{self.key_type} {self.key_data}")


def _split_fields(line: str) -> List[str]:
    """Whitespace split that keeps double-quoted option values together."""
    fields, current, quoted, escaped = [], [], False, False
    for c in line:
        if escaped:
            current.append(c)
            escaped = False
        elif c == "\\" and quoted:
            current.append(c)
            escaped = True
        elif c == '"':
            current.append(c)
            quoted = not quoted
        elif c.isspace() and not quoted:
            if current:
                fields.append("".join(current))
                current = []
        else:
            current.append(c)
    if quoted:
        raise InvalidKeyFormatError("Unterminated quote in authorized_keys options")
    if current:
        fields.append("".join(current))
    return fields


def _check_blob(key_type: str, key_data: str) -> None:
    try:
        blob = base64.b64decode(key_data, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidKeyFormatError(f"Key data for {key_type} is not valid base64")
    if len(blob) < 4:
        raise InvalidKeyFormatError(f"Key data for {key_type} is truncated")
    (length,) = struct.unpack(">I", blob[:4])
    embedded = blob[4:4 + length]
    if len(embedded) != length or embedded.decode("ascii", "replace") != key_type:
        raise InvalidKeyFormatError(
            f"Key data does not encode a {key_type} key"
        )


def parse_entry(line: str) -> AuthorizationEntry:
    """Parse one authorized_keys line.

    Raises:
        InvalidKeyFormatError: unknown key type, bad base64, or a blob whose
            embedded type does not match the declared one.
    """
    text = line.rstrip("\r\n")
    if "\n" in text or "\r" in text or "\x00" in text:
        raise InvalidKeyFormatError("authorized_keys entries must be a single line")
    fields = _split_fields(text)
    if not fields:
        raise InvalidKeyFormatError("Empty authorized_keys entry")

    # Options, if present, come before the key type
    idx = 0 if fields[0] in KEY_TYPES else 1
    if idx >= len(fields) or fields[idx] not in KEY_TYPES:
        raise InvalidKeyFormatError(f"Unrecognized key type in: {text[:60]!r}")
    if idx + 1 >= len(fields):
        raise InvalidKeyFormatError(f"Missing key data after {fields[idx]}")

    key_type, key_data = fields[idx], fields[idx + 1]
    _check_blob(key_type, key_data)
    return AuthorizationEntry(
        key_type=key_type,
        key_data=key_data,
        comment=" ".join(fields[idx + 2:]),
        options=fields[0] if idx == 1 else "",
        line=text,
    )


def _is_entry_line(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith("#")


class AuthorizationListManager:
    """Maintain one authorized_keys file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    # ── Read ───────────────────────────────────────────────────────

    def _read_lines(self) -> List[str]:
        try:
            return self.path.read_text().splitlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise KeyStoreIOError(f"Cannot read {self.path}: {e}") from e

    def entries(self) -> List[AuthorizationEntry]:
        """Parsed key lines. Comments, blanks and malformed lines are skipped."""
        result = []
        for line in self._read_lines():
            if not _is_entry_line(line):
                continue
            try:
                result.append(parse_entry(line))
            except InvalidKeyFormatError as e:
                logger.warning("Skipping malformed line in %s: %s", self.path, e)
        return result

    def contains_key(self, public_key: str) -> bool:
        """True if any entry carries the same key material (comment ignored)."""
        wanted = parse_entry(public_key.strip()).material
        return any(e.material == wanted for e in self.entries())

    # ── Write ──────────────────────────────────────────────────────

    def set_exclusive(self, public_key_text: str) -> bool:
        """Replace the list with exactly the key lines of ``public_key_text``.

        Returns True if the file content changed.
        """
        lines = [raw.strip() for raw in public_key_text.splitlines() if _is_entry_line(raw)]
        if not lines:
            raise InvalidKeyFormatError("No public key lines to authorize")
        for line in lines:
            parse_entry(line)

        content = "\n".join(lines) + "\n"
        changed = self._current_text() != content
        if changed:
            self._write(content)
            logger.info("authorized_keys replaced with %d key line(s)", len(lines))
        self._enforce_modes()
        return changed

    def append_unique(self, line: str) -> bool:
        """Append ``line`` unless an identical line is already present.

        Returns True if the line was appended.
        """
        candidate = line.rstrip("\r\n")
        parse_entry(candidate)

        existing = self._read_lines()
        if candidate in existing:
            logger.debug("Key already authorized in %s", self.path)
            self._enforce_modes()
            return False

        current = self._current_text()
        if current and not current.endswith("\n"):
            current += "\n"
        self._write(current + candidate + "\n")
        self._enforce_modes()
        logger.info("Appended key to %s", self.path)
        return True

    def revoke(self, public_key: str) -> int:
        """Remove every line carrying the key material of ``public_key``.

        Returns the number of lines removed.
        """
        wanted = parse_entry(public_key.strip()).material
        kept, removed = [], 0
        for line in self._read_lines():
            if _is_entry_line(line):
                try:
                    if parse_entry(line).material == wanted:
                        removed += 1
                        continue
                except InvalidKeyFormatError:
                    pass
            kept.append(line)

        if removed:
            self._write("\n".join(kept) + "\n" if kept else "")
            self._enforce_modes()
            logger.info("Revoked %d line(s) from %s", removed, self.path)
        return removed

    # ── Helpers ────────────────────────────────────────────────────

    def _current_text(self) -> str:
        try:
            return self.path.read_text()
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise KeyStoreIOError(f"Cannot read {self.path}: {e}") from e

    def _write(self, content: str) -> None:
        ensure_private_dir(self.path.parent)
        try:
            atomic_write(self.path, content, AUTHORIZED_KEYS_MODE)
        except OSError as e:
            raise KeyStoreIOError(f"Cannot write {self.path}: {e}") from e

    def _enforce_modes(self) -> None:
        try:
            os.chmod(self.path.parent, SSH_DIR_MODE)
            if self.path.exists():
                os.chmod(self.path, AUTHORIZED_KEYS_MODE)
        except OSError as e:
            raise KeyStoreIOError(f"Cannot set permissions on {self.path}: {e}") from e

    def fingerprints(self) -> List[str]:
        return [e.fingerprint() for e in self.entries()]

