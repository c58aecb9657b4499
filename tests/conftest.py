"""
Shared pytest fixtures for the keywarden test suite.

Autouse fixtures below isolate tests from the live host:
  - Audit logger -> temp directory (no test events in ~/.keywarden/audit_logs)

Nothing here touches the real ~/.ssh or /etc/ssh; every fixture builds its
paths under tmp_path.
"""

import os

import pytest

SAMPLE_SSHD_CONFIG = """\
# This is the sshd server system-wide configuration file.

Include /etc/ssh/sshd_config.d/*.conf

#Port 22
#PermitRootLogin prohibit-password
#PubkeyAuthentication yes
#PasswordAuthentication yes
#PermitEmptyPasswords no
KbdInteractiveAuthentication no
UsePAM yes
X11Forwarding yes
PrintMotd no
AcceptEnv LANG LC_*
Subsystem sftp /usr/lib/openssh/sftp-server
"""


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``log_security_event(...)`` writes into ``./audit_logs/``.
    """
    import keywarden.core.audit_log as audit_mod

    # Reset the singleton so the next call to get_audit_logger() creates
    # a fresh instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    audit_mod._audit_logger = old_logger


def make_public_key(algorithm: str = "ed25519", comment: str = "") -> str:
    """A real OpenSSH public key line, generated with cryptography."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

    if algorithm == "rsa":
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    elif algorithm == "ecdsa":
        key = ec.generate_private_key(ec.SECP256R1())
    else:
        key = ed25519.Ed25519PrivateKey.generate()
    line = key.public_key().public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    ).decode()
    return f"{line} {comment}" if comment else line


@pytest.fixture
def public_key():
    """Factory fixture: public_key("rsa", "alice@host")."""
    return make_public_key


@pytest.fixture
def ssh_dir(tmp_path):
    """Temporary ~/.ssh directory (0700)."""
    d = tmp_path / "home" / ".ssh"
    d.mkdir(parents=True)
    os.chmod(d, 0o700)
    return d


@pytest.fixture
def sshd_config(tmp_path):
    """A Debian-style sshd_config with most directives commented out."""
    etc = tmp_path / "etc" / "ssh"
    etc.mkdir(parents=True)
    path = etc / "sshd_config"
    path.write_text(SAMPLE_SSHD_CONFIG)
    os.chmod(path, 0o644)
    return path


@pytest.fixture
def settings(tmp_path, ssh_dir, sshd_config):
    from keywarden.core.settings import Settings

    return Settings(
        ssh_dir=ssh_dir,
        sshd_config=sshd_config,
        sshd_backup_dir=sshd_config.parent / "backup",
        keygen_backend="cryptography",
        audit_log_dir=tmp_path / "audit_logs",
        key_comment="tester@testhost",
    )
