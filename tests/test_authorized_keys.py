"""
Tests for AuthorizationListManager - authorized_keys maintenance.
"""

import os
import stat

import pytest

from keywarden.authz.authorized_keys import AuthorizationListManager, parse_entry
from keywarden.exceptions import InvalidKeyFormatError


def _mode(path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


@pytest.fixture
def manager(ssh_dir):
    return AuthorizationListManager(ssh_dir / "authorized_keys")


class TestParseEntry:

    def test_plain_line(self, public_key):
        line = public_key("ed25519", "alice@host")
        entry = parse_entry(line)
        assert entry.key_type == "ssh-ed25519"
        assert entry.comment == "alice@host"
        assert entry.options == ""

    def test_options_prefix_with_quoted_spaces(self, public_key):
        key = public_key("ed25519")
        entry = parse_entry(f'command="echo hi there",no-pty {key} ci')
        assert entry.options == 'command="echo hi there",no-pty'
        assert entry.key_type == "ssh-ed25519"
        assert entry.comment == "ci"

    def test_unknown_key_type(self):
        with pytest.raises(InvalidKeyFormatError, match="Unrecognized"):
            parse_entry("ssh-dss AAAAB3NzaC1kc3M= old")

    def test_bad_base64(self):
        with pytest.raises(InvalidKeyFormatError, match="base64"):
            parse_entry("ssh-ed25519 !!!notbase64")

    def test_blob_type_must_match_token(self, public_key):
        blob = public_key("ed25519").split()[1]
        with pytest.raises(InvalidKeyFormatError, match="ssh-rsa"):
            parse_entry(f"ssh-rsa {blob}")

    def test_multiline_rejected(self, public_key):
        with pytest.raises(InvalidKeyFormatError):
            parse_entry(public_key("ed25519") + "\nssh-rsa AAAA")

    def test_fingerprint_ignores_comment(self, public_key):
        line = public_key("ecdsa")
        assert parse_entry(line).fingerprint() == parse_entry(line + " x@y").fingerprint()


class TestExclusive:

    def test_replaces_all_existing_lines(self, manager, public_key):
        old_a, old_b = public_key("rsa", "old-a"), public_key("ed25519", "old-b")
        manager.path.write_text(f"{old_a}\n{old_b}\n")
        new = public_key("ed25519", "new@host")

        assert manager.set_exclusive(new + "\n") is True

        assert manager.path.read_text() == new + "\n"
        assert [e.comment for e in manager.entries()] == ["new@host"]

    def test_creates_file_with_modes(self, manager, ssh_dir, public_key):
        os.chmod(ssh_dir, 0o755)
        manager.set_exclusive(public_key("ed25519"))
        assert _mode(manager.path) == 0o600
        assert _mode(ssh_dir) == 0o700

    def test_unchanged_content_still_fixes_modes(self, manager, public_key):
        key = public_key("ed25519")
        manager.set_exclusive(key)
        os.chmod(manager.path, 0o644)

        assert manager.set_exclusive(key) is False
        assert _mode(manager.path) == 0o600

    def test_invalid_key_leaves_file_untouched(self, manager, public_key):
        existing = public_key("rsa", "keep") + "\n"
        manager.path.write_text(existing)

        with pytest.raises(InvalidKeyFormatError):
            manager.set_exclusive("not-a-key AAAA")
        assert manager.path.read_text() == existing

    def test_empty_text_rejected(self, manager):
        with pytest.raises(InvalidKeyFormatError):
            manager.set_exclusive("\n# only a comment\n")
        assert not manager.path.exists()


class TestAppendUnique:

    def test_identical_line_not_duplicated(self, manager, public_key):
        key = public_key("ed25519", "ci@runner")
        assert manager.append_unique(key) is True
        assert manager.append_unique(key) is False
        assert manager.path.read_text().count(key) == 1

    def test_distinct_keys_kept_in_order(self, manager, public_key):
        first, second = public_key("ed25519", "first"), public_key("rsa", "second")
        manager.append_unique(first)
        manager.append_unique(second)
        assert manager.path.read_text() == f"{first}\n{second}\n"

    def test_preserves_existing_content(self, manager, public_key):
        manager.path.write_text("# managed by hand\n" + public_key("rsa", "legacy"))
        new = public_key("ed25519", "new")

        manager.append_unique(new)

        lines = manager.path.read_text().splitlines()
        assert lines[0] == "# managed by hand"
        assert lines[-1] == new
        assert len(lines) == 3

    def test_invalid_line_rejected(self, manager):
        with pytest.raises(InvalidKeyFormatError):
            manager.append_unique("ssh-ed25519")
        assert not manager.path.exists()

    def test_sets_mode(self, manager, public_key):
        manager.append_unique(public_key("ed25519"))
        assert _mode(manager.path) == 0o600


class TestRevokeAndQuery:

    def test_contains_key_ignores_comment(self, manager, public_key):
        key = public_key("ed25519")
        manager.append_unique(key + " one@host")
        assert manager.contains_key(key + " other@host")
        assert not manager.contains_key(public_key("ed25519"))

    def test_revoke_removes_matching_material(self, manager, public_key):
        keep, drop = public_key("rsa", "keep"), public_key("ed25519")
        manager.path.write_text(f"{keep}\nno-pty {drop} a\n{drop} b\n")

        assert manager.revoke(drop) == 2
        assert manager.path.read_text() == keep + "\n"

    def test_revoke_absent_key_is_noop(self, manager, public_key):
        keep = public_key("rsa")
        manager.path.write_text(keep + "\n")
        assert manager.revoke(public_key("ed25519")) == 0
        assert manager.path.read_text() == keep + "\n"

    def test_malformed_lines_skipped_when_listing(self, manager, public_key):
        good = public_key("ed25519", "good")
        manager.path.write_text(f"garbage line here\n\n{good}\n")
        assert [e.comment for e in manager.entries()] == ["good"]
        assert len(manager.fingerprints()) == 1

    def test_missing_file_is_empty(self, manager):
        assert manager.entries() == []
