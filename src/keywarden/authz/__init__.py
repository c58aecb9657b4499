"""authorized_keys management."""

from .authorized_keys import (
    KEY_TYPES,
    AuthorizationEntry,
    AuthorizationListManager,
    parse_entry,
)

__all__ = ["KEY_TYPES", "AuthorizationEntry", "AuthorizationListManager", "parse_entry"]
