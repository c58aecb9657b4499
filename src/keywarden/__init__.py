# Keywarden - Main Package
#
# Host SSH credential lifecycle: generate, archive, install and authorize
# key pairs, and keep sshd_config reconciled to a key-only login policy.

__version__ = "0.3.0"
__author__ = "Keywarden Team"
__description__ = "SSH credential lifecycle and sshd_config reconciliation"

from .core import (
    AuthorizationMode,
    EventSeverity,
    EventType,
    OnRegenerate,
    Settings,
    get_audit_logger,
)
from .exceptions import KeywardenError
from .keys import KeyAlgorithm
from .lifecycle import CredentialLifecycle, RegenerationRequest

__all__ = [
    "__version__",
    "AuthorizationMode",
    "CredentialLifecycle",
    "EventSeverity",
    "EventType",
    "KeyAlgorithm",
    "KeywardenError",
    "OnRegenerate",
    "RegenerationRequest",
    "Settings",
    "get_audit_logger",
]
