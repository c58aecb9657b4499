# Core module - shared infrastructure for every keywarden component:
# - Audit logging
# - Settings
# - Lifecycle locking

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    configure_audit_logger,
    get_audit_logger,
    log_security_event,
)
from .locking import LifecycleLock
from .settings import (
    DEFAULT_DIRECTIVES,
    AuthorizationMode,
    OnRegenerate,
    Settings,
)

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "configure_audit_logger",
    "get_audit_logger",
    "log_security_event",
    # Locking
    "LifecycleLock",
    # Settings
    "DEFAULT_DIRECTIVES",
    "AuthorizationMode",
    "OnRegenerate",
    "Settings",
]
