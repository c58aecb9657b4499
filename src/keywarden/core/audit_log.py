# Audit Log - Credential Lifecycle Forensics
#
# Append-only, structured audit trail for every security-relevant step:
# key generation/installation/removal, backups and restores, sshd_config
# reconciliation and authorized_keys changes. Private key material is
# never logged; callers pass fingerprints and paths only.
#
# One JSON object per line, one file per day (audit_YYYY-MM-DD.log).

import getpass
import logging
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog

AUDIT_LOGGER_NAME = "keywarden.audit"


class EventType(str, Enum):
    """Lifecycle events that end up in the audit trail."""
    # Key material
    KEY_GENERATED = "key.generated"
    KEY_INSTALLED = "key.installed"
    KEY_REMOVED = "key.removed"
    KEY_DISCLOSED = "key.disclosed"

    # Backups
    BACKUP_CREATED = "backup.created"
    BACKUP_RESTORED = "backup.restored"

    # sshd_config
    CONFIG_RECONCILED = "config.reconciled"
    CONFIG_INVALID = "config.invalid"
    CONFIG_ROLLED_BACK = "config.rolled_back"

    # authorized_keys
    AUTHORIZATION_REPLACED = "authorization.replaced"
    AUTHORIZATION_APPENDED = "authorization.appended"
    AUTHORIZATION_REVOKED = "authorization.revoked"

    # Service / run outcome
    SERVICE_RESTARTED = "service.restarted"
    LIFECYCLE_FAILED = "lifecycle.failed"
    OPERATOR_ABORT = "operator.abort"


class EventSeverity(str, Enum):
    """
    Severity levels for audit events.

    - INFO: routine change (key installed, config reconciled)
    - WARNING: destructive change the operator approved (key deleted, restore)
    - CRITICAL: a step failed and the host may need attention
    """
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


def _operator() -> Dict[str, Any]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = None
    return {"os_user": user, "hostname": socket.gethostname(), "platform": sys.platform}


class AuditLogger:
    """
    Writes lifecycle events as JSON lines through structlog.

    The operator (OS user, hostname) is bound once per logger, so every
    line says who changed the host. Each event gets a UUID that is returned
    to the caller.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Args:
            log_dir: Directory for the daily audit files (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )

        self.log_file = self._attach_daily_file()
        self.logger = structlog.get_logger(AUDIT_LOGGER_NAME).bind(operator=_operator())

    def _attach_daily_file(self) -> Path:
        """Point the stdlib audit logger at today's file, replacing any other."""
        stamp = datetime.now().strftime("%Y-%m-%d")
        path = self.log_dir / f"audit_{stamp}.log"

        target = logging.getLogger(AUDIT_LOGGER_NAME)
        for handler in list(target.handlers):
            if not isinstance(handler, logging.FileHandler):
                continue
            if Path(handler.baseFilename) == path.resolve():
                return path
            target.removeHandler(handler)
            handler.close()

        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(message)s"))
        target.addHandler(handler)
        target.setLevel(logging.INFO)
        target.propagate = False
        return path

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append one event and return its id.

        ``details`` carries paths, fingerprints, backup ids and the failing
        step; never key material.
        """
        event_id = uuid4().hex
        self.logger.info(
            message,
            event_id=event_id,
            event_type=event_type.value,
            severity=severity.value,
            recorded_at=datetime.now(timezone.utc).isoformat(),
            details=details or {},
        )
        return event_id


_audit_logger: Optional[AuditLogger] = None


def configure_audit_logger(log_dir: Optional[Path]) -> AuditLogger:
    """Replace the process-wide audit logger with one writing to ``log_dir``."""
    global _audit_logger
    _audit_logger = AuditLogger(log_dir)
    return _audit_logger


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def log_security_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs
) -> str:
    """
    Shorthand for ``get_audit_logger().log_event(...)``.

    Usage:
        log_security_event(
            EventType.KEY_INSTALLED,
            EventSeverity.INFO,
            "Installed ED25519 key",
            details={"fingerprint": "SHA256:..."}
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)
