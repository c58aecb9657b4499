"""sshd_config reconciliation and syntax checking."""

from .checker import SshdSyntaxChecker, SyntaxCheckResult
from .reconciler import (
    ConfigReconciler,
    DirectiveState,
    ReconcileResult,
    apply_directives,
    render_value,
)

__all__ = [
    "ConfigReconciler",
    "DirectiveState",
    "ReconcileResult",
    "SshdSyntaxChecker",
    "SyntaxCheckResult",
    "apply_directives",
    "render_value",
]
