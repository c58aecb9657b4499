"""OpenSSH service control and connectivity checks."""

from .controller import SystemdServiceController, detect_package_manager, read_os_release
from .probe import ProbeResult, probe_ssh

__all__ = [
    "ProbeResult",
    "SystemdServiceController",
    "detect_package_manager",
    "probe_ssh",
    "read_os_release",
]
