# SSH Service Controller - install / start / restart the OpenSSH daemon
#
# Units are tried in order: "sshd" (RHEL, Arch, Alpine with OpenRC shims)
# then "ssh" (Debian/Ubuntu). The first unit systemctl accepts is
# remembered for later calls.

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from ..exceptions import ServiceError

logger = logging.getLogger(__name__)

SERVICE_UNITS = ("sshd", "ssh")

# Distribution ID (from /etc/os-release) -> package manager commands
PACKAGE_COMMANDS: Dict[str, List[List[str]]] = {
    "apt": [
        ["apt-get", "update", "-qq"],
        ["apt-get", "install", "-y", "openssh-server", "openssh-client"],
    ],
    "yum": [["yum", "install", "-y", "openssh-server", "openssh-clients"]],
    "apk": [["apk", "add", "--no-cache", "openssh"]],
    "pacman": [["pacman", "-S", "--noconfirm", "openssh"]],
}

DISTRO_MANAGERS = {
    "debian": "apt",
    "ubuntu": "apt",
    "centos": "yum",
    "rhel": "yum",
    "fedora": "yum",
    "rocky": "yum",
    "almalinux": "yum",
    "alpine": "apk",
    "arch": "pacman",
}


def read_os_release(path: Union[str, Path] = "/etc/os-release") -> Dict[str, str]:
    """Parse an os-release file into a dict (quotes stripped)."""
    data = {}
    try:
        text = Path(path).read_text()
    except FileNotFoundError:
        return data
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        data[key] = value.strip().strip('"').strip("'")
    return data


def detect_package_manager(os_release: Dict[str, str]) -> str:
    """Map an os-release dict to apt/yum/apk/pacman, checking ID_LIKE too."""
    candidates = [os_release.get("ID", "")] + os_release.get("ID_LIKE", "").split()
    for distro in candidates:
        manager = DISTRO_MANAGERS.get(distro.lower())
        if manager:
            return manager
    raise ServiceError(
        f"Unsupported distribution: {os_release.get('ID') or 'unknown'}"
    )


class SystemdServiceController:
    """Manage the SSH daemon through systemctl.

    Args:
        units: Unit names to try, in order.
        os_release_path: Where to read the distribution ID for install().
        timeout: Seconds per systemctl call; package installs get 10x.
    """

    def __init__(
        self,
        units: Sequence[str] = SERVICE_UNITS,
        os_release_path: Union[str, Path] = "/etc/os-release",
        timeout: int = 30,
    ):
        self.units = tuple(units)
        self.os_release_path = Path(os_release_path)
        self.timeout = timeout
        self._unit: Optional[str] = None

    def _run(self, cmd: List[str], timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        logger.debug("Running: %s", " ".join(cmd))
        env = {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}
        try:
            return subprocess.run(
                cmd, capture_output=True, text=True,
                timeout=timeout or self.timeout, env=env,
            )
        except FileNotFoundError as e:
            raise ServiceError(f"{cmd[0]} not found") from e
        except subprocess.TimeoutExpired as e:
            raise ServiceError(f"{' '.join(cmd)} timed out") from e

    def _systemctl(self, action: str) -> str:
        """Run ``systemctl <action> <unit>`` on the first unit that accepts it."""
        units = (self._unit,) if self._unit else self.units
        errors = []
        for unit in units:
            r = self._run(["systemctl", action, unit])
            if r.returncode == 0:
                self._unit = unit
                return unit
            errors.append(f"{unit}: {(r.stderr or r.stdout).strip()}")
        raise ServiceError(f"systemctl {action} failed ({'; '.join(errors)})")

    # ── Public API ─────────────────────────────────────────────────

    def is_installed(self) -> bool:
        for unit in self.units:
            r = self._run(["systemctl", "cat", unit])
            if r.returncode == 0:
                return True
        return False

    def install(self) -> bool:
        """Install the OpenSSH server if missing. Returns True if installed now."""
        if self.is_installed():
            logger.info("OpenSSH server already installed")
            return False

        manager = detect_package_manager(read_os_release(self.os_release_path))
        logger.info("Installing OpenSSH server with %s", manager)
        for cmd in PACKAGE_COMMANDS[manager]:
            r = self._run(cmd, timeout=self.timeout * 10)
            if r.returncode != 0:
                raise ServiceError(
                    f"{' '.join(cmd)} failed: {(r.stderr or r.stdout).strip()}"
                )
        return True

    def start(self) -> None:
        unit = self._systemctl("start")
        self._systemctl("enable")
        logger.info("Started and enabled %s", unit)

    def restart(self) -> None:
        unit = self._systemctl("restart")
        logger.info("Restarted %s", unit)

    def is_active(self) -> bool:
        units = (self._unit,) if self._unit else self.units
        for unit in units:
            r = self._run(["systemctl", "is-active", "--quiet", unit])
            if r.returncode == 0:
                return True
        return False
