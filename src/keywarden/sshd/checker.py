# sshd syntax checker - wraps `sshd -t -f <path>`

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


@dataclass
class SyntaxCheckResult:
    ok: bool
    output: str = ""


class SshdSyntaxChecker:
    """Run the daemon's own test mode against a config file."""

    def __init__(self, binary: str = "sshd", timeout: int = 10):
        self.binary = binary
        self.timeout = timeout

    def check(self, path: Union[str, Path]) -> SyntaxCheckResult:
        cmd = [self.binary, "-t", "-f", str(path)]
        try:
            r = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            return SyntaxCheckResult(False, f"{self.binary} not found; is openssh-server installed?")
        except subprocess.TimeoutExpired:
            return SyntaxCheckResult(False, f"{self.binary} -t timed out after {self.timeout}s")

        output = (r.stderr or r.stdout or "").strip()
        if r.returncode != 0:
            logger.error("sshd -t failed for %s: %s", path, output)
        return SyntaxCheckResult(r.returncode == 0, output)
