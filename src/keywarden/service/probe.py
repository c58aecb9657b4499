# Connectivity probe - is an SSH server answering on host:port?

import logging
import socket
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    host: str
    port: int
    reachable: bool
    banner: str = ""
    error: str = ""

    @property
    def is_ssh(self) -> bool:
        return self.banner.startswith("SSH-")


def probe_ssh(host: str = "127.0.0.1", port: int = 22, timeout: float = 5.0) -> ProbeResult:
    """Open a TCP connection and read the server's identification line."""
    result = ProbeResult(host=host, port=port, reachable=False)
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            result.reachable = True
            data = b""
            while b"\n" not in data and len(data) < 256:
                chunk = sock.recv(256)
                if not chunk:
                    break
                data += chunk
    except OSError as e:
        result.error = str(e)
        logger.info("SSH probe %s:%d failed: %s", host, port, e)
        return result

    result.banner = data.split(b"\n", 1)[0].decode("ascii", "replace").strip()
    logger.info("SSH probe %s:%d banner: %s", host, port, result.banner or "(none)")
    return result
