import os
from typing import Optional

# ========= Static config =========
CONNECT_TIMEOUT = 5.0
SEND_TIMEOUT = 5.0
CLOSE_TIMEOUT = 2.0
BUFFER_SIZE = 4096

TUNNEL_READY_TIMEOUT = 15.0
TUNNEL_BACKOFF_INITIAL = 0.05
TUNNEL_BACKOFF_MAX = 0.8
TUNNEL_TERMINATE_GRACE = 2.0
TUNNEL_CHANNEL_GRACE = 0.5
TUNNEL_STDERR_LINES = 20
TUNNEL_LOCAL_HOST = "127.0.0.1"

PORT_FILE_NAME = ".nrepl-port"
PORT_FILE_POLL_INTERVAL = 0.05

SSH_CONFIG_PATH = "~/.ssh/config"
DEFAULT_SSH_BINARY = "ssh"

MAX_DOMAIN_LENGTH = 253
MAX_LABEL_LENGTH = 63

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_TIMEOUT = 2


def _parse_float(raw: Optional[str], default: Optional[float]) -> Optional[float]:
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else None


# ========= Runtime Configuration =========
class ClientConfig:
    def __init__(self):
        self.TIMEOUT: Optional[float] = None
        self.CONNECT_TIMEOUT: float = CONNECT_TIMEOUT
        self.SSH_BINARY: str = DEFAULT_SSH_BINARY
        self.TRACE_PATH: Optional[str] = None
        self.VERBOSE: bool = False

    def load_from_env(self):
        self.TIMEOUT = _parse_float(os.environ.get("NR_TIMEOUT"), self.TIMEOUT)
        self.CONNECT_TIMEOUT = _parse_float(
            os.environ.get("NR_CONNECT_TIMEOUT"), self.CONNECT_TIMEOUT
        ) or CONNECT_TIMEOUT
        self.SSH_BINARY = os.environ.get("NR_SSH", self.SSH_BINARY) or DEFAULT_SSH_BINARY
        self.TRACE_PATH = os.environ.get("NR_TRACE", self.TRACE_PATH) or None

        verbose_env = os.environ.get("NR_VERBOSE")
        if verbose_env is not None:
            self.VERBOSE = verbose_env.lower() in ("true", "1", "yes")

# Global instance
config = ClientConfig()
