import os
import base64
import binascii
from typing import Optional, Dict, Any

# ========= Static config =========
CHARACTER_LIMIT = 25000
COMMAND_MAX_CHARS = 1000
BUFFER_SIZE = 32768
POLL_INTERVAL = 0.02
KEEPALIVE_INTERVAL = 30

DEFAULT_PORT = 22
DEFAULT_EXEC_TIMEOUT_MS = 30000
MIN_EXEC_TIMEOUT_MS = 1000
MAX_EXEC_TIMEOUT_MS = 300000
DEFAULT_CONNECT_TIMEOUT_MS = 10000
MIN_CONNECT_TIMEOUT_MS = 1000
MAX_CONNECT_TIMEOUT_MS = 60000


def decode_private_key(value: str) -> str:
    """Private key from env may be base64 encoded PEM or the raw PEM itself."""
    stripped = value.strip()
    if "-----BEGIN" in stripped:
        return stripped
    try:
        decoded = base64.b64decode(stripped, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return value
    return decoded if "-----BEGIN" in decoded else value


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_PORT: int = DEFAULT_PORT
        self.SSH_USERNAME: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PRIVATE_KEY: Optional[str] = None
        self.SSH_PRIVATE_KEY_PATH: Optional[str] = None
        self.SSH_PASSPHRASE: Optional[str] = None
        self.SSH_TIMEOUT: Optional[int] = None
        self.SSH_CONNECT_TIMEOUT: Optional[int] = None
        # Agents connect to hosts chosen at runtime, so strict known_hosts checking is opt-in.
        self.SSH_VERIFY_HOST_KEY: bool = False
        self.LOG_DIR: Optional[str] = None

    def load_from_env(self, environ: Optional[Dict[str, str]] = None):
        env = os.environ if environ is None else environ
        self.SSH_HOST = env.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USERNAME = env.get("SSH_USERNAME", env.get("SSH_USER", self.SSH_USERNAME))
        self.SSH_PASSWORD = env.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PRIVATE_KEY_PATH = env.get("SSH_PRIVATE_KEY_PATH", env.get("SSH_KEY_PATH", self.SSH_PRIVATE_KEY_PATH))
        self.SSH_PASSPHRASE = env.get("SSH_PASSPHRASE", env.get("SSH_KEY_PASSPHRASE", self.SSH_PASSPHRASE))
        self.LOG_DIR = env.get("SSH_MCP_LOG_DIR", self.LOG_DIR)

        if env.get("SSH_PORT"):
            self.SSH_PORT = int(env["SSH_PORT"])
        if env.get("SSH_PRIVATE_KEY"):
            self.SSH_PRIVATE_KEY = decode_private_key(env["SSH_PRIVATE_KEY"])
        if env.get("SSH_TIMEOUT"):
            self.SSH_TIMEOUT = int(env["SSH_TIMEOUT"])
        if env.get("SSH_CONNECT_TIMEOUT"):
            self.SSH_CONNECT_TIMEOUT = int(env["SSH_CONNECT_TIMEOUT"])

        verify_host_env = env.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

    def has_preset_server(self) -> bool:
        return bool(self.SSH_HOST and self.SSH_USERNAME)

    def validate_server_config(self) -> Optional[str]:
        if not self.SSH_HOST:
            return "Missing host"
        if not self.SSH_USERNAME:
            return "Missing username"
        if not self.SSH_PASSWORD and not self.SSH_PRIVATE_KEY and not self.SSH_PRIVATE_KEY_PATH:
            return "Missing authentication method (password or private key)"
        return None

    def preset_connect_params(self) -> Dict[str, Any]:
        return {
            "host": self.SSH_HOST,
            "port": self.SSH_PORT,
            "username": self.SSH_USERNAME,
            "password": self.SSH_PASSWORD,
            "private_key": self.SSH_PRIVATE_KEY,
            "private_key_path": self.SSH_PRIVATE_KEY_PATH,
            "passphrase": self.SSH_PASSPHRASE,
            "timeout": self.SSH_TIMEOUT,
            "connect_timeout": self.SSH_CONNECT_TIMEOUT,
        }

# Global instance
config = ServerConfig()
