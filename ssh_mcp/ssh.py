import io
import time
import codecs
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
import paramiko

from ssh_mcp.config import (
    CHARACTER_LIMIT, BUFFER_SIZE, POLL_INTERVAL, KEEPALIVE_INTERVAL,
    DEFAULT_PORT, DEFAULT_EXEC_TIMEOUT_MS, DEFAULT_CONNECT_TIMEOUT_MS
)
from ssh_mcp.errors import (
    CommandError, ConfigurationError, NotConnectedError, SSHConnectionError, SSHTimeoutError
)
from ssh_mcp.utils import log_error

KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


@dataclass
class PasswordAuth:
    password: str


@dataclass
class KeyContentAuth:
    private_key: str
    passphrase: Optional[str] = None


@dataclass
class KeyFileAuth:
    private_key_path: str
    passphrase: Optional[str] = None


AuthMethod = Union[PasswordAuth, KeyContentAuth, KeyFileAuth]


def select_auth(
    password: Optional[str] = None,
    private_key: Optional[str] = None,
    private_key_path: Optional[str] = None,
    passphrase: Optional[str] = None,
) -> AuthMethod:
    """Pick exactly one auth method: key content, then key file, then password."""
    if private_key:
        return KeyContentAuth(private_key=private_key, passphrase=passphrase or None)
    if private_key_path:
        return KeyFileAuth(private_key_path=private_key_path, passphrase=passphrase or None)
    if password:
        return PasswordAuth(password=password)
    raise ConfigurationError(
        "At least one authentication method is required (password, private_key, or private_key_path)"
    )


def load_private_key(key_text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    last_error: Optional[Exception] = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_text), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise SSHConnectionError(f"Private key is encrypted, passphrase required: {exc}") from exc
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise SSHConnectionError(f"Failed to parse private key: {last_error}")


def read_private_key_file(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    except OSError as exc:
        raise SSHConnectionError(f"Failed to read private key: {exc}") from exc


@dataclass
class OutputCapture:
    """Accumulates one output stream, keeping at most ``limit`` characters."""
    limit: int = CHARACTER_LIMIT
    text: str = ""
    truncated: bool = False
    decoder: Any = field(default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"))

    def append_bytes(self, data: bytes, final: bool = False) -> None:
        self.append(self.decoder.decode(data, final))

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        room = self.limit - len(self.text)
        if len(chunk) > room:
            self.text += chunk[:max(room, 0)]
            self.truncated = True
        else:
            self.text += chunk


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    truncated: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "truncated": self.truncated,
        }


class SSHClient:
    """One authenticated SSH connection.

    States move ``disconnected -> connecting -> connected -> closed``; a failed
    handshake ends in ``failed``. The connection can also drop back to
    ``disconnected`` on its own when the remote side goes away, which
    ``is_connected()`` notices.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        auth: AuthMethod,
        timeout_ms: Optional[int] = None,
        connect_timeout_ms: Optional[int] = None,
        verify_host_key: bool = False,
    ):
        self.host = host
        self.port = port or DEFAULT_PORT
        self.username = username
        self.auth = auth
        self.exec_timeout_ms = timeout_ms or DEFAULT_EXEC_TIMEOUT_MS
        self.connect_timeout_ms = connect_timeout_ms or DEFAULT_CONNECT_TIMEOUT_MS
        self.verify_host_key = verify_host_key

        self.client: Optional[paramiko.SSHClient] = None
        self.state = "disconnected"
        self.lock = threading.Lock()

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def _build_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self.verify_host_key:
            # No policy set: paramiko rejects hosts missing from known_hosts.
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def _connect_kwargs(self) -> Dict[str, Any]:
        timeout_s = self.connect_timeout_ms / 1000.0
        kwargs: Dict[str, Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": timeout_s,
            "banner_timeout": timeout_s,
            "auth_timeout": timeout_s,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if isinstance(self.auth, PasswordAuth):
            kwargs["password"] = self.auth.password
        elif isinstance(self.auth, KeyContentAuth):
            kwargs["pkey"] = load_private_key(self.auth.private_key, self.auth.passphrase)
        elif isinstance(self.auth, KeyFileAuth):
            key_text = read_private_key_file(self.auth.private_key_path)
            kwargs["pkey"] = load_private_key(key_text, self.auth.passphrase)
        else:
            raise ConfigurationError("Unsupported authentication method")
        return kwargs

    def _abort(self, client: paramiko.SSHClient) -> None:
        try:
            client.close()
        except Exception as exc:
            log_error(f"abort of {self.label} failed: {exc}")

    def connect(self) -> None:
        if self.is_connected():
            return
        # Key problems surface here, before any socket is opened.
        kwargs = self._connect_kwargs()
        client = self._build_client()
        with self.lock:
            stale = self.client
            self.client = client
            self.state = "connecting"
        if stale is not None:
            self._abort(stale)

        outcome: Dict[str, Any] = {}
        done = threading.Event()
        aborted = threading.Event()

        def _handshake() -> None:
            try:
                client.connect(**kwargs)
                if aborted.is_set():
                    self._abort(client)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        worker = threading.Thread(target=_handshake, name=f"ssh-connect-{self.host}", daemon=True)
        worker.start()

        if not done.wait(self.connect_timeout_ms / 1000.0):
            aborted.set()
            self._abort(client)
            with self.lock:
                self.client = None
                self.state = "failed"
            raise SSHTimeoutError(
                f"Connection timeout after {self.connect_timeout_ms}ms", self.connect_timeout_ms
            )

        error = outcome.get("error")
        if error is not None:
            self._abort(client)
            with self.lock:
                self.client = None
                self.state = "failed"
            if isinstance(error, socket.timeout):
                raise SSHTimeoutError(
                    f"Connection timeout after {self.connect_timeout_ms}ms", self.connect_timeout_ms
                ) from error
            raise SSHConnectionError(f"SSH connection error: {error}") from error

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        with self.lock:
            self.state = "connected"

    def is_connected(self) -> bool:
        with self.lock:
            if self.state != "connected" or self.client is None:
                return False
            transport = self.client.get_transport()
            if transport is None or not transport.is_active():
                self.state = "disconnected"
                return False
            return True

    def get_client(self) -> paramiko.SSHClient:
        if not self.is_connected():
            raise NotConnectedError()
        return self.client

    def execute_command(self, command: str, timeout_ms: Optional[int] = None) -> ExecResult:
        if not self.is_connected():
            raise NotConnectedError()

        timeout_ms = timeout_ms or self.exec_timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000.0
        transport = self.client.get_transport()
        try:
            channel = transport.open_session(timeout=timeout_ms / 1000.0)
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as exc:
            raise CommandError(f"Failed to execute command: {exc}") from exc

        stdout = OutputCapture()
        stderr = OutputCapture()
        try:
            while True:
                if time.monotonic() >= deadline:
                    # The finally block closes the channel, abandoning the remote command.
                    raise SSHTimeoutError(f"Command execution timeout after {timeout_ms}ms", timeout_ms)

                progressed = False
                if channel.recv_ready():
                    stdout.append_bytes(channel.recv(BUFFER_SIZE))
                    progressed = True
                if channel.recv_stderr_ready():
                    stderr.append_bytes(channel.recv_stderr(BUFFER_SIZE))
                    progressed = True

                if (
                    channel.exit_status_ready()
                    and (channel.eof_received or channel.closed)
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    break

                if not progressed:
                    time.sleep(POLL_INTERVAL)

            stdout.append_bytes(b"", final=True)
            stderr.append_bytes(b"", final=True)
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise CommandError(f"Channel error: {exc}") from exc
        finally:
            channel.close()

        return ExecResult(
            stdout=stdout.text,
            stderr=stderr.text,
            exit_code=None if exit_code == -1 else exit_code,
            truncated=stdout.truncated or stderr.truncated,
        )

    def close(self) -> None:
        with self.lock:
            client = self.client
            self.client = None
            if client is None:
                return
            self.state = "closed"
        client.close()
