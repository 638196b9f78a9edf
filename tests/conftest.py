"""Shared pytest fixtures and in-memory stand-ins for paramiko objects."""

import io
import stat

import paramiko
import pytest

from ssh_mcp.config import ServerConfig
from ssh_mcp.manager import SessionManager
from ssh_mcp.registry import SessionRegistry
from ssh_mcp.ssh import ExecResult, SSHClient, PasswordAuth


class FakeChannel:
    """Exec channel that hands out canned output; ``hang`` keeps it open forever."""

    def __init__(self, stdout=b"", stderr=b"", exit_status=0, hang=False):
        self._stdout = bytearray(stdout)
        self._stderr = bytearray(stderr)
        self._exit_status = exit_status
        self.hang = hang
        self.command = None
        self.closed = False
        self.close_calls = 0

    @property
    def eof_received(self):
        return not self.hang

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._stdout)

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv(self, size):
        data = bytes(self._stdout[:size])
        del self._stdout[:size]
        return data

    def recv_stderr(self, size):
        data = bytes(self._stderr[:size])
        del self._stderr[:size]
        return data

    def exit_status_ready(self):
        return not self.hang

    def recv_exit_status(self):
        return self._exit_status

    def close(self):
        self.closed = True
        self.close_calls += 1


class FakeTransport:
    def __init__(self, channel=None):
        self.channel = channel or FakeChannel()
        self.active = True
        self.keepalive = None

    def is_active(self):
        return self.active

    def open_session(self, timeout=None):
        return self.channel

    def set_keepalive(self, interval):
        self.keepalive = interval


class FakeWriteHandle:
    def __init__(self, sftp, path):
        self.sftp = sftp
        self.path = path
        self.buffer = io.BytesIO()
        self.pipelined = False

    def set_pipelined(self, pipelined=True):
        self.pipelined = pipelined

    def write(self, data):
        self.buffer.write(data)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.sftp.files[self.path] = self.buffer.getvalue()
        return False


class FakeSFTP:
    """In-memory SFTP server view: ``files`` maps path to bytes, ``dirs`` holds directories."""

    def __init__(self):
        self.files = {}
        self.dirs = {"/"}
        self.closed = False
        self.stat_error = None

    def _attrs(self, path):
        attrs = paramiko.SFTPAttributes()
        attrs.filename = path.rstrip("/").rsplit("/", 1)[-1] or "/"
        attrs.longname = attrs.filename
        attrs.st_uid = 1000
        attrs.st_gid = 1000
        attrs.st_atime = 1700000000
        attrs.st_mtime = 1700000000
        if path in self.dirs:
            attrs.st_mode = stat.S_IFDIR | 0o755
            attrs.st_size = 4096
        else:
            attrs.st_mode = stat.S_IFREG | 0o644
            attrs.st_size = len(self.files[path])
        return attrs

    def _missing(self, path):
        return FileNotFoundError(2, "No such file", path)

    def stat(self, path):
        if self.stat_error is not None:
            raise self.stat_error
        if path not in self.files and path not in self.dirs:
            raise self._missing(path)
        return self._attrs(path)

    def listdir_attr(self, path):
        if path not in self.dirs:
            raise self._missing(path)
        prefix = path.rstrip("/") + "/"
        children = [
            name for name in list(self.files) + list(self.dirs)
            if name != path and name.startswith(prefix) and "/" not in name[len(prefix):]
        ]
        return [self._attrs(child) for child in children]

    def open(self, path, mode="r"):
        if "w" in mode:
            return FakeWriteHandle(self, path)
        if path not in self.files:
            raise self._missing(path)
        return io.BytesIO(self.files[path])

    def putfo(self, fl, remotepath, file_size=0, callback=None, confirm=True):
        self.files[remotepath] = fl.read()
        return self._attrs(remotepath)

    def getfo(self, remotepath, fl, callback=None):
        if remotepath not in self.files:
            raise self._missing(remotepath)
        fl.write(self.files[remotepath])
        return len(self.files[remotepath])

    def remove(self, path):
        if path not in self.files:
            raise self._missing(path)
        del self.files[path]

    def rmdir(self, path):
        if path not in self.dirs:
            raise self._missing(path)
        prefix = path.rstrip("/") + "/"
        if any(name.startswith(prefix) for name in list(self.files) + list(self.dirs)):
            raise OSError("Directory not empty")
        self.dirs.discard(path)

    def mkdir(self, path, mode=0o777):
        if path in self.dirs or path in self.files:
            raise OSError("Failure")
        self.dirs.add(path)

    def rename(self, old_path, new_path):
        if old_path in self.files:
            self.files[new_path] = self.files.pop(old_path)
        elif old_path in self.dirs:
            self.dirs.discard(old_path)
            self.dirs.add(new_path)
        else:
            raise self._missing(old_path)

    def close(self):
        self.closed = True


class FakeParamikoClient:
    def __init__(self, transport=None, sftp=None):
        self.transport = transport or FakeTransport()
        self.sftp = sftp or FakeSFTP()
        self.closed = False

    def get_transport(self):
        return self.transport

    def open_sftp(self):
        return self.sftp

    def close(self):
        self.closed = True
        self.transport.active = False


class FakeSSHClient:
    """Stand-in for ``SSHClient`` handed to ``SessionManager`` as its client factory."""

    instances = []
    fail_connect = None
    fail_close = None

    def __init__(self, host, port, username, auth, timeout_ms=None, connect_timeout_ms=None,
                 verify_host_key=False):
        self.host = host
        self.port = port
        self.username = username
        self.auth = auth
        self.timeout_ms = timeout_ms
        self.connect_timeout_ms = connect_timeout_ms
        self.paramiko_client = FakeParamikoClient()
        self.commands = []
        self.connected = False
        self.closed = False
        self.sftp_closed_before_client = None
        FakeSSHClient.instances.append(self)

    def connect(self):
        if FakeSSHClient.fail_connect is not None:
            raise FakeSSHClient.fail_connect
        self.connected = True

    def get_client(self):
        return self.paramiko_client

    def execute_command(self, command, timeout_ms=None):
        self.commands.append((command, timeout_ms))
        return ExecResult(stdout=f"ran {command}\n", stderr="", exit_code=0, truncated=False)

    def close(self):
        self.sftp_closed_before_client = self.paramiko_client.sftp.closed
        self.closed = True
        if FakeSSHClient.fail_close is not None:
            raise FakeSSHClient.fail_close


@pytest.fixture
def fake_client_factory():
    FakeSSHClient.instances = []
    FakeSSHClient.fail_connect = None
    FakeSSHClient.fail_close = None
    yield FakeSSHClient
    FakeSSHClient.instances = []
    FakeSSHClient.fail_connect = None
    FakeSSHClient.fail_close = None


@pytest.fixture
def manager(fake_client_factory):
    """A SessionManager with its own registry and no network."""
    return SessionManager(config=ServerConfig(), registry=SessionRegistry(), client_factory=fake_client_factory)


@pytest.fixture
def connected_client():
    """Build an SSHClient wired to a fake paramiko client for a given channel."""

    def _build(channel, timeout_ms=None):
        client = SSHClient("example.com", 22, "deploy", PasswordAuth("pw"), timeout_ms=timeout_ms)
        client.client = FakeParamikoClient(transport=FakeTransport(channel))
        client.state = "connected"
        return client

    return _build


@pytest.fixture
def fake_sftp():
    return FakeSFTP()


@pytest.fixture
def make_channel():
    return FakeChannel
