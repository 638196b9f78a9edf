"""In-process SSH/SFTP server for integration tests.

Exec requests run through ``sh -c`` on the local machine and the SFTP
subsystem serves the local filesystem, so tests should only touch paths
under ``tmp_path``.
"""

import os
import socket
import subprocess
import threading
import time

import paramiko
import pytest

USERNAME = "tester"
PASSWORD = "correct horse"


class _ExecServer(paramiko.ServerInterface):
    def __init__(self, authorized_key):
        self.authorized_key = authorized_key

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def get_allowed_auths(self, username):
        return "password,publickey"

    def check_auth_password(self, username, password):
        if username == USERNAME and password == PASSWORD:
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_auth_publickey(self, username, key):
        if username == USERNAME and key.get_fingerprint() == self.authorized_key.get_fingerprint():
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_channel_exec_request(self, channel, command):
        worker = threading.Thread(target=_run_command, args=(channel, command.decode("utf-8")), daemon=True)
        worker.start()
        return True


def _pump(stream, send):
    try:
        for chunk in iter(lambda: stream.read1(32768), b""):
            send(chunk)
    except (OSError, EOFError):
        pass


def _run_command(channel, command):
    proc = subprocess.Popen(["sh", "-c", command], stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    pumps = [
        threading.Thread(target=_pump, args=(proc.stdout, channel.sendall), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, channel.sendall_stderr), daemon=True),
    ]
    for pump in pumps:
        pump.start()

    while proc.poll() is None:
        if channel.closed:
            proc.kill()
            break
        time.sleep(0.02)
    proc.wait()
    for pump in pumps:
        pump.join(timeout=2)

    if not channel.closed:
        try:
            channel.send_exit_status(proc.returncode)
            channel.close()
        except (OSError, EOFError):
            pass


class _SFTPHandle(paramiko.SFTPHandle):
    def stat(self):
        try:
            return paramiko.SFTPAttributes.from_stat(os.fstat(self.readfile.fileno()))
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)

    def chattr(self, attr):
        return paramiko.SFTP_OK


class _LocalSFTPServer(paramiko.SFTPServerInterface):
    def list_folder(self, path):
        try:
            entries = []
            for name in os.listdir(path):
                attrs = paramiko.SFTPAttributes.from_stat(os.lstat(os.path.join(path, name)))
                attrs.filename = name
                entries.append(attrs)
            return entries
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)

    def stat(self, path):
        try:
            return paramiko.SFTPAttributes.from_stat(os.stat(path))
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)

    def lstat(self, path):
        try:
            return paramiko.SFTPAttributes.from_stat(os.lstat(path))
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)

    def open(self, path, flags, attr):
        try:
            fd = os.open(path, flags | getattr(os, "O_BINARY", 0), 0o644)
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)
        if flags & os.O_WRONLY:
            mode = "ab" if flags & os.O_APPEND else "wb"
        elif flags & os.O_RDWR:
            mode = "a+b" if flags & os.O_APPEND else "r+b"
        else:
            mode = "rb"
        try:
            handle_file = os.fdopen(fd, mode)
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)
        handle = _SFTPHandle(flags)
        handle.filename = path
        handle.readfile = handle_file
        handle.writefile = handle_file
        return handle

    def remove(self, path):
        try:
            os.remove(path)
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)
        return paramiko.SFTP_OK

    def rename(self, oldpath, newpath):
        try:
            os.rename(oldpath, newpath)
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)
        return paramiko.SFTP_OK

    def mkdir(self, path, attr):
        try:
            os.mkdir(path)
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)
        return paramiko.SFTP_OK

    def rmdir(self, path):
        try:
            os.rmdir(path)
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)
        return paramiko.SFTP_OK


class LocalSSHServer:
    """Accepts connections on 127.0.0.1 and serves each on its own paramiko Transport."""

    def __init__(self, host_key, client_key):
        self.host_key = host_key
        self.client_key = client_key
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(16)
        self.port = self.sock.getsockname()[1]
        self.transports = []
        self.running = True
        self.thread = threading.Thread(target=self._accept_loop, name="local-ssh-server", daemon=True)

    def start(self):
        self.thread.start()
        return self

    def _accept_loop(self):
        while self.running:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                return
            transport = paramiko.Transport(conn)
            transport.add_server_key(self.host_key)
            transport.set_subsystem_handler("sftp", paramiko.SFTPServer, _LocalSFTPServer)
            self.transports.append(transport)
            try:
                transport.start_server(server=_ExecServer(self.client_key))
            except (paramiko.SSHException, EOFError, OSError):
                transport.close()

    def stop(self):
        self.running = False
        self.sock.close()
        for transport in self.transports:
            transport.close()


@pytest.fixture(scope="session")
def client_key():
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(scope="session")
def ssh_server(client_key):
    server = LocalSSHServer(paramiko.RSAKey.generate(2048), client_key).start()
    yield server
    server.stop()


@pytest.fixture
def server_credentials(ssh_server):
    return {"host": "127.0.0.1", "port": ssh_server.port, "username": USERNAME, "password": PASSWORD}
