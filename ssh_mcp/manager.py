import os
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from ssh_mcp.config import (
    DEFAULT_PORT, DEFAULT_EXEC_TIMEOUT_MS, MIN_EXEC_TIMEOUT_MS, MAX_EXEC_TIMEOUT_MS,
    DEFAULT_CONNECT_TIMEOUT_MS, MIN_CONNECT_TIMEOUT_MS, MAX_CONNECT_TIMEOUT_MS, ServerConfig
)
from ssh_mcp.errors import (
    ConfigurationError, SessionNotFoundError, SSHConnectionError, SSHMCPError, SSHTimeoutError,
    ValidationError
)
from ssh_mcp.fs import SFTPChannel
from ssh_mcp.registry import SessionRecord, SessionRegistry
from ssh_mcp.ssh import SSHClient, select_auth
from ssh_mcp.utils import (
    clamp_int, iso_now, json_line, log_error, resolve_local_path, safe_name, sanitize_command
)


class SessionManager:
    """Owns every live session and routes tool calls to the right one.

    The registry is injected so that several managers (e.g. in tests) never
    share state. Each ``SessionRecord`` owns its ``SSHClient`` and, once a
    file operation has been issued, its ``SFTPChannel``.
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        registry: Optional[SessionRegistry] = None,
        client_factory: Callable[..., SSHClient] = SSHClient,
        log_dir: Optional[str] = None,
    ):
        self.config = config or ServerConfig()
        self.registry = registry if registry is not None else SessionRegistry()
        self.client_factory = client_factory
        self.log_dir = log_dir if log_dir is not None else self.config.LOG_DIR
        self.default_session_id: Optional[str] = None
        self.lock = threading.Lock()
        if self.log_dir:
            os.makedirs(self.log_dir, exist_ok=True)

    # ---- event log ----

    def _log_session(self, record: SessionRecord, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if not self.log_dir:
            return
        filename = f"{safe_name(record.host)}__{record.session_id}.log"
        data = {"ts": iso_now(), "event": event, "session_id": record.session_id}
        if payload:
            data.update(payload)
        json_line(os.path.join(self.log_dir, filename), data)

    # ---- session resolution ----

    def effective_session_id(self, session_id: Optional[str] = None) -> str:
        if session_id:
            return session_id
        with self.lock:
            if self.default_session_id:
                return self.default_session_id
        raise ConfigurationError(
            "No session_id provided and no default session available. "
            "Please connect first or configure server in environment variables."
        )

    def _get_record(self, session_id: Optional[str]) -> SessionRecord:
        sid = self.effective_session_id(session_id)
        record = self.registry.get(sid)
        if record is None:
            raise SessionNotFoundError(sid)
        return record

    def _get_sftp(self, session_id: Optional[str]) -> Tuple[SessionRecord, SFTPChannel]:
        record = self._get_record(session_id)
        if record.sftp is not None:
            return record, record.sftp
        if record.client is None:
            raise SessionNotFoundError(record.session_id, f"Client not found for session: {record.session_id}")

        channel = SFTPChannel(record.client.get_client())
        channel.init()
        record.sftp = channel
        self._log_session(record, "sftp_opened")
        return record, channel

    def _use(self, record: SessionRecord, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.registry.touch(record.session_id)
        self._log_session(record, event, payload)

    # ---- lifecycle ----

    def auto_connect(self) -> Optional[str]:
        if not self.config.has_preset_server():
            return None
        problem = self.config.validate_server_config()
        if problem:
            raise ConfigurationError(f"Server configuration incomplete - {problem}")
        try:
            result = self.connect(**self.config.preset_connect_params())
        except SSHMCPError as exc:
            raise SSHMCPError(f"Auto-connect failed: {exc}") from exc
        with self.lock:
            self.default_session_id = result["session_id"]
        return result["session_id"]

    def connect(
        self,
        host: str,
        username: str,
        port: int = DEFAULT_PORT,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        private_key_path: Optional[str] = None,
        passphrase: Optional[str] = None,
        timeout: Optional[int] = None,
        connect_timeout: Optional[int] = None,
    ) -> Dict[str, Any]:
        if not host:
            raise ValidationError("host is required")
        if not username:
            raise ValidationError("username is required")
        auth = select_auth(
            password=password,
            private_key=private_key,
            private_key_path=private_key_path,
            passphrase=passphrase,
        )
        # Preset values from env or CLI arrive here unclamped.
        if timeout is not None:
            timeout = clamp_int(timeout, DEFAULT_EXEC_TIMEOUT_MS, MIN_EXEC_TIMEOUT_MS, MAX_EXEC_TIMEOUT_MS)
        if connect_timeout is not None:
            connect_timeout = clamp_int(
                connect_timeout, DEFAULT_CONNECT_TIMEOUT_MS, MIN_CONNECT_TIMEOUT_MS, MAX_CONNECT_TIMEOUT_MS
            )

        client = self.client_factory(
            host=host,
            port=port,
            username=username,
            auth=auth,
            timeout_ms=timeout,
            connect_timeout_ms=connect_timeout,
            verify_host_key=self.config.SSH_VERIFY_HOST_KEY,
        )
        try:
            client.connect()
        except SSHTimeoutError as exc:
            raise SSHTimeoutError(f"Failed to connect: {exc}", exc.timeout_ms) from exc
        except SSHConnectionError as exc:
            raise SSHConnectionError(f"Failed to connect: {exc}") from exc

        record = self.registry.create(host=host, port=port, username=username, client=client)
        log_error(f"Connected to {username}@{host}:{port}: session_id={record.session_id}")
        self._log_session(record, "connected", {"host": host, "port": port, "username": username})
        return {
            "session_id": record.session_id,
            "message": f"Connected to {username}@{host}:{port}",
        }

    def exec(self, command: Any, session_id: Optional[str] = None, timeout: Optional[int] = None) -> Dict[str, Any]:
        record = self._get_record(session_id)
        if record.client is None:
            raise SessionNotFoundError(record.session_id, f"Client not found for session: {record.session_id}")
        command = sanitize_command(command)
        self._use(record, "exec", {"command": command})
        result = record.client.execute_command(command, timeout_ms=timeout)
        return result.to_dict()

    def list_sessions(self) -> Dict[str, Any]:
        sessions = self.registry.list()
        return {"sessions": sessions, "count": len(sessions)}

    def _close_record(self, record: SessionRecord) -> None:
        # SFTP sub-handle first; it must not outlive its connection.
        sftp, record.sftp = record.sftp, None
        try:
            if sftp is not None:
                sftp.close()
        finally:
            if record.client is not None:
                record.client.close()

    def disconnect(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        record = self._get_record(session_id)
        try:
            self._close_record(record)
        finally:
            self.registry.remove(record.session_id)
            with self.lock:
                if record.session_id == self.default_session_id:
                    self.default_session_id = None
        self._log_session(record, "closed")
        log_error(f"Disconnected session {record.session_id}")
        return {
            "success": True,
            "message": f"Disconnected from {record.username}@{record.host}:{record.port}",
        }

    def cleanup(self) -> None:
        for record in self.registry.records():
            try:
                self._close_record(record)
            except Exception as exc:
                log_error(f"cleanup: closing session {record.session_id} failed: {exc}")
            self.registry.remove(record.session_id)
            self._log_session(record, "closed", {"reason": "cleanup"})
        self.registry.clear()
        with self.lock:
            self.default_session_id = None

    def has_active_connection(self) -> bool:
        return self.registry.size > 0

    # ---- SFTP ----

    def sftp_list(self, path: str = "/", session_id: Optional[str] = None) -> Dict[str, Any]:
        record, sftp = self._get_sftp(session_id)
        self._use(record, "sftp_list", {"path": path})
        return sftp.list_directory(path or "/")

    def sftp_upload(self, local_path: str, remote_path: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        local_path = resolve_local_path(local_path)
        record, sftp = self._get_sftp(session_id)
        self._use(record, "sftp_upload", {"local_path": local_path, "remote_path": remote_path})
        return sftp.upload_file(local_path, remote_path)

    def sftp_download(self, remote_path: str, local_path: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        local_path = resolve_local_path(local_path)
        record, sftp = self._get_sftp(session_id)
        self._use(record, "sftp_download", {"remote_path": remote_path, "local_path": local_path})
        return sftp.download_file(remote_path, local_path)

    def sftp_read(self, path: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        record, sftp = self._get_sftp(session_id)
        self._use(record, "sftp_read", {"path": path})
        return sftp.read_file(path)

    def sftp_write(self, path: str, content: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        record, sftp = self._get_sftp(session_id)
        self._use(record, "sftp_write", {"path": path})
        return sftp.write_file(path, content)

    def sftp_delete(self, path: str, recursive: bool = False, session_id: Optional[str] = None) -> Dict[str, Any]:
        # recursive is accepted for compatibility and ignored; only empty directories are removed.
        record, sftp = self._get_sftp(session_id)
        self._use(record, "sftp_delete", {"path": path, "recursive": recursive})
        # stat then act is not atomic against concurrent remote changes.
        if sftp.stat(path, "delete").is_directory:
            return sftp.delete_directory(path)
        return sftp.delete_file(path)

    def sftp_mkdir(self, path: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        record, sftp = self._get_sftp(session_id)
        self._use(record, "sftp_mkdir", {"path": path})
        return sftp.create_directory(path)

    def sftp_rename(self, old_path: str, new_path: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        record, sftp = self._get_sftp(session_id)
        self._use(record, "sftp_rename", {"old_path": old_path, "new_path": new_path})
        return sftp.rename(old_path, new_path)
