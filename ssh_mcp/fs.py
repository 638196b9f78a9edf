import os
import stat
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import paramiko

from ssh_mcp.config import CHARACTER_LIMIT
from ssh_mcp.errors import SFTPNotInitializedError, SFTPOperationError
from ssh_mcp.utils import epoch_to_iso, mode_to_permissions


@dataclass
class FileAttributes:
    mode: int
    uid: int
    gid: int
    size: int
    atime: int
    mtime: int

    @classmethod
    def from_sftp(cls, attrs: paramiko.SFTPAttributes) -> "FileAttributes":
        return cls(
            mode=attrs.st_mode or 0,
            uid=attrs.st_uid or 0,
            gid=attrs.st_gid or 0,
            size=attrs.st_size or 0,
            atime=attrs.st_atime or 0,
            mtime=attrs.st_mtime or 0,
        )

    @property
    def is_directory(self) -> bool:
        return stat.S_ISDIR(self.mode)

    @property
    def is_file(self) -> bool:
        return stat.S_ISREG(self.mode)

    def to_dict(self) -> Dict[str, int]:
        return {
            "mode": self.mode,
            "uid": self.uid,
            "gid": self.gid,
            "size": self.size,
            "atime": self.atime,
            "mtime": self.mtime,
        }


@dataclass
class FileInfo:
    filename: str
    longname: str
    attrs: FileAttributes

    @property
    def is_directory(self) -> bool:
        return self.attrs.is_directory

    @property
    def is_file(self) -> bool:
        return self.attrs.is_file

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "longname": self.longname,
            "is_directory": self.is_directory,
            "is_file": self.is_file,
            "permissions": mode_to_permissions(self.attrs.mode),
            "owner": self.attrs.uid,
            "group": self.attrs.gid,
            "size": self.attrs.size,
            "modify_time": epoch_to_iso(self.attrs.mtime),
            "attrs": self.attrs.to_dict(),
        }


def sort_entries(entries: List[FileInfo]) -> List[FileInfo]:
    """Directories first, then by name; independent of server enumeration order."""
    return sorted(entries, key=lambda entry: (not entry.is_directory, entry.filename))


class SFTPChannel:
    """SFTP sub-handle of one SSH session. Must be closed before its parent connection."""

    def __init__(self, ssh_client: paramiko.SSHClient):
        self.ssh_client = ssh_client
        self.sftp: Optional[paramiko.SFTPClient] = None

    def init(self) -> None:
        try:
            self.sftp = self.ssh_client.open_sftp()
        except Exception as exc:
            raise SFTPOperationError("init", f"Failed to initialize SFTP: {exc}", exc) from exc

    def _ensure_sftp(self) -> paramiko.SFTPClient:
        if self.sftp is None:
            raise SFTPNotInitializedError()
        return self.sftp

    def list_directory(self, remote_path: str) -> Dict[str, Any]:
        sftp = self._ensure_sftp()
        try:
            listing = sftp.listdir_attr(remote_path)
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("list", f"Failed to list directory: {exc}", exc) from exc

        entries = [
            FileInfo(
                filename=item.filename,
                longname=getattr(item, "longname", "") or "",
                attrs=FileAttributes.from_sftp(item),
            )
            for item in listing
        ]
        files = [entry.to_dict() for entry in sort_entries(entries)]
        return {"path": remote_path, "files": files, "count": len(files)}

    def upload_file(self, local_path: str, remote_path: str) -> Dict[str, Any]:
        sftp = self._ensure_sftp()
        if not os.path.isfile(local_path):
            raise SFTPOperationError("upload", f"Local file not found: {local_path}")

        try:
            handle = open(local_path, "rb")
        except OSError as exc:
            raise SFTPOperationError("upload", f"Failed to read local file: {exc}", exc) from exc
        try:
            with handle:
                file_size = os.fstat(handle.fileno()).st_size
                sftp.putfo(handle, remote_path, file_size=file_size, confirm=True)
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("upload", f"Upload failed: {exc}", exc) from exc

        return {
            "success": True,
            "local_path": local_path,
            "remote_path": remote_path,
            "size": file_size,
            "message": f"Uploaded {os.path.basename(local_path)} to {remote_path} ({file_size} bytes)",
        }

    def download_file(self, remote_path: str, local_path: str) -> Dict[str, Any]:
        sftp = self._ensure_sftp()
        attrs = self.stat(remote_path, "download")

        try:
            handle = open(local_path, "wb")
        except OSError as exc:
            raise SFTPOperationError("download", f"Failed to write local file: {exc}", exc) from exc
        try:
            with handle:
                sftp.getfo(remote_path, handle)
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("download", f"Download failed: {exc}", exc) from exc

        return {
            "success": True,
            "remote_path": remote_path,
            "local_path": local_path,
            "size": attrs.size,
            "message": (
                f"Downloaded {os.path.basename(remote_path)} to {local_path} ({attrs.size} bytes)"
            ),
        }

    def read_file(self, remote_path: str, limit: int = CHARACTER_LIMIT) -> Dict[str, Any]:
        sftp = self._ensure_sftp()
        attrs = self.stat(remote_path, "read")
        truncated = attrs.size > limit
        wanted = min(attrs.size, limit)

        try:
            with sftp.open(remote_path, "rb") as handle:
                data = handle.read(wanted) if wanted > 0 else b""
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("read", f"Failed to read file: {exc}", exc) from exc

        return {
            "path": remote_path,
            "content": data.decode("utf-8", errors="replace"),
            "size": attrs.size,
            "truncated": truncated,
        }

    def write_file(self, remote_path: str, content: str) -> Dict[str, Any]:
        sftp = self._ensure_sftp()
        payload = content.encode("utf-8")

        try:
            with sftp.open(remote_path, "wb") as handle:
                handle.set_pipelined(True)
                handle.write(payload)
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("write", f"Failed to write file: {exc}", exc) from exc

        return {
            "success": True,
            "path": remote_path,
            "size": len(payload),
            "message": f"Written {len(payload)} bytes to {remote_path}",
        }

    def delete_file(self, remote_path: str) -> Dict[str, Any]:
        sftp = self._ensure_sftp()
        try:
            sftp.remove(remote_path)
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("delete", f"Failed to delete file: {exc}", exc) from exc
        return {"success": True, "path": remote_path, "message": f"Deleted {remote_path}"}

    def delete_directory(self, remote_path: str) -> Dict[str, Any]:
        # Non-empty directories fail on the server side; there is no recursive mode.
        sftp = self._ensure_sftp()
        try:
            sftp.rmdir(remote_path)
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("delete", f"Failed to delete directory: {exc}", exc) from exc
        return {"success": True, "path": remote_path, "message": f"Deleted directory {remote_path}"}

    def create_directory(self, remote_path: str) -> Dict[str, Any]:
        sftp = self._ensure_sftp()
        try:
            sftp.mkdir(remote_path)
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("mkdir", f"Failed to create directory: {exc}", exc) from exc
        return {"success": True, "path": remote_path, "message": f"Created directory {remote_path}"}

    def rename(self, old_path: str, new_path: str) -> Dict[str, Any]:
        sftp = self._ensure_sftp()
        try:
            sftp.rename(old_path, new_path)
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError("rename", f"Failed to rename: {exc}", exc) from exc
        return {"success": True, "path": new_path, "message": f"Renamed {old_path} to {new_path}"}

    def stat(self, remote_path: str, operation: str = "stat") -> FileAttributes:
        """Stat ``remote_path``; failures are reported under ``operation``."""
        sftp = self._ensure_sftp()
        try:
            return FileAttributes.from_sftp(sftp.stat(remote_path))
        except (OSError, paramiko.SSHException) as exc:
            raise SFTPOperationError(operation, f"Failed to stat: {exc}", exc) from exc

    def exists(self, remote_path: str) -> bool:
        """True if the path stats; False only when the server says it is missing."""
        try:
            self.stat(remote_path)
        except SFTPOperationError as exc:
            if exc.not_found:
                return False
            raise
        return True

    def close(self) -> None:
        sftp = self.sftp
        self.sftp = None
        if sftp is not None:
            sftp.close()
