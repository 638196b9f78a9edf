import json
from typing import Any, Callable, Dict, Optional
from ssh_mcp.config import (
    DEFAULT_PORT, DEFAULT_EXEC_TIMEOUT_MS, MIN_EXEC_TIMEOUT_MS, MAX_EXEC_TIMEOUT_MS,
    DEFAULT_CONNECT_TIMEOUT_MS, MIN_CONNECT_TIMEOUT_MS, MAX_CONNECT_TIMEOUT_MS
)
from ssh_mcp.errors import ValidationError
from ssh_mcp.utils import log_error, to_bool, clamp_int

SERVER_NAME = "ssh-mcp-server"
SERVER_VERSION = "0.1.0"
PROTOCOL_VERSION = "2024-11-05"

def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}

def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def _require_str(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} is required")
    return value

def _optional_str(args: Dict[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if value is None or value == "":
        return None
    return str(value)

def _optional_timeout(args: Dict[str, Any], key: str, default: int, min_value: int, max_value: int) -> Optional[int]:
    if args.get(key) is None:
        return None
    return clamp_int(args.get(key), default, min_value, max_value)

def tools_list() -> Dict[str, Any]:
    session_id_param = {
        "type": "string",
        "description": "Session ID from ssh_connect (optional if using pre-configured server).",
    }
    tools = [
        {
            "name": "ssh_connect",
            "description": (
                "Create a new SSH connection to a remote server. Returns a session_id for subsequent operations. "
                "If server is pre-configured via environment variables, this is optional."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "host": {"type": "string", "description": "Remote server hostname or IP address."},
                    "port": {"type": "number", "description": "SSH port (default: 22)."},
                    "username": {"type": "string", "description": "SSH username."},
                    "password": {"type": "string", "description": "Password for authentication."},
                    "private_key": {"type": "string", "description": "Private key content (PEM format)."},
                    "private_key_path": {"type": "string", "description": "Path to private key file."},
                    "passphrase": {"type": "string", "description": "Passphrase for encrypted private key."},
                    "timeout": {"type": "number", "description": "Command execution timeout in ms (default: 30000, 1000-300000)."},
                    "connect_timeout": {"type": "number", "description": "Connection timeout in ms (default: 10000, 1000-60000)."},
                },
                "required": ["host", "username"],
            },
        },
        {
            "name": "ssh_exec",
            "description": (
                "Execute a command on a connected SSH session. Returns stdout, stderr, and exit code. "
                "If session_id is omitted, uses the default pre-configured session."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "command": {"type": "string", "description": "Command to execute on the remote server (max 1000 chars)."},
                    "timeout": {"type": "number", "description": "Override command timeout in ms (1000-300000)."},
                },
                "required": ["command"],
            },
        },
        {
            "name": "ssh_list_sessions",
            "description": "List all active SSH sessions with their connection details.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "ssh_disconnect",
            "description": "Disconnect an SSH session and release resources. If session_id is omitted, disconnects the default session.",
            "inputSchema": {
                "type": "object",
                "properties": {"session_id": session_id_param},
            },
        },
        {
            "name": "sftp_list",
            "description": "List files and directories in a remote path. Returns file names, sizes, permissions, and modification times.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": {"type": "string", "description": "Remote directory path to list (default: /)."},
                },
            },
        },
        {
            "name": "sftp_upload",
            "description": "Upload a local file to the remote server.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "local_path": {"type": "string", "description": "Local file path to upload."},
                    "remote_path": {"type": "string", "description": "Remote destination path."},
                },
                "required": ["local_path", "remote_path"],
            },
        },
        {
            "name": "sftp_download",
            "description": "Download a file from the remote server to local.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "remote_path": {"type": "string", "description": "Remote file path to download."},
                    "local_path": {"type": "string", "description": "Local destination path."},
                },
                "required": ["remote_path", "local_path"],
            },
        },
        {
            "name": "sftp_read",
            "description": "Read the content of a remote text file (first 25000 bytes; size reports the full file).",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": {"type": "string", "description": "Remote file path to read."},
                },
                "required": ["path"],
            },
        },
        {
            "name": "sftp_write",
            "description": "Write content to a remote file. Creates the file if it doesn't exist, overwrites if it does.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": {"type": "string", "description": "Remote file path to write."},
                    "content": {"type": "string", "description": "Content to write to the file."},
                },
                "required": ["path", "content"],
            },
        },
        {
            "name": "sftp_delete",
            "description": "Delete a file or empty directory on the remote server.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": {"type": "string", "description": "Remote path to delete."},
                    "recursive": {"type": "boolean", "description": "Recursively delete directory contents (not yet implemented)."},
                },
                "required": ["path"],
            },
        },
        {
            "name": "sftp_mkdir",
            "description": "Create a directory on the remote server.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "path": {"type": "string", "description": "Remote directory path to create."},
                },
                "required": ["path"],
            },
        },
        {
            "name": "sftp_rename",
            "description": "Rename or move a file/directory on the remote server.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "old_path": {"type": "string", "description": "Current path of the file/directory."},
                    "new_path": {"type": "string", "description": "New path for the file/directory."},
                },
                "required": ["old_path", "new_path"],
            },
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}

def connect_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    return manager.connect(
        host=_require_str(args, "host"),
        port=clamp_int(args.get("port", DEFAULT_PORT), DEFAULT_PORT, 1, 65535),
        username=_require_str(args, "username"),
        password=_optional_str(args, "password"),
        private_key=_optional_str(args, "private_key"),
        private_key_path=_optional_str(args, "private_key_path"),
        passphrase=_optional_str(args, "passphrase"),
        timeout=_optional_timeout(args, "timeout", DEFAULT_EXEC_TIMEOUT_MS, MIN_EXEC_TIMEOUT_MS, MAX_EXEC_TIMEOUT_MS),
        connect_timeout=_optional_timeout(
            args, "connect_timeout", DEFAULT_CONNECT_TIMEOUT_MS, MIN_CONNECT_TIMEOUT_MS, MAX_CONNECT_TIMEOUT_MS
        ),
    )

def exec_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    return manager.exec(
        command=_require_str(args, "command"),
        session_id=_optional_str(args, "session_id"),
        timeout=_optional_timeout(args, "timeout", DEFAULT_EXEC_TIMEOUT_MS, MIN_EXEC_TIMEOUT_MS, MAX_EXEC_TIMEOUT_MS),
    )

def sftp_write_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    content = args.get("content")
    if not isinstance(content, str):
        raise ValidationError("content is required")
    return manager.sftp_write(
        path=_require_str(args, "path"), content=content, session_id=_optional_str(args, "session_id")
    )

TOOL_HANDLERS: Dict[str, Callable[[Dict[str, Any], Any], Dict[str, Any]]] = {
    "ssh_connect": connect_dispatch,
    "ssh_exec": exec_dispatch,
    "ssh_list_sessions": lambda args, manager: manager.list_sessions(),
    "ssh_disconnect": lambda args, manager: manager.disconnect(session_id=_optional_str(args, "session_id")),
    "sftp_list": lambda args, manager: manager.sftp_list(
        path=_optional_str(args, "path") or "/", session_id=_optional_str(args, "session_id")
    ),
    "sftp_upload": lambda args, manager: manager.sftp_upload(
        local_path=_require_str(args, "local_path"),
        remote_path=_require_str(args, "remote_path"),
        session_id=_optional_str(args, "session_id"),
    ),
    "sftp_download": lambda args, manager: manager.sftp_download(
        remote_path=_require_str(args, "remote_path"),
        local_path=_require_str(args, "local_path"),
        session_id=_optional_str(args, "session_id"),
    ),
    "sftp_read": lambda args, manager: manager.sftp_read(
        path=_require_str(args, "path"), session_id=_optional_str(args, "session_id")
    ),
    "sftp_write": sftp_write_dispatch,
    "sftp_delete": lambda args, manager: manager.sftp_delete(
        path=_require_str(args, "path"),
        recursive=to_bool(args.get("recursive", False)),
        session_id=_optional_str(args, "session_id"),
    ),
    "sftp_mkdir": lambda args, manager: manager.sftp_mkdir(
        path=_require_str(args, "path"), session_id=_optional_str(args, "session_id")
    ),
    "sftp_rename": lambda args, manager: manager.sftp_rename(
        old_path=_require_str(args, "old_path"),
        new_path=_require_str(args, "new_path"),
        session_id=_optional_str(args, "session_id"),
    ),
}

def handle_request(request: Dict[str, Any], manager) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if method == "notifications/initialized": return None
    if method == "ping": return {"jsonrpc": "2.0", "id": req_id, "result": {}}
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        handler = TOOL_HANDLERS.get(tool_name)
        if handler is None:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
        try:
            result = handler(args, manager)
            return make_response(req_id, result)
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, {"success": False, "error": str(exc)}, is_error=True)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
