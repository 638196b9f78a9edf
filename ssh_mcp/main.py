import io
import sys
import json
import signal
import argparse
from typing import Any, Dict, Optional
from ssh_mcp.config import config, ServerConfig
from ssh_mcp.errors import SSHMCPError
from ssh_mcp.manager import SessionManager
from ssh_mcp.server import handle_request
from ssh_mcp.utils import log_error


def _write_response(stream, response: Dict[str, Any]) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        stream.write(json.dumps(response, ensure_ascii=False) + "\n")
        stream.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        try:
            stream.write(json.dumps(response, ensure_ascii=True) + "\n")
            stream.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH MCP Server (multi-session SSH exec and SFTP file operations over stdio)"
    )
    parser.add_argument("--host", help="Preset SSH host (overrides SSH_HOST env)")
    parser.add_argument("--port", type=int, help="Preset SSH port (overrides SSH_PORT env)")
    parser.add_argument("--user", "--username", dest="username", help="Preset SSH username (overrides SSH_USERNAME env)")
    parser.add_argument("--password", help="Preset SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", dest="key_path", help="Path to SSH private key (overrides SSH_PRIVATE_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_PASSPHRASE env)")
    parser.add_argument("--timeout", type=int, help="Command execution timeout in ms (overrides SSH_TIMEOUT env)")
    parser.add_argument("--connect-timeout", type=int, help="Connection timeout in ms (overrides SSH_CONNECT_TIMEOUT env)")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host keys against known_hosts")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--log-dir", help="Directory for per-session JSONL event logs (overrides SSH_MCP_LOG_DIR env)")
    return parser


def apply_args(cfg: ServerConfig, args: argparse.Namespace) -> None:
    # Apply args over env vars
    if args.host: cfg.SSH_HOST = args.host
    if args.port: cfg.SSH_PORT = args.port
    if args.username: cfg.SSH_USERNAME = args.username
    if args.password: cfg.SSH_PASSWORD = args.password
    if args.key_path: cfg.SSH_PRIVATE_KEY_PATH = args.key_path
    if args.passphrase: cfg.SSH_PASSPHRASE = args.passphrase
    if args.timeout: cfg.SSH_TIMEOUT = args.timeout
    if args.connect_timeout: cfg.SSH_CONNECT_TIMEOUT = args.connect_timeout
    if args.log_dir: cfg.LOG_DIR = args.log_dir

    if args.no_verify_host:
        cfg.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        cfg.SSH_VERIFY_HOST_KEY = True


def start_default_session(manager: SessionManager) -> Optional[str]:
    cfg = manager.config
    if not cfg.has_preset_server():
        log_error("No pre-configured server. Use ssh_connect to establish a connection.")
        return None

    log_error(f"Pre-configured server found: {cfg.SSH_USERNAME}@{cfg.SSH_HOST}:{cfg.SSH_PORT}")
    try:
        session_id = manager.auto_connect()
    except SSHMCPError as exc:
        log_error(f"{exc}")
        log_error("You can still connect manually using ssh_connect")
        return None
    log_error(f"Auto-connected successfully: session_id={session_id}")
    return session_id


def serve(manager: SessionManager, stdin, stdout) -> None:
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            response = handle_request(json.loads(line), manager)
            if response is not None:
                _write_response(stdout, response)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            # Attempt to send an error response back so the client doesn't hang
            req_id = None
            try:
                req_id = json.loads(line).get("id")
            except (ValueError, AttributeError):
                pass
            _write_response(stdout, {
                "jsonrpc": "2.0",
                "id": req_id,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            })


def main() -> None:
    # Pre-load from environment
    config.load_from_env()
    args = build_parser().parse_args()
    apply_args(config, args)

    manager = SessionManager(config)
    log_error("Starting SSH MCP Server...")
    start_default_session(manager)

    def _shutdown(signum, frame):
        log_error("Shutting down...")
        manager.cleanup()
        log_error("Cleanup complete")
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    # Force UTF-8 I/O to avoid charmap encoding errors on Windows
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    log_error("SSH MCP Server is running")
    serve(manager, stdin, stdout)

    if manager.has_active_connection():
        log_error(f"shutting down, closing {manager.registry.size} session(s)...")
    else:
        log_error("shutting down...")
    manager.cleanup()

if __name__ == "__main__":
    main()
