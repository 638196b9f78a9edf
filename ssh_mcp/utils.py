import os
import re
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from ssh_mcp.config import COMMAND_MAX_CHARS
from ssh_mcp.errors import ValidationError

PERMISSION_TRIADS = ["---", "--x", "-w-", "-wx", "r--", "r-x", "rw-", "rwx"]

def log_error(message: str) -> None:
    print(f"[SSH-MCP] {iso_now()} {message}", file=sys.stderr, flush=True)

def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric

def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default

def iso_now() -> str:
    return to_iso(datetime.now(timezone.utc))

def to_iso(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

def epoch_to_iso(seconds: Optional[float]) -> Optional[str]:
    if seconds is None:
        return None
    return to_iso(datetime.fromtimestamp(seconds, tz=timezone.utc))

def resolve_local_path(path: str) -> str:
    if not path:
        return ""
    expanded = os.path.expanduser(os.path.expandvars(path.strip()))
    return os.path.abspath(expanded)

def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")

def sanitize_command(command: Any) -> str:
    if not isinstance(command, str):
        raise ValidationError("command must be a string")
    trimmed = command.strip()
    if not trimmed:
        raise ValidationError("command cannot be empty")
    if len(trimmed) > COMMAND_MAX_CHARS:
        raise ValidationError(f"command exceeds {COMMAND_MAX_CHARS} characters")
    return trimmed

def mode_to_permissions(mode: int) -> str:
    """Render the low nine mode bits the way ``ls -l`` does, e.g. ``rwxr-xr-x``."""
    owner = (mode >> 6) & 7
    group = (mode >> 3) & 7
    other = mode & 7
    return PERMISSION_TRIADS[owner] + PERMISSION_TRIADS[group] + PERMISSION_TRIADS[other]
