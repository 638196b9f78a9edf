import uuid
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from ssh_mcp.utils import to_iso


@dataclass
class SessionRecord:
    session_id: str
    host: str
    port: int
    username: str
    client: Any
    created_at: datetime
    last_used_at: Optional[datetime] = None
    # SFTP channel, opened lazily on the first file operation.
    sftp: Any = None

    def info(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "created_at": to_iso(self.created_at),
            "last_used_at": to_iso(self.last_used_at),
        }


class SessionRegistry:
    """In-memory map of session id to record. Does no I/O and never closes handles."""

    def __init__(self):
        self.sessions: Dict[str, SessionRecord] = {}
        self.lock = threading.Lock()

    def create(self, host: str, port: int, username: str, client: Any) -> SessionRecord:
        with self.lock:
            session_id = str(uuid.uuid4())
            while session_id in self.sessions:
                session_id = str(uuid.uuid4())
            record = SessionRecord(
                session_id=session_id,
                host=host,
                port=port,
                username=username,
                client=client,
                created_at=datetime.now(timezone.utc),
            )
            self.sessions[session_id] = record
            return record

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self.lock:
            return self.sessions.get(session_id)

    def list(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [record.info() for record in self.sessions.values()]

    def records(self) -> List[SessionRecord]:
        with self.lock:
            return list(self.sessions.values())

    def remove(self, session_id: str) -> Optional[SessionRecord]:
        with self.lock:
            return self.sessions.pop(session_id, None)

    def touch(self, session_id: str) -> None:
        with self.lock:
            record = self.sessions.get(session_id)
            if record:
                record.last_used_at = datetime.now(timezone.utc)

    def clear(self) -> None:
        with self.lock:
            self.sessions.clear()

    @property
    def size(self) -> int:
        with self.lock:
            return len(self.sessions)
