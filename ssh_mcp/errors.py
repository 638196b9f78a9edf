from typing import Optional


class SSHMCPError(Exception):
    """Base class for every error surfaced to the tool layer."""


class ConfigurationError(SSHMCPError):
    pass


class ValidationError(SSHMCPError):
    pass


class SSHConnectionError(SSHMCPError):
    pass


class SSHTimeoutError(SSHMCPError):
    def __init__(self, message: str, timeout_ms: int):
        super().__init__(message)
        self.timeout_ms = timeout_ms


class CommandError(SSHMCPError):
    pass


class NotConnectedError(SSHMCPError):
    def __init__(self, message: str = "Not connected"):
        super().__init__(message)


class SessionNotFoundError(SSHMCPError):
    def __init__(self, session_id: str, message: Optional[str] = None):
        super().__init__(message or f"Session not found: {session_id}")
        self.session_id = session_id


class SFTPOperationError(SSHMCPError):
    def __init__(self, operation: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.operation = operation
        self.not_found = isinstance(cause, FileNotFoundError)


class SFTPNotInitializedError(SSHMCPError):
    def __init__(self):
        super().__init__("SFTP not initialized. Call init() first.")
