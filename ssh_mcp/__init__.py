"""Multi-session SSH exec and SFTP server speaking MCP over stdio."""

__version__ = "0.1.0"
