"""Shared settings loaded from environment / .env file."""

from __future__ import annotations

import shlex

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration for the tmdlkit MCP and REST servers.

    Values are read from environment variables and from a ``.env`` file
    in the working directory.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Shared
    log_level: str = "INFO"

    # MCP server
    mcp_transport: str = "stdio"  # stdio | http | sse
    mcp_server_host: str = "localhost"
    mcp_server_port: int = 9000

    # REST API
    api_server_host: str = "localhost"
    api_server_port: int = 8000
    port: int | None = None  # Cloud Run injects PORT; takes precedence over api_server_port

    @property
    def effective_port(self) -> int:
        """Return the port to listen on (Cloud Run PORT takes precedence)."""
        return self.port if self.port is not None else self.api_server_port

    # Model folders
    root_document: str = "model.tmdl"

    # Diff collaborator
    diff_command: str = "git --no-pager diff --no-index -U0"
    diff_timeout_seconds: float = 30.0
    diff_chunk_bytes: int = 1024

    @property
    def diff_argv(self) -> list[str]:
        """The diff command split into argv form (paths are appended later)."""
        return shlex.split(self.diff_command)
