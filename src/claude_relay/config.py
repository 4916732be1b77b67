"""Configuration settings for Claude Relay."""

from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with CLAUDE_RELAY_ prefix.

    Examples:
        >>> settings = Settings()
        >>> settings.claude_code_path
        'claude'
        >>> settings.ipc_port
        9824
    """

    model_config = SettingsConfigDict(env_prefix="CLAUDE_RELAY_")

    # Claude Code CLI
    claude_code_path: str = "claude"  # Split like a shell command line
    working_directory: str = ""  # Defaults to the current directory
    dangerously_skip_permissions: bool = False
    allowed_tools: list[str] = Field(default_factory=lambda: ["Read", "Glob", "Grep"])

    # Permission bridge
    auto_allow_tools: list[str] = Field(default_factory=list)  # Allowed by the relay without asking
    ipc_host: str = "127.0.0.1"
    ipc_port: int = 9824

    # Timeouts
    permission_timeout_seconds: float = 300.0
    ipc_client_timeout_seconds: float = 360.0
    process_kill_grace_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"

    @field_validator("ipc_host")
    @classmethod
    def _require_loopback(cls, value: str) -> str:
        if value not in LOOPBACK_HOSTS:
            raise ValueError(f"ipc_host must be a loopback address, got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_timeout_ordering(self) -> "Settings":
        # The relay must answer before the approver's client gives up
        if self.ipc_client_timeout_seconds <= self.permission_timeout_seconds:
            raise ValueError(
                "ipc_client_timeout_seconds must be greater than permission_timeout_seconds "
                f"({self.ipc_client_timeout_seconds} <= {self.permission_timeout_seconds})"
            )
        return self

    def get_working_directory(self) -> Path:
        """Get the directory new sessions run in.

        Returns:
            Absolute path, falling back to the current directory
        """
        if self.working_directory:
            return Path(self.working_directory).expanduser().resolve()
        return Path.cwd()
