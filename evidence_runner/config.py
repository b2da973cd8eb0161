# evidence_runner/config.py
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized, env-driven configuration for the runner.
    Override via EVIDENCE_RUNNER_* environment variables or a .env file.
    CLI flags take precedence over both (see EngineConfig.from_settings).
    """
    log_level: str = Field(default="INFO")
    evidence_dir: str = Field(default="evidence")
    plugin_dirs: List[str] = Field(default_factory=list)

    # Run behaviour
    stop_on_failure: bool = Field(default=False)
    halt_on_error: bool = Field(default=True)
    dry_run: bool = Field(default=False)
    default_timeout_ms: int = Field(default=60_000)
    executor_preference: Dict[str, str] = Field(default_factory=dict)

    # MCP browser peer
    mcp_command: List[str] = Field(default_factory=lambda: ["npx", "-y", "chrome-devtools-mcp@latest"])
    mcp_request_timeout_s: float = Field(default=30.0)
    mcp_startup_grace_s: float = Field(default=2.0)

    # Managed processes (background commands, MCP peer)
    process_grace_s: float = Field(default=3.0)

    # Technical debt thresholds
    http_slow_threshold_ms: int = Field(default=1000)
    command_slow_threshold_ms: int = Field(default=500)

    tool_name: str = Field(default="evidence-runner")
    tool_version: Optional[str] = Field(default=None)

    # Pydantic v2 config: ignore unknown envs, load .env in UTF-8
    model_config = SettingsConfigDict(
        env_prefix="EVIDENCE_RUNNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
