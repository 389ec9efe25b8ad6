"""Configuration management using pydantic-settings."""

from pathlib import Path
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


DEFAULT_PROCESS_EXCLUSIONS = ",".join([
    "analytics",
    "/Applications/Claude.app",
    "npm start",
    "chrome_crashpad_handler",
    "create-claude-config",
    "node bin/",
])


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=3333, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")

    # Log Source Configuration
    claude_dir: str = Field(
        default=str(Path.home() / ".claude"),
        description="Root directory holding Claude Code conversation logs"
    )

    # Process Detection Configuration
    process_command: str = Field(default="claude", description="Agent CLI command to look for")
    process_exclusions: str = Field(
        default=DEFAULT_PROCESS_EXCLUSIONS,
        description="Substrings that mark a process line as noise (comma separated)"
    )
    process_cache_ttl: float = Field(default=0.5, description="Process list cache TTL in seconds")
    process_timeout: float = Field(default=5.0, description="Timeout for the process listing command")
    process_lister: str = Field(default="ps", description="Process listing backend: ps or psutil")

    # State Inference Configuration
    activity_threshold: float = Field(
        default=15.0,
        description="Seconds since last file write below which the agent is still considered working"
    )

    # Cache Configuration
    parsed_data_ttl: float = Field(default=15.0, description="TTL for parsed conversation files")
    computation_ttl: float = Field(default=10.0, description="TTL for derived computations (summary)")
    cache_max_entries: int = Field(default=500, description="Maximum number of cache entries")
    cache_sweep_interval: float = Field(default=15.0, description="Interval of the expired entry sweep")
    max_conversations: int = Field(default=150, description="Maximum conversations kept in memory")

    # File Watcher Configuration
    enable_file_watcher: bool = Field(default=True, description="Watch the log directory for changes")
    debounce_seconds: float = Field(default=0.2, description="Debounce window for file events")
    process_refresh_interval: float = Field(default=30.0, description="Periodic process refresh interval")
    data_refresh_interval: float = Field(default=120.0, description="Periodic full refresh interval")

    # WebSocket / Notification Configuration
    heartbeat_interval: float = Field(default=30.0, description="Seconds between server pings")
    heartbeat_timeout: float = Field(default=60.0, description="Seconds of silence before a client is dropped")
    state_change_throttle: float = Field(default=1.0, description="Throttle window per conversation state change")
    data_refresh_throttle: float = Field(default=1.0, description="Throttle window for data refresh notifications")
    process_change_throttle: float = Field(default=5.0, description="Throttle window for process change notifications")
    file_change_throttle: float = Field(default=2.0, description="Throttle window per file change notification")
    refresh_request_throttle: float = Field(default=5.0, description="Minimum seconds between client-requested refreshes")
    websocket_send_timeout: float = Field(default=5.0, description="Seconds a send may take before the client is dropped")
    notification_history_size: int = Field(default=1000, description="Notification history ring buffer size")
    websocket_queue_size: int = Field(default=100, description="Messages kept while no client is connected")

    # Health Configuration
    health_error_threshold: int = Field(default=10, description="Error count above which health is degraded")
    health_memory_threshold_mb: float = Field(default=300.0, description="RSS above which health is warning")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_file: str = Field(default="./logs/analytics.log", description="Log file path")

    def get_process_exclusions(self) -> List[str]:
        """Get list of process exclusion substrings."""
        return [item.strip() for item in self.process_exclusions.split(",") if item.strip()]

    def get_claude_dir(self) -> Path:
        """Get the log root as an expanded Path."""
        return Path(self.claude_dir).expanduser()


# Global settings instance
settings = Settings()
