"""Settings via pydantic-settings with PARLEY_ env prefix.

Secrets and endpoints use validation_alias to read the same unprefixed env
vars (BRIDGE_AUTH_TOKEN, SYNOLOGY_WEBHOOK_URL, ...) that the service unit
files and docker-compose already export, so one .env file drives both the
executor service and the chat bridge.
"""

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from parley.context.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_", env_file=".env", populate_by_name=True)

    # Context management
    max_chunk_size: int = 15000  # chars per executor invocation
    chars_per_token: int = 4
    context_soft_limit: int = 120000  # tokens - triggers compaction
    context_hard_limit: int = 180000  # tokens - usage ceiling
    turn_overhead_tokens: int = 10  # role/formatting overhead per transcript turn
    tail_size: int = 5  # turns kept verbatim through compaction
    max_compact_span: int = 20  # turns folded into the summary, older ones dropped

    # Executor
    executor_timeout: float = 300  # seconds per part
    summarizer_timeout: float = 120  # seconds
    claude_cli_path: str = Field("claude", validation_alias="CLAUDE_CLI_PATH")
    claude_home: str = Field(str(Path.home() / ".claude"), validation_alias="PAI_DIR")
    allowed_tools: str = "Read,Grep,Glob,Edit,Write"
    cli_entrypoint: str = "synology-chat"
    max_concurrent: int = 2

    # Session store
    db_url: str = "sqlite+aiosqlite:///./data/parley.sqlite"
    session_timeout: int = 1800  # seconds of inactivity before a session expires
    cleanup_interval: int = 600  # seconds between expiry sweeps

    # Executor service
    host: str = "0.0.0.0"
    port: int = 3457
    auth_token: str = Field("", validation_alias="BRIDGE_AUTH_TOKEN")
    log_level: str = "info"

    # Chat bridge
    bridge_port: int = 3456
    synology_webhook_url: str = Field("", validation_alias="SYNOLOGY_WEBHOOK_URL")
    synology_webhook_token: str = Field("", validation_alias="SYNOLOGY_WEBHOOK_TOKEN")
    executor_url: str = Field("http://localhost:3457", validation_alias="EXECUTOR_URL")
    executor_auth_token: str = Field("", validation_alias="EXECUTOR_AUTH_TOKEN")
    executor_client_timeout: float = 300  # seconds
    mention_pattern: str = r"@claude\s*"
    chat_max_message_length: int = 3500
    chat_send_interval: float = 0.6  # Synology wants 0.5-1s between posts
    chat_retry_delay: float = 2.0
    chat_max_retries: int = 5
    global_min_interval: float = 0.5
    user_max_per_minute: int = 20

    @model_validator(mode="after")
    def _validate_context_limits(self) -> "Settings":
        if self.context_soft_limit >= self.context_hard_limit:
            raise ConfigurationError(
                f"context_soft_limit ({self.context_soft_limit}) must be < "
                f"context_hard_limit ({self.context_hard_limit})"
            )
        for name in ("max_chunk_size", "chars_per_token", "context_soft_limit", "max_compact_span"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        if self.tail_size < 1:
            raise ConfigurationError("tail_size must be >= 1")
        if self.turn_overhead_tokens < 0:
            raise ConfigurationError("turn_overhead_tokens must be >= 0")
        return self
