"""Settings via pydantic-settings with PRAXIS_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the Anthropic tooling
uses, so a single .env file drives everything.

List-valued fields (mcp_servers, command_tools) are read as JSON, e.g.
PRAXIS_MCP_SERVERS='[{"name": "fs", "command": "npx", "args": ["-y", "..."]}]'.
"""

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MCPServerConfig(BaseModel):
    """How to launch one MCP server over stdio."""

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    timeout_sec: float = Field(30, gt=0)  # handshake timeout


class CommandToolConfig(BaseModel):
    """A shell command exposed to the model as a tool."""

    name: str
    description: str | None = None
    command: str
    working_dir: str = "."
    timeout_sec: float = Field(120, gt=0)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PRAXIS_", env_file=".env")

    log_level: str = "info"

    # Provider
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = Field(0.2, ge=0.0, le=2.0)
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Agentic loop
    max_iterations: int = Field(50, ge=1)
    streaming: bool = False
    workspace_dir: str = "."
    system_prompt: str = (
        "You are a careful software engineering agent. Use the available tools "
        "to inspect and change the workspace, then report what you did."
    )

    # Context window
    context_max_tokens: int = 100_000
    keep_recent: int = 6
    summary_max_tokens: int = 500

    # Orchestrator
    orchestrator_concurrency: int = 3

    # Retry (model calls)
    retry_max_attempts: int = Field(3, ge=1)
    retry_initial_delay: float = 1.0  # seconds
    retry_max_delay: float = 30.0  # seconds
    retry_backoff_multiplier: float = 2.0
    retry_jitter: bool = True

    # External tools
    mcp_request_timeout: float = 30.0  # seconds, per request after handshake
    mcp_servers: list[MCPServerConfig] = Field(default_factory=list)
    command_tools: list[CommandToolConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.keep_recent < 1:
            raise ValueError("keep_recent must be >= 1")
        if self.orchestrator_concurrency < 1:
            raise ValueError("orchestrator_concurrency must be >= 1")
        if self.retry_initial_delay > self.retry_max_delay:
            raise ValueError(
                f"retry_initial_delay ({self.retry_initial_delay}) must be <= "
                f"retry_max_delay ({self.retry_max_delay})"
            )
        return self
