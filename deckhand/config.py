"""Configuration management for Deckhand."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from deckhand.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.deckhand/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "anthropic"
    model: str = "claude-3-5-sonnet-20241022"
    temperature: float = 0.0
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""


class AgentConfig(BaseModel):
    """Reasoning loop configuration."""

    max_steps: int = Field(default=15, ge=1)
    system_prompt_template: str = "system_prompt.md"


class ExecutorConfig(BaseModel):
    """Command executor configuration."""

    timeout: float = 120.0
    max_output_chars: int = 20000


class DockerToolConfig(BaseModel):
    """Docker CLI tool configuration."""

    allowed_programs: list[str] = ["docker"]
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]
    timeout: float = 600.0


class FileToolConfig(BaseModel):
    """File operations tool configuration."""

    max_read_bytes: int = 1_000_000


class CloneToolConfig(BaseModel):
    """Repository clone tool configuration."""

    staging_dir: str = "extras"
    timeout: float = 300.0


class DeployToolConfig(BaseModel):
    """Remote deploy tool configuration."""

    ssh_key_path: str = ""
    remote_user: str = "ec2-user"
    default_app_port: int = 3000
    connect_timeout: int = 15
    timeout: float = 900.0


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "docker_cli",
        "file_operations",
        "github_clone",
        "aws_operations",
    ]
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    docker: DockerToolConfig = Field(default_factory=DockerToolConfig)
    files: FileToolConfig = Field(default_factory=FileToolConfig)
    clone: CloneToolConfig = Field(default_factory=CloneToolConfig)
    deploy: DeployToolConfig = Field(default_factory=DeployToolConfig)


class WorkspaceConfig(BaseModel):
    """Workspace root against which relative tool paths resolve."""

    path: str = "."


class WebConfig(BaseModel):
    """Websocket server configuration."""

    host: str = "127.0.0.1"
    port: int = 8099
    busy_policy: Literal["reject", "queue"] = "reject"
    queue_cap: int = Field(default=5, ge=1)
    max_msg_size: int = 1024 * 1024


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Deckhand."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DECKHAND_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; environment variables are applied by pydantic-settings."""
        return cls.from_yaml(path)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
