"""Configuration management for the knowledge graph chatbot."""

import os
from pathlib import Path
from typing import Literal

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.kg-chatbot/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_SYSTEM_PROMPT = " ".join([
    "You are a knowledge graph assistant with access to a Neo4j database via MCP tools.",
    "When the user asks questions about data (artists, artworks, relationships, counts, etc.),",
    "ALWAYS use your neo4j MCP tools to query the database - do NOT guess or suggest queries.",
    "Use execute_cypher for custom queries, get_schema to understand the data model,",
    "and get_statistics for overview counts.",
    "Present results in a clear, readable format.",
])


class ModelConfig(BaseModel):
    """Model configuration."""

    backend: Literal["api", "cli"] = "api"
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    timeout: float = 120.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class CLIConfig(BaseModel):
    """Claude CLI backend configuration."""

    command: str = "claude"
    extra_args: list[str] = []
    terminate_grace_seconds: float = 5.0


class MCPConfig(BaseModel):
    """Tool gateway (MCP server) configuration."""

    config_path: str = "mcp-config.json"
    server: str = "neo4j"
    allowed_tools: list[str] = [
        "execute_cypher",
        "get_schema",
        "get_statistics",
    ]
    init_timeout: float = 30.0


class LoopConfig(BaseModel):
    """Agentic loop configuration."""

    max_iterations: int = 10
    keepalive_interval: float = 2.0


class WebConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 3001
    cors_origins: list[str] = ["*"]
    static_dir: str = ""


class Neo4jConfig(BaseModel):
    """Graph database connection used by the health check."""

    uri: str = "bolt://localhost:7687"
    user: str = "neo4j"
    password: str = ""


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for the knowledge graph chatbot."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    cli: CLIConfig = Field(default_factory=CLIConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    neo4j: Neo4jConfig = Field(default_factory=Neo4jConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="KG_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        protected_namespaces=(),
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values read from YAML.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

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

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        config = cls.from_yaml(path)
        config.apply_plain_env_fallbacks()
        return config

    def apply_plain_env_fallbacks(self) -> None:
        """Fill empty settings from the unprefixed variables deployments already use."""
        env: dict[str, str] = {
            key: value
            for key, value in dotenv_values(".env").items()
            if value is not None
        }
        env.update(os.environ)

        if not self.model.api_key and env.get("ANTHROPIC_API_KEY"):
            self.model.api_key = env["ANTHROPIC_API_KEY"]
        if not self.neo4j.password and env.get("NEO4J_PASSWORD"):
            self.neo4j.password = env["NEO4J_PASSWORD"]
        if "KG_NEO4J__URI" not in env and env.get("NEO4J_URI"):
            self.neo4j.uri = env["NEO4J_URI"]
        if "KG_NEO4J__USER" not in env and env.get("NEO4J_USER"):
            self.neo4j.user = env["NEO4J_USER"]
        if "KG_WEB__PORT" not in env and env.get("PORT", "").isdigit():
            self.web.port = int(env["PORT"])

    def resolved_mcp_config_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve the MCP server config file, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.mcp.config_path).expanduser()
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
