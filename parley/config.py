"""Configuration management for Parley."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.parley/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.parley/chats.db").expanduser()
LOCAL_CONFIG_FILENAME = "parley.yaml"


class ModelCapabilities(BaseModel):
    """Capabilities of one model reachable through the provider."""

    id: str
    supports_tools: bool = True
    supports_reasoning: bool = False
    output_modalities: list[str] = Field(default_factory=lambda: ["text"])
    context_length: int = 8000

    @property
    def can_output_images(self) -> bool:
        return "image" in self.output_modalities


class ProviderConfig(BaseModel):
    """Upstream chat-completion provider configuration."""

    name: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    timeout: float = 120.0
    app_title: str = "Parley"
    referer: str = "http://localhost:3000"
    default_model: str = "moonshotai/kimi-k2-0905"
    models: list[ModelCapabilities] = Field(default_factory=list)

    def capabilities(self, model_id: str) -> ModelCapabilities:
        """Return configured capabilities for a model, or permissive defaults."""
        for entry in self.models:
            if entry.id == model_id:
                return entry
        return ModelCapabilities(id=model_id)


class PlanningConfig(BaseModel):
    """Tool negotiation before final generation."""

    max_rounds: int = 3
    max_sources: int = 5


class WebSearchToolConfig(BaseModel):
    """Web search tool configuration."""

    provider: str = "brave"
    api_key: str = ""
    base_url: str = "https://api.search.brave.com/res/v1/web/search"
    max_results: int = 5
    timeout: int = 20
    fallback_query_chars: int = 256
    safesearch: str = "moderate"


class ToolsConfig(BaseModel):
    """Tools configuration."""

    web_search: WebSearchToolConfig = Field(default_factory=WebSearchToolConfig)
    timeout_seconds: float = 30.0


class TutorConfig(BaseModel):
    """Tutoring workflow configuration."""

    # Global switch; a chat must also opt in through its settings.
    enabled: bool = True
    max_items: int = 40
    deck_review_limit: int = 20


class SessionConfig(BaseModel):
    """Persistence configuration."""

    storage: Literal["sqlite", "memory"] = "sqlite"
    path: str = str(DEFAULT_DB_PATH)


class StreamConfig(BaseModel):
    """Streaming sink behaviour."""

    strip_leading_tool_json: bool = True
    leading_buffer_chars: int = 512


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Parley."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    tutor: TutorConfig = Field(default_factory=TutorConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs; environment wins over them.
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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML with PARLEY_* env vars taking precedence."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
