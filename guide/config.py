from typing import Dict, Optional
import os

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Runtime configuration for the guide service"""
    service_name: str = Field(default="guide-server")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    openai_api_key: Optional[str] = Field(None, description="Upstream model service key")
    openai_base_url: str = Field(default="https://api.openai.com/v1")

    guide_model: str = Field(default="gpt-5.1-chat-latest")
    guide_max_completion_tokens: int = Field(default=900)
    chat_model: str = Field(default="gpt-4o-mini")
    chat_max_tokens: int = Field(default=800)
    chat_temperature: float = Field(default=0.7)
    summary_model: str = Field(default="gpt-4o-mini")
    summary_max_tokens: int = Field(default=300)
    summary_temperature: float = Field(default=0.3)

    max_recent_messages: int = Field(default=6, ge=2)
    context_payload_max_chars: int = Field(default=12000, ge=500)
    max_tool_iterations: int = Field(default=3, ge=0)
    guide_tools_enabled: bool = Field(default=False)
    chat_tools_enabled: bool = Field(default=True)

    suggestions_cache_ttl_seconds: int = Field(default=8 * 60 * 60)
    suggestions_cache_version: str = Field(default="v2")
    artifact_cleanup_interval_seconds: int = Field(default=60 * 60, ge=0, description="0 disables the periodic sweep")

    database_path: Optional[str] = Field(None, description="SQLite file; in-memory stores when unset")
    internal_api_key: Optional[str] = Field(None)

    langfuse_public_key: Optional[str] = None
    langfuse_secret_key: Optional[str] = None
    langfuse_host: str = Field(default="https://cloud.langfuse.com")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Build settings from environment variables"""

        env = os.environ if environ is None else environ
        mapping = {
            "service_name": "SERVICE_NAME",
            "environment": "ENVIRONMENT",
            "log_level": "LOG_LEVEL",
            "log_format": "LOG_FORMAT",
            "host": "HOST",
            "port": "PORT",
            "openai_api_key": "OPENAI_API_KEY",
            "openai_base_url": "OPENAI_BASE_URL",
            "guide_model": "GUIDE_MODEL",
            "guide_max_completion_tokens": "GUIDE_MAX_COMPLETION_TOKENS",
            "chat_model": "CHAT_MODEL",
            "summary_model": "SUMMARY_MODEL",
            "max_recent_messages": "MAX_RECENT_MESSAGES",
            "max_tool_iterations": "MAX_TOOL_ITERATIONS",
            "guide_tools_enabled": "GUIDE_TOOLS_ENABLED",
            "chat_tools_enabled": "CHAT_TOOLS_ENABLED",
            "context_payload_max_chars": "CONTEXT_PAYLOAD_MAX_CHARS",
            "suggestions_cache_ttl_seconds": "SUGGESTIONS_CACHE_TTL_SECONDS",
            "artifact_cleanup_interval_seconds": "ARTIFACT_CLEANUP_INTERVAL_SECONDS",
            "database_path": "GUIDE_DATABASE_PATH",
            "internal_api_key": "INTERNAL_API_KEY",
            "langfuse_public_key": "LANGFUSE_PUBLIC_KEY",
            "langfuse_secret_key": "LANGFUSE_SECRET_KEY",
            "langfuse_host": "LANGFUSE_HOST",
        }
        values = {
            field: env[name]
            for field, name in mapping.items()
            if env.get(name)
        }
        return cls(**values)

    @property
    def langfuse_enabled(self) -> bool:
        return bool(self.langfuse_public_key and self.langfuse_secret_key)
