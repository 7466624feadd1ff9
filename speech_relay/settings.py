"""
Configuration settings for the speech relay server
Loads configuration from environment variables with .env support

Every group reads only its own prefixed variables (RIVA_*, APP_*, WS_*,
AUDIO_*, LOG_*), so generic names such as HOST, PORT or PATH never leak in.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _config(env_prefix: str) -> SettingsConfigDict:
    return SettingsConfigDict(
        env_prefix=env_prefix,
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


class BackendSettings(BaseSettings):
    """Riva streaming recognition backend (RIVA_*)"""
    model_config = _config("RIVA_")

    host: str = "localhost"
    port: int = 50051
    ssl: bool = False
    ssl_cert: Optional[str] = None

    connect_timeout_ms: int = 5000
    max_alternatives: int = 1
    enable_automatic_punctuation: bool = True

    def target(self) -> str:
        """Get Riva server URI"""
        return f"{self.host}:{self.port}"


class ServerSettings(BaseSettings):
    """Client-facing listener address and TLS (APP_*)"""
    model_config = _config("APP_")

    host: str = "0.0.0.0"
    port: int = 9090

    tls_enabled: bool = False
    ssl_cert: Optional[str] = None
    ssl_key: Optional[str] = None


class WebSocketSettings(BaseSettings):
    """WebSocket upgrade and connection limits (WS_*)"""
    model_config = _config("WS_")

    path: str = "/ws"

    # Read side: largest accepted frame. Write side: outgoing buffer high-water mark.
    max_message_size: int = 1024 * 1024
    write_limit: int = 32 * 1024
    max_queue: int = 32

    ping_interval_s: float = 30
    max_connections: int = 100


class AudioSettings(BaseSettings):
    """Audio format agreed with clients and the backend (AUDIO_*)"""
    model_config = _config("AUDIO_")

    sample_rate: int = 16000
    encoding: str = "LINEAR_PCM"
    chunk_size_bytes: int = 1024
    queue_max_chunks: int = 64


class ObservabilitySettings(BaseSettings):
    """Logging settings (LOG_*)"""
    model_config = _config("LOG_")

    level: str = "INFO"


class Settings(BaseSettings):
    """Combined application settings"""
    model_config = _config("SPEECH_RELAY_")

    backend: BackendSettings = Field(default_factory=BackendSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    websocket: WebSocketSettings = Field(default_factory=WebSocketSettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    def get_app_url(self) -> str:
        protocol = "wss" if self.server.tls_enabled else "ws"
        return f"{protocol}://{self.server.host}:{self.server.port}{self.websocket.path}"


@lru_cache()
def get_settings() -> Settings:
    """Settings for process entry points; components take settings as arguments."""
    return Settings()
