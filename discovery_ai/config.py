"""
AI Service Configuration
Loads settings from environment variables
"""

import os
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment"""

    # API Configuration
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    API_ENV: str = os.getenv("API_ENV", "development")

    # CORS Configuration
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON: bool = _env_bool("LOG_JSON")

    # LLM Provider: auto | openai | ollama | rule_based
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "auto")
    LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "600"))
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    LLM_HISTORY_WINDOW: int = int(os.getenv("LLM_HISTORY_WINDOW", "20"))
    LLM_STREAM_IDLE_TIMEOUT: float = float(os.getenv("LLM_STREAM_IDLE_TIMEOUT", "30"))
    LLM_MAX_RETRIES: int = int(os.getenv("LLM_MAX_RETRIES", "2"))
    LLM_RETRY_BASE_DELAY: float = float(os.getenv("LLM_RETRY_BASE_DELAY", "0.5"))

    # OpenAI Configuration
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    OPENAI_BASE_URL: Optional[str] = os.getenv("OPENAI_BASE_URL") or None

    # Ollama Configuration
    OLLAMA_BASE_URL: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    OLLAMA_MODEL: str = os.getenv("OLLAMA_MODEL", "llama3.2")

    # Session Store: redis | memory
    SESSION_STORE_BACKEND: str = os.getenv("SESSION_STORE_BACKEND", "redis")
    SESSION_TTL_HOURS: int = int(os.getenv("SESSION_TTL_HOURS", "24"))
    SESSION_DELETE_ON_END: bool = _env_bool("SESSION_DELETE_ON_END")
    SESSION_KEY_PREFIX: str = os.getenv("SESSION_KEY_PREFIX", "chat")
    SESSION_PURGE_INTERVAL_SECONDS: float = float(os.getenv("SESSION_PURGE_INTERVAL_SECONDS", "900"))

    # Redis Configuration
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_PASSWORD: Optional[str] = os.getenv("REDIS_PASSWORD") or None

    # JWT Configuration
    JWT_SECRET: str = os.getenv("JWT_SECRET", "super-secret-key-change-in-production")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_AUDIENCE: Optional[str] = os.getenv("JWT_AUDIENCE") or None
    JWT_ISSUER: Optional[str] = os.getenv("JWT_ISSUER") or None
    AUTH_JWKS_URL: Optional[str] = os.getenv("AUTH_JWKS_URL") or None

    # WebSocket Gateway
    WS_AUTH_TIMEOUT_SECONDS: float = float(os.getenv("WS_AUTH_TIMEOUT_SECONDS", "10"))
    DEDUP_WINDOW_SECONDS: float = float(os.getenv("DEDUP_WINDOW_SECONDS", "5"))
    DEDUP_WINDOW_SIZE: int = int(os.getenv("DEDUP_WINDOW_SIZE", "50"))
    SHUTDOWN_GRACE_SECONDS: float = float(os.getenv("SHUTDOWN_GRACE_SECONDS", "15"))

    # Interview
    INTERVIEW_MAX_QUESTIONS: int = int(os.getenv("INTERVIEW_MAX_QUESTIONS", "8"))
    MESSAGE_MAX_LENGTH: int = int(os.getenv("MESSAGE_MAX_LENGTH", "2000"))

    @property
    def cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL"""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def llm_provider(self) -> str:
        """
        Resolve the effective LLM provider.

        auto: OpenAI when OPENAI_API_KEY is set, otherwise Ollama.
        """
        provider = self.LLM_PROVIDER.strip().lower()
        if provider == "auto":
            return "openai" if self.OPENAI_API_KEY else "ollama"
        return provider


# Global settings instance
settings = Settings()
