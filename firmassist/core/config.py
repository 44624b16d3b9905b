from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    DATABASE_ECHO: bool = False
    SECRET_KEY: str
    ALGORITHM: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int
    LOG_LEVEL: str = "INFO"

    # Model capability. Leaving the key unset disables every /ai run
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.0-flash"
    GEMINI_TIMEOUT_MS: int = 120_000

    # Orchestration loop
    AI_MAX_ITERATIONS: int = 5
    AI_HISTORY_LIMIT: int = 8
    AI_CONTEXT_ITEM_CAP: int = 20
    AI_EXCERPT_LENGTH: int = 500
    AI_MAX_CONCURRENT_RUNS: int = 30
    AI_MAX_ATTACHMENTS: int = 5
    AI_MAX_ATTACHMENT_BYTES: int = 5 * 1024 * 1024

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def ai_configured(self) -> bool:
        key = (self.GEMINI_API_KEY or "").strip()
        return bool(key) and key != "YOUR_GEMINI_API_KEY_HERE"


# Create a single instance of the settings to use everywhere
settings = Settings()
