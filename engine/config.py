from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENGINE_KEY: str = "dev-secret-key"
    DATABASE_URL: str = "sqlite:///./campaigns.db"
    LOG_LEVEL: str = "INFO"
    NARRATIVE_BASE_URL: str = "https://api.openai.com/v1"
    NARRATIVE_API_KEY: str = ""
    NARRATIVE_MODEL: str = "gpt-4o"
    NARRATIVE_MAX_TOKENS: int = 2000
    NARRATIVE_TEMPERATURE: float = 0.8
    NARRATIVE_TIMEOUT_SECONDS: float = 60.0
    SESSION_XP_BASE: int = 100
    SESSION_XP_PER_SESSION: int = 25

    class Config:
        env_file = ".env"


settings = Settings()
