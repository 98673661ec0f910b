from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
class Settings(BaseSettings):
    APP_ENV: str = "dev"
    DB_URL: str = "sqlite+aiosqlite:///./rentledger.db"
    TZ: str = "Asia/Kolkata"
    LOG_LEVEL: str = "INFO"
    CREDIT_TERM_MONTHS: int = 1
    MIXED_SCHEDULE_POLICY: Literal["skip", "reject"] = "skip"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
settings = Settings()
