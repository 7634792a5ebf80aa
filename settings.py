from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

PLACEHOLDER_DATABASE_URL = "mongodb://placeholder.invalid:27017"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: str = "newlife_pos"
    DATABASE_USERNAME: str = "pos"
    DATABASE_ACCESS_KEY: Optional[str] = None

    LOCAL_STORAGE_DIR: str = ".pos-data"
    ADMIN_PASSPHRASE: str = "newlife"

    LOG_LEVEL: str = "INFO"
    PORT: int = 8000

    @property
    def has_remote_credentials(self) -> bool:
        return bool(
            self.DATABASE_URL
            and self.DATABASE_ACCESS_KEY
            and self.DATABASE_URL != PLACEHOLDER_DATABASE_URL
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
