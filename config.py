import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv


@dataclass
class Settings:
    """Application settings, read from the environment by get_settings()."""

    database_url: str = "sqlite:///./expenses.db"
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    log_level: str = "INFO"


def get_settings(env_file: Optional[str] = None) -> Settings:
    # variables already in the environment win over the .env file
    load_dotenv(env_file or find_dotenv(usecwd=True))
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        secret_key=os.getenv("SECRET_KEY", Settings.secret_key),
        algorithm=os.getenv("JWT_ALGORITHM", Settings.algorithm),
        access_token_expire_minutes=int(
            os.getenv(
                "ACCESS_TOKEN_EXPIRE_MINUTES", Settings.access_token_expire_minutes
            )
        ),
        log_level=os.getenv("LOG_LEVEL", Settings.log_level),
    )


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
