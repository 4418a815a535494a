# ipsec_manager/control_plane/config.py
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="IPSEC_SERVER_")

    # Database
    DATABASE_URL: str = "sqlite:///./ipsec-manager.db"

    # HTTP listener
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # Token for policy writes (X-Admin-Token); unset = no check
    ADMIN_SECRET: Optional[str] = None

    LOG_LEVEL: str = "INFO"


settings = Settings()
