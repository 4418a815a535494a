# ipsec_manager/agent/config.py
import json
from typing import Annotated, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class AgentSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="IPSEC_AGENT_")

    # Policy source (control plane API root)
    SERVER_URL: str = "http://localhost:8080/api/v1"
    REQUEST_TIMEOUT: float = 30.0

    # Node identity; NODE_ID empty = generate once and cache in STATE_DIR
    NODE_ID: str = ""
    # IPSEC_AGENT_TAGS=edge,eu or a JSON list
    TAGS: Annotated[List[str], NoDecode] = []
    STATE_DIR: str = "/var/lib/ipsec-agent"

    # Loop intervals (seconds)
    SYNC_INTERVAL: float = 60.0
    HEALTH_CHECK_INTERVAL: float = 10.0
    WATCHDOG_INTERVAL: float = 30.0
    SHUTDOWN_GRACE: float = 10.0

    # Tunnel backend: auto, strongswan or memory
    BACKEND: str = "auto"
    SWANCTL_DIR: str = "/etc/swanctl"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    @field_validator("TAGS", mode="before")
    @classmethod
    def split_tags(cls, value):
        if isinstance(value, str):
            if value.strip().startswith("["):
                return json.loads(value)
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value
