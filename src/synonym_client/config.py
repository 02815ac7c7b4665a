# synonym_client/config.py
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import logger, set_level

# --- Sections for settings.yml ---
class ProcessSettings(BaseModel):
    process_id: str = "PAFaZyHxTu7T1UUgOunvzG4gXIowsJDhrHIhIfjQf98"
    cu_url: str = "https://cu.ao-testnet.xyz"
    mu_url: str = "https://mu.ao-testnet.xyz"
    # Seconds. The transport gives no guarantee of its own, so every call is bounded.
    request_timeout: float = 15.0
    # Seconds the wallet gets to approve a write; not part of request_timeout.
    signing_timeout: float = Field(60.0, gt=0)

class PollingSettings(BaseModel):
    lobby_list_interval: float = 5.0
    lobby_state_interval: float = 1.0

class GameSettings(BaseModel):
    """
    Engine constants. These must match the remote process's own constants;
    values carried in a lobby snapshot take precedence over them.
    """
    max_rounds: int = Field(6, ge=1)
    round_duration: float = Field(20.0, gt=0)
    min_players: int = Field(2, ge=2)
    timer_tick: float = Field(1.0, gt=0)

class SessionSettings(BaseModel):
    connect_attempts: int = Field(3, ge=1)
    connect_retry_delay: float = 1.0
    create_settle_delay: float = 2.0

class BridgeSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765

class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

# --- Main Settings Class ---
class Settings(BaseSettings):
    process: ProcessSettings = Field(default_factory=ProcessSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    game: GameSettings = Field(default_factory=GameSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="SYNONYM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # Environment beats the YAML file, which arrives as init kwargs.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

def load_settings(path: Optional[str] = None) -> Settings:
    """Load YAML and merge with env variables (env wins)."""
    path = path or os.environ.get("SYNONYM_SETTINGS_FILE", "settings.yml")
    try:
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Settings file not found at '{path}'. Using defaults.")
        yaml_data = {}
    try:
        loaded = Settings(**yaml_data)
    except Exception as e:
        logger.critical(f"Failed to validate configuration from '{path}' or '.env': {e}")
        raise SystemExit(1)
    set_level(loaded.logging.level)
    return loaded

# Global instance
settings = load_settings()
