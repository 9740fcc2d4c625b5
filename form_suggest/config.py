from __future__ import annotations

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./form_suggest.db"
    headless: bool = False
    user_data_dir: str | None = None
    log_level: str = "INFO"

    suggestion_limit: int = 15
    scoped_min_results: int = 5
    live_value_min_length: int = 2
    live_query_debounce_ms: int = 200
    store_timeout_s: float = 5.0

    bridge_binding_name: str = "__formSuggestBridge"
    observer_registry_key: str = "__formSuggestObserver"
    injection_verify_delay_ms: int = 300
    injection_retry_delay_ms: int = 500
    url_poll_interval_ms: int = 500

    keyboard_throttle_ms: int = 100
    keyboard_visibility_ratio: float = 0.05
    keyboard_height_delta_px: int = 50
    keyboard_recheck_delay_ms: int = 200
    default_keyboard_height: int = 800

    @field_validator("url_poll_interval_ms")
    @classmethod
    def _coarse_poll(cls, value: int) -> int:
        if value < 100:
            raise ValueError("url_poll_interval_ms must be at least 100")
        return value

    @field_validator("keyboard_visibility_ratio")
    @classmethod
    def _ratio_range(cls, value: float) -> float:
        if not 0.0 < value < 1.0:
            raise ValueError("keyboard_visibility_ratio must be between 0 and 1")
        return value


def get_settings() -> Settings:
    return Settings()


settings = get_settings()
