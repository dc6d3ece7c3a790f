"""
Gateway configuration.

Values are read from environment variables prefixed with PTS_GATEWAY_
(or a local .env file), e.g. PTS_GATEWAY_REQUEST_TIMEOUT=3.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PTS_GATEWAY_", env_file=".env", extra="ignore")

    # Controller transport
    jsonpts_path: str = Field("/jsonPTS", description="Path of the jsonPTS endpoint on the controller")
    request_timeout: float = Field(5.0, gt=0, description="Hard per-request timeout in seconds")
    digest_algorithm: str = Field("MD5", description="Digest hash used when the challenge does not name one")
    controller_busy_wait: Optional[float] = Field(
        None, ge=0, description="Seconds to wait for a busy controller before failing; None blocks"
    )
    verify_tls: bool = Field(True, description="Verify HTTPS certificates of controllers")

    # Refill business rules
    hold_buffer_fraction: float = Field(0.10, ge=0, description="Pre-authorization buffer over the estimate")
    low_tank_threshold_percent: float = Field(20.0, ge=0, le=100, description="Advisory threshold after refill")
    min_dispense_volume: float = Field(1.0, gt=0, description="Litres")
    min_dispense_amount: float = Field(5.0, gt=0, description="Currency units")
    default_max_dispense_volume: float = Field(100.0, gt=0, description="Litres, when station config is absent")
    default_max_dispense_amount: float = Field(500.0, gt=0, description="Currency units, when station config is absent")

    # Tank alarm thresholds applied to live readings
    tank_low_level_litres: float = Field(1000.0, ge=0)
    tank_high_level_ullage_litres: float = Field(500.0, ge=0)

    # Application
    log_level: str = Field("INFO")
    log_file: Optional[str] = Field("pts_gateway.log")
    station_seed_file: Optional[str] = Field(None, description="JSON file used to seed the in-memory store")


settings = Settings()
