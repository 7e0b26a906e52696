from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    ENV: str = Field(default="development", validation_alias="APP_ENV")
    LOG_LEVEL: str = Field(default="INFO", validation_alias="FLEET_LOG_LEVEL")

    # Geofence
    GEOFENCE_RADIUS_METERS: float = 500.0
    GEOFENCE_COOLDOWN_SECONDS: float = 0.0  # 0 disables; re-entry still needs an exit sample

    # Lifecycle
    LIFECYCLE_TIMEOUT_SECONDS: float | None = 10.0
    LIFECYCLE_MAX_RETRIES: int = 3

    # Event delivery
    SUBSCRIPTION_QUEUE_SIZE: int = 1000
    NOTIFICATION_LOG_SIZE: int = 20
    NOTIFICATION_DEDUPE_WINDOW: int = 500
    JOB_STATUS_MEMORY: int = 10000  # jobs whose latest status is remembered for ordering checks

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CoreSettings()
