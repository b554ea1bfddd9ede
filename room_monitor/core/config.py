from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "Room Monitor"

    # Storage
    sqlite_path: str = Field(default="room_monitor.db")

    # MQTT broker
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_client_id: str = ""              # empty => "room-monitor-<random>"
    mqtt_keepalive_seconds: int = 60
    mqtt_reconnect_seconds: float = 5.0

    # Topics
    telemetry_topic: str = "sensors"
    command_topic_template: str = "{device}"
    feedback_topic_prefix: str = "esp32"

    # Ingestion
    dedup_window_seconds: float = 1.5
    ingest_queue_size: int = 1000

    # Live channel
    heartbeat_seconds: float = 30.0
    viewer_queue_size: int = 100

    # Commands: how long an unconfirmed command blocks the device
    command_timeout_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_file: str = "room_monitor.log"


settings = Settings()
