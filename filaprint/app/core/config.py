from pathlib import Path

from pydantic_settings import BaseSettings

# Application version - single source of truth
APP_VERSION = "0.3.0"

# Base directory for path calculations
_base_dir = Path(__file__).resolve().parent.parent.parent.parent


class Settings(BaseSettings):
    app_name: str = "FilaPrint Link"
    debug: bool = False

    # Paths
    base_dir: Path = _base_dir
    log_dir: Path = base_dir / "logs"

    # Logging
    log_level: str = "INFO"  # Override with LOG_LEVEL env var or DEBUG=true
    log_to_file: bool = True  # Set to false to disable file logging

    # MQTT link defaults (Bambu printers expose MQTT over TLS on 8883, user "bblp")
    mqtt_port: int = 8883
    mqtt_username: str = "bblp"
    mqtt_keepalive: int = 60
    mqtt_connect_timeout: float = 30.0
    mqtt_reconnect_interval: float = 5.0
    mqtt_max_reconnect_attempts: int = 5
    mqtt_client_id_prefix: str = "filaprint"

    # Bounded in-memory buffers
    message_log_size: int = 100
    live_history_size: int = 1000
    handler_max_pending: int = 100

    # Length of a standard 1kg 1.75mm spool, used when a tray reports no total length
    default_spool_length_mm: float = 330000.0

    # Single-printer session used by the console entry point
    printer_host: str | None = None
    printer_serial: str | None = None
    printer_access_code: str | None = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
