from pydantic import BaseModel, Field

from filaprint.app.core.config import settings


class LinkConfig(BaseModel):
    """Connection parameters for one printer's MQTT channel.

    Credentials arrive already decrypted from the printer registry.
    """

    host: str = Field(..., min_length=1, max_length=255)
    serial_number: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1)  # LAN access code
    port: int = Field(default=settings.mqtt_port, ge=1, le=65535)
    username: str = settings.mqtt_username
    keepalive: int = Field(default=settings.mqtt_keepalive, ge=5, le=3600)
    reconnect_period: float = Field(default=settings.mqtt_reconnect_interval, gt=0)
    connect_timeout: float = Field(default=settings.mqtt_connect_timeout, gt=0, le=120)

    class Config:
        frozen = True
