"""
Environment Settings

Values read from MODBUS_INFLUX_* environment variables (or a .env file).
Credentials set here override the configuration document so they need not
be stored in it.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvSettings(BaseSettings):
    """
    Process settings loaded from the environment.

    - MODBUS_INFLUX_CONFIG=/etc/modbus-influx/config.toml
    - MODBUS_INFLUX_INFLUX_TOKEN=...      (InfluxDB 2.x auth token)
    - MODBUS_INFLUX_INFLUX_PASSWORD=...   (InfluxDB 1.x password)
    - MODBUS_INFLUX_LOG_LEVEL=info
    - MODBUS_INFLUX_LOG_FORMAT=text
    - MODBUS_INFLUX_LOG_FILE=/var/log/modbus-influx.log
    """
    model_config = SettingsConfigDict(
        env_prefix="MODBUS_INFLUX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config: str = "config.toml"
    influx_token: str | None = None
    influx_password: str | None = None
    log_level: str = "warn"
    log_format: str = "json"
    log_file: str | None = None
