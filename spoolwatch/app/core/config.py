from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "SpoolWatch"
    log_level: str = "INFO"

    # Printer (local MQTT)
    printer_serial: str = ""
    printer_ip: str = ""
    printer_access_code: str = ""

    # Bambu cloud MQTT relay; the token also unlocks the cloud task API
    cloud_mqtt_enabled: bool = False
    cloud_mqtt_server: str = "us.mqtt.bambulab.com"
    cloud_mqtt_uid: str = ""
    cloud_mqtt_token: str = ""
    bambu_api_base: str = "https://api.bambulab.com"

    # Inventory API
    tracker_api_url: str = "http://localhost:3000"
    tracker_api_key: str = ""

    # Liveness endpoint
    health_host: str = "0.0.0.0"
    health_port: int = 3001

    # Usage reconciliation
    filament_brand: str = "Bambu Lab"
    usage_strategy: Literal["auto", "cloud", "delta"] = "auto"
    cloud_task_grace_period: float = 5.0
    default_spool_weight: float = 1000.0
    resolve_color_names: bool = False
    color_names_file: Path | None = None

    # Timeouts and reconnects (seconds)
    cloud_request_timeout: float = 15.0
    deduction_timeout: float = 10.0
    reconnect_initial_delay: float = 5.0
    reconnect_max_delay: float = 60.0
    shutdown_grace_period: float = 5.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def use_cloud_mqtt(self) -> bool:
        """Cloud relay is only used when it is enabled and fully configured."""
        return bool(self.cloud_mqtt_enabled and self.cloud_mqtt_uid and self.cloud_mqtt_token)

    @property
    def effective_usage_strategy(self) -> str:
        if self.usage_strategy != "auto":
            return self.usage_strategy
        return "cloud" if self.cloud_mqtt_token else "delta"


settings = Settings()
