from pydantic_settings import BaseSettings
from typing import List, Optional
from pathlib import Path

# Get the backend directory (parent of app directory)
BACKEND_DIR = Path(__file__).parent.parent
ENV_FILE = BACKEND_DIR / ".env"

class Settings(BaseSettings):
    # Server settings (non-confidential, can have defaults)
    host: str = "0.0.0.0"
    port: int = 3000

    # HTTPS/SSL settings for uvicorn
    ssl_enabled: bool = False
    ssl_certfile: Optional[str] = None
    ssl_keyfile: Optional[str] = None

    # Full SQLAlchemy URL; when set it wins over the db_* fields (SQLite deployments, tests)
    database_url: Optional[str] = None

    # Database settings - confidential values from .env
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "college"
    db_user: str = "college"
    db_password: str = ""

    # Database SSL settings
    db_ssl_mode: str = "prefer"  # Options: disable, allow, prefer, require, verify-ca, verify-full
    db_ssl_cert: Optional[str] = None
    db_ssl_key: Optional[str] = None
    db_ssl_root_cert: Optional[str] = None

    # JWT settings - confidential values from .env
    jwt_secret_key: str  # Required from .env (confidential - no default)
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 1440

    # MQTT settings (notification fan-out to mobile/desktop clients)
    mqtt_enabled: bool = True
    mqtt_broker: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_notify_topic_format: str = "Notifications/{recipient_id}"

    # MQTT TLS/SSL settings - for secured MQTT
    mqtt_use_tls: bool = False
    mqtt_tls_insecure: bool = False  # Allow insecure TLS (self-signed certs)
    mqtt_ca_cert: Optional[str] = None
    mqtt_client_cert: Optional[str] = None
    mqtt_client_key: Optional[str] = None

    # Clock
    app_timezone: str = "Asia/Kolkata"

    # Library policy
    default_daily_fine: float = 10.0
    default_max_borrow_days: int = 30
    default_replacement_cost: float = 750.0
    clearance_threshold_percent: int = 80
    clearance_gated_semesters: List[int] = [5, 7]
    fine_payment_tolerance: float = 0.01
    max_renewals: int = 2
    overdue_sweep_interval_seconds: int = 3600

    # Messaging
    message_max_length: int = 2000
    message_history_limit: int = 50

    class Config:
        env_file = str(ENV_FILE) if ENV_FILE.exists() else ".env"
        case_sensitive = False

settings = Settings()
