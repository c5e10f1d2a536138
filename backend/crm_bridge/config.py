"""
CRM Bridge - Configuration
Environment-based configuration with sensible defaults
"""
import socket
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    SERVICE_NAME: str = "CRM_Service"
    SERVICE_VERSION: str = "1.0.0"
    SERVICE_HOST: str = socket.gethostname()
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"

    # RabbitMQ (no defaults: the connection manager refuses to start without them)
    RABBITMQ_HOST: Optional[str] = None
    RABBITMQ_PORT: Optional[int] = Field(None, gt=0, lt=65536)
    RABBITMQ_USERNAME: Optional[str] = None
    RABBITMQ_PASSWORD: Optional[str] = None
    RABBITMQ_EXCHANGE: Optional[str] = None
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_CONNECT_RETRIES: int = 5
    RABBITMQ_RETRY_DELAY: float = 5.0

    # Entity exchanges
    USER_EXCHANGE: str = "user"
    COMPANY_EXCHANGE: str = "company"
    ENTITY_EXCHANGE_DURABLE: bool = True

    # Consumers
    CONSUMER_PREFETCH: int = 1
    MAX_REDELIVERIES: int = Field(0, ge=0)  # 0 = always requeue; >0 declares quorum queues
    REQUEUE_DELAY: float = Field(1.0, ge=0)  # pause before handing a failed delivery back
    FAILURE_REPORT_INTERVAL: float = Field(60.0, ge=0)  # per failure kind, towards the log exchange

    # Control-room log exchange (empty disables)
    LOG_EXCHANGE: str = "log_monitoring"

    # Heartbeat
    HEARTBEAT_ENABLED: bool = True
    HEARTBEAT_INTERVAL: int = 1

    # Salesforce
    SALESFORCE_LOGIN_URL: str = "https://login.salesforce.com"
    SALESFORCE_CLIENT_ID: Optional[str] = None
    SALESFORCE_CLIENT_SECRET: Optional[str] = None
    SALESFORCE_USERNAME: Optional[str] = None
    SALESFORCE_PASSWORD: Optional[str] = None
    SALESFORCE_TOKEN: str = ""
    SALESFORCE_INSTANCE_URL: Optional[str] = None
    SALESFORCE_API_VERSION: str = "v58.0"
    CRM_TIMEOUT: float = 30.0

    # Salesforce Change Data Capture -> broker (off unless enabled)
    CDC_ENABLED: bool = False
    CDC_TOPIC: str = "/data/ContactChangeEvent"
    CDC_TARGETS: str = "frontend,facturatie,kassa"  # routing key prefixes for republished contacts
    CDC_INCLUDE_API_ORIGIN: bool = False  # also forward changes made through the REST API
    CDC_RETRY_DELAY: float = 5.0
    CDC_POLL_TIMEOUT: float = 130.0

    # Circuit Breaker
    CB_FAILURE_THRESHOLD: int = 5
    CB_RECOVERY_TIMEOUT: int = 30
    CB_HALF_OPEN_MAX_CALLS: int = 1

    # Metrics
    METRICS_PORT: Optional[int] = None

    @property
    def entity_exchanges(self) -> dict:
        """Exchange name per entity kind"""
        return {"user": self.USER_EXCHANGE, "company": self.COMPANY_EXCHANGE}

    @property
    def cdc_targets(self) -> List[str]:
        return [t.strip() for t in self.CDC_TARGETS.split(",") if t.strip()]

    def missing_broker_settings(self) -> List[str]:
        """Names of required RabbitMQ settings that are unset or blank"""
        required = {
            "RABBITMQ_HOST": self.RABBITMQ_HOST,
            "RABBITMQ_PORT": self.RABBITMQ_PORT,
            "RABBITMQ_USERNAME": self.RABBITMQ_USERNAME,
            "RABBITMQ_PASSWORD": self.RABBITMQ_PASSWORD,
            "RABBITMQ_EXCHANGE": self.RABBITMQ_EXCHANGE,
        }
        return [name for name, value in required.items() if value in (None, "")]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
