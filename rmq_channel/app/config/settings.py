"""Settings for the channel façade and its transports."""

from urllib.parse import quote

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    broker_host: str = Field("localhost", validation_alias="BROKER_HOST")
    broker_port: int = Field(5672, validation_alias="BROKER_PORT")
    broker_user: str = Field("guest", validation_alias="BROKER_USER")
    broker_password: str = Field("guest", validation_alias="BROKER_PASSWORD")
    broker_vhost: str = Field("/", validation_alias="BROKER_VHOST")

    # "rabbitmq" talks to a broker through aio_pika, "inmemory" runs an in-process broker.
    transport_backend: str = Field("rabbitmq", validation_alias="TRANSPORT_BACKEND")

    # 0 leaves the broker default (unlimited) in place.
    prefetch_count: int = Field(0, validation_alias="PREFETCH_COUNT")
    operation_timeout_seconds: float = Field(30.0, validation_alias="OPERATION_TIMEOUT_SECONDS")

    initial_backoff_seconds: float = Field(0.5, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(10.0, validation_alias="MAX_BACKOFF_SECONDS")
    max_connection_attempts: int = Field(5, validation_alias="MAX_CONNECTION_ATTEMPTS")
    backoff_multiplier: float = Field(2.0, validation_alias="BACKOFF_MULTIPLIER")

    @property
    def amqp_url(self) -> str:
        vhost = "" if self.broker_vhost == "/" else quote(self.broker_vhost.strip("/"), safe="")
        return (
            f"amqp://{self.broker_user}:{self.broker_password}"
            f"@{self.broker_host}:{self.broker_port}/{vhost}"
        )
