"""Library settings and configuration.

This module defines all configuration options for the Formstr core layer.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    Timing values are in seconds.
    """

    app_name: str = Field(default="Formstr Core", alias="APP_NAME")

    # Relay defaults
    default_relays: list[str] = Field(
        default=[
            "wss://relay.damus.io",
            "wss://relay.primal.net",
            "wss://nos.lol",
        ],
        alias="FORMSTR_DEFAULT_RELAYS",
    )
    relay_connect_timeout_seconds: float = Field(
        default=5.0, alias="FORMSTR_RELAY_CONNECT_TIMEOUT_SECONDS"
    )
    relay_publish_timeout_seconds: float = Field(
        default=10.0, alias="FORMSTR_RELAY_PUBLISH_TIMEOUT_SECONDS"
    )
    relay_query_max_wait_seconds: float = Field(
        default=5.0, alias="FORMSTR_RELAY_QUERY_MAX_WAIT_SECONDS"
    )

    # Relay authentication (challenge/response)
    auth_debounce_seconds: float = Field(default=0.05, alias="FORMSTR_AUTH_DEBOUNCE_SECONDS")
    auth_retry_delay_seconds: float = Field(
        default=0.2, alias="FORMSTR_AUTH_RETRY_DELAY_SECONDS"
    )
    auth_response_timeout_seconds: float = Field(
        default=10.0, alias="FORMSTR_AUTH_RESPONSE_TIMEOUT_SECONDS"
    )

    # Blob hosts
    blob_servers: list[str] = Field(
        default=[
            "https://blossom.primal.net",
            "https://nostr.download",
            "https://blossom.oxtr.dev",
        ],
        alias="FORMSTR_BLOB_SERVERS",
    )
    blob_token_ttl_seconds: int = Field(default=60, alias="FORMSTR_BLOB_TOKEN_TTL_SECONDS")
    blob_http_timeout_seconds: float = Field(
        default=30.0, alias="FORMSTR_BLOB_HTTP_TIMEOUT_SECONDS"
    )
    # When set, requests carry this Origin and responses must allow it.
    blob_client_origin: str | None = Field(default=None, alias="FORMSTR_BLOB_CLIENT_ORIGIN")

    # Local storage
    database_url: str = Field(default="sqlite:///./formstr.db", alias="FORMSTR_DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="FORMSTR_SQL_DEBUG")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def default_blob_server(self) -> str:
        """Return the blob host used when a caller does not pick one."""
        return self.blob_servers[0]


settings = Settings()
