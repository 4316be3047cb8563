"""Settings loaded from environment variables.

``Settings`` holds process-level options (logging). Each remote service has
its own immutable config model; instances are passed explicitly to the
service helpers instead of being stored in module state.
"""

from functools import lru_cache
from typing import ClassVar

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

from cloud_helpers.errors import ConfigurationError
from cloud_helpers.http.policy import RetryPolicy

APPID_RETRY_METHODS = frozenset({"POST", "GET", "HEAD", "PUT"})


class Settings(BaseSettings):
    # Logging
    log_level: str = "DEBUG"
    log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    return Settings()


def _env(field: str, env_name: str):
    """Read ``field`` from ``env_name``; the field name still works as a kwarg."""
    return AliasChoices(field, env_name)


class ServiceConfig(BaseSettings):
    """Connection settings for one remote service."""

    service_label: ClassVar[str] = ""
    # (field name, env var name) pairs, checked in order
    required_fields: ClassVar[tuple[tuple[str, str], ...]] = ()
    retry_methods: ClassVar[frozenset[str] | None] = None

    def check_required(self, extra: tuple[tuple[str, str], ...] = ()) -> None:
        """Raise ConfigurationError naming the first missing required value."""
        for field_name, env_name in (*self.required_fields, *extra):
            value = getattr(self, field_name)
            if value is None or value == "":
                raise ConfigurationError(
                    f"Invalid {self.service_label} config: missing variable '{env_name}'",
                    variable=env_name,
                )

    def retry_policy(self) -> RetryPolicy:
        kwargs = {
            "max_retries": self.retries or 0,
            "retry_delay_ms": self.retry_delay or 0,
            "timeout_ms": self.timeout or 0,
        }
        if self.retry_methods is not None:
            kwargs["retry_methods"] = self.retry_methods
        return RetryPolicy(**kwargs)


class KeyProtectConfig(ServiceConfig):
    service_label: ClassVar[str] = "KeyProtect"
    required_fields: ClassVar[tuple[tuple[str, str], ...]] = (
        ("url", "KEYPROTECT_URL"),
        ("instance_id", "KEYPROTECT_GUID"),
        ("apikey", "KEYPROTECT_APIKEY"),
        ("retries", "KEYPROTECT_RETRIES"),
        ("retry_delay", "KEYPROTECT_RETRYDELAY"),
        ("timeout", "KEYPROTECT_TIMEOUT"),
    )

    url: str = ""
    instance_id: str = Field("", validation_alias=_env("instance_id", "KEYPROTECT_GUID"))
    apikey: str = ""
    retries: int | None = None
    retry_delay: int | None = Field(None, validation_alias=_env("retry_delay", "KEYPROTECT_RETRYDELAY"))  # ms
    timeout: int | None = None  # ms

    model_config = {
        "env_prefix": "KEYPROTECT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "frozen": True,
    }


class AppIDConfig(ServiceConfig):
    service_label: ClassVar[str] = "AppID"
    required_fields: ClassVar[tuple[tuple[str, str], ...]] = (
        ("url", "APP_ID_URL"),
        ("client_id", "APP_ID_CLIENT_ID"),
        ("tenant_id", "APP_ID_TENANT_ID"),
        ("secret", "APP_ID_SECRET"),
    )
    management_fields: ClassVar[tuple[tuple[str, str], ...]] = (
        ("apikey", "APP_ID_APIKEY"),
    )
    retry_methods: ClassVar[frozenset[str] | None] = APPID_RETRY_METHODS

    url: str = ""
    client_id: str = ""
    tenant_id: str = ""
    secret: str = ""
    apikey: str = ""  # IAM key for the management API

    # Profile values written onto provisioned accounts
    user_name: str = ""
    user_tenant_id: str = ""

    retries: int | None = 1
    retry_delay: int | None = Field(3000, validation_alias=_env("retry_delay", "APP_ID_RETRYDELAY"))  # ms
    timeout: int | None = 10000  # ms

    model_config = {
        "env_prefix": "APP_ID_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "frozen": True,
    }

    def check_management(self) -> None:
        self.check_required(extra=self.management_fields)

    @property
    def management_url(self) -> str:
        return f"{self.url.rstrip('/')}/management/v4/{self.tenant_id}"

    @property
    def oauth_url(self) -> str:
        return f"{self.url.rstrip('/')}/oauth/v4/{self.tenant_id}"

    @property
    def ping_url(self) -> str:
        return f"{self.oauth_url}/publickeys"


class CloudantConfig(ServiceConfig):
    service_label: ClassVar[str] = "Cloudant"
    required_fields: ClassVar[tuple[tuple[str, str], ...]] = (
        ("url", "CLOUDANT_URL"),
    )

    url: str = ""
    # IAM auth is used when both account and iam_api_key are present,
    # otherwise basic auth with username/password.
    account: str = ""
    iam_api_key: str = ""
    username: str = ""
    password: str = ""
    proxy_url: str = ""
    db_partition_key: str = ""

    retries: int | None = 1
    retry_delay: int | None = Field(3000, validation_alias=_env("retry_delay", "CLOUDANT_RETRYDELAY"))  # ms
    timeout: int | None = 10000  # ms

    model_config = {
        "env_prefix": "CLOUDANT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "frozen": True,
    }

    @property
    def uses_iam_auth(self) -> bool:
        return bool(self.account and self.iam_api_key)

    @property
    def uses_basic_auth(self) -> bool:
        return bool(self.url and self.username and self.password)
