from functools import lru_cache

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError

from anka_executor.clients.controller import ClientConfig
from anka_executor.clients.http import RetryPolicy
from anka_executor.errors import ConfigurationError


JOB_STATUS_FAILED = "failed"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CUSTOM_ENV_ANKA_CLOUD_", extra="ignore", populate_by_name=True
    )

    controller_url: str
    debug: bool = Field(default=False)

    template_id: str = Field(default="")
    template_name: str = Field(default="")
    template_tag: str = Field(default="")
    node_id: str = Field(default="")
    node_group_id: str = Field(default="")
    priority: int = Field(default=0)
    vm_vcpu: int = Field(default=0, ge=0)
    vm_vram_mb: int = Field(default=0, ge=0)

    ca_cert_path: str = Field(default="")
    skip_tls_verify: bool = Field(default=False)
    client_cert_path: str = Field(default="")
    client_cert_key_path: str = Field(default="")
    custom_http_headers: dict[str, str] = Field(default_factory=dict)
    request_timeout_sec: float = Field(default=10.0, gt=0)
    max_idle_conns_per_host: int = Field(default=20, ge=1)

    ssh_user_name: str = Field(default="")
    ssh_password: str = Field(default="")

    keep_alive_on_error: bool = Field(default=False)
    builds_dir: str = Field(default="")
    cache_dir: str = Field(default="")

    poll_interval_sec: float = Field(default=10.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_sec: float = Field(default=5.0, ge=0)
    retry_max_delay_sec: float = Field(default=30.0, ge=0)

    job_id: str = Field(validation_alias="CUSTOM_ENV_CI_JOB_ID")
    job_url: str = Field(default="", validation_alias="CUSTOM_ENV_CI_JOB_URL")
    job_status: str = Field(default="", validation_alias="CUSTOM_ENV_CI_JOB_STATUS")

    @field_validator("controller_url")
    @classmethod
    def _check_controller_url(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value.startswith("http"):
            raise ValueError(f"{value!r}: missing http prefix")
        return value

    @property
    def external_id(self) -> str:
        return self.job_url or self.job_id

    def client_config(self) -> ClientConfig:
        return ClientConfig(
            base_url=self.controller_url,
            ca_cert_path=self.ca_cert_path or None,
            skip_tls_verify=self.skip_tls_verify,
            client_cert_path=self.client_cert_path or None,
            client_cert_key_path=self.client_cert_key_path or None,
            custom_headers=dict(self.custom_http_headers),
            max_idle_conns_per_host=self.max_idle_conns_per_host,
            request_timeout_sec=self.request_timeout_sec,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            initial_delay_sec=self.retry_initial_delay_sec,
            max_delay_sec=self.retry_max_delay_sec,
        )


class ExitCodes(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    build_failure_exit_code: int = Field(default=1)
    system_failure_exit_code: int = Field(default=2)


def _describe(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "settings"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise ConfigurationError(
            f"invalid executor configuration: {_describe(exc)}"
        ) from exc
    except SettingsError as exc:
        # raised for values that must be JSON, like the custom headers
        raise ConfigurationError(f"invalid executor configuration: {exc}") from exc


@lru_cache(maxsize=1)
def get_exit_codes() -> ExitCodes:
    try:
        return ExitCodes()
    except ValidationError as exc:
        raise ConfigurationError(f"invalid exit code: {_describe(exc)}") from exc
