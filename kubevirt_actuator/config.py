from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    infra_api_url: str = Field(default="https://localhost:6443")
    infra_api_token: str | None = Field(default=None)
    infra_verify_tls: bool = Field(default=True)

    tenant_api_url: str = Field(default="https://localhost:7443")
    tenant_api_token: str | None = Field(default=None)
    tenant_verify_tls: bool = Field(default=True)

    config_map_namespace: str = Field(default="openshift-config")
    config_map_name: str = Field(default="cloud-provider-config")
    config_map_namespace_key: str = Field(default="namespace")

    watch_namespace: str = Field(default="")

    loop_interval_sec: int = Field(default=10, ge=1)
    node_loop_interval_sec: int = Field(default=15, ge=1)

    requeue_after_sec: int = Field(default=20, ge=1)
    requeue_after_fatal_sec: int = Field(default=180, ge=1)
    vm_grace_window_sec: int = Field(default=40, ge=1)
    delete_grace_period_sec: int = Field(default=10, ge=0)
    provider_id_config_retry_sec: int = Field(default=30, ge=1)

    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: int = Field(default=2, ge=0)
    request_timeout_sec: float = Field(default=10.0, gt=0)

    default_requested_memory: str = Field(default="2048M")
    default_requested_storage: str = Field(default="35Gi")
    default_access_mode: str = Field(default="ReadWriteMany")

    database_url: str = Field(default="sqlite:///./kubevirt_actuator.db")
    log_level: str = Field(default="INFO")

    disable_background_loops: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
