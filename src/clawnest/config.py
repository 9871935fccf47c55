"""Nest configuration using pydantic-settings.

Configuration hierarchy:
- StoreConfig: Instance registry and data directory
- DockerConfig: Container runtime settings
- ProcessConfig: Local process backend settings
- DeployConfig: Deploy protocol timeouts and buffers
- LoggingConfig: Logging behavior
- NestConfig: Main config aggregating all sub-configs

Environment variable prefix: NEST_
Example: NEST_DOCKER_IMAGE=openclaw/openclaw:latest
"""

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreConfig(BaseSettings):
    """Instance store configuration.

    When the manager itself runs inside a container, HOST_DATA_PATH must be
    the absolute path of the data root on the Docker host so that sibling
    container bind mounts resolve correctly.
    """

    model_config = SettingsConfigDict(env_prefix="NEST_STORE_", populate_by_name=True)

    data_dir: Path | None = Field(
        default=None,
        description="Data root (default: HOST_DATA_PATH or ~/.openclaw-nest)",
    )
    host_data_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("HOST_DATA_PATH", "NEST_STORE_HOST_DATA_PATH"),
        description="Data root as seen by the Docker host (bind mount source)",
    )
    store_file: str = Field(default="instances.json", description="Metadata file name")
    base_port: int = Field(default=18790, description="First port handed out to instances")

    def resolve_data_dir(self) -> Path:
        if self.data_dir is not None:
            return self.data_dir
        if self.host_data_path:
            return Path(self.host_data_path)
        return Path.home() / ".openclaw-nest"


class DockerConfig(BaseSettings):
    """Docker runtime configuration."""

    model_config = SettingsConfigDict(env_prefix="NEST_DOCKER_")

    # Connection
    host: str = Field(
        default="unix:///var/run/docker.sock",
        description="Docker daemon socket or TCP address",
    )
    network: str | None = Field(
        default=None,
        description="Network shared with the manager (sibling topology)",
    )

    # Instance containers
    image: str = Field(
        default="openclaw/openclaw:latest",
        description="Gateway runtime image (must provide the openclaw binary)",
    )
    container_prefix: str = Field(default="oc-", description="Container name prefix")
    container_port: int = Field(default=28789, description="Gateway port inside container")

    # Timeouts
    api_timeout: float = Field(default=30.0, description="Docker API call timeout (seconds)")
    image_pull_timeout: float = Field(default=600.0, description="Image pull timeout (seconds)")
    stop_timeout: int = Field(default=10, description="Grace period for container stop (seconds)")
    probe_timeout: float = Field(default=2.0, description="Daemon reachability probe (seconds)")


class ProcessConfig(BaseSettings):
    """Local process backend configuration."""

    model_config = SettingsConfigDict(env_prefix="NEST_PROCESS_")

    binary: str = Field(default="openclaw", description="Agent binary on PATH")
    stop_timeout: float = Field(default=10.0, description="Grace period before SIGKILL")


class DeployConfig(BaseSettings):
    """Deploy protocol configuration.

    onboard_timeout bounds phase P2, apply_timeout bounds the readiness
    re-poll after the gateway restart in phase P4.
    """

    model_config = SettingsConfigDict(env_prefix="NEST_DEPLOY_")

    onboard_timeout: float = Field(default=120.0, description="Onboarding bound (seconds)")
    apply_timeout: float = Field(default=60.0, description="Apply readiness bound (seconds)")
    poll_interval: float = Field(default=2.0, description="Readiness poll interval (seconds)")
    probe_timeout: float = Field(default=0.8, description="Gateway TCP probe timeout (seconds)")
    progress_buffer: int = Field(default=64, description="Buffered progress events per deploy")
    ticket_ttl: float = Field(default=300.0, description="Deploy ticket lifetime (seconds)")
    ticket_sweep_interval: float = Field(
        default=60.0,
        description="Interval between expired ticket sweeps (seconds)",
    )


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Supports both text and JSON formats for different environments:
    - text: Human-readable for local development
    - json: Structured logging for production (log aggregation)
    """

    model_config = SettingsConfigDict(env_prefix="NEST_LOGGING_")

    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="text", description="Log format (text, json)")
    service_name: str = Field(default="clawnest", description="Service identifier in logs")


class NestConfig(BaseSettings):
    """Main configuration aggregating all sub-configs.

    Environment variable prefix: NEST_
    Sub-configs use their own prefixes (NEST_DOCKER_, NEST_DEPLOY_, etc.)
    """

    model_config = SettingsConfigDict(
        env_prefix="NEST_",
        env_nested_delimiter="__",
    )

    engine: str | None = Field(
        default=None,
        description="Engine override (docker, process); auto-detected when unset",
    )

    # Sub-configurations
    store: StoreConfig = Field(default_factory=StoreConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


@lru_cache
def get_nest_config() -> NestConfig:
    """Get cached configuration."""
    return NestConfig()
