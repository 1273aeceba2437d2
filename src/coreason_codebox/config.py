from pathlib import Path
from typing import Any, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from coreason_codebox.integrations.vault import VaultIntegrator
from coreason_codebox.models import (
    MAX_TIMEOUT_MS,
    MIB,
    Language,
    NetworkPolicy,
    ResourceLimits,
    SandboxConfig,
)

# Absolute caps. Operators may lower the ceilings below these, never raise them.
HARD_MAX_MEMORY_BYTES = 256 * MIB
HARD_MAX_CPUS = 4.0
HARD_MAX_PIDS = 256
HARD_MAX_OUTPUT_BYTES = 10 * MIB


class VaultSettingsSource(PydanticBaseSettingsSource):
    """
    Custom Pydantic Settings Source that reads secrets from Vault.
    """

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Unused because __call__ returns the full dict, but required by the ABC.
        return None, field_name, False  # pragma: no cover

    def __call__(self) -> dict[str, Any]:
        vault = VaultIntegrator()
        secrets: dict[str, Any] = {}

        # Config Field -> Vault Key
        mapping = {
            "s3_access_key": "S3_ACCESS_KEY",
            "s3_secret_key": "S3_SECRET_KEY",
        }

        for field, key in mapping.items():
            val = vault.get_secret(key)
            if val:
                secrets[field] = val

        return secrets


class SandboxSettings(BaseSettings):
    """
    Service-wide configuration for the code execution sandbox.

    Per-execution values come from `SandboxConfig`; this object holds the
    defaults those start from and the ceilings no caller can exceed.
    """

    # Container runtime
    docker_base_url: str | None = None
    docker_timeout: float = 30.0
    container_prefix: str = "codebox"
    images: dict[Language, str] = {
        Language.PYTHON: "python:3.12-alpine",
        Language.JAVASCRIPT: "node:20-alpine",
        Language.BASH: "bash:5.2",
    }
    pull_images_on_startup: bool = True
    # "always" pulls before every create, "never" fails executions whose image is missing.
    image_pull_policy: Literal["always", "if_not_present", "never"] = "if_not_present"

    # Admission control
    max_concurrent_executions: int = Field(default=10, ge=1)
    max_queued_executions: int = Field(default=50, ge=0)
    admission_timeout_seconds: float = Field(default=30.0, gt=0)

    # Defaults applied when a request does not override them
    default_timeout_ms: int = Field(default=30_000, ge=1)
    default_memory_bytes: int = 128 * MIB
    default_cpus: float = 0.5
    default_pids_limit: int = 64
    default_max_output_bytes: int = 1 * MIB

    # Ceilings
    max_timeout_ms: int = MAX_TIMEOUT_MS
    max_memory_bytes: int = 256 * MIB
    min_memory_bytes: int = 6 * MIB
    max_cpus: float = 4.0
    max_pids_limit: int = 256
    max_output_bytes: int = 10 * MIB
    output_hard_limit_multiplier: int = Field(default=4, ge=1)

    # Isolation
    sandbox_user_id: int = Field(default=65534, ge=1)
    sandbox_group_id: int = Field(default=65534, ge=1)
    scratch_path: str = "/tmp"
    scratch_size_bytes: int = 64 * MIB
    seccomp_profile: str = "runtime-default"
    open_files_limit: int = 256
    allow_security_relaxation: bool = False
    egress_network: str | None = None
    egress_proxy_url: str | None = None

    # Supervision
    stop_grace_seconds: float = 1.0
    stream_drain_timeout: float = 2.0
    create_retry_delay: float = 0.25
    shutdown_timeout: float = 10.0

    # Reaper
    reaper_interval: float = 60.0
    max_container_age: float = 600.0
    result_retention: int = 1000

    # Audit
    enable_audit_logging: bool = True
    audit_backend: Literal["memory", "jsonl", "s3"] = "memory"
    audit_log_path: Path = Path("audit/sandbox-audit.jsonl")
    audit_max_in_memory_entries: int = 10_000
    audit_retention_days: int = 90

    # S3 / Object Storage (audit archive)
    s3_bucket: str | None = None
    s3_prefix: str = "sandbox-audit"
    s3_region: str | None = None
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_endpoint_url: str | None = None

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    model_config = SettingsConfigDict(
        env_prefix="COREASON_CODEBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_ceilings(self) -> "SandboxSettings":
        hard_caps = (
            ("max_timeout_ms", self.max_timeout_ms, MAX_TIMEOUT_MS),
            ("max_memory_bytes", self.max_memory_bytes, HARD_MAX_MEMORY_BYTES),
            ("max_cpus", self.max_cpus, HARD_MAX_CPUS),
            ("max_pids_limit", self.max_pids_limit, HARD_MAX_PIDS),
            ("max_output_bytes", self.max_output_bytes, HARD_MAX_OUTPUT_BYTES),
        )
        for name, value, cap in hard_caps:
            if value > cap:
                raise ValueError(f"{name}={value} exceeds the hard cap {cap}")

        defaults = (
            ("default_timeout_ms", self.default_timeout_ms, self.max_timeout_ms),
            ("default_memory_bytes", self.default_memory_bytes, self.max_memory_bytes),
            ("default_cpus", self.default_cpus, self.max_cpus),
            ("default_pids_limit", self.default_pids_limit, self.max_pids_limit),
            ("default_max_output_bytes", self.default_max_output_bytes, self.max_output_bytes),
        )
        for name, value, ceiling in defaults:
            if value > ceiling:
                raise ValueError(f"{name}={value} exceeds its ceiling {ceiling}")

        missing = set(Language) - set(self.images)
        if missing:
            raise ValueError(f"No image configured for: {sorted(m.value for m in missing)}")
        return self

    def default_sandbox_config(self) -> SandboxConfig:
        """Builds the secure-by-default per-execution config."""
        return SandboxConfig(
            timeout_ms=self.default_timeout_ms,
            resources=ResourceLimits(
                memory_bytes=self.default_memory_bytes,
                cpus=self.default_cpus,
                pids_limit=self.default_pids_limit,
                max_output_bytes=self.default_max_output_bytes,
            ),
            network=NetworkPolicy(),
            user_id=self.sandbox_user_id,
            group_id=self.sandbox_group_id,
        )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            VaultSettingsSource(settings_cls),
            file_secret_settings,
        )
