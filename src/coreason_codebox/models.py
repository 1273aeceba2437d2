# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coreason_codebox.exceptions import ERRORS_BY_CODE, ErrorCode, ExecutionFailed

MIB = 1024 * 1024

MAX_CODE_LENGTH = 100_000
MAX_TIMEOUT_MS = 300_000


class Language(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    BASH = "bash"


class ExecutionState(str, Enum):
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    OUT_OF_MEMORY = "out_of_memory"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.TIMED_OUT,
        ExecutionState.OUT_OF_MEMORY,
        ExecutionState.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.QUEUED: frozenset(
        {ExecutionState.PROVISIONING, ExecutionState.FAILED, ExecutionState.CANCELLED}
    ),
    ExecutionState.PROVISIONING: frozenset(
        {ExecutionState.RUNNING, ExecutionState.FAILED, ExecutionState.CANCELLED}
    ),
    ExecutionState.RUNNING: TERMINAL_STATES,
}


class ResourceLimits(BaseModel):
    """Per-container resource limits.

    Attributes:
        memory_bytes: Hard memory limit. Swap is always disabled.
        cpus: CPU quota in cores.
        pids_limit: Maximum number of processes/threads in the container.
        max_output_bytes: Cap applied to stdout and stderr independently.
    """

    model_config = ConfigDict(frozen=True)

    memory_bytes: int = Field(default=128 * MIB, gt=0)
    cpus: float = Field(default=0.5, gt=0)
    pids_limit: int = Field(default=64, ge=1)
    max_output_bytes: int = Field(default=1 * MIB, ge=1)


class NetworkPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    allowed_hosts: tuple[str, ...] = ()


class SandboxConfig(BaseModel):
    """Effective isolation configuration for a single execution.

    Every default is the secure choice: no network, read-only root filesystem,
    all capabilities dropped, seccomp on, fixed unprivileged identity.
    """

    model_config = ConfigDict(frozen=True)

    timeout_ms: int = Field(default=30_000, ge=1, le=MAX_TIMEOUT_MS)
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    network: NetworkPolicy = Field(default_factory=NetworkPolicy)
    read_only_root_fs: bool = True
    drop_all_capabilities: bool = True
    use_seccomp: bool = True
    run_as_non_root: bool = True
    user_id: int = Field(default=65534, ge=0)
    group_id: int = Field(default=65534, ge=0)

    def merged(self, override: "SandboxConfigOverride | None") -> "SandboxConfig":
        """Returns a copy with the override applied field by field."""
        if override is None:
            return self

        top = override.model_dump(exclude_unset=True, exclude={"resources", "network"})
        if override.resources is not None:
            top["resources"] = self.resources.model_copy(
                update=override.resources.model_dump(exclude_unset=True)
            )
        if override.network is not None:
            top["network"] = self.network.model_copy(update=override.network.model_dump(exclude_unset=True))

        # Round-trip through validation so merged values are checked again.
        return SandboxConfig.model_validate({**self.model_dump(), **_as_plain(top)})


def _as_plain(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v.model_dump() if isinstance(v, BaseModel) else v for k, v in values.items()}


class ResourceLimitsOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    memory_bytes: int | None = Field(default=None, gt=0)
    cpus: float | None = Field(default=None, gt=0)
    pids_limit: int | None = Field(default=None, ge=1)
    max_output_bytes: int | None = Field(default=None, ge=1)


class NetworkPolicyOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool | None = None
    allowed_hosts: tuple[str, ...] | None = None


class SandboxConfigOverride(BaseModel):
    """Partial SandboxConfig supplied by a caller. Unset fields keep the defaults."""

    model_config = ConfigDict(extra="forbid")

    timeout_ms: int | None = Field(default=None, ge=1, le=MAX_TIMEOUT_MS)
    resources: ResourceLimitsOverride | None = None
    network: NetworkPolicyOverride | None = None
    read_only_root_fs: bool | None = None
    drop_all_capabilities: bool | None = None
    use_seccomp: bool | None = None
    run_as_non_root: bool | None = None
    user_id: int | None = Field(default=None, ge=0)
    group_id: int | None = Field(default=None, ge=0)


class ExecutionRequest(BaseModel):
    """A request to run one code snippet. Immutable once accepted."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    language: Language
    code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)
    config: SandboxConfigOverride | None = None
    user_id: str | None = None
    tenant_id: str | None = None
    correlation_id: str | None = None

    @field_validator("code")
    @classmethod
    def _reject_blank_or_binary(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("code must not be blank")
        if "\x00" in value:
            raise ValueError("code must not contain NUL bytes")
        return value


class ExecutionResult(BaseModel):
    """Structured outcome of an execution. Never raised; see raise_for_status()."""

    execution_id: str
    language: Language
    state: ExecutionState
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    oom_killed: bool = False
    cancelled: bool = False
    output_truncated: bool = False
    duration_ms: int = 0
    memory_used_bytes: int | None = None
    container_id: str | None = None
    error_code: ErrorCode | None = None
    error: str | None = None

    def raise_for_status(self) -> None:
        """Raises the typed ExecutionError matching a non-successful outcome."""
        if self.success:
            return
        error_cls = ERRORS_BY_CODE.get(self.error_code or ErrorCode.EXECUTION_FAILED, ExecutionFailed)
        raise error_cls(
            self.error or f"Execution ended in state {self.state.value}",
            execution_id=self.execution_id,
            context={"exit_code": self.exit_code, "state": self.state.value},
        )


class AuditEntry(BaseModel):
    """Immutable record of one execution attempt. Never contains raw code."""

    model_config = ConfigDict(frozen=True)

    id: str
    execution_id: str
    user_id: str | None = None
    tenant_id: str | None = None
    correlation_id: str | None = None
    language: Language
    code_hash: str
    code_size_bytes: int
    start_time: datetime
    end_time: datetime
    duration_ms: int
    state: ExecutionState
    exit_code: int | None = None
    success: bool
    timed_out: bool
    oom_killed: bool
    cancelled: bool = False
    output_truncated: bool = False
    stdout_size_bytes: int = 0
    stderr_size_bytes: int = 0
    memory_used_bytes: int | None = None
    error_code: ErrorCode | None = None
    container_id: str | None = None
    network_enabled: bool
    resource_limits: ResourceLimits


class AuditFilter(BaseModel):
    user_id: str | None = None
    tenant_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    language: Language | None = None
    success: bool | None = None
    limit: int = Field(default=100, ge=1, le=10_000)
    offset: int = Field(default=0, ge=0)

    @field_validator("since", "until")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, entry: AuditEntry) -> bool:
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.tenant_id is not None and entry.tenant_id != self.tenant_id:
            return False
        if self.since is not None and entry.start_time < self.since:
            return False
        if self.until is not None and entry.start_time > self.until:
            return False
        if self.language is not None and entry.language != self.language:
            return False
        if self.success is not None and entry.success != self.success:
            return False
        return True

    def apply(self, entries: list[AuditEntry]) -> list[AuditEntry]:
        """Filters, sorts newest first and paginates."""
        matched = sorted((e for e in entries if self.matches(e)), key=lambda e: e.start_time, reverse=True)
        return matched[self.offset : self.offset + self.limit]


class IsolationSpec(BaseModel):
    """Concrete isolation contract handed to a container backend."""

    model_config = ConfigDict(frozen=True)

    memory_bytes: int
    memory_swap_bytes: int
    nano_cpus: int
    pids_limit: int
    cap_drop: tuple[str, ...] = ("ALL",)
    cap_add: tuple[str, ...] = ()
    security_opt: tuple[str, ...] = ()
    seccomp_profile: str
    read_only_root_fs: bool = True
    tmpfs: dict[str, str] = Field(default_factory=dict)
    user: str | None = None
    network_mode: str = "none"
    allowed_hosts: tuple[str, ...] = ()
    environment: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    working_dir: str = "/tmp"
    ulimits: tuple[tuple[str, int, int], ...] = ()
    init: bool = True
