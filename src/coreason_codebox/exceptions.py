# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

"""Exception hierarchy for coreason-codebox.

All exceptions inherit from SandboxError and carry a stable error code.

Hierarchy:
    SandboxError (base)
    ├── InvalidRequest            ← unsupported language, empty/oversized code
    ├── ConfigurationInvalid      ← limits above ceilings, unsafe overrides
    ├── DockerNotAvailable        ← container runtime unreachable (fatal)
    ├── ImagePullFailed           ← language image missing and not pullable
    ├── ImageNotAvailable         ← image missing and the pull policy is "never"
    ├── ContainerCreateFailed     ← per-execution create failure
    ├── ContainerStartFailed      ← per-execution start failure
    ├── AdmissionRejected         ← concurrency gate full or queue timed out
    ├── NotFound                  ← unknown or already-terminal execution
    ├── InvalidStateTransition    ← state machine misuse (internal)
    └── ExecutionError            ← raised only by ExecutionResult.raise_for_status()
        ├── ExecutionFailed
        ├── ExecutionTimeout
        ├── ExecutionOOM
        ├── ExecutionCancelled
        └── OutputLimitExceeded
"""

from enum import Enum
from typing import Any, ClassVar


class ErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    CONFIGURATION_INVALID = "CONFIGURATION_INVALID"
    DOCKER_NOT_AVAILABLE = "DOCKER_NOT_AVAILABLE"
    IMAGE_PULL_FAILED = "IMAGE_PULL_FAILED"
    IMAGE_NOT_FOUND = "IMAGE_NOT_FOUND"
    CONTAINER_CREATE_FAILED = "CONTAINER_CREATE_FAILED"
    CONTAINER_START_FAILED = "CONTAINER_START_FAILED"
    ADMISSION_REJECTED = "ADMISSION_REJECTED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
    EXECUTION_OOM = "EXECUTION_OOM"
    EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
    OUTPUT_LIMIT_EXCEEDED = "OUTPUT_LIMIT_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SandboxError(Exception):
    """Base exception for all sandbox errors.

    Attributes:
        message: Human-readable error message.
        execution_id: The execution the error belongs to, if any.
        context: Structured context for logging.
    """

    code: ClassVar[ErrorCode] = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        execution_id: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.execution_id = execution_id
        self.context = context or {}

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class InvalidRequest(SandboxError):
    """The request itself is malformed; no container was created."""

    code = ErrorCode.INVALID_REQUEST


class ConfigurationInvalid(SandboxError):
    """Requested limits or security settings cannot be satisfied."""

    code = ErrorCode.CONFIGURATION_INVALID


class DockerNotAvailable(SandboxError):
    """The container runtime is unreachable. Fatal at initialization."""

    code = ErrorCode.DOCKER_NOT_AVAILABLE


class ImagePullFailed(SandboxError):
    code = ErrorCode.IMAGE_PULL_FAILED


class ImageNotAvailable(SandboxError):
    code = ErrorCode.IMAGE_NOT_FOUND


class ContainerCreateFailed(SandboxError):
    """Container creation failed.

    Attributes:
        transient: True when the failure looks like an infrastructure race
            (name conflict, daemon 5xx, dropped connection) and one retry is allowed.
    """

    code = ErrorCode.CONTAINER_CREATE_FAILED

    def __init__(
        self,
        message: str,
        execution_id: str | None = None,
        context: dict[str, Any] | None = None,
        transient: bool = False,
    ):
        super().__init__(message, execution_id, context)
        self.transient = transient


class ContainerStartFailed(SandboxError):
    code = ErrorCode.CONTAINER_START_FAILED


class AdmissionRejected(SandboxError):
    code = ErrorCode.ADMISSION_REJECTED


class NotFound(SandboxError):
    code = ErrorCode.NOT_FOUND


class InvalidStateTransition(SandboxError):
    code = ErrorCode.INTERNAL_ERROR


class ExecutionError(SandboxError):
    """Base for execution outcomes converted into exceptions on request."""

    code = ErrorCode.EXECUTION_FAILED


class ExecutionFailed(ExecutionError):
    code = ErrorCode.EXECUTION_FAILED


class ExecutionTimeout(ExecutionError):
    code = ErrorCode.EXECUTION_TIMEOUT


class ExecutionOOM(ExecutionError):
    code = ErrorCode.EXECUTION_OOM


class ExecutionCancelled(ExecutionError):
    code = ErrorCode.EXECUTION_CANCELLED


class OutputLimitExceeded(ExecutionError):
    code = ErrorCode.OUTPUT_LIMIT_EXCEEDED


ERRORS_BY_CODE: dict[ErrorCode, type[SandboxError]] = {
    cls.code: cls
    for cls in (
        InvalidRequest,
        ConfigurationInvalid,
        DockerNotAvailable,
        ImagePullFailed,
        ImageNotAvailable,
        ContainerCreateFailed,
        ContainerStartFailed,
        AdmissionRejected,
        NotFound,
        ExecutionFailed,
        ExecutionTimeout,
        ExecutionOOM,
        ExecutionCancelled,
        OutputLimitExceeded,
    )
}
