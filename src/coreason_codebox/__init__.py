# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

"""
coreason-codebox
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import SandboxSettings
from .events import EventBus, SandboxEvent
from .exceptions import (
    AdmissionRejected,
    ConfigurationInvalid,
    ContainerCreateFailed,
    ContainerStartFailed,
    DockerNotAvailable,
    ErrorCode,
    ExecutionCancelled,
    ExecutionError,
    ExecutionFailed,
    ExecutionOOM,
    ExecutionTimeout,
    ImageNotAvailable,
    ImagePullFailed,
    InvalidRequest,
    NotFound,
    OutputLimitExceeded,
    SandboxError,
)
from .models import (
    AuditEntry,
    AuditFilter,
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    Language,
    NetworkPolicy,
    ResourceLimits,
    SandboxConfig,
)
from .runtime import ContainerManager
from .runtimes.docker import DockerContainerManager
from .service import Sandbox, SandboxService

__all__ = [
    "AdmissionRejected",
    "AuditEntry",
    "AuditFilter",
    "ConfigurationInvalid",
    "ContainerCreateFailed",
    "ContainerManager",
    "ContainerStartFailed",
    "DockerContainerManager",
    "DockerNotAvailable",
    "ErrorCode",
    "EventBus",
    "ExecutionCancelled",
    "ExecutionError",
    "ExecutionFailed",
    "ExecutionOOM",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionTimeout",
    "ImageNotAvailable",
    "ImagePullFailed",
    "InvalidRequest",
    "Language",
    "NetworkPolicy",
    "NotFound",
    "OutputLimitExceeded",
    "ResourceLimits",
    "Sandbox",
    "SandboxConfig",
    "SandboxError",
    "SandboxEvent",
    "SandboxService",
    "SandboxSettings",
]
