# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

"""Request validation. Pure: no I/O, no container is touched."""

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from coreason_codebox.config import SandboxSettings
from coreason_codebox.exceptions import ConfigurationInvalid, InvalidRequest
from coreason_codebox.models import ExecutionRequest, Language, SandboxConfig

_SECURITY_FLAGS = ("read_only_root_fs", "drop_all_capabilities", "use_seccomp", "run_as_non_root")


def _format_errors(exc: ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}" for err in exc.errors())


def parse_request(request: ExecutionRequest | Mapping[str, Any]) -> ExecutionRequest:
    """Coerces caller input into an ExecutionRequest.

    Raises:
        InvalidRequest: Unsupported language, empty, blank or oversized code.
        ConfigurationInvalid: The config override itself is malformed.
    """
    if isinstance(request, ExecutionRequest):
        return request
    if not isinstance(request, Mapping):
        raise InvalidRequest(f"Expected an execution request, got {type(request).__name__}")

    language = request.get("language")
    if language not in {lang.value for lang in Language}:
        supported = ", ".join(lang.value for lang in Language)
        raise InvalidRequest(f"Unsupported language: {language!r}. Supported: {supported}")

    try:
        return ExecutionRequest.model_validate(dict(request))
    except ValidationError as e:
        config_errors = [err for err in e.errors() if err["loc"] and err["loc"][0] == "config"]
        if config_errors and len(config_errors) == len(e.errors()):
            raise ConfigurationInvalid(f"Invalid sandbox configuration: {_format_errors(e)}") from e
        raise InvalidRequest(f"Invalid execution request: {_format_errors(e)}") from e


def check_ceilings(config: SandboxConfig, settings: SandboxSettings) -> None:
    """Rejects any limit beyond the service ceilings.

    Raises:
        ConfigurationInvalid: On the first violated ceiling.
    """
    res = config.resources
    checks = (
        ("timeout_ms", config.timeout_ms, settings.max_timeout_ms),
        ("resources.memory_bytes", res.memory_bytes, settings.max_memory_bytes),
        ("resources.cpus", res.cpus, settings.max_cpus),
        ("resources.pids_limit", res.pids_limit, settings.max_pids_limit),
        ("resources.max_output_bytes", res.max_output_bytes, settings.max_output_bytes),
    )
    for name, value, ceiling in checks:
        if value > ceiling:
            raise ConfigurationInvalid(
                f"{name}={value} exceeds the system ceiling of {ceiling}",
                context={"field": name, "value": value, "ceiling": ceiling},
            )
    if res.memory_bytes < settings.min_memory_bytes:
        raise ConfigurationInvalid(
            f"resources.memory_bytes={res.memory_bytes} is below the runtime minimum of {settings.min_memory_bytes}"
        )


def check_security_flags(config: SandboxConfig, settings: SandboxSettings) -> None:
    relaxed = [flag for flag in _SECURITY_FLAGS if not getattr(config, flag)]
    if relaxed and not settings.allow_security_relaxation:
        raise ConfigurationInvalid(
            f"Relaxing security settings is not permitted: {', '.join(relaxed)}",
            context={"flags": relaxed},
        )
    if config.run_as_non_root and (config.user_id == 0 or config.group_id == 0):
        raise ConfigurationInvalid("run_as_non_root requires a non-zero user_id and group_id")


def validate_request(
    request: ExecutionRequest | Mapping[str, Any], settings: SandboxSettings
) -> tuple[ExecutionRequest, SandboxConfig]:
    """Validates a request and resolves its effective SandboxConfig.

    Args:
        request: An ExecutionRequest or an equivalent mapping.
        settings: Service settings providing defaults and ceilings.

    Returns:
        The parsed request and the defaults merged with its override.

    Raises:
        InvalidRequest: The request is malformed.
        ConfigurationInvalid: The override is malformed, exceeds a ceiling or relaxes security.
    """
    parsed = parse_request(request)
    try:
        config = settings.default_sandbox_config().merged(parsed.config)
    except ValidationError as e:
        raise ConfigurationInvalid(f"Invalid sandbox configuration: {_format_errors(e)}") from e

    check_ceilings(config, settings)
    check_security_flags(config, settings)
    return parsed, config
