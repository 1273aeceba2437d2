# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

import re

from loguru import logger

from coreason_codebox.config import SandboxSettings
from coreason_codebox.exceptions import ConfigurationInvalid
from coreason_codebox.models import IsolationSpec, Language, NetworkPolicy, SandboxConfig
from coreason_codebox.seccomp import resolve_profile
from coreason_codebox.validation import check_ceilings, check_security_flags

# RFC 1035 label; TLD alphabetic only.
_HOST_LABEL = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_HOST_MAX_LENGTH = 253


def validate_host(host: str) -> str:
    """Normalizes and validates an allowlisted egress host name.

    Raises:
        ValueError: If the host is not an RFC 1035 domain name.
    """
    host = host.strip().lower().rstrip(".")
    if not host or len(host) > _HOST_MAX_LENGTH:
        raise ValueError(f"Invalid host length: {host!r}")
    labels = host.split(".")
    if len(labels) < 2:
        raise ValueError(f"Host must have at least 2 labels: {host!r}")
    for label in labels:
        if not _HOST_LABEL.match(label):
            raise ValueError(f"Invalid host label {label!r} in {host!r}")
    if not labels[-1].isalpha():
        raise ValueError(f"TLD must be alphabetic: {host!r}")
    return host


class ResourceLimitEnforcer:
    """Translates a SandboxConfig into a concrete IsolationSpec.

    The enforcer re-checks ceilings and security flags itself, so a config that
    bypassed request validation still cannot exceed the host limits.
    """

    def __init__(self, settings: SandboxSettings):
        self.settings = settings
        self._seccomp_cache: dict[str, str | None] = {}

    def build(
        self,
        config: SandboxConfig,
        *,
        execution_id: str,
        language: Language,
        labels: dict[str, str] | None = None,
    ) -> IsolationSpec:
        """Builds the isolation spec for one execution.

        Args:
            config: Effective, already merged configuration.
            execution_id: Execution the container will belong to.
            language: Language of the snippet, recorded as a label.
            labels: Extra labels (user, tenant, correlation ids).

        Returns:
            IsolationSpec: Backend-neutral isolation contract.

        Raises:
            ConfigurationInvalid: If any value cannot be satisfied under the host ceilings.
        """
        check_ceilings(config, self.settings)
        check_security_flags(config, self.settings)

        settings = self.settings
        res = config.resources
        network_mode, allowed_hosts, network_env = self._network(config.network)

        security_opt = ["no-new-privileges:true"]
        if config.use_seccomp:
            profile = self._seccomp_profile(settings.seccomp_profile)
            if profile is not None:
                security_opt.append(f"seccomp={profile}")
        else:
            security_opt.append("seccomp=unconfined")

        namespace = settings.container_prefix
        all_labels = {
            f"{namespace}.managed": "true",
            f"{namespace}.execution_id": execution_id,
            f"{namespace}.language": language.value,
        }
        if allowed_hosts:
            all_labels[f"{namespace}.allowed_hosts"] = ",".join(allowed_hosts)
        for key, value in (labels or {}).items():
            all_labels[f"{namespace}.{key}"] = value

        spec = IsolationSpec(
            memory_bytes=res.memory_bytes,
            memory_swap_bytes=res.memory_bytes,
            nano_cpus=int(res.cpus * 1e9),
            pids_limit=res.pids_limit,
            cap_drop=("ALL",) if config.drop_all_capabilities else (),
            cap_add=(),
            security_opt=tuple(security_opt),
            seccomp_profile=settings.seccomp_profile if config.use_seccomp else "unconfined",
            read_only_root_fs=config.read_only_root_fs,
            tmpfs={
                settings.scratch_path: f"rw,noexec,nosuid,nodev,size={settings.scratch_size_bytes},mode=1777",
            },
            user=f"{config.user_id}:{config.group_id}" if config.run_as_non_root else None,
            network_mode=network_mode,
            allowed_hosts=allowed_hosts,
            environment={
                "HOME": settings.scratch_path,
                "TMPDIR": settings.scratch_path,
                "PYTHONDONTWRITEBYTECODE": "1",
                "PYTHONUNBUFFERED": "1",
                **network_env,
            },
            labels=all_labels,
            working_dir=settings.scratch_path,
            ulimits=(("nofile", settings.open_files_limit, settings.open_files_limit),),
        )
        logger.debug(
            f"Isolation spec for {execution_id}: mem={spec.memory_bytes} cpus={res.cpus} "
            f"pids={spec.pids_limit} network={spec.network_mode} seccomp={spec.seccomp_profile}"
        )
        return spec

    def _network(self, policy: NetworkPolicy) -> tuple[str, tuple[str, ...], dict[str, str]]:
        if not policy.enabled:
            if policy.allowed_hosts:
                raise ConfigurationInvalid("network.allowed_hosts requires network.enabled=true")
            return "none", (), {}

        if not policy.allowed_hosts:
            raise ConfigurationInvalid("Network access requires an explicit allowed_hosts list")
        if not self.settings.egress_network or not self.settings.egress_proxy_url:
            raise ConfigurationInvalid("Network allowlists require a configured egress network and proxy")

        try:
            hosts = tuple(sorted({validate_host(h) for h in policy.allowed_hosts}))
        except ValueError as e:
            raise ConfigurationInvalid(f"Invalid allowed host: {e}") from e

        proxy = self.settings.egress_proxy_url
        env = {
            "HTTP_PROXY": proxy,
            "HTTPS_PROXY": proxy,
            "http_proxy": proxy,
            "https_proxy": proxy,
            "NO_PROXY": "",
        }
        return self.settings.egress_network, hosts, env

    def _seccomp_profile(self, name: str) -> str | None:
        if name not in self._seccomp_cache:
            try:
                self._seccomp_cache[name] = resolve_profile(name)
            except ValueError as e:
                raise ConfigurationInvalid(f"Seccomp profile cannot be loaded: {e}") from e
        return self._seccomp_cache[name]
