from loguru import logger

from coreason_codebox.audit import AuditLogger
from coreason_codebox.config import SandboxSettings
from coreason_codebox.events import EventBus
from coreason_codebox.runtime import ContainerManager
from coreason_codebox.runtimes.docker import DockerContainerManager
from coreason_codebox.storage import AuditStore, JsonlAuditStore, S3AuditStore


class SandboxFactory:
    """
    Builds the configured collaborators of a SandboxService.
    """

    @staticmethod
    def get_manager(settings: SandboxSettings, events: EventBus | None = None) -> ContainerManager:
        return DockerContainerManager(
            base_url=settings.docker_base_url,
            timeout=settings.docker_timeout,
            prefix=settings.container_prefix,
            create_retry_delay=settings.create_retry_delay,
            events=events,
            pull_policy=settings.image_pull_policy,
        )

    @staticmethod
    def get_audit_store(settings: SandboxSettings) -> AuditStore | None:
        """
        Returns the persistence backend for audit entries, or None for memory only.
        """
        if settings.audit_backend == "jsonl":
            return JsonlAuditStore(settings.audit_log_path)
        if settings.audit_backend == "s3":
            if not settings.s3_bucket:
                raise ValueError("audit_backend 's3' requires s3_bucket")
            return S3AuditStore(
                bucket=settings.s3_bucket,
                prefix=settings.s3_prefix,
                region=settings.s3_region,
                access_key=settings.s3_access_key,
                secret_key=settings.s3_secret_key,
                endpoint_url=settings.s3_endpoint_url,
            )
        return None

    @staticmethod
    def get_audit_logger(settings: SandboxSettings, events: EventBus | None = None) -> AuditLogger:
        store = SandboxFactory.get_audit_store(settings)
        logger.debug(f"Audit backend: {settings.audit_backend}")
        return AuditLogger(
            store=store,
            max_in_memory=settings.audit_max_in_memory_entries,
            events=events,
            enabled=settings.enable_audit_logging,
        )
