"""Wiring of the pipeline components from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from blt.archive import ArchiveClient, OrthancArchiveClient
from blt.config import ServiceConfig
from blt.registry import StudyRegistry
from blt.runner.executor import StageExecutor
from blt.runner.handler import RequestHandler
from blt.runner.poller import JobPoller
from blt.utils.atomic import SnapshotError
from blt.utils.logging import get_logger

logger = get_logger("runner.pipeline")


@dataclass
class Pipeline:
    """All components sharing one client and one registry."""

    config: ServiceConfig
    client: ArchiveClient
    registry: StudyRegistry
    executor: StageExecutor
    handler: RequestHandler
    poller: JobPoller

    # Whether close() must close the client
    owns_client: bool = True

    async def close(self) -> None:
        await self.poller.stop()
        try:
            self.registry.save()
        except SnapshotError as e:
            logger.error("registry_final_save_failed", error=str(e))
        if self.owns_client:
            await self.client.aclose()


def build_pipeline(
    config: Optional[ServiceConfig] = None,
    client: Optional[ArchiveClient] = None,
    registry: Optional[StudyRegistry] = None,
) -> Pipeline:
    """
    Build the pipeline components.

    Args:
        config: Service configuration (defaults when None)
        client: Archive client; an OrthancArchiveClient is created when None
        registry: Registry; created from config.registry when None

    Returns:
        Pipeline ready to have its poller started
    """
    config = config or ServiceConfig()

    owns_client = client is None
    if client is None:
        client = OrthancArchiveClient(config.archive)

    if registry is None:
        registry = StudyRegistry(config.registry.state_file)

    retention = None
    if config.registry.retention_hours > 0:
        retention = timedelta(hours=config.registry.retention_hours)

    executor = StageExecutor(client, anonymization=config.anonymization)
    handler = RequestHandler(client, registry, executor)
    poller = JobPoller(
        client,
        registry,
        executor,
        config=config.poller,
        retention=retention,
    )

    logger.debug(
        "pipeline_built",
        archive_url=config.archive.url,
        state_file=str(config.registry.state_file) if config.registry.state_file else None,
        restored_requests=len(registry),
    )
    return Pipeline(
        config=config,
        client=client,
        registry=registry,
        executor=executor,
        handler=handler,
        poller=poller,
        owns_client=owns_client,
    )
