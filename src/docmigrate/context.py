"""
Wiring of the components one migration run needs.

``open_context(config)`` connects the source and target stores and builds
every service on top of them. The engine, rollback and recovery services all
receive a context factory, so tests swap in in-memory stores by passing a
different factory.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass

from docmigrate.analysis import CollectionAnalyzer
from docmigrate.backup import BackupService
from docmigrate.indexes import IndexOptimizationOptions, IndexOptimizer
from docmigrate.introspection import SchemaIntrospector
from docmigrate.memory import MemoryMonitor
from docmigrate.models import MigrationConfiguration
from docmigrate.observability import Tracer, create_tracer
from docmigrate.repositories import (
    CheckpointRepository,
    MigrationLogRepository,
    PostgreSQLCheckpointRepository,
    PostgreSQLMigrationLogRepository,
)
from docmigrate.stores import MongoSourceStore, PostgreSQLTargetStore, SourceStore, TargetStore
from docmigrate.transformers import TransformationService
from docmigrate.validator import SchemaValidator

logger = logging.getLogger(__name__)


@dataclass
class MigrationContext:
    """
    Connected stores and the services built on them.

    Attributes:
        source: Source document store.
        target: Target relational store.
        checkpoints: Durable checkpoint repository.
        logs: Durable migration log.
        transformations: Transformer registry.
        validator: Schema and data validator.
        analyzer: Collection analyzer.
        index_optimizer: Secondary index planner.
        backup: Backup service.
        memory: Memory monitor for the run.
        postgresql: Whether the target speaks PostgreSQL DDL.
    """

    source: SourceStore
    target: TargetStore
    checkpoints: CheckpointRepository
    logs: MigrationLogRepository
    transformations: TransformationService
    validator: SchemaValidator
    analyzer: CollectionAnalyzer
    index_optimizer: IndexOptimizer
    backup: BackupService
    memory: MemoryMonitor
    postgresql: bool = True

    async def ensure_tracking_schema(self) -> None:
        """Create the checkpoint and log tables when missing."""
        await self.checkpoints.ensure_schema()
        await self.logs.ensure_schema()

    async def reset_tracking_schema(self) -> None:
        """Drop and recreate the checkpoint and log tables."""
        await self.checkpoints.drop_schema()
        await self.logs.drop_schema()
        await self.ensure_tracking_schema()

    async def close(self) -> None:
        await self.source.close()
        await self.target.close()


ContextFactory = Callable[[MigrationConfiguration], AbstractAsyncContextManager[MigrationContext]]


@asynccontextmanager
async def open_context(
    config: MigrationConfiguration,
    *,
    tracer: Tracer | None = None,
    enable_tracing: bool = True,
) -> AsyncIterator[MigrationContext]:
    """
    Connect to MongoDB and PostgreSQL and build the services for a run.

    Both stores are closed when the block exits.

    Example:
        >>> async with open_context(config) as context:
        ...     await context.source.ping()
    """
    tracer = tracer or create_tracer(__name__, enable_tracing)
    source = MongoSourceStore(config.source_uri, config.source_database, tracer=tracer)
    target = PostgreSQLTargetStore.from_url(config.async_target_url, tracer=tracer)
    postgresql = target.engine.dialect.name == "postgresql"
    transformations = TransformationService(config.transformation)
    introspector = SchemaIntrospector(target.engine, tracer=tracer)

    context = MigrationContext(
        source=source,
        target=target,
        checkpoints=PostgreSQLCheckpointRepository(target.engine, tracer),
        logs=PostgreSQLMigrationLogRepository(target.engine, tracer),
        transformations=transformations,
        validator=SchemaValidator(
            source,
            introspector,
            transformations,
            config.validation,
            tracer=tracer,
        ),
        analyzer=CollectionAnalyzer(source, tracer=tracer),
        index_optimizer=IndexOptimizer(
            target,
            transformations,
            IndexOptimizationOptions(),
            postgresql=postgresql,
            tracer=tracer,
        ),
        backup=BackupService(source=source, tracer=tracer),
        memory=MemoryMonitor(config.max_memory_usage_mb),
        postgresql=postgresql,
    )
    logger.debug("Opened migration context for database %s", config.source_database)
    try:
        yield context
    finally:
        await context.close()


__all__ = ["ContextFactory", "MigrationContext", "open_context"]
