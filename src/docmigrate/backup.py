"""
Database backups through the vendor dump tools.

BackupService runs ``mongodump``, ``pg_dump`` and ``mongorestore`` as
subprocesses. Every archive gets a ``<archive>.metadata`` JSON sidecar with
a SHA-256 checksum so verify_backup can detect truncation or tampering
without restoring.

Subprocesses are bounded: run_command kills the process when its timeout
expires and raises CommandTimeoutError.
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import logging
import os
import struct
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url

from docmigrate.exceptions import BackupError, CommandTimeoutError, MigrationError
from docmigrate.models import ValidationError, ValidationResult
from docmigrate.observability import ATTR_BACKUP_TYPE, ATTR_DB_NAME, Tracer, create_tracer
from docmigrate.serialization import json_dumps, json_loads
from docmigrate.stores.source import SourceStore

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 3600.0
METADATA_SUFFIX = ".metadata"
MONGODUMP_ARCHIVE_MAGIC = 0x8199E26D
PG_CUSTOM_DUMP_MAGIC = b"PGDMP"
GZIP_MAGIC = b"\x1f\x8b"
_CHUNK_SIZE = 1024 * 1024


class BackupType(Enum):
    """Which database a backup came from."""

    MONGODB = "mongodb"
    POSTGRESQL = "postgresql"


# =============================================================================
# Subprocesses
# =============================================================================


@dataclass(frozen=True)
class CommandResult:
    """Exit code and captured output of a finished subprocess."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


CommandRunner = Callable[..., Awaitable[CommandResult]]


async def run_command(
    argv: Sequence[str],
    timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    *,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """
    Run a program and capture its output.

    Args:
        argv: Program and arguments. No shell is involved.
        timeout: Seconds before the process is killed.
        env: Extra environment variables, merged over the current environment.

    Raises:
        BackupError: If the program cannot be started.
        CommandTimeoutError: If the timeout expires. The process is killed first.
    """
    program = argv[0]
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            env={**os.environ, **env} if env else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise BackupError(f"{program} command not found. Install the database tools.") from e
    except OSError as e:
        raise BackupError(f"Failed to start {program}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("Killed %s after %g seconds", program, timeout)
        raise CommandTimeoutError(program, timeout) from None
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    result = CommandResult(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    logger.debug("%s exited with %d", program, result.exit_code)
    return result


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class BackupConfiguration:
    """
    What to back up and where.

    Attributes:
        connection_string: MongoDB URI or PostgreSQL URL.
        database_name: Database to dump. For PostgreSQL, defaults to the
            URL's database.
        output_directory: Directory receiving the archive and its sidecar.
        backup_file_name: Archive name. Generated from the database name and
            the current time when omitted.
        compress: Compress the archive.
        collections: MongoDB collections to include; empty means all.
        timeout_seconds: Limit for the dump process.
        additional_options: Extra ``--key=value`` flags; ``True`` adds ``--key``.
    """

    connection_string: str
    output_directory: str
    database_name: str | None = None
    backup_file_name: str | None = None
    compress: bool = True
    collections: tuple[str, ...] = ()
    timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS
    additional_options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BackupMetadata:
    """Contents of a ``.metadata`` sidecar."""

    backup_type: str
    database_name: str | None = None
    tool_version: str = "unknown"
    database_version: str = "unknown"
    collection_count: int = 0
    document_count: int = 0
    checksum: str | None = None
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    additional_data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackupMetadata:
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


@dataclass(frozen=True)
class BackupResult:
    """Outcome of creating a backup."""

    success: bool
    backup_type: BackupType
    path: str | None = None
    size_bytes: int = 0
    duration_seconds: float = 0.0
    error_message: str | None = None
    metadata: BackupMetadata | None = None


@dataclass(frozen=True)
class BackupInfo:
    """A backup found on disk."""

    path: str
    backup_type: BackupType
    created_at: datetime
    size_bytes: int
    is_compressed: bool
    metadata: BackupMetadata | None = None


@dataclass(frozen=True)
class BackupRetentionPolicy:
    """
    Limits applied by cleanup_backups.

    A backup is kept only while it is among the ``max_count`` newest and
    younger than ``max_age_days``. The oldest remaining backups are then
    removed until the total size fits ``max_total_bytes``.
    """

    max_age_days: float = 7
    max_count: int = 10
    max_total_bytes: int = 10 * 1024 * 1024 * 1024


@dataclass(frozen=True)
class CleanupResult:
    """Files removed by cleanup_backups."""

    success: bool
    deleted_files: tuple[str, ...] = ()
    bytes_freed: int = 0
    error_message: str | None = None

    @property
    def files_deleted(self) -> int:
        return len(self.deleted_files)


# =============================================================================
# File checks
# =============================================================================


def file_checksum(path: str | Path) -> str:
    """SHA-256 of a file as lowercase hex."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _read_head(path: Path, size: int = 1024) -> bytes:
    """First bytes of the file, decompressed when it is gzip framed."""
    with open(path, "rb") as f:
        raw = f.read(size)
    if not raw.startswith(GZIP_MAGIC):
        return raw
    with gzip.open(path, "rb") as f:
        head = f.read(size)
        # Read to the end so CRC and length trailers are checked
        while f.read(_CHUNK_SIZE):
            pass
    return head


def _check_format(path: Path, backup_type: BackupType) -> str | None:
    try:
        head = _read_head(path)
    except (gzip.BadGzipFile, EOFError, OSError) as e:
        return f"Invalid gzip framing: {e}"

    if backup_type == BackupType.MONGODB:
        if len(head) < 4 or struct.unpack("<I", head[:4])[0] != MONGODUMP_ARCHIVE_MAGIC:
            return "File does not appear to be a mongodump archive"
        return None

    if head.startswith(PG_CUSTOM_DUMP_MAGIC):
        return None
    first_line = head.split(b"\n", 1)[0].decode("utf-8", errors="replace").strip()
    if "PostgreSQL database dump" in first_line or first_line.startswith(("--", "CREATE", "SET")):
        return None
    return "File does not appear to be a valid PostgreSQL dump"


def _verify(path: Path, backup_type: BackupType) -> ValidationResult:
    if not path.is_file():
        return ValidationResult.failure(ValidationError("backup_path", "Backup file does not exist", str(path)))
    if path.stat().st_size == 0:
        return ValidationResult.failure(ValidationError("file_size", "Backup file is empty", str(path)))

    problem = _check_format(path, backup_type)
    if problem:
        return ValidationResult.failure(ValidationError("format", problem, str(path)))

    metadata_path = Path(str(path) + METADATA_SUFFIX)
    if metadata_path.is_file():
        try:
            metadata = BackupMetadata.from_dict(json_loads(metadata_path.read_text()))
        except (ValueError, TypeError) as e:
            return ValidationResult.failure(ValidationError("checksum", f"Unreadable backup metadata: {e}"))
        if not metadata.checksum:
            return ValidationResult.failure(ValidationError("checksum", "No checksum found in metadata"))
        if file_checksum(path).lower() != metadata.checksum.lower():
            return ValidationResult.failure(
                ValidationError("checksum", "Backup file checksum does not match metadata")
            )
    return ValidationResult.success()


def detect_backup_type(file_name: str) -> BackupType | None:
    """Backup type from an archive name, or None for unrelated files."""
    if file_name.startswith("mongo_") or "mongodump" in file_name:
        return BackupType.MONGODB
    if file_name.startswith("postgres_") or file_name.endswith((".sql", ".sql.gz")):
        return BackupType.POSTGRESQL
    return None


def _option_flags(options: Mapping[str, Any]) -> list[str]:
    flags = []
    for key, value in options.items():
        if value is True:
            flags.append(f"--{key}")
        elif value is not False and value is not None:
            flags.append(f"--{key}={value}")
    return flags


def _tool_version() -> str:
    from docmigrate import __version__

    return f"docmigrate {__version__}"


# =============================================================================
# Service
# =============================================================================


class BackupService:
    """
    Creates, verifies, restores and prunes database backups.

    Example:
        >>> service = BackupService()
        >>> result = await service.create_postgres_backup(
        ...     BackupConfiguration("postgresql://postgres@localhost/nocturne", "backups")
        ... )
        >>> (await service.verify_backup(result.path, BackupType.POSTGRESQL)).is_valid
        True
    """

    def __init__(
        self,
        *,
        source: SourceStore | None = None,
        runner: CommandRunner = run_command,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._source = source
        self._run = runner
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @staticmethod
    def _archive_path(config: BackupConfiguration, prefix: str, database: str, extension: str) -> Path:
        directory = Path(config.output_directory)
        directory.mkdir(parents=True, exist_ok=True)
        name = config.backup_file_name or (
            f"{prefix}_backup_{database}_{datetime.now(UTC):%Y%m%d_%H%M%S}{extension}"
        )
        if config.compress and not name.endswith(".gz"):
            name += ".gz"
        return directory / name

    async def _count_source(self, collections: Sequence[str]) -> tuple[int, int]:
        if self._source is None:
            return len(collections), 0
        try:
            names = list(collections) or await self._source.list_collections()
            total = 0
            for name in names:
                total += await self._source.count_documents(name)
        except MigrationError as e:
            logger.warning("Could not count source documents for backup metadata: %s", e)
            return len(collections), 0
        return len(names), total

    async def _finish(
        self,
        path: Path,
        backup_type: BackupType,
        database: str,
        started: float,
        collection_count: int = 0,
        document_count: int = 0,
    ) -> BackupResult:
        checksum = await asyncio.to_thread(file_checksum, path)
        metadata = BackupMetadata(
            backup_type=backup_type.value,
            database_name=database,
            tool_version=_tool_version(),
            collection_count=collection_count,
            document_count=document_count,
            checksum=checksum,
        )
        Path(str(path) + METADATA_SUFFIX).write_text(json_dumps(metadata.to_dict()))
        size = path.stat().st_size
        logger.info("%s backup completed: %s (%d bytes)", backup_type.value, path, size)
        return BackupResult(
            success=True,
            backup_type=backup_type,
            path=str(path),
            size_bytes=size,
            duration_seconds=time.perf_counter() - started,
            metadata=metadata,
        )

    async def create_mongo_backup(self, config: BackupConfiguration) -> BackupResult:
        """
        Dump a MongoDB database with ``mongodump --archive``.

        Raises:
            BackupError: If mongodump cannot be started.
            CommandTimeoutError: If mongodump exceeds the configured timeout.
        """
        database = config.database_name or ""
        started = time.perf_counter()
        path = self._archive_path(config, "mongo", database, "")
        argv = ["mongodump", f"--uri={config.connection_string}", f"--db={database}", f"--archive={path}"]
        if config.compress:
            argv.append("--gzip")
        if len(config.collections) == 1:
            argv.append(f"--collection={config.collections[0]}")
        else:
            argv.extend(f"--nsInclude={database}.{name}" for name in config.collections)
        argv.extend(_option_flags(config.additional_options))

        logger.info("Starting MongoDB backup for database: %s", database)
        with self._tracer.span(
            "docmigrate.backup.create_mongo_backup",
            {ATTR_BACKUP_TYPE: BackupType.MONGODB.value, ATTR_DB_NAME: database},
        ):
            result = await self._run(argv, config.timeout_seconds)
        if not result.success:
            return BackupResult(
                success=False,
                backup_type=BackupType.MONGODB,
                duration_seconds=time.perf_counter() - started,
                error_message=f"mongodump failed: {result.stderr.strip()}",
            )
        if not path.is_file():
            return BackupResult(False, BackupType.MONGODB, error_message="Backup file was not created")

        collection_count, document_count = await self._count_source(config.collections)
        return await self._finish(path, BackupType.MONGODB, database, started, collection_count, document_count)

    async def create_postgres_backup(self, config: BackupConfiguration) -> BackupResult:
        """
        Dump a PostgreSQL database with ``pg_dump``.

        The password is passed through ``PGPASSWORD``, never on the command line.

        Raises:
            BackupError: If pg_dump cannot be started.
            CommandTimeoutError: If pg_dump exceeds the configured timeout.
        """
        url = make_url(config.connection_string)
        database = config.database_name or url.database or ""
        started = time.perf_counter()
        path = self._archive_path(config, "postgres", database, ".sql")

        argv = ["pg_dump"]
        if url.host:
            argv.append(f"--host={url.host}")
        if url.port:
            argv.append(f"--port={url.port}")
        if url.username:
            argv.append(f"--username={url.username}")
        argv.extend([f"--dbname={database}", f"--file={path}", "--no-password"])
        if config.compress:
            argv.append("--compress=9")
        argv.extend(_option_flags(config.additional_options))
        env = {"PGPASSWORD": url.password} if url.password else None

        logger.info("Starting PostgreSQL backup for database: %s", database)
        with self._tracer.span(
            "docmigrate.backup.create_postgres_backup",
            {ATTR_BACKUP_TYPE: BackupType.POSTGRESQL.value, ATTR_DB_NAME: database},
        ):
            result = await self._run(argv, config.timeout_seconds, env=env)
        if not result.success:
            return BackupResult(
                success=False,
                backup_type=BackupType.POSTGRESQL,
                duration_seconds=time.perf_counter() - started,
                error_message=f"pg_dump failed: {result.stderr.strip()}",
            )
        if not path.is_file():
            return BackupResult(False, BackupType.POSTGRESQL, error_message="Backup file was not created")
        return await self._finish(path, BackupType.POSTGRESQL, database, started)

    async def verify_backup(self, path: str | Path, backup_type: BackupType) -> ValidationResult:
        """
        Check a backup's structure and checksum without restoring it.

        Checks, in order: the file exists and is non-empty, gzip framing is
        intact, the archive starts with the tool's magic or header, and the
        checksum matches the sidecar when one exists.
        """
        with self._tracer.span("docmigrate.backup.verify_backup", {ATTR_BACKUP_TYPE: backup_type.value}):
            result = await asyncio.to_thread(_verify, Path(path), backup_type)
        if result.is_valid:
            logger.info("Backup verification completed successfully: %s", path)
        else:
            logger.warning("Backup verification failed for %s: %s", path, result.error_summary())
        return result

    async def restore_mongo_backup(
        self,
        path: str | Path,
        connection_string: str,
        database_name: str | None = None,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> CommandResult:
        """
        Restore a mongodump archive with ``mongorestore --drop``.

        Existing collections in the archive are replaced.

        Raises:
            BackupError: If mongorestore cannot be started.
            CommandTimeoutError: If mongorestore exceeds the timeout.
        """
        argv = ["mongorestore", f"--uri={connection_string}", f"--archive={path}", "--drop"]
        if str(path).endswith(".gz"):
            argv.append("--gzip")
        if database_name:
            argv.append(f"--nsInclude={database_name}.*")
        logger.info("Restoring MongoDB backup %s", path)
        with self._tracer.span(
            "docmigrate.backup.restore_mongo_backup",
            {ATTR_BACKUP_TYPE: BackupType.MONGODB.value, ATTR_DB_NAME: database_name or ""},
        ):
            result = await self._run(argv, timeout)
        if not result.success:
            logger.error("mongorestore failed: %s", result.stderr.strip())
        return result

    async def list_backups(
        self,
        directory: str | Path,
        backup_type: BackupType | None = None,
    ) -> list[BackupInfo]:
        """Backups in a directory, newest first. Sidecars are attached when readable."""
        return await asyncio.to_thread(self._list_backups, Path(directory), backup_type)

    @staticmethod
    def _list_backups(directory: Path, backup_type: BackupType | None) -> list[BackupInfo]:
        if not directory.is_dir():
            return []
        backups = []
        for path in directory.iterdir():
            if not path.is_file() or path.name.endswith(METADATA_SUFFIX):
                continue
            detected = detect_backup_type(path.name)
            if detected is None or (backup_type is not None and detected != backup_type):
                continue
            metadata = None
            metadata_path = Path(str(path) + METADATA_SUFFIX)
            if metadata_path.is_file():
                try:
                    metadata = BackupMetadata.from_dict(json_loads(metadata_path.read_text()))
                except (ValueError, TypeError) as e:
                    logger.warning("Failed to load metadata for backup %s: %s", path, e)
            stat = path.stat()
            backups.append(
                BackupInfo(
                    path=str(path),
                    backup_type=detected,
                    created_at=datetime.fromtimestamp(stat.st_mtime, UTC),
                    size_bytes=stat.st_size,
                    is_compressed=path.name.endswith(".gz"),
                    metadata=metadata,
                )
            )
        return sorted(backups, key=lambda b: b.created_at, reverse=True)

    async def cleanup_backups(
        self,
        directory: str | Path,
        policy: BackupRetentionPolicy | None = None,
    ) -> CleanupResult:
        """
        Delete backups outside the retention policy, with their sidecars.

        A file that cannot be deleted is logged and skipped.
        """
        policy = policy or BackupRetentionPolicy()
        directory = Path(directory)
        if not directory.is_dir():
            return CleanupResult(False, error_message="Backup directory does not exist")

        backups = await self.list_backups(directory)
        cutoff = datetime.now(UTC) - timedelta(days=policy.max_age_days)
        doomed = [
            backup
            for position, backup in enumerate(backups)
            if position >= policy.max_count or backup.created_at <= cutoff
        ]

        excess = sum(b.size_bytes for b in backups) - policy.max_total_bytes
        if excess > 0:
            freed = sum(b.size_bytes for b in doomed)
            for backup in reversed(backups):
                if freed >= excess:
                    break
                if backup not in doomed:
                    doomed.append(backup)
                    freed += backup.size_bytes

        deleted: list[str] = []
        bytes_freed = 0
        for backup in doomed:
            try:
                os.remove(backup.path)
            except OSError as e:
                logger.warning("Failed to delete backup file %s: %s", backup.path, e)
                continue
            deleted.append(backup.path)
            bytes_freed += backup.size_bytes
            metadata_path = backup.path + METADATA_SUFFIX
            logger.info("Deleted backup file: %s", backup.path)
            if os.path.exists(metadata_path):
                try:
                    os.remove(metadata_path)
                except OSError as e:
                    logger.warning("Failed to delete backup metadata %s: %s", metadata_path, e)
                    continue
                deleted.append(metadata_path)

        logger.info("Backup cleanup completed. Deleted %d files, freed %d bytes", len(deleted), bytes_freed)
        return CleanupResult(True, tuple(deleted), bytes_freed)


__all__ = [
    "BackupConfiguration",
    "BackupInfo",
    "BackupMetadata",
    "BackupResult",
    "BackupRetentionPolicy",
    "BackupService",
    "BackupType",
    "CleanupResult",
    "CommandResult",
    "CommandRunner",
    "DEFAULT_COMMAND_TIMEOUT_SECONDS",
    "MONGODUMP_ARCHIVE_MAGIC",
    "detect_backup_type",
    "file_checksum",
    "run_command",
]
