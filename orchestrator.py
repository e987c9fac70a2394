"""
Test orchestration: fixture setup, driver loops and result aggregation.
"""
import asyncio
import time
from typing import List, Sequence

from cancellation import sleep_or_stop
from config import NlbTestOptions, OperationOptions
from exceptions import ConfigurationError, OperationCancelledError, RepositoryError
from executors import BackupExecutor, ExecutorBase, ReaderExecutor, WriterExecutor
from logger import get_logger
from models import ExecutionContext, OperationResult
from repository_manager import RepositoryCollection


class TestOrchestrator:
    """
    Coordinates one load test run.

    Writers start first, readers follow after a warm-up delay and a single
    backup run starts alongside them. Everything keeps running until the stop
    event is set; the iteration counts of every driver are then summed into
    an OperationResult.
    """

    __test__ = False

    def __init__(self, repositories: RepositoryCollection, writer: WriterExecutor, reader: ReaderExecutor,
                 backup: BackupExecutor, options: NlbTestOptions):
        self.repositories = repositories
        self.writer = writer
        self.reader = reader
        self.backup = backup
        self.options = options
        self.logger = get_logger()

    async def initialize(self):
        """
        Create the test containers if they do not exist.

        Raises:
            ConfigurationError: the primary repository is not usable.
            RepositoryError: the primary repository rejected a request.
        """
        primary = self.repositories.primary
        if not primary.url:
            raise ConfigurationError(f"Repository {primary.name} is not configured properly.")

        backup_repository = self.options.backup.repository
        if backup_repository and backup_repository not in self.repositories.names:
            raise ConfigurationError(f"Backup repository {backup_repository} is not configured.")

        paths = self.options.content_paths
        self.logger.info("Creating test containers if they do not exist...")

        self.logger.debug("Ensuring test workspace...")
        await primary.ensure_path(paths.workspace_path, "Workspace")

        self.logger.debug("Ensuring document library...")
        await primary.ensure_path(paths.document_library_path, "DocumentLibrary")

        self.logger.debug(f"Ensuring {primary.name} subfolder...")
        await primary.ensure_path(paths.upload_folder(primary.name), "Folder")

        for secondary in self.repositories.secondaries:
            if not secondary.url:
                continue
            self.logger.debug(f"Ensuring {secondary.name} subfolder...")
            try:
                await secondary.ensure_path(paths.upload_folder(secondary.name), "Folder")
            except RepositoryError as e:
                self.logger.warning(f"Repository {secondary.name} is not reachable, "
                                    f"skipping its test container: {e}")

        self.logger.debug("Ensuring task list...")
        await primary.ensure_path(paths.task_list_path, "TaskList")

    async def execute(self, stop_event: asyncio.Event) -> OperationResult:
        """Run until ``stop_event`` is set and return the aggregated result."""
        start_time = time.monotonic()
        repository_names = tuple(self.repositories.names)

        self.logger.info("Starting WRITE operations...")
        writer_tasks = self._start_drivers("writer", self.writer, self.options.write_operations,
                                           repository_names, stop_event)

        # wait a bit before starting the reader operations
        if await sleep_or_stop(stop_event, self.options.reader_warmup_seconds):
            self.logger.debug("Stop requested during the reader warm-up")

        self.logger.info("Starting READ operations...")
        reader_tasks = self._start_drivers("reader", self.reader, self.options.read_operations,
                                           repository_names, stop_event)

        self.logger.info("Starting BACKUP operation...")
        backup_context = ExecutionContext(repositories=(self._backup_repository_name(),))
        backup_task = asyncio.create_task(
            self.backup.execute(backup_context, self.options.backup, stop_event), name="backup"
        )

        await asyncio.gather(*writer_tasks, *reader_tasks, backup_task)

        elapsed = time.monotonic() - start_time
        writer_contexts = [task.result() for task in writer_tasks]
        reader_contexts = [task.result() for task in reader_tasks]

        return OperationResult(
            elapsed_seconds=elapsed,
            write_iteration_count=sum(context.iteration for context in writer_contexts),
            read_iteration_count=sum(context.iteration for context in reader_contexts),
        )

    def _backup_repository_name(self) -> str:
        return self.options.backup.repository or self.repositories.primary.name

    def _start_drivers(self, role: str, executor: ExecutorBase, options: OperationOptions,
                       repository_names: Sequence[str], stop_event: asyncio.Event) -> List["asyncio.Task[ExecutionContext]"]:
        tasks = [
            asyncio.create_task(
                self._repeat_operations(executor, options, repository_names, stop_event),
                name=f"{role}-{index}",
            )
            for index in range(options.thread_count)
        ]
        self.logger.info(f"Started {len(tasks)} {role} drivers")
        return tasks

    async def _repeat_operations(self, executor: ExecutorBase, options: OperationOptions,
                                 repository_names: Sequence[str], stop_event: asyncio.Event) -> ExecutionContext:
        """Repeat the executor until the test is stopped. Owns its context for the whole run."""
        context = ExecutionContext(repositories=tuple(repository_names))

        while not stop_event.is_set():
            try:
                await executor.execute(context, options, stop_event)
            except OperationCancelledError:
                # graceful stop, not a failure
                pass
            # an iteration that never suspended must not starve the other drivers
            await asyncio.sleep(0)

        self.logger.debug(f"[{context.id}] {executor.executor_name} driver stopped after "
                          f"{context.iteration} iterations")
        return context
