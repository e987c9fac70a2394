"""
Executor implementations: one iteration of an operation role across repositories.
"""
import asyncio
import random
import string
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from cancellation import raise_if_stopped, run_or_stop, sleep_or_stop
from config import BackupOptions, ContentPaths, OperationOptions
from database_client import DatabaseBackupClient
from exceptions import OperationCancelledError
from logger import get_logger
from metrics import MetricsCollector, get_metrics_collector
from models import ExecutionContext, IndexBackupState, IndexBackupStatus, SampleFile, UploadResult
from repository_client import ContentRepository, build_file_query
from repository_manager import RepositoryCollection


def load_sample_files(files_dir: Optional[str] = None, count: int = 3, size: int = 4096) -> List[SampleFile]:
    """
    Load the writer payloads from ``files_dir``.

    When the directory is not set, missing or empty, ``count`` random text
    files of ``size`` bytes are generated instead.
    """
    if files_dir:
        path = Path(files_dir)
        if path.is_dir():
            files = [SampleFile(p.name, p.read_bytes()) for p in sorted(path.iterdir()) if p.is_file()]
            if files:
                return files
        get_logger().warning(f"No sample files found in {files_dir}, generating {count} files")

    files = []
    for index in range(count):
        text = ''.join(random.choices(string.ascii_letters + string.digits, k=size))
        files.append(SampleFile(f"sample-{index}.txt", text.encode("ascii")))
    return files


class ExecutorBase(ABC):
    """
    Runs one iteration of an operation on every repository of a context.

    The per-repository bodies run concurrently and the iteration ends when
    all of them have finished. A failing repository never affects the
    others and never propagates to the driver loop.
    """

    role = "executor"

    def __init__(self, repositories: RepositoryCollection, content_paths: Optional[ContentPaths] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.repositories = repositories
        self.content_paths = content_paths or ContentPaths()
        self.logger = get_logger()
        self.metrics = metrics or get_metrics_collector()

    @property
    def executor_name(self) -> str:
        return type(self).__name__

    async def execute(self, context: ExecutionContext, options: OperationOptions, stop_event: asyncio.Event):
        """Execute one iteration. Always returns normally unless the task itself is cancelled."""
        if stop_event.is_set():
            return

        # counted before any repository work, failed iterations included
        context.iteration += 1
        self.metrics.record_iteration(self.role)

        if context.iteration == 1 and options.initial_delay_seconds > 0:
            self.logger.debug(f"[{context.id}] {self.executor_name} waiting {options.initial_delay_seconds}s "
                              f"before the first iteration")
            if await sleep_or_stop(stop_event, options.initial_delay_seconds):
                return

        await asyncio.gather(*(
            self._execute_isolated(context, repository_name, options, stop_event)
            for repository_name in context.repositories
        ))

    async def _execute_isolated(self, context: ExecutionContext, repository_name: str,
                                options: OperationOptions, stop_event: asyncio.Event):
        try:
            await self.execute_on_repository(context, repository_name, options, stop_event)
        except OperationCancelledError:
            self.logger.debug(f"[{context.id}] {self.executor_name} Iteration {context.iteration} "
                              f"on repository {repository_name} canceled.")
        except Exception as e:
            self.logger.error(f"[{context.id}] {self.executor_name} Iteration {context.iteration} "
                              f"on repository {repository_name} threw an ERROR: {e}", exc_info=True)

    @abstractmethod
    async def execute_on_repository(self, context: ExecutionContext, repository_name: str,
                                    options: OperationOptions, stop_event: asyncio.Event):
        """Run the operation against one repository."""
        pass

    def _log_started(self, context: ExecutionContext, repository_name: str):
        self.logger.debug(f"[{context.id}] {self.executor_name} Iteration {context.iteration} "
                          f"on repository {repository_name} started.")

    def _log_ended(self, context: ExecutionContext, repository_name: str, start_time: float):
        self.logger.debug(f"[{context.id}] {self.executor_name} Iteration {context.iteration} "
                          f"on repository {repository_name} ended. "
                          f"Elapsed time: {time.monotonic() - start_time:.3f}s.")


class WriterExecutor(ExecutorBase):
    """Uploads the sample files, verifies their count and deletes them."""

    role = "writer"

    def __init__(self, repositories: RepositoryCollection, sample_files: Sequence[SampleFile],
                 content_paths: Optional[ContentPaths] = None, metrics: Optional[MetricsCollector] = None):
        super().__init__(repositories, content_paths, metrics)
        self.sample_files = list(sample_files)

    async def execute_on_repository(self, context: ExecutionContext, repository_name: str,
                                    options: OperationOptions, stop_event: asyncio.Event):
        raise_if_stopped(stop_event)

        start_time = time.monotonic()
        self._log_started(context, repository_name)

        repository = self.repositories.get_repository(repository_name)
        parent = self.content_paths.upload_folder(repository_name)

        uploads = await asyncio.gather(*(
            self._upload_file(context, repository, parent, sample_file, stop_event)
            for sample_file in self.sample_files
        ))
        uploaded_ids = [upload.id for upload in uploads if upload is not None and upload.id != 0]

        if await sleep_or_stop(stop_event, options.step_delay_seconds):
            return

        if not uploaded_ids:
            self.logger.warning(f"[{context.id}] No files were uploaded to repository {repository_name} "
                                f"in iteration {context.iteration}.")
            return

        # check uploaded file count
        result = await run_or_stop(
            repository.query(build_file_query(uploaded_ids), select=("Id", "Name", "Path", "Type")),
            stop_event,
        )
        if result.count != len(uploaded_ids):
            self.logger.warning(f"[{context.id}] File count mismatch in repository {repository_name}: "
                                f"{result.count} (queried) / {len(uploaded_ids)} (uploaded)")

        if await sleep_or_stop(stop_event, options.step_delay_seconds):
            return

        self.logger.debug(f"[{context.id}] Deleting uploaded files from repository {repository_name} "
                          f"in iteration {context.iteration}.")

        await asyncio.gather(*(
            self._delete_file(context, repository, content_id, stop_event) for content_id in uploaded_ids
        ))

        self._log_ended(context, repository_name, start_time)

    async def _upload_file(self, context: ExecutionContext, repository: ContentRepository, parent: str,
                           sample_file: SampleFile, stop_event: asyncio.Event) -> Optional[UploadResult]:
        if stop_event.is_set():
            return None

        stem, dot, suffix = sample_file.name.rpartition(".")
        if not dot:
            stem, suffix = sample_file.name, ""
        content_name = f"{stem}-{uuid.uuid4()}{dot}{suffix}"

        try:
            return await run_or_stop(repository.upload(parent, content_name, sample_file.content), stop_event)
        except OperationCancelledError:
            return None
        except Exception as e:
            self.logger.warning(f"[{context.id}] Upload of {content_name} to repository "
                                f"{repository.name} failed: {e}")
            return None

    async def _delete_file(self, context: ExecutionContext, repository: ContentRepository, content_id: int,
                           stop_event: asyncio.Event):
        try:
            await run_or_stop(repository.delete(content_id, permanent=True), stop_event)
        except OperationCancelledError:
            pass
        except Exception as e:
            self.logger.warning(f"[{context.id}] Delete of content {content_id} from repository "
                                f"{repository.name} failed: {e}")


FILE_QUERY = "TypeIs:File AND InTree:'/Root/Content'"
FOLDER_QUERY = "TypeIs:Folder AND InTree:'/Root'"
USER_QUERY = "TypeIs:User"
QUERY_PAGE_SIZE = 100


class ReaderExecutor(ExecutorBase):
    """Runs file, folder and user queries."""

    role = "reader"

    async def execute_on_repository(self, context: ExecutionContext, repository_name: str,
                                    options: OperationOptions, stop_event: asyncio.Event):
        raise_if_stopped(stop_event)

        start_time = time.monotonic()
        self._log_started(context, repository_name)

        repository = self.repositories.get_repository(repository_name)

        files = await run_or_stop(repository.query(
            FILE_QUERY,
            select=("Id", "Name", "Path", "Type", "CreatedBy/Id", "CreatedBy/Name", "CreatedBy/Path",
                    "CreatedBy/Type"),
            expand=("CreatedBy",),
            top=QUERY_PAGE_SIZE,
        ), stop_event)
        self._log_count(context, repository_name, "File", files.count)

        folders = await run_or_stop(repository.query(
            FOLDER_QUERY,
            select=("Id", "Name", "Path", "Type"),
            top=QUERY_PAGE_SIZE,
            auto_filters=False,
        ), stop_event)
        self._log_count(context, repository_name, "Folder", folders.count)

        users = await run_or_stop(repository.query(
            USER_QUERY,
            select=("Id", "Name", "Path", "Type", "LoginName", "Email"),
            top=QUERY_PAGE_SIZE,
        ), stop_event)
        self._log_count(context, repository_name, "User", users.count)

        if await sleep_or_stop(stop_event, options.step_delay_seconds):
            return

        self._log_ended(context, repository_name, start_time)

    def _log_count(self, context: ExecutionContext, repository_name: str, kind: str, count: int):
        self.logger.debug(f"[{context.id}] {self.executor_name} Iteration {context.iteration} "
                          f"on repository {repository_name} - {kind} query returned {count} items.")


class BackupState(str, Enum):
    IDLE = "idle"
    BACKUP_TRIGGERED = "backup_triggered"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    DB_BACKUP_PENDING = "db_backup_pending"
    FINISHED = "finished"


# anything not listed here (including unrecognized states) counts as completed
_POLL_OUTCOMES = {
    IndexBackupState.FAILED: BackupState.FAILED,
    IndexBackupState.CANCELED: BackupState.CANCELED,
}


class BackupExecutor(ExecutorBase):
    """
    Runs an index backup followed by a database backup, once per process.

    While the index backup is running a child task keeps creating marker
    records so the cluster's behaviour during the backup window can be
    observed from outside.
    """

    role = "backup"

    def __init__(self, repositories: RepositoryCollection, database: Optional[DatabaseBackupClient] = None,
                 content_paths: Optional[ContentPaths] = None, metrics: Optional[MetricsCollector] = None):
        super().__init__(repositories, content_paths, metrics)
        self.database = database
        self.markers_created = 0
        self._state = BackupState.IDLE
        self._run_claimed = False

    @property
    def state(self) -> BackupState:
        return self._state

    @property
    def executed(self) -> bool:
        """True once a call has claimed the single backup run, whatever its outcome."""
        return self._run_claimed

    def _claim_run(self) -> bool:
        # no await between check and set, so only one caller can win
        if self._run_claimed:
            return False
        self._run_claimed = True
        return True

    def _transition(self, state: BackupState):
        self.logger.debug(f"{self.executor_name} state {self._state.value} -> {state.value}")
        self._state = state
        self.metrics.record_backup_event(state.value)

    async def execute_on_repository(self, context: ExecutionContext, repository_name: str,
                                    options: BackupOptions, stop_event: asyncio.Event):
        if stop_event.is_set() or not self._claim_run():
            return

        if not options.index_target:
            self.logger.warning("WARNING: Backup executor cannot start, index backup target is missing.")
            return

        self._log_started(context, repository_name)
        start_time = time.monotonic()

        try:
            repository = self.repositories.get_repository(repository_name)
            await self._run_backup(context, repository, options, stop_event)
            self._log_ended(context, repository_name, start_time)
        except OperationCancelledError:
            self.logger.debug(f"[{context.id}] {self.executor_name} canceled in state {self._state.value}.")
        except Exception as e:
            self.logger.error(f"[{context.id}] {self.executor_name} Iteration {context.iteration} "
                              f"on repository {repository_name} threw an ERROR: {e}", exc_info=True)
        finally:
            self._transition(BackupState.FINISHED)

    async def _run_backup(self, context: ExecutionContext, repository: ContentRepository,
                          options: BackupOptions, stop_event: asyncio.Event):
        status = await run_or_stop(repository.start_index_backup(options.index_target), stop_event)
        self._transition(BackupState.BACKUP_TRIGGERED)
        self.logger.info(f"[{context.id}] {self.executor_name} BackupIndex on repository {repository.name} "
                         f"state: {status.raw_state.upper()}.")

        markers_done = asyncio.Event()
        marker_task = asyncio.create_task(
            self._create_markers_periodically(context, repository, options, stop_event, markers_done)
        )

        try:
            self._transition(BackupState.POLLING)
            self.logger.debug(f"[{context.id}] {self.executor_name} POLLING and WAITING for the index "
                              f"backup to finish.")
            final_status = await self._wait_for_index_backup(context, repository, options, stop_event)
            self._transition(_POLL_OUTCOMES.get(final_status.state, BackupState.COMPLETED))

            if options.backup_gap_seconds > 0:
                self.logger.debug(f"[{context.id}] {self.executor_name} WAITING {options.backup_gap_seconds}s "
                                  f"before starting DB backup.")
                if await sleep_or_stop(stop_event, options.backup_gap_seconds):
                    raise OperationCancelledError()

            self._transition(BackupState.DB_BACKUP_PENDING)
            await self._backup_database(context, options, stop_event)
        finally:
            markers_done.set()
            await marker_task

    async def _wait_for_index_backup(self, context: ExecutionContext, repository: ContentRepository,
                                     options: BackupOptions, stop_event: asyncio.Event) -> IndexBackupStatus:
        while True:
            if await sleep_or_stop(stop_event, options.poll_interval_seconds):
                raise OperationCancelledError()

            status = await run_or_stop(repository.query_index_backup(), stop_event)
            self.logger.debug(f"[{context.id}] {self.executor_name} BackupIndex state: {status.raw_state}")

            if status.is_running:
                continue

            if status.state is IndexBackupState.UNKNOWN:
                self.logger.warning(f"[{context.id}] {self.executor_name} Unrecognized index backup state "
                                    f"'{status.raw_state}', treating it as finished.")
            return status

    async def _backup_database(self, context: ExecutionContext, options: BackupOptions,
                               stop_event: asyncio.Event):
        if self.database is None or not self.database.is_configured or not options.database_target:
            self.logger.warning(f"[{context.id}] {self.executor_name} Cannot create database backup, "
                                f"SQL connection settings, db name or target path is missing.")
            return

        self.logger.info(f"[{context.id}] {self.executor_name} Starting DB BACKUP on database "
                         f"{self.database.database_name}. Target: {options.database_target}")
        try:
            await run_or_stop(
                self.database.backup(options.database_target, timeout=options.database_timeout_seconds),
                stop_event,
            )
        except OperationCancelledError:
            return
        except Exception as e:
            self.logger.error(f"[{context.id}] {self.executor_name} ERROR when creating DB backup: {e}",
                              exc_info=True)
            return

        self.logger.info(f"[{context.id}] {self.executor_name} DB BACKUP finished successfully.")

    async def _create_markers_periodically(self, context: ExecutionContext, repository: ContentRepository,
                                           options: BackupOptions, stop_event: asyncio.Event,
                                           markers_done: asyncio.Event):
        marker_count = 0

        while not stop_event.is_set() and not markers_done.is_set():
            marker_name = f"LogTask-{datetime.now(timezone.utc):%Y-%m-%d-%H-%M-%S}-{marker_count}"
            marker_count += 1

            try:
                await run_or_stop(repository.create_content(
                    self.content_paths.task_list_path, "Task", marker_name, DisplayName=marker_name
                ), stop_event)
                self.markers_created += 1
                self.metrics.record_backup_event("marker")
                self.logger.debug(f"[{context.id}] {self.executor_name} Marker task created: {marker_name}")
            except OperationCancelledError:
                return
            except Exception as e:
                self.logger.error(f"[{context.id}] {self.executor_name} Error when creating marker task "
                                  f"{marker_name}: {e}")

            # wakes up early when the backup flow is done
            await sleep_or_stop(markers_done, options.marker_interval_seconds)
