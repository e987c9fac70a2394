"""
Test runner: wires the collaborators together and hosts one orchestrated run.
"""
import asyncio
import signal
from typing import Any, Dict, List, Optional

from cancellation import sleep_or_stop
from config import RunnerConfig
from database_client import DatabaseBackupClient
from executors import BackupExecutor, ReaderExecutor, WriterExecutor, load_sample_files
from logger import setup_logging
from metrics import setup_metrics
from models import OperationResult
from orchestrator import TestOrchestrator
from repository_manager import RepositoryCollection


class NlbTestRunner:
    """Main test runner that hosts the NLB load test until it is stopped."""

    __test__ = False

    def __init__(self, config: RunnerConfig, repositories: Optional[RepositoryCollection] = None,
                 database: Optional[DatabaseBackupClient] = None):
        self.config = config
        self.logger = setup_logging(config.log_level, config.log_file).get_logger()
        self.metrics = setup_metrics(
            otel_endpoint=config.otel_endpoint,
            service_name=config.otel_service_name,
            service_version=config.otel_service_version,
            otel_export_interval_ms=config.otel_export_interval_ms,
            app_name=config.app_name,
            instance_id=config.instance_id,
            run_id=config.run_id,
            version=config.version,
            resource_attributes=config.otel_resource_attributes
        )

        self._repositories = repositories
        self._database = database

        # Test control
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._background_tasks: List[asyncio.Task] = []
        self._installed_signals: List[int] = []
        self._previous_handlers: Dict[int, Any] = {}
        self.result: Optional[OperationResult] = None

    def start(self) -> Optional[OperationResult]:
        """Run the load test in a new event loop. Blocks until the test stops."""
        try:
            return asyncio.run(self.run())
        except KeyboardInterrupt:
            self.logger.info("Test interrupted by user")
            return self.result

    def stop(self):
        """Request a graceful stop. Safe to call more than once."""
        if self._stop_event is None or self._stop_event.is_set():
            return  # Not running or already stopping

        self.logger.info("Stopping load test...")
        self._stop_event.set()

    async def run(self) -> OperationResult:
        """Initialize the fixtures, run until stopped and report the result."""
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()

        repositories = self._repositories
        try:
            if repositories is None:
                repositories = RepositoryCollection(self.config.repositories, metrics=self.metrics)
            database = self._database or DatabaseBackupClient(self.config.database, metrics=self.metrics)
            orchestrator = self._create_orchestrator(repositories, database)

            self._print_banner()
            self.logger.info(f"Run ID: {self.metrics.run_id}")
            self.logger.info(f"Repositories: {', '.join(repositories.names)}")
            if self.config.duration:
                self.logger.info(f"Test duration: {self.config.duration} seconds")
            else:
                self.logger.info("Test duration: unlimited (until interrupted)")

            await orchestrator.initialize()

            if not self.config.quiet:
                self._background_tasks.append(asyncio.create_task(self._stats_reporter(), name="stats"))
            if self.config.duration:
                self._background_tasks.append(
                    asyncio.create_task(self._stop_after(self.config.duration), name="duration")
                )

            result = await orchestrator.execute(self._stop_event)

            self.result = result
            self.logger.info(f"TOTAL TIME: {result.elapsed_seconds:.3f}s")
            self.logger.info(f"TOTAL # OF WRITE ITERATIONS: {result.write_iteration_count}")
            self.logger.info(f"TOTAL # OF READ ITERATIONS: {result.read_iteration_count}")

            self.metrics.record_result(result)
            self._output_final_summary()

            self.logger.info("Load test stopped")
            return result

        finally:
            self._stop_event.set()
            await self._cancel_background_tasks()
            self._remove_signal_handlers()
            if self._repositories is None and repositories is not None:
                await repositories.close_all()
            self.metrics.shutdown()

    def _create_orchestrator(self, repositories: RepositoryCollection,
                             database: DatabaseBackupClient) -> TestOrchestrator:
        paths = self.config.test.content_paths
        sample_files = load_sample_files(
            self.config.files_dir, self.config.sample_file_count, self.config.sample_file_size
        )
        self.logger.debug(f"Loaded {len(sample_files)} sample files")

        writer = WriterExecutor(repositories, sample_files, content_paths=paths, metrics=self.metrics)
        reader = ReaderExecutor(repositories, content_paths=paths, metrics=self.metrics)
        backup = BackupExecutor(repositories, database=database, content_paths=paths, metrics=self.metrics)

        return TestOrchestrator(repositories, writer, reader, backup, self.config.test)

    def _print_banner(self):
        if self.config.quiet:
            return
        print("Starting NLB test")
        print("Press Ctrl+C to stop the test.")

    def _install_signal_handlers(self):
        """Handle SIGINT/SIGTERM by setting the stop event."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self._signal_handler, sig)
                self._installed_signals.append(sig)
            except (NotImplementedError, RuntimeError):
                # Event loops without signal support (e.g. on Windows)
                self._install_fallback_signal_handler(sig)

    def _install_fallback_signal_handler(self, sig):
        try:
            previous = signal.signal(
                sig, lambda signum, frame: self._loop.call_soon_threadsafe(self._signal_handler, signum)
            )
        except ValueError as e:
            # only the main thread of the main interpreter may install handlers
            self.logger.warning(f"Cannot handle signal {sig}, use stop() to end the test: {e}")
            return
        self._previous_handlers[sig] = previous if previous is not None else signal.SIG_DFL

    def _remove_signal_handlers(self):
        for sig in self._installed_signals:
            self._loop.remove_signal_handler(sig)
        self._installed_signals.clear()
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous)
        self._previous_handlers.clear()

    def _signal_handler(self, signum):
        """Handle shutdown signals gracefully."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.stop()

    async def _stop_after(self, duration: float):
        if not await sleep_or_stop(self._stop_event, duration):
            self.logger.info("Test duration completed")
            self.stop()

    async def _stats_reporter(self):
        """Background task for periodic stats reporting."""
        while not await sleep_or_stop(self._stop_event, self.config.metrics_interval):
            stats = self.metrics.get_overall_stats()
            iterations = stats.get('iterations', {})

            self.logger.info(
                f"Stats: {stats.get('total_operations', 0):,} ops, "
                f"{stats.get('overall_throughput', 0):.1f} ops/sec avg, "
                f"{stats.get('overall_success_rate', 0):.2%} success rate, "
                f"{iterations.get('writer', 0):,} write / {iterations.get('reader', 0):,} read iterations"
            )

    async def _cancel_background_tasks(self):
        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

    def _output_final_summary(self):
        """Output final test summary - to file if --output-file specified, otherwise to stdout."""
        try:
            if self.config.output_file:
                self.metrics.export_final_summary_to_json(self.config.output_file)
                self.logger.info(f"Final test summary exported to {self.config.output_file}")
            elif not self.config.quiet:
                self.metrics.print_summary()

        except OSError as e:
            self.logger.error(f"Failed to output final summary: {e}")
