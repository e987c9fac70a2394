"""Tests for the executor iteration contract and the writer/reader bodies."""

import asyncio
import logging
from typing import List

import pytest

import executors
from config import ContentPaths, OperationOptions
from exceptions import OperationCancelledError
from executors import ExecutorBase, ReaderExecutor, WriterExecutor, load_sample_files
from models import ExecutionContext, SampleFile

NO_DELAY = OperationOptions(step_delay_ms=0)


class RecordingExecutor(ExecutorBase):
    """Records every repository call; fails on the repositories listed in ``failing``."""

    role = "recorder"

    def __init__(self, repositories, metrics, failing=(), cancelled=()):
        super().__init__(repositories, metrics=metrics)
        self.failing = set(failing)
        self.cancelled = set(cancelled)
        self.calls: List[tuple] = []

    async def execute_on_repository(self, context, repository_name, options, stop_event):
        await asyncio.sleep(0)
        self.calls.append((context.iteration, repository_name))
        if repository_name in self.failing:
            raise RuntimeError(f"{repository_name} is down")
        if repository_name in self.cancelled:
            raise OperationCancelledError()


class TestExecutorBase:
    @pytest.mark.asyncio
    async def test_iteration_counts_every_call_despite_failures(self, repositories, metrics) -> None:
        executor = RecordingExecutor(repositories, metrics, failing={"repo1", "repo2"})
        context = ExecutionContext(repositories=("repo1", "repo2"))
        stop_event = asyncio.Event()

        for _ in range(5):
            await executor.execute(context, NO_DELAY, stop_event)

        assert context.iteration == 5
        assert len(executor.calls) == 10
        assert metrics.get_iterations() == {"recorder": 5}

    @pytest.mark.asyncio
    async def test_stopped_before_call_does_nothing(self, repositories, metrics) -> None:
        executor = RecordingExecutor(repositories, metrics)
        context = ExecutionContext(repositories=("repo1",))
        stop_event = asyncio.Event()
        stop_event.set()

        await executor.execute(context, NO_DELAY, stop_event)

        assert context.iteration == 0
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_initial_delay_only_on_first_iteration(self, repositories, metrics, monkeypatch) -> None:
        delays: List[float] = []

        async def fake_sleep_or_stop(stop_event, seconds):
            delays.append(seconds)
            return False

        monkeypatch.setattr(executors, "sleep_or_stop", fake_sleep_or_stop)
        executor = RecordingExecutor(repositories, metrics)
        context = ExecutionContext(repositories=("repo1",))
        options = OperationOptions(initial_delay_seconds=2.5, step_delay_ms=0)

        for _ in range(3):
            await executor.execute(context, options, asyncio.Event())

        assert delays == [2.5]
        assert [call[0] for call in executor.calls] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_stop_during_initial_delay_skips_fan_out(self, repositories, metrics) -> None:
        executor = RecordingExecutor(repositories, metrics)
        context = ExecutionContext(repositories=("repo1", "repo2"))
        stop_event = asyncio.Event()
        options = OperationOptions(initial_delay_seconds=30, step_delay_ms=0)

        asyncio.get_running_loop().call_later(0.02, stop_event.set)
        await asyncio.wait_for(executor.execute(context, options, stop_event), timeout=5)

        assert context.iteration == 1
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_failing_repository_does_not_affect_others(self, repositories, metrics, project_logs) -> None:
        executor = RecordingExecutor(repositories, metrics, failing={"repo1"})
        context = ExecutionContext(repositories=("repo1", "repo2"))

        await executor.execute(context, NO_DELAY, asyncio.Event())

        assert sorted(executor.calls) == [(1, "repo1"), (1, "repo2")]
        errors = [r for r in project_logs.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "repo1" in errors[0].getMessage()
        assert context.id in errors[0].getMessage()

    @pytest.mark.asyncio
    async def test_cancellation_is_not_logged_as_error(self, repositories, metrics, project_logs) -> None:
        executor = RecordingExecutor(repositories, metrics, cancelled={"repo1"})
        context = ExecutionContext(repositories=("repo1",))

        await executor.execute(context, NO_DELAY, asyncio.Event())

        assert context.iteration == 1
        assert not [r for r in project_logs.records if r.levelno >= logging.WARNING]
        assert any("canceled" in r.getMessage() for r in project_logs.records)


class TestWriterExecutor:
    SAMPLES = [SampleFile("a.txt", b"aaa"), SampleFile("b", b"bbb")]

    @pytest.mark.asyncio
    async def test_upload_count_delete_cycle(self, repositories, metrics) -> None:
        writer = WriterExecutor(repositories, self.SAMPLES, metrics=metrics)
        context = ExecutionContext(repositories=("repo1", "repo2"))

        await writer.execute(context, NO_DELAY, asyncio.Event())

        for name in ("repo1", "repo2"):
            repository = repositories.get_repository(name)
            uploads = [call for call in repository.calls if call[0] == "upload"]
            assert len(uploads) == 2
            assert all(call[1] == f"/Root/Content/nlbtest/doclib/{name}" for call in uploads)
            assert repository.count("query") == 1
            assert repository.count("delete") == 2
            assert repository.uploaded == {}

    @pytest.mark.asyncio
    async def test_unique_content_names(self, repositories, metrics) -> None:
        writer = WriterExecutor(repositories, self.SAMPLES, metrics=metrics)
        context = ExecutionContext(repositories=("repo1",))

        await writer.execute(context, NO_DELAY, asyncio.Event())
        await writer.execute(context, NO_DELAY, asyncio.Event())

        names = [call[2] for call in repositories.get_repository("repo1").calls if call[0] == "upload"]
        assert len(set(names)) == 4
        assert all(name.startswith("a-") and name.endswith(".txt") for name in names if name.startswith("a"))
        assert all("." not in name for name in names if name.startswith("b"))

    @pytest.mark.asyncio
    async def test_failed_upload_does_not_abort_the_others(self, repositories, metrics, project_logs) -> None:
        repository = repositories.get_repository("repo1")
        repository.fail_uploads_named = "a-"
        writer = WriterExecutor(repositories, self.SAMPLES, metrics=metrics)
        context = ExecutionContext(repositories=("repo1",))

        await writer.execute(context, NO_DELAY, asyncio.Event())

        assert repository.count("upload") == 2
        assert repository.count("delete") == 1
        assert any("Upload of a-" in r.getMessage() for r in project_logs.records if r.levelno == logging.WARNING)

    @pytest.mark.asyncio
    async def test_count_mismatch_is_logged(self, repositories, metrics, project_logs) -> None:
        repository = repositories.get_repository("repo1")
        repository.query_count = 1
        writer = WriterExecutor(repositories, self.SAMPLES, metrics=metrics)
        context = ExecutionContext(repositories=("repo1",))

        await writer.execute(context, NO_DELAY, asyncio.Event())

        assert any("File count mismatch" in r.getMessage() for r in project_logs.records)
        assert repository.count("delete") == 2

    @pytest.mark.asyncio
    async def test_uses_configured_content_paths(self, repositories, metrics) -> None:
        writer = WriterExecutor(repositories, self.SAMPLES, content_paths=ContentPaths("/Root/Content/soak"),
                                metrics=metrics)
        context = ExecutionContext(repositories=("repo2",))

        await writer.execute(context, NO_DELAY, asyncio.Event())

        uploads = [call for call in repositories.get_repository("repo2").calls if call[0] == "upload"]
        assert uploads[0][1] == "/Root/Content/soak/doclib/repo2"


class TestReaderExecutor:
    @pytest.mark.asyncio
    async def test_runs_three_queries_per_repository(self, repositories, metrics) -> None:
        reader = ReaderExecutor(repositories, metrics=metrics)
        context = ExecutionContext(repositories=("repo1", "repo2"))

        await reader.execute(context, NO_DELAY, asyncio.Event())

        for name in ("repo1", "repo2"):
            queries = [call for call in repositories.get_repository(name).calls if call[0] == "query"]
            assert [call[1] for call in queries] == [
                executors.FILE_QUERY, executors.FOLDER_QUERY, executors.USER_QUERY,
            ]
            assert all(call[2] == 100 for call in queries)
            # auto filters are only disabled for the folder query
            assert [call[3] for call in queries] == [True, False, True]

    @pytest.mark.asyncio
    async def test_query_error_is_absorbed(self, repositories, metrics) -> None:
        repositories.get_repository("repo1").fail_queries = True
        reader = ReaderExecutor(repositories, metrics=metrics)
        context = ExecutionContext(repositories=("repo1", "repo2"))

        await reader.execute(context, NO_DELAY, asyncio.Event())

        assert context.iteration == 1
        assert repositories.get_repository("repo2").count("query") == 3


class TestLoadSampleFiles:
    def test_reads_directory(self, tmp_path) -> None:
        (tmp_path / "one.docx").write_bytes(b"1")
        (tmp_path / "two.txt").write_bytes(b"22")

        files = load_sample_files(str(tmp_path))

        assert [f.name for f in files] == ["one.docx", "two.txt"]
        assert files[1].content == b"22"

    def test_generates_when_missing(self, tmp_path) -> None:
        files = load_sample_files(str(tmp_path / "missing"), count=2, size=10)
        assert len(files) == 2
        assert all(len(f.content) == 10 for f in files)

    def test_generates_without_directory(self) -> None:
        assert len(load_sample_files(None)) == 3
