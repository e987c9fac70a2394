"""Tests for configuration parsing, loading and saving."""

import json

import pytest
import yaml

from config import (
    BackupOptions,
    ContentPaths,
    DatabaseConfig,
    OperationOptions,
    RunnerConfig,
    config_from_dict,
    load_config_from_file,
    parse_duration,
    parse_repositories,
    parse_resource_attributes,
    save_config_to_file,
)


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("60", 60),
            ("PT30S", 30),
            ("PT1M", 60),
            ("PT1H30M", 5400),
            ("PT1H0M15S", 3615),
            ("", 0),
        ],
    )
    def test_valid(self, value: str, expected: int) -> None:
        assert parse_duration(value) == expected

    def test_invalid(self) -> None:
        with pytest.raises(ValueError):
            parse_duration("1 hour")


class TestParseRepositories:
    def test_named(self) -> None:
        repositories = parse_repositories("web1=https://a.example.com, web2=https://b.example.com")
        assert [(r.name, r.url) for r in repositories] == [
            ("web1", "https://a.example.com"),
            ("web2", "https://b.example.com"),
        ]

    def test_bare_urls_get_generated_names(self) -> None:
        repositories = parse_repositories("https://a.example.com,https://b.example.com")
        assert [r.name for r in repositories] == ["repo1", "repo2"]

    def test_empty(self) -> None:
        assert parse_repositories("") == []
        assert parse_repositories(" , ") == []


class TestParseResourceAttributes:
    def test_pairs(self) -> None:
        assert parse_resource_attributes("deployment.environment=staging, team=a=b,") == {
            "deployment.environment": "staging",
            "team": "a=b",
        }

    def test_empty(self) -> None:
        assert parse_resource_attributes("") == {}

    def test_invalid(self) -> None:
        with pytest.raises(ValueError, match="Invalid resource attribute"):
            parse_resource_attributes("staging")


class TestOptions:
    def test_defaults(self) -> None:
        options = OperationOptions()
        assert options.thread_count == 1
        assert options.initial_delay_seconds == 0
        assert options.step_delay_seconds == 0.2

    def test_backup_options_extend_operation_options(self) -> None:
        options = BackupOptions(index_target="/backup/index")
        assert isinstance(options, OperationOptions)
        assert options.backup_gap_seconds == 15
        assert options.database_target is None

    def test_content_paths(self) -> None:
        paths = ContentPaths(workspace_path="/Root/Content/soak")
        assert paths.document_library_path == "/Root/Content/soak/doclib"
        assert paths.task_list_path == "/Root/Content/soak/tasklist"
        assert paths.upload_folder("web1") == "/Root/Content/soak/doclib/web1"

    def test_database_is_configured(self) -> None:
        assert not DatabaseConfig().is_configured
        assert DatabaseConfig(server="sql", database="sensenet").is_configured


class TestConfigFiles:
    def test_config_from_dict(self) -> None:
        config = config_from_dict({
            "repositories": [{"name": "web1", "url": "https://a"}],
            "database": {"server": "sql", "database": "sensenet"},
            "test": {
                "write_operations": {"thread_count": 4},
                "backup": {"index_target": "/backup/index", "backup_gap_seconds": 0},
                "reader_warmup_seconds": 1,
            },
            "duration": 60,
        })
        assert config.primary_repository.name == "web1"
        assert config.database.is_configured
        assert config.test.write_operations.thread_count == 4
        assert config.test.read_operations.thread_count == 1
        assert config.test.backup.index_target == "/backup/index"
        assert config.test.reader_warmup_seconds == 1
        assert config.duration == 60

    def test_yaml_round_trip(self, tmp_path) -> None:
        config = RunnerConfig(repositories=parse_repositories("web1=https://a,web2=https://b"), duration=30)
        file_path = str(tmp_path / "config.yaml")

        save_config_to_file(config, file_path)
        with open(file_path) as f:
            assert yaml.safe_load(f)["duration"] == 30

        loaded = load_config_from_file(file_path)
        assert loaded.repository_names == ["web1", "web2"]
        assert loaded.test == config.test

    def test_load_json(self, tmp_path) -> None:
        file_path = tmp_path / "config.json"
        file_path.write_text(json.dumps({"repositories": [{"name": "web1", "url": "https://a"}], "quiet": True}))

        config = load_config_from_file(str(file_path))
        assert config.quiet is True
        assert config.repository_names == ["web1"]

    def test_empty_yaml(self, tmp_path) -> None:
        file_path = tmp_path / "empty.yml"
        file_path.write_text("")
        config = load_config_from_file(str(file_path))
        assert config.repositories == []
        assert config.primary_repository is None
