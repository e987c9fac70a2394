"""
Configuration management for the NLB test application.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any
import yaml
import json
import importlib.metadata
import re


def get_app_version() -> str:
    """Get the installed version of the test application."""
    try:
        return importlib.metadata.version("nlb-test-app")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def parse_duration(duration_str: str) -> int:
    """
    Parse ISO 8601 duration format (PT1M, PT30S, PT1H30M) to seconds.
    Also supports simple integer strings for seconds.

    Args:
        duration_str: Duration string (e.g., "PT1M", "PT30S", "60")

    Returns:
        Duration in seconds

    Examples:
        parse_duration("PT1M") -> 60
        parse_duration("PT30S") -> 30
        parse_duration("PT1H30M") -> 5400
        parse_duration("60") -> 60
    """
    if not duration_str:
        return 0

    # Handle simple integer strings (seconds)
    if duration_str.isdigit():
        return int(duration_str)

    # Handle ISO 8601 format (PT1H30M45S)
    if not duration_str.startswith("PT"):
        raise ValueError(f"Invalid duration format: {duration_str}")

    duration_str = duration_str[2:]

    hours = 0
    minutes = 0
    seconds = 0

    hour_match = re.search(r"(\d+)H", duration_str)
    if hour_match:
        hours = int(hour_match.group(1))

    minute_match = re.search(r"(\d+)M", duration_str)
    if minute_match:
        minutes = int(minute_match.group(1))

    second_match = re.search(r"(\d+)S", duration_str)
    if second_match:
        seconds = int(second_match.group(1))

    return hours * 3600 + minutes * 60 + seconds


def parse_repositories(value: str) -> List["RepositoryConfig"]:
    """
    Parse a comma-separated list of ``name=url`` pairs.

    A bare URL gets a generated name (repo1, repo2, ...).
    """
    repositories = []
    if not value:
        return repositories

    for index, item in enumerate(value.split(","), start=1):
        item = item.strip()
        if not item:
            continue
        if "=" in item:
            name, url = item.split("=", 1)
        else:
            name, url = f"repo{index}", item
        repositories.append(RepositoryConfig(name=name.strip(), url=url.strip()))

    return repositories


def parse_resource_attributes(value: str) -> Dict[str, str]:
    """Parse OpenTelemetry resource attributes given as ``key=value,key2=value2``."""
    attributes = {}
    if not value:
        return attributes

    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ValueError(f"Invalid resource attribute: {item!r} (expected key=value)")
        key, attribute_value = item.split("=", 1)
        attributes[key.strip()] = attribute_value.strip()

    return attributes


@dataclass
class RepositoryConfig:
    """Connection settings of one content-repository endpoint."""

    name: str = "repo1"
    url: str = ""
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    verify_ssl: bool = True
    max_connections: int = 50


@dataclass
class DatabaseConfig:
    """SQL Server connection used for the database backup step."""

    server: Optional[str] = None
    port: int = 1433
    user: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None
    login_timeout: int = 15

    @property
    def is_configured(self) -> bool:
        return bool(self.server and self.database)


@dataclass(frozen=True)
class ContentPaths:
    """Repository paths of the test fixtures."""

    workspace_path: str = "/Root/Content/nlbtest"

    @property
    def document_library_path(self) -> str:
        return f"{self.workspace_path}/doclib"

    @property
    def task_list_path(self) -> str:
        return f"{self.workspace_path}/tasklist"

    def upload_folder(self, repository_name: str) -> str:
        return f"{self.document_library_path}/{repository_name}"


@dataclass(frozen=True)
class OperationOptions:
    """Scheduling options of one operation role (writers or readers)."""

    thread_count: int = 1
    # applied before the first iteration of every driver only
    initial_delay_seconds: float = 0
    # pause between the sub-steps of one iteration
    step_delay_ms: int = 200

    @property
    def step_delay_seconds(self) -> float:
        return self.step_delay_ms / 1000.0


@dataclass(frozen=True)
class BackupOptions(OperationOptions):
    """Options of the one-shot index + database backup."""

    index_target: Optional[str] = None
    database_target: Optional[str] = None
    # time between the end of the index backup and the start of the db backup
    backup_gap_seconds: float = 15
    repository: Optional[str] = None
    poll_interval_seconds: float = 1.0
    marker_interval_seconds: float = 1.0
    database_timeout_seconds: int = 300


@dataclass(frozen=True)
class NlbTestOptions:
    write_operations: OperationOptions = field(default_factory=OperationOptions)
    read_operations: OperationOptions = field(default_factory=OperationOptions)
    backup: BackupOptions = field(default_factory=BackupOptions)
    # delay between starting the writers and starting the readers
    reader_warmup_seconds: float = 5.0
    content_paths: ContentPaths = field(default_factory=ContentPaths)


@dataclass
class RunnerConfig:
    """Main runner configuration"""

    repositories: List[RepositoryConfig] = field(default_factory=list)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    test: NlbTestOptions = field(default_factory=NlbTestOptions)

    # Test duration (None = until interrupted)
    duration: Optional[int] = None

    # Writer payloads
    files_dir: Optional[str] = None
    sample_file_count: int = 3
    sample_file_size: int = 4096

    # Logging and metrics
    log_level: str = "INFO"
    log_file: Optional[str] = None
    metrics_interval: int = 5

    # Output
    output_file: Optional[str] = None
    quiet: bool = False

    # OpenTelemetry configuration
    otel_endpoint: Optional[str] = None
    otel_service_name: str = "nlb-test-app"
    otel_service_version: str = "1.0.0"
    otel_export_interval_ms: int = 5000
    otel_resource_attributes: Dict[str, str] = field(default_factory=dict)

    # Multi-app identification
    app_name: str = "nlb-test"
    instance_id: Optional[str] = None
    run_id: Optional[str] = None
    version: Optional[str] = None

    @property
    def repository_names(self) -> List[str]:
        return [repository.name for repository in self.repositories]

    @property
    def primary_repository(self) -> Optional[RepositoryConfig]:
        return self.repositories[0] if self.repositories else None


def _build_test_options(data: Dict[str, Any]) -> NlbTestOptions:
    data = dict(data)
    if "write_operations" in data:
        data["write_operations"] = OperationOptions(**data["write_operations"])
    if "read_operations" in data:
        data["read_operations"] = OperationOptions(**data["read_operations"])
    if "backup" in data:
        data["backup"] = BackupOptions(**data["backup"])
    if "content_paths" in data:
        data["content_paths"] = ContentPaths(**data["content_paths"])
    return NlbTestOptions(**data)


def config_from_dict(data: Dict[str, Any]) -> RunnerConfig:
    """Convert nested dictionaries to dataclass instances."""
    data = dict(data)

    if "repositories" in data:
        data["repositories"] = [RepositoryConfig(**repo) for repo in data["repositories"] or []]

    if "database" in data:
        data["database"] = DatabaseConfig(**(data["database"] or {}))

    if "test" in data:
        data["test"] = _build_test_options(data["test"] or {})

    return RunnerConfig(**data)


def load_config_from_file(file_path: str) -> RunnerConfig:
    """Load configuration from YAML or JSON file."""
    with open(file_path, "r") as f:
        if file_path.endswith(".yaml") or file_path.endswith(".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)

    return config_from_dict(data or {})


def config_to_dict(config: RunnerConfig) -> Dict[str, Any]:
    return asdict(config)


def save_config_to_file(config: RunnerConfig, file_path: str):
    """Save configuration to YAML file."""
    with open(file_path, "w") as f:
        yaml.dump(config_to_dict(config), f, default_flow_style=False, indent=2)
