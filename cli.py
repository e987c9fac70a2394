"""
Command-line interface for the NLB load testing application.
"""
import asyncio
import click
import sys
import json
import os
import uuid
from dotenv import load_dotenv

from config import (
    RunnerConfig, DatabaseConfig, OperationOptions, BackupOptions, NlbTestOptions, ContentPaths,
    get_app_version, parse_duration, parse_repositories, parse_resource_attributes, config_to_dict,
)
from exceptions import NlbTestError
from runner import NlbTestRunner

# Load environment variables from .env file
load_dotenv()


def get_env_or_default(env_var: str, default_value, value_type=str):
    """Get environment variable with type conversion and default fallback."""
    env_value = os.getenv(env_var)
    if env_value is None:
        return default_value

    try:
        if value_type == bool:
            return env_value.lower() in ('true', '1', 'yes', 'on')
        elif value_type == int:
            return int(env_value)
        elif value_type == float:
            return float(env_value)
        else:
            return env_value
    except (ValueError, TypeError):
        return default_value


@click.group()
@click.version_option(version=get_app_version())
def cli():
    """NLB Load Testing Tool - Keep a load-balanced content repository busy with writers, readers and a backup."""
    pass


@cli.command()
# ============================================================================
# Repository Connection Parameters
# ============================================================================
@click.option('--repositories', default=lambda: get_env_or_default('NLB_REPOSITORIES', None), help='Comma-separated list of name=url repository endpoints. The first one is the primary repository.')
@click.option('--api-key', default=lambda: get_env_or_default('NLB_API_KEY', None), help='API key sent to every repository')
@click.option('--request-timeout', type=float, default=lambda: get_env_or_default('NLB_REQUEST_TIMEOUT', 30.0, float), help='Repository request timeout in seconds')
@click.option('--no-verify-ssl', is_flag=True, default=lambda: get_env_or_default('NLB_NO_VERIFY_SSL', False, bool), help='Skip TLS certificate verification')
@click.option('--max-connections', type=int, default=lambda: get_env_or_default('NLB_MAX_CONNECTIONS', 50, int), help='Maximum connections per repository client')
@click.option('--workspace-path', default=lambda: get_env_or_default('NLB_WORKSPACE_PATH', '/Root/Content/nlbtest'), help='Repository path of the test workspace')

# ============================================================================
# Operation Parameters
# ============================================================================
@click.option('--write-threads', type=int, default=lambda: get_env_or_default('NLB_WRITE_THREADS', 1, int), help='Number of concurrent writer drivers')
@click.option('--read-threads', type=int, default=lambda: get_env_or_default('NLB_READ_THREADS', 1, int), help='Number of concurrent reader drivers')
@click.option('--write-initial-delay', type=float, default=lambda: get_env_or_default('NLB_WRITE_INITIAL_DELAY', 0.0, float), help='Delay before the first writer iteration in seconds')
@click.option('--read-initial-delay', type=float, default=lambda: get_env_or_default('NLB_READ_INITIAL_DELAY', 0.0, float), help='Delay before the first reader iteration in seconds')
@click.option('--step-delay', type=int, default=lambda: get_env_or_default('NLB_STEP_DELAY_MS', 200, int), help='Delay between the steps of one iteration in milliseconds')
@click.option('--reader-warmup', type=float, default=lambda: get_env_or_default('NLB_READER_WARMUP', 5.0, float), help='Delay between starting the writers and the readers in seconds')
@click.option('--files-dir', default=lambda: get_env_or_default('NLB_FILES_DIR', None), help='Directory of the files uploaded by the writers (generated if not provided)')

# ============================================================================
# Backup Parameters
# ============================================================================
@click.option('--index-target', default=lambda: get_env_or_default('NLB_INDEX_BACKUP_TARGET', None), help='Index backup target path (backup is skipped if not provided)')
@click.option('--database-target', default=lambda: get_env_or_default('NLB_DATABASE_BACKUP_TARGET', None), help='Database backup file path on the SQL Server')
@click.option('--backup-gap', type=float, default=lambda: get_env_or_default('NLB_BACKUP_GAP', 15.0, float), help='Delay between the index backup and the database backup in seconds')
@click.option('--backup-repository', default=lambda: get_env_or_default('NLB_BACKUP_REPOSITORY', None), help='Repository the backup runs against (defaults to the primary)')
@click.option('--db-server', default=lambda: get_env_or_default('NLB_DB_SERVER', None), help='SQL Server host')
@click.option('--db-port', type=int, default=lambda: get_env_or_default('NLB_DB_PORT', 1433, int), help='SQL Server port')
@click.option('--db-user', default=lambda: get_env_or_default('NLB_DB_USER', None), help='SQL Server user')
@click.option('--db-password', default=lambda: get_env_or_default('NLB_DB_PASSWORD', None), help='SQL Server password')
@click.option('--db-name', default=lambda: get_env_or_default('NLB_DB_NAME', None), help='Database to back up')

# ============================================================================
# Test Configuration Parameters
# ============================================================================
@click.option('--duration', default=lambda: get_env_or_default('TEST_DURATION', None), help='Test duration in seconds or ISO 8601 (PT1H30M); unlimited if not specified')

# ============================================================================
# Logging & Output Parameters
# ============================================================================
@click.option('--log-level', default=lambda: get_env_or_default('LOG_LEVEL', 'INFO'), type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Logging level')
@click.option('--log-file', default=lambda: get_env_or_default('LOG_FILE', None), help='Log file path')
@click.option('--output-file', default=lambda: get_env_or_default('OUTPUT_FILE', None), help='Output file for final test summary (JSON). If not provided, prints to stdout.')
@click.option('--quiet', is_flag=True, default=False, help='Suppress periodic stats output')

# ============================================================================
# OpenTelemetry & Metrics Parameters
# ============================================================================
@click.option('--otel-endpoint', default=lambda: get_env_or_default('OTEL_EXPORTER_OTLP_ENDPOINT', None), help='OpenTelemetry OTLP endpoint')
@click.option('--otel-service-name', default=lambda: get_env_or_default('OTEL_SERVICE_NAME', 'nlb-test-app'), help='OpenTelemetry service name')
@click.option('--otel-export-interval', type=int, default=lambda: get_env_or_default('OTEL_EXPORT_INTERVAL', 5000, int), help='OpenTelemetry export interval in milliseconds')
@click.option('--otel-resource-attributes', default=lambda: get_env_or_default('OTEL_RESOURCE_ATTRIBUTES', None), help='OpenTelemetry resource attributes as key=value pairs separated by commas')
@click.option('--metrics-interval', type=int, default=lambda: get_env_or_default('METRICS_INTERVAL', 5, int), help='Metrics reporting interval in seconds')

# ============================================================================
# Application Identification Parameters
# ============================================================================
@click.option('--app-name', default=lambda: get_env_or_default('APP_NAME', 'nlb-test'), help='Application name for multi-instance filtering')
@click.option('--instance-id', default=lambda: get_env_or_default('INSTANCE_ID', None), help='Unique instance identifier (auto-generated if not provided)')
@click.option('--run-id', default=lambda: get_env_or_default('RUN_ID', None), help='Unique run identifier (auto-generated if not provided)')
@click.option('--version', default=lambda: get_env_or_default('VERSION', None), help='Version identifier (defaults to the installed package version)')

# ============================================================================
# Configuration File Parameters
# ============================================================================
@click.option('--config-file', default=lambda: get_env_or_default('CONFIG_FILE', None), help='Load configuration from YAML/JSON file')
@click.option('--save-config', help='Save current configuration to file')
def run(**kwargs):
    """Run the NLB load test with specified configuration."""

    try:
        # Load configuration from file if specified
        if kwargs['config_file']:
            from config import load_config_from_file
            config = load_config_from_file(kwargs['config_file'])
            click.echo(f"Loaded configuration from {kwargs['config_file']}")
        else:
            # Build configuration from command line arguments
            config = _build_config_from_args(kwargs)

        # Save configuration if requested
        if kwargs['save_config']:
            from config import save_config_to_file
            save_config_to_file(config, kwargs['save_config'])
            click.echo(f"Configuration saved to {kwargs['save_config']}")
            return

        # Validate configuration
        _validate_config(config)

        # Run the test
        runner = NlbTestRunner(config)
        runner.start()

    except KeyboardInterrupt:
        click.echo("\nTest interrupted by user")
        sys.exit(0)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--repositories', default=lambda: get_env_or_default('NLB_REPOSITORIES', None), help='Comma-separated list of name=url repository endpoints')
@click.option('--api-key', default=lambda: get_env_or_default('NLB_API_KEY', None), help='API key sent to every repository')
@click.option('--db-server', default=lambda: get_env_or_default('NLB_DB_SERVER', None), help='SQL Server host (the database is checked too when given)')
@click.option('--db-port', type=int, default=lambda: get_env_or_default('NLB_DB_PORT', 1433, int), help='SQL Server port')
@click.option('--db-user', default=lambda: get_env_or_default('NLB_DB_USER', None), help='SQL Server user')
@click.option('--db-password', default=lambda: get_env_or_default('NLB_DB_PASSWORD', None), help='SQL Server password')
@click.option('--db-name', default=lambda: get_env_or_default('NLB_DB_NAME', None), help='Database to back up')
def test_connection(repositories, api_key, db_server, db_port, db_user, db_password, db_name):
    """Test the repository and database connections with current configuration."""
    configs = parse_repositories(repositories or "")
    if not configs:
        click.echo("✗ No repositories configured (use --repositories or NLB_REPOSITORIES)", err=True)
        sys.exit(1)

    for repository_config in configs:
        repository_config.api_key = api_key

    failures = asyncio.run(_check_repositories(configs))

    if db_server:
        database_config = DatabaseConfig(server=db_server, port=db_port, user=db_user,
                                         password=db_password, database=db_name)
        failures += asyncio.run(_check_database(database_config))

    if failures:
        sys.exit(1)


async def _check_repositories(configs) -> int:
    from repository_manager import RepositoryCollection

    collection = RepositoryCollection(configs)
    failures = 0
    try:
        for name in collection.names:
            repository = collection.get_repository(name)
            try:
                if await repository.ping():
                    click.echo(f"✓ {name} ({repository.url}): connection successful!")
                else:
                    failures += 1
                    click.echo(f"✗ {name} ({repository.url}): /Root was not found", err=True)
            except NlbTestError as e:
                failures += 1
                click.echo(f"✗ {name} ({repository.url}): connection failed: {e}", err=True)
    finally:
        await collection.close_all()

    return failures


async def _check_database(database_config: DatabaseConfig) -> int:
    from database_client import DatabaseBackupClient

    client = DatabaseBackupClient(database_config)
    try:
        await client.ping()
    except NlbTestError as e:
        click.echo(f"✗ database {database_config.database} ({database_config.server}): connection failed: {e}", err=True)
        return 1

    click.echo(f"✓ database {database_config.database} ({database_config.server}): connection successful!")
    return 0


@cli.command()
@click.option('--config-file', default=lambda: get_env_or_default('CONFIG_FILE', None), help='Load configuration from YAML/JSON file')
def show_config(config_file):
    """Print the effective configuration as JSON."""
    if config_file:
        from config import load_config_from_file
        config = load_config_from_file(config_file)
    else:
        config = RunnerConfig(repositories=parse_repositories(get_env_or_default('NLB_REPOSITORIES', '')))

    data = config_to_dict(config)
    # never print secrets
    for repository in data['repositories']:
        if repository.get('api_key'):
            repository['api_key'] = '***'
    if data['database'].get('password'):
        data['database']['password'] = '***'

    click.echo(json.dumps(data, indent=2))


def _build_config_from_args(kwargs) -> RunnerConfig:
    """Build RunnerConfig from command line arguments."""

    # Parse repositories
    repositories = parse_repositories(kwargs['repositories'] or "")
    for repository in repositories:
        repository.api_key = kwargs['api_key']
        repository.timeout_seconds = kwargs['request_timeout']
        repository.verify_ssl = not kwargs['no_verify_ssl']
        repository.max_connections = kwargs['max_connections']

    # Build database connection config
    database_config = DatabaseConfig(
        server=kwargs['db_server'],
        port=kwargs['db_port'],
        user=kwargs['db_user'],
        password=kwargs['db_password'],
        database=kwargs['db_name'],
    )

    # Build test options
    test_options = NlbTestOptions(
        write_operations=OperationOptions(
            thread_count=kwargs['write_threads'],
            initial_delay_seconds=kwargs['write_initial_delay'],
            step_delay_ms=kwargs['step_delay'],
        ),
        read_operations=OperationOptions(
            thread_count=kwargs['read_threads'],
            initial_delay_seconds=kwargs['read_initial_delay'],
            step_delay_ms=kwargs['step_delay'],
        ),
        backup=BackupOptions(
            index_target=kwargs['index_target'],
            database_target=kwargs['database_target'],
            backup_gap_seconds=kwargs['backup_gap'],
            repository=kwargs['backup_repository'],
        ),
        reader_warmup_seconds=kwargs['reader_warmup'],
        content_paths=ContentPaths(workspace_path=kwargs['workspace_path']),
    )

    # Parse test duration
    duration = parse_duration(kwargs['duration']) if kwargs['duration'] else None

    # Auto-generate instance_id and run_id if not provided
    instance_id = kwargs['instance_id'] or str(uuid.uuid4())
    run_id = kwargs['run_id'] or str(uuid.uuid4())

    # Build main runner config
    config = RunnerConfig(
        repositories=repositories,
        database=database_config,
        test=test_options,
        duration=duration or None,
        files_dir=kwargs['files_dir'],
        log_level=kwargs['log_level'],
        log_file=kwargs['log_file'],
        metrics_interval=kwargs['metrics_interval'],
        output_file=kwargs['output_file'],
        quiet=kwargs['quiet'],
        otel_endpoint=kwargs['otel_endpoint'],
        otel_service_name=kwargs['otel_service_name'],
        otel_export_interval_ms=kwargs['otel_export_interval'],
        otel_resource_attributes=parse_resource_attributes(kwargs['otel_resource_attributes'] or ""),
        app_name=kwargs['app_name'],
        instance_id=instance_id,
        run_id=run_id,
        version=kwargs['version'] or get_app_version()
    )

    return config


def _validate_config(config: RunnerConfig):
    """Validate configuration parameters."""
    if not config.repositories:
        raise ValueError("At least one repository must be configured (use --repositories or NLB_REPOSITORIES)")

    if config.test.write_operations.thread_count < 0:
        raise ValueError("Number of writer threads must not be negative")

    if config.test.read_operations.thread_count < 0:
        raise ValueError("Number of reader threads must not be negative")

    if config.test.write_operations.step_delay_ms < 0 or config.test.read_operations.step_delay_ms < 0:
        raise ValueError("Step delay must not be negative")

    if config.metrics_interval <= 0:
        raise ValueError("Metrics interval must be greater than 0")

    backup_repository = config.test.backup.repository
    if backup_repository and backup_repository not in config.repository_names:
        raise ValueError(f"Backup repository {backup_repository} is not one of the configured repositories")


if __name__ == '__main__':
    cli()
