"""
SQL Server client used for the database backup step.
"""
import asyncio
import time
from typing import Optional

import pymssql

from config import DatabaseConfig
from exceptions import DatabaseBackupError
from logger import get_logger
from metrics import MetricsCollector, get_metrics_collector

# BACKUP DATABASE only accepts variables, not literal parameters, for the
# database name and the target path.
BACKUP_QUERY = (
    "DECLARE @DatabaseName sysname = %s, @BackupFilePath nvarchar(4000) = %s; "
    "BACKUP DATABASE @DatabaseName TO DISK = @BackupFilePath "
    "WITH NOFORMAT, NOINIT, SKIP, NOREWIND, NOUNLOAD"
)


class DatabaseBackupClient:
    """Executes the database backup statement with a bounded timeout."""

    def __init__(self, config: DatabaseConfig, metrics: Optional[MetricsCollector] = None):
        self.config = config
        self.logger = get_logger()
        self.metrics = metrics or get_metrics_collector()

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    @property
    def database_name(self) -> Optional[str]:
        return self.config.database

    def _connect(self, timeout: int):
        return pymssql.connect(
            server=self.config.server,
            port=str(self.config.port),
            user=self.config.user,
            password=self.config.password,
            database=self.config.database,
            login_timeout=self.config.login_timeout,
            timeout=timeout,
            autocommit=True,
        )

    def _backup_blocking(self, target_path: str, timeout: int):
        # BACKUP cannot run inside a user transaction, hence autocommit
        connection = self._connect(timeout)
        try:
            cursor = connection.cursor()
            cursor.execute(BACKUP_QUERY, (self.config.database, target_path))
            # drain the progress messages so the statement runs to completion
            while cursor.nextset():
                pass
        finally:
            connection.close()

    async def backup(self, target_path: str, timeout: int = 300):
        """
        Back up the configured database to ``target_path`` on the server.

        The blocking driver call runs in a worker thread.

        Raises:
            DatabaseBackupError: connection or statement failure.
        """
        if not self.is_configured:
            raise DatabaseBackupError("Database connection is not configured")

        start_time = time.time()
        try:
            await asyncio.to_thread(self._backup_blocking, target_path, timeout)
        except pymssql.Error as e:
            self.metrics.record_operation('DB_BACKUP', time.time() - start_time, False, type(e).__name__)
            raise DatabaseBackupError(f"Backup of {self.database_name} to {target_path} failed: {e}") from e

        self.metrics.record_operation('DB_BACKUP', time.time() - start_time, True)

    async def ping(self) -> bool:
        """
        Open and close a connection.

        Raises:
            DatabaseBackupError: the server cannot be reached or the login failed.
        """
        if not self.is_configured:
            raise DatabaseBackupError("Database connection is not configured")

        def _ping():
            connection = self._connect(self.config.login_timeout)
            connection.close()

        try:
            await asyncio.to_thread(_ping)
        except pymssql.Error as e:
            raise DatabaseBackupError(f"Cannot connect to {self.config.server}: {e}") from e
        return True
