"""
Repository management - one shared client per configured repository endpoint.
"""
from typing import Dict, List, Optional

from config import RepositoryConfig
from exceptions import ConfigurationError, RepositoryNotFoundError
from logger import get_logger
from metrics import MetricsCollector
from repository_client import ContentRepository


class RepositoryCollection:
    """
    Named repository clients shared by every executor task.

    - One ContentRepository per configured endpoint, created up front
    - Clients are long-lived and read-only from the caller's point of view
    - The first configured repository is the primary one
    """

    def __init__(self, configs: List[RepositoryConfig], metrics: Optional[MetricsCollector] = None):
        self.configs = list(configs)
        self.metrics = metrics
        self.logger = get_logger()

        self._repositories: Dict[str, ContentRepository] = {}

        self._initialize_repositories()

    def _initialize_repositories(self):
        """Create the repository clients."""
        if not self.configs:
            raise ConfigurationError("At least one repository must be configured")

        for config in self.configs:
            if config.name in self._repositories:
                raise ConfigurationError(f"Duplicate repository name: {config.name}")
            self._repositories[config.name] = self._create_repository(config)
            self.logger.info(f"Configured repository {config.name}: {config.url}")

    def _create_repository(self, config: RepositoryConfig) -> ContentRepository:
        return ContentRepository(config, metrics=self.metrics)

    @property
    def names(self) -> List[str]:
        return list(self._repositories)

    @property
    def primary(self) -> ContentRepository:
        return self._repositories[self.configs[0].name]

    @property
    def secondaries(self) -> List[ContentRepository]:
        return [self._repositories[config.name] for config in self.configs[1:]]

    def get_repository(self, name: str) -> ContentRepository:
        """Resolve a repository client by name."""
        try:
            return self._repositories[name]
        except KeyError:
            raise RepositoryNotFoundError(name) from None

    async def close_all(self):
        """Close all repository clients."""
        for name, repository in self._repositories.items():
            await repository.aclose()
            self.logger.debug(f"Closed repository client {name}")

    def __len__(self) -> int:
        return len(self._repositories)

    def __str__(self) -> str:
        return f"RepositoryCollection({', '.join(self.names)})"
