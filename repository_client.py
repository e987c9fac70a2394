"""
Content repository client for the sensenet OData REST API.
"""
import json
import time
from typing import Optional, List, Dict, Any, Sequence

import httpx

from config import RepositoryConfig
from exceptions import ConfigurationError, RepositoryOperationError
from logger import get_logger
from metrics import MetricsCollector, get_metrics_collector
from models import IndexBackupStatus, QueryResult, UploadResult

ROOT_PATH = "/Root"


def odata_path(path: str) -> str:
    """
    Convert a repository path to an OData entity path.

    Examples:
        odata_path("/Root") -> "/OData.svc/('Root')"
        odata_path("/Root/Content/nlbtest") -> "/OData.svc/Root/Content('nlbtest')"
    """
    path = "/" + path.strip("/")
    parent, _, name = path.rpartition("/")
    if not parent:
        return f"/OData.svc/('{name}')"
    return f"/OData.svc{parent}('{name}')"


def parent_path(path: str) -> str:
    return ("/" + path.strip("/")).rpartition("/")[0]


class ContentRepository:
    """
    Async client of one repository endpoint.

    One instance is shared by every executor task that targets the endpoint;
    httpx.AsyncClient handles connection pooling and concurrent requests.
    """

    def __init__(self, config: RepositoryConfig, metrics: Optional[MetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.logger = get_logger()
        self.metrics = metrics or get_metrics_collector()

        if not config.url:
            raise ConfigurationError(f"Repository '{config.name}' has no URL configured")

        self._client = httpx.AsyncClient(**self._build_client_kwargs(transport))

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def url(self) -> str:
        return self.config.url

    def _build_client_kwargs(self, transport: Optional[httpx.AsyncBaseTransport]) -> Dict[str, Any]:
        """Build httpx client keyword arguments."""
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["apikey"] = self.config.api_key

        kwargs = {
            'base_url': self.config.url.rstrip("/"),
            'headers': headers,
            'timeout': httpx.Timeout(self.config.timeout_seconds),
            'verify': self.config.verify_ssl,
            'limits': httpx.Limits(max_connections=self.config.max_connections),
        }
        if transport is not None:
            kwargs['transport'] = transport

        return kwargs

    async def aclose(self):
        """Close the underlying HTTP connection pool."""
        try:
            await self._client.aclose()
        except Exception as e:
            self.logger.warning(f"Error closing repository client {self.name}: {e}")

    async def _request(self, operation_name: str, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a request and track its outcome in the metrics collector.

        Transport errors and non-success status codes are raised as
        RepositoryOperationError; 404 responses are returned to the caller
        when ``allow_not_found`` is set.
        """
        allow_not_found = kwargs.pop("allow_not_found", False)
        start_time = time.time()

        try:
            response = await self._client.request(method, url, **kwargs)
            if not (allow_not_found and response.status_code == 404):
                response.raise_for_status()
            duration = max(0.0, time.time() - start_time)
            self.metrics.record_operation(operation_name, duration, True, repository=self.name)
            return response

        except httpx.HTTPStatusError as e:
            duration = max(0.0, time.time() - start_time)
            error_type = f"http_{e.response.status_code}"
            self.metrics.record_operation(operation_name, duration, False, error_type, repository=self.name)
            raise RepositoryOperationError(
                operation_name, f"{self.name} returned {e.response.status_code}", e.response.status_code
            ) from e

        except httpx.HTTPError as e:
            duration = max(0.0, time.time() - start_time)
            error_type = type(e).__name__
            self.metrics.record_operation(operation_name, duration, False, error_type, repository=self.name)
            self.logger.warning(f"Repository client error for {operation_name} on {self.name}: {error_type} - {e}")
            raise RepositoryOperationError(operation_name, f"{error_type} - {e}") from e

    def _json(self, operation_name: str, response: httpx.Response) -> Any:
        """Decode a JSON response body, raising RepositoryOperationError for anything else."""
        try:
            return response.json()
        except ValueError as e:
            raise RepositoryOperationError(
                operation_name, f"{self.name} returned a non-JSON response", response.status_code
            ) from e

    # Content operations
    async def load_content(self, path: str, select: Sequence[str] = ("Id", "Name", "Path", "Type")) -> Optional[Dict[str, Any]]:
        """Load a content by path. Returns None if it does not exist."""
        response = await self._request(
            'LOAD', 'GET', odata_path(path),
            params={"metadata": "no", "$select": ",".join(select)},
            allow_not_found=True,
        )
        if response.status_code == 404:
            return None
        return self._json('LOAD', response).get("d")

    async def query(self, content_query: str, select: Sequence[str] = (), expand: Sequence[str] = (),
                    top: Optional[int] = None, auto_filters: bool = True, path: str = ROOT_PATH) -> QueryResult:
        """Execute a content query in the subtree of ``path``."""
        params = {"query": content_query, "metadata": "no", "$inlinecount": "allpages"}
        if select:
            params["$select"] = ",".join(select)
        if expand:
            params["$expand"] = ",".join(expand)
        if top is not None:
            params["$top"] = str(top)
        if not auto_filters:
            params["enableautofilters"] = "false"

        response = await self._request('QUERY', 'GET', "/OData.svc" + path, params=params)
        return QueryResult.from_payload(self._json('QUERY', response))

    async def upload(self, parent: str, content_name: str, content: bytes, content_type: str = "File") -> UploadResult:
        """Upload a binary in a single chunk."""
        data = {
            "FileName": content_name,
            "ContentType": content_type,
            "PropertyName": "Binary",
            "UseChunk": "false",
            "Overwrite": "false",
            "FileLength": str(len(content)),
            "ChunkToken": "0*0*False*False",
        }
        files = {"files[]": (content_name, content, "application/octet-stream")}

        response = await self._request('UPLOAD', 'POST', odata_path(parent) + "/Upload", data=data, files=files)
        return UploadResult.from_payload(self._json('UPLOAD', response))

    async def delete(self, content_id: int, permanent: bool = True):
        """Delete a content by id."""
        await self._request(
            'DELETE', 'DELETE', f"/OData.svc/content({content_id})",
            params={"permanent": "true" if permanent else "false"},
        )

    async def create_content(self, parent: str, content_type: str, name: str, **fields) -> Dict[str, Any]:
        """Create a new content under ``parent``."""
        model = {"__ContentType": content_type, "Name": name}
        model.update(fields)

        response = await self._request(
            'CREATE', 'POST', "/OData.svc" + parent,
            data={"models": json.dumps([model])},
        )
        return self._json('CREATE', response).get("d", {})

    async def ensure_path(self, path: str, content_type: str = "Folder"):
        """Create ``path`` (and any missing parent folder) if it does not exist."""
        if await self.load_content(path) is not None:
            return

        parent = parent_path(path)
        if parent and parent != ROOT_PATH:
            await self.ensure_path(parent, "Folder")

        name = path.rstrip("/").rpartition("/")[2]
        self.logger.debug(f"Creating {content_type} {path} in repository {self.name}")
        await self.create_content(parent, content_type, name)

    # Operations
    async def invoke_action(self, path: str, operation: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Invoke a remote OData action (POST)."""
        response = await self._request(
            operation.upper(), 'POST', f"{odata_path(path)}/{operation}", json=payload or {}
        )
        return self._json(operation.upper(), response) if response.content else {}

    async def invoke_function(self, path: str, operation: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Invoke a remote OData function (GET)."""
        response = await self._request(
            operation.upper(), 'GET', f"{odata_path(path)}/{operation}", params=params or {}
        )
        return self._json(operation.upper(), response) if response.content else {}

    async def start_index_backup(self, target: str) -> IndexBackupStatus:
        payload = await self.invoke_action(ROOT_PATH, "BackupIndex", {"target": target})
        return IndexBackupStatus.from_payload(payload)

    async def query_index_backup(self) -> IndexBackupStatus:
        payload = await self.invoke_function(ROOT_PATH, "QueryIndexBackup")
        return IndexBackupStatus.from_payload(payload)

    async def ping(self) -> bool:
        """Check that the repository root can be loaded."""
        return await self.load_content(ROOT_PATH) is not None

    def __str__(self) -> str:
        return f"ContentRepository({self.name}, {self.url})"


def build_file_query(content_ids: List[int]) -> str:
    return f"TypeIs:File AND Id:({' '.join(str(content_id) for content_id in content_ids)})"
