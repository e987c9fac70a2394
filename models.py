"""
Data model shared by the orchestrator, the executors and the collaborators.
"""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class ExecutionContext:
    """
    Per-driver state.

    Owned by the driver task that created it; the orchestrator reads it only
    after that task has returned. ``iteration`` is incremented exclusively by
    ``ExecutorBase.execute``.
    """
    repositories: Tuple[str, ...] = ()
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    iteration: int = 0

    def __post_init__(self):
        self.repositories = tuple(self.repositories)


@dataclass(frozen=True)
class OperationResult:
    """Final summary of one run. Built once, at shutdown."""
    elapsed_seconds: float
    write_iteration_count: int
    read_iteration_count: int

    @property
    def write_throughput(self) -> float:
        return self.write_iteration_count / self.elapsed_seconds if self.elapsed_seconds > 0 else 0.0

    @property
    def read_throughput(self) -> float:
        return self.read_iteration_count / self.elapsed_seconds if self.elapsed_seconds > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "write_iteration_count": self.write_iteration_count,
            "read_iteration_count": self.read_iteration_count,
            "write_throughput": round(self.write_throughput, 3),
            "read_throughput": round(self.read_throughput, 3),
        }


@dataclass(frozen=True)
class SampleFile:
    """A payload uploaded by the writer executor."""
    name: str
    content: bytes


@dataclass(frozen=True)
class UploadResult:
    id: int
    name: str
    path: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "UploadResult":
        return cls(
            id=int(payload.get("Id") or 0),
            name=payload.get("Name", ""),
            path=payload.get("Url") or payload.get("Path"),
        )


@dataclass(frozen=True)
class QueryResult:
    count: int
    items: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "QueryResult":
        body = payload.get("d", payload)
        items = body.get("results", [])
        count = body.get("__count")
        return cls(count=int(count) if count is not None else len(items), items=items)


class IndexBackupState(str, Enum):
    """States reported by the remote index backup operation."""

    STARTED = "Started"
    EXECUTING = "Executing"
    FINISHED = "Finished"
    COMPLETED = "Completed"
    CANCELED = "Canceled"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class IndexBackupStatus:
    """Typed view of the ``State`` field returned by the index backup operations."""
    state: IndexBackupState
    raw_state: str = ""

    @property
    def is_running(self) -> bool:
        return self.state in (IndexBackupState.STARTED, IndexBackupState.EXECUTING)

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "IndexBackupStatus":
        raw_state = str((payload or {}).get("State") or "")
        for state in IndexBackupState:
            if state.value.lower() == raw_state.lower():
                return cls(state=state, raw_state=raw_state)
        return cls(state=IndexBackupState.UNKNOWN, raw_state=raw_state)
