"""
Metrics collection and export for the NLB test application with OpenTelemetry support.
"""
import time
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, Optional, Deque, Any
import statistics
import json
import uuid

from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

from logger import get_logger
from models import OperationResult


@dataclass
class OperationMetrics:
    """Metrics for a specific operation type."""
    total_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration: float = 0.0
    latencies: Deque[float] = field(default_factory=lambda: deque(maxlen=10000))
    errors_by_type: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class Statistics:
    """Final test statistics in standardized format."""
    app_name: str = "nlb-test"
    instance_id: str = "unknown"
    run_id: str = "unknown"
    version: str = "unknown"
    run_start: float = 0.0
    run_end: float = 0.0
    elapsed_seconds: float = 0.0
    write_iteration_count: int = 0
    read_iteration_count: int = 0
    total_operations_count: int = 0
    successful_operations_count: int = 0
    failed_operations_count: int = 0
    overall_throughput: float = 0.0
    backup_events: Dict[str, int] = field(default_factory=dict)
    operations: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        if self.run_start == 0.0:
            self.run_start = time.time()


class MetricsCollector:
    """Centralized metrics collection for repository operations with OpenTelemetry support."""

    def __init__(self, otel_endpoint: Optional[str] = None,
                 service_name: str = "nlb-test-app", service_version: str = "1.0.0",
                 otel_export_interval_ms: int = 5000, app_name: str = "nlb-test",
                 instance_id: str = None, run_id: str = None, version: str = None,
                 resource_attributes: Optional[Dict[str, str]] = None):
        self.logger = get_logger()
        self.otel_endpoint = otel_endpoint
        self.service_name = service_name
        self.service_version = service_version
        self.otel_export_interval_ms = otel_export_interval_ms
        self.app_name = app_name
        self.instance_id = instance_id if instance_id and instance_id.strip() else f"{app_name}-{str(uuid.uuid4())[:8]}"
        self.run_id = run_id if run_id and run_id.strip() else str(uuid.uuid4())
        self.version = version or "unknown"
        self.resource_attributes = dict(resource_attributes or {})

        # The stats reporter reads from a different task while executors write
        self._lock = threading.RLock()
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._iterations: Dict[str, int] = defaultdict(int)
        self._backup_events: Dict[str, int] = defaultdict(int)
        self._start_time = time.time()
        self._result: Optional[OperationResult] = None

        self._setup_opentelemetry()

    def _setup_opentelemetry(self):
        """Setup OpenTelemetry metrics."""
        try:
            attributes = {
                "service.name": self.app_name,
                "service.version": self.version
            }
            attributes.update(self.resource_attributes)
            self.resource = Resource.create(attributes)

            metric_readers = []
            if self.otel_endpoint:
                metric_exporter = OTLPMetricExporter(
                    endpoint=self.otel_endpoint,
                    insecure=True
                )
                metric_readers.append(PeriodicExportingMetricReader(
                    exporter=metric_exporter,
                    export_interval_millis=self.otel_export_interval_ms
                ))

            self._meter_provider = MeterProvider(
                resource=self.resource,
                metric_readers=metric_readers
            )
            self.meter = self._meter_provider.get_meter(self.service_name, self.service_version)

            self.otel_operations_counter = self.meter.create_counter(
                name="nlb_operations_total",
                description="Total number of content repository operations",
                unit="1"
            )

            self.otel_operation_duration = self.meter.create_histogram(
                name="nlb_operation_duration",
                description="Duration of content repository operations in milliseconds",
                unit="ms"
            )

            self.otel_iterations_counter = self.meter.create_counter(
                name="nlb_iterations_total",
                description="Total number of executor iterations by role",
                unit="1"
            )

            self.otel_backup_events_counter = self.meter.create_counter(
                name="nlb_backup_events_total",
                description="Backup state transitions and marker records",
                unit="1"
            )

            if self.otel_endpoint:
                self.logger.info(f"OpenTelemetry setup completed with endpoint: {self.otel_endpoint}")

        except Exception as e:
            self.logger.error(f"Failed to setup OpenTelemetry: {e}")
            raise

    def _labels(self, **extra) -> Dict[str, str]:
        labels = {
            "app_name": self.app_name,
            "instance_id": self.instance_id,
            "run_id": self.run_id,
            "version": self.version,
        }
        labels.update(extra)
        return labels

    def record_operation(self, operation: str, duration: float, success: bool, error_type: str = None,
                         repository: str = None):
        """Record metrics for a repository or database operation."""
        with self._lock:
            metrics = self._metrics[operation]
            metrics.total_count += 1
            metrics.total_duration += duration
            metrics.latencies.append(duration)

            if success:
                metrics.success_count += 1
            else:
                metrics.error_count += 1
                if error_type:
                    metrics.errors_by_type[error_type] += 1

        status = 'success' if success else 'error'
        self.otel_operations_counter.add(1, self._labels(
            operation=operation,
            status=status,
            repository=repository or "none",
            error_type=error_type or "none",
        ))

        # Convert duration from seconds to milliseconds
        self.otel_operation_duration.record(duration * 1000, self._labels(
            operation=operation,
            status=status,
            repository=repository or "none",
        ))

    def record_iteration(self, role: str):
        """Record one executor iteration for a role (writer, reader, backup)."""
        with self._lock:
            self._iterations[role] += 1
        self.otel_iterations_counter.add(1, self._labels(role=role))

    def record_backup_event(self, event: str):
        """Record a backup state transition or a marker record."""
        with self._lock:
            self._backup_events[event] += 1
        self.otel_backup_events_counter.add(1, self._labels(event=event))

    def record_result(self, result: OperationResult):
        """Attach the orchestrator's final result to the summary."""
        with self._lock:
            self._result = result

    def get_iterations(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._iterations)

    def get_operation_metrics(self) -> Dict[str, OperationMetrics]:
        with self._lock:
            return dict(self._metrics)

    def get_overall_stats(self) -> Dict:
        """Get overall statistics across all operations."""
        with self._lock:
            current_time = time.time()
            total_duration = current_time - self._start_time

            total_ops = sum(m.total_count for m in self._metrics.values())
            total_success = sum(m.success_count for m in self._metrics.values())
            total_errors = sum(m.error_count for m in self._metrics.values())

            stats = {
                'total_operations': total_ops,
                'successful_operations': total_success,
                'failed_operations': total_errors,
                'iterations': dict(self._iterations),
                'run_start': self._start_time,
                'run_end': current_time,
                'overall_throughput': total_ops / total_duration if total_duration > 0 else 0,
                'overall_success_rate': total_success / total_ops if total_ops > 0 else 0,
            }

            return stats

    def _operation_summary(self, metrics: OperationMetrics) -> Dict[str, Any]:
        latencies_ms = [lat * 1000 for lat in metrics.latencies]
        summary = {
            "total": metrics.total_count,
            "success": metrics.success_count,
            "errors": metrics.error_count,
            "errors_by_type": dict(metrics.errors_by_type),
        }
        if latencies_ms:
            summary.update({
                "min_latency_ms": round(min(latencies_ms), 2),
                "max_latency_ms": round(max(latencies_ms), 2),
                "median_latency_ms": round(statistics.median(latencies_ms), 2),
                "p95_latency_ms": round(statistics.quantiles(latencies_ms, n=20)[18] if len(latencies_ms) >= 20 else max(latencies_ms), 2),
                "avg_latency_ms": round(sum(latencies_ms) / len(latencies_ms), 2),
            })
        return summary

    def get_final_test_summary(self) -> Statistics:
        """Get final test summary in standardized format."""
        stats = self.get_overall_stats()

        summary = Statistics(self.app_name, self.instance_id, self.run_id, self.version)
        summary.run_start = stats['run_start']
        summary.run_end = stats['run_end']
        summary.total_operations_count = stats['total_operations']
        summary.successful_operations_count = stats['successful_operations']
        summary.failed_operations_count = stats['failed_operations']
        summary.overall_throughput = round(stats['overall_throughput'], 2)

        with self._lock:
            summary.backup_events = dict(self._backup_events)
            summary.operations = {
                name: self._operation_summary(metrics) for name, metrics in sorted(self._metrics.items())
            }
            result = self._result

        if result is not None:
            summary.elapsed_seconds = round(result.elapsed_seconds, 3)
            summary.write_iteration_count = result.write_iteration_count
            summary.read_iteration_count = result.read_iteration_count
        else:
            summary.elapsed_seconds = round(summary.run_end - summary.run_start, 3)

        return summary

    def export_final_summary_to_json(self, file_path: str):
        """Export final test summary to JSON file."""
        summary = self.get_final_test_summary()
        summary_dict = {
            'app_name': summary.app_name,
            'instance_id': summary.instance_id,
            'run_id': summary.run_id,
            'version': summary.version,
            'run_start': summary.run_start,
            'run_end': summary.run_end,
            'elapsed_seconds': summary.elapsed_seconds,
            'write_iteration_count': summary.write_iteration_count,
            'read_iteration_count': summary.read_iteration_count,
            'total_operations_count': summary.total_operations_count,
            'successful_operations_count': summary.successful_operations_count,
            'failed_operations_count': summary.failed_operations_count,
            'overall_throughput': summary.overall_throughput,
            'backup_events': summary.backup_events,
            'operations': summary.operations,
        }
        with open(file_path, 'w') as f:
            json.dump(summary_dict, f, indent=2)

    def print_summary(self):
        """Print final test summary in standardized format."""
        summary = self.get_final_test_summary()

        print("\n" + "="*60)
        print("FINAL TEST SUMMARY")
        print("="*60)
        print(f"Total test run time: {summary.elapsed_seconds:.2f}s")
        print(f"Write Iterations: {summary.write_iteration_count:,}")
        print(f"Read Iterations: {summary.read_iteration_count:,}")
        print(f"Total Operations: {summary.total_operations_count:,}")
        print(f"Successful Operations: {summary.successful_operations_count:,}")
        print(f"Failed Operations: {summary.failed_operations_count:,}")
        success_rate = (
                    summary.successful_operations_count / summary.total_operations_count) if summary.total_operations_count > 0 else 0.0
        print(f"Success Rate: {success_rate:.2%}")
        print(f"Overall Throughput: {summary.overall_throughput:,} ops/sec")
        for name, operation in summary.operations.items():
            print(f"  {name}: {operation['total']:,} total, {operation['errors']:,} errors")
        if summary.backup_events:
            print(f"Backup Events: {summary.backup_events}")
        print("="*60)

    def shutdown(self):
        """Flush and stop the OpenTelemetry exporters."""
        try:
            self._meter_provider.shutdown()
        except Exception as e:
            self.logger.warning(f"Error shutting down metrics provider: {e}")


# Global metrics collector instance
_metrics_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def setup_metrics(otel_endpoint: Optional[str] = None,
                  service_name: str = "nlb-test-app", service_version: str = "1.0.0",
                  otel_export_interval_ms: int = 5000, app_name: str = "nlb-test",
                  instance_id: str = None, run_id: str = None, version: str = None,
                  resource_attributes: Optional[Dict[str, str]] = None) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(
        otel_endpoint=otel_endpoint,
        service_name=service_name,
        service_version=service_version,
        otel_export_interval_ms=otel_export_interval_ms,
        app_name=app_name,
        instance_id=instance_id,
        run_id=run_id,
        version=version,
        resource_attributes=resource_attributes
    )
    return _metrics_collector
