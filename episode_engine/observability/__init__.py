"""
Observability & Audit Layer

RESPONSIBILITY: Audit log and metrics for every pipeline layer
ALLOWED INPUTS: Audit entries and metric points from any layer
OUTPUTS: AuditLog, Metrics, audit reports

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Make decisions based on logged data
- Block or delay other layer operations

BOUNDARY ENFORCEMENT:
=====================
- Receives immutable entries, never references to mutable state
- Provides read-only access to logs and metrics
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import Enum
import hashlib
import itertools
import threading

from ..contracts.base import Timestamp, TimeRange
from ..contracts.events import AuditLogEntry, AuditEventType, MetricPoint


LAYERS = (
    "engine", "qualifications", "dependencies", "snapshots",
    "lifecycle", "retcon", "runner", "storage", "adapter",
)


# =============================================================================
# LOG COLLECTORS (One per layer)
# =============================================================================

class LogCollector:
    """
    Per-layer audit collector.

    Collectors are append-only - no modification of collected data.
    """

    def __init__(self, layer_name: str):
        self._layer_name = layer_name
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def collect(self, entry: AuditLogEntry):
        """Collect an audit entry (append-only)."""
        with self._lock:
            self._entries.append(entry)

    def get_entries(
        self,
        time_range: Optional[TimeRange] = None,
        event_type: Optional[AuditEventType] = None,
        action: Optional[str] = None
    ) -> List[AuditLogEntry]:
        """Get entries, optionally filtered."""
        with self._lock:
            entries = list(self._entries)

        if time_range:
            entries = [e for e in entries if time_range.contains(e.timestamp)]

        if event_type:
            entries = [e for e in entries if e.event_type == event_type]

        if action:
            entries = [e for e in entries if e.action == action]

        return entries

    @property
    def layer_name(self) -> str:
        return self._layer_name

    @property
    def entry_count(self) -> int:
        return len(self._entries)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricType(Enum):
    """Types of metrics collected."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMING = "timing"


@dataclass
class MetricDefinition:
    """Definition of a metric to collect."""
    name: str
    metric_type: MetricType
    description: str
    labels: Tuple[str, ...] = field(default_factory=tuple)


class MetricsCollector:
    """
    Collect and aggregate metrics from all layers.

    Metrics are append-only time series data points.
    """

    def __init__(self):
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._definitions: Dict[str, MetricDefinition] = {}
        self._lock = threading.Lock()
        self._register_default_metrics()

    def _register_default_metrics(self):
        """Register standard metrics."""
        defaults = [
            MetricDefinition(
                name="units_generated_total",
                metric_type=MetricType.COUNTER,
                description="Units that reached complete or needs_revision",
                labels=("project_id",)
            ),
            MetricDefinition(
                name="generation_failures_total",
                metric_type=MetricType.COUNTER,
                description="Generation attempts that ended in error",
                labels=("project_id", "outcome")
            ),
            MetricDefinition(
                name="generation_latency_ms",
                metric_type=MetricType.TIMING,
                description="Generation backend latency in milliseconds"
            ),
            MetricDefinition(
                name="units_locked_total",
                metric_type=MetricType.COUNTER,
                description="Units locked by an operator or runner policy"
            ),
            MetricDefinition(
                name="units_invalidated_total",
                metric_type=MetricType.COUNTER,
                description="Units moved to invalidated by a stale snapshot"
            ),
            MetricDefinition(
                name="snapshots_created_total",
                metric_type=MetricType.COUNTER,
                description="Canon snapshots created"
            ),
            MetricDefinition(
                name="stale_artifacts",
                metric_type=MetricType.GAUGE,
                description="Stale artifacts in the latest staleness report",
                labels=("project_id",)
            ),
            MetricDefinition(
                name="patches_applied_total",
                metric_type=MetricType.COUNTER,
                description="Patch runs applied"
            ),
            MetricDefinition(
                name="patches_rejected_total",
                metric_type=MetricType.COUNTER,
                description="Patch runs rejected"
            ),
            MetricDefinition(
                name="tick_units_advanced",
                metric_type=MetricType.HISTOGRAM,
                description="Units advanced per runner tick"
            ),
            MetricDefinition(
                name="rejected_operations_total",
                metric_type=MetricType.COUNTER,
                description="Operations rejected by an invariant",
                labels=("code",)
            ),
        ]

        for definition in defaults:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        """Register a new metric definition."""
        self._definitions[definition.name] = definition
        if definition.name not in self._metrics:
            self._metrics[definition.name] = []

    def record(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Record a metric data point."""
        label_tuple = tuple(sorted(labels.items())) if labels else ()

        point = MetricPoint(
            metric_name=metric_name,
            value=value,
            timestamp=Timestamp.now(),
            labels=label_tuple
        )
        with self._lock:
            self._metrics.setdefault(metric_name, []).append(point)

    def get_metric(
        self,
        metric_name: str,
        time_range: Optional[TimeRange] = None
    ) -> List[MetricPoint]:
        """Get metric data points, optionally filtered by time range."""
        points = list(self._metrics.get(metric_name, []))

        if time_range:
            points = [p for p in points if time_range.contains(p.timestamp)]

        return points

    def get_latest(self, metric_name: str) -> Optional[MetricPoint]:
        """Get the latest value for a metric."""
        points = self._metrics.get(metric_name, [])
        return points[-1] if points else None

    def total(self, metric_name: str) -> float:
        return sum(p.value for p in self._metrics.get(metric_name, []))

    def compute_aggregates(
        self,
        metric_name: str,
        time_range: Optional[TimeRange] = None
    ) -> Dict[str, float]:
        """Compute aggregate statistics for a metric."""
        points = self.get_metric(metric_name, time_range)

        if not points:
            return {}

        values = [p.value for p in points]

        return {
            'count': len(values),
            'sum': sum(values),
            'min': min(values),
            'max': max(values),
            'avg': sum(values) / len(values),
        }


# =============================================================================
# OBSERVABILITY ENGINE (Orchestrates all observability)
# =============================================================================

@dataclass
class ObservabilityConfig:
    """Configuration for observability engine."""
    enable_metrics: bool = True
    log_retention_hours: int = 720  # 30 days


class ObservabilityEngine:
    """
    Central Observability Engine.

    BOUNDARY ENFORCEMENT:
    - ONLY observes, never modifies
    - Provides read-only access to collected data
    """

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self._config = config or ObservabilityConfig()
        self._collectors: Dict[str, LogCollector] = {
            layer: LogCollector(layer) for layer in LAYERS
        }
        self._metrics = MetricsCollector() if self._config.enable_metrics else None
        self._counter = itertools.count(1)

    def collect_audit(self, entry: AuditLogEntry):
        """Collect an audit log entry from any layer."""
        collector = self._collectors.get(entry.layer)
        if collector is None:
            collector = self._collectors.setdefault(entry.layer, LogCollector(entry.layer))
        collector.collect(entry)

    def log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        outcome: str = "success",
        details: str = "",
        layer: str = "engine",
        actor: Optional[str] = None,
        entity_type: Optional[str] = None,
        event_type: AuditEventType = AuditEventType.STATE_CHANGE
    ) -> AuditLogEntry:
        """Helper to log audit entry directly."""
        now = Timestamp.now()
        entry_id = hashlib.sha256(
            f"{layer}_{action}|{entity_id}|{now.value.timestamp()}|{next(self._counter)}".encode()
        ).hexdigest()[:16]

        entry = AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=event_type,
            timestamp=now,
            layer=layer,
            action=action,
            entity_id=entity_id,
            entity_type=entity_type,
            actor=actor,
            metadata=(
                ("outcome", outcome),
                ("details", details)
            )
        )
        self.collect_audit(entry)
        return entry

    def log_rejection(
        self,
        action: str,
        code: str,
        message: str,
        entity_id: Optional[str] = None,
        layer: str = "engine",
        actor: Optional[str] = None
    ) -> AuditLogEntry:
        """Record an operation rejected by an invariant."""
        self.collect_metric("rejected_operations_total", 1, {"code": code})
        return self.log_audit(
            action=action,
            entity_id=entity_id,
            outcome=code,
            details=message,
            layer=layer,
            actor=actor,
            event_type=AuditEventType.REJECTION
        )

    def collect_metric(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Collect a metric data point."""
        if self._metrics:
            self._metrics.record(metric_name, value, labels)

    def get_unified_log(
        self,
        time_range: Optional[TimeRange] = None,
        layers: Optional[List[str]] = None
    ) -> List[AuditLogEntry]:
        """Get unified log from all or specified layers."""
        target_layers = layers or list(self._collectors.keys())

        all_entries = []
        for layer_name in target_layers:
            collector = self._collectors.get(layer_name)
            if collector:
                all_entries.extend(collector.get_entries(time_range=time_range))

        all_entries.sort(key=lambda e: e.timestamp.value)
        return all_entries

    def get_layer_log(
        self,
        layer_name: str,
        time_range: Optional[TimeRange] = None,
        event_type: Optional[AuditEventType] = None
    ) -> List[AuditLogEntry]:
        """Get log for a specific layer."""
        collector = self._collectors.get(layer_name)
        if not collector:
            return []
        return collector.get_entries(time_range=time_range, event_type=event_type)

    def get_metrics(self) -> Optional[MetricsCollector]:
        """Get metrics collector (read-only access)."""
        return self._metrics

    def generate_audit_report(
        self,
        time_range: Optional[TimeRange] = None
    ) -> Dict:
        """Generate comprehensive audit report."""
        entries = self.get_unified_log(time_range=time_range)

        by_layer: Dict[str, int] = {}
        by_type: Dict[str, int] = {}

        for entry in entries:
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
            by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1

        return {
            'total_entries': len(entries),
            'by_layer': by_layer,
            'by_event_type': by_type,
            'time_range': {
                'start': entries[0].timestamp.to_iso() if entries else None,
                'end': entries[-1].timestamp.to_iso() if entries else None,
            },
            'generated_at': Timestamp.now().to_iso()
        }
