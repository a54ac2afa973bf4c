# Monitoring & metrics for the tracking session

"""
Metrics collection (counters, gauges, histograms) and health checks
for the registry, live telemetry links and host resources.
"""

import statistics
import threading
import time
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

# Metric names
TICKS = "simulation.ticks"
MISSIONS_COMPLETED = "simulation.missions_completed"
MESSAGES = "telemetry.messages"
MESSAGES_DROPPED = "telemetry.messages_dropped"
SPEED_OUTLIERS = "telemetry.speed_outliers"
WAYPOINTS_REACHED = "telemetry.waypoints_reached"
RECONNECTS = "telemetry.reconnects_scheduled"
CONNECT_FAILURES = "telemetry.connect_failures"
ACTIVE_ENTRIES = "registry.active_entries"
REPORTS_BUILT = "reports.built"
FIX_SPEED = "telemetry.fix_speed_kmh"

# ============================================================================
# METRICS MODELS
# ============================================================================

@dataclass
class HealthCheck:
    """Health check result"""
    component: str
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime
    details: Dict = field(default_factory=dict)
    latency_ms: Optional[float] = None

    def to_dict(self):
        """Convert to dictionary"""
        return {
            'component': self.component,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'latency_ms': self.latency_ms
        }

# ============================================================================
# METRICS COLLECTOR
# ============================================================================

class MetricsCollector:
    """Collect and aggregate tracking metrics"""

    def __init__(self, max_points: int = 1000):
        self.max_points = max_points
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self.lock = threading.Lock()

    def record_counter(self, name: str, value: int = 1, labels: Dict = None):
        """
        Record counter metric (monotonically increasing)

        Args:
            name: Metric name
            value: Value to add (default 1)
            labels: Optional labels for grouping
        """
        with self.lock:
            key = self._make_key(name, labels)
            self.counters[key] += value

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        """Record gauge metric (current value that can go up or down)"""
        with self.lock:
            key = self._make_key(name, labels)
            self.gauges[key] = value

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """Record histogram metric (latencies, speeds, ...)"""
        with self.lock:
            key = self._make_key(name, labels)
            self.histograms[key].append(value)
            if len(self.histograms[key]) > self.max_points:
                self.histograms[key] = self.histograms[key][-self.max_points:]

    def get_counter(self, name: str, labels: Dict = None) -> int:
        with self.lock:
            return self.counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict = None) -> float:
        with self.lock:
            return self.gauges.get(self._make_key(name, labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        """
        Get histogram statistics

        Returns:
            Dictionary with count, min, max, mean, median, p95
        """
        with self.lock:
            values = list(self.histograms.get(self._make_key(name, labels), []))

        if not values:
            return {'count': 0}

        ordered = sorted(values)
        p95_index = max(0, int(len(ordered) * 0.95) - 1)
        return {
            'count': len(values),
            'min': ordered[0],
            'max': ordered[-1],
            'mean': statistics.mean(values),
            'median': statistics.median(values),
            'p95': ordered[p95_index]
        }

    def _make_key(self, name: str, labels: Dict = None) -> str:
        """Create unique key from name and labels"""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_all_metrics(self) -> Dict:
        """Get all current metric values"""
        with self.lock:
            histogram_keys = list(self.histograms.keys())
            result = {
                'counters': dict(self.counters),
                'gauges': dict(self.gauges),
            }
        result['histograms'] = {key: self.get_histogram_stats(key) for key in histogram_keys}
        result['timestamp'] = datetime.now().isoformat()
        return result

# ============================================================================
# HEALTH MONITOR
# ============================================================================

class HealthMonitor:
    """Run registered health checks on demand"""

    def __init__(self):
        self.checks: Dict[str, Callable] = {}

    def register_check(self, name: str, check_fn: Callable):
        """
        Register health check function

        Args:
            name: Check name
            check_fn: Function that returns HealthCheck or boolean
        """
        self.checks[name] = check_fn
        logger.debug(f"Registered health check: {name}")

    def run_checks(self) -> List[HealthCheck]:
        """Run all registered health checks"""
        results = []

        for name, check_fn in self.checks.items():
            start_time = time.time()
            try:
                result = check_fn()
                latency = (time.time() - start_time) * 1000

                if isinstance(result, HealthCheck):
                    result.latency_ms = latency
                    results.append(result)
                else:
                    results.append(HealthCheck(
                        component=name,
                        status='healthy' if result else 'unhealthy',
                        timestamp=datetime.now(),
                        latency_ms=latency
                    ))
            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                results.append(HealthCheck(
                    component=name,
                    status='unhealthy',
                    timestamp=datetime.now(),
                    details={'error': str(e)}
                ))

        return results

    def get_health_status(self) -> Dict:
        """Overall status plus individual check results"""
        results = self.run_checks()

        overall_status = 'healthy'
        if any(r.status == 'unhealthy' for r in results):
            overall_status = 'unhealthy'
        elif any(r.status == 'degraded' for r in results):
            overall_status = 'degraded'

        return {
            'overall_status': overall_status,
            'checks': [r.to_dict() for r in results],
            'timestamp': datetime.now().isoformat(),
            'check_count': len(results)
        }


def check_system_resources() -> HealthCheck:
    """Process/host resource check"""
    cpu_percent = psutil.cpu_percent(interval=None)
    memory = psutil.virtual_memory()
    process = psutil.Process()

    details = {
        'cpu_percent': cpu_percent,
        'memory_percent': memory.percent,
        'process_rss_mb': round(process.memory_info().rss / (1024 * 1024), 1),
        'threads': process.num_threads()
    }

    if memory.percent > 95 or cpu_percent > 95:
        status = 'unhealthy'
    elif memory.percent > 85 or cpu_percent > 85:
        status = 'degraded'
    else:
        status = 'healthy'

    return HealthCheck(
        component='system_resources',
        status=status,
        timestamp=datetime.now(),
        details=details
    )
