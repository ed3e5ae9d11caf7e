import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List

import numpy as np
import psutil

logger = logging.getLogger(__name__)


@dataclass
class ProcessMetrics:
    cpu_percent: float
    memory_rss_mb: float


class ReloadMetrics:
    def __init__(self, slow_compile_ms: float = 2000.0, history: int = 500):
        self.metrics: Dict[str, List[float]] = {
            'compile_time_ms': [],
            'units_recompiled': [],
            'reload_time_ms': [],
        }
        self.counters: Dict[str, int] = {
            'compiles': 0,
            'compile_failures': 0,
            'compiles_aborted': 0,
            'reloads_broadcast': 0,
            'state_resets': 0,
        }
        self.alert_thresholds = {
            'compile_time_ms': slow_compile_ms,
        }
        self.history = history
        self._subscribers: List[Callable[[List[str]], Awaitable[None]]] = []

    @staticmethod
    def time() -> float:
        return time.monotonic()

    def record(self, name: str, value: float):
        """Append a sample, keeping the most recent `history` values"""
        samples = self.metrics.setdefault(name, [])
        samples.append(float(value))
        if len(samples) > self.history:
            del samples[: len(samples) - self.history]

    def increment(self, name: str, amount: int = 1):
        self.counters[name] = self.counters.get(name, 0) + amount

    async def record_compile(self, duration_ms: float, units: int, success: bool):
        self.increment('compiles')
        if not success:
            self.increment('compile_failures')
        self.record('compile_time_ms', duration_ms)
        self.record('units_recompiled', units)
        await self.alert_if_necessary({'compile_time_ms': duration_ms})

    async def alert_if_necessary(self, values: Dict[str, float]):
        """Check if any value exceeds its threshold and alert if necessary"""
        alerts = []
        for name, value in values.items():
            threshold = self.alert_thresholds.get(name)
            if threshold is not None and value > threshold:
                alerts.append(f"Slow {name.replace('_', ' ')}: {value:.0f} > {threshold:.0f}")
        if alerts:
            for alert in alerts:
                logger.warning(alert)
            await self._notify_subscribers(alerts)

    def subscribe(self, callback: Callable[[List[str]], Awaitable[None]]):
        """Subscribe to metric alerts"""
        self._subscribers.append(callback)

    async def _notify_subscribers(self, alerts: List[str]):
        for subscriber in self._subscribers:
            try:
                await subscriber(alerts)
            except Exception as e:
                logger.error(f"Error notifying metrics subscriber: {e}")

    def collect_process_metrics(self) -> ProcessMetrics:
        process = psutil.Process()
        return ProcessMetrics(
            cpu_percent=process.cpu_percent(interval=None),
            memory_rss_mb=process.memory_info().rss / (1024 * 1024),
        )

    def summary(self) -> Dict[str, Any]:
        """Counters plus count/mean/p50/p95 for every sample series"""
        series = {}
        for name, samples in self.metrics.items():
            if not samples:
                series[name] = {'count': 0}
                continue
            values = np.asarray(samples, dtype=float)
            series[name] = {
                'count': int(values.size),
                'mean': float(values.mean()),
                'p50': float(np.percentile(values, 50)),
                'p95': float(np.percentile(values, 95)),
                'max': float(values.max()),
            }
        process = self.collect_process_metrics()
        return {
            'counters': dict(self.counters),
            'series': series,
            'process': {'cpu_percent': process.cpu_percent, 'memory_rss_mb': process.memory_rss_mb},
        }
