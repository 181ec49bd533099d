#control_plane\monitoring\metrics.py
"""Metric store - host samples, latest lookup and retention pruning."""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import psutil
from sqlalchemy import text
from sqlalchemy.engine import Engine

from control_plane.core.clock import Clock, SystemClock
from control_plane.core.models import MetricSample
from control_plane.core.repository import MetricRepository

logger = logging.getLogger(__name__)


# ============================================
# Samplers
# ============================================

class MetricSampler(ABC):

    @abstractmethod
    def collect(self) -> Dict[str, float]:
        """Current host readings keyed by MetricSample field name."""
        raise NotImplementedError


class DatabaseActivityProbe:
    """Connection and backend process counts of the control plane's own database."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def collect(self) -> Tuple[int, int]:
        """(active connections, server processes)"""
        with self._engine.connect() as conn:
            if self._engine.dialect.name == "postgresql":
                active = conn.execute(text(
                    "SELECT count(*) FROM pg_stat_activity WHERE state = 'active'"
                )).scalar()
                processes = conn.execute(text("SELECT count(*) FROM pg_stat_activity")).scalar()
                return int(active or 0), int(processes or 0)

            # SQLite: one in-process connection, no server backends
            conn.execute(text("SELECT 1"))
            return 1, 0


class HostMetricSampler(MetricSampler):
    """
    Host sampler on psutil.

    Every probe is independent: a failing probe is logged and reports 0
    so one unavailable counter never drops the whole sample.
    """

    def __init__(
        self,
        disk_path: str = "/",
        cpu_interval: float = 0.2,
        database: Optional[DatabaseActivityProbe] = None,
    ):
        self.disk_path = disk_path
        self.cpu_interval = cpu_interval
        self.database = database

    def collect(self) -> Dict[str, float]:
        memory_usage, memory_total, memory_used = self._probe("memory", self._memory, (0.0, 0, 0))
        disk_usage, disk_total, disk_used = self._probe("disk", self._disk, (0.0, 0, 0))
        disk_read, disk_write = self._probe("disk io", self._disk_io, (0, 0))
        rx_bytes, tx_bytes = self._probe("network", self._network, (0, 0))
        db_connections, db_processes = self._probe("database", self._database, (0, 0))

        return {
            "cpu_usage": self._probe("cpu", self._cpu_usage, 0.0),
            "memory_usage": memory_usage,
            "disk_usage": disk_usage,
            "memory_total": memory_total,
            "memory_used": memory_used,
            "disk_total": disk_total,
            "disk_used": disk_used,
            "disk_read_bytes": disk_read,
            "disk_write_bytes": disk_write,
            "network_rx_bytes": rx_bytes,
            "network_tx_bytes": tx_bytes,
            "db_connections": db_connections,
            "db_processes": db_processes,
        }

    def _probe(self, name, func, default):
        try:
            return func()
        except Exception as e:
            logger.error(f"[metrics] Failed to get {name}: {e}")
            return default

    # -------------------------
    # PROBES
    # -------------------------

    def _cpu_usage(self) -> float:
        return float(psutil.cpu_percent(interval=self.cpu_interval))

    def _memory(self) -> Tuple[float, int, int]:
        memory = psutil.virtual_memory()
        # used excludes reclaimable cache, same as the percent figure
        return float(memory.percent), int(memory.total), int(memory.total - memory.available)

    def _disk(self) -> Tuple[float, int, int]:
        disk = psutil.disk_usage(self.disk_path)
        return float(disk.percent), int(disk.total), int(disk.used)

    def _disk_io(self) -> Tuple[int, int]:
        counters = psutil.disk_io_counters()
        if counters is None:
            # No block devices visible (containers)
            return 0, 0
        return int(counters.read_bytes), int(counters.write_bytes)

    def _network(self) -> Tuple[int, int]:
        rx_bytes = tx_bytes = 0
        for interface, counters in psutil.net_io_counters(pernic=True).items():
            if interface == "lo":
                continue
            rx_bytes += counters.bytes_recv
            tx_bytes += counters.bytes_sent
        return rx_bytes, tx_bytes

    def _database(self) -> Tuple[int, int]:
        if self.database is None:
            return 0, 0
        return self.database.collect()


# ============================================
# Store
# ============================================

class MetricStore:
    """Append-only time series of host samples."""

    def __init__(
        self,
        repository: MetricRepository,
        sampler: Optional[MetricSampler] = None,
        clock: Optional[Clock] = None,
        retention_hours: int = 24,
    ):
        self._repo = repository
        self._sampler = sampler or HostMetricSampler()
        self._clock = clock or SystemClock()
        self.retention_hours = retention_hours

    def record(self) -> MetricSample:
        readings = self._sampler.collect()
        sample = MetricSample(recorded_at=self._clock.now(), **readings)
        sample = self._repo.add(sample)

        logger.info(
            f"[metrics] Recorded sample {sample.sample_id}: cpu={sample.cpu_usage}% "
            f"mem={sample.memory_usage}% disk={sample.disk_usage}%"
        )
        return sample

    def latest(self) -> Optional[MetricSample]:
        return self._repo.latest()

    def recent(self, hours: int = 24) -> List[MetricSample]:
        return self._repo.list_since(self._clock.now() - timedelta(hours=hours))

    def prune(self) -> int:
        cutoff = self._clock.now() - timedelta(hours=self.retention_hours)
        deleted = self._repo.delete_before(cutoff)
        if deleted:
            logger.info(f"[metrics] Pruned {deleted} sample(s) older than {self.retention_hours}h")
        return deleted

    def record_and_prune(self) -> MetricSample:
        """The periodic monitoring job: record, then apply retention."""
        sample = self.record()
        self.prune()
        return sample
