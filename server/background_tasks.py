"""
Background tasks for FleetDesk - status sweeps, stale client eviction and
license expiry.
"""
import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Any, Optional

from sqlalchemy.orm import Session

from config import config
from licenses import expire_licenses
from observability import structured_logger, metrics
from registry import ClientRegistry


class BackgroundTaskManager:
    """
    Owns the periodic maintenance loops for one registry.

    `start()` spawns the loops on the running event loop and `stop()` cancels
    them. The `run_*` methods perform a single pass and are what the loops
    call, so tests can single-step maintenance without starting anything.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        session_factory: Optional[Callable[[], Session]] = None,
        status_interval_seconds: Optional[float] = None,
        eviction_interval_seconds: Optional[float] = None,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self._status_interval_seconds = status_interval_seconds
        self._eviction_interval_seconds = eviction_interval_seconds
        self._running = False
        self._status_task: Optional[asyncio.Task] = None
        self._eviction_task: Optional[asyncio.Task] = None
        self._stats: Dict[str, Any] = {
            "status_sweeps": 0,
            "eviction_runs": 0,
            "clients_evicted": 0,
            "licenses_expired": 0,
            "errors": 0,
            "last_status_sweep_at": None,
            "last_eviction_at": None,
        }

    @property
    def status_interval_seconds(self) -> float:
        return self._status_interval_seconds or config.status_sweep_interval_seconds

    @property
    def eviction_interval_seconds(self) -> float:
        return self._eviction_interval_seconds or config.eviction_interval_seconds

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start all background tasks."""
        if self._running:
            return

        self._running = True
        self._status_task = asyncio.create_task(self._run_status_worker())
        self._eviction_task = asyncio.create_task(self._run_eviction_worker())

        structured_logger.log_event(
            "background_tasks.started",
            status_interval_seconds=self.status_interval_seconds,
            eviction_interval_seconds=self.eviction_interval_seconds
        )

    async def stop(self):
        """Stop all background tasks and wait for them to exit."""
        if not self._running:
            return

        self._running = False

        tasks = [t for t in (self._status_task, self._eviction_task) if t]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._status_task = None
        self._eviction_task = None

        structured_logger.log_event("background_tasks.stopped")

    def run_status_sweep(self, now: Optional[float] = None) -> int:
        went_offline = self.registry.sweep_offline(now)
        self._stats["status_sweeps"] += 1
        self._stats["last_status_sweep_at"] = datetime.now(timezone.utc).isoformat()

        stats = self.registry.stats()
        metrics.set_gauge("clients_total", stats["clients_total"])
        metrics.set_gauge("clients_online", stats["clients_online"])
        metrics.set_gauge("commands_pending", stats["pending_commands"])
        return went_offline

    def run_eviction(self, now: Optional[float] = None) -> Dict[str, int]:
        evicted = self.registry.evict_stale(now)
        self._stats["eviction_runs"] += 1
        self._stats["clients_evicted"] += len(evicted)
        self._stats["last_eviction_at"] = datetime.now(timezone.utc).isoformat()

        expired = 0
        if self.session_factory is not None:
            db = self.session_factory()
            try:
                expired = expire_licenses(db)
            finally:
                db.close()
            self._stats["licenses_expired"] += expired

        return {"evicted": len(evicted), "licenses_expired": expired}

    async def _run_status_worker(self):
        """Refresh stored online flags on a short cadence."""
        while self._running:
            try:
                self.run_status_sweep()
                await asyncio.sleep(self.status_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats["errors"] += 1
                structured_logger.log_event(
                    "status_sweep.error",
                    level="ERROR",
                    error=str(e),
                    error_type=type(e).__name__
                )
                await asyncio.sleep(self.status_interval_seconds)

    async def _run_eviction_worker(self):
        """Evict abandoned clients and expire licenses on a coarse cadence."""
        while self._running:
            try:
                await asyncio.sleep(self.eviction_interval_seconds)
                result = self.run_eviction()
                structured_logger.log_event("eviction.completed", **result)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats["errors"] += 1
                structured_logger.log_event(
                    "eviction.error",
                    level="ERROR",
                    error=str(e),
                    error_type=type(e).__name__
                )

    def get_stats(self) -> Dict[str, Any]:
        return {"running": self._running, **self._stats}
