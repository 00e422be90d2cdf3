from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Any, Callable, Deque, Mapping, Optional

from collector import DROP_CAPACITY, DROP_SCHEDULE_LAG, MetricsCollector
from config import ScenarioConfig
from loadgen import RequestIssuer, RequestOutcome, RequestSpec, abandoned_outcome, now_unix_ms
from workloads import Workload, WorkloadContext


logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_DRAINING = "draining"
STATE_STOPPED = "stopped"


class SchedulerStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class SchedulerSummary:
    execution_model: str
    state: str
    dispatched_iterations: int
    peak_workers: int
    peak_busy_workers: int
    workers_spawned: int
    workers_reclaimed: int
    abandoned_workers: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def worker_rng(seed: Optional[int], worker_id: int) -> random.Random:
    if seed is None:
        return random.Random()
    return random.Random(seed + (worker_id * 971) + 17)


class PoolWorker:
    def __init__(self, worker_id: int, rng: random.Random, now: float) -> None:
        self.worker_id = worker_id
        self.rng = rng
        self.inbox: asyncio.Queue[Optional[int]] = asyncio.Queue()
        self.busy = False
        self.idle_since = now


class WorkerPool:
    """
    Arena of worker slots sized between ``min_workers`` and ``max_workers``.

    Only the dispatcher grows or reclaims slots. A worker hands itself back
    through ``release`` when its iteration finishes, which flips it to idle
    but never changes pool membership.
    """

    def __init__(
        self,
        min_workers: int,
        max_workers: Optional[int],
        spawn: Callable[[PoolWorker], None],
        make_rng: Callable[[int], random.Random],
        clock: Callable[[], float],
    ) -> None:
        self.min_workers = min_workers
        self.max_workers = max_workers
        self._spawn = spawn
        self._make_rng = make_rng
        self._clock = clock
        self._workers: dict[int, PoolWorker] = {}
        # Most recently released on the right; reclaim takes from the left.
        self._idle: Deque[PoolWorker] = deque()
        self._next_id = 0
        self._busy = 0
        self.spawned = 0
        self.reclaimed = 0
        self.peak_size = 0
        self.peak_busy = 0

    @property
    def size(self) -> int:
        return len(self._workers)

    @property
    def busy(self) -> int:
        return self._busy

    @property
    def idle(self) -> int:
        return len(self._idle)

    def prefill(self) -> None:
        while self.size < self.min_workers:
            self._idle.append(self._grow())

    def _grow(self) -> PoolWorker:
        worker = PoolWorker(self._next_id, self._make_rng(self._next_id), self._clock())
        self._next_id += 1
        self._workers[worker.worker_id] = worker
        self.spawned += 1
        self.peak_size = max(self.peak_size, self.size)
        self._spawn(worker)
        return worker

    def acquire(self) -> Optional[PoolWorker]:
        if self._idle:
            worker = self._idle.pop()
        elif self.max_workers is None or self.size < self.max_workers:
            worker = self._grow()
            logger.debug("Worker pool grew to %d", self.size)
        else:
            return None
        worker.busy = True
        self._busy += 1
        self.peak_busy = max(self.peak_busy, self._busy)
        return worker

    def release(self, worker: PoolWorker) -> None:
        if not worker.busy:
            return
        worker.busy = False
        worker.idle_since = self._clock()
        self._busy -= 1
        if worker.worker_id in self._workers:
            self._idle.append(worker)

    def reclaim_idle(self, grace_s: float) -> int:
        now = self._clock()
        reclaimed = 0
        while self._idle and self.size > self.min_workers:
            oldest = self._idle[0]
            if now - oldest.idle_since < grace_s:
                break
            self._idle.popleft()
            del self._workers[oldest.worker_id]
            oldest.inbox.put_nowait(None)
            reclaimed += 1
        if reclaimed:
            self.reclaimed += reclaimed
            logger.debug("Reclaimed %d idle workers, pool size now %d", reclaimed, self.size)
        return reclaimed

    def close(self) -> None:
        for worker in self._workers.values():
            worker.inbox.put_nowait(None)
        self._idle.clear()


class ScenarioScheduler:
    def __init__(
        self,
        config: ScenarioConfig,
        workload: Workload,
        issuer: RequestIssuer,
        metrics: MetricsCollector,
        *,
        seed: Optional[int] = None,
        vars: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.config = config
        self._workload = workload
        self._issuer = issuer
        self._metrics = metrics
        self._seed = seed
        self._vars = MappingProxyType(dict(vars or {}))

        self._state = STATE_IDLE
        self._stop_event: Optional[asyncio.Event] = None
        self._started_at: Optional[float] = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._pool: Optional[WorkerPool] = None
        self._dispatched = 0
        self._abandoned_workers = 0
        self._busy = 0
        self._peak_busy = 0
        self._capacity_warned = False

    @property
    def state(self) -> str:
        return self._state

    @property
    def dispatched_iterations(self) -> int:
        return self._dispatched

    @property
    def busy_workers(self) -> int:
        if self._pool is not None:
            return self._pool.busy
        return self._busy

    @property
    def pool_size(self) -> int:
        if self._pool is not None:
            return self._pool.size
        return len(self._tasks)

    async def start(self) -> None:
        if self._state != STATE_IDLE:
            raise SchedulerStateError(f"Cannot start scheduler in state {self._state}")
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._started_at = loop.time()
        self._state = STATE_RUNNING

        if self.config.is_open_loop:
            self._pool = WorkerPool(
                min_workers=self.config.min_workers,
                max_workers=self.config.max_workers,
                spawn=self._spawn_pool_worker,
                make_rng=lambda worker_id: worker_rng(self._seed, worker_id),
                clock=loop.time,
            )
            self._pool.prefill()
            self._dispatcher = asyncio.create_task(self._dispatch_loop())
            logger.info(
                "Open-loop scheduler started: %.2f iterations per %.3fs, workers %d..%s",
                self.config.rate,
                self.config.time_unit_s,
                self.config.min_workers,
                self.config.max_workers if self.config.max_workers is not None else "unbounded",
            )
        else:
            for worker_id in range(self.config.workers):
                self._track(asyncio.create_task(self._closed_loop_worker(worker_id)))
            logger.info("Closed-loop scheduler started with %d workers", self.config.workers)

    def request_stop(self) -> None:
        """Stop dispatching new iterations. Safe to call repeatedly."""
        if self._state == STATE_RUNNING:
            self._state = STATE_DRAINING
            logger.info("Scheduler draining, %d workers busy", self.busy_workers)
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_stop_requested(self, timeout: float) -> bool:
        if self._stop_event is None:
            raise SchedulerStateError("Scheduler has not been started")
        if self._stop_event.is_set():
            return True
        if timeout <= 0:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._stop_event.is_set()

    async def drain(self) -> SchedulerSummary:
        if self._state == STATE_IDLE:
            raise SchedulerStateError("Cannot drain a scheduler that never started")
        if self._state == STATE_STOPPED:
            return self.summary()
        self.request_stop()

        if self._dispatcher is not None:
            results = await asyncio.gather(self._dispatcher, return_exceptions=True)
            if isinstance(results[0], BaseException) and not isinstance(
                results[0], asyncio.CancelledError
            ):
                logger.error("Dispatcher failed: %s", results[0])
        if self._pool is not None:
            self._pool.close()

        pending_tasks = [task for task in self._tasks if not task.done()]
        grace_s = self.config.graceful_stop_s
        if pending_tasks:
            _done, pending = await asyncio.wait(pending_tasks, timeout=grace_s)
            if pending:
                logger.warning(
                    "Abandoning %d workers still in flight after %.2fs grace period",
                    len(pending),
                    grace_s,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                self._abandoned_workers = len(pending)

        self._state = STATE_STOPPED
        summary = self.summary()
        logger.info(
            "Scheduler stopped: %d iterations dispatched, peak %d busy workers",
            summary.dispatched_iterations,
            summary.peak_busy_workers,
        )
        return summary

    async def run(self, duration_s: Optional[float] = None) -> SchedulerSummary:
        await self.start()
        try:
            await self.wait_stop_requested(
                self.config.duration_s if duration_s is None else duration_s
            )
        finally:
            summary = await self.drain()
        return summary

    def summary(self) -> SchedulerSummary:
        pool = self._pool
        if pool is not None:
            peak_workers = pool.peak_size
            peak_busy = pool.peak_busy
            spawned = pool.spawned
            reclaimed = pool.reclaimed
        else:
            spawned = self.config.workers if self._state != STATE_IDLE else 0
            peak_workers = spawned
            peak_busy = self._peak_busy
            reclaimed = 0
        return SchedulerSummary(
            execution_model=self.config.execution_model,
            state=self._state,
            dispatched_iterations=self._dispatched,
            peak_workers=peak_workers,
            peak_busy_workers=peak_busy,
            workers_spawned=spawned,
            workers_reclaimed=reclaimed,
            abandoned_workers=self._abandoned_workers,
        )

    def _track(self, task: asyncio.Task[None]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Worker task failed: %s", exc, exc_info=exc)

    def _spawn_pool_worker(self, worker: PoolWorker) -> None:
        self._track(asyncio.create_task(self._pool_worker(worker)))

    # ---- open-loop ----

    async def _dispatch_loop(self) -> None:
        assert self._stop_event is not None and self._started_at is not None
        assert self._pool is not None
        interval = self.config.tick_interval_s
        total_ticks = self.config.total_ticks
        assert interval is not None and total_ticks is not None
        max_catchup = self.config.max_catchup_ticks
        loop = asyncio.get_running_loop()

        issued = 0
        while issued < total_ticks and not self._stop_event.is_set():
            now = loop.time()
            due = min(total_ticks, int((now - self._started_at) / interval) + 1)
            backlog = due - issued
            if max_catchup is not None and backlog > max_catchup + 1:
                skipped = backlog - (max_catchup + 1)
                self._metrics.record_dropped_iteration(DROP_SCHEDULE_LAG, skipped)
                issued += skipped
                logger.debug("Dispatcher fell %d ticks behind, skipped them", skipped)
            while issued < due:
                self._dispatch(issued)
                issued += 1

            self._pool.reclaim_idle(self.config.idle_reclaim_s)
            if issued >= total_ticks:
                break
            delay = self._started_at + (issued * interval) - loop.time()
            if delay <= 0:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.debug("Dispatcher finished after %d of %d ticks", issued, total_ticks)

    def _dispatch(self, iteration: int) -> None:
        assert self._pool is not None
        worker = self._pool.acquire()
        if worker is None:
            self._metrics.record_dropped_iteration(DROP_CAPACITY)
            if not self._capacity_warned:
                self._capacity_warned = True
                logger.warning(
                    "Worker pool exhausted at %d busy workers, dropping iterations",
                    self._pool.busy,
                )
            return
        self._dispatched += 1
        worker.inbox.put_nowait(iteration)

    async def _pool_worker(self, worker: PoolWorker) -> None:
        assert self._pool is not None
        while True:
            iteration = await worker.inbox.get()
            if iteration is None:
                return
            try:
                await self._run_iteration(worker.worker_id, iteration, worker.rng)
                await self._pause()
            finally:
                self._pool.release(worker)

    # ---- closed-loop ----

    async def _closed_loop_worker(self, worker_id: int) -> None:
        assert self._stop_event is not None
        rng = worker_rng(self._seed, worker_id)
        iteration = 0
        while not self._stop_event.is_set():
            self._dispatched += 1
            self._busy += 1
            self._peak_busy = max(self._peak_busy, self._busy)
            try:
                await self._run_iteration(worker_id, iteration, rng)
            finally:
                self._busy -= 1
            iteration += 1
            await self._pause()

    # ---- shared ----

    async def _pause(self) -> None:
        assert self._stop_event is not None
        think_time_s = self.config.think_time_s
        if think_time_s <= 0 or self._stop_event.is_set():
            # Always yield so instantly-completing requests cannot starve the loop.
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=think_time_s)
        except asyncio.TimeoutError:
            pass

    async def _run_iteration(self, worker_id: int, iteration: int, rng: random.Random) -> None:
        ctx = WorkloadContext(worker_id=worker_id, iteration=iteration, rng=rng, vars=self._vars)
        try:
            specs = list(self._workload(ctx))
            for spec in specs:
                if not isinstance(spec, RequestSpec):
                    raise TypeError(f"Workload produced {type(spec).__name__}, expected RequestSpec")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Workload failed on worker %d iteration %d: %s", worker_id, iteration, exc)
            self._metrics.record_iteration_error()
            return

        for spec in specs:
            self._metrics.record(await self._issue(spec))
        self._metrics.record_iteration()

    async def _issue(self, spec: RequestSpec) -> RequestOutcome:
        started = time.monotonic()
        timestamp_ms = now_unix_ms()
        try:
            return await self._issuer.issue(spec)
        except asyncio.CancelledError:
            self._metrics.record(
                abandoned_outcome(spec, self._issuer.base_url, started, timestamp_ms)
            )
            raise
