"""
Diagnostic query scheduler

One coordinating loop decides which catalog entries are due and hands them
to a bounded worker pool. Each entry cycles
IDLE -> RUNNING -> {SUCCEEDED, FAILED, SKIPPED} -> IDLE.
"""

import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Condition, Event, Thread
from typing import Callable, Deque, Dict, List, Mapping, Optional, Set

from dmvwatch.core.constants import (
    DEFAULT_MAX_IN_FLIGHT,
    DEFAULT_POLL_INTERVAL,
    EVENT_HISTORY_SIZE,
    QueryState,
    RunOutcome,
)
from dmvwatch.core.exceptions import ConfigError, DmvWatchError, UnknownQueryError
from dmvwatch.core.logger import get_logger, log_exception, run_context
from dmvwatch.models.run_models import RunResult, SchedulerEvent
from dmvwatch.services.executor import QueryExecutor
from dmvwatch.services.query_catalog import QueryCatalog
from dmvwatch.services.result_store import ResultStore

logger = get_logger('services.scheduler')


@dataclass
class _Slot:
    """Scheduling bookkeeping for one query id"""
    interval: float
    next_due: Optional[float] = None
    state: QueryState = QueryState.IDLE


class DiagnosticScheduler:
    """
    Cooperative scheduler over a QueryCatalog

    ``tick()`` is the whole scheduling decision and can be driven by an
    external trigger (cron, tests with a manual clock); ``start()`` runs it
    on a background thread every ``poll_interval`` seconds.

    A trigger that fires while the same query is still running is dropped
    and recorded as SKIPPED. Due queries beyond ``max_in_flight`` stay due
    and are dispatched on a later tick once a worker frees up.
    """

    def __init__(
        self,
        catalog: QueryCatalog,
        executor: QueryExecutor,
        store: ResultStore,
        intervals: Mapping[str, float],
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            catalog: Entries that may be scheduled
            executor: Runs one entry under a deadline
            store: Receives every successful RunResult
            intervals: query id -> seconds between triggers
            max_in_flight: Global cap on concurrently running queries
            clock: Monotonic time source, in seconds
            poll_interval: Sleep between ticks of the background loop
            timeout: Per-call deadline (executor default when None)

        Raises:
            ConfigError: max_in_flight < 1 or a non-positive interval
            UnknownQueryError: An interval names a query not in the catalog
        """
        if max_in_flight < 1:
            raise ConfigError("max_in_flight must be at least 1", {"max_in_flight": max_in_flight})

        self._catalog = catalog
        self._executor = executor
        self._store = store
        self._clock = clock
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._max_in_flight = max_in_flight

        self._slots: Dict[str, _Slot] = {}
        # Unscheduled ids currently inside run_now()
        self._adhoc: Set[str] = set()
        for query in catalog:
            if query.id in intervals:
                seconds = float(intervals[query.id])
                if seconds <= 0:
                    raise ConfigError(f"Interval for '{query.id}' must be positive", {"query_id": query.id})
                self._slots[query.id] = _Slot(interval=seconds)
        unknown = [query_id for query_id in intervals if query_id not in catalog]
        if unknown:
            raise UnknownQueryError(unknown[0])

        self._cond = Condition()
        self._in_flight = 0
        self._stopped = False
        self._events: Deque[SchedulerEvent] = deque(maxlen=EVENT_HISTORY_SIZE)
        self._pool = ThreadPoolExecutor(max_workers=max_in_flight, thread_name_prefix="dmvwatch-worker")
        self._loop_thread: Optional[Thread] = None
        self._wakeup = Event()

    # ==========================================================================
    # STATE
    # ==========================================================================

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def is_running(self) -> bool:
        return self._loop_thread is not None and self._loop_thread.is_alive()

    @property
    def scheduled_ids(self) -> List[str]:
        return list(self._slots)

    def state(self, query_id: str) -> QueryState:
        with self._cond:
            slot = self._slots.get(query_id)
            if slot is not None:
                return slot.state
            if query_id in self._adhoc:
                return QueryState.RUNNING
            if query_id in self._catalog:
                return QueryState.IDLE
            raise UnknownQueryError(query_id)

    def events(self) -> List[SchedulerEvent]:
        with self._cond:
            return list(self._events)

    def _record(self, query_id: str, outcome: RunOutcome, at: float, detail: str = "") -> None:
        # Caller holds self._cond
        self._events.append(SchedulerEvent(query_id=query_id, outcome=outcome, at=at, detail=detail))
        extra = run_context(query_id, outcome)
        if outcome == RunOutcome.FAILED:
            logger.error(f"Run failed: {detail}", extra=extra)
        elif outcome == RunOutcome.SKIPPED:
            logger.warning(f"Trigger skipped: {detail}", extra=extra)
        else:
            logger.info(f"Run stored: {detail}", extra=extra)

    # ==========================================================================
    # SCHEDULING
    # ==========================================================================

    def tick(self, now: Optional[float] = None) -> List[str]:
        """
        Evaluate every scheduled query once

        Returns:
            Ids dispatched to the worker pool during this tick
        """
        now = self._clock() if now is None else now
        dispatched: List[str] = []

        with self._cond:
            if self._stopped:
                return dispatched

            for query_id, slot in self._slots.items():
                if slot.next_due is None:
                    # First tick after start: everything is due immediately
                    slot.next_due = now
                if now < slot.next_due:
                    continue

                if slot.state == QueryState.RUNNING:
                    self._record(query_id, RunOutcome.SKIPPED, now, "previous run still in progress")
                    self._advance(slot, now)
                    continue

                if self._in_flight >= self._max_in_flight:
                    # Stays due; picked up once a worker frees up
                    continue

                slot.state = QueryState.RUNNING
                self._in_flight += 1
                self._advance(slot, now)
                dispatched.append(query_id)

        for query_id in list(dispatched):
            logger.debug("Dispatching", extra=run_context(query_id))
            try:
                self._pool.submit(self._run_slot, query_id)
            except RuntimeError:
                # Pool shut down by a concurrent stop()
                with self._cond:
                    self._slots[query_id].state = QueryState.IDLE
                    self._in_flight -= 1
                    self._cond.notify_all()
                dispatched.remove(query_id)

        return dispatched

    @staticmethod
    def _advance(slot: _Slot, now: float) -> None:
        # Missed intervals collapse into a single trigger
        while slot.next_due <= now:
            slot.next_due += slot.interval

    def _run_slot(self, query_id: str) -> None:
        outcome, detail = RunOutcome.FAILED, "worker interrupted"
        try:
            outcome, detail = self._execute_and_store(query_id)
        finally:
            with self._cond:
                self._slots[query_id].state = QueryState.IDLE
                self._in_flight -= 1
                self._record(query_id, outcome, self._clock(), detail)
                self._cond.notify_all()
            self._wakeup.set()

    def _execute_and_store(self, query_id: str):
        query = self._catalog.get(query_id)
        try:
            result = self._executor.execute(query, timeout=self._timeout)
            self._store.append(result)
        except DmvWatchError as e:
            return RunOutcome.FAILED, str(e)
        except Exception as e:
            log_exception(logger, e, "Unexpected error during run", query_id=query_id)
            return RunOutcome.FAILED, f"unexpected error: {e}"
        return RunOutcome.SUCCEEDED, f"{result.row_count} rows in {result.duration_ms:.0f} ms"

    def run_now(self, query_id: str, timeout: Optional[float] = None) -> Optional[RunResult]:
        """
        Ad hoc synchronous run through the same state machine

        Counts against ``max_in_flight`` like a scheduled run. Running an
        unscheduled id does not add it to the schedule.

        Returns:
            The stored RunResult, or None when the query was already running
            or every in-flight slot was taken (recorded as SKIPPED)

        Raises:
            UnknownQueryError, ExecutionError, QueryTimeoutError, StorageError
        """
        query = self._catalog.get(query_id)
        now = self._clock()
        with self._cond:
            slot = self._slots.get(query_id)
            running = slot.state == QueryState.RUNNING if slot is not None else query_id in self._adhoc
            if running:
                self._record(query_id, RunOutcome.SKIPPED, now, "previous run still in progress")
                return None
            if self._in_flight >= self._max_in_flight:
                self._record(query_id, RunOutcome.SKIPPED, now, "max_in_flight reached")
                return None
            if slot is not None:
                slot.state = QueryState.RUNNING
            else:
                self._adhoc.add(query_id)
            self._in_flight += 1

        outcome, detail = RunOutcome.FAILED, ""
        try:
            result = self._executor.execute(query, timeout=timeout if timeout is not None else self._timeout)
            self._store.append(result)
            outcome, detail = RunOutcome.SUCCEEDED, f"{result.row_count} rows in {result.duration_ms:.0f} ms"
            return result
        except DmvWatchError as e:
            detail = str(e)
            raise
        finally:
            with self._cond:
                if slot is not None:
                    slot.state = QueryState.IDLE
                else:
                    self._adhoc.discard(query_id)
                self._in_flight -= 1
                self._record(query_id, outcome, self._clock(), detail)
                self._cond.notify_all()
            self._wakeup.set()

    # ==========================================================================
    # LIFECYCLE
    # ==========================================================================

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no query is running; False if the timeout expired"""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._in_flight == 0 and all(
                    slot.state == QueryState.IDLE for slot in self._slots.values()
                ),
                timeout=timeout,
            )

    def start(self) -> None:
        """Run the tick loop on a background thread"""
        if self.is_running:
            return
        with self._cond:
            if self._stopped:
                raise RuntimeError("Scheduler was stopped and cannot be restarted")
        logger.info(
            f"Scheduler started: {len(self._slots)} queries, max_in_flight={self._max_in_flight}"
        )
        self._loop_thread = Thread(target=self._loop, name="dmvwatch-scheduler", daemon=True)
        self._loop_thread.start()

    def _loop(self) -> None:
        while True:
            with self._cond:
                if self._stopped:
                    return
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            # Woken early when a worker finishes so waiting queries get its slot
            self._wakeup.wait(self._poll_interval)
            self._wakeup.clear()

    def run_forever(self) -> None:
        """Start and block the calling thread until stop() is called"""
        self.start()
        while self.is_running:
            self._loop_thread.join(timeout=0.5)

    def stop(self, wait: bool = True) -> None:
        """
        Stop triggering new runs

        In-flight calls finish or end at their own deadline; with
        ``wait=True`` this blocks until they have.
        """
        with self._cond:
            if self._stopped:
                return
            self._stopped = True
            running = self._in_flight
        self._wakeup.set()
        logger.info(f"Scheduler stopping ({running} queries in flight)")

        if self._loop_thread is not None and self._loop_thread.is_alive():
            self._loop_thread.join(timeout=self._poll_interval * 2 + 1)
        self._pool.shutdown(wait=wait)
        logger.info("Scheduler stopped")
