"""
Expansion calculator - runs candidate scoring off the caller's thread.

A CalculationWorker is a small actor: a daemon thread that owns an inbox
queue and answers CALCULATE_SUGGESTIONS messages with CALCULATION_COMPLETE
or CALCULATION_ERROR. The ExpansionCalculator keeps one request in flight,
hands out a Future per request, and replaces the worker on cancel.

Each worker carries a generation number; replies from a worker that has
since been replaced are dropped.
"""

import queue
import threading
import time
import logging
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from expansion.models import CalculationRequest, CalculationResult
from expansion.scoring import (
    fallback_confidence,
    generate_cache_key,
    select_suggestions,
    worker_confidence,
)

log = logging.getLogger(__name__)

CALCULATE_SUGGESTIONS = "CALCULATE_SUGGESTIONS"
CALCULATION_COMPLETE = "CALCULATION_COMPLETE"
CALCULATION_ERROR = "CALCULATION_ERROR"


class CalculationInProgress(Exception):
    """A calculation is already running on this calculator."""


class CalculationCancelled(Exception):
    """The pending calculation was cancelled before it finished."""


class CalculationFailed(Exception):
    """The worker reported CALCULATION_ERROR."""


def run_calculation(
    request: CalculationRequest,
    confidence_fn: Callable = worker_confidence,
) -> CalculationResult:
    """Score a request and wrap the suggestions with run metadata."""
    start = time.perf_counter()
    suggestions, filtered = select_suggestions(request, confidence_fn=confidence_fn)
    elapsed_ms = int(round((time.perf_counter() - start) * 1000))

    return CalculationResult(
        suggestions=suggestions,
        total_candidates=len(request.candidate_sites),
        filtered_candidates=filtered,
        calculation_time_ms=elapsed_ms,
        cache_key=generate_cache_key(
            request.scope, request.intensity, request.model_version, request.data_mode
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════
# WORKER
# ═══════════════════════════════════════════════════════════════════════════
class CalculationWorker(threading.Thread):
    """
    Thread actor that processes calculation messages from its inbox.

    Args:
        generation: Identifier echoed with every reply
        reply: Called as reply(generation, message) with the response
    """

    def __init__(self, generation: int, reply: Callable[[int, Dict[str, Any]], None]):
        super().__init__(name=f"calculation-worker-{generation}", daemon=True)
        self.generation = generation
        self._reply = reply
        self._inbox: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()
        self._terminated = threading.Event()

    def post(self, message: Dict[str, Any]):
        self._inbox.put(message)

    def terminate(self):
        """Stop accepting work. A calculation already underway is abandoned."""
        self._terminated.set()
        self._inbox.put(None)

    @property
    def terminated(self) -> bool:
        return self._terminated.is_set()

    def run(self):
        log.debug(f"{self.name} started")
        while not self._terminated.is_set():
            message = self._inbox.get()
            if message is None:
                break

            response = self.handle(message)
            if response is None or self._terminated.is_set():
                continue
            self._reply(self.generation, response)
        log.debug(f"{self.name} stopped")

    def handle(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if message.get("type") != CALCULATE_SUGGESTIONS:
            log.warning(f"{self.name} ignoring unknown message type {message.get('type')!r}")
            return None

        try:
            request = CalculationRequest.from_dict(message["payload"])
            result = run_calculation(request, confidence_fn=worker_confidence)
        except Exception as e:
            log.exception(f"{self.name} calculation failed")
            return {"type": CALCULATION_ERROR, "payload": {"error": str(e) or type(e).__name__}}

        return {"type": CALCULATION_COMPLETE, "payload": result.to_dict()}


WorkerFactory = Callable[[int, Callable[[int, Dict[str, Any]], None]], CalculationWorker]


# ═══════════════════════════════════════════════════════════════════════════
# CALCULATOR
# ═══════════════════════════════════════════════════════════════════════════
class ExpansionCalculator:
    """
    Single-flight calculation front end with a synchronous fallback.

    Usage:
        calculator = ExpansionCalculator()
        future = calculator.calculate(request)
        result = future.result(timeout=30)
        calculator.shutdown()
    """

    def __init__(
        self,
        use_worker: bool = True,
        fallback_enabled: bool = True,
        worker_factory: Optional[WorkerFactory] = None,
    ):
        self.use_worker = use_worker
        self.fallback_enabled = fallback_enabled
        self._worker_factory = worker_factory or CalculationWorker

        self._lock = threading.RLock()
        self._generation = 0
        self._worker: Optional[CalculationWorker] = None
        self._pending: Optional[Future] = None
        self._fallback_running = False

        self._metrics_lock = threading.Lock()
        self.last_calculation_time = 0
        self.average_calculation_time = 0
        self.total_calculations = 0

        if self.use_worker:
            self._start_worker()

    def _start_worker(self):
        self._generation += 1
        try:
            worker = self._worker_factory(self._generation, self._on_reply)
            worker.start()
        except RuntimeError as e:
            log.error(f"Failed to start calculation worker: {e}")
            self._worker = None
            return
        self._worker = worker

    @property
    def worker_available(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def is_calculating(self) -> bool:
        with self._lock:
            return self._fallback_running or (self._pending is not None and not self._pending.done())

    def calculate(self, request: CalculationRequest) -> Future:
        """
        Start a calculation.

        Returns:
            Future resolving to a CalculationResult. Already resolved when the
            synchronous fallback ran.

        Raises:
            CalculationInProgress: another calculation has not finished yet,
                on the worker or in a fallback on another thread
            RuntimeError: no worker available and fallback disabled
        """
        with self._lock:
            if self.is_calculating:
                raise CalculationInProgress("Calculation already in progress")

            if self.worker_available:
                future: Future = Future()
                self._pending = future
                self._worker.post({"type": CALCULATE_SUGGESTIONS, "payload": request.to_dict()})
                return future

            if not self.fallback_enabled:
                raise RuntimeError("Calculation worker unavailable and fallback disabled")

            self._fallback_running = True

        log.warning("Using synchronous fallback for calculation")
        future = Future()
        try:
            result = run_calculation(request, confidence_fn=fallback_confidence)
        except Exception as e:
            future.set_exception(e)
            return future
        finally:
            with self._lock:
                self._fallback_running = False
        self._record_metrics(result.calculation_time_ms)
        future.set_result(result)
        return future

    def _on_reply(self, generation: int, message: Dict[str, Any]):
        with self._lock:
            if generation != self._generation or self._pending is None or self._pending.done():
                log.debug(f"Discarding stale reply from worker generation {generation}")
                return
            future = self._pending
            self._pending = None

        if message["type"] == CALCULATION_COMPLETE:
            result = CalculationResult.from_dict(message["payload"])
            self._record_metrics(result.calculation_time_ms)
            future.set_result(result)
        else:
            error = message.get("payload", {}).get("error", "Unknown calculation error")
            log.error(f"Worker calculation error: {error}")
            future.set_exception(CalculationFailed(error))

    def cancel(self) -> bool:
        """
        Cancel the in-flight calculation, replacing the worker.

        Returns:
            True if a pending calculation was cancelled
        """
        with self._lock:
            future = self._pending
            self._pending = None
            if future is None or future.done():
                return False

            if self._worker is not None:
                self._worker.terminate()
                self._start_worker()

        future.set_exception(CalculationCancelled("Calculation cancelled"))
        log.info("Calculation cancelled; worker replaced")
        return True

    def _record_metrics(self, calculation_time_ms: int):
        with self._metrics_lock:
            total = self.total_calculations + 1
            self.average_calculation_time = int(round(
                (self.average_calculation_time * self.total_calculations + calculation_time_ms) / total
            ))
            self.last_calculation_time = calculation_time_ms
            self.total_calculations = total

    def get_performance_metrics(self) -> Dict[str, int]:
        return {
            "lastCalculationTime": self.last_calculation_time,
            "averageCalculationTime": self.average_calculation_time,
            "totalCalculations": self.total_calculations,
        }

    def shutdown(self):
        with self._lock:
            if self._worker is not None:
                self._worker.terminate()
                self._worker = None
