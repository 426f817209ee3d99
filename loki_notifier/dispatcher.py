#!/usr/bin/env python3
"""
Loki Notifier - Notification dispatcher.

Bounded worker pool that turns queued NotificationJobs into Telegram messages:

    job -> ChannelRouter.resolve -> format_alert -> bot_factory(token) -> send_message

The HTTP handler only enqueues; it never waits for delivery. Each job produces
exactly one DispatchResult, which is logged and counted here. Failures are not
retried and never propagate out of a worker.

When the queue is full the overflow policy decides:
- drop_oldest: evict the oldest queued job (counted as dropped) and enqueue
- block: the submitting thread waits for space
"""

import queue
import threading
import time
from typing import Callable, Dict, List, Optional

from prometheus_client import Counter, Gauge

from loki_notifier.config import OVERFLOW_BLOCK, OVERFLOW_DROP_OLDEST, OVERFLOW_POLICIES
from loki_notifier.formatter import format_alert
from loki_notifier.logging_utils import CorrelationID, get_logger
from loki_notifier.models import DispatchResult, NotificationJob
from loki_notifier.router import ChannelRouter
from loki_notifier.telegram import PARSE_MODE_MARKDOWN_V2, TelegramBot

logger = get_logger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_DISPATCH_TOTAL = Counter(
    'loki_notifier_dispatch_total',
    'Notification dispatch outcomes',
    ['status']  # success, fail_client, fail_send, dropped
)

METRIC_DISPATCH_QUEUE_DEPTH = Gauge(
    'loki_notifier_dispatch_queue_depth',
    'Current depth of the notification dispatch queue'
)

BotFactory = Callable[[str], TelegramBot]

_STOP = object()

# Seconds a blocked submitter waits on a full queue before re-checking for shutdown
BLOCK_POLL_INTERVAL = 0.1


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class NotificationDispatcher:
    """
    Fixed-size pool of worker threads fed by a bounded queue.

    One chat client is created per bot token and reused by every worker.

    Args:
        router: Resolves the destination of each job
        bot_factory: Creates a chat client for a bot token
        workers: Number of worker threads
        queue_size: Maximum number of queued jobs
        overflow_policy: "drop_oldest" or "block"
    """

    def __init__(
        self,
        router: ChannelRouter,
        bot_factory: BotFactory,
        workers: int = 4,
        queue_size: int = 1000,
        overflow_policy: str = OVERFLOW_DROP_OLDEST,
    ):
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"unknown overflow policy: {overflow_policy}")
        if workers < 1 or queue_size < 1:
            raise ValueError("workers and queue_size must be at least 1")

        self.router = router
        self.bot_factory = bot_factory
        self.workers = workers
        self.queue_size = queue_size
        self.overflow_policy = overflow_policy

        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._threads: List[threading.Thread] = []
        # Guards _accepting and every put, so no job can land behind the stop sentinels
        self._submit_lock = threading.Lock()
        self._accepting = False
        self._bots: Dict[str, TelegramBot] = {}
        self._bots_lock = threading.Lock()

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            return

        for i in range(self.workers):
            thread = threading.Thread(target=self._worker_loop, daemon=True, name=f"NotificationWorker-{i}")
            thread.start()
            self._threads.append(thread)

        with self._submit_lock:
            self._accepting = True
        logger.info(
            f"Notification dispatcher started (workers: {self.workers}, "
            f"queue size: {self.queue_size}, overflow policy: {self.overflow_policy})"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting jobs, let workers drain the queue, then join them.

        With a timeout the whole call is bounded by it: if the queue is still
        full when it runs out, the oldest queued jobs are dropped to make room
        for the stop sentinels, and workers still busy are left behind.
        """
        if not self._threads:
            return

        deadline = None if timeout is None else time.monotonic() + timeout

        with self._submit_lock:
            self._accepting = False
            logger.info(f"Stopping notification dispatcher ({self.depth} job(s) queued)...")
            for _ in self._threads:
                self._put_stop_sentinel(deadline)

        for thread in self._threads:
            thread.join(timeout=_remaining(deadline))

        alive = sum(1 for t in self._threads if t.is_alive())
        if alive:
            logger.warning(f"{alive} notification worker(s) still running after {timeout}s")
        else:
            logger.info("Notification dispatcher stopped")
            self._close_bots()

        self._threads = []

    def join(self) -> None:
        """Block until every queued job has been processed."""
        self._queue.join()

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def alive_workers(self) -> int:
        return sum(1 for t in self._threads if t.is_alive())

    # -----------------------------------------------------------------
    # Submission
    # -----------------------------------------------------------------

    def submit(self, job: NotificationJob) -> bool:
        """
        Queue a job for delivery.

        Returns:
            bool: False if the dispatcher is not running and the job was discarded.
        """
        while True:
            with self._submit_lock:
                if not self._accepting:
                    logger.warning("Dispatcher is not running; notification discarded")
                    METRIC_DISPATCH_TOTAL.labels(status='dropped').inc()
                    return False

                if self.overflow_policy != OVERFLOW_BLOCK:
                    self._put_evicting(job)
                    break
                try:
                    self._queue.put_nowait(job)
                    break
                except queue.Full:
                    pass

            # Wait for a free slot outside the lock
            self._wait_for_space(BLOCK_POLL_INTERVAL)

        METRIC_DISPATCH_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    def _wait_for_space(self, timeout: float) -> None:
        not_full = self._queue.not_full
        with not_full:
            if len(self._queue.queue) >= self.queue_size:
                not_full.wait(timeout)

    def _put_evicting(self, item) -> None:
        """Put without blocking, dropping the oldest queued job while full. Caller holds _submit_lock."""
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                pass

            try:
                dropped = self._queue.get_nowait()
            except queue.Empty:
                continue

            self._queue.task_done()
            if isinstance(dropped, NotificationJob):
                METRIC_DISPATCH_TOTAL.labels(status='dropped').inc()
                logger.warning(
                    f"Dispatch queue full ({self.queue_size}); dropped oldest notification "
                    f"(container: '{dropped.container_name}', service: '{dropped.service_name}')"
                )

    def _put_stop_sentinel(self, deadline: Optional[float]) -> None:
        try:
            self._queue.put(_STOP, timeout=_remaining(deadline))
        except queue.Full:
            self._put_evicting(_STOP)

    # -----------------------------------------------------------------
    # Workers
    # -----------------------------------------------------------------

    def _worker_loop(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                CorrelationID.set(job.correlation_id)
                result = self.deliver(job)
                self._record(result)
            finally:
                CorrelationID.clear()
                METRIC_DISPATCH_QUEUE_DEPTH.set(self._queue.qsize())
                self._queue.task_done()

    def _bot_for(self, token: str) -> TelegramBot:
        with self._bots_lock:
            bot = self._bots.get(token)
        if bot is None:
            bot = self.bot_factory(token)
            with self._bots_lock:
                bot = self._bots.setdefault(token, bot)
        return bot

    def _close_bots(self) -> None:
        with self._bots_lock:
            bots, self._bots = list(self._bots.values()), {}
        for bot in bots:
            close = getattr(bot, "close", None)
            if close is not None:
                close()

    def deliver(self, job: NotificationJob) -> DispatchResult:
        """Route, format and send one job. Never raises."""
        start_time = time.time()
        destination = self.router.resolve(job.container_name, job.service_name)

        try:
            message = format_alert(
                job.container_name,
                job.service_name,
                job.labels,
                job.raw_labels,
                job.entry.line,
            )
            bot = self._bot_for(destination.token)
        except Exception as e:
            return DispatchResult(
                status="fail_client",
                destination=destination.name,
                chat_id=destination.chat_id,
                error=f"failed to create telegram bot: {e}",
                latency=time.time() - start_time,
            )

        try:
            bot.send_message(destination.chat_id, message, parse_mode=PARSE_MODE_MARKDOWN_V2)
        except Exception as e:
            return DispatchResult(
                status="fail_send",
                destination=destination.name,
                chat_id=destination.chat_id,
                error=f"failed to send telegram message: {e}",
                latency=time.time() - start_time,
            )

        return DispatchResult(
            status="success",
            destination=destination.name,
            chat_id=destination.chat_id,
            latency=time.time() - start_time,
        )

    def _record(self, result: DispatchResult) -> None:
        METRIC_DISPATCH_TOTAL.labels(status=result.status).inc()
        if result.ok:
            logger.info(
                f"Notification sent to '{result.destination}' (latency: {result.latency:.2f}s)",
                extra=result.as_log_fields(),
            )
        else:
            logger.error(
                f"Notification to '{result.destination}' failed: {result.error}",
                extra=result.as_log_fields(),
            )
