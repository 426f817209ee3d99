# =====================================================================
# Loki Notifier Dispatcher Unit Tests
# =====================================================================
# Tests for loki_notifier/dispatcher.py
# Run with: pytest tests/test_dispatcher.py -v
# =====================================================================

import threading
import time

import pytest

from conftest import AUTH_CHAT_ID, AUTH_TOKEN, DEFAULT_CHAT_ID, DEFAULT_TOKEN, FakeBotFactory, assert_log_contains
from loki_notifier.dispatcher import METRIC_DISPATCH_TOTAL, NotificationDispatcher
from loki_notifier.telegram import PARSE_MODE_MARKDOWN_V2


pytestmark = pytest.mark.unit


def counter_value(status):
    return METRIC_DISPATCH_TOTAL.labels(status=status)._value.get()


class TestDeliver:
    """Test a single delivery without worker threads"""

    def test_success(self, router, make_job):
        factory = FakeBotFactory()
        d = NotificationDispatcher(router=router, bot_factory=factory)

        result = d.deliver(make_job(container_name="web", line="error: boom"))

        assert result.ok
        assert result.status == "success"
        assert result.destination == "default"
        assert result.chat_id == DEFAULT_CHAT_ID
        assert result.error is None
        assert factory.tokens == [DEFAULT_TOKEN]

        sent = factory.outbox[0]
        assert sent["chat_id"] == DEFAULT_CHAT_ID
        assert sent["parse_mode"] == PARSE_MODE_MARKDOWN_V2
        assert sent["text"] == "*Container:* `web`\n```\nerror: boom\n```\n"

    def test_routes_by_needle(self, router, make_job):
        factory = FakeBotFactory()
        d = NotificationDispatcher(router=router, bot_factory=factory)

        result = d.deliver(make_job(container_name="auth-service"))

        assert result.destination == "auth"
        assert factory.tokens == [AUTH_TOKEN]
        assert factory.outbox[0]["chat_id"] == AUTH_CHAT_ID

    def test_fail_client(self, router, make_job):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory(fail_create=True))

        result = d.deliver(make_job())

        assert result.status == "fail_client"
        assert not result.ok
        assert result.error == "failed to create telegram bot: invalid bot token"

    def test_fail_send(self, router, make_job):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory(fail_send=True))

        result = d.deliver(make_job())

        assert result.status == "fail_send"
        assert result.error == "failed to send telegram message: send failed"

    def test_log_fields(self, router, make_job):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory())

        fields = d.deliver(make_job()).as_log_fields()

        assert fields["dispatch_status"] == "success"
        assert fields["destination"] == "default"
        assert fields["chat_id"] == DEFAULT_CHAT_ID
        assert "latency_ms" in fields
        assert "token" not in fields


class TestDispatcherWorkers:
    """Test the queue and worker pool"""

    def test_submitted_jobs_are_delivered(self, dispatcher, bot_factory, make_job):
        for i in range(5):
            assert dispatcher.submit(make_job(line=f"error {i}")) is True

        dispatcher.join()

        assert len(bot_factory.outbox) == 5
        assert dispatcher.depth == 0

    def test_correlation_id_reaches_worker(self, dispatcher, bot_factory, make_job):
        dispatcher.submit(make_job(correlation_id="req-42"))
        dispatcher.join()

        assert bot_factory.outbox[0]["correlation_id"] == "req-42"

    def test_result_logged_once(self, dispatcher, make_job, caplog):
        caplog.set_level("INFO")

        dispatcher.submit(make_job())
        dispatcher.join()

        sent = [r for r in caplog.records if r.getMessage().startswith("Notification sent to")]
        assert len(sent) == 1
        assert sent[0].dispatch_status == "success"

    def test_failure_logged_as_error(self, router, make_job, caplog):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory(fail_send=True), workers=1)
        d.start()
        try:
            d.submit(make_job())
            d.join()
        finally:
            d.stop(timeout=5)

        assert_log_contains(caplog, "ERROR", "failed to send telegram message")

    def test_failure_counted(self, router, make_job):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory(fail_create=True), workers=1)
        before = counter_value("fail_client")
        d.start()
        try:
            d.submit(make_job())
            d.join()
        finally:
            d.stop(timeout=5)

        assert counter_value("fail_client") == before + 1

    def test_workers_alive(self, dispatcher):
        assert dispatcher.alive_workers == 2

    def test_start_is_idempotent(self, dispatcher):
        dispatcher.start()

        assert dispatcher.alive_workers == 2

    def test_submit_before_start_is_discarded(self, router, make_job, caplog):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory())

        assert d.submit(make_job()) is False
        assert d.depth == 0
        assert_log_contains(caplog, "WARNING", "not running")

    def test_submit_after_stop_is_discarded(self, router, make_job):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory())
        d.start()
        d.stop(timeout=5)

        assert d.submit(make_job()) is False
        assert d.alive_workers == 0

    def test_stop_drains_queue(self, router, make_job):
        release = threading.Event()
        factory = FakeBotFactory()

        def slow_factory(token):
            release.wait(timeout=5)
            return factory(token)

        d = NotificationDispatcher(router=router, bot_factory=slow_factory, workers=1, queue_size=10)
        d.start()
        for i in range(3):
            d.submit(make_job(line=f"error {i}"))

        release.set()
        d.stop(timeout=5)

        assert [m["text"].split("```\n")[1] for m in factory.outbox] == ["error 0\n", "error 1\n", "error 2\n"]


class TestOverflowPolicy:
    """Test behavior when the queue is full"""

    def test_drop_oldest_evicts_head(self, router, make_job, caplog):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory(), queue_size=2)
        d._accepting = True  # accept without worker threads so the queue fills up
        before = counter_value("dropped")

        d.submit(make_job(container_name="first"))
        d.submit(make_job(container_name="second"))
        d.submit(make_job(container_name="third"))

        assert [job.container_name for job in list(d._queue.queue)] == ["second", "third"]
        assert counter_value("dropped") == before + 1
        assert_log_contains(caplog, "WARNING", "dropped oldest notification (container: 'first'")

    def test_drop_oldest_never_blocks(self, router, make_job):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory(), queue_size=1)
        d._accepting = True

        for _ in range(50):
            assert d.submit(make_job()) is True

        assert d.depth == 1

    def test_block_policy_waits_for_space(self, router, make_job):
        factory = FakeBotFactory()
        d = NotificationDispatcher(router=router, bot_factory=factory, workers=1, queue_size=1,
                                   overflow_policy="block")
        d.start()
        try:
            for i in range(10):
                d.submit(make_job(line=f"error {i}"))
            d.join()
        finally:
            d.stop(timeout=5)

        assert len(factory.outbox) == 10

    def test_invalid_policy(self, router):
        with pytest.raises(ValueError, match="unknown overflow policy"):
            NotificationDispatcher(router=router, bot_factory=FakeBotFactory(), overflow_policy="spill")

    @pytest.mark.parametrize("workers,queue_size", [(0, 10), (1, 0)])
    def test_invalid_sizes(self, router, workers, queue_size):
        with pytest.raises(ValueError):
            NotificationDispatcher(router=router, bot_factory=FakeBotFactory(),
                                   workers=workers, queue_size=queue_size)


class TestShutdown:
    """Test that stop() honors its timeout and never strands a job"""

    @pytest.fixture
    def stuck_factory(self):
        """Bot factory that blocks until released"""
        factory = FakeBotFactory()
        entered = threading.Event()
        release = threading.Event()

        def _factory(token):
            entered.set()
            release.wait(timeout=10)
            return factory(token)

        _factory.entered = entered
        _factory.release = release
        yield _factory
        release.set()

    def test_stop_is_bounded_when_queue_full(self, router, make_job, stuck_factory, caplog):
        d = NotificationDispatcher(router=router, bot_factory=stuck_factory, workers=1, queue_size=1)
        d.start()
        threads = list(d._threads)
        before = counter_value("dropped")

        d.submit(make_job(container_name="in-flight"))
        assert stuck_factory.entered.wait(timeout=5)
        d.submit(make_job(container_name="queued"))

        started = time.monotonic()
        d.stop(timeout=0.5)
        elapsed = time.monotonic() - started

        assert elapsed < 2.0
        assert counter_value("dropped") == before + 1
        assert_log_contains(caplog, "WARNING", "dropped oldest notification (container: 'queued'")
        assert_log_contains(caplog, "WARNING", "still running after 0.5s")

        stuck_factory.release.set()
        for thread in threads:
            thread.join(timeout=5)
            assert not thread.is_alive()

    def test_stop_releases_blocked_submitter(self, router, make_job, stuck_factory):
        d = NotificationDispatcher(router=router, bot_factory=stuck_factory, workers=1, queue_size=1,
                                   overflow_policy="block")
        d.start()
        threads = list(d._threads)

        d.submit(make_job(container_name="in-flight"))
        assert stuck_factory.entered.wait(timeout=5)
        d.submit(make_job(container_name="queued"))

        results = []
        submitter = threading.Thread(target=lambda: results.append(d.submit(make_job(container_name="late"))))
        submitter.start()
        time.sleep(0.2)

        started = time.monotonic()
        d.stop(timeout=0.5)
        submitter.join(timeout=2)

        assert time.monotonic() - started < 2.0
        assert not submitter.is_alive()
        assert results == [False]

        stuck_factory.release.set()
        for thread in threads:
            thread.join(timeout=5)
        d.join()
        assert d.depth == 0

    def test_no_job_queued_after_stop(self, router, make_job):
        d = NotificationDispatcher(router=router, bot_factory=FakeBotFactory(), workers=2, queue_size=10)
        d.start()
        d.stop(timeout=5)

        assert d.submit(make_job()) is False
        d.join()
        assert d.depth == 0


class TestBotReuse:
    """Test one chat client per bot token"""

    def test_bot_created_once_per_token(self, router, make_job):
        factory = FakeBotFactory()
        d = NotificationDispatcher(router=router, bot_factory=factory)

        for container in ["web", "api", "auth-service", "auth-worker"]:
            assert d.deliver(make_job(container_name=container)).ok

        assert factory.tokens == [DEFAULT_TOKEN, AUTH_TOKEN]
        assert len(factory.outbox) == 4

    def test_failed_creation_is_retried(self, router, make_job):
        factory = FakeBotFactory(fail_create=True)
        d = NotificationDispatcher(router=router, bot_factory=factory)

        d.deliver(make_job())
        d.deliver(make_job())

        assert factory.tokens == [DEFAULT_TOKEN, DEFAULT_TOKEN]

    def test_stop_closes_bots(self, router, make_job):
        factory = FakeBotFactory()
        d = NotificationDispatcher(router=router, bot_factory=factory, workers=1)
        d.start()
        d.submit(make_job())
        d.join()

        d.stop(timeout=5)

        assert [bot.closed for bot in factory.bots] == [True]
