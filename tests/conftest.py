# =====================================================================
# Loki Notifier Pytest Configuration and Fixtures
# =====================================================================
# This file contains shared fixtures and configuration for all tests
# =====================================================================

import threading

import pytest
from prometheus_client import REGISTRY

from loki_notifier.config import build_config
from loki_notifier.decoder import encode_push_request
from loki_notifier.dispatcher import NotificationDispatcher
from loki_notifier.logging_utils import CorrelationID
from loki_notifier.models import ChannelRule, Destination, Entry, NotificationJob, Stream
from loki_notifier.router import ChannelRouter

DEFAULT_TOKEN = "111111:default-token"
DEFAULT_CHAT_ID = -1000000000001
AUTH_TOKEN = "222222:auth-token"
AUTH_CHAT_ID = -1000000000002
PAYMENTS_TOKEN = "333333:payments-token"
PAYMENTS_CHAT_ID = -1000000000003

_METRIC_PREFIXES = ('loki_notifier_', 'flask_')


# --- Prometheus Metrics Cleanup ---

@pytest.fixture(autouse=True, scope="function")
def cleanup_prometheus_metrics():
    """
    Unregister notifier and Flask exporter metrics after each test.

    Each create_app() call registers the Flask exporter metrics again, which
    would otherwise fail with 'Duplicated timeseries in CollectorRegistry'.
    Default collectors (platform, process, gc) are left alone.
    """
    yield

    collectors_to_remove = []
    for collector in list(REGISTRY._collector_to_names.keys()):
        names = REGISTRY._collector_to_names.get(collector, set())
        if any(name.startswith(_METRIC_PREFIXES) for name in names):
            collectors_to_remove.append(collector)

    for collector in collectors_to_remove:
        try:
            REGISTRY.unregister(collector)
        except KeyError:
            pass


# --- Configuration ---

@pytest.fixture
def raw_config():
    """Raw configuration mapping, as it would be read from YAML"""
    return {
        "app": {"name": "loki-notifier", "environment": "test", "log_level": "debug"},
        "api": {"host": "127.0.0.1", "port": 7777},
        "telegram": {"bot_token": DEFAULT_TOKEN, "chat_id": DEFAULT_CHAT_ID},
        "dispatch": {"workers": 2, "queue_size": 100, "overflow_policy": "drop_oldest"},
        "channels": [
            {"name": "auth", "needle": "auth",
             "telegram_token": AUTH_TOKEN, "telegram_chat_id": AUTH_CHAT_ID},
            {"name": "payments", "needle": "payment",
             "telegram_token": PAYMENTS_TOKEN, "telegram_chat_id": PAYMENTS_CHAT_ID},
        ],
    }


@pytest.fixture
def sample_config(raw_config):
    """Validated AppConfig built without touching the process environment"""
    return build_config(raw_config, environ={})


@pytest.fixture
def default_destination():
    return Destination(name="default", token=DEFAULT_TOKEN, chat_id=DEFAULT_CHAT_ID)


@pytest.fixture
def sample_rules():
    return [
        ChannelRule(name="auth", needle="auth", token=AUTH_TOKEN, chat_id=AUTH_CHAT_ID),
        ChannelRule(name="payments", needle="payment", token=PAYMENTS_TOKEN, chat_id=PAYMENTS_CHAT_ID),
    ]


@pytest.fixture
def router(sample_rules, default_destination):
    return ChannelRouter(sample_rules, default_destination)


# --- Fake Telegram ---

class FakeBot:
    """Stands in for TelegramBot; records every message in the shared outbox"""

    def __init__(self, token, outbox, lock, fail_send=False):
        self.token = token
        self.outbox = outbox
        self.lock = lock
        self.fail_send = fail_send
        self.closed = False

    def close(self):
        self.closed = True

    def send_message(self, chat_id, text, parse_mode=None):
        if self.fail_send:
            raise RuntimeError("send failed")
        with self.lock:
            self.outbox.append({
                "token": self.token,
                "chat_id": chat_id,
                "text": text,
                "parse_mode": parse_mode,
                "correlation_id": CorrelationID.get(),
            })
        return {"message_id": len(self.outbox)}


class FakeBotFactory:
    """Callable bot factory: token -> FakeBot"""

    def __init__(self, fail_create=False, fail_send=False):
        self.outbox = []
        self.tokens = []
        self.bots = []
        self.lock = threading.Lock()
        self.fail_create = fail_create
        self.fail_send = fail_send

    def __call__(self, token):
        self.tokens.append(token)
        if self.fail_create:
            raise ValueError("invalid bot token")
        bot = FakeBot(token, self.outbox, self.lock, fail_send=self.fail_send)
        self.bots.append(bot)
        return bot


@pytest.fixture
def bot_factory():
    return FakeBotFactory()


@pytest.fixture
def dispatcher(router, bot_factory):
    """Started dispatcher using the fake bot factory"""
    d = NotificationDispatcher(router=router, bot_factory=bot_factory, workers=2, queue_size=100)
    d.start()
    yield d
    d.stop(timeout=5)


# --- Sample Data ---

@pytest.fixture
def make_job():
    def _make(container_name="web", service_name="", line="error: boom", raw_labels=None,
              labels=None, correlation_id="test-cid"):
        if raw_labels is None:
            raw_labels = f'{{container_name="{container_name}"}}'
        return NotificationJob(
            container_name=container_name,
            service_name=service_name,
            raw_labels=raw_labels,
            labels=labels if labels is not None else {"container_name": container_name},
            entry=Entry(line=line, timestamp_ns=1700000000000000000),
            correlation_id=correlation_id,
        )
    return _make


@pytest.fixture
def make_push_body():
    """Build a snappy+protobuf push body from (labels, [lines]) pairs"""
    def _make(*streams):
        return encode_push_request([
            Stream(
                labels=labels,
                entries=tuple(Entry(line=line, timestamp_ns=1700000000000000000 + i)
                              for i, line in enumerate(lines)),
            )
            for labels, lines in streams
        ])
    return _make


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (requires real services)"
    )


# --- Helper Functions ---

def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.message:
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
