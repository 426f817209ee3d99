#!/usr/bin/env python3
"""
=====================================================================
Loki Notifier Service
=====================================================================
Receives Loki push requests (the same payload Promtail, Grafana Alloy or
the Docker Loki driver send to Loki), picks out warning/error lines and
sends each one as a Telegram alert.

Request flow:
- Decode the snappy + protobuf body (400 on failure, nothing dispatched)
- Parse each stream's labels
- Filter lines containing "error", "warning" or "fatal"
- Queue one notification job per matching line and return 200 right away
- Dispatch workers route, format and send in the background

Key Features:
- Bounded dispatch worker pool with configurable overflow policy
- Per-channel routing on container_name / service_name
- Correlation IDs in logs and response headers
- Prometheus metrics at /metrics
- Optional TLS
- Graceful shutdown that drains queued notifications

Version: 1.0
=====================================================================
"""

import json
import logging
import sys
import uuid
import signal
from functools import partial
from typing import Callable, List, Optional

from flask import Flask, jsonify, request
from prometheus_client import Counter, Histogram
from prometheus_flask_exporter import PrometheusMetrics

from loki_notifier.config import AppConfig, ConfigError, load_config
from loki_notifier.decoder import DecodeError, DecompressionError, decode_push_request
from loki_notifier.dispatcher import NotificationDispatcher
from loki_notifier.labels import parse_labels
from loki_notifier.logging_utils import CorrelationID, get_logger, setup_json_logging
from loki_notifier.models import NotificationJob, PushPayload
from loki_notifier.router import ChannelRouter
from loki_notifier.severity import is_notifiable
from loki_notifier.telegram import TelegramBot

SERVICE_NAME = "loki-notifier"
SERVICE_VERSION = "1.0.0"

PUSH_PATH = "/loki/api/v1/push"

logger = get_logger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_PUSH_TOTAL = Counter(
    'loki_notifier_push_requests_total',
    'Total requests to the push endpoint',
    ['status', 'reason']  # status: success|fail, reason: read|decompress|deserialize|unknown|''
)

METRIC_PUSH_LATENCY = Histogram(
    'loki_notifier_push_latency_seconds',
    'Push request processing latency (decode + filter + enqueue)',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

METRIC_ENTRIES_TOTAL = Counter(
    'loki_notifier_entries_total',
    'Log entries received, by filter result',
    ['result']  # notifiable, ignored
)

METRIC_MISSING_ROUTING_LABELS = Counter(
    'loki_notifier_streams_missing_routing_labels_total',
    'Streams with neither container_name nor service_name label'
)


class RequestReadError(Exception):
    """Request body could not be read."""


def _read_body() -> bytes:
    try:
        return request.get_data(cache=False)
    except Exception as e:
        raise RequestReadError(str(e)) from e


# =====================================================================
# PIPELINE
# =====================================================================

def collect_notifications(payload: PushPayload, correlation_id: str = "system") -> List[NotificationJob]:
    """
    Parse labels and filter lines for every stream of a decoded payload.

    Returns:
        list: One NotificationJob per notifiable entry, in payload order.
    """
    jobs: List[NotificationJob] = []

    for index, stream in enumerate(payload.streams):
        labels = parse_labels(stream.labels)

        container_name = labels.get("container_name")
        service_name = labels.get("service_name")
        if container_name is None and service_name is None:
            logger.warning(f"container_name or service_name not found (stream index: {index})")
            METRIC_MISSING_ROUTING_LABELS.inc()

        for entry in stream.entries:
            if not is_notifiable(entry.line):
                METRIC_ENTRIES_TOTAL.labels(result='ignored').inc()
                continue

            METRIC_ENTRIES_TOTAL.labels(result='notifiable').inc()
            jobs.append(NotificationJob(
                container_name=container_name or "",
                service_name=service_name or "",
                raw_labels=stream.labels,
                labels=labels,
                entry=entry,
                correlation_id=correlation_id,
            ))

    return jobs


def build_dispatcher(config: AppConfig, bot_factory: Optional[Callable[[str], TelegramBot]] = None) -> NotificationDispatcher:
    """Create (but do not start) the dispatcher for a configuration."""
    if bot_factory is None:
        bot_factory = partial(TelegramBot, api_url=config.telegram.api_url, timeout=config.telegram.timeout)

    router = ChannelRouter(config.channels, config.default_destination)
    return NotificationDispatcher(
        router=router,
        bot_factory=bot_factory,
        workers=config.dispatch.workers,
        queue_size=config.dispatch.queue_size,
        overflow_policy=config.dispatch.overflow_policy,
    )


# =====================================================================
# FLASK APPLICATION FACTORY
# =====================================================================

def setup_logging(config: Optional[AppConfig] = None) -> None:
    """Configure root logging from the app settings, or with defaults before they are loaded."""
    if config is None:
        setup_json_logging(service_name=SERVICE_NAME, version=SERVICE_VERSION)
        return
    setup_json_logging(
        service_name=config.app.name,
        version=SERVICE_VERSION,
        level=config.app.log_level,
        environment=config.app.environment,
    )


def create_app(
    config: Optional[AppConfig] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    bot_factory: Optional[Callable[[str], TelegramBot]] = None,
) -> Flask:
    """Creates and configures the Flask application."""

    app = Flask(__name__)

    # Under gunicorn nothing has configured logging yet
    owns_logging = not logging.getLogger().handlers
    if owns_logging:
        setup_logging()

    if config is None:
        config = load_config()
    if owns_logging:
        setup_logging(config)
    app.config["CONFIG"] = config
    logger.info(f"Effective configuration: {json.dumps(config.describe(), sort_keys=True)}")

    if dispatcher is None:
        dispatcher = build_dispatcher(config, bot_factory)
    dispatcher.start()
    app.dispatcher = dispatcher

    PrometheusMetrics(app)
    logger.info("Prometheus metrics endpoint initialized at /metrics")

    # ================================================================
    # REQUEST HANDLERS
    # ================================================================

    @app.before_request
    def assign_correlation_id():
        correlation_id = request.headers.get('X-Correlation-ID') or str(uuid.uuid4())
        request.correlation_id = correlation_id
        CorrelationID.set(correlation_id)

    @app.after_request
    def add_correlation_header(response):
        correlation_id = getattr(request, 'correlation_id', None)
        if correlation_id:
            response.headers['X-Correlation-ID'] = correlation_id
        return response

    @app.teardown_request
    def clear_correlation_id(exc):
        CorrelationID.clear()

    @app.route(PUSH_PATH, methods=['POST'])
    @METRIC_PUSH_LATENCY.time()
    def handle_push():
        """
        Loki push endpoint.

        Decodes the payload, filters lines and queues notifications. Dispatch
        outcomes never affect the response.
        """
        try:
            # --------------------------------------------------------
            # STEP 1: Read body
            # --------------------------------------------------------
            try:
                body = _read_body()
            except RequestReadError as e:
                logger.error(f"Failed to read request body: {e}")
                METRIC_PUSH_TOTAL.labels(status='fail', reason='read').inc()
                return jsonify({"error": str(e)}), 400

            # --------------------------------------------------------
            # STEP 2: Decompress + deserialize
            # --------------------------------------------------------
            try:
                payload = decode_push_request(body)
            except DecodeError as e:
                if isinstance(e, DecompressionError):
                    logger.error(f"Failed to decompress snappy data: {e}")
                    reason = 'decompress'
                else:
                    logger.error(f"Failed to unmarshal protobuf: {e}")
                    reason = 'deserialize'
                METRIC_PUSH_TOTAL.labels(status='fail', reason=reason).inc()
                return jsonify({"error": str(e)}), 400

            # --------------------------------------------------------
            # STEP 3: Filter and queue
            # --------------------------------------------------------
            jobs = collect_notifications(payload, request.correlation_id)
            for job in jobs:
                app.dispatcher.submit(job)

            logger.debug(
                f"Push processed: {len(payload.streams)} stream(s), {len(jobs)} notification(s) queued"
            )
            METRIC_PUSH_TOTAL.labels(status='success', reason='').inc()
            return jsonify({"message": "OK"}), 200

        except Exception as e:
            logger.error(f"Unhandled exception: {e}", exc_info=True)
            METRIC_PUSH_TOTAL.labels(status='fail', reason='unknown').inc()
            return jsonify({"error": "Internal server error"}), 500

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint for load balancers and orchestrators."""
        alive = app.dispatcher.alive_workers
        body = {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "dispatch_workers_alive": alive,
            "dispatch_queue_depth": app.dispatcher.depth,
        }
        if alive == 0:
            body["status"] = "unhealthy"
            return jsonify(body), 503
        body["status"] = "healthy"
        return jsonify(body), 200

    @app.route('/', methods=['GET'])
    def index():
        """Service information endpoint."""
        return jsonify({
            "service": "Loki Notifier",
            "version": SERVICE_VERSION,
            "description": "Forwards warning/error lines from Loki push payloads to Telegram",
            "endpoints": {
                "push": f"POST {PUSH_PATH} (snappy-compressed protobuf PushRequest)",
                "health": "GET /health",
                "metrics": "GET /metrics",
                "info": "GET /"
            }
        }), 200

    return app


# =====================================================================
# GRACEFUL SHUTDOWN HANDLING
# =====================================================================

def setup_signal_handlers(app: Flask) -> None:
    """Set up signal handlers that drain the dispatcher before exit."""

    def shutdown_handler(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.info(f"Received {sig_name}, initiating graceful shutdown...")

        config = app.config["CONFIG"]
        app.dispatcher.stop(timeout=config.dispatch.shutdown_timeout)

        logger.info("Graceful shutdown complete")
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    logger.info("Signal handlers registered for graceful shutdown")


# =====================================================================
# MAIN ENTRY POINT
# =====================================================================

def main() -> None:
    try:
        config = load_config()
    except ConfigError as e:
        setup_logging()
        logger.error(f"FATAL: Configuration error: {e}")
        sys.exit(1)

    setup_logging(config)

    app = create_app(config)
    setup_signal_handlers(app)

    ssl_context = None
    if config.api.tls_enabled:
        ssl_context = (config.api.cert_location, config.api.key_location)

    logger.info("=" * 70)
    logger.info(f"Loki Notifier v{SERVICE_VERSION} listening on {config.api.host}:{config.api.port} "
                f"(TLS: {config.api.tls_enabled})")
    logger.info("=" * 70)
    if config.app.environment != "production":
        logger.info("For production, use Gunicorn:")
        logger.info("  gunicorn --bind 0.0.0.0:7777 --workers 2 'notifier_service:create_app()'")

    app.run(host=config.api.host, port=config.api.port, ssl_context=ssl_context, use_reloader=False)


if __name__ == '__main__':
    main()
