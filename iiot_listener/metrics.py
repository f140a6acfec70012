"""
IIoT Listener — Metrics

Prometheus-compatible /metrics and a /health endpoint on a side port.
"""

import logging

from aiohttp import web

logger = logging.getLogger("iiot.metrics")

# Metrics state, refreshed by the service reporter task
_metrics: dict = {}

# (metric name, stats key)
_COUNTERS = (
    ("iiot_mqtt_messages_received_total", "mqtt_received"),
    ("iiot_events_received_total", "received"),
    ("iiot_events_malformed_total", "malformed"),
    ("iiot_events_unknown_device_total", "unknown_device"),
    ("iiot_events_failed_total", "failed"),
    ("iiot_events_insignificant_total", "insignificant"),
    ("iiot_events_significant_total", "significant"),
    ("iiot_telemetry_published_total", "telemetry_published"),
    ("iiot_telemetry_stored_total", "telemetry_stored"),
    ("iiot_alarms_produced_total", "alarms_produced"),
    ("iiot_alarms_published_total", "alarms_published"),
    ("iiot_alarms_suppressed_total", "alarms_suppressed"),
    ("iiot_alarms_stored_total", "alarms_stored"),
    ("iiot_alarm_notifications_total", "notifications"),
    ("iiot_placeholder_alarms_total", "placeholders"),
    ("iiot_batches_total", "batches"),
)


def update_metrics(data: dict) -> None:
    _metrics.update(data)


def render_metrics(data: dict) -> str:
    """Prometheus text exposition format."""
    lines = [f"{name} {data.get(key, 0)}" for name, key in _COUNTERS]
    lines.append(f'iiot_devices_tracked {data.get("devices_tracked", 0)}')
    lines.append(f'iiot_tolerance_lookup_failures_total {data.get("tolerance_lookup_failures", 0)}')
    lines.append(f'iiot_consumer_buffered_events {data.get("buffered", 0)}')
    lines.append(f'iiot_consumer_batches_in_flight {data.get("in_flight", 0)}')
    return "\n".join(lines) + "\n"


async def _handle_metrics(request: web.Request) -> web.Response:
    return web.Response(text=render_metrics(_metrics), content_type="text/plain")


async def _handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "metrics": _metrics})


def build_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/metrics", _handle_metrics)
    app.router.add_get("/health", _handle_health)
    return app


async def start_metrics_server(port: int) -> web.AppRunner:
    """Start the metrics HTTP server on a background port."""
    runner = web.AppRunner(build_app())
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info("Metrics server listening on :%d", port)
    return runner
