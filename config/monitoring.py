# config/monitoring.py

import os

from prometheus_client import Counter, Histogram

from .base import env_bool, env_int


class MonitoringConfig:
    """Logging and metrics settings."""

    MONITORING_ENABLED = env_bool("MONITORING_ENABLED")
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # json | text
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_NAME = os.environ.get("LOG_FILE_NAME", "crm.log")
    LOG_FILE_MAX_BYTES = env_int("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024, minimum=1)
    LOG_FILE_BACKUP_COUNT = env_int("LOG_FILE_BACKUP_COUNT", 10, minimum=0)
    ENABLE_FILE_LOGGING = env_bool("ENABLE_FILE_LOGGING", default=True)
    ENABLE_CONSOLE_LOGGING = env_bool("ENABLE_CONSOLE_LOGGING", default=True)

    APP_NAME = os.environ.get("APP_NAME", "Contact Importer")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"


class ProductionMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    # stdout is collected by the container runtime
    ENABLE_CONSOLE_LOGGING = False


class TestingMonitoringConfig(MonitoringConfig):
    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


_FAST_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5)
_UPLOAD_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60)


def _endpoint_metrics(endpoint, description, buckets):
    return (
        Counter(f"importer_{endpoint}_requests_total", f"{description} requests by outcome.", labelnames=("status",)),
        Histogram(
            f"importer_{endpoint}_request_seconds",
            f"{description} request latency.",
            labelnames=("status",),
            buckets=buckets,
        ),
    )


class ImporterMonitoring:
    """Prometheus counters and latency histograms for the importer HTTP endpoints."""

    ENDPOINTS = {
        "analyze": _endpoint_metrics("analyze", "CSV analysis", _UPLOAD_BUCKETS),
        "job_create": _endpoint_metrics("job_create", "Import job creation (upload and dispatch)", _UPLOAD_BUCKETS),
        "job_detail": _endpoint_metrics("job_detail", "Import job detail", _FAST_BUCKETS),
    }
    EVENT_STREAMS = Counter(
        "importer_progress_streams_total",
        "Progress event streams opened, by outcome.",
        labelnames=("status",),
    )

    @classmethod
    def observe(cls, endpoint, *, duration_seconds, status):
        counter, latency = cls.ENDPOINTS[endpoint]
        counter.labels(status=status).inc()
        latency.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_event_stream(cls, *, status):
        cls.EVENT_STREAMS.labels(status=status).inc()
