"""Optional OpenTelemetry tracing for docloop sessions.

With the ``otel`` extra installed (``pip install "docloop[otel]"``) and
``telemetry.enabled`` set in config, ``get_tracer()`` returns a real tracer
and the task loop emits ``docloop.session``, ``docloop.llm_call`` and
``docloop.tool_call`` spans.  Otherwise every call returns no-op objects, so
session code never checks whether tracing is available.

Configuration (``DocloopConfig.telemetry``)::

    "telemetry": {
        "enabled": true,
        "exporter": "console",       # "none" | "console" | "otlp"
        "service_name": "docloop",
        "otlp_endpoint": ""          # required when exporter is "otlp"
    }
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from docloop.config import DocloopConfig, TelemetryConfig

logger = logging.getLogger(__name__)


class _NoOpSpan:
    """Span stand-in accepting the calls the task loop makes."""

    def set_attribute(self, key: str, value: Any) -> None:  # noqa: ARG002
        pass

    def record_exception(self, exc: BaseException) -> None:  # noqa: ARG002
        pass

    def set_status(self, *args: Any, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> "_NoOpSpan":
        return self

    def __exit__(self, *args: Any) -> None:
        pass


class _NoOpTracer:
    def start_as_current_span(self, name: str, **kwargs: Any) -> _NoOpSpan:  # noqa: ARG002
        return _NoOpSpan()


_NOOP_TRACER = _NoOpTracer()

_tracer: Any = None  # opentelemetry Tracer once set up

try:
    import opentelemetry  # noqa: F401
    _otel_available = True
except ImportError:
    _otel_available = False


def setup_telemetry(config: "DocloopConfig") -> None:
    """Install a tracer provider from ``config.telemetry``; no-op when disabled.

    Idempotent: once a tracer exists later calls return immediately.
    """
    global _tracer  # noqa: PLW0603
    if _tracer is not None:
        return

    tel_cfg: Optional["TelemetryConfig"] = getattr(config, "telemetry", None)
    if tel_cfg is None or not tel_cfg.enabled:
        logger.debug("Telemetry disabled; using no-op tracer")
        return
    if not _otel_available:
        logger.warning(
            "Telemetry is enabled but opentelemetry is not installed. "
            "Install with: pip install 'docloop[otel]'"
        )
        return

    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: tel_cfg.service_name}))
    exporter = _build_exporter(tel_cfg)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer("docloop")
    logger.debug("Telemetry initialised: exporter=%s service=%s", tel_cfg.exporter, tel_cfg.service_name)


def _build_exporter(tel_cfg: "TelemetryConfig") -> Any:
    if tel_cfg.exporter == "none":
        return None
    if tel_cfg.exporter == "console":
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter
        logger.info("Telemetry: console exporter (service=%s)", tel_cfg.service_name)
        return ConsoleSpanExporter()
    if tel_cfg.exporter == "otlp":
        if not tel_cfg.otlp_endpoint:
            logger.warning("Telemetry exporter 'otlp' has no otlp_endpoint; spans are dropped")
            return None
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning(
                "OTLP exporter requested but opentelemetry-exporter-otlp-proto-grpc is not installed"
            )
            return None
        logger.info("Telemetry: OTLP exporter (endpoint=%s)", tel_cfg.otlp_endpoint)
        return OTLPSpanExporter(endpoint=tel_cfg.otlp_endpoint)
    logger.warning("Unknown telemetry exporter %r; no spans will be exported", tel_cfg.exporter)
    return None


def get_tracer() -> Any:
    """Return the active tracer, or the no-op tracer when tracing is not set up."""
    return _tracer if _tracer is not None else _NOOP_TRACER


def reset_for_testing() -> None:
    """Forget the configured tracer (tests only)."""
    global _tracer  # noqa: PLW0603
    _tracer = None
    if _otel_available:
        from opentelemetry import trace
        trace.set_tracer_provider(trace.NoOpTracerProvider())
