"""
OpenTelemetry tracing for the scheduling engine.

Spans wrap every external boundary the engine crosses: text-completion
classify/extract calls, Gmail sends and Calendar bookings or free/busy
queries. Tokens, addresses and message bodies are masked before they
become span attributes.
"""

import os
import re
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

_provider: TracerProvider | None = None


def setup_tracing(service_name: str = "parley-scheduler") -> TracerProvider:
    """
    Install the global tracer provider once per process.

    Environment variables:
    - OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
    - OTEL_TRACES_EXPORTER: "otlp", "console", or "none" (default: none)

    The API process and the job worker both call this; later calls return
    the provider installed by the first one.
    """
    global _provider
    if _provider is not None:
        return _provider

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": "0.1.0",
        }
    )
    provider = TracerProvider(resource=resource)

    exporter_type = os.getenv("OTEL_TRACES_EXPORTER", "none").lower()
    if exporter_type == "otlp":
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    elif exporter_type == "console":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def get_tracer(name: str = __name__) -> trace.Tracer:
    """Get a tracer instance for creating spans."""
    return trace.get_tracer(name)


def mask_token(token: str | None) -> str:
    """Keep the first 8 and last 4 characters of a credential."""
    if not token:
        return "<none>"
    if len(token) <= 12:
        return "***"
    return f"{token[:8]}...{token[-4:]}"


def mask_email(email: str | None) -> str:
    """
    Mask an email address for PII protection.

    Shows the first character and the domain, e.g. ``j*****@acme.com``.
    """
    if not email:
        return "<none>"

    match = re.match(r"^([^@])([^@]*)(@.+)$", email)
    if match:
        first_char, rest, domain = match.groups()
        return f"{first_char}{'*' * min(len(rest), 5)}{domain}"

    return "***@***"


def sanitize_message_content(content: str | None, max_length: int = 100) -> str:
    """Truncate free text and blank out anything that looks like a secret."""
    if not content:
        return "<empty>"

    if len(content) > max_length:
        content = content[:max_length] + "..."

    return re.sub(r"[A-Za-z0-9_-]{40,}", "***TOKEN***", content)


def safe_span_attributes(**kwargs: Any) -> dict[str, Any]:
    """
    Build span attributes, masking by key name.

    - keys containing token/secret/key/password -> masked credential
    - keys containing email -> masked address
    - keys containing body/content/message/prompt -> truncated text

    None values are dropped and non-primitive values are stringified.
    """
    sanitized: dict[str, Any] = {}

    for key, value in kwargs.items():
        if value is None:
            continue

        lowered = key.lower()
        if any(part in lowered for part in ("token", "secret", "key", "password")):
            sanitized[key] = mask_token(str(value))
        elif "email" in lowered:
            sanitized[key] = mask_email(str(value))
        elif any(part in lowered for part in ("body", "content", "message", "prompt")):
            sanitized[key] = sanitize_message_content(str(value))
        elif isinstance(value, (str, int, float, bool)):
            sanitized[key] = value
        else:
            sanitized[key] = str(value)

    return sanitized
