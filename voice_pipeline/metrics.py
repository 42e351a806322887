from typing import Optional

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Voice pipeline metrics
voice_requests_total = Counter('voice_requests_total', 'Total voice pipeline requests', ['endpoint', 'status'])
voice_processing_seconds = Histogram('voice_processing_seconds', 'Voice input processing duration')
voice_commands_detected = Counter('voice_commands_detected_total', 'Voice commands detected', ['action'])
voice_language_detected = Counter('voice_language_detected_total', 'Languages detected', ['language', 'method'])


def record_request(endpoint: str, status: str, duration: Optional[float] = None):
    """Record a handled request"""
    voice_requests_total.labels(endpoint=endpoint, status=status).inc()
    if duration is not None:
        voice_processing_seconds.observe(duration)


def record_command(action: str):
    voice_commands_detected.labels(action=action).inc()


def record_language(language: str, method: str):
    voice_language_detected.labels(language=language, method=method).inc()


async def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
