"""Middleware package exports."""

from storefront_auth.middleware.correlation_id import CorrelationIdMiddleware
from storefront_auth.middleware.logging import LoggingMiddleware
from storefront_auth.middleware.metrics import MetricsMiddleware, build_metrics_endpoint
from storefront_auth.middleware.rate_limit import RateLimitMiddleware
from storefront_auth.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "CorrelationIdMiddleware",
    "LoggingMiddleware",
    "MetricsMiddleware",
    "RateLimitMiddleware",
    "SecurityHeadersMiddleware",
    "build_metrics_endpoint",
]
