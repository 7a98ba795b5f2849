"""Middleware components for the storefront control plane."""

from __future__ import annotations

from api.middleware.json_formatter import JSONFormatter, configure_json_logging
from api.middleware.logging import RequestLoggingMiddleware

__all__ = ["JSONFormatter", "RequestLoggingMiddleware", "configure_json_logging"]
