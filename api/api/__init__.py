"""Storefront tenancy control plane (FastAPI)."""

__version__ = "0.1.0"
