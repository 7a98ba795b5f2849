"""API router modules for the storefront control plane."""

from __future__ import annotations

from api.routers import billing, credits, health, storefront, stores

__all__ = ["billing", "credits", "health", "storefront", "stores"]
